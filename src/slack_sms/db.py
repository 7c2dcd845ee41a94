from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    DateTime,
    String,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .config import get_settings


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class TenantDocument(Base):
    """
    A tenant stored as a JSON document.

    The lookup keys are copied out of the document into indexed columns so
    the store can answer team / carrier account / phone queries without
    decoding every row.
    """

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    revision: Mapped[str] = mapped_column(String(64), nullable=False)
    team: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    carrier_account_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # digits of the tenant's phone number
    phone_key: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


# --- Engine & Session factory ---


def make_engine(database_url: str) -> Engine:
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {},
    )


settings = get_settings()

engine = make_engine(settings.database_url)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db(bind: Engine | None = None) -> None:
    """Create tables if they don't exist."""
    Base.metadata.create_all(bind=bind or engine)
