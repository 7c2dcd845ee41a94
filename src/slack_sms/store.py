from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy import ColumnElement, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .db import TenantDocument, utcnow
from .errors import Conflict, ConfigurationError, NotFound
from .models import CarrierCredentials, ChatCredentials, Tenant
from .phone import digits

logger = logging.getLogger(__name__)

# Applies a change to a freshly read tenant and reports whether it changed anything.
Mutator = Callable[[Tenant], bool]


def new_revision(previous: str | None = None) -> str:
    """Next opaque revision token, "<generation>-<random hex>"."""
    generation = 0
    if previous:
        try:
            generation = int(previous.split("-", 1)[0])
        except ValueError:
            generation = 0
    return f"{generation + 1}-{uuid4().hex}"


def _key_columns(tenant: Tenant) -> dict[str, Any]:
    return {
        "team": tenant.team,
        "carrier_account_id": tenant.carrier.account_id if tenant.carrier else None,
        "phone_key": digits(tenant.phone_number) or None,
        "body": tenant.model_dump_json(exclude={"id", "revision"}),
    }


def _decode(row: TenantDocument) -> Tenant:
    try:
        data = json.loads(row.body)
        if not isinstance(data, dict):
            raise ValueError("document is not a JSON object")
        data.update(id=row.id, revision=row.revision)
        return Tenant.model_validate(data)
    except (ValueError, ValidationError) as e:
        raise ConfigurationError(
            "Stored tenant document is invalid", tenant_id=row.id, team=row.team
        ) from e


class TenantStore:
    """
    Tenant persistence with optimistic concurrency.

    Every write is conditional on the revision the caller read; a write
    against a stale revision raises `Conflict` instead of overwriting a
    concurrent change. `update()` wraps the re-read-and-retry loop that
    callers should use for any logical mutation.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        max_conflict_retries: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self.max_conflict_retries = max_conflict_retries

    # --- lookups ---

    def get(self, tenant_id: str) -> Tenant | None:
        return self._find_one(TenantDocument.id == tenant_id, tenant_id=tenant_id)

    def find_by_team(self, team: str) -> Tenant | None:
        return self._find_one(TenantDocument.team == team, team=team)

    def find_by_carrier_account(self, account_id: str) -> Tenant | None:
        if not account_id:
            return None
        return self._find_one(
            TenantDocument.carrier_account_id == account_id, carrier_account=account_id
        )

    def find_by_phone(self, phone: str) -> Tenant | None:
        key = digits(phone)
        if not key:
            return None
        return self._find_one(TenantDocument.phone_key == key, phone=phone)

    def list_tenants(self) -> list[Tenant]:
        with self._session_factory() as db:
            rows = db.execute(select(TenantDocument).order_by(TenantDocument.team)).scalars().all()
            return [_decode(row) for row in rows]

    def _find_one(self, criterion: ColumnElement[bool], **context: Any) -> Tenant | None:
        with self._session_factory() as db:
            rows = db.execute(select(TenantDocument).where(criterion).limit(2)).scalars().all()
            if not rows:
                return None
            if len(rows) > 1:
                raise ConfigurationError("More than one tenant matches", **context)
            return _decode(rows[0])

    # --- writes ---

    def save(self, tenant: Tenant) -> Tenant:
        """
        Write `tenant` back if the stored revision still equals `tenant.revision`.

        Returns a copy carrying the new revision. Raises `Conflict` when
        another writer got there first.
        """
        if not tenant.id:
            raise ConfigurationError("Refusing to save a tenant without an id", team=tenant.team)

        revision = new_revision(tenant.revision)
        stmt = (
            update(TenantDocument)
            .where(TenantDocument.id == tenant.id, TenantDocument.revision == tenant.revision)
            .values(revision=revision, updated_at=utcnow(), **_key_columns(tenant))
        )
        with self._session_factory() as db:
            try:
                updated = db.execute(stmt).rowcount
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConfigurationError(
                    "Tenant update violates a unique key",
                    team=tenant.team,
                    phone=tenant.phone_number,
                ) from e

        if updated != 1:
            raise Conflict("Stale tenant revision", team=tenant.team, revision=tenant.revision)

        logger.debug("Saved tenant %s at revision %s", tenant.team, revision)
        return tenant.model_copy(update={"revision": revision}, deep=True)

    def _create(self, team: str, chat: ChatCredentials) -> Tenant:
        tenant = Tenant(id=uuid4().hex, revision=new_revision(), team=team, chat=chat)
        with self._session_factory() as db:
            db.add(TenantDocument(id=tenant.id, revision=tenant.revision, **_key_columns(tenant)))
            db.commit()
        logger.info("Created tenant for team %s", team)
        return tenant

    def upsert(self, team: str, chat: ChatCredentials) -> Tenant:
        """
        Create the tenant for `team`, or refresh only its chat credentials.

        Channels, carrier credentials and phone number of an existing tenant
        are preserved. Calling again with identical credentials writes nothing.
        """
        attempts = self.max_conflict_retries + 1
        for attempt in range(1, attempts + 1):
            tenant = self.find_by_team(team)
            if tenant is None:
                try:
                    return self._create(team, chat)
                except IntegrityError:
                    # Another install created the team between our read and insert.
                    logger.info(
                        "Concurrent install for %s (attempt %d/%d)", team, attempt, attempts
                    )
                    continue

            if tenant.chat == chat:
                return tenant

            tenant.chat = chat
            try:
                return self.save(tenant)
            except Conflict:
                logger.info(
                    "Revision conflict installing %s (attempt %d/%d)", team, attempt, attempts
                )

        raise Conflict("Gave up after repeated revision conflicts", team=team, attempts=attempts)

    def update(self, team: str, mutate: Mutator) -> Tenant:
        """
        Read-modify-write the tenant for `team`, retrying on `Conflict`.

        `mutate` runs against a fresh read on every attempt. When it reports
        no change the tenant is returned without a write.
        """
        attempts = self.max_conflict_retries + 1
        for attempt in range(1, attempts + 1):
            tenant = self.find_by_team(team)
            if tenant is None:
                raise NotFound(f"Unknown team ID {team}.", team=team)
            if not mutate(tenant):
                return tenant
            try:
                return self.save(tenant)
            except Conflict:
                logger.info(
                    "Revision conflict on %s (attempt %d/%d), re-reading", team, attempt, attempts
                )

        raise Conflict("Gave up after repeated revision conflicts", team=team, attempts=attempts)

    def provision_carrier(
        self,
        team: str,
        account_id: str,
        auth_token: str,
        phone_number: str,
    ) -> Tenant:
        """Attach carrier credentials and the SMS number to an installed team."""
        owner = self.find_by_phone(phone_number)
        if owner is not None and owner.team != team:
            raise ConfigurationError(
                "Phone number already belongs to another team", phone=phone_number, team=owner.team
            )
        owner = self.find_by_carrier_account(account_id)
        if owner is not None and owner.team != team:
            raise ConfigurationError(
                "Carrier account already belongs to another team",
                carrier_account=account_id,
                team=owner.team,
            )

        carrier = CarrierCredentials(account_id=account_id, auth_token=auth_token)

        def apply(tenant: Tenant) -> bool:
            if tenant.carrier == carrier and tenant.phone_number == phone_number:
                return False
            tenant.carrier = carrier
            tenant.phone_number = phone_number
            return True

        return self.update(team, apply)
