from __future__ import annotations

import logging
from collections.abc import Mapping
from contextlib import asynccontextmanager
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, Form, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from .commands import CommandRouter, SlashCommand
from .config import Settings, configure_logging, get_settings
from .db import SessionLocal, init_db
from .errors import BridgeError, ConfigurationError, Forbidden, Malformed, Unauthorized
from .events import ChatEventRouter, EventPayload
from .install import install_from_code
from .slack_client import DirectoryFactory, directory_for
from .sms import MISSING_TAG_TEXT, InboundSms, SMSInboundRouter, send_sms, twiml_reply
from .store import TenantStore
from .twilio_client import CarrierGateway, TwilioGateway, validate_signature

logger = logging.getLogger(__name__)

SLACK_AUTHORIZE_URL = "https://slack.com/oauth/v2/authorize"
BOT_SCOPES = (
    "channels:read",
    "groups:read",
    "chat:write",
    "chat:write.customize",
    "commands",
    "im:write",
    "users:read",
)
# the installing user's token invites the bot into channels
USER_SCOPES = ("channels:write", "groups:write")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: runs once before the app starts serving requests
    configure_logging()
    init_db()
    yield


app = FastAPI(title="slack-sms", version="0.1.0", lifespan=lifespan)


@app.exception_handler(BridgeError)
async def bridge_error_handler(request: Request, exc: BridgeError) -> PlainTextResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc)
    return PlainTextResponse(exc.message, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> PlainTextResponse:
    fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
    logger.warning("%s %s malformed: %s", request.method, request.url.path, fields)
    return PlainTextResponse(f"Malformed request: {fields}", status_code=400)


# --- dependencies ---


ALLOWED_ADMIN_IPS = {"127.0.0.1", "::1"}


def verify_admin(request: Request, settings: Settings = Depends(get_settings)) -> None:
    """
    Protection for internal endpoints:
    - only allow requests from ALLOWED_ADMIN_IPS
    - require X-Admin-Token header that matches ADMIN_TOKEN env var
    """
    client_host = request.client.host if request.client else None

    if client_host not in ALLOWED_ADMIN_IPS:
        raise Forbidden("Forbidden", client=client_host)

    if not settings.admin_token:
        # Misconfiguration; safer to refuse access than to send SMS for anyone.
        raise ConfigurationError("ADMIN_TOKEN not configured")

    if request.headers.get("X-Admin-Token") != settings.admin_token:
        raise Unauthorized("Invalid admin token", client=client_host)


def get_store(settings: Settings = Depends(get_settings)) -> TenantStore:
    return TenantStore(SessionLocal, max_conflict_retries=settings.max_conflict_retries)


def get_directories(settings: Settings = Depends(get_settings)) -> DirectoryFactory:
    return lambda tenant: directory_for(tenant, settings)


def get_gateway(settings: Settings = Depends(get_settings)) -> CarrierGateway:
    return TwilioGateway(timeout=settings.http_timeout)


def public_url(request: Request, settings: Settings, path: str | None = None) -> str:
    """The URL as seen from outside any proxy in front of the app."""
    path = path or request.url.path
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/") + path
    return str(request.url.replace(path=path, query=""))


# --- Routes ---


@app.get("/")
def index() -> PlainTextResponse:
    return PlainTextResponse("There's nothing here :-(")


@app.get("/install")
def install(request: Request, settings: Settings = Depends(get_settings)) -> RedirectResponse:
    """Send the browser to Slack's consent screen."""
    if not settings.slack_client_id:
        raise ConfigurationError("Slack OAuth is not configured (SLACK_CLIENT_ID)")
    query = urlencode(
        {
            "client_id": settings.slack_client_id,
            "scope": ",".join(BOT_SCOPES),
            "user_scope": ",".join(USER_SCOPES),
            "redirect_uri": public_url(request, settings, "/oauth/callback"),
        }
    )
    return RedirectResponse(f"{SLACK_AUTHORIZE_URL}?{query}")


@app.get("/oauth/callback")
def oauth_callback(
    request: Request,
    code: str,
    store: TenantStore = Depends(get_store),
    directories: DirectoryFactory = Depends(get_directories),
    settings: Settings = Depends(get_settings),
) -> PlainTextResponse:
    tenant = install_from_code(
        store,
        directories,
        code,
        public_url(request, settings, "/oauth/callback"),
        settings,
    )
    return PlainTextResponse(f"SMS is installed for team {tenant.team}.")


@app.post("/event/inbound")
def event_inbound(
    payload: EventPayload,
    store: TenantStore = Depends(get_store),
    directories: DirectoryFactory = Depends(get_directories),
    gateway: CarrierGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> Response:
    """
    Slack Events API endpoint.

    Answers the URL verification challenge, otherwise acknowledges with an
    empty 202 once the event has been skipped or fanned out.
    """
    outcome = ChatEventRouter(store, directories, gateway, settings).handle(payload)
    if outcome.status == "challenge":
        return JSONResponse({"challenge": outcome.challenge})
    return Response(status_code=202)


@app.post("/cmd/sms")
def sms_command(
    team_id: str = Form(...),
    user_id: str = Form(...),
    channel_id: str = Form(...),
    command: str = Form(...),
    text: str = Form(""),
    token: str | None = Form(None),
    store: TenantStore = Depends(get_store),
    directories: DirectoryFactory = Depends(get_directories),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    cmd = SlashCommand(
        token=token,
        team_id=team_id,
        user_id=user_id,
        channel_id=channel_id,
        command=command,
        text=text,
    )
    reply = CommandRouter(store, directories, settings).handle(cmd)
    return JSONResponse({"text": reply})


def route_inbound_sms(
    router: SMSInboundRouter,
    sms: InboundSms,
    params: Mapping[str, str],
    url: str,
    signature: str | None,
    settings: Settings,
) -> str | None:
    """Returns guidance to text back to the sender, or None."""
    tenant = router.resolve_tenant(sms)
    if settings.verify_twilio_signature and tenant.carrier is not None:
        if not validate_signature(tenant.carrier, url, params, signature):
            raise Unauthorized("Invalid Twilio signature", team=tenant.team)

    try:
        router.handle(sms, tenant)
    except Malformed as e:
        logger.info("Rejected inbound SMS: %s", e)
        return MISSING_TAG_TEXT
    return None


@app.post("/twilio/inbound")
async def twilio_inbound(
    request: Request,
    store: TenantStore = Depends(get_store),
    directories: DirectoryFactory = Depends(get_directories),
    settings: Settings = Depends(get_settings),
) -> Response:
    """
    Twilio-style SMS webhook endpoint.

    Posts the message to Slack and answers with TwiML: empty on success so
    Twilio sends nothing back, or a short guidance text when the message
    could not be routed to a channel.
    """
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    try:
        sms = InboundSms.model_validate(params)
    except ValidationError as e:
        raise Malformed("Missing Twilio webhook fields") from e

    reply = await run_in_threadpool(
        route_inbound_sms,
        SMSInboundRouter(store, directories),
        sms,
        params,
        public_url(request, settings),
        request.headers.get("X-Twilio-Signature"),
        settings,
    )
    return Response(content=twiml_reply(reply), media_type="application/xml")


@app.post("/twilio/send")
def twilio_send(
    team: str = Form(...),
    number: str = Form(...),
    message: str = Form(...),
    store: TenantStore = Depends(get_store),
    gateway: CarrierGateway = Depends(get_gateway),
    _: None = Depends(verify_admin),
) -> Response:
    send_sms(store, gateway, team, number, message)
    return Response(status_code=202)
