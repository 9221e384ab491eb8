"""HTTP surface: payment-gateway webhooks and the admin dashboard API.

Webhooks are authenticated per gateway by a ``GatewayVerifier`` and then
funnelled through the same ``ConfirmationDispatcher`` as manual commands,
so a payment confirmed twice (webhook retry, webhook racing an admin) is
announced once. Dashboard routes require an Ed25519 bearer token whose
subject is in the authorization registry.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from salesbot.auth import DashboardAuthError, verify_dashboard_token
from salesbot.constants import (
    DEFAULT_MEMBER_PAGE_SIZE,
    DEFAULT_RECENT_MEMBER_DAYS,
    KeyStatus,
    PaymentStatus,
)
from salesbot.dispatcher import CancellationOutcome, ConfirmationOutcome
from salesbot.errors import (
    BackupFailedError,
    ExhaustedKeySpaceError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    UnauthorizedError,
)
from salesbot.gateways import WebhookDelivery, WebhookRejectedError
from salesbot.mercadopago_client import MercadoPagoError
from salesbot.notifier import DiscordError
from salesbot.schemas import (
    CancelRequest,
    KeyIssueRequest,
    KeyRedeemRequest,
    KeysLimitRequest,
    ManualSaleRequest,
    MemberJoinRequest,
    MessageRequest,
    PaymentCreateRequest,
    RestoreRequest,
    UserAddRequest,
)

if TYPE_CHECKING:
    from salesbot.backup import BackupManager
    from salesbot.runtime import Salesbot

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_bot(request: Request) -> Salesbot:
    return request.app.state.bot


async def dashboard_principal(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> str:
    """Authenticated and authorized principal id for dashboard calls."""
    bot = get_bot(request)
    if not bot.config.dashboard_public_key:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Dashboard authentication is not configured")
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing bearer token")
    claims = verify_dashboard_token(authorization[7:].strip(), bot.config.dashboard_public_key)
    principal_id = claims["principal_id"]
    if not bot.registry.is_authorized(principal_id):
        raise UnauthorizedError(f"{principal_id} is not authorized")
    return principal_id


async def owner_principal(
    request: Request,
    principal_id: str = Depends(dashboard_principal),
) -> str:
    if not get_bot(request).registry.is_owner(principal_id):
        raise UnauthorizedError("Only the owner can do this")
    return principal_id


def _backups(bot: Salesbot) -> BackupManager:
    if bot.backups is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Backups are not configured")
    return bot.backups


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

webhook_router = APIRouter(prefix="/webhook", tags=["webhooks"])


_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


async def _parse_body(request: Request, body: bytes) -> dict[str, Any]:
    """JSON bodies as-is, form posts (PagSeguro) as a flat dict of their text fields."""
    if not body:
        return {}
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith(_FORM_TYPES):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Body must be a JSON object")
    return payload


async def _handle_webhook(request: Request, gateway: str) -> dict[str, Any]:
    bot = get_bot(request)
    body = await request.body()
    payload = await _parse_body(request, body)

    verifier = bot.verifiers.get(gateway)
    if verifier is None:
        logger.warning("No verifier for %s webhook; delivery ignored.", gateway)
        return {"received": True, "outcome": "ignored"}

    delivery = WebhookDelivery(gateway=gateway, payload=payload, body=body, headers=dict(request.headers))
    try:
        event = await verifier.verify(delivery)
    except MercadoPagoError as e:
        logger.error("Mercado Pago lookup failed: %s", e)
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, "Payment lookup failed") from e

    if event is None or not event.approved or not event.external_reference:
        logger.debug("Non-actionable %s webhook.", gateway)
        return {"received": True, "outcome": "ignored"}

    source = f"webhook:{event.gateway_name}"
    try:
        result = await bot.dispatcher.confirm(event.external_reference, source, event.metadata())
    except InvalidTransitionError as e:
        # Acknowledge so the gateway stops retrying; the payment stays as it is.
        logger.warning("Webhook for %s rejected: %s", event.external_reference, e)
        return {"received": True, "outcome": "rejected", "payment_id": event.external_reference}

    return {
        "received": True,
        "outcome": result.outcome.value,
        "payment_id": event.external_reference,
    }


@webhook_router.post("/payment")
async def generic_webhook(request: Request):
    return await _handle_webhook(request, "payment")


@webhook_router.post("/mercadopago")
async def mercadopago_webhook(request: Request):
    return await _handle_webhook(request, "mercadopago")


@webhook_router.post("/pagseguro")
async def pagseguro_webhook(request: Request):
    return await _handle_webhook(request, "pagseguro")


@webhook_router.post("/stripe")
async def stripe_webhook(request: Request):
    return await _handle_webhook(request, "stripe")


@webhook_router.get("/test")
async def webhook_test(request: Request):
    return {
        "status": "ok",
        "gateways": sorted(get_bot(request).verifiers),
    }


# ---------------------------------------------------------------------------
# Dashboard: payments
# ---------------------------------------------------------------------------

payments_router = APIRouter(prefix="/api/payments", tags=["payments"])


@payments_router.get("")
async def list_payments(
    request: Request,
    status_filter: Optional[PaymentStatus] = Query(default=None, alias="status"),
    principal_id: str = Depends(dashboard_principal),
):
    payments = await get_bot(request).ledger.list_by_status(status_filter)
    return {"payments": [p.to_dict() for p in payments]}


@payments_router.get("/stats")
async def payment_stats(request: Request, principal_id: str = Depends(dashboard_principal)):
    bot = get_bot(request)
    summary = await bot.ledger.summary()
    summary["keys"] = await bot.keys.counter()
    summary["authorized_users"] = bot.registry.size
    return summary


@payments_router.post("", status_code=status.HTTP_201_CREATED)
async def create_payment(
    body: PaymentCreateRequest,
    request: Request,
    principal_id: str = Depends(dashboard_principal),
):
    payment = await get_bot(request).ledger.create(
        body.principal_id, body.display_name, body.plan, body.amount, body.method,
    )
    return payment.to_dict()


@payments_router.post("/manual", status_code=status.HTTP_201_CREATED)
async def record_manual_sale(
    body: ManualSaleRequest,
    request: Request,
    principal_id: str = Depends(dashboard_principal),
):
    result = await get_bot(request).dispatcher.record_manual_sale(
        body.principal_id, body.display_name, body.amount, body.plan,
        actor=f"dashboard:{principal_id}",
    )
    return result.to_dict()


@payments_router.get("/{payment_id}")
async def get_payment(payment_id: str, request: Request, principal_id: str = Depends(dashboard_principal)):
    payment = await get_bot(request).ledger.get(payment_id)
    return payment.to_dict()


@payments_router.post("/{payment_id}/confirm")
async def confirm_payment(payment_id: str, request: Request, principal_id: str = Depends(dashboard_principal)):
    result = await get_bot(request).dispatcher.confirm(payment_id, f"dashboard:{principal_id}")
    if result.outcome == ConfirmationOutcome.NOT_FOUND:
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"Payment {payment_id} not found")
    return result.to_dict()


@payments_router.post("/{payment_id}/cancel")
async def cancel_payment(
    payment_id: str,
    request: Request,
    body: Optional[CancelRequest] = None,
    principal_id: str = Depends(dashboard_principal),
):
    reason = body.reason if body else None
    result = await get_bot(request).dispatcher.cancel(payment_id, f"dashboard:{principal_id}", reason)
    if result.outcome == CancellationOutcome.NOT_FOUND:
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"Payment {payment_id} not found")
    if result.outcome == CancellationOutcome.REJECTED:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=result.to_dict())
    return result.to_dict()


@payments_router.delete("/{payment_id}")
async def delete_payment(payment_id: str, request: Request, principal_id: str = Depends(owner_principal)):
    if not await get_bot(request).ledger.delete(payment_id, actor=principal_id):
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"Payment {payment_id} not found")
    return {"deleted": payment_id}


# ---------------------------------------------------------------------------
# Dashboard: users, messages
# ---------------------------------------------------------------------------

users_router = APIRouter(prefix="/api/users", tags=["users"])


@users_router.get("")
async def list_users(request: Request, principal_id: str = Depends(dashboard_principal)):
    bot = get_bot(request)
    users = await bot.registry.list()
    return {"owner_id": bot.registry.owner_id, "users": [u.to_dict() for u in users]}


@users_router.post("", status_code=status.HTTP_201_CREATED)
async def add_user(body: UserAddRequest, request: Request, principal_id: str = Depends(owner_principal)):
    registry = get_bot(request).registry
    if registry.is_owner(body.principal_id):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "The owner is always authorized")
    if not await registry.add(body.principal_id, body.display_name):
        raise HTTPException(status.HTTP_409_CONFLICT, f"Could not authorize {body.principal_id}")
    return {"authorized": body.principal_id}


@users_router.delete("/{user_id}")
async def remove_user(user_id: str, request: Request, principal_id: str = Depends(owner_principal)):
    registry = get_bot(request).registry
    if registry.is_owner(user_id):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "The owner cannot be removed")
    if not await registry.remove(user_id):
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"{user_id} is not authorized")
    return {"removed": user_id}


messages_router = APIRouter(prefix="/api/messages", tags=["messages"])


@messages_router.post("")
async def send_message(body: MessageRequest, request: Request, principal_id: str = Depends(dashboard_principal)):
    notifier = get_bot(request).notifier
    if notifier is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Messaging is not configured")
    try:
        await notifier.send_direct(body.principal_id, body.content)
    except DiscordError as e:
        logger.warning("Dashboard message to %s failed: %s", body.principal_id, e)
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, f"Message not delivered: {e}") from e
    logger.info("%s sent a direct message to %s.", principal_id, body.principal_id)
    return {"sent": True}


# ---------------------------------------------------------------------------
# Dashboard: backups, keys
# ---------------------------------------------------------------------------

backups_router = APIRouter(prefix="/api/backups", tags=["backups"])


@backups_router.get("")
async def list_backups(request: Request, principal_id: str = Depends(dashboard_principal)):
    backups = await _backups(get_bot(request)).list_backups()
    return {"backups": [b.to_dict() for b in backups]}


@backups_router.get("/status")
async def backup_status(request: Request, principal_id: str = Depends(dashboard_principal)):
    return await _backups(get_bot(request)).status()


@backups_router.post("", status_code=status.HTTP_201_CREATED)
async def create_backup(request: Request, principal_id: str = Depends(owner_principal)):
    record = await _backups(get_bot(request)).create_backup()
    return record.to_dict()


@backups_router.post("/restore")
async def restore_backup(body: RestoreRequest, request: Request, principal_id: str = Depends(owner_principal)):
    if not body.confirm:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Restoring overwrites all data; set confirm to true")
    if Path(body.name).name != body.name:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Give a backup file name, not a path")
    await _backups(get_bot(request)).restore_backup(body.name)
    return {"restored": body.name}


keys_router = APIRouter(prefix="/api/keys", tags=["keys"])


@keys_router.get("")
async def list_keys(
    request: Request,
    status_filter: Optional[KeyStatus] = Query(default=None, alias="status"),
    principal_id: str = Depends(dashboard_principal),
):
    bot = get_bot(request)
    keys = await bot.keys.list(status_filter)
    return {"keys": [k.to_dict() for k in keys], "counter": await bot.keys.counter()}


@keys_router.post("", status_code=status.HTTP_201_CREATED)
async def issue_key(body: KeyIssueRequest, request: Request, principal_id: str = Depends(dashboard_principal)):
    bot = get_bot(request)
    plan_type = body.plan_type or bot.config.default_key_plan
    key = await bot.keys.issue(plan_type, body.duration_type.value, created_by=principal_id)
    return key.to_dict()


@keys_router.post("/{key_value}/redeem")
async def redeem_key(
    key_value: str,
    body: KeyRedeemRequest,
    request: Request,
    principal_id: str = Depends(dashboard_principal),
):
    key = await get_bot(request).keys.redeem(key_value, body.consumer_id)
    return key.to_dict()


@keys_router.delete("/{key_value}")
async def delete_key(key_value: str, request: Request, principal_id: str = Depends(owner_principal)):
    await get_bot(request).keys.delete(key_value, actor=principal_id)
    return {"deleted": key_value}


@keys_router.put("/limit")
async def set_keys_limit(body: KeysLimitRequest, request: Request, principal_id: str = Depends(owner_principal)):
    return await get_bot(request).keys.set_limit(body.limit, updated_by=principal_id)


@keys_router.post("/reset")
async def reset_keys_sold(request: Request, principal_id: str = Depends(owner_principal)):
    return await get_bot(request).keys.reset_sold(updated_by=principal_id)


# ---------------------------------------------------------------------------
# Dashboard: guild joins
# ---------------------------------------------------------------------------

members_router = APIRouter(prefix="/api/members", tags=["members"])


@members_router.get("")
async def list_members(
    request: Request,
    limit: int = Query(default=DEFAULT_MEMBER_PAGE_SIZE, ge=0),
    offset: int = Query(default=0, ge=0),
    principal_id: str = Depends(dashboard_principal),
):
    members = get_bot(request).members
    page = await members.list(limit, offset)
    return {"members": [m.to_dict() for m in page], "total": await members.count()}


@members_router.get("/recent")
async def recent_members(
    request: Request,
    days: int = Query(default=DEFAULT_RECENT_MEMBER_DAYS, ge=0),
    principal_id: str = Depends(dashboard_principal),
):
    members = await get_bot(request).members.recent(days)
    return {"members": [m.to_dict() for m in members], "days": days}


@members_router.post("", status_code=status.HTTP_201_CREATED)
async def record_member_join(
    body: MemberJoinRequest,
    request: Request,
    principal_id: str = Depends(dashboard_principal),
):
    member = await get_bot(request).members.record_join(**body.model_dump())
    return member.to_dict()


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

_ERROR_STATUS: dict[type[Exception], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    UnauthorizedError: status.HTTP_403_FORBIDDEN,
    DashboardAuthError: status.HTTP_401_UNAUTHORIZED,
    WebhookRejectedError: status.HTTP_401_UNAUTHORIZED,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
    BackupFailedError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ExhaustedKeySpaceError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ValueError: status.HTTP_400_BAD_REQUEST,
}


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


def create_app(bot: Salesbot, *, manage_lifecycle: bool = True) -> FastAPI:
    """Build the ASGI app around a wired ``Salesbot``.

    With ``manage_lifecycle`` the app starts and stops the bot with the
    server; embedders that own the bot's lifecycle pass False.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await bot.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await bot.stop()

    app = FastAPI(title="salesbot", lifespan=lifespan)
    app.state.bot = bot

    for exc_cls, status_code in _ERROR_STATUS.items():
        app.add_exception_handler(exc_cls, _error_handler(status_code))

    routers = (
        webhook_router, payments_router, users_router, messages_router,
        backups_router, keys_router, members_router,
    )
    for router in routers:
        app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "authorized_users": bot.registry.size}

    return app
