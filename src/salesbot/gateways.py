"""Payment-gateway webhook adapters.

Each adapter turns a provider delivery into a canonical
``ConfirmationEvent``. Nothing is approved on the payload's word alone:
generic deliveries must carry the shared secret, Mercado Pago
notifications are looked up through the API and Stripe deliveries must
carry a valid ``Stripe-Signature``. Every verifier refuses to be built
without its credential. Gateways without a verifier are
acknowledged and ignored by the HTTP layer. PagSeguro ships a parser and a
verifier around a host-supplied transaction lookup.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import stripe

from salesbot.constants import APPROVED_WEBHOOK_STATUSES

if TYPE_CHECKING:
    from salesbot.mercadopago_client import MercadoPagoClient

logger = logging.getLogger(__name__)

STRIPE_SIGNATURE_TOLERANCE_SECS = 300


class WebhookRejectedError(Exception):
    """Delivery failed authentication (bad secret or signature)."""


@dataclass(frozen=True)
class WebhookDelivery:
    """Raw inbound webhook as received by the HTTP layer."""

    gateway: str
    payload: dict[str, Any]
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ConfirmationEvent:
    """Gateway-neutral view of a payment notification."""

    external_reference: str | None
    approved: bool
    gateway_name: str
    raw_payload: dict[str, Any]
    amount: Decimal | None = None
    gateway_ids: dict[str, Any] = field(default_factory=dict)

    def metadata(self) -> dict[str, Any]:
        """Metadata recorded on the payment when this event confirms it."""
        data: dict[str, Any] = {"gateway": self.gateway_name, **self.gateway_ids}
        if self.amount is not None:
            data["amount_reported"] = str(self.amount)
        return data


@runtime_checkable
class GatewayVerifier(Protocol):
    """Authenticates a delivery and maps it to an event (None = not actionable)."""

    async def verify(self, delivery: WebhookDelivery) -> ConfirmationEvent | None: ...


def _decimal_or_none(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _header(headers: Mapping[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


# ---------------------------------------------------------------------------
# Generic
# ---------------------------------------------------------------------------


def parse_generic(payload: dict[str, Any]) -> ConfirmationEvent:
    """``{payment_id|external_reference, status, amount?}``; approved statuses confirm."""
    reference = payload.get("external_reference") or payload.get("payment_id")
    status = str(payload.get("status", "")).lower()
    return ConfirmationEvent(
        external_reference=str(reference) if reference else None,
        approved=status in APPROVED_WEBHOOK_STATUSES,
        gateway_name="Generic",
        raw_payload=payload,
        amount=_decimal_or_none(payload.get("amount")),
        gateway_ids={"customer_id": payload["customer_id"]} if payload.get("customer_id") else {},
    )


class GenericVerifier:
    """Generic deliveries gated by the ``X-Webhook-Secret`` header."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Generic webhook secret is required")
        self._secret = secret

    async def verify(self, delivery: WebhookDelivery) -> ConfirmationEvent | None:
        provided = _header(delivery.headers, "X-Webhook-Secret") or ""
        if not hmac.compare_digest(provided.encode(), self._secret.encode()):
            raise WebhookRejectedError("Invalid webhook secret")
        return parse_generic(delivery.payload)


# ---------------------------------------------------------------------------
# Mercado Pago
# ---------------------------------------------------------------------------


_MERCADOPAGO_ACTIONS = frozenset({"payment.created", "payment.updated"})


class MercadoPagoVerifier:
    """Resolves ``payment.*`` notifications through the Mercado Pago API."""

    def __init__(self, client: MercadoPagoClient) -> None:
        self._client = client

    async def verify(self, delivery: WebhookDelivery) -> ConfirmationEvent | None:
        payload = delivery.payload
        data = payload.get("data") or {}
        mp_payment_id = data.get("id") if isinstance(data, dict) else None
        if payload.get("action") not in _MERCADOPAGO_ACTIONS or not mp_payment_id:
            return None

        details = await self._client.get_payment(str(mp_payment_id))
        reference = details.get("external_reference")
        return ConfirmationEvent(
            external_reference=str(reference) if reference else None,
            approved=details.get("status") == "approved",
            gateway_name="Mercado Pago",
            raw_payload=payload,
            amount=_decimal_or_none(details.get("transaction_amount")),
            gateway_ids={"mp_payment_id": str(mp_payment_id)},
        )


# ---------------------------------------------------------------------------
# PagSeguro
# ---------------------------------------------------------------------------

# Transaction status codes: 3 = Paga, 4 = Disponível
_PAGSEGURO_PAID_STATUSES = frozenset({"3", "4"})


def parse_pagseguro(payload: dict[str, Any]) -> str | None:
    """Return the ``notificationCode`` of a transaction notification, else None."""
    if payload.get("notificationType") != "transaction":
        return None
    code = payload.get("notificationCode")
    return str(code) if code else None


class PagSeguroVerifier:
    """Resolves transaction notifications through a host-supplied lookup.

    ``lookup(notification_code)`` must query PagSeguro and return the
    transaction as a dict with at least ``reference`` and ``status``.
    """

    def __init__(self, lookup: Callable[[str], Awaitable[dict[str, Any]]]) -> None:
        self._lookup = lookup

    async def verify(self, delivery: WebhookDelivery) -> ConfirmationEvent | None:
        code = parse_pagseguro(delivery.payload)
        if code is None:
            return None
        transaction = await self._lookup(code)
        reference = transaction.get("reference")
        return ConfirmationEvent(
            external_reference=str(reference) if reference else None,
            approved=str(transaction.get("status")) in _PAGSEGURO_PAID_STATUSES,
            gateway_name="PagSeguro",
            raw_payload=delivery.payload,
            amount=_decimal_or_none(transaction.get("grossAmount")),
            gateway_ids={"notification_code": code},
        )


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


def parse_stripe(payload: dict[str, Any]) -> ConfirmationEvent | None:
    """``payment_intent.succeeded`` with ``metadata.payment_id``; amount is in cents."""
    if payload.get("type") != "payment_intent.succeeded":
        return None
    data = payload.get("data")
    intent = data.get("object") if isinstance(data, dict) else None
    if not isinstance(intent, dict):
        return None
    metadata = intent.get("metadata")
    reference = metadata.get("payment_id") if isinstance(metadata, dict) else None
    cents = _decimal_or_none(intent.get("amount"))
    return ConfirmationEvent(
        external_reference=str(reference) if reference else None,
        approved=True,
        gateway_name="Stripe",
        raw_payload=payload,
        amount=cents / 100 if cents is not None else None,
        gateway_ids={"stripe_payment_id": intent.get("id")},
    )


class StripeVerifier:
    """Deliveries signed with the endpoint's ``whsec_...`` secret.

    The ``Stripe-Signature`` header is checked by
    ``stripe.Webhook.construct_event`` against the raw body, including the
    timestamp ``tolerance`` in seconds.
    """

    def __init__(self, secret: str, tolerance: int = STRIPE_SIGNATURE_TOLERANCE_SECS) -> None:
        if not secret:
            raise ValueError("Stripe webhook secret is required")
        self._secret = secret
        self._tolerance = tolerance

    async def verify(self, delivery: WebhookDelivery) -> ConfirmationEvent | None:
        header = _header(delivery.headers, "Stripe-Signature")
        if not header:
            raise WebhookRejectedError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(
                delivery.body, header, self._secret, tolerance=self._tolerance,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Stripe signature verification failed: %s", e)
            raise WebhookRejectedError(f"Invalid Stripe signature: {e}") from e
        except ValueError as e:
            raise WebhookRejectedError(f"Unreadable Stripe payload: {e}") from e
        return parse_stripe(delivery.payload)
