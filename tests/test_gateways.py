"""Tests for gateway webhook adapters and the Mercado Pago client."""

import hashlib
import hmac
import json
import time
from decimal import Decimal

import httpx
import pytest

from salesbot.gateways import (
    GenericVerifier,
    MercadoPagoVerifier,
    PagSeguroVerifier,
    StripeVerifier,
    WebhookDelivery,
    WebhookRejectedError,
    parse_generic,
    parse_pagseguro,
    parse_stripe,
)
from salesbot.mercadopago_client import (
    MercadoPagoAuthError,
    MercadoPagoClient,
    MercadoPagoConnectionError,
    MercadoPagoNotFoundError,
    MercadoPagoServerError,
)

STRIPE_SECRET = "whsec_test"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stripe_header(body: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode() + body
    sig = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={sig}"


def _stripe_event(payment_id: str = "PAY_1_abc", amount: int = 2500) -> dict:
    return {
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_123", "amount": amount, "metadata": {"payment_id": payment_id}}},
    }


def _mp_client(handler) -> MercadoPagoClient:
    return MercadoPagoClient("TEST-token", transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Generic
# ---------------------------------------------------------------------------


class TestGeneric:
    @pytest.mark.parametrize("status", ["approved", "paid", "completed", "PAID"])
    def test_approved_statuses(self, status: str) -> None:
        event = parse_generic({"payment_id": "PAY_1", "status": status, "amount": "30"})
        assert event.approved
        assert event.external_reference == "PAY_1"
        assert event.amount == Decimal("30")

    def test_other_status_not_approved(self) -> None:
        assert not parse_generic({"payment_id": "PAY_1", "status": "pending"}).approved

    def test_external_reference_preferred(self) -> None:
        event = parse_generic({"external_reference": "PAY_2", "payment_id": "X", "status": "paid"})
        assert event.external_reference == "PAY_2"

    def test_missing_reference(self) -> None:
        assert parse_generic({"status": "paid"}).external_reference is None

    @pytest.mark.parametrize("secret", [None, ""])
    def test_secret_is_mandatory(self, secret) -> None:
        with pytest.raises(ValueError):
            GenericVerifier(secret)

    @pytest.mark.asyncio
    async def test_missing_secret_header_rejected(self) -> None:
        verifier = GenericVerifier(secret="hunter2")
        delivery = WebhookDelivery("payment", {"payment_id": "PAY_1", "status": "paid"})
        with pytest.raises(WebhookRejectedError):
            await verifier.verify(delivery)

    @pytest.mark.asyncio
    async def test_secret_header_accepted(self) -> None:
        verifier = GenericVerifier(secret="hunter2")
        delivery = WebhookDelivery(
            "payment", {"payment_id": "PAY_1", "status": "paid"},
            headers={"x-webhook-secret": "hunter2"},
        )
        event = await verifier.verify(delivery)
        assert event.approved
        assert event.gateway_name == "Generic"
        assert event.metadata() == {"gateway": "Generic"}


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


def _signed(payload: dict, secret: str = STRIPE_SECRET, timestamp: int | None = None) -> WebhookDelivery:
    body = json.dumps(payload).encode()
    return WebhookDelivery(
        "stripe", payload, body=body,
        headers={"Stripe-Signature": _stripe_header(body, secret, timestamp or int(time.time()))},
    )


class TestStripeVerifier:
    @pytest.mark.asyncio
    async def test_accepts_signed_delivery(self) -> None:
        event = await StripeVerifier(STRIPE_SECRET).verify(_signed(_stripe_event()))
        assert event.external_reference == "PAY_1_abc"

    @pytest.mark.asyncio
    async def test_requires_header(self) -> None:
        payload = _stripe_event()
        delivery = WebhookDelivery("stripe", payload, body=json.dumps(payload).encode())
        with pytest.raises(WebhookRejectedError, match="Missing"):
            await StripeVerifier(STRIPE_SECRET).verify(delivery)

    @pytest.mark.asyncio
    async def test_tampered_body(self) -> None:
        delivery = _signed(_stripe_event(amount=100))
        tampered = WebhookDelivery(
            "stripe", delivery.payload, body=json.dumps(_stripe_event(amount=100000)).encode(),
            headers=delivery.headers,
        )
        with pytest.raises(WebhookRejectedError):
            await StripeVerifier(STRIPE_SECRET).verify(tampered)

    @pytest.mark.asyncio
    async def test_wrong_secret(self) -> None:
        with pytest.raises(WebhookRejectedError):
            await StripeVerifier(STRIPE_SECRET).verify(_signed(_stripe_event(), secret="whsec_other"))

    @pytest.mark.asyncio
    async def test_stale_timestamp(self) -> None:
        delivery = _signed(_stripe_event(), timestamp=int(time.time()) - 301)
        with pytest.raises(WebhookRejectedError):
            await StripeVerifier(STRIPE_SECRET, tolerance=300).verify(delivery)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", ["garbage", "t=abc,v1=00", "v1=00"])
    async def test_malformed_header(self, header: str) -> None:
        delivery = WebhookDelivery("stripe", {}, body=b"{}", headers={"Stripe-Signature": header})
        with pytest.raises(WebhookRejectedError):
            await StripeVerifier(STRIPE_SECRET).verify(delivery)

    def test_secret_is_mandatory(self) -> None:
        with pytest.raises(ValueError):
            StripeVerifier("")


class TestStripeParse:
    def test_succeeded_intent(self) -> None:
        event = parse_stripe(_stripe_event(amount=2550))
        assert event.approved
        assert event.external_reference == "PAY_1_abc"
        assert event.amount == Decimal("25.5")
        assert event.metadata()["stripe_payment_id"] == "pi_123"

    def test_other_event_types_ignored(self) -> None:
        assert parse_stripe({"type": "charge.refunded"}) is None

    @pytest.mark.parametrize("data", ["oops", ["x"], {"object": "pi_1"}, None])
    def test_malformed_data_is_not_actionable(self, data) -> None:
        assert parse_stripe({"type": "payment_intent.succeeded", "data": data}) is None

    def test_metadata_without_reference(self) -> None:
        event = parse_stripe({
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_1", "metadata": "nope"}},
        })
        assert event.external_reference is None


# ---------------------------------------------------------------------------
# Mercado Pago
# ---------------------------------------------------------------------------


class TestMercadoPagoVerifier:
    @pytest.mark.asyncio
    async def test_looks_up_payment_status(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={
                "id": 987, "status": "approved",
                "external_reference": "PAY_1_abc", "transaction_amount": 30.0,
            })

        client = _mp_client(handler)
        verifier = MercadoPagoVerifier(client)
        event = await verifier.verify(WebhookDelivery(
            "mercadopago", {"action": "payment.updated", "data": {"id": "987"}},
        ))
        await client.close()

        assert seen[0].url.path == "/v1/payments/987"
        assert seen[0].headers["authorization"] == "Bearer TEST-token"
        assert event.approved
        assert event.external_reference == "PAY_1_abc"
        assert event.amount == Decimal("30.0")
        assert event.metadata()["mp_payment_id"] == "987"

    @pytest.mark.asyncio
    async def test_pending_payment_not_approved(self) -> None:
        client = _mp_client(lambda r: httpx.Response(
            200, json={"status": "pending", "external_reference": "PAY_1"},
        ))
        event = await MercadoPagoVerifier(client).verify(WebhookDelivery(
            "mercadopago", {"action": "payment.created", "data": {"id": "1"}},
        ))
        await client.close()
        assert not event.approved

    @pytest.mark.asyncio
    async def test_irrelevant_action_skips_lookup(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        client = _mp_client(handler)
        event = await MercadoPagoVerifier(client).verify(WebhookDelivery(
            "mercadopago", {"action": "merchant_order.updated", "data": {"id": "1"}},
        ))
        await client.close()
        assert event is None
        assert calls == []


class TestMercadoPagoClientErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,exc_cls", [
        (401, MercadoPagoAuthError),
        (403, MercadoPagoAuthError),
        (404, MercadoPagoNotFoundError),
        (502, MercadoPagoServerError),
    ])
    async def test_status_mapping(self, status: int, exc_cls: type) -> None:
        client = _mp_client(lambda r: httpx.Response(status, text="nope"))
        with pytest.raises(exc_cls) as exc_info:
            await client.get_payment("1")
        await client.close()
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_connection_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = _mp_client(handler)
        with pytest.raises(MercadoPagoConnectionError):
            await client.get_payment("1")
        await client.close()


# ---------------------------------------------------------------------------
# PagSeguro
# ---------------------------------------------------------------------------


class TestPagSeguro:
    def test_parse_transaction_notification(self) -> None:
        assert parse_pagseguro({"notificationType": "transaction", "notificationCode": "ABC-123"}) == "ABC-123"

    def test_parse_other_notification(self) -> None:
        assert parse_pagseguro({"notificationType": "preApproval", "notificationCode": "X"}) is None
        assert parse_pagseguro({"notificationType": "transaction"}) is None

    @pytest.mark.asyncio
    async def test_paid_transaction_is_approved(self) -> None:
        async def lookup(code: str) -> dict:
            assert code == "ABC-123"
            return {"reference": "PAY_1_abc", "status": "3", "grossAmount": "30.00"}

        event = await PagSeguroVerifier(lookup).verify(WebhookDelivery(
            "pagseguro", {"notificationType": "transaction", "notificationCode": "ABC-123"},
        ))
        assert event.approved
        assert event.external_reference == "PAY_1_abc"
        assert event.metadata() == {
            "gateway": "PagSeguro", "notification_code": "ABC-123", "amount_reported": "30.00",
        }

    @pytest.mark.asyncio
    async def test_awaiting_payment_not_approved(self) -> None:
        async def lookup(code: str) -> dict:
            return {"reference": "PAY_1_abc", "status": 1}

        event = await PagSeguroVerifier(lookup).verify(WebhookDelivery(
            "pagseguro", {"notificationType": "transaction", "notificationCode": "ABC-123"},
        ))
        assert not event.approved
