"""Async HTTP client for the Mercado Pago payments API (lookup only)."""

from __future__ import annotations

from typing import Any

import httpx

_BASE_URL = "https://api.mercadopago.com"


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class MercadoPagoError(Exception):
    """Base exception for Mercado Pago operations."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MercadoPagoAuthError(MercadoPagoError):
    """401/403 — bad or under-privileged access token."""


class MercadoPagoNotFoundError(MercadoPagoError):
    """404 — unknown payment id."""


class MercadoPagoServerError(MercadoPagoError):
    """5xx — server-side error (retryable)."""


class MercadoPagoConnectionError(MercadoPagoError):
    """Network/DNS failure or timeout (retryable)."""


_STATUS_MAP: dict[int, type[MercadoPagoError]] = {
    401: MercadoPagoAuthError,
    403: MercadoPagoAuthError,
    404: MercadoPagoNotFoundError,
}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class MercadoPagoClient:
    """Looks up payments so webhook notifications are never trusted blindly."""

    def __init__(
        self,
        access_token: str,
        base_url: str = _BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=httpx.Timeout(connect=5.0, read=15.0, write=10.0, pool=5.0),
            transport=transport,
        )

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        """GET /v1/payments/{id} — payment details including ``status``."""
        try:
            response = await self._client.get(f"/v1/payments/{payment_id}")
        except httpx.ConnectError as exc:
            raise MercadoPagoConnectionError(str(exc)) from exc
        except httpx.TimeoutException as exc:
            raise MercadoPagoConnectionError(str(exc)) from exc

        if response.status_code >= 400:
            body = response.text
            exc_cls = _STATUS_MAP.get(response.status_code)
            if exc_cls is not None:
                raise exc_cls(body, status_code=response.status_code)
            if response.status_code >= 500:
                raise MercadoPagoServerError(body, status_code=response.status_code)
            raise MercadoPagoError(body, status_code=response.status_code)
        return response.json()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> MercadoPagoClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
