"""Direct-message notifications to purchasers and the operator.

``Notifier`` is the side-effect contract the dispatcher depends on.
``DiscordNotifier`` implements it over the Discord REST API with httpx.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from salesbot.constants import DM_CHANNEL_CACHE_SIZE

if TYPE_CHECKING:
    from salesbot.models import AccessKey, Payment

logger = logging.getLogger(__name__)

_DISCORD_API = "https://discord.com/api/v10"


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class DiscordError(Exception):
    """Base exception for Discord REST operations."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DiscordAuthError(DiscordError):
    """401 — bad bot token."""


class DiscordForbiddenError(DiscordError):
    """403 — e.g. the user does not accept direct messages."""


class DiscordNotFoundError(DiscordError):
    """404 — unknown user or channel."""


class DiscordRateLimitError(DiscordError):
    """429 — rate limited (retryable)."""


class DiscordConnectionError(DiscordError):
    """Network/DNS failure or timeout (retryable)."""


_STATUS_MAP: dict[int, type[DiscordError]] = {
    401: DiscordAuthError,
    403: DiscordForbiddenError,
    404: DiscordNotFoundError,
    429: DiscordRateLimitError,
}


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class Notifier(Protocol):
    """Delivers a plain-text direct message to a principal."""

    async def send_direct(self, principal_id: str, text: str) -> None: ...


# ---------------------------------------------------------------------------
# Discord implementation
# ---------------------------------------------------------------------------


class DiscordNotifier:
    """Sends DMs through the Discord REST API using a bot token.

    DM channel ids are cached per principal after the first lookup; the
    cache keeps the ``dm_cache_size`` most recently used entries.
    """

    def __init__(
        self,
        token: str,
        base_url: str = _DISCORD_API,
        transport: httpx.AsyncBaseTransport | None = None,
        dm_cache_size: int = DM_CHANNEL_CACHE_SIZE,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bot {token}"},
            timeout=httpx.Timeout(10.0),
            transport=transport,
        )
        self._dm_channels: OrderedDict[str, str] = OrderedDict()
        self._dm_cache_size = dm_cache_size

    async def _request(
        self, method: str, endpoint: str, json_data: dict[str, Any] | None = None
    ) -> Any:
        """Send a request and map errors to the Discord exception hierarchy."""
        try:
            response = await self._client.request(method, endpoint, json=json_data)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise DiscordConnectionError(str(exc)) from exc

        if response.status_code >= 400:
            exc_cls = _STATUS_MAP.get(response.status_code, DiscordError)
            raise exc_cls(response.text, status_code=response.status_code)
        return response.json()

    async def _dm_channel(self, principal_id: str) -> str:
        channel_id = self._dm_channels.get(principal_id)
        if channel_id is not None:
            self._dm_channels.move_to_end(principal_id)
            return channel_id
        data = await self._request(
            "POST", "/users/@me/channels", {"recipient_id": principal_id},
        )
        channel_id = str(data["id"])
        self._dm_channels[principal_id] = channel_id
        while len(self._dm_channels) > self._dm_cache_size:
            self._dm_channels.popitem(last=False)
        return channel_id

    async def send_direct(self, principal_id: str, text: str) -> None:
        channel_id = await self._dm_channel(principal_id)
        await self._request("POST", f"/channels/{channel_id}/messages", {"content": text})
        logger.debug("DM delivered to %s.", principal_id)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> DiscordNotifier:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()


# ---------------------------------------------------------------------------
# Message text
# ---------------------------------------------------------------------------


def purchaser_confirmation_text(payment: Payment, key: AccessKey | None = None) -> str:
    lines = [
        "✅ Payment confirmed!",
        f"Amount: {payment.amount:.2f} via {payment.method}",
        f"Plan: {payment.plan}",
        f"Payment ID: {payment.payment_id}",
    ]
    if key is not None:
        lines.append(f"Your access key: {key.key_value}")
    else:
        lines.append("Your product will be delivered within 12-24 hours.")
    return "\n".join(lines)


def owner_confirmation_text(payment: Payment, source: str) -> str:
    return "\n".join([
        f"🎉 Payment from {payment.display_name} confirmed ({source}).",
        f"Amount: {payment.amount:.2f} via {payment.method}",
        f"Plan: {payment.plan}",
        f"Payment ID: {payment.payment_id}",
    ])


def cancellation_text(payment: Payment) -> str:
    text = f"❌ Your payment for {payment.plan} ({payment.payment_id}) was cancelled."
    if payment.cancel_reason:
        text += f"\nReason: {payment.cancel_reason}"
    return text + "\nPlease try again or contact support."
