"""Confirmation dispatcher: the single choke point for payment confirmation.

Manual commands, gateway webhooks and dashboard actions all confirm or
cancel payments through here. The ledger's atomic transition decides who
wins; only the winner runs side effects (key issuance, purchaser and
owner notifications), so each payment is announced at most once no
matter how many triggers race on it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from salesbot.constants import MANUAL_PAYMENT_PREFIX, PaymentStatus
from salesbot.errors import AlreadyTerminalError, InvalidTransitionError, NotFoundError
from salesbot.notifier import (
    cancellation_text,
    owner_confirmation_text,
    purchaser_confirmation_text,
)

if TYPE_CHECKING:
    from salesbot.keys import KeyService
    from salesbot.models import AccessKey, Payment
    from salesbot.notifier import Notifier
    from salesbot.payment_ledger import PaymentLedger

logger = logging.getLogger(__name__)


class ConfirmationOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_CONFIRMED = "already_confirmed"
    NOT_FOUND = "not_found"


class CancellationOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_CANCELLED = "already_cancelled"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"


@dataclass
class ConfirmationResult:
    """What a confirmation trigger gets back.

    ``side_effect_errors`` lists notification/key failures that happened
    after the payment was committed as paid; they never undo it.
    """

    outcome: ConfirmationOutcome
    payment: Payment | None = None
    issued_key: AccessKey | None = None
    side_effect_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "payment": self.payment.to_dict() if self.payment else None,
            "issued_key": self.issued_key.key_value if self.issued_key else None,
            "side_effect_errors": list(self.side_effect_errors),
        }


@dataclass
class CancellationResult:
    outcome: CancellationOutcome
    payment: Payment | None = None
    side_effect_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "payment": self.payment.to_dict() if self.payment else None,
            "side_effect_errors": list(self.side_effect_errors),
        }


class ConfirmationDispatcher:
    """Idempotent, exactly-once-effectful confirm/cancel entry point."""

    def __init__(
        self,
        ledger: PaymentLedger,
        notifier: Notifier | None,
        owner_id: str,
        key_service: KeyService | None = None,
        issue_keys: bool = False,
        key_duration: str = "weekly",
    ) -> None:
        self._ledger = ledger
        self._notifier = notifier
        self._owner_id = owner_id
        self._key_service = key_service
        self._issue_keys = issue_keys and key_service is not None
        self._key_duration = key_duration

    async def confirm(
        self,
        payment_id: str,
        source: str,
        metadata: dict[str, Any] | None = None,
    ) -> ConfirmationResult:
        """Mark a payment as paid and fire side effects once.

        Returns ``not_found`` for unknown ids and ``already_confirmed`` for
        repeats. ``InvalidTransitionError`` propagates when the payment was
        cancelled or expired; ``PersistenceError`` when the store failed.
        """
        try:
            payment = await self._ledger.transition(
                payment_id, PaymentStatus.PAID, source, metadata,
            )
        except NotFoundError:
            logger.warning("Confirmation for unknown payment %s from %s.", payment_id, source)
            return ConfirmationResult(ConfirmationOutcome.NOT_FOUND)
        except AlreadyTerminalError as e:
            logger.info("Payment %s already confirmed; ignoring trigger from %s.", payment_id, source)
            return ConfirmationResult(ConfirmationOutcome.ALREADY_CONFIRMED, payment=e.payment)

        result = ConfirmationResult(ConfirmationOutcome.APPLIED, payment=payment)
        await self._run_confirmation_effects(result, payment, source)
        return result

    async def cancel(
        self,
        payment_id: str,
        actor: str,
        reason: str | None = None,
    ) -> CancellationResult:
        """Cancel a pending payment; paid or expired payments are rejected."""
        try:
            payment = await self._ledger.transition(
                payment_id, PaymentStatus.CANCELLED, actor, {"reason": reason},
            )
        except NotFoundError:
            return CancellationResult(CancellationOutcome.NOT_FOUND)
        except AlreadyTerminalError as e:
            return CancellationResult(CancellationOutcome.ALREADY_CANCELLED, payment=e.payment)
        except InvalidTransitionError as e:
            logger.info("Refused to cancel payment %s: %s", payment_id, e)
            current = await self._ledger.get(payment_id)
            return CancellationResult(CancellationOutcome.REJECTED, payment=current)

        result = CancellationResult(CancellationOutcome.APPLIED, payment=payment)
        error = await self._notify(payment.principal_id, cancellation_text(payment))
        if error:
            result.side_effect_errors.append(error)
        return result

    async def record_manual_sale(
        self,
        principal_id: str,
        display_name: str,
        amount: Decimal | int | str,
        plan: str,
        actor: str,
    ) -> ConfirmationResult:
        """Register an off-platform sale and confirm it immediately."""
        payment = await self._ledger.create(
            principal_id, display_name, plan, amount, "Manual",
            prefix=MANUAL_PAYMENT_PREFIX,
        )
        return await self.confirm(payment.payment_id, actor, {"manual": True})

    # -- side effects -------------------------------------------------------------

    async def _run_confirmation_effects(
        self, result: ConfirmationResult, payment: Payment, source: str
    ) -> None:
        if self._key_service is not None:
            try:
                await self._key_service.increment_sold(updated_by=source)
            except Exception as e:
                logger.error("Failed to count sale for payment %s: %s", payment.payment_id, e)
                result.side_effect_errors.append(f"sales counter: {e}")

        if self._issue_keys:
            try:
                result.issued_key = await self._key_service.issue(
                    payment.plan, self._key_duration, created_by=source,
                )
            except Exception as e:
                logger.error(
                    "Payment %s is paid but key issuance failed: %s", payment.payment_id, e,
                )
                result.side_effect_errors.append(f"key issuance: {e}")

        error = await self._notify(
            payment.principal_id, purchaser_confirmation_text(payment, result.issued_key),
        )
        if error:
            result.side_effect_errors.append(error)

        if self._owner_id and self._owner_id != payment.principal_id:
            error = await self._notify(self._owner_id, owner_confirmation_text(payment, source))
            if error:
                result.side_effect_errors.append(error)

    async def _notify(self, principal_id: str, text: str) -> str | None:
        """Deliver a DM. Returns an error description instead of raising."""
        if self._notifier is None:
            return None
        try:
            await self._notifier.send_direct(principal_id, text)
        except Exception as e:
            logger.warning("Could not notify %s: %s", principal_id, e)
            return f"notify {principal_id}: {e}"
        return None
