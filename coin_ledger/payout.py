"""
Withdrawal requests.

A payout first reserves coins with a ``withdrawal`` debit, then hands the
request to an external payout gateway. Anything that ends the request without
a completed payout (gateway rejection, failure callback, cancellation) puts the
coins back with a compensating ``adjustment`` credit that references the
reservation.

Lifecycle: pending -> submitted -> completed / failed, and
pending | submitted -> cancelled.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from uuid import uuid4

from .currency import Number, coins_to_cash, format_amount, minimum_withdrawal, minimum_withdrawal_coins, valid_amount
from .errors import InvalidStateTransitionError, PayoutGatewayError, PayoutNotFoundError
from .models import (
    LedgerErrorCode,
    PayoutCallback,
    PayoutOutcome,
    PayoutRequest,
    PayoutResult,
    PayoutStatus,
    PayoutSubmission,
    TransactionKind,
)
from .service import LedgerService, invalid_amount_result
from .store import KeyedLocks

logger = logging.getLogger(__name__)


class PayoutGateway(Protocol):
    def submit(self, payout: PayoutRequest) -> PayoutSubmission:
        """Hand a payout to the processor. Raise PayoutGatewayError on transient failure."""
        ...


class QueuedPayoutGateway:
    """Accepts every request into a queue drained by an out-of-band payout job."""

    def __init__(self):
        self.queue: list[PayoutRequest] = []

    def submit(self, payout: PayoutRequest) -> PayoutSubmission:
        self.queue.append(payout)
        return PayoutSubmission(accepted=True, external_reference=f"queued-{payout.id}")


class PayoutRequestManager:
    def __init__(self, ledger: LedgerService, gateway: Optional[PayoutGateway] = None):
        self.ledger = ledger
        self.gateway = gateway or QueuedPayoutGateway()
        self._locks = KeyedLocks()

    @property
    def storage(self):
        return self.ledger.storage

    @property
    def settings(self):
        return self.ledger.settings

    def request_payout(
        self,
        account_id: str,
        amount: Number,
        currency: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PayoutResult:
        if idempotency_key is None:
            return self._request_payout(account_id, amount, currency, None)
        # Retries of one request must not race each other into two payout records
        with self._locks.hold(f"request:{idempotency_key}"):
            return self._request_payout(account_id, amount, currency, idempotency_key)

    def _request_payout(
        self,
        account_id: str,
        amount: Number,
        currency: Optional[str],
        idempotency_key: Optional[str],
    ) -> PayoutResult:
        currency = (currency or self.settings.default_currency).upper()
        coins = valid_amount(amount)
        if coins is None:
            return invalid_amount_result(amount, PayoutResult)
        amount = coins

        floor = minimum_withdrawal_coins(currency, self.settings)
        if amount < floor:
            return PayoutResult(
                success=False,
                error=LedgerErrorCode.BELOW_MINIMUM_WITHDRAWAL,
                message=(
                    f"Minimum withdrawal is {format_amount(minimum_withdrawal(currency, self.settings))} "
                    f"{currency} ({format_amount(floor)} coins)"
                ),
            )

        reservation = self.ledger.debit(
            account_id,
            amount,
            f"Withdrawal of {format_amount(amount)} coins to {currency}",
            kind=TransactionKind.WITHDRAWAL,
            idempotency_key=f"payout:{idempotency_key}" if idempotency_key else None,
        )
        if not reservation.success:
            return PayoutResult(**reservation.model_dump())

        if reservation.replayed:
            existing = self.storage.find_payout(reservation_transaction_id=reservation.transaction_id)
            if existing is not None:
                return self._result(existing, replayed=True)

        now = datetime.now(timezone.utc)
        payout = self.storage.save_payout({
            "id": str(uuid4()),
            "account_id": account_id,
            "amount": amount,
            "currency": currency,
            "cash_amount": coins_to_cash(amount, self.settings),
            "status": PayoutStatus.PENDING,
            "reservation_transaction_id": reservation.transaction_id,
            "refund_transaction_id": None,
            "external_reference": None,
            "failure_reason": None,
            "attempts": 0,
            "created_at": now,
            "submitted_at": None,
            "finalized_at": None,
        })
        logger.info("payout reserved id=%s account=%s amount=%s currency=%s",
                    payout.id, account_id, amount, currency)

        return self._result(self.submit(payout.id))

    def submit(self, payout_id: str) -> PayoutRequest:
        """Hand a pending request to the gateway. No-op for any other status."""
        with self._locks.hold(payout_id):
            payout = self.storage.get_payout(payout_id)
            if payout.status != PayoutStatus.PENDING:
                return payout

            payout = self.storage.update_payout(payout_id, attempts=payout.attempts + 1)
            try:
                submission = self.gateway.submit(payout)
            except PayoutGatewayError as exc:
                logger.warning("payout hand-off failed id=%s attempt=%d: %s", payout_id, payout.attempts, exc)
                return payout
            except Exception:
                # the coins are already reserved; keep the request pending so it is retried
                logger.exception("payout hand-off raised unexpectedly id=%s attempt=%d", payout_id, payout.attempts)
                return payout

            if not submission.accepted:
                logger.warning("payout rejected by gateway id=%s: %s", payout_id, submission.error)
                return self._reverse(payout, PayoutStatus.FAILED, submission.error or "Rejected by payout provider")

            now = datetime.now(timezone.utc)
            status = PayoutStatus.COMPLETED if submission.completed else PayoutStatus.SUBMITTED
            payout = self.storage.update_payout(
                payout_id,
                status=status,
                external_reference=submission.external_reference,
                submitted_at=now,
                finalized_at=now if status == PayoutStatus.COMPLETED else None,
            )
            logger.info("payout %s id=%s reference=%s", status.value, payout_id, submission.external_reference)
            return payout

    def retry_pending(self) -> list[PayoutRequest]:
        pending = [p for p in self.storage.list_payouts() if p.status == PayoutStatus.PENDING]
        return [self.submit(p.id) for p in pending]

    def handle_callback(self, callback: PayoutCallback) -> PayoutRequest:
        payout = self._resolve(callback)
        with self._locks.hold(payout.id):
            payout = self.storage.get_payout(payout.id)
            target = PayoutStatus.COMPLETED if callback.status == PayoutOutcome.COMPLETED else PayoutStatus.FAILED

            if not payout.is_in_flight():
                if payout.status == target:
                    logger.info("duplicate payout callback id=%s status=%s", payout.id, target.value)
                    return payout
                raise InvalidStateTransitionError(
                    f"Cannot mark payout {payout.id} {target.value}: it is already {payout.status.value}"
                )

            if target == PayoutStatus.COMPLETED:
                payout = self.storage.update_payout(
                    payout.id, status=PayoutStatus.COMPLETED, finalized_at=datetime.now(timezone.utc),
                )
                logger.info("payout completed id=%s", payout.id)
                return payout

            return self._reverse(payout, PayoutStatus.FAILED, callback.reason or "Payout failed")

    def cancel_payout(self, payout_id: str, reason: str) -> PayoutResult:
        with self._locks.hold(payout_id):
            payout = self.storage.get_payout(payout_id)
            if not payout.is_in_flight():
                raise InvalidStateTransitionError(
                    f"Cannot cancel payout {payout_id} in {payout.status.value} state"
                )
            payout = self._reverse(payout, PayoutStatus.CANCELLED, reason)
        return self._result(payout)

    def find_stale(self, now: Optional[datetime] = None) -> list[PayoutRequest]:
        """In-flight requests older than the configured window; these need out-of-band attention."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.settings.payout_stale_after_seconds)
        stale = [p for p in self.storage.list_payouts() if p.is_in_flight() and p.created_at <= cutoff]
        for payout in stale:
            logger.warning("stale payout id=%s status=%s created_at=%s reference=%s",
                           payout.id, payout.status.value, payout.created_at.isoformat(),
                           payout.external_reference)
        return stale

    def reconcile(self, now: Optional[datetime] = None) -> list[PayoutRequest]:
        """Resubmit stale pending requests; return everything still in flight past the window."""
        stale = self.find_stale(now)
        for payout in stale:
            if payout.status == PayoutStatus.PENDING:
                self.submit(payout.id)
        refreshed = [self.storage.get_payout(p.id) for p in stale]
        return [p for p in refreshed if p.is_in_flight()]

    def get_payout(self, payout_id: str) -> PayoutRequest:
        return self.storage.get_payout(payout_id)

    def list_payouts(self, account_id: str) -> list[PayoutRequest]:
        return self.storage.list_payouts(account_id)

    def _resolve(self, callback: PayoutCallback) -> PayoutRequest:
        if callback.payout_request_id:
            return self.storage.get_payout(callback.payout_request_id)
        if callback.external_reference:
            payout = self.storage.find_payout(external_reference=callback.external_reference)
            if payout is not None:
                return payout
            raise PayoutNotFoundError(f"No payout request with reference {callback.external_reference}")
        raise PayoutNotFoundError("Callback names neither a payout request nor an external reference")

    def _reverse(self, payout: PayoutRequest, status: PayoutStatus, reason: str) -> PayoutRequest:
        # caller holds the payout lock
        refund = self.ledger.refund(
            payout.reservation_transaction_id,
            description=f"Refund of withdrawal {payout.id}",
        )
        payout = self.storage.update_payout(
            payout.id,
            status=status,
            refund_transaction_id=refund.transaction_id,
            failure_reason=reason,
            finalized_at=datetime.now(timezone.utc),
        )
        logger.info("payout %s id=%s refunded=%s reason=%s",
                    status.value, payout.id, payout.amount, reason)
        return payout

    def _result(self, payout: PayoutRequest, replayed: bool = False) -> PayoutResult:
        common = {
            "transaction_id": payout.reservation_transaction_id,
            "transaction_ids": [t for t in (payout.reservation_transaction_id, payout.refund_transaction_id) if t],
            "payout_request_id": payout.id,
            "replayed": replayed,
        }
        if payout.status == PayoutStatus.FAILED:
            return PayoutResult(
                success=False,
                error=LedgerErrorCode.EXTERNAL_PAYOUT_FAILED,
                message=(
                    f"Payout failed: {payout.failure_reason}. "
                    f"{format_amount(payout.amount)} coins were returned to your balance"
                ),
                **common,
            )
        if payout.status == PayoutStatus.CANCELLED:
            return PayoutResult(
                success=True,
                message=f"Payout cancelled. {format_amount(payout.amount)} coins were returned to your balance",
                **common,
            )
        if payout.status == PayoutStatus.PENDING:
            message = "Withdrawal reserved; submission to the payout provider will be retried"
        elif payout.status == PayoutStatus.COMPLETED:
            message = f"Withdrawal of {payout.cash_amount} {payout.currency} completed"
        else:
            message = (
                f"Withdrawal of {payout.cash_amount} {payout.currency} requested. "
                "It will be processed within 3-5 business days"
            )
        return PayoutResult(success=True, message=message, **common)
