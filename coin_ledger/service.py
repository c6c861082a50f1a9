import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Callable, Optional
from uuid import uuid4

from .config import LedgerSettings
from .currency import COIN_PRECISION, MAX_COINS, Number, format_amount, valid_amount
from .errors import IdempotencyConflictError, LedgerServiceError
from .models import (
    CREDIT_KINDS,
    DEBIT_KINDS,
    Account,
    GiftResult,
    LedgerErrorCode,
    TransactionKind,
    TransferResult,
)
from .store import AccountStore, BalanceChange

logger = logging.getLogger(__name__)

Guard = Callable[[dict[str, Account]], Optional[TransferResult]]


@dataclass(frozen=True)
class Posting:
    """One leg of a ledger operation; ``amount`` is signed."""
    account_id: str
    amount: Decimal
    kind: TransactionKind
    description: str
    counterparty_account_id: Optional[str] = None
    related_post_id: Optional[str] = None
    reference_transaction_id: Optional[str] = None


class LedgerService:
    """
    Applies balance-changing operations atomically against an AccountStore.

    Business-rule failures come back as failed ``TransferResult`` values.
    Only infrastructure problems (``StoreUnavailableError``) and caller bugs
    are raised.
    """

    def __init__(self, storage: Optional[AccountStore] = None, settings: Optional[LedgerSettings] = None):
        self.storage = storage or AccountStore()
        self.settings = settings or LedgerSettings()

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Number,
        description: str,
        idempotency_key: Optional[str] = None,
        related_post_id: Optional[str] = None,
    ) -> TransferResult:
        if from_account_id == to_account_id:
            return TransferResult.failure(
                LedgerErrorCode.SELF_TRANSFER_NOT_ALLOWED, "You can't send coins to yourself"
            )
        coins = valid_amount(amount)
        if coins is None:
            return invalid_amount_result(amount)
        amount = coins

        postings = [
            Posting(from_account_id, -amount, TransactionKind.TIP_SENT, description,
                    counterparty_account_id=to_account_id, related_post_id=related_post_id),
            Posting(to_account_id, amount, TransactionKind.TIP_RECEIVED, description,
                    counterparty_account_id=from_account_id, related_post_id=related_post_id),
        ]
        return self.post(
            postings,
            idempotency_key=idempotency_key,
            operation="transfer",
            message=f"Sent {format_amount(amount)} coins",
        )

    def send_tip(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Number,
        post_id: str,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        return self.transfer(
            from_account_id, to_account_id, amount, "Tip for post",
            idempotency_key=idempotency_key, related_post_id=post_id,
        )

    def gift(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Number,
        message: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GiftResult:
        """
        Gift coins to another account.

        The platform keeps ``gift_fee_rate`` of the amount, credited to the
        platform account in the same atomic unit; the receiver gets the rest.
        """
        if from_account_id == to_account_id:
            return GiftResult.failure(
                LedgerErrorCode.SELF_TRANSFER_NOT_ALLOWED, "You can't gift coins to yourself"
            )
        coins = valid_amount(amount)
        if coins is None:
            return invalid_amount_result(amount, GiftResult)
        if coins < self.settings.minimum_gift:
            return GiftResult.failure(
                LedgerErrorCode.INVALID_AMOUNT,
                f"Minimum gift is {format_amount(self.settings.minimum_gift)} coins",
            )

        fee = (coins * self.settings.gift_fee_rate).quantize(COIN_PRECISION, rounding=ROUND_DOWN)
        receiver_gets = coins - fee
        platform_id = self.storage.ensure_account(self.settings.platform_account_id).id

        description = f"Gift of {format_amount(coins)} coins"
        if message:
            description = f"{description}: {message}"
        postings = [
            Posting(from_account_id, -coins, TransactionKind.GIFT_SENT, description,
                    counterparty_account_id=to_account_id),
            Posting(to_account_id, receiver_gets, TransactionKind.GIFT_RECEIVED,
                    f"{description} (you get {format_amount(receiver_gets)}, fee {format_amount(fee)})",
                    counterparty_account_id=from_account_id),
        ]
        if fee > 0:
            postings.append(Posting(platform_id, fee, TransactionKind.PLATFORM_FEE,
                                    f"Platform fee on gift from {from_account_id}",
                                    counterparty_account_id=from_account_id))

        return self.post(
            postings,
            idempotency_key=idempotency_key,
            operation="gift",
            message=(
                f"You gifted {format_amount(coins)} coins. They received {format_amount(receiver_gets)} "
                f"coins ({format_amount(self.settings.gift_fee_rate * 100)}% platform fee)"
            ),
            result_cls=GiftResult,
            result_fields={"receiver_amount": receiver_gets, "platform_fee": fee},
        )

    def credit(
        self,
        account_id: str,
        amount: Number,
        description: str,
        kind: TransactionKind = TransactionKind.PURCHASE,
        idempotency_key: Optional[str] = None,
        reference_transaction_id: Optional[str] = None,
    ) -> TransferResult:
        kind = TransactionKind(kind)
        if kind not in CREDIT_KINDS:
            raise ValueError(f"{kind.value} is not a credit kind")
        coins = valid_amount(amount)
        if coins is None:
            return invalid_amount_result(amount)
        amount = coins

        posting = Posting(account_id, amount, kind, description,
                          reference_transaction_id=reference_transaction_id)
        return self.post(
            [posting],
            idempotency_key=idempotency_key,
            operation="credit",
            message=f"Added {format_amount(amount)} coins",
        )

    def debit(
        self,
        account_id: str,
        amount: Number,
        description: str,
        kind: TransactionKind = TransactionKind.WITHDRAWAL,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        kind = TransactionKind(kind)
        if kind not in DEBIT_KINDS:
            raise ValueError(f"{kind.value} is not a debit kind")
        coins = valid_amount(amount)
        if coins is None:
            return invalid_amount_result(amount)
        amount = coins

        return self.post(
            [Posting(account_id, -amount, kind, description)],
            idempotency_key=idempotency_key,
            operation="debit",
            message=f"Deducted {format_amount(amount)} coins",
        )

    def refund(self, transaction_id: str, description: Optional[str] = None) -> TransferResult:
        """Compensating credit for a debit. A debit can be refunded once."""
        original = self.storage.get_transaction(transaction_id)
        if original is None:
            raise LedgerServiceError(f"Transaction {transaction_id} not found")
        if original.amount >= 0:
            raise LedgerServiceError(f"Transaction {transaction_id} is not a debit")

        return self.credit(
            original.account_id,
            -original.amount,
            description or f"Refund of transaction {transaction_id}",
            kind=TransactionKind.ADJUSTMENT,
            idempotency_key=f"refund:{transaction_id}",
            reference_transaction_id=transaction_id,
        )

    def post(
        self,
        postings: list[Posting],
        *,
        idempotency_key: Optional[str] = None,
        operation: str,
        guard: Optional[Guard] = None,
        account_updates: Optional[dict[str, dict]] = None,
        message: Optional[str] = None,
        result_cls=TransferResult,
        result_fields: Optional[dict] = None,
    ) -> TransferResult:
        """
        Apply ``postings`` as one atomic unit.

        Holds every involved account lock (sorted order) for the whole
        check-then-write sequence:

        1. replay a known idempotency key
        2. run ``guard`` on the locked account snapshots
        3. reject if any balance would go negative
        4. commit balances, entries, account updates and the key together
        """
        account_ids = {p.account_id for p in postings} | set(account_updates or {})
        fingerprint = _fingerprint(operation, postings, account_updates)

        with self.storage.locks.hold(*account_ids):
            if idempotency_key:
                replay = self._replay(idempotency_key, fingerprint)
                if replay is not None:
                    logger.info("%s replayed idempotency_key=%s", operation, idempotency_key)
                    return replay

            accounts = {account_id: self.storage.get_account(account_id) for account_id in account_ids}

            if guard is not None:
                rejection = guard(accounts)
                if rejection is not None:
                    logger.info("%s rejected error=%s accounts=%s", operation,
                                rejection.error.value if rejection.error else None, sorted(account_ids))
                    return rejection

            balances = {account_id: account.balance for account_id, account in accounts.items()}
            for posting in postings:
                balances[posting.account_id] += posting.amount

            for account_id, balance in balances.items():
                if balance < 0:
                    have = accounts[account_id].balance
                    need = -sum(p.amount for p in postings if p.account_id == account_id)
                    logger.info("%s rejected: insufficient balance account=%s have=%s need=%s",
                                operation, account_id, have, need)
                    return result_cls.failure(
                        LedgerErrorCode.INSUFFICIENT_BALANCE,
                        f"Insufficient balance: you have {format_amount(have)} coins "
                        f"but need {format_amount(need)}",
                        current_balance=have,
                    )

            now = datetime.now(timezone.utc)
            correlation_id = str(uuid4())
            running = {account_id: account.balance for account_id, account in accounts.items()}
            entries = []
            for posting in postings:
                running[posting.account_id] += posting.amount
                entries.append({
                    "id": str(uuid4()),
                    "account_id": posting.account_id,
                    "amount": posting.amount,
                    "kind": posting.kind,
                    "description": posting.description,
                    "balance_after": running[posting.account_id],
                    "correlation_id": correlation_id,
                    "idempotency_key": idempotency_key,
                    "related_post_id": posting.related_post_id,
                    "counterparty_account_id": posting.counterparty_account_id,
                    "reference_transaction_id": posting.reference_transaction_id,
                    "created_at": now,
                })

            result = result_cls(
                success=True,
                transaction_id=entries[0]["id"] if entries else None,
                transaction_ids=[entry["id"] for entry in entries],
                correlation_id=correlation_id,
                message=message,
                **(result_fields or {}),
            )
            changes = [
                BalanceChange(account_id, accounts[account_id].version, balances[account_id])
                for account_id in sorted(account_ids)
            ]
            self.storage.commit(
                changes,
                entries,
                account_updates=account_updates,
                idempotency=(idempotency_key, fingerprint, result) if idempotency_key else None,
            )

        logger.info("%s applied correlation_id=%s transactions=%d", operation, correlation_id, len(entries))
        return result

    def _replay(self, idempotency_key: str, fingerprint: str) -> Optional[TransferResult]:
        record = self.storage.find_idempotent(idempotency_key)
        if record is None:
            return None
        if record["fingerprint"] != fingerprint:
            raise IdempotencyConflictError(
                f"Idempotency key {idempotency_key} was already used for a different request"
            )
        return record["result"].model_copy(update={"replayed": True})


def invalid_amount_result(amount: Number, result_cls=TransferResult):
    return result_cls.failure(
        LedgerErrorCode.INVALID_AMOUNT,
        f"Amount must be positive and at most {format_amount(MAX_COINS)} coins, got {amount}",
    )


def _fingerprint(operation: str, postings: list[Posting], account_updates: Optional[dict]) -> str:
    payload = {
        "operation": operation,
        "postings": [
            [p.account_id, str(p.amount), p.kind.value, p.description,
             p.counterparty_account_id, p.related_post_id, p.reference_transaction_id]
            for p in postings
        ],
        "updates": account_updates or {},
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()
