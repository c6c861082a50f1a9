"""
Read-only accessors used by the UI and reporting collaborators.

Reads take no locks. A read that overlaps a commit may see the state just
before or just after it, never a later state than the store holds.
"""

import base64
import binascii
from decimal import Decimal
from typing import Optional

from .config import LedgerSettings
from .errors import InvalidCursorError
from .models import BalanceAudit, CoinStats, ReferralStats, TransactionKind, TransactionPage
from .projections import CoinStatsProjection
from .store import AccountStore


def encode_cursor(sequence: int) -> str:
    return base64.urlsafe_b64encode(f"seq:{sequence}".encode()).decode()


def decode_cursor(cursor: str) -> int:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode()).decode()
        prefix, _, value = raw.partition(":")
        if prefix != "seq":
            raise ValueError(raw)
        return int(value)
    except (ValueError, binascii.Error, UnicodeDecodeError) as exc:
        raise InvalidCursorError(f"Invalid cursor {cursor!r}") from exc


class LedgerQueries:
    def __init__(
        self,
        storage: AccountStore,
        settings: Optional[LedgerSettings] = None,
        projection: Optional[CoinStatsProjection] = None,
    ):
        self.storage = storage
        self.settings = settings or LedgerSettings()
        self.projection = projection

    def get_balance(self, account_id: str) -> Decimal:
        return self.storage.get_account(account_id).balance

    def get_transaction_history(
        self,
        account_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> TransactionPage:
        """Most recent first. Pass ``next_cursor`` back in to continue."""
        limit = max(1, min(limit, self.settings.max_history_page_size))
        transactions = self.storage.transactions_for(account_id)
        transactions.sort(key=lambda tx: tx.sequence, reverse=True)

        if cursor:
            before = decode_cursor(cursor)
            transactions = [tx for tx in transactions if tx.sequence < before]

        page = transactions[:limit]
        next_cursor = encode_cursor(page[-1].sequence) if len(transactions) > limit else None
        return TransactionPage(account_id=account_id, items=page, next_cursor=next_cursor)

    def get_referral_stats(self, account_id: str) -> ReferralStats:
        account = self.storage.get_account(account_id)
        referred_count = sum(1 for a in self.storage.list_accounts() if a.referred_by == account_id)
        total_earned = sum(
            (tx.amount for tx in self.storage.transactions_for(account_id)
             if tx.kind == TransactionKind.REFERRAL_BONUS),
            Decimal("0"),
        )
        return ReferralStats(
            account_id=account_id,
            referral_code=account.referral_code,
            referred_count=referred_count,
            total_earned=total_earned,
        )

    def audit_balance(self, account_id: str) -> BalanceAudit:
        account = self.storage.get_account(account_id)
        transactions = self.storage.transactions_for(account_id)
        computed = sum((tx.amount for tx in transactions), Decimal("0"))
        return BalanceAudit(
            account_id=account_id,
            stored_balance=account.balance,
            computed_balance=computed,
            transaction_count=len(transactions),
            consistent=computed == account.balance,
        )

    def get_coin_stats(self, account_id: str) -> CoinStats:
        self.storage.get_account(account_id)
        if self.projection is None:
            raise RuntimeError("No coin stats projection attached")
        return self.projection.get(account_id)

    def top_receivers(self, limit: int = 10) -> list[CoinStats]:
        if self.projection is None:
            raise RuntimeError("No coin stats projection attached")
        return self.projection.top_receivers(limit)
