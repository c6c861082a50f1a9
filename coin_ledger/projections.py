"""
Read-side projection of per-account coin activity.

Fed by the store's commit feed. It is a derived view for profile counters and
leaderboards and is never consulted for balances.
"""

import threading
from decimal import Decimal
from typing import Iterable

from .models import CoinStats, Transaction, TransactionKind
from .store import AccountStore


class CoinStatsProjection:
    def __init__(self):
        self._lock = threading.Lock()
        self._stats: dict[str, CoinStats] = {}
        self._seen: set[str] = set()

    @classmethod
    def attach(cls, storage: AccountStore) -> "CoinStatsProjection":
        projection = cls()
        projection.rebuild(storage)
        storage.subscribe(projection.apply)
        return projection

    def rebuild(self, storage: AccountStore) -> None:
        with self._lock:
            self._stats.clear()
            self._seen.clear()
        self.apply(sorted(storage.iter_transactions(), key=lambda tx: tx.sequence))

    def apply(self, transactions: Iterable[Transaction]) -> None:
        with self._lock:
            for tx in transactions:
                if tx.id in self._seen:
                    continue
                self._seen.add(tx.id)
                self._stats[tx.account_id] = _accumulate(self.get(tx.account_id), tx)

    def get(self, account_id: str) -> CoinStats:
        return self._stats.get(account_id) or CoinStats(account_id=account_id)

    def top_receivers(self, limit: int = 10) -> list[CoinStats]:
        ranked = sorted(self._stats.values(), key=lambda s: s.coins_received, reverse=True)
        return [s for s in ranked if s.coins_received > 0][:limit]


def _accumulate(stats: CoinStats, tx: Transaction) -> CoinStats:
    update: dict = {"last_activity_at": tx.created_at}
    if tx.kind in (TransactionKind.TIP_SENT, TransactionKind.GIFT_SENT):
        update["coins_sent"] = stats.coins_sent - tx.amount
    elif tx.kind in (TransactionKind.TIP_RECEIVED, TransactionKind.GIFT_RECEIVED):
        update["coins_received"] = stats.coins_received + tx.amount
    elif tx.kind == TransactionKind.REFERRAL_BONUS:
        update["referral_earnings"] = stats.referral_earnings + tx.amount
    elif tx.kind == TransactionKind.EARNING:
        update["engagement_earnings"] = stats.engagement_earnings + tx.amount
    elif tx.kind == TransactionKind.WITHDRAWAL:
        update["total_withdrawn"] = stats.total_withdrawn - tx.amount
    elif tx.kind == TransactionKind.ADJUSTMENT and tx.reference_transaction_id and tx.amount > 0:
        # refunded withdrawals do not count as withdrawn
        update["total_withdrawn"] = max(Decimal("0"), stats.total_withdrawn - tx.amount)
    return stats.model_copy(update=update)
