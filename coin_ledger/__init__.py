"""
Coin Ledger

Ledger for a platform's virtual coin economy:
- Atomic, idempotent transfers, credits and debits
- Immutable transaction history with balance/ledger consistency
- Gifts with a platform fee
- One-time referral bonuses
- Monthly engagement earnings from ad revenue
- Withdrawal reservations with compensating refunds
- Read-side queries and coin activity projection
"""

from .config import LedgerSettings
from .models import (
    Account,
    LedgerErrorCode,
    PayoutRequest,
    PayoutStatus,
    Transaction,
    TransactionKind,
    TransferResult,
)
from .payout import PayoutRequestManager, QueuedPayoutGateway
from .queries import LedgerQueries
from .referral import ReferralProcessor
from .revenue import RevenueDistributor
from .service import LedgerService
from .store import AccountStore

__all__ = [
    "Account",
    "AccountStore",
    "LedgerErrorCode",
    "LedgerQueries",
    "LedgerService",
    "LedgerSettings",
    "PayoutRequest",
    "PayoutRequestManager",
    "PayoutStatus",
    "QueuedPayoutGateway",
    "ReferralProcessor",
    "RevenueDistributor",
    "Transaction",
    "TransactionKind",
    "TransferResult",
]
