"""
Monthly ad revenue distribution.

A month's ad revenue is split into a user pool, a creator fund and the
platform's share. The user pool is converted to coins and paid to accounts in
proportion to their engagement points, as ``earning`` credits in one atomic
unit keyed by the month. Running the same month again replays the original
result; running it with different numbers is an idempotency conflict.
"""

import logging
from datetime import datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Mapping

from .config import LedgerSettings
from .currency import CENT, COIN_PRECISION, MAX_COINS, Number, cash_to_coins, format_amount
from .models import DistributionResult, LedgerErrorCode, RevenueSplit, TransactionKind
from .service import LedgerService, Posting

logger = logging.getLogger(__name__)

MONTH_FORMATS = ("%Y-%m", "%Y-%m-%d")


def normalize_month(month: str) -> str:
    """``2024-05`` or ``2024-05-01`` -> ``2024-05``."""
    text = (month or "").strip()
    for fmt in MONTH_FORMATS:
        try:
            return datetime.strptime(text, fmt).strftime("%Y-%m")
        except ValueError:
            continue
    raise ValueError(f"Invalid month {month!r}, expected YYYY-MM")


def _decimal(value: Number, what: str) -> Decimal:
    try:
        number = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid {what} {value!r}") from exc
    if not number.is_finite() or number < 0:
        raise ValueError(f"Invalid {what} {value!r}")
    return number


def split_revenue(total_revenue: Number, settings: LedgerSettings) -> RevenueSplit:
    try:
        total = _decimal(total_revenue, "revenue").quantize(CENT, rounding=ROUND_DOWN)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid revenue {total_revenue!r}") from exc
    user_pool = (total * settings.user_pool_share).quantize(CENT, rounding=ROUND_DOWN)
    creator_fund = (total * settings.creator_fund_share).quantize(CENT, rounding=ROUND_DOWN)
    return RevenueSplit(
        total_revenue=total,
        user_pool=user_pool,
        creator_fund=creator_fund,
        platform_share=total - user_pool - creator_fund,
    )


class RevenueDistributor:
    def __init__(self, ledger: LedgerService):
        self.ledger = ledger

    @property
    def settings(self):
        return self.ledger.settings

    def distribute(
        self,
        month: str,
        total_revenue: Number,
        engagement_points: Mapping[str, Number],
    ) -> DistributionResult:
        """
        Pay ``month``'s user pool out as engagement earnings.

        Shares are truncated to coin precision; the leftover stays
        undistributed and is reported as ``pool_coins - distributed_coins``.
        Raises ValueError for a malformed month, revenue or points value.
        """
        month = normalize_month(month)
        split = split_revenue(total_revenue, self.settings)
        pool_coins = cash_to_coins(split.user_pool, self.settings)

        points = {}
        for account_id, value in engagement_points.items():
            number = _decimal(value, f"engagement points for {account_id}")
            if number > 0:
                points[account_id] = number
        total_points = sum(points.values(), Decimal("0"))

        details = {"month": month, "split": split, "pool_coins": pool_coins}
        if pool_coins > MAX_COINS:
            return DistributionResult.failure(
                LedgerErrorCode.INVALID_AMOUNT,
                f"User pool of {format_amount(pool_coins)} coins exceeds the per-operation limit",
            ).model_copy(update=details)
        if pool_coins <= 0 or total_points <= 0:
            return DistributionResult.failure(
                LedgerErrorCode.INVALID_AMOUNT,
                f"Nothing to distribute for {month}: the user pool or the engagement points are empty",
            ).model_copy(update=details)

        shares = {}
        for account_id in sorted(points):
            share = (pool_coins * points[account_id] / total_points).quantize(COIN_PRECISION, rounding=ROUND_DOWN)
            if share > 0:
                shares[account_id] = share
        distributed = sum(shares.values(), Decimal("0"))
        if not shares:
            return DistributionResult.failure(
                LedgerErrorCode.INVALID_AMOUNT,
                f"Nothing to distribute for {month}: every share rounds to zero",
            ).model_copy(update=details)

        postings = [
            Posting(account_id, share, TransactionKind.EARNING, f"Engagement earnings for {month}")
            for account_id, share in shares.items()
        ]
        result = self.ledger.post(
            postings,
            idempotency_key=f"revenue:{month}",
            operation="revenue_distribution",
            message=f"Distributed {format_amount(distributed)} coins to {len(shares)} accounts for {month}",
            result_cls=DistributionResult,
            result_fields={**details, "distributed_coins": distributed, "shares": shares},
        )
        if result.success and not result.replayed:
            logger.info("revenue distributed month=%s pool_coins=%s distributed=%s accounts=%d",
                        month, pool_coins, distributed, len(shares))
        return result
