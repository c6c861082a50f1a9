"""
Ledger configuration.

Bonus amounts, the coin exchange rate and the minimum withdrawal table are
business parameters, so they live here instead of in the ledger code.
"""

import logging
import os
from decimal import Decimal
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Minimum withdrawal per payout currency, in units of that currency
DEFAULT_MINIMUM_WITHDRAWAL = {
    "USD": Decimal("10"),
    "GBP": Decimal("8"),
    "EUR": Decimal("10"),
    "JPY": Decimal("1000"),
    "CNY": Decimal("70"),
    "INR": Decimal("800"),
    "CAD": Decimal("12"),
    "AUD": Decimal("15"),
    "BRL": Decimal("50"),
    "MXN": Decimal("200"),
    "NGN": Decimal("4000"),
    "ZAR": Decimal("150"),
    "KES": Decimal("1000"),
    "GHS": Decimal("60"),
}

ENV_PREFIX = "COIN_LEDGER_"

_ENV_FIELDS = (
    "coins_per_unit",
    "referrer_bonus",
    "referee_bonus",
    "minimum_gift",
    "gift_fee_rate",
    "platform_account_id",
    "user_pool_share",
    "creator_fund_share",
    "default_currency",
    "payout_stale_after_seconds",
    "max_history_page_size",
    "log_level",
)


class LedgerSettings(BaseModel):
    coins_per_unit: Decimal = Field(default=Decimal("1000"), gt=0, description="Coins per unit of payout currency")
    referrer_bonus: Decimal = Field(default=Decimal("100"), ge=0)
    referee_bonus: Decimal = Field(default=Decimal("0"), ge=0)
    minimum_gift: Decimal = Field(default=Decimal("10"), gt=0)
    gift_fee_rate: Decimal = Field(default=Decimal("0.30"), ge=0, lt=1, description="Share of a gift kept by the platform")
    platform_account_id: str = "platform"
    # Monthly ad revenue split; the platform keeps the remainder
    user_pool_share: Decimal = Field(default=Decimal("0.50"), ge=0, le=1)
    creator_fund_share: Decimal = Field(default=Decimal("0.10"), ge=0, le=1)
    default_currency: str = "USD"
    minimum_withdrawal: dict[str, Decimal] = Field(default_factory=lambda: dict(DEFAULT_MINIMUM_WITHDRAWAL))
    payout_stale_after_seconds: int = Field(default=5 * 24 * 3600, gt=0)
    max_history_page_size: int = Field(default=100, gt=0)
    log_level: str = "INFO"

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_revenue_split(self) -> "LedgerSettings":
        if self.user_pool_share + self.creator_fund_share > 1:
            raise ValueError("user_pool_share and creator_fund_share must not add up to more than 1")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LedgerSettings":
        env = os.environ if environ is None else environ
        values: dict = {}
        for name in _ENV_FIELDS:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is not None and raw.strip():
                values[name] = raw.strip()

        table = env.get(ENV_PREFIX + "MIN_WITHDRAWAL")
        if table:
            values["minimum_withdrawal"] = parse_minimum_table(table)
        return cls(**values)


def parse_minimum_table(raw: str) -> dict[str, Decimal]:
    """Parse ``"USD=10,GBP=8"`` into a currency table."""
    table = {}
    for item in raw.split(","):
        if not item.strip():
            continue
        currency, _, amount = item.partition("=")
        if not amount:
            raise ValueError(f"Invalid minimum withdrawal entry: {item!r}")
        table[currency.strip().upper()] = Decimal(amount.strip())
    return table


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
