from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Optional, Union

from .config import LedgerSettings

COIN_PRECISION = Decimal("0.001")
CENT = Decimal("0.01")
# Largest amount a single operation may move
MAX_COINS = Decimal("1000000000000")

Number = Union[Decimal, int, float, str]


def to_coins(value: Number) -> Decimal:
    # str() first so floats such as 0.1 keep their written value
    try:
        coins = Decimal(str(value)).quantize(COIN_PRECISION, rounding=ROUND_DOWN)
    except InvalidOperation as exc:
        raise ValueError(f"{value!r} is not a valid coin amount") from exc
    if not coins.is_finite():
        raise ValueError(f"{value!r} is not a valid coin amount")
    return coins


def valid_amount(value: Number) -> Optional[Decimal]:
    """``value`` as a positive coin amount no larger than MAX_COINS, else None."""
    try:
        coins = to_coins(value)
    except ValueError:
        return None
    if coins <= 0 or coins > MAX_COINS:
        return None
    return coins


def coins_to_cash(coins: Number, settings: LedgerSettings) -> Decimal:
    return (Decimal(str(coins)) / settings.coins_per_unit).quantize(CENT, rounding=ROUND_DOWN)


def cash_to_coins(cash: Number, settings: LedgerSettings) -> Decimal:
    return (Decimal(str(cash)) * settings.coins_per_unit).to_integral_value(rounding=ROUND_DOWN)


def minimum_withdrawal(currency: Optional[str], settings: LedgerSettings) -> Decimal:
    """Minimum payout in units of ``currency``; unknown currencies use the default currency's floor."""
    code = (currency or settings.default_currency).upper()
    if code in settings.minimum_withdrawal:
        return settings.minimum_withdrawal[code]
    return settings.minimum_withdrawal.get(settings.default_currency, Decimal("10"))


def minimum_withdrawal_coins(currency: Optional[str], settings: LedgerSettings) -> Decimal:
    return cash_to_coins(minimum_withdrawal(currency, settings), settings)


def format_amount(amount: Number) -> str:
    """Plain rendering for messages: 40.000 -> '40', 0.500 -> '0.5'."""
    value = Decimal(str(amount))
    if value == value.to_integral_value():
        return f"{value.quantize(Decimal(1)):f}"
    return f"{value.normalize():f}"


def format_coins(amount: Number) -> str:
    value = Decimal(str(amount))
    if value >= 1_000_000:
        return f"{(value / 1_000_000).quantize(Decimal('0.1'), rounding=ROUND_DOWN)}M"
    if value >= 1_000:
        return f"{(value / 1_000).quantize(Decimal('0.1'), rounding=ROUND_DOWN)}K"
    return format_amount(value)
