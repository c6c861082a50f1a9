from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TransactionKind(str, Enum):
    PURCHASE = "purchase"
    TIP_SENT = "tip_sent"
    TIP_RECEIVED = "tip_received"
    GIFT_SENT = "gift_sent"
    GIFT_RECEIVED = "gift_received"
    PLATFORM_FEE = "platform_fee"
    REFERRAL_BONUS = "referral_bonus"
    EARNING = "earning"
    WITHDRAWAL = "withdrawal"
    ADJUSTMENT = "adjustment"


CREDIT_KINDS = frozenset({
    TransactionKind.PURCHASE,
    TransactionKind.REFERRAL_BONUS,
    TransactionKind.EARNING,
    TransactionKind.ADJUSTMENT,
})

DEBIT_KINDS = frozenset({
    TransactionKind.WITHDRAWAL,
    TransactionKind.ADJUSTMENT,
})


class LedgerErrorCode(str, Enum):
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    SELF_TRANSFER_NOT_ALLOWED = "SelfTransferNotAllowed"
    INVALID_REFERRAL_CODE = "InvalidReferralCode"
    REFERRAL_ALREADY_REDEEMED = "ReferralAlreadyRedeemed"
    BELOW_MINIMUM_WITHDRAWAL = "BelowMinimumWithdrawal"
    INVALID_AMOUNT = "InvalidAmount"
    EXTERNAL_PAYOUT_FAILED = "ExternalPayoutFailed"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PayoutOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class Account(BaseModel):
    id: str
    balance: Decimal
    version: int
    referral_code: str
    referred_by: Optional[str] = None
    payout_profile_ref: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: str
    account_id: str
    amount: Decimal
    kind: TransactionKind
    description: str
    balance_after: Decimal
    correlation_id: str
    sequence: int
    idempotency_key: Optional[str] = None
    related_post_id: Optional[str] = None
    counterparty_account_id: Optional[str] = None
    reference_transaction_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class TransferResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    transaction_ids: list[str] = Field(default_factory=list)
    correlation_id: Optional[str] = None
    message: Optional[str] = None
    error: Optional[LedgerErrorCode] = None
    current_balance: Optional[Decimal] = None
    replayed: bool = False

    @classmethod
    def failure(
        cls,
        error: LedgerErrorCode,
        message: str,
        current_balance: Optional[Decimal] = None,
    ) -> "TransferResult":
        return cls(success=False, error=error, message=message, current_balance=current_balance)


class PayoutResult(TransferResult):
    payout_request_id: Optional[str] = None


class GiftResult(TransferResult):
    receiver_amount: Optional[Decimal] = None
    platform_fee: Optional[Decimal] = None


class RevenueSplit(BaseModel):
    """One month of ad revenue, in payout currency units."""
    total_revenue: Decimal
    user_pool: Decimal
    creator_fund: Decimal
    platform_share: Decimal


class DistributionResult(TransferResult):
    month: Optional[str] = None
    split: Optional[RevenueSplit] = None
    pool_coins: Decimal = Decimal("0")
    distributed_coins: Decimal = Decimal("0")
    shares: dict[str, Decimal] = Field(default_factory=dict)


class PayoutRequest(BaseModel):
    id: str
    account_id: str
    amount: Decimal
    currency: str
    cash_amount: Decimal
    status: PayoutStatus
    reservation_transaction_id: str
    refund_transaction_id: Optional[str] = None
    external_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    attempts: int = 0
    created_at: datetime
    submitted_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_in_flight(self) -> bool:
        return self.status in (PayoutStatus.PENDING, PayoutStatus.SUBMITTED)


class PayoutSubmission(BaseModel):
    """What the payout gateway says about a hand-off."""
    accepted: bool
    external_reference: Optional[str] = None
    completed: bool = False
    error: Optional[str] = None


class PayoutCallback(BaseModel):
    payout_request_id: Optional[str] = None
    external_reference: Optional[str] = None
    status: PayoutOutcome
    reason: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "external_reference": "batch_1718291822",
            "status": "failed",
            "reason": "Receiver account is restricted",
        }
    })


class ReferralStats(BaseModel):
    account_id: str
    referral_code: str
    referred_count: int
    total_earned: Decimal


class TransactionPage(BaseModel):
    account_id: str
    items: list[Transaction]
    next_cursor: Optional[str] = None


class BalanceResponse(BaseModel):
    account_id: str
    balance: Decimal
    cash_value: Decimal
    currency: str


class BalanceAudit(BaseModel):
    account_id: str
    stored_balance: Decimal
    computed_balance: Decimal
    transaction_count: int
    consistent: bool


class CoinStats(BaseModel):
    account_id: str
    coins_sent: Decimal = Decimal("0")
    coins_received: Decimal = Decimal("0")
    referral_earnings: Decimal = Decimal("0")
    engagement_earnings: Decimal = Decimal("0")
    total_withdrawn: Decimal = Decimal("0")
    last_activity_at: Optional[datetime] = None


class CreateAccountRequest(BaseModel):
    account_id: Optional[str] = Field(default=None, description="Caller supplied id, generated when omitted")
    payout_profile_ref: Optional[str] = None


class PayoutProfileRequest(BaseModel):
    payout_profile_ref: str


class TransferRequest(BaseModel):
    from_account_id: str
    to_account_id: str
    amount: Decimal
    description: str = "Transfer"
    idempotency_key: str = Field(..., description="Unique key to prevent duplicates")
    related_post_id: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "from_account_id": "550e8400-e29b-41d4-a716-446655440000",
            "to_account_id": "660e8400-e29b-41d4-a716-446655440001",
            "amount": "5",
            "description": "Tip for post",
            "idempotency_key": "tip-550e8400-post-42-1",
            "related_post_id": "post-42",
        }
    })


class TipRequest(BaseModel):
    from_account_id: str
    to_account_id: str
    amount: Decimal
    post_id: str
    idempotency_key: str


class GiftRequest(BaseModel):
    from_account_id: str
    to_account_id: str
    amount: Decimal
    message: Optional[str] = Field(default=None, max_length=200)
    idempotency_key: str


class CreditRequest(BaseModel):
    amount: Decimal
    description: str = "Coin purchase"
    kind: TransactionKind = TransactionKind.PURCHASE
    idempotency_key: str


class DebitRequest(BaseModel):
    amount: Decimal
    description: str
    kind: TransactionKind = TransactionKind.ADJUSTMENT
    idempotency_key: str


class DistributionRequest(BaseModel):
    month: str = Field(..., description="YYYY-MM")
    total_revenue: Decimal = Field(..., ge=0)
    engagement_points: dict[str, Decimal]

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "month": "2024-05",
            "total_revenue": "1200.00",
            "engagement_points": {"550e8400-e29b-41d4-a716-446655440000": "340", "660e8400-e29b-41d4-a716-446655440001": "60"},
        }
    })


class RedeemReferralRequest(BaseModel):
    account_id: str
    referral_code: str
    idempotency_key: Optional[str] = None


class CreatePayoutRequest(BaseModel):
    account_id: str
    amount: Decimal
    currency: Optional[str] = None
    idempotency_key: Optional[str] = None


class CancelPayoutRequest(BaseModel):
    reason: str = Field(..., description="Reason for cancellation")
