import logging
from typing import Optional

from .currency import format_amount
from .models import Account, LedgerErrorCode, TransactionKind, TransferResult
from .service import LedgerService, Posting
from .store import normalize_referral_code

logger = logging.getLogger(__name__)

REFERRER_BONUS_DESCRIPTION = "Referral bonus for inviting a new member"
REFEREE_BONUS_DESCRIPTION = "Welcome bonus for joining with a referral code"


class ReferralProcessor:
    """Pays the one-time signup bonus when a new account redeems a referral code."""

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger

    @property
    def settings(self):
        return self.ledger.settings

    def apply_referral_bonus(
        self,
        new_account_id: str,
        referral_code: str,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        code = normalize_referral_code(referral_code or "")
        referrer = self.ledger.storage.find_by_referral_code(code) if code else None
        if referrer is None:
            logger.info("referral rejected: unknown code=%s account=%s", code, new_account_id)
            return TransferResult.failure(
                LedgerErrorCode.INVALID_REFERRAL_CODE, f"Referral code {code or '(empty)'} is not valid"
            )
        if referrer.id == new_account_id:
            return TransferResult.failure(
                LedgerErrorCode.INVALID_REFERRAL_CODE, "You can't redeem your own referral code"
            )

        postings = []
        if self.settings.referrer_bonus > 0:
            postings.append(Posting(
                referrer.id, self.settings.referrer_bonus, TransactionKind.REFERRAL_BONUS,
                REFERRER_BONUS_DESCRIPTION,
                counterparty_account_id=new_account_id,
            ))
        if self.settings.referee_bonus > 0:
            postings.append(Posting(
                new_account_id, self.settings.referee_bonus, TransactionKind.REFERRAL_BONUS,
                REFEREE_BONUS_DESCRIPTION,
                counterparty_account_id=referrer.id,
            ))

        def guard(accounts: dict[str, Account]) -> Optional[TransferResult]:
            if accounts[new_account_id].referred_by is not None:
                return TransferResult.failure(
                    LedgerErrorCode.REFERRAL_ALREADY_REDEEMED,
                    "A referral code has already been redeemed for this account",
                )
            return None

        return self.ledger.post(
            postings,
            idempotency_key=idempotency_key,
            operation="referral",
            guard=guard,
            account_updates={new_account_id: {"referred_by": referrer.id}},
            message=f"Referral applied: {format_amount(self.settings.referrer_bonus)} coins paid to the referrer",
        )

    def has_redeemed(self, account_id: str) -> bool:
        # referred_by is written in the same atomic unit as the bonus
        return self.ledger.storage.get_account(account_id).referred_by is not None
