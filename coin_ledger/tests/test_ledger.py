"""
Unit Tests for the Ledger Service

Tests cover:
1. Transfer flow and its business-rule failures
2. Gifts and the platform fee
3. Credit / debit
4. Idempotency (duplicate prevention)
5. Compensating refunds
6. Concurrent access to the same account
7. Store outages
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from coin_ledger.config import LedgerSettings
from coin_ledger.errors import (
    AccountNotFoundError,
    IdempotencyConflictError,
    LedgerServiceError,
    StoreUnavailableError,
)
from coin_ledger.models import LedgerErrorCode, TransactionKind
from coin_ledger.service import LedgerService


def make_ledger(*balances):
    """A ledger with one account per balance, ids A, B, C..."""
    service = LedgerService()
    ids = []
    for index, balance in enumerate(balances):
        account_id = chr(ord("A") + index)
        service.storage.create_account(account_id)
        if balance:
            service.credit(account_id, balance, "Seed", idempotency_key=f"seed-{account_id}")
        ids.append(account_id)
    return service, ids


def history(service, account_id):
    return service.storage.transactions_for(account_id)


class TestTransferFlow:
    """Tests for transfers between accounts."""

    def test_transfer_entire_balance(self):
        """A with 500 tips B 500: A ends at 0, B gains 500, one new entry each."""
        service, (a, b) = make_ledger(500, 20)

        result = service.transfer(a, b, 500, "tip")

        assert result.success
        assert result.error is None
        assert len(result.transaction_ids) == 2
        assert service.storage.get_account(a).balance == Decimal("0")
        assert service.storage.get_account(b).balance == Decimal("520")
        assert len(history(service, a)) == 2
        assert len(history(service, b)) == 2

        sent, received = history(service, a)[-1], history(service, b)[-1]
        assert sent.kind == TransactionKind.TIP_SENT
        assert sent.amount == Decimal("-500")
        assert sent.counterparty_account_id == b
        assert received.kind == TransactionKind.TIP_RECEIVED
        assert received.amount == Decimal("500")
        assert sent.correlation_id == received.correlation_id == result.correlation_id

    def test_insufficient_balance_leaves_state_untouched(self):
        """A with 10 cannot send 100; nothing is written."""
        service, (a, b) = make_ledger(10, 0)

        result = service.transfer(a, b, 100, "tip")

        assert not result.success
        assert result.error == LedgerErrorCode.INSUFFICIENT_BALANCE
        assert result.current_balance == Decimal("10")
        assert result.message == "Insufficient balance: you have 10 coins but need 100"
        assert service.storage.get_account(a).balance == Decimal("10")
        assert service.storage.get_account(b).balance == Decimal("0")
        assert len(history(service, a)) == 1
        assert history(service, b) == []

    def test_self_transfer_rejected(self):
        service, (a,) = make_ledger(100)
        version = service.storage.get_account(a).version

        result = service.transfer(a, a, 50, "x")

        assert not result.success
        assert result.error == LedgerErrorCode.SELF_TRANSFER_NOT_ALLOWED
        assert service.storage.get_account(a).version == version

    @pytest.mark.parametrize("amount", [0, -5, "0.0001"])
    def test_non_positive_amount_rejected(self, amount):
        service, (a, b) = make_ledger(100, 0)

        result = service.transfer(a, b, amount, "tip")

        assert result.error == LedgerErrorCode.INVALID_AMOUNT
        assert service.storage.get_account(a).balance == Decimal("100")

    @pytest.mark.parametrize("amount", [
        Decimal("1e26"), "100000000000000000000000000", "NaN", "Infinity", "abc",
    ])
    def test_unrepresentable_amount_rejected(self, amount):
        """Amounts no coin balance can hold come back as InvalidAmount instead of raising."""
        service, (a, b) = make_ledger(100, 0)

        results = [
            service.transfer(a, b, amount, "tip"),
            service.credit(a, amount, "Coin purchase"),
            service.debit(a, amount, "Withdrawal"),
        ]

        assert all(r.error == LedgerErrorCode.INVALID_AMOUNT for r in results)
        assert service.storage.get_account(a).balance == Decimal("100")
        assert len(history(service, a)) == 1

    def test_fractional_tip(self):
        """Tips can be fractions of a coin."""
        service, (a, b) = make_ledger(1, 0)

        result = service.send_tip(a, b, 0.1, "post-1")

        assert result.success
        assert service.storage.get_account(a).balance == Decimal("0.9")
        tip = history(service, b)[-1]
        assert tip.related_post_id == "post-1"
        assert tip.description == "Tip for post"

    def test_unknown_account_raises(self):
        service, (a,) = make_ledger(100)

        with pytest.raises(AccountNotFoundError):
            service.transfer(a, "nobody", 10, "tip")
        assert service.storage.get_account(a).balance == Decimal("100")


class TestGift:
    """Tests for gifts with a platform fee."""

    def total_supply(self, service):
        return sum(account.balance for account in service.storage.list_accounts())

    def test_receiver_gets_amount_minus_fee(self):
        """A gifts 100: B gets 70, the platform account 30, nothing is created or lost."""
        service, (a, b) = make_ledger(100, 0)

        result = service.gift(a, b, 100, "Great stream")

        assert result.success
        assert result.receiver_amount == Decimal("70")
        assert result.platform_fee == Decimal("30")
        assert result.message == "You gifted 100 coins. They received 70 coins (30% platform fee)"
        assert service.storage.get_account(a).balance == Decimal("0")
        assert service.storage.get_account(b).balance == Decimal("70")
        platform = service.storage.get_account(service.settings.platform_account_id)
        assert platform.balance == Decimal("30")
        assert self.total_supply(service) == Decimal("100")

        kinds = {tx.kind for tx in service.storage.iter_transactions() if tx.correlation_id == result.correlation_id}
        assert kinds == {TransactionKind.GIFT_SENT, TransactionKind.GIFT_RECEIVED, TransactionKind.PLATFORM_FEE}
        assert "Great stream" in history(service, b)[-1].description

    def test_fee_truncates_in_receivers_favour(self):
        service, (a, b) = make_ledger(50, 0)

        result = service.gift(a, b, "10.001")

        assert result.platform_fee == Decimal("3.000")
        assert result.receiver_amount == Decimal("7.001")
        assert self.total_supply(service) == Decimal("50")

    def test_below_minimum(self):
        service, (a, b) = make_ledger(100, 0)

        result = service.gift(a, b, 9)

        assert result.error == LedgerErrorCode.INVALID_AMOUNT
        assert result.message == "Minimum gift is 10 coins"
        assert service.storage.get_account(a).balance == Decimal("100")

    def test_insufficient_balance(self):
        service, (a, b) = make_ledger(15, 0)

        result = service.gift(a, b, 20)

        assert result.error == LedgerErrorCode.INSUFFICIENT_BALANCE
        assert result.current_balance == Decimal("15")
        assert self.total_supply(service) == Decimal("15")
        assert service.storage.get_account(b).balance == Decimal("0")

    def test_self_gift(self):
        service, (a,) = make_ledger(100)

        assert service.gift(a, a, 50).error == LedgerErrorCode.SELF_TRANSFER_NOT_ALLOWED

    def test_zero_fee_rate_skips_fee_leg(self):
        service = LedgerService(settings=LedgerSettings(gift_fee_rate=Decimal("0")))
        service.storage.create_account("A")
        service.storage.create_account("B")
        service.credit("A", 100, "Seed")

        result = service.gift("A", "B", 40)

        assert len(result.transaction_ids) == 2
        assert service.storage.get_account("B").balance == Decimal("40")

    def test_retry_replays_gift(self):
        service, (a, b) = make_ledger(100, 0)

        first = service.gift(a, b, 50, idempotency_key="gift-1")
        second = service.gift(a, b, 50, idempotency_key="gift-1")

        assert second.replayed
        assert second.receiver_amount == first.receiver_amount == Decimal("35")
        assert service.storage.get_account(a).balance == Decimal("50")


class TestCreditDebit:
    """Tests for single-account credits and debits."""

    def test_credit_purchase(self):
        service, (a,) = make_ledger(0)

        result = service.credit(a, 250, "Coin purchase")

        assert result.success
        tx = service.storage.get_transaction(result.transaction_id)
        assert tx.kind == TransactionKind.PURCHASE
        assert tx.balance_after == Decimal("250")

    def test_debit_requires_balance(self):
        service, (a,) = make_ledger(30)

        result = service.debit(a, 40, "Withdrawal")

        assert result.error == LedgerErrorCode.INSUFFICIENT_BALANCE
        assert result.message == "Insufficient balance: you have 30 coins but need 40"

    def test_debit_to_zero(self):
        service, (a,) = make_ledger(30)

        result = service.debit(a, 30, "Withdrawal")

        assert result.success
        assert service.storage.get_account(a).balance == Decimal("0")

    def test_wrong_kind_is_a_caller_error(self):
        service, (a,) = make_ledger(30)

        with pytest.raises(ValueError):
            service.credit(a, 10, "oops", kind=TransactionKind.WITHDRAWAL)
        with pytest.raises(ValueError):
            service.debit(a, 10, "oops", kind=TransactionKind.PURCHASE)


class TestIdempotency:
    """Tests for retried calls carrying the same key."""

    def test_replayed_transfer_applies_once(self):
        service, (a, b) = make_ledger(100, 0)

        first = service.transfer(a, b, 40, "tip", idempotency_key="tip-1")
        second = service.transfer(a, b, 40, "tip", idempotency_key="tip-1")

        assert second.success
        assert second.replayed
        assert not first.replayed
        assert second.transaction_ids == first.transaction_ids
        assert service.storage.get_account(a).balance == Decimal("60")
        assert len(history(service, b)) == 1

    def test_key_reused_for_different_request_conflicts(self):
        service, (a, b) = make_ledger(100, 0)
        service.transfer(a, b, 40, "tip", idempotency_key="tip-1")

        with pytest.raises(IdempotencyConflictError):
            service.transfer(a, b, 41, "tip", idempotency_key="tip-1")
        assert service.storage.get_account(a).balance == Decimal("60")

    def test_failed_attempt_does_not_burn_the_key(self):
        """A retry after topping up succeeds with the same key."""
        service, (a, b) = make_ledger(10, 0)

        failed = service.transfer(a, b, 50, "tip", idempotency_key="tip-2")
        service.credit(a, 100, "Coin purchase")
        retried = service.transfer(a, b, 50, "tip", idempotency_key="tip-2")

        assert not failed.success
        assert retried.success
        assert not retried.replayed

    def test_concurrent_retries_apply_once(self):
        service, (a, b) = make_ledger(100, 0)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda _: service.transfer(a, b, 25, "tip", idempotency_key="tip-3"), range(16)
            ))

        assert all(r.success for r in results)
        assert sum(1 for r in results if not r.replayed) == 1
        assert service.storage.get_account(b).balance == Decimal("25")


class TestRefund:
    """Tests for compensating credits."""

    def test_refund_restores_debit(self):
        service, (a,) = make_ledger(100)
        debit = service.debit(a, 70, "Withdrawal")

        refund = service.refund(debit.transaction_id)

        assert refund.success
        tx = service.storage.get_transaction(refund.transaction_id)
        assert tx.kind == TransactionKind.ADJUSTMENT
        assert tx.reference_transaction_id == debit.transaction_id
        assert service.storage.get_account(a).balance == Decimal("100")

    def test_refund_applies_once(self):
        service, (a,) = make_ledger(100)
        debit = service.debit(a, 70, "Withdrawal")

        service.refund(debit.transaction_id)
        again = service.refund(debit.transaction_id)

        assert again.replayed
        assert service.storage.get_account(a).balance == Decimal("100")

    def test_refund_of_credit_rejected(self):
        service, (a,) = make_ledger(0)
        credit = service.credit(a, 10, "Coin purchase")

        with pytest.raises(LedgerServiceError):
            service.refund(credit.transaction_id)


class TestConcurrency:
    """Tests for concurrent callers."""

    def test_no_double_spend(self):
        """Twenty concurrent debits of 10 against 100: exactly ten succeed."""
        service, (a,) = make_ledger(100)
        barrier = threading.Barrier(20)

        def spend(_):
            barrier.wait()
            return service.debit(a, 10, "Withdrawal")

        with ThreadPoolExecutor(max_workers=20) as pool:
            results = list(pool.map(spend, range(20)))

        assert sum(1 for r in results if r.success) == 10
        assert all(r.error == LedgerErrorCode.INSUFFICIENT_BALANCE for r in results if not r.success)
        assert service.storage.get_account(a).balance == Decimal("0")

    def test_opposing_transfers_do_not_deadlock(self):
        service, (a, b) = make_ledger(1000, 1000)

        def move(i):
            if i % 2:
                return service.transfer(a, b, 1, "tip")
            return service.transfer(b, a, 1, "tip")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(move, range(400)))

        assert all(r.success for r in results)
        total = service.storage.get_account(a).balance + service.storage.get_account(b).balance
        assert total == Decimal("2000")


class TestStoreUnavailable:
    """Tests for infrastructure failures."""

    def test_closed_store_raises_and_applies_nothing(self):
        service, (a, b) = make_ledger(100, 0)
        service.storage.close()

        with pytest.raises(StoreUnavailableError):
            service.transfer(a, b, 10, "tip", idempotency_key="tip-4")

        service.storage.open()
        assert service.storage.get_account(a).balance == Decimal("100")
        assert service.transfer(a, b, 10, "tip", idempotency_key="tip-4").success
