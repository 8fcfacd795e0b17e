"""
Unit Tests for the Ledger Engine

Tests cover:
1. Wallet credit and debit
2. Postpaid draw, repayment and limits
3. Admin adjustments
4. Order payment reversal
5. Idempotent retries
6. Storage failures leaving no partial state
"""

import pytest
from decimal import Decimal

from wallet_ledger.engine import LedgerEngine
from wallet_ledger.errors import AccountNotFoundError, StorageUnavailableError
from wallet_ledger.models import BalanceKind, FailureReason, TransactionType
from wallet_ledger.transactions import TransactionLog


USER_ID = "dropshipper-001"
OTHER_USER_ID = "dropshipper-002"


def make_engine(wallet="0", credit_limit="0", postpaid_enabled=True, **kwargs) -> LedgerEngine:
    engine = LedgerEngine(**kwargs)
    engine.open_account(USER_ID, postpaid_enabled=postpaid_enabled, credit_limit=Decimal(credit_limit))
    if Decimal(wallet) > 0:
        engine.credit_wallet(USER_ID, Decimal(wallet), "seed")
    return engine


class FlakyTransactionLog(TransactionLog):
    """Transaction log whose next append can be made to time out."""

    def __init__(self):
        super().__init__()
        self.fail_next = False

    def append(self, transaction):
        if self.fail_next:
            self.fail_next = False
            raise StorageUnavailableError("write timed out")
        return super().append(transaction)


class TestWalletFlow:
    """Tests for wallet credits and debits."""

    def test_credit_wallet(self):
        """Test crediting the wallet records a wallet_credit entry."""
        engine = make_engine()

        result = engine.credit_wallet(USER_ID, Decimal("100.00"), "crypto_payment")

        assert result.success
        assert result.account.wallet_balance == Decimal("100.00")
        assert result.transaction.type == TransactionType.WALLET_CREDIT
        assert result.transaction.balance_kind == BalanceKind.WALLET
        assert result.transaction.balance_before == Decimal("0.00")
        assert result.transaction.balance_after == Decimal("100.00")
        assert result.transaction.metadata["source"] == "crypto_payment"

    @pytest.mark.parametrize("amount", [0, Decimal("-5"), "abc", Decimal("NaN"), float("inf"), "0.004", Decimal("1e30")])
    def test_invalid_amounts_rejected(self, amount):
        """Test that zero, negative, non-numeric and out-of-range amounts are refused."""
        engine = make_engine()

        result = engine.credit_wallet(USER_ID, amount, "manual_proof")

        assert not result.success
        assert result.reason == FailureReason.INVALID_AMOUNT
        assert engine.transactions.count_for_user(USER_ID) == 0

    def test_float_amounts_do_not_drift(self):
        """Test that float inputs are rounded to cents without drift."""
        engine = make_engine()

        for _ in range(3):
            engine.credit_wallet(USER_ID, 0.1, "manual_proof")

        assert engine.get_account(USER_ID).wallet_balance == Decimal("0.30")

    def test_debit_wallet(self):
        """Test paying for an order from the wallet."""
        engine = make_engine(wallet="100")

        result = engine.debit_wallet(USER_ID, Decimal("40.00"), "order-1")

        assert result.success
        assert result.account.wallet_balance == Decimal("60.00")
        assert result.transaction.type == TransactionType.WALLET_DEBIT
        assert result.transaction.related_order_id == "order-1"

    def test_debit_more_than_balance_fails(self):
        """Test that a debit above the wallet balance changes nothing."""
        engine = make_engine(wallet="50")

        result = engine.debit_wallet(USER_ID, Decimal("50.01"), "order-1")

        assert not result.success
        assert result.reason == FailureReason.INSUFFICIENT_BALANCE
        assert result.message == "Insufficient wallet balance"
        assert engine.get_account(USER_ID).wallet_balance == Decimal("50.00")
        assert engine.transactions.count_for_user(USER_ID) == 1

    def test_unknown_account(self):
        """Test operations on an account that does not exist."""
        engine = LedgerEngine()

        result = engine.credit_wallet("missing", Decimal("10"), "manual_proof")

        assert not result.success
        assert result.reason == FailureReason.ACCOUNT_NOT_FOUND
        with pytest.raises(AccountNotFoundError):
            engine.available_credit("missing")


class TestPostpaidFlow:
    """Tests for drawing and repaying postpaid credit."""

    def test_draw_then_repay_scenario(self):
        """Test drawing postpaid credit and repaying it from the wallet."""
        engine = make_engine(wallet="100", credit_limit="50")

        draw = engine.draw_postpaid_credit(USER_ID, Decimal("30.00"), "order-1")
        assert draw.success
        assert draw.account.postpaid_used == Decimal("30.00")
        assert engine.outstanding_dues(USER_ID) == Decimal("30.00")
        assert engine.available_credit(USER_ID) == Decimal("20.00")

        repay = engine.repay_postpaid(USER_ID, Decimal("30.00"))
        assert repay.success
        assert repay.account.wallet_balance == Decimal("70.00")
        assert repay.account.postpaid_used == Decimal("0.00")
        assert repay.transaction.type == TransactionType.CREDIT_REPAID
        assert repay.transaction.balance_after == Decimal("0.00")

    def test_draw_boundary(self):
        """Test drawing exactly the available credit and one cent more."""
        engine = make_engine(credit_limit="50")
        engine.draw_postpaid_credit(USER_ID, Decimal("20.00"), "order-1")

        over = engine.draw_postpaid_credit(USER_ID, Decimal("30.01"), "order-2")
        assert not over.success
        assert over.reason == FailureReason.CREDIT_LIMIT_EXCEEDED

        exact = engine.draw_postpaid_credit(USER_ID, Decimal("30.00"), "order-2")
        assert exact.success
        assert exact.account.postpaid_used == Decimal("50.00")
        assert engine.available_credit(USER_ID) == Decimal("0.00")

    def test_draw_requires_postpaid_enabled(self):
        """Test that drawing needs postpaid to be enabled."""
        engine = make_engine(credit_limit="50", postpaid_enabled=False)

        result = engine.draw_postpaid_credit(USER_ID, Decimal("10.00"), "order-1")

        assert not result.success
        assert result.reason == FailureReason.POSTPAID_DISABLED

    def test_repay_more_than_dues_fails(self):
        """Test that repayment cannot exceed outstanding dues."""
        engine = make_engine(wallet="100", credit_limit="50")
        engine.draw_postpaid_credit(USER_ID, Decimal("10.00"), "order-1")

        result = engine.repay_postpaid(USER_ID, Decimal("10.01"))

        assert not result.success
        assert result.reason == FailureReason.EXCEEDS_OUTSTANDING_DUES
        assert engine.outstanding_dues(USER_ID) == Decimal("10.00")

    def test_repay_more_than_wallet_fails(self):
        """Test that repayment cannot exceed the wallet balance."""
        engine = make_engine(wallet="5", credit_limit="50")
        engine.draw_postpaid_credit(USER_ID, Decimal("10.00"), "order-1")

        result = engine.repay_postpaid(USER_ID, Decimal("10.00"))

        assert not result.success
        assert result.reason == FailureReason.INSUFFICIENT_BALANCE

    def test_repay_full_dues_reaches_zero(self):
        """Test that repaying all dues leaves exactly zero used."""
        engine = make_engine(wallet="100", credit_limit="100")
        engine.draw_postpaid_credit(USER_ID, Decimal("33.33"), "order-1")
        engine.draw_postpaid_credit(USER_ID, Decimal("16.67"), "order-2")

        result = engine.repay_postpaid(USER_ID, engine.outstanding_dues(USER_ID))

        assert result.success
        assert result.account.postpaid_used == Decimal("0")
        assert result.account.postpaid_used >= 0

    def test_repay_allowed_after_postpaid_disabled(self):
        """Test that dues can be repaid after postpaid is switched off."""
        engine = make_engine(wallet="100", credit_limit="50")
        engine.draw_postpaid_credit(USER_ID, Decimal("20.00"), "order-1")
        engine.configure_postpaid(USER_ID, enabled=False)

        result = engine.repay_postpaid(USER_ID, Decimal("20.00"))

        assert result.success
        assert result.account.postpaid_used == Decimal("0.00")

    def test_credit_usage_percent(self):
        """Test usage percent rounding."""
        engine = make_engine(credit_limit="3")
        assert engine.credit_usage_percent(USER_ID) == Decimal("0.00")

        engine.draw_postpaid_credit(USER_ID, Decimal("2.00"), "order-1")
        assert engine.credit_usage_percent(USER_ID) == Decimal("66.67")

    def test_usage_percent_with_zero_limit(self):
        """Test usage percent is zero when there is no credit limit."""
        engine = make_engine(credit_limit="0")

        assert engine.credit_usage_percent(USER_ID) == Decimal("0")

    def test_postpaid_status(self):
        """Test the postpaid summary fields."""
        engine = make_engine(wallet="10", credit_limit="200")
        engine.draw_postpaid_credit(USER_ID, Decimal("50.00"), "order-1")

        status = engine.postpaid_status(USER_ID)

        assert status.enabled
        assert status.credit_limit == Decimal("200.00")
        assert status.used_credit == Decimal("50.00")
        assert status.available_credit == Decimal("150.00")
        assert status.outstanding_dues == Decimal("50.00")
        assert status.usage_percent == Decimal("25.00")
        assert status.has_outstanding_dues
        assert not status.can_request_payout

        engine.configure_postpaid(USER_ID, allow_payout_with_dues=True)
        assert engine.postpaid_status(USER_ID).can_request_payout


class TestAdminAdjustment:
    """Tests for manual admin corrections."""

    def test_postpaid_write_off(self):
        """Test an admin writing off postpaid dues."""
        engine = make_engine(credit_limit="50")
        engine.draw_postpaid_credit(USER_ID, Decimal("30.00"), "order-1")

        result = engine.admin_adjust(USER_ID, Decimal("-30.00"), "Disputed order written off", "admin-1")

        assert result.success
        assert result.account.postpaid_used == Decimal("0.00")
        assert result.transaction.type == TransactionType.ADMIN_ADJUSTMENT
        assert result.transaction.amount == Decimal("30.00")
        assert result.transaction.performed_by == "admin-1"
        assert result.transaction.metadata["direction"] == "decrease"

    def test_wallet_adjustment(self):
        """Test an admin topping up the wallet."""
        engine = make_engine(wallet="10")

        result = engine.admin_adjust(USER_ID, Decimal("15.50"), "Bonus", "admin-1", BalanceKind.WALLET)

        assert result.success
        assert result.account.wallet_balance == Decimal("25.50")

    def test_reason_required(self):
        """Test that an adjustment needs a reason."""
        engine = make_engine(credit_limit="50")

        result = engine.admin_adjust(USER_ID, Decimal("5"), "   ", "admin-1")

        assert result.reason == FailureReason.INVALID_REASON

    def test_zero_delta_rejected(self):
        """Test that a zero adjustment is refused."""
        engine = make_engine(credit_limit="50")

        result = engine.admin_adjust(USER_ID, Decimal("0"), "Nothing", "admin-1")

        assert result.reason == FailureReason.INVALID_AMOUNT

    def test_adjustment_keeps_invariants(self):
        """Test that adjustments cannot push balances out of range."""
        engine = make_engine(wallet="10", credit_limit="50")
        engine.draw_postpaid_credit(USER_ID, Decimal("20.00"), "order-1")

        below_zero = engine.admin_adjust(USER_ID, Decimal("-20.01"), "Too much", "admin-1")
        above_limit = engine.admin_adjust(USER_ID, Decimal("30.01"), "Too much", "admin-1")
        negative_wallet = engine.admin_adjust(USER_ID, Decimal("-10.01"), "Too much", "admin-1", BalanceKind.WALLET)

        assert below_zero.reason == FailureReason.EXCEEDS_OUTSTANDING_DUES
        assert above_limit.reason == FailureReason.CREDIT_LIMIT_EXCEEDED
        assert negative_wallet.reason == FailureReason.INSUFFICIENT_BALANCE
        account = engine.get_account(USER_ID)
        assert account.postpaid_used == Decimal("20.00")
        assert account.wallet_balance == Decimal("10.00")


class TestOrderReversal:
    """Tests for reversing the payment of a cancelled order."""

    def test_reverse_postpaid_draw(self):
        """Test reversing a cancelled order paid with postpaid credit."""
        engine = make_engine(credit_limit="100")
        engine.draw_postpaid_credit(USER_ID, Decimal("40.00"), "order-1")

        result = engine.reverse_order_payment(USER_ID, "order-1", "Order cancelled by supplier", "admin-1")

        assert result.success
        assert result.transaction.type == TransactionType.CREDIT_REVERSED
        assert result.account.postpaid_used == Decimal("0.00")

    def test_reverse_twice_returns_first_reversal(self):
        """Test that reversing the same order twice applies once."""
        engine = make_engine(credit_limit="100")
        engine.draw_postpaid_credit(USER_ID, Decimal("40.00"), "order-1")
        first = engine.reverse_order_payment(USER_ID, "order-1", "Cancelled")

        second = engine.reverse_order_payment(USER_ID, "order-1", "Cancelled again")

        assert second.success
        assert second.idempotent_replay
        assert second.transaction.id == first.transaction.id
        assert engine.outstanding_dues(USER_ID) == Decimal("0.00")

    def test_reverse_wallet_payment_refunds(self):
        """Test reversing a cancelled order paid from the wallet."""
        engine = make_engine(wallet="100")
        engine.debit_wallet(USER_ID, Decimal("25.00"), "order-2")

        result = engine.reverse_order_payment(USER_ID, "order-2", "Out of stock")

        assert result.success
        assert result.transaction.type == TransactionType.WALLET_CREDIT
        assert result.transaction.related_order_id == "order-2"
        assert result.account.wallet_balance == Decimal("100.00")

    def test_nothing_to_reverse(self):
        """Test reversing an order with no payment."""
        engine = make_engine(wallet="100")

        result = engine.reverse_order_payment(USER_ID, "order-404", "Cancelled")

        assert result.reason == FailureReason.NOTHING_TO_REVERSE

    def test_repaid_draw_is_not_reversed(self):
        """Test that a draw already repaid is not reversed again."""
        engine = make_engine(wallet="100", credit_limit="100")
        engine.draw_postpaid_credit(USER_ID, Decimal("40.00"), "order-1")
        engine.repay_postpaid(USER_ID, Decimal("40.00"))

        result = engine.reverse_order_payment(USER_ID, "order-1", "Cancelled")

        assert result.reason == FailureReason.NOTHING_TO_REVERSE
        assert engine.outstanding_dues(USER_ID) == Decimal("0.00")


class TestAccountConfiguration:
    """Tests for admin account settings."""

    def test_duplicate_account(self):
        """Test opening the same account twice."""
        engine = make_engine()

        result = engine.open_account(USER_ID)

        assert result.reason == FailureReason.ACCOUNT_EXISTS

    def test_credit_limit_cannot_drop_below_used(self):
        """Test credit limit changes against credit already used."""
        engine = make_engine(credit_limit="100")
        engine.draw_postpaid_credit(USER_ID, Decimal("60.00"), "order-1")

        lowered = engine.configure_postpaid(USER_ID, credit_limit=Decimal("59.99"))
        raised = engine.configure_postpaid(USER_ID, credit_limit=Decimal("150"), due_cycle_days=15)

        assert lowered.reason == FailureReason.INVALID_CREDIT_LIMIT
        assert raised.success
        assert raised.account.postpaid_credit_limit == Decimal("150.00")
        assert raised.account.postpaid_due_cycle_days == 15

    def test_version_increments_on_mutation(self):
        """Test that each write bumps the account version."""
        engine = make_engine()
        before = engine.get_account(USER_ID).version

        engine.credit_wallet(USER_ID, Decimal("1.00"), "manual_proof")
        engine.configure_postpaid(USER_ID, enabled=False)

        assert engine.get_account(USER_ID).version == before + 2

    def test_inactive_account_cannot_spend(self):
        """Test that a disabled account can be credited but not spend."""
        engine = make_engine(wallet="100", credit_limit="50")
        engine.set_active(USER_ID, False)

        debit = engine.debit_wallet(USER_ID, Decimal("10.00"), "order-1")
        draw = engine.draw_postpaid_credit(USER_ID, Decimal("10.00"), "order-1")
        credit = engine.credit_wallet(USER_ID, Decimal("10.00"), "manual_proof")

        assert debit.reason == FailureReason.ACCOUNT_INACTIVE
        assert draw.reason == FailureReason.ACCOUNT_INACTIVE
        assert credit.success


class TestIdempotency:
    """Tests for retries with idempotency keys."""

    def test_same_key_applies_once(self):
        """Test that the same idempotency key applies an operation once."""
        engine = make_engine()

        first = engine.credit_wallet(USER_ID, Decimal("100.00"), "crypto_payment", idempotency_key="tx-abc")
        second = engine.credit_wallet(USER_ID, Decimal("100.00"), "crypto_payment", idempotency_key="tx-abc")

        assert first.success and second.success
        assert second.idempotent_replay
        assert second.transaction.id == first.transaction.id
        assert engine.get_account(USER_ID).wallet_balance == Decimal("100.00")
        assert engine.transactions.count_for_user(USER_ID) == 1

    def test_same_key_different_operation_conflicts(self):
        """Test reusing a key for a different operation."""
        engine = make_engine()
        engine.credit_wallet(USER_ID, Decimal("100.00"), "crypto_payment", idempotency_key="tx-abc")

        result = engine.credit_wallet(USER_ID, Decimal("90.00"), "crypto_payment", idempotency_key="tx-abc")

        assert result.reason == FailureReason.IDEMPOTENCY_CONFLICT
        assert engine.get_account(USER_ID).wallet_balance == Decimal("100.00")

    def test_keys_are_scoped_per_user(self):
        """Test that idempotency keys do not collide across users."""
        engine = make_engine()
        engine.open_account(OTHER_USER_ID)

        engine.credit_wallet(USER_ID, Decimal("10.00"), "manual_proof", idempotency_key="proof-1")
        other = engine.credit_wallet(OTHER_USER_ID, Decimal("10.00"), "manual_proof", idempotency_key="proof-1")

        assert other.success
        assert not other.idempotent_replay


class TestStorageFailure:
    """Tests for ambiguous or failed durable writes."""

    def test_failed_append_leaves_no_partial_state(self):
        """Test that a failed log write leaves the account untouched."""
        log = FlakyTransactionLog()
        engine = make_engine(wallet="100", transactions=log)
        version = engine.get_account(USER_ID).version

        log.fail_next = True
        result = engine.debit_wallet(USER_ID, Decimal("40.00"), "order-1", idempotency_key="pay-order-1")

        assert not result.success
        assert result.reason == FailureReason.STORAGE_UNAVAILABLE
        assert result.retryable
        account = engine.get_account(USER_ID)
        assert account.wallet_balance == Decimal("100.00")
        assert account.version == version
        assert engine.transactions.count_for_user(USER_ID) == 1

    def test_retry_after_failure_succeeds_once(self):
        """Test retrying with the same key after a failed write."""
        log = FlakyTransactionLog()
        engine = make_engine(wallet="100", transactions=log)

        log.fail_next = True
        engine.debit_wallet(USER_ID, Decimal("40.00"), "order-1", idempotency_key="pay-order-1")
        retry = engine.debit_wallet(USER_ID, Decimal("40.00"), "order-1", idempotency_key="pay-order-1")
        again = engine.debit_wallet(USER_ID, Decimal("40.00"), "order-1", idempotency_key="pay-order-1")

        assert retry.success and not retry.idempotent_replay
        assert again.idempotent_replay
        assert engine.get_account(USER_ID).wallet_balance == Decimal("60.00")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
