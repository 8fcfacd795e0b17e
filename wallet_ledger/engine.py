"""
Ledger engine: the only writer of wallet and postpaid balances.

Each mutating operation runs under the account lock, appends exactly one
transaction and commits the account in the same locked step. Rule violations
come back as failed ``LedgerResult``s carrying a ``FailureReason``; nothing is
partially applied.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import uuid4

from .config import settings
from .errors import AccountNotFoundError, LedgerRejection, StorageUnavailableError
from .models import (
    Account,
    AuditReport,
    BalanceKind,
    FailureReason,
    LedgerHistoryResponse,
    LedgerResult,
    PostpaidStatus,
    Transaction,
    TransactionType,
)
from .money import ZERO, AmountLike, to_decimal, to_positive_amount, usage_percent
from .store import AccountStore
from .transactions import TransactionLog

logger = logging.getLogger(__name__)

FUNDING_TYPES = {TransactionType.CREDIT_USED, TransactionType.WALLET_DEBIT}

Plan = Callable[[Account], tuple[Account, Transaction]]


def replay_balances(transactions: list[Transaction]) -> tuple[Decimal, Decimal]:
    """Rebuild (wallet_balance, postpaid_used) from a zero state."""
    wallet, used = ZERO, ZERO
    for tx in transactions:
        wallet, used = apply_effect(tx, wallet, used)
    return wallet, used


def apply_effect(tx: Transaction, wallet: Decimal, used: Decimal) -> tuple[Decimal, Decimal]:
    amount = tx.amount
    if tx.type == TransactionType.WALLET_CREDIT:
        return wallet + amount, used
    if tx.type == TransactionType.WALLET_DEBIT:
        return wallet - amount, used
    if tx.type == TransactionType.CREDIT_USED:
        return wallet, used + amount
    if tx.type == TransactionType.CREDIT_REPAID:
        return wallet - amount, used - amount
    if tx.type == TransactionType.CREDIT_REVERSED:
        return wallet, used - amount
    if tx.type == TransactionType.ADMIN_ADJUSTMENT:
        signed = amount if tx.metadata.get("direction") == "increase" else -amount
        if tx.balance_kind == BalanceKind.WALLET:
            return wallet + signed, used
        return wallet, used + signed
    raise ValueError(f"Unknown transaction type {tx.type}")


class LedgerEngine:
    def __init__(
        self,
        accounts: Optional[AccountStore] = None,
        transactions: Optional[TransactionLog] = None,
        default_currency: Optional[str] = None,
    ):
        self.accounts = accounts or AccountStore()
        self.transactions = transactions or TransactionLog()
        self.default_currency = default_currency or settings.DEFAULT_CURRENCY

    # ------------------------------------------------------------------
    # Account provisioning and admin flags
    # ------------------------------------------------------------------

    def open_account(
        self,
        user_id: str,
        currency: Optional[str] = None,
        postpaid_enabled: bool = False,
        credit_limit: AmountLike = ZERO,
        due_cycle_days: int = 0,
        allow_payout_with_dues: bool = False,
    ) -> LedgerResult:
        try:
            limit = to_decimal(credit_limit)
        except ValueError:
            return self._fail(FailureReason.INVALID_CREDIT_LIMIT)
        if limit < ZERO:
            return self._fail(FailureReason.INVALID_CREDIT_LIMIT)
        if due_cycle_days < 0:
            return self._fail(FailureReason.INVALID_AMOUNT, "Due cycle must be zero or more days")

        now = datetime.now(timezone.utc)
        account = Account(
            user_id=user_id,
            currency=currency or self.default_currency,
            postpaid_enabled=postpaid_enabled,
            postpaid_credit_limit=limit,
            postpaid_due_cycle_days=due_cycle_days,
            allow_payout_with_dues=allow_payout_with_dues,
            created_at=now,
            updated_at=now,
        )
        try:
            self.accounts.create(account)
        except LedgerRejection as e:
            return self._fail(e.reason, e.message)
        return LedgerResult(success=True, message="Account opened", account=account)

    def configure_postpaid(
        self,
        user_id: str,
        enabled: Optional[bool] = None,
        credit_limit: Optional[AmountLike] = None,
        due_cycle_days: Optional[int] = None,
        allow_payout_with_dues: Optional[bool] = None,
        performed_by: Optional[str] = None,
    ) -> LedgerResult:
        changes: dict = {}
        if enabled is not None:
            changes["postpaid_enabled"] = enabled
        if allow_payout_with_dues is not None:
            changes["allow_payout_with_dues"] = allow_payout_with_dues
        if due_cycle_days is not None:
            if due_cycle_days < 0:
                return self._fail(FailureReason.INVALID_AMOUNT, "Due cycle must be zero or more days")
            changes["postpaid_due_cycle_days"] = due_cycle_days
        if credit_limit is not None:
            try:
                changes["postpaid_credit_limit"] = to_decimal(credit_limit)
            except ValueError:
                return self._fail(FailureReason.INVALID_CREDIT_LIMIT)

        def mutation(account: Account) -> Account:
            limit = changes.get("postpaid_credit_limit")
            if limit is not None and (limit < ZERO or limit < account.postpaid_used):
                raise LedgerRejection(
                    FailureReason.INVALID_CREDIT_LIMIT,
                    f"Credit limit cannot be below the {account.postpaid_used} already used",
                )
            return account.model_copy(update=changes)

        result = self._update_flags(user_id, mutation, "Postpaid settings updated")
        if result.success:
            logger.info("Postpaid settings for %s changed by %s: %s", user_id, performed_by or "system", changes)
        return result

    def set_active(self, user_id: str, active: bool) -> LedgerResult:
        message = "Account activated" if active else "Account disabled"
        return self._update_flags(
            user_id,
            lambda account: account.model_copy(update={"is_active": active}),
            message,
        )

    # ------------------------------------------------------------------
    # Balance-affecting operations
    # ------------------------------------------------------------------

    def credit_wallet(
        self,
        user_id: str,
        amount: AmountLike,
        source: str,
        *,
        idempotency_key: Optional[str] = None,
        order_id: Optional[str] = None,
        payout_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerResult:
        try:
            value = to_positive_amount(amount)
        except ValueError:
            return self._fail(FailureReason.INVALID_AMOUNT)

        def plan(account: Account) -> tuple[Account, Transaction]:
            before = account.wallet_balance
            after = before + value
            tx = self._entry(
                account, TransactionType.WALLET_CREDIT, value, BalanceKind.WALLET, before, after,
                order_id=order_id, payout_id=payout_id, idempotency_key=idempotency_key,
                description=description or f"Wallet credit from {source}",
                metadata={"source": source},
            )
            return account.model_copy(update={"wallet_balance": after}), tx

        return self._apply(
            user_id, plan, "Wallet credited",
            idempotency_key=idempotency_key,
            matches=lambda tx: tx.type == TransactionType.WALLET_CREDIT and tx.amount == value,
        )

    def debit_wallet(
        self,
        user_id: str,
        amount: AmountLike,
        order_id: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
        payout_id: Optional[str] = None,
        description: Optional[str] = None,
        allow_inactive: bool = False,
    ) -> LedgerResult:
        try:
            value = to_positive_amount(amount)
        except ValueError:
            return self._fail(FailureReason.INVALID_AMOUNT)

        def plan(account: Account) -> tuple[Account, Transaction]:
            if not allow_inactive:
                self._require_active(account)
            before = account.wallet_balance
            if before < value:
                raise LedgerRejection(FailureReason.INSUFFICIENT_BALANCE)
            after = before - value
            tx = self._entry(
                account, TransactionType.WALLET_DEBIT, value, BalanceKind.WALLET, before, after,
                order_id=order_id, payout_id=payout_id, idempotency_key=idempotency_key,
                description=description or (f"Wallet payment for order {order_id}" if order_id else "Wallet debit"),
            )
            return account.model_copy(update={"wallet_balance": after}), tx

        return self._apply(
            user_id, plan, "Wallet debited",
            idempotency_key=idempotency_key,
            matches=lambda tx: (
                tx.type == TransactionType.WALLET_DEBIT
                and tx.amount == value
                and tx.related_order_id == order_id
            ),
        )

    def draw_postpaid_credit(
        self,
        user_id: str,
        amount: AmountLike,
        order_id: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> LedgerResult:
        try:
            value = to_positive_amount(amount)
        except ValueError:
            return self._fail(FailureReason.INVALID_AMOUNT)

        def plan(account: Account) -> tuple[Account, Transaction]:
            self._require_active(account)
            if not account.postpaid_enabled:
                raise LedgerRejection(FailureReason.POSTPAID_DISABLED)
            before = account.postpaid_used
            after = before + value
            if after > account.postpaid_credit_limit:
                raise LedgerRejection(
                    FailureReason.CREDIT_LIMIT_EXCEEDED,
                    f"You need {value} but only have {account.available_credit} available credit",
                )
            tx = self._entry(
                account, TransactionType.CREDIT_USED, value, BalanceKind.POSTPAID, before, after,
                order_id=order_id, idempotency_key=idempotency_key,
                description=f"Postpaid credit used for order {order_id}" if order_id else "Postpaid credit used",
            )
            return account.model_copy(update={"postpaid_used": after}), tx

        return self._apply(
            user_id, plan, "Postpaid credit drawn",
            idempotency_key=idempotency_key,
            matches=lambda tx: (
                tx.type == TransactionType.CREDIT_USED
                and tx.amount == value
                and tx.related_order_id == order_id
            ),
        )

    def repay_postpaid(
        self,
        user_id: str,
        amount: AmountLike,
        *,
        idempotency_key: Optional[str] = None,
    ) -> LedgerResult:
        try:
            value = to_positive_amount(amount)
        except ValueError:
            return self._fail(FailureReason.INVALID_AMOUNT)

        def plan(account: Account) -> tuple[Account, Transaction]:
            if value > account.wallet_balance:
                raise LedgerRejection(FailureReason.INSUFFICIENT_BALANCE)
            if value > account.postpaid_used:
                raise LedgerRejection(FailureReason.EXCEEDS_OUTSTANDING_DUES)
            before = account.postpaid_used
            after = before - value
            wallet_after = account.wallet_balance - value
            tx = self._entry(
                account, TransactionType.CREDIT_REPAID, value, BalanceKind.POSTPAID, before, after,
                idempotency_key=idempotency_key,
                description="Postpaid dues repayment from wallet",
                metadata={
                    "wallet_balance_before": str(account.wallet_balance),
                    "wallet_balance_after": str(wallet_after),
                },
            )
            return account.model_copy(update={"postpaid_used": after, "wallet_balance": wallet_after}), tx

        return self._apply(
            user_id, plan, "Postpaid dues repaid",
            idempotency_key=idempotency_key,
            matches=lambda tx: tx.type == TransactionType.CREDIT_REPAID and tx.amount == value,
        )

    def admin_adjust(
        self,
        user_id: str,
        delta: AmountLike,
        reason: str,
        admin_id: str,
        target: BalanceKind = BalanceKind.POSTPAID,
        *,
        idempotency_key: Optional[str] = None,
    ) -> LedgerResult:
        try:
            value = to_decimal(delta)
        except ValueError:
            return self._fail(FailureReason.INVALID_AMOUNT)
        if value == ZERO:
            return self._fail(FailureReason.INVALID_AMOUNT, "Adjustment must be non-zero")
        if not reason or not reason.strip():
            return self._fail(FailureReason.INVALID_REASON)
        direction = "increase" if value > ZERO else "decrease"

        def plan(account: Account) -> tuple[Account, Transaction]:
            if target == BalanceKind.WALLET:
                before = account.wallet_balance
                after = before + value
                if after < ZERO:
                    raise LedgerRejection(FailureReason.INSUFFICIENT_BALANCE)
                updated = account.model_copy(update={"wallet_balance": after})
            else:
                before = account.postpaid_used
                after = before + value
                if after < ZERO:
                    raise LedgerRejection(FailureReason.EXCEEDS_OUTSTANDING_DUES)
                if after > account.postpaid_credit_limit:
                    raise LedgerRejection(FailureReason.CREDIT_LIMIT_EXCEEDED)
                updated = account.model_copy(update={"postpaid_used": after})
            tx = self._entry(
                account, TransactionType.ADMIN_ADJUSTMENT, abs(value), target, before, after,
                idempotency_key=idempotency_key,
                description=reason.strip(),
                performed_by=admin_id,
                metadata={"direction": direction},
            )
            return updated, tx

        return self._apply(
            user_id, plan, "Balance adjusted",
            idempotency_key=idempotency_key,
            matches=lambda tx: (
                tx.type == TransactionType.ADMIN_ADJUSTMENT
                and tx.amount == abs(value)
                and tx.balance_kind == target
                and tx.metadata.get("direction") == direction
            ),
        )

    def reverse_order_payment(
        self,
        user_id: str,
        order_id: str,
        reason: str,
        performed_by: Optional[str] = None,
    ) -> LedgerResult:
        """Undo the funding of a cancelled order.

        A postpaid draw is reversed with ``credit_reversed``; a wallet payment
        is refunded with ``wallet_credit``. Calling it again for the same order
        returns the first reversal unchanged.
        """
        if not reason or not reason.strip():
            return self._fail(FailureReason.INVALID_REASON)
        key = f"reversal:{order_id}"

        def plan(account: Account) -> tuple[Account, Transaction]:
            funding = self.transactions.find_for_order(user_id, order_id, FUNDING_TYPES)
            if not funding:
                raise LedgerRejection(FailureReason.NOTHING_TO_REVERSE)
            original = funding[-1]
            common = dict(
                order_id=order_id, idempotency_key=key, performed_by=performed_by,
                metadata={"original_transaction_id": str(original.id), "reversal_reason": reason},
            )
            if original.type == TransactionType.CREDIT_USED:
                before = account.postpaid_used
                if before < original.amount:
                    raise LedgerRejection(
                        FailureReason.NOTHING_TO_REVERSE,
                        "Postpaid dues for this order were already repaid; adjust the balance manually",
                    )
                after = before - original.amount
                tx = self._entry(
                    account, TransactionType.CREDIT_REVERSED, original.amount, BalanceKind.POSTPAID,
                    before, after, description=f"Reversal: {reason}", **common,
                )
                return account.model_copy(update={"postpaid_used": after}), tx
            before = account.wallet_balance
            after = before + original.amount
            tx = self._entry(
                account, TransactionType.WALLET_CREDIT, original.amount, BalanceKind.WALLET,
                before, after, description=f"Refund: {reason}", **common,
            )
            return account.model_copy(update={"wallet_balance": after}), tx

        return self._apply(
            user_id, plan, "Order payment reversed",
            idempotency_key=key,
            matches=lambda tx: tx.related_order_id == order_id,
        )

    # ------------------------------------------------------------------
    # Derived values and reads
    # ------------------------------------------------------------------

    def get_account(self, user_id: str) -> Account:
        return self.accounts.get(user_id)

    def available_credit(self, user_id: str) -> Decimal:
        return self.accounts.get(user_id).available_credit

    def outstanding_dues(self, user_id: str) -> Decimal:
        return self.accounts.get(user_id).outstanding_dues

    def credit_usage_percent(self, user_id: str) -> Decimal:
        account = self.accounts.get(user_id)
        return usage_percent(account.postpaid_used, account.postpaid_credit_limit)

    def postpaid_status(self, user_id: str) -> PostpaidStatus:
        account = self.accounts.get(user_id)
        return PostpaidStatus(
            user_id=user_id,
            enabled=account.postpaid_enabled,
            credit_limit=account.postpaid_credit_limit,
            used_credit=account.postpaid_used,
            available_credit=account.available_credit,
            outstanding_dues=account.outstanding_dues,
            due_cycle_days=account.postpaid_due_cycle_days,
            usage_percent=usage_percent(account.postpaid_used, account.postpaid_credit_limit),
            has_outstanding_dues=account.postpaid_used > ZERO,
            can_request_payout=account.postpaid_used == ZERO or account.allow_payout_with_dues,
        )

    def list_transactions(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        account = self.accounts.get(user_id)
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=self.transactions.list_for_user(user_id, limit, offset),
            total_count=self.transactions.count_for_user(user_id),
            wallet_balance=account.wallet_balance,
            postpaid_used=account.postpaid_used,
        )

    def audit_account(self, user_id: str) -> AuditReport:
        with self.accounts.lock(user_id):
            account = self.accounts.get(user_id)
            entries = self.transactions.replay_order(user_id)

        wallet, used = ZERO, ZERO
        breaks = []
        for tx in entries:
            before = wallet if tx.balance_kind == BalanceKind.WALLET else used
            wallet, used = apply_effect(tx, wallet, used)
            after = wallet if tx.balance_kind == BalanceKind.WALLET else used
            if tx.balance_before != before or tx.balance_after != after:
                breaks.append(tx.id)

        consistent = wallet == account.wallet_balance and used == account.postpaid_used and not breaks
        if not consistent:
            logger.error("Ledger replay mismatch for %s: %d snapshot breaks", user_id, len(breaks))
        return AuditReport(
            user_id=user_id,
            transaction_count=len(entries),
            stored_wallet_balance=account.wallet_balance,
            replayed_wallet_balance=wallet,
            stored_postpaid_used=account.postpaid_used,
            replayed_postpaid_used=used,
            snapshot_breaks=breaks,
            consistent=consistent,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply(
        self,
        user_id: str,
        plan: Plan,
        message: str,
        idempotency_key: Optional[str] = None,
        matches: Optional[Callable[[Transaction], bool]] = None,
    ) -> LedgerResult:
        written: list[Transaction] = []

        def mutation(account: Account) -> Account:
            updated, tx = plan(account)
            self.transactions.append(tx)
            written.append(tx)
            return updated

        try:
            with self.accounts.lock(user_id):
                if idempotency_key:
                    existing = self.transactions.find_by_idempotency_key(user_id, idempotency_key)
                    if existing:
                        return self._replayed(user_id, existing, matches)
                account = self.accounts.update(user_id, mutation)
        except AccountNotFoundError:
            return self._fail(FailureReason.ACCOUNT_NOT_FOUND)
        except LedgerRejection as e:
            logger.info("Rejected operation on %s: %s", user_id, e.reason.value)
            return self._fail(e.reason, e.message)
        except StorageUnavailableError as e:
            logger.warning("Storage unavailable for %s: %s", user_id, e)
            return self._fail(FailureReason.STORAGE_UNAVAILABLE)

        tx = self.transactions.get(written[0].id) or written[0]
        logger.info("%s %s %s for %s", tx.type.value, tx.amount, account.currency, user_id)
        return LedgerResult(success=True, message=message, account=account, transaction=tx)

    def _replayed(
        self,
        user_id: str,
        existing: Transaction,
        matches: Optional[Callable[[Transaction], bool]],
    ) -> LedgerResult:
        if matches is not None and not matches(existing):
            return self._fail(FailureReason.IDEMPOTENCY_CONFLICT)
        return LedgerResult(
            success=True,
            message="Operation already applied (idempotent return)",
            account=self.accounts.get(user_id),
            transaction=existing,
            idempotent_replay=True,
        )

    def _update_flags(self, user_id: str, mutation: Callable[[Account], Account], message: str) -> LedgerResult:
        try:
            account = self.accounts.update(user_id, mutation)
        except AccountNotFoundError:
            return self._fail(FailureReason.ACCOUNT_NOT_FOUND)
        except LedgerRejection as e:
            return self._fail(e.reason, e.message)
        return LedgerResult(success=True, message=message, account=account)

    @staticmethod
    def _require_active(account: Account) -> None:
        if not account.is_active:
            raise LedgerRejection(FailureReason.ACCOUNT_INACTIVE)

    @staticmethod
    def _entry(
        account: Account,
        tx_type: TransactionType,
        amount: Decimal,
        kind: BalanceKind,
        before: Decimal,
        after: Decimal,
        *,
        description: str,
        order_id: Optional[str] = None,
        payout_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        performed_by: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Transaction:
        return Transaction(
            id=uuid4(),
            user_id=account.user_id,
            type=tx_type,
            amount=amount,
            balance_kind=kind,
            balance_before=before,
            balance_after=after,
            related_order_id=order_id,
            related_payout_id=payout_id,
            idempotency_key=idempotency_key,
            description=description,
            performed_by=performed_by,
            created_at=datetime.now(timezone.utc),
            metadata=metadata or {},
        )

    @staticmethod
    def _fail(reason: FailureReason, message: Optional[str] = None) -> LedgerResult:
        return LedgerResult(success=False, reason=reason, message=message or reason.message)
