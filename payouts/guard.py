from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from wallet_ledger.engine import LedgerEngine
from wallet_ledger.errors import AccountNotFoundError
from wallet_ledger.models import FailureReason, LedgerResult
from wallet_ledger.money import ZERO, to_positive_amount

from .models import (
    AdmissionDecision,
    PaymentDetails,
    PayoutMethod,
    PayoutRequest,
    PayoutResult,
    PayoutStatus,
    PayoutStatusChange,
    WithdrawableBalance,
    describe_destination,
)
from .policy import PlatformConfig, can_request_payout, withdrawable_balance

logger = logging.getLogger(__name__)


class PayoutStore:
    def __init__(self):
        self.payouts: dict[UUID, dict] = {}
        self.history: dict[UUID, list[dict]] = {}
        self._lock = threading.Lock()

    def get(self, payout_id: UUID) -> Optional[PayoutRequest]:
        data = self.payouts.get(payout_id)
        return PayoutRequest(**data) if data else None

    def save(self, payout: PayoutRequest) -> None:
        with self._lock:
            self.payouts[payout.id] = payout.model_dump()

    def add_history(self, change: PayoutStatusChange) -> None:
        with self._lock:
            self.history.setdefault(change.payout_id, []).append(change.model_dump())

    def history_for(self, payout_id: UUID) -> list[PayoutStatusChange]:
        with self._lock:
            rows = list(self.history.get(payout_id, []))
        entries = [PayoutStatusChange(**h) for h in rows]
        entries.reverse()
        return entries

    def for_user(self, user_id: str) -> list[PayoutRequest]:
        payouts = [PayoutRequest(**p) for p in self._snapshot() if p["user_id"] == user_id]
        payouts.sort(key=lambda p: p.created_at, reverse=True)
        return payouts

    def all(self, status: Optional[PayoutStatus] = None) -> list[PayoutRequest]:
        payouts = [PayoutRequest(**p) for p in self._snapshot()]
        if status:
            payouts = [p for p in payouts if p.status == status]
        payouts.sort(key=lambda p: p.created_at, reverse=True)
        return payouts

    def _snapshot(self) -> list[dict]:
        with self._lock:
            return list(self.payouts.values())


class PayoutGuard:
    """Admission policy and lifecycle for payout requests.

    A pending request holds its amount against the withdrawable balance; the
    wallet is only debited when an admin approves or completes it. All checks
    and writes for one user run under that user's account lock, the same lock
    the ledger engine uses, so a payout request cannot race a debit.
    """

    def __init__(
        self,
        engine: LedgerEngine,
        store: Optional[PayoutStore] = None,
        config: Optional[PlatformConfig] = None,
    ):
        self.engine = engine
        self.store = store or PayoutStore()
        self.default_config = config or PlatformConfig.from_settings()

    def pending_total(self, user_id: str) -> Decimal:
        return sum(
            (p.amount for p in self.store.for_user(user_id) if p.status == PayoutStatus.PENDING),
            ZERO,
        )

    def withdrawable(self, user_id: str, config: Optional[PlatformConfig] = None) -> WithdrawableBalance:
        with self.engine.accounts.lock(user_id):
            account = self.engine.get_account(user_id)
            return withdrawable_balance(account, self.pending_total(user_id), config or self.default_config)

    def check_admission(
        self,
        user_id: str,
        amount,
        method: PayoutMethod,
        *,
        kyc_approved: bool,
        unpaid_order_count: int = 0,
        config: Optional[PlatformConfig] = None,
    ) -> AdmissionDecision:
        with self.engine.accounts.lock(user_id):
            try:
                account = self.engine.get_account(user_id)
            except AccountNotFoundError:
                return AdmissionDecision(
                    allowed=False,
                    reason=FailureReason.ACCOUNT_NOT_FOUND,
                    message=FailureReason.ACCOUNT_NOT_FOUND.message,
                    withdrawable_balance=ZERO,
                    pending_payouts_total=ZERO,
                    outstanding_dues=ZERO,
                )
            return can_request_payout(
                account,
                amount,
                method,
                kyc_approved=kyc_approved,
                unpaid_order_count=unpaid_order_count,
                pending_total=self.pending_total(user_id),
                config=config or self.default_config,
            )

    def request_payout(
        self,
        user_id: str,
        amount,
        payment_details: PaymentDetails,
        *,
        kyc_approved: bool,
        unpaid_order_count: int = 0,
        config: Optional[PlatformConfig] = None,
    ) -> PayoutResult:
        method = PayoutMethod(payment_details.method)
        with self.engine.accounts.lock(user_id):
            decision = self.check_admission(
                user_id,
                amount,
                method,
                kyc_approved=kyc_approved,
                unpaid_order_count=unpaid_order_count,
                config=config,
            )
            if not decision.allowed:
                logger.info("Payout request by %s refused: %s", user_id, decision.reason.value)
                return PayoutResult(
                    success=False,
                    reason=decision.reason,
                    message=decision.message,
                    admission=decision,
                )

            now = datetime.now(timezone.utc)
            payout = PayoutRequest(
                id=uuid4(),
                user_id=user_id,
                amount=to_positive_amount(amount),
                payment_method=method,
                payment_details=payment_details,
                created_at=now,
            )
            self.store.save(payout)
            self._record(payout.id, None, PayoutStatus.PENDING, user_id, describe_destination(payment_details))

        logger.info("Payout %s of %s requested by %s", payout.id, payout.amount, user_id)
        return PayoutResult(
            success=True,
            message="Your payout request has been submitted for review",
            payout=payout,
            admission=decision,
        )

    def approve(self, payout_id: UUID, admin_id: str, notes: Optional[str] = None) -> PayoutResult:
        return self._transition(payout_id, PayoutStatus.APPROVED, admin_id, notes, self._debit_effect)

    def complete(self, payout_id: UUID, admin_id: str, notes: Optional[str] = None) -> PayoutResult:
        def effect(payout: PayoutRequest) -> Optional[LedgerResult]:
            # approved payouts were already debited
            if payout.status == PayoutStatus.APPROVED:
                return None
            return self._debit_effect(payout)

        return self._transition(payout_id, PayoutStatus.COMPLETED, admin_id, notes, effect)

    def reject(self, payout_id: UUID, admin_id: str, notes: Optional[str] = None) -> PayoutResult:
        def effect(payout: PayoutRequest) -> Optional[LedgerResult]:
            if payout.status != PayoutStatus.APPROVED:
                return None
            return self.engine.credit_wallet(
                payout.user_id,
                payout.amount,
                "payout_refund",
                idempotency_key=f"payout:{payout.id}:refund",
                payout_id=str(payout.id),
                description="Payout rejected - funds returned",
            )

        return self._transition(payout_id, PayoutStatus.REJECTED, admin_id, notes, effect)

    def cancel(self, payout_id: UUID, user_id: str, reason: Optional[str] = None) -> PayoutResult:
        payout = self.store.get(payout_id)
        if payout is None:
            return self._fail(FailureReason.PAYOUT_NOT_FOUND)
        if payout.user_id != user_id:
            return self._fail(FailureReason.NOT_PAYOUT_OWNER)
        if payout.status != PayoutStatus.PENDING:
            return self._fail(
                FailureReason.INVALID_STATE_TRANSITION,
                "Only pending payout requests can be cancelled",
            )
        notes = f"Cancelled by user: {reason}" if reason else "Cancelled by user"
        return self._transition(payout_id, PayoutStatus.CANCELLED, user_id, notes, None)

    def get(self, payout_id: UUID) -> Optional[PayoutRequest]:
        return self.store.get(payout_id)

    def list_for_user(self, user_id: str) -> list[PayoutRequest]:
        return self.store.for_user(user_id)

    def list_all(self, status: Optional[PayoutStatus] = None) -> list[PayoutRequest]:
        return self.store.all(status)

    def history(self, payout_id: UUID) -> list[PayoutStatusChange]:
        return self.store.history_for(payout_id)

    def _debit_effect(self, payout: PayoutRequest) -> LedgerResult:
        return self.engine.debit_wallet(
            payout.user_id,
            payout.amount,
            idempotency_key=f"payout:{payout.id}:debit",
            payout_id=str(payout.id),
            description="Payout - funds deducted",
            allow_inactive=True,
        )

    def _transition(
        self,
        payout_id: UUID,
        new_status: PayoutStatus,
        actor: str,
        notes: Optional[str],
        effect: Optional[Callable[[PayoutRequest], Optional[LedgerResult]]],
    ) -> PayoutResult:
        payout = self.store.get(payout_id)
        if payout is None:
            return self._fail(FailureReason.PAYOUT_NOT_FOUND)

        with self.engine.accounts.lock(payout.user_id):
            payout = self.store.get(payout_id)
            if not payout.can_transition_to(new_status):
                return self._fail(
                    FailureReason.INVALID_STATE_TRANSITION,
                    f"Cannot move payout from {payout.status.value} to {new_status.value}",
                    payout,
                )

            ledger = effect(payout) if effect else None
            if ledger is not None and not ledger.success:
                logger.info("Payout %s could not move to %s: %s", payout_id, new_status.value, ledger.reason.value)
                return self._fail(ledger.reason, ledger.message, payout)

            changes = {
                "status": new_status,
                "admin_notes": notes if notes is not None else payout.admin_notes,
                "processed_at": datetime.now(timezone.utc),
                "processed_by": actor,
            }
            if ledger is not None and ledger.transaction is not None:
                field = "refund_transaction_id" if new_status == PayoutStatus.REJECTED else "debit_transaction_id"
                changes[field] = ledger.transaction.id
            old_status = payout.status
            updated = payout.model_copy(update=changes)
            self.store.save(updated)
            self._record(payout_id, old_status, new_status, actor, notes)

        logger.info("Payout %s moved %s -> %s by %s", payout_id, old_status.value, new_status.value, actor)
        return PayoutResult(
            success=True,
            message=f"Payout {new_status.value}",
            payout=updated,
            transaction=ledger.transaction if ledger is not None else None,
        )

    def _record(
        self,
        payout_id: UUID,
        old_status: Optional[PayoutStatus],
        new_status: PayoutStatus,
        changed_by: Optional[str],
        notes: Optional[str],
    ) -> None:
        self.store.add_history(PayoutStatusChange(
            id=uuid4(),
            payout_id=payout_id,
            old_status=old_status,
            new_status=new_status,
            changed_by=changed_by,
            notes=notes,
            created_at=datetime.now(timezone.utc),
        ))

    @staticmethod
    def _fail(
        reason: FailureReason,
        message: Optional[str] = None,
        payout: Optional[PayoutRequest] = None,
    ) -> PayoutResult:
        return PayoutResult(success=False, reason=reason, message=message or reason.message, payout=payout)
