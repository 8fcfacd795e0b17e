from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

from .money import ZERO


class TransactionType(str, Enum):
    WALLET_CREDIT = "wallet_credit"
    WALLET_DEBIT = "wallet_debit"
    CREDIT_USED = "credit_used"
    CREDIT_REPAID = "credit_repaid"
    CREDIT_REVERSED = "credit_reversed"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class BalanceKind(str, Enum):
    WALLET = "wallet"
    POSTPAID = "postpaid"


class FailureReason(str, Enum):
    INSUFFICIENT_BALANCE = "insufficient_balance"
    CREDIT_LIMIT_EXCEEDED = "credit_limit_exceeded"
    POSTPAID_DISABLED = "postpaid_disabled"
    EXCEEDS_OUTSTANDING_DUES = "exceeds_outstanding_dues"
    BLOCKED_BY_DUES = "blocked_by_dues"
    BLOCKED_BY_PENDING_ORDER_PAYMENTS = "blocked_by_pending_order_payments"
    INVALID_AMOUNT = "invalid_amount"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    ACCOUNT_NOT_FOUND = "account_not_found"
    ACCOUNT_INACTIVE = "account_inactive"
    ACCOUNT_EXISTS = "account_exists"
    INVALID_REASON = "invalid_reason"
    INVALID_CREDIT_LIMIT = "invalid_credit_limit"
    NOTHING_TO_REVERSE = "nothing_to_reverse"
    IDEMPOTENCY_CONFLICT = "idempotency_conflict"
    PAYOUT_NOT_FOUND = "payout_not_found"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    NOT_PAYOUT_OWNER = "not_payout_owner"
    PAYOUTS_DISABLED = "payouts_disabled"
    PAYOUT_METHOD_DISABLED = "payout_method_disabled"
    KYC_NOT_APPROVED = "kyc_not_approved"
    BELOW_MINIMUM_PAYOUT = "below_minimum_payout"

    @property
    def message(self) -> str:
        return FAILURE_MESSAGES[self]

    @property
    def retryable(self) -> bool:
        return self == FailureReason.STORAGE_UNAVAILABLE


FAILURE_MESSAGES = {
    FailureReason.INSUFFICIENT_BALANCE: "Insufficient wallet balance",
    FailureReason.CREDIT_LIMIT_EXCEEDED: "Amount exceeds available postpaid credit",
    FailureReason.POSTPAID_DISABLED: "Postpaid credit is not enabled for this account",
    FailureReason.EXCEEDS_OUTSTANDING_DUES: "Amount exceeds outstanding postpaid dues",
    FailureReason.BLOCKED_BY_DUES: "Please clear your pending postpaid dues before requesting a payout",
    FailureReason.BLOCKED_BY_PENDING_ORDER_PAYMENTS: "Please complete or resolve pending order payments before requesting a payout",
    FailureReason.INVALID_AMOUNT: "Amount must be a positive number",
    FailureReason.STORAGE_UNAVAILABLE: "Storage is temporarily unavailable, please retry",
    FailureReason.ACCOUNT_NOT_FOUND: "Account not found",
    FailureReason.ACCOUNT_INACTIVE: "Account is disabled",
    FailureReason.ACCOUNT_EXISTS: "Account already exists",
    FailureReason.INVALID_REASON: "A reason is required",
    FailureReason.INVALID_CREDIT_LIMIT: "Credit limit cannot be negative or below the credit already used",
    FailureReason.NOTHING_TO_REVERSE: "No reversible payment found for this order",
    FailureReason.IDEMPOTENCY_CONFLICT: "Idempotency key was already used for a different operation",
    FailureReason.PAYOUT_NOT_FOUND: "Payout request not found",
    FailureReason.INVALID_STATE_TRANSITION: "Payout request cannot move to the requested status",
    FailureReason.NOT_PAYOUT_OWNER: "Only the requesting user can cancel this payout",
    FailureReason.PAYOUTS_DISABLED: "Payouts are currently disabled",
    FailureReason.PAYOUT_METHOD_DISABLED: "This payout method is not available",
    FailureReason.KYC_NOT_APPROVED: "KYC verification must be approved before requesting a payout",
    FailureReason.BELOW_MINIMUM_PAYOUT: "Amount is below the minimum payout amount",
}


class Account(BaseModel):
    user_id: str
    currency: str = "USD"
    wallet_balance: Decimal = ZERO
    postpaid_enabled: bool = False
    postpaid_credit_limit: Decimal = ZERO
    postpaid_used: Decimal = ZERO
    postpaid_due_cycle_days: int = 0
    allow_payout_with_dues: bool = False
    is_active: bool = True
    version: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def available_credit(self) -> Decimal:
        return self.postpaid_credit_limit - self.postpaid_used

    @property
    def outstanding_dues(self) -> Decimal:
        return self.postpaid_used


class Transaction(BaseModel):
    id: UUID
    sequence: int = 0
    user_id: str
    type: TransactionType
    amount: Decimal
    balance_kind: BalanceKind
    balance_before: Decimal
    balance_after: Decimal
    related_order_id: Optional[str] = None
    related_payout_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    description: str
    performed_by: Optional[str] = None
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class OpenAccountRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    currency: Optional[str] = None
    postpaid_enabled: bool = False
    postpaid_credit_limit: Decimal = ZERO
    postpaid_due_cycle_days: int = Field(default=0, ge=0)
    allow_payout_with_dues: bool = False


class CreditWalletRequest(BaseModel):
    amount: Decimal
    source: str = Field(..., description="Where the funds came from, e.g. crypto_payment or manual_proof")
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": "250.00",
            "source": "crypto_payment",
            "idempotency_key": "crypto-tx-8f2a",
        }
    })


class DebitWalletRequest(BaseModel):
    amount: Decimal
    order_id: Optional[str] = None
    idempotency_key: Optional[str] = None


class DrawCreditRequest(BaseModel):
    amount: Decimal
    order_id: Optional[str] = None
    idempotency_key: Optional[str] = None


class RepayPostpaidRequest(BaseModel):
    amount: Decimal
    idempotency_key: Optional[str] = None


class AdjustmentRequest(BaseModel):
    delta: Decimal
    reason: str
    admin_id: str
    target: BalanceKind = BalanceKind.POSTPAID
    idempotency_key: Optional[str] = None


class ReverseOrderRequest(BaseModel):
    reason: str = Field(..., description="Why the order payment is being reversed")
    performed_by: Optional[str] = None


class ConfigurePostpaidRequest(BaseModel):
    enabled: Optional[bool] = None
    credit_limit: Optional[Decimal] = None
    due_cycle_days: Optional[int] = Field(default=None, ge=0)
    allow_payout_with_dues: Optional[bool] = None


class SetActiveRequest(BaseModel):
    active: bool


class PostpaidStatus(BaseModel):
    user_id: str
    enabled: bool
    credit_limit: Decimal
    used_credit: Decimal
    available_credit: Decimal
    outstanding_dues: Decimal
    due_cycle_days: int
    usage_percent: Decimal
    has_outstanding_dues: bool
    can_request_payout: bool


class LedgerResult(BaseModel):
    success: bool
    reason: Optional[FailureReason] = None
    message: str
    account: Optional[Account] = None
    transaction: Optional[Transaction] = None
    idempotent_replay: bool = False

    @property
    def retryable(self) -> bool:
        return self.reason is not None and self.reason.retryable


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[Transaction]
    total_count: int
    wallet_balance: Decimal
    postpaid_used: Decimal


class AuditReport(BaseModel):
    user_id: str
    transaction_count: int
    stored_wallet_balance: Decimal
    replayed_wallet_balance: Decimal
    stored_postpaid_used: Decimal
    replayed_postpaid_used: Decimal
    snapshot_breaks: list[UUID] = Field(default_factory=list)
    consistent: bool
