from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator

from wallet_ledger.models import FailureReason, Transaction


class PayoutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class PayoutMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    UPI = "upi"
    PAYPAL = "paypal"
    CRYPTO = "crypto"


TRANSITIONS: dict[PayoutStatus, set[PayoutStatus]] = {
    PayoutStatus.PENDING: {
        PayoutStatus.APPROVED,
        PayoutStatus.COMPLETED,
        PayoutStatus.REJECTED,
        PayoutStatus.CANCELLED,
    },
    PayoutStatus.APPROVED: {PayoutStatus.COMPLETED, PayoutStatus.REJECTED},
    PayoutStatus.COMPLETED: set(),
    PayoutStatus.REJECTED: set(),
    PayoutStatus.CANCELLED: set(),
}


class BankDetails(BaseModel):
    method: Literal["bank_transfer"] = "bank_transfer"
    account_name: str = Field(..., min_length=1)
    account_number: str = Field(..., pattern=r"^[0-9]{6,18}$")
    ifsc_code: str = Field(..., pattern=r"^[A-Z]{4}0[A-Z0-9]{6}$")
    bank_name: Optional[str] = None
    branch_name: Optional[str] = None

    @field_validator("ifsc_code", mode="before")
    @classmethod
    def normalize_ifsc(cls, value):
        return value.strip().upper() if isinstance(value, str) else value


class UpiDetails(BaseModel):
    method: Literal["upi"] = "upi"
    upi_id: str = Field(..., pattern=r"^[A-Za-z0-9._\-]{2,256}@[a-zA-Z]{2,64}$")


class PaypalDetails(BaseModel):
    method: Literal["paypal"] = "paypal"
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class CryptoDetails(BaseModel):
    method: Literal["crypto"] = "crypto"
    wallet_address: str = Field(..., min_length=10, max_length=128)
    network: str = "USDT-TRC20"
    address_confirmed: bool = Field(default=False, validate_default=True)
    attachment_path: Optional[str] = None

    @field_validator("address_confirmed")
    @classmethod
    def must_be_confirmed(cls, value: bool) -> bool:
        if not value:
            raise ValueError("Please confirm that the wallet address is correct")
        return value


PaymentDetails = Annotated[
    Union[BankDetails, UpiDetails, PaypalDetails, CryptoDetails],
    Field(discriminator="method"),
]


def describe_destination(details: PaymentDetails) -> str:
    """Masked, human-readable payout destination for notes and logs."""
    if isinstance(details, BankDetails):
        return f"Bank transfer to {details.account_name} ****{details.account_number[-4:]} ({details.ifsc_code})"
    if isinstance(details, UpiDetails):
        return f"UPI {details.upi_id}"
    if isinstance(details, PaypalDetails):
        return f"PayPal {details.email}"
    if isinstance(details, CryptoDetails):
        return f"{details.network} wallet {details.wallet_address[:6]}...{details.wallet_address[-4:]}"
    raise TypeError(f"Unsupported payment details: {type(details).__name__}")


class PayoutRequest(BaseModel):
    id: UUID
    user_id: str
    amount: Decimal
    status: PayoutStatus = PayoutStatus.PENDING
    payment_method: PayoutMethod
    payment_details: PaymentDetails
    admin_notes: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    debit_transaction_id: Optional[UUID] = None
    refund_transaction_id: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)

    def can_transition_to(self, status: PayoutStatus) -> bool:
        return status in TRANSITIONS[self.status]

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self.status]


class PayoutStatusChange(BaseModel):
    id: UUID
    payout_id: UUID
    old_status: Optional[PayoutStatus] = None
    new_status: PayoutStatus
    changed_by: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class PayoutCheckRequest(BaseModel):
    amount: Decimal
    payment_method: PayoutMethod
    kyc_approved: bool = False
    unpaid_order_count: int = Field(default=0, ge=0)


class CreatePayoutRequest(BaseModel):
    amount: Decimal
    payment_details: PaymentDetails
    kyc_approved: bool = False
    unpaid_order_count: int = Field(default=0, ge=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": "130.00",
            "payment_details": {"method": "upi", "upi_id": "dropshipper@upi"},
            "kyc_approved": True,
            "unpaid_order_count": 0,
        }
    })


class ProcessPayoutRequest(BaseModel):
    admin_id: str
    admin_notes: Optional[str] = None


class CancelPayoutRequest(BaseModel):
    user_id: str
    reason: Optional[str] = None


class WithdrawableBalance(BaseModel):
    user_id: str
    wallet_balance: Decimal
    pending_payouts_total: Decimal
    dues_hold: Decimal
    withdrawable_balance: Decimal


class AdmissionDecision(BaseModel):
    allowed: bool
    reason: Optional[FailureReason] = None
    message: str
    withdrawable_balance: Decimal
    pending_payouts_total: Decimal
    outstanding_dues: Decimal


class PayoutResult(BaseModel):
    success: bool
    reason: Optional[FailureReason] = None
    message: str
    payout: Optional[PayoutRequest] = None
    transaction: Optional[Transaction] = None
    admission: Optional[AdmissionDecision] = None

    @property
    def retryable(self) -> bool:
        return self.reason is not None and self.reason.retryable
