from .models import (
    BankDetails,
    CryptoDetails,
    PaymentDetails,
    PaypalDetails,
    PayoutMethod,
    PayoutRequest,
    PayoutResult,
    PayoutStatus,
    UpiDetails,
)
from .policy import PlatformConfig, can_request_payout, withdrawable_balance
from .guard import PayoutGuard, PayoutStore

__all__ = [
    "BankDetails",
    "CryptoDetails",
    "PaymentDetails",
    "PaypalDetails",
    "PayoutMethod",
    "PayoutRequest",
    "PayoutResult",
    "PayoutStatus",
    "UpiDetails",
    "PlatformConfig",
    "can_request_payout",
    "withdrawable_balance",
    "PayoutGuard",
    "PayoutStore",
]
