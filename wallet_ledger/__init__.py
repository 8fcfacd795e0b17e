"""
Wallet and Postpaid Credit Ledger

This module provides:
- Per-user accounts with wallet balance and a postpaid credit line
- Append-only transaction log with audit replay
- Atomic, per-account serialized balance operations
- Typed failure reasons instead of partial writes
- Idempotent retries keyed on the transaction log
"""

from .models import (
    Account,
    BalanceKind,
    FailureReason,
    LedgerResult,
    PostpaidStatus,
    Transaction,
    TransactionType,
)
from .engine import LedgerEngine
from .store import AccountStore
from .transactions import TransactionLog

__all__ = [
    "Account",
    "BalanceKind",
    "FailureReason",
    "LedgerResult",
    "PostpaidStatus",
    "Transaction",
    "TransactionType",
    "LedgerEngine",
    "AccountStore",
    "TransactionLog",
]
