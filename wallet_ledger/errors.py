from typing import Optional

from .models import FailureReason


class LedgerServiceError(Exception):
    pass


class AccountNotFoundError(LedgerServiceError):
    pass


class StorageUnavailableError(LedgerServiceError):
    pass


class LedgerRejection(LedgerServiceError):
    """A rule violation detected while applying an operation.

    Raised inside a locked mutation so nothing is persisted, then turned into
    a failed result at the operation boundary.
    """

    def __init__(self, reason: FailureReason, message: Optional[str] = None):
        self.reason = reason
        self.message = message or reason.message
        super().__init__(self.message)
