from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator

from .errors import AccountNotFoundError, LedgerRejection
from .models import Account, FailureReason

logger = logging.getLogger(__name__)


class AccountStore:
    """Per-user balance records.

    Every write goes through ``update``, which applies the mutation under a
    per-account lock. The lock is re-entrant so a caller already holding it
    (see ``lock``) can run engine operations for the same account.
    """

    def __init__(self):
        self._accounts: dict[str, dict] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock

    @contextmanager
    def lock(self, user_id: str) -> Iterator[None]:
        lock = self._lock_for(user_id)
        with lock:
            yield

    def exists(self, user_id: str) -> bool:
        return user_id in self._accounts

    def get(self, user_id: str) -> Account:
        data = self._accounts.get(user_id)
        if data is None:
            raise AccountNotFoundError(f"Account {user_id} not found")
        return Account(**data)

    def list_accounts(self) -> list[Account]:
        with self._locks_guard:
            rows = list(self._accounts.values())
        return [Account(**data) for data in rows]

    def create(self, account: Account) -> Account:
        with self.lock(account.user_id):
            if account.user_id in self._accounts:
                raise LedgerRejection(FailureReason.ACCOUNT_EXISTS)
            with self._locks_guard:
                self._accounts[account.user_id] = account.model_dump()
        logger.info("Opened account %s", account.user_id)
        return account

    def update(self, user_id: str, mutation_fn: Callable[[Account], Account]) -> Account:
        with self.lock(user_id):
            current = self.get(user_id)
            updated = mutation_fn(current.model_copy(deep=True))
            updated = updated.model_copy(update={
                "version": current.version + 1,
                "updated_at": datetime.now(timezone.utc),
            })
            self._accounts[user_id] = updated.model_dump()
            return updated
