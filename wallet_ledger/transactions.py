from __future__ import annotations

import itertools
import threading
from typing import Optional
from uuid import UUID

from .models import Transaction, TransactionType


class TransactionLog:
    """Append-only record of balance-affecting events.

    Entries are never updated or deleted. ``sequence`` is assigned on append
    and totally orders the log, so replay does not depend on clock resolution.
    """

    def __init__(self):
        self._entries: dict[UUID, dict] = {}
        self._by_user: dict[str, list[UUID]] = {}
        self._idempotency_index: dict[tuple[str, str], UUID] = {}
        self._sequence = itertools.count(1)
        self._write_lock = threading.Lock()

    def append(self, transaction: Transaction) -> UUID:
        with self._write_lock:
            if transaction.id in self._entries:
                raise ValueError(f"Transaction {transaction.id} already written")
            key = None
            if transaction.idempotency_key:
                key = (transaction.user_id, transaction.idempotency_key)
                if key in self._idempotency_index:
                    raise ValueError(f"Idempotency key {transaction.idempotency_key} already used")
            data = transaction.model_dump()
            data["sequence"] = next(self._sequence)
            self._entries[transaction.id] = data
            self._by_user.setdefault(transaction.user_id, []).append(transaction.id)
            if key:
                self._idempotency_index[key] = transaction.id
        return transaction.id

    def get(self, transaction_id: UUID) -> Optional[Transaction]:
        data = self._entries.get(transaction_id)
        return Transaction(**data) if data else None

    def replay_order(self, user_id: str) -> list[Transaction]:
        entries = [Transaction(**self._entries[tx_id]) for tx_id in self._by_user.get(user_id, [])]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> list[Transaction]:
        entries = self.replay_order(user_id)
        entries.reverse()
        return entries[offset:offset + limit]

    def count_for_user(self, user_id: str) -> int:
        return len(self._by_user.get(user_id, []))

    def find_by_idempotency_key(self, user_id: str, idempotency_key: str) -> Optional[Transaction]:
        tx_id = self._idempotency_index.get((user_id, idempotency_key))
        return self.get(tx_id) if tx_id else None

    def find_for_order(
        self,
        user_id: str,
        order_id: str,
        types: Optional[set[TransactionType]] = None,
    ) -> list[Transaction]:
        return [
            e for e in self.replay_order(user_id)
            if e.related_order_id == order_id and (types is None or e.type in types)
        ]
