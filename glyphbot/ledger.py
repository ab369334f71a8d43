"""GLYPHS balance ledger backed by the balances document."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Dict

from .errors import InsufficientFundsError, ValidationError
from .state import StateStore

logger = logging.getLogger("glyphbot.ledger")


class BalanceLedger:
    """Credit/debit operations over the in-memory balances.

    The in-memory map is authoritative as soon as a call returns; disk writes
    are coalesced by the store and may land up to one write window later.
    """

    def __init__(self, store: StateStore):
        self._store = store

    @property
    def _balances(self) -> Dict[str, int]:
        return self._store.balances

    def get_balance(self, user_id: str) -> int:
        return self._balances.get(str(user_id), 0)

    def credit(self, user_id: str, amount: int) -> int:
        if amount < 0:
            raise ValidationError("Credit amount must not be negative.")
        key = str(user_id)
        updated = self._balances.get(key, 0) + amount
        self._balances[key] = updated
        self._store.schedule_balances_write()
        return updated

    def debit(self, user_id: str, amount: int) -> int:
        if amount <= 0:
            raise ValidationError("Amount must be greater than 0.")
        key = str(user_id)
        current = self._balances.get(key, 0)
        if amount > current:
            raise InsufficientFundsError(key, amount, current)
        updated = current - amount
        self._balances[key] = updated
        self._store.schedule_balances_write()
        return updated

    def set_balance(self, user_id: str, amount: int) -> int:
        if amount < 0:
            raise ValidationError("Balance must not be negative.")
        key = str(user_id)
        previous = self._balances.get(key, 0)
        self._balances[key] = amount
        self._store.schedule_balances_write()
        logger.info("Balance for %s set from %s to %s", key, previous, amount)
        return amount

    def reset(self) -> None:
        self._balances.clear()
        self._store.persist_balances()
        logger.info("All balances reset.")

    def snapshot(self) -> Dict[str, int]:
        return dict(self._balances)

    def total(self) -> int:
        return sum(self._balances.values())

    def content_hash(self) -> str:
        encoded = json.dumps(self._balances, sort_keys=True, separators=(",", ":"))
        return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


__all__ = ["BalanceLedger"]
