"""
Custody Service Module

The ledger never moves the asset itself. It asks a custody service to pull
deposits from a user's external holding into the pool, and to push
withdrawals and interest from the pool to a recipient. This module defines
that contract and an in-process implementation used by tests and local runs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging
import threading
import uuid

logger = logging.getLogger("custody_ledger.custody")


@dataclass
class TransferResult:
    """Outcome of a single custody transfer"""
    success: bool
    reason: str = ""
    reference: Optional[str] = None

    @classmethod
    def ok(cls, reference: Optional[str] = None) -> 'TransferResult':
        return cls(success=True, reference=reference or str(uuid.uuid4()))

    @classmethod
    def rejected(cls, reason: str) -> 'TransferResult':
        return cls(success=False, reason=reason)


@dataclass
class TransferRecord:
    """A transfer the custody service carried out"""
    direction: str  # "pull" or "push"
    party: str
    amount: int
    reference: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CustodyService(ABC):
    """Moves the asset between external holdings and the custody pool"""

    @abstractmethod
    def pull(self, source: str, amount: int) -> TransferResult:
        """Move amount from source's external holding into the pool"""
        pass

    @abstractmethod
    def push(self, destination: str, amount: int) -> TransferResult:
        """Move amount from the pool to destination's external holding"""
        pass


class InMemoryCustodyService(CustodyService):
    """
    In-process custody service.

    Tracks external holdings per owner, how much each owner has authorized
    the pool to pull, and the pool reserve. Pull requires both authorization
    and holdings; push requires the pool reserve to cover the amount.
    """

    def __init__(self, pool_reserve: int = 0):
        self._holdings: Dict[str, int] = {}
        self._allowances: Dict[str, int] = {}
        self._pool = pool_reserve
        self._lock = threading.RLock()
        self.transfers: List[TransferRecord] = []

    def fund(self, owner: str, amount: int) -> None:
        """Credit an owner's external holding"""
        with self._lock:
            self._holdings[owner] = self._holdings.get(owner, 0) + amount

    def fund_pool(self, amount: int) -> None:
        """Add reserves to the pool, e.g. to finance interest"""
        with self._lock:
            self._pool += amount

    def approve(self, owner: str, amount: int) -> None:
        """Authorize the pool to pull up to amount from owner"""
        with self._lock:
            self._allowances[owner] = amount

    def holding_of(self, owner: str) -> int:
        with self._lock:
            return self._holdings.get(owner, 0)

    def allowance_of(self, owner: str) -> int:
        with self._lock:
            return self._allowances.get(owner, 0)

    @property
    def pool_balance(self) -> int:
        with self._lock:
            return self._pool

    def pull(self, source: str, amount: int) -> TransferResult:
        with self._lock:
            if amount <= 0:
                return TransferResult.rejected("amount must be positive")
            if self._allowances.get(source, 0) < amount:
                logger.debug(f"pull of {amount} from {source} exceeds authorization")
                return TransferResult.rejected("insufficient authorization")
            if self._holdings.get(source, 0) < amount:
                logger.debug(f"pull of {amount} from {source} exceeds holding")
                return TransferResult.rejected("insufficient holding")

            self._allowances[source] -= amount
            self._holdings[source] -= amount
            self._pool += amount
            return self._record("pull", source, amount)

    def push(self, destination: str, amount: int) -> TransferResult:
        with self._lock:
            if amount <= 0:
                return TransferResult.rejected("amount must be positive")
            if self._pool < amount:
                logger.debug(f"push of {amount} to {destination} exceeds pool reserve {self._pool}")
                return TransferResult.rejected("insufficient pool reserve")

            self._pool -= amount
            self._holdings[destination] = self._holdings.get(destination, 0) + amount
            return self._record("push", destination, amount)

    def _record(self, direction: str, party: str, amount: int) -> TransferResult:
        result = TransferResult.ok()
        self.transfers.append(TransferRecord(
            direction=direction,
            party=party,
            amount=amount,
            reference=result.reference
        ))
        return result
