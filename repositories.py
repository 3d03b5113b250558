from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from datetime import datetime
from zoneinfo import ZoneInfo
import random
import threading
import time

from models import TransactionKind, TransactionRecord, UserBalance
from config import get_settings


class UserPointRepository(ABC):
    @abstractmethod
    def select_by_id(self, user_id: int) -> UserBalance:
        """Get user balance. Returns a zero balance if the user has none stored."""
        pass

    @abstractmethod
    def insert_or_update(self, user_id: int, points: int) -> UserBalance:
        """Store a new balance for the user."""
        pass

    @abstractmethod
    def get_users_count(self) -> int:
        """Get number of users with a stored balance."""
        pass


class PointHistoryRepository(ABC):
    @abstractmethod
    def insert(
        self, user_id: int, amount: int, kind: TransactionKind, timestamp: datetime
    ) -> TransactionRecord:
        """Append a transaction to the user's history."""
        pass

    @abstractmethod
    def select_all_by_user_id(self, user_id: int) -> List[TransactionRecord]:
        """Get the user's history in append order."""
        pass

    @abstractmethod
    def get_transactions_count(self) -> int:
        """Get total number of stored transactions."""
        pass


class _SimulatedLatency:
    def __init__(self, latency_ms: int = 0):
        self.latency_ms = latency_ms

    def _throttle(self) -> None:
        if self.latency_ms > 0:
            time.sleep(random.randint(0, self.latency_ms) / 1000)


class InMemoryUserPointRepository(_SimulatedLatency, UserPointRepository):
    def __init__(self, latency_ms: int = 0, tz: Optional[str] = None):
        super().__init__(latency_ms)
        self.tz = ZoneInfo(tz or get_settings().timezone)
        self.balances: Dict[int, UserBalance] = {}
        self._table_lock = threading.Lock()

    def select_by_id(self, user_id: int) -> UserBalance:
        self._throttle()
        with self._table_lock:
            balance = self.balances.get(user_id)
        if balance is None:
            return UserBalance(userId=user_id, points=0, updatedAt=datetime.now(self.tz))
        return balance

    def insert_or_update(self, user_id: int, points: int) -> UserBalance:
        self._throttle()
        balance = UserBalance(userId=user_id, points=points, updatedAt=datetime.now(self.tz))
        with self._table_lock:
            self.balances[user_id] = balance
        return balance

    def get_users_count(self) -> int:
        with self._table_lock:
            return len(self.balances)


class InMemoryPointHistoryRepository(_SimulatedLatency, PointHistoryRepository):
    def __init__(self, latency_ms: int = 0):
        super().__init__(latency_ms)
        self.records: List[TransactionRecord] = []
        self.records_by_user: Dict[int, List[TransactionRecord]] = {}
        self._cursor = 1
        self._table_lock = threading.Lock()

    def insert(
        self, user_id: int, amount: int, kind: TransactionKind, timestamp: datetime
    ) -> TransactionRecord:
        self._throttle()
        with self._table_lock:
            record = TransactionRecord(
                id=self._cursor,
                userId=user_id,
                amount=amount,
                kind=kind,
                timestamp=timestamp,
            )
            self._cursor += 1
            self.records.append(record)
            self.records_by_user.setdefault(user_id, []).append(record)
        return record

    def select_all_by_user_id(self, user_id: int) -> List[TransactionRecord]:
        self._throttle()
        with self._table_lock:
            return list(self.records_by_user.get(user_id, []))

    def get_transactions_count(self) -> int:
        with self._table_lock:
            return len(self.records)

    def clear(self) -> None:
        """Clear all stored transactions (for testing)."""
        with self._table_lock:
            self.records.clear()
            self.records_by_user.clear()
            self._cursor = 1


def _build_repositories():
    settings = get_settings()
    return (
        InMemoryUserPointRepository(latency_ms=settings.store_latency_ms),
        InMemoryPointHistoryRepository(latency_ms=settings.store_latency_ms),
    )


# Singleton instances shared by every request
_user_point_repo, _point_history_repo = _build_repositories()


def get_user_point_repository() -> UserPointRepository:
    return _user_point_repo


def get_point_history_repository() -> PointHistoryRepository:
    return _point_history_repo


def reset_repositories():
    """Reset all repositories to initial state (for testing only)."""
    global _user_point_repo, _point_history_repo
    _user_point_repo, _point_history_repo = _build_repositories()
