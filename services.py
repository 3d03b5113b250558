from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo
import structlog

from config import get_settings
from exceptions import PointErrorCode, PointServiceError
from locks import KeyedLockRegistry
from models import TransactionKind, TransactionRecord, UserBalance
from repositories import PointHistoryRepository, UserPointRepository

# Configure structured logging
logger = structlog.get_logger()


class PointService:
    """Charge, spend and read points, serialized per user.

    Every operation runs while holding the user's lock from the registry, so
    the read-check-write on both stores is atomic with respect to any other
    operation on the same user. Operations on different users never contend.
    """

    def __init__(
        self,
        user_point_repo: UserPointRepository,
        point_history_repo: PointHistoryRepository,
        lock_registry: KeyedLockRegistry,
        max_points: Optional[int] = None,
        tz: Optional[str] = None,
    ):
        settings = get_settings()
        self.user_point_repo = user_point_repo
        self.point_history_repo = point_history_repo
        self.lock_registry = lock_registry
        self.max_points = max_points if max_points is not None else settings.max_points
        self.tz = ZoneInfo(tz or settings.timezone)

    def get_balance(self, user_id: int) -> UserBalance:
        self._validate_user_id(user_id)
        return self.lock_registry.run_exclusive(
            user_id, self.user_point_repo.select_by_id, user_id
        )

    def get_history(self, user_id: int) -> List[TransactionRecord]:
        self._validate_user_id(user_id)
        return self.lock_registry.run_exclusive(
            user_id, self.point_history_repo.select_all_by_user_id, user_id
        )

    def charge(self, user_id: int, amount: int) -> UserBalance:
        self._validate_user_id(user_id)
        self._validate_amount(user_id, amount)
        return self.lock_registry.run_exclusive(user_id, self._charge, user_id, amount)

    def spend(self, user_id: int, amount: int) -> UserBalance:
        self._validate_user_id(user_id)
        self._validate_amount(user_id, amount)
        return self.lock_registry.run_exclusive(user_id, self._spend, user_id, amount)

    def _charge(self, user_id: int, amount: int) -> UserBalance:
        current = self.user_point_repo.select_by_id(user_id)
        new_points = current.points + amount

        if new_points > self.max_points:
            logger.warning(
                "Charge would exceed balance cap",
                user_id=user_id,
                current_balance=current.points,
                requested_amount=amount,
                max_points=self.max_points,
            )
            raise PointServiceError(PointErrorCode.BALANCE_CAP_EXCEEDED)

        self.point_history_repo.insert(user_id, amount, TransactionKind.CHARGE, self._now())
        balance = self.user_point_repo.insert_or_update(user_id, new_points)

        logger.info(
            "Points charged",
            user_id=user_id,
            amount=amount,
            old_balance=current.points,
            new_balance=balance.points,
        )
        return balance

    def _spend(self, user_id: int, amount: int) -> UserBalance:
        current = self.user_point_repo.select_by_id(user_id)

        if current.points < amount:
            logger.warning(
                "Insufficient points for use",
                user_id=user_id,
                current_balance=current.points,
                requested_amount=amount,
            )
            raise PointServiceError(PointErrorCode.INSUFFICIENT_BALANCE)

        self.point_history_repo.insert(user_id, amount, TransactionKind.USE, self._now())
        balance = self.user_point_repo.insert_or_update(user_id, current.points - amount)

        logger.info(
            "Points used",
            user_id=user_id,
            amount=amount,
            old_balance=current.points,
            new_balance=balance.points,
        )
        return balance

    def _now(self) -> datetime:
        return datetime.now(self.tz)

    @staticmethod
    def _validate_user_id(user_id: int) -> None:
        if user_id <= 0:
            logger.warning("Invalid user id", user_id=user_id)
            raise PointServiceError(PointErrorCode.INVALID_USER_ID)

    @staticmethod
    def _validate_amount(user_id: int, amount: int) -> None:
        if amount <= 0:
            logger.warning("Invalid amount", user_id=user_id, amount=amount)
            raise PointServiceError(PointErrorCode.INVALID_AMOUNT)


def _build_lock_registry() -> KeyedLockRegistry:
    return KeyedLockRegistry(timeout=get_settings().lock_timeout_seconds)


# One registry per process; entries live as long as the process
_lock_registry = _build_lock_registry()


def get_lock_registry() -> KeyedLockRegistry:
    return _lock_registry


def reset_lock_registry():
    """Drop all per-user locks (for testing only)."""
    global _lock_registry
    _lock_registry = _build_lock_registry()


# Factory function for dependency injection
def get_point_service(
    user_point_repo: UserPointRepository,
    point_history_repo: PointHistoryRepository,
    lock_registry: KeyedLockRegistry,
) -> PointService:
    return PointService(user_point_repo, point_history_repo, lock_registry)
