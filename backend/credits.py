"""Per-user credit ledger.

Each user gets ``credits_per_period`` runs per fixed window of
``credit_period_seconds``. The window starts with the first consumption and
resets once it expires.
"""

import time
from typing import Any

import structlog

from config import settings
from models.database import MessageStore

logger = structlog.get_logger(__name__)


class InsufficientCreditsError(Exception):
    """Raised when a user has no credits left in the current window."""

    def __init__(self, user_id: str, resets_at: float) -> None:
        super().__init__(f"User {user_id} has run out of credits")
        self.user_id = user_id
        self.resets_at = resets_at


class CreditLedger:
    """Fixed-window credit accounting backed by the message store."""

    def __init__(
        self,
        store: MessageStore,
        max_points: int | None = None,
        period_seconds: int | None = None,
    ) -> None:
        self.store = store
        self.max_points = max_points or settings.credits_per_period
        self.period_seconds = period_seconds or settings.credit_period_seconds

    @staticmethod
    def _key(user_id: str) -> str:
        return f"credits:{user_id}"

    async def consume(self, user_id: str) -> dict[str, Any]:
        """Consume one credit.

        Raises:
            InsufficientCreditsError: If the window is exhausted
        """
        outcome = await self.store.consume_credit(
            self._key(user_id), self.max_points, self.period_seconds
        )
        if not outcome["allowed"]:
            logger.info("credits_exhausted", user_id=user_id, resets_at=outcome["resets_at"])
            raise InsufficientCreditsError(user_id, outcome["resets_at"])

        logger.debug(
            "credit_consumed",
            user_id=user_id,
            remaining_points=outcome["remaining_points"],
        )
        return outcome

    async def get_status(self, user_id: str) -> dict[str, Any]:
        """Return remaining and consumed points plus the reset time."""
        usage = await self.store.get_credit_usage(self._key(user_id))
        if usage is None:
            return {
                "remaining_points": self.max_points,
                "consumed_points": 0,
                "resets_at": None,
            }
        return {
            "remaining_points": max(0, self.max_points - usage["points"]),
            "consumed_points": usage["points"],
            "resets_at": usage["expires_at"],
        }


def seconds_until(resets_at: float | None) -> int:
    """Whole seconds left until a window resets (0 if already reset)."""
    if resets_at is None:
        return 0
    return max(0, int(resets_at - time.time()))
