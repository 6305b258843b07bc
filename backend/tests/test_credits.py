"""Tests for credits.py -- the per-user credit ledger."""

import time

import pytest

from credits import CreditLedger, InsufficientCreditsError, seconds_until
from models.database import MessageStore


@pytest.fixture()
def ledger(store: MessageStore) -> CreditLedger:
    return CreditLedger(store, max_points=2, period_seconds=3600)


class TestCreditLedger:
    async def test_fresh_user_has_full_allowance(self, ledger: CreditLedger) -> None:
        assert await ledger.get_status("user_1") == {
            "remaining_points": 2,
            "consumed_points": 0,
            "resets_at": None,
        }

    async def test_consume_until_exhausted(self, ledger: CreditLedger) -> None:
        first = await ledger.consume("user_1")
        second = await ledger.consume("user_1")
        assert first["remaining_points"] == 1
        assert second["remaining_points"] == 0

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.consume("user_1")
        assert exc_info.value.user_id == "user_1"
        assert exc_info.value.resets_at == second["resets_at"]

    async def test_status_reflects_usage(self, ledger: CreditLedger) -> None:
        await ledger.consume("user_1")
        status = await ledger.get_status("user_1")
        assert status["remaining_points"] == 1
        assert status["consumed_points"] == 1
        assert status["resets_at"] > time.time()

    async def test_users_are_independent(self, ledger: CreditLedger) -> None:
        await ledger.consume("user_1")
        await ledger.consume("user_1")
        outcome = await ledger.consume("user_2")
        assert outcome["allowed"] is True


class TestSecondsUntil:
    def test_none(self) -> None:
        assert seconds_until(None) == 0

    def test_past(self) -> None:
        assert seconds_until(time.time() - 10) == 0

    def test_future(self) -> None:
        assert 0 < seconds_until(time.time() + 120) <= 120
