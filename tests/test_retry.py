"""Tests for the jittered exponential retry helper."""

from __future__ import annotations

import asyncio
import random

import pytest

from services import retry


class _ScriptedRng:
    """randrange() returns the scripted draws in order."""

    def __init__(self, draws: list[int]) -> None:
        self._draws = list(draws)

    def randrange(self, start: int, stop: int) -> int:
        assert (start, stop) == (0, 1000)
        return self._draws.pop(0)


def test_next_timeout_formula() -> None:
    assert retry.next_timeout(1.0, _ScriptedRng([500])) == 2.0
    assert retry.next_timeout(8.0, _ScriptedRng([999])) == pytest.approx(31.968)
    assert retry.next_timeout(3.0, _ScriptedRng([0])) == 0.0


def test_retry_returns_first_success_without_sleeping() -> None:
    sleeps: list[float] = []

    async def _sleep(s: float) -> None:
        sleeps.append(s)

    async def _op() -> str:
        return "ok"

    assert asyncio.run(retry.exponential_retry(_op, sleep=_sleep)) == "ok"
    assert sleeps == []


def test_retry_sleeps_then_succeeds() -> None:
    """The first wait is 1s; later waits follow the jitter formula."""
    sleeps: list[float] = []
    attempts = {"n": 0}

    async def _sleep(s: float) -> None:
        sleeps.append(s)

    async def _op() -> int:
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise RuntimeError("throttled")
        return attempts["n"]

    result = asyncio.run(retry.exponential_retry(_op, sleep=_sleep, rng=_ScriptedRng([500, 500])))
    assert result == 3
    assert sleeps == [1.0, 2.0]


def test_retry_reraises_last_error_when_budget_spent() -> None:
    """Once the next timeout reaches 64s the error escapes unchanged."""
    seen: list[float] = []

    async def _sleep(s: float) -> None:
        seen.append(s)

    async def _op() -> None:
        raise ValueError(f"attempt {len(seen)}")

    # 1 -> 3.996 -> 15.968 -> 63.808 -> 254.98 (budget reached)
    with pytest.raises(ValueError, match="attempt 3"):
        asyncio.run(retry.exponential_retry(_op, sleep=_sleep, rng=_ScriptedRng([999] * 4)))
    assert seen[0] == 1.0
    assert len(seen) == 4


def test_retry_stops_after_max_attempts_on_zero_draws() -> None:
    """A zero draw pins the wait at 0; the attempt guard ends the loop."""
    calls = {"n": 0}

    async def _sleep(_s: float) -> None:
        return None

    async def _op() -> None:
        calls["n"] += 1
        raise RuntimeError("always")

    with pytest.raises(RuntimeError):
        asyncio.run(retry.exponential_retry(_op, sleep=_sleep, rng=_ScriptedRng([0] * retry.MAX_ATTEMPTS)))
    assert calls["n"] == retry.MAX_ATTEMPTS


def test_retry_does_not_swallow_cancellation() -> None:
    async def _op() -> None:
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(retry.exponential_retry(_op, rng=random.Random(1)))


def test_retry_logs_each_failed_attempt(caplog) -> None:
    caplog.set_level("DEBUG", logger="services.retry")
    attempts = {"n": 0}

    async def _sleep(_s: float) -> None:
        return None

    async def _op() -> str:
        attempts["n"] += 1
        if attempts["n"] < 2:
            raise RuntimeError("throttled")
        return "ok"

    assert asyncio.run(retry.exponential_retry(_op, name="DescribeVolumes", sleep=_sleep)) == "ok"
    (record,) = [r for r in caplog.records if getattr(r, "event", None) == "aws_call_retry"]
    assert record.operation == "DescribeVolumes"
    assert record.attempt == 1
    assert record.getMessage().startswith("aws_call_retry operation=DescribeVolumes attempt=1 timeout=1.0")
