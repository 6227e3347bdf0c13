from __future__ import annotations

import asyncio
from typing import List

import pytest

from songdna_worker.app.settings import Settings
from songdna_worker.services.exceptions import (
    CollaboratorError,
    CollaboratorTimeout,
    MalformedResponseError,
)
from songdna_worker.services.resilience import RetryPolicy, call_with_retry


class _Sleeper:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_policy_backoff_is_capped() -> None:
    policy = RetryPolicy(attempts=6, base_delay=0.5, max_delay=3.0)
    assert [policy.delay_for(attempt) for attempt in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_policy_from_settings(tmp_path) -> None:
    settings = Settings(
        config_dir=tmp_path,
        collaborator_max_attempts=5,
        collaborator_timeout_seconds=2.5,
        backoff_base_seconds=0.1,
        backoff_max_seconds=1.0,
    )
    policy = RetryPolicy.from_settings(settings)
    assert policy.attempts == 5
    assert policy.timeout_seconds == 2.5
    assert policy.max_delay == 1.0


@pytest.mark.asyncio
async def test_retry_recovers_after_transient_failures() -> None:
    calls = 0
    sleeper = _Sleeper()

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise MalformedResponseError("garbled")
        return "ok"

    result = await call_with_retry(flaky, RetryPolicy(attempts=3), sleep=sleeper)
    assert result == "ok"
    assert calls == 3
    assert sleeper.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_retry_gives_up_with_last_error() -> None:
    sleeper = _Sleeper()

    async def broken() -> str:
        raise CollaboratorError("still down")

    with pytest.raises(CollaboratorError, match="still down"):
        await call_with_retry(broken, RetryPolicy(attempts=2), sleep=sleeper)
    assert sleeper.delays == [0.5]


@pytest.mark.asyncio
async def test_timeouts_become_collaborator_timeouts() -> None:
    sleeper = _Sleeper()

    async def slow() -> str:
        await asyncio.sleep(1.0)
        return "late"

    with pytest.raises(CollaboratorTimeout):
        await call_with_retry(
            slow, RetryPolicy(attempts=2, timeout_seconds=0.01), sleep=sleeper
        )
    assert len(sleeper.delays) == 1


@pytest.mark.asyncio
async def test_unexpected_errors_are_not_retried() -> None:
    calls = 0

    async def buggy() -> str:
        nonlocal calls
        calls += 1
        raise ValueError("bug")

    with pytest.raises(ValueError):
        await call_with_retry(buggy, RetryPolicy(attempts=3), sleep=_Sleeper())
    assert calls == 1
