"""Timeout and backoff helpers for collaborator calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from loguru import logger

from ..app.settings import Settings
from .exceptions import CollaboratorError, CollaboratorTimeout

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    timeout_seconds: float = 30.0
    base_delay: float = 0.5
    max_delay: float = 8.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            attempts=settings.collaborator_max_attempts,
            timeout_seconds=settings.collaborator_timeout_seconds,
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_max_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str = "collaborator call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``func`` under a timeout, retrying collaborator failures.

    The last ``CollaboratorError`` propagates once the attempts are spent.
    Cancellation is never retried.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_seconds)
        except asyncio.TimeoutError as exc:
            failure: CollaboratorError = CollaboratorTimeout(
                f"{description} timed out after {policy.timeout_seconds:.1f}s"
            )
            failure.__cause__ = exc
        except CollaboratorError as exc:
            failure = exc
        logger.warning(
            "Retryable failure in {description} on attempt {attempt}/{attempts}: {error}",
            description=description,
            attempt=attempt,
            attempts=policy.attempts,
            error=failure,
        )
        if attempt >= policy.attempts:
            raise failure
        await sleep(policy.delay_for(attempt))
