"""
Retry Policy - Declarative retry/backoff with model fallback for LLM calls
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Rate limited / overloaded
RETRYABLE_STATUSES = frozenset({429, 529})


class LLMAPIError(Exception):
    """Error response from an LLM vendor API; status is None for network failures"""

    def __init__(self, status: int | None, message: str, provider: str = "API"):
        label = f"({status})" if status is not None else "(network)"
        super().__init__(f"{provider} API error {label}: {message}")
        self.status = status
        self.provider = provider


class RetryExhaustedError(Exception):
    """Every attempt allowed by the policy failed with a retryable error"""

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def is_retryable_error(exc: BaseException) -> bool:
    """Rate limits, overloads, server errors and network trouble are retried"""
    if isinstance(exc, LLMAPIError):
        if exc.status is None:
            return True
        return exc.status in RETRYABLE_STATUSES or exc.status >= 500
    return isinstance(exc, (asyncio.TimeoutError, ConnectionError))


def exponential_backoff(base_delay: float = 1.0, max_delay: float = 30.0) -> Callable[[int], float]:
    """Delay in seconds after the given (1-based) failed attempt"""

    def delay(attempt: int) -> float:
        return min(max_delay, base_delay * (2 ** (attempt - 1)))

    return delay


def fallback_on_penultimate(attempt: int, max_attempts: int) -> bool:
    """Switch to the fallback model once the penultimate attempt has failed"""
    return attempt == max_attempts - 1


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=exponential_backoff)
    is_retryable: Callable[[BaseException], bool] = is_retryable_error
    should_fallback: Callable[[int, int], bool] = fallback_on_penultimate

    @classmethod
    def from_config(cls, config: dict) -> "RetryPolicy":
        """Build from the "retry" config section (delays in milliseconds)"""
        return cls(
            max_attempts=max(1, int(config.get("maxAttempts", 3))),
            backoff=exponential_backoff(
                base_delay=config.get("baseDelayMs", 1000) / 1000,
                max_delay=config.get("maxDelayMs", 30000) / 1000,
            ),
        )


async def call_with_policy(
    operation: Callable[[str], Awaitable[T]],
    policy: RetryPolicy,
    model: str,
    fallback_model: str | None = None,
    label: str = "LLM call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `operation(model)` under the policy, possibly switching to the fallback model"""
    current_model = model
    attempts = max(1, policy.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await operation(current_model)
        except Exception as e:
            if not policy.is_retryable(e):
                raise
            if attempt >= attempts:
                logger.error("[RetryPolicy] %s: max retries exceeded (%d attempts)", label, attempts)
                raise RetryExhaustedError(label, attempts, e) from e

            delay = policy.backoff(attempt)
            if fallback_model and fallback_model != current_model and policy.should_fallback(attempt, attempts):
                logger.warning(
                    "[RetryPolicy] %s: %s (attempt %d/%d), switching to fallback model %s",
                    label, e, attempt, attempts, fallback_model,
                )
                current_model = fallback_model
            else:
                logger.warning(
                    "[RetryPolicy] %s: %s (attempt %d/%d), retrying in %.1fs",
                    label, e, attempt, attempts, delay,
                )
            await sleep(delay)

    raise AssertionError("unreachable")
