"""Retry utilities for port calls.

A failed extraction page or write is normally reported and retried by the
next cycle. ``RetryConfig`` lets a registry opt into a few in-run attempts
for sources known to be flaky, without changing the failure model: once
attempts are exhausted the last error is re-raised unchanged.

Implementation: uses tenacity internally.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

import tenacity
from tenacity.stop import stop_base
from tenacity.wait import wait_base

logger = logging.getLogger(__name__)

__all__ = ["RetryConfig", "retry_operation"]

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for in-run retry of extraction pages and writes."""

    max_attempts: int = 1
    backoff_seconds: float = 1.0
    exponential: bool = True
    jitter: bool = True

    @classmethod
    def none(cls) -> "RetryConfig":
        """No retry - fail immediately and let the next cycle retry."""
        return cls(max_attempts=1)

    @classmethod
    def default(cls) -> "RetryConfig":
        """Default retry: 3 attempts with exponential backoff."""
        return cls(max_attempts=3)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryConfig":
        if not data:
            return cls.none()
        return cls(
            max_attempts=int(data.get("max_attempts", 1)),
            backoff_seconds=float(data.get("backoff_seconds", 1.0)),
            exponential=bool(data.get("exponential", True)),
            jitter=bool(data.get("jitter", True)),
        )

    def wait_strategy(self) -> wait_base:
        strategy: wait_base
        if self.exponential:
            strategy = tenacity.wait_exponential(
                multiplier=self.backoff_seconds, min=self.backoff_seconds
            )
        else:
            strategy = tenacity.wait_fixed(self.backoff_seconds)
        if self.jitter:
            strategy = strategy + tenacity.wait_random(0, self.backoff_seconds * 0.5)
        return strategy


class _stop_when(stop_base):
    """Stop retrying as soon as ``predicate()`` is true."""

    def __init__(self, predicate: Callable[[], bool]) -> None:
        self.predicate = predicate

    def __call__(self, retry_state: tenacity.RetryCallState) -> bool:
        return self.predicate()


def retry_operation(
    operation: Callable[[], T],
    config: RetryConfig,
    operation_name: str = "operation",
    *,
    retry_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    abort: Optional[Callable[[], bool]] = None,
) -> T:
    """Execute an operation with retry logic.

    Args:
        operation: Callable to execute
        config: Retry configuration
        operation_name: Name for logging
        retry_exceptions: Only retry on these exceptions
        abort: Optional predicate; once true, no further attempt is made

    Returns:
        Result of the operation

    Example:
        rows = retry_operation(
            lambda: extractor.fetch(...),
            RetryConfig.default(),
            "orders page 3",
        )
    """
    if config.max_attempts <= 1:
        return operation()

    stop = tenacity.stop_after_attempt(config.max_attempts)
    if abort is not None:
        stop = stop | _stop_when(abort)

    def before_sleep_handler(retry_state: tenacity.RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "%s attempt %d/%d failed: %s. Retrying in %.1fs...",
            operation_name,
            retry_state.attempt_number,
            config.max_attempts,
            exception,
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )

    retryer = tenacity.Retrying(
        stop=stop,
        wait=config.wait_strategy(),
        retry=tenacity.retry_if_exception_type(retry_exceptions),
        before_sleep=before_sleep_handler,
        reraise=True,
    )

    try:
        return retryer(operation)
    except Exception:
        logger.error("%s failed after retries", operation_name)
        raise
