"""Retry policy for platform calls.

Only `TransientError`s are retried. A `TransportError` can narrow the retry to
the platforms a caller owns and can carry a server-provided `retry_after`,
which replaces the exponential wait for that attempt.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable, Collection, Coroutine, Optional, ParamSpec, TypeVar, cast

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from .exceptions import TransientError, TransportError
from .logging_utils import log_event

P = ParamSpec("P")
T = TypeVar("T")


def is_retryable(exc: BaseException, platforms: Optional[Collection[str]] = None) -> bool:
    if not isinstance(exc, TransientError):
        return False
    if platforms is None or not isinstance(exc, TransportError):
        return True
    return exc.platform in platforms


class _TransientWait(wait_base):
    """Exponential backoff that defers to the error's `retry_after`, capped."""

    def __init__(self, *, base_wait: float, max_wait: float) -> None:
        self._fallback = wait_exponential(multiplier=base_wait, max=max_wait, exp_base=2)
        self._max_wait = max_wait

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        retry_after = getattr(exc, "retry_after", None)
        if isinstance(retry_after, (int, float)) and retry_after >= 0:
            return min(float(retry_after), self._max_wait)
        return self._fallback(retry_state)


def _log_retry(logger: logging.Logger) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        log_event(
            logger,
            logging.WARNING,
            "retry.scheduled",
            call=getattr(retry_state.fn, "__qualname__", None),
            attempt=retry_state.attempt_number,
            platform=getattr(exc, "platform", None),
            wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            exc=exc,
        )

    return before_sleep


def retry_transient(
    max_attempts: int = 3,
    base_wait: float = 0.5,
    max_wait: float = 10.0,
    *,
    platforms: Optional[Collection[str]] = None,
    logger: Optional[logging.Logger] = None,
) -> Callable[[Callable[P, Coroutine[Any, Any, T]]], Callable[P, Coroutine[Any, Any, T]]]:
    """
    Decorator for retrying transient platform errors with backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        base_wait: Multiplier for the exponential backoff in seconds (default: 0.5)
        max_wait: Maximum wait time in seconds between attempts (default: 10.0)
        platforms: When set, transport errors from other platforms are not retried
        logger: Logger receiving `retry.scheduled` events

    Returns:
        A decorator that wraps async functions with retry logic. The last
        error is re-raised once attempts are exhausted.
    """
    retry_logger = logger or logging.getLogger(__name__)
    allowed = frozenset(platforms) if platforms is not None else None

    def decorator(
        func: Callable[P, Coroutine[Any, Any, T]],
    ) -> Callable[P, Coroutine[Any, Any, T]]:
        @wraps(func)
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=_TransientWait(base_wait=base_wait, max_wait=max_wait),
            retry=retry_if_exception(lambda exc: is_retryable(exc, allowed)),
            before_sleep=_log_retry(retry_logger),
            reraise=True,
        )
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return cast(T, await func(*args, **kwargs))

        return wrapper

    return decorator


__all__ = ["is_retryable", "retry_transient"]
