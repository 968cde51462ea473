"""Retry with bounded exponential backoff for object store calls.

Both the writer (put) and the reader (get) wrap store operations in
``retry_with_backoff``. Retries are bounded twice over: by attempt
count and by a total time budget, so a dead store fails closed instead
of being retried forever.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

from .exceptions import StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Backoff schedule and retry classification for store calls."""

    max_retries: int = 4
    backoff_base: float = 0.2  # seconds
    backoff_max: float = 5.0  # cap
    backoff_multiplier: float = 2.0
    total_timeout: float | None = 30.0  # seconds across all attempts
    retryable_status_codes: tuple[int, ...] = (408, 429, 500, 502, 503, 504)
    retryable_exceptions: tuple[type[Exception], ...] = (
        ConnectionError,
        TimeoutError,
        OSError,
    )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (0-based) failed attempt."""
        return min(self.backoff_base * (self.backoff_multiplier**attempt), self.backoff_max)


class RetryExhaustedError(Exception):
    """Raised when an operation keeps failing.

    ``last_exception`` is the final failure; it is also chained as
    ``__cause__``.
    """

    def __init__(self, attempts: int, last_exception: Exception):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_exception}")
        self.attempts = attempts
        self.last_exception = last_exception


def _extract_status_code(exc: Exception) -> int | None:
    """HTTP status carried by a store SDK error, if any."""
    # Azure SDK: HttpResponseError, and our own StoreError
    status = getattr(exc, "status_code", None)
    if status is not None:
        return int(status)
    # botocore ClientError
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        code = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code is not None:
            return int(code)
    return None


def is_retryable(exc: Exception, config: RetryConfig) -> bool:
    """Decide whether another attempt could succeed."""
    if isinstance(exc, StoreError):
        return exc.retryable
    if isinstance(exc, config.retryable_exceptions):
        return True
    status_code = _extract_status_code(exc)
    return status_code is not None and status_code in config.retryable_status_codes


def _stop_reason(
    exc: Exception, cfg: RetryConfig, attempt: int, elapsed: float
) -> str | None:
    """Why no further attempt follows a failed one, or None to retry."""
    if not is_retryable(exc, cfg):
        return "permanent"
    if attempt >= cfg.max_retries:
        return "attempts"
    if cfg.total_timeout is not None and elapsed + cfg.delay_for(attempt) >= cfg.total_timeout:
        return "time budget"
    return None


async def retry_with_backoff(
    fn: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    config: RetryConfig | None = None,
    context_msg: str = "",
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)``, retrying transient store failures.

    Args:
        fn: Store operation to call
        config: Retry policy (defaults to ``RetryConfig()``)
        context_msg: What is being operated on, usually the object key;
            appears in log messages and as the ``target`` log field

    Raises:
        RetryExhaustedError: On a permanent error, after the last allowed
            attempt, or once the time budget is spent. The budget covers
            the calls themselves, so a call that never returns still fails
            within ``total_timeout``
    """
    cfg = config or RetryConfig()
    attempts = cfg.max_retries + 1
    suffix = f" [{context_msg}]" if context_msg else ""
    clock = asyncio.get_running_loop().time
    started = clock()
    deadline = None if cfg.total_timeout is None else started + cfg.total_timeout
    attempt = 0

    while True:
        try:
            # A hung call is cut off once the budget is spent
            async with asyncio.timeout_at(deadline):
                result = await fn(*args, **kwargs)
            break
        except Exception as exc:
            reason = _stop_reason(exc, cfg, attempt, clock() - started)
            fields = {"target": context_msg, "attempt": attempt + 1}
            if reason is not None:
                logger.error(
                    "RETRY_EXHAUSTED (%s) after %d/%d%s: %s",
                    reason, attempt + 1, attempts, suffix, exc, extra=fields,
                )
                raise RetryExhaustedError(attempt + 1, exc) from exc
            delay = cfg.delay_for(attempt)
            logger.warning(
                "RETRYING %d/%d in %.2fs (status=%s)%s: %s",
                attempt + 1, attempts, delay, _extract_status_code(exc), suffix, exc,
                extra=fields,
            )
            await asyncio.sleep(delay)
            attempt += 1

    if attempt:
        logger.warning("RETRY_RECOVERED on attempt %d/%d%s", attempt + 1, attempts, suffix)
    return result
