"""
Bounded retry with exponential backoff over classified errors.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar
from core.exceptions import ETLException, RetriesExhausted, StepTimeout
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attributes:
        retry_limit: Retries allowed after the first attempt
        backoff_base: Delay before the first retry, doubled for each further retry
        backoff_max: Upper bound for a single delay
        timeout: Per-attempt timeout in seconds (None disables it)
    """
    retry_limit: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    timeout: Optional[float] = 60.0

    def delay(self, attempt: int) -> float:
        """Delay after the given (zero-based) failed attempt"""
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)


async def call_with_retry(
    step: str,
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    pipeline_id: Optional[str] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """
    Run func until it succeeds, a fatal error escapes, or retries run out.

    RetryableError subclasses (and per-attempt timeouts, raised as
    StepTimeout) are retried; anything else propagates unchanged on the
    first occurrence.

    Raises:
        RetriesExhausted: the last retryable failure, after retry_limit retries
    """
    attempts = policy.retry_limit + 1

    for attempt in range(attempts):
        try:
            if policy.timeout is None:
                return await func()
            try:
                return await asyncio.wait_for(func(), timeout=policy.timeout)
            except asyncio.TimeoutError as e:
                raise StepTimeout(
                    f"Step '{step}' timed out after {policy.timeout}s",
                    context={"step": step, "pipeline_id": pipeline_id, "timeout": policy.timeout},
                    original_exception=e
                )

        except ETLException as e:
            e.add_context(step=step, pipeline_id=pipeline_id)
            if not e.retryable:
                raise

            if attempt == attempts - 1:
                logger.error(
                    f"Step '{step}' failed after {attempts} attempt(s): {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                raise RetriesExhausted(
                    f"Step '{step}' kept failing: {e.message}",
                    context={
                        "step": step,
                        "pipeline_id": pipeline_id,
                        "attempts": attempts,
                        "last_error": type(e).__name__
                    },
                    original_exception=e
                )

            delay = policy.delay(attempt)
            logger.warning(
                f"Step '{step}' failed ({type(e).__name__}: {e.message}). "
                f"Retrying in {delay} seconds (attempt {attempt + 1}/{attempts})"
            )
            await sleep(delay)

    # attempts is always >= 1, the loop either returns or raises
    raise AssertionError("unreachable")
