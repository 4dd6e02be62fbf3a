"""
Retry policies for remote reads and writes.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, FrozenSet, Optional

from shared.errors import ClassifiedError, ErrorClassification, classify_exception
from shared.logging import get_logger


class RetryConfig:
    """Configuration for backoff between retries."""

    def __init__(self,
                 base_delay: float = 1.0,
                 max_delay: float = 30.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True,
                 backoff_strategy: str = "exponential"):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy


@dataclass(frozen=True)
class RetryPolicy:
    """
    Pure retry decision for one operation class.

    ``attempt_count`` is the number of retries already performed for the
    current operation, starting at 0 on the first failure.
    """

    name: str
    max_retries: int
    terminal: FrozenSet[ErrorClassification] = frozenset()
    backoff: RetryConfig = field(default_factory=RetryConfig, compare=False)

    def should_retry(self, attempt_count: int, classification: ErrorClassification) -> bool:
        if classification in self.terminal:
            return False
        return attempt_count < self.max_retries

    def delay_for(self, attempt_count: int) -> float:
        return calculate_delay(attempt_count + 1, self.backoff)


def build_read_policy(max_retries: int = 3, backoff: Optional[RetryConfig] = None) -> RetryPolicy:
    """Reads never retry auth or not-found failures."""
    return RetryPolicy(
        name="read",
        max_retries=max_retries,
        terminal=frozenset({ErrorClassification.UNAUTHORIZED, ErrorClassification.NOT_FOUND}),
        backoff=backoff or RetryConfig(),
    )


def build_write_policy(max_retries: int = 2, backoff: Optional[RetryConfig] = None) -> RetryPolicy:
    """Writes never retry a rejected request body."""
    return RetryPolicy(
        name="write",
        max_retries=max_retries,
        terminal=frozenset({ErrorClassification.BAD_REQUEST}),
        backoff=backoff or RetryConfig(),
    )


READ_POLICY = build_read_policy()
WRITE_POLICY = build_write_policy()


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay before retry number ``attempt`` (1-based)."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    elif config.backoff_strategy == "fixed":
        delay = config.base_delay
    else:
        delay = config.base_delay

    # Apply max delay cap
    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


async def run_with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    *,
    name: str = "operation",
    on_retry: Optional[Callable[[int, ClassifiedError], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """
    Run ``operation`` until it succeeds or ``policy`` refuses another attempt.

    Every failure is classified first, so the policy only ever sees an
    ErrorClassification. The last ClassifiedError is raised when retries stop.
    """
    logger = get_logger(f"retry.{policy.name}")
    attempt_count = 0

    while True:
        try:
            result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_exception(exc)

            if not policy.should_retry(attempt_count, error.classification):
                logger.warning(
                    "Giving up on operation",
                    operation=name,
                    retries=attempt_count,
                    classification=error.classification.value,
                    error=error.message
                )
                if error is exc:
                    raise
                raise error from exc

            delay = policy.delay_for(attempt_count)
            attempt_count += 1
            if on_retry is not None:
                on_retry(attempt_count, error)

            logger.info(
                "Operation failed, retrying",
                operation=name,
                retry=attempt_count,
                delay=delay,
                classification=error.classification.value,
                error=error.message
            )
            await sleep(delay)
            continue

        if attempt_count:
            logger.info("Retry succeeded", operation=name, retries=attempt_count)
        return result
