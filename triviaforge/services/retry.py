"""
Submission retry policy.

Retries transient ledger submission failures with exponential backoff and
jitter. Only used where a retry cannot double-spend: before a burn has been
accepted, for plain mints that consume nothing on failure, and for a forge
mint the signer refused as busy.

Backoff: min(base * 2^(attempt-1), max) + random(0, jitter)
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from triviaforge.config import settings
from triviaforge.ledger.client import LedgerSubmissionError
from triviaforge.metrics import NULL_METRICS, MetricsSink

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SubmissionRetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    max_backoff_seconds: float = 30.0
    jitter_seconds: float = 0.5
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls) -> "SubmissionRetryPolicy":
        return cls(
            max_attempts=settings.submission_max_attempts,
            backoff_seconds=settings.submission_backoff_seconds,
        )

    def compute_backoff(self, attempt: int) -> float:
        """Delay before retrying after `attempt` (1-indexed) failed."""
        delay = min(self.backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)
        return delay + random.uniform(0, self.jitter_seconds)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        metrics: MetricsSink = NULL_METRICS,
        context: dict[str, Any] | None = None,
        retry_on: tuple[type[LedgerSubmissionError], ...] = (LedgerSubmissionError,),
    ) -> T:
        """
        Run `operation`, retrying transient LedgerSubmissionErrors.

        `retry_on` narrows which error classes are retried. Non-transient
        errors, errors outside `retry_on` and the last transient error
        propagate.
        """
        attempt = 1
        while True:
            try:
                result = await operation()
            except LedgerSubmissionError as e:
                will_retry = (
                    isinstance(e, retry_on) and e.transient and attempt < self.max_attempts
                )
                metrics.increment(
                    "ledger.submission_attempt",
                    tags={"operation": operation_name, "will_retry": str(will_retry).lower()},
                )
                if not will_retry:
                    logger.warning(
                        "LEDGER_SUBMISSION_GAVE_UP",
                        extra={
                            "operation": operation_name,
                            "attempt": attempt,
                            "error": e.message,
                            **(context or {}),
                        },
                    )
                    raise
                delay = self.compute_backoff(attempt)
                logger.info(
                    "LEDGER_SUBMISSION_RETRY",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt,
                        "delay": round(delay, 3),
                        **(context or {}),
                    },
                )
                await self.sleep(delay)
                attempt += 1
                continue

            metrics.increment("ledger.submission_success", tags={"operation": operation_name})
            return result
