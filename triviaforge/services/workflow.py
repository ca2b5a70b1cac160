"""
Resumable ledger workflows.

Forge and mint operations are persisted state machines. `advance` performs
one step and commits it; `run` calls `advance` until the operation is
terminal, sleeping between confirmation polls. A crashed process loses
nothing: the reconciliation job calls `advance` again later.

Confirmation polling is bounded. When the attempts run out the operation
fails with an unknown outcome instead of assuming success.
"""

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Generic, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from triviaforge.config import settings
from triviaforge.db.operations import utcnow
from triviaforge.ledger.client import LedgerClient, LedgerSubmissionError, TransactionStatus
from triviaforge.metrics import NULL_METRICS, MetricsSink
from triviaforge.services.retry import SubmissionRetryPolicy

logger = logging.getLogger(__name__)

OpT = TypeVar("OpT")


class LedgerWorkflow(Generic[OpT]):
    """Shared plumbing for the forge and mint orchestrators."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerClient,
        metrics: MetricsSink = NULL_METRICS,
        clock: Callable[[], datetime] = utcnow,
        retry_policy: SubmissionRetryPolicy | None = None,
        poll_interval: float | None = None,
        max_poll_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._metrics = metrics
        self._clock = clock
        self._retry = retry_policy or SubmissionRetryPolicy.from_settings()
        self._sleep = sleep
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.confirmation_poll_seconds
        )
        self.max_poll_attempts = (
            max_poll_attempts
            if max_poll_attempts is not None
            else settings.confirmation_max_attempts
        )
        # An entry lives only while some advance or cancel holds or awaits it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, operation_id: str) -> asyncio.Lock:
        lock = self._locks.get(operation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[operation_id] = lock
        return lock

    async def _check_transaction(self, tx_ref: str) -> TransactionStatus:
        """Ask the ledger about a transaction. Unreachable counts as pending."""
        try:
            return await self._ledger.get_transaction_status(tx_ref)
        except LedgerSubmissionError as e:
            logger.warning(
                "LEDGER_STATUS_UNAVAILABLE",
                extra={"tx_ref": tx_ref, "error": e.message},
            )
            return TransactionStatus.PENDING

    # Subclasses provide these

    async def advance(self, operation_id: str) -> OpT:
        raise NotImplementedError

    def _is_terminal(self, op: OpT) -> bool:
        raise NotImplementedError

    def _is_awaiting_confirmation(self, op: OpT) -> bool:
        raise NotImplementedError

    @property
    def max_steps(self) -> int:
        # Submit and poll for each ledger transaction, plus store retries
        return 2 * (self.max_poll_attempts + 2) + 2

    async def run(self, operation_id: str) -> OpT:
        """
        Advance until terminal or out of steps.

        Returns the latest snapshot; a non-terminal result is left for the
        reconciliation job.
        """
        op = await self.advance(operation_id)
        steps = 1
        while not self._is_terminal(op) and steps < self.max_steps:
            if self._is_awaiting_confirmation(op):
                await self._sleep(self.poll_interval)
            op = await self.advance(operation_id)
            steps += 1
        return op
