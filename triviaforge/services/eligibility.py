"""
Eligibility ledger.

An eligibility is a player's time-boxed right to mint one token in a
category, created for each qualifying (perfect score) game. Identified
players get a longer window than guests.

Expiry is lazy: `consume` and `get` compare `expires_at` with the clock at
the moment of the call. `expire_overdue` only tidies up rows for reporting;
nothing depends on it running.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from triviaforge.config import settings
from triviaforge.db.operations import eligibility_to_model, to_utc, utcnow
from triviaforge.metrics import NULL_METRICS, MetricsSink
from triviaforge.models.db import EligibilityDB
from triviaforge.models.failure import FailureKind, KnownError
from triviaforge.models.lifecycle import Eligibility, EligibilityStatus
from triviaforge.naming.categories import get_category_code

logger = logging.getLogger(__name__)


class EligibilityError(KnownError):
    """Base class for eligibility failures. Reported, never retried."""

    def __init__(self, kind: FailureKind, message: str, eligibility_id: str, status_code: int):
        self.eligibility_id = eligibility_id
        super().__init__(
            kind=kind,
            message=message,
            detail=f"eligibility_id={eligibility_id}",
            suggestion="Earn a new eligibility with a perfect score.",
            status_code=status_code,
        )


class EligibilityNotFoundError(EligibilityError):
    def __init__(self, eligibility_id: str):
        super().__init__(
            FailureKind.ELIGIBILITY_NOT_FOUND,
            "Eligibility not found",
            eligibility_id,
            status_code=404,
        )


class EligibilityExpiredError(EligibilityError):
    def __init__(self, eligibility_id: str):
        super().__init__(
            FailureKind.ELIGIBILITY_EXPIRED,
            "Eligibility has expired",
            eligibility_id,
            status_code=410,
        )


class EligibilityAlreadyUsedError(EligibilityError):
    def __init__(self, eligibility_id: str):
        super().__init__(
            FailureKind.ELIGIBILITY_USED,
            "Eligibility has already been used",
            eligibility_id,
            status_code=409,
        )


# --- Session-level operations ---


async def consume_eligibility(
    session: AsyncSession, eligibility_id: str, now: datetime
) -> EligibilityDB:
    """
    Atomically move an eligibility from active to used.

    On failure an overdue active row is marked expired in the session
    before raising; callers that want the mark kept must commit.

    Raises:
        EligibilityNotFoundError: No such eligibility
        EligibilityAlreadyUsedError: Already consumed
        EligibilityExpiredError: Past `expires_at`, or already expired
    """
    result = await session.execute(
        update(EligibilityDB)
        .where(
            EligibilityDB.id == eligibility_id,
            EligibilityDB.status == EligibilityStatus.ACTIVE.value,
            EligibilityDB.expires_at > now,
        )
        .values(status=EligibilityStatus.USED.value, used_at=now)
        .execution_options(synchronize_session=False)
    )
    row = await session.get(EligibilityDB, eligibility_id, populate_existing=True)
    if row is None:
        raise EligibilityNotFoundError(eligibility_id)
    if result.rowcount == 1:  # type: ignore[attr-defined]
        return row

    if row.status == EligibilityStatus.USED.value:
        raise EligibilityAlreadyUsedError(eligibility_id)

    if row.status == EligibilityStatus.ACTIVE.value:
        row.status = EligibilityStatus.EXPIRED.value
        await session.flush()
    raise EligibilityExpiredError(eligibility_id)


def _is_overdue(row: EligibilityDB, now: datetime) -> bool:
    expires_at = to_utc(row.expires_at)
    return row.status == EligibilityStatus.ACTIVE.value and expires_at <= now


# --- Service ---


class EligibilityLedger:
    """Creates and consumes eligibilities, one transaction per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        metrics: MetricsSink = NULL_METRICS,
        clock: Callable[[], datetime] = utcnow,
        connected_window: timedelta | None = None,
        guest_window: timedelta | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._metrics = metrics
        self._clock = clock
        self.connected_window = connected_window or timedelta(
            minutes=settings.connected_window_minutes
        )
        self.guest_window = guest_window or timedelta(minutes=settings.guest_window_minutes)

    async def create_eligibility(
        self,
        player_id: str,
        category_id: str,
        is_guest: bool,
        session_id: str | None = None,
    ) -> Eligibility:
        """
        Record a player's right to mint one token in a category.

        Raises:
            UnknownCodeError: If the category is not registered
        """
        get_category_code(category_id, metrics=self._metrics)
        now = self._clock()
        window = self.guest_window if is_guest else self.connected_window

        async with self._session_factory() as session, session.begin():
            row = EligibilityDB(
                player_id=player_id,
                category_id=category_id,
                session_id=session_id,
                is_guest=is_guest,
                status=EligibilityStatus.ACTIVE.value,
                created_at=now,
                expires_at=now + window,
            )
            session.add(row)
            await session.flush()
            eligibility = eligibility_to_model(row)

        self._metrics.increment(
            "eligibility.created", tags={"guest": str(is_guest).lower()}
        )
        logger.info(
            "ELIGIBILITY_CREATED",
            extra={
                "eligibility_id": eligibility.id,
                "player_id": player_id,
                "category_id": category_id,
                "is_guest": is_guest,
            },
        )
        return eligibility

    async def consume(self, eligibility_id: str) -> Eligibility:
        """
        Use an eligibility. Succeeds at most once per eligibility.

        Raises:
            EligibilityNotFoundError, EligibilityAlreadyUsedError, EligibilityExpiredError
        """
        async with self._session_factory() as session:
            try:
                row = await consume_eligibility(session, eligibility_id, self._clock())
            except EligibilityExpiredError:
                await session.commit()
                self._metrics.increment("eligibility.consume", tags={"outcome": "expired"})
                raise
            except EligibilityAlreadyUsedError:
                self._metrics.increment("eligibility.consume", tags={"outcome": "already_used"})
                raise
            except EligibilityNotFoundError:
                self._metrics.increment("eligibility.consume", tags={"outcome": "not_found"})
                raise
            eligibility = eligibility_to_model(row)
            await session.commit()

        self._metrics.increment("eligibility.consume", tags={"outcome": "success"})
        logger.info("ELIGIBILITY_CONSUMED", extra={"eligibility_id": eligibility_id})
        return eligibility

    async def get(self, eligibility_id: str) -> Eligibility:
        """
        Get an eligibility, expiring it first if it is overdue.

        Raises:
            EligibilityNotFoundError: No such eligibility
        """
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            row = await session.get(EligibilityDB, eligibility_id)
            if row is None:
                raise EligibilityNotFoundError(eligibility_id)
            if _is_overdue(row, now):
                row.status = EligibilityStatus.EXPIRED.value
                await session.flush()
            return eligibility_to_model(row)

    async def get_active(self, player_id: str) -> list[Eligibility]:
        """A player's usable eligibilities, soonest to expire first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(EligibilityDB)
                .where(
                    EligibilityDB.player_id == player_id,
                    EligibilityDB.status == EligibilityStatus.ACTIVE.value,
                    EligibilityDB.expires_at > self._clock(),
                )
                .order_by(EligibilityDB.expires_at)
            )
            return [eligibility_to_model(row) for row in result.scalars().all()]

    async def expire_overdue(self) -> int:
        """
        Mark every overdue active eligibility expired.

        Returns:
            Number of eligibilities expired
        """
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(EligibilityDB)
                .where(
                    EligibilityDB.status == EligibilityStatus.ACTIVE.value,
                    EligibilityDB.expires_at <= self._clock(),
                )
                .values(status=EligibilityStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
            count = int(result.rowcount)  # type: ignore[attr-defined]

        if count:
            logger.info("ELIGIBILITY_EXPIRED_BULK", extra={"count": count})
            self._metrics.increment("eligibility.expired", value=count)
        return count
