"""
Catalog reservation.

Each catalog item is one mintable design and may be issued at most once.
Reservation is a single guarded UPDATE: the candidate row is selected with
FOR UPDATE SKIP LOCKED inside the statement, and the outer WHERE re-checks
`is_reserved`. Concurrent reservers never receive the same item, and a
reserver facing an empty pool fails immediately instead of waiting.

The session-level functions let the mint workflow reserve inside its own
transaction; `CatalogReservation` wraps each in a transaction of its own.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from triviaforge.db.operations import catalog_item_to_model, utcnow
from triviaforge.metrics import NULL_METRICS, MetricsSink
from triviaforge.models.db import CatalogItemDB, MintOperationDB
from triviaforge.models.failure import FailureKind, KnownError
from triviaforge.models.lifecycle import CatalogItem, FailureReason, MintStatus
from triviaforge.naming.categories import get_category_code

logger = logging.getLogger(__name__)


class ReservationConflict(KnownError):
    """The pool is exhausted or the item is in the wrong state."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(
            kind=FailureKind.RESERVATION_CONFLICT,
            message=message,
            detail=detail,
            suggestion="Try another category.",
            status_code=409,
        )


class CategoryExhaustedError(ReservationConflict):
    """No available item remains in the category."""

    def __init__(self, category_id: str):
        self.category_id = category_id
        super().__init__(
            f"No designs left to mint in category: {category_id}",
            detail=f"category_id={category_id}",
        )


class CatalogItemNotFoundError(KnownError):
    def __init__(self, item_id: int):
        super().__init__(
            kind=FailureKind.NOT_FOUND,
            message=f"Catalog item not found: {item_id}",
            status_code=404,
        )


# --- Session-level operations ---


async def reserve_item(session: AsyncSession, category_id: str, now: datetime) -> CatalogItemDB:
    """
    Atomically flip one available item in the category to reserved.

    Raises:
        CategoryExhaustedError: If no available item exists
    """
    pool = aliased(CatalogItemDB)
    candidate = (
        select(pool.id)
        .where(
            pool.category_id == category_id,
            pool.is_reserved.is_(False),
            pool.is_minted.is_(False),
        )
        .order_by(pool.id)
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    result = await session.execute(
        update(CatalogItemDB)
        .where(CatalogItemDB.id == candidate, CatalogItemDB.is_reserved.is_(False))
        .values(is_reserved=True, reserved_at=now)
        .returning(CatalogItemDB.id)
        .execution_options(synchronize_session=False)
    )
    item_id = result.scalar_one_or_none()
    if item_id is None:
        raise CategoryExhaustedError(category_id)

    item = await session.get(CatalogItemDB, item_id, populate_existing=True)
    if item is None:
        raise CatalogItemNotFoundError(item_id)
    return item


async def release_item(session: AsyncSession, item_id: int) -> CatalogItemDB:
    """
    Return a reserved, unminted item to the pool.

    Releasing an available item is a no-op.

    Raises:
        CatalogItemNotFoundError: If the item does not exist
        ReservationConflict: If the item is already minted
    """
    result = await session.execute(
        update(CatalogItemDB)
        .where(
            CatalogItemDB.id == item_id,
            CatalogItemDB.is_reserved.is_(True),
            CatalogItemDB.is_minted.is_(False),
        )
        .values(is_reserved=False, reserved_at=None)
        .execution_options(synchronize_session=False)
    )
    item = await session.get(CatalogItemDB, item_id, populate_existing=True)
    if item is None:
        raise CatalogItemNotFoundError(item_id)
    if result.rowcount == 0 and item.is_minted:  # type: ignore[attr-defined]
        raise ReservationConflict(
            f"Catalog item {item_id} is already minted", detail=f"item_id={item_id}"
        )
    return item


async def mark_item_minted(session: AsyncSession, item_id: int, now: datetime) -> CatalogItemDB:
    """
    Move a reserved item to minted. Repeating on a minted item is a no-op.

    Raises:
        CatalogItemNotFoundError: If the item does not exist
        ReservationConflict: If the item is not reserved
    """
    result = await session.execute(
        update(CatalogItemDB)
        .where(
            CatalogItemDB.id == item_id,
            CatalogItemDB.is_reserved.is_(True),
            CatalogItemDB.is_minted.is_(False),
        )
        .values(is_minted=True, minted_at=now)
        .execution_options(synchronize_session=False)
    )
    item = await session.get(CatalogItemDB, item_id, populate_existing=True)
    if item is None:
        raise CatalogItemNotFoundError(item_id)
    if result.rowcount == 0 and not item.is_minted:  # type: ignore[attr-defined]
        raise ReservationConflict(
            f"Catalog item {item_id} is not reserved", detail=f"item_id={item_id}"
        )
    return item


# --- Service ---


class CatalogReservation:
    """Reservation service over the catalog pools, one transaction per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        metrics: MetricsSink = NULL_METRICS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._metrics = metrics
        self._clock = clock

    async def reserve(self, category_id: str) -> CatalogItem:
        """
        Reserve one available item in a category.

        Raises:
            CategoryExhaustedError: If the pool is empty
        """
        try:
            async with self._session_factory() as session, session.begin():
                item = await reserve_item(session, category_id, self._clock())
                reserved = catalog_item_to_model(item)
        except CategoryExhaustedError:
            logger.info("CATALOG_EXHAUSTED", extra={"category_id": category_id})
            self._metrics.increment(
                "catalog.reserve", tags={"category": category_id, "outcome": "exhausted"}
            )
            raise

        self._metrics.increment(
            "catalog.reserve", tags={"category": category_id, "outcome": "success"}
        )
        logger.info("CATALOG_RESERVED", extra={"category_id": category_id, "item_id": reserved.id})
        return reserved

    async def release(self, item_id: int) -> CatalogItem:
        """Return a reserved, unminted item to available."""
        async with self._session_factory() as session, session.begin():
            item = await release_item(session, item_id)
            released = catalog_item_to_model(item)
        self._metrics.increment("catalog.release")
        logger.info("CATALOG_RELEASED", extra={"item_id": item_id})
        return released

    async def mark_minted(self, item_id: int) -> CatalogItem:
        async with self._session_factory() as session, session.begin():
            item = await mark_item_minted(session, item_id, self._clock())
            return catalog_item_to_model(item)

    async def available_count(self, category_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(CatalogItemDB.id)).where(
                    CatalogItemDB.category_id == category_id,
                    CatalogItemDB.is_reserved.is_(False),
                    CatalogItemDB.is_minted.is_(False),
                )
            )
            return int(result.scalar_one())

    async def release_stale(self, older_than: datetime) -> list[int]:
        """
        Release items reserved before `older_than` with no mint in flight.

        Items whose mint is pending, submitted, confirmed, or ended with an
        unknown outcome stay reserved.

        Returns:
            Ids of the released items
        """
        held_by_mint = select(MintOperationDB.catalog_item_id).where(
            or_(
                MintOperationDB.status != MintStatus.FAILED.value,
                MintOperationDB.failure_reason == FailureReason.UNKNOWN_OUTCOME.value,
            )
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(CatalogItemDB)
                .where(
                    CatalogItemDB.is_reserved.is_(True),
                    CatalogItemDB.is_minted.is_(False),
                    CatalogItemDB.reserved_at < older_than,
                    CatalogItemDB.id.not_in(held_by_mint),
                )
                .values(is_reserved=False, reserved_at=None)
                .returning(CatalogItemDB.id)
                .execution_options(synchronize_session=False)
            )
            released = sorted(result.scalars().all())

        if released:
            logger.info("CATALOG_STALE_RELEASED", extra={"count": len(released)})
            self._metrics.increment("catalog.stale_released", value=len(released))
        return released

    async def seed_catalog(self, items: Iterable[tuple[str, str]]) -> int:
        """
        Add designs to the catalog.

        Args:
            items: (category_id, name) pairs

        Returns:
            Number of items created

        Raises:
            UnknownCodeError: If a category is not registered
        """
        rows = []
        for category_id, name in items:
            get_category_code(category_id)
            rows.append(CatalogItemDB(category_id=category_id, name=name))

        async with self._session_factory() as session, session.begin():
            session.add_all(rows)

        logger.info("CATALOG_SEEDED", extra={"count": len(rows)})
        return len(rows)
