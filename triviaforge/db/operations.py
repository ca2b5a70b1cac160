"""
Database operations shared by the lifecycle services.

Provides async functions for ownership records and seasons, and the
converters from ORM rows to lifecycle dataclasses.
"""

from collections.abc import Iterable
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from triviaforge.models.db import (
    CatalogItemDB,
    EligibilityDB,
    ForgeOperationDB,
    MintOperationDB,
    OwnershipRecordDB,
    SeasonDB,
)
from triviaforge.models.lifecycle import (
    CatalogItem,
    Eligibility,
    EligibilityStatus,
    FailureReason,
    ForgeOperation,
    ForgeStatus,
    ForgeType,
    MintOperation,
    MintStatus,
    OwnershipRecord,
    OwnershipStatus,
    Season,
    TokenSource,
)
from triviaforge.naming.seasons import get_season_code


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_utc(value: datetime) -> datetime:
    """Attach UTC to a naive datetime read back from SQLite."""
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """`to_utc` for nullable columns."""
    return None if value is None else to_utc(value)


# --- Ownership Operations ---


async def get_records_by_identifier(
    session: AsyncSession, asset_identifiers: Iterable[str]
) -> list[OwnershipRecordDB]:
    """Get ownership records for the given identifiers, in no particular order."""
    identifiers = list(asset_identifiers)
    if not identifiers:
        return []
    result = await session.execute(
        select(OwnershipRecordDB).where(OwnershipRecordDB.asset_identifier.in_(identifiers))
    )
    return list(result.scalars().all())


async def get_held_records(
    session: AsyncSession,
    owner_key: str,
    tier: str | None = None,
    unclaimed_only: bool = True,
) -> list[OwnershipRecordDB]:
    """Get an owner's held records, oldest first."""
    query = select(OwnershipRecordDB).where(
        OwnershipRecordDB.owner_key == owner_key,
        OwnershipRecordDB.status == OwnershipStatus.HELD.value,
    )
    if tier is not None:
        query = query.where(OwnershipRecordDB.tier == tier)
    if unclaimed_only:
        query = query.where(OwnershipRecordDB.forge_operation_id.is_(None))
    result = await session.execute(
        query.order_by(OwnershipRecordDB.created_at, OwnershipRecordDB.id)
    )
    return list(result.scalars().all())


async def record_ownership(
    session: AsyncSession,
    owner_key: str,
    asset_identifier: str,
    tier: str,
    source: TokenSource,
    category_id: str | None = None,
    season_id: str | None = None,
    now: datetime | None = None,
) -> tuple[OwnershipRecordDB, bool]:
    """
    Create an ownership record unless one exists for the identifier.

    Safe to repeat after a confirmed mint: a second call returns the
    existing row.

    Returns:
        Tuple of (record, created) where created is True if new.
    """
    result = await session.execute(
        select(OwnershipRecordDB).where(OwnershipRecordDB.asset_identifier == asset_identifier)
    )
    existing = result.scalar_one_or_none()
    if existing:
        return existing, False

    record = OwnershipRecordDB(
        owner_key=owner_key,
        asset_identifier=asset_identifier,
        tier=tier,
        source=source.value,
        category_id=category_id,
        season_id=season_id,
        status=OwnershipStatus.HELD.value,
        created_at=now or utcnow(),
    )
    session.add(record)
    await session.flush()
    return record, True


# --- Season Operations ---


async def get_active_season(session: AsyncSession) -> SeasonDB | None:
    """Get the season flagged active, if any."""
    result = await session.execute(
        select(SeasonDB).where(SeasonDB.is_active.is_(True)).order_by(SeasonDB.starts_at.desc())
    )
    return result.scalars().first()


async def get_open_season(session: AsyncSession, now: datetime) -> SeasonDB | None:
    """Get the active season if `now` falls between its start and end."""
    season = await get_active_season(session)
    if season is None:
        return None
    starts_at = to_utc(season.starts_at)
    ends_at = to_utc(season.ends_at)
    if starts_at <= now <= ends_at:
        return season
    return None


async def create_season(
    session: AsyncSession,
    season_type: str,
    season_number: int,
    starts_at: datetime,
    ends_at: datetime,
    grace_days: int = 7,
    is_active: bool = False,
) -> SeasonDB:
    """
    Create a season.

    Raises IntegrityError if the season type and number already exist.
    """
    season = SeasonDB(
        season_type=season_type,
        season_number=season_number,
        starts_at=starts_at,
        ends_at=ends_at,
        grace_days=grace_days,
        is_active=is_active,
    )
    session.add(season)
    await session.flush()
    return season


def season_code_for(season: SeasonDB | Season) -> str:
    """Derive a season's code, e.g. "WI1"."""
    return get_season_code(season.season_type, season.season_number)


# --- Converters ---


def catalog_item_to_model(item: CatalogItemDB) -> CatalogItem:
    """Convert a database catalog item to a domain model."""
    return CatalogItem(
        id=item.id,
        category_id=item.category_id,
        name=item.name,
        tier_default=item.tier_default,
        is_reserved=item.is_reserved,
        is_minted=item.is_minted,
        reserved_at=as_utc(item.reserved_at),
        minted_at=as_utc(item.minted_at),
    )


def eligibility_to_model(row: EligibilityDB) -> Eligibility:
    """Convert a database eligibility to a domain model."""
    created_at = to_utc(row.created_at)
    expires_at = to_utc(row.expires_at)
    return Eligibility(
        id=row.id,
        player_id=row.player_id,
        category_id=row.category_id,
        status=EligibilityStatus(row.status),
        created_at=created_at,
        expires_at=expires_at,
        used_at=as_utc(row.used_at),
        session_id=row.session_id,
        is_guest=row.is_guest,
    )


def ownership_to_model(record: OwnershipRecordDB) -> OwnershipRecord:
    """Convert a database ownership record to a domain model."""
    created_at = to_utc(record.created_at)
    return OwnershipRecord(
        id=record.id,
        owner_key=record.owner_key,
        asset_identifier=record.asset_identifier,
        tier=record.tier,
        source=TokenSource(record.source),
        status=OwnershipStatus(record.status),
        created_at=created_at,
        category_id=record.category_id,
        season_id=record.season_id,
        forge_operation_id=record.forge_operation_id,
        burned_at=as_utc(record.burned_at),
    )


def season_to_model(season: SeasonDB) -> Season:
    """Convert a database season to a domain model."""
    starts_at = to_utc(season.starts_at)
    ends_at = to_utc(season.ends_at)
    return Season(
        id=season.id,
        season_type=season.season_type,
        season_number=season.season_number,
        starts_at=starts_at,
        ends_at=ends_at,
        grace_days=season.grace_days,
        is_active=season.is_active,
    )


def forge_to_model(op: ForgeOperationDB) -> ForgeOperation:
    """Convert a database forge operation to a domain model."""
    created_at = to_utc(op.created_at)
    updated_at = to_utc(op.updated_at)
    return ForgeOperation(
        id=op.id,
        type=ForgeType(op.type),
        owner_key=op.owner_key,
        status=ForgeStatus(op.status),
        input_identifiers=list(op.input_identifiers or []),
        created_at=created_at,
        updated_at=updated_at,
        category_id=op.category_id,
        season_id=op.season_id,
        burn_tx_ref=op.burn_tx_ref,
        mint_tx_ref=op.mint_tx_ref,
        output_identifier=op.output_identifier,
        error=op.error,
        failure_reason=FailureReason(op.failure_reason) if op.failure_reason else None,
        requires_intervention=op.requires_intervention,
        poll_attempts=op.poll_attempts,
        confirmed_at=as_utc(op.confirmed_at),
    )


def mint_to_model(op: MintOperationDB) -> MintOperation:
    """Convert a database mint operation to a domain model."""
    created_at = to_utc(op.created_at)
    return MintOperation(
        id=op.id,
        eligibility_id=op.eligibility_id,
        catalog_item_id=op.catalog_item_id,
        player_id=op.player_id,
        owner_key=op.owner_key,
        category_id=op.category_id,
        asset_identifier=op.asset_identifier,
        status=MintStatus(op.status),
        created_at=created_at,
        tx_ref=op.tx_ref,
        error=op.error,
        failure_reason=FailureReason(op.failure_reason) if op.failure_reason else None,
        poll_attempts=op.poll_attempts,
        confirmed_at=as_utc(op.confirmed_at),
    )
