"""
SQLAlchemy ORM models for persistent storage.

Models mirror the lifecycle dataclasses but add database persistence.
Timestamps are written in UTC.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class CatalogItemDB(Base):
    """
    A mintable design in a category pool.

    available -> reserved -> minted. Only `release` moves an unminted
    item back to available.
    """

    __tablename__ = "catalog_items"
    __table_args__ = (
        Index("ix_catalog_items_pool", "category_id", "is_reserved", "is_minted"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(255))
    tier_default: Mapped[str] = mapped_column(String(32), default="base")
    is_reserved: Mapped[bool] = mapped_column(Boolean, default=False)
    is_minted: Mapped[bool] = mapped_column(Boolean, default=False)
    reserved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    minted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<CatalogItemDB(id={self.id}, category={self.category_id})>"


class EligibilityDB(Base):
    """A player's time-boxed right to mint one token."""

    __tablename__ = "eligibilities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    player_id: Mapped[str] = mapped_column(String(255), index=True)
    category_id: Mapped[str] = mapped_column(String(64))
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_guest: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(16), default="active", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<EligibilityDB(id={self.id}, status={self.status})>"


class SeasonDB(Base):
    """A game season. Its season code is derived, never stored."""

    __tablename__ = "seasons"
    __table_args__ = (UniqueConstraint("season_type", "season_number", name="uq_season"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    season_type: Mapped[str] = mapped_column(String(16))
    season_number: Mapped[int] = mapped_column(Integer)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    grace_days: Mapped[int] = mapped_column(Integer, default=7)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    def __repr__(self) -> str:
        return f"<SeasonDB(type={self.season_type}, number={self.season_number})>"


class OwnershipRecordDB(Base):
    """
    A token held (or formerly held) by an owner.

    `forge_operation_id` is the claim an in-flight forge holds on the
    record; a record carries at most one claim at a time.
    """

    __tablename__ = "ownership_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_key: Mapped[str] = mapped_column(String(255), index=True)
    asset_identifier: Mapped[str] = mapped_column(String(64), unique=True)
    tier: Mapped[str] = mapped_column(String(32))
    source: Mapped[str] = mapped_column(String(16))
    category_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    season_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("seasons.id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(16), default="held")
    forge_operation_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    burned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<OwnershipRecordDB(asset={self.asset_identifier}, status={self.status})>"


class ForgeOperationDB(Base):
    """One burn-and-mint attempt. Status only moves forward."""

    __tablename__ = "forge_operations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    type: Mapped[str] = mapped_column(String(32))
    owner_key: Mapped[str] = mapped_column(String(255), index=True)
    category_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    season_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # Asset identifiers stored as JSON list
    input_identifiers: Mapped[list[Any]] = mapped_column(JSON, default=list)

    burn_tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    mint_tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    output_identifier: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="pending", index=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    requires_intervention: Mapped[bool] = mapped_column(Boolean, default=False)
    poll_attempts: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<ForgeOperationDB(id={self.id}, status={self.status})>"


class MintOperationDB(Base):
    """Issuance of one catalog item to a player."""

    __tablename__ = "mint_operations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    eligibility_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("eligibilities.id"), unique=True
    )
    catalog_item_id: Mapped[int] = mapped_column(Integer, ForeignKey("catalog_items.id"))
    player_id: Mapped[str] = mapped_column(String(255), index=True)
    owner_key: Mapped[str] = mapped_column(String(255))
    category_id: Mapped[str] = mapped_column(String(64))
    asset_identifier: Mapped[str] = mapped_column(String(64), unique=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    poll_attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<MintOperationDB(id={self.id}, status={self.status})>"
