"""
Token lifecycle models.

Plain snapshots of persisted state returned by the services. They are
detached from any database session and safe to hand to the API layer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class EligibilityStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class OwnershipStatus(str, Enum):
    HELD = "held"
    BURNED = "burned"


class TokenSource(str, Enum):
    MINT = "mint"
    FORGE = "forge"


class ForgeType(str, Enum):
    """Forge target tier. Values match the output TierType."""

    CATEGORY_ULTIMATE = "category_ultimate"
    MASTER_ULTIMATE = "master_ultimate"
    SEASONAL_ULTIMATE = "seasonal_ultimate"


class ForgeStatus(str, Enum):
    """
    Forge operation states.

    Forward only: pending -> burn_submitted -> burn_confirmed ->
    mint_submitted -> confirmed. `failed` is reachable from any
    non-terminal state; `cancelled` only from pending.
    """

    PENDING = "pending"
    BURN_SUBMITTED = "burn_submitted"
    BURN_CONFIRMED = "burn_confirmed"
    MINT_SUBMITTED = "mint_submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ForgeStatus.CONFIRMED, ForgeStatus.FAILED, ForgeStatus.CANCELLED)


class MintStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MintStatus.CONFIRMED, MintStatus.FAILED)


class FailureReason(str, Enum):
    """Why a forge or mint operation ended in `failed`."""

    SUBMISSION_FAILED = "submission_failed"
    LEDGER_REJECTED = "ledger_rejected"
    UNKNOWN_OUTCOME = "unknown_outcome"


STUCK_FORGE_MESSAGE = "Forge stuck after burning your tokens. Please contact support."


@dataclass(frozen=True)
class CatalogItem:
    id: int
    category_id: str
    name: str
    tier_default: str = "base"
    is_reserved: bool = False
    is_minted: bool = False
    reserved_at: datetime | None = None
    minted_at: datetime | None = None

    @property
    def is_available(self) -> bool:
        return not self.is_reserved and not self.is_minted


@dataclass(frozen=True)
class Eligibility:
    """A time-boxed right to mint one token in a category."""

    id: str
    player_id: str
    category_id: str
    status: EligibilityStatus
    created_at: datetime
    expires_at: datetime
    used_at: datetime | None = None
    session_id: str | None = None
    is_guest: bool = False


@dataclass(frozen=True)
class OwnershipRecord:
    id: int
    owner_key: str
    asset_identifier: str
    tier: str
    source: TokenSource
    status: OwnershipStatus
    created_at: datetime
    category_id: str | None = None
    season_id: str | None = None
    forge_operation_id: str | None = None
    burned_at: datetime | None = None


@dataclass(frozen=True)
class Season:
    """
    A game season.

    Forging seasonal ultimates stays open for `grace_days` after `ends_at`.
    """

    id: str
    season_type: str
    season_number: int
    starts_at: datetime
    ends_at: datetime
    grace_days: int = 7
    is_active: bool = False


@dataclass(frozen=True)
class ForgeOperation:
    id: str
    type: ForgeType
    owner_key: str
    status: ForgeStatus
    input_identifiers: list[str]
    created_at: datetime
    updated_at: datetime
    category_id: str | None = None
    season_id: str | None = None
    burn_tx_ref: str | None = None
    mint_tx_ref: str | None = None
    output_identifier: str | None = None
    error: str | None = None
    failure_reason: FailureReason | None = None
    requires_intervention: bool = False
    poll_attempts: int = 0
    confirmed_at: datetime | None = None

    @property
    def status_message(self) -> str:
        """User-facing summary of where the operation stands."""
        if self.requires_intervention:
            return STUCK_FORGE_MESSAGE
        if self.status is ForgeStatus.FAILED:
            return "Forge failed. Your tokens were not burned."
        if self.status is ForgeStatus.CANCELLED:
            return "Forge cancelled."
        if self.status is ForgeStatus.CONFIRMED:
            return "Forge complete."
        return "Forge in progress."


@dataclass(frozen=True)
class MintOperation:
    id: str
    eligibility_id: str
    catalog_item_id: int
    player_id: str
    owner_key: str
    category_id: str
    asset_identifier: str
    status: MintStatus
    created_at: datetime
    tx_ref: str | None = None
    error: str | None = None
    failure_reason: FailureReason | None = None
    poll_attempts: int = 0
    confirmed_at: datetime | None = None


@dataclass
class ForgeProgress:
    """How close an owner is to one forge type."""

    type: ForgeType
    required: int
    current: int
    can_forge: bool
    asset_identifiers: list[str] = field(default_factory=list)
    category_id: str | None = None
    season_id: str | None = None
