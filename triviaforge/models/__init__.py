from triviaforge.models.failure import (
    ApiResponse,
    FailureDetail,
    FailureKind,
    KnownError,
    OutcomeType,
    create_known_failure,
    create_unknown_failure,
    finalize_response,
    is_finalized,
)
from triviaforge.models.lifecycle import (
    STUCK_FORGE_MESSAGE,
    CatalogItem,
    Eligibility,
    EligibilityStatus,
    FailureReason,
    ForgeOperation,
    ForgeProgress,
    ForgeStatus,
    ForgeType,
    MintOperation,
    MintStatus,
    OwnershipRecord,
    OwnershipStatus,
    Season,
    TokenSource,
)

__all__ = [
    "STUCK_FORGE_MESSAGE",
    "ApiResponse",
    "CatalogItem",
    "Eligibility",
    "EligibilityStatus",
    "FailureDetail",
    "FailureKind",
    "FailureReason",
    "ForgeOperation",
    "ForgeProgress",
    "ForgeStatus",
    "ForgeType",
    "KnownError",
    "MintOperation",
    "MintStatus",
    "OutcomeType",
    "OwnershipRecord",
    "OwnershipStatus",
    "Season",
    "TokenSource",
    "create_known_failure",
    "create_unknown_failure",
    "finalize_response",
    "is_finalized",
]
