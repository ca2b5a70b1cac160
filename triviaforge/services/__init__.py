"""
TriviaForge services.

Business logic for catalog reservation, eligibility, minting and forging.
"""

from triviaforge.services.catalog import (
    CatalogItemNotFoundError,
    CatalogReservation,
    CategoryExhaustedError,
    ReservationConflict,
)
from triviaforge.services.eligibility import (
    EligibilityAlreadyUsedError,
    EligibilityError,
    EligibilityExpiredError,
    EligibilityLedger,
    EligibilityNotFoundError,
)
from triviaforge.services.forge import ForgeNotFoundError, ForgeOrchestrator, ForgeStateError
from triviaforge.services.forge_rules import (
    ForgeRules,
    ForgeValidationError,
    compute_progress,
    season_accepts_forging,
    validate_forge,
)
from triviaforge.services.mint import MintNotFoundError, MintOrchestrator, MintStateError
from triviaforge.services.retry import SubmissionRetryPolicy

__all__ = [
    "CatalogItemNotFoundError",
    "CatalogReservation",
    "CategoryExhaustedError",
    "EligibilityAlreadyUsedError",
    "EligibilityError",
    "EligibilityExpiredError",
    "EligibilityLedger",
    "EligibilityNotFoundError",
    "ForgeNotFoundError",
    "ForgeOrchestrator",
    "ForgeRules",
    "ForgeStateError",
    "ForgeValidationError",
    "MintNotFoundError",
    "MintOrchestrator",
    "MintStateError",
    "ReservationConflict",
    "SubmissionRetryPolicy",
    "compute_progress",
    "season_accepts_forging",
    "validate_forge",
]
