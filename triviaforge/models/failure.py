"""
Error envelope for the HTTP surface.

Every error a client sees is one of two outcomes:

- known_failure: a domain rule refused the request (expired eligibility,
  exhausted category, invalid forge selection, ...). The `FailureKind`
  and message say which.
- unknown_failure: anything else. The message is fixed so internals never
  leak; only the exception type is reported.

Domain code raises `KnownError` subclasses. The FastAPI handlers in
`triviaforge.main` turn them into an `ApiResponse` through
`finalize_response()`, the single exit point for error bodies.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class FailureKind(str, Enum):
    """What went wrong, as a stable machine-readable code."""

    # Request
    INVALID_INPUT = "invalid_input"
    INVALID_FORMAT = "invalid_format"
    UNKNOWN_CODE = "unknown_code"

    # Lookups and state machine
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"

    # Token lifecycle
    RESERVATION_CONFLICT = "reservation_conflict"
    ELIGIBILITY_EXPIRED = "eligibility_expired"
    ELIGIBILITY_USED = "eligibility_used"
    ELIGIBILITY_NOT_FOUND = "eligibility_not_found"
    FORGE_VALIDATION = "forge_validation"

    # Signing service
    LEDGER_UNAVAILABLE = "ledger_unavailable"
    UNKNOWN_OUTCOME = "unknown_outcome"

    UNKNOWN = "unknown"


class OutcomeType(str, Enum):
    KNOWN_FAILURE = "known_failure"
    UNKNOWN_FAILURE = "unknown_failure"


class FailureDetail(BaseModel):
    kind: FailureKind
    message: str = Field(..., description="Player-facing explanation")
    detail: str | None = Field(default=None, description="Identifiers useful to support")
    suggestion: str | None = Field(default=None, description="What the player can do next")


class ApiResponse(BaseModel):
    """Body of every error response."""

    outcome: OutcomeType
    failure: FailureDetail | None = None
    data: Any = None

    @classmethod
    def known_failure(
        cls,
        kind: FailureKind,
        message: str,
        detail: str | None = None,
        suggestion: str | None = None,
    ) -> "ApiResponse":
        return cls(
            outcome=OutcomeType.KNOWN_FAILURE,
            failure=FailureDetail(kind=kind, message=message, detail=detail, suggestion=suggestion),
        )


class KnownError(Exception):
    """
    A failure the system can name and explain.

    Subclasses fix `kind` and `status_code`; `detail` carries the ids
    involved (e.g. "eligibility_id=...") and `suggestion` the next step
    for the player.
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        detail: str | None = None,
        suggestion: str | None = None,
        status_code: int = 400,
    ):
        self.kind = kind
        self.message = message
        self.detail = detail
        self.suggestion = suggestion
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ApiResponse:
        return ApiResponse.known_failure(
            kind=self.kind,
            message=self.message,
            detail=self.detail,
            suggestion=self.suggestion,
        )


UNKNOWN_FAILURE_MESSAGE = "Something went wrong on our side. Please retry shortly."
UNKNOWN_FAILURE_SUGGESTION = "If this keeps happening, contact support."

# ids of responses that went through finalize_response()
_finalized_responses: set[int] = set()


def finalize_response(response: ApiResponse) -> ApiResponse:
    """
    Check an error body before it is sent.

    Raises:
        ValueError: If the response carries no failure detail
    """
    if response.failure is None:
        raise ValueError(f"{response.outcome.value} response must have failure details")
    _finalized_responses.add(id(response))
    return response


def is_finalized(response: ApiResponse) -> bool:
    return id(response) in _finalized_responses


def create_known_failure(error: KnownError) -> ApiResponse:
    return finalize_response(error.to_response())


def create_unknown_failure(exception: Exception) -> ApiResponse:
    """Fixed-message response for an unexpected exception; reports only its type."""
    response = ApiResponse(
        outcome=OutcomeType.UNKNOWN_FAILURE,
        failure=FailureDetail(
            kind=FailureKind.UNKNOWN,
            message=UNKNOWN_FAILURE_MESSAGE,
            detail=type(exception).__name__,
            suggestion=UNKNOWN_FAILURE_SUGGESTION,
        ),
    )
    return finalize_response(response)
