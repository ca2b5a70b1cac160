"""
Identifier and registry errors.

Codec errors are FormatErrors: they are always recoverable by rejecting the
input. Registry errors signal an unregistered category or season code.
"""

from typing import Any

from triviaforge.config import MAX_ASSET_NAME_LENGTH
from triviaforge.models.failure import FailureKind, KnownError


class AssetNameError(KnownError):
    """Base class for asset identifier build failures."""

    code: str = "INVALID_FORMAT"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.details = details or {}
        super().__init__(
            kind=FailureKind.INVALID_FORMAT,
            message=message,
            detail=f"{self.code}: {self.details}" if self.details else self.code,
            suggestion="Check the identifier components and try again.",
            status_code=400,
        )


class InvalidUniqueIdError(AssetNameError):
    """Unique id is not exactly 8 lowercase hexadecimal characters."""

    code = "INVALID_UNIQUE_ID"

    def __init__(self, unique_id: object):
        super().__init__(
            "Invalid unique id: must be 8 lowercase hexadecimal characters",
            {"unique_id": unique_id},
        )


class MissingRequiredFieldError(AssetNameError):
    """A tier-required component (category or season code) is absent."""

    code = "MISSING_REQUIRED_FIELD"

    def __init__(self, field_name: str, tier: str):
        self.field_name = field_name
        self.tier = tier
        super().__init__(
            f"{field_name} is required for tier: {tier}",
            {"field": field_name, "tier": tier},
        )


class InvalidLengthError(AssetNameError):
    """Assembled identifier exceeds the on-chain field budget."""

    code = "INVALID_LENGTH"

    def __init__(self, asset_name: str):
        self.asset_name = asset_name
        super().__init__(
            f"Asset name exceeds maximum length of {MAX_ASSET_NAME_LENGTH} bytes",
            {"length": len(asset_name.encode()), "asset_name": asset_name},
        )


class RegistryError(KnownError):
    """Base class for code registry failures."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(
            kind=FailureKind.UNKNOWN_CODE,
            message=message,
            detail=detail,
            suggestion="Use one of the registered category or season codes.",
            status_code=400,
        )


class UnknownCodeError(RegistryError):
    """Lookup of an unregistered slug, code, or season."""

    def __init__(self, registry: str, value: object):
        self.registry = registry
        self.value = value
        super().__init__(
            f"Unknown {registry}: {value}",
            detail=f"registry={registry}",
        )
