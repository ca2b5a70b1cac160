"""
Asset identifier codec.

Builds, parses and validates the on-chain asset identifier:

    category           TNFT_V1_{CAT}_REG_{id}
    category_ultimate  TNFT_V1_{CAT}_ULT_{id}
    master_ultimate    TNFT_V1_MAST_{id}
    seasonal_ultimate  TNFT_V1_SEAS_{SEASON}_ULT_{id}

`{id}` is 8 lowercase hex characters. Identifiers are at most 32 bytes.

Tokens minted before the grammar existed carry kebab-case names such as
"quantum-explorer". `parse_asset_name` accepts those through a separate
legacy grammar after the standard grammar fails. The two grammars share no
validation code.

INVARIANTS:
- parse_asset_name(build_asset_name(x)) reproduces x
- validate_asset_name(s) is exactly parse_asset_name(s) is not None
- parse never raises; build raises AssetNameError / UnknownCodeError
"""

import logging
import re
import secrets
from dataclasses import dataclass
from enum import Enum

from triviaforge.config import LEGACY_MAX_LENGTH, LEGACY_MIN_LENGTH, MAX_ASSET_NAME_LENGTH
from triviaforge.metrics import NULL_METRICS, MetricsSink
from triviaforge.naming.categories import get_category_code, get_category_slug
from triviaforge.naming.errors import (
    AssetNameError,
    InvalidLengthError,
    InvalidUniqueIdError,
    MissingRequiredFieldError,
)
from triviaforge.naming.seasons import parse_season_code

logger = logging.getLogger(__name__)

PREFIX = "TNFT"
FORMAT_VERSION = "V1"
SEPARATOR = "_"

UNIQUE_ID_PATTERN = re.compile(r"[0-9a-f]{8}")


class TierType(str, Enum):
    """Rarity class of a token."""

    CATEGORY = "category"
    CATEGORY_ULTIMATE = "category_ultimate"
    MASTER_ULTIMATE = "master_ultimate"
    SEASONAL_ULTIMATE = "seasonal_ultimate"


class TierCode(str, Enum):
    """Keyword segment that makes an identifier self-describing."""

    REG = "REG"
    ULT = "ULT"
    MAST = "MAST"
    SEAS = "SEAS"


TIER_CODES: dict[TierType, TierCode] = {
    TierType.CATEGORY: TierCode.REG,
    TierType.CATEGORY_ULTIMATE: TierCode.ULT,
    TierType.MASTER_ULTIMATE: TierCode.MAST,
    TierType.SEASONAL_ULTIMATE: TierCode.SEAS,
}


class InvalidTierError(AssetNameError):
    """Tier is not one of the four known tiers."""

    code = "INVALID_TIER"

    def __init__(self, tier: object):
        super().__init__(f"Unknown tier: {tier}", {"tier": tier})


# =============================================================================
# PARSED IDENTIFIERS (tagged union)
# =============================================================================


@dataclass(frozen=True)
class StandardIdentifier:
    """An identifier that matched the TNFT_V1 grammar."""

    tier_code: TierCode
    unique_id: str
    category_code: str | None = None
    season_code: str | None = None
    prefix: str = PREFIX
    format_version: str = FORMAT_VERSION

    is_legacy = False

    @property
    def tier(self) -> TierType:
        if self.tier_code is TierCode.REG:
            return TierType.CATEGORY
        if self.tier_code is TierCode.ULT:
            return TierType.CATEGORY_ULTIMATE
        if self.tier_code is TierCode.MAST:
            return TierType.MASTER_ULTIMATE
        return TierType.SEASONAL_ULTIMATE

    def __str__(self) -> str:
        return _assemble(self.tier, self.unique_id, self.category_code, self.season_code)


@dataclass(frozen=True)
class LegacyIdentifier:
    """A pre-standardization identifier such as "quantum-explorer"."""

    value: str

    is_legacy = True
    prefix = PREFIX
    format_version = FORMAT_VERSION
    tier_code = TierCode.REG
    tier = TierType.CATEGORY
    category_code: str | None = None
    season_code: str | None = None

    @property
    def unique_id(self) -> str:
        return self.value

    def __str__(self) -> str:
        return self.value


ParsedIdentifier = StandardIdentifier | LegacyIdentifier


# =============================================================================
# BUILD
# =============================================================================


def generate_unique_id() -> str:
    """Generate an 8-character lowercase hex id from a CSPRNG."""
    return secrets.token_hex(4)


def _assemble(
    tier: TierType,
    unique_id: str,
    category_code: str | None,
    season_code: str | None,
) -> str:
    tier_code = TIER_CODES[tier].value
    if tier is TierType.MASTER_ULTIMATE:
        parts = [PREFIX, FORMAT_VERSION, tier_code, unique_id]
    elif tier is TierType.SEASONAL_ULTIMATE:
        parts = [PREFIX, FORMAT_VERSION, tier_code, str(season_code), TierCode.ULT.value, unique_id]
    else:
        parts = [PREFIX, FORMAT_VERSION, str(category_code), tier_code, unique_id]
    return SEPARATOR.join(parts)


def build_asset_name(
    tier: TierType | str,
    unique_id: str,
    *,
    category_code: str | None = None,
    season_code: str | None = None,
    metrics: MetricsSink = NULL_METRICS,
) -> str:
    """
    Build an asset identifier.

    Validation order, each a distinct failure:
    1. unique_id must be 8 lowercase hex characters (InvalidUniqueIdError)
    2. tier-required code present (MissingRequiredFieldError)
    3. codes registered (UnknownCodeError)
    4. assembled length <= 32 bytes (InvalidLengthError)

    Example:
        build_asset_name("category", "12b3de7d", category_code="SCI")
        -> "TNFT_V1_SCI_REG_12b3de7d"
    """
    tier_label = str(tier.value if isinstance(tier, TierType) else tier)
    try:
        try:
            tier_type = TierType(tier)
        except ValueError:
            raise InvalidTierError(tier) from None

        if not isinstance(unique_id, str) or not UNIQUE_ID_PATTERN.fullmatch(unique_id):
            raise InvalidUniqueIdError(unique_id)

        if tier_type in (TierType.CATEGORY, TierType.CATEGORY_ULTIMATE):
            if not category_code:
                raise MissingRequiredFieldError("category_code", tier_type.value)
            get_category_slug(category_code, metrics=metrics)
        elif tier_type is TierType.SEASONAL_ULTIMATE:
            if not season_code:
                raise MissingRequiredFieldError("season_code", tier_type.value)
            parse_season_code(season_code, metrics=metrics)

        asset_name = _assemble(tier_type, unique_id, category_code, season_code)
        if len(asset_name.encode("ascii")) > MAX_ASSET_NAME_LENGTH:
            raise InvalidLengthError(asset_name)
    except Exception as e:
        logger.debug(
            "ASSET_NAME_BUILD_FAILED",
            extra={"tier": tier_label, "error": type(e).__name__},
        )
        metrics.increment("asset_name.generated", tags={"tier": tier_label, "outcome": "failure"})
        raise

    metrics.increment("asset_name.generated", tags={"tier": tier_label, "outcome": "success"})
    metrics.observe("asset_name.length", len(asset_name))
    return asset_name


def new_asset_name(
    tier: TierType,
    *,
    category_id: str | None = None,
    season_code: str | None = None,
    metrics: MetricsSink = NULL_METRICS,
) -> str:
    """
    Build an identifier with a freshly generated unique id.

    Takes a category slug rather than a code; the registry supplies the code.
    """
    category_code = get_category_code(category_id, metrics=metrics) if category_id else None
    return build_asset_name(
        tier,
        generate_unique_id(),
        category_code=category_code,
        season_code=season_code,
        metrics=metrics,
    )


# =============================================================================
# PARSE
# =============================================================================

_CATEGORY_SEGMENT = re.compile(r"[A-Z]{3,5}")
_SEASON_SEGMENT = re.compile(r"[A-Z]{2}[1-9][0-9]*")
_KEYWORDS = frozenset(code.value for code in TierCode)


def _parse_standard(value: str) -> StandardIdentifier | None:
    """Match the TNFT_V1 grammar by segment count and keyword position."""
    if len(value) > MAX_ASSET_NAME_LENGTH:
        return None

    parts = value.split(SEPARATOR)
    if len(parts) < 4 or parts[0] != PREFIX or parts[1] != FORMAT_VERSION:
        return None

    unique_id = parts[-1]
    if not UNIQUE_ID_PATTERN.fullmatch(unique_id):
        return None

    # TNFT_V1_MAST_{id}
    if len(parts) == 4 and parts[2] == TierCode.MAST.value:
        return StandardIdentifier(tier_code=TierCode.MAST, unique_id=unique_id)

    # TNFT_V1_{CAT}_{REG|ULT}_{id}
    if len(parts) == 5:
        category_code, keyword = parts[2], parts[3]
        if keyword not in (TierCode.REG.value, TierCode.ULT.value):
            return None
        if not _CATEGORY_SEGMENT.fullmatch(category_code) or category_code in _KEYWORDS:
            return None
        return StandardIdentifier(
            tier_code=TierCode(keyword),
            unique_id=unique_id,
            category_code=category_code,
        )

    # TNFT_V1_SEAS_{SEASON}_ULT_{id}
    if len(parts) == 6 and parts[2] == TierCode.SEAS.value and parts[4] == TierCode.ULT.value:
        season_code = parts[3]
        if not _SEASON_SEGMENT.fullmatch(season_code):
            return None
        return StandardIdentifier(
            tier_code=TierCode.SEAS,
            unique_id=unique_id,
            season_code=season_code,
        )

    return None


_LEGACY_PATTERN = re.compile(rf"[a-z0-9-]{{{LEGACY_MIN_LENGTH},{LEGACY_MAX_LENGTH}}}")


def _parse_legacy(value: str) -> LegacyIdentifier | None:
    """Match a pre-standardization kebab-case identifier."""
    if not _LEGACY_PATTERN.fullmatch(value):
        return None
    return LegacyIdentifier(value=value)


def parse_asset_name(value: str, metrics: MetricsSink = NULL_METRICS) -> ParsedIdentifier | None:
    """
    Parse an asset identifier.

    Tries the standard grammar, then the legacy grammar. Returns None when
    neither matches; never raises.

    Example:
        parse_asset_name("TNFT_V1_SCI_REG_12b3de7d")
        -> StandardIdentifier(tier_code=REG, unique_id="12b3de7d", category_code="SCI")
    """
    if not isinstance(value, str) or not value:
        metrics.increment("asset_name.parsed", tags={"outcome": "failure"})
        return None

    parsed: ParsedIdentifier | None = _parse_standard(value)
    if parsed is None:
        parsed = _parse_legacy(value)

    if parsed is None:
        metrics.increment("asset_name.parsed", tags={"outcome": "failure"})
        return None

    grammar = "legacy" if parsed.is_legacy else "standard"
    metrics.increment("asset_name.parsed", tags={"outcome": "success", "format": grammar})
    return parsed


def validate_asset_name(value: str, metrics: MetricsSink = NULL_METRICS) -> bool:
    """Check an asset identifier. Defined as a successful parse."""
    is_valid = parse_asset_name(value, metrics=metrics) is not None
    metrics.increment("asset_name.validated", tags={"valid": str(is_valid).lower()})
    return is_valid
