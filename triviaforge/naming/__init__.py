"""
Asset naming: the identifier codec plus the category and season registries.
"""

from triviaforge.naming.asset_name import (
    InvalidTierError,
    LegacyIdentifier,
    ParsedIdentifier,
    StandardIdentifier,
    TierCode,
    TierType,
    build_asset_name,
    generate_unique_id,
    new_asset_name,
    parse_asset_name,
    validate_asset_name,
)
from triviaforge.naming.categories import (
    CATEGORY_CODE_MAP,
    CATEGORY_SLUG_MAP,
    get_category_code,
    get_category_slug,
    is_registered_category,
)
from triviaforge.naming.errors import (
    AssetNameError,
    InvalidLengthError,
    InvalidUniqueIdError,
    MissingRequiredFieldError,
    RegistryError,
    UnknownCodeError,
)
from triviaforge.naming.seasons import (
    SeasonInfo,
    SeasonType,
    get_season_code,
    is_valid_season_code,
    parse_season_code,
)

__all__ = [
    "CATEGORY_CODE_MAP",
    "CATEGORY_SLUG_MAP",
    "AssetNameError",
    "InvalidLengthError",
    "InvalidTierError",
    "InvalidUniqueIdError",
    "LegacyIdentifier",
    "MissingRequiredFieldError",
    "ParsedIdentifier",
    "RegistryError",
    "SeasonInfo",
    "SeasonType",
    "StandardIdentifier",
    "TierCode",
    "TierType",
    "UnknownCodeError",
    "build_asset_name",
    "generate_unique_id",
    "get_category_code",
    "get_category_slug",
    "get_season_code",
    "is_registered_category",
    "is_valid_season_code",
    "new_asset_name",
    "parse_asset_name",
    "parse_season_code",
    "validate_asset_name",
]
