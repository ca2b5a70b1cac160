"""
Identifier API endpoints.

Decodes an asset identifier into its parts. An identifier that matches
neither grammar is reported as invalid rather than as an error.
"""

from fastapi import APIRouter
from pydantic import BaseModel

from triviaforge.naming.asset_name import parse_asset_name
from triviaforge.naming.categories import CATEGORY_SLUG_MAP
from triviaforge.naming.seasons import is_valid_season_code, parse_season_code

router = APIRouter(prefix="/identifiers", tags=["identifiers"])


class IdentifierResponse(BaseModel):
    identifier: str
    valid: bool
    legacy: bool = False
    tier: str | None = None
    tier_code: str | None = None
    category_code: str | None = None
    category_id: str | None = None
    season_code: str | None = None
    season_name: str | None = None
    unique_id: str | None = None


@router.get("/{identifier}", response_model=IdentifierResponse)
async def describe_identifier(identifier: str) -> IdentifierResponse:
    parsed = parse_asset_name(identifier)
    if parsed is None:
        return IdentifierResponse(identifier=identifier, valid=False)

    season_name = None
    if parsed.season_code and is_valid_season_code(parsed.season_code):
        season_name = parse_season_code(parsed.season_code).name

    return IdentifierResponse(
        identifier=identifier,
        valid=True,
        legacy=parsed.is_legacy,
        tier=parsed.tier.value,
        tier_code=parsed.tier_code.value,
        category_code=parsed.category_code,
        category_id=CATEGORY_SLUG_MAP.get(parsed.category_code) if parsed.category_code else None,
        season_code=parsed.season_code,
        season_name=season_name,
        unique_id=parsed.unique_id,
    )
