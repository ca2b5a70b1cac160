"""
Forge composition rules.

Pure checks over the records a player asked to forge. Nothing here touches
the database or the ledger; the orchestrator loads the records and the
active season and hands them in.

    category_ultimate   10 category tokens, all from the requested category
    master_ultimate     10 category tokens, one from each category
    seasonal_ultimate   20 category tokens from the active season, 2 per category

Counts are configurable. Each violation raises ForgeValidationError naming
the rule that failed.
"""

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from triviaforge.config import settings
from triviaforge.models.failure import FailureKind, KnownError
from triviaforge.models.lifecycle import ForgeProgress, ForgeType, OwnershipStatus, Season
from triviaforge.naming.asset_name import TierType
from triviaforge.naming.categories import CATEGORY_SLUGS


class ForgeValidationError(KnownError):
    """A forge request broke a composition or ownership rule."""

    def __init__(self, rule: str, message: str):
        self.rule = rule
        super().__init__(
            kind=FailureKind.FORGE_VALIDATION,
            message=message,
            detail=f"rule={rule}",
            suggestion="Check your selected tokens and try again.",
            status_code=422,
        )


class ForgeInput(Protocol):
    """The fields of an ownership record the rules read."""

    asset_identifier: str
    owner_key: str
    tier: str
    status: str
    category_id: str | None
    season_id: str | None
    forge_operation_id: str | None


@dataclass(frozen=True)
class ForgeRules:
    category_ultimate_count: int = 10
    master_ultimate_count: int = 10
    seasonal_per_category_count: int = 2
    categories: tuple[str, ...] = CATEGORY_SLUGS

    @classmethod
    def from_settings(cls) -> "ForgeRules":
        return cls(
            category_ultimate_count=settings.category_ultimate_count,
            master_ultimate_count=settings.master_ultimate_count,
            seasonal_per_category_count=settings.seasonal_per_category_count,
        )

    def required_count(self, forge_type: ForgeType) -> int:
        if forge_type is ForgeType.CATEGORY_ULTIMATE:
            return self.category_ultimate_count
        if forge_type is ForgeType.MASTER_ULTIMATE:
            return self.master_ultimate_count
        return self.seasonal_per_category_count * len(self.categories)


def season_accepts_forging(season: Season, now: datetime) -> bool:
    """True from the season's start until `grace_days` after it ends."""
    return season.starts_at <= now <= season.ends_at + timedelta(days=season.grace_days)


def validate_forge(
    rules: ForgeRules,
    forge_type: ForgeType,
    owner_key: str,
    asset_identifiers: Sequence[str],
    records: Sequence[ForgeInput],
    category_id: str | None = None,
    season: Season | None = None,
    now: datetime | None = None,
) -> None:
    """
    Check a forge request against ownership and composition rules.

    Args:
        records: Ownership records found for `asset_identifiers`
        category_id: Requested category (category_ultimate only)
        season: The active season (seasonal_ultimate only)
        now: Current time, for the season window

    Raises:
        ForgeValidationError: With the first rule violated
    """
    if len(set(asset_identifiers)) != len(asset_identifiers):
        raise ForgeValidationError("duplicate_inputs", "The same token was selected twice")

    required = rules.required_count(forge_type)
    if len(asset_identifiers) != required:
        raise ForgeValidationError(
            "wrong_count",
            f"{forge_type.value} requires exactly {required} tokens, got {len(asset_identifiers)}",
        )

    by_identifier = {record.asset_identifier: record for record in records}
    for identifier in asset_identifiers:
        record = by_identifier.get(identifier)
        if record is None or record.owner_key != owner_key:
            raise ForgeValidationError("not_owned", f"Token not owned by player: {identifier}")
        if record.status != OwnershipStatus.HELD.value:
            raise ForgeValidationError("not_held", f"Token already burned: {identifier}")
        if record.forge_operation_id is not None:
            raise ForgeValidationError(
                "already_forging", f"Token is part of another forge: {identifier}"
            )
        if record.tier != TierType.CATEGORY.value:
            raise ForgeValidationError(
                "wrong_tier", f"Only category tokens can be forged: {identifier}"
            )

    inputs = [by_identifier[identifier] for identifier in asset_identifiers]
    if forge_type is ForgeType.CATEGORY_ULTIMATE:
        _check_category_ultimate(inputs, category_id)
    elif forge_type is ForgeType.MASTER_ULTIMATE:
        _check_one_per_category(rules, inputs, per_category=1)
    else:
        _check_seasonal(rules, inputs, season, now)


def _check_category_ultimate(inputs: Sequence[ForgeInput], category_id: str | None) -> None:
    if category_id is None:
        raise ForgeValidationError("category_required", "Choose a category to forge")
    categories = {record.category_id for record in inputs}
    if categories != {category_id}:
        raise ForgeValidationError(
            "category_mismatch", f"All tokens must be from category: {category_id}"
        )


def _check_one_per_category(
    rules: ForgeRules, inputs: Sequence[ForgeInput], per_category: int
) -> None:
    counts = Counter(record.category_id for record in inputs)
    for category in rules.categories:
        if counts.get(category, 0) < per_category:
            raise ForgeValidationError("missing_category", f"Missing category: {category}")
    for category, count in counts.items():
        if category not in rules.categories:
            raise ForgeValidationError("unknown_category", f"Unknown category: {category}")
        if count > per_category:
            raise ForgeValidationError("duplicate_category", f"Duplicate category: {category}")


def _check_seasonal(
    rules: ForgeRules,
    inputs: Sequence[ForgeInput],
    season: Season | None,
    now: datetime | None,
) -> None:
    if season is None:
        raise ForgeValidationError("no_active_season", "There is no active season")
    if now is None or not season_accepts_forging(season, now):
        raise ForgeValidationError(
            "season_closed", "The season's forging window has closed"
        )
    for record in inputs:
        if record.season_id != season.id:
            raise ForgeValidationError(
                "wrong_season", f"Token is not from the current season: {record.asset_identifier}"
            )
    _check_one_per_category(rules, inputs, per_category=rules.seasonal_per_category_count)


def compute_progress(
    rules: ForgeRules,
    records: Sequence[ForgeInput],
    season: Season | None = None,
    now: datetime | None = None,
) -> list[ForgeProgress]:
    """
    Summarize how close an owner is to each forge.

    Args:
        records: The owner's held, unclaimed category-tier records, oldest first

    Returns:
        One entry per category with tokens, one master entry, and a
        seasonal entry when a season is active
    """
    by_category: dict[str, list[ForgeInput]] = {}
    for record in records:
        if record.category_id in rules.categories:
            by_category.setdefault(record.category_id, []).append(record)

    progress = []
    for category in rules.categories:
        held = by_category.get(category)
        if not held:
            continue
        required = rules.category_ultimate_count
        progress.append(
            ForgeProgress(
                type=ForgeType.CATEGORY_ULTIMATE,
                category_id=category,
                required=required,
                current=len(held),
                can_forge=len(held) >= required,
                asset_identifiers=[r.asset_identifier for r in held[:required]],
            )
        )

    master_picks = [held[0].asset_identifier for held in by_category.values()]
    progress.append(
        ForgeProgress(
            type=ForgeType.MASTER_ULTIMATE,
            required=rules.master_ultimate_count,
            current=len(by_category),
            can_forge=len(by_category) >= rules.master_ultimate_count,
            asset_identifiers=master_picks[: rules.master_ultimate_count],
        )
    )

    if season is not None:
        per_category = rules.seasonal_per_category_count
        seasonal_picks: list[str] = []
        complete = 0
        for held in by_category.values():
            in_season = [r for r in held if r.season_id == season.id]
            if len(in_season) >= per_category:
                complete += 1
                seasonal_picks.extend(r.asset_identifier for r in in_season[:per_category])
        window_open = now is not None and season_accepts_forging(season, now)
        progress.append(
            ForgeProgress(
                type=ForgeType.SEASONAL_ULTIMATE,
                season_id=season.id,
                required=len(rules.categories),
                current=complete,
                can_forge=complete >= len(rules.categories) and window_open,
                asset_identifiers=seasonal_picks,
            )
        )

    return progress
