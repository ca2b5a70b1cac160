"""
Season code registry.

Season codes name a seasonal ultimate token's season: a two-letter season
prefix followed by the season number.

    WI1 = Winter Season 1
    SP1 = Spring Season 1
    SU1 = Summer Season 1
    FA1 = Fall Season 1
    WI2 = Winter Season 2, etc.

The display name is computed from the parsed parts, never stored.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

from triviaforge.metrics import NULL_METRICS, MetricsSink
from triviaforge.naming.errors import UnknownCodeError

logger = logging.getLogger(__name__)


class SeasonType(str, Enum):
    """The four seasons a game season can be named after."""

    WINTER = "winter"
    SPRING = "spring"
    SUMMER = "summer"
    FALL = "fall"


SEASON_PREFIX_MAP: MappingProxyType[SeasonType, str] = MappingProxyType(
    {
        SeasonType.WINTER: "WI",
        SeasonType.SPRING: "SP",
        SeasonType.SUMMER: "SU",
        SeasonType.FALL: "FA",
    }
)

PREFIX_SEASON_MAP: MappingProxyType[str, SeasonType] = MappingProxyType(
    {prefix: season for season, prefix in SEASON_PREFIX_MAP.items()}
)

# Two-letter prefix, then a positive integer without leading zeros. Use fullmatch.
SEASON_CODE_PATTERN = re.compile(r"(WI|SP|SU|FA)([1-9][0-9]*)")


@dataclass(frozen=True)
class SeasonInfo:
    """Parsed season code."""

    code: str
    season: SeasonType
    season_number: int

    @property
    def name(self) -> str:
        """Human-readable label, e.g. "Winter Season 1"."""
        return f"{self.season.value.capitalize()} Season {self.season_number}"


def get_season_code(
    season: SeasonType | str,
    season_number: int,
    metrics: MetricsSink = NULL_METRICS,
) -> str:
    """
    Generate a season code.

    Example:
        get_season_code("winter", 1) -> "WI1"

    Raises:
        UnknownCodeError: If the season is unknown or the number is not a
            positive integer
    """
    try:
        season_type = SeasonType(season)
    except ValueError:
        metrics.increment("season_code.op", tags={"op": "generate", "outcome": "failure"})
        raise UnknownCodeError("season", season) from None

    if isinstance(season_number, bool) or not isinstance(season_number, int) or season_number < 1:
        metrics.increment("season_code.op", tags={"op": "generate", "outcome": "failure"})
        raise UnknownCodeError("season number", season_number)

    metrics.increment("season_code.op", tags={"op": "generate", "outcome": "success"})
    return f"{SEASON_PREFIX_MAP[season_type]}{season_number}"


def parse_season_code(code: str, metrics: MetricsSink = NULL_METRICS) -> SeasonInfo:
    """
    Parse a season code.

    Example:
        parse_season_code("WI1")
        -> SeasonInfo(code="WI1", season=WINTER, season_number=1), name "Winter Season 1"

    Raises:
        UnknownCodeError: If the code is malformed
    """
    match = SEASON_CODE_PATTERN.fullmatch(code) if isinstance(code, str) else None
    if match is None:
        logger.debug("SEASON_CODE_INVALID", extra={"code": code})
        metrics.increment("season_code.op", tags={"op": "parse", "outcome": "failure"})
        raise UnknownCodeError("season code", code)

    prefix, number = match.groups()
    metrics.increment("season_code.op", tags={"op": "parse", "outcome": "success"})
    return SeasonInfo(code=code, season=PREFIX_SEASON_MAP[prefix], season_number=int(number))


def is_valid_season_code(code: str) -> bool:
    """Check season code format without raising."""
    return isinstance(code, str) and SEASON_CODE_PATTERN.fullmatch(code) is not None
