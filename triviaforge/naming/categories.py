"""
Category code registry.

Bidirectional map between category slugs (used in the database and URLs)
and the short codes embedded in asset identifiers. Each code is 3-5
uppercase letters.
"""

import logging
from types import MappingProxyType

from triviaforge.metrics import NULL_METRICS, MetricsSink
from triviaforge.naming.errors import UnknownCodeError

logger = logging.getLogger(__name__)

CATEGORY_CODE_MAP: MappingProxyType[str, str] = MappingProxyType(
    {
        "arts": "ARTS",
        "entertainment": "ENT",
        "geography": "GEO",
        "history": "HIST",
        "mythology": "MYTH",
        "nature": "NAT",
        "science": "SCI",
        "sports": "SPORT",
        "technology": "TECH",
        "weird-wonderful": "WEIRD",
    }
)

CATEGORY_SLUG_MAP: MappingProxyType[str, str] = MappingProxyType(
    {code: slug for slug, code in CATEGORY_CODE_MAP.items()}
)

CATEGORY_SLUGS: tuple[str, ...] = tuple(CATEGORY_CODE_MAP)
CATEGORY_CODES: tuple[str, ...] = tuple(CATEGORY_SLUG_MAP)


def get_category_code(slug: str, metrics: MetricsSink = NULL_METRICS) -> str:
    """
    Convert a category slug to its code.

    Example:
        get_category_code("science") -> "SCI"

    Raises:
        UnknownCodeError: If the slug is not registered
    """
    code = CATEGORY_CODE_MAP.get(slug)
    if code is None:
        logger.debug("CATEGORY_SLUG_UNKNOWN", extra={"slug": slug})
        metrics.increment(
            "category_code.lookup", tags={"direction": "encode", "outcome": "failure"}
        )
        raise UnknownCodeError("category slug", slug)

    metrics.increment("category_code.lookup", tags={"direction": "encode", "outcome": "success"})
    return code


def get_category_slug(code: str, metrics: MetricsSink = NULL_METRICS) -> str:
    """
    Convert a category code back to its slug.

    Example:
        get_category_slug("SCI") -> "science"

    Raises:
        UnknownCodeError: If the code is not registered
    """
    slug = CATEGORY_SLUG_MAP.get(code)
    if slug is None:
        logger.debug("CATEGORY_CODE_UNKNOWN", extra={"code": code})
        metrics.increment(
            "category_code.lookup", tags={"direction": "decode", "outcome": "failure"}
        )
        raise UnknownCodeError("category code", code)

    metrics.increment("category_code.lookup", tags={"direction": "decode", "outcome": "success"})
    return slug


def is_registered_category(slug: str) -> bool:
    """Check whether a slug is one of the registered categories."""
    return slug in CATEGORY_CODE_MAP
