from triviaforge.db.database import close_db, get_session, get_session_factory, init_db
from triviaforge.db.operations import (
    as_utc,
    create_season,
    eligibility_to_model,
    forge_to_model,
    get_active_season,
    get_held_records,
    get_open_season,
    get_records_by_identifier,
    mint_to_model,
    ownership_to_model,
    record_ownership,
    season_code_for,
    season_to_model,
    to_utc,
    utcnow,
)

__all__ = [
    "as_utc",
    "close_db",
    "create_season",
    "eligibility_to_model",
    "forge_to_model",
    "get_active_season",
    "get_held_records",
    "get_open_season",
    "get_records_by_identifier",
    "get_session",
    "get_session_factory",
    "init_db",
    "mint_to_model",
    "ownership_to_model",
    "record_ownership",
    "season_code_for",
    "season_to_model",
    "to_utc",
    "utcnow",
]
