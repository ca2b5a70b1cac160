from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(env_file=".env")

    app_name: str = "TriviaForge"
    debug: bool = False

    database_url: str = "postgresql+asyncpg://localhost:5432/triviaforge"

    # Signing service that holds the single policy key
    ledger_url: str = "http://localhost:8088"
    ledger_api_key: str = ""
    ledger_timeout_seconds: float = 30.0
    policy_id: str = ""

    # Eligibility windows
    connected_window_minutes: int = 60
    guest_window_minutes: int = 25

    # Forge composition
    category_ultimate_count: int = 10
    master_ultimate_count: int = 10
    seasonal_per_category_count: int = 2
    season_grace_days: int = 7

    # Confirmation polling (bounded)
    confirmation_poll_seconds: float = 30.0
    confirmation_max_attempts: int = 10

    # Pre-burn submission retries
    submission_max_attempts: int = 3
    submission_backoff_seconds: float = 2.0

    # Reserved-but-unminted catalog items older than this are released by the
    # reconciliation job
    reservation_release_minutes: int = 30


settings = Settings()


# =============================================================================
# IDENTIFIER LIMITS
# =============================================================================

# On-chain asset name field budget, in bytes
MAX_ASSET_NAME_LENGTH = 32

# Legacy (pre-grammar) identifiers
LEGACY_MIN_LENGTH = 5
LEGACY_MAX_LENGTH = 64
