"""
Service dependencies for the API routers.

Orchestrators are process-wide: they share the ledger client (and its
submission lock) and their per-operation locks across requests.
"""

from functools import lru_cache

from triviaforge.db.database import get_session_factory
from triviaforge.ledger.client import get_ledger_client
from triviaforge.services.eligibility import EligibilityLedger
from triviaforge.services.forge import ForgeOrchestrator
from triviaforge.services.mint import MintOrchestrator


@lru_cache
def get_forge_orchestrator() -> ForgeOrchestrator:
    return ForgeOrchestrator(get_session_factory(), get_ledger_client())


@lru_cache
def get_mint_orchestrator() -> MintOrchestrator:
    return MintOrchestrator(get_session_factory(), get_ledger_client())


@lru_cache
def get_eligibility_ledger() -> EligibilityLedger:
    return EligibilityLedger(get_session_factory())
