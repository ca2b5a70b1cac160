"""
Scheduled reconciliation job.

One pass over the lifecycle state:
- expire overdue eligibilities
- release catalog items reserved too long without a mint
- advance every in-flight mint and forge by one step
- report forges stuck after a burn

Can be run as a standalone script or called from a scheduler.
"""

import asyncio
import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from triviaforge.config import settings
from triviaforge.db.database import close_db, get_session_factory
from triviaforge.db.operations import utcnow
from triviaforge.ledger.client import LedgerClient, get_ledger_client
from triviaforge.services.catalog import CatalogReservation
from triviaforge.services.eligibility import EligibilityLedger
from triviaforge.services.forge import ForgeOrchestrator
from triviaforge.services.mint import MintOrchestrator

logger = logging.getLogger(__name__)

# Leave operations alone while a request's background task may still own them
DEFAULT_STALE_AFTER = timedelta(minutes=5)


async def run_reconcile(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    ledger: LedgerClient | None = None,
    release_after: timedelta | None = None,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> dict[str, int]:
    """
    Run one reconciliation pass.

    Args:
        session_factory: Defaults to the application session factory
        ledger: Defaults to the shared HTTP ledger client
        release_after: Reservation age before release. Defaults to
            settings.reservation_release_minutes.
        stale_after: Minimum idle time before an in-flight operation is advanced

    Returns:
        Dict of counts per activity
    """
    session_factory = session_factory or get_session_factory()
    ledger = ledger or get_ledger_client()
    if release_after is None:
        release_after = timedelta(minutes=settings.reservation_release_minutes)

    eligibility = EligibilityLedger(session_factory)
    catalog = CatalogReservation(session_factory)
    mints = MintOrchestrator(session_factory, ledger)
    forges = ForgeOrchestrator(session_factory, ledger)

    expired = await eligibility.expire_overdue()
    logger.info("Expired %d overdue eligibilities", expired)

    released = await catalog.release_stale(utcnow() - release_after)
    logger.info("Released %d stale reservations", len(released))

    advanced_mints = await mints.resume_in_flight(stale_after=stale_after)
    logger.info("Advanced %d in-flight mints", len(advanced_mints))

    advanced_forges = await forges.resume_in_flight(stale_after=stale_after)
    logger.info("Advanced %d in-flight forges", len(advanced_forges))

    stuck = await forges.list_stuck()
    for op in stuck:
        logger.error(
            "Forge %s stuck in %s (burn %s, mint %s): %s",
            op.id,
            op.failure_reason.value if op.failure_reason else "unknown",
            op.burn_tx_ref,
            op.mint_tx_ref,
            op.error,
        )

    results = {
        "eligibilities_expired": expired,
        "reservations_released": len(released),
        "mints_advanced": len(advanced_mints),
        "forges_advanced": len(advanced_forges),
        "forges_stuck": len(stuck),
    }
    logger.info("Reconcile complete: %s", results)
    return results


async def _run_once() -> None:
    try:
        await run_reconcile()
    finally:
        await close_db()


def main() -> None:
    """CLI entry point for running a reconciliation pass."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(_run_once())


if __name__ == "__main__":
    main()
