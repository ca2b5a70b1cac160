"""
Liveness and readiness probes.

Readiness depends on the database only. The signing service is reported
alongside it but never fails the probe: mint and forge workflows wait out
a ledger outage by polling, so the API can keep accepting requests.
"""

from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from triviaforge.db.database import get_session
from triviaforge.ledger.client import HttpLedgerClient, get_ledger_client

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    database: Literal["connected", "disconnected"] | None = None
    ledger: Literal["connected", "unreachable"] | None = None


async def _database_reachable(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return False
    return True


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness probe. Checks nothing beyond the process answering."""
    return HealthResponse(status="healthy")


@router.get(
    "/ready",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse}},
)
async def ready(
    response: Response,
    session: Annotated[AsyncSession, Depends(get_session)],
    ledger: Annotated[HttpLedgerClient, Depends(get_ledger_client)],
) -> HealthResponse:
    """Readiness probe. 503 when the database is unavailable."""
    database_ok = await _database_reachable(session)
    ledger_ok = await ledger.health_check()
    if not database_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(
        status="ready" if database_ok else "not ready",
        database="connected" if database_ok else "disconnected",
        ledger="connected" if ledger_ok else "unreachable",
    )
