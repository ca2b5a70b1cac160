"""
Mint API endpoints.

Lists a player's usable eligibilities and turns one into a token.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field

from triviaforge.api.dependencies import get_eligibility_ledger, get_mint_orchestrator
from triviaforge.models.lifecycle import Eligibility, MintOperation
from triviaforge.services.eligibility import EligibilityLedger
from triviaforge.services.mint import MintOrchestrator

router = APIRouter(prefix="/mint", tags=["mint"])


class EligibilityResponse(BaseModel):
    id: str
    category_id: str
    status: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_eligibility(cls, eligibility: Eligibility) -> "EligibilityResponse":
        return cls(
            id=eligibility.id,
            category_id=eligibility.category_id,
            status=eligibility.status.value,
            created_at=eligibility.created_at,
            expires_at=eligibility.expires_at,
        )


class EligibilitiesResponse(BaseModel):
    player_id: str
    eligibilities: list[EligibilityResponse]


class MintRequest(BaseModel):
    """Request model for minting against an eligibility."""

    eligibility_id: str = Field(..., min_length=1)
    player_id: str = Field(..., min_length=1)
    owner_key: str = Field(..., min_length=1, description="Wallet key to receive the token")


class MintResponse(BaseModel):
    """Snapshot of a mint operation."""

    id: str
    eligibility_id: str
    category_id: str
    asset_identifier: str
    status: str
    tx_ref: str | None = None
    error: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    confirmed_at: datetime | None = None

    @classmethod
    def from_operation(cls, op: MintOperation) -> "MintResponse":
        return cls(
            id=op.id,
            eligibility_id=op.eligibility_id,
            category_id=op.category_id,
            asset_identifier=op.asset_identifier,
            status=op.status.value,
            tx_ref=op.tx_ref,
            error=op.error,
            failure_reason=op.failure_reason.value if op.failure_reason else None,
            created_at=op.created_at,
            confirmed_at=op.confirmed_at,
        )


@router.get("/eligibilities/{player_id}", response_model=EligibilitiesResponse)
async def list_eligibilities(
    player_id: str,
    ledger: Annotated[EligibilityLedger, Depends(get_eligibility_ledger)],
) -> EligibilitiesResponse:
    """A player's active eligibilities, soonest to expire first."""
    eligibilities = await ledger.get_active(player_id)
    return EligibilitiesResponse(
        player_id=player_id,
        eligibilities=[EligibilityResponse.from_eligibility(e) for e in eligibilities],
    )


@router.post("", response_model=MintResponse, status_code=202)
async def start_mint(
    request: MintRequest,
    background_tasks: BackgroundTasks,
    orchestrator: Annotated[MintOrchestrator, Depends(get_mint_orchestrator)],
) -> MintResponse:
    """Consume an eligibility and mint its token in the background."""
    op = await orchestrator.initiate(request.eligibility_id, request.player_id, request.owner_key)
    background_tasks.add_task(orchestrator.run, op.id)
    return MintResponse.from_operation(op)


@router.get("/{mint_id}", response_model=MintResponse)
async def get_status(
    mint_id: str,
    orchestrator: Annotated[MintOrchestrator, Depends(get_mint_orchestrator)],
) -> MintResponse:
    return MintResponse.from_operation(await orchestrator.get_status(mint_id))
