"""
Forge API endpoints.

Starting a forge validates and claims the inputs synchronously, then runs
the burn and mint in a background task. Clients poll the status endpoint.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field

from triviaforge.api.dependencies import get_forge_orchestrator
from triviaforge.models.lifecycle import ForgeOperation, ForgeProgress, ForgeType
from triviaforge.services.forge import ForgeOrchestrator

router = APIRouter(prefix="/forge", tags=["forge"])

Orchestrator = Annotated[ForgeOrchestrator, Depends(get_forge_orchestrator)]


class ForgeRequest(BaseModel):
    """Request model for starting a forge."""

    owner_key: str = Field(..., min_length=1, description="Wallet key that owns the inputs")
    type: ForgeType
    input_identifiers: list[str] = Field(
        ...,
        min_length=1,
        description="Asset identifiers of the tokens to burn",
        examples=[["TNFT_V1_SCI_REG_12b3de7d", "TNFT_V1_SCI_REG_9a0f11c2"]],
    )
    category_id: str | None = Field(
        default=None,
        description="Target category (category_ultimate only)",
    )


class ForgeResponse(BaseModel):
    """Snapshot of a forge operation."""

    id: str
    type: ForgeType
    owner_key: str
    status: str
    message: str
    input_identifiers: list[str]
    category_id: str | None = None
    season_id: str | None = None
    burn_tx_ref: str | None = None
    mint_tx_ref: str | None = None
    output_identifier: str | None = None
    error: str | None = None
    failure_reason: str | None = None
    requires_intervention: bool = False
    created_at: datetime
    updated_at: datetime
    confirmed_at: datetime | None = None

    @classmethod
    def from_operation(cls, op: ForgeOperation) -> "ForgeResponse":
        return cls(
            id=op.id,
            type=op.type,
            owner_key=op.owner_key,
            status=op.status.value,
            message=op.status_message,
            input_identifiers=op.input_identifiers,
            category_id=op.category_id,
            season_id=op.season_id,
            burn_tx_ref=op.burn_tx_ref,
            mint_tx_ref=op.mint_tx_ref,
            output_identifier=op.output_identifier,
            error=op.error,
            failure_reason=op.failure_reason.value if op.failure_reason else None,
            requires_intervention=op.requires_intervention,
            created_at=op.created_at,
            updated_at=op.updated_at,
            confirmed_at=op.confirmed_at,
        )


class ForgeProgressEntry(BaseModel):
    type: ForgeType
    required: int
    current: int
    can_forge: bool
    asset_identifiers: list[str] = Field(default_factory=list)
    category_id: str | None = None
    season_id: str | None = None

    @classmethod
    def from_progress(cls, progress: ForgeProgress) -> "ForgeProgressEntry":
        return cls(
            type=progress.type,
            required=progress.required,
            current=progress.current,
            can_forge=progress.can_forge,
            asset_identifiers=progress.asset_identifiers,
            category_id=progress.category_id,
            season_id=progress.season_id,
        )


class ForgeProgressResponse(BaseModel):
    owner_key: str
    progress: list[ForgeProgressEntry]


@router.get("/progress/{owner_key}", response_model=ForgeProgressResponse)
async def get_progress(owner_key: str, orchestrator: Orchestrator) -> ForgeProgressResponse:
    """How close an owner is to each forge type."""
    progress = await orchestrator.get_progress(owner_key)
    return ForgeProgressResponse(
        owner_key=owner_key,
        progress=[ForgeProgressEntry.from_progress(p) for p in progress],
    )


@router.get("/stuck", response_model=list[ForgeResponse])
async def list_stuck(orchestrator: Orchestrator) -> list[ForgeResponse]:
    """
    Forges that burned inputs without minting an output.

    For operators; each needs manual resolution.
    """
    return [ForgeResponse.from_operation(op) for op in await orchestrator.list_stuck()]


@router.post("", response_model=ForgeResponse, status_code=202)
async def start_forge(
    request: ForgeRequest,
    background_tasks: BackgroundTasks,
    orchestrator: Orchestrator,
) -> ForgeResponse:
    """
    Start a forge.

    Returns 202 with the pending operation. Validation failures return 422
    with the rule that was broken.
    """
    op = await orchestrator.initiate(
        request.owner_key,
        request.type,
        request.input_identifiers,
        category_id=request.category_id,
    )
    background_tasks.add_task(orchestrator.run, op.id)
    return ForgeResponse.from_operation(op)


@router.get("/{forge_id}", response_model=ForgeResponse)
async def get_status(forge_id: str, orchestrator: Orchestrator) -> ForgeResponse:
    """Current state of a forge, including transaction references."""
    return ForgeResponse.from_operation(await orchestrator.get_status(forge_id))


@router.post("/{forge_id}/cancel", response_model=ForgeResponse)
async def cancel_forge(forge_id: str, orchestrator: Orchestrator) -> ForgeResponse:
    """Cancel a forge that has not started burning."""
    return ForgeResponse.from_operation(await orchestrator.cancel(forge_id))
