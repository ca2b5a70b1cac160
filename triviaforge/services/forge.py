"""
Forge orchestrator.

Burns a player's category tokens and mints one higher-tier token in their
place. The burn is irreversible, so the operation is a persisted state
machine:

    pending -> burn_submitted -> burn_confirmed -> mint_submitted -> confirmed
                    \\________________\\________________\\______> failed
    pending -> cancelled

Inputs are claimed (ownership_records.forge_operation_id) when the forge is
initiated, so no token can be part of two forges at once. Claims are
released when a forge fails before the burn or is cancelled.

Before the burn is accepted, transient ledger failures are retried and a
final failure leaves the inputs held. After the burn, only a busy signer is
waited out: the operation stays burn_confirmed and the mint is resubmitted
under the same name. Any other failed mint marks the operation
`requires_intervention` and it is listed by `list_stuck()` for operators.
"""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from triviaforge.db.operations import (
    forge_to_model,
    get_active_season,
    get_held_records,
    get_records_by_identifier,
    record_ownership,
    season_code_for,
    season_to_model,
)
from triviaforge.ledger.client import (
    LedgerBusyError,
    LedgerSubmissionError,
    TransactionStatus,
    UnknownOutcomeError,
)
from triviaforge.models.db import ForgeOperationDB, OwnershipRecordDB, SeasonDB
from triviaforge.models.failure import FailureKind, KnownError
from triviaforge.models.lifecycle import (
    FailureReason,
    ForgeOperation,
    ForgeProgress,
    ForgeStatus,
    ForgeType,
    OwnershipStatus,
    TokenSource,
)
from triviaforge.naming.asset_name import TierType, new_asset_name
from triviaforge.services.forge_rules import (
    ForgeRules,
    ForgeValidationError,
    compute_progress,
    validate_forge,
)
from triviaforge.services.workflow import LedgerWorkflow

logger = logging.getLogger(__name__)


class ForgeNotFoundError(KnownError):
    def __init__(self, forge_id: str):
        super().__init__(
            kind=FailureKind.NOT_FOUND,
            message=f"Forge operation not found: {forge_id}",
            status_code=404,
        )


class ForgeStateError(KnownError):
    """The operation is not in the state the request needs."""

    def __init__(self, forge_id: str, message: str):
        self.forge_id = forge_id
        super().__init__(
            kind=FailureKind.INVALID_STATE,
            message=message,
            detail=f"forge_id={forge_id}",
            status_code=409,
        )


class ForgeOrchestrator(LedgerWorkflow[ForgeOperation]):
    """Runs forge operations against the database and the ledger client."""

    def __init__(self, *args: Any, rules: ForgeRules | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.rules = rules or ForgeRules.from_settings()

    # --- Queries ---

    async def get_status(self, forge_id: str) -> ForgeOperation:
        """
        Get a snapshot of a forge operation.

        Raises:
            ForgeNotFoundError: If no operation has this id
        """
        async with self._session_factory() as session:
            op = await session.get(ForgeOperationDB, forge_id)
            if op is None:
                raise ForgeNotFoundError(forge_id)
            return forge_to_model(op)

    async def get_progress(self, owner_key: str) -> list[ForgeProgress]:
        """How close an owner is to each forge type."""
        async with self._session_factory() as session:
            records = await get_held_records(session, owner_key, tier=TierType.CATEGORY.value)
            season = await get_active_season(session)
            return compute_progress(
                self.rules,
                records,
                season=season_to_model(season) if season else None,
                now=self._clock(),
            )

    async def list_stuck(self) -> list[ForgeOperation]:
        """Failed operations whose inputs may be burned with no output minted."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ForgeOperationDB)
                .where(
                    ForgeOperationDB.status == ForgeStatus.FAILED.value,
                    ForgeOperationDB.requires_intervention.is_(True),
                )
                .order_by(ForgeOperationDB.updated_at)
            )
            return [forge_to_model(op) for op in result.scalars().all()]

    # --- Initiate / cancel ---

    async def initiate(
        self,
        owner_key: str,
        forge_type: ForgeType | str,
        input_identifiers: list[str],
        category_id: str | None = None,
    ) -> ForgeOperation:
        """
        Validate a forge request, claim its inputs and record it as pending.

        Nothing is submitted to the ledger here.

        Raises:
            ForgeValidationError: With the rule the request broke
        """
        try:
            forge_type = ForgeType(forge_type)
        except ValueError:
            raise ForgeValidationError(
                "unknown_type", f"Unknown forge type: {forge_type}"
            ) from None

        now = self._clock()
        try:
            async with self._session_factory() as session, session.begin():
                records = await get_records_by_identifier(session, input_identifiers)
                season = None
                if forge_type is ForgeType.SEASONAL_ULTIMATE:
                    season_row = await get_active_season(session)
                    season = season_to_model(season_row) if season_row else None

                validate_forge(
                    self.rules,
                    forge_type,
                    owner_key,
                    input_identifiers,
                    records,
                    category_id=category_id,
                    season=season,
                    now=now,
                )

                op = ForgeOperationDB(
                    type=forge_type.value,
                    owner_key=owner_key,
                    category_id=category_id if forge_type is ForgeType.CATEGORY_ULTIMATE else None,
                    season_id=season.id if season else None,
                    input_identifiers=list(input_identifiers),
                    status=ForgeStatus.PENDING.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(op)
                await session.flush()

                claimed = await session.execute(
                    update(OwnershipRecordDB)
                    .where(
                        OwnershipRecordDB.asset_identifier.in_(input_identifiers),
                        OwnershipRecordDB.owner_key == owner_key,
                        OwnershipRecordDB.status == OwnershipStatus.HELD.value,
                        OwnershipRecordDB.forge_operation_id.is_(None),
                    )
                    .values(forge_operation_id=op.id)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != len(input_identifiers):  # type: ignore[attr-defined]
                    raise ForgeValidationError(
                        "already_forging", "Some tokens are part of another forge"
                    )
                forge = forge_to_model(op)
        except ForgeValidationError as e:
            logger.info(
                "FORGE_REJECTED",
                extra={"owner_key": owner_key, "type": forge_type.value, "rule": e.rule},
            )
            self._metrics.increment(
                "forge.validation_failed", tags={"type": forge_type.value, "rule": e.rule}
            )
            raise

        logger.info(
            "FORGE_INITIATED",
            extra={"forge_id": forge.id, "owner_key": owner_key, "type": forge_type.value},
        )
        self._metrics.increment("forge.initiated", tags={"type": forge_type.value})
        return forge

    async def cancel(self, forge_id: str) -> ForgeOperation:
        """
        Abandon a pending forge and release its inputs.

        Raises:
            ForgeNotFoundError: If no operation has this id
            ForgeStateError: If the operation is past pending
        """
        async with self._lock_for(forge_id):
            async with self._session_factory() as session, session.begin():
                op = await self._transition_in(
                    session, forge_id, ForgeStatus.PENDING, status=ForgeStatus.CANCELLED.value
                )
                await self._release_claims(session, forge_id)

        logger.info("FORGE_CANCELLED", extra={"forge_id": forge_id})
        self._metrics.increment("forge.cancelled")
        return op

    # --- Workflow ---

    def _is_terminal(self, op: ForgeOperation) -> bool:
        return op.status.is_terminal

    def _is_awaiting_confirmation(self, op: ForgeOperation) -> bool:
        return op.status in (ForgeStatus.BURN_SUBMITTED, ForgeStatus.MINT_SUBMITTED)

    async def advance(self, forge_id: str) -> ForgeOperation:
        """
        Perform the next step of a forge operation.

        Raises:
            ForgeNotFoundError: If no operation has this id
        """
        async with self._lock_for(forge_id):
            op = await self.get_status(forge_id)
            if op.status is ForgeStatus.PENDING:
                return await self._submit_burn(op)
            if op.status is ForgeStatus.BURN_SUBMITTED:
                return await self._poll_burn(op)
            if op.status is ForgeStatus.BURN_CONFIRMED:
                return await self._submit_mint(op)
            if op.status is ForgeStatus.MINT_SUBMITTED:
                return await self._poll_mint(op)
            return op

    async def resume_in_flight(self, stale_after: timedelta = timedelta(0)) -> list[ForgeOperation]:
        """
        Advance every non-terminal operation untouched for `stale_after`.

        Returns:
            Snapshots after one step each
        """
        cutoff = self._clock() - stale_after
        in_flight = [status.value for status in ForgeStatus if not status.is_terminal]
        async with self._session_factory() as session:
            result = await session.execute(
                select(ForgeOperationDB.id)
                .where(
                    ForgeOperationDB.status.in_(in_flight),
                    ForgeOperationDB.updated_at <= cutoff,
                )
                .order_by(ForgeOperationDB.created_at)
            )
            forge_ids = list(result.scalars().all())

        advanced = []
        for forge_id in forge_ids:
            try:
                advanced.append(await self.advance(forge_id))
            except KnownError as e:
                logger.warning(
                    "FORGE_RESUME_FAILED", extra={"forge_id": forge_id, "error": e.message}
                )
        return advanced

    # --- Steps ---

    async def _submit_burn(self, op: ForgeOperation) -> ForgeOperation:
        try:
            tx_ref = await self._retry.execute(
                lambda: self._ledger.submit_burn(op.owner_key, op.input_identifiers),
                operation_name="forge.burn",
                metrics=self._metrics,
                context={"forge_id": op.id},
            )
        except LedgerSubmissionError as e:
            return await self._fail(
                op,
                FailureReason.SUBMISSION_FAILED,
                f"Burn submission failed: {e.message}",
                requires_intervention=False,
            )

        forge = await self._transition(
            op.id,
            ForgeStatus.PENDING,
            status=ForgeStatus.BURN_SUBMITTED.value,
            burn_tx_ref=tx_ref,
            poll_attempts=0,
        )
        logger.info("FORGE_BURN_SUBMITTED", extra={"forge_id": op.id, "tx_ref": tx_ref})
        return forge

    async def _poll_burn(self, op: ForgeOperation) -> ForgeOperation:
        tx_ref = op.burn_tx_ref
        if tx_ref is None:
            raise ForgeStateError(op.id, "Burn submitted without a transaction reference")
        status = await self._check_transaction(tx_ref)

        if status is TransactionStatus.REJECTED:
            return await self._fail(
                op,
                FailureReason.LEDGER_REJECTED,
                "Burn transaction rejected by the ledger",
                requires_intervention=False,
            )
        if status is TransactionStatus.PENDING:
            return await self._record_poll(op)

        now = self._clock()
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(OwnershipRecordDB)
                .where(
                    OwnershipRecordDB.asset_identifier.in_(op.input_identifiers),
                    OwnershipRecordDB.forge_operation_id == op.id,
                )
                .values(status=OwnershipStatus.BURNED.value, burned_at=now)
                .execution_options(synchronize_session=False)
            )
            forge = await self._transition_in(
                session,
                op.id,
                ForgeStatus.BURN_SUBMITTED,
                status=ForgeStatus.BURN_CONFIRMED.value,
                poll_attempts=0,
            )

        logger.info("FORGE_BURN_CONFIRMED", extra={"forge_id": op.id, "tx_ref": op.burn_tx_ref})
        self._metrics.increment("forge.burned", value=len(op.input_identifiers))
        return forge

    async def _submit_mint(self, op: ForgeOperation) -> ForgeOperation:
        output = op.output_identifier
        if output is None:
            try:
                output = await self._build_output_identifier(op)
            except KnownError as e:
                return await self._fail(
                    op,
                    FailureReason.SUBMISSION_FAILED,
                    f"Could not name output token: {e.message}",
                    requires_intervention=True,
                )
            # Stored before submission so a retry never mints a second name
            op = await self._transition(
                op.id, ForgeStatus.BURN_CONFIRMED, output_identifier=output
            )

        metadata = {
            "name": output,
            "tier": op.type.value,
            "category": op.category_id,
            "season_id": op.season_id,
            "forge_operation_id": op.id,
            "burn_tx_ref": op.burn_tx_ref,
        }
        try:
            # Busy means the signer queued nothing, so only that is retried
            tx_ref = await self._retry.execute(
                lambda: self._ledger.submit_mint(op.owner_key, [output], metadata),
                operation_name="forge.mint",
                metrics=self._metrics,
                context={"forge_id": op.id},
                retry_on=(LedgerBusyError,),
            )
        except LedgerBusyError as e:
            # Still burn_confirmed; the next advance resubmits the same name
            logger.warning(
                "FORGE_MINT_DEFERRED",
                extra={"forge_id": op.id, "output_identifier": output, "error": e.detail},
            )
            self._metrics.increment("forge.mint_deferred")
            return op
        except LedgerSubmissionError as e:
            return await self._fail(
                op,
                FailureReason.SUBMISSION_FAILED,
                f"Mint submission failed after burn: {e.message}",
                requires_intervention=True,
            )

        forge = await self._transition(
            op.id,
            ForgeStatus.BURN_CONFIRMED,
            status=ForgeStatus.MINT_SUBMITTED.value,
            mint_tx_ref=tx_ref,
            poll_attempts=0,
        )
        logger.info("FORGE_MINT_SUBMITTED", extra={"forge_id": op.id, "tx_ref": tx_ref})
        return forge

    async def _poll_mint(self, op: ForgeOperation) -> ForgeOperation:
        tx_ref, output = op.mint_tx_ref, op.output_identifier
        if tx_ref is None or output is None:
            raise ForgeStateError(op.id, "Mint submitted without a transaction or output name")
        status = await self._check_transaction(tx_ref)

        if status is TransactionStatus.REJECTED:
            return await self._fail(
                op,
                FailureReason.LEDGER_REJECTED,
                "Mint transaction rejected by the ledger after burn",
                requires_intervention=True,
            )
        if status is TransactionStatus.PENDING:
            return await self._record_poll(op)

        now = self._clock()
        try:
            async with self._session_factory() as session, session.begin():
                await record_ownership(
                    session,
                    owner_key=op.owner_key,
                    asset_identifier=output,
                    tier=op.type.value,
                    source=TokenSource.FORGE,
                    category_id=op.category_id,
                    season_id=op.season_id,
                    now=now,
                )
                forge = await self._transition_in(
                    session,
                    op.id,
                    ForgeStatus.MINT_SUBMITTED,
                    status=ForgeStatus.CONFIRMED.value,
                    confirmed_at=now,
                )
        except SQLAlchemyError as e:
            # Minted on chain; the next advance re-checks mint_tx_ref and records it
            logger.warning(
                "FORGE_RECORD_DEFERRED",
                extra={"forge_id": op.id, "tx_ref": tx_ref, "error": type(e).__name__},
            )
            self._metrics.increment("forge.record_deferred")
            return op

        logger.info(
            "FORGE_CONFIRMED",
            extra={"forge_id": op.id, "output_identifier": output},
        )
        self._metrics.increment("forge.confirmed", tags={"type": op.type.value})
        self._metrics.observe(
            "forge.duration_seconds", (now - op.created_at).total_seconds()
        )
        return forge

    async def _record_poll(self, op: ForgeOperation) -> ForgeOperation:
        attempts = op.poll_attempts + 1
        if attempts >= self.max_poll_attempts:
            tx_ref = op.mint_tx_ref if op.status is ForgeStatus.MINT_SUBMITTED else op.burn_tx_ref
            timeout = UnknownOutcomeError(tx_ref, attempts)
            return await self._fail(
                op,
                FailureReason.UNKNOWN_OUTCOME,
                f"{timeout.message} ({timeout.detail})",
                requires_intervention=True,
            )
        return await self._transition(op.id, op.status, poll_attempts=attempts)

    async def _build_output_identifier(self, op: ForgeOperation) -> str:
        season_code = None
        if op.type is ForgeType.SEASONAL_ULTIMATE:
            async with self._session_factory() as session:
                season = await session.get(SeasonDB, op.season_id) if op.season_id else None
                if season is None:
                    raise ForgeStateError(op.id, "Forge season no longer exists")
                season_code = season_code_for(season)
        return new_asset_name(
            TierType(op.type.value),
            category_id=op.category_id,
            season_code=season_code,
            metrics=self._metrics,
        )

    # --- Persistence helpers ---

    async def _transition_in(
        self,
        session: AsyncSession,
        forge_id: str,
        expected: ForgeStatus,
        **values: Any,
    ) -> ForgeOperation:
        """Update the operation only if it is still in `expected`."""
        result = await session.execute(
            update(ForgeOperationDB)
            .where(ForgeOperationDB.id == forge_id, ForgeOperationDB.status == expected.value)
            .values(updated_at=self._clock(), **values)
            .execution_options(synchronize_session=False)
        )
        op = await session.get(ForgeOperationDB, forge_id, populate_existing=True)
        if op is None:
            raise ForgeNotFoundError(forge_id)
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise ForgeStateError(
                forge_id, f"Forge is {op.status}, expected {expected.value}"
            )
        return forge_to_model(op)

    async def _transition(
        self, forge_id: str, expected: ForgeStatus, **values: Any
    ) -> ForgeOperation:
        async with self._session_factory() as session, session.begin():
            return await self._transition_in(session, forge_id, expected, **values)

    async def _release_claims(self, session: AsyncSession, forge_id: str) -> None:
        await session.execute(
            update(OwnershipRecordDB)
            .where(
                OwnershipRecordDB.forge_operation_id == forge_id,
                OwnershipRecordDB.status == OwnershipStatus.HELD.value,
            )
            .values(forge_operation_id=None)
            .execution_options(synchronize_session=False)
        )

    async def _fail(
        self,
        op: ForgeOperation,
        reason: FailureReason,
        error: str,
        requires_intervention: bool,
    ) -> ForgeOperation:
        async with self._session_factory() as session, session.begin():
            forge = await self._transition_in(
                session,
                op.id,
                op.status,
                status=ForgeStatus.FAILED.value,
                failure_reason=reason.value,
                error=error,
                requires_intervention=requires_intervention,
            )
            if not requires_intervention:
                await self._release_claims(session, op.id)

        extra = {
            "forge_id": op.id,
            "owner_key": op.owner_key,
            "from_status": op.status.value,
            "reason": reason.value,
            "burn_tx_ref": op.burn_tx_ref,
            "mint_tx_ref": op.mint_tx_ref,
            "error": error,
        }
        if requires_intervention:
            logger.error("FORGE_STUCK", extra=extra)
        else:
            logger.warning("FORGE_FAILED", extra=extra)
        self._metrics.increment(
            "forge.failed",
            tags={"reason": reason.value, "intervention": str(requires_intervention).lower()},
        )
        return forge
