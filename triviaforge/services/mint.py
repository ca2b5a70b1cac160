"""
Mint orchestrator.

Turns an eligibility into a token:

    initiate   consume eligibility + reserve catalog item + name the token
    advance    submit mint -> poll -> record ownership, mark item minted

Consumption and reservation happen in one transaction, so an exhausted
category leaves the eligibility active. A mint that fails (rejected, or
submission exhausted its retries) returns the catalog item to the pool.
An unknown outcome keeps the item reserved for manual review.
"""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from triviaforge.db.operations import get_open_season, mint_to_model, record_ownership
from triviaforge.ledger.client import (
    LedgerSubmissionError,
    TransactionStatus,
    UnknownOutcomeError,
)
from triviaforge.models.db import EligibilityDB, MintOperationDB
from triviaforge.models.failure import FailureKind, KnownError
from triviaforge.models.lifecycle import FailureReason, MintOperation, MintStatus, TokenSource
from triviaforge.naming.asset_name import TierType, new_asset_name
from triviaforge.services.catalog import mark_item_minted, release_item, reserve_item
from triviaforge.services.eligibility import (
    EligibilityExpiredError,
    EligibilityNotFoundError,
    consume_eligibility,
)
from triviaforge.services.workflow import LedgerWorkflow

logger = logging.getLogger(__name__)


class MintNotFoundError(KnownError):
    def __init__(self, mint_id: str):
        super().__init__(
            kind=FailureKind.NOT_FOUND,
            message=f"Mint operation not found: {mint_id}",
            status_code=404,
        )


class MintStateError(KnownError):
    """The operation is not in the state the step needs."""

    def __init__(self, mint_id: str, message: str):
        super().__init__(
            kind=FailureKind.INVALID_STATE,
            message=message,
            detail=f"mint_id={mint_id}",
            status_code=409,
        )


class MintOrchestrator(LedgerWorkflow[MintOperation]):
    """Issues category tokens for consumed eligibilities."""

    async def get_status(self, mint_id: str) -> MintOperation:
        """
        Get a snapshot of a mint operation.

        Raises:
            MintNotFoundError: If no operation has this id
        """
        async with self._session_factory() as session:
            op = await session.get(MintOperationDB, mint_id)
            if op is None:
                raise MintNotFoundError(mint_id)
            return mint_to_model(op)

    async def initiate(self, eligibility_id: str, player_id: str, owner_key: str) -> MintOperation:
        """
        Consume an eligibility and reserve the design it will mint.

        Raises:
            EligibilityError: If the eligibility is missing, someone else's,
                used, or expired
            CategoryExhaustedError: If the category has no designs left
        """
        now = self._clock()
        async with self._session_factory() as session:
            eligibility = await session.get(EligibilityDB, eligibility_id)
            if eligibility is None or eligibility.player_id != player_id:
                raise EligibilityNotFoundError(eligibility_id)

            try:
                await consume_eligibility(session, eligibility_id, now)
            except EligibilityExpiredError:
                await session.commit()
                raise

            item = await reserve_item(session, eligibility.category_id, now)
            asset_identifier = new_asset_name(
                TierType.CATEGORY, category_id=eligibility.category_id, metrics=self._metrics
            )
            op = MintOperationDB(
                eligibility_id=eligibility_id,
                catalog_item_id=item.id,
                player_id=player_id,
                owner_key=owner_key,
                category_id=eligibility.category_id,
                asset_identifier=asset_identifier,
                status=MintStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(op)
            await session.flush()
            mint = mint_to_model(op)
            await session.commit()

        logger.info(
            "MINT_INITIATED",
            extra={
                "mint_id": mint.id,
                "player_id": player_id,
                "category_id": mint.category_id,
                "catalog_item_id": mint.catalog_item_id,
            },
        )
        self._metrics.increment("mint.initiated", tags={"category": mint.category_id})
        return mint

    # --- Workflow ---

    def _is_terminal(self, op: MintOperation) -> bool:
        return op.status.is_terminal

    def _is_awaiting_confirmation(self, op: MintOperation) -> bool:
        return op.status is MintStatus.SUBMITTED

    async def advance(self, mint_id: str) -> MintOperation:
        """Perform the next step of a mint operation."""
        async with self._lock_for(mint_id):
            op = await self.get_status(mint_id)
            if op.status is MintStatus.PENDING:
                return await self._submit(op)
            if op.status is MintStatus.SUBMITTED:
                return await self._poll(op)
            return op

    async def resume_in_flight(self, stale_after: timedelta = timedelta(0)) -> list[MintOperation]:
        """Advance every pending or submitted mint untouched for `stale_after`."""
        cutoff = self._clock() - stale_after
        async with self._session_factory() as session:
            result = await session.execute(
                select(MintOperationDB.id)
                .where(
                    MintOperationDB.status.in_(
                        [MintStatus.PENDING.value, MintStatus.SUBMITTED.value]
                    ),
                    MintOperationDB.updated_at <= cutoff,
                )
                .order_by(MintOperationDB.created_at)
            )
            mint_ids = list(result.scalars().all())

        advanced = []
        for mint_id in mint_ids:
            try:
                advanced.append(await self.advance(mint_id))
            except KnownError as e:
                logger.warning("MINT_RESUME_FAILED", extra={"mint_id": mint_id, "error": e.message})
        return advanced

    async def _submit(self, op: MintOperation) -> MintOperation:
        metadata = {
            "name": op.asset_identifier,
            "tier": TierType.CATEGORY.value,
            "category": op.category_id,
            "mint_operation_id": op.id,
        }
        try:
            tx_ref = await self._retry.execute(
                lambda: self._ledger.submit_mint(op.owner_key, [op.asset_identifier], metadata),
                operation_name="mint.submit",
                metrics=self._metrics,
                context={"mint_id": op.id},
            )
        except LedgerSubmissionError as e:
            return await self._fail(
                op, FailureReason.SUBMISSION_FAILED, f"Mint submission failed: {e.message}"
            )

        mint = await self._transition(
            op.id, MintStatus.PENDING, status=MintStatus.SUBMITTED.value, tx_ref=tx_ref
        )
        logger.info("MINT_SUBMITTED", extra={"mint_id": op.id, "tx_ref": tx_ref})
        return mint

    async def _poll(self, op: MintOperation) -> MintOperation:
        tx_ref = op.tx_ref
        if tx_ref is None:
            raise MintStateError(op.id, "Mint submitted without a transaction reference")
        status = await self._check_transaction(tx_ref)

        if status is TransactionStatus.REJECTED:
            return await self._fail(
                op, FailureReason.LEDGER_REJECTED, "Mint transaction rejected by the ledger"
            )
        if status is TransactionStatus.PENDING:
            attempts = op.poll_attempts + 1
            if attempts >= self.max_poll_attempts:
                timeout = UnknownOutcomeError(tx_ref, attempts)
                return await self._fail(
                    op,
                    FailureReason.UNKNOWN_OUTCOME,
                    f"{timeout.message} ({timeout.detail})",
                )
            return await self._transition(op.id, MintStatus.SUBMITTED, poll_attempts=attempts)

        now = self._clock()
        try:
            async with self._session_factory() as session, session.begin():
                season = await get_open_season(session, op.created_at)
                await record_ownership(
                    session,
                    owner_key=op.owner_key,
                    asset_identifier=op.asset_identifier,
                    tier=TierType.CATEGORY.value,
                    source=TokenSource.MINT,
                    category_id=op.category_id,
                    season_id=season.id if season else None,
                    now=now,
                )
                await mark_item_minted(session, op.catalog_item_id, now)
                mint = await self._transition_in(
                    session,
                    op.id,
                    MintStatus.SUBMITTED,
                    status=MintStatus.CONFIRMED.value,
                    confirmed_at=now,
                )
        except SQLAlchemyError as e:
            logger.warning(
                "MINT_RECORD_DEFERRED",
                extra={"mint_id": op.id, "tx_ref": tx_ref, "error": type(e).__name__},
            )
            self._metrics.increment("mint.record_deferred")
            return op

        logger.info(
            "MINT_CONFIRMED",
            extra={"mint_id": op.id, "asset_identifier": op.asset_identifier},
        )
        self._metrics.increment("mint.confirmed", tags={"category": op.category_id})
        return mint

    # --- Persistence helpers ---

    async def _transition_in(
        self,
        session: AsyncSession,
        mint_id: str,
        expected: MintStatus,
        **values: Any,
    ) -> MintOperation:
        result = await session.execute(
            update(MintOperationDB)
            .where(MintOperationDB.id == mint_id, MintOperationDB.status == expected.value)
            .values(updated_at=self._clock(), **values)
            .execution_options(synchronize_session=False)
        )
        op = await session.get(MintOperationDB, mint_id, populate_existing=True)
        if op is None:
            raise MintNotFoundError(mint_id)
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise MintStateError(mint_id, f"Mint is {op.status}, expected {expected.value}")
        return mint_to_model(op)

    async def _transition(self, mint_id: str, expected: MintStatus, **values: Any) -> MintOperation:
        async with self._session_factory() as session, session.begin():
            return await self._transition_in(session, mint_id, expected, **values)

    async def _fail(self, op: MintOperation, reason: FailureReason, error: str) -> MintOperation:
        async with self._session_factory() as session, session.begin():
            mint = await self._transition_in(
                session,
                op.id,
                op.status,
                status=MintStatus.FAILED.value,
                failure_reason=reason.value,
                error=error,
            )
            if reason is not FailureReason.UNKNOWN_OUTCOME:
                await release_item(session, op.catalog_item_id)

        extra = {
            "mint_id": op.id,
            "player_id": op.player_id,
            "reason": reason.value,
            "tx_ref": op.tx_ref,
            "error": error,
        }
        if reason is FailureReason.UNKNOWN_OUTCOME:
            logger.error("MINT_OUTCOME_UNKNOWN", extra=extra)
        else:
            logger.warning("MINT_FAILED", extra=extra)
        self._metrics.increment("mint.failed", tags={"reason": reason.value})
        return mint
