"""Tests for the forge orchestrator."""

import asyncio
import re
from datetime import timedelta

import pytest
from conftest import (
    T0,
    FakeClock,
    FakeLedgerClient,
    MakeRecords,
    permanent_error,
    transient_error,
)
from sqlalchemy.exc import OperationalError

from triviaforge.db.operations import (
    create_season,
    get_records_by_identifier,
    ownership_to_model,
)
from triviaforge.ledger.client import LedgerBusyError, TransactionStatus
from triviaforge.metrics import InMemoryMetrics
from triviaforge.models.db import ForgeOperationDB
from triviaforge.models.lifecycle import (
    STUCK_FORGE_MESSAGE,
    FailureReason,
    ForgeStatus,
    ForgeType,
    OwnershipRecord,
    OwnershipStatus,
    TokenSource,
)
from triviaforge.naming.categories import CATEGORY_SLUGS
from triviaforge.services import forge as forge_module
from triviaforge.services.forge import ForgeNotFoundError, ForgeOrchestrator, ForgeStateError
from triviaforge.services.forge_rules import ForgeValidationError

OWNER = "addr_test1owner"


@pytest.fixture
def orchestrator(forge_orchestrator: ForgeOrchestrator) -> ForgeOrchestrator:
    return forge_orchestrator


async def load(session_factory, identifiers: list[str]) -> dict[str, OwnershipRecord]:
    async with session_factory() as session:
        rows = await get_records_by_identifier(session, identifiers)
        return {row.asset_identifier: ownership_to_model(row) for row in rows}


async def start_category_forge(
    orchestrator: ForgeOrchestrator, make_records: MakeRecords
) -> tuple[str, list[str]]:
    inputs = await make_records(OWNER, {"science": 10})
    op = await orchestrator.initiate(
        OWNER, ForgeType.CATEGORY_ULTIMATE, inputs, category_id="science"
    )
    return op.id, inputs


class TestInitiate:
    async def test_initiate_claims_inputs(
        self, orchestrator: ForgeOrchestrator, make_records: MakeRecords, session_factory
    ) -> None:
        """A valid request is recorded as pending and its inputs are claimed."""
        forge_id, inputs = await start_category_forge(orchestrator, make_records)

        op = await orchestrator.get_status(forge_id)
        assert op.status is ForgeStatus.PENDING
        assert op.input_identifiers == inputs
        assert op.category_id == "science"
        records = await load(session_factory, inputs)
        assert all(r.forge_operation_id == forge_id for r in records.values())
        assert all(r.status is OwnershipStatus.HELD for r in records.values())

    async def test_nothing_submitted_on_initiate(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
    ) -> None:
        await start_category_forge(orchestrator, make_records)
        assert ledger.burns == []

    async def test_inputs_cannot_join_two_forges(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        metrics: InMemoryMetrics,
    ) -> None:
        _, inputs = await start_category_forge(orchestrator, make_records)

        with pytest.raises(ForgeValidationError) as exc_info:
            await orchestrator.initiate(
                OWNER, ForgeType.CATEGORY_ULTIMATE, inputs, category_id="science"
            )

        assert exc_info.value.rule == "already_forging"
        assert (
            metrics.count(
                "forge.validation_failed",
                tags={"type": "category_ultimate", "rule": "already_forging"},
            )
            == 1
        )

    async def test_invalid_request_leaves_no_operation(
        self, orchestrator: ForgeOrchestrator, make_records: MakeRecords, session_factory
    ) -> None:
        inputs = await make_records(OWNER, {"science": 9, "history": 1})

        with pytest.raises(ForgeValidationError):
            await orchestrator.initiate(
                OWNER, ForgeType.CATEGORY_ULTIMATE, inputs, category_id="science"
            )

        records = await load(session_factory, inputs)
        assert all(r.forge_operation_id is None for r in records.values())

    async def test_other_owner_cannot_forge(
        self, orchestrator: ForgeOrchestrator, make_records: MakeRecords
    ) -> None:
        inputs = await make_records(OWNER, {"science": 10})

        with pytest.raises(ForgeValidationError) as exc_info:
            await orchestrator.initiate(
                "addr_test1thief", ForgeType.CATEGORY_ULTIMATE, inputs, category_id="science"
            )
        assert exc_info.value.rule == "not_owned"

    async def test_unknown_type(
        self, orchestrator: ForgeOrchestrator, make_records: MakeRecords
    ) -> None:
        inputs = await make_records(OWNER, {"science": 10})

        with pytest.raises(ForgeValidationError) as exc_info:
            await orchestrator.initiate(OWNER, "mega_ultimate", inputs)
        assert exc_info.value.rule == "unknown_type"

    async def test_missing_operation(self, orchestrator: ForgeOrchestrator) -> None:
        with pytest.raises(ForgeNotFoundError):
            await orchestrator.get_status("nope")


class TestHappyPath:
    async def test_category_ultimate(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
        session_factory,
        metrics: InMemoryMetrics,
    ) -> None:
        """Burn, confirm, mint, confirm: inputs burned and output recorded."""
        forge_id, inputs = await start_category_forge(orchestrator, make_records)

        op = await orchestrator.run(forge_id)

        assert op.status is ForgeStatus.CONFIRMED
        assert op.confirmed_at == T0
        assert op.output_identifier is not None
        assert re.fullmatch(r"TNFT_V1_SCI_ULT_[0-9a-f]{8}", op.output_identifier)
        assert ledger.burns == [(OWNER, inputs)]
        assert [names for _, names, _ in ledger.mints] == [[op.output_identifier]]

        records = await load(session_factory, [*inputs, op.output_identifier])
        assert all(records[i].status is OwnershipStatus.BURNED for i in inputs)
        output = records[op.output_identifier]
        assert output.owner_key == OWNER
        assert output.tier == "category_ultimate"
        assert output.source is TokenSource.FORGE
        assert output.status is OwnershipStatus.HELD
        assert metrics.count("forge.confirmed", tags={"type": "category_ultimate"}) == 1

    async def test_master_ultimate(
        self, orchestrator: ForgeOrchestrator, make_records: MakeRecords
    ) -> None:
        inputs = await make_records(OWNER, {c: 1 for c in CATEGORY_SLUGS})
        op = await orchestrator.initiate(OWNER, "master_ultimate", inputs)

        op = await orchestrator.run(op.id)

        assert op.status is ForgeStatus.CONFIRMED
        assert op.output_identifier is not None
        assert re.fullmatch(r"TNFT_V1_MAST_[0-9a-f]{8}", op.output_identifier)

    async def test_seasonal_ultimate(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        session_factory,
    ) -> None:
        async with session_factory() as session, session.begin():
            season = await create_season(
                session,
                "winter",
                1,
                starts_at=T0 - timedelta(days=10),
                ends_at=T0 + timedelta(days=80),
                is_active=True,
            )
            season_id = season.id
        inputs = await make_records(OWNER, {c: 2 for c in CATEGORY_SLUGS}, season_id=season_id)
        op = await orchestrator.initiate(OWNER, ForgeType.SEASONAL_ULTIMATE, inputs)
        assert op.season_id == season_id

        op = await orchestrator.run(op.id)

        assert op.status is ForgeStatus.CONFIRMED
        assert op.output_identifier is not None
        assert re.fullmatch(r"TNFT_V1_SEAS_WI1_ULT_[0-9a-f]{8}", op.output_identifier)
        output = (await load(session_factory, [op.output_identifier]))[op.output_identifier]
        assert output.season_id == season_id

    async def test_transient_burn_failures_are_retried(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
    ) -> None:
        ledger.burn_errors = [transient_error(), transient_error()]
        forge_id, _ = await start_category_forge(orchestrator, make_records)

        op = await orchestrator.run(forge_id)

        assert op.status is ForgeStatus.CONFIRMED
        assert len(ledger.burns) == 1

    async def test_concurrent_advance_submits_once(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
    ) -> None:
        """Two advances of the same operation never submit the burn twice."""
        forge_id, _ = await start_category_forge(orchestrator, make_records)

        await asyncio.gather(orchestrator.advance(forge_id), orchestrator.advance(forge_id))

        assert len(ledger.burns) == 1
        op = await orchestrator.get_status(forge_id)
        assert op.status is ForgeStatus.BURN_CONFIRMED


class TestFailureBeforeBurn:
    async def test_burn_submission_failure_keeps_tokens(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
        session_factory,
    ) -> None:
        """A burn that never went through leaves the inputs held and free."""
        ledger.burn_errors = [permanent_error()]
        forge_id, inputs = await start_category_forge(orchestrator, make_records)

        op = await orchestrator.run(forge_id)

        assert op.status is ForgeStatus.FAILED
        assert op.failure_reason is FailureReason.SUBMISSION_FAILED
        assert not op.requires_intervention
        assert op.status_message != STUCK_FORGE_MESSAGE
        records = await load(session_factory, inputs)
        assert all(r.status is OwnershipStatus.HELD for r in records.values())
        assert all(r.forge_operation_id is None for r in records.values())

        retry = await orchestrator.initiate(
            OWNER, ForgeType.CATEGORY_ULTIMATE, inputs, category_id="science"
        )
        assert retry.status is ForgeStatus.PENDING

    async def test_retries_exhausted(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
    ) -> None:
        ledger.burn_errors = [transient_error() for _ in range(3)]
        forge_id, _ = await start_category_forge(orchestrator, make_records)

        op = await orchestrator.advance(forge_id)

        assert op.status is ForgeStatus.FAILED
        assert op.failure_reason is FailureReason.SUBMISSION_FAILED
        assert ledger.burns == []

    async def test_burn_rejected(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
        session_factory,
    ) -> None:
        ledger.burn_status = TransactionStatus.REJECTED
        forge_id, inputs = await start_category_forge(orchestrator, make_records)

        op = await orchestrator.run(forge_id)

        assert op.status is ForgeStatus.FAILED
        assert op.failure_reason is FailureReason.LEDGER_REJECTED
        assert not op.requires_intervention
        records = await load(session_factory, inputs)
        assert all(r.forge_operation_id is None for r in records.values())

    async def test_burn_never_confirmed(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
        session_factory,
    ) -> None:
        """An unconfirmed burn may still land, so the inputs stay claimed."""
        ledger.burn_status = TransactionStatus.PENDING
        forge_id, inputs = await start_category_forge(orchestrator, make_records)

        op = await orchestrator.run(forge_id)

        assert op.status is ForgeStatus.FAILED
        assert op.failure_reason is FailureReason.UNKNOWN_OUTCOME
        assert op.requires_intervention
        assert len(ledger.status_checks) == 3
        records = await load(session_factory, inputs)
        assert all(r.forge_operation_id == forge_id for r in records.values())


class TestFailureAfterBurn:
    async def test_mint_failure_requires_intervention(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
        session_factory,
        metrics: InMemoryMetrics,
    ) -> None:
        """After the burn, a failed mint is never retried automatically."""
        ledger.mint_errors = [transient_error(), transient_error()]
        forge_id, inputs = await start_category_forge(orchestrator, make_records)

        op = await orchestrator.run(forge_id)

        assert op.status is ForgeStatus.FAILED
        assert op.failure_reason is FailureReason.SUBMISSION_FAILED
        assert op.requires_intervention
        assert op.status_message == STUCK_FORGE_MESSAGE
        assert op.burn_tx_ref is not None
        assert op.output_identifier is not None
        assert len(ledger.mint_errors) == 1
        records = await load(session_factory, inputs)
        assert all(r.status is OwnershipStatus.BURNED for r in records.values())
        assert [stuck.id for stuck in await orchestrator.list_stuck()] == [forge_id]
        assert metrics.count(
            "forge.failed", tags={"reason": "submission_failed", "intervention": "true"}
        ) == 1

    async def test_busy_signer_after_burn_is_waited_out(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
    ) -> None:
        """Backpressure on the mint is retried: the signer queued nothing."""
        ledger.mint_errors = [LedgerBusyError(detail="HTTP 429")]
        forge_id, _ = await start_category_forge(orchestrator, make_records)

        op = await orchestrator.run(forge_id)

        assert op.status is ForgeStatus.CONFIRMED
        assert not op.requires_intervention
        assert [names for _, names, _ in ledger.mints] == [[op.output_identifier]]
        assert await orchestrator.list_stuck() == []

    async def test_long_backpressure_defers_mint(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
        metrics: InMemoryMetrics,
    ) -> None:
        """A signer busy past the retry budget leaves the forge for the next step."""
        ledger.mint_errors = [LedgerBusyError(detail="HTTP 503") for _ in range(3)]
        forge_id, _ = await start_category_forge(orchestrator, make_records)
        await orchestrator.advance(forge_id)
        await orchestrator.advance(forge_id)

        deferred = await orchestrator.advance(forge_id)

        assert deferred.status is ForgeStatus.BURN_CONFIRMED
        assert not deferred.requires_intervention
        assert deferred.output_identifier is not None
        assert ledger.mints == []
        assert metrics.count("forge.mint_deferred") == 1

        op = await orchestrator.run(forge_id)

        assert op.status is ForgeStatus.CONFIRMED
        assert op.output_identifier == deferred.output_identifier
        assert [names for _, names, _ in ledger.mints] == [[deferred.output_identifier]]

    async def test_mint_rejected(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
    ) -> None:
        ledger.mint_status = TransactionStatus.REJECTED
        forge_id, _ = await start_category_forge(orchestrator, make_records)

        op = await orchestrator.run(forge_id)

        assert op.status is ForgeStatus.FAILED
        assert op.failure_reason is FailureReason.LEDGER_REJECTED
        assert op.requires_intervention

    async def test_mint_never_confirmed(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
    ) -> None:
        ledger.mint_status = TransactionStatus.PENDING
        forge_id, _ = await start_category_forge(orchestrator, make_records)

        op = await orchestrator.run(forge_id)

        assert op.status is ForgeStatus.FAILED
        assert op.failure_reason is FailureReason.UNKNOWN_OUTCOME
        assert op.requires_intervention
        assert op.mint_tx_ref is not None

    async def test_store_failure_after_mint_recovers(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
        session_factory,
        metrics: InMemoryMetrics,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A confirmed mint that fails to record is recorded on the next step."""
        real_record_ownership = forge_module.record_ownership
        calls = 0

        async def flaky_record_ownership(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise OperationalError("INSERT INTO ownership_records", {}, Exception("disk I/O"))
            return await real_record_ownership(*args, **kwargs)

        monkeypatch.setattr(forge_module, "record_ownership", flaky_record_ownership)
        forge_id, _ = await start_category_forge(orchestrator, make_records)

        op = await orchestrator.run(forge_id)

        assert op.status is ForgeStatus.CONFIRMED
        assert len(ledger.mints) == 1
        assert calls == 2
        assert metrics.count("forge.record_deferred") == 1
        assert op.output_identifier is not None
        records = await load(session_factory, [op.output_identifier])
        assert op.output_identifier in records


class TestCancel:
    async def test_cancel_pending(
        self, orchestrator: ForgeOrchestrator, make_records: MakeRecords, session_factory
    ) -> None:
        forge_id, inputs = await start_category_forge(orchestrator, make_records)

        op = await orchestrator.cancel(forge_id)

        assert op.status is ForgeStatus.CANCELLED
        records = await load(session_factory, inputs)
        assert all(r.forge_operation_id is None for r in records.values())
        assert (await orchestrator.advance(forge_id)).status is ForgeStatus.CANCELLED

    async def test_cannot_cancel_after_submission(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
    ) -> None:
        ledger.burn_status = TransactionStatus.PENDING
        forge_id, _ = await start_category_forge(orchestrator, make_records)
        await orchestrator.advance(forge_id)

        with pytest.raises(ForgeStateError):
            await orchestrator.cancel(forge_id)

        assert (await orchestrator.get_status(forge_id)).status is ForgeStatus.BURN_SUBMITTED

    async def test_cancel_missing(self, orchestrator: ForgeOrchestrator) -> None:
        with pytest.raises(ForgeNotFoundError):
            await orchestrator.cancel("nope")


class TestOperationLocks:
    async def test_finished_forges_hold_no_locks(
        self, orchestrator: ForgeOrchestrator, make_records: MakeRecords
    ) -> None:
        for _ in range(3):
            forge_id, _ = await start_category_forge(orchestrator, make_records)
            op = await orchestrator.run(forge_id)
            assert op.status is ForgeStatus.CONFIRMED

        assert len(orchestrator._locks) == 0

    async def test_cancelled_forge_holds_no_lock(
        self, orchestrator: ForgeOrchestrator, make_records: MakeRecords
    ) -> None:
        forge_id, _ = await start_category_forge(orchestrator, make_records)

        await orchestrator.cancel(forge_id)

        assert forge_id not in orchestrator._locks

    async def test_submitted_burn_without_reference(
        self, orchestrator: ForgeOrchestrator, make_records: MakeRecords, session_factory
    ) -> None:
        forge_id, _ = await start_category_forge(orchestrator, make_records)
        async with session_factory() as session, session.begin():
            row = await session.get(ForgeOperationDB, forge_id)
            assert row is not None
            row.status = ForgeStatus.BURN_SUBMITTED.value

        with pytest.raises(ForgeStateError):
            await orchestrator.advance(forge_id)


class TestProgressAndResume:
    async def test_progress_ignores_claimed_tokens(
        self, orchestrator: ForgeOrchestrator, make_records: MakeRecords
    ) -> None:
        await start_category_forge(orchestrator, make_records)
        await make_records(OWNER, {"science": 4, "history": 1})

        progress = await orchestrator.get_progress(OWNER)
        by_category = {p.category_id: p for p in progress if p.type is ForgeType.CATEGORY_ULTIMATE}

        assert by_category["science"].current == 4
        assert by_category["history"].current == 1
        master = next(p for p in progress if p.type is ForgeType.MASTER_ULTIMATE)
        assert master.current == 2

    async def test_resume_waits_for_stale_operations(
        self,
        orchestrator: ForgeOrchestrator,
        make_records: MakeRecords,
        ledger: FakeLedgerClient,
        clock: FakeClock,
    ) -> None:
        forge_id, _ = await start_category_forge(orchestrator, make_records)

        assert await orchestrator.resume_in_flight(stale_after=timedelta(minutes=5)) == []

        clock.advance(minutes=10)
        advanced = await orchestrator.resume_in_flight(stale_after=timedelta(minutes=5))

        assert [op.id for op in advanced] == [forge_id]
        assert advanced[0].status is ForgeStatus.BURN_SUBMITTED
        assert len(ledger.burns) == 1
