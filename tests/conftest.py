import itertools
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from triviaforge.api.dependencies import (
    get_eligibility_ledger,
    get_forge_orchestrator,
    get_mint_orchestrator,
)
from triviaforge.db.database import get_session
from triviaforge.ledger.client import LedgerSubmissionError, TransactionStatus, get_ledger_client
from triviaforge.main import app
from triviaforge.metrics import InMemoryMetrics
from triviaforge.models import failure as failure_module
from triviaforge.models.db import Base, OwnershipRecordDB
from triviaforge.models.lifecycle import OwnershipStatus, TokenSource
from triviaforge.naming.asset_name import TierType, build_asset_name
from triviaforge.naming.categories import CATEGORY_CODE_MAP
from triviaforge.services.eligibility import EligibilityLedger
from triviaforge.services.forge import ForgeOrchestrator
from triviaforge.services.mint import MintOrchestrator
from triviaforge.services.retry import SubmissionRetryPolicy

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def clear_finalized_responses():
    """Clear the finalized responses set between tests.

    This prevents test isolation issues where Python reuses memory
    addresses for new objects, causing id() collisions with previously
    finalized responses.
    """
    failure_module._finalized_responses.clear()
    yield
    failure_module._finalized_responses.clear()


@pytest.fixture
async def async_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def metrics() -> InMemoryMetrics:
    return InMemoryMetrics()


class FakeClock:
    """Settable clock for lifecycle tests."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class FakeLedgerClient:
    """
    In-process ledger.

    Records submissions. Queued errors are raised by the next submission of
    that kind; statuses default to confirmed.
    """

    def __init__(self) -> None:
        self.mints: list[tuple[str, list[str], dict[str, Any]]] = []
        self.burns: list[tuple[str, list[str]]] = []
        self.status_checks: list[str] = []
        self.mint_errors: list[Exception] = []
        self.burn_errors: list[Exception] = []
        self.burn_status = TransactionStatus.CONFIRMED
        self.mint_status = TransactionStatus.CONFIRMED
        self.healthy = True
        self._refs = itertools.count(1)

    async def submit_mint(
        self, owner_key: str, asset_names: list[str], metadata: dict[str, Any]
    ) -> str:
        if self.mint_errors:
            raise self.mint_errors.pop(0)
        self.mints.append((owner_key, list(asset_names), metadata))
        return f"tx-mint-{next(self._refs)}"

    async def submit_burn(self, owner_key: str, asset_names: list[str]) -> str:
        if self.burn_errors:
            raise self.burn_errors.pop(0)
        self.burns.append((owner_key, list(asset_names)))
        return f"tx-burn-{next(self._refs)}"

    async def get_transaction_status(self, tx_ref: str) -> TransactionStatus:
        self.status_checks.append(tx_ref)
        if tx_ref.startswith("tx-burn"):
            return self.burn_status
        return self.mint_status

    async def health_check(self) -> bool:
        return self.healthy


@pytest.fixture
def ledger() -> FakeLedgerClient:
    return FakeLedgerClient()


def transient_error() -> LedgerSubmissionError:
    return LedgerSubmissionError("Ledger signing service unreachable", transient=True)


def permanent_error() -> LedgerSubmissionError:
    return LedgerSubmissionError("Ledger rejected the submission", transient=False)


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def retry_policy() -> SubmissionRetryPolicy:
    """Three attempts, no waiting."""
    return SubmissionRetryPolicy(
        max_attempts=3, backoff_seconds=0, jitter_seconds=0, sleep=no_sleep
    )


MakeRecords = Callable[..., Awaitable[list[str]]]


@pytest.fixture
def make_records(session_factory) -> MakeRecords:
    """
    Insert held category-tier ownership records.

    Usage:
        await make_records("owner", {"science": 10})
        await make_records("owner", {"science": 2}, season_id=season.id)

    Returns the created asset identifiers in insertion order.
    """
    unique_ids = itertools.count(0x10000000)

    async def _make(
        owner_key: str,
        counts: dict[str, int],
        season_id: str | None = None,
        created_at: datetime = T0,
    ) -> list[str]:
        identifiers = []
        async with session_factory() as session, session.begin():
            for category_id, count in counts.items():
                for _ in range(count):
                    identifier = build_asset_name(
                        TierType.CATEGORY,
                        f"{next(unique_ids):08x}",
                        category_code=CATEGORY_CODE_MAP[category_id],
                    )
                    session.add(
                        OwnershipRecordDB(
                            owner_key=owner_key,
                            asset_identifier=identifier,
                            tier=TierType.CATEGORY.value,
                            source=TokenSource.MINT.value,
                            category_id=category_id,
                            season_id=season_id,
                            status=OwnershipStatus.HELD.value,
                            created_at=created_at,
                        )
                    )
                    identifiers.append(identifier)
        return identifiers

    return _make


@pytest.fixture
def forge_orchestrator(
    session_factory, ledger, metrics, clock, retry_policy
) -> ForgeOrchestrator:
    return ForgeOrchestrator(
        session_factory,
        ledger,
        metrics=metrics,
        clock=clock,
        retry_policy=retry_policy,
        poll_interval=0,
        max_poll_attempts=3,
        sleep=no_sleep,
    )


@pytest.fixture
def mint_orchestrator(session_factory, ledger, metrics, clock, retry_policy) -> MintOrchestrator:
    return MintOrchestrator(
        session_factory,
        ledger,
        metrics=metrics,
        clock=clock,
        retry_policy=retry_policy,
        poll_interval=0,
        max_poll_attempts=3,
        sleep=no_sleep,
    )


@pytest.fixture
def eligibility_ledger(session_factory, metrics, clock) -> EligibilityLedger:
    return EligibilityLedger(session_factory, metrics=metrics, clock=clock)


@pytest.fixture
async def client(
    session_factory,
    ledger,
    forge_orchestrator,
    mint_orchestrator,
    eligibility_ledger,
):
    """Async test client wired to the in-memory database and fake ledger."""

    async def override_get_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_ledger_client] = lambda: ledger
    app.dependency_overrides[get_forge_orchestrator] = lambda: forge_orchestrator
    app.dependency_overrides[get_mint_orchestrator] = lambda: mint_orchestrator
    app.dependency_overrides[get_eligibility_ledger] = lambda: eligibility_ledger

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
