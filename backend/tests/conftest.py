"""Pytest configuration and fixtures for FleetWizard tests.

Provides reusable fixtures for draft stores, pricing contexts, a scripted
commit client, the ASGI test client, and live Redis / PostgreSQL
connections (skipped when the server is not reachable).
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from fleetwizard.config import settings
from fleetwizard.deps import get_coordinator, get_draft_store
from fleetwizard.main import app
from fleetwizard.middleware.exceptions import CommitRejected, CommitTransportError
from fleetwizard.schemas.pricing import Occupant, OccupantRole, PricingContext, PricingPolicy, RateTable
from fleetwizard.schemas.submission import CommitResponse, SubmissionRequest
from fleetwizard.services.drafts import InMemoryDraftStore
from fleetwizard.services.flows import Flow
from fleetwizard.services.submission import CommitClient, SubmissionCoordinator
from fleetwizard.services.validation import MinLines, LinesAssigned, MustBeTrue, StepDefinition


# ── Commit client doubles ────────────────────────────────────────

class ScriptedCommitClient(CommitClient):
    """Behaves like an idempotent backing store.

    `script` lists what each call does, in order:
      "ok"            create (or replay) and answer
      "network"       fail before reaching the store
      "lost_response" create, then lose the answer
      "reject"        refuse the request
    Calls past the end of the script behave as "ok".
    """

    def __init__(self, *script: str):
        self.script = list(script)
        self.keys_seen: list[str] = []
        self.payloads: list[dict] = []
        self.created: dict[str, str] = {}

    def _create(self, key: str) -> CommitResponse:
        if key in self.created:
            return CommitResponse(transaction_id=self.created[key], replayed=True)
        self.created[key] = f"txn-{len(self.created) + 1}"
        return CommitResponse(transaction_id=self.created[key])

    async def commit(self, request: SubmissionRequest) -> CommitResponse:
        self.keys_seen.append(request.idempotency_key)
        self.payloads.append(request.payload)
        action = self.script.pop(0) if self.script else "ok"
        if action == "network":
            raise CommitTransportError("Connection reset by peer")
        if action == "lost_response":
            self._create(request.idempotency_key)
            raise CommitTransportError("Read timed out")
        if action == "reject":
            raise CommitRejected("Customer is blocked", error_code="CUSTOMER_BLOCKED")
        return self._create(request.idempotency_key)


class BlockingCommitClient(ScriptedCommitClient):
    """Holds the commit open until `release` is set."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def commit(self, request: SubmissionRequest) -> CommitResponse:
        self.entered.set()
        await self.release.wait()
        return await super().commit(request)


# ── Domain fixtures ──────────────────────────────────────────────

@pytest.fixture
def store() -> InMemoryDraftStore:
    return InMemoryDraftStore(schema_version=1)


@pytest.fixture
def policy() -> PricingPolicy:
    return PricingPolicy(
        tax_rate=Decimal("0.10"),
        additional_driver_fee=Decimal("15.00"),
        underage_fee=Decimal("20.00"),
        minimum_driver_age=25,
    )


@pytest.fixture
def daily_context() -> PricingContext:
    return PricingContext(rate_table=RateTable(daily=Decimal("50")))


@pytest.fixture
def monday() -> datetime:
    return datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def wednesday() -> datetime:
    return datetime(2026, 3, 4, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def extra_driver() -> Occupant:
    return Occupant(ref="drv-2", role=OccupantRole.ADDITIONAL, additional_driver_fee=Decimal("15"))


@pytest.fixture
def simple_flow() -> Flow:
    """Three steps: optional details, lines, confirmation."""
    return Flow(
        name="simple",
        steps=(
            StepDefinition(id="details", order=1, title="Details"),
            StepDefinition(id="lines", order=2, title="Lines", rules=(MinLines(1), LinesAssigned())),
            StepDefinition(
                id="confirm",
                order=3,
                title="Confirm",
                rules=(MustBeTrue("terms_accepted", "Terms and conditions must be accepted"),),
            ),
        ),
    )


@pytest.fixture
def commit_client() -> ScriptedCommitClient:
    return ScriptedCommitClient()


@pytest.fixture
def scripted():
    """Factory for commit clients with a given script."""
    return ScriptedCommitClient


@pytest.fixture
def blocking_client() -> BlockingCommitClient:
    return BlockingCommitClient()


# ── HTTP client ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(store, commit_client) -> AsyncGenerator[AsyncClient, None]:
    """Test client wired to an in-memory draft store and scripted commits."""
    coordinator = SubmissionCoordinator(commit_client)
    app.dependency_overrides[get_draft_store] = lambda: store
    app.dependency_overrides[get_coordinator] = lambda: coordinator

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Redis Fixtures ───────────────────────────────────────────────

@pytest_asyncio.fixture
async def redis_client():
    """Live Redis client; the test is skipped when no server answers."""
    import redis.asyncio as redis

    client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except redis.RedisError:
        await client.aclose()
        pytest.skip("Redis server not available")

    yield client

    async for key in client.scan_iter(match="test:wizard:*"):
        await client.delete(key)
    await client.aclose()


# ── Database Fixtures ────────────────────────────────────────────

@pytest_asyncio.fixture
async def session_factory():
    """Session factory on a live PostgreSQL database with fresh tables."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    from fleetwizard.database import Base
    from fleetwizard.models import CommittedTransaction, DraftRecordRow  # noqa: F401

    # Never the application database: tables are dropped afterwards
    test_db_url = settings.database_url.rsplit("/", 1)[0] + "/fleetwizard_test"
    engine = create_async_engine(test_db_url, echo=False)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
    except Exception:
        await engine.dispose()
        pytest.skip("PostgreSQL test database server not available")

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Pure logic, no I/O")
    config.addinivalue_line("markers", "api: HTTP endpoints through the ASGI app")
    config.addinivalue_line("markers", "integration: Needs a live Redis or PostgreSQL server")
