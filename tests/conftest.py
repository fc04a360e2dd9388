"""Shared pytest fixtures for TabFlow tests.

Unit tests get an in-memory tab table, a manual clock and fake browser/history
collaborators. Integration tests get containerized PostgreSQL via two modes:
1. TEST_DATABASE_* env vars present → connect to external PG (CI scenario)
2. Otherwise → testcontainers auto-starts a temporary PG container (local dev)

Safety: refuses to run against any database whose name doesn't contain '_test'.
"""

from __future__ import annotations

import asyncio
import os

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.config.policy import DecayConfig, PolicyConfig, ReaperConfig
from src.constants import DB_SCHEMA
from src.history.models import Base
from src.infra.errors import ReclaimError
from src.reclaim.gateway import HistorySink, ReclaimedTab, TabGateway, TabInfo
from src.reclaim.scheduler import ReclamationScheduler
from src.scoring.engine import ScoreEngine
from src.tabs.table import TabTable

# ---------------------------------------------------------------------------
# Unit-test collaborators
# ---------------------------------------------------------------------------

START_TIME = 1_760_000_000.0


class ManualClock:
    """Epoch-seconds clock advanced explicitly by tests."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_minutes(self, minutes: float) -> None:
        self.now += minutes * 60


class FakeTabGateway(TabGateway):
    """Browser stand-in: tabs live in a dict; destroy can be made to fail."""

    def __init__(self) -> None:
        self.tabs: dict[int, TabInfo] = {}
        self.destroyed: list[int] = []
        self.fail_on: set[int] = set()
        self.events: list[tuple[str, int]] = []  # shared ordering log with the sink

    def open(self, tab_id: int, url: str = "https://example.com/", title: str = "") -> None:
        self.tabs[tab_id] = TabInfo(tab_id=tab_id, url=url, title=title or f"Tab {tab_id}")

    async def lookup(self, tab_id: int) -> TabInfo | None:
        return self.tabs.get(tab_id)

    async def destroy(self, tab_id: int) -> None:
        if tab_id in self.fail_on:
            raise ReclaimError(f"permission denied for {tab_id}", code="PERMISSION_DENIED")
        self.events.append(("destroy", tab_id))
        self.tabs.pop(tab_id, None)
        self.destroyed.append(tab_id)

    async def list_open(self) -> list[TabInfo]:
        return list(self.tabs.values())


class RecordingSink(HistorySink):
    def __init__(self, events: list[tuple[str, int]] | None = None) -> None:
        self.records: list[ReclaimedTab] = []
        self.events = events if events is not None else []
        self.fail = False

    async def record(self, entry: ReclaimedTab) -> None:
        if self.fail:
            raise RuntimeError("history unavailable")
        self.events.append(("record", entry.tab_id))
        self.records.append(entry)


def make_config(**policy_overrides) -> ReaperConfig:
    policy = {
        "inactive_threshold": 0.0,
        "countdown_minutes": 30.0,
        "batch_interval_minutes": 1.0,
        "protected_domains": frozenset({"mail.google.com"}),
        "excluded_url_prefixes": ("chrome://",),
    }
    policy.update(policy_overrides)
    return ReaperConfig(policy=PolicyConfig(**policy), decay=DecayConfig())


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def table() -> TabTable:
    return TabTable()


@pytest.fixture
def config() -> ReaperConfig:
    return make_config()


@pytest.fixture
def engine(table: TabTable, config: ReaperConfig, clock: ManualClock) -> ScoreEngine:
    return ScoreEngine(table, config, clock=clock)


@pytest.fixture
def gateway() -> FakeTabGateway:
    return FakeTabGateway()


@pytest.fixture
def sink(gateway: FakeTabGateway) -> RecordingSink:
    return RecordingSink(gateway.events)


@pytest.fixture
def scheduler(
    engine: ScoreEngine,
    gateway: FakeTabGateway,
    sink: RecordingSink,
    config: ReaperConfig,
    clock: ManualClock,
) -> ReclamationScheduler:
    return ReclamationScheduler(engine, gateway, sink, config, clock=clock)


# ---------------------------------------------------------------------------
# PostgreSQL (integration)
# ---------------------------------------------------------------------------


def _validate_test_db_name(name: str) -> None:
    """Safety: refuse to truncate a database whose name doesn't contain '_test'."""
    if "_test" not in name.lower():
        raise RuntimeError(
            f"Refusing to run tests against database '{name}': "
            "name must contain '_test' to prevent accidental data loss. "
            "Set TEST_DATABASE_NAME to a test-specific database."
        )


def _build_pg_url_from_env() -> str | None:
    """Build async PG URL from TEST_DATABASE_* env vars, or return None."""
    host = os.getenv("TEST_DATABASE_HOST")
    if host is None:
        return None
    port = os.getenv("TEST_DATABASE_PORT", "5432")
    user = os.getenv("TEST_DATABASE_USER", "postgres")
    password = os.getenv("TEST_DATABASE_PASSWORD", "")
    name = os.getenv("TEST_DATABASE_NAME", "tabflow_test")
    _validate_test_db_name(name)
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"


@pytest.fixture(scope="session")
def _pg_container():
    """Manage testcontainers PostgreSQL lifecycle.

    Yields (url, container) where container is None if using external PG.
    """
    url = _build_pg_url_from_env()
    if url is not None:
        yield url, None
        return

    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer("postgres:16", dbname="tabflow_test")
    container.start()

    host = container.get_container_host_ip()
    port = container.get_exposed_port(5432)
    dbname = container.dbname
    _validate_test_db_name(dbname)

    url = f"postgresql+asyncpg://{container.username}:{container.password}@{host}:{port}/{dbname}"

    yield url, container

    container.stop()


@pytest.fixture(scope="session")
def pg_url(_pg_container) -> str:
    url, _ = _pg_container
    return url


@pytest_asyncio.fixture(scope="session")
async def db_engine(pg_url: str):
    """Create async engine, set up schema + tables. Tear down after session."""
    engine = create_async_engine(pg_url, echo=False)

    async with engine.begin() as conn:
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {DB_SCHEMA}"))
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.execute(text(f"DROP SCHEMA IF EXISTS {DB_SCHEMA} CASCADE"))

    await engine.dispose()


@pytest_asyncio.fixture(scope="session")
async def db_session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture(autouse=True)
async def _integration_cleanup(request):
    """Truncate history tables after each async integration test.

    Uses request.getfixturevalue() for lazy resolution so unit tests never
    start the database.
    """
    yield

    if not any(m.name == "integration" for m in request.node.iter_markers()):
        return
    if not asyncio.iscoroutinefunction(request.node.obj):
        return

    try:
        factory = request.getfixturevalue("db_session_factory")
    except Exception:
        return  # This test doesn't use the shared db fixture

    async with factory() as db_session:
        await db_session.execute(
            text(f"TRUNCATE {DB_SCHEMA}.reclaimed_tabs, {DB_SCHEMA}.reaper_metadata")
        )
        await db_session.commit()
