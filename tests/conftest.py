"""Shared test fixtures: a throwaway SQLite database, fake network collaborators, API clients."""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import indexer_agent.models  # noqa: F401
from indexer_agent.config import Settings
from indexer_agent.database import Base
from indexer_agent.errors import TransientNetworkError
from indexer_agent.main import app
from indexer_agent.api.deps import get_conversion_rate, get_db, get_executor, get_status_view
from indexer_agent.auth.jwt import create_access_token
from indexer_agent.network.allocation_status import (
    AllocationSnapshot,
    DeploymentSnapshot,
    IndexerStake,
)
from indexer_agent.network.status_view import NetworkStatusView
from indexer_agent.network.transactions import OperationOutcome, TransactionSubmitter
from indexer_agent.schemas.schemas import ActionInput
from indexer_agent.services.action_executor import ActionExecutor
from indexer_agent.services.conversion_rate import SharedValue

INDEXER = "0x00000000000000000000000000000000000000aa"

DEP_A = "Qm" + "A" * 44
DEP_B = "Qm" + "B" * 44
DEP_C = "Qm" + "C" * 44

ALLOC_1 = "0x" + "11" * 20
ALLOC_2 = "0x" + "22" * 20
ALLOC_3 = "0x" + "33" * 20

PROOF = "0x" + "ab" * 32


def make_settings(**overrides) -> Settings:
    values = {
        "indexer_address": INDEXER,
        "allocation_management_mode": "oversight",
        "auto_allocation_min_batch_size": 1,
        "dispute_epochs": 7,
        "max_pending_cycles": 3,
        "default_allocation_amount": 1000,
    }
    values.update(overrides)
    return Settings(**values)


def allocation(allocation_id: str, deployment_id: str, tokens: int = 1000, created: int = 90, closed: int = 0, **kw) -> AllocationSnapshot:
    return AllocationSnapshot(
        id=allocation_id,
        indexer=INDEXER,
        deployment_id=deployment_id,
        allocated_tokens=tokens,
        created_at_epoch=created,
        closed_at_epoch=closed,
        **kw,
    )


def allocate_input(deployment_id: str = DEP_A, amount: str = "1000", **kw) -> ActionInput:
    return ActionInput(type="allocate", deployment_id=deployment_id, amount=amount, source="test", **kw)


def unallocate_input(allocation_id: str = ALLOC_1, **kw) -> ActionInput:
    return ActionInput(type="unallocate", allocation_id=allocation_id, source="test", **kw)


# ── Fake collaborators ───────────────────────────────────────────────────────

class FakeStatusView(NetworkStatusView):
    """In-memory network state; flip `available` to simulate an outage."""

    def __init__(self, epoch=100, allocations=None, deployments=None, stake=None):
        self.epoch = epoch
        self.allocations = list(allocations or [])
        self.deployments = list(deployments or [])
        self.stake = stake or IndexerStake(total=10_000, allocated=0)
        self.available = True

    def _check(self):
        if not self.available:
            raise TransientNetworkError("network subgraph unreachable")

    async def get_allocations(self):
        self._check()
        return list(self.allocations)

    async def get_epoch(self):
        self._check()
        return self.epoch

    async def get_deployments(self):
        self._check()
        return list(self.deployments)

    async def get_indexer_stake(self):
        self._check()
        return self.stake


class FakeSubmitter(TransactionSubmitter):
    """Confirms every operation unless told otherwise."""

    def __init__(self):
        self.batches: list[list] = []
        self.reverted: set[int] = set()
        self.unconfirmed: set[int] = set()
        self.error: Exception | None = None

    async def submit(self, operations):
        self.batches.append(list(operations))
        if self.error is not None:
            raise self.error
        outcomes = []
        for op in operations:
            tx = f"0xtx{op.action_id}"
            if op.action_id in self.reverted:
                outcomes.append(OperationOutcome(op.action_id, success=False, transaction_ref=tx, failure_reason="execution reverted"))
            elif op.action_id in self.unconfirmed:
                outcomes.append(OperationOutcome(op.action_id, success=False, transaction_ref=tx, transient=True, failure_reason="not yet mined"))
            else:
                outcomes.append(OperationOutcome(op.action_id, success=True, transaction_ref=tx))
        return outcomes


# ── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'agent.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def status_view():
    return FakeStatusView(
        deployments=[
            DeploymentSnapshot(DEP_A, signalled_tokens=500, staked_tokens=1000),
            DeploymentSnapshot(DEP_B, signalled_tokens=300, staked_tokens=1000),
        ],
        allocations=[allocation(ALLOC_1, DEP_B)],
    )


@pytest.fixture
def submitter():
    return FakeSubmitter()


@pytest.fixture
def executor(session_factory, status_view, submitter, settings):
    return ActionExecutor(session_factory, status_view, submitter, settings)


# ── API clients ──────────────────────────────────────────────────────────────

def _override_db(session_factory):
    """Same commit/rollback contract as the real get_db."""
    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    return _get_db


def _make_auth_header(subject: str, role: str) -> dict:
    token = create_access_token(subject, role)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def api(session_factory, status_view, executor):
    """Installs dependency overrides; yields a factory for role-scoped clients."""
    shared = SharedValue()
    app.dependency_overrides[get_db] = _override_db(session_factory)
    app.dependency_overrides[get_status_view] = lambda: status_view
    app.dependency_overrides[get_executor] = lambda: executor
    app.dependency_overrides[get_conversion_rate] = lambda: shared

    clients = []

    async def _client(role: str | None = "admin") -> AsyncClient:
        headers = _make_auth_header(f"test-{role}", role) if role else {}
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test", headers=headers)
        clients.append(client)
        return client

    yield _client

    for client in clients:
        await client.aclose()
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def admin_client(api) -> AsyncClient:
    return await api("admin")


@pytest_asyncio.fixture
async def operator_client(api) -> AsyncClient:
    return await api("operator")


@pytest_asyncio.fixture
async def viewer_client(api) -> AsyncClient:
    return await api("viewer")
