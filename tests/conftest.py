"""Test fixtures with a file-backed SQLite database via SQLModel.

A file database (rather than ``:memory:``) gives every request its own
connection, so concurrent requests contend on SQLite's real write lock.
"""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from errandly.database import get_db_session, seed_defaults
from errandly.db_models import (  # noqa: F401 (register tables)
    Category,
    Expense,
    Offer,
    Task,
    Transaction,
    User,
)
from errandly.escrow import InMemoryEscrowGateway, set_gateway
from errandly.main import app
from errandly.rate_limit import limiter

AMSTERDAM = (52.3676, 4.9041)


@pytest.fixture
async def db(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)  # type: ignore[call-overload]
    async with factory() as session:
        await seed_defaults(session)

    async def override_get_db_session():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db_session
    limiter.enabled = False

    yield factory

    limiter.enabled = True
    app.dependency_overrides.clear()
    await engine.dispose()


@pytest.fixture
def gateway():
    gw = InMemoryEscrowGateway()
    previous = set_gateway(gw)
    yield gw
    set_gateway(previous)


@pytest.fixture
async def client(db, gateway):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def register_user(client: AsyncClient, name: str = "test-user", tier: str = "basic") -> dict:
    """Helper: register a user, return {"user_id", "api_key", "tier"}."""
    resp = await client.post(
        "/v1/register",
        json={"name": name, "tier": tier},
        headers={"Accept": "application/json"},
    )
    assert resp.status_code == 201
    return resp.json()


def auth_header(api_key: str) -> dict:
    return {"Authorization": f"Bearer {api_key}", "Accept": "application/json"}


async def create_task(client: AsyncClient, api_key: str, **overrides) -> dict:
    """Helper: post a delivery task in central Amsterdam and return the response body."""
    body = {
        "title": "Pick up a parcel",
        "category_id": "delivery",
        "price": 20000,
        "lat": AMSTERDAM[0],
        "lng": AMSTERDAM[1],
        **overrides,
    }
    resp = await client.post("/v1/tasks", json=body, headers=auth_header(api_key))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def paid_task(client: AsyncClient, requester_key: str, tasker_key: str, **overrides) -> str:
    """Helper: post a task and run it through to paid. Returns the task id."""
    task_id = (await create_task(client, requester_key, **overrides))["task_id"]
    for action in ("accept", "start", "complete"):
        resp = await client.post(f"/v1/tasks/{task_id}/{action}", json={}, headers=auth_header(tasker_key))
        assert resp.status_code == 200, resp.text
    resp = await client.post(f"/v1/tasks/{task_id}/approve", headers=auth_header(requester_key))
    assert resp.status_code == 200, resp.text
    return task_id


@pytest.fixture
async def parties(client):
    """A requester and two taskers."""
    requester = await register_user(client, "requester")
    tasker = await register_user(client, "tasker")
    other = await register_user(client, "other-tasker")
    return {
        "client": client,
        "requester": {"id": requester["user_id"], "key": requester["api_key"]},
        "tasker": {"id": tasker["user_id"], "key": tasker["api_key"]},
        "other": {"id": other["user_id"], "key": other["api_key"]},
    }
