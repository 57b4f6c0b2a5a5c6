"""Race tests: concurrent accepts and approvals must produce exactly one winner."""

from __future__ import annotations

import asyncio

import pytest

from tests.conftest import auth_header, create_task, register_user


@pytest.mark.asyncio
async def test_concurrent_accepts_have_one_winner(parties):
    c = parties["client"]
    taskers = [await register_user(c, f"racer-{i}") for i in range(6)]
    task_id = (await create_task(c, parties["requester"]["key"]))["task_id"]

    responses = await asyncio.gather(
        *(c.post(f"/v1/tasks/{task_id}/accept", headers=auth_header(t["api_key"])) for t in taskers)
    )
    codes = sorted(r.status_code for r in responses)
    assert codes == [200] + [409] * (len(taskers) - 1)

    winner = next(r for r in responses if r.status_code == 200).json()["assigned_tasker_id"]
    assert winner in {t["user_id"] for t in taskers}
    for r in responses:
        if r.status_code == 409:
            assert r.json()["error"] in ("This task was just taken by someone else", "Task is accepted, not posted")

    resp = await c.get(f"/v1/tasks/{task_id}", headers=auth_header(parties["requester"]["key"]))
    assert resp.json()["assigned_tasker_id"] == winner


@pytest.mark.asyncio
async def test_concurrent_approvals_pay_once(parties):
    c = parties["client"]
    requester, tasker = parties["requester"], parties["tasker"]
    task_id = (await create_task(c, requester["key"]))["task_id"]
    await c.post(f"/v1/tasks/{task_id}/accept", headers=auth_header(tasker["key"]))
    await c.post(f"/v1/tasks/{task_id}/start", headers=auth_header(tasker["key"]))
    await c.post(f"/v1/tasks/{task_id}/complete", json={}, headers=auth_header(tasker["key"]))

    responses = await asyncio.gather(
        *(c.post(f"/v1/tasks/{task_id}/approve", headers=auth_header(requester["key"])) for _ in range(3))
    )
    assert sorted(r.status_code for r in responses) == [200, 409, 409]

    wallet = (await c.get("/v1/me/wallet", headers=auth_header(tasker["key"]))).json()
    assert wallet["balance"] == 18000
    assert wallet["total"] == 1
