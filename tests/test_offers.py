"""Tests for bidding: offers, acceptance and the lowest-offer rule."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlmodel import select

from errandly.db_models import Offer, OfferStatus, Transaction
from errandly.escrow import EscrowError, HoldStatus, InMemoryEscrowGateway, set_gateway
from errandly.services.offers import pick_winning_offer
from tests.conftest import auth_header, create_task, register_user


async def _bidding_task_with_ref(c, key, **kwargs) -> dict:
    return await create_task(
        c, key, category_id="custom", category_name="Odd job", price=1000, bidding_enabled=True, **kwargs
    )


async def _bidding_task(c, key, **kwargs) -> str:
    return (await _bidding_task_with_ref(c, key, **kwargs))["task_id"]


async def _offer(c, task_id, key, price, message=None):
    body = {"proposed_price": price}
    if message:
        body["message"] = message
    return await c.post(f"/v1/tasks/{task_id}/offer", json=body, headers=auth_header(key))


def test_pick_winning_offer_lowest_then_earliest():
    t0 = datetime(2026, 1, 1, tzinfo=UTC)
    offers = [
        Offer(id="of_a", task_id="tk", tasker_id="a", proposed_price=800, created_at=t0),
        Offer(id="of_b", task_id="tk", tasker_id="b", proposed_price=650, created_at=t0 + timedelta(seconds=2)),
        Offer(id="of_c", task_id="tk", tasker_id="c", proposed_price=650, created_at=t0 + timedelta(seconds=1)),
        Offer(id="of_d", task_id="tk", tasker_id="d", proposed_price=100, created_at=t0, status=OfferStatus.rejected),
    ]
    assert pick_winning_offer(offers).id == "of_c"
    assert pick_winning_offer([]) is None


@pytest.mark.asyncio
async def test_submit_and_list_offers(parties):
    c = parties["client"]
    task_id = await _bidding_task(c, parties["requester"]["key"])

    resp = await _offer(c, task_id, parties["tasker"]["key"], 800, "Can do it tonight")
    assert resp.status_code == 201
    assert resp.json()["status"] == "pending"
    assert resp.json()["message"] == "Can do it tonight"

    resp = await c.get(f"/v1/tasks/{task_id}/offers", headers=auth_header(parties["requester"]["key"]))
    assert resp.json()["total"] == 1

    resp = await c.get(f"/v1/tasks/{task_id}/offers", headers=auth_header(parties["tasker"]["key"]))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_one_pending_offer_per_tasker(parties):
    c = parties["client"]
    task_id = await _bidding_task(c, parties["requester"]["key"])
    assert (await _offer(c, task_id, parties["tasker"]["key"], 800)).status_code == 201
    resp = await _offer(c, task_id, parties["tasker"]["key"], 700)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_offer_rules(parties):
    c = parties["client"]
    plain = (await create_task(c, parties["requester"]["key"]))["task_id"]
    assert (await _offer(c, plain, parties["tasker"]["key"], 800)).status_code == 400

    task_id = await _bidding_task(c, parties["requester"]["key"])
    assert (await _offer(c, task_id, parties["requester"]["key"], 800)).status_code == 403
    assert (await _offer(c, task_id, parties["tasker"]["key"], 0)).status_code == 400

    pro_task = await _bidding_task(c, parties["requester"]["key"], allowed_tier="pro")
    assert (await _offer(c, pro_task, parties["tasker"]["key"], 800)).status_code == 403


@pytest.mark.asyncio
async def test_accept_offer_assigns_at_offered_price(parties):
    c = parties["client"]
    requester = parties["requester"]
    task_id = await _bidding_task(c, requester["key"])
    first = (await _offer(c, task_id, parties["tasker"]["key"], 800)).json()
    second = (await _offer(c, task_id, parties["other"]["key"], 900)).json()

    resp = await c.post(f"/v1/tasks/{task_id}/offer/{second['id']}/accept", headers=auth_header(requester["key"]))
    assert resp.status_code == 200
    data = resp.json()
    assert data["task"]["status"] == "accepted"
    assert data["task"]["assigned_tasker_id"] == parties["other"]["id"]
    assert data["task"]["price"] == 900
    assert data["offer"]["status"] == "accepted"

    offers = (await c.get(f"/v1/tasks/{task_id}/offers", headers=auth_header(requester["key"]))).json()["offers"]
    statuses = {o["id"]: o["status"] for o in offers}
    assert statuses == {first["id"]: "rejected", second["id"]: "accepted"}

    # Task is taken: no more offers, and the rejected offer cannot be accepted
    assert (await _offer(c, task_id, parties["tasker"]["key"], 700)).status_code == 409
    resp = await c.post(f"/v1/tasks/{task_id}/offer/{first['id']}/accept", headers=auth_header(requester["key"]))
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_only_requester_accepts_offers(parties):
    c = parties["client"]
    task_id = await _bidding_task(c, parties["requester"]["key"])
    offer = (await _offer(c, task_id, parties["tasker"]["key"], 800)).json()
    resp = await c.post(f"/v1/tasks/{task_id}/offer/{offer['id']}/accept", headers=auth_header(parties["other"]["key"]))
    assert resp.status_code == 403
    resp = await c.post(f"/v1/tasks/{task_id}/offer/of_missing/accept", headers=auth_header(parties["requester"]["key"]))
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_quick_accept_rejects_pending_offers(parties):
    c = parties["client"]
    task_id = await _bidding_task(c, parties["requester"]["key"])
    offer = (await _offer(c, task_id, parties["tasker"]["key"], 800)).json()

    quick = await register_user(c, "quick")
    resp = await c.post(f"/v1/tasks/{task_id}/accept", headers=auth_header(quick["api_key"]))
    assert resp.status_code == 200
    assert resp.json()["price"] == 1000

    offers = (await c.get(f"/v1/tasks/{task_id}/offers", headers=auth_header(parties["requester"]["key"]))).json()
    assert offers["offers"][0]["id"] == offer["id"]
    assert offers["offers"][0]["status"] == "rejected"


async def _transaction(db, task_id) -> Transaction:
    async with db() as session:
        result = await session.execute(select(Transaction).where(Transaction.task_id == task_id))
        return result.scalar_one()


@pytest.mark.asyncio
async def test_offer_price_must_fit_category_bounds(parties):
    c = parties["client"]
    task_id = (await create_task(c, parties["requester"]["key"], bidding_enabled=True))["task_id"]

    resp = await _offer(c, task_id, parties["tasker"]["key"], 5_000_000)
    assert resp.status_code == 400
    assert "at most 50000" in resp.json()["error"]
    assert (await _offer(c, task_id, parties["tasker"]["key"], 4000)).status_code == 400
    assert (await _offer(c, task_id, parties["tasker"]["key"], 18000)).status_code == 201


@pytest.mark.asyncio
async def test_accepted_offer_replaces_the_escrow_hold(db, parties, gateway):
    c = parties["client"]
    requester, tasker = parties["requester"], parties["tasker"]
    created = await create_task(c, requester["key"], bidding_enabled=True, price=20000)
    task_id, old_ref = created["task_id"], created["escrow_ref"]
    offer = (await _offer(c, task_id, tasker["key"], 30000)).json()

    resp = await c.post(f"/v1/tasks/{task_id}/offer/{offer['id']}/accept", headers=auth_header(requester["key"]))
    assert resp.status_code == 200
    assert resp.json()["task"]["price"] == 30000

    txn = await _transaction(db, task_id)
    assert txn.amount == 30000
    assert txn.provider_ref != old_ref
    assert gateway.get(old_ref).status == HoldStatus.refunded
    new_hold = gateway.get(txn.provider_ref)
    assert new_hold.amount == 30000
    assert new_hold.status == HoldStatus.requires_capture

    await c.post(f"/v1/tasks/{task_id}/start", headers=auth_header(tasker["key"]))
    await c.post(f"/v1/tasks/{task_id}/complete", json={}, headers=auth_header(tasker["key"]))
    resp = await c.post(f"/v1/tasks/{task_id}/approve", headers=auth_header(requester["key"]))
    assert resp.status_code == 200
    assert resp.json()["payout"] == 27000
    assert resp.json()["platform_fee"] == 3000
    assert gateway.get(txn.provider_ref).status == HoldStatus.succeeded
    assert (await _transaction(db, task_id)).amount == 30000


@pytest.mark.asyncio
async def test_offer_at_the_posted_price_keeps_the_hold(db, parties, gateway):
    c = parties["client"]
    created = await _bidding_task_with_ref(c, parties["requester"]["key"])
    offer = (await _offer(c, created["task_id"], parties["tasker"]["key"], 1000)).json()

    resp = await c.post(
        f"/v1/tasks/{created['task_id']}/offer/{offer['id']}/accept",
        headers=auth_header(parties["requester"]["key"]),
    )
    assert resp.status_code == 200
    assert (await _transaction(db, created["task_id"])).provider_ref == created["escrow_ref"]
    assert gateway.get(created["escrow_ref"]).status == HoldStatus.requires_capture


class _SecondHoldFails(InMemoryEscrowGateway):
    async def hold(self, amount, *, metadata=None, idempotency_key=None):
        if len(self) >= 1:
            raise EscrowError("card declined")
        return await super().hold(amount, metadata=metadata, idempotency_key=idempotency_key)


@pytest.mark.asyncio
async def test_failed_replacement_hold_leaves_task_posted(db, parties):
    gw = _SecondHoldFails()
    previous = set_gateway(gw)
    try:
        c = parties["client"]
        created = await _bidding_task_with_ref(c, parties["requester"]["key"])
        task_id = created["task_id"]
        offer = (await _offer(c, task_id, parties["tasker"]["key"], 1500)).json()

        resp = await c.post(
            f"/v1/tasks/{task_id}/offer/{offer['id']}/accept", headers=auth_header(parties["requester"]["key"])
        )
        assert resp.status_code == 502

        task = (await c.get(f"/v1/tasks/{task_id}", headers=auth_header(parties["requester"]["key"]))).json()
        assert task["status"] == "posted"
        assert task["price"] == 1000
        assert (await _transaction(db, task_id)).amount == 1000
        assert gw.get(created["escrow_ref"]).status == HoldStatus.requires_capture
        offers = (await c.get(f"/v1/tasks/{task_id}/offers", headers=auth_header(parties["requester"]["key"]))).json()
        assert offers["offers"][0]["status"] == "pending"
    finally:
        set_gateway(previous)
