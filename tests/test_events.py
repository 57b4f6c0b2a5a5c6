"""Tests for the notification bus and the events emitted by task actions."""

from __future__ import annotations

import pytest

from errandly.events import BROADCAST, Event, EventBus, event_bus, task_channel, user_channel
from tests.conftest import auth_header, create_task


def _drain(queue) -> list[Event]:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def test_publish_reaches_every_subscriber():
    bus = EventBus(queue_size=10)
    a = bus.subscribe("user:a")
    b = bus.subscribe("user:a", BROADCAST)
    assert bus.publish("user:a", Event(type="task_started", task_id="tk_1")) == 2
    assert [e.type for e in _drain(a)] == ["task_started"]
    assert [e.type for e in _drain(b)] == ["task_started"]


def test_publish_many_delivers_once_per_queue():
    bus = EventBus(queue_size=10)
    q = bus.subscribe("task:tk_1", "user:a")
    delivered = bus.publish_many(["task:tk_1", "user:a"], Event(type="task_paid", task_id="tk_1"))
    assert delivered == 1
    assert len(_drain(q)) == 1


def test_full_queue_drops_without_blocking():
    bus = EventBus(queue_size=1)
    q = bus.subscribe("user:a")
    bus.publish("user:a", Event(type="task_started"))
    assert bus.publish("user:a", Event(type="task_completed")) == 0
    assert bus.dropped == 1
    assert [e.type for e in _drain(q)] == ["task_started"]


def test_unsubscribe_and_close():
    bus = EventBus(queue_size=10)
    q = bus.subscribe("user:a", "user:b")
    bus.unsubscribe(q, "user:a")
    assert bus.subscriber_count("user:a") == 0
    assert bus.subscriber_count("user:b") == 1

    bus.close()
    assert q.get_nowait() is None
    assert bus.subscriber_count("user:b") == 0


def test_event_payload_flattens_data():
    event = Event(type="tasker_location", task_id="tk_1", data={"lat": 1.0, "lng": 2.0})
    assert event.payload() == {"type": "tasker_location", "task_id": "tk_1", "lat": 1.0, "lng": 2.0}


@pytest.mark.asyncio
async def test_task_lifecycle_notifies_parties(parties):
    c = parties["client"]
    requester, tasker = parties["requester"], parties["tasker"]
    broadcast = event_bus.subscribe(BROADCAST)
    requester_q = event_bus.subscribe(user_channel(requester["id"]))
    tasker_q = event_bus.subscribe(user_channel(tasker["id"]))
    try:
        task_id = (await create_task(c, requester["key"]))["task_id"]
        posted = _drain(broadcast)
        assert [e.type for e in posted] == ["task_posted"]
        assert posted[0].data["price"] == 20000

        await c.post(f"/v1/tasks/{task_id}/accept", headers=auth_header(tasker["key"]))
        await c.post(f"/v1/tasks/{task_id}/start", headers=auth_header(tasker["key"]))
        await c.post(f"/v1/tasks/{task_id}/complete", json={}, headers=auth_header(tasker["key"]))
        await c.post(f"/v1/tasks/{task_id}/approve", headers=auth_header(requester["key"]))

        assert [e.type for e in _drain(requester_q)] == [
            "task_assigned",
            "task_started",
            "task_completed",
            "task_paid",
        ]
        assert [e.type for e in _drain(tasker_q)] == ["task_assigned", "task_paid"]
    finally:
        event_bus.unsubscribe(broadcast, BROADCAST)
        event_bus.unsubscribe(requester_q, user_channel(requester["id"]))
        event_bus.unsubscribe(tasker_q, user_channel(tasker["id"]))


@pytest.mark.asyncio
async def test_location_goes_to_task_channel(parties):
    c = parties["client"]
    requester, tasker, other = parties["requester"], parties["tasker"], parties["other"]
    task_id = (await create_task(c, requester["key"]))["task_id"]
    await c.post(f"/v1/tasks/{task_id}/accept", headers=auth_header(tasker["key"]))

    watcher = event_bus.subscribe(task_channel(task_id))
    try:
        resp = await c.post(
            f"/v1/tasks/{task_id}/location",
            json={"lat": 52.37, "lng": 4.9, "heading": 90},
            headers=auth_header(tasker["key"]),
        )
        assert resp.status_code == 200
        assert resp.json()["delivered"] == 1
        events = _drain(watcher)
        assert events[0].type == "tasker_location"
        assert events[0].data["lat"] == 52.37

        resp = await c.post(
            f"/v1/tasks/{task_id}/location",
            json={"lat": 52.37, "lng": 4.9},
            headers=auth_header(other["key"]),
        )
        assert resp.status_code == 403
    finally:
        event_bus.unsubscribe(watcher, task_channel(task_id))


@pytest.mark.asyncio
async def test_task_event_stream_is_parties_only(parties):
    c = parties["client"]
    task_id = (await create_task(c, parties["requester"]["key"]))["task_id"]
    resp = await c.get(f"/v1/tasks/{task_id}/events", headers=auth_header(parties["other"]["key"]))
    assert resp.status_code == 403
