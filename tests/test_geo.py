"""Tests for nearby-task matching."""

from __future__ import annotations

import pytest
from geopy.distance import great_circle

from errandly.geo import bounding_box, distance_km, grid_cell
from tests.conftest import AMSTERDAM, auth_header, create_task, register_user

# Roughly 1 km and 10 km north of the centre
NEAR = (AMSTERDAM[0] + 0.009, AMSTERDAM[1])
FAR = (AMSTERDAM[0] + 0.09, AMSTERDAM[1])


def test_distance_km():
    assert distance_km(*AMSTERDAM, *AMSTERDAM) == 0
    assert distance_km(*AMSTERDAM, *NEAR) == pytest.approx(1.0, abs=0.05)
    # Amsterdam to Utrecht
    assert distance_km(52.3676, 4.9041, 52.0907, 5.1214) == pytest.approx(34.2, abs=1.0)


def test_bounding_box_contains_circle():
    min_lat, max_lat, min_lng, max_lng = bounding_box(*AMSTERDAM, 3)
    assert min_lat < AMSTERDAM[0] < max_lat
    assert min_lng < AMSTERDAM[1] < max_lng
    assert distance_km(min_lat, AMSTERDAM[1], *AMSTERDAM) == pytest.approx(3, abs=0.05)


def test_bounding_box_gives_up_near_poles_and_antimeridian():
    assert bounding_box(89.99, 0, 5) is None
    assert bounding_box(0, 179.99, 5) is None


async def _nearby(c, key, **params):
    return await c.get(
        "/v1/tasks/nearby",
        params={"lat": AMSTERDAM[0], "lng": AMSTERDAM[1], **params},
        headers=auth_header(key),
    )


@pytest.mark.asyncio
async def test_nearby_sorted_by_distance(parties):
    c = parties["client"]
    key = parties["requester"]["key"]
    near = (await create_task(c, key, title="Near", lat=NEAR[0], lng=NEAR[1]))["task_id"]
    centre = (await create_task(c, key, title="Centre"))["task_id"]
    far = (await create_task(c, key, title="Far", lat=FAR[0], lng=FAR[1]))["task_id"]

    resp = await _nearby(c, parties["tasker"]["key"])
    assert resp.status_code == 200
    data = resp.json()
    assert data["radius_km"] == 3.0
    assert [t["id"] for t in data["tasks"]] == [centre, near]
    assert data["tasks"][0]["distance_km"] == 0
    assert data["tasks"][1]["distance_km"] == pytest.approx(1.0, abs=0.05)

    resp = await _nearby(c, parties["tasker"]["key"], radius_km=15)
    assert [t["id"] for t in resp.json()["tasks"]] == [centre, near, far]


@pytest.mark.asyncio
async def test_nearby_excludes_own_and_taken_tasks(parties):
    c = parties["client"]
    mine = (await create_task(c, parties["tasker"]["key"]))["task_id"]
    taken = (await create_task(c, parties["requester"]["key"]))["task_id"]
    open_task = (await create_task(c, parties["requester"]["key"]))["task_id"]
    await c.post(f"/v1/tasks/{taken}/accept", headers=auth_header(parties["other"]["key"]))

    ids = [t["id"] for t in (await _nearby(c, parties["tasker"]["key"])).json()["tasks"]]
    assert ids == [open_task]
    assert mine not in ids


@pytest.mark.asyncio
async def test_nearby_hides_pro_tasks_from_basic_taskers(parties):
    c = parties["client"]
    pro_task = (await create_task(c, parties["requester"]["key"], allowed_tier="pro"))["task_id"]
    pro = await register_user(c, "pro", tier="pro")

    basic_ids = [t["id"] for t in (await _nearby(c, parties["tasker"]["key"])).json()["tasks"]]
    pro_ids = [t["id"] for t in (await _nearby(c, pro["api_key"])).json()["tasks"]]
    assert pro_task not in basic_ids
    assert pro_ids == [pro_task]


@pytest.mark.asyncio
async def test_default_radius_follows_platform_settings(parties, monkeypatch):
    from errandly.config import settings

    monkeypatch.setattr(settings, "admin_key", "test-admin-key")
    c = parties["client"]
    far = (await create_task(c, parties["requester"]["key"], lat=FAR[0], lng=FAR[1]))["task_id"]

    resp = await c.put("/v1/settings", json={"default_radius_km": 12}, headers=auth_header("test-admin-key"))
    assert resp.status_code == 200

    data = (await _nearby(c, parties["tasker"]["key"])).json()
    assert data["radius_km"] == 12
    assert [t["id"] for t in data["tasks"]] == [far]


@pytest.mark.asyncio
async def test_nearby_validates_coordinates(parties):
    c = parties["client"]
    resp = await c.get("/v1/tasks/nearby", params={"lat": 95, "lng": 0}, headers=auth_header(parties["tasker"]["key"]))
    assert resp.status_code == 400
    assert "lat" in resp.json()["error"]


def test_bounding_box_matches_distance_sphere():
    min_lat, max_lat, min_lng, max_lng = bounding_box(*AMSTERDAM, 10)
    north = great_circle(kilometers=10).destination(AMSTERDAM, 0)
    east = great_circle(kilometers=10).destination(AMSTERDAM, 90)
    assert north.latitude <= max_lat
    # The widest longitude lies slightly poleward of the due-east point
    assert east.longitude <= max_lng
    assert AMSTERDAM[1] - min_lng == pytest.approx(max_lng - AMSTERDAM[1])


@pytest.mark.asyncio
@pytest.mark.parametrize("bearing", [0, 90, 180, 270])
async def test_nearby_includes_tasks_just_inside_radius(parties, bearing):
    c = parties["client"]
    key = parties["requester"]["key"]
    inside = great_circle(kilometers=9.995).destination(AMSTERDAM, bearing)
    outside = great_circle(kilometers=10.005).destination(AMSTERDAM, bearing)
    edge = (await create_task(c, key, lat=inside.latitude, lng=inside.longitude))["task_id"]
    await create_task(c, key, lat=outside.latitude, lng=outside.longitude)

    resp = await _nearby(c, parties["tasker"]["key"], radius_km=10)
    assert [t["id"] for t in resp.json()["tasks"]] == [edge]


def test_grid_cell_floors_to_corner():
    assert grid_cell(*AMSTERDAM, 0.01) == (52.36, 4.9)
    assert grid_cell(*NEAR, 0.01) == (52.37, 4.9)
    assert grid_cell(-33.8688, 151.2093, 0.01) == (-33.87, 151.2)


@pytest.mark.asyncio
async def test_heatmap_buckets_posted_tasks(parties):
    c = parties["client"]
    requester, tasker = parties["requester"], parties["tasker"]
    await create_task(c, requester["key"], price=10000)
    await create_task(c, requester["key"], price=20000)
    # The viewer's own tasks count towards demand
    await create_task(c, tasker["key"], price=30000)
    await create_task(c, requester["key"], price=40000, lat=NEAR[0], lng=NEAR[1])
    await create_task(c, requester["key"], lat=FAR[0], lng=FAR[1])
    taken = (await create_task(c, requester["key"]))["task_id"]
    await c.post(f"/v1/tasks/{taken}/accept", headers=auth_header(parties["other"]["key"]))

    resp = await c.get(
        "/v1/tasks/heatmap",
        params={"lat": AMSTERDAM[0], "lng": AMSTERDAM[1], "radius_km": 5},
        headers=auth_header(tasker["key"]),
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_tasks"] == 4
    assert data["radius_km"] == 5
    assert data["cell_deg"] == 0.01
    assert data["zones"] == [
        {"lat": 52.36, "lng": 4.9, "count": 3, "total_value": 60000, "intensity": 3, "avg_price": 20000},
        {"lat": 52.37, "lng": 4.9, "count": 1, "total_value": 40000, "intensity": 1, "avg_price": 40000},
    ]


@pytest.mark.asyncio
async def test_heatmap_default_radius_and_validation(parties):
    c = parties["client"]
    key = parties["tasker"]["key"]
    await create_task(c, parties["requester"]["key"], lat=NEAR[0], lng=NEAR[1])
    await create_task(c, parties["requester"]["key"], lat=AMSTERDAM[0] + 0.135, lng=AMSTERDAM[1])

    resp = await c.get("/v1/tasks/heatmap", params={"lat": AMSTERDAM[0], "lng": AMSTERDAM[1]}, headers=auth_header(key))
    data = resp.json()
    assert data["radius_km"] == 10.0
    assert data["total_tasks"] == 1

    resp = await c.get("/v1/tasks/heatmap", params={"lat": 91, "lng": 0}, headers=auth_header(key))
    assert resp.status_code == 400
    resp = await c.get(
        "/v1/tasks/heatmap", params={"lat": 0, "lng": 0, "radius_km": 0}, headers=auth_header(key)
    )
    assert resp.status_code == 400
