"""Geospatial matching: which posted tasks are near a tasker."""

from __future__ import annotations

import math

from fastapi import HTTPException
from geopy.distance import EARTH_RADIUS, great_circle
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from errandly.config import settings
from errandly.db_models import AllowedTier, Task, TaskStatus, User, UserTier
from errandly.services.platform import get_platform_settings

# Same sphere great_circle measures on
KM_PER_DEGREE_LAT = math.radians(1) * EARTH_RADIUS
# Float slack so points exactly on the circle survive the SQL comparison
BOX_MARGIN_DEG = 1e-6


def validate_coordinates(lat: float, lng: float) -> None:
    if not -90 <= lat <= 90:
        raise HTTPException(status_code=400, detail="lat must be between -90 and 90")
    if not -180 <= lng <= 180:
        raise HTTPException(status_code=400, detail="lng must be between -180 and 180")


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return great_circle((lat1, lng1), (lat2, lng2)).km


def bounding_box(lat: float, lng: float, radius_km: float) -> tuple[float, float, float, float] | None:
    """(min_lat, max_lat, min_lng, max_lng) enclosing the circle.

    Returns None when the box touches a pole or wraps the antimeridian; the
    caller then falls back to the exact distance check alone.
    """
    dlat = radius_km / KM_PER_DEGREE_LAT + BOX_MARGIN_DEG
    if abs(lat) + dlat >= 90:
        return None
    # Widest longitude spread of the circle, reached north or south of ``lat``
    angular = radius_km / EARTH_RADIUS
    spread = math.sin(angular) / math.cos(math.radians(lat))
    if spread >= 1:
        return None
    dlng = math.degrees(math.asin(spread)) + BOX_MARGIN_DEG
    if abs(lng) + dlng >= 180:
        return None
    return lat - dlat, lat + dlat, lng - dlng, lng + dlng


def visible_tiers(viewer: User) -> list[AllowedTier]:
    if viewer.tier == UserTier.pro:
        return [AllowedTier.all, AllowedTier.pro]
    return [AllowedTier.all]


async def find_nearby_tasks(
    session: AsyncSession,
    viewer: User,
    lat: float,
    lng: float,
    radius_km: float | None = None,
    limit: int | None = None,
) -> tuple[list[tuple[Task, float]], float]:
    """Posted tasks within ``radius_km`` of the point, nearest first.

    Excludes the viewer's own tasks and tasks restricted to a tier the viewer
    lacks. Returns ``(matches, radius_used)``.
    """
    validate_coordinates(lat, lng)
    if radius_km is None:
        radius_km = (await get_platform_settings(session)).default_radius_km
    limit = limit or settings.nearby_page_size

    matches = await _posted_within(
        session,
        lat,
        lng,
        radius_km,
        Task.requester_id != viewer.id,
        col(Task.allowed_tier).in_(visible_tiers(viewer)),
    )
    matches.sort(key=lambda m: (m[1], m[0].created_at))
    return matches[:limit], radius_km


async def _posted_within(
    session: AsyncSession, lat: float, lng: float, radius_km: float, *conditions
) -> list[tuple[Task, float]]:
    if radius_km <= 0:
        raise HTTPException(status_code=400, detail="radius_km must be positive")
    query = select(Task).where(Task.status == TaskStatus.posted, *conditions)
    box = bounding_box(lat, lng, radius_km)
    if box is not None:
        min_lat, max_lat, min_lng, max_lng = box
        query = query.where(
            col(Task.lat).between(min_lat, max_lat),
            col(Task.lng).between(min_lng, max_lng),
        )

    result = await session.execute(query)
    matches = []
    for task in result.scalars().all():
        dist = distance_km(lat, lng, task.lat, task.lng)
        if dist <= radius_km:
            matches.append((task, dist))
    return matches


def grid_cell(lat: float, lng: float, cell_deg: float) -> tuple[float, float]:
    """South-west corner of the grid cell holding the point."""
    return (
        round(math.floor(lat / cell_deg) * cell_deg, 6),
        round(math.floor(lng / cell_deg) * cell_deg, 6),
    )


async def demand_heatmap(
    session: AsyncSession, lat: float, lng: float, radius_km: float | None = None
) -> dict:
    """Posted tasks around a point, bucketed into grid cells, busiest first.

    Every posted task counts, whoever posted it, so taskers can see where
    demand is.
    """
    validate_coordinates(lat, lng)
    radius_km = radius_km or settings.heatmap_radius_km
    cell_deg = settings.heatmap_cell_deg
    matches = await _posted_within(session, lat, lng, radius_km)

    cells: dict[tuple[float, float], dict] = {}
    for task, _ in matches:
        key = grid_cell(task.lat, task.lng, cell_deg)
        zone = cells.setdefault(key, {"lat": key[0], "lng": key[1], "count": 0, "total_value": 0})
        zone["count"] += 1
        zone["total_value"] += task.price

    zones = []
    for zone in cells.values():
        zone["intensity"] = zone["count"]
        zone["avg_price"] = round(zone["total_value"] / zone["count"])
        zones.append(zone)
    zones.sort(key=lambda z: (-z["intensity"], -z["total_value"], z["lat"], z["lng"]))
    return {"zones": zones, "total_tasks": len(matches), "radius_km": radius_km, "cell_deg": cell_deg}
