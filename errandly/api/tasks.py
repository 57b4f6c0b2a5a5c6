"""Task lifecycle routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from errandly.auth import AuthUser, verify_admin_key
from errandly.config import settings
from errandly.content import parse_model, render_response, render_task_result
from errandly.database import get_db_session
from errandly.db_models import User
from errandly.geo import demand_heatmap, find_nearby_tasks
from errandly.models import (
    CompleteRequest,
    ErrorResponse,
    LocationRequest,
    NearbyResponse,
    TaskCreateRequest,
    TaskCreateResponse,
    TaskResponse,
    TaskUpdateRequest,
)
from errandly.rate_limit import limiter
from errandly.services.tasks import (
    accept_task,
    approve_task,
    complete_task,
    create_task,
    delete_task,
    fund_task,
    get_task,
    list_my_tasks,
    refund_task,
    reject_task,
    share_location,
    start_task,
    task_to_dict,
    update_task,
)

router = APIRouter()

_CONFLICT = {409: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}}


@router.post(
    "/v1/tasks",
    response_model=TaskCreateResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_create)
async def post_task(request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    """Post a task. The price is held in escrow until you approve the work."""
    req = await parse_model(request, TaskCreateRequest)
    recurring = req.recurring_config.model_dump() if req.recurring_config else None
    result = await create_task(
        session,
        user,
        title=req.title,
        price=req.price,
        lat=req.lat,
        lng=req.lng,
        category_id=req.category_id,
        category_name=req.category_name,
        description=req.description,
        duration_min=req.duration_min,
        required_skills=req.required_skills,
        bidding_enabled=req.bidding_enabled,
        quick_accept=req.quick_accept,
        allowed_tier=req.allowed_tier,
        radius_km=req.radius_km,
        scheduled_for=req.scheduled_for,
        bid_window_hours=req.bid_window_hours,
        recurring=recurring,
    )
    return render_response(
        request,
        result,
        status_code=201,
        headers={"X-Task-Id": result["task_id"], "X-Status": result["status"]},
    )


@router.get("/v1/tasks/nearby", response_model=NearbyResponse, responses={400: {"model": ErrorResponse}})
@limiter.limit(settings.rate_limit_read)
async def nearby_tasks(
    request: Request,
    user: User = AuthUser,
    session=Depends(get_db_session),
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float | None = Query(None, gt=0, le=100),
):
    """Posted tasks near a point, nearest first."""
    matches, radius = await find_nearby_tasks(session, user, lat, lng, radius_km)
    tasks = [task_to_dict(task, distance) for task, distance in matches]
    return render_response(request, {"tasks": tasks, "total": len(tasks), "radius_km": radius})


@router.get("/v1/tasks/heatmap", responses={400: {"model": ErrorResponse}})
@limiter.limit(settings.rate_limit_read)
async def heatmap(
    request: Request,
    user: User = AuthUser,
    session=Depends(get_db_session),
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float | None = Query(None, gt=0, le=100),
):
    """Where posted tasks cluster around a point, busiest grid cell first."""
    result = await demand_heatmap(session, lat, lng, radius_km)
    return render_response(request, result)


@router.get("/v1/tasks/mine", responses={400: {"model": ErrorResponse}})
@limiter.limit(settings.rate_limit_read)
async def my_tasks(
    request: Request,
    user: User = AuthUser,
    session=Depends(get_db_session),
    role: str | None = None,
    status: str | None = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Tasks you posted or are assigned to."""
    tasks, total = await list_my_tasks(session, user, role=role, status=status, offset=offset, limit=limit)
    return render_response(request, {"tasks": tasks, "total": total})


@router.get("/v1/tasks/{task_id}", response_model=TaskResponse, responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.rate_limit_read)
async def task_detail(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    task = await get_task(session, task_id, user)
    return render_task_result(request, task)


@router.put("/v1/tasks/{task_id}", response_model=TaskResponse, responses=_CONFLICT)
@limiter.limit(settings.rate_limit_action)
async def edit_task(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    """Edit title, description, price, duration, radius or skills while posted."""
    req = await parse_model(request, TaskUpdateRequest)
    task = await update_task(session, task_id, user, **req.model_dump(exclude_none=True))
    return render_task_result(request, task)


@router.delete("/v1/tasks/{task_id}", responses=_CONFLICT)
@limiter.limit(settings.rate_limit_action)
async def remove_task(
    task_id: str,
    request: Request,
    user: User = AuthUser,
    session=Depends(get_db_session),
    repost: bool = True,
):
    """Delete a posted task, or cancel an accepted one (reposting it by default)."""
    result = await delete_task(session, task_id, user, repost=repost)
    return render_response(request, result)


@router.post("/v1/tasks/{task_id}/accept", response_model=TaskResponse, responses=_CONFLICT)
@limiter.limit(settings.rate_limit_accept)
async def accept(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    """Quick-accept a posted task. 409 if someone else got it first."""
    task = await accept_task(session, task_id, user)
    return render_task_result(request, task)


@router.post("/v1/tasks/{task_id}/start", response_model=TaskResponse, responses=_CONFLICT)
@limiter.limit(settings.rate_limit_action)
async def start(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    task = await start_task(session, task_id, user)
    return render_task_result(request, task)


@router.post("/v1/tasks/{task_id}/complete", response_model=TaskResponse, responses=_CONFLICT)
@limiter.limit(settings.rate_limit_action)
async def complete(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    req = await parse_model(request, CompleteRequest)
    task = await complete_task(session, task_id, user, proof_url=req.proof_url)
    return render_task_result(request, task)


@router.post(
    "/v1/tasks/{task_id}/approve",
    response_model=TaskResponse,
    responses={**_CONFLICT, 502: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_action)
async def approve(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    """Approve completed work: capture escrow and pay the tasker."""
    task = await approve_task(session, task_id, user)
    return render_task_result(request, task)


@router.post("/v1/tasks/{task_id}/reject", response_model=TaskResponse, responses=_CONFLICT)
@limiter.limit(settings.rate_limit_action)
async def reject(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    """Hand an accepted task back. It is reposted and the hold refunded."""
    task = await reject_task(session, task_id, user)
    return render_task_result(request, task)


@router.post(
    "/v1/tasks/{task_id}/fund",
    response_model=TaskResponse,
    responses={**_CONFLICT, 502: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_action)
async def fund(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    """Re-open escrow on a reposted task so it can be accepted again."""
    task = await fund_task(session, task_id, user)
    return render_task_result(request, task)


@router.post(
    "/v1/tasks/{task_id}/refund",
    response_model=TaskResponse,
    responses=_CONFLICT,
    dependencies=[Depends(verify_admin_key)],
)
@limiter.limit(settings.rate_limit_admin)
async def refund(task_id: str, request: Request, session=Depends(get_db_session)):
    """Admin: resolve a dispute on a completed task by refunding the requester."""
    task = await refund_task(session, task_id)
    return render_task_result(request, task)


@router.post("/v1/tasks/{task_id}/location", responses=_CONFLICT)
@limiter.limit(settings.rate_limit_action)
async def location(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    """Share your live position with the requester while working."""
    req = await parse_model(request, LocationRequest)
    result = await share_location(session, task_id, user, req.lat, req.lng, req.heading)
    return render_response(request, result)
