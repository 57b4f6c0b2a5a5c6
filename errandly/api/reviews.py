"""Review routes: rate the other party of a paid task."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from errandly.auth import AuthUser
from errandly.config import settings
from errandly.content import parse_model, render_response
from errandly.database import get_db_session
from errandly.db_models import User
from errandly.models import ErrorResponse, ReviewCreateRequest, ReviewResponse
from errandly.rate_limit import limiter
from errandly.services.reviews import list_reviews, submit_review

router = APIRouter()

_ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


@router.post("/v1/tasks/{task_id}/review", response_model=ReviewResponse, status_code=201, responses=_ERRORS)
@limiter.limit(settings.rate_limit_review)
async def review_task(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    """Rate the other party once the task is paid. One review per party."""
    req = await parse_model(request, ReviewCreateRequest)
    review = await submit_review(session, task_id, user, req.rating, req.comment)
    return render_response(request, review, status_code=201)


@router.get("/v1/users/{user_id}/reviews", responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.rate_limit_read)
async def user_reviews(
    user_id: str,
    request: Request,
    user: User = AuthUser,
    session=Depends(get_db_session),
    limit: int = Query(settings.review_page_size, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Reviews a user received, newest first, with their rating average."""
    result = await list_reviews(session, user_id, offset=offset, limit=limit)
    return render_response(request, result)
