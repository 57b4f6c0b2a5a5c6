"""Task expense routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from errandly.auth import AuthUser
from errandly.config import settings
from errandly.content import parse_model, render_response
from errandly.database import get_db_session
from errandly.db_models import User
from errandly.models import ErrorResponse, ExpenseCreateRequest, ExpenseReviewRequest
from errandly.rate_limit import limiter
from errandly.services.expenses import list_expenses, review_expense, submit_expense

router = APIRouter()

_ERRORS = {403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}


@router.post("/v1/tasks/{task_id}/expense", status_code=201, responses=_ERRORS)
@limiter.limit(settings.rate_limit_action)
async def add_expense(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    req = await parse_model(request, ExpenseCreateRequest)
    expense = await submit_expense(
        session, task_id, user, req.description, req.amount, receipt_url=req.receipt_url
    )
    return render_response(request, expense, status_code=201)


@router.get("/v1/tasks/{task_id}/expenses", responses=_ERRORS)
@limiter.limit(settings.rate_limit_read)
async def expenses_for_task(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    expenses = await list_expenses(session, task_id, user)
    return render_response(request, {"expenses": expenses, "total": len(expenses)})


@router.post("/v1/tasks/{task_id}/expense/{expense_id}/review", responses=_ERRORS)
@limiter.limit(settings.rate_limit_action)
async def review(
    task_id: str, expense_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)
):
    req = await parse_model(request, ExpenseReviewRequest)
    expense = await review_expense(session, task_id, expense_id, user, approve=req.status == "approved")
    return render_response(request, expense)
