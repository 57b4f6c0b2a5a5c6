"""Out-of-pocket expenses a tasker reports against a task."""

from __future__ import annotations

from fastapi import HTTPException
from sqlalchemy import text, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from errandly.db_models import ACTIVE_STATUSES, Expense, ExpenseStatus, TaskStatus, User
from errandly.events import Event, event_bus, task_channel, user_channel
from errandly.ids import expense_id as make_expense_id
from errandly.services.tasks import get_task_or_404, require_assignee, require_requester
from errandly.utils import iso, status_str, utcnow

_SUBMITTABLE = (*ACTIVE_STATUSES, TaskStatus.completed)


def expense_to_dict(expense: Expense) -> dict:
    return {
        "id": expense.id,
        "task_id": expense.task_id,
        "tasker_id": expense.tasker_id,
        "description": expense.description,
        "amount": expense.amount,
        "receipt_url": expense.receipt_url,
        "status": status_str(expense.status),
        "submitted_at": iso(expense.submitted_at),
        "reviewed_at": iso(expense.reviewed_at),
    }


async def submit_expense(
    session: AsyncSession,
    tid: str,
    tasker: User,
    description: str,
    amount: int,
    receipt_url: str | None = None,
) -> dict:
    task = await get_task_or_404(session, tid)
    require_assignee(task, tasker)
    if task.status not in _SUBMITTABLE:
        raise HTTPException(
            status_code=409, detail=f"Task is {status_str(task.status)}, expenses are closed"
        )
    if amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be positive")

    expense = Expense(
        id=make_expense_id(),
        task_id=tid,
        tasker_id=tasker.id,
        description=description,
        amount=amount,
        receipt_url=receipt_url,
    )
    session.add(expense)
    await session.commit()
    await session.refresh(expense)

    event_bus.publish_many(
        [task_channel(tid), user_channel(task.requester_id)],
        Event(type="expense_submitted", task_id=tid, data={"expense": expense_to_dict(expense)}),
    )
    return expense_to_dict(expense)


async def list_expenses(session: AsyncSession, tid: str, viewer: User) -> list[dict]:
    task = await get_task_or_404(session, tid)
    if viewer.id not in (task.requester_id, task.assigned_tasker_id):
        raise HTTPException(status_code=403, detail="Not your task")
    result = await session.execute(
        select(Expense).where(Expense.task_id == tid).order_by(col(Expense.submitted_at))
    )
    return [expense_to_dict(e) for e in result.scalars().all()]


async def review_expense(
    session: AsyncSession, tid: str, expense_id: str, requester: User, approve: bool
) -> dict:
    task = await get_task_or_404(session, tid)
    require_requester(task, requester)
    expense = await session.get(Expense, expense_id, populate_existing=True)
    if not expense or expense.task_id != tid:
        raise HTTPException(status_code=404, detail="Expense not found")

    new_status = ExpenseStatus.approved if approve else ExpenseStatus.rejected
    result = await session.execute(
        update(Expense)
        .where(col(Expense.id) == expense_id, col(Expense.status) == ExpenseStatus.pending)
        .values(status=new_status, reviewed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise HTTPException(
            status_code=409, detail=f"Expense is {status_str(expense.status)}, not pending"
        )
    if approve:
        await session.execute(
            text("UPDATE tasks SET total_expenses = total_expenses + :amount WHERE id = :id"),
            {"amount": expense.amount, "id": tid},
        )
    await session.commit()
    await session.refresh(expense)

    event_bus.to_user(
        expense.tasker_id,
        Event(type="expense_reviewed", task_id=tid, data={"expense": expense_to_dict(expense)}),
    )
    return expense_to_dict(expense)
