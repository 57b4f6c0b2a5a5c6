"""Task lifecycle service: posting, acceptance, work, payout and reclamation.

Every status change is a single conditional UPDATE guarded by the expected
current status; the rowcount tells the caller whether it won. Nothing here
holds a lock across an await.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from fastapi import HTTPException
from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from errandly.config import settings
from errandly.db_models import (
    ACTIVE_STATUSES,
    AllowedTier,
    Expense,
    Frequency,
    Offer,
    OfferStatus,
    Task,
    TaskStatus,
    Transaction,
    TransactionStatus,
    User,
    UserTier,
)
from errandly.escrow import EscrowError, compute_fee, get_gateway, refund_quietly
from errandly.events import BROADCAST, Event, event_bus, task_channel, user_channel
from errandly.geo import validate_coordinates
from errandly.ids import task_id as make_task_id
from errandly.ids import transaction_id
from errandly.recurrence import next_occurrence, parse_time_of_day
from errandly.services.payouts import award_loyalty, refresh_rewards_level, settle_payout
from errandly.services.platform import get_platform_settings, validate_category_price
from errandly.utils import as_utc, iso, safe_json_loads, status_str, utcnow

logger = logging.getLogger("errandly.tasks")

TAKEN_DETAIL = "This task was just taken by someone else"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def task_to_dict(task: Task, distance_km: float | None = None) -> dict:
    data = {
        "id": task.id,
        "requester_id": task.requester_id,
        "assigned_tasker_id": task.assigned_tasker_id,
        "title": task.title,
        "description": task.description,
        "category_id": task.category_id,
        "category_name": task.category_name,
        "price": task.price,
        "duration_min": task.duration_min,
        "required_skills": safe_json_loads(task.required_skills, []),
        "bidding_enabled": task.bidding_enabled,
        "quick_accept": task.quick_accept,
        "allowed_tier": status_str(task.allowed_tier),
        "lat": task.lat,
        "lng": task.lng,
        "radius_km": task.radius_km,
        "status": status_str(task.status),
        "escrow_held": task.escrow_held,
        "proof_url": task.proof_url,
        "total_expenses": task.total_expenses,
        "is_scheduled": task.is_scheduled,
        "scheduled_for": iso(task.scheduled_for),
        "bid_window_ends_at": iso(task.bid_window_ends_at),
        "is_recurring": task.is_recurring,
        "recurring_config": None,
        "parent_task_id": task.parent_task_id,
        "created_at": iso(task.created_at),
        "accepted_at": iso(task.accepted_at),
        "started_at": iso(task.started_at),
        "completed_at": iso(task.completed_at),
    }
    if task.is_recurring:
        data["recurring_config"] = {
            "frequency": status_str(task.recur_frequency),
            "day_of_week": task.recur_day_of_week,
            "time_of_day": task.recur_time_of_day,
            "end_date": iso(task.recur_end_date),
            "next_occurrence": iso(task.next_occurrence),
        }
    if distance_km is not None:
        data["distance_km"] = round(distance_km, 3)
    return data


async def get_task_or_404(session: AsyncSession, task_id: str) -> Task:
    task = await session.get(Task, task_id, populate_existing=True)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


async def _cas(session: AsyncSession, tid: str, expected, *conditions, **values) -> bool:
    """Conditional update: apply ``values`` only if status is in ``expected``."""
    if isinstance(expected, TaskStatus):
        expected = (expected,)
    result = await session.execute(
        update(Task)
        .where(col(Task.id) == tid, col(Task.status).in_(expected), *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def _get_transaction(session: AsyncSession, tid: str) -> Transaction | None:
    result = await session.execute(select(Transaction).where(Transaction.task_id == tid))
    return result.scalar_one_or_none()


async def set_transaction(session: AsyncSession, tid: str, status: TransactionStatus, **values) -> None:
    txn = await _get_transaction(session, tid)
    if txn is None:
        logger.warning("No transaction row for task %s", tid)
        return
    txn.status = status
    for key, value in values.items():
        setattr(txn, key, value)
    txn.updated_at = utcnow()
    session.add(txn)


async def open_hold(amount: int, tid: str, requester_id: str, idempotency_key: str | None = None) -> str:
    try:
        record = await get_gateway().hold(
            amount,
            metadata={"task_id": tid, "requester_id": requester_id},
            idempotency_key=idempotency_key,
        )
    except EscrowError as e:
        logger.error("Escrow hold failed for task %s: %s", tid, e)
        raise HTTPException(status_code=502, detail=f"Payment hold failed: {e}") from e
    return record.ref


def _notify(task: Task, event: Event, *user_ids: str | None) -> None:
    channels = [task_channel(task.id)] + [user_channel(uid) for uid in user_ids if uid]
    event_bus.publish_many(channels, event)


def publish_task_posted(task: Task) -> None:
    event_bus.publish(
        BROADCAST,
        Event(
            type="task_posted",
            task_id=task.id,
            data={
                "id": task.id,
                "title": task.title,
                "price": task.price,
                "lat": task.lat,
                "lng": task.lng,
                "category_id": task.category_id,
                "allowed_tier": status_str(task.allowed_tier),
            },
        ),
    )


def check_tier(task: Task, user: User) -> None:
    if task.allowed_tier == AllowedTier.pro and user.tier != UserTier.pro:
        raise HTTPException(status_code=403, detail="This task is restricted to pro taskers")


def require_requester(task: Task, user: User) -> None:
    if task.requester_id != user.id:
        raise HTTPException(status_code=403, detail="Not your task")


def require_assignee(task: Task, user: User) -> None:
    if task.assigned_tasker_id != user.id:
        raise HTTPException(status_code=403, detail="You are not assigned to this task")


# ---------------------------------------------------------------------------
# Posting
# ---------------------------------------------------------------------------


def _validate_recurring(recurring: dict) -> tuple[Frequency, str, int | None, datetime | None]:
    frequency = recurring.get("frequency")
    time_of_day = recurring.get("time_of_day")
    if not frequency or not time_of_day:
        raise HTTPException(status_code=400, detail="Recurring tasks need frequency and time_of_day")
    try:
        frequency = Frequency(frequency)
        parse_time_of_day(time_of_day)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    day_of_week = recurring.get("day_of_week")
    if frequency in (Frequency.weekly, Frequency.biweekly) and day_of_week is None:
        raise HTTPException(status_code=400, detail="day_of_week is required for weekly schedules")
    return frequency, time_of_day, day_of_week, as_utc(recurring.get("end_date"))


async def create_task(
    session: AsyncSession,
    requester: User,
    title: str,
    price: int,
    lat: float,
    lng: float,
    category_id: str,
    category_name: str | None = None,
    description: str | None = None,
    duration_min: int | None = None,
    required_skills: list[str] | None = None,
    bidding_enabled: bool = False,
    quick_accept: bool = True,
    allowed_tier: AllowedTier | str = AllowedTier.all,
    radius_km: float | None = None,
    scheduled_for: datetime | None = None,
    bid_window_hours: float | None = None,
    recurring: dict | None = None,
) -> dict:
    """Validate, hold escrow for the price, then insert the task and its transaction."""
    if not title or not title.strip():
        raise HTTPException(status_code=400, detail="title is required")
    if not isinstance(price, int) or isinstance(price, bool) or price <= 0:
        raise HTTPException(status_code=400, detail="price must be a positive integer")
    if not bidding_enabled and not quick_accept:
        raise HTTPException(status_code=400, detail="Enable quick_accept, bidding, or both")
    validate_coordinates(lat, lng)
    try:
        allowed_tier = AllowedTier(allowed_tier)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid allowed_tier: {allowed_tier}") from e
    await validate_category_price(session, category_id, price, category_name)

    now = utcnow()
    scheduled_for = as_utc(scheduled_for)
    bid_window_ends_at = None
    if scheduled_for is not None:
        if scheduled_for <= now:
            raise HTTPException(status_code=400, detail="scheduled_for must be in the future")
        if bidding_enabled:
            hours = settings.bid_window_hours if bid_window_hours is None else bid_window_hours
            bid_window_ends_at = scheduled_for - timedelta(hours=hours)

    recur_fields: dict = {}
    if recurring:
        frequency, time_of_day, day_of_week, end_date = _validate_recurring(recurring)
        recur_fields = {
            "is_recurring": True,
            "recur_frequency": frequency,
            "recur_time_of_day": time_of_day,
            "recur_day_of_week": day_of_week,
            "recur_end_date": end_date,
            "next_occurrence": next_occurrence(
                frequency, time_of_day, day_of_week, after=scheduled_for or now
            ),
        }

    tid = make_task_id()
    ref = await open_hold(price, tid, requester.id, idempotency_key=tid)
    try:
        platform = await get_platform_settings(session)
        fee, _ = compute_fee(price, platform.platform_fee_pct)
        task = Task(
            id=tid,
            requester_id=requester.id,
            title=title.strip(),
            description=description,
            category_id=category_id,
            category_name=category_name,
            price=price,
            duration_min=duration_min,
            required_skills=json.dumps(required_skills) if required_skills else None,
            bidding_enabled=bidding_enabled,
            quick_accept=quick_accept,
            allowed_tier=allowed_tier,
            lat=lat,
            lng=lng,
            radius_km=radius_km,
            escrow_ref=ref,
            escrow_held=True,
            is_scheduled=scheduled_for is not None,
            scheduled_for=scheduled_for,
            bid_window_ends_at=bid_window_ends_at,
            **recur_fields,
        )
        session.add(task)
        # Flush so the task row exists for the transaction FK
        await session.flush()
        session.add(
            Transaction(
                id=transaction_id(),
                task_id=tid,
                amount=price,
                platform_fee=fee,
                status=TransactionStatus.held,
                provider_ref=ref,
            )
        )
        await session.commit()
    except Exception:
        await session.rollback()
        await refund_quietly(ref, task_id=tid)
        raise

    publish_task_posted(task)
    logger.info("Task %s posted by %s for %d", tid, requester.id, price)
    return {
        "task_id": tid,
        "status": "posted",
        "escrow_ref": ref,
        "is_scheduled": task.is_scheduled,
        "scheduled_for": iso(task.scheduled_for),
        "bid_window_ends_at": iso(task.bid_window_ends_at),
    }


async def get_task(session: AsyncSession, tid: str, viewer: User) -> dict:
    """Parties see their task in any state; anyone else only while it is posted."""
    task = await get_task_or_404(session, tid)
    is_party = viewer.id in (task.requester_id, task.assigned_tasker_id)
    if not is_party and task.status != TaskStatus.posted:
        raise HTTPException(status_code=404, detail="Task not found")
    return task_to_dict(task)


_VALID_ROLES = {"requester", "tasker"}
_VALID_STATUSES = {s.value for s in TaskStatus}


async def list_my_tasks(
    session: AsyncSession,
    user: User,
    role: str | None = None,
    status: str | None = None,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[dict], int]:
    if role and role not in _VALID_ROLES:
        raise HTTPException(status_code=400, detail=f"Invalid role, use one of {sorted(_VALID_ROLES)}")
    if status and status not in _VALID_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

    if role == "requester":
        conditions = [Task.requester_id == user.id]
    elif role == "tasker":
        conditions = [Task.assigned_tasker_id == user.id]
    else:
        conditions = [(Task.requester_id == user.id) | (Task.assigned_tasker_id == user.id)]
    if status:
        conditions.append(Task.status == TaskStatus(status))

    count_result = await session.execute(select(func.count()).select_from(Task).where(*conditions))
    total = count_result.scalar_one()

    result = await session.execute(
        select(Task)
        .where(*conditions)
        .order_by(col(Task.created_at).desc(), col(Task.id))
        .offset(offset)
        .limit(limit)
    )
    return [task_to_dict(t) for t in result.scalars().all()], total


# ---------------------------------------------------------------------------
# Acceptance
# ---------------------------------------------------------------------------


async def assign_tasker(
    session: AsyncSession,
    task: Task,
    tasker_id: str,
    price: int | None = None,
    escrow_ref: str | None = None,
) -> bool:
    """Claim a posted, funded task for ``tasker_id``. Caller commits.

    A new ``price`` or ``escrow_ref`` only applies if the task still has the
    price and hold it was loaded with. Returns False if another caller got
    there first.
    """
    values = {
        "status": TaskStatus.accepted,
        "assigned_tasker_id": tasker_id,
        "accepted_at": utcnow(),
    }
    conditions = [col(Task.escrow_held) == True]  # noqa: E712
    if price is not None:
        values["price"] = price
        conditions.append(col(Task.price) == task.price)
    if escrow_ref is not None:
        values["escrow_ref"] = escrow_ref
        conditions.append(col(Task.escrow_ref) == task.escrow_ref)
    won = await _cas(session, task.id, TaskStatus.posted, *conditions, **values)
    if won:
        await session.refresh(task)
    return won


async def reject_pending_offers(session: AsyncSession, tid: str, keep_offer_id: str | None = None) -> list[Offer]:
    query = select(Offer).where(Offer.task_id == tid, Offer.status == OfferStatus.pending)
    if keep_offer_id:
        query = query.where(Offer.id != keep_offer_id)
    result = await session.execute(query)
    offers = list(result.scalars().all())
    for offer in offers:
        offer.status = OfferStatus.rejected
        session.add(offer)
    return offers


def publish_offer_rejections(task: Task, offers: list[Offer]) -> None:
    for offer in offers:
        event_bus.to_user(
            offer.tasker_id,
            Event(
                type="offer_rejected",
                task_id=task.id,
                data={"offer": {"id": offer.id, "proposed_price": offer.proposed_price}},
            ),
        )


def publish_task_assigned(task: Task) -> None:
    _notify(
        task,
        Event(
            type="task_assigned",
            task_id=task.id,
            data={"assigned_tasker_id": task.assigned_tasker_id, "price": task.price},
        ),
        task.requester_id,
        task.assigned_tasker_id,
    )


async def accept_task(session: AsyncSession, tid: str, tasker: User) -> dict:
    """Quick-accept: exactly one concurrent caller wins."""
    task = await get_task_or_404(session, tid)
    if task.requester_id == tasker.id:
        raise HTTPException(status_code=403, detail="Cannot accept your own task")
    check_tier(task, tasker)
    status = status_str(task.status)
    if task.status != TaskStatus.posted:
        raise HTTPException(status_code=409, detail=f"Task is {status}, not posted")
    if task.bidding_enabled and not task.quick_accept:
        raise HTTPException(status_code=400, detail="This task takes offers only, submit an offer")
    if not task.escrow_held:
        raise HTTPException(status_code=409, detail="Task is awaiting escrow funding")

    if not await assign_tasker(session, task, tasker.id):
        raise HTTPException(status_code=409, detail=TAKEN_DETAIL)

    rejected = await reject_pending_offers(session, tid)
    await session.commit()

    publish_task_assigned(task)
    publish_offer_rejections(task, rejected)
    logger.info("Task %s accepted by %s", tid, tasker.id)
    return task_to_dict(task)


# ---------------------------------------------------------------------------
# Work
# ---------------------------------------------------------------------------


async def start_task(session: AsyncSession, tid: str, tasker: User) -> dict:
    task = await get_task_or_404(session, tid)
    require_assignee(task, tasker)
    started = await _cas(
        session,
        tid,
        TaskStatus.accepted,
        col(Task.assigned_tasker_id) == tasker.id,
        status=TaskStatus.in_progress,
        started_at=utcnow(),
    )
    if not started:
        raise HTTPException(status_code=409, detail=f"Task is {status_str(task.status)}, not accepted")
    await session.commit()
    await session.refresh(task)

    _notify(task, Event(type="task_started", task_id=tid), task.requester_id)
    return task_to_dict(task)


async def complete_task(session: AsyncSession, tid: str, tasker: User, proof_url: str | None = None) -> dict:
    task = await get_task_or_404(session, tid)
    require_assignee(task, tasker)
    values = {"status": TaskStatus.completed, "completed_at": utcnow()}
    if proof_url:
        values["proof_url"] = proof_url
    completed = await _cas(
        session, tid, TaskStatus.in_progress, col(Task.assigned_tasker_id) == tasker.id, **values
    )
    if not completed:
        raise HTTPException(status_code=409, detail=f"Task is {status_str(task.status)}, not in_progress")
    await session.commit()
    await session.refresh(task)

    _notify(
        task,
        Event(type="task_completed", task_id=tid, data={"proof_url": task.proof_url}),
        task.requester_id,
    )
    return task_to_dict(task)


async def approve_task(session: AsyncSession, tid: str, requester: User) -> dict:
    """Capture the hold, mark paid and credit the tasker.

    Capture happens before the local transition: if the provider fails, the
    task stays completed and the requester can retry.
    """
    task = await get_task_or_404(session, tid)
    require_requester(task, requester)
    if task.status != TaskStatus.completed:
        raise HTTPException(status_code=409, detail=f"Task is {status_str(task.status)}, not completed")
    if not task.escrow_ref:
        raise HTTPException(status_code=409, detail="Task has no escrow hold to capture")

    try:
        await get_gateway().capture(task.escrow_ref)
    except EscrowError as e:
        logger.error("Capture failed for task %s: %s", tid, e)
        raise HTTPException(status_code=502, detail=f"Payment capture failed: {e}") from e

    paid = await _cas(session, tid, TaskStatus.completed, status=TaskStatus.paid, escrow_held=False)
    if not paid:
        # Capture is idempotent, so a concurrent approver already settled it
        raise HTTPException(status_code=409, detail="Task was already approved")
    await session.refresh(task)

    tasker_id = task.assigned_tasker_id
    fee, payout = await settle_payout(session, tid, tasker_id, task.price)
    await award_loyalty(session, task.price, task.requester_id, tasker_id)
    await refresh_rewards_level(session, tasker_id)
    await refresh_rewards_level(session, task.requester_id)
    await set_transaction(session, tid, TransactionStatus.released, platform_fee=fee)
    await session.commit()

    _notify(
        task,
        Event(type="task_paid", task_id=tid, data={"tasker_id": tasker_id, "payout": payout}),
        task.requester_id,
        tasker_id,
    )
    result = task_to_dict(task)
    result.update({"platform_fee": fee, "payout": payout})
    return result


# ---------------------------------------------------------------------------
# Reclamation
# ---------------------------------------------------------------------------


async def reclaim_task(
    session: AsyncSession,
    task: Task,
    *,
    auto: bool,
    reason: str,
    accepted_before: datetime | None = None,
) -> bool:
    """Return an accepted or in-progress task to the pool.

    The assignment and escrow flag are cleared in one conditional update;
    the old hold is refunded after commit and a refund failure is only
    logged. The requester funds the reposted task again before anyone can
    accept it. Returns False if the task had already moved on.
    """
    old_ref = task.escrow_ref
    old_tasker = task.assigned_tasker_id
    conditions = [col(Task.assigned_tasker_id) == old_tasker]
    if accepted_before is not None:
        conditions.append(col(Task.accepted_at) <= accepted_before)

    reclaimed = await _cas(
        session,
        task.id,
        ACTIVE_STATUSES,
        *conditions,
        status=TaskStatus.posted,
        assigned_tasker_id=None,
        accepted_at=None,
        started_at=None,
        escrow_ref=None,
        escrow_held=False,
    )
    if not reclaimed:
        return False

    await session.execute(
        update(Offer)
        .where(col(Offer.task_id) == task.id, col(Offer.status) == OfferStatus.accepted)
        .values(status=OfferStatus.rejected)
        .execution_options(synchronize_session=False)
    )
    await set_transaction(session, task.id, TransactionStatus.refunded)
    await session.commit()
    await session.refresh(task)

    await refund_quietly(old_ref, task_id=task.id)

    _notify(
        task,
        Event(
            type="task_cancelled",
            task_id=task.id,
            data={"reposted": True, "auto": auto, "reason": reason},
        ),
        task.requester_id,
        old_tasker,
    )
    publish_task_posted(task)
    logger.info("Task %s reclaimed from %s (%s)", task.id, old_tasker, reason)
    return True


async def reject_task(session: AsyncSession, tid: str, tasker: User) -> dict:
    """Tasker hands the task back; it is reposted and the hold refunded."""
    task = await get_task_or_404(session, tid)
    if task.status not in ACTIVE_STATUSES:
        raise HTTPException(
            status_code=409, detail=f"Task is {status_str(task.status)}, cannot be rejected"
        )
    require_assignee(task, tasker)
    if not await reclaim_task(session, task, auto=False, reason="rejected_by_tasker"):
        raise HTTPException(status_code=409, detail="Task already changed status")
    return task_to_dict(task)


async def fund_task(session: AsyncSession, tid: str, requester: User) -> dict:
    """Open a fresh hold for a reposted task so it can be accepted again."""
    task = await get_task_or_404(session, tid)
    require_requester(task, requester)
    if task.status != TaskStatus.posted:
        raise HTTPException(status_code=409, detail=f"Task is {status_str(task.status)}, not posted")
    if task.escrow_held:
        raise HTTPException(status_code=409, detail="Task is already funded")

    ref = await open_hold(task.price, tid, requester.id)
    funded = await _cas(
        session,
        tid,
        TaskStatus.posted,
        col(Task.escrow_held) == False,  # noqa: E712
        escrow_ref=ref,
        escrow_held=True,
    )
    if not funded:
        await session.rollback()
        await refund_quietly(ref, task_id=tid)
        raise HTTPException(status_code=409, detail="Task already changed status")
    await set_transaction(session, tid, TransactionStatus.held, provider_ref=ref, amount=task.price)
    await session.commit()
    await session.refresh(task)

    publish_task_posted(task)
    return task_to_dict(task)


async def purge_task(session: AsyncSession, tid: str) -> None:
    """Hard-delete a task and its dependent rows. Caller commits."""
    await session.execute(delete(Expense).where(col(Expense.task_id) == tid))
    await session.execute(delete(Offer).where(col(Offer.task_id) == tid))
    await session.execute(delete(Transaction).where(col(Transaction.task_id) == tid))
    await session.execute(delete(Task).where(col(Task.id) == tid))


async def _cancel_and_purge(session: AsyncSession, task: Task, expected) -> None:
    old_ref = task.escrow_ref
    old_tasker = task.assigned_tasker_id
    if not await _cas(session, task.id, expected, status=TaskStatus.cancelled, escrow_held=False):
        raise HTTPException(status_code=409, detail="Task already changed status")
    await purge_task(session, task.id)
    await session.commit()
    await refund_quietly(old_ref, task_id=task.id)
    _notify(
        task,
        Event(type="task_cancelled", task_id=task.id, data={"reposted": False, "auto": False}),
        old_tasker,
    )


async def delete_task(session: AsyncSession, tid: str, requester: User, repost: bool = True) -> dict:
    """Delete, cancel or repost depending on where the task is."""
    task = await get_task_or_404(session, tid)
    require_requester(task, requester)

    if task.status == TaskStatus.posted:
        await _cancel_and_purge(session, task, TaskStatus.posted)
        return {"id": tid, "deleted": True, "reposted": False}

    if task.status in ACTIVE_STATUSES:
        if repost:
            if not await reclaim_task(session, task, auto=False, reason="cancelled_by_requester"):
                raise HTTPException(status_code=409, detail="Task already changed status")
            return {"id": tid, "deleted": False, "reposted": True, "task": task_to_dict(task)}
        await _cancel_and_purge(session, task, ACTIVE_STATUSES)
        return {"id": tid, "deleted": True, "reposted": False}

    if task.status == TaskStatus.completed:
        raise HTTPException(
            status_code=409, detail="Task is completed, approve it or ask for a refund instead"
        )

    # paid, refunded or cancelled: nothing left to settle
    await purge_task(session, tid)
    await session.commit()
    return {"id": tid, "deleted": True, "reposted": False}


_EDITABLE_FIELDS = {"title", "description", "price", "duration_min", "radius_km", "required_skills"}


async def update_task(session: AsyncSession, tid: str, requester: User, **fields) -> dict:
    """Edit a task while it is still posted."""
    task = await get_task_or_404(session, tid)
    require_requester(task, requester)
    if task.status != TaskStatus.posted:
        raise HTTPException(status_code=409, detail=f"Task is {status_str(task.status)}, can only edit posted tasks")

    values = {k: v for k, v in fields.items() if k in _EDITABLE_FIELDS and v is not None}
    if "title" in values and not values["title"].strip():
        raise HTTPException(status_code=400, detail="title cannot be empty")
    if "required_skills" in values:
        values["required_skills"] = json.dumps(values["required_skills"])

    new_ref = None
    old_ref = task.escrow_ref
    price_changed = "price" in values and values["price"] != task.price
    if price_changed:
        await validate_category_price(session, task.category_id, values["price"], task.category_name)
        if task.escrow_held:
            new_ref = await open_hold(values["price"], tid, requester.id)
            values["escrow_ref"] = new_ref

    if not values:
        return task_to_dict(task)

    guard = [col(Task.escrow_held) == task.escrow_held]
    if not await _cas(session, tid, TaskStatus.posted, *guard, **values):
        await session.rollback()
        await refund_quietly(new_ref, task_id=tid)
        raise HTTPException(status_code=409, detail="Task already changed status")
    if price_changed:
        txn = await _get_transaction(session, tid)
        if txn is not None:
            txn.amount = values["price"]
            if new_ref:
                txn.provider_ref = new_ref
            txn.updated_at = utcnow()
            session.add(txn)
    await session.commit()
    await session.refresh(task)

    if new_ref:
        await refund_quietly(old_ref, task_id=tid)
    return task_to_dict(task)


async def refund_task(session: AsyncSession, tid: str) -> dict:
    """Resolve a dispute on a completed task in the requester's favour."""
    task = await get_task_or_404(session, tid)
    old_tasker = task.assigned_tasker_id
    refunded = await _cas(
        session,
        tid,
        TaskStatus.completed,
        status=TaskStatus.refunded,
        assigned_tasker_id=None,
        escrow_held=False,
    )
    if not refunded:
        raise HTTPException(status_code=409, detail=f"Task is {status_str(task.status)}, not completed")
    await set_transaction(session, tid, TransactionStatus.refunded)
    await session.commit()
    await session.refresh(task)

    await refund_quietly(task.escrow_ref, task_id=tid)
    _notify(task, Event(type="task_refunded", task_id=tid), task.requester_id, old_tasker)
    logger.info("Task %s refunded by dispute resolution", tid)
    return task_to_dict(task)


async def share_location(
    session: AsyncSession,
    tid: str,
    tasker: User,
    lat: float,
    lng: float,
    heading: float | None = None,
) -> dict:
    """Broadcast the tasker's live position to the task channel. Not stored."""
    task = await get_task_or_404(session, tid)
    require_assignee(task, tasker)
    if task.status not in ACTIVE_STATUSES:
        raise HTTPException(status_code=409, detail=f"Task is {status_str(task.status)}, not active")
    validate_coordinates(lat, lng)
    timestamp = utcnow().isoformat()
    delivered = event_bus.publish(
        task_channel(tid),
        Event(
            type="tasker_location",
            task_id=tid,
            data={"lat": lat, "lng": lng, "heading": heading, "timestamp": timestamp},
        ),
    )
    return {"task_id": tid, "delivered": delivered, "timestamp": timestamp}
