"""Background scheduler: reclaim stale tasks, close bid windows, activate
scheduled tasks and materialize recurring ones.

Each job selects a bounded batch whose filter stops matching once an item is
processed, so repeated or overlapping ticks do no extra work. Items are
committed one at a time; a failing item is logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy import exists, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import col, select

from errandly.config import settings
from errandly.db_models import (
    ACTIVE_STATUSES,
    Offer,
    OfferStatus,
    Task,
    TaskStatus,
    Transaction,
    TransactionStatus,
)
from errandly.escrow import EscrowError, get_gateway
from errandly.ids import task_id as make_task_id
from errandly.ids import transaction_id
from errandly.recurrence import next_occurrence
from errandly.services.offers import resolve_bid_window
from errandly.services.tasks import publish_task_assigned, reclaim_task
from errandly.utils import as_utc, utcnow

logger = logging.getLogger("errandly.background")


async def _load(session: AsyncSession, tid: str) -> Task | None:
    # A rollback on an earlier item expires every loaded row
    return await session.get(Task, tid, populate_existing=True)


async def reclaim_stale_tasks(session: AsyncSession, now: datetime | None = None) -> int:
    """Repost tasks accepted too long ago and refund their holds."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.stale_accept_timeout_minutes)
    result = await session.execute(
        select(col(Task.id))
        .where(
            col(Task.status).in_(ACTIVE_STATUSES),
            Task.escrow_held == True,  # noqa: E712
            Task.accepted_at != None,  # noqa: E711
            col(Task.accepted_at) <= cutoff,
        )
        .order_by(col(Task.accepted_at))
        .limit(settings.scheduler_batch_size)
    )
    task_ids = result.scalars().all()

    count = 0
    for tid in task_ids:
        try:
            task = await _load(session, tid)
            if task and await reclaim_task(
                session, task, auto=True, reason="stale_accept", accepted_before=cutoff
            ):
                count += 1
        except Exception:
            logger.exception("Failed to reclaim stale task %s", tid)
            await session.rollback()
    return count


async def resolve_bid_windows(session: AsyncSession, now: datetime | None = None) -> int:
    """Auto-accept the lowest offer on tasks whose bid window has closed."""
    now = now or utcnow()
    has_pending = exists().where(
        col(Offer.task_id) == Task.id, col(Offer.status) == OfferStatus.pending
    )
    result = await session.execute(
        select(col(Task.id))
        .where(
            Task.status == TaskStatus.posted,
            Task.bidding_enabled == True,  # noqa: E712
            Task.escrow_held == True,  # noqa: E712
            Task.bid_window_ends_at != None,  # noqa: E711
            col(Task.bid_window_ends_at) <= now,
            has_pending,
        )
        .limit(settings.scheduler_batch_size)
    )
    task_ids = result.scalars().all()

    count = 0
    for tid in task_ids:
        try:
            task = await _load(session, tid)
            if task and await resolve_bid_window(session, task):
                count += 1
        except Exception:
            logger.exception("Failed to resolve bid window for task %s", tid)
            await session.rollback()
    return count


async def activate_scheduled_tasks(session: AsyncSession, now: datetime | None = None) -> int:
    """Clear the scheduled flag on tasks whose time has come."""
    now = now or utcnow()
    result = await session.execute(
        select(col(Task.id))
        .where(
            Task.is_scheduled == True,  # noqa: E712
            Task.scheduled_for != None,  # noqa: E711
            col(Task.scheduled_for) <= now,
        )
        .limit(settings.scheduler_batch_size)
    )
    task_ids = result.scalars().all()

    count = 0
    for tid in task_ids:
        try:
            task = await _load(session, tid)
            if task is None:
                continue
            window_closed = task.bid_window_ends_at is not None and as_utc(task.bid_window_ends_at) <= now
            if task.status == TaskStatus.posted and task.bidding_enabled and window_closed:
                await resolve_bid_window(session, task)
            activated = await session.execute(
                update(Task)
                .where(col(Task.id) == tid, col(Task.is_scheduled) == True)  # noqa: E712
                .values(is_scheduled=False)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if activated.rowcount:
                count += 1
                logger.info("Activated scheduled task %s", tid)
        except Exception:
            logger.exception("Failed to activate scheduled task %s", tid)
            await session.rollback()
    return count


async def _materialize_one(session: AsyncSession, parent: Task, now: datetime) -> Task | None:
    occurrence = as_utc(parent.next_occurrence)
    following = next_occurrence(
        parent.recur_frequency,
        parent.recur_time_of_day,
        parent.recur_day_of_week,
        after=now,
        previous=occurrence,
    )
    # Advancing is conditional on the value we read, so only one tick wins
    advanced = await session.execute(
        update(Task)
        .where(col(Task.id) == parent.id, col(Task.next_occurrence) == parent.next_occurrence)
        .values(next_occurrence=following)
        .execution_options(synchronize_session=False)
    )
    if advanced.rowcount == 0:
        return None

    tid = make_task_id()
    record = await get_gateway().hold(
        parent.price,
        metadata={"task_id": tid, "requester_id": parent.requester_id, "parent_task_id": parent.id},
        idempotency_key=f"{parent.id}:{occurrence.isoformat()}",
    )
    instance = Task(
        id=tid,
        requester_id=parent.requester_id,
        assigned_tasker_id=parent.assigned_tasker_id,
        title=parent.title,
        description=parent.description,
        category_id=parent.category_id,
        category_name=parent.category_name,
        price=parent.price,
        duration_min=parent.duration_min,
        required_skills=parent.required_skills,
        bidding_enabled=False,
        quick_accept=True,
        allowed_tier=parent.allowed_tier,
        lat=parent.lat,
        lng=parent.lng,
        radius_km=parent.radius_km,
        status=TaskStatus.accepted,
        accepted_at=now,
        escrow_ref=record.ref,
        escrow_held=True,
        scheduled_for=occurrence,
        parent_task_id=parent.id,
    )
    session.add(instance)
    await session.flush()
    session.add(
        Transaction(
            id=transaction_id(),
            task_id=tid,
            amount=parent.price,
            status=TransactionStatus.held,
            provider_ref=record.ref,
        )
    )
    await session.commit()
    return instance


async def materialize_recurring_tasks(session: AsyncSession, now: datetime | None = None) -> int:
    """Create the next instance of each due recurring task, pre-assigned to
    the tasker who did the previous one."""
    now = now or utcnow()
    result = await session.execute(
        select(col(Task.id))
        .where(
            Task.is_recurring == True,  # noqa: E712
            Task.status == TaskStatus.paid,
            Task.assigned_tasker_id != None,  # noqa: E711
            Task.next_occurrence != None,  # noqa: E711
            col(Task.next_occurrence) <= now,
            (col(Task.recur_end_date) == None) | (col(Task.recur_end_date) >= now),  # noqa: E711
        )
        .limit(settings.scheduler_batch_size)
    )
    parent_ids = result.scalars().all()

    count = 0
    for pid in parent_ids:
        try:
            parent = await _load(session, pid)
            instance = await _materialize_one(session, parent, now) if parent else None
        except EscrowError as e:
            # Advance is rolled back too, so the next tick retries this occurrence
            logger.warning("Hold for recurring task %s failed: %s", pid, e)
            await session.rollback()
            continue
        except Exception:
            logger.exception("Failed to materialize recurring task %s", pid)
            await session.rollback()
            continue
        if instance is None:
            continue
        count += 1
        publish_task_assigned(instance)
        logger.info("Recurring task %s materialized as %s", pid, instance.id)
    return count


async def run_scheduler_tick(session: AsyncSession, now: datetime | None = None) -> dict[str, int]:
    return {
        "reclaimed": await reclaim_stale_tasks(session, now),
        "bids_resolved": await resolve_bid_windows(session, now),
        "activated": await activate_scheduled_tasks(session, now),
        "recurring": await materialize_recurring_tasks(session, now),
    }


async def background_loop(session_factory: sessionmaker) -> None:
    """Run the scheduler every ``scheduler_interval_seconds``."""
    while True:
        try:
            async with session_factory() as session:
                counts = await run_scheduler_tick(session)
                if any(counts.values()):
                    logger.info(
                        "BG: reclaimed=%d, bids=%d, activated=%d, recurring=%d",
                        counts["reclaimed"],
                        counts["bids_resolved"],
                        counts["activated"],
                        counts["recurring"],
                    )
        except Exception:
            logger.exception("Background task error")
        await asyncio.sleep(settings.scheduler_interval_seconds)
