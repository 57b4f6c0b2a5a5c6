"""Bidding: taskers submit offers, the requester (or the bid window) picks one."""

from __future__ import annotations

import logging

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from errandly.db_models import Offer, OfferStatus, Task, TaskStatus, TransactionStatus, User
from errandly.escrow import compute_fee, refund_quietly
from errandly.events import Event, event_bus
from errandly.ids import offer_id as make_offer_id
from errandly.services.platform import get_platform_settings, validate_category_price
from errandly.services.tasks import (
    TAKEN_DETAIL,
    assign_tasker,
    check_tier,
    get_task_or_404,
    open_hold,
    publish_offer_rejections,
    publish_task_assigned,
    reject_pending_offers,
    require_requester,
    set_transaction,
    task_to_dict,
)
from errandly.utils import iso, status_str

logger = logging.getLogger("errandly.offers")

DUPLICATE_DETAIL = "You already have a pending offer on this task"


def offer_to_dict(offer: Offer) -> dict:
    return {
        "id": offer.id,
        "task_id": offer.task_id,
        "tasker_id": offer.tasker_id,
        "proposed_price": offer.proposed_price,
        "message": offer.message,
        "status": status_str(offer.status),
        "created_at": iso(offer.created_at),
    }


def pick_winning_offer(offers: list[Offer]) -> Offer | None:
    """Lowest price wins; ties go to the earliest offer."""
    pending = [o for o in offers if o.status == OfferStatus.pending]
    if not pending:
        return None
    return min(pending, key=lambda o: (o.proposed_price, o.created_at))


async def _pending_offers(session: AsyncSession, tid: str) -> list[Offer]:
    result = await session.execute(
        select(Offer)
        .where(Offer.task_id == tid, Offer.status == OfferStatus.pending)
        .order_by(col(Offer.created_at))
    )
    return list(result.scalars().all())


async def submit_offer(
    session: AsyncSession,
    tid: str,
    tasker: User,
    proposed_price: int,
    message: str | None = None,
) -> dict:
    task = await get_task_or_404(session, tid)
    if not task.bidding_enabled:
        raise HTTPException(status_code=400, detail="Bidding is not enabled for this task")
    if task.status != TaskStatus.posted:
        raise HTTPException(status_code=409, detail=f"Task is {status_str(task.status)}, not posted")
    if task.requester_id == tasker.id:
        raise HTTPException(status_code=403, detail="Cannot make an offer on your own task")
    check_tier(task, tasker)
    if not isinstance(proposed_price, int) or proposed_price <= 0:
        raise HTTPException(status_code=400, detail="proposed_price must be a positive integer")
    # The winning offer becomes the held price
    await validate_category_price(session, task.category_id, proposed_price, task.category_name)

    existing = await session.execute(
        select(Offer).where(
            Offer.task_id == tid,
            Offer.tasker_id == tasker.id,
            Offer.status == OfferStatus.pending,
        )
    )
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail=DUPLICATE_DETAIL)

    offer = Offer(
        id=make_offer_id(),
        task_id=tid,
        tasker_id=tasker.id,
        proposed_price=proposed_price,
        message=message,
    )
    session.add(offer)
    try:
        await session.commit()
    except IntegrityError as e:
        # Lost a race with a concurrent offer from the same tasker
        await session.rollback()
        raise HTTPException(status_code=409, detail=DUPLICATE_DETAIL) from e
    await session.refresh(offer)

    event_bus.to_user(
        task.requester_id,
        Event(type="offer_received", task_id=tid, data={"offer": offer_to_dict(offer)}),
    )
    return offer_to_dict(offer)


async def list_offers(session: AsyncSession, tid: str, requester: User) -> list[dict]:
    task = await get_task_or_404(session, tid)
    require_requester(task, requester)
    result = await session.execute(
        select(Offer).where(Offer.task_id == tid).order_by(col(Offer.created_at))
    )
    return [offer_to_dict(o) for o in result.scalars().all()]


async def _assign_from_offer(session: AsyncSession, task: Task, offer: Offer) -> list[Offer] | None:
    """Assign the offer's tasker at the offered price, settle the other offers and commit.

    When the offered price differs from the held amount a hold for the new
    price replaces the old one, which is refunded after commit. Returns the
    rejected offers, or None if the task was taken meanwhile.
    """
    old_ref = task.escrow_ref
    new_ref = None
    if offer.proposed_price != task.price:
        new_ref = await open_hold(offer.proposed_price, task.id, task.requester_id)

    try:
        won = await assign_tasker(
            session, task, offer.tasker_id, price=offer.proposed_price, escrow_ref=new_ref
        )
        if not won:
            await session.rollback()
            await refund_quietly(new_ref, task_id=task.id)
            return None

        if new_ref:
            platform = await get_platform_settings(session)
            fee, _ = compute_fee(offer.proposed_price, platform.platform_fee_pct)
            await set_transaction(
                session,
                task.id,
                TransactionStatus.held,
                amount=offer.proposed_price,
                platform_fee=fee,
                provider_ref=new_ref,
            )
        offer.status = OfferStatus.accepted
        session.add(offer)
        rejected = await reject_pending_offers(session, task.id, keep_offer_id=offer.id)
        await session.commit()
    except Exception:
        await session.rollback()
        await refund_quietly(new_ref, task_id=task.id)
        raise

    if new_ref:
        await refund_quietly(old_ref, task_id=task.id)
    return rejected


def _publish_offer_outcome(task: Task, offer: Offer, rejected: list[Offer]) -> None:
    event_bus.to_user(
        offer.tasker_id,
        Event(type="offer_accepted", task_id=task.id, data={"offer": offer_to_dict(offer)}),
    )
    publish_offer_rejections(task, rejected)
    publish_task_assigned(task)


async def accept_offer(session: AsyncSession, tid: str, offer_id: str, requester: User) -> dict:
    task = await get_task_or_404(session, tid)
    require_requester(task, requester)
    offer = await session.get(Offer, offer_id, populate_existing=True)
    if not offer or offer.task_id != tid:
        raise HTTPException(status_code=404, detail="Offer not found")
    if offer.status != OfferStatus.pending:
        raise HTTPException(status_code=409, detail=f"Offer is {status_str(offer.status)}, not pending")
    if task.status != TaskStatus.posted:
        raise HTTPException(status_code=409, detail=f"Task is {status_str(task.status)}, not posted")
    if not task.escrow_held:
        raise HTTPException(status_code=409, detail="Task is awaiting escrow funding")

    rejected = await _assign_from_offer(session, task, offer)
    if rejected is None:
        raise HTTPException(status_code=409, detail=TAKEN_DETAIL)

    _publish_offer_outcome(task, offer, rejected)
    logger.info("Offer %s accepted on task %s at %d", offer.id, tid, offer.proposed_price)
    return {"task": task_to_dict(task), "offer": offer_to_dict(offer)}


async def resolve_bid_window(session: AsyncSession, task: Task) -> Offer | None:
    """Auto-accept the winning pending offer once bidding has closed.

    Returns the accepted offer, or None when there was nothing to accept or
    someone else assigned the task first.
    """
    if task.status != TaskStatus.posted or not task.escrow_held:
        return None
    winner = pick_winning_offer(await _pending_offers(session, task.id))
    if winner is None:
        return None

    rejected = await _assign_from_offer(session, task, winner)
    if rejected is None:
        return None

    _publish_offer_outcome(task, winner, rejected)
    logger.info("Bid window on task %s resolved to offer %s at %d", task.id, winner.id, winner.proposed_price)
    return winner
