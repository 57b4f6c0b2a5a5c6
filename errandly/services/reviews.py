"""Post-payment reviews between requester and tasker."""

from __future__ import annotations

import logging

from fastapi import HTTPException
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from errandly.db_models import Review, TaskStatus, User
from errandly.events import Event, event_bus
from errandly.ids import review_id
from errandly.services.tasks import get_task_or_404
from errandly.utils import iso, status_str

logger = logging.getLogger("errandly.reviews")

ALREADY_REVIEWED = "You already reviewed this task"


def review_to_dict(review: Review) -> dict:
    return {
        "id": review.id,
        "task_id": review.task_id,
        "reviewer_id": review.reviewer_id,
        "reviewee_id": review.reviewee_id,
        "rating": review.rating,
        "comment": review.comment,
        "created_at": iso(review.created_at),
    }


async def _refresh_rating(session: AsyncSession, user_id: str) -> tuple[float, int]:
    """Recompute a user's rating aggregate from their reviews. Caller commits."""
    result = await session.execute(
        select(func.avg(Review.rating), func.count()).where(Review.reviewee_id == user_id)
    )
    avg, count = result.one()
    rating_avg = round(float(avg or 0), 1)
    await session.execute(
        update(User)
        .where(col(User.id) == user_id)
        .values(rating_avg=rating_avg, rating_count=count)
        .execution_options(synchronize_session=False)
    )
    return rating_avg, count


async def submit_review(
    session: AsyncSession, tid: str, reviewer: User, rating: int, comment: str | None = None
) -> dict:
    """Rate the other party of a paid task. Each party reviews a task once."""
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise HTTPException(status_code=400, detail="rating must be between 1 and 5")
    task = await get_task_or_404(session, tid)
    if reviewer.id == task.requester_id:
        reviewee_id = task.assigned_tasker_id
    elif reviewer.id == task.assigned_tasker_id:
        reviewee_id = task.requester_id
    else:
        raise HTTPException(status_code=403, detail="Only the requester and tasker can review this task")
    if task.status != TaskStatus.paid:
        raise HTTPException(
            status_code=409, detail=f"Task is {status_str(task.status)}, reviews open once it is paid"
        )

    existing = await session.execute(
        select(Review).where(Review.task_id == tid, Review.reviewer_id == reviewer.id)
    )
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail=ALREADY_REVIEWED)

    review = Review(
        id=review_id(),
        task_id=tid,
        reviewer_id=reviewer.id,
        reviewee_id=reviewee_id,
        rating=rating,
        comment=comment,
    )
    session.add(review)
    try:
        await session.flush()
        rating_avg, rating_count = await _refresh_rating(session, reviewee_id)
        await session.commit()
    except IntegrityError as e:
        # Lost a race with the same reviewer's concurrent submission
        await session.rollback()
        raise HTTPException(status_code=409, detail=ALREADY_REVIEWED) from e

    event_bus.to_user(
        reviewee_id,
        Event(
            type="review_received",
            task_id=tid,
            data={"rating": rating, "rating_avg": rating_avg, "rating_count": rating_count},
        ),
    )
    logger.info("Review %s on task %s: %s rated %s %d", review.id, tid, reviewer.id, reviewee_id, rating)
    return review_to_dict(review)


async def list_reviews(
    session: AsyncSession, user_id: str, offset: int = 0, limit: int = 20
) -> dict:
    """Reviews a user received, newest first, with their aggregate."""
    user = await session.get(User, user_id, populate_existing=True)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    result = await session.execute(
        select(Review)
        .where(Review.reviewee_id == user_id)
        .order_by(col(Review.created_at).desc())
        .offset(offset)
        .limit(limit)
    )
    return {
        "user_id": user_id,
        "rating_avg": user.rating_avg,
        "rating_count": user.rating_count,
        "reviews": [review_to_dict(r) for r in result.scalars().all()],
    }
