"""SSE event stream endpoints."""

from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from errandly.auth import get_current_user
from errandly.database import get_db_session
from errandly.db_models import User
from errandly.events import BROADCAST, event_bus, task_channel, user_channel
from errandly.services.tasks import get_task_or_404

router = APIRouter()

KEEPALIVE_INTERVAL = 30  # seconds


def _stream(request: Request, channels: tuple[str, ...]) -> StreamingResponse:
    queue = event_bus.subscribe(*channels)

    async def generate():
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_INTERVAL)
                    if event is None:
                        break
                    yield f"event: {event.type}\ndata: {json.dumps(event.payload())}\n\n"
                except TimeoutError:
                    yield ": keepalive\n\n"

                if await request.is_disconnected():
                    break
        finally:
            event_bus.unsubscribe(queue, *channels)

    return StreamingResponse(generate(), media_type="text/event-stream")


@router.get("/v1/events", responses={401: {"description": "Unauthorized"}})
async def event_stream(request: Request, user: User = Depends(get_current_user)):
    """Subscribe to your notifications plus newly posted tasks."""
    return _stream(request, (user_channel(user.id), BROADCAST))


@router.get("/v1/tasks/{task_id}/events", responses={403: {"description": "Not a party to this task"}})
async def task_event_stream(
    task_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Live updates for one task, including the tasker's location."""
    task = await get_task_or_404(session, task_id)
    if user.id not in (task.requester_id, task.assigned_tasker_id):
        raise HTTPException(status_code=403, detail="Not your task")
    return _stream(request, (task_channel(task_id),))
