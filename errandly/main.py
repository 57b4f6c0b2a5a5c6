"""Errandly: location-based micro-task marketplace."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException, RequestValidationError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from errandly.api.router import api_router
from errandly.background import background_loop
from errandly.config import settings
from errandly.content import render_response
from errandly.database import close_db, get_session_factory, init_db
from errandly.events import event_bus
from errandly.rate_limit import limiter

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("errandly")


@asynccontextmanager
async def lifespan(app: FastAPI):
    db_url = settings.database_url
    if not db_url.startswith("sqlite"):
        db_url = f"sqlite+aiosqlite:///{db_url}"
    await init_db(db_url)
    safe_url = re.sub(r"://[^:]+:[^@]+@", "://***:***@", db_url)
    logger.info("Database connected: %s", safe_url)

    bg_task = asyncio.create_task(background_loop(get_session_factory()))

    yield

    bg_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await bg_task
    event_bus.close()
    await close_db()
    logger.info("Database closed")


app = FastAPI(
    title="Errandly",
    description="Post paid errands nearby, accept or bid on them, get paid from escrow",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

app.include_router(api_router)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return render_response(
        request,
        {"error": exc.detail},
        status_code=exc.status_code,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Query and path parameters fail the same way as bodies: 400 with the first problem
    first = exc.errors()[0]
    field = ".".join(str(p) for p in first.get("loc", ())[1:]) or "request"
    return render_response(request, {"error": f"Invalid {field}: {first['msg']}"}, status_code=400)


@app.get("/health")
async def health():
    return {"status": "ok"}


def main():
    import uvicorn

    uvicorn.run(
        "errandly.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
    )


if __name__ == "__main__":
    main()
