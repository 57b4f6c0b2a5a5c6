"""Mount all API routes."""

from fastapi import APIRouter

from errandly.api.events import router as events_router
from errandly.api.expenses import router as expenses_router
from errandly.api.offers import router as offers_router
from errandly.api.platform import router as platform_router
from errandly.api.reviews import router as reviews_router
from errandly.api.tasks import router as tasks_router
from errandly.api.users import router as users_router

api_router = APIRouter()
api_router.include_router(users_router, tags=["users"])
api_router.include_router(platform_router, tags=["platform"])
api_router.include_router(tasks_router, tags=["tasks"])
api_router.include_router(offers_router, tags=["offers"])
api_router.include_router(expenses_router, tags=["expenses"])
api_router.include_router(reviews_router, tags=["reviews"])
api_router.include_router(events_router, tags=["events"])
