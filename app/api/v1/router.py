from fastapi import APIRouter

from app.api.v1.admin import router as admin_router
from app.api.v1.cron import router as cron_router
from app.api.v1.sessions import router as sessions_router

api_router = APIRouter()
api_router.include_router(sessions_router)
api_router.include_router(admin_router)
api_router.include_router(cron_router)
