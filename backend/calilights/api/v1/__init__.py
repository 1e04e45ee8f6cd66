from fastapi import APIRouter

# Aggregate all v1 routers here
from .routers import bridges, cron, jobs, missions, schedules

api_router = APIRouter()
api_router.include_router(missions.router)
api_router.include_router(jobs.router)
api_router.include_router(schedules.router)
api_router.include_router(bridges.router)
api_router.include_router(cron.router)

__all__ = ["api_router"]
