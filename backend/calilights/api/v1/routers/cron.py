# backend/calilights/api/v1/routers/cron.py
"""
Sweep trigger endpoints for an external scheduler (cron, Cloud Scheduler).

Same work as the Celery beat tasks, for deployments that drive the sweeps
over HTTP. Every route requires the shared X-Cron-Secret header. A sweep
reports per-item failures in its counts; only a failure before the batch
starts (the store cannot be read at all) fails the request.
"""

import logging

from fastapi import APIRouter, Depends

from ....dependencies import verify_cron_secret
from ....models import SweepResponse
from ....services.job_tracker import job_tracker
from ....services.mission_lifecycle import mission_lifecycle
from ....services.schedule_service import schedule_service

logger = logging.getLogger("calilights.api.cron")

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


@router.api_route(
    "/schedules/check",
    methods=["GET", "POST"],
    response_model=SweepResponse,
    summary="Run the auto-start schedule sweep",
)
async def check_schedules() -> SweepResponse:
    result = await schedule_service.check_schedules()
    return SweepResponse(**result)


@router.api_route(
    "/jobs/poll",
    methods=["GET", "POST"],
    response_model=SweepResponse,
    summary="Poll pending generation jobs",
)
async def poll_jobs() -> SweepResponse:
    result = await job_tracker.poll_pending_jobs()
    return SweepResponse(**result)


@router.api_route(
    "/missions/expire",
    methods=["GET", "POST"],
    response_model=SweepResponse,
    summary="Lock missions whose capture window elapsed",
)
async def expire_missions() -> SweepResponse:
    result = await mission_lifecycle.lock_expired_missions()
    return SweepResponse(**result)
