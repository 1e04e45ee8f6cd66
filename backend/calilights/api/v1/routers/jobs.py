# backend/calilights/api/v1/routers/jobs.py
"""Generation job status lookup by operation handle."""

import logging

from fastapi import APIRouter, Depends

from ....database.models import User
from ....dependencies import get_current_user
from ....models import GenerationJobResponse
from ....services.chain_service import chain_service
from ....services.database_service import database_service
from ....services.job_tracker import job_tracker
from ....services.mission_store import mission_store
from ..serializers import job_to_response

logger = logging.getLogger("calilights.api.jobs")

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get(
    "/{operation_id:path}",
    response_model=GenerationJobResponse,
    summary="Get generation job",
    description="Stored status of a generation job. Operation handles may contain slashes.",
)
async def get_job(
    operation_id: str,
    current_user: User = Depends(get_current_user),
) -> GenerationJobResponse:
    async with database_service.get_session() as session:
        job = await job_tracker.require_job(session, operation_id)
        mission = await mission_store.get_mission(session, job.mission_id)
        await chain_service.require_member(session, mission.chain_id, current_user.id)
        return job_to_response(job)
