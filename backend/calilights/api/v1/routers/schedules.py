# backend/calilights/api/v1/routers/schedules.py
"""
Chain auto-start schedule endpoints.

Reads are open to chain members; writes require the chain admin role.
"""

import logging

from fastapi import APIRouter, Depends, Response, status

from ....database.models import User
from ....dependencies import get_current_user
from ....exceptions import NotFoundError
from ....models import ScheduleResponse, ScheduleUpsertRequest
from ....services.chain_service import chain_service
from ....services.database_service import database_service
from ....services.schedule_service import schedule_service
from ..serializers import schedule_to_response

logger = logging.getLogger("calilights.api.schedules")

router = APIRouter(prefix="/chains/{chain_id}/schedule", tags=["schedules"])


@router.get("", response_model=ScheduleResponse, summary="Get chain schedule")
async def get_schedule(
    chain_id: str,
    current_user: User = Depends(get_current_user),
) -> ScheduleResponse:
    async with database_service.get_session() as session:
        chain = await chain_service.get_chain(session, chain_id)
        await chain_service.require_member(session, chain.id, current_user.id)
        schedule = await schedule_service.get_schedule(session, chain.id)
        if schedule is None:
            raise NotFoundError(f"Chain {chain.id} has no schedule")
        return schedule_to_response(schedule)


@router.put(
    "",
    response_model=ScheduleResponse,
    summary="Set chain schedule",
    description="Create or replace the chain's auto-start schedule.",
)
async def upsert_schedule(
    chain_id: str,
    request: ScheduleUpsertRequest,
    current_user: User = Depends(get_current_user),
) -> ScheduleResponse:
    async with database_service.get_session() as session:
        schedule = await schedule_service.upsert_schedule(
            session,
            chain_id,
            current_user.id,
            auto_start_at=request.auto_start_at,
            prompt_template=request.prompt_template,
            window_seconds=request.window_minutes * 60,
            tz_name=request.timezone,
            enabled=request.enabled,
            submissions_required=request.submissions_required,
        )
        return schedule_to_response(schedule)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT, summary="Delete chain schedule")
async def delete_schedule(
    chain_id: str,
    current_user: User = Depends(get_current_user),
) -> Response:
    async with database_service.get_session() as session:
        await schedule_service.delete_schedule(session, chain_id, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
