# backend/calilights/api/v1/routers/missions.py
"""
Missions API Router.

Mission control (create, propagate, start, lock, archive, retry fusion) for chain
admins, and join / entry submission / reads for chain members. Every route
returns the mission as it stands after the operation; state precondition
failures surface as 409 conflict errors from the lifecycle service.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ....database.models import User
from ....dependencies import get_current_user
from ....models import (
    EntrySubmitRequest,
    GenerationJobResponse,
    JoinResponse,
    LockReason,
    LockResponse,
    MissionCreateRequest,
    MissionLockRequest,
    MissionPropagateRequest,
    MissionResponse,
    PresenceMember,
    PropagateResponse,
    PropagateSkip,
    SubmitEntryResponse,
)
from ....services.chain_service import chain_service
from ....services.database_service import database_service
from ....services.job_tracker import job_tracker
from ....services.mission_lifecycle import LockResult, mission_lifecycle
from ....services.mission_store import mission_store
from ....utils.retry import safe_execute
from ..serializers import entry_to_response, job_to_response, mission_to_response

logger = logging.getLogger("calilights.api.missions")

router = APIRouter(tags=["missions"])


def _lock_to_response(result: LockResult) -> LockResponse:
    return LockResponse(
        mission=mission_to_response(result.mission),
        job=job_to_response(result.job) if result.job else None,
        fusion_error=result.fusion_error,
    )


@router.post(
    "/missions",
    response_model=MissionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create mission",
    description="Open a new mission for a chain. Requires the chain admin role.",
)
async def create_mission(
    request: MissionCreateRequest,
    current_user: User = Depends(get_current_user),
) -> MissionResponse:
    mission = await mission_lifecycle.create_mission(
        request.chain_id,
        request.prompt,
        request.window_minutes * 60,
        submissions_required=request.submissions_required,
        created_by=current_user.id,
    )
    await safe_execute(
        mission_lifecycle.notify_mission_start, mission,
        fallback=False, context=f"Mission start notification {mission.id}",
    )
    return mission_to_response(mission)


@router.post(
    "/missions/propagate",
    response_model=PropagateResponse,
    summary="Propagate mission",
    description=(
        "Start the same prompt in every chain connected to the origin chain. "
        "Requires the admin role on the origin; chains that already have an "
        "active mission are listed under skipped."
    ),
)
async def propagate_mission(
    request: MissionPropagateRequest,
    current_user: User = Depends(get_current_user),
) -> PropagateResponse:
    result = await mission_lifecycle.propagate_mission(
        request.origin_chain_id,
        current_user.id,
        request.prompt,
        request.window_minutes * 60,
        submissions_required=request.submissions_required,
    )
    for mission in result.missions:
        await safe_execute(
            mission_lifecycle.notify_mission_start, mission,
            fallback=False, context=f"Mission start notification {mission.id}",
        )
    return PropagateResponse(
        chains_updated=len(result.missions),
        mission_ids=[str(m.id) for m in result.missions],
        skipped=[PropagateSkip(**s) for s in result.skipped],
    )


@router.get(
    "/chains/{chain_id}/missions",
    response_model=List[MissionResponse],
    summary="List chain missions",
)
async def list_chain_missions(
    chain_id: str,
    limit: int = Query(20, ge=1, le=100, description="Maximum results to return"),
    current_user: User = Depends(get_current_user),
) -> List[MissionResponse]:
    """Most recent missions of a chain, newest first."""
    async with database_service.get_session() as session:
        chain = await chain_service.get_chain(session, chain_id)
        await chain_service.require_member(session, chain.id, current_user.id)
        missions = await mission_store.list_missions_for_chain(session, chain.id, limit=limit)
        return [mission_to_response(m) for m in missions]


@router.get("/missions/{mission_id}", response_model=MissionResponse, summary="Get mission")
async def get_mission(
    mission_id: str,
    current_user: User = Depends(get_current_user),
) -> MissionResponse:
    mission = await mission_lifecycle.get_mission(mission_id, current_user.id)
    return mission_to_response(mission)


@router.post(
    "/missions/{mission_id}/join",
    response_model=JoinResponse,
    summary="Join mission",
    description="Current mission state plus which chain members have submitted.",
)
async def join_mission(
    mission_id: str,
    current_user: User = Depends(get_current_user),
) -> JoinResponse:
    result = await mission_lifecycle.join_mission(mission_id, current_user.id)
    return JoinResponse(
        mission=mission_to_response(result.mission),
        presence=[
            PresenceMember(user_id=p.user_id, role=p.role, has_submitted=p.has_submitted)
            for p in result.presence
        ],
    )


@router.post("/missions/{mission_id}/start", response_model=MissionResponse, summary="Start capture")
async def start_capture(
    mission_id: str,
    current_user: User = Depends(get_current_user),
) -> MissionResponse:
    """Move a LOBBY mission into CAPTURE and restart its window from now."""
    mission = await mission_lifecycle.start_capture(mission_id, current_user.id)
    return mission_to_response(mission)


@router.post(
    "/missions/{mission_id}/lock",
    response_model=LockResponse,
    summary="Lock mission",
    description="Lock the mission and request its generation job. Requires the chain admin role.",
)
async def lock_mission(
    mission_id: str,
    request: Optional[MissionLockRequest] = None,
    current_user: User = Depends(get_current_user),
) -> LockResponse:
    reason = request.reason if request else LockReason.MANUAL
    result = await mission_lifecycle.lock_mission(mission_id, reason, actor_id=current_user.id)
    return _lock_to_response(result)


@router.post(
    "/missions/{mission_id}/retry-fusion",
    response_model=LockResponse,
    summary="Retry fusion",
    description="Re-request generation for a mission stuck in FUSING.",
)
async def retry_fusion(
    mission_id: str,
    current_user: User = Depends(get_current_user),
) -> LockResponse:
    result = await mission_lifecycle.retry_fusion(mission_id, current_user.id)
    return _lock_to_response(result)


@router.post("/missions/{mission_id}/archive", response_model=MissionResponse, summary="Archive mission")
async def archive_mission(
    mission_id: str,
    current_user: User = Depends(get_current_user),
) -> MissionResponse:
    mission = await mission_lifecycle.archive_mission(mission_id, current_user.id)
    return mission_to_response(mission)


@router.post(
    "/missions/{mission_id}/entries",
    response_model=SubmitEntryResponse,
    summary="Submit entry",
    description="Submit or replace the caller's entry. The entry reaching the threshold locks the mission.",
)
async def submit_entry(
    mission_id: str,
    request: EntrySubmitRequest,
    current_user: User = Depends(get_current_user),
) -> SubmitEntryResponse:
    result = await mission_lifecycle.submit_entry(mission_id, current_user.id, request.model_dump())
    return SubmitEntryResponse(
        entry=entry_to_response(result.entry),
        mission=mission_to_response(result.mission),
        locked=result.locked,
    )


@router.get(
    "/missions/{mission_id}/jobs",
    response_model=List[GenerationJobResponse],
    summary="List mission generation jobs",
)
async def list_mission_jobs(
    mission_id: str,
    current_user: User = Depends(get_current_user),
) -> List[GenerationJobResponse]:
    async with database_service.get_session() as session:
        mission = await mission_store.get_mission(session, mission_id)
        await chain_service.require_member(session, mission.chain_id, current_user.id)
        jobs = await job_tracker.list_jobs_for_mission(session, mission.id)
        return [job_to_response(j) for j in jobs]
