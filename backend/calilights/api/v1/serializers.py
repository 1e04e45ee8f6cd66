# backend/calilights/api/v1/serializers.py
"""ORM row -> response model conversion for the v1 routers."""

from typing import Optional

from ...database.models import BridgeEvent, Entry, GenerationJob, Mission, MissionSchedule
from ...models import (
    BridgeEventResponse,
    EntryResponse,
    GenerationJobResponse,
    MissionResponse,
    ScheduleResponse,
)
from ...services.schedule_service import compute_next_run


def _str(value) -> Optional[str]:
    return str(value) if value is not None else None


def mission_to_response(mission: Mission) -> MissionResponse:
    return MissionResponse(
        id=str(mission.id),
        chain_id=str(mission.chain_id),
        prompt=mission.prompt,
        state=mission.state,
        window_seconds=mission.window_seconds,
        submissions_required=mission.submissions_required,
        submissions_received=mission.submissions_received,
        starts_at=mission.starts_at,
        ends_at=mission.ends_at,
        lock_reason=mission.lock_reason,
        locked_at=mission.locked_at,
        recap_ready_at=mission.recap_ready_at,
        archived_at=mission.archived_at,
        created_by=_str(mission.created_by),
        created_at=mission.created_at,
    )


def entry_to_response(entry: Entry) -> EntryResponse:
    return EntryResponse(
        id=str(entry.id),
        mission_id=str(entry.mission_id),
        user_id=str(entry.user_id),
        media_url=entry.media_url,
        media_type=entry.media_type,
        metadata_status=entry.metadata_status,
        created_at=entry.created_at,
        updated_at=entry.updated_at,
    )


def job_to_response(job: GenerationJob) -> GenerationJobResponse:
    return GenerationJobResponse(
        id=str(job.id),
        operation_id=job.operation_id,
        target_type=job.target_type,
        target_id=str(job.target_id),
        status=job.status,
        prompt=job.prompt,
        video_url=job.video_url,
        duration_seconds=job.duration_seconds,
        error_message=job.error_message,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


def schedule_to_response(schedule: MissionSchedule) -> ScheduleResponse:
    return ScheduleResponse(
        chain_id=str(schedule.chain_id),
        enabled=schedule.enabled,
        auto_start_at=schedule.auto_start_at or "",
        timezone=schedule.timezone,
        prompt_template=schedule.prompt_template or "",
        window_seconds=schedule.window_seconds or 0,
        submissions_required=schedule.submissions_required,
        next_run_at=compute_next_run(schedule),
        updated_at=schedule.updated_at,
    )


def bridge_to_response(event: BridgeEvent) -> BridgeEventResponse:
    return BridgeEventResponse(
        id=str(event.id),
        mission_a_id=str(event.mission_a_id),
        mission_b_id=str(event.mission_b_id),
        chain_a_id=str(event.chain_a_id),
        chain_b_id=str(event.chain_b_id),
        shared_tags=list(event.shared_tags or []),
        hue_delta=event.hue_delta,
        created_at=event.created_at,
    )
