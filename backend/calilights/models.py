# ============================================================================
# CaliLights - Pydantic Data Models and Schemas
# ============================================================================
"""
Pydantic data models and schemas for the CaliLights API.

This module defines the data structures shared by the API layer and the
services:
- Lifecycle enumerations (mission states, job statuses, lock reasons)
- Request models with validation for mission control and schedules
- Response models for missions, entries, jobs, schedules and bridges
- The structured error envelope returned for every failure
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .config import settings


# ============================================================================
# ENUMERATION TYPES
# ============================================================================

class MissionState(str, Enum):
    """
    Lifecycle state of a mission.

    Values:
        LOBBY: Created, waiting for the first entry
        CAPTURE: Accepting entries
        FUSING: Locked, generation job requested or in flight
        RECAP: Chapter ready
        ARCHIVED: Terminal, group pointer released
    """
    LOBBY = "LOBBY"
    CAPTURE = "CAPTURE"
    FUSING = "FUSING"
    RECAP = "RECAP"
    ARCHIVED = "ARCHIVED"


OPEN_STATES = (MissionState.LOBBY, MissionState.CAPTURE)
NON_TERMINAL_STATES = (
    MissionState.LOBBY,
    MissionState.CAPTURE,
    MissionState.FUSING,
    MissionState.RECAP,
)


class JobStatus(str, Enum):
    """Resolution status of an external generation job."""
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class LockReason(str, Enum):
    """Why a mission left capture."""
    THRESHOLD = "threshold"
    TIMER = "timer"
    MANUAL = "manual"


class MetadataStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class MemberRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


# ============================================================================
# REQUEST MODELS
# ============================================================================

def _validate_window_minutes(minutes: int) -> int:
    low = settings.mission_min_window_minutes
    high = settings.mission_max_window_minutes
    if minutes < low or minutes > high:
        raise ValueError(f"window must be between {low} and {high} minutes")
    return minutes


class MissionCreateRequest(BaseModel):
    """Admin request to open a new mission for a chain."""
    chain_id: str
    prompt: str = Field(..., min_length=1, max_length=500)
    window_minutes: int = Field(default=60, description="Capture window length in minutes")
    submissions_required: Optional[int] = Field(default=None, ge=1, le=50)

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("prompt must not be empty")
        return v.strip()

    @field_validator("window_minutes")
    @classmethod
    def window_in_range(cls, v: int) -> int:
        return _validate_window_minutes(v)


class MissionPropagateRequest(BaseModel):
    """Admin request to start one prompt in every chain connected to the origin."""
    origin_chain_id: str
    prompt: str = Field(..., min_length=4, max_length=500)
    window_minutes: int = Field(default=60, description="Capture window length in minutes")
    submissions_required: Optional[int] = Field(default=None, ge=1, le=50)

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, v: str) -> str:
        if len(v.strip()) < 4:
            raise ValueError("prompt must be at least 4 characters")
        return v.strip()

    @field_validator("window_minutes")
    @classmethod
    def window_in_range(cls, v: int) -> int:
        return _validate_window_minutes(v)


class MissionLockRequest(BaseModel):
    reason: LockReason = LockReason.MANUAL


class EntrySubmitRequest(BaseModel):
    """A participant's capture for a mission."""
    media_url: str = Field(..., min_length=1)
    media_type: str = Field(default="photo", pattern="^(photo|video)$")
    gps_city: Optional[str] = None
    gps_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    gps_lon: Optional[float] = Field(default=None, ge=-180, le=180)
    captured_at: Optional[datetime] = None

    @field_validator("captured_at")
    @classmethod
    def captured_at_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class ScheduleUpsertRequest(BaseModel):
    """Auto-start configuration for a chain."""
    enabled: bool = True
    auto_start_at: str = Field(..., description="Local time of day, HH:MM")
    timezone: str = Field(default="UTC")
    prompt_template: str = Field(..., min_length=4, max_length=500)
    window_minutes: int = Field(default=60)
    submissions_required: Optional[int] = Field(default=None, ge=1, le=50)

    @field_validator("auto_start_at")
    @classmethod
    def time_of_day_format(cls, v: str) -> str:
        if not _TIME_OF_DAY.match(v):
            raise ValueError("auto_start_at must be HH:MM")
        return v

    @field_validator("window_minutes")
    @classmethod
    def window_in_range(cls, v: int) -> int:
        return _validate_window_minutes(v)


# ============================================================================
# RESPONSE MODELS
# ============================================================================

class MissionResponse(BaseModel):
    id: str
    chain_id: str
    prompt: str
    state: MissionState
    window_seconds: int
    submissions_required: int
    submissions_received: int
    starts_at: datetime
    ends_at: datetime
    lock_reason: Optional[str] = None
    locked_at: Optional[datetime] = None
    recap_ready_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime


class PresenceMember(BaseModel):
    user_id: str
    role: str
    has_submitted: bool


class JoinResponse(BaseModel):
    mission: MissionResponse
    presence: List[PresenceMember]


class EntryResponse(BaseModel):
    id: str
    mission_id: str
    user_id: str
    media_url: str
    media_type: str
    metadata_status: str
    created_at: datetime
    updated_at: datetime


class SubmitEntryResponse(BaseModel):
    entry: EntryResponse
    mission: MissionResponse
    locked: bool


class GenerationJobResponse(BaseModel):
    id: str
    operation_id: str
    target_type: str
    target_id: str
    status: JobStatus
    prompt: str
    video_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class LockResponse(BaseModel):
    """A locked mission plus the outcome of its fusion request."""
    mission: MissionResponse
    job: Optional[GenerationJobResponse] = None
    fusion_error: Optional[str] = None


class ScheduleResponse(BaseModel):
    chain_id: str
    enabled: bool
    auto_start_at: str
    timezone: str
    prompt_template: str
    window_seconds: int
    submissions_required: Optional[int] = None
    next_run_at: Optional[datetime] = None
    updated_at: datetime


class BridgeEventResponse(BaseModel):
    id: str
    mission_a_id: str
    mission_b_id: str
    chain_a_id: str
    chain_b_id: str
    shared_tags: List[str]
    hue_delta: Optional[float] = None
    created_at: datetime


class PropagateSkip(BaseModel):
    chain_id: str
    kind: str
    message: str


class PropagateResponse(BaseModel):
    """Missions started in connected chains, and the chains that were skipped."""
    chains_updated: int
    mission_ids: List[str] = Field(default_factory=list)
    skipped: List[PropagateSkip] = Field(default_factory=list)


class SweepResponse(BaseModel):
    """Counts reported by a periodic sweep."""
    checked: int
    updated: int = 0
    started: int = 0
    locked: int = 0
    skipped: int = 0
    failed: int = 0
    errors: int = 0
    timestamp: datetime


class ErrorDetail(BaseModel):
    kind: str
    message: str


class ErrorResponse(BaseModel):
    """
    Standard error envelope for API errors.

    Attributes:
        error: Error kind (validation, forbidden, not_found, conflict, ...) and message
    """
    error: ErrorDetail

    @classmethod
    def build(cls, kind: str, message: str) -> Dict[str, Any]:
        return cls(error=ErrorDetail(kind=kind, message=message)).model_dump()
