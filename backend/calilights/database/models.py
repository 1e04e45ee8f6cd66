# backend/calilights/database/models.py
"""
SQLAlchemy ORM models for the CaliLights mission engine.

Models:
    - User: Participant accounts
    - Chain: A group of participants sharing a stream of missions
    - ChainMembership: User membership and role within a chain
    - ChainConnection: Directed link between chains created by bridges
    - Mission: One timed capture round and its lifecycle state
    - Entry: A participant's submission for a mission
    - Chapter: The fused artifact produced for a mission
    - GenerationJob: External video generation operation tracking
    - BridgeEvent: Similarity link between two chains' completed missions
    - MissionSchedule: Per-chain auto-start configuration

All models use UUID primary keys and include timestamps for auditing.
Timestamps are stored as naive UTC.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from ..models import JobStatus, MetadataStatus, MissionState
from .base import Base


def utcnow() -> datetime:
    """Current time as naive UTC, the storage convention for every column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# UUID type that works with both SQLite and PostgreSQL
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class User(Base):
    """
    Participant account.

    Authentication itself lives outside this service; a user row exists so
    memberships, entries and notifications can reference a stable id.
    """

    __tablename__ = "users"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True, index=True)
    display_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    memberships = relationship("ChainMembership", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class Chain(Base):
    """
    A group of participants sharing a stream of missions.

    Attributes:
        id: Unique chain identifier
        name: Display name used in notifications
        active_mission_id: Mission currently occupying the chain, NULL when free.
            Claimed and released only through conditional updates.
    """

    __tablename__ = "chains"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    active_mission_id = Column(UUID(), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    memberships = relationship("ChainMembership", back_populates="chain", cascade="all, delete-orphan")
    schedule = relationship("MissionSchedule", back_populates="chain", uselist=False)

    def __repr__(self) -> str:
        return f"<Chain(id={self.id}, name={self.name}, active_mission_id={self.active_mission_id})>"


class ChainMembership(Base):
    """User membership in a chain with a role (admin or member)."""

    __tablename__ = "chain_memberships"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    chain_id = Column(UUID(), ForeignKey("chains.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(UUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(20), nullable=False, default="member")
    created_at = Column(DateTime, default=utcnow, nullable=False)

    chain = relationship("Chain", back_populates="memberships")
    user = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("chain_id", "user_id", name="uq_chain_memberships_chain_user"),
    )


class ChainConnection(Base):
    """Directed connection between two chains, written in both directions."""

    __tablename__ = "chain_connections"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    from_chain_id = Column(UUID(), ForeignKey("chains.id", ondelete="CASCADE"), nullable=False, index=True)
    to_chain_id = Column(UUID(), ForeignKey("chains.id", ondelete="CASCADE"), nullable=False)
    reason = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("from_chain_id", "to_chain_id", name="uq_chain_connections_pair"),
    )


class Mission(Base):
    """
    One timed round of the activity.

    The state column is authoritative for control flow. The lifecycle
    timestamps are history, each set exactly once in the order
    starts_at <= locked_at <= recap_ready_at <= archived_at.

    Attributes:
        id: Unique mission identifier
        chain_id: Owning chain
        prompt: Creative prompt shown to participants
        state: MissionState value
        window_seconds: Capture window length
        submissions_required: Entry count that triggers an automatic lock
        submissions_received: Current entry count, recomputed atomically
        starts_at / ends_at: Capture window bounds
        lock_reason: threshold, timer or manual
        locked_at / recap_ready_at / archived_at: Transition history
        created_by: Creating user, NULL for scheduler-created missions
    """

    __tablename__ = "missions"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    chain_id = Column(UUID(), ForeignKey("chains.id", ondelete="CASCADE"), nullable=False, index=True)
    prompt = Column(Text, nullable=False)
    state = Column(String(20), nullable=False, default=MissionState.LOBBY.value, index=True)

    window_seconds = Column(Integer, nullable=False)
    submissions_required = Column(Integer, nullable=False, default=3)
    submissions_received = Column(Integer, nullable=False, default=0)

    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    lock_reason = Column(String(20), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    recap_ready_at = Column(DateTime, nullable=True, index=True)
    archived_at = Column(DateTime, nullable=True)

    created_by = Column(UUID(), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    chain = relationship("Chain")
    entries = relationship("Entry", back_populates="mission", cascade="all, delete-orphan")
    chapter = relationship("Chapter", back_populates="mission", uselist=False)

    __table_args__ = (
        Index("ix_missions_chain_state", "chain_id", "state"),
    )

    def __repr__(self) -> str:
        return f"<Mission(id={self.id}, chain_id={self.chain_id}, state={self.state})>"


class Entry(Base):
    """
    A participant's submission for a mission.

    At most one entry exists per (user, mission); resubmission overwrites the
    media and resets analysis to pending.
    """

    __tablename__ = "entries"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    mission_id = Column(UUID(), ForeignKey("missions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(UUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    media_url = Column(Text, nullable=False)
    media_type = Column(String(10), nullable=False, default="photo")
    gps_city = Column(String(255), nullable=True)
    gps_lat = Column(Float, nullable=True)
    gps_lon = Column(Float, nullable=True)
    captured_at = Column(DateTime, nullable=True)

    # Filled in asynchronously by entry analysis
    dominant_hue = Column(Float, nullable=True)
    palette = Column(JSON, nullable=False, default=list)
    scene_tags = Column(JSON, nullable=False, default=list)
    object_tags = Column(JSON, nullable=False, default=list)
    alt_text = Column(Text, nullable=True)
    metadata_status = Column(String(20), nullable=False, default=MetadataStatus.PENDING.value)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    mission = relationship("Mission", back_populates="entries")

    __table_args__ = (
        UniqueConstraint("user_id", "mission_id", name="uq_entries_user_mission"),
    )


class Chapter(Base):
    """Fused artifact for a mission (1:1)."""

    __tablename__ = "chapters"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    mission_id = Column(
        UUID(), ForeignKey("missions.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )
    title = Column(String(255), nullable=True)
    video_url = Column(Text, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    final_palette = Column(JSON, nullable=False, default=list)
    generated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    mission = relationship("Mission", back_populates="chapter")


class GenerationJob(Base):
    """
    External generation operation.

    operation_id is the opaque handle returned by the generator and doubles as
    the idempotency key for polling. Status moves PENDING -> SUCCEEDED|FAILED
    exactly once through a conditional update.
    """

    __tablename__ = "generation_jobs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    operation_id = Column(String(512), nullable=False, unique=True, index=True)
    target_type = Column(String(20), nullable=False, default="chapter")
    target_id = Column(UUID(), nullable=False, index=True)
    mission_id = Column(UUID(), ForeignKey("missions.id", ondelete="CASCADE"), nullable=False, index=True)

    # Requested inputs
    prompt = Column(Text, nullable=False)
    input_media_urls = Column(JSON, nullable=False, default=list)
    aspect_ratio = Column(String(10), nullable=False)
    length_seconds = Column(Integer, nullable=False)
    model = Column(String(255), nullable=True)

    # Resolution
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value, index=True)
    video_url = Column(Text, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    watermark = Column(Boolean, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_generation_jobs_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<GenerationJob(operation_id={self.operation_id}, status={self.status})>"


class BridgeEvent(Base):
    """
    Append-only similarity link between two chains' completed missions.

    The mission pair is stored ordered (mission_a_id < mission_b_id) so the
    unique constraint covers both directions.
    """

    __tablename__ = "bridge_events"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    mission_a_id = Column(UUID(), ForeignKey("missions.id", ondelete="CASCADE"), nullable=False)
    mission_b_id = Column(UUID(), ForeignKey("missions.id", ondelete="CASCADE"), nullable=False)
    chain_a_id = Column(UUID(), ForeignKey("chains.id", ondelete="CASCADE"), nullable=False, index=True)
    chain_b_id = Column(UUID(), ForeignKey("chains.id", ondelete="CASCADE"), nullable=False, index=True)
    shared_tags = Column(JSON, nullable=False, default=list)
    hue_delta = Column(Float, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("mission_a_id", "mission_b_id", name="uq_bridge_events_mission_pair"),
    )


class MissionSchedule(Base):
    """
    Per-chain auto-start configuration read by the scheduler sweep.

    Attributes:
        auto_start_at: Local time of day, "HH:MM"
        timezone: IANA zone name the time of day is interpreted in
        prompt_template: Prompt for scheduler-created missions
        window_seconds: Capture window for scheduler-created missions
    """

    __tablename__ = "mission_schedules"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    chain_id = Column(
        UUID(), ForeignKey("chains.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )
    enabled = Column(Boolean, nullable=False, default=True)
    auto_start_at = Column(String(5), nullable=True)
    timezone = Column(String(64), nullable=False, default="UTC")
    prompt_template = Column(Text, nullable=True)
    window_seconds = Column(Integer, nullable=True)
    submissions_required = Column(Integer, nullable=True)
    updated_by = Column(UUID(), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    chain = relationship("Chain", back_populates="schedule")

    def __repr__(self) -> str:
        return (
            f"<MissionSchedule(chain_id={self.chain_id}, at={self.auto_start_at}, "
            f"tz={self.timezone}, enabled={self.enabled})>"
        )
