# backend/calilights/services/mission_lifecycle.py
"""
Mission state machine.

    LOBBY -> CAPTURE -> FUSING -> RECAP -> ARCHIVED
      \_________\_________\________\______/   (admin archive from any non-terminal state)

Transitions:
    LOBBY -> CAPTURE    first entry, or explicit admin start
    {LOBBY, CAPTURE} -> FUSING ("lock")
                        submission threshold, capture timer, or admin action;
                        requests a generation job built from the entries
    FUSING -> RECAP     generation job SUCCEEDED; updates the chapter, notifies
                        the chain and runs bridge evaluation once
    * -> ARCHIVED       admin action; releases the chain's active-mission pointer

Every transition is a conditional UPDATE through MissionStore.transition, so
concurrent triggers produce one winner and a ConflictError for the rest. Each
operation uses short sessions and commits before calling an external service;
no transaction stays open across a network call.

The capture timer is not a live countdown: expiry is recomputed from the
stored window every time a mission is read, joined or submitted to, and by
the periodic expired-window sweep.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..config import settings
from ..database.models import Chain, Chapter, Entry, GenerationJob, Mission, utcnow
from ..exceptions import ConflictError, MissionEngineError, ValidationFailedError
from ..models import JobStatus, LockReason, MissionState, NON_TERMINAL_STATES, OPEN_STATES
from ..utils.ids import parse_uuid
from ..utils.prompt import aggregate_entries, build_chapter_prompt, build_chapter_title
from ..utils.retry import safe_execute
from .chain_service import chain_service
from .database_service import database_service
from .entry_service import entry_service
from .generation_client import GenerationRequest
from .job_tracker import job_tracker
from .mission_store import mission_store
from .notification_service import notification_service

logger = logging.getLogger("calilights.missions")

IdLike = Union[str, uuid.UUID]


@dataclass
class LockResult:
    """Outcome of a lock: the FUSING mission plus the fusion request result."""

    mission: Mission
    job: Optional[GenerationJob] = None
    fusion_error: Optional[str] = None


@dataclass
class SubmitResult:
    entry: Entry
    mission: Mission
    locked: bool = False
    lock: Optional[LockResult] = None


@dataclass
class PropagateResult:
    """Missions started in connected chains plus per-chain refusals."""

    missions: List[Mission] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class Presence:
    user_id: str
    role: str
    has_submitted: bool


@dataclass
class JoinResult:
    mission: Mission
    presence: List[Presence] = field(default_factory=list)


def _validate_mission_input(prompt: str, window_seconds: int) -> None:
    if not prompt or not prompt.strip():
        raise ValidationFailedError("Mission prompt must not be empty")
    min_s = settings.mission_min_window_minutes * 60
    max_s = settings.mission_max_window_minutes * 60
    if window_seconds < min_s or window_seconds > max_s:
        raise ValidationFailedError(
            f"Capture window must be between {settings.mission_min_window_minutes} "
            f"and {settings.mission_max_window_minutes} minutes"
        )


def _is_expired(mission: Mission, now: datetime) -> bool:
    ends_at = mission.starts_at + timedelta(seconds=mission.window_seconds)
    return mission.state in (s.value for s in OPEN_STATES) and ends_at <= now


class MissionLifecycleService:
    """Lock, fuse, recap-ready and archive transitions plus their triggers."""

    # =========================================================================
    # CREATION
    # =========================================================================

    async def create_mission(
        self,
        chain_id: IdLike,
        prompt: str,
        window_seconds: int,
        submissions_required: Optional[int] = None,
        created_by: Optional[IdLike] = None,
        as_of: Optional[datetime] = None,
        authorize: bool = True,
    ) -> Mission:
        """
        Create a mission and claim the chain's active-mission pointer.

        Args:
            chain_id: Chain to start the mission in
            prompt: Prompt text (non-empty)
            window_seconds: Capture window length
            submissions_required: Threshold (defaults to settings)
            created_by: Admin creating the mission; None for the scheduler,
                which skips the capability check
            as_of: Window start (defaults to now)
            authorize: Check that created_by administers the chain. Propagation
                records the origin admin as creator without that check.

        Raises:
            ValidationFailedError: Empty prompt or window out of range
            AuthorizationError: created_by is not a chain admin
            ConflictError: The chain already has an active mission
        """
        _validate_mission_input(prompt, window_seconds)

        async with database_service.get_session() as session:
            chain = await chain_service.get_chain(session, chain_id)
            if created_by is not None and authorize:
                await chain_service.require_admin(session, chain.id, created_by)

            mission = await mission_store.create_mission(
                session,
                chain.id,
                prompt.strip(),
                window_seconds,
                submissions_required or settings.default_submissions_required,
                created_by=created_by,
                starts_at=as_of,
            )
            if not await chain_service.set_active_mission_if_empty(session, chain.id, mission.id):
                raise ConflictError(f"Chain {chain.id} already has an active mission")

        return mission

    async def propagate_mission(
        self,
        origin_chain_id: IdLike,
        actor_id: IdLike,
        prompt: str,
        window_seconds: int,
        submissions_required: Optional[int] = None,
    ) -> PropagateResult:
        """
        Start the same prompt as a mission in every chain connected to the origin.

        Only the origin's admin role is checked. Each connected chain gets its
        own create_mission call; a chain that refuses (usually because it
        already has an active mission) is reported in ``skipped`` and the rest
        still start.

        Raises:
            AuthorizationError: actor_id is not an admin of the origin chain
            ValidationFailedError: Empty prompt or window out of range
            NotFoundError: Unknown origin chain
        """
        _validate_mission_input(prompt, window_seconds)
        async with database_service.get_session() as session:
            origin = await chain_service.get_chain(session, origin_chain_id)
            await chain_service.require_admin(session, origin.id, actor_id)
            connected = await chain_service.list_connected_chain_ids(session, origin.id)

        result = PropagateResult()
        for chain_id in connected:
            try:
                mission = await self.create_mission(
                    chain_id,
                    prompt,
                    window_seconds,
                    submissions_required=submissions_required,
                    created_by=actor_id,
                    authorize=False,
                )
            except MissionEngineError as e:
                logger.info(f"Propagation from chain {origin.id} skipped chain {chain_id}: {e.message}")
                result.skipped.append({"chain_id": str(chain_id), "kind": e.kind, "message": e.message})
                continue
            result.missions.append(mission)

        logger.info(
            f"Propagated mission from chain {origin.id} to {len(result.missions)} of {len(connected)} chains"
        )
        return result

    async def start_capture(self, mission_id: IdLike, actor_id: IdLike) -> Mission:
        """
        Explicit admin LOBBY -> CAPTURE; restarts the window from now.

        Raises:
            ConflictError: Mission is not in LOBBY
        """
        async with database_service.get_session() as session:
            mission = await mission_store.get_mission(session, mission_id)
            await chain_service.require_admin(session, mission.chain_id, actor_id)
            now = utcnow()
            updated = await mission_store.transition(
                session,
                mission.id,
                from_states=(MissionState.LOBBY,),
                to_state=MissionState.CAPTURE,
                values={
                    "starts_at": now,
                    "ends_at": now + timedelta(seconds=mission.window_seconds),
                },
            )
            if updated is None:
                raise ConflictError(f"Mission is {mission.state}; capture can only start from LOBBY")
        return updated

    # =========================================================================
    # READS (with lazy timer evaluation)
    # =========================================================================

    async def evaluate_timer(self, mission_id: IdLike, as_of: Optional[datetime] = None) -> Mission:
        """
        Lock the mission if its capture window has elapsed.

        Returns:
            The current mission, after any timer lock
        """
        now = as_of or utcnow()
        async with database_service.get_session() as session:
            mission = await mission_store.get_mission(session, mission_id)
        if not _is_expired(mission, now):
            return mission

        try:
            return (await self.lock_mission(mission.id, LockReason.TIMER, as_of=now)).mission
        except ConflictError:
            async with database_service.get_session() as session:
                return await mission_store.get_mission(session, mission.id)

    async def get_mission(self, mission_id: IdLike, user_id: IdLike) -> Mission:
        """Member read of a mission, applying timer expiry first."""
        async with database_service.get_session() as session:
            mission = await mission_store.get_mission(session, mission_id)
            await chain_service.require_member(session, mission.chain_id, user_id)
        return await self.evaluate_timer(mission.id)

    async def join_mission(self, mission_id: IdLike, user_id: IdLike) -> JoinResult:
        """
        Join a mission: current state plus who has submitted.

        Raises:
            NotFoundError / AuthorizationError
        """
        mission = await self.get_mission(mission_id, user_id)
        async with database_service.get_session() as session:
            members = await chain_service.list_members(session, mission.chain_id)
            entries = await entry_service.list_entries(session, mission.id)

        submitted = {str(e.user_id) for e in entries}
        presence = [
            Presence(user_id=str(m.user_id), role=m.role, has_submitted=str(m.user_id) in submitted)
            for m in members
        ]
        return JoinResult(mission=mission, presence=presence)

    # =========================================================================
    # ENTRIES
    # =========================================================================

    async def submit_entry(
        self, mission_id: IdLike, user_id: IdLike, payload: Dict[str, Any]
    ) -> SubmitResult:
        """
        Accept a participant's entry and decide the threshold lock.

        The entry upsert and the counter recount run in one transaction that
        first row-locks the open mission, so concurrent entries are counted
        one after another and an entry racing a lock is rejected. The submission that brings the
        count to the threshold requests the lock itself.

        Raises:
            ConflictError: Mission no longer accepts entries (including an
                elapsed window, which is locked on the spot)
            AuthorizationError: Caller is not a chain member
        """
        now = utcnow()
        async with database_service.get_session() as session:
            mission = await mission_store.get_mission(session, mission_id)
            await chain_service.require_member(session, mission.chain_id, user_id)
            expired = _is_expired(mission, now)

        if expired:
            await self.evaluate_timer(mission.id, as_of=now)
            raise ConflictError("The capture window has closed for this mission")
        if mission.state not in (s.value for s in OPEN_STATES):
            raise ConflictError(f"Mission is {mission.state} and no longer accepts entries")

        try:
            async with database_service.get_session() as session:
                if await mission_store.lock_open_mission(session, mission.id) is None:
                    raise ConflictError("Mission locked before the entry was recorded")
                entry = await entry_service.upsert_entry(session, mission.id, user_id, payload)
                counted = await mission_store.recount_submissions(session, mission.id)
                if counted is None:
                    raise ConflictError("Mission locked before the entry was recorded")
                if counted.state == MissionState.LOBBY.value:
                    counted = await mission_store.transition(
                        session, mission.id,
                        from_states=(MissionState.LOBBY,),
                        to_state=MissionState.CAPTURE,
                    ) or await mission_store.get_mission(session, mission.id)
        except IntegrityError:
            raise ConflictError("A concurrent submission for this participant is in progress; retry")

        logger.info(
            f"Entry {entry.id} recorded for mission {mission.id} "
            f"({counted.submissions_received}/{counted.submissions_required})"
        )
        self._dispatch_analysis(entry.id)

        result = SubmitResult(entry=entry, mission=counted)
        if counted.submissions_received >= counted.submissions_required:
            try:
                result.lock = await self.lock_mission(mission.id, LockReason.THRESHOLD)
                result.mission = result.lock.mission
                result.locked = True
            except ConflictError:
                logger.debug(f"Mission {mission.id} was already locked by another trigger")
        return result

    def _dispatch_analysis(self, entry_id: IdLike) -> None:
        if not settings.use_celery:
            logger.debug(f"Celery disabled; entry {entry_id} analysis not queued")
            return
        from ..celery_app import app as celery_app  # noqa: F401
        from ..tasks import analyze_entry_metadata

        try:
            analyze_entry_metadata.delay(str(entry_id))
        except Exception as e:
            # Analysis is optional input to prompt building; the entry stays pending
            logger.error(f"Failed to queue analysis for entry {entry_id}: {e}")

    # =========================================================================
    # LOCK & FUSION
    # =========================================================================

    async def lock_mission(
        self,
        mission_id: IdLike,
        reason: LockReason = LockReason.MANUAL,
        actor_id: Optional[IdLike] = None,
        as_of: Optional[datetime] = None,
    ) -> LockResult:
        """
        Lock a mission (-> FUSING) and request its generation job.

        The state change is committed before the generator is contacted. A
        fusion request that fails is reported in the result (fusion_error)
        and leaves the mission in FUSING for retry_fusion.

        Args:
            mission_id: Mission to lock
            reason: threshold, timer or manual
            actor_id: Admin performing a manual lock (capability checked)
            as_of: Lock time, also the reference for timer expiry (defaults to now)

        Raises:
            ConflictError: Mission is not in LOBBY/CAPTURE, or the threshold is not met
            AuthorizationError: actor_id is not a chain admin
        """
        async with database_service.get_session() as session:
            mission = await mission_store.get_mission(session, mission_id)
            if actor_id is not None:
                await chain_service.require_admin(session, mission.chain_id, actor_id)

            now = as_of or utcnow()
            conditions = []
            if reason == LockReason.THRESHOLD:
                conditions.append(Mission.submissions_received >= Mission.submissions_required)
            elif reason == LockReason.TIMER:
                conditions.append(Mission.ends_at <= now)
            locked = await mission_store.transition(
                session,
                mission.id,
                from_states=OPEN_STATES,
                to_state=MissionState.FUSING,
                values={"locked_at": now, "lock_reason": reason.value},
                conditions=conditions,
            )
            if locked is None:
                current = await mission_store.get_mission(session, mission.id)
                if current.state in (s.value for s in OPEN_STATES):
                    raise ConflictError(f"Lock condition for '{reason.value}' does not hold yet")
                raise ConflictError(f"Mission is already {current.state}; it cannot be locked again")

        logger.info(f"Mission {locked.id} locked ({reason.value})")
        result = LockResult(mission=locked)
        try:
            result.job = await self.request_fusion(locked.id)
        except MissionEngineError as e:
            result.fusion_error = f"{e.kind}: {e.message}"
            logger.error(f"Fusion request for mission {locked.id} failed: {e.message}")
        return result

    async def request_fusion(self, mission_id: IdLike) -> GenerationJob:
        """
        Build the generation inputs from the entries and submit the job.

        Upserts the mission's chapter (title and palette from the entries) and
        records a PENDING job targeting it.

        Raises:
            ConflictError: Mission not FUSING, or it has no entries to fuse
            ValidationFailedError / PermanentExternalError / TransientExternalError:
                From the generation service
        """
        async with database_service.get_session() as session:
            mission = await mission_store.get_mission(session, mission_id)
            if mission.state != MissionState.FUSING.value:
                raise ConflictError(f"Mission is {mission.state}; fusion requires FUSING")

            entries = await entry_service.list_entries(session, mission.id)
            if not entries:
                raise ConflictError("Mission has no entries to fuse")

            summary = aggregate_entries(entries)
            chapter = await self._upsert_chapter(session, mission, summary)
            request = GenerationRequest(
                prompt=build_chapter_prompt(summary, fallback_subject=mission.prompt),
                input_media_urls=summary.media_urls,
                target_id=str(chapter.id),
                mission_id=str(mission.id),
            )

        return await job_tracker.submit(request)

    async def _upsert_chapter(self, session, mission: Mission, summary) -> Chapter:
        result = await session.execute(select(Chapter).where(Chapter.mission_id == mission.id))
        chapter = result.scalar_one_or_none()
        if chapter is None:
            chapter = Chapter(mission_id=mission.id)
            session.add(chapter)
        chapter.title = build_chapter_title(summary, fallback=mission.prompt)
        chapter.final_palette = summary.palette
        await session.flush()
        return chapter

    async def retry_fusion(self, mission_id: IdLike, actor_id: IdLike) -> LockResult:
        """
        Admin recovery for a mission stuck in FUSING.

        - latest job PENDING: conflict, the sweep will resolve it
        - latest job SUCCEEDED: re-apply the completion (idempotent)
        - otherwise (FAILED, or no job was ever recorded): submit a new job
        """
        async with database_service.get_session() as session:
            mission = await mission_store.get_mission(session, mission_id)
            await chain_service.require_admin(session, mission.chain_id, actor_id)
            if mission.state != MissionState.FUSING.value:
                raise ConflictError(f"Mission is {mission.state}; only FUSING missions can retry fusion")
            latest = await job_tracker.latest_job_for_mission(session, mission.id)

        if latest is not None and latest.status == JobStatus.PENDING.value:
            raise ConflictError(f"Generation job {latest.operation_id} is still pending")

        if latest is not None and latest.status == JobStatus.SUCCEEDED.value:
            await self.complete_fusion(latest)
            async with database_service.get_session() as session:
                return LockResult(mission=await mission_store.get_mission(session, mission.id), job=latest)

        job = await self.request_fusion(mission.id)
        logger.info(f"Fusion retried for mission {mission.id}: job {job.operation_id}")
        return LockResult(mission=mission, job=job)

    # =========================================================================
    # COMPLETION
    # =========================================================================

    async def complete_fusion(self, job: GenerationJob) -> bool:
        """
        Apply a SUCCEEDED job: FUSING -> RECAP, chapter update, then fan-out.

        The chapter update, notifications and bridge evaluation run only when
        this call performed the RECAP transition, so they happen once per
        mission and never for a mission archived while it was fusing.

        Returns:
            True if the mission moved to RECAP
        """
        now = utcnow()
        async with database_service.get_session() as session:
            mission = await mission_store.transition(
                session,
                job.mission_id,
                from_states=(MissionState.FUSING,),
                to_state=MissionState.RECAP,
                values={"recap_ready_at": now},
            )
            if mission is None:
                logger.info(f"Mission {job.mission_id} not in FUSING; chapter left untouched")
                return False

            chapter = await session.get(Chapter, job.target_id)
            if chapter is not None:
                chapter.video_url = job.video_url
                chapter.duration_seconds = job.duration_seconds or job.length_seconds
                chapter.generated_at = now
            else:
                logger.warning(f"Chapter {job.target_id} for job {job.operation_id} not found")

            chain = await session.get(Chain, mission.chain_id)
            chain_name = chain.name if chain else "Cali Lights"

        await safe_execute(
            self._notify_chain_recap, mission, chain_name,
            fallback=False, context=f"Recap notification for mission {mission.id}",
        )

        from .bridge_evaluator import bridge_evaluator

        await safe_execute(
            bridge_evaluator.evaluate, mission.id,
            fallback=[], context=f"Bridge evaluation for mission {mission.id}",
        )
        return True

    async def _notify_chain_recap(self, mission: Mission, chain_name: str) -> bool:
        async with database_service.get_session() as session:
            user_ids = await chain_service.list_member_ids(session, [mission.chain_id])
        return await notification_service.notify_recap_ready(user_ids, chain_name, str(mission.id))

    async def notify_mission_start(self, mission: Mission) -> bool:
        async with database_service.get_session() as session:
            user_ids = await chain_service.list_member_ids(session, [mission.chain_id])
        return await notification_service.notify_mission_start(user_ids, mission.prompt, str(mission.id))

    # =========================================================================
    # ARCHIVE
    # =========================================================================

    async def archive_mission(self, mission_id: IdLike, actor_id: IdLike) -> Mission:
        """
        Archive a mission from any non-terminal state and free the chain.

        Raises:
            ConflictError: Mission is already archived
            AuthorizationError: actor_id is not a chain admin
        """
        async with database_service.get_session() as session:
            mission = await mission_store.get_mission(session, mission_id)
            await chain_service.require_admin(session, mission.chain_id, actor_id)
            archived = await mission_store.transition(
                session,
                mission.id,
                from_states=NON_TERMINAL_STATES,
                to_state=MissionState.ARCHIVED,
                values={"archived_at": utcnow()},
            )
            if archived is None:
                raise ConflictError("Mission is already archived")
            await chain_service.clear_active_mission(session, archived.chain_id, archived.id)

        logger.info(f"Mission {archived.id} archived")
        return archived

    # =========================================================================
    # SWEEP
    # =========================================================================

    async def lock_expired_missions(self, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Timer sweep: lock every open mission whose window has elapsed.

        Returns:
            {"checked": int, "locked": int, "errors": int, "timestamp": datetime}
        """
        now = as_of or utcnow()
        async with database_service.get_session() as session:
            expired: List[uuid.UUID] = [
                m.id for m in await mission_store.list_expired_open_missions(session, as_of=now)
            ]

        locked = errors = 0
        for mission_id in expired:
            try:
                await self.lock_mission(mission_id, LockReason.TIMER, as_of=now)
                locked += 1
            except ConflictError:
                logger.debug(f"Mission {mission_id} was locked concurrently")
            except Exception as e:
                errors += 1
                logger.error(f"Failed to lock expired mission {mission_id}: {e}")

        return {"checked": len(expired), "locked": locked, "errors": errors, "timestamp": now}


# Global singleton instance
mission_lifecycle = MissionLifecycleService()
