# backend/calilights/services/schedule_service.py
"""
Auto-start schedules and the scheduler sweep.

Each chain may carry one MissionSchedule: an enabled flag, a local time of
day ("HH:MM") in an IANA timezone, a prompt template and a capture window.
The sweep runs on an external cadence (Celery beat or the cron endpoint) and,
for every chain with no active mission and an enabled, complete schedule,
starts a mission when the wall clock is within the tolerance of the scheduled
instant.

The sweep keeps no timestamp bookkeeping. Repeated or overlapping runs inside
the tolerance window are absorbed by the chain's active-mission pointer,
which mission creation claims with a conditional update; the loser of a race
rolls back its mission and is counted as skipped.

Usage:
    from calilights.services.schedule_service import schedule_service

    result = await schedule_service.check_schedules()
    # {"checked": 4, "started": 1, "skipped": 0, "errors": 0, "timestamp": ...}
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import Chain, MissionSchedule, utcnow
from ..exceptions import ConflictError, NotFoundError, ValidationFailedError
from ..utils.ids import parse_uuid
from ..utils.retry import safe_execute
from .chain_service import chain_service
from .database_service import database_service

logger = logging.getLogger("calilights.scheduler")

IdLike = Union[str, uuid.UUID]


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationFailedError(f"Unknown timezone '{name}'")


def _parse_time_of_day(value: str) -> Tuple[int, int]:
    try:
        hour_text, minute_text = value.split(":")
        hour, minute = int(hour_text), int(minute_text)
    except (AttributeError, ValueError):
        raise ValidationFailedError(f"Invalid time of day '{value}', expected HH:MM")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValidationFailedError(f"Invalid time of day '{value}', expected HH:MM")
    return hour, minute


def scheduled_instant(local_date, time_of_day: str, tz_name: str) -> datetime:
    """The naive-UTC instant of ``time_of_day`` on ``local_date`` in ``tz_name``."""
    hour, minute = _parse_time_of_day(time_of_day)
    tz = _zone(tz_name)
    local = datetime(local_date.year, local_date.month, local_date.day, hour, minute, tzinfo=tz)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def scheduled_instant_near(
    as_of: datetime, time_of_day: str, tz_name: str, tolerance_minutes: int
) -> Optional[datetime]:
    """
    The scheduled instant within ``tolerance_minutes`` of ``as_of``, if any.

    The local dates either side of today are checked as well, so a target
    near midnight still matches when the sweep runs just across the date line.
    """
    tz = _zone(tz_name)
    local_today = as_of.replace(tzinfo=timezone.utc).astimezone(tz).date()
    tolerance = timedelta(minutes=tolerance_minutes)
    for offset in (-1, 0, 1):
        instant = scheduled_instant(local_today + timedelta(days=offset), time_of_day, tz_name)
        if abs(as_of - instant) <= tolerance:
            return instant
    return None


def compute_next_run(schedule: MissionSchedule, as_of: Optional[datetime] = None) -> Optional[datetime]:
    """Next scheduled instant at or after ``as_of`` (naive UTC), None if disabled or incomplete."""
    if not schedule.enabled or not schedule.auto_start_at:
        return None
    now = as_of or utcnow()
    tz = _zone(schedule.timezone or "UTC")
    local_today = now.replace(tzinfo=timezone.utc).astimezone(tz).date()
    for offset in (0, 1, 2):
        instant = scheduled_instant(local_today + timedelta(days=offset), schedule.auto_start_at, schedule.timezone)
        if instant >= now:
            return instant
    return None


def is_schedule_complete(schedule: MissionSchedule) -> bool:
    return bool(
        schedule.auto_start_at
        and schedule.prompt_template
        and schedule.prompt_template.strip()
        and schedule.window_seconds
        and schedule.timezone
    )


class ScheduleService:
    """
    Service for chain auto-start schedules.

    Provides CRUD for the per-chain schedule and the periodic sweep that
    turns due schedules into missions.
    """

    # =========================================================================
    # CRUD Operations
    # =========================================================================

    async def get_schedule(self, session: AsyncSession, chain_id: IdLike) -> Optional[MissionSchedule]:
        """
        Get a chain's schedule.

        Args:
            session: Database session
            chain_id: Chain UUID

        Returns:
            MissionSchedule if configured, None otherwise
        """
        result = await session.execute(
            select(MissionSchedule).where(MissionSchedule.chain_id == parse_uuid(chain_id, "Chain"))
        )
        return result.scalar_one_or_none()

    async def upsert_schedule(
        self,
        session: AsyncSession,
        chain_id: IdLike,
        actor_id: IdLike,
        auto_start_at: str,
        prompt_template: str,
        window_seconds: int,
        tz_name: str = "UTC",
        enabled: bool = True,
        submissions_required: Optional[int] = None,
    ) -> MissionSchedule:
        """
        Create or replace a chain's schedule (chain admins only).

        Raises:
            NotFoundError: Unknown chain
            AuthorizationError: actor_id is not a chain admin
            ValidationFailedError: Bad time of day, timezone, window or template
        """
        chain = await chain_service.get_chain(session, chain_id)
        await chain_service.require_admin(session, chain.id, actor_id)

        _parse_time_of_day(auto_start_at)
        _zone(tz_name)
        if not prompt_template or len(prompt_template.strip()) < 4:
            raise ValidationFailedError("Prompt template must be at least 4 characters")
        min_s = settings.mission_min_window_minutes * 60
        max_s = settings.mission_max_window_minutes * 60
        if window_seconds < min_s or window_seconds > max_s:
            raise ValidationFailedError(
                f"Capture window must be between {settings.mission_min_window_minutes} "
                f"and {settings.mission_max_window_minutes} minutes"
            )

        schedule = await self.get_schedule(session, chain.id)
        if schedule is None:
            schedule = MissionSchedule(chain_id=chain.id)
            session.add(schedule)

        schedule.enabled = enabled
        schedule.auto_start_at = auto_start_at
        schedule.timezone = tz_name
        schedule.prompt_template = prompt_template.strip()
        schedule.window_seconds = window_seconds
        schedule.submissions_required = submissions_required
        schedule.updated_by = parse_uuid(actor_id, "User")
        schedule.updated_at = utcnow()
        await session.flush()

        logger.info(
            f"Schedule for chain {chain.id} set to {auto_start_at} {tz_name} "
            f"({'enabled' if enabled else 'disabled'})"
        )
        return schedule

    async def delete_schedule(self, session: AsyncSession, chain_id: IdLike, actor_id: IdLike) -> None:
        """
        Remove a chain's schedule (chain admins only).

        Raises:
            NotFoundError: Unknown chain or no schedule configured
        """
        chain = await chain_service.get_chain(session, chain_id)
        await chain_service.require_admin(session, chain.id, actor_id)
        schedule = await self.get_schedule(session, chain.id)
        if schedule is None:
            raise NotFoundError(f"Chain {chain.id} has no schedule")
        await session.delete(schedule)
        await session.flush()
        logger.info(f"Schedule for chain {chain.id} deleted")

    # =========================================================================
    # Sweep
    # =========================================================================

    async def list_idle_schedules(self, session: AsyncSession) -> List[MissionSchedule]:
        """Enabled schedules of chains without an active mission."""
        result = await session.execute(
            select(MissionSchedule)
            .join(Chain, Chain.id == MissionSchedule.chain_id)
            .where(Chain.active_mission_id.is_(None), MissionSchedule.enabled.is_(True))
            .order_by(MissionSchedule.chain_id)
        )
        return list(result.scalars().all())

    async def check_schedules(self, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Start due missions for idle chains.

        Each chain is evaluated in its own try block; a failure is logged and
        counted and the sweep continues with the next chain. Only a failure to
        read the schedules at all propagates.

        Returns:
            {"checked": int, "started": int, "skipped": int, "errors": int, "timestamp": datetime}
        """
        from .mission_lifecycle import mission_lifecycle

        now = as_of or utcnow()
        async with database_service.get_session() as session:
            schedules = await self.list_idle_schedules(session)
            # Detach plain values so the session can close before any mission is created
            candidates = [
                {
                    "chain_id": s.chain_id,
                    "auto_start_at": s.auto_start_at,
                    "timezone": s.timezone,
                    "prompt_template": s.prompt_template,
                    "window_seconds": s.window_seconds,
                    "submissions_required": s.submissions_required,
                    "complete": is_schedule_complete(s),
                }
                for s in schedules
            ]

        started = skipped = errors = 0
        for candidate in candidates:
            chain_id = candidate["chain_id"]
            if not candidate["complete"]:
                skipped += 1
                logger.debug(f"Schedule for chain {chain_id} is incomplete, skipping")
                continue

            try:
                due = scheduled_instant_near(
                    now,
                    candidate["auto_start_at"],
                    candidate["timezone"],
                    settings.schedule_tolerance_minutes,
                )
                if due is None:
                    continue

                mission = await mission_lifecycle.create_mission(
                    chain_id,
                    candidate["prompt_template"],
                    candidate["window_seconds"],
                    submissions_required=candidate["submissions_required"],
                    created_by=None,
                    as_of=now,
                )
            except ConflictError as e:
                skipped += 1
                logger.info(f"Chain {chain_id} already has an active mission: {e.message}")
                continue
            except Exception as e:
                errors += 1
                logger.error(f"Failed to evaluate schedule for chain {chain_id}: {e}")
                continue

            started += 1
            logger.info(f"Scheduler started mission {mission.id} for chain {chain_id} (due {due})")
            await safe_execute(
                mission_lifecycle.notify_mission_start, mission,
                fallback=False, context=f"Mission start notification {mission.id}",
            )

        if candidates:
            logger.info(
                f"Schedule sweep: checked={len(candidates)} started={started} "
                f"skipped={skipped} errors={errors}"
            )
        return {
            "checked": len(candidates),
            "started": started,
            "skipped": skipped,
            "errors": errors,
            "timestamp": now,
        }


# Global singleton instance
schedule_service = ScheduleService()
