# backend/calilights/services/mission_store.py
"""
Mission persistence.

Every state change is a single conditional UPDATE keyed on the expected prior
state, so concurrent triggers (threshold, timer sweep, admin action) resolve to
exactly one winner; the losers see zero affected rows and no mutation. The
submission counter is likewise recomputed in one statement from the entries
table rather than read, incremented and written back. Entry writers take the
mission row lock first (lock_open_mission), so on PostgreSQL the recount of
the second of two concurrent final entries sees the first one.

Usage:
    from calilights.services.mission_store import mission_store

    async with database_service.get_session() as session:
        mission = await mission_store.transition(
            session, mission_id,
            from_states=OPEN_STATES, to_state=MissionState.FUSING,
            values={"locked_at": utcnow(), "lock_reason": "manual"},
        )
        if mission is None:
            ...  # someone else moved it first
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import Entry, Mission, utcnow
from ..exceptions import NotFoundError
from ..models import MissionState, OPEN_STATES
from ..utils.ids import parse_uuid

logger = logging.getLogger("calilights.missions")

IdLike = Union[str, uuid.UUID]


def open_mission_for_update(mission_id: uuid.UUID):
    """SELECT ... FOR UPDATE of a mission that still accepts entries."""
    return (
        select(Mission)
        .where(Mission.id == mission_id, Mission.state.in_([s.value for s in OPEN_STATES]))
        .with_for_update()
        .execution_options(populate_existing=True)
    )


class MissionStore:
    """Create, read, transition and count missions."""

    # =========================================================================
    # CREATE / READ
    # =========================================================================

    async def create_mission(
        self,
        session: AsyncSession,
        chain_id: IdLike,
        prompt: str,
        window_seconds: int,
        submissions_required: int,
        created_by: Optional[IdLike] = None,
        starts_at: Optional[datetime] = None,
    ) -> Mission:
        """
        Create a mission in LOBBY with its capture window.

        Args:
            session: Database session
            chain_id: Owning chain
            prompt: Prompt text
            window_seconds: Capture window length
            submissions_required: Entry count that triggers an automatic lock
            created_by: Creating user, None for the scheduler
            starts_at: Window start (defaults to now)

        Returns:
            The flushed Mission
        """
        start = starts_at or utcnow()
        mission = Mission(
            chain_id=parse_uuid(chain_id, "Chain"),
            prompt=prompt,
            state=MissionState.LOBBY.value,
            window_seconds=window_seconds,
            submissions_required=submissions_required,
            submissions_received=0,
            starts_at=start,
            ends_at=start + timedelta(seconds=window_seconds),
            created_by=parse_uuid(created_by, "User") if created_by else None,
        )
        session.add(mission)
        await session.flush()
        logger.info(f"Created mission {mission.id} for chain {mission.chain_id} ({window_seconds}s window)")
        return mission

    async def find_mission(self, session: AsyncSession, mission_id: IdLike) -> Optional[Mission]:
        """Fetch a mission, bypassing any stale copy in the identity map."""
        result = await session.execute(
            select(Mission)
            .where(Mission.id == parse_uuid(mission_id, "Mission"))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_mission(self, session: AsyncSession, mission_id: IdLike) -> Mission:
        """
        Get a mission by id.

        Raises:
            NotFoundError: If the mission does not exist
        """
        mission = await self.find_mission(session, mission_id)
        if mission is None:
            raise NotFoundError(f"Mission {mission_id} not found")
        return mission

    async def list_missions_for_chain(
        self, session: AsyncSession, chain_id: IdLike, limit: int = 20
    ) -> List[Mission]:
        result = await session.execute(
            select(Mission)
            .where(Mission.chain_id == parse_uuid(chain_id, "Chain"))
            .order_by(Mission.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_expired_open_missions(
        self, session: AsyncSession, as_of: Optional[datetime] = None, limit: int = 100
    ) -> List[Mission]:
        """Missions still accepting entries whose capture window has elapsed."""
        now = as_of or utcnow()
        result = await session.execute(
            select(Mission)
            .where(
                Mission.state.in_([s.value for s in OPEN_STATES]),
                Mission.ends_at <= now,
            )
            .order_by(Mission.ends_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # =========================================================================
    # CONDITIONAL UPDATES
    # =========================================================================

    async def transition(
        self,
        session: AsyncSession,
        mission_id: IdLike,
        from_states: Sequence[MissionState],
        to_state: MissionState,
        values: Optional[Dict[str, Any]] = None,
        conditions: Iterable = (),
    ) -> Optional[Mission]:
        """
        Move a mission between states in one conditional UPDATE.

        Args:
            session: Database session
            mission_id: Mission to move
            from_states: States the mission must currently be in
            to_state: New state
            values: Extra columns to set (timestamps, lock reason)
            conditions: Extra WHERE clauses evaluated atomically with the state check

        Returns:
            The refreshed Mission, or None if the preconditions did not hold
        """
        mid = parse_uuid(mission_id, "Mission")
        stmt = (
            update(Mission)
            .where(
                Mission.id == mid,
                Mission.state.in_([s.value for s in from_states]),
                *conditions,
            )
            .values(state=to_state.value, updated_at=utcnow(), **(values or {}))
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            logger.debug(
                f"Mission {mid} transition to {to_state.value} rejected "
                f"(expected one of {[s.value for s in from_states]})"
            )
            return None

        logger.info(f"Mission {mid} -> {to_state.value}")
        return await self.find_mission(session, mid)

    async def lock_open_mission(self, session: AsyncSession, mission_id: IdLike) -> Optional[Mission]:
        """
        Row-lock a mission that still accepts entries, for the rest of the transaction.

        Concurrent entry writers queue here, so each recount runs after the
        previous writer committed. Returns None if the mission has left
        LOBBY/CAPTURE. SQLite has no row locks; its BEGIN IMMEDIATE already
        serializes writers.
        """
        result = await session.execute(open_mission_for_update(parse_uuid(mission_id, "Mission")))
        return result.scalar_one_or_none()

    async def recount_submissions(self, session: AsyncSession, mission_id: IdLike) -> Optional[Mission]:
        """
        Set submissions_received to the current entry count.

        The UPDATE is guarded on the mission still accepting entries, so an
        entry written after a concurrent lock is detected (None is returned)
        and the caller's transaction can be rolled back.
        """
        mid = parse_uuid(mission_id, "Mission")
        entry_count = (
            select(func.count(Entry.id))
            .where(Entry.mission_id == Mission.id)
            .scalar_subquery()
        )
        result = await session.execute(
            update(Mission)
            .where(Mission.id == mid, Mission.state.in_([s.value for s in OPEN_STATES]))
            .values(submissions_received=entry_count, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self.find_mission(session, mid)


# Global singleton instance
mission_store = MissionStore()
