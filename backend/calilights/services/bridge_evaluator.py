# backend/calilights/services/bridge_evaluator.py
"""
Cross-chain similarity ("bridge") evaluation.

Runs once per successful fusion. The completed mission's signature (union of
its entries' scene/object tags and the circular mean of their dominant hues)
is compared against other chains' missions that became recap-ready within
the bridge window. A candidate matches when it shares at least one tag or its
hue distance is within the threshold.

Each match writes one BridgeEvent (mission pair stored in sorted order under a
unique constraint), connects the two chains in both directions and notifies
the union of both chains' members. A chain pair already bridged within the
dedup window is skipped, so several shared tags or several candidate missions
from the same chain still produce a single event.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Union

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import BridgeEvent, Chain, Mission, utcnow
from ..utils.color import hue_distance
from ..utils.ids import parse_uuid
from ..utils.prompt import aggregate_entries
from ..utils.retry import safe_execute
from .chain_service import chain_service
from .database_service import database_service
from .entry_service import entry_service
from .notification_service import notification_service

logger = logging.getLogger("calilights.bridges")

IdLike = Union[str, uuid.UUID]


@dataclass
class MissionSignature:
    mission_id: uuid.UUID
    chain_id: uuid.UUID
    chain_name: str
    recap_ready_at: Optional[datetime]
    tags: List[str] = field(default_factory=list)
    hue: Optional[float] = None


@dataclass
class BridgeMatch:
    event_id: uuid.UUID
    source_chain_id: uuid.UUID
    target_chain_id: uuid.UUID
    source_chain_name: str
    target_chain_name: str
    shared_tags: List[str]
    hue_delta: Optional[float]


class BridgeEvaluator:
    """Finds and records bridges for a just-completed mission."""

    async def build_signature(self, session: AsyncSession, mission_id: IdLike) -> Optional[MissionSignature]:
        result = await session.execute(
            select(Mission, Chain.name)
            .join(Chain, Chain.id == Mission.chain_id)
            .where(Mission.id == parse_uuid(mission_id, "Mission"))
        )
        row = result.first()
        if row is None:
            return None
        mission, chain_name = row

        summary = aggregate_entries(await entry_service.list_entries(session, mission.id))
        return MissionSignature(
            mission_id=mission.id,
            chain_id=mission.chain_id,
            chain_name=chain_name,
            recap_ready_at=mission.recap_ready_at,
            tags=summary.tags,
            hue=summary.mean_hue,
        )

    async def find_candidate_mission_ids(
        self, session: AsyncSession, signature: MissionSignature
    ) -> List[uuid.UUID]:
        """Other chains' missions recap-ready within the window, most recent first."""
        if signature.recap_ready_at is None:
            return []

        window = timedelta(hours=settings.bridge_window_hours)
        stmt = (
            select(Mission.id)
            .where(
                Mission.chain_id != signature.chain_id,
                Mission.recap_ready_at.is_not(None),
                Mission.recap_ready_at >= signature.recap_ready_at - window,
                Mission.recap_ready_at <= signature.recap_ready_at + window,
            )
            .order_by(Mission.recap_ready_at.desc())
            .limit(settings.bridge_candidate_limit)
        )
        if settings.bridge_connected_only:
            connected = await chain_service.list_connected_chain_ids(session, signature.chain_id)
            if not connected:
                return []
            stmt = stmt.where(Mission.chain_id.in_(connected))

        result = await session.execute(stmt)
        return list(result.scalars().all())

    def compare(self, source: MissionSignature, candidate: MissionSignature):
        """
        Similarity policy.

        Returns:
            (shared_tags, hue_delta, matched)
        """
        candidate_tags = {t.lower() for t in candidate.tags}
        shared = [t for t in source.tags if t.lower() in candidate_tags]
        delta = hue_distance(source.hue, candidate.hue)
        matched = bool(shared) or (delta is not None and delta <= settings.bridge_hue_threshold)
        return shared, delta, matched

    async def _chain_pair_recently_bridged(
        self, session: AsyncSession, chain_a: uuid.UUID, chain_b: uuid.UUID, now: datetime
    ) -> bool:
        since = now - timedelta(hours=settings.bridge_dedup_hours)
        result = await session.execute(
            select(BridgeEvent.id)
            .where(
                or_(
                    and_(BridgeEvent.chain_a_id == chain_a, BridgeEvent.chain_b_id == chain_b),
                    and_(BridgeEvent.chain_a_id == chain_b, BridgeEvent.chain_b_id == chain_a),
                ),
                BridgeEvent.created_at >= since,
            )
            .limit(1)
        )
        return result.first() is not None

    async def _record_event(
        self,
        session: AsyncSession,
        source: MissionSignature,
        candidate: MissionSignature,
        shared_tags: List[str],
        hue_delta: Optional[float],
    ) -> Optional[BridgeEvent]:
        first, second = sorted((source, candidate), key=lambda s: str(s.mission_id))
        event = BridgeEvent(
            mission_a_id=first.mission_id,
            mission_b_id=second.mission_id,
            chain_a_id=first.chain_id,
            chain_b_id=second.chain_id,
            shared_tags=shared_tags,
            hue_delta=hue_delta,
        )
        try:
            async with session.begin_nested():
                session.add(event)
        except IntegrityError:
            logger.debug(f"Bridge for missions {first.mission_id}/{second.mission_id} already recorded")
            return None
        return event

    async def evaluate(self, mission_id: IdLike) -> List[BridgeMatch]:
        """
        Evaluate bridges for a completed mission and notify both chains.

        Returns:
            Matches recorded by this call (empty when nothing matched)
        """
        now = utcnow()
        matches: List[BridgeMatch] = []

        async with database_service.get_session() as session:
            signature = await self.build_signature(session, mission_id)
            if signature is None or signature.recap_ready_at is None:
                return []

            for candidate_id in await self.find_candidate_mission_ids(session, signature):
                candidate = await self.build_signature(session, candidate_id)
                if candidate is None:
                    continue

                shared_tags, hue_delta, matched = self.compare(signature, candidate)
                if not matched:
                    continue
                if await self._chain_pair_recently_bridged(session, signature.chain_id, candidate.chain_id, now):
                    logger.debug(f"Chains {signature.chain_id}/{candidate.chain_id} bridged recently, skipping")
                    continue

                event = await self._record_event(session, signature, candidate, shared_tags, hue_delta)
                if event is None:
                    continue
                await chain_service.ensure_connection(
                    session, signature.chain_id, candidate.chain_id, reason="bridge-event"
                )
                matches.append(
                    BridgeMatch(
                        event_id=event.id,
                        source_chain_id=signature.chain_id,
                        target_chain_id=candidate.chain_id,
                        source_chain_name=signature.chain_name,
                        target_chain_name=candidate.chain_name,
                        shared_tags=shared_tags,
                        hue_delta=hue_delta,
                    )
                )

        logger.info(f"Bridge evaluation for mission {mission_id}: {len(matches)} matches")
        for match in matches:
            await safe_execute(
                self._notify_match, match,
                fallback=False, context=f"Bridge notification {match.event_id}",
            )
        return matches

    async def _notify_match(self, match: BridgeMatch) -> bool:
        async with database_service.get_session() as session:
            user_ids = await chain_service.list_member_ids(
                session, [match.source_chain_id, match.target_chain_id]
            )
        return await notification_service.notify_bridge(
            user_ids,
            match.source_chain_name,
            match.target_chain_name,
            match.shared_tags[0] if match.shared_tags else None,
        )

    async def list_bridges_for_chain(
        self, session: AsyncSession, chain_id: IdLike, limit: int = 20
    ) -> List[BridgeEvent]:
        cid = parse_uuid(chain_id, "Chain")
        result = await session.execute(
            select(BridgeEvent)
            .where(or_(BridgeEvent.chain_a_id == cid, BridgeEvent.chain_b_id == cid))
            .order_by(BridgeEvent.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


# Global singleton instance
bridge_evaluator = BridgeEvaluator()
