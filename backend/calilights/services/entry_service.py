# backend/calilights/services/entry_service.py
"""
Entry persistence.

One entry per (participant, mission): a resubmission overwrites the media and
resets analysis to pending instead of adding a second row. Analysis results
are written back asynchronously by the entry analysis task.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import Entry, utcnow
from ..models import MetadataStatus
from ..utils.ids import parse_uuid

logger = logging.getLogger("calilights.entries")

IdLike = Union[str, uuid.UUID]

_MEDIA_FIELDS = ("media_url", "media_type", "gps_city", "gps_lat", "gps_lon", "captured_at")


class EntryService:
    """Entry upsert, listing and analysis write-back."""

    async def get_entry(self, session: AsyncSession, entry_id: IdLike) -> Optional[Entry]:
        return await session.get(Entry, parse_uuid(entry_id, "Entry"))

    async def get_user_entry(
        self, session: AsyncSession, mission_id: IdLike, user_id: IdLike
    ) -> Optional[Entry]:
        result = await session.execute(
            select(Entry).where(
                Entry.mission_id == parse_uuid(mission_id, "Mission"),
                Entry.user_id == parse_uuid(user_id, "User"),
            )
        )
        return result.scalar_one_or_none()

    async def upsert_entry(
        self,
        session: AsyncSession,
        mission_id: IdLike,
        user_id: IdLike,
        payload: Dict[str, Any],
    ) -> Entry:
        """
        Insert the participant's entry or overwrite the existing one.

        Args:
            session: Database session
            mission_id: Mission the entry belongs to
            user_id: Submitting participant
            payload: media_url, media_type and optional capture metadata

        Returns:
            The flushed Entry
        """
        entry = await self.get_user_entry(session, mission_id, user_id)
        values = {k: payload.get(k) for k in _MEDIA_FIELDS}
        if not values.get("media_type"):
            values["media_type"] = "photo"

        if entry is None:
            entry = Entry(
                mission_id=parse_uuid(mission_id, "Mission"),
                user_id=parse_uuid(user_id, "User"),
                **values,
            )
            session.add(entry)
        else:
            for key, value in values.items():
                setattr(entry, key, value)
            entry.dominant_hue = None
            entry.palette = []
            entry.scene_tags = []
            entry.object_tags = []
            entry.alt_text = None
            entry.updated_at = utcnow()

        entry.metadata_status = MetadataStatus.PENDING.value
        await session.flush()
        return entry

    async def list_entries(self, session: AsyncSession, mission_id: IdLike) -> List[Entry]:
        result = await session.execute(
            select(Entry)
            .where(Entry.mission_id == parse_uuid(mission_id, "Mission"))
            .order_by(Entry.created_at.asc())
        )
        return list(result.scalars().all())

    async def count_entries(self, session: AsyncSession, mission_id: IdLike) -> int:
        result = await session.execute(
            select(func.count(Entry.id)).where(Entry.mission_id == parse_uuid(mission_id, "Mission"))
        )
        return int(result.scalar() or 0)

    async def apply_analysis(self, session: AsyncSession, entry_id: IdLike, analysis: Dict[str, Any]) -> Optional[Entry]:
        """Store analysis output and mark the entry completed."""
        entry = await self.get_entry(session, entry_id)
        if entry is None:
            logger.warning(f"Entry {entry_id} vanished before analysis was stored")
            return None

        entry.dominant_hue = analysis.get("dominant_hue")
        entry.palette = list(analysis.get("palette") or [])
        entry.scene_tags = list(analysis.get("scene_tags") or [])
        entry.object_tags = list(analysis.get("object_tags") or [])
        entry.alt_text = analysis.get("alt_text")
        entry.metadata_status = MetadataStatus.COMPLETED.value
        entry.updated_at = utcnow()
        await session.flush()
        return entry

    async def mark_analysis_failed(self, session: AsyncSession, entry_id: IdLike) -> None:
        entry = await self.get_entry(session, entry_id)
        if entry is not None:
            entry.metadata_status = MetadataStatus.FAILED.value
            entry.updated_at = utcnow()
            await session.flush()


# Global singleton instance
entry_service = EntryService()
