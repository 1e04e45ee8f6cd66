# backend/calilights/services/chain_service.py
"""
Chain membership, capability checks and the active-mission pointer.

The active-mission pointer is the scheduler's idempotency guard, so it is only
ever claimed and released through conditional UPDATE statements:

    claim:   SET active_mission_id = :mission WHERE id = :chain AND active_mission_id IS NULL
    release: SET active_mission_id = NULL     WHERE id = :chain AND active_mission_id = :mission

Usage:
    from calilights.services.chain_service import chain_service

    async with database_service.get_session() as session:
        await chain_service.require_admin(session, chain_id, user_id)
        claimed = await chain_service.set_active_mission_if_empty(session, chain_id, mission_id)
"""

import logging
import uuid
from typing import Iterable, List, Optional, Union

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import Chain, ChainConnection, ChainMembership, utcnow
from ..exceptions import AuthorizationError, NotFoundError
from ..models import MemberRole
from ..utils.ids import parse_uuid

logger = logging.getLogger("calilights.chains")

IdLike = Union[str, uuid.UUID]


class ChainService:
    """Data access for chains, memberships and chain connections."""

    # =========================================================================
    # CHAINS & MEMBERSHIP
    # =========================================================================

    async def get_chain(self, session: AsyncSession, chain_id: IdLike) -> Chain:
        """
        Get a chain by id.

        Raises:
            NotFoundError: If the chain does not exist
        """
        chain = await session.get(Chain, parse_uuid(chain_id, "Chain"))
        if chain is None:
            raise NotFoundError(f"Chain {chain_id} not found")
        return chain

    async def get_membership_role(
        self, session: AsyncSession, chain_id: IdLike, user_id: IdLike
    ) -> Optional[str]:
        result = await session.execute(
            select(ChainMembership.role).where(
                ChainMembership.chain_id == parse_uuid(chain_id, "Chain"),
                ChainMembership.user_id == parse_uuid(user_id, "User"),
            )
        )
        return result.scalar_one_or_none()

    async def require_member(self, session: AsyncSession, chain_id: IdLike, user_id: IdLike) -> str:
        """
        Ensure the user belongs to the chain.

        Returns:
            The member's role

        Raises:
            AuthorizationError: If the user is not a member
        """
        role = await self.get_membership_role(session, chain_id, user_id)
        if role is None:
            raise AuthorizationError("You are not a member of this chain")
        return role

    async def require_admin(self, session: AsyncSession, chain_id: IdLike, user_id: IdLike) -> None:
        """
        Ensure the user holds the chain admin capability.

        Raises:
            AuthorizationError: If the user is not a chain admin
        """
        role = await self.get_membership_role(session, chain_id, user_id)
        if role != MemberRole.ADMIN.value:
            raise AuthorizationError("Chain admin role required")

    async def list_members(self, session: AsyncSession, chain_id: IdLike) -> List[ChainMembership]:
        result = await session.execute(
            select(ChainMembership)
            .where(ChainMembership.chain_id == parse_uuid(chain_id, "Chain"))
            .order_by(ChainMembership.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_member_ids(self, session: AsyncSession, chain_ids: Iterable[IdLike]) -> List[str]:
        """Unique member ids across one or more chains, as strings."""
        ids = [parse_uuid(c, "Chain") for c in chain_ids]
        if not ids:
            return []
        result = await session.execute(
            select(ChainMembership.user_id).where(ChainMembership.chain_id.in_(ids))
        )
        seen = []
        for user_id in result.scalars().all():
            if str(user_id) not in seen:
                seen.append(str(user_id))
        return seen

    # =========================================================================
    # ACTIVE MISSION POINTER
    # =========================================================================

    async def set_active_mission_if_empty(
        self, session: AsyncSession, chain_id: IdLike, mission_id: IdLike
    ) -> bool:
        """
        Claim the chain's active-mission pointer.

        Returns:
            True if this call claimed the pointer, False if another mission holds it
        """
        result = await session.execute(
            update(Chain)
            .where(Chain.id == parse_uuid(chain_id, "Chain"), Chain.active_mission_id.is_(None))
            .values(active_mission_id=parse_uuid(mission_id, "Mission"), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def clear_active_mission(
        self, session: AsyncSession, chain_id: IdLike, mission_id: IdLike
    ) -> bool:
        """Release the pointer if, and only if, it still references this mission."""
        result = await session.execute(
            update(Chain)
            .where(
                Chain.id == parse_uuid(chain_id, "Chain"),
                Chain.active_mission_id == parse_uuid(mission_id, "Mission"),
            )
            .values(active_mission_id=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # =========================================================================
    # CONNECTIONS
    # =========================================================================

    async def list_connected_chain_ids(self, session: AsyncSession, chain_id: IdLike) -> List[uuid.UUID]:
        result = await session.execute(
            select(ChainConnection.to_chain_id).where(
                ChainConnection.from_chain_id == parse_uuid(chain_id, "Chain")
            )
        )
        return list(result.scalars().all())

    async def ensure_connection(
        self, session: AsyncSession, chain_a: IdLike, chain_b: IdLike, reason: Optional[str] = None
    ) -> bool:
        """
        Connect two chains in both directions.

        Returns:
            True if at least one direction was newly created
        """
        a = parse_uuid(chain_a, "Chain")
        b = parse_uuid(chain_b, "Chain")
        result = await session.execute(
            select(ChainConnection.from_chain_id, ChainConnection.to_chain_id).where(
                or_(
                    (ChainConnection.from_chain_id == a) & (ChainConnection.to_chain_id == b),
                    (ChainConnection.from_chain_id == b) & (ChainConnection.to_chain_id == a),
                )
            )
        )
        existing = {(row[0], row[1]) for row in result.all()}

        created = False
        for source, target in ((a, b), (b, a)):
            if (source, target) in existing:
                continue
            try:
                async with session.begin_nested():
                    session.add(ChainConnection(from_chain_id=source, to_chain_id=target, reason=reason))
                created = True
            except IntegrityError:
                # Written concurrently by another bridge evaluation
                logger.debug(f"Connection {source} -> {target} already exists")
        if created:
            logger.info(f"Connected chains {a} <-> {b} ({reason})")
        return created


# Global singleton instance
chain_service = ChainService()
