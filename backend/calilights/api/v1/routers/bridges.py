# backend/calilights/api/v1/routers/bridges.py
"""Bridge events involving a chain."""

from typing import List

from fastapi import APIRouter, Depends, Query

from ....database.models import User
from ....dependencies import get_current_user
from ....models import BridgeEventResponse
from ....services.bridge_evaluator import bridge_evaluator
from ....services.chain_service import chain_service
from ....services.database_service import database_service
from ..serializers import bridge_to_response

router = APIRouter(tags=["bridges"])


@router.get(
    "/chains/{chain_id}/bridges",
    response_model=List[BridgeEventResponse],
    summary="List chain bridges",
    description="Most recent bridge events in which the chain takes part.",
)
async def list_chain_bridges(
    chain_id: str,
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
) -> List[BridgeEventResponse]:
    async with database_service.get_session() as session:
        chain = await chain_service.get_chain(session, chain_id)
        await chain_service.require_member(session, chain.id, current_user.id)
        events = await bridge_evaluator.list_bridges_for_chain(session, chain.id, limit=limit)
        return [bridge_to_response(e) for e in events]
