# backend/calilights/database/__init__.py
"""
Database package for CaliLights.

Engine tables and the declarative base. Sessions come from services.database_service.
"""

from .base import Base
from .models import (
    BridgeEvent,
    Chain,
    ChainConnection,
    ChainMembership,
    Chapter,
    Entry,
    GenerationJob,
    Mission,
    MissionSchedule,
    User,
    utcnow,
)

__all__ = [
    "Base",
    "BridgeEvent",
    "Chain",
    "ChainConnection",
    "ChainMembership",
    "Chapter",
    "Entry",
    "GenerationJob",
    "Mission",
    "MissionSchedule",
    "User",
    "utcnow",
]
