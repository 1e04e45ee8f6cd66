# backend/calilights/utils/ids.py
import uuid
from typing import Union

from ..exceptions import NotFoundError


def parse_uuid(value: Union[str, uuid.UUID], label: str = "Resource") -> uuid.UUID:
    """Coerce an id from a path or payload; malformed ids are reported as not found."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(f"{label} {value} not found")
