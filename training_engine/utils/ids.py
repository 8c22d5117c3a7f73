"""
Identifier coercion
"""
import uuid
from typing import Union

from training_engine.exceptions import NotFoundError


def to_uuid(value: Union[str, uuid.UUID], kind: str = "record") -> uuid.UUID:
    """Accept a UUID or its string form; anything else cannot name a row"""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(f"{kind.capitalize()} not found: {value}")
