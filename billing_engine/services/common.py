"""Shared service utilities: UUID coercion, guarded inserts."""
from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def try_coerce_uuid(value: Any) -> uuid.UUID | None:
    """Like coerce_uuid, but malformed input yields None instead of raising."""
    try:
        return coerce_uuid(value)
    except (TypeError, ValueError, AttributeError):
        return None


def insert_unique(db: Session, item: Any) -> bool:
    """Insert ``item`` inside a SAVEPOINT.

    Returns False when a unique constraint rejects the row; the enclosing
    transaction stays usable and the rejected object is discarded.
    """
    try:
        with db.begin_nested():
            db.add(item)
            db.flush()
    except IntegrityError:
        return False
    return True
