"""Common helper functions for the service and API layers."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, TypeVar

from fastapi import HTTPException

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

T = TypeVar("T")


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def parse_uuid_or_404(value, label: str) -> uuid.UUID:
    try:
        return coerce_uuid(value)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=f"{label} not found") from exc


def get_or_404(db: Session, model: type[T], id: str, detail: str | None = None, **options) -> T:
    """Get entity by ID or raise 404.

    Args:
        db: Database session
        model: SQLAlchemy model class
        id: Entity ID (string or UUID)
        detail: Custom error message (defaults to "{ModelName} not found")

    Raises:
        HTTPException: 404 if entity not found or the id is not a UUID
    """
    label = model.__name__
    entity = db.get(model, parse_uuid_or_404(id, label), **options)
    if not entity:
        raise HTTPException(status_code=404, detail=detail or f"{label} not found")
    return entity
