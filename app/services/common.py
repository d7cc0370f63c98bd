"""Common helper functions for service layer."""

from __future__ import annotations

import uuid


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None.

    Raises:
        ValueError: value is not a UUID in any accepted form
    """
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def apply_pagination(query, limit: int, offset: int):
    """Apply pagination to a query.

    Args:
        query: SQLAlchemy query object
        limit: Maximum number of results
        offset: Number of results to skip

    Returns:
        Query with pagination applied
    """
    return query.limit(limit).offset(offset)
