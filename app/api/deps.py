from fastapi import Depends

from app.db import get_db
from app.services.auth_dependencies import require_operator


def get_current_operator(auth=Depends(require_operator)):
    """Get the authenticated operator.

    Returns a dict with operator_id.
    """
    return auth


__all__ = [
    "get_db",
    "get_current_operator",
    "require_operator",
]
