from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A store write broke a uniqueness or ownership constraint.

    Raised for duplicate emails and for rows whose parent (user, project,
    chat) no longer exists. The HTTP layer answers these with 409.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})


__all__ = ["ConstraintViolation"]
