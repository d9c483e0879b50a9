from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or reference constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class MissingReference(ConstraintViolation):
    """A write pointed at a session, connection or group that does not exist."""


class DuplicateKey(ConstraintViolation):
    """A write collided with a unique key such as (session_id, client_message_id)."""


__all__ = ["ConstraintViolation", "MissingReference", "DuplicateKey"]
