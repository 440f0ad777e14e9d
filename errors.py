"""Typed errors raised by the service layer and mapped to HTTP by ``app``."""
from typing import Dict, Optional
from uuid import uuid4


class StudyBuddyError(Exception):
    """Base class for all domain errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, object]:
        return {"detail": self.message}


class ValidationFailed(StudyBuddyError):
    """Missing or malformed input. ``fields`` maps field paths to messages."""

    status_code = 400

    def __init__(self, message: str, fields: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.fields = dict(fields or {})

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"detail": self.message}
        if self.fields:
            payload["fields"] = self.fields
        return payload


class ConflictError(StudyBuddyError):
    status_code = 400


class UnauthorizedError(StudyBuddyError):
    status_code = 401


class ForbiddenError(StudyBuddyError):
    status_code = 403


class NotFoundError(StudyBuddyError):
    status_code = 404


class UpstreamServiceError(StudyBuddyError):
    """An external provider failed or timed out."""

    status_code = 503

    def __init__(self, message: str, correlation_id: Optional[str] = None):
        super().__init__(message)
        self.correlation_id = correlation_id or uuid4().hex[:12]

    def to_dict(self) -> Dict[str, object]:
        return {"detail": self.message, "correlationId": self.correlation_id}
