"""Error taxonomy shared by the feedback services.

Every failure the core surfaces to a caller is one of these; the HTTP layer
maps them onto status codes and renders ``{"error": code, "detail": message}``.
"""
from __future__ import annotations


class FeedbackError(Exception):
    status_code = 500
    default_code = "internal_error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class ValidationError(FeedbackError):
    status_code = 400
    default_code = "invalid_request"


class AuthenticationError(FeedbackError):
    status_code = 401
    default_code = "invalid_credentials"


class AuthorizationError(FeedbackError):
    status_code = 403
    default_code = "scope_mismatch"


class NotFoundError(FeedbackError):
    status_code = 404
    default_code = "not_found"


class StateConflictError(FeedbackError):
    status_code = 409
    default_code = "state_conflict"
