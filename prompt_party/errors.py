"""
Error taxonomy for the game core.

Every mutating operation checks all of its preconditions before writing,
so raising one of these always means nothing was changed.
"""
from enum import Enum
from typing import Optional


class GameError(Exception):
    """Base class for errors surfaced to callers as structured failures."""

    status_code = 400
    code = "game_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        payload = {"error": self.code, "detail": self.message}
        if self.context:
            payload.update(self.context)
        return payload


class ValidationError(GameError):
    """Malformed or out-of-range input (empty text, duplicate player, full game)."""
    status_code = 400
    code = "validation_error"


class StateError(GameError):
    """Operation is not valid for the game's current status."""
    status_code = 409
    code = "state_error"


class AuthorizationError(GameError):
    """Invalid session, or a valid session acting out of turn."""
    status_code = 403
    code = "authorization_error"


class NotFoundError(GameError):
    status_code = 404
    code = "not_found"


class ConflictError(GameError):
    """The stored revision moved on between read and write."""
    status_code = 409
    code = "conflict"


class GenerationFailureKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    BILLING = "billing"
    CONTENT_POLICY = "content_policy"
    INVALID_CREDENTIAL = "invalid_credential"
    OTHER = "other"


_KIND_STATUS = {
    GenerationFailureKind.RATE_LIMITED: 429,
    GenerationFailureKind.BILLING: 402,
    GenerationFailureKind.CONTENT_POLICY: 400,
    GenerationFailureKind.INVALID_CREDENTIAL: 401,
    GenerationFailureKind.OTHER: 502,
}


class ExternalServiceError(GameError):
    """Image generation failed. Passed through to the caller untouched."""

    code = "external_service_error"

    def __init__(self, message: str, kind: GenerationFailureKind = GenerationFailureKind.OTHER,
                 retry_after: Optional[float] = None):
        super().__init__(message, kind=kind.value)
        self.kind = kind
        self.retry_after = retry_after

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return _KIND_STATUS.get(self.kind, 502)
