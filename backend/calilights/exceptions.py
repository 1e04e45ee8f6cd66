# backend/calilights/exceptions.py
"""
Error taxonomy for the mission engine.

Services raise these; the API layer renders them as
``{"error": {"kind": ..., "message": ...}}`` with the matching status code,
and the retry executor uses ``retryable`` to decide whether to try again.

Kinds:
    validation              malformed input, rejected before any side effect
    forbidden               caller lacks the chain capability
    not_found               unknown id
    conflict                state precondition violated, nothing mutated
    external_unavailable    transient provider failure (after retries)
    external_misconfigured  provider missing configuration or rejecting input
"""

from typing import Optional


class MissionEngineError(Exception):
    """Base class for all domain errors."""

    kind = "internal"
    status_code = 500
    retryable = False

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if kind:
            self.kind = kind


class ValidationFailedError(MissionEngineError):
    kind = "validation"
    status_code = 422


class AuthorizationError(MissionEngineError):
    kind = "forbidden"
    status_code = 403


class NotFoundError(MissionEngineError):
    kind = "not_found"
    status_code = 404


class ConflictError(MissionEngineError):
    kind = "conflict"
    status_code = 409


class ExternalServiceError(MissionEngineError):
    """Failure talking to a generation, analysis or notification provider."""

    def __init__(self, message: str, service: str = "external", kind: Optional[str] = None):
        super().__init__(message, kind=kind)
        self.service = service


class TransientExternalError(ExternalServiceError):
    kind = "external_unavailable"
    status_code = 503
    retryable = True


class PermanentExternalError(ExternalServiceError):
    kind = "external_misconfigured"
    status_code = 502
