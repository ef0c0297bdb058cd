"""
Error taxonomy.

Everything the core raises derives from ChatRelayError so the HTTP layer
and the gateway can translate failures without knowing the call site.
Provider errors (ProviderUnavailable, GenerationError and its subclasses)
are normally recovered by falling back to the local heuristic provider and
only reach a caller when fallback is disabled.
"""

from __future__ import annotations


class ChatRelayError(Exception):
    """Base class for all chatrelay errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = "", details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ChatRelayError):
    """Bad caller input. Never retried."""
    code = "VALIDATION_ERROR"
    status_code = 400


class AuthenticationError(ChatRelayError):
    """Missing, unknown or revoked API key."""
    code = "AUTHENTICATION_FAILED"
    status_code = 401


class PermissionDenied(AuthenticationError):
    code = "PERMISSION_DENIED"
    status_code = 403


class RateLimitExceeded(ChatRelayError):
    """Fixed-window budget for a key is spent. Carries the window status."""
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", status=None):
        details = status.to_dict() if status is not None else {}
        super().__init__(message, details)
        self.status = status


class NotFoundError(ChatRelayError):
    code = "NOT_FOUND"
    status_code = 404


class ConversationNotFound(NotFoundError):
    pass


class ContextNotFound(NotFoundError):
    pass


class ProviderUnavailable(ChatRelayError):
    """generate() called on a provider that is not initialized or has a standing error."""
    code = "PROVIDER_UNAVAILABLE"
    status_code = 503


class GenerationError(ChatRelayError):
    """Transport or parse fault while generating a reply."""
    code = "GENERATION_FAILED"
    status_code = 502


class GenerationTimeout(GenerationError, TimeoutError):
    """The backend job did not complete before the deadline."""
    code = "GENERATION_TIMEOUT"
    status_code = 504


class UnparseableResponse(GenerationError):
    """A completed job whose payload matched none of the known response shapes."""
    code = "UNPARSEABLE_RESPONSE"
