"""
InvoiceSync error taxonomy.

Record-level errors (ValidationError, TerminalRemoteError) are captured
into batch results. Attempt-level errors (ConfigurationError, AuthError that
survived a refresh) abort the attempt and are turned into a failed log entry
by the orchestrator.
"""
from __future__ import annotations

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class IntegrationError(Exception):
    """Base class for every error raised by the sync framework."""

    retryable: bool = False

    def __init__(self, message: str, *, platform: str = "", status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.platform = platform
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "platform": self.platform,
            "status_code": self.status_code,
        }


class AuthError(IntegrationError):
    """Invalid or expired credential. Only recoverable through a token refresh."""


class SignatureError(AuthError):
    """Inbound webhook signature did not match."""


class TransientNetworkError(IntegrationError):
    """Timeout, connection reset, 408/429 or 5xx."""

    retryable = True


class ValidationError(IntegrationError):
    """A single record failed mapping or required-field validation."""

    def __init__(self, message: str, *, errors: list[str] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or [message]


class TerminalRemoteError(IntegrationError):
    """Remote rejected the request (4xx other than auth/timeout/throttle)."""


class ConfigurationError(IntegrationError):
    """Required configuration is missing. Raised before any network call."""


def error_for_status(status_code: int, body: str = "", platform: str = "") -> IntegrationError | None:
    """Map an HTTP status to the matching error, or None for 2xx/3xx."""
    if status_code < 400:
        return None
    detail = f"HTTP {status_code}: {body[:200]}" if body else f"HTTP {status_code}"
    if status_code in (401, 403):
        return AuthError(detail, platform=platform, status_code=status_code)
    if status_code in RETRYABLE_STATUSES or status_code >= 500:
        return TransientNetworkError(detail, platform=platform, status_code=status_code)
    return TerminalRemoteError(detail, platform=platform, status_code=status_code)
