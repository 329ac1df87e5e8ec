# relay/core/errors.py
"""Error taxonomy for the relay.

Every error that may cross a module boundary derives from ``RelayError`` so
the HTTP layer can map it to a status code and a ``{"error": ...}`` body in
one place. Store errors are the exception to the "surface it" rule: the store
adapter catches them itself and degrades (see ``relay.storage.repo``).
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class RelayError(Exception):
    code = "relay_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, **extra: Any) -> None:
        self.message = message
        if code is not None:
            self.code = code
        self.extra: Dict[str, Any] = extra
        super().__init__(message)


class ValidationError(RelayError):
    code = "validation_error"
    status_code = 400


class ProviderError(RelayError):
    """Upstream model call failed or answered with a non-success status."""

    code = "provider_error"
    status_code = 502


class ProviderUnavailable(ProviderError):
    """Network-level failure before any response was obtained; retryable once."""

    code = "provider_unavailable"


class StoreError(RelayError):
    code = "store_error"
    status_code = 500


class RateLimitExceeded(RelayError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, retry_after: int, message: str = "Too many requests") -> None:
        super().__init__(message, retry_after=retry_after)
        self.retry_after = retry_after


class NotFound(RelayError):
    code = "not_found"
    status_code = 404


class ConversationBusy(RelayError):
    code = "conversation_busy"
    status_code = 409
