# order_agent/errors.py
"""
Error taxonomy for the ordering agent, plus the mapping used by the HTTP
layer so routes stay thin.

Recoverable errors (delivery, context lookups, reasoning service) are
absorbed by the component that raises them and replaced with a fallback.
Only store-level failures are expected to reach the caller of a turn.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

from fastapi import HTTPException


class OrderAgentError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Outbound delivery
# ---------------------------------------------------------------------------

class DeliveryError(OrderAgentError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """Timeout, connection failure, HTTP 5xx or 429. Retried with backoff."""


class PermanentDeliveryError(DeliveryError):
    """Any other 4xx. Fails the delivery without further attempts."""


# ---------------------------------------------------------------------------
# Context + reasoning
# ---------------------------------------------------------------------------

class ContextLookupError(OrderAgentError):
    """One enrichment lookup failed; the enricher substitutes defaults."""


class ReasoningServiceError(OrderAgentError):
    """Transport failure or timeout talking to the reasoning service."""


class MalformedResponseError(ReasoningServiceError):
    """The reasoning service answered, but not with the JSON we asked for."""


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class RecordNotFoundError(OrderAgentError):
    pass


class SessionNotFoundError(RecordNotFoundError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class ConcurrentModificationError(OrderAgentError):
    """A versioned write lost the race against another writer."""

    def __init__(self, session_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Session {session_id} changed concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.session_id = session_id
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# HTTP mapping: (exception type, status_code). First match wins.
# ---------------------------------------------------------------------------

STATUS_NOT_FOUND = 404
STATUS_CONFLICT = 409
STATUS_INTERNAL_ERROR = 500

ERROR_RULES: List[Tuple[type, int]] = [
    (RecordNotFoundError, STATUS_NOT_FOUND),
    (ConcurrentModificationError, STATUS_CONFLICT),
]


def error_to_http(exc: Exception) -> HTTPException:
    """
    Map an exception raised while handling a request into an HTTPException.
    Unknown errors become 500 with the exception message.
    """
    for exc_type, status_code in ERROR_RULES:
        if isinstance(exc, exc_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=STATUS_INTERNAL_ERROR, detail=str(exc))


