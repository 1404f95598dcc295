"""Error categories shared by every Amphibian component.

Every public operation either returns its documented sentinel (``None`` /
``False``) or raises one of the exceptions below, so callers can branch on
``error.kind`` without knowing which component produced the failure.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

__all__ = [
    "AmphibianError",
    "AuthFailedError",
    "ErrorKind",
    "InputInvalidError",
    "IntegrityError",
    "OperationTimeoutError",
    "PoolExhaustedError",
    "RequestCancelledError",
    "TransportLostError",
    "UnknownMessageError",
]


class ErrorKind(str, Enum):
    """Categories surfaced across public operation boundaries."""

    INPUT_INVALID = "input_invalid"
    AUTH_FAILED = "auth_failed"
    TIMEOUT = "timeout"
    POOL_EXHAUSTED = "pool_exhausted"
    TRANSPORT_LOST = "transport_lost"
    INTEGRITY = "integrity"
    CANCELLED = "cancelled"


class AmphibianError(Exception):
    """Base exception for categorized Amphibian errors."""

    kind: ErrorKind = ErrorKind.INPUT_INVALID

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize error.

        Args:
            message: Human-readable error message
            details: Additional structured context
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary.

        Returns:
            Error dictionary with kind, message and details
        """
        return {
            "error": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class InputInvalidError(AmphibianError):
    """Malformed share code, unknown node or device id, absent link endpoint."""

    kind = ErrorKind.INPUT_INVALID


class UnknownMessageError(InputInvalidError):
    """Wire message carried a ``type`` tag outside the protocol catalogue."""

    def __init__(self, tag: str) -> None:
        super().__init__(f"Unknown message type: {tag}", {"type": tag})
        self.tag = tag


class AuthFailedError(AmphibianError):
    """Bad signature, expired or unknown challenge, duplicate identity."""

    kind = ErrorKind.AUTH_FAILED


class OperationTimeoutError(AmphibianError):
    """Chunk deadline, heartbeat or cancel deadline exceeded."""

    kind = ErrorKind.TIMEOUT


class PoolExhaustedError(AmphibianError):
    """No eligible worker became available within the no-worker timeout."""

    kind = ErrorKind.POOL_EXHAUSTED


class TransportLostError(AmphibianError):
    """Peer disconnected or a frame could not be decoded."""

    kind = ErrorKind.TRANSPORT_LOST


class IntegrityError(AmphibianError):
    """Persisted state or model output failed to parse."""

    kind = ErrorKind.INTEGRITY


class RequestCancelledError(AmphibianError):
    """Raised to awaiters of a request that was cancelled upstream."""

    kind = ErrorKind.CANCELLED
