"""Structured security logging for pool authentication and membership.

Security-relevant events (challenge issuance, authentication outcomes,
duplicate identities, evictions, late cancel acknowledgements) are written as
one JSON object per line to the ``security`` logger and counted through
OpenTelemetry.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from amphibian.observability import record_counter

logger = logging.getLogger(__name__)


class SecurityLogger:
    """Structured security event logger.

    All events include severity, timestamp, and structured context.
    """

    SEVERITY_CRITICAL = "CRITICAL"
    SEVERITY_HIGH = "HIGH"
    SEVERITY_MEDIUM = "MEDIUM"
    SEVERITY_LOW = "LOW"
    SEVERITY_INFO = "INFO"

    def __init__(self, logger: logging.Logger | None = None) -> None:
        """Initialize security logger.

        Args:
            logger: Logger instance (defaults to 'security' logger)
        """
        self.logger = logger or logging.getLogger("security")

    def _log_event(
        self,
        event_type: str,
        severity: str,
        message: str,
        **context: Any,
    ) -> None:
        event = {
            "timestamp": datetime.now(UTC).isoformat(),
            "severity": severity,
            "event_type": event_type,
            "message": message,
            **context,
        }

        self.logger.info(json.dumps(event, default=str))

        record_counter(f"security.{event_type}", 1, {"severity": severity})

    def log_auth_success(self, device_id: str, peer: str, capability: str) -> None:
        """Log a worker that passed the challenge/response handshake."""
        self._log_event(
            event_type="auth_success",
            severity=self.SEVERITY_INFO,
            message=f"Device {device_id} authenticated",
            device_id=device_id,
            peer=peer,
            capability=capability,
        )

    def log_auth_failure(self, reason: str, peer: str, device_id: str | None = None) -> None:
        """Log a rejected handshake.

        Args:
            reason: Failure reason
            peer: Remote address or transport label
            device_id: Claimed identity, when one was presented
        """
        self._log_event(
            event_type="auth_failure",
            severity=self.SEVERITY_MEDIUM,
            message=f"Authentication failed: {reason}",
            peer=peer,
            device_id=device_id,
            reason=reason,
        )

    def log_device_evicted(self, device_id: str, reason: str, consecutive_timeouts: int) -> None:
        """Log a worker removed from the pool for misbehaviour."""
        self._log_event(
            event_type="device_evicted",
            severity=self.SEVERITY_LOW,
            message=f"Device {device_id} evicted: {reason}",
            device_id=device_id,
            reason=reason,
            consecutive_timeouts=consecutive_timeouts,
        )

    def log_cancel_violation(self, device_id: str, chunk_id: str, late_ms: int) -> None:
        """Log a worker that kept streaming after its cancel deadline."""
        self._log_event(
            event_type="cancel_violation",
            severity=self.SEVERITY_LOW,
            message=f"Device {device_id} ignored CANCEL for {chunk_id}",
            device_id=device_id,
            chunk_id=chunk_id,
            late_ms=late_ms,
        )


_global_security_logger: SecurityLogger | None = None


def get_security_logger() -> SecurityLogger:
    """Get global security logger instance.

    Returns:
        SecurityLogger singleton
    """
    global _global_security_logger

    if _global_security_logger is None:
        _global_security_logger = SecurityLogger()

    return _global_security_logger


__all__ = [
    "SecurityLogger",
    "get_security_logger",
]
