"""
Audit Logging for OAuth events.
Created: 2026-10-18

Append-only JSONL log of security-relevant authorization server events
(client registration, token issuance, refresh-token reuse, revocation).
Entries never contain full tokens or secrets, only identifiers and prefixes.
"""

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger("audit")


class AuditSeverity(str, Enum):
    INFO = "info"  # Normal operation (e.g. token issued)
    WARNING = "warning"  # Rejected request worth tracking
    ALERT = "alert"  # Security violation (e.g. refresh token replay)


@dataclass
class AuditEvent:
    """A single audit log entry."""

    id: str
    timestamp: str
    severity: AuditSeverity
    actor: str  # client_id, or "server"
    action: str  # e.g. "token_issued", "refresh_token_reuse_detected"
    target: str  # e.g. "client:<id>", "family:<id>"
    status: str  # "success", "block"
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        severity: AuditSeverity,
        actor: str,
        action: str,
        target: str,
        status: str,
        **context: Any,
    ) -> "AuditEvent":
        return cls(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(tz=UTC).isoformat(),
            severity=severity,
            actor=actor,
            action=action,
            target=target,
            status=status,
            context=context,
        )


class AuditLogger:
    """
    Append-only audit logger.
    Writes to <config_dir>/audit.jsonl in JSONL format.
    """

    def __init__(self, log_path: Path | None = None):
        if log_path is None:
            from mcpauth.config import get_config_dir

            log_path = get_config_dir() / "audit.jsonl"
        self.log_path = log_path
        self._callbacks: list[Callable[[dict], None]] = []

    def on_log(self, callback: Callable[[dict], None]) -> None:
        """Register a callback to be called after each audit log write."""
        self._callbacks.append(callback)

    def log(self, event: AuditEvent) -> None:
        """Write an event to the audit log."""
        try:
            event_dict = asdict(event)
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event_dict) + "\n")
            for cb in self._callbacks:
                cb(event_dict)
        except Exception as e:
            # Fall back to the system logger; auditing never breaks a request
            logger.critical("FAILED TO WRITE AUDIT LOG: %s | Event: %s", e, event.action)

    def log_oauth_event(
        self,
        action: str,
        target: str,
        actor: str = "server",
        severity: AuditSeverity = AuditSeverity.INFO,
        status: str = "success",
        **context: Any,
    ) -> str:
        """Helper to log an authorization server event."""
        event = AuditEvent.create(
            severity=severity,
            actor=actor,
            action=action,
            target=target,
            status=status,
            **context,
        )
        self.log(event)
        return event.id


# Singleton
_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def reset_audit_logger() -> None:
    global _audit_logger
    _audit_logger = None
