"""
Audit Models for Ledger Sync

Every sync round leaves a trail of events: when it started, what it
pulled, what it merged and rejected, and how it ended.
This provides:
1. Traceability of every canonical state change a client made
2. Debugging information when a round aborts
3. A place to surface non-fatal merge rejections to the user

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every phase of the sync protocol has its own event type.
    """
    # Round lifecycle
    ROUND_STARTED = "round_started"
    ROUND_COMMITTED = "round_committed"
    ROUND_ABORTED = "round_aborted"

    # Remote interaction
    LEASE_CONTENTION = "lease_contention"
    NETWORK_RETRY = "network_retry"
    STATE_PULLED = "state_pulled"
    STATE_PUSHED = "state_pushed"

    # Merge
    DIFF_COMPUTED = "diff_computed"
    MERGE_COMPLETED = "merge_completed"
    ITEM_REJECTED = "item_rejected"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - which ledger and client is this about?
    ledger_id: Optional[str] = Field(
        default=None,
        description="Ledger the event relates to"
    )
    client_id: Optional[str] = Field(
        default=None,
        description="Client that ran the round"
    )

    # Correlation - all events of one sync round share it
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate events of one sync round"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "ledger_id": self.ledger_id,
            "client_id": self.client_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }

    def to_record(self) -> list:
        """
        Convert to a flat row for tabular audit storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, ledger_id, client_id,
         correlation_id, description, details_json, error_code, error_message]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.ledger_id or "",
            self.client_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details) if self.details else "",
            self.error_code or "",
            self.error_message or "",
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.state_pulled(ledger_id, client_id, revision, correlation_id)
        event = AuditEventBuilder.round_committed(ledger_id, client_id, revision, applied, correlation_id)
    """

    @staticmethod
    def round_started(
        ledger_id: str,
        client_id: str,
        base_revision: Optional[int],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ROUND_STARTED,
            ledger_id=ledger_id,
            client_id=client_id,
            correlation_id=correlation_id,
            description="Sync round started",
            details={
                "base_revision": base_revision,
            },
        )

    @staticmethod
    def lease_contention(
        ledger_id: str,
        client_id: str,
        attempt: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LEASE_CONTENTION,
            severity=AuditSeverity.WARNING,
            ledger_id=ledger_id,
            client_id=client_id,
            correlation_id=correlation_id,
            description=f"Ledger lease held by another client (attempt {attempt})",
            details={
                "attempt": attempt,
            },
        )

    @staticmethod
    def network_retry(
        ledger_id: str,
        client_id: str,
        operation: str,
        attempt: int,
        error_message: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.NETWORK_RETRY,
            severity=AuditSeverity.WARNING,
            ledger_id=ledger_id,
            client_id=client_id,
            correlation_id=correlation_id,
            description=f"Remote {operation} failed, retrying (attempt {attempt})",
            error_message=error_message,
            details={
                "operation": operation,
                "attempt": attempt,
            },
        )

    @staticmethod
    def state_pulled(
        ledger_id: str,
        client_id: str,
        revision: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STATE_PULLED,
            ledger_id=ledger_id,
            client_id=client_id,
            correlation_id=correlation_id,
            description=f"Canonical state pulled at revision {revision}",
            details={
                "revision": revision,
            },
        )

    @staticmethod
    def diff_computed(
        ledger_id: str,
        client_id: str,
        counts: dict[str, dict[str, int]],
        correlation_id: UUID
    ) -> AuditEvent:
        total = sum(sum(per_kind.values()) for per_kind in counts.values())
        return AuditEvent(
            event_type=AuditEventType.DIFF_COMPUTED,
            ledger_id=ledger_id,
            client_id=client_id,
            correlation_id=correlation_id,
            description=f"Local diff computed with {total} changes",
            details={
                "counts": counts,
            },
        )

    @staticmethod
    def merge_completed(
        ledger_id: str,
        client_id: str,
        assigned: int,
        rejected: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MERGE_COMPLETED,
            ledger_id=ledger_id,
            client_id=client_id,
            correlation_id=correlation_id,
            description=f"Merge assigned {assigned} identifiers, rejected {rejected} items",
            details={
                "assigned": assigned,
                "rejected": rejected,
            },
        )

    @staticmethod
    def item_rejected(
        ledger_id: str,
        client_id: str,
        kind: str,
        item_id: int,
        reason: str,
        detail: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ITEM_REJECTED,
            severity=AuditSeverity.WARNING,
            ledger_id=ledger_id,
            client_id=client_id,
            correlation_id=correlation_id,
            description=f"{kind.capitalize()} {item_id} rejected: {reason}",
            details={
                "kind": kind,
                "item_id": item_id,
                "reason": reason,
                "detail": detail,
            },
        )

    @staticmethod
    def state_pushed(
        ledger_id: str,
        client_id: str,
        revision: int,
        payload_size: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STATE_PUSHED,
            ledger_id=ledger_id,
            client_id=client_id,
            correlation_id=correlation_id,
            description=f"Canonical state pushed as revision {revision}",
            details={
                "revision": revision,
                "payload_size_bytes": payload_size,
            },
        )

    @staticmethod
    def round_committed(
        ledger_id: str,
        client_id: str,
        revision: int,
        applied: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ROUND_COMMITTED,
            ledger_id=ledger_id,
            client_id=client_id,
            correlation_id=correlation_id,
            description=f"Sync round committed at revision {revision}",
            details={
                "revision": revision,
                "applied_changes": applied,
            },
        )

    @staticmethod
    def round_aborted(
        ledger_id: str,
        client_id: str,
        phase: str,
        error_type: str,
        error_message: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ROUND_ABORTED,
            severity=AuditSeverity.ERROR,
            ledger_id=ledger_id,
            client_id=client_id,
            correlation_id=correlation_id,
            description=f"Sync round aborted during {phase}",
            error_code=error_type,
            error_message=error_message,
            details={
                "phase": phase,
            },
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
