"""
Audit Logger

DESIGN DECISION: Every phase of a sync round is logged.
This provides:
1. Complete traceability of what a client pushed and when
2. Debugging capability when a round aborts
3. A record of items the merge rejected, for the user to review

The audit logger:
- Is async to not block the sync round
- Gracefully handles failures (a broken audit store never aborts a round)
- Supports correlation IDs to trace all events of one round
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from ledger_sync.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from ledger_sync.models.sync import RejectedItem
from ledger_sync.services.storage.interface import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An audit store, if one is configured (for persistence)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("ledger_sync.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity is AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity is AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_round_started(
        self,
        ledger_id: str,
        client_id: str,
        base_revision: Optional[int],
        correlation_id: UUID,
    ) -> None:
        """Log the start of a sync round."""
        await self.log(AuditEventBuilder.round_started(
            ledger_id=ledger_id,
            client_id=client_id,
            base_revision=base_revision,
            correlation_id=correlation_id,
        ))

    async def log_lease_contention(
        self,
        ledger_id: str,
        client_id: str,
        attempt: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.lease_contention(
            ledger_id=ledger_id,
            client_id=client_id,
            attempt=attempt,
            correlation_id=correlation_id,
        ))

    async def log_network_retry(
        self,
        ledger_id: str,
        client_id: str,
        operation: str,
        attempt: int,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log a failed remote call that is about to be retried."""
        await self.log(AuditEventBuilder.network_retry(
            ledger_id=ledger_id,
            client_id=client_id,
            operation=operation,
            attempt=attempt,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_state_pulled(
        self,
        ledger_id: str,
        client_id: str,
        revision: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.state_pulled(
            ledger_id=ledger_id,
            client_id=client_id,
            revision=revision,
            correlation_id=correlation_id,
        ))

    async def log_diff_computed(
        self,
        ledger_id: str,
        client_id: str,
        counts: dict[str, dict[str, int]],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.diff_computed(
            ledger_id=ledger_id,
            client_id=client_id,
            counts=counts,
            correlation_id=correlation_id,
        ))

    async def log_merge_completed(
        self,
        ledger_id: str,
        client_id: str,
        assigned: int,
        rejected: list[RejectedItem],
        correlation_id: UUID,
    ) -> None:
        """Log merge completion, plus one event per rejected item."""
        await self.log(AuditEventBuilder.merge_completed(
            ledger_id=ledger_id,
            client_id=client_id,
            assigned=assigned,
            rejected=len(rejected),
            correlation_id=correlation_id,
        ))
        for item in rejected:
            await self.log(AuditEventBuilder.item_rejected(
                ledger_id=ledger_id,
                client_id=client_id,
                kind=item.kind.value,
                item_id=item.item_id,
                reason=item.reason.value,
                detail=item.detail,
                correlation_id=correlation_id,
            ))

    async def log_state_pushed(
        self,
        ledger_id: str,
        client_id: str,
        revision: int,
        payload_size: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.state_pushed(
            ledger_id=ledger_id,
            client_id=client_id,
            revision=revision,
            payload_size=payload_size,
            correlation_id=correlation_id,
        ))

    async def log_round_committed(
        self,
        ledger_id: str,
        client_id: str,
        revision: int,
        applied: int,
        correlation_id: UUID,
    ) -> None:
        """Log a successfully committed round."""
        await self.log(AuditEventBuilder.round_committed(
            ledger_id=ledger_id,
            client_id=client_id,
            revision=revision,
            applied=applied,
            correlation_id=correlation_id,
        ))

    async def log_round_aborted(
        self,
        ledger_id: str,
        client_id: str,
        phase: str,
        error: BaseException,
        correlation_id: UUID,
    ) -> None:
        """Log an aborted round with the error that caused it."""
        await self.log(AuditEventBuilder.round_aborted(
            ledger_id=ledger_id,
            client_id=client_id,
            phase=phase,
            error_type=type(error).__name__,
            error_message=str(error) or type(error).__name__,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a sync round.
    Pass it through all subsequent operations.
    """
    return uuid4()
