"""
Audit Logger

DESIGN DECISION: Every mutation of the ledger or of an aggregate is logged.
This provides:
1. Traceability from a balance back to the user action that changed it
2. Visibility of partial failures and version conflicts
3. Debugging capability

The audit logger:
- Is async so it composes with the storage calls
- Gracefully handles failures (a failed audit write never fails the operation)
- Supports correlation IDs to trace related events
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from fintrack.models.audit import AuditEvent, AuditEventBuilder, AuditEventType
from fintrack.services.storage import AuditStorageInterface


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
    2. The audit store (for persistence), when one is configured
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
        self._logger = structlog.get_logger("fintrack.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
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

    async def log_transaction_recorded(
        self,
        user_id: str,
        transaction_id: UUID,
        transaction_type: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_recorded(
            user_id=user_id,
            transaction_id=transaction_id,
            transaction_type=transaction_type,
            amount=amount,
            correlation_id=correlation_id,
        ))

    async def log_transaction_deleted(
        self,
        user_id: str,
        transaction_id: UUID,
        cascaded: list[UUID],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_deleted(
            user_id=user_id,
            transaction_id=transaction_id,
            cascaded=cascaded,
            correlation_id=correlation_id,
        ))

    async def log_bucket_event(
        self,
        event_type: AuditEventType,
        user_id: str,
        bucket_id: UUID,
        name: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.bucket_changed(
            event_type=event_type,
            user_id=user_id,
            bucket_id=bucket_id,
            name=name,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_investment_event(
        self,
        event_type: AuditEventType,
        user_id: str,
        investment_id: UUID,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.investment_changed(
            event_type=event_type,
            user_id=user_id,
            investment_id=investment_id,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_validation_failed(
        self,
        user_id: str,
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.validation_failed(
            user_id=user_id,
            operation=operation,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_version_conflict(
        self,
        entity_type: str,
        entity_id: UUID,
        expected_version: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.version_conflict(
            entity_type=entity_type,
            entity_id=entity_id,
            expected_version=expected_version,
            correlation_id=correlation_id,
        ))

    async def log_partial_application(
        self,
        user_id: str,
        operation: str,
        error_message: str,
        applied: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.partial_application(
            user_id=user_id,
            operation=operation,
            error_message=error_message,
            applied=applied,
            correlation_id=correlation_id,
        ))

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a user action (e.g. recording an income).
    Pass it through all subsequent operations.
    """
    return uuid4()
