"""
Audit Models for Fintrack

Every mutation of the ledger or of an aggregate is logged for audit
purposes. This provides:
1. Traceability of each balance change back to a user action
2. Debugging information when a multi-step operation fails partway
3. A record of detected version conflicts

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Ledger
    TRANSACTION_RECORDED = "transaction_recorded"
    TRANSACTION_DELETED = "transaction_deleted"
    TRANSACTION_REVERSED = "transaction_reversed"

    # Buckets
    BUCKET_CREATED = "bucket_created"
    BUCKET_UPDATED = "bucket_updated"
    BUCKET_DELETED = "bucket_deleted"
    BUCKET_CAPPED = "bucket_capped"
    BUCKET_REOPENED = "bucket_reopened"
    INCOME_DISTRIBUTED = "income_distributed"

    # Investments
    INVESTMENT_BOUGHT = "investment_bought"
    INVESTMENT_SOLD = "investment_sold"
    POSITION_DECLARED = "position_declared"
    INVESTMENT_UPDATED = "investment_updated"
    INVESTMENT_DELETED = "investment_deleted"

    # Market data
    PRICES_REFRESHED = "prices_refreshed"
    PRICE_REFRESH_THROTTLED = "price_refresh_throttled"

    # Failures
    VALIDATION_FAILED = "validation_failed"
    VERSION_CONFLICT = "version_conflict"
    PARTIAL_APPLICATION = "partial_application"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


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
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
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

    # Context - what entity is this about?
    user_id: Optional[str] = None
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'transaction', 'bucket', 'investment')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., one income and its distribution)"
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
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transaction_recorded(tx, correlation_id)
        event = AuditEventBuilder.bucket_capped(bucket, correlation_id)
    """

    @staticmethod
    def transaction_recorded(
        user_id: str,
        transaction_id: UUID,
        transaction_type: str,
        amount: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_RECORDED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Recorded {transaction_type} of {amount}",
            details={
                "type": transaction_type,
                "amount": amount,
            },
        )

    @staticmethod
    def transaction_deleted(
        user_id: str,
        transaction_id: UUID,
        cascaded: list[UUID],
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_DELETED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Deleted transaction and {len(cascaded)} linked rows",
            details={
                "cascaded": [str(i) for i in cascaded],
            },
        )

    @staticmethod
    def transaction_reversed(
        user_id: str,
        transaction_id: UUID,
        investment_id: UUID,
        quantity_delta: str,
        invested_delta: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_REVERSED,
            user_id=user_id,
            entity_type="investment",
            entity_id=investment_id,
            correlation_id=correlation_id,
            description="Reversed investment transaction (best effort)",
            details={
                "transaction_id": str(transaction_id),
                "quantity_delta": quantity_delta,
                "invested_delta": invested_delta,
            },
        )

    @staticmethod
    def bucket_changed(
        event_type: AuditEventType,
        user_id: str,
        bucket_id: UUID,
        name: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            user_id=user_id,
            entity_type="bucket",
            entity_id=bucket_id,
            correlation_id=correlation_id,
            description=f"Bucket '{name}': {event_type.value.replace('_', ' ')}",
            details=details or {},
        )

    @staticmethod
    def income_distributed(
        user_id: str,
        income_transaction_id: UUID,
        total_allocated: str,
        residual: str,
        bucket_count: int,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INCOME_DISTRIBUTED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=income_transaction_id,
            correlation_id=correlation_id,
            description=f"Distributed {total_allocated} across {bucket_count} buckets",
            details={
                "total_allocated": total_allocated,
                "residual": residual,
                "bucket_count": bucket_count,
            },
        )

    @staticmethod
    def investment_changed(
        event_type: AuditEventType,
        user_id: str,
        investment_id: UUID,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            user_id=user_id,
            entity_type="investment",
            entity_id=investment_id,
            correlation_id=correlation_id,
            description=f"Investment {event_type.value.replace('investment_', '').replace('_', ' ')}",
            details=details or {},
        )

    @staticmethod
    def prices_refreshed(
        user_id: str,
        requested: int,
        updated: int,
        failed: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PRICES_REFRESHED,
            severity=AuditSeverity.WARNING if failed else AuditSeverity.INFO,
            user_id=user_id,
            entity_type="portfolio",
            description=f"Refreshed {updated}/{requested} automated investments",
            details={
                "requested": requested,
                "updated": updated,
                "failed_tickers": failed,
            },
        )

    @staticmethod
    def price_refresh_throttled(
        user_id: str,
        retry_after_minutes: float,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PRICE_REFRESH_THROTTLED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="portfolio",
            description="Portfolio refresh requested during cooldown",
            details={
                "retry_after_minutes": round(retry_after_minutes, 1),
            },
        )

    @staticmethod
    def validation_failed(
        user_id: str,
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Validation failed: {operation}",
            error_message=error_message,
            details={
                "operation": operation,
            },
        )

    @staticmethod
    def version_conflict(
        entity_type: str,
        entity_id: UUID,
        expected_version: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VERSION_CONFLICT,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Concurrent update detected on {entity_type}",
            details={
                "expected_version": expected_version,
            },
        )

    @staticmethod
    def partial_application(
        user_id: str,
        operation: str,
        error_message: str,
        applied: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PARTIAL_APPLICATION,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"{operation} stopped partway after {len(applied)} writes",
            error_message=error_message,
            details={
                "operation": operation,
                "applied": applied,
            },
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
