from sqlalchemy.orm import Session
from ..core.correlation import get_correlation_id
from ..db.models import SyncAuditLog


class AuditService:
    """Append-only local audit trail for queue and sync events"""

    def log(
        self,
        db: Session,
        action: str,
        resource_type: str,
        resource_id: str,
        result: str,
        metadata: dict | None = None,
        correlation_id: str | None = None,
    ) -> None:
        """
        Write audit log entry

        Args:
            db: Database session
            action: Action performed (e.g., "queue.enqueue", "sync.cycle")
            resource_type: Partition or resource (e.g., "pendingEvidenceBags")
            resource_id: Record identifier
            result: Outcome (success, failure, dead_lettered)
            metadata: Additional metadata
            correlation_id: Defaults to the current request / sync-cycle id
        """
        entry = SyncAuditLog(
            correlation_id=correlation_id or get_correlation_id() or "local",
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            result=result,
            audit_metadata=metadata,
        )
        db.add(entry)
        # Commit is handled by caller


# Singleton
audit_service = AuditService()
