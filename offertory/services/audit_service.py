"""Audit service for logging state changes."""

from sqlalchemy import select
from sqlalchemy.orm import Session

from offertory.models.audit_log import AuditLog


class AuditService:
    """Service for audit log operations.

    Entries are added to the caller's session and committed together with the
    change they describe.
    """

    @staticmethod
    def log(
        db: Session,
        entity_type: str,
        entity_id: int,
        action: str,
        actor_id: int | None = None,
        changes: dict | None = None,
    ) -> AuditLog:
        """Create audit log entry.

        Args:
            db: Database session
            entity_type: Type of entity ("monetary_record", "entitlement", etc.)
            entity_id: Primary key of the entity
            action: Action performed ("transition", "refund", etc.)
            actor_id: User who performed the action (optional)
            changes: Optional JSON snapshot of changed fields

        Returns:
            Created AuditLog object
        """
        audit = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            changes=changes,
        )
        db.add(audit)
        return audit

    @staticmethod
    def history(db: Session, entity_type: str, entity_id: int) -> list[AuditLog]:
        """Audit entries for one entity, oldest first."""
        return list(
            db.execute(
                select(AuditLog)
                .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
                .order_by(AuditLog.id)
            ).scalars()
        )


__all__ = ["AuditService"]
