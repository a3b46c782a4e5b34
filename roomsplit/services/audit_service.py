"""Audit service for logging billing cycle lifecycle events."""

from sqlalchemy.orm import Session

from roomsplit.models.audit_log import AuditLog


class AuditService:
    """Service for audit log operations.

    Provides static method to create minimal audit log entries.
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
        """Create audit log entry (one-liner).

        The entry joins the caller's transaction; nothing is committed here.

        Args:
            db: Database session
            entity_type: Type of entity ("cycle", "room", etc.)
            entity_id: Primary key of the entity
            action: Action performed ("create", "close", "auto_close", etc.)
            actor_id: Admin who performed the action (None for system actions)
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
        return (
            db.query(AuditLog)
            .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.id.asc())
            .all()
        )


__all__ = ["AuditService"]
