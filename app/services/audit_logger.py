from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.models.audit import AuditLog


def log_audit(
    db: Session,
    *,
    tenant_id: str,
    performed_by: Optional[str],
    entity_type: str,
    entity_id: Any,
    action: str,
    old_value: Optional[Dict[str, Any]] = None,
    new_value: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Add one audit event to the current transaction.
    Never commits: the row lands or rolls back with the business change.
    """
    log = AuditLog(
        tenant_id=tenant_id,
        performed_by=performed_by,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        old_value=old_value,
        new_value=new_value,
    )
    db.add(log)
    db.flush()
    return log
