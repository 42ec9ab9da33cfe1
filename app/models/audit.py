from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    JSON,
    Index,
)

from app.db.base import Base
from app.utils.timezone import utcnow


class AuditLog(Base):
    """
    Per-tenant audit log.
    Every state transition in the pharmacy core writes here, inside the
    same transaction as the change it describes.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_entity", "tenant_id", "entity_type", "entity_id"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
            "mysql_collate": "utf8mb4_unicode_ci",
        },
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    performed_by = Column(String(64), nullable=True)  # system jobs may be null
    action = Column(String(40), nullable=False)  # CREATE / APPROVE / CANCEL / STATUS_CHANGE ...

    entity_type = Column(String(60), nullable=False)
    entity_id = Column(String(100), nullable=False)  # generic pk, stored as string

    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
