"""
Audit Logging Service
Records financial operations in the same transaction as the change itself
"""
from sqlalchemy.orm import Session
from sqlalchemy import desc
from typing import Optional, List, Dict
import json
import logging

from ledgerbook.models import AuditLog

logger = logging.getLogger(__name__)


class AuditAction:
    """Constants for audit actions"""
    # Documents
    DOCUMENT_CREATED = "DOCUMENT_CREATED"
    DOCUMENT_UPDATED = "DOCUMENT_UPDATED"
    DOCUMENT_ITEMS_REPLACED = "DOCUMENT_ITEMS_REPLACED"
    DOCUMENT_POSTED = "DOCUMENT_POSTED"
    DOCUMENT_CANCELLED = "DOCUMENT_CANCELLED"

    # Payments
    PAYMENT_RECORDED = "PAYMENT_RECORDED"
    PAYMENT_UPDATED = "PAYMENT_UPDATED"
    PAYMENT_REALLOCATED = "PAYMENT_REALLOCATED"
    PAYMENT_DELETED = "PAYMENT_DELETED"
    ADVANCE_APPLIED = "ADVANCE_APPLIED"

    # Journals
    JOURNAL_POSTED = "JOURNAL_POSTED"
    JOURNAL_CANCELLED = "JOURNAL_CANCELLED"

    # Settings
    SEQUENCES_SAVED = "SEQUENCES_SAVED"


class AuditService:
    """Service for recording and retrieving audit logs"""

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[int] = None,
        description: Optional[str] = None,
        new_values: Optional[Dict] = None,
        username: Optional[str] = None,
        company_id: Optional[int] = None,
    ) -> AuditLog:
        """
        Create an audit log entry. Flushed, not committed: it becomes
        visible only if the surrounding transaction commits.
        """
        audit_log = AuditLog(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            description=description,
            new_values=json.dumps(new_values, default=str) if new_values else None,
            username=username,
            company_id=company_id,
        )
        self.db.add(audit_log)
        self.db.flush()

        logger.info(
            f"Audit: {action} {resource_type}(id={resource_id}) by user={username} company={company_id}"
        )
        return audit_log

    def get_by_resource(self, resource_type: str, resource_id: int, company_id: int) -> List[AuditLog]:
        return self.db.query(AuditLog).filter(
            AuditLog.resource_type == resource_type,
            AuditLog.resource_id == resource_id,
            AuditLog.company_id == company_id
        ).order_by(desc(AuditLog.created_at), desc(AuditLog.id)).all()
