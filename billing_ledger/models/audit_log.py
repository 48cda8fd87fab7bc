"""
Audit Log model for tracking ledger mutations.
"""
from sqlalchemy import Column, Integer, BigInteger, String, Text, DateTime, Enum as SQLEnum
from datetime import datetime
import enum


class AuditAction(enum.Enum):
    """Enumeration of auditable ledger actions."""
    # Payments
    PAYMENT_CREATED = "PAYMENT_CREATED"
    PAYMENT_STATUS_UPDATED = "PAYMENT_STATUS_UPDATED"
    PAYMENT_UPDATED = "PAYMENT_UPDATED"
    PAYMENT_DELETED = "PAYMENT_DELETED"
    PAYMENT_ALLOCATED = "PAYMENT_ALLOCATED"

    # Reconciliation
    BALANCE_RECALCULATED = "BALANCE_RECALCULATED"


from billing_ledger.database import Base

class AuditLog(Base):
    """
    Audit log for tracking ledger mutations.
    Multi-tenant: filtered by tenant_id. Append-only.
    """
    __tablename__ = 'audit_log'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(BigInteger, nullable=False, index=True)
    user_id = Column(BigInteger, nullable=True)  # None for system reconciliation runs
    action = Column(SQLEnum(AuditAction), nullable=False, index=True)
    resource_type = Column(String(50))  # e.g., 'payment', 'customer'
    resource_id = Column(BigInteger)  # ID of the affected resource
    details = Column(Text)  # JSON with additional details
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog {self.action.value} by user {self.user_id} at {self.created_at}>"
