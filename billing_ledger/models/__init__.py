"""Models package - exports all SQLAlchemy models."""
from billing_ledger.models.customer import Customer
from billing_ledger.models.sale import Sale, SalePaymentStatus
from billing_ledger.models.payment import (
    Payment, PaymentMode, PaymentStatus,
    STATUS_BY_MODE, ALLOWED_TRANSITIONS, REVERSED_STATUSES,
    status_for_mode, can_transition
)
from billing_ledger.models.payment_idempotency import PaymentIdempotency, IDEMPOTENCY_KEY_MAX_LENGTH
from billing_ledger.models.audit_log import AuditLog, AuditAction

__all__ = [
    'Customer', 'Sale', 'SalePaymentStatus',
    'Payment', 'PaymentMode', 'PaymentStatus',
    'STATUS_BY_MODE', 'ALLOWED_TRANSITIONS', 'REVERSED_STATUSES',
    'status_for_mode', 'can_transition',
    'PaymentIdempotency', 'IDEMPOTENCY_KEY_MAX_LENGTH',
    'AuditLog', 'AuditAction',
]
