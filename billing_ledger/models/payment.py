"""Payment model, payment mode/status enums and the status transition table."""
from sqlalchemy import Column, BigInteger, String, Numeric, DateTime, Enum, ForeignKey, Integer, Index
from sqlalchemy.orm import relationship
from datetime import datetime
from billing_ledger.database import Base
import enum


class PaymentMode(str, enum.Enum):
    """How the money was handed over."""
    CASH = 'CASH'
    CHEQUE = 'CHEQUE'
    ONLINE = 'ONLINE'
    CREDIT = 'CREDIT'


class PaymentStatus(str, enum.Enum):
    """Clearing state of a payment."""
    PENDING = 'PENDING'
    CLEARED = 'CLEARED'
    RETURNED = 'RETURNED'
    VOID = 'VOID'


# Funds from cash and online transfers are confirmed on receipt; cheques and
# credit notes wait for clearing.
STATUS_BY_MODE = {
    PaymentMode.CASH: PaymentStatus.CLEARED,
    PaymentMode.ONLINE: PaymentStatus.CLEARED,
    PaymentMode.CHEQUE: PaymentStatus.PENDING,
    PaymentMode.CREDIT: PaymentStatus.PENDING,
}

# Allowed status changes. VOID is final; RETURNED may only be voided.
ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.CLEARED, PaymentStatus.RETURNED, PaymentStatus.VOID}),
    PaymentStatus.CLEARED: frozenset({PaymentStatus.PENDING, PaymentStatus.RETURNED, PaymentStatus.VOID}),
    PaymentStatus.RETURNED: frozenset({PaymentStatus.VOID}),
    PaymentStatus.VOID: frozenset(),
}

# Statuses whose payments no longer carry any ledger effect
REVERSED_STATUSES = frozenset({PaymentStatus.VOID, PaymentStatus.RETURNED})


def status_for_mode(mode: PaymentMode) -> PaymentStatus:
    """Initial status of a payment recorded with the given mode."""
    return STATUS_BY_MODE[mode]


def can_transition(old: PaymentStatus, new: PaymentStatus) -> bool:
    """True when the state machine permits old -> new."""
    return new in ALLOWED_TRANSITIONS[old]


class Payment(Base):
    """
    Payment received from a customer.

    sale_id is null for account-level payments and customer_id is null for
    walk-in cash sales; at least one of them is always set.
    """

    __tablename__ = 'payment'

    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, nullable=False, index=True)
    sale_id = Column(BigInteger, ForeignKey('sale.id'), nullable=True, index=True)
    customer_id = Column(BigInteger, ForeignKey('customer.id'), nullable=True, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    mode = Column(Enum(PaymentMode, name='payment_mode'), nullable=False)
    status = Column(Enum(PaymentStatus, name='payment_status'), nullable=False)
    reference = Column(String(200), nullable=True)  # Cheque no / transaction id
    payment_date = Column(DateTime, nullable=False, default=datetime.utcnow)

    created_by = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=True)

    # Optimistic concurrency token
    version_id = Column(Integer, nullable=False, default=1)

    # Relationships
    sale = relationship('Sale', back_populates='payments')
    customer = relationship('Customer')

    __mapper_args__ = {'version_id_col': version_id}

    __table_args__ = (
        Index('ix_payment_sale_created', 'sale_id', 'created_at'),
    )

    def __repr__(self):
        return f"<Payment(id={self.id}, sale_id={self.sale_id}, amount={self.amount}, status={self.status.value})>"
