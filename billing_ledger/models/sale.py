"""Sale (invoice) model - ledger-relevant projection."""
from sqlalchemy import Column, BigInteger, String, Numeric, DateTime, Enum, Boolean, Integer, Index
from sqlalchemy.orm import relationship
from sqlalchemy.ext.hybrid import hybrid_property
from datetime import datetime
from billing_ledger.database import Base
import enum


class SalePaymentStatus(str, enum.Enum):
    """Payment status of an invoice, derived from its cleared payments."""
    PENDING = 'Pending'
    PARTIAL = 'Partial'
    PAID = 'Paid'


class Sale(Base):
    """
    Sale (invoice).

    grand_total is fixed when the invoice is created by the sales subsystem.
    paid_amount, payment_status and last_payment_date are written only by the
    payment ledger and are always re-derived from the payment rows.
    """

    __tablename__ = 'sale'

    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, nullable=False, index=True)
    invoice_no = Column(String(50), nullable=False)
    customer_id = Column(BigInteger, nullable=True, index=True)
    invoice_date = Column(DateTime, nullable=False, default=datetime.utcnow)

    grand_total = Column(Numeric(12, 2), nullable=False)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0, server_default='0')
    payment_status = Column(
        Enum(SalePaymentStatus, name='sale_payment_status'),
        nullable=False,
        default=SalePaymentStatus.PENDING
    )
    last_payment_date = Column(DateTime, nullable=True)

    is_deleted = Column(Boolean, nullable=False, default=False, server_default='false')
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Optimistic concurrency token
    version_id = Column(Integer, nullable=False, default=1)

    payments = relationship('Payment', back_populates='sale')

    __mapper_args__ = {'version_id_col': version_id}

    __table_args__ = (
        Index('ix_sale_tenant_invoice_no', 'tenant_id', 'invoice_no', unique=True),
    )

    @hybrid_property
    def outstanding_amount(self):
        """Amount still owed according to the cleared payments: grand_total - paid_amount."""
        return (self.grand_total or 0) - (self.paid_amount or 0)

    def __repr__(self):
        return f"<Sale(id={self.id}, invoice_no='{self.invoice_no}', total={self.grand_total}, paid={self.paid_amount})>"
