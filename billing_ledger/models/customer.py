"""Customer model - balance projection."""
from sqlalchemy import Column, BigInteger, String, Numeric, DateTime, Integer
from datetime import datetime
from billing_ledger.database import Base


class Customer(Base):
    """
    Customer (cliente).

    balance, total_sales, total_payments and last_payment_date are derived
    figures owned by the balance recalculation; nothing else writes them.
    """

    __tablename__ = 'customer'

    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, nullable=False, index=True)
    name = Column(String(200), nullable=False)

    balance = Column(Numeric(12, 2), nullable=False, default=0, server_default='0')
    total_sales = Column(Numeric(12, 2), nullable=False, default=0, server_default='0')
    total_payments = Column(Numeric(12, 2), nullable=False, default=0, server_default='0')
    last_payment_date = Column(DateTime, nullable=True)
    last_activity = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Optimistic concurrency token
    version_id = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {'version_id_col': version_id}

    def __repr__(self):
        return f"<Customer(id={self.id}, name='{self.name}', balance={self.balance})>"
