"""Payment idempotency model."""
from sqlalchemy import Column, BigInteger, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from billing_ledger.database import Base

IDEMPOTENCY_KEY_MAX_LENGTH = 128


class PaymentIdempotency(Base):
    """
    Maps a client-supplied idempotency key to the payment it produced.

    The key is the primary key, so a second writer for the same key fails
    with an IntegrityError instead of creating a second mapping.
    """

    __tablename__ = 'payment_idempotency'

    idempotency_key = Column(String(IDEMPOTENCY_KEY_MAX_LENGTH), primary_key=True)
    payment_id = Column(BigInteger, ForeignKey('payment.id'), nullable=False, index=True)
    user_id = Column(BigInteger, nullable=False)
    response_snapshot = Column(Text, nullable=True)  # JSON of the original response
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    payment = relationship('Payment')

    def __repr__(self):
        return f"<PaymentIdempotency(key='{self.idempotency_key}', payment_id={self.payment_id})>"
