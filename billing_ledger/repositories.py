"""
Tenant-scoped data access for the payment ledger.

Every query filters by tenant_id first. Aggregates are computed by the
database from the payment rows; callers never keep running totals.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy import func
from billing_ledger.models import (
    Sale, SalePaymentStatus, Customer, Payment, PaymentIdempotency,
    PaymentStatus, REVERSED_STATUSES
)
from billing_ledger.utils.formatters import to_money


def _sum(value) -> Decimal:
    return to_money(value)


class InvoiceRepository:
    """Reads and saves the ledger projection of invoices."""

    def __init__(self, session):
        self.session = session

    def get(self, tenant_id: int, sale_id: int, lock: bool = False) -> Optional[Sale]:
        """Undeleted invoice of the tenant; lock=True takes a row lock (SELECT ... FOR UPDATE)."""
        query = self.session.query(Sale).filter(
            Sale.tenant_id == tenant_id,
            Sale.id == sale_id,
            Sale.is_deleted.is_(False)
        )
        if lock:
            query = query.with_for_update().populate_existing()
        return query.first()

    def save(self, invoice: Sale) -> Sale:
        self.session.add(invoice)
        return invoice

    def total_for_customer(self, tenant_id: int, customer_id: int) -> Decimal:
        """Sum of grand_total over the customer's undeleted invoices."""
        total = self.session.query(func.coalesce(func.sum(Sale.grand_total), 0)).filter(
            Sale.tenant_id == tenant_id,
            Sale.customer_id == customer_id,
            Sale.is_deleted.is_(False)
        ).scalar()
        return _sum(total)

    def outstanding_for_customer(self, tenant_id: int, customer_id: int) -> list:
        """Undeleted Pending/Partial invoices of a customer, oldest first."""
        return self.session.query(Sale).filter(
            Sale.tenant_id == tenant_id,
            Sale.customer_id == customer_id,
            Sale.is_deleted.is_(False),
            Sale.payment_status.in_([SalePaymentStatus.PENDING, SalePaymentStatus.PARTIAL])
        ).order_by(Sale.invoice_date.asc(), Sale.id.asc()).all()


class CustomerRepository:
    """Reads and saves the balance projection of customers."""

    def __init__(self, session):
        self.session = session

    def get(self, tenant_id: int, customer_id: int, lock: bool = False) -> Optional[Customer]:
        query = self.session.query(Customer).filter(
            Customer.tenant_id == tenant_id,
            Customer.id == customer_id
        )
        if lock:
            query = query.with_for_update().populate_existing()
        return query.first()

    def save(self, customer: Customer) -> Customer:
        self.session.add(customer)
        return customer

    def list_for_tenant(self, tenant_id: int) -> list:
        return self.session.query(Customer).filter(
            Customer.tenant_id == tenant_id
        ).order_by(Customer.id.asc()).all()


class PaymentRepository:
    """Payment rows and the aggregates derived from them."""

    def __init__(self, session):
        self.session = session

    def get(self, tenant_id: int, payment_id: int, lock: bool = False) -> Optional[Payment]:
        query = self.session.query(Payment).filter(
            Payment.tenant_id == tenant_id,
            Payment.id == payment_id
        )
        if lock:
            query = query.with_for_update().populate_existing()
        return query.first()

    def add(self, payment: Payment) -> Payment:
        self.session.add(payment)
        self.session.flush()  # Get ID without committing
        return payment

    def delete(self, payment: Payment) -> None:
        self.session.delete(payment)

    def cleared_total_for_invoice(self, tenant_id: int, sale_id: int) -> Decimal:
        """Sum of CLEARED payments referencing the invoice."""
        total = self.session.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
            Payment.tenant_id == tenant_id,
            Payment.sale_id == sale_id,
            Payment.status == PaymentStatus.CLEARED
        ).scalar()
        return _sum(total)

    def committed_total_for_invoice(self, tenant_id: int, sale_id: int, exclude_payment_id: int = None) -> Decimal:
        """Sum of every non-VOID payment referencing the invoice (basis of the outstanding figure)."""
        query = self.session.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
            Payment.tenant_id == tenant_id,
            Payment.sale_id == sale_id,
            Payment.status != PaymentStatus.VOID
        )
        if exclude_payment_id is not None:
            query = query.filter(Payment.id != exclude_payment_id)
        return _sum(query.scalar())

    def pending_count_for_invoice(self, tenant_id: int, sale_id: int) -> int:
        return self.session.query(func.count(Payment.id)).filter(
            Payment.tenant_id == tenant_id,
            Payment.sale_id == sale_id,
            Payment.status == PaymentStatus.PENDING
        ).scalar() or 0

    def latest_effective_date_for_invoice(self, tenant_id: int, sale_id: int) -> Optional[datetime]:
        """Latest payment_date among payments that are neither VOID nor RETURNED."""
        return self.session.query(func.max(Payment.payment_date)).filter(
            Payment.tenant_id == tenant_id,
            Payment.sale_id == sale_id,
            Payment.status.notin_(list(REVERSED_STATUSES))
        ).scalar()

    def cleared_total_for_customer(self, tenant_id: int, customer_id: int) -> Decimal:
        """Sum of CLEARED payments of the customer."""
        total = self.session.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
            Payment.tenant_id == tenant_id,
            Payment.customer_id == customer_id,
            Payment.status == PaymentStatus.CLEARED
        ).scalar()
        return _sum(total)

    def latest_date_for_customer(self, tenant_id: int, customer_id: int) -> Optional[datetime]:
        return self.session.query(func.max(Payment.payment_date)).filter(
            Payment.tenant_id == tenant_id,
            Payment.customer_id == customer_id,
            Payment.status.notin_(list(REVERSED_STATUSES))
        ).scalar()

    def find_recent_same_amount(self, tenant_id: int, sale_id: int, amount: Decimal, since: datetime) -> Optional[Payment]:
        """Non-VOID payment of the same amount on the invoice created at or after `since`."""
        return self.session.query(Payment).filter(
            Payment.tenant_id == tenant_id,
            Payment.sale_id == sale_id,
            Payment.amount == amount,
            Payment.status != PaymentStatus.VOID,
            Payment.created_at >= since
        ).first()

    def exists_same_amount_between(self, tenant_id: int, customer_id: int, amount: Decimal,
                                   tolerance: Decimal, start: datetime, end: datetime) -> bool:
        """True when the customer has a payment of ~amount with payment_date in [start, end)."""
        found = self.session.query(Payment.id).filter(
            Payment.tenant_id == tenant_id,
            Payment.customer_id == customer_id,
            Payment.amount > amount - tolerance,
            Payment.amount < amount + tolerance,
            Payment.payment_date >= start,
            Payment.payment_date < end
        ).first()
        return found is not None

    def page(self, tenant_id: int, page: int, page_size: int):
        """(payments, total_count) for one page, newest payment_date first."""
        query = self.session.query(Payment).filter(Payment.tenant_id == tenant_id)
        total_count = query.count()
        items = (
            query.order_by(Payment.payment_date.desc(), Payment.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return items, total_count


class IdempotencyStore:
    """Key -> payment mappings for safe client retries."""

    def __init__(self, session):
        self.session = session

    def lookup(self, idempotency_key: str) -> Optional[PaymentIdempotency]:
        return self.session.query(PaymentIdempotency).filter(
            PaymentIdempotency.idempotency_key == idempotency_key
        ).first()

    def record(self, idempotency_key: str, payment_id: int, user_id: int, snapshot: str) -> PaymentIdempotency:
        """Stage and flush the mapping; a duplicate key raises IntegrityError here."""
        mapping = PaymentIdempotency(
            idempotency_key=idempotency_key,
            payment_id=payment_id,
            user_id=user_id,
            response_snapshot=snapshot,
            created_at=datetime.utcnow()
        )
        self.session.add(mapping)
        self.session.flush()
        return mapping

    def delete_for_payment(self, payment_id: int) -> int:
        """Remove every mapping that points at the payment; returns how many were removed."""
        mappings = self.session.query(PaymentIdempotency).filter(
            PaymentIdempotency.payment_id == payment_id
        ).all()
        for mapping in mappings:
            self.session.delete(mapping)
        return len(mappings)
