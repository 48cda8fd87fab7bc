"""Invoice payment state - derived from payment rows, never incremented."""
from datetime import datetime
from decimal import Decimal
import logging
from billing_ledger.models import Sale, SalePaymentStatus
from billing_ledger.repositories import InvoiceRepository, PaymentRepository
from billing_ledger.exceptions import NotFoundError
from billing_ledger.utils.formatters import to_money, money_str, iso_datetime, ZERO

logger = logging.getLogger(__name__)


def derive_payment_status(paid_amount: Decimal, grand_total: Decimal, pending_payments: int = 0) -> SalePaymentStatus:
    """
    Invoice status from its cleared total.

    Paid once the cleared total reaches the grand total. Partial when some
    money has cleared, or when a payment (e.g. a cheque) is still waiting to
    clear. Pending otherwise.
    """
    if paid_amount >= grand_total:
        return SalePaymentStatus.PAID
    if paid_amount > 0 or pending_payments > 0:
        return SalePaymentStatus.PARTIAL
    return SalePaymentStatus.PENDING


def refresh_invoice_payment_state(session, invoice: Sale) -> Sale:
    """
    Recompute paid_amount, payment_status and last_payment_date of an invoice.

    paid_amount is the sum of CLEARED payments referencing the invoice;
    PENDING payments are left out until they clear. Pending changes in the
    session are flushed first so the sums see them.

    Args:
        session: SQLAlchemy session (must be in transaction)
        invoice: Invoice to refresh (ideally locked by the caller)

    Returns:
        The same invoice, updated in place
    """
    session.flush()
    payments = PaymentRepository(session)

    paid = payments.cleared_total_for_invoice(invoice.tenant_id, invoice.id)
    pending = payments.pending_count_for_invoice(invoice.tenant_id, invoice.id)

    invoice.paid_amount = paid
    invoice.last_payment_date = payments.latest_effective_date_for_invoice(invoice.tenant_id, invoice.id)
    invoice.payment_status = derive_payment_status(paid, to_money(invoice.grand_total), pending)
    invoice.updated_at = datetime.utcnow()
    InvoiceRepository(session).save(invoice)

    logger.debug(
        f"Invoice {invoice.invoice_no} refreshed: paid={paid}, pending_payments={pending}, "
        f"status={invoice.payment_status.value}"
    )
    return invoice


def actual_outstanding(session, invoice: Sale, exclude_payment_id: int = None) -> Decimal:
    """
    GrandTotal minus every non-VOID payment on the invoice, read from the payment table.

    PENDING and RETURNED payments count against the outstanding figure so a
    cheque in flight cannot be paid a second time.
    """
    session.flush()
    committed = PaymentRepository(session).committed_total_for_invoice(
        invoice.tenant_id, invoice.id, exclude_payment_id=exclude_payment_id
    )
    return to_money(invoice.grand_total) - committed


def invoice_summary(invoice: Sale) -> dict:
    """JSON-ready summary of an invoice's payment state."""
    grand_total = to_money(invoice.grand_total)
    paid = to_money(invoice.paid_amount)
    return {
        'id': invoice.id,
        'invoice_no': invoice.invoice_no,
        'total_amount': money_str(grand_total),
        'paid_amount': money_str(paid),
        'outstanding_amount': money_str(grand_total - paid),
        'status': invoice.payment_status.value,
        'last_payment_date': iso_datetime(invoice.last_payment_date),
    }


def get_outstanding_invoices(session, tenant_id: int, customer_id: int, today: datetime = None) -> list:
    """
    Pending and partially paid invoices of a customer, oldest first.

    Args:
        session: SQLAlchemy session
        tenant_id: Tenant ID (REQUIRED for multi-tenant filtering)
        customer_id: Customer ID
        today: Reference time for days_overdue (defaults to now)

    Returns:
        List of dicts with balance_amount (total - cleared) and payable_amount
        (total - every non-VOID payment, the most a new payment may take)
    """
    today = today or datetime.utcnow()
    result = []

    for invoice in InvoiceRepository(session).outstanding_for_customer(tenant_id, customer_id):
        grand_total = to_money(invoice.grand_total)
        paid = to_money(invoice.paid_amount)
        payable = max(actual_outstanding(session, invoice), ZERO)
        result.append({
            'id': invoice.id,
            'invoice_no': invoice.invoice_no,
            'invoice_date': iso_datetime(invoice.invoice_date),
            'grand_total': money_str(grand_total),
            'paid_amount': money_str(paid),
            'balance_amount': money_str(grand_total - paid),
            'payable_amount': money_str(payable),
            'payment_status': invoice.payment_status.value,
            'days_overdue': max((today - invoice.invoice_date).days, 0),
        })

    return result


def get_invoice_amount(session, tenant_id: int, invoice_id: int) -> dict:
    """
    Payment summary of one invoice.

    Raises:
        NotFoundError: If the invoice is missing, deleted or belongs to another tenant
    """
    invoice = InvoiceRepository(session).get(tenant_id, invoice_id)
    if not invoice:
        raise NotFoundError(f'Invoice {invoice_id} not found')
    return invoice_summary(invoice)
