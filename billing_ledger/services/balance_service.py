"""
Balance service - authoritative customer balance recalculation.

Balance = sum(grand_total of undeleted sales) - sum(amount of CLEARED payments).
Every ledger operation that can change either side calls
refresh_customer_balance() inside its own transaction; nothing adds to or
subtracts from Customer.balance directly.
"""
from datetime import datetime
import logging
from billing_ledger.models import Customer, AuditAction
from billing_ledger.repositories import CustomerRepository, InvoiceRepository, PaymentRepository
from billing_ledger.exceptions import NotFoundError
from billing_ledger.services.unit_of_work import UnitOfWork
from billing_ledger.services.audit_service import append_entry
from billing_ledger.settings import amount_tolerance
from billing_ledger.utils.formatters import to_money, money_str, iso_datetime

logger = logging.getLogger(__name__)


def compute_customer_figures(session, tenant_id: int, customer_id: int) -> dict:
    """Authoritative totals of a customer straight from the sale and payment tables."""
    session.flush()
    total_sales = InvoiceRepository(session).total_for_customer(tenant_id, customer_id)
    total_payments = PaymentRepository(session).cleared_total_for_customer(tenant_id, customer_id)
    return {
        'total_sales': total_sales,
        'total_payments': total_payments,
        'balance': total_sales - total_payments,
    }


def refresh_customer_balance(session, tenant_id: int, customer_id: int):
    """
    Recompute and persist a customer's balance inside the caller's transaction.

    The customer row is locked first so two ledger operations on the same
    customer write their results one after the other.

    Args:
        session: SQLAlchemy session (must be in transaction)
        tenant_id: Tenant ID
        customer_id: Customer ID

    Returns:
        The updated Customer, or None if the customer does not exist
    """
    customers = CustomerRepository(session)
    customer = customers.get(tenant_id, customer_id, lock=True)
    if not customer:
        logger.warning(f"Customer {customer_id} not found for balance recalculation (tenant={tenant_id})")
        return None

    figures = compute_customer_figures(session, tenant_id, customer_id)
    now = datetime.utcnow()

    customer.total_sales = figures['total_sales']
    customer.total_payments = figures['total_payments']
    customer.balance = figures['balance']
    customer.last_payment_date = PaymentRepository(session).latest_date_for_customer(tenant_id, customer_id)
    customer.last_activity = now
    customer.updated_at = now
    customers.save(customer)
    session.flush()

    logger.debug(
        f"Customer {customer_id} balance recalculated: sales={figures['total_sales']}, "
        f"cleared_payments={figures['total_payments']}, balance={figures['balance']}"
    )
    return customer


def customer_summary(customer: Customer) -> dict:
    """JSON-ready summary of a customer's balance."""
    return {
        'id': customer.id,
        'name': customer.name,
        'balance': money_str(customer.balance),
        'last_payment_date': iso_datetime(customer.last_payment_date),
    }


def recalculate_customer_balance(customer_id: int, tenant_id: int, session, user_id: int = None) -> None:
    """
    Standalone recalculation for reconciliation and repair tooling.

    Runs in its own transaction and leaves an audit entry.

    Raises:
        NotFoundError: If the customer does not exist in the tenant
    """
    def _recalculate(session):
        before = CustomerRepository(session).get(tenant_id, customer_id)
        if not before:
            raise NotFoundError(f'Customer {customer_id} not found')
        previous_balance = to_money(before.balance)

        customer = refresh_customer_balance(session, tenant_id, customer_id)
        append_entry(
            session,
            tenant_id=tenant_id,
            user_id=user_id,
            action=AuditAction.BALANCE_RECALCULATED,
            resource_type='customer',
            resource_id=customer_id,
            details={
                'previous_balance': money_str(previous_balance),
                'balance': money_str(customer.balance),
                'total_sales': money_str(customer.total_sales),
                'total_payments': money_str(customer.total_payments),
            }
        )
        return customer

    customer = UnitOfWork(session).run_in_transaction(
        _recalculate,
        operation='recalculate_customer_balance',
        context={'tenant_id': tenant_id, 'customer_id': customer_id, 'user_id': user_id}
    )
    logger.info(f"Customer {customer_id} balance recalculated to {customer.balance} (tenant={tenant_id})")


def recalculate_all_customer_balances(tenant_id: int, session, user_id: int = None) -> int:
    """
    Recalculate every customer of a tenant, one transaction per customer.

    Returns:
        Number of customers recalculated
    """
    customer_ids = [c.id for c in CustomerRepository(session).list_for_tenant(tenant_id)]
    for customer_id in customer_ids:
        recalculate_customer_balance(customer_id, tenant_id, session, user_id=user_id)

    logger.info(f"Recalculated {len(customer_ids)} customer balances for tenant {tenant_id}")
    return len(customer_ids)


def validate_customer_balance(session, tenant_id: int, customer_id: int) -> dict:
    """
    Compare the stored balance projection with the authoritative figures.

    Returns:
        dict with is_valid plus stored_* and actual_* figures (as strings)

    Raises:
        NotFoundError: If the customer does not exist in the tenant
    """
    customer = CustomerRepository(session).get(tenant_id, customer_id)
    if not customer:
        raise NotFoundError(f'Customer {customer_id} not found')

    actual = compute_customer_figures(session, tenant_id, customer_id)
    tolerance = amount_tolerance()

    stored = {
        'total_sales': to_money(customer.total_sales),
        'total_payments': to_money(customer.total_payments),
        'balance': to_money(customer.balance),
    }
    is_valid = all(abs(stored[key] - actual[key]) <= tolerance for key in stored)

    if not is_valid:
        logger.warning(
            f"Balance mismatch for customer {customer_id} (tenant={tenant_id}): "
            f"stored={stored['balance']} actual={actual['balance']}"
        )

    return {
        'customer_id': customer.id,
        'customer_name': customer.name,
        'is_valid': is_valid,
        'stored_total_sales': money_str(stored['total_sales']),
        'actual_total_sales': money_str(actual['total_sales']),
        'stored_total_payments': money_str(stored['total_payments']),
        'actual_total_payments': money_str(actual['total_payments']),
        'stored_balance': money_str(stored['balance']),
        'actual_balance': money_str(actual['balance']),
        'difference': money_str(stored['balance'] - actual['balance']),
    }


def detect_balance_mismatches(session, tenant_id: int) -> list:
    """Validation results of every customer of the tenant whose stored balance has drifted."""
    mismatches = []
    for customer in CustomerRepository(session).list_for_tenant(tenant_id):
        result = validate_customer_balance(session, tenant_id, customer.id)
        if not result['is_valid']:
            mismatches.append(result)
    return mismatches


def fix_balance_mismatch(tenant_id: int, customer_id: int, session, user_id: int = None) -> bool:
    """
    Recalculate a drifted customer and confirm the projection now matches.

    Returns:
        True when the balance is consistent after the fix
    """
    recalculate_customer_balance(customer_id, tenant_id, session, user_id=user_id)
    return validate_customer_balance(session, tenant_id, customer_id)['is_valid']
