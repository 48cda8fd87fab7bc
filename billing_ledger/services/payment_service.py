"""
Payment ledger engine - Multi-Tenant.

Creates, transitions, edits, deletes and allocates customer payments while
keeping three aggregates consistent: the payment row, the invoice payment
state and the customer balance. Every public mutation runs inside one
UnitOfWork transaction; invoice and customer figures are re-derived from the
payment table at the end of it, never incremented.

Lock order inside a transaction is invoice -> payment -> customer.
"""
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
import json
import logging
from sqlalchemy.exc import IntegrityError
from billing_ledger.models import (
    Payment, PaymentMode, PaymentStatus, AuditAction,
    REVERSED_STATUSES, IDEMPOTENCY_KEY_MAX_LENGTH, status_for_mode, can_transition
)
from billing_ledger.repositories import (
    InvoiceRepository, CustomerRepository, PaymentRepository, IdempotencyStore
)
from billing_ledger.exceptions import (
    ValidationError, OverpaymentError, DuplicateSubmissionError,
    IdempotencyKeyConflict, ConcurrencyConflictError, NotFoundError
)
from billing_ledger.services.unit_of_work import UnitOfWork
from billing_ledger.services.audit_service import append_entry
from billing_ledger.services.invoice_service import (
    refresh_invoice_payment_state, actual_outstanding, invoice_summary
)
from billing_ledger.services.balance_service import refresh_customer_balance, customer_summary
from billing_ledger.settings import amount_tolerance, duplicate_window_seconds, get_setting
from billing_ledger.utils.formatters import to_money, money_str, money_display, iso_datetime, ZERO

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------

def _parse_amount(value, field: str = 'amount') -> Decimal:
    try:
        return to_money(value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f'The {field} must be a number.', payload={'field': field})


def _parse_id(value, field: str):
    """Row id from an int or a numeric string (JSON bodies often carry ids as strings)."""
    if value is None or value == '':
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(f'The {field} must be an integer id.', payload={'field': field})


def _parse_mode(value) -> PaymentMode:
    if isinstance(value, PaymentMode):
        return value
    try:
        return PaymentMode(str(value or '').strip().upper())
    except ValueError:
        allowed = ', '.join(m.value for m in PaymentMode)
        raise ValidationError(f'Invalid payment mode: {value}. Allowed: {allowed}', payload={'field': 'mode'})


def _parse_status(value) -> PaymentStatus:
    if isinstance(value, PaymentStatus):
        return value
    try:
        return PaymentStatus(str(value or '').strip().upper())
    except ValueError:
        raise ValidationError(f'Invalid payment status: {value}', payload={'field': 'status'})


def _parse_date(value):
    """datetime / date / ISO-8601 string -> naive UTC datetime (None stays None)."""
    if value is None or value == '':
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError:
            raise ValidationError(f'Invalid payment date: {value}', payload={'field': 'payment_date'})
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    raise ValidationError(f'Invalid payment date: {value}', payload={'field': 'payment_date'})


def _parse_reference(value):
    if value is None:
        return None
    value = str(value).strip()
    return value[:200] or None


def _parse_idempotency_key(value):
    if value is None or value == '':
        return None
    value = str(value)
    if len(value) > IDEMPOTENCY_KEY_MAX_LENGTH:
        raise ValidationError(
            f'The idempotency key cannot be longer than {IDEMPOTENCY_KEY_MAX_LENGTH} characters.',
            payload={'field': 'idempotency_key'}
        )
    return value


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def payment_to_dict(payment: Payment) -> dict:
    """JSON-ready representation of a payment."""
    return {
        'id': payment.id,
        'sale_id': payment.sale_id,
        'invoice_no': payment.sale.invoice_no if payment.sale else None,
        'customer_id': payment.customer_id,
        'customer_name': payment.customer.name if payment.customer else None,
        'amount': money_str(payment.amount),
        'mode': payment.mode.value,
        'status': payment.status.value,
        'reference': payment.reference,
        'payment_date': iso_datetime(payment.payment_date),
        'created_by': payment.created_by,
        'created_at': iso_datetime(payment.created_at),
    }


def _snapshot(response: dict) -> str:
    return json.dumps(response, sort_keys=True, separators=(',', ':'))


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------

def _replay(session, tenant_id: int, idempotency_key: str):
    """
    Previously produced response for the key, or None if the key is unused.

    Raises:
        DuplicateSubmissionError: If the key belongs to another tenant's payment
    """
    mapping = IdempotencyStore(session).lookup(idempotency_key)
    if mapping is None:
        return None

    payment = mapping.payment
    if payment is None or payment.tenant_id != tenant_id:
        raise DuplicateSubmissionError(
            'This idempotency key has already been used.',
            payload={'idempotency_key': idempotency_key}
        )

    if mapping.response_snapshot:
        return json.loads(mapping.response_snapshot)

    return {
        'payment': payment_to_dict(payment),
        'invoice': invoice_summary(payment.sale) if payment.sale else None,
        'customer': customer_summary(payment.customer) if payment.customer else None,
    }


def _record_idempotency(session, idempotency_key: str, payment_id: int, user_id: int, snapshot: str):
    try:
        IdempotencyStore(session).record(idempotency_key, payment_id, user_id, snapshot)
    except IntegrityError as e:
        logger.warning(f"Idempotency key {idempotency_key} taken by a concurrent request: {e.orig}")
        raise IdempotencyKeyConflict(idempotency_key) from e


def _resolve_key_conflict(session, tenant_id: int, idempotency_key: str) -> dict:
    """Second writer for a key: return the winner's response, or ask the caller to retry."""
    replay = UnitOfWork(session).run_in_transaction(
        _replay, tenant_id, idempotency_key,
        operation='idempotency_lookup',
        context={'tenant_id': tenant_id, 'idempotency_key': idempotency_key}
    )
    if replay is None:
        raise ConcurrencyConflictError(
            'A request with this idempotency key is still being processed. Please retry.'
        )
    logger.warning(f"Idempotency key {idempotency_key} resolved to the concurrent winner's payment")
    return replay


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

def _no_outstanding_message(session, invoice, outstanding: Decimal) -> str:
    """Rejection text for an invoice with nothing left to pay, naming payments that still hold it."""
    cleared = PaymentRepository(session).cleared_total_for_invoice(invoice.tenant_id, invoice.id)
    held = to_money(invoice.grand_total) - outstanding - cleared
    if held > amount_tolerance():
        return (
            f'Invoice {invoice.invoice_no} has no outstanding balance: pending or returned payments '
            f'still hold {money_display(held)}. Void them before recording a new payment.'
        )
    return f'Invoice {invoice.invoice_no} is already fully paid.'


def create_payment(request: dict, user_id: int, tenant_id: int, session, idempotency_key: str = None) -> dict:
    """
    Record a payment against an invoice and/or a customer account.

    Args:
        request: dict with sale_id, customer_id, amount, mode, reference, payment_date
        user_id: Acting user
        tenant_id: Tenant ID (REQUIRED for multi-tenant filtering)
        session: SQLAlchemy session
        idempotency_key: Optional client token; a repeated key returns the first response

    Returns:
        dict with 'payment', 'invoice' (or None) and 'customer' (or None)

    Raises:
        ValidationError: Bad amount or mode, no attribution, unknown invoice, customer mismatch
        OverpaymentError: Invoice already paid or amount above its outstanding
        DuplicateSubmissionError: Same amount on the same invoice within the duplicate window
        NotFoundError: customer_id given but the customer does not exist in the tenant
        ConcurrencyConflictError: Lost a race that should be retried
    """
    amount = _parse_amount(request.get('amount'))
    if amount <= 0:
        raise ValidationError('The payment amount must be greater than 0.', payload={'field': 'amount'})

    sale_id = _parse_id(request.get('sale_id'), 'sale_id')
    customer_id = _parse_id(request.get('customer_id'), 'customer_id')
    if not sale_id and not customer_id:
        raise ValidationError('A payment needs a customer or an invoice.')

    mode = _parse_mode(request.get('mode'))
    reference = _parse_reference(request.get('reference'))
    payment_date = _parse_date(request.get('payment_date'))
    idempotency_key = _parse_idempotency_key(idempotency_key)

    def _create(session):
        if idempotency_key:
            replay = _replay(session, tenant_id, idempotency_key)
            if replay is not None:
                return replay, True

        payments = PaymentRepository(session)
        attributed_customer_id = customer_id
        invoice = None

        if sale_id:
            # Serializes concurrent payments on the same invoice
            invoice = InvoiceRepository(session).get(tenant_id, sale_id, lock=True)
            if not invoice:
                raise ValidationError(f'Invoice {sale_id} not found.', payload={'field': 'sale_id'})

            if invoice.customer_id:
                if attributed_customer_id and attributed_customer_id != invoice.customer_id:
                    raise ValidationError(
                        f'Invoice {invoice.invoice_no} belongs to a different customer.',
                        payload={'field': 'customer_id'}
                    )
                attributed_customer_id = invoice.customer_id

            outstanding = actual_outstanding(session, invoice)
            if outstanding <= 0:
                raise OverpaymentError(_no_outstanding_message(session, invoice, outstanding), outstanding=ZERO)
            if amount > outstanding + amount_tolerance():
                raise OverpaymentError(
                    f'The payment amount ({money_display(amount)}) cannot exceed the '
                    f'outstanding balance ({money_display(outstanding)}).',
                    outstanding=outstanding
                )

            since = datetime.utcnow() - timedelta(seconds=duplicate_window_seconds())
            if payments.find_recent_same_amount(tenant_id, invoice.id, amount, since):
                raise DuplicateSubmissionError(
                    f'A payment of {money_display(amount)} was just recorded for invoice '
                    f'{invoice.invoice_no}. Please check before submitting again.'
                )

        customer = None
        if attributed_customer_id:
            customer = CustomerRepository(session).get(tenant_id, attributed_customer_id)
            if not customer:
                raise NotFoundError(f'Customer {attributed_customer_id} not found')

        now = datetime.utcnow()
        payment = Payment(
            tenant_id=tenant_id,
            sale_id=invoice.id if invoice else None,
            customer_id=attributed_customer_id,
            amount=amount,
            mode=mode,
            status=status_for_mode(mode),
            reference=reference,
            payment_date=payment_date or now,
            created_by=user_id,
            created_at=now,
            updated_at=now
        )
        payments.add(payment)

        if invoice:
            refresh_invoice_payment_state(session, invoice)

        if customer and payment.status == PaymentStatus.CLEARED:
            customer = refresh_customer_balance(session, tenant_id, customer.id)

        append_entry(
            session,
            tenant_id=tenant_id,
            user_id=user_id,
            action=AuditAction.PAYMENT_CREATED,
            resource_type='payment',
            resource_id=payment.id,
            details={
                'sale_id': payment.sale_id,
                'customer_id': payment.customer_id,
                'amount': money_str(amount),
                'mode': mode.value,
                'status': payment.status.value,
                'reference': reference,
                'idempotency_key': idempotency_key,
            }
        )

        response = {
            'payment': payment_to_dict(payment),
            'invoice': invoice_summary(invoice) if invoice else None,
            'customer': customer_summary(customer) if customer else None,
        }
        snapshot = _snapshot(response)

        if idempotency_key:
            _record_idempotency(session, idempotency_key, payment.id, user_id, snapshot)

        return json.loads(snapshot), False

    try:
        response, replayed = UnitOfWork(session).run_in_transaction(
            _create,
            operation='create_payment',
            context={'tenant_id': tenant_id, 'user_id': user_id, 'sale_id': sale_id,
                     'customer_id': customer_id, 'idempotency_key': idempotency_key}
        )
    except IdempotencyKeyConflict:
        return _resolve_key_conflict(session, tenant_id, idempotency_key)
    except (ValidationError, OverpaymentError, DuplicateSubmissionError, NotFoundError) as e:
        logger.warning(f"Payment rejected (tenant={tenant_id}, user={user_id}): {e.message}")
        raise

    if replayed:
        logger.warning(
            f"Duplicate payment request detected (idempotency key {idempotency_key}), "
            f"returning payment {response['payment']['id']}"
        )
    else:
        logger.info(
            f"Payment {response['payment']['id']} created: {response['payment']['amount']} "
            f"{mode.value} {response['payment']['status']} (tenant={tenant_id}, user={user_id})"
        )
    return response


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

def _lock_payment_with_invoice(session, tenant_id: int, payment_id: int):
    """(payment, invoice) with both rows locked in invoice -> payment order."""
    payments = PaymentRepository(session)
    payment = payments.get(tenant_id, payment_id)
    if not payment:
        return None, None

    invoice = None
    if payment.sale_id:
        invoice = InvoiceRepository(session).get(tenant_id, payment.sale_id, lock=True)

    return payments.get(tenant_id, payment_id, lock=True), invoice


def transition_status(payment_id: int, new_status, user_id: int, tenant_id: int, session) -> bool:
    """
    Move a payment through the status state machine.

    Invoice paid_amount is re-derived for every transition; the customer
    balance is recalculated only when the payment is or was CLEARED.

    Returns:
        False if the payment does not exist in the tenant, True otherwise

    Raises:
        ValidationError: Unknown status or a transition the state machine forbids
    """
    new_status = _parse_status(new_status)

    def _transition(session):
        payment, invoice = _lock_payment_with_invoice(session, tenant_id, payment_id)
        if not payment:
            return None

        old_status = payment.status
        if old_status == new_status:
            return old_status

        if not can_transition(old_status, new_status):
            raise ValidationError(
                f'Cannot change payment status from {old_status.value} to {new_status.value}.'
            )

        payment.status = new_status
        payment.updated_at = datetime.utcnow()

        if invoice:
            refresh_invoice_payment_state(session, invoice)

        if payment.customer_id and PaymentStatus.CLEARED in (old_status, new_status):
            refresh_customer_balance(session, tenant_id, payment.customer_id)

        append_entry(
            session,
            tenant_id=tenant_id,
            user_id=user_id,
            action=AuditAction.PAYMENT_STATUS_UPDATED,
            resource_type='payment',
            resource_id=payment.id,
            details={
                'old_status': old_status.value,
                'new_status': new_status.value,
                'amount': money_str(payment.amount),
                'sale_id': payment.sale_id,
                'customer_id': payment.customer_id,
            }
        )
        return old_status

    try:
        old_status = UnitOfWork(session).run_in_transaction(
            _transition,
            operation='transition_status',
            context={'tenant_id': tenant_id, 'user_id': user_id, 'payment_id': payment_id}
        )
    except ValidationError as e:
        logger.warning(f"Status change rejected for payment {payment_id}: {e.message}")
        raise

    if old_status is None:
        logger.warning(f"Payment {payment_id} not found for status change (tenant={tenant_id})")
        return False

    if old_status != new_status:
        logger.info(f"Payment {payment_id} status {old_status.value} -> {new_status.value} (tenant={tenant_id})")
    return True


# ---------------------------------------------------------------------------
# Edit / delete
# ---------------------------------------------------------------------------

def edit_payment(payment_id: int, changes: dict, user_id: int, tenant_id: int, session):
    """
    Change amount, mode, reference and/or payment date of a payment.

    A mode change re-derives the status (CASH/ONLINE cleared, CHEQUE/CREDIT
    pending). Invoice state and customer balance are recomputed afterwards.

    Args:
        changes: dict with any of amount, mode, reference, payment_date

    Returns:
        Updated payment dict, or None if the payment does not exist in the tenant

    Raises:
        ValidationError: Bad values, or the payment is VOID/RETURNED
        OverpaymentError: New amount exceeds the invoice outstanding (excluding this payment)
    """
    new_amount = None
    if changes.get('amount') is not None:
        new_amount = _parse_amount(changes['amount'])
        if new_amount <= 0:
            raise ValidationError('The payment amount must be greater than 0.', payload={'field': 'amount'})

    new_mode = _parse_mode(changes['mode']) if changes.get('mode') else None
    new_date = _parse_date(changes.get('payment_date'))

    def _edit(session):
        payment, invoice = _lock_payment_with_invoice(session, tenant_id, payment_id)
        if not payment:
            return None

        if payment.status in REVERSED_STATUSES:
            raise ValidationError(f'A {payment.status.value} payment cannot be edited.')

        before = {
            'amount': money_str(payment.amount),
            'mode': payment.mode.value,
            'status': payment.status.value,
            'reference': payment.reference,
            'payment_date': iso_datetime(payment.payment_date),
        }

        if new_amount is not None and invoice:
            outstanding = actual_outstanding(session, invoice, exclude_payment_id=payment.id)
            if new_amount > outstanding + amount_tolerance():
                raise OverpaymentError(
                    f'The payment amount ({money_display(new_amount)}) cannot exceed the '
                    f'outstanding balance ({money_display(outstanding)}).',
                    outstanding=outstanding
                )

        if new_amount is not None:
            payment.amount = new_amount
        if new_mode is not None and new_mode != payment.mode:
            payment.mode = new_mode
            payment.status = status_for_mode(new_mode)
        if 'reference' in changes:
            payment.reference = _parse_reference(changes['reference'])
        if new_date is not None:
            payment.payment_date = new_date
        payment.updated_at = datetime.utcnow()

        if invoice:
            refresh_invoice_payment_state(session, invoice)
        if payment.customer_id:
            refresh_customer_balance(session, tenant_id, payment.customer_id)

        after = {
            'amount': money_str(payment.amount),
            'mode': payment.mode.value,
            'status': payment.status.value,
            'reference': payment.reference,
            'payment_date': iso_datetime(payment.payment_date),
        }
        append_entry(
            session,
            tenant_id=tenant_id,
            user_id=user_id,
            action=AuditAction.PAYMENT_UPDATED,
            resource_type='payment',
            resource_id=payment.id,
            details={
                'changes': {k: {'old': before[k], 'new': after[k]} for k in before if before[k] != after[k]},
                'sale_id': payment.sale_id,
                'customer_id': payment.customer_id,
            }
        )
        return payment_to_dict(payment)

    try:
        result = UnitOfWork(session).run_in_transaction(
            _edit,
            operation='edit_payment',
            context={'tenant_id': tenant_id, 'user_id': user_id, 'payment_id': payment_id}
        )
    except (ValidationError, OverpaymentError) as e:
        logger.warning(f"Edit rejected for payment {payment_id}: {e.message}")
        raise

    if result is None:
        logger.warning(f"Payment {payment_id} not found for edit (tenant={tenant_id})")
    else:
        logger.info(f"Payment {payment_id} updated by user {user_id} (tenant={tenant_id})")
    return result


def delete_payment(payment_id: int, user_id: int, tenant_id: int, session) -> bool:
    """
    Remove a payment and undo its ledger effects.

    Idempotency mappings pointing at the payment are removed with it, so a
    retried key after a delete creates a new payment.

    Returns:
        False if the payment does not exist in the tenant, True once deleted
    """
    def _delete(session):
        payment, invoice = _lock_payment_with_invoice(session, tenant_id, payment_id)
        if not payment:
            return False

        customer_id = payment.customer_id
        details = {
            'sale_id': payment.sale_id,
            'customer_id': customer_id,
            'amount': money_str(payment.amount),
            'mode': payment.mode.value,
            'status': payment.status.value,
            'reference': payment.reference,
            'payment_date': iso_datetime(payment.payment_date),
        }

        details['idempotency_keys_removed'] = IdempotencyStore(session).delete_for_payment(payment.id)
        session.flush()
        PaymentRepository(session).delete(payment)
        session.flush()

        if invoice:
            refresh_invoice_payment_state(session, invoice)
        if customer_id:
            refresh_customer_balance(session, tenant_id, customer_id)

        append_entry(
            session,
            tenant_id=tenant_id,
            user_id=user_id,
            action=AuditAction.PAYMENT_DELETED,
            resource_type='payment',
            resource_id=payment_id,
            details=details
        )
        return True

    deleted = UnitOfWork(session).run_in_transaction(
        _delete,
        operation='delete_payment',
        context={'tenant_id': tenant_id, 'user_id': user_id, 'payment_id': payment_id}
    )

    if deleted:
        logger.info(f"Payment {payment_id} deleted by user {user_id} (tenant={tenant_id})")
    else:
        logger.warning(f"Payment {payment_id} not found for delete (tenant={tenant_id})")
    return deleted


# ---------------------------------------------------------------------------
# Multi-invoice allocation
# ---------------------------------------------------------------------------

def allocate_payment(request: dict, user_id: int, tenant_id: int, session, idempotency_key: str = None) -> dict:
    """
    Split one customer payment across several invoices.

    One payment row is created per allocation, capped at
    min(requested, remaining, invoice outstanding). Allocations that are
    non-positive, point at unknown or foreign invoices, or come after the
    money ran out are skipped.

    Args:
        request: dict with customer_id, amount, mode, reference, payment_date and
            allocations: [{'invoice_id': ..., 'amount': ...}, ...] in priority order

    Returns:
        dict with 'payment' (the first created), 'customer' and 'allocations'

    Raises:
        ValidationError: Bad input, or no allocation produced a payment
        NotFoundError: Customer does not exist in the tenant
    """
    amount = _parse_amount(request.get('amount'))
    if amount <= 0:
        raise ValidationError('The payment amount must be greater than 0.', payload={'field': 'amount'})

    customer_id = _parse_id(request.get('customer_id'), 'customer_id')
    if not customer_id:
        raise ValidationError('A customer is required to allocate a payment.', payload={'field': 'customer_id'})

    mode = _parse_mode(request.get('mode'))
    reference = _parse_reference(request.get('reference'))
    payment_date = _parse_date(request.get('payment_date'))
    idempotency_key = _parse_idempotency_key(idempotency_key)

    allocations = []
    for item in request.get('allocations') or []:
        allocations.append((
            _parse_id(item.get('invoice_id'), 'invoice_id'),
            _parse_amount(item.get('amount'), field='allocation amount')
        ))

    def _allocate(session):
        if idempotency_key:
            replay = _replay(session, tenant_id, idempotency_key)
            if replay is not None:
                return replay, True

        customer = CustomerRepository(session).get(tenant_id, customer_id)
        if not customer:
            raise NotFoundError(f'Customer {customer_id} not found')

        invoices = InvoiceRepository(session)
        payments = PaymentRepository(session)
        status = status_for_mode(mode)
        now = datetime.utcnow()
        remaining = amount
        created = []

        for invoice_id, requested in allocations:
            if remaining <= 0:
                break
            if requested <= 0:
                continue

            invoice = invoices.get(tenant_id, invoice_id, lock=True)
            if not invoice or invoice.customer_id != customer_id:
                logger.debug(f"Allocation to invoice {invoice_id} skipped: not an invoice of customer {customer_id}")
                continue

            portion = min(requested, remaining, actual_outstanding(session, invoice))
            if portion <= 0:
                continue

            payment = Payment(
                tenant_id=tenant_id,
                sale_id=invoice.id,
                customer_id=customer_id,
                amount=portion,
                mode=mode,
                status=status,
                reference=reference,
                payment_date=payment_date or now,
                created_by=user_id,
                created_at=now,
                updated_at=now
            )
            payments.add(payment)
            refresh_invoice_payment_state(session, invoice)

            remaining -= portion
            created.append({
                'invoice_id': invoice.id,
                'invoice_no': invoice.invoice_no,
                'payment_id': payment.id,
                'amount': money_str(portion),
                'invoice_status': invoice.payment_status.value,
            })

        if not created:
            raise ValidationError('No allocation could be applied to an outstanding invoice of this customer.')

        customer = refresh_customer_balance(session, tenant_id, customer_id)
        first_payment = payments.get(tenant_id, created[0]['payment_id'])

        append_entry(
            session,
            tenant_id=tenant_id,
            user_id=user_id,
            action=AuditAction.PAYMENT_ALLOCATED,
            resource_type='customer',
            resource_id=customer_id,
            details={
                'total_amount': money_str(amount),
                'allocated_amount': money_str(amount - remaining),
                'unallocated_amount': money_str(remaining),
                'mode': mode.value,
                'status': status.value,
                'allocations': created,
                'idempotency_key': idempotency_key,
            }
        )

        response = {
            'payment': payment_to_dict(first_payment),
            'customer': customer_summary(customer),
            'allocations': created,
        }
        snapshot = _snapshot(response)

        if idempotency_key:
            _record_idempotency(session, idempotency_key, first_payment.id, user_id, snapshot)

        return json.loads(snapshot), False

    try:
        response, replayed = UnitOfWork(session).run_in_transaction(
            _allocate,
            operation='allocate_payment',
            context={'tenant_id': tenant_id, 'user_id': user_id, 'customer_id': customer_id,
                     'idempotency_key': idempotency_key}
        )
    except IdempotencyKeyConflict:
        return _resolve_key_conflict(session, tenant_id, idempotency_key)
    except (ValidationError, NotFoundError) as e:
        logger.warning(f"Allocation rejected (tenant={tenant_id}, customer={customer_id}): {e.message}")
        raise

    if replayed:
        logger.warning(f"Duplicate allocation request detected (idempotency key {idempotency_key})")
    else:
        logger.info(
            f"Allocated {len(response['allocations'])} payments for customer {customer_id} "
            f"(tenant={tenant_id}, user={user_id})"
        )
    return response


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

def get_payment(session, tenant_id: int, payment_id: int) -> dict:
    """
    Single payment of the tenant.

    Raises:
        NotFoundError: If the payment is missing or belongs to another tenant
    """
    payment = PaymentRepository(session).get(tenant_id, payment_id)
    if not payment:
        raise NotFoundError(f'Payment {payment_id} not found')
    return payment_to_dict(payment)


def list_payments(session, tenant_id: int, page: int = 1, page_size: int = None) -> dict:
    """
    One page of the tenant's payments, newest payment date first.

    page_size defaults to LEDGER_DEFAULT_PAGE_SIZE and is capped at
    LEDGER_MAX_PAGE_SIZE.
    """
    page = max(int(page or 1), 1)
    page_size = int(page_size or get_setting('LEDGER_DEFAULT_PAGE_SIZE'))
    page_size = min(max(page_size, 1), int(get_setting('LEDGER_MAX_PAGE_SIZE')))

    items, total_count = PaymentRepository(session).page(tenant_id, page, page_size)
    return {
        'items': [payment_to_dict(p) for p in items],
        'page': page,
        'page_size': page_size,
        'total_count': total_count,
        'total_pages': (total_count + page_size - 1) // page_size,
    }


def check_duplicate_payment(session, tenant_id: int, customer_id: int, amount, payment_date) -> bool:
    """
    True when the customer already has a payment of about this amount on the same day.

    Advisory probe for UIs; create_payment does not call it.
    """
    amount = _parse_amount(amount)
    day = _parse_date(payment_date) or datetime.utcnow()
    start = datetime.combine(day.date(), time.min)
    return PaymentRepository(session).exists_same_amount_between(
        tenant_id, customer_id, amount, amount_tolerance(), start, start + timedelta(days=1)
    )
