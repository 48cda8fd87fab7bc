"""
Integration tests for splitting one payment across several invoices.
"""

import pytest
from decimal import Decimal
from billing_ledger.models import Payment, SalePaymentStatus, AuditAction
from billing_ledger.services.payment_service import allocate_payment, create_payment
from billing_ledger.services.audit_service import get_audit_logs, decode_details
from billing_ledger.exceptions import ValidationError, NotFoundError


@pytest.fixture
def two_invoices(make_sale, tenant1, customer1):
    """400.00 and 600.00 invoices of customer1 (balance 1000.00)."""
    return make_sale(tenant1, '400.00', customer=customer1), make_sale(tenant1, '600.00', customer=customer1)


class TestAllocatePayment:

    def test_allocation_across_invoices(self, session, tenant1, user_id, customer1, two_invoices):
        first, second = two_invoices

        result = allocate_payment({
            'customer_id': customer1.id,
            'amount': 700,
            'mode': 'CASH',
            'allocations': [
                {'invoice_id': first.id, 'amount': 400},
                {'invoice_id': second.id, 'amount': 300},
            ],
        }, user_id, tenant1, session)

        assert [a['amount'] for a in result['allocations']] == ['400.00', '300.00']
        assert result['payment']['sale_id'] == first.id
        assert result['customer']['balance'] == '300.00'

        session.refresh(first)
        session.refresh(second)
        assert first.payment_status == SalePaymentStatus.PAID
        assert second.payment_status == SalePaymentStatus.PARTIAL
        assert second.paid_amount == Decimal('300.00')

    def test_allocation_capped_by_remaining_amount(self, session, tenant1, user_id, customer1, two_invoices):
        first, second = two_invoices

        result = allocate_payment({
            'customer_id': customer1.id,
            'amount': 500,
            'mode': 'CASH',
            'allocations': [
                {'invoice_id': first.id, 'amount': 400},
                {'invoice_id': second.id, 'amount': 600},
            ],
        }, user_id, tenant1, session)

        assert [a['amount'] for a in result['allocations']] == ['400.00', '100.00']
        assert result['customer']['balance'] == '500.00'

    def test_allocation_capped_by_outstanding(self, session, tenant1, user_id, customer1, two_invoices):
        first, _ = two_invoices
        create_payment({'sale_id': first.id, 'amount': 350, 'mode': 'CASH'}, user_id, tenant1, session)

        result = allocate_payment({
            'customer_id': customer1.id,
            'amount': 200,
            'mode': 'CASH',
            'allocations': [{'invoice_id': first.id, 'amount': 200}],
        }, user_id, tenant1, session)

        assert result['allocations'][0]['amount'] == '50.00'
        assert result['customer']['balance'] == '600.00'

    def test_skips_non_positive_and_foreign_invoices(self, session, tenant1, user_id, customer1, two_invoices,
                                                     make_customer, make_sale):
        first, second = two_invoices
        other_invoice = make_sale(tenant1, '100.00', customer=make_customer(tenant1))

        result = allocate_payment({
            'customer_id': customer1.id,
            'amount': 300,
            'mode': 'CASH',
            'allocations': [
                {'invoice_id': first.id, 'amount': 0},
                {'invoice_id': other_invoice.id, 'amount': 100},
                {'invoice_id': second.id, 'amount': 300},
            ],
        }, user_id, tenant1, session)

        assert [a['invoice_id'] for a in result['allocations']] == [second.id]
        session.refresh(other_invoice)
        assert other_invoice.paid_amount == Decimal('0.00')

    def test_cheque_allocation_is_pending(self, session, tenant1, user_id, customer1, two_invoices):
        first, _ = two_invoices

        result = allocate_payment({
            'customer_id': customer1.id,
            'amount': 100,
            'mode': 'CHEQUE',
            'allocations': [{'invoice_id': first.id, 'amount': 100}],
        }, user_id, tenant1, session)

        assert result['payment']['status'] == 'PENDING'
        assert result['customer']['balance'] == '1000.00'

    def test_unknown_customer(self, session, tenant1, user_id):
        with pytest.raises(NotFoundError):
            allocate_payment({
                'customer_id': 999999, 'amount': 100, 'mode': 'CASH',
                'allocations': [{'invoice_id': 1, 'amount': 100}],
            }, user_id, tenant1, session)

    def test_nothing_allocated(self, session, tenant1, user_id, customer1, two_invoices):
        with pytest.raises(ValidationError):
            allocate_payment({
                'customer_id': customer1.id, 'amount': 100, 'mode': 'CASH',
                'allocations': [{'invoice_id': 424242, 'amount': 100}],
            }, user_id, tenant1, session)

        assert session.query(Payment).filter(Payment.tenant_id == tenant1).count() == 0

    def test_ids_given_as_strings(self, session, tenant1, user_id, customer1, two_invoices):
        first, second = two_invoices

        result = allocate_payment({
            'customer_id': str(customer1.id), 'amount': 500, 'mode': 'CASH',
            'allocations': [
                {'invoice_id': str(first.id), 'amount': '400'},
                {'invoice_id': str(second.id), 'amount': '100'},
            ],
        }, user_id, tenant1, session)

        assert [a['invoice_id'] for a in result['allocations']] == [first.id, second.id]
        assert result['customer']['balance'] == '500.00'

    def test_customer_required(self, session, tenant1, user_id):
        with pytest.raises(ValidationError):
            allocate_payment({'amount': 100, 'mode': 'CASH', 'allocations': []}, user_id, tenant1, session)

    def test_idempotent_allocation(self, session, tenant1, user_id, customer1, two_invoices):
        first, second = two_invoices
        request = {
            'customer_id': customer1.id,
            'amount': 1000,
            'mode': 'ONLINE',
            'allocations': [
                {'invoice_id': first.id, 'amount': 400},
                {'invoice_id': second.id, 'amount': 600},
            ],
        }

        once = allocate_payment(request, user_id, tenant1, session, idempotency_key='alloc-1')
        twice = allocate_payment(request, user_id, tenant1, session, idempotency_key='alloc-1')

        assert once == twice
        assert session.query(Payment).filter(Payment.tenant_id == tenant1).count() == 2

    def test_single_audit_entry(self, session, tenant1, user_id, customer1, two_invoices):
        first, second = two_invoices

        allocate_payment({
            'customer_id': customer1.id,
            'amount': 450,
            'mode': 'CASH',
            'allocations': [
                {'invoice_id': first.id, 'amount': 400},
                {'invoice_id': second.id, 'amount': 50},
            ],
        }, user_id, tenant1, session)

        logs = get_audit_logs(session, tenant1, action_filter=AuditAction.PAYMENT_ALLOCATED)
        assert len(logs) == 1
        details = decode_details(logs[0])
        assert details['allocated_amount'] == '450.00'
        assert details['unallocated_amount'] == '0.00'
        assert len(details['allocations']) == 2
