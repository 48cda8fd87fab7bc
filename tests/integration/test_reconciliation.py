"""
Integration tests for balance reconciliation and the ledger read models.
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from billing_ledger.models import AuditAction
from billing_ledger.services.payment_service import (
    create_payment, get_payment, list_payments, check_duplicate_payment
)
from billing_ledger.services.balance_service import (
    recalculate_customer_balance, recalculate_all_customer_balances,
    validate_customer_balance, detect_balance_mismatches, fix_balance_mismatch
)
from billing_ledger.services.invoice_service import get_outstanding_invoices, get_invoice_amount
from billing_ledger.services.audit_service import get_audit_logs, decode_details
from billing_ledger.exceptions import NotFoundError


def _tamper(session, customer, balance):
    """Simulate drift left behind by an old incremental update."""
    customer.balance = Decimal(balance)
    session.commit()


class TestBalanceRecalculation:

    def test_balance_matches_sales_minus_cleared_payments(self, session, tenant1, user_id, customer1, invoice1,
                                                          make_sale):
        make_sale(tenant1, '250.00', customer=customer1)
        create_payment({'sale_id': invoice1.id, 'amount': 400, 'mode': 'CASH'}, user_id, tenant1, session)
        create_payment({'sale_id': invoice1.id, 'amount': 100, 'mode': 'CHEQUE'}, user_id, tenant1, session)

        session.refresh(customer1)
        assert customer1.total_sales == Decimal('1250.00')
        assert customer1.total_payments == Decimal('400.00')
        assert customer1.balance == Decimal('850.00')

    def test_deleted_sales_are_ignored(self, session, tenant1, customer1, invoice1, make_sale):
        extra = make_sale(tenant1, '500.00', customer=customer1)
        extra.is_deleted = True
        session.commit()

        recalculate_customer_balance(customer1.id, tenant1, session)

        session.refresh(customer1)
        assert customer1.balance == Decimal('1000.00')

    def test_recalculation_is_audited(self, session, tenant1, user_id, customer1, invoice1):
        _tamper(session, customer1, '5.00')

        recalculate_customer_balance(customer1.id, tenant1, session, user_id=user_id)

        logs = get_audit_logs(session, tenant1, action_filter=AuditAction.BALANCE_RECALCULATED,
                              resource_id_filter=customer1.id)
        details = decode_details(logs[0])
        assert details['previous_balance'] == '5.00'
        assert details['balance'] == '1000.00'
        assert logs[0].user_id == user_id

    def test_unknown_customer(self, session, tenant1):
        with pytest.raises(NotFoundError):
            recalculate_customer_balance(999999, tenant1, session)

    def test_recalculate_all(self, session, tenant1, make_customer, make_sale):
        customers = [make_customer(tenant1) for _ in range(3)]
        for customer in customers:
            make_sale(tenant1, '10.00', customer=customer)
            _tamper(session, customer, '0.00')

        assert recalculate_all_customer_balances(tenant1, session) == 3

        for customer in customers:
            session.refresh(customer)
            assert customer.balance == Decimal('10.00')


class TestMismatchDetection:

    def test_consistent_customer(self, session, tenant1, customer1, invoice1):
        result = validate_customer_balance(session, tenant1, customer1.id)

        assert result['is_valid'] is True
        assert result['actual_balance'] == '1000.00'
        assert result['difference'] == '0.00'

    def test_detect_and_fix(self, session, tenant1, customer1, invoice1):
        _tamper(session, customer1, '1200.00')

        mismatches = detect_balance_mismatches(session, tenant1)
        assert [m['customer_id'] for m in mismatches] == [customer1.id]
        assert mismatches[0]['stored_balance'] == '1200.00'
        assert mismatches[0]['actual_balance'] == '1000.00'
        assert mismatches[0]['difference'] == '200.00'

        assert fix_balance_mismatch(tenant1, customer1.id, session) is True
        assert detect_balance_mismatches(session, tenant1) == []

    def test_one_cent_is_tolerated(self, session, tenant1, customer1, invoice1):
        _tamper(session, customer1, '1000.01')

        assert validate_customer_balance(session, tenant1, customer1.id)['is_valid'] is True

    def test_validate_unknown_customer(self, session, tenant1):
        with pytest.raises(NotFoundError):
            validate_customer_balance(session, tenant1, 999999)


class TestReadModels:

    def test_get_payment(self, session, tenant1, user_id, invoice1):
        created = create_payment({'sale_id': invoice1.id, 'amount': 10, 'mode': 'CASH'}, user_id, tenant1, session)

        payment = get_payment(session, tenant1, created['payment']['id'])

        assert payment == created['payment']

    def test_get_payment_not_found(self, session, tenant1):
        with pytest.raises(NotFoundError):
            get_payment(session, tenant1, 999999)

    def test_list_payments_pages_newest_first(self, session, tenant1, user_id, invoice1):
        for day in range(1, 6):
            create_payment({
                'sale_id': invoice1.id, 'amount': day, 'mode': 'CASH',
                'payment_date': datetime(2024, 6, day, 12, 0),
            }, user_id, tenant1, session)

        page1 = list_payments(session, tenant1, page=1, page_size=2)
        page3 = list_payments(session, tenant1, page=3, page_size=2)

        assert page1['total_count'] == 5
        assert page1['total_pages'] == 3
        assert [p['amount'] for p in page1['items']] == ['5.00', '4.00']
        assert [p['amount'] for p in page3['items']] == ['1.00']

    def test_list_payments_page_size_is_capped(self, session, tenant1):
        result = list_payments(session, tenant1, page=1, page_size=10000)
        assert result['page_size'] == 100

    def test_list_payments_default_page_size(self, session, tenant1):
        assert list_payments(session, tenant1)['page_size'] == 10

    def test_outstanding_invoices(self, session, tenant1, user_id, customer1, make_sale):
        old = make_sale(tenant1, '300.00', customer=customer1, invoice_date=datetime.utcnow() - timedelta(days=10))
        new = make_sale(tenant1, '200.00', customer=customer1)
        paid = make_sale(tenant1, '50.00', customer=customer1)
        create_payment({'sale_id': paid.id, 'amount': 50, 'mode': 'CASH'}, user_id, tenant1, session)
        create_payment({'sale_id': old.id, 'amount': 100, 'mode': 'CHEQUE'}, user_id, tenant1, session)

        invoices = get_outstanding_invoices(session, tenant1, customer1.id)

        assert [i['id'] for i in invoices] == [old.id, new.id]
        assert invoices[0]['days_overdue'] >= 9
        assert invoices[0]['balance_amount'] == '300.00'
        assert invoices[0]['payable_amount'] == '200.00'
        assert invoices[1]['days_overdue'] == 0

    def test_invoice_amount(self, session, tenant1, user_id, invoice1):
        create_payment({'sale_id': invoice1.id, 'amount': 125, 'mode': 'CASH'}, user_id, tenant1, session)

        summary = get_invoice_amount(session, tenant1, invoice1.id)

        assert summary['total_amount'] == '1000.00'
        assert summary['paid_amount'] == '125.00'
        assert summary['outstanding_amount'] == '875.00'
        assert summary['status'] == 'Partial'

    def test_invoice_amount_not_found(self, session, tenant1):
        with pytest.raises(NotFoundError):
            get_invoice_amount(session, tenant1, 999999)


class TestDuplicateProbe:

    def test_same_day_same_amount(self, session, tenant1, user_id, customer1, invoice1):
        create_payment({
            'sale_id': invoice1.id, 'amount': 75, 'mode': 'CASH',
            'payment_date': datetime(2024, 7, 3, 9, 0),
        }, user_id, tenant1, session)

        assert check_duplicate_payment(session, tenant1, customer1.id, '75.00', datetime(2024, 7, 3, 18, 0)) is True
        assert check_duplicate_payment(session, tenant1, customer1.id, '75.00', datetime(2024, 7, 4, 9, 0)) is False
        assert check_duplicate_payment(session, tenant1, customer1.id, '76.00', datetime(2024, 7, 3, 9, 0)) is False
