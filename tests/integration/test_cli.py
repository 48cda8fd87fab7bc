"""
Integration tests for the ledger CLI commands and the app error handler.
"""

from decimal import Decimal
from billing_ledger.models import Customer
from billing_ledger.exceptions import OverpaymentError


class TestLedgerCli:

    def test_init_db(self, app, session):
        result = app.test_cli_runner().invoke(args=['ledger', 'init-db'])

        assert result.exit_code == 0
        assert 'Ledger tables created' in result.output

    def test_recalc_single_customer(self, app, session, tenant1, customer1, invoice1):
        customer_id = customer1.id
        customer1.balance = Decimal('1.00')
        session.commit()

        result = app.test_cli_runner().invoke(args=[
            'ledger', 'recalc-balances', '--tenant-id', str(tenant1), '--customer-id', str(customer_id)
        ])

        assert result.exit_code == 0, result.output
        assert f'Customer {customer_id} recalculated' in result.output
        assert session.get(Customer, customer_id).balance == Decimal('1000.00')

    def test_recalc_all_customers(self, app, session, tenant1, make_customer, make_sale):
        for _ in range(2):
            make_sale(tenant1, '10.00', customer=make_customer(tenant1))

        result = app.test_cli_runner().invoke(args=['ledger', 'recalc-balances', '--tenant-id', str(tenant1)])

        assert result.exit_code == 0, result.output
        assert '2 customers recalculated' in result.output

    def test_recalc_unknown_customer(self, app, session, tenant1):
        result = app.test_cli_runner().invoke(args=[
            'ledger', 'recalc-balances', '--tenant-id', str(tenant1), '--customer-id', '999999'
        ])

        assert result.exit_code != 0
        assert 'not found' in result.output

    def test_check_balances_clean(self, app, session, tenant1, customer1, invoice1):
        result = app.test_cli_runner().invoke(args=['ledger', 'check-balances', '--tenant-id', str(tenant1)])

        assert result.exit_code == 0
        assert 'All customer balances are consistent' in result.output

    def test_check_balances_reports_without_fixing(self, app, session, tenant1, customer1, invoice1):
        customer_id = customer1.id
        customer1.balance = Decimal('900.00')
        session.commit()

        result = app.test_cli_runner().invoke(args=['ledger', 'check-balances', '--tenant-id', str(tenant1)])

        assert result.exit_code == 0
        assert 'stored=900.00 actual=1000.00' in result.output
        assert '--fix' in result.output
        assert session.get(Customer, customer_id).balance == Decimal('900.00')

    def test_check_balances_fix(self, app, session, tenant1, customer1, invoice1):
        customer_id = customer1.id
        customer1.balance = Decimal('900.00')
        session.commit()

        result = app.test_cli_runner().invoke(args=['ledger', 'check-balances', '--tenant-id', str(tenant1), '--fix'])

        assert result.exit_code == 0, result.output
        assert '1 of 1 customers fixed' in result.output
        assert session.get(Customer, customer_id).balance == Decimal('1000.00')


class TestErrorHandler:

    def test_ledger_error_rendered_as_json(self, app):
        with app.test_request_context('/payments', method='POST'):
            rv = app.handle_user_exception(OverpaymentError('Too much', outstanding=Decimal('5.00')))
            response = app.make_response(rv)

        assert response.status_code == 400
        assert response.get_json() == {
            'message': 'Too much',
            'status': 'error',
            'error': 'OverpaymentError',
            'outstanding': '5.00',
        }
