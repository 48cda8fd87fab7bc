import pytest
from datetime import datetime
import os
from decimal import Decimal
import uuid

from billing_ledger import create_app, database
from billing_ledger.database import get_session
from billing_ledger.models import Customer, Sale, SalePaymentStatus
from billing_ledger.services.balance_service import recalculate_customer_balance


USER_ID = 7


def _tenant_id():
    return uuid.uuid4().int % 10 ** 9 + 1


@pytest.fixture(scope='session')
def app(tmp_path_factory):
    """Create application instance for testing (file-backed SQLite unless TEST_DATABASE_URL is set)."""
    test_config = {}
    if not os.getenv('TEST_DATABASE_URL'):
        db_file = tmp_path_factory.mktemp('db') / 'ledger.db'
        test_config['SQLALCHEMY_DATABASE_URI'] = f'sqlite:///{db_file}'
    app = create_app('config.TestConfig', test_config=test_config)
    return app


@pytest.fixture(scope='function')
def session(app):
    """Fresh schema and database session for every test."""
    database.Base.metadata.drop_all(bind=database.engine)
    database.create_all()

    session = get_session()
    yield session
    session.rollback()
    database.db_session.remove()


@pytest.fixture(scope='function')
def user_id():
    return USER_ID


@pytest.fixture(scope='function')
def tenant1():
    """Tenant ID of the first test tenant."""
    return _tenant_id()


@pytest.fixture(scope='function')
def tenant2(tenant1):
    """Tenant ID of a second tenant for isolation tests."""
    tenant_id = _tenant_id()
    while tenant_id == tenant1:
        tenant_id = _tenant_id()
    return tenant_id


@pytest.fixture(scope='function')
def make_customer(session):
    """Factory: create a customer with zero balance."""
    def _make(tenant_id, name=None):
        suffix = str(uuid.uuid4())[:8]
        customer = Customer(tenant_id=tenant_id, name=name or f'Customer {suffix}')
        session.add(customer)
        session.commit()
        return customer
    return _make


@pytest.fixture(scope='function')
def make_sale(session):
    """
    Factory: create an invoice and bring the customer's balance up to date.

    A customer with a 1000.00 invoice owes 1000.00 before any payment.
    """
    def _make(tenant_id, grand_total, customer=None, invoice_date=None):
        suffix = str(uuid.uuid4())[:8]
        sale = Sale(
            tenant_id=tenant_id,
            invoice_no=f'INV-{suffix}',
            customer_id=customer.id if customer else None,
            invoice_date=invoice_date or datetime.utcnow(),
            grand_total=Decimal(str(grand_total)),
            paid_amount=Decimal('0'),
            payment_status=SalePaymentStatus.PENDING,
            is_deleted=False
        )
        session.add(sale)
        session.commit()
        if customer:
            recalculate_customer_balance(customer.id, tenant_id, session)
        return sale
    return _make


@pytest.fixture(scope='function')
def customer1(make_customer, tenant1):
    """Customer of tenant1."""
    return make_customer(tenant1, name='Acme Hardware')


@pytest.fixture(scope='function')
def invoice1(make_sale, tenant1, customer1):
    """1000.00 invoice of customer1 (customer balance 1000.00)."""
    return make_sale(tenant1, '1000.00', customer=customer1)
