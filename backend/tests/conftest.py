"""
Pytest fixtures for possync backend tests.

Provides an in-memory database, tenant/branch/menu fixtures, a test client,
and helpers for building sync operations.
"""

import uuid
from decimal import Decimal

import pytest

from possync import create_app
from possync.domain.operations import OperationInput
from possync.extensions import db
from possync.models import Branch, CashRegister, MenuItem
from possync.services.sync_service import SyncContext


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'DEFAULT_FX_RATE_KHR_PER_USD': '4100',
        'DEFAULT_KHR_ROUNDING_ENABLED': True,
        'DEFAULT_KHR_ROUNDING_MODE': 'NEAREST',
        'DEFAULT_KHR_ROUNDING_GRANULARITY': 100,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def tenant_id():
    return str(uuid.uuid4())


@pytest.fixture(scope='function')
def actor_id():
    return str(uuid.uuid4())


@pytest.fixture(scope='function')
def branch(db_session, tenant_id):
    """Active branch for the test tenant."""
    branch = Branch(tenant_id=tenant_id, name="Riverside", status="ACTIVE")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def other_branch(db_session, tenant_id):
    branch = Branch(tenant_id=tenant_id, name="Airport", status="ACTIVE")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def coffee(db_session, tenant_id):
    """$1.50 menu item."""
    item = MenuItem(tenant_id=tenant_id, name="Iced Coffee", price_usd=Decimal("1.50"), is_active=True)
    db_session.add(item)
    db_session.commit()
    return item


@pytest.fixture(scope='function')
def noodles(db_session, tenant_id):
    """$4.25 menu item."""
    item = MenuItem(tenant_id=tenant_id, name="Fried Noodles", price_usd=Decimal("4.25"), is_active=True)
    db_session.add(item)
    db_session.commit()
    return item


@pytest.fixture(scope='function')
def register(db_session, tenant_id, branch):
    register = CashRegister(tenant_id=tenant_id, branch_id=branch.id, name="Front Counter", status="ACTIVE")
    db_session.add(register)
    db_session.commit()
    return register


@pytest.fixture(scope='function')
def ctx(tenant_id, branch, actor_id):
    """Sync caller context for the test branch."""
    return SyncContext(tenant_id=tenant_id, branch_id=branch.id, actor_id=actor_id, actor_role="cashier")


def make_op(op_type: str, payload, *, client_op_id: str | None = None, occurred_at=None, branch_id=None) -> OperationInput:
    """Helper to build one batch entry with a fresh client_op_id."""
    return OperationInput(
        client_op_id=client_op_id or str(uuid.uuid4()),
        type=op_type,
        payload=payload,
        occurred_at=occurred_at,
        branch_id=branch_id,
    )


def sale_payload(*lines, tender_currency="USD", payment_method="cash", cash_received=None, client_sale_uuid=None) -> dict:
    """SALE_FINALIZED payload; each line is (menu_item_id, quantity)."""
    payload = {
        "client_sale_uuid": client_sale_uuid or str(uuid.uuid4()),
        "sale_type": "dine_in",
        "items": [{"menu_item_id": menu_item_id, "quantity": qty} for menu_item_id, qty in lines],
        "tender_currency": tender_currency,
        "payment_method": payment_method,
    }
    if cash_received is not None:
        payload["cash_received"] = cash_received
    return payload


def sync_headers(tenant_id: str, branch_id: str, actor_id: str, role: str = "cashier") -> dict:
    """Helper to create gateway identity headers."""
    return {
        'X-Tenant-Id': tenant_id,
        'X-Branch-Id': branch_id,
        'X-Actor-Id': actor_id,
        'X-Actor-Role': role,
    }
