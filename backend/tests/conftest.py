"""
Pytest fixtures for the shift ledger tests.

Provides the test app and database, seeded staff, an open work period,
products, recording collaborators, and a file-backed app for threaded tests.
"""

import dataclasses
from types import SimpleNamespace

import pytest

from shiftledger import create_app
from shiftledger.collaborators import (
    Collaborators,
    LedgerInventory,
    NotificationCollaborator,
    PaymentCollaborator,
    PrintingCollaborator,
)
from shiftledger.errors import ResourceUnavailable
from shiftledger.extensions import db
from shiftledger.models import Product
from shiftledger.policies import LedgerPolicy
from shiftledger.services import permission_service, session_service, work_period_service
from shiftledger.services.auth_service import assign_role, create_default_roles, create_user
from shiftledger.services.concurrency import PeriodGate


PASSWORD = "Password123!"
SUPERVISOR_PIN = "4321"
MANAGER_PIN = "9876"

TEST_CONFIG = {
    "TESTING": True,
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "BCRYPT_ROUNDS": 4,
    "PERIOD_CLOSE_WAIT_SECONDS": 0.2,
    "DISPATCH_WORKER_ENABLED": False,
}


# =============================================================================
# RECORDING COLLABORATORS
# =============================================================================

class RecordingPrinter(PrintingCollaborator):
    def __init__(self):
        self.tickets = []
        self.receipts = []
        self.failures_left = 0

    def _maybe_fail(self):
        if self.failures_left:
            self.failures_left -= 1
            raise RuntimeError("printer offline")

    def print_ticket(self, receipt_id, item_ids):
        self._maybe_fail()
        self.tickets.append((receipt_id, list(item_ids)))

    def print_receipt(self, receipt_id):
        self._maybe_fail()
        self.receipts.append(receipt_id)


class RecordingPayments(PaymentCollaborator):
    def __init__(self):
        self.requests = []
        self.unavailable = False

    def initiate_payment(self, method, amount_cents, reference):
        if self.unavailable:
            raise ResourceUnavailable("Payment gateway unreachable")
        self.requests.append((method, amount_cents, reference))
        return f"PROV-{len(self.requests)}"


class RecordingNotifier(NotificationCollaborator):
    def __init__(self):
        self.events = []

    def notify(self, kind, payload):
        self.events.append((kind, payload))


def seed_staff() -> SimpleNamespace:
    """Roles, permissions and one user per role. Returns user ids."""
    create_default_roles()
    permission_service.initialize_permissions()
    permission_service.assign_default_role_permissions()

    staff = {}
    for username, role, pin in [
        ("admin", "admin", None),
        ("manager", "manager", MANAGER_PIN),
        ("supervisor", "supervisor", SUPERVISOR_PIN),
        ("cashier", "cashier", "1111"),
        ("cashier2", "cashier", "2222"),
    ]:
        user = create_user(username=username, password=PASSWORD, pin=pin)
        assign_role(user.id, role)
        staff[username] = user.id
    return SimpleNamespace(**staff)


# =============================================================================
# APP AND DATABASE
# =============================================================================

@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(dict(TEST_CONFIG))

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
    # Clear all data but keep schema (Core deletes bypass the audit listeners)
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    db.session.rollback()


@pytest.fixture(autouse=True)
def fakes(app):
    """Fresh recording collaborators, default policy and period gate per test."""
    fake = SimpleNamespace(
        printer=RecordingPrinter(),
        payments=RecordingPayments(),
        notifier=RecordingNotifier(),
    )
    app.extensions["shiftledger.collaborators"] = Collaborators(
        inventory=LedgerInventory(),
        printer=fake.printer,
        payments=fake.payments,
        notifier=fake.notifier,
    )
    app.extensions["shiftledger.policy"] = LedgerPolicy.from_config(app.config)
    app.extensions["shiftledger.period_gate"] = PeriodGate()
    yield fake


@pytest.fixture
def set_policy(app):
    """Replace individual LedgerPolicy fields for one test."""
    def _set(**overrides):
        policy = dataclasses.replace(app.extensions["shiftledger.policy"], **overrides)
        app.extensions["shiftledger.policy"] = policy
        return policy
    return _set


@pytest.fixture
def staff(db_session):
    return seed_staff()


@pytest.fixture
def period(staff):
    """Open work period for the default register group (float 100.00)."""
    return work_period_service.open_period(10000, staff.manager)


@pytest.fixture
def products(db_session):
    """
    burger: 40.00 + 16% tax = 46.40
    soda:   5.00, stock tracked (10 on hand)
    fries:  10.00
    """
    burger = Product(sku="BURGER", name="Burger", category="FOOD", price_cents=4000, tax_rate_bps=1600)
    soda = Product(sku="SODA", name="Soda", category="DRINKS", price_cents=500, track_stock=True, on_hand_qty=10)
    fries = Product(sku="FRIES", name="Fries", category="FOOD", price_cents=1000)
    db_session.add_all([burger, soda, fries])
    db_session.commit()
    return SimpleNamespace(burger=burger.id, soda=soda.id, fries=fries.id)


def auth_headers(user_id: int) -> dict:
    _, token = session_service.create_session(user_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers(staff):
    """Bearer headers per seeded user."""
    return SimpleNamespace(**{name: auth_headers(uid) for name, uid in vars(staff).items()})


# =============================================================================
# FILE-BACKED APP FOR THREADED TESTS
# =============================================================================

@pytest.fixture
def file_app(tmp_path):
    """
    Separate app on a SQLite file, so worker threads get real connections.

    Yields (app, staff); the caller pushes its own app contexts.
    """
    config = dict(TEST_CONFIG)
    config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{tmp_path / 'ledger.sqlite3'}"
    config["PERIOD_CLOSE_WAIT_SECONDS"] = 2.0
    app = create_app(config)

    with app.app_context():
        db.create_all()
        staff = seed_staff()
        db.session.add(Product(sku="SODA", name="Soda", category="DRINKS", price_cents=500))
        db.session.commit()

    yield app, staff

    with app.app_context():
        db.session.remove()
        db.engine.dispose()
