"""
Pytest fixtures for discount authority tests.

Provides an in-memory application with a recording audit sink, per-test
table cleanup, catalog fixtures, and a temp-file application for
multi-threaded tests.
"""

import threading

import pytest
from sqlalchemy import update
from sqlalchemy.pool import StaticPool

from discount_authority import create_app
from discount_authority.extensions import db
from discount_authority.models import Employee, Product
from discount_authority.services import budget_service
from discount_authority.services.audit_service import AuditSink
from discount_authority.time_utils import utc_after


class RecordingAuditSink(AuditSink):
    """Keeps entries in memory; can be told to fail the next N writes."""

    def __init__(self):
        self.entries = []
        self.fail_next = 0
        self._lock = threading.Lock()

    def write(self, entry):
        with self._lock:
            if self.fail_next > 0:
                self.fail_next -= 1
                raise RuntimeError("audit store unavailable")
            if all(e.entry_id != entry.entry_id for e in self.entries):
                self.entries.append(entry)

    def events(self, event_type=None):
        with self._lock:
            return [e for e in self.entries if event_type is None or e.event_type == event_type]

    def clear(self):
        with self._lock:
            self.entries.clear()
            self.fail_next = 0


@pytest.fixture(scope='session')
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture(scope='session')
def app(audit_sink):
    """Create application for testing."""
    app = create_app(
        {
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': 'sqlite://',
            'SQLALCHEMY_ENGINE_OPTIONS': {
                'poolclass': StaticPool,
                'connect_args': {'check_same_thread': False},
            },
            'AUDIT_RETRY_BACKOFF_SECONDS': 0.01,
        },
        audit_sink=audit_sink,
    )

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app, audit_sink):
    """Create fresh database for each test."""
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    audit_sink.clear()

    yield db.session

    db.session.rollback()


# =============================================================================
# CATALOG FIXTURES
# =============================================================================

@pytest.fixture
def make_employee(db_session):
    def _make(username, role, commission_rate_bps=500, is_active=True):
        employee = Employee(
            username=username,
            role=role,
            commission_rate_bps=commission_rate_bps,
            is_active=is_active,
        )
        db_session.add(employee)
        db_session.commit()
        return employee
    return _make


@pytest.fixture
def staff(make_employee):
    return make_employee("sam.staff", "staff")


@pytest.fixture
def manager(make_employee):
    return make_employee("maria.manager", "manager")


@pytest.fixture
def admin(make_employee):
    return make_employee("ada.admin", "admin")


@pytest.fixture
def tv(db_session):
    """$1,649.99 price, $1,122.00 cost: ~32% margin, high-margin class."""
    product = Product(sku="TV-65-OLED", name="65in OLED TV", price_cents=164999, cost_cents=112200, is_active=True)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def cable(db_session):
    """$20.00 price, $16.00 cost: 20% margin, standard class."""
    product = Product(sku="HDMI-2M", name="HDMI cable 2m", price_cents=2000, cost_cents=1600, is_active=True)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def open_budget(db_session):
    def _open(employee, limit_cents=50000, period_key="2026-W42"):
        return budget_service.open_budget_period(employee.id, limit_cents=limit_cents, period_key=period_key)
    return _open


@pytest.fixture
def backdate():
    """Push a reservation or escalation case past its expiry."""
    def _backdate(model, row_id):
        db.session.execute(
            update(model).where(model.id == row_id).values(expires_at=utc_after(-60))
        )
        db.session.commit()
    return _backdate


# =============================================================================
# MULTI-THREAD APP (temp-file SQLite; each thread gets its own connection)
# =============================================================================

@pytest.fixture
def file_app(tmp_path, audit_sink):
    app = create_app(
        {
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.sqlite3'}",
            'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
            'LEDGER_RETRY_ATTEMPTS': 10,
        },
        audit_sink=audit_sink,
    )
    with app.app_context():
        db.create_all()
        audit_sink.clear()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
