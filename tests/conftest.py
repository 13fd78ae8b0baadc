"""
Shared pytest fixtures for the Decision & Approval Workflow Engine suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - actor / approver: Actor objects for service-level calls
    - auth_headers / client_headers: identity headers for API calls
    - make_decision: factory for draft decisions via the service layer
    - file_app: second app on a file-backed database for race scenarios
"""

import pytest

from app import create_app
from app.config import TestingConfig, config
from app.core.actor import Actor
from app.models import db as _db
from app.services import decision_lifecycle
from app.services.scheduler_service import SchedulerService


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Identity helpers ─────────────────────────────────────────────────────


@pytest.fixture()
def auth_headers():
    """Identity headers as forwarded by the auth gateway."""
    return {"X-User-Id": "pm-1", "X-User-Name": "Pat Manager", "X-User-Email": "pat@example.com"}


@pytest.fixture()
def client_headers():
    return {"X-User-Id": "client-1", "X-User-Name": "Casey Client", "X-User-Email": "casey@example.com"}


@pytest.fixture()
def actor():
    return Actor(id="pm-1", name="Pat Manager", email="pat@example.com", ip_address="10.0.0.1")


@pytest.fixture()
def approver():
    return Actor(id="client-1", name="Casey Client", email="casey@example.com", ip_address="10.0.0.2")


# ── Convenience fixtures ─────────────────────────────────────────────────


def option_payload(title, amount=None):
    option = {"title": title, "description": f"{title} description"}
    if amount is not None:
        option["cost_impacts"] = [{"label": "Material", "amount_minor_units": amount, "currency": "USD"}]
    return option


@pytest.fixture()
def make_decision(actor):
    """Factory: create a draft decision with two options."""

    def _make(title="Kitchen countertop", **kwargs):
        kwargs.setdefault("options", [option_payload("Quartz", 250000), option_payload("Granite", 310000)])
        kwargs.setdefault("approver_email", "casey@example.com")
        return decision_lifecycle.create_decision(actor, title=title, **kwargs)

    return _make


@pytest.fixture()
def file_app(tmp_path, monkeypatch):
    """A second application on a file-backed SQLite database.

    Each app context gets its own session and connection, so nested
    contexts behave like two concurrent requests.
    """

    class FileBackedConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'engine.db'}"

    monkeypatch.setitem(config, "file_testing", FileBackedConfig)
    # create_app re-binds the scheduler; restore the session app afterwards.
    monkeypatch.setattr(SchedulerService, "_app", SchedulerService._app)
    application = create_app("file_testing")
    yield application
    with application.app_context():
        _db.session.remove()
        _db.engine.dispose()
