"""
Shared pytest fixtures for the Project Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - team: an organisation, a project and one user per role
"""

import pytest

from tests import factories
from tracker import create_app
from tracker.models import db as _db
from tracker.services.notification import NotificationService


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


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
        NotificationService.clear()
        yield
        NotificationService.clear()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def team():
    """Organisation + project with one active member per role."""
    return factories.make_team()


@pytest.fixture()
def events():
    """Collect notifications dispatched during the test."""
    received = []
    NotificationService.subscribe(lambda event_type, payload: received.append((event_type, payload)))
    return received
