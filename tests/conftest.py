"""
Shared pytest fixtures for the roster governance test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - structure: Command → 2 regionals → divisions, plus ranked roles
    - admin_headers / user_headers: caller identity headers
    - make_member: factory for Member rows
"""

import pytest

from flask import g

from roster import create_app
from roster.models import db as _db
from roster.models.member import Member
from roster.models.structure import Command, Division, Regional, Role


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")

    # The autouse ``session`` fixture keeps one app context open for the
    # whole test, and Flask reuses it for test-client requests, so ``g``
    # would leak between requests.  Give every request a fresh ``g`` the
    # way a real server does.
    def _fresh_g():
        for key in list(g):
            g.pop(key, None)

    application.before_request_funcs.setdefault(None, []).insert(0, _fresh_g)
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


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def structure():
    """Seed one command with two regionals, their divisions and a few roles.

    Returns a dict of ids keyed by short names.
    """
    command = Command(name="COMANDO LESTE")
    _db.session.add(command)
    _db.session.flush()

    vp1 = Regional(command_id=command.id, name="REGIONAL VALE DO PARAIBA 1 - SP")
    vp3 = Regional(command_id=command.id, name="REGIONAL VALE DO PARAIBA 3 - SP")
    _db.session.add_all([vp1, vp3])
    _db.session.flush()

    invernada = Division(regional_id=vp1.id, name="DIVISAO INVERNADA - SP")
    centro = Division(regional_id=vp1.id, name="DIVISAO CENTRO - SP")
    norte = Division(regional_id=vp3.id, name="DIVISAO NORTE - SP")
    _db.session.add_all([invernada, centro, norte])

    director = Role(name="DIRETOR REGIONAL", rank="V")
    instructor = Role(name="INSTRUTOR", rank="VII")
    _db.session.add_all([director, instructor])
    _db.session.commit()

    return {
        "command": command.id,
        "vp1": vp1.id,
        "vp3": vp3.id,
        "invernada": invernada.id,
        "centro": centro.id,
        "norte": norte.id,
        "director": director.id,
        "instructor": instructor.id,
    }


@pytest.fixture()
def make_member():
    """Factory: make_member("1001", regional_id=..., ...) → committed Member."""
    def _make(registry_id, name=None, **fields):
        fields.setdefault("rank", "VII")
        member = Member(registry_id=str(registry_id), name=name or f"MEMBRO {registry_id}", **fields)
        _db.session.add(member)
        _db.session.commit()
        return member
    return _make


@pytest.fixture()
def admin_headers():
    return {"X-User": "admin.user", "X-User-Roles": "admin"}


@pytest.fixture()
def user_headers():
    return {"X-User": "plain.user"}
