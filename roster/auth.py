"""
Roster Governance Engine
Caller identity & authorization helpers.

Authentication happens upstream (gateway / SSO proxy).  The engine trusts
the identity headers it forwards:

    X-User          - caller identity (required on every mutating API call)
    X-User-Roles    - comma-separated role names
    X-Registry-Id   - the caller's own member registry id; drives the
                      visibility scope
    X-Super-Admin   - "true" marks a super-admin (same as holding the
                      SUPER_ADMIN_ROLE role)

Provides:
    - current_actor() / current_scope() resolved once per request into ``g``
    - acting_limits() for the services that change members, deltas and requests
    - require_identity decorator (401 without X-User)
    - require_admin decorator (403 without the super-admin role)
    - Content-Type guard for state-changing requests
"""

import functools
import logging
from dataclasses import dataclass, field

from flask import current_app, g, jsonify, request
from sqlalchemy import select

from roster.models import db
from roster.models.member import Member
from roster.services.visibility_scope import ScopePolicy, VisibilityScope, resolve_scope
from roster.utils.helpers import parse_bool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    user_id: str
    roles: frozenset = field(default_factory=frozenset)
    registry_id: str | None = None
    is_super_admin: bool = False

    @property
    def is_anonymous(self) -> bool:
        return not self.user_id

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "roles": sorted(self.roles),
            "registry_id": self.registry_id,
            "is_super_admin": self.is_super_admin,
        }


def _read_actor() -> Actor:
    user_id = (request.headers.get("X-User") or request.headers.get("X-Forwarded-User") or "").strip()
    roles = frozenset(
        r.strip().lower() for r in (request.headers.get("X-User-Roles") or "").split(",") if r.strip()
    )
    admin_role = str(current_app.config.get("SUPER_ADMIN_ROLE", "admin")).lower()
    return Actor(
        user_id=user_id,
        roles=roles,
        registry_id=(request.headers.get("X-Registry-Id") or "").strip() or None,
        is_super_admin=admin_role in roles or parse_bool(request.headers.get("X-Super-Admin")),
    )


def current_actor() -> Actor:
    """Identity of the caller for this request (cached in ``g``)."""
    actor = getattr(g, "actor", None)
    if actor is None:
        actor = _read_actor()
        g.actor = actor
    return actor


def current_member() -> Member | None:
    """The caller's own member record, looked up by X-Registry-Id."""
    actor = current_actor()
    if not actor.registry_id:
        return None
    return db.session.execute(
        select(Member).where(Member.registry_id == actor.registry_id)
    ).scalar_one_or_none()


def acting_limits() -> tuple[VisibilityScope | None, str | None]:
    """(scope, own registry id) bounding what the caller may act on.

    Super-admins hold global functional power and get ``(None, None)``.
    Everyone else acts only inside their visibility scope and never on
    their own member record.
    """
    actor = current_actor()
    if actor.is_super_admin:
        return None, None
    return current_scope(), actor.registry_id


def current_scope() -> VisibilityScope:
    """Visibility scope of the caller.

    Callers without a member record get a mandatory division scope with no
    bound division, i.e. they see nothing, unless they are super-admins.
    """
    scope = getattr(g, "visibility_scope", None)
    if scope is not None:
        return scope
    actor = current_actor()
    member = current_member()
    scope = resolve_scope(
        member.rank if member is not None else None,
        roles=actor.roles,
        home_regional_id=member.regional_id if member is not None else None,
        home_division_id=member.division_id if member is not None else None,
        is_super_admin=actor.is_super_admin,
        policy=ScopePolicy.from_config(current_app.config),
    )
    g.visibility_scope = scope
    return scope


# ── Decorators ───────────────────────────────────────────────────────────────

def require_identity(f):
    """Decorator: reject calls that carry no X-User identity."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if current_actor().is_anonymous:
            return jsonify({"error": "Caller identity required (X-User header)", "code": "ERR_UNAUTHENTICATED"}), 401
        return f(*args, **kwargs)

    return decorated


def require_admin(f):
    """Decorator: super-admin only (SUPER_ADMIN_ROLE or X-Super-Admin)."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        actor = current_actor()
        if actor.is_anonymous:
            return jsonify({"error": "Caller identity required (X-User header)", "code": "ERR_UNAUTHENTICATED"}), 401
        if not actor.is_super_admin:
            logger.warning("Access denied: %s tried admin endpoint %s", actor.user_id, request.path)
            return jsonify({"error": "Insufficient permissions", "code": "ERR_FORBIDDEN"}), 403
        return f(*args, **kwargs)

    return decorated


# ── CSRF protection for API ──────────────────────────────────────────────────

def _check_content_type():
    """
    For state-changing requests (POST/PUT/PATCH/DELETE), require
    Content-Type: application/json. HTML forms cannot send that content
    type, which makes it a lightweight CSRF mitigation.
    """
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return jsonify({
                "error": "Content-Type must be application/json for state-changing requests"
            }), 415
    return None


def init_auth(app):
    """Install the API guard on the Flask app (health routes are skipped)."""
    @app.before_request
    def _before_request_auth():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith("/api/v1/health/") or request.method == "OPTIONS":
            return None
        return _check_content_type()
