"""
Member registry blueprint.

Routes:
  GET    /members                       – members in the caller's scope
  POST   /members                       – register a member by hand
  GET    /members/<rid>                 – one member
  PATCH  /members/<rid>                 – audited edit
  POST   /members/<rid>/deactivate      – soft delete with reason code
  GET    /scope                         – the caller's resolved visibility scope
  GET    /role-adjustments              – queued permission adjustments (admin)
  GET    /notifications                 – caller's in-app notifications
  PATCH  /notifications/<nid>/read      – mark one as read

Outside super-admins, callers act only on members inside their visibility
scope and never on the rank, role, placement or status of their own record.
"""

import logging

from flask import Blueprint, jsonify, request

from roster.auth import acting_limits, current_actor, current_scope, require_admin, require_identity
from roster.blueprints import paginate_query, register_error_handlers, respond
from roster.models.member import ROLE_ADJUSTMENT_STATUSES
from roster.services import member_service
from roster.services.notification import NotificationService
from roster.utils.errors import E, api_error
from roster.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

member_bp = register_error_handlers(Blueprint("member_bp", __name__, url_prefix="/api/v1"))


# ═════════════════════════════════════════════════════════════════════════════
# MEMBERS
# ═════════════════════════════════════════════════════════════════════════════

@member_bp.route("/members", methods=["GET"])
@require_identity
def list_members():
    """Query params: ``q`` (name / registry id), ``include_inactive``, ``limit``, ``offset``."""
    scope = current_scope()
    q = member_service.members_query(
        scope,
        active_only=not parse_bool(request.args.get("include_inactive")),
        search=request.args.get("q"),
    )
    items, total = paginate_query(q)
    return jsonify({
        "items": [m.to_dict() for m in items],
        "total": total,
        "scope": scope.to_dict(),
    }), 200


@member_bp.route("/members", methods=["POST"])
@require_identity
def create_member():
    data = request.get_json(silent=True) or {}
    actor = current_actor()
    scope, own_registry_id = acting_limits()
    result, err = member_service.create_member(
        data, actor.user_id,
        is_admin=actor.is_super_admin, scope=scope, actor_registry_id=own_registry_id,
    )
    return respond(result, err, 201)


@member_bp.route("/members/<rid>", methods=["GET"])
@require_identity
def get_member(rid):
    scope, _ = acting_limits()
    return respond(*member_service.get_member(rid, scope=scope))


@member_bp.route("/members/<rid>", methods=["PATCH"])
@require_identity
def edit_member(rid):
    """Body: {changes: {...}, justification}."""
    data = request.get_json(silent=True) or {}
    changes = data.get("changes")
    if not isinstance(changes, dict):
        return api_error(E.VALIDATION_REQUIRED, "changes must be an object")
    actor = current_actor()
    scope, own_registry_id = acting_limits()
    result, err = member_service.edit_member(
        rid, changes, data.get("justification"), actor.user_id,
        is_admin=actor.is_super_admin, scope=scope, actor_registry_id=own_registry_id,
    )
    return respond(result, err)


@member_bp.route("/members/<rid>/deactivate", methods=["POST"])
@require_identity
def deactivate_member(rid):
    """Body: {reason, justification, deactivated_on?}."""
    data = request.get_json(silent=True) or {}
    scope, own_registry_id = acting_limits()
    result, err = member_service.deactivate_member(
        rid,
        data.get("reason"),
        data.get("justification"),
        current_actor().user_id,
        deactivated_on=data.get("deactivated_on"),
        scope=scope,
        actor_registry_id=own_registry_id,
    )
    return respond(result, err)


# ═════════════════════════════════════════════════════════════════════════════
# SCOPE / ROLE ADJUSTMENTS
# ═════════════════════════════════════════════════════════════════════════════

@member_bp.route("/scope", methods=["GET"])
@require_identity
def my_scope():
    return jsonify({"actor": current_actor().to_dict(), "scope": current_scope().to_dict()}), 200


@member_bp.route("/role-adjustments", methods=["GET"])
@require_admin
def list_role_adjustments():
    status = request.args.get("status", "pending")
    if status not in ROLE_ADJUSTMENT_STATUSES:
        return api_error(E.VALIDATION_INVALID, "Unknown status", details={"status": status})
    items = member_service.list_role_adjustments(status)
    return jsonify({"items": items, "total": len(items)}), 200


# ═════════════════════════════════════════════════════════════════════════════
# NOTIFICATIONS
# ═════════════════════════════════════════════════════════════════════════════

@member_bp.route("/notifications", methods=["GET"])
@require_identity
def list_notifications():
    try:
        limit = min(int(request.args.get("limit", 50)), 200)
        offset = max(int(request.args.get("offset", 0)), 0)
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "limit and offset must be integers")
    items = NotificationService.list_for_recipient(
        current_actor().user_id,
        unread_only=parse_bool(request.args.get("unread_only")),
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items]}), 200


@member_bp.route("/notifications/<int:nid>/read", methods=["PATCH"])
@require_identity
def mark_notification_read(nid):
    notif = NotificationService.mark_read(nid, recipient=current_actor().user_id)
    if notif is None:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict()), 200
