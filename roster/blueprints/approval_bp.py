"""
Placement approval blueprint.

Routes:
  POST   /approvals                              – open a request with its approver chain
  GET    /approvals/pending                      – requests awaiting the caller
  GET    /approvals/<aid>                        – request with steps and current step
  POST   /approvals/<aid>/steps/<sid>/decide     – approve / reject the current step
  POST   /approvals/<aid>/escalate               – regional-director override
  POST   /approvals/<aid>/cancel                 – cancel an in-progress request
  POST   /members/<rid>/placement/close          – end a confirmed placement

Requests are opened only for members inside the caller's scope and cancelled
only by their requester or an administrator.
"""

import logging

from flask import Blueprint, jsonify, request

from roster.auth import acting_limits, current_actor, current_member, require_identity
from roster.blueprints import register_error_handlers, respond
from roster.services import approval_chain
from roster.utils.errors import E, api_error

logger = logging.getLogger(__name__)

approval_bp = register_error_handlers(Blueprint("approval_bp", __name__, url_prefix="/api/v1"))


@approval_bp.route("/approvals", methods=["POST"])
@require_identity
def create_request():
    """Body: {registry_id, kind, target_role_id?, approvers: [{approver_id, approver_type?, level?}]}."""
    data = request.get_json(silent=True) or {}
    if not data.get("registry_id"):
        return api_error(E.VALIDATION_REQUIRED, "registry_id is required")
    approvers = data.get("approvers") or []
    if not isinstance(approvers, list):
        return api_error(E.VALIDATION_INVALID, "approvers must be a list")
    scope, _ = acting_limits()
    result, err = approval_chain.create_request(
        str(data["registry_id"]),
        data.get("kind"),
        data.get("target_role_id"),
        current_actor().user_id,
        approvers,
        scope=scope,
    )
    return respond(result, err, 201)


@approval_bp.route("/approvals/pending", methods=["GET"])
@require_identity
def my_pending():
    items = approval_chain.pending_for_approver(current_actor().user_id)
    return jsonify({"items": items, "total": len(items)}), 200


@approval_bp.route("/approvals/<int:aid>", methods=["GET"])
@require_identity
def get_request(aid):
    scope, _ = acting_limits()
    return respond(*approval_chain.get_request(aid, scope=scope, viewer_id=current_actor().user_id))


@approval_bp.route("/approvals/<int:aid>/steps/<int:sid>/decide", methods=["POST"])
@require_identity
def decide(aid, sid):
    """Body: {outcome: approve|reject, rejection_reason?}."""
    data = request.get_json(silent=True) or {}
    result, err = approval_chain.decide(
        aid, sid, current_actor().user_id, data.get("outcome"), data.get("rejection_reason"),
    )
    return respond(result, err)


@approval_bp.route("/approvals/<int:aid>/escalate", methods=["POST"])
@require_identity
def escalate(aid):
    """Body: {justification}.  Caller's regional comes from X-Registry-Id."""
    data = request.get_json(silent=True) or {}
    actor = current_actor()
    member = current_member()
    result, err = approval_chain.escalate(
        aid,
        actor.user_id,
        actor.roles,
        member.regional_id if member is not None else None,
        data.get("justification"),
    )
    return respond(result, err)


@approval_bp.route("/approvals/<int:aid>/cancel", methods=["POST"])
@require_identity
def cancel(aid):
    """Body: {reason}."""
    data = request.get_json(silent=True) or {}
    actor = current_actor()
    return respond(*approval_chain.cancel(
        aid, data.get("reason"), actor.user_id, actor_is_admin=actor.is_super_admin,
    ))


@approval_bp.route("/members/<rid>/placement/close", methods=["POST"])
@require_identity
def close_placement(rid):
    """Body: {outcome: completed|withdrawn|failed|transferred, notes?}."""
    data = request.get_json(silent=True) or {}
    scope, own_registry_id = acting_limits()
    result, err = approval_chain.close_placement(
        rid, data.get("outcome"), data.get("notes") or "", current_actor().user_id,
        scope=scope, actor_registry_id=own_registry_id,
    )
    return respond(result, err)
