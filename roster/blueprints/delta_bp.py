"""
Delta resolution blueprint.

Routes:
  GET    /deltas                           – pending deltas in the caller's scope
  GET    /deltas/<did>                     – one delta (+ valid action codes)
  POST   /deltas/<did>/resolve             – resolve with justification / action code
  GET    /deltas/false-positives/preview   – count pending deltas between bounds
  POST   /deltas/false-positives/resolve   – bulk-resolve them (needs the preview count)

Deltas outside the caller's scope answer 404 on detail and resolve.
"""

import logging

from flask import Blueprint, jsonify, request

from roster.auth import acting_limits, current_actor, current_scope, require_admin, require_identity
from roster.blueprints import paginate_query, register_error_handlers, respond
from roster.models.delta import Delta
from roster.services import delta_resolution
from roster.services.delta_classifier import parse_delta_type, valid_actions
from roster.services.visibility_scope import in_scope
from roster.utils.errors import E, api_error
from roster.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

delta_bp = register_error_handlers(Blueprint("delta_bp", __name__, url_prefix="/api/v1"))


@delta_bp.route("/deltas", methods=["GET"])
@require_identity
def list_deltas():
    """Pending deltas visible to the caller, oldest first.

    Query params: ``delta_type``, ``limit``, ``offset``.
    """
    delta_type = request.args.get("delta_type")
    if delta_type and parse_delta_type(delta_type) is None:
        return api_error(E.VALIDATION_INVALID, "Unknown delta_type", details={"delta_type": delta_type})
    scope = current_scope()
    items, total = paginate_query(delta_resolution.pending_query(scope, delta_type))
    return jsonify({
        "items": [d.to_dict() for d in items],
        "total": total,
        "scope": scope.to_dict(),
    }), 200


@delta_bp.route("/deltas/<int:did>", methods=["GET"])
@require_identity
def get_delta(did):
    delta, err = get_or_404(Delta, did)
    if err:
        return err
    scope, _ = acting_limits()
    if scope is not None and not in_scope(scope, delta.regional_id, delta.division_id):
        return api_error(E.NOT_FOUND, "Delta not found")
    data = delta.to_dict()
    data["valid_actions"] = valid_actions(delta.delta_type)
    return jsonify(data), 200


@delta_bp.route("/deltas/<int:did>/resolve", methods=["POST"])
@require_identity
def resolve_delta(did):
    """Body: {justification, action_code?, side_effect_payload?}."""
    data = request.get_json(silent=True) or {}
    actor = current_actor()
    scope, own_registry_id = acting_limits()
    result, err = delta_resolution.resolve(
        did,
        actor.user_id,
        data.get("justification"),
        action_code=data.get("action_code"),
        side_effect_payload=data.get("side_effect_payload") or {},
        resolver_is_admin=actor.is_super_admin,
        scope=scope,
        actor_registry_id=own_registry_id,
    )
    return respond(result, err)


@delta_bp.route("/deltas/false-positives/preview", methods=["GET"])
@require_admin
def preview_false_positives():
    """Query params: ``start``, ``end`` (ISO timestamps)."""
    start, end = request.args.get("start"), request.args.get("end")
    if not start or not end:
        return api_error(E.VALIDATION_REQUIRED, "start and end are required")
    return respond(*delta_resolution.preview_false_positives(start, end))


@delta_bp.route("/deltas/false-positives/resolve", methods=["POST"])
@require_admin
def bulk_resolve_false_positives():
    """Body: {start, end, justification, previewed_count}."""
    data = request.get_json(silent=True) or {}
    if not data.get("start") or not data.get("end"):
        return api_error(E.VALIDATION_REQUIRED, "start and end are required")
    result, err = delta_resolution.bulk_resolve_false_positives(
        data["start"],
        data["end"],
        data.get("justification"),
        current_actor().user_id,
        data.get("previewed_count"),
    )
    if not err:
        logger.info("Bulk false-positive cleanup by %s: %d", current_actor().user_id, result["resolved"])
    return respond(result, err)
