"""
Roster import blueprint.

Routes:
  POST   /imports/<category>     – run a snapshot import (active | on_leave)
  GET    /imports                – import history, newest first
  GET    /imports/<iid>          – one import (``?rows=true`` adds raw rows)
  GET    /imports/<iid>/deltas   – deltas detected by one import

Every route is admin only.

Body for POST:
    {"rows": [{registry_id, name, division_label, ...}, ...],
     "notes": "...", "dry_run": false}
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from roster.auth import current_actor, require_admin
from roster.blueprints import paginate_query, register_error_handlers, respond
from roster.models.delta import Delta
from roster.models.roster_import import RosterImport
from roster.services import import_service
from roster.utils.errors import E, api_error
from roster.utils.helpers import get_or_404, parse_bool

logger = logging.getLogger(__name__)

import_bp = register_error_handlers(Blueprint("import_bp", __name__, url_prefix="/api/v1"))


@import_bp.route("/imports/<category>", methods=["POST"])
@require_admin
def run_import(category):
    data = request.get_json(silent=True) or {}
    rows = data.get("rows")
    if rows is None:
        return api_error(E.VALIDATION_REQUIRED, "rows is required")
    dry_run = parse_bool(data.get("dry_run", request.args.get("dry_run")))
    report, err = import_service.run_import(
        category, rows, current_actor().user_id, notes=data.get("notes"), dry_run=dry_run,
    )
    if err:
        return respond(None, err)
    current_app.logger.info(
        "Import %s by %s: entered=%d left=%d",
        category, current_actor().user_id, report["entered"], report["left"],
    )
    return jsonify(report), 200 if dry_run else 201


@import_bp.route("/imports", methods=["GET"])
@require_admin
def list_imports():
    q = RosterImport.query
    category = request.args.get("category")
    if category:
        q = q.filter(RosterImport.category == category)
    scope_key = request.args.get("scope_key")
    if scope_key is not None:
        q = q.filter(RosterImport.scope_key == scope_key)
    items, total = paginate_query(
        q.order_by(RosterImport.created_at.desc(), RosterImport.id.desc()), default_limit=50,
    )
    return jsonify({"items": [i.to_dict() for i in items], "total": total}), 200


@import_bp.route("/imports/<int:iid>", methods=["GET"])
@require_admin
def get_import(iid):
    imp, err = get_or_404(RosterImport, iid, "Import")
    if err:
        return err
    return jsonify(imp.to_dict(include_rows=parse_bool(request.args.get("rows")))), 200


@import_bp.route("/imports/<int:iid>/deltas", methods=["GET"])
@require_admin
def import_deltas(iid):
    imp, err = get_or_404(RosterImport, iid, "Import")
    if err:
        return err
    q = Delta.query.filter(Delta.import_id == imp.id).order_by(Delta.id)
    items, total = paginate_query(q)
    return jsonify({"items": [d.to_dict() for d in items], "total": total}), 200
