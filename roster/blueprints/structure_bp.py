"""
Organisational structure blueprint.

Routes:
  POST   /structure/match                    – resolve free-text labels to ids
  GET    /structure/commands                 – list commands
  POST   /structure/commands                 – create command
  GET    /structure/commands/<cid>/regionals – regionals of a command
  POST   /structure/regionals                – create regional
  GET    /structure/regionals/<rid>/divisions – divisions of a regional
  POST   /structure/divisions                – create division
  GET    /structure/roles                    – list roles (``?rank=V``)
  POST   /structure/roles                    – create role
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from roster.auth import require_admin
from roster.blueprints import register_error_handlers
from roster.models import db
from roster.models.structure import Command, Division, Regional, Role
from roster.services.normalizer import canonical_label, comparison_key
from roster.services.ranks import is_valid_rank, rank_to_number
from roster.services.structure_matcher import match_structure
from roster.utils.errors import E, api_error
from roster.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

structure_bp = register_error_handlers(Blueprint("structure_bp", __name__, url_prefix="/api/v1/structure"))


def _name(data):
    name = (data.get("name") or "").strip()
    if not name:
        return None, api_error(E.VALIDATION_REQUIRED, "name is required")
    return name, None


def _save(obj, label):
    db.session.add(obj)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return api_error(E.CONFLICT_DUPLICATE, f"{label} already exists")
    return jsonify(obj.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════════
# MATCH
# ═════════════════════════════════════════════════════════════════════════════

@structure_bp.route("/match", methods=["POST"])
def match():
    """Body: {command, regional, division, role?, rank?}."""
    data = request.get_json(silent=True) or {}
    result = match_structure(
        data.get("command"),
        data.get("regional"),
        data.get("division"),
        data.get("role"),
        data.get("rank"),
        abbreviations=current_app.config.get("NAME_ABBREVIATIONS") or None,
    )
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════════
# COMMANDS / REGIONALS / DIVISIONS
# ═════════════════════════════════════════════════════════════════════════════

@structure_bp.route("/commands", methods=["GET"])
def list_commands():
    return jsonify([c.to_dict() for c in Command.query.order_by(Command.name).all()]), 200


@structure_bp.route("/commands", methods=["POST"])
@require_admin
def create_command():
    name, err = _name(request.get_json(silent=True) or {})
    if err:
        return err
    return _save(Command(name=canonical_label("command", name)), "Command")


@structure_bp.route("/commands/<int:cid>/regionals", methods=["GET"])
def list_regionals(cid):
    command, err = get_or_404(Command, cid)
    if err:
        return err
    items = Regional.query.filter_by(command_id=command.id).order_by(Regional.name).all()
    return jsonify([r.to_dict() for r in items]), 200


@structure_bp.route("/regionals", methods=["POST"])
@require_admin
def create_regional():
    data = request.get_json(silent=True) or {}
    name, err = _name(data)
    if err:
        return err
    command, err = get_or_404(Command, data.get("command_id"))
    if err:
        return err
    return _save(Regional(command_id=command.id, name=canonical_label("regional", name)), "Regional")


@structure_bp.route("/regionals/<int:rid>/divisions", methods=["GET"])
def list_divisions(rid):
    regional, err = get_or_404(Regional, rid)
    if err:
        return err
    items = Division.query.filter_by(regional_id=regional.id).order_by(Division.name).all()
    return jsonify([d.to_dict() for d in items]), 200


@structure_bp.route("/divisions", methods=["POST"])
@require_admin
def create_division():
    data = request.get_json(silent=True) or {}
    name, err = _name(data)
    if err:
        return err
    regional, err = get_or_404(Regional, data.get("regional_id"))
    if err:
        return err
    return _save(Division(regional_id=regional.id, name=canonical_label("division", name)), "Division")


# ═════════════════════════════════════════════════════════════════════════════
# ROLES
# ═════════════════════════════════════════════════════════════════════════════

@structure_bp.route("/roles", methods=["GET"])
def list_roles():
    q = Role.query
    rank = request.args.get("rank")
    if rank:
        q = q.filter(Role.rank == rank.strip().upper())
    roles = sorted(q.all(), key=lambda r: (rank_to_number(r.rank), r.name))
    return jsonify([r.to_dict() for r in roles]), 200


@structure_bp.route("/roles", methods=["POST"])
@require_admin
def create_role():
    data = request.get_json(silent=True) or {}
    name, err = _name(data)
    if err:
        return err
    rank = str(data.get("rank") or "").strip().upper()
    if not is_valid_rank(rank):
        return api_error(E.VALIDATION_INVALID, "Invalid rank code", details={"rank": rank})
    return _save(Role(name=comparison_key(name), rank=rank), "Role")
