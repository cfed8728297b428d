"""
Member Registry Service - manual admin operations on the member table.

    create_member()      new member (registry id unique)
    edit_member()        audited field edit, justification ≥ 10 chars
    deactivate_member()  soft delete with a reason code, justification ≥ 30 chars

Role or rank changes made by a non-admin also queue a RoleAdjustment for a
privileged reviewer; the change itself applies immediately.  Audit and
queue writes are best effort (savepoints) and surface as warnings.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from roster.core.exceptions import (
    ConflictError,
    FatalError,
    NotAuthorizedError,
    NotFoundError,
    PartialSuccessWarning,
    ValidationError,
)
from roster.models import db
from roster.models.audit import write_audit
from roster.models.member import (
    DEACTIVATION_REASONS,
    PLACEMENT_KINDS,
    Member,
    RoleAdjustment,
)
from roster.services.normalizer import canonical_label, comparison_key
from roster.services.ranks import compare_ranks, is_valid_rank
from roster.services.visibility_scope import VisibilityScope, apply_scope, in_scope
from roster.utils.errors import E
from roster.utils.helpers import parse_date_input

logger = logging.getLogger(__name__)

MIN_EDIT_JUSTIFICATION = 10
MIN_DEACTIVATION_JUSTIFICATION = 30

EDITABLE_FIELDS = (
    "name", "rank",
    "command_id", "regional_id", "division_id", "role_id",
    "command_label", "regional_label", "division_label", "role_label",
    "placement_role_id", "placement_kind",
)

# Fields that drive visibility or permissions; never self-editable.
PRIVILEGED_FIELDS = frozenset(EDITABLE_FIELDS) - {"name"}


def _clean(data: dict) -> dict:
    """Validate and normalise editable fields.  Raises ValidationError."""
    out = {}
    errors = {}
    for key in EDITABLE_FIELDS:
        if key not in data:
            continue
        value = data[key]
        if key == "name":
            value = comparison_key(value)
            if not value:
                errors["name"] = "must not be empty"
        elif key == "rank":
            value = (str(value).strip().upper() or None) if value is not None else None
            if value is not None and not is_valid_rank(value):
                errors["rank"] = f"invalid rank code {value!r}"
        elif key.endswith("_id"):
            if value is not None:
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    errors[key] = "must be an integer"
        elif key == "placement_kind":
            if value is not None and value not in PLACEMENT_KINDS:
                errors[key] = f"must be one of {sorted(PLACEMENT_KINDS)}"
        elif key == "role_label":
            value = comparison_key(value)
        else:
            kind = key[: -len("_label")]
            value = canonical_label(kind, value) if value else ""
        out[key] = value
    if errors:
        raise ValidationError("Invalid member fields", details=errors)
    return out


def _get(registry_id) -> Member | None:
    return db.session.execute(
        select(Member).where(Member.registry_id == str(registry_id))
    ).scalar_one_or_none()


def _side_write(step: str, warnings: list, fn, **kwargs) -> None:
    try:
        with db.session.begin_nested():
            fn(**kwargs)
    except SQLAlchemyError:
        logger.warning("Member side write %s failed", step, exc_info=True)
        warnings.append(PartialSuccessWarning(step, f"change applied, {step} not recorded"))


def _queue_adjustment(*, member: Member, before: dict, requested_by: str, reason: str) -> None:
    db.session.add(RoleAdjustment(
        member_id=member.id,
        registry_id=member.registry_id,
        previous_role_id=before.get("role_id"),
        new_role_id=member.role_id,
        previous_rank=before.get("rank"),
        new_rank=member.rank,
        reason=reason,
        requested_by=requested_by,
    ))
    db.session.flush()


def check_rank_grant(actor_registry_id, new_rank):
    """Error dict when the caller would grant a rank above their own, else None."""
    if not actor_registry_id or not new_rank:
        return None
    caller = _get(actor_registry_id)
    if caller is None or compare_ranks(new_rank, caller.rank) < 0:
        return NotAuthorizedError("Callers cannot grant a rank above their own").to_dict()
    return None


def _check_access(member: Member, target: dict, scope, actor_registry_id, privileged: bool):
    """Error dict when the caller may not act on *member*, else None.

    *target* holds the regional_id / division_id the member ends up in.
    """
    if scope is not None and not in_scope(scope, member.regional_id, member.division_id):
        return NotFoundError("Member", member.registry_id).to_dict()
    if privileged and actor_registry_id and member.registry_id == str(actor_registry_id):
        return NotAuthorizedError("Callers cannot change their own rank, role, placement or status").to_dict()
    if scope is not None and not in_scope(scope, target.get("regional_id"), target.get("division_id")):
        return NotAuthorizedError("Target placement lies outside the caller's scope").to_dict()
    return None


def _role_changed(before: dict, after: dict) -> bool:
    return before.get("role_id") != after.get("role_id") or before.get("rank") != after.get("rank")


def _result(member: Member, warnings: list) -> dict:
    return {
        "member": member.to_dict(),
        "warnings": [w.to_dict() for w in warnings],
        "partial": bool(warnings),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Commands
# ═════════════════════════════════════════════════════════════════════════════


def create_member(
    data: dict,
    created_by: str,
    is_admin: bool = False,
    scope: VisibilityScope | None = None,
    actor_registry_id: str | None = None,
):
    """Register a member by hand.

    A caller bound to *scope* may only register members inside it, at a rank
    no higher than their own.

    Returns ({"member", "warnings", "partial"}, None) or (None, error_dict).
    """
    data = data or {}
    registry_id = str(data.get("registry_id") or "").strip()
    if not registry_id or not registry_id.isdigit():
        return None, ValidationError(
            "registry_id is required and must be numeric", details={"registry_id": registry_id or None},
        ).to_dict()
    if not data.get("name"):
        return None, ValidationError("name is required", details={"name": "required"}).to_dict()
    try:
        fields = _clean(data)
    except ValidationError as exc:
        return None, exc.to_dict()

    if scope is not None and not in_scope(scope, fields.get("regional_id"), fields.get("division_id")):
        return None, NotAuthorizedError("Member placement lies outside the caller's scope").to_dict()

    try:
        denied = check_rank_grant(actor_registry_id, fields.get("rank"))
        if denied:
            return None, denied
        if _get(registry_id) is not None:
            return None, ConflictError(
                f"Member {registry_id} already exists", code=E.CONFLICT_DUPLICATE,
            ).to_dict()
        member = Member(registry_id=registry_id, **fields)
        db.session.add(member)
        db.session.flush()

        warnings: list[PartialSuccessWarning] = []
        after = member.snapshot()
        _side_write(
            "audit", warnings, write_audit,
            entity_type="member", entity_id=registry_id, action="member.create",
            actor=created_by, justification=(data.get("justification") or "manual registration"),
            after=after,
        )
        if not is_admin and (member.role_id is not None or member.rank is not None):
            _side_write(
                "role_adjustment", warnings, _queue_adjustment,
                member=member, before={}, requested_by=created_by, reason="manual registration",
            )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Member creation failed registry_id=%s", registry_id)
        raise FatalError("Member not created: storage failure") from exc

    logger.info("Member created", extra={"registry_id": registry_id})
    return _result(member, warnings), None


def edit_member(
    registry_id,
    changes: dict,
    justification: str,
    edited_by: str,
    is_admin: bool = False,
    scope: VisibilityScope | None = None,
    actor_registry_id: str | None = None,
):
    """Apply a manual edit with a before/after audit record.

    With a *scope*, the member must be visible to the caller before and after
    the edit.  Only the name of the caller's own record (*actor_registry_id*)
    may be changed.
    """
    justification = (justification or "").strip()
    if len(justification) < MIN_EDIT_JUSTIFICATION:
        return None, ValidationError(
            f"justification must have at least {MIN_EDIT_JUSTIFICATION} characters",
            details={"justification": "too short"},
        ).to_dict()
    unknown = sorted(set(changes or {}) - set(EDITABLE_FIELDS))
    if unknown:
        return None, ValidationError(
            "Fields not editable", details={k: "not editable" for k in unknown},
        ).to_dict()
    if not changes:
        return None, ValidationError("No changes given").to_dict()
    try:
        fields = _clean(changes)
    except ValidationError as exc:
        return None, exc.to_dict()

    try:
        member = _get(registry_id)
        if member is None:
            return None, NotFoundError("Member", registry_id).to_dict()
        denied = _check_access(
            member,
            {k: fields.get(k, getattr(member, k)) for k in ("regional_id", "division_id")},
            scope, actor_registry_id, privileged=bool(set(fields) & PRIVILEGED_FIELDS),
        )
        if not denied and fields.get("rank") != member.rank:
            denied = check_rank_grant(actor_registry_id, fields.get("rank"))
        if denied:
            return None, denied
        before = member.snapshot()
        for key, value in fields.items():
            setattr(member, key, value)
        db.session.flush()
        after = member.snapshot()

        warnings: list[PartialSuccessWarning] = []
        if before != after:
            _side_write(
                "audit", warnings, write_audit,
                entity_type="member", entity_id=member.registry_id, action="member.edit",
                actor=edited_by, justification=justification, before=before, after=after,
            )
            if not is_admin and _role_changed(before, after):
                _side_write(
                    "role_adjustment", warnings, _queue_adjustment,
                    member=member, before=before, requested_by=edited_by, reason=justification,
                )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Member edit failed registry_id=%s", registry_id)
        raise FatalError("Member not updated: storage failure") from exc

    logger.info("Member edited", extra={"registry_id": member.registry_id})
    return _result(member, warnings), None


def deactivate_member(
    registry_id,
    reason: str,
    justification: str,
    actor: str,
    deactivated_on=None,
    scope: VisibilityScope | None = None,
    actor_registry_id: str | None = None,
):
    """Soft-delete: ``is_active=False`` with a reason code.  Never removes the row."""
    justification = (justification or "").strip()
    if reason not in DEACTIVATION_REASONS:
        return None, ValidationError(
            "Invalid deactivation reason",
            details={"reason": f"must be one of {sorted(DEACTIVATION_REASONS)}"},
        ).to_dict()
    if len(justification) < MIN_DEACTIVATION_JUSTIFICATION:
        return None, ValidationError(
            f"justification must have at least {MIN_DEACTIVATION_JUSTIFICATION} characters",
            details={"justification": "too short"},
        ).to_dict()
    try:
        day = parse_date_input(deactivated_on) or date.today()
    except ValueError as exc:
        return None, ValidationError(str(exc), details={"deactivated_on": str(deactivated_on)}).to_dict()

    try:
        member = _get(registry_id)
        if member is None:
            return None, NotFoundError("Member", registry_id).to_dict()
        denied = _check_access(member, member.snapshot(), scope, actor_registry_id, privileged=True)
        if denied:
            return None, denied
        if not member.is_active:
            return None, ConflictError(
                f"Member {registry_id} is already inactive",
                current={"deactivation_reason": member.deactivation_reason,
                         "deactivated_on": member.deactivated_on.isoformat() if member.deactivated_on else None},
            ).to_dict()
        before = member.snapshot()
        member.is_active = False
        member.on_leave = reason == "on_leave"
        member.deactivation_reason = reason
        member.deactivated_on = day
        db.session.flush()

        warnings: list[PartialSuccessWarning] = []
        _side_write(
            "audit", warnings, write_audit,
            entity_type="member", entity_id=member.registry_id, action="member.deactivate",
            actor=actor, justification=justification, before=before, after=member.snapshot(),
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Member deactivation failed registry_id=%s", registry_id)
        raise FatalError("Member not deactivated: storage failure") from exc

    logger.info("Member deactivated", extra={"registry_id": member.registry_id})
    return _result(member, warnings), None


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def get_member(registry_id, scope: VisibilityScope | None = None):
    member = _get(registry_id)
    if member is None or (scope is not None and not in_scope(scope, member.regional_id, member.division_id)):
        return None, NotFoundError("Member", registry_id).to_dict()
    return member.to_dict(), None


def members_query(scope: VisibilityScope, active_only: bool = True, search: str | None = None):
    """Legacy Query of members visible within *scope*, ordered by name."""
    query = Member.query
    if active_only:
        query = query.filter(Member.is_active.is_(True))
    if search:
        key = comparison_key(search)
        query = query.filter((Member.name.contains(key)) | (Member.registry_id == search.strip()))
    return apply_scope(query, scope, Member).order_by(Member.name, Member.registry_id)


def list_role_adjustments(status: str = "pending") -> list[dict]:
    rows = db.session.execute(
        select(RoleAdjustment)
        .where(RoleAdjustment.status == status)
        .order_by(RoleAdjustment.created_at, RoleAdjustment.id)
    ).scalars().all()
    return [r.to_dict() for r in rows]
