"""
Delta Resolution Workflow.

Owns the lifecycle of a detected delta: PENDING → RESOLVED (one-way).

Public operations (tuple convention - ``(result, None)`` or ``(None, error)``):
    resolve()                       single delta, with action-code side effects
    preview_false_positives()       dry-run count for the bulk cleanup
    bulk_resolve_false_positives()  destructive cleanup, requires a matching preview
    list_pending()                  pending deltas inside a visibility scope

Pure helpers:
    infer_relation()   complementary pending delta for the same subject
                       within the recency window, or None

Concurrency:
    The PENDING → RESOLVED write is a conditional UPDATE (``WHERE status =
    'PENDING'``); when two resolvers race, exactly one UPDATE hits a row and
    the other gets ``ALREADY_RESOLVED`` with the winner's metadata.

Failure semantics:
    Member field changes commit together with the delta.  Audit rows,
    role-adjustment queue items and notifications are written in savepoints;
    a failure there is logged and returned as a warning with
    ``partial: True`` instead of rolling the resolution back.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from flask import current_app, has_app_context
from sqlalchemy import func, select, update
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
from roster.models.delta import Delta
from roster.models.member import PLACEMENT_KINDS, Member, RoleAdjustment
from roster.services.delta_classifier import (
    ActiveEnteredAction,
    ActiveLeftAction,
    DeltaType,
    LeaveEnteredAction,
    LeaveLeftAction,
    MovementType,
    classify,
    parse_action,
    parse_delta_type,
)
from roster.services.member_service import check_rank_grant
from roster.services.notification import NotificationService
from roster.services.ranks import is_valid_rank
from roster.services.visibility_scope import VisibilityScope, apply_scope, in_scope
from roster.utils.errors import E
from roster.utils.helpers import parse_date_input

logger = logging.getLogger(__name__)

DEFAULT_RELATION_WINDOW_HOURS = 24
FALSE_POSITIVE_ACTION = "false_positive"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def relation_window() -> timedelta:
    hours = DEFAULT_RELATION_WINDOW_HOURS
    if has_app_context():
        hours = current_app.config.get("RELATION_WINDOW_HOURS", hours)
    return timedelta(hours=float(hours))


# ═════════════════════════════════════════════════════════════════════════════
# Relation inference (pure)
# ═════════════════════════════════════════════════════════════════════════════

# delta type → complementary pending types, in priority order
COMPLEMENTS: dict[DeltaType, tuple[DeltaType, ...]] = {
    DeltaType.ACTIVE_ENTERED: (DeltaType.LEAVE_LEFT, DeltaType.ACTIVE_LEFT),
    DeltaType.LEAVE_LEFT: (DeltaType.ACTIVE_ENTERED, DeltaType.LEAVE_ENTERED),
    DeltaType.ACTIVE_LEFT: (DeltaType.LEAVE_ENTERED, DeltaType.ACTIVE_ENTERED),
    DeltaType.LEAVE_ENTERED: (DeltaType.ACTIVE_LEFT, DeltaType.LEAVE_LEFT),
}

_PAIR_MOVEMENT: dict[frozenset, MovementType | None] = {
    frozenset({DeltaType.ACTIVE_ENTERED, DeltaType.LEAVE_LEFT}): MovementType.LEAVE_END,
    frozenset({DeltaType.ACTIVE_LEFT, DeltaType.LEAVE_ENTERED}): MovementType.LEAVE_START,
    frozenset({DeltaType.LEAVE_ENTERED, DeltaType.LEAVE_LEFT}): MovementType.UNCLASSIFIED,
    # same-category pair: movement depends on the side
    frozenset({DeltaType.ACTIVE_LEFT, DeltaType.ACTIVE_ENTERED}): None,
}

_SIDE_MOVEMENT = {
    DeltaType.ACTIVE_LEFT: MovementType.TRANSFER_OUT,
    DeltaType.ACTIVE_ENTERED: MovementType.TRANSFER_IN,
}


@dataclass(frozen=True)
class Relation:
    """A complementary pending delta and the movement each side collapses to."""
    other: object
    movement: MovementType
    other_movement: MovementType


def pair_movements(new_type: DeltaType, other_type: DeltaType) -> tuple[MovementType, MovementType]:
    movement = _PAIR_MOVEMENT.get(frozenset({new_type, other_type}), MovementType.UNCLASSIFIED)
    if movement is None:
        return _SIDE_MOVEMENT[new_type], _SIDE_MOVEMENT[other_type]
    return movement, movement


def _field(obj, name):
    return obj.get(name) if isinstance(obj, dict) else getattr(obj, name, None)


def infer_relation(delta_type, registry_id, created_at, pending, window: timedelta | None = None):
    """Find the pending delta a fresh detection collapses with.

    Args:
        delta_type:  type of the delta about to be created.
        registry_id: its subject.
        created_at:  its detection time.
        pending:     iterable of pending deltas (models or dicts exposing
                     delta_type, registry_id, created_at, status).
        window:      recency window; defaults to the configured one.

    Returns:
        A :class:`Relation` or None.  Among candidates of the highest-priority
        complementary type, the one closest in time wins.
    """
    dtype = parse_delta_type(delta_type)
    if dtype is None or not registry_id:
        return None
    window = window if window is not None else relation_window()
    created_at = _aware(created_at) or _utcnow()

    candidates: dict[DeltaType, list] = {}
    for item in pending or ():
        if (_field(item, "status") or "PENDING") != "PENDING":
            continue
        if str(_field(item, "registry_id")) != str(registry_id):
            continue
        other_type = parse_delta_type(_field(item, "delta_type"))
        if other_type not in COMPLEMENTS[dtype]:
            continue
        other_at = _aware(_field(item, "created_at"))
        if other_at is None or abs(created_at - other_at) > window:
            continue
        candidates.setdefault(other_type, []).append((abs(created_at - other_at), item))

    for other_type in COMPLEMENTS[dtype]:
        found = candidates.get(other_type)
        if found:
            _, other = min(found, key=lambda t: (t[0], str(_field(t[1], "id"))))
            movement, other_movement = pair_movements(dtype, other_type)
            return Relation(other=other, movement=movement, other_movement=other_movement)
    return None


# ═════════════════════════════════════════════════════════════════════════════
# Side-effect tables
# ═════════════════════════════════════════════════════════════════════════════

PROMOTION_ACTIONS = frozenset({ActiveEnteredAction.PROMOTED, ActiveLeftAction.PROMOTED})

DEPARTURE_ACTIONS = {
    ActiveLeftAction.RESIGNED: "resigned",
    ActiveLeftAction.REQUESTED_EXIT: "resigned",
    ActiveLeftAction.EXPELLED: "expelled",
    ActiveLeftAction.TRANSFERRED_COMMAND: "transferred",
    LeaveLeftAction.RESIGNED: "resigned",
    LeaveLeftAction.EXPELLED: "expelled",
}

LEAVE_START_ACTIONS = frozenset({
    ActiveLeftAction.LEAVE_START, LeaveEnteredAction.CONFIRM_LEAVE, LeaveEnteredAction.NEW_LEAVE,
})

LEAVE_END_ACTIONS = frozenset({
    ActiveEnteredAction.RETURN_FROM_LEAVE, LeaveLeftAction.RETURNED, LeaveLeftAction.BACK_TO_ACTIVE,
})

ACTIVATION_ACTIONS = frozenset({
    ActiveEnteredAction.CONFIRM_NEW,
    ActiveEnteredAction.CONFIRM_TRANSFERRED,
    ActiveEnteredAction.CAME_FROM_REGIONAL,
    ActiveEnteredAction.CAME_FROM_COMMAND,
})

PROMOTION_FIELDS = (
    "rank", "role_id", "role_label",
    "command_id", "regional_id", "division_id",
    "command_label", "regional_label", "division_label",
    "placement_role_id", "placement_kind",
)


def _validate_promotion(payload: dict) -> None:
    changes = {k: payload[k] for k in PROMOTION_FIELDS if k in payload}
    if not changes:
        raise ValidationError(
            "Promotion requires at least one structural field",
            details={"side_effect_payload": f"one of {', '.join(PROMOTION_FIELDS)}"},
        )
    if "rank" in changes and not is_valid_rank(changes["rank"]):
        raise ValidationError("Malformed rank code", details={"rank": str(changes["rank"])})
    kind = changes.get("placement_kind")
    if kind is not None and kind not in PLACEMENT_KINDS:
        raise ValidationError(
            "Invalid placement_kind",
            details={"placement_kind": f"must be one of {sorted(PLACEMENT_KINDS)}"},
        )


def _parse_day(value) -> date | None:
    try:
        return parse_date_input(value)
    except ValueError:
        raise ValidationError("Malformed date", details={"effective_date": str(value)})


def _apply_member_changes(member: Member, action, payload: dict) -> bool:
    """Mutate the member according to the action.  Returns True if anything changed."""
    today = _parse_day(payload.get("effective_date")) or date.today()

    if action in PROMOTION_ACTIONS:
        for key in PROMOTION_FIELDS:
            if key in payload:
                setattr(member, key, payload[key])
        if "rank" in payload:
            member.rank = str(payload["rank"]).strip().upper()
        return True

    if action in DEPARTURE_ACTIONS:
        member.is_active = False
        member.on_leave = False
        member.deactivation_reason = DEPARTURE_ACTIONS[action]
        member.deactivated_on = today
        return True

    if action in LEAVE_START_ACTIONS:
        member.on_leave = True
        member.leave_started_on = member.leave_started_on or today
        if payload.get("leave_reason"):
            member.leave_reason = payload["leave_reason"]
        return True

    if action in LEAVE_END_ACTIONS:
        member.on_leave = False
        member.is_active = True
        member.leave_reason = None
        member.leave_started_on = None
        member.leave_expected_return = None
        return True

    if action in ACTIVATION_ACTIONS:
        member.is_active = True
        member.deactivation_reason = None
        member.deactivated_on = None
        return True

    return False


# ── Best-effort side writes ──────────────────────────────────────────────────


def _best_effort(step: str, warnings: list, fn, *args, **kwargs) -> None:
    try:
        with db.session.begin_nested():
            fn(*args, **kwargs)
    except SQLAlchemyError as exc:
        logger.warning("Side write %s failed: %s", step, exc, exc_info=True)
        messages = {
            "audit": "change applied, history not recorded",
            "role_adjustment": "change applied, permission adjustment not queued",
            "notification": "change applied, notification not recorded",
        }
        warnings.append(PartialSuccessWarning(step, messages.get(step, "side write failed")))


def _enqueue_role_adjustment(member: Member, before: dict, requested_by: str, reason: str) -> None:
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


def _error(exc) -> dict:
    return exc.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# resolve
# ═════════════════════════════════════════════════════════════════════════════


def resolve(
    delta_id: int,
    resolver_id: str,
    justification: str,
    action_code: str | None = None,
    side_effect_payload: dict | None = None,
    resolver_is_admin: bool = False,
    scope: VisibilityScope | None = None,
    actor_registry_id: str | None = None,
) -> tuple[dict, None] | tuple[None, dict]:
    """Resolve one pending delta.

    Args:
        delta_id:            PK of the delta.
        resolver_id:         identity of the resolving user.
        justification:       mandatory free text (stored as resolution_note).
        action_code:         admin-chosen code; re-classifies the movement and
                             selects the side effect.
        side_effect_payload: extra fields for the side effect (promotion
                             target fields, effective_date, leave_reason).
        resolver_is_admin:   full administrative privilege; when False a
                             promotion also queues a RoleAdjustment.
        scope:               caller's visibility scope; a delta outside it is
                             reported as not found.  None acts unrestricted.
        actor_registry_id:   caller's own registry id; deltas about that
                             member are refused.

    Returns:
        ({"delta", "member", "warnings", "partial"}, None) on success.
        (None, {"error", "code", "status", ...}) on NotFound / AlreadyResolved
        / NotAuthorized / Validation failures.

    Raises:
        FatalError: the store failed; nothing was applied.
    """
    justification = (justification or "").strip()
    payload = dict(side_effect_payload or {})
    if not justification:
        return None, _error(ValidationError(
            "justification is required", details={"justification": "must not be empty"},
        ))
    if not resolver_id:
        return None, _error(ValidationError("resolver_id is required"))

    try:
        delta = db.session.get(Delta, delta_id)
        if delta is None or (scope is not None and not in_scope(scope, delta.regional_id, delta.division_id)):
            return None, _error(NotFoundError("Delta", delta_id))
        if actor_registry_id and delta.registry_id == str(actor_registry_id):
            return None, _error(NotAuthorizedError(
                "A delta about the caller's own record must be resolved by someone else",
            ))
        if delta.status != "PENDING":
            return None, _error(ConflictError(
                f"Delta {delta_id} is already resolved",
                current=delta.resolution(),
                code=E.ALREADY_RESOLVED,
            ))

        action = None
        movement = delta.movement_type
        if action_code:
            action = parse_action(delta.delta_type, action_code)
            movement = classify(delta.delta_type, action_code, delta.observation).value
            if action is not None and action.value == "unmapped":
                logger.warning("Unmapped action code %r for delta %s", action_code, delta_id)
            if action in PROMOTION_ACTIONS:
                _validate_promotion(payload)
                target = (
                    payload.get("regional_id", delta.regional_id),
                    payload.get("division_id", delta.division_id),
                )
                if scope is not None and not in_scope(scope, *target):
                    return None, _error(NotAuthorizedError(
                        "Promotion target lies outside the resolver's scope",
                    ))
                denied = check_rank_grant(actor_registry_id, payload.get("rank"))
                if denied:
                    return None, denied
            _parse_day(payload.get("effective_date"))

        now = _utcnow()
        res = db.session.execute(
            update(Delta)
            .where(Delta.id == delta_id, Delta.status == "PENDING")
            .values(
                status="RESOLVED",
                resolved_by=str(resolver_id),
                resolution_note=justification,
                action_code=action.value if action is not None else None,
                movement_type=movement,
                resolved_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.session.rollback()
            current = db.session.get(Delta, delta_id)
            db.session.refresh(current)
            return None, _error(ConflictError(
                f"Delta {delta_id} is already resolved",
                current=current.resolution(),
                code=E.ALREADY_RESOLVED,
            ))
        db.session.refresh(delta)

        warnings: list[PartialSuccessWarning] = []
        member = db.session.execute(
            select(Member).where(Member.registry_id == delta.registry_id)
        ).scalar_one_or_none()

        if action is not None and member is not None:
            before = member.snapshot()
            if _apply_member_changes(member, action, payload):
                db.session.flush()
                after = member.snapshot()
                is_promotion = action in PROMOTION_ACTIONS
                _best_effort(
                    "audit", warnings, write_audit,
                    entity_type="member",
                    entity_id=member.registry_id,
                    action="delta.promote" if is_promotion else "delta.resolve",
                    actor=str(resolver_id),
                    justification=justification,
                    before=before,
                    after=after,
                )
                role_changed = before.get("role_id") != after.get("role_id") or (
                    before.get("rank") != after.get("rank")
                )
                if is_promotion and role_changed and not resolver_is_admin:
                    _best_effort(
                        "role_adjustment", warnings, _enqueue_role_adjustment,
                        member, before, str(resolver_id), justification,
                    )
        elif action is not None and action in PROMOTION_ACTIONS:
            warnings.append(PartialSuccessWarning(
                "member", f"no member with registry id {delta.registry_id}; structure not changed",
            ))

        _best_effort(
            "notification", warnings, NotificationService.broadcast,
            title=f"Delta resolved: {delta.name or delta.registry_id}",
            message=f"{delta.delta_type} → {delta.movement_type} by {resolver_id}: {justification}",
            category="delta",
            entity_type="delta",
            entity_id=delta.id,
        )
        db.session.commit()
    except ValidationError as exc:
        db.session.rollback()
        return None, _error(exc)
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Delta resolution failed delta_id=%s", delta_id)
        raise FatalError(f"Delta {delta_id} not resolved: storage failure") from exc

    logger.info(
        "Delta resolved",
        extra={"delta_id": delta.id, "registry_id": delta.registry_id, "action_code": delta.action_code},
    )
    return {
        "delta": delta.to_dict(),
        "member": member.to_dict() if member is not None else None,
        "warnings": [w.to_dict() for w in warnings],
        "partial": bool(warnings),
    }, None


# ═════════════════════════════════════════════════════════════════════════════
# Relation-aware delta creation (used by the import service)
# ═════════════════════════════════════════════════════════════════════════════


def pending_for_subject(registry_id: str) -> list[Delta]:
    return db.session.execute(
        select(Delta).where(Delta.registry_id == str(registry_id), Delta.status == "PENDING")
    ).scalars().all()


def record_delta(
    *,
    delta_type: DeltaType,
    registry_id: str,
    import_id: int | None = None,
    name: str = "",
    division_label: str = "",
    regional_label: str = "",
    rank: str | None = None,
    regional_id: int | None = None,
    division_id: int | None = None,
    observation: str = "",
    extra: dict | None = None,
    created_at: datetime | None = None,
) -> tuple[Delta, bool]:
    """Create a classified delta, collapsing it with a complementary pending one.

    Caller owns the transaction.  Returns (delta, paired).
    """
    created_at = created_at or _utcnow()
    relation = infer_relation(delta_type, registry_id, created_at, pending_for_subject(registry_id))

    delta = Delta(
        import_id=import_id,
        registry_id=str(registry_id),
        name=name or "",
        division_label=division_label or "",
        regional_label=regional_label or "",
        rank=rank,
        regional_id=regional_id,
        division_id=division_id,
        delta_type=DeltaType(delta_type).value,
        movement_type=classify(delta_type, None, observation).value,
        observation=observation or "",
        extra_json=json.dumps(extra or {}, default=str),
        created_at=created_at,
    )
    db.session.add(delta)
    db.session.flush()

    if relation is None:
        return delta, False

    other = relation.other
    note = f"Auto-resolved with delta #{delta.id} as one {relation.other_movement.value} event"
    res = db.session.execute(
        update(Delta)
        .where(Delta.id == other.id, Delta.status == "PENDING")
        .values(
            status="RESOLVED",
            resolved_by="system",
            resolution_note=note,
            movement_type=relation.other_movement.value,
            related_delta_id=delta.id,
            resolved_at=created_at,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        # resolved by someone else meanwhile; keep the fresh delta pending
        return delta, False

    db.session.refresh(other)
    delta.status = "RESOLVED"
    delta.resolved_by = "system"
    delta.resolution_note = f"Auto-resolved with delta #{other.id} as one {relation.movement.value} event"
    delta.movement_type = relation.movement.value
    delta.related_delta_id = other.id
    delta.resolved_at = created_at
    db.session.flush()
    logger.info(
        "Delta pair auto-resolved",
        extra={"delta_id": delta.id, "registry_id": delta.registry_id},
    )
    return delta, True


# ═════════════════════════════════════════════════════════════════════════════
# False-positive cleanup
# ═════════════════════════════════════════════════════════════════════════════


def _bounds(start, end) -> tuple[datetime, datetime]:
    def _coerce(value, label):
        if isinstance(value, datetime):
            return _aware(value)
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        try:
            return _aware(datetime.fromisoformat(str(value)))
        except (TypeError, ValueError):
            raise ValidationError(f"Malformed {label} timestamp", details={label: str(value)})

    start_at, end_at = _coerce(start, "start"), _coerce(end, "end")
    if start_at > end_at:
        raise ValidationError("start must not be after end", details={"start": str(start), "end": str(end)})
    return start_at, end_at


def _pending_in_bounds(start_at, end_at):
    return (
        Delta.status == "PENDING",
        Delta.created_at >= start_at,
        Delta.created_at <= end_at,
    )


def _count_pending(start_at, end_at) -> int:
    return db.session.execute(
        select(func.count(Delta.id)).where(*_pending_in_bounds(start_at, end_at))
    ).scalar_one()


def preview_false_positives(start, end) -> tuple[dict, None] | tuple[None, dict]:
    """Dry run: how many PENDING deltas were created between the bounds."""
    try:
        start_at, end_at = _bounds(start, end)
    except ValidationError as exc:
        return None, _error(exc)
    count = _count_pending(start_at, end_at)
    return {"count": count, "start": start_at.isoformat(), "end": end_at.isoformat()}, None


def bulk_resolve_false_positives(
    start,
    end,
    justification: str,
    resolver_id: str,
    previewed_count: int | None,
) -> tuple[dict, None] | tuple[None, dict]:
    """Resolve every PENDING delta created between the bounds as a false positive.

    Refuses to run without a non-empty justification and a non-zero
    ``previewed_count`` from :func:`preview_false_positives`; a preview that no
    longer matches the live count is a conflict (preview again).
    """
    justification = (justification or "").strip()
    if not justification:
        return None, _error(ValidationError(
            "justification is required", details={"justification": "must not be empty"},
        ))
    try:
        previewed = int(previewed_count or 0)
    except (TypeError, ValueError):
        previewed = 0
    if previewed <= 0:
        return None, _error(ValidationError(
            "A non-zero preview is required before bulk resolution",
            details={"previewed_count": "run the preview first"},
        ))
    try:
        start_at, end_at = _bounds(start, end)
    except ValidationError as exc:
        return None, _error(exc)

    try:
        current = _count_pending(start_at, end_at)
        if current != previewed:
            return None, _error(ConflictError(
                "Pending count changed since the preview",
                current={"count": current},
                code=E.STALE_PREVIEW,
            ))
        res = db.session.execute(
            update(Delta)
            .where(*_pending_in_bounds(start_at, end_at))
            .values(
                status="RESOLVED",
                resolved_by=str(resolver_id),
                resolution_note=justification,
                action_code=FALSE_POSITIVE_ACTION,
                resolved_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        resolved = res.rowcount
        warnings: list[PartialSuccessWarning] = []
        _best_effort(
            "audit", warnings, write_audit,
            entity_type="delta",
            entity_id="bulk",
            action="delta.bulk_resolve",
            actor=str(resolver_id),
            justification=justification,
            after={"start": start_at.isoformat(), "end": end_at.isoformat(), "resolved": resolved},
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Bulk false-positive resolution failed")
        raise FatalError("Bulk resolution not applied: storage failure") from exc

    db.session.expire_all()
    logger.info("Bulk-resolved %d false-positive deltas", resolved)
    return {
        "resolved": resolved,
        "warnings": [w.to_dict() for w in warnings],
        "partial": bool(warnings),
    }, None


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def pending_query(scope: VisibilityScope, delta_type: str | None = None):
    """Legacy Query of pending deltas visible within *scope*, oldest first."""
    query = Delta.query.filter(Delta.status == "PENDING")
    if delta_type:
        query = query.filter(Delta.delta_type == delta_type)
    return apply_scope(query, scope, Delta).order_by(Delta.created_at, Delta.id)


def list_pending(scope: VisibilityScope, delta_type: str | None = None) -> list[dict]:
    return [d.to_dict() for d in pending_query(scope, delta_type).all()]
