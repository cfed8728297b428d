"""
Approval Chain Engine - ordered multi-party sign-off for staged placements.

Each request carries ordered steps (level 1..n).  A step is actionable only
when every lower-level step is approved.  Request status is derived:

    rejected     as soon as any step is rejected (later steps never evaluated)
    approved     when every step is approved
    in_progress  otherwise

``cancelled`` is a separate caller-initiated terminal state, allowed only
before full approval.

Subject lifecycle:
    create_request  → member placement set tentatively
    last approval   → placement confirmed (member enters training / probation)
    rejection       → placement cleared
    cancel          → placement cleared
    close_placement → placement ended, history row written

Decisions on one request are serialised: the request row is read with
SELECT … FOR UPDATE and the step write is a conditional UPDATE on
``status = 'pending'``, so two approvers can never both act as "current".

All public operations return ``(result, None)`` or ``(None, error_dict)``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from roster.core.exceptions import (
    ConflictError,
    FatalError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from roster.models import db
from roster.models.approval import ApprovalRequest, ApprovalStep
from roster.models.audit import write_audit
from roster.models.member import PLACEMENT_KINDS, Member, PlacementHistory
from roster.services.notification import NotificationService
from roster.services.visibility_scope import VisibilityScope, in_scope
from roster.utils.errors import E

logger = logging.getLogger(__name__)

OUTCOMES = frozenset({"approve", "reject"})
PLACEMENT_OUTCOMES = frozenset({"completed", "withdrawn", "failed", "transferred"})
DEFAULT_ESCALATION_ROLE = "regional_director"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _field(obj, name):
    return obj.get(name) if isinstance(obj, dict) else getattr(obj, name, None)


# ═════════════════════════════════════════════════════════════════════════════
# Pure state derivation
# ═════════════════════════════════════════════════════════════════════════════


def derive_status(steps) -> str:
    statuses = [_field(s, "status") for s in steps or ()]
    if any(s == "rejected" for s in statuses):
        return "rejected"
    if statuses and all(s == "approved" for s in statuses):
        return "approved"
    return "in_progress"


def current_step(steps):
    """First pending step whose lower-level steps are all approved, else None."""
    for step in sorted(steps or (), key=lambda s: _field(s, "level")):
        status = _field(step, "status")
        if status == "approved":
            continue
        if status == "pending":
            return step
        return None
    return None


# ── Private helpers ──────────────────────────────────────────────────────────


def _error(exc) -> dict:
    return exc.to_dict()


def _lock_request(request_id: int) -> ApprovalRequest | None:
    return db.session.execute(
        select(ApprovalRequest)
        .where(ApprovalRequest.id == request_id)
        .with_for_update(of=ApprovalRequest)
    ).scalar_one_or_none()


def _set_placement(member: Member, request: ApprovalRequest) -> None:
    member.placement_role_id = request.target_role_id
    member.placement_kind = request.kind


def _clear_placement(member: Member | None) -> None:
    if member is not None:
        member.placement_role_id = None
        member.placement_kind = None


def _notify(request: ApprovalRequest, title: str, message: str, severity="info") -> None:
    NotificationService.notify_quietly(
        title=title,
        message=message,
        category="approval",
        severity=severity,
        entity_type="approval_request",
        entity_id=request.id,
        recipients=[request.requested_by],
    )


def _audit_quietly(**kwargs) -> bool:
    try:
        with db.session.begin_nested():
            write_audit(**kwargs)
        return True
    except SQLAlchemyError:
        logger.warning("Audit not recorded for %s", kwargs.get("action"), exc_info=True)
        return False


def _apply_decision(
    request: ApprovalRequest,
    step: ApprovalStep,
    *,
    outcome: str,
    actor_id: str,
    rejection_reason: str | None = None,
    escalation_justification: str | None = None,
) -> tuple[dict, None] | tuple[None, dict]:
    """Write one decision and drive the request/member to their next state."""
    now = _utcnow()
    res = db.session.execute(
        update(ApprovalStep)
        .where(ApprovalStep.id == step.id, ApprovalStep.status == "pending")
        .values(
            status="approved" if outcome == "approve" else "rejected",
            decided_at=now,
            decided_by=str(actor_id),
            rejection_reason=rejection_reason,
            escalated=escalation_justification is not None,
            escalation_justification=escalation_justification,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.session.rollback()
        return None, _error(ConflictError(
            "Step was decided concurrently",
            current=db.session.get(ApprovalRequest, request.id).to_dict(),
            code=E.NOT_ACTIONABLE,
        ))
    db.session.refresh(step)

    member = db.session.get(Member, request.member_id)
    status = derive_status(request.steps)
    if status == "rejected":
        request.status = "rejected"
        request.closed_at = now
        _clear_placement(member)
    elif status == "approved":
        request.status = "approved"
        request.closed_at = now
        if member is not None:
            _set_placement(member, request)
    db.session.flush()

    warnings = []
    action = "approval.approve" if outcome == "approve" else "approval.reject"
    if escalation_justification is not None:
        action = "approval.escalate"
    if not _audit_quietly(
        entity_type="approval_request",
        entity_id=request.id,
        action=action,
        actor=str(actor_id),
        justification=rejection_reason or escalation_justification or "",
        after={"step_id": step.id, "level": step.level, "request_status": request.status},
    ):
        warnings.append({"step": "audit", "message": "decision applied, history not recorded"})

    if request.status == "rejected":
        _notify(request, "Placement request rejected",
                f"Level {step.level} rejected by {actor_id}: {rejection_reason}", severity="warning")
    elif request.status == "approved":
        _notify(request, "Placement request approved",
                f"All {len(request.steps)} approvals granted", severity="success")

    db.session.commit()
    logger.info(
        "Approval decision %s on request %s step L%s -> %s",
        outcome, request.id, step.level, request.status,
    )
    result = request.to_dict()
    result["warnings"] = warnings
    result["partial"] = bool(warnings)
    return result, None


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def create_request(
    registry_id: str,
    kind: str,
    target_role_id: int | None,
    requested_by: str,
    approvers: list[dict],
    scope: VisibilityScope | None = None,
) -> tuple[dict, None] | tuple[None, dict]:
    """Open a placement request with an ordered approver chain.

    Args:
        registry_id:    subject member.
        kind:           "training" | "probation".
        target_role_id: role the member is being placed into.
        requested_by:   requesting user.
        approvers:      ordered list of {"approver_id", "approver_type"?, "level"?};
                        levels default to list position (1-based).
        scope:          requester's visibility scope; the member must be
                        inside it (None acts unrestricted).
    """
    if kind not in PLACEMENT_KINDS:
        return None, _error(ValidationError(
            f"kind must be one of {sorted(PLACEMENT_KINDS)}", details={"kind": str(kind)},
        ))
    if not approvers:
        return None, _error(ValidationError("at least one approver is required"))

    steps = []
    for i, entry in enumerate(approvers, 1):
        approver_id = str(entry.get("approver_id") or "").strip()
        if not approver_id:
            return None, _error(ValidationError(
                "approver_id is required for every step", details={"step": i},
            ))
        try:
            level = int(entry.get("level") or i)
        except (TypeError, ValueError):
            return None, _error(ValidationError("level must be an integer", details={"step": i}))
        steps.append(ApprovalStep(
            level=level,
            approver_id=approver_id,
            approver_type=entry.get("approver_type") or "",
        ))
    if len({s.level for s in steps}) != len(steps):
        return None, _error(ValidationError("step levels must be unique"))

    try:
        member = db.session.execute(
            select(Member).where(Member.registry_id == str(registry_id))
        ).scalar_one_or_none()
        if member is None or (scope is not None and not in_scope(scope, member.regional_id, member.division_id)):
            return None, _error(NotFoundError("Member", registry_id))
        if not member.is_active:
            return None, _error(ValidationError("Member is inactive", details={"registry_id": registry_id}))

        active = db.session.execute(
            select(ApprovalRequest)
            .where(ApprovalRequest.member_id == member.id, ApprovalRequest.status == "in_progress")
            .with_for_update(of=ApprovalRequest)
        ).scalar_one_or_none()
        if active is not None:
            return None, _error(ConflictError(
                f"Member {registry_id} already has an active request",
                current=active.to_dict(),
                code=E.CONFLICT_DUPLICATE,
            ))

        request = ApprovalRequest(
            member_id=member.id,
            kind=kind,
            target_role_id=target_role_id,
            requested_by=requested_by,
            steps=sorted(steps, key=lambda s: s.level),
        )
        db.session.add(request)
        _set_placement(member, request)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Approval request creation failed registry_id=%s", registry_id)
        raise FatalError("Approval request not created: storage failure") from exc

    logger.info("Approval request %s opened for member %s (%s)", request.id, registry_id, kind)
    return request.to_dict(), None


def _visible_to(request: ApprovalRequest, scope: VisibilityScope, viewer_id: str | None) -> bool:
    """Requester and designated approvers always see a request; others need the member in scope."""
    if viewer_id and (request.requested_by == viewer_id or any(s.approver_id == viewer_id for s in request.steps)):
        return True
    member = request.member
    return member is not None and in_scope(scope, member.regional_id, member.division_id)


def get_request(
    request_id: int,
    scope: VisibilityScope | None = None,
    viewer_id: str | None = None,
) -> tuple[dict, None] | tuple[None, dict]:
    request = db.session.get(ApprovalRequest, request_id)
    if request is None or (scope is not None and not _visible_to(request, scope, viewer_id)):
        return None, _error(NotFoundError("ApprovalRequest", request_id))
    data = request.to_dict()
    step = current_step(request.steps) if request.status == "in_progress" else None
    data["current_step"] = step.to_dict() if step is not None else None
    return data, None


def pending_for_approver(approver_id: str) -> list[dict]:
    """In-progress requests whose current step belongs to *approver_id*."""
    requests = db.session.execute(
        select(ApprovalRequest).where(ApprovalRequest.status == "in_progress")
        .order_by(ApprovalRequest.created_at, ApprovalRequest.id)
    ).scalars().all()
    out = []
    for request in requests:
        step = current_step(request.steps)
        if step is not None and step.approver_id == str(approver_id):
            data = request.to_dict()
            data["current_step"] = step.to_dict()
            out.append(data)
    return out


def decide(
    request_id: int,
    step_id: int,
    actor_id: str,
    outcome: str,
    rejection_reason: str | None = None,
) -> tuple[dict, None] | tuple[None, dict]:
    """Approve or reject the current step.

    Errors:
        NotFound       unknown request or step
        NotActionable  (409) request closed, or step is not the current one
        NotAuthorized  (403) actor is not the step's designated approver
        Validation     unknown outcome, or rejection without a reason
    """
    if outcome not in OUTCOMES:
        return None, _error(ValidationError(
            f"outcome must be one of {sorted(OUTCOMES)}", details={"outcome": str(outcome)},
        ))
    rejection_reason = (rejection_reason or "").strip() or None
    if outcome == "reject" and not rejection_reason:
        return None, _error(ValidationError(
            "rejection_reason is required", details={"rejection_reason": "must not be empty"},
        ))

    try:
        request = _lock_request(request_id)
        if request is None:
            return None, _error(NotFoundError("ApprovalRequest", request_id))
        step = next((s for s in request.steps if s.id == step_id), None)
        if step is None:
            return None, _error(NotFoundError("ApprovalStep", step_id))
        if request.status != "in_progress":
            return None, _error(ConflictError(
                f"Request {request_id} is {request.status}",
                current=request.to_dict(),
                code=E.NOT_ACTIONABLE,
            ))
        cur = current_step(request.steps)
        if cur is None or cur.id != step.id:
            return None, _error(ConflictError(
                f"Step L{step.level} is not actionable",
                current={"current_step": cur.to_dict() if cur is not None else None},
                code=E.NOT_ACTIONABLE,
            ))
        if str(actor_id) != step.approver_id:
            return None, _error(NotAuthorizedError(
                f"{actor_id} is not the designated approver for step L{step.level}",
            ))
        return _apply_decision(
            request, step, outcome=outcome, actor_id=actor_id, rejection_reason=rejection_reason,
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Approval decision failed request_id=%s", request_id)
        raise FatalError("Decision not applied: storage failure") from exc


def escalate(
    request_id: int,
    actor_id: str,
    actor_roles,
    actor_regional_id: int | None,
    justification: str,
) -> tuple[dict, None] | tuple[None, dict]:
    """Approve the current step out of turn as the subject's regional director.

    The step is marked ``escalated`` and keeps the justification.
    """
    justification = (justification or "").strip()
    if not justification:
        return None, _error(ValidationError(
            "justification is required", details={"justification": "must not be empty"},
        ))
    role = DEFAULT_ESCALATION_ROLE
    if has_app_context():
        role = current_app.config.get("ESCALATION_ROLE", role)
    if role not in {str(r).strip().lower() for r in actor_roles or ()}:
        return None, _error(NotAuthorizedError(f"Escalation requires the {role} role"))

    try:
        request = _lock_request(request_id)
        if request is None:
            return None, _error(NotFoundError("ApprovalRequest", request_id))
        if request.status != "in_progress":
            return None, _error(ConflictError(
                f"Request {request_id} is {request.status}",
                current=request.to_dict(),
                code=E.NOT_ACTIONABLE,
            ))
        member = db.session.get(Member, request.member_id)
        if actor_regional_id is None or member is None or member.regional_id != actor_regional_id:
            return None, _error(NotAuthorizedError(
                "Escalation is limited to the director of the member's regional",
            ))
        step = current_step(request.steps)
        if step is None:
            return None, _error(ConflictError(
                "No actionable step", current=request.to_dict(), code=E.NOT_ACTIONABLE,
            ))
        return _apply_decision(
            request, step, outcome="approve", actor_id=actor_id,
            escalation_justification=justification,
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Escalation failed request_id=%s", request_id)
        raise FatalError("Escalation not applied: storage failure") from exc


def cancel(
    request_id: int,
    reason: str,
    actor_id: str = "system",
    actor_is_admin: bool = False,
) -> tuple[dict, None] | tuple[None, dict]:
    """Caller-initiated terminal state; clears the tentative placement.

    Only the requester or an administrator may cancel.
    """
    reason = (reason or "").strip()
    if not reason:
        return None, _error(ValidationError("reason is required", details={"reason": "must not be empty"}))

    try:
        request = _lock_request(request_id)
        if request is None:
            return None, _error(NotFoundError("ApprovalRequest", request_id))
        if not actor_is_admin and str(actor_id) != request.requested_by:
            return None, _error(NotAuthorizedError("Only the requester or an administrator may cancel"))
        if request.status != "in_progress":
            return None, _error(ConflictError(
                f"Request {request_id} is {request.status} and can no longer be cancelled",
                current=request.to_dict(),
                code=E.CONFLICT_STATE,
            ))
        request.status = "cancelled"
        request.cancel_reason = reason
        request.closed_at = _utcnow()
        _clear_placement(db.session.get(Member, request.member_id))
        db.session.flush()
        _audit_quietly(
            entity_type="approval_request",
            entity_id=request.id,
            action="approval.cancel",
            actor=str(actor_id),
            justification=reason,
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Cancellation failed request_id=%s", request_id)
        raise FatalError("Cancellation not applied: storage failure") from exc

    logger.info("Approval request %s cancelled by %s", request_id, actor_id)
    return request.to_dict(), None


def close_placement(
    registry_id: str,
    outcome: str,
    notes: str,
    closed_by: str,
    scope: VisibilityScope | None = None,
    actor_registry_id: str | None = None,
) -> tuple[dict, None] | tuple[None, dict]:
    """End a confirmed placement and record it in the placement history.

    A caller bound to *scope* may close placements of members inside it,
    never their own (*actor_registry_id*).
    """
    if outcome not in PLACEMENT_OUTCOMES:
        return None, _error(ValidationError(
            f"outcome must be one of {sorted(PLACEMENT_OUTCOMES)}", details={"outcome": str(outcome)},
        ))
    try:
        member = db.session.execute(
            select(Member).where(Member.registry_id == str(registry_id))
        ).scalar_one_or_none()
        if member is None or (scope is not None and not in_scope(scope, member.regional_id, member.division_id)):
            return None, _error(NotFoundError("Member", registry_id))
        if actor_registry_id and member.registry_id == str(actor_registry_id):
            return None, _error(NotAuthorizedError("Callers cannot close their own placement"))
        request = db.session.execute(
            select(ApprovalRequest)
            .where(ApprovalRequest.member_id == member.id, ApprovalRequest.status == "approved")
            .order_by(ApprovalRequest.closed_at.desc(), ApprovalRequest.id.desc())
        ).scalars().first()
        if member.placement_kind is None or request is None:
            return None, _error(ConflictError(
                f"Member {registry_id} has no confirmed placement", current=member.to_dict(),
            ))

        history = PlacementHistory(
            member_id=member.id,
            request_id=request.id,
            role_id=member.placement_role_id,
            kind=member.placement_kind,
            outcome=outcome,
            notes=notes or "",
            closed_by=closed_by,
            started_at=request.closed_at,
        )
        db.session.add(history)
        _clear_placement(member)
        db.session.flush()
        _audit_quietly(
            entity_type="member",
            entity_id=member.registry_id,
            action="placement.close",
            actor=closed_by,
            justification=notes or "",
            after=history.to_dict(),
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Placement close failed registry_id=%s", registry_id)
        raise FatalError("Placement not closed: storage failure") from exc

    return history.to_dict(), None
