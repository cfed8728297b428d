"""
Approval chain engine tests.

Tests cover:
  - derive_status() / current_step() on plain step dicts
  - create_request(): tentative placement, validation, one active request per member
  - decide(): ordered sign-off, designated approver only, rejection short-circuit
  - escalate(): regional director of the member's own regional only
  - cancel() and close_placement()
  - caller limits: member scope, requester-only cancel, no self-service close
"""
import pytest

from roster.models import db
from roster.models.approval import ApprovalRequest
from roster.models.audit import AuditLog
from roster.models.member import Member, PlacementHistory
from roster.services import approval_chain
from roster.services.approval_chain import current_step, derive_status
from roster.services.visibility_scope import VisibilityScope
from roster.utils.errors import E

CHAIN = [
    {"approver_id": "ana", "approver_type": "division_director"},
    {"approver_id": "bruno", "approver_type": "regional_director"},
    {"approver_id": "carla", "approver_type": "command"},
]


def _open(structure, make_member, registry_id="1001", approvers=None):
    make_member(registry_id, regional_id=structure["vp1"], division_id=structure["invernada"])
    result, err = approval_chain.create_request(
        registry_id, "training", structure["instructor"], "requester", approvers or CHAIN,
    )
    assert err is None
    return result


def _step(request, level):
    return next(s for s in request["steps"] if s["level"] == level)


def _member(registry_id="1001"):
    return Member.query.filter_by(registry_id=registry_id).one()


# ═════════════════════════════════════════════════════════════════════════
# PURE DERIVATION
# ═════════════════════════════════════════════════════════════════════════

class TestDerivation:
    def test_status_from_steps(self):
        assert derive_status([{"status": "approved"}, {"status": "pending"}]) == "in_progress"
        assert derive_status([{"status": "approved"}, {"status": "approved"}]) == "approved"
        assert derive_status([{"status": "approved"}, {"status": "rejected"}, {"status": "pending"}]) == "rejected"
        assert derive_status([]) == "in_progress"

    def test_current_step_is_lowest_pending(self):
        steps = [
            {"level": 2, "status": "pending"},
            {"level": 1, "status": "approved"},
            {"level": 3, "status": "pending"},
        ]
        assert current_step(steps)["level"] == 2

    def test_no_current_step_after_rejection(self):
        steps = [
            {"level": 1, "status": "approved"},
            {"level": 2, "status": "rejected"},
            {"level": 3, "status": "pending"},
        ]
        assert current_step(steps) is None

    def test_no_current_step_when_all_approved(self):
        assert current_step([{"level": 1, "status": "approved"}]) is None


# ═════════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════════

class TestCreateRequest:
    def test_opens_with_tentative_placement(self, structure, make_member):
        request = _open(structure, make_member)
        assert request["status"] == "in_progress"
        assert [s["level"] for s in request["steps"]] == [1, 2, 3]
        member = _member()
        assert member.placement_kind == "training"
        assert member.placement_role_id == structure["instructor"]

    def test_invalid_kind(self, structure, make_member):
        make_member("1001")
        _, err = approval_chain.create_request("1001", "internship", None, "requester", CHAIN)
        assert err["status"] == 422

    def test_requires_approvers(self, structure, make_member):
        make_member("1001")
        _, err = approval_chain.create_request("1001", "training", None, "requester", [])
        assert err["status"] == 422

    def test_unknown_member(self):
        _, err = approval_chain.create_request("9999", "training", None, "requester", CHAIN)
        assert err["code"] == E.NOT_FOUND

    def test_second_active_request_rejected(self, structure, make_member):
        _open(structure, make_member)
        _, err = approval_chain.create_request("1001", "probation", None, "requester", CHAIN)
        assert err["code"] == E.CONFLICT_DUPLICATE
        assert err["current"]["status"] == "in_progress"


# ═════════════════════════════════════════════════════════════════════════
# DECIDE
# ═════════════════════════════════════════════════════════════════════════

class TestDecide:
    def test_full_approval_confirms_placement(self, structure, make_member):
        request = _open(structure, make_member)
        for level, approver in ((1, "ana"), (2, "bruno"), (3, "carla")):
            result, err = approval_chain.decide(request["id"], _step(request, level)["id"], approver, "approve")
            assert err is None
        assert result["status"] == "approved"
        assert result["closed_at"] is not None
        assert _member().placement_kind == "training"

    def test_rejection_short_circuits(self, structure, make_member):
        request = _open(structure, make_member)
        approval_chain.decide(request["id"], _step(request, 1)["id"], "ana", "approve")
        result, err = approval_chain.decide(
            request["id"], _step(request, 2)["id"], "bruno", "reject", rejection_reason="Missing prerequisites",
        )
        assert err is None
        assert result["status"] == "rejected"
        assert _step(result, 3)["status"] == "pending"

        member = _member()
        assert member.placement_kind is None
        assert member.placement_role_id is None

        _, err = approval_chain.decide(request["id"], _step(request, 3)["id"], "carla", "approve")
        assert err["code"] == E.NOT_ACTIONABLE
        assert err["status"] == 409

    def test_out_of_order_step_not_actionable(self, structure, make_member):
        request = _open(structure, make_member)
        _, err = approval_chain.decide(request["id"], _step(request, 2)["id"], "bruno", "approve")
        assert err["code"] == E.NOT_ACTIONABLE
        assert err["current"]["current_step"]["level"] == 1

    def test_wrong_approver_forbidden(self, structure, make_member):
        request = _open(structure, make_member)
        _, err = approval_chain.decide(request["id"], _step(request, 1)["id"], "bruno", "approve")
        assert err["status"] == 403
        assert db.session.get(ApprovalRequest, request["id"]).steps[0].status == "pending"

    def test_rejection_requires_reason(self, structure, make_member):
        request = _open(structure, make_member)
        _, err = approval_chain.decide(request["id"], _step(request, 1)["id"], "ana", "reject", "   ")
        assert err["status"] == 422

    def test_unknown_outcome(self, structure, make_member):
        request = _open(structure, make_member)
        _, err = approval_chain.decide(request["id"], _step(request, 1)["id"], "ana", "maybe")
        assert err["status"] == 422

    def test_unknown_request_and_step(self, structure, make_member):
        request = _open(structure, make_member)
        _, err = approval_chain.decide(999, 1, "ana", "approve")
        assert err["code"] == E.NOT_FOUND
        _, err = approval_chain.decide(request["id"], 999, "ana", "approve")
        assert err["code"] == E.NOT_FOUND

    def test_decision_is_audited(self, structure, make_member):
        request = _open(structure, make_member)
        approval_chain.decide(request["id"], _step(request, 1)["id"], "ana", "approve")
        audit = AuditLog.query.filter_by(action="approval.approve").one()
        assert audit.actor == "ana"
        assert audit.entity_id == str(request["id"])

    def test_pending_for_approver(self, structure, make_member):
        request = _open(structure, make_member)
        assert [r["id"] for r in approval_chain.pending_for_approver("ana")] == [request["id"]]
        assert approval_chain.pending_for_approver("bruno") == []
        approval_chain.decide(request["id"], _step(request, 1)["id"], "ana", "approve")
        assert approval_chain.pending_for_approver("ana") == []
        assert approval_chain.pending_for_approver("bruno")[0]["current_step"]["level"] == 2


# ═════════════════════════════════════════════════════════════════════════
# ESCALATE / CANCEL / CLOSE
# ═════════════════════════════════════════════════════════════════════════

class TestEscalate:
    def test_director_of_same_regional(self, structure, make_member):
        request = _open(structure, make_member)
        result, err = approval_chain.escalate(
            request["id"], "dir.vp1", ["regional_director"], structure["vp1"], "Urgent staffing gap",
        )
        assert err is None
        step = _step(result, 1)
        assert step["status"] == "approved"
        assert step["escalated"] is True
        assert step["escalation_justification"] == "Urgent staffing gap"
        assert step["decided_by"] == "dir.vp1"

    def test_director_of_other_regional_forbidden(self, structure, make_member):
        request = _open(structure, make_member)
        _, err = approval_chain.escalate(
            request["id"], "dir.vp3", ["regional_director"], structure["vp3"], "Urgent staffing gap",
        )
        assert err["status"] == 403

    def test_requires_role_and_justification(self, structure, make_member):
        request = _open(structure, make_member)
        _, err = approval_chain.escalate(request["id"], "x", [], structure["vp1"], "Urgent")
        assert err["status"] == 403
        _, err = approval_chain.escalate(request["id"], "x", ["regional_director"], structure["vp1"], "")
        assert err["status"] == 422


class TestCancelAndClose:
    def test_cancel_clears_placement(self, structure, make_member):
        request = _open(structure, make_member)
        result, err = approval_chain.cancel(request["id"], "Member moved away", actor_id="requester")
        assert err is None
        assert result["status"] == "cancelled"
        assert result["cancel_reason"] == "Member moved away"
        assert _member().placement_kind is None

    def test_cancel_after_approval_is_conflict(self, structure, make_member):
        request = _open(structure, make_member, approvers=[{"approver_id": "ana"}])
        approval_chain.decide(request["id"], _step(request, 1)["id"], "ana", "approve")
        _, err = approval_chain.cancel(request["id"], "Too late", actor_id="requester")
        assert err["code"] == E.CONFLICT_STATE

    def test_cancel_requires_reason(self, structure, make_member):
        request = _open(structure, make_member)
        _, err = approval_chain.cancel(request["id"], "")
        assert err["status"] == 422

    def test_close_placement_writes_history(self, structure, make_member):
        request = _open(structure, make_member, approvers=[{"approver_id": "ana"}])
        approval_chain.decide(request["id"], _step(request, 1)["id"], "ana", "approve")

        history, err = approval_chain.close_placement("1001", "completed", "Finished the course", "admin.user")
        assert err is None
        assert history["outcome"] == "completed"
        assert history["kind"] == "training"
        assert PlacementHistory.query.count() == 1
        assert _member().placement_kind is None

    def test_close_without_confirmed_placement(self, structure, make_member):
        _open(structure, make_member)
        _, err = approval_chain.close_placement("1001", "completed", "", "admin.user")
        assert err["status"] == 409

    @pytest.mark.parametrize("outcome", ["", "graduated"])
    def test_close_invalid_outcome(self, outcome):
        _, err = approval_chain.close_placement("1001", outcome, "", "admin.user")
        assert err["status"] == 422


# ═════════════════════════════════════════════════════════════════════════
# CALLER LIMITS
# ═════════════════════════════════════════════════════════════════════════

class TestCallerLimits:
    def test_create_outside_scope_is_not_found(self, structure, make_member):
        make_member("1001", regional_id=structure["vp1"], division_id=structure["invernada"])
        other = VisibilityScope("regional", regional_id=structure["vp3"])
        _, err = approval_chain.create_request("1001", "training", None, "requester", CHAIN, scope=other)
        assert err["status"] == 404
        assert ApprovalRequest.query.count() == 0
        assert _member().placement_kind is None

    def test_create_inside_scope(self, structure, make_member):
        make_member("1001", regional_id=structure["vp1"], division_id=structure["invernada"])
        own = VisibilityScope("division", regional_id=structure["vp1"], division_id=structure["invernada"])
        result, err = approval_chain.create_request("1001", "training", None, "requester", CHAIN, scope=own)
        assert err is None
        assert result["status"] == "in_progress"

    def test_get_request_visibility(self, structure, make_member):
        request = _open(structure, make_member)
        other = VisibilityScope("regional", regional_id=structure["vp3"])
        _, err = approval_chain.get_request(request["id"], scope=other, viewer_id="mallory")
        assert err["status"] == 404
        for viewer in ("requester", "bruno"):
            data, err = approval_chain.get_request(request["id"], scope=other, viewer_id=viewer)
            assert err is None
            assert data["id"] == request["id"]
        same = VisibilityScope("regional", regional_id=structure["vp1"])
        _, err = approval_chain.get_request(request["id"], scope=same, viewer_id="mallory")
        assert err is None

    def test_cancel_limited_to_requester_or_admin(self, structure, make_member):
        request = _open(structure, make_member)
        _, err = approval_chain.cancel(request["id"], "Not my request", actor_id="mallory")
        assert err["status"] == 403
        assert _member().placement_kind == "training"

        result, err = approval_chain.cancel(
            request["id"], "Duplicate request", actor_id="admin.user", actor_is_admin=True,
        )
        assert err is None
        assert result["status"] == "cancelled"

    def test_close_placement_limits(self, structure, make_member):
        request = _open(structure, make_member, approvers=[{"approver_id": "ana"}])
        approval_chain.decide(request["id"], _step(request, 1)["id"], "ana", "approve")

        other = VisibilityScope("regional", regional_id=structure["vp3"])
        _, err = approval_chain.close_placement("1001", "completed", "", "dir.vp3", scope=other)
        assert err["status"] == 404

        own = VisibilityScope("division", regional_id=structure["vp1"], division_id=structure["invernada"])
        _, err = approval_chain.close_placement(
            "1001", "completed", "", "m1001", scope=own, actor_registry_id="1001",
        )
        assert err["status"] == 403
        assert PlacementHistory.query.count() == 0
        assert _member().placement_kind == "training"
