"""
Delta resolution workflow tests (service layer).

Tests cover:
  - resolve(): justification required, NotFound, AlreadyResolved with
    the winner's metadata left untouched
  - action-code side effects on the member (departure, leave, promotion)
  - promotion validation and role-adjustment queueing for non-admins
  - unmapped action codes
  - audit & notification side writes, and partial-success warnings
  - false-positive preview / bulk resolution guards
  - resolver limits: scope, own record, promotion target and rank ceiling
"""
from datetime import datetime, timedelta, timezone

import pytest

from roster.models import db
from roster.models.audit import AuditLog
from roster.models.delta import Delta
from roster.models.member import Member, RoleAdjustment
from roster.models.notification import Notification
from roster.services import delta_resolution
from roster.services.delta_classifier import DeltaType
from roster.services.visibility_scope import VisibilityScope
from roster.utils.errors import E

T0 = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


def _make_delta(registry_id="1001", delta_type=DeltaType.ACTIVE_LEFT, created_at=T0, **fields):
    delta = Delta(
        registry_id=registry_id,
        name=fields.pop("name", f"MEMBRO {registry_id}"),
        delta_type=DeltaType(delta_type).value,
        created_at=created_at,
        **fields,
    )
    db.session.add(delta)
    db.session.commit()
    return delta


def _member(registry_id):
    return Member.query.filter_by(registry_id=registry_id).one()


# ═════════════════════════════════════════════════════════════════════════
# RESOLVE - basics
# ═════════════════════════════════════════════════════════════════════════

class TestResolveBasics:
    def test_resolve_without_action(self):
        delta = _make_delta()
        result, err = delta_resolution.resolve(delta.id, "ana", "Checked with the division")
        assert err is None
        assert result["delta"]["status"] == "RESOLVED"
        assert result["delta"]["resolved_by"] == "ana"
        assert result["delta"]["resolution_note"] == "Checked with the division"
        assert result["delta"]["action_code"] is None
        assert result["partial"] is False

    def test_justification_required(self):
        delta = _make_delta()
        result, err = delta_resolution.resolve(delta.id, "ana", "   ")
        assert result is None
        assert err["code"] == E.VALIDATION_INVALID
        assert db.session.get(Delta, delta.id).status == "PENDING"

    def test_not_found(self):
        result, err = delta_resolution.resolve(9999, "ana", "whatever")
        assert result is None
        assert err["status"] == 404

    def test_already_resolved_keeps_first_resolution(self):
        delta = _make_delta()
        first, _ = delta_resolution.resolve(delta.id, "ana", "first")
        result, err = delta_resolution.resolve(delta.id, "bruno", "second", action_code="expelled")
        assert result is None
        assert err["code"] == E.ALREADY_RESOLVED
        assert err["status"] == 409
        assert err["current"]["resolved_by"] == "ana"
        assert err["current"]["resolution_note"] == "first"

        stored = db.session.get(Delta, delta.id)
        assert stored.resolved_by == "ana"
        assert stored.resolution_note == "first"
        assert stored.action_code is None
        assert stored.resolution()["resolved_at"] == first["delta"]["resolved_at"]


# ═════════════════════════════════════════════════════════════════════════
# RESOLVE - side effects
# ═════════════════════════════════════════════════════════════════════════

class TestResolveSideEffects:
    def test_expelled_deactivates_member(self, make_member):
        make_member("1001")
        delta = _make_delta("1001", DeltaType.ACTIVE_LEFT)
        result, err = delta_resolution.resolve(delta.id, "ana", "Expelled by council", action_code="expelled")
        assert err is None
        assert result["delta"]["movement_type"] == "departure_expelled"
        assert result["delta"]["action_code"] == "expelled"

        member = _member("1001")
        assert member.is_active is False
        assert member.deactivation_reason == "expelled"
        assert member.deactivated_on is not None

        audit = AuditLog.query.filter_by(entity_type="member", entity_id="1001").one()
        assert audit.action == "delta.resolve"
        assert audit.actor == "ana"
        assert audit.diff["before"]["is_active"] is True
        assert audit.diff["after"]["is_active"] is False

    def test_leave_start_sets_leave(self, make_member):
        make_member("1002")
        delta = _make_delta("1002", DeltaType.ACTIVE_LEFT)
        _, err = delta_resolution.resolve(
            delta.id, "ana", "On medical leave", action_code="leave_start",
            side_effect_payload={"leave_reason": "medical", "effective_date": "05/01/2026"},
        )
        assert err is None
        member = _member("1002")
        assert member.on_leave is True
        assert member.leave_reason == "medical"
        assert member.leave_started_on.isoformat() == "2026-01-05"

    def test_return_from_leave_clears_leave(self, make_member):
        make_member("1003", on_leave=True, leave_reason="medical")
        delta = _make_delta("1003", DeltaType.LEAVE_LEFT)
        _, err = delta_resolution.resolve(delta.id, "ana", "Back to activity", action_code="returned")
        assert err is None
        member = _member("1003")
        assert member.on_leave is False
        assert member.leave_reason is None

    def test_malformed_date_rejected(self, make_member):
        make_member("1004")
        delta = _make_delta("1004")
        _, err = delta_resolution.resolve(
            delta.id, "ana", "x", action_code="resigned",
            side_effect_payload={"effective_date": "31-31-2026"},
        )
        assert err["code"] == E.VALIDATION_INVALID
        assert db.session.get(Delta, delta.id).status == "PENDING"
        assert _member("1004").is_active is True

    def test_unmapped_action_is_accepted_without_side_effect(self, make_member):
        make_member("1005")
        delta = _make_delta("1005")
        result, err = delta_resolution.resolve(delta.id, "ana", "odd case", action_code="teleported")
        assert err is None
        assert result["delta"]["action_code"] == "unmapped"
        assert result["delta"]["movement_type"] == "unclassified"
        assert _member("1005").is_active is True

    def test_notification_recorded(self):
        delta = _make_delta()
        delta_resolution.resolve(delta.id, "ana", "ok")
        notif = Notification.query.filter_by(entity_type="delta", entity_id=str(delta.id)).one()
        assert notif.category == "delta"


class TestPromotion:
    def test_promotion_by_non_admin_queues_role_adjustment(self, structure, make_member):
        make_member("2001", rank="VII", role_id=structure["instructor"])
        delta = _make_delta("2001", DeltaType.ACTIVE_ENTERED)
        result, err = delta_resolution.resolve(
            delta.id, "ana", "Promoted to director", action_code="promoted",
            side_effect_payload={"rank": "v", "role_id": structure["director"]},
        )
        assert err is None
        assert result["member"]["rank"] == "V"
        assert result["member"]["role_id"] == structure["director"]
        assert result["delta"]["movement_type"] == "transfer_in"

        adj = RoleAdjustment.query.filter_by(registry_id="2001").one()
        assert adj.previous_rank == "VII"
        assert adj.new_rank == "V"
        assert adj.status == "pending"
        assert AuditLog.query.filter_by(action="delta.promote").count() == 1

    def test_promotion_by_admin_applies_directly(self, structure, make_member):
        make_member("2002", rank="VII")
        delta = _make_delta("2002", DeltaType.ACTIVE_LEFT)
        _, err = delta_resolution.resolve(
            delta.id, "root", "Promoted", action_code="promoted",
            side_effect_payload={"rank": "V"}, resolver_is_admin=True,
        )
        assert err is None
        assert RoleAdjustment.query.count() == 0

    def test_promotion_requires_structural_field(self, make_member):
        make_member("2003")
        delta = _make_delta("2003", DeltaType.ACTIVE_ENTERED)
        _, err = delta_resolution.resolve(delta.id, "ana", "Promoted", action_code="promoted")
        assert err["code"] == E.VALIDATION_INVALID
        assert db.session.get(Delta, delta.id).status == "PENDING"

    def test_promotion_rejects_malformed_rank(self, make_member):
        make_member("2004")
        delta = _make_delta("2004", DeltaType.ACTIVE_ENTERED)
        _, err = delta_resolution.resolve(
            delta.id, "ana", "Promoted", action_code="promoted", side_effect_payload={"rank": "Z"},
        )
        assert err["details"] == {"rank": "Z"}

    def test_promotion_without_member_is_partial(self):
        delta = _make_delta("2005", DeltaType.ACTIVE_ENTERED)
        result, err = delta_resolution.resolve(
            delta.id, "ana", "Promoted", action_code="promoted", side_effect_payload={"rank": "V"},
        )
        assert err is None
        assert result["partial"] is True
        assert result["warnings"][0]["step"] == "member"
        assert result["delta"]["status"] == "RESOLVED"


# ═════════════════════════════════════════════════════════════════════════
# FALSE-POSITIVE CLEANUP
# ═════════════════════════════════════════════════════════════════════════

class TestFalsePositives:
    START = "2026-01-10T00:00:00+00:00"
    END = "2026-01-10T23:59:59+00:00"

    @pytest.fixture()
    def deltas(self):
        inside = [_make_delta(str(3000 + i), created_at=T0 + timedelta(minutes=i)) for i in range(3)]
        outside = _make_delta("3999", created_at=T0 - timedelta(days=2))
        resolved = _make_delta("3998", created_at=T0)
        delta_resolution.resolve(resolved.id, "ana", "real change")
        return inside, outside, resolved

    def test_preview_counts_only_pending_inside_bounds(self, deltas):
        result, err = delta_resolution.preview_false_positives(self.START, self.END)
        assert err is None
        assert result["count"] == 3

    def test_zero_preview_refused(self, deltas):
        _, err = delta_resolution.bulk_resolve_false_positives(self.START, self.END, "bad load", "root", 0)
        assert err["code"] == E.VALIDATION_INVALID
        _, err = delta_resolution.bulk_resolve_false_positives(self.START, self.END, "bad load", "root", None)
        assert err["code"] == E.VALIDATION_INVALID
        assert Delta.query.filter_by(status="PENDING").count() == 4

    def test_empty_justification_refused(self, deltas):
        _, err = delta_resolution.bulk_resolve_false_positives(self.START, self.END, " ", "root", 3)
        assert err["code"] == E.VALIDATION_INVALID
        assert Delta.query.filter_by(status="PENDING").count() == 4

    def test_stale_preview_refused(self, deltas):
        _, err = delta_resolution.bulk_resolve_false_positives(self.START, self.END, "bad load", "root", 2)
        assert err["code"] == E.STALE_PREVIEW
        assert err["current"] == {"count": 3}

    def test_bulk_resolve(self, deltas):
        inside, outside, resolved = deltas
        result, err = delta_resolution.bulk_resolve_false_positives(
            self.START, self.END, "spreadsheet exported twice", "root", 3,
        )
        assert err is None
        assert result["resolved"] == 3
        for d in inside:
            stored = db.session.get(Delta, d.id)
            assert stored.status == "RESOLVED"
            assert stored.action_code == "false_positive"
            assert stored.resolution_note == "spreadsheet exported twice"
        assert db.session.get(Delta, outside.id).status == "PENDING"
        assert db.session.get(Delta, resolved.id).action_code is None
        assert AuditLog.query.filter_by(action="delta.bulk_resolve").count() == 1

    def test_bad_bounds(self):
        _, err = delta_resolution.preview_false_positives("yesterday", self.END)
        assert err["code"] == E.VALIDATION_INVALID
        _, err = delta_resolution.preview_false_positives(self.END, self.START)
        assert err["code"] == E.VALIDATION_INVALID


# ═════════════════════════════════════════════════════════════════════════
# RESOLVER LIMITS
# ═════════════════════════════════════════════════════════════════════════

class TestResolverLimits:
    def _vp1_delta(self, structure, make_member, registry_id="1001"):
        make_member(registry_id, rank="VII", regional_id=structure["vp1"], division_id=structure["invernada"])
        return _make_delta(
            registry_id, DeltaType.ACTIVE_ENTERED,
            regional_id=structure["vp1"], division_id=structure["invernada"],
        )

    def test_delta_outside_scope_is_not_found(self, structure, make_member):
        make_member("7777", regional_id=structure["vp3"], division_id=structure["norte"])
        delta = _make_delta("7777", regional_id=structure["vp3"], division_id=structure["norte"])
        scope = VisibilityScope("division", regional_id=structure["vp1"], division_id=structure["invernada"])

        _, err = delta_resolution.resolve(
            delta.id, "m5555", "Expelled by council", action_code="expelled",
            scope=scope, actor_registry_id="5555",
        )
        assert err["status"] == 404
        assert db.session.get(Delta, delta.id).status == "PENDING"
        assert _member("7777").is_active is True

    def test_resolved_delta_outside_scope_stays_hidden(self, structure):
        delta = _make_delta("7777", regional_id=structure["vp3"])
        delta_resolution.resolve(delta.id, "ana", "Checked")
        scope = VisibilityScope("regional", regional_id=structure["vp1"])
        _, err = delta_resolution.resolve(delta.id, "m5555", "Again", scope=scope)
        assert err["code"] == E.NOT_FOUND

    def test_delta_inside_scope_resolves(self, structure, make_member):
        delta = self._vp1_delta(structure, make_member)
        scope = VisibilityScope("division", regional_id=structure["vp1"], division_id=structure["invernada"])
        result, err = delta_resolution.resolve(
            delta.id, "m5555", "New member confirmed", action_code="confirm_new",
            scope=scope, actor_registry_id="5555",
        )
        assert err is None
        assert result["delta"]["status"] == "RESOLVED"

    def test_own_delta_is_refused(self, structure, make_member):
        delta = self._vp1_delta(structure, make_member, "5555")
        scope = VisibilityScope("division", regional_id=structure["vp1"], division_id=structure["invernada"])
        _, err = delta_resolution.resolve(
            delta.id, "m5555", "Promoting myself", action_code="promoted",
            side_effect_payload={"rank": "I"}, scope=scope, actor_registry_id="5555",
        )
        assert err["status"] == 403
        assert _member("5555").rank == "VII"
        assert db.session.get(Delta, delta.id).status == "PENDING"

    def test_promotion_target_outside_scope(self, structure, make_member):
        delta = self._vp1_delta(structure, make_member)
        scope = VisibilityScope("regional", regional_id=structure["vp1"])
        _, err = delta_resolution.resolve(
            delta.id, "dir.vp1", "Moved up", action_code="promoted",
            side_effect_payload={"regional_id": structure["vp3"]}, scope=scope,
        )
        assert err["status"] == 403
        assert _member("1001").regional_id == structure["vp1"]

    def test_promotion_above_own_rank(self, structure, make_member):
        make_member("8000", rank="V", regional_id=structure["vp1"])
        delta = self._vp1_delta(structure, make_member)
        scope = VisibilityScope("regional", regional_id=structure["vp1"])

        _, err = delta_resolution.resolve(
            delta.id, "dir.vp1", "Promoted", action_code="promoted",
            side_effect_payload={"rank": "II"}, scope=scope, actor_registry_id="8000",
        )
        assert err["status"] == 403
        assert _member("1001").rank == "VII"

        result, err = delta_resolution.resolve(
            delta.id, "dir.vp1", "Promoted", action_code="promoted",
            side_effect_payload={"rank": "VI"}, scope=scope, actor_registry_id="8000",
        )
        assert err is None
        assert result["member"]["rank"] == "VI"
