"""
Roster import service tests.

Tests cover:
  - validate_rows(): row-level errors never abort the load
  - first import: members created, structure matched, one delta per entrant
  - idempotence: re-importing the same snapshot adds nothing
  - leavers recorded as pending deltas, never deactivated by the import
  - transfers between regionals collapse into one movement
  - in-place field changes audited
  - members returning to the active roster are reactivated
  - on-leave roster and leave pairing
  - dry run
"""
from datetime import date

from roster.models.audit import AuditLog
from roster.models.delta import Delta
from roster.models.member import Member
from roster.models.notification import Notification
from roster.models.roster_import import RosterImport
from roster.services import delta_resolution
from roster.services.import_service import TRANSFER_OBSERVATION, run_import, validate_rows
from roster.utils.errors import E

VP1 = "Regional Vale do Paraíba I - SP"
VP3 = "Regional Vale do Paraíba III - SP"


def _row(registry_id, name=None, regional=VP1, division="Divisão Invernada", **extra):
    row = {
        "registry_id": registry_id,
        "name": name or f"Membro {registry_id}",
        "command_label": "Comando Leste",
        "regional_label": regional,
        "division_label": division,
    }
    row.update(extra)
    return row


def _seed(make_member, structure, *registry_ids):
    for registry_id in registry_ids:
        make_member(
            registry_id,
            regional_id=structure["vp1"],
            division_id=structure["invernada"],
            regional_label="REGIONAL VALE DO PARAIBA 1 - SP",
            division_label="DIVISAO INVERNADA - SP",
        )


def _member(registry_id):
    return Member.query.filter_by(registry_id=registry_id).one()


# ═════════════════════════════════════════════════════════════════════════
# ROW VALIDATION
# ═════════════════════════════════════════════════════════════════════════

class TestValidateRows:
    def test_errors_collected_per_row(self):
        valid, errors = validate_rows([
            _row("1001"),
            _row("ABC"),
            {"registry_id": "1003", "name": ""},
            _row("1001"),
            "not a row",
        ], "active")
        assert list(valid) == ["1001"]
        assert [e["row"] for e in errors] == [2, 3, 4, 5]
        assert errors[0]["errors"]["registry_id"] == "must be numeric"
        assert errors[1]["errors"]["name"] == "required"
        assert errors[2]["errors"]["registry_id"] == "duplicate in this load"

    def test_rank_taken_from_role_label(self):
        valid, errors = validate_rows([_row("1001", role_label="Diretor Regional (Grau V)")], "active")
        assert errors == []
        assert valid["1001"]["rank"] == "V"

    def test_malformed_rank_and_date(self):
        _, errors = validate_rows([_row("1001", rank="XX", leave_started_on="31/31/2026")], "on_leave")
        assert set(errors[0]["errors"]) == {"rank", "leave_started_on"}


# ═════════════════════════════════════════════════════════════════════════
# ACTIVE ROSTER
# ═════════════════════════════════════════════════════════════════════════

class TestActiveImport:
    def test_first_import_creates_members(self, structure):
        report, err = run_import("active", [_row("1001"), _row("1002", division="Divisão Centro")], "admin.user")
        assert err is None
        assert report["entered"] == 2
        assert report["created_members"] == 2
        assert report["scope_key"] == "VALE DO PARAIBA 1"
        assert report["baseline_import_id"] is None
        assert [d["delta_type"] for d in report["deltas"]] == ["active_entered", "active_entered"]

        member = _member("1002")
        assert member.name == "MEMBRO 1002"
        assert member.regional_id == structure["vp1"]
        assert member.division_id == structure["centro"]
        assert member.command_id == structure["command"]
        assert member.regional_label == "REGIONAL VALE DO PARAIBA I - SP"
        assert RosterImport.query.count() == 1
        assert Notification.query.filter_by(category="import").count() == 1

    def test_reimport_same_snapshot_is_noop(self, structure):
        rows = [_row("1001"), _row("1002")]
        first, _ = run_import("active", rows, "admin.user")
        second, err = run_import("active", rows, "admin.user")
        assert err is None
        assert second["deltas"] == []
        assert second["entered"] == second["left"] == second["updated"] == 0
        assert second["baseline_import_id"] == first["import"]["id"]
        assert Delta.query.count() == 2

    def test_leaver_is_pending_and_still_active(self, structure, make_member):
        _seed(make_member, structure, "1001", "1002")
        report, _ = run_import("active", [_row("1001")], "admin.user")
        assert report["left"] == 1
        assert report["transfers"] == 0
        delta = Delta.query.filter_by(registry_id="1002").one()
        assert delta.delta_type == "active_left"
        assert delta.status == "PENDING"
        assert delta.regional_id == structure["vp1"]
        assert _member("1002").is_active is True

    def test_transfer_between_regionals(self, structure, make_member):
        _seed(make_member, structure, "1001", "1002")
        run_import("active", [_row("1001"), _row("1002")], "admin.user")
        moved, _ = run_import("active", [_row("1001", regional=VP3, division="Divisão Norte")], "admin.user")
        assert moved["scope_key"] == "VALE DO PARAIBA 3"
        assert moved["entered"] == 1
        assert _member("1001").regional_id == structure["vp3"]

        report, _ = run_import("active", [_row("1002")], "admin.user")
        assert report["transfers"] == 1
        assert report["auto_resolved"] == 1
        left = Delta.query.filter_by(registry_id="1001", delta_type="active_left").one()
        entered = Delta.query.filter_by(registry_id="1001", delta_type="active_entered").one()
        assert left.observation == TRANSFER_OBSERVATION
        assert left.status == entered.status == "RESOLVED"
        assert left.movement_type == "transfer_out"
        assert entered.movement_type == "transfer_in"
        assert left.related_delta_id == entered.id

    def test_field_change_is_audited(self, structure, make_member):
        _seed(make_member, structure, "1001")
        report, _ = run_import("active", [_row("1001", division="Divisão Centro")], "admin.user")
        assert report["updated"] == 1
        assert report["deltas"] == []
        member = _member("1001")
        assert member.division_id == structure["centro"]
        audit = AuditLog.query.filter_by(action="member.import_update").one()
        assert audit.diff["before"]["division_label"] == "DIVISAO INVERNADA - SP"
        assert audit.diff["after"]["division_label"] == "DIVISAO CENTRO - SP"

    def test_returning_member_is_reactivated(self, structure, make_member):
        make_member("1001", is_active=False, deactivation_reason="resigned", deactivated_on=date(2025, 3, 1))
        report, err = run_import("active", [_row("1001")], "admin.user")
        assert err is None
        assert report["entered"] == 1
        assert report["reactivated"] == 1
        assert report["created_members"] == 0
        member = _member("1001")
        assert member.is_active is True
        assert member.deactivation_reason is None
        assert member.deactivated_on is None
        audit = AuditLog.query.filter_by(action="member.import_reactivate").one()
        assert audit.diff["before"]["is_active"] is False
        assert audit.diff["before"]["deactivation_reason"] == "resigned"
        assert audit.diff["after"]["is_active"] is True

    def test_unmatched_structure_reported(self, structure):
        report, _ = run_import("active", [_row("1001", division="Divisão Inexistente")], "admin.user")
        assert report["unmatched"] == [{"registry_id": "1001", "failed_fields": ["division"]}]
        assert _member("1001").division_id is None

    def test_dry_run_persists_nothing(self, structure):
        report, err = run_import("active", [_row("1001")], "admin.user", dry_run=True)
        assert err is None
        assert report["dry_run"] is True
        assert report["entered"] == 1
        assert Member.query.count() == 0
        assert Delta.query.count() == 0
        assert RosterImport.query.count() == 0

    def test_row_errors_do_not_abort(self, structure):
        report, err = run_import("active", [_row("1001"), _row("X1")], "admin.user")
        assert err is None
        assert report["valid_rows"] == 1
        assert report["errors"][0]["registry_id"] == "X1"


class TestImportValidation:
    def test_invalid_category(self):
        _, err = run_import("retired", [_row("1001")], "admin.user")
        assert err["status"] == 422
        assert err["code"] == E.VALIDATION_INVALID

    def test_no_valid_rows(self):
        _, err = run_import("active", [_row("ABC")], "admin.user")
        assert err["status"] == 422
        assert err["details"]["rows"][0]["registry_id"] == "ABC"

    def test_rows_must_be_list(self):
        _, err = run_import("active", {"registry_id": "1001"}, "admin.user")
        assert err["status"] == 422


# ═════════════════════════════════════════════════════════════════════════
# ON-LEAVE ROSTER
# ═════════════════════════════════════════════════════════════════════════

class TestLeaveImport:
    def test_leave_entrant_flags_member(self, structure, make_member):
        _seed(make_member, structure, "1001")
        report, _ = run_import(
            "on_leave",
            [_row("1001", leave_reason="Licença médica", leave_expected_return="2026-12-01")],
            "admin.user",
        )
        assert report["entered"] == 1
        delta = Delta.query.one()
        assert delta.delta_type == "leave_entered"
        assert delta.movement_type == "leave_start"
        assert delta.observation == "Licença médica"

        member = _member("1001")
        assert member.on_leave is True
        assert member.leave_reason == "Licença médica"
        assert member.leave_expected_return.isoformat() == "2026-12-01"

    def test_active_left_pairs_with_leave_entered(self, structure, make_member):
        _seed(make_member, structure, "1001", "1002")
        run_import("active", [_row("1002")], "admin.user")
        report, _ = run_import("on_leave", [_row("1001", leave_reason="Viagem")], "admin.user")
        assert report["auto_resolved"] == 1
        deltas = Delta.query.filter_by(registry_id="1001").all()
        assert {d.delta_type for d in deltas} == {"active_left", "leave_entered"}
        assert {d.movement_type for d in deltas} == {"leave_start"}
        assert all(d.status == "RESOLVED" and d.resolved_by == "system" for d in deltas)
        assert _member("1001").on_leave is True

    def test_leave_leaver_recorded(self, structure, make_member):
        _seed(make_member, structure, "1001")
        run_import("on_leave", [_row("1001")], "admin.user")
        entered = Delta.query.filter_by(registry_id="1001").one()
        delta_resolution.resolve(entered.id, "admin.user", "Leave confirmed", "confirm_leave")

        run_import("on_leave", [_row("1002")], "admin.user")
        left = Delta.query.filter_by(registry_id="1001", delta_type="leave_left").one()
        assert left.status == "PENDING"
