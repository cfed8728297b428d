"""
Roster Import Service - one snapshot import, end to end.

Flow (single database transaction):
    1. validate rows - bad rows are collected in ``errors``, never fatal
    2. detect the regional the load covers (scope key)
    3. lock the (category, scope) ImportLock row  (SELECT … FOR UPDATE)
    4. baseline = key set of the previous import for the same category and
       scope; first import falls back to the current member table
    5. diff → entered / left; leavers still active in another regional are
       recorded as transfers
    6. active roster: match structure, create or update members, audit
       in-place field changes
    7. record one classified delta per entrant / leaver, collapsing it with
       a complementary pending delta of the same subject when one exists
    8. store the RosterImport (raw rows + key set = next baseline), commit

Any storage failure rolls the whole run back and raises FatalError: a
partially written delta set would corrupt the next baseline.  ``dry_run``
computes the same report and rolls back.

Re-importing the same snapshot produces no new deltas.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from roster.core.exceptions import FatalError, ValidationError
from roster.models import db
from roster.models.audit import write_audit
from roster.models.member import Member
from roster.models.roster_import import IMPORT_CATEGORIES, ImportLock, RosterImport
from roster.services import delta_resolution
from roster.services.delta_classifier import DeltaType, MovementType
from roster.services.normalizer import canonical_label, comparison_key, normalize
from roster.services.ranks import is_valid_rank, parse_role_rank
from roster.services.snapshot_differ import detect_changes, detect_import_scope, diff, split_transfers
from roster.services.structure_matcher import StructureCatalog, match_structure
from roster.utils.helpers import parse_date_input

logger = logging.getLogger(__name__)

TRANSFER_OBSERVATION = "Transferido: ativo em outra regional"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _abbreviations():
    if has_app_context():
        return current_app.config.get("NAME_ABBREVIATIONS") or None
    return None


# ═════════════════════════════════════════════════════════════════════════════
# Row validation
# ═════════════════════════════════════════════════════════════════════════════


def validate_rows(rows: list, category: str) -> tuple[dict[str, dict], list[dict]]:
    """Split parsed rows into valid rows (keyed by registry id) and row errors.

    Row shape: {registry_id, name, division_label, regional_label?,
    command_label?, role_label?, rank?, leave_reason?, leave_started_on?,
    leave_expected_return?}.  A role label such as "Diretor (Grau V)"
    supplies the rank when ``rank`` is absent.
    """
    valid: dict[str, dict] = {}
    errors: list[dict] = []

    for idx, raw in enumerate(rows or (), start=1):
        if not isinstance(raw, dict):
            errors.append({"row": idx, "errors": {"row": "must be an object"}})
            continue
        row_errors = {}
        registry_id = str(raw.get("registry_id") or "").strip()
        if not registry_id:
            row_errors["registry_id"] = "required"
        elif not registry_id.isdigit():
            row_errors["registry_id"] = "must be numeric"
        elif registry_id in valid:
            row_errors["registry_id"] = "duplicate in this load"

        name = (raw.get("name") or "").strip()
        if not name:
            row_errors["name"] = "required"

        role_label = (raw.get("role_label") or "").strip()
        rank = (str(raw.get("rank") or "")).strip().upper() or None
        if rank is None and role_label:
            role_label_key, parsed_rank = parse_role_rank(role_label)
            if parsed_rank:
                role_label, rank = role_label_key, parsed_rank
        if rank is not None and not is_valid_rank(rank):
            row_errors["rank"] = f"invalid rank code {rank!r}"

        dates = {}
        for field in ("leave_started_on", "leave_expected_return"):
            try:
                dates[field] = parse_date_input(raw.get(field))
            except ValueError as exc:
                row_errors[field] = str(exc)

        if row_errors:
            errors.append({"row": idx, "registry_id": registry_id or None, "errors": row_errors})
            continue

        valid[registry_id] = {
            "registry_id": registry_id,
            "name": comparison_key(name),
            "rank": rank,
            "division_label": (raw.get("division_label") or "").strip(),
            "regional_label": (raw.get("regional_label") or "").strip(),
            "command_label": (raw.get("command_label") or "").strip(),
            "role_label": role_label,
            "leave_reason": (raw.get("leave_reason") or "").strip(),
            **dates,
        }
    return valid, errors


# ═════════════════════════════════════════════════════════════════════════════
# Locking & baseline
# ═════════════════════════════════════════════════════════════════════════════


def _acquire_lock(category: str, scope_key: str, performed_by: str) -> ImportLock:
    stmt = (
        select(ImportLock)
        .where(ImportLock.category == category, ImportLock.scope_key == scope_key)
        .with_for_update()
    )
    lock = db.session.execute(stmt).scalar_one_or_none()
    if lock is None:
        try:
            with db.session.begin_nested():
                db.session.add(ImportLock(category=category, scope_key=scope_key))
        except IntegrityError:
            # created concurrently by another run
            pass
        lock = db.session.execute(stmt).scalar_one()
    lock.locked_by = performed_by
    lock.locked_at = _utcnow()
    db.session.flush()
    return lock


def _in_scope(member: Member, scope_key: str) -> bool:
    return not scope_key or normalize("regional", member.regional_label, _abbreviations()) == scope_key


def load_baseline(category: str, scope_key: str) -> tuple[set[str], int | None]:
    """Key set of the previous import for this category/scope (with its id).

    Without a previous import the current member table is the baseline.
    """
    previous = db.session.execute(
        select(RosterImport)
        .where(RosterImport.category == category, RosterImport.scope_key == scope_key)
        .order_by(RosterImport.created_at.desc(), RosterImport.id.desc())
    ).scalars().first()
    if previous is not None:
        return previous.keys, previous.id

    if category == "active":
        stmt = select(Member).where(Member.is_active.is_(True), Member.on_leave.is_(False))
    else:
        stmt = select(Member).where(Member.on_leave.is_(True))
    members = db.session.execute(stmt).scalars().all()
    return {m.registry_id for m in members if _in_scope(m, scope_key)}, None


# ═════════════════════════════════════════════════════════════════════════════
# Member upsert
# ═════════════════════════════════════════════════════════════════════════════


def _apply_row(member: Member, row: dict, match: dict | None) -> None:
    member.name = row["name"]
    if row.get("rank"):
        member.rank = row["rank"]
    for kind in ("division", "regional", "command"):
        label = row.get(f"{kind}_label")
        if label:
            setattr(member, f"{kind}_label", canonical_label(kind, label))
    if row.get("role_label"):
        member.role_label = comparison_key(row["role_label"])
    if match:
        for key in ("command_id", "regional_id", "division_id", "role_id"):
            if match.get(key) is not None:
                setattr(member, key, match[key])


def _match(row: dict, catalog: StructureCatalog) -> dict:
    return match_structure(
        row.get("command_label"),
        row.get("regional_label"),
        row.get("division_label"),
        row.get("role_label"),
        row.get("rank"),
        catalog=catalog,
        abbreviations=_abbreviations(),
    )


def _audit_update(member: Member, before: dict, actor: str, fields, action: str = "member.import_update") -> bool:
    try:
        with db.session.begin_nested():
            write_audit(
                entity_type="member",
                entity_id=member.registry_id,
                action=action,
                actor=actor,
                justification="roster import: " + ", ".join(fields),
                before=before,
                after=member.snapshot(),
            )
        return True
    except SQLAlchemyError:
        logger.warning("Audit not recorded for import update of %s", member.registry_id, exc_info=True)
        return False


def _apply_pair_effect(member: Member | None, delta) -> None:
    """Member flags for a delta auto-resolved as part of a pair."""
    if member is None or delta.status != "RESOLVED":
        return
    if delta.movement_type == MovementType.LEAVE_END.value:
        member.on_leave = False
        member.is_active = True
        member.leave_reason = None
    elif delta.movement_type == MovementType.LEAVE_START.value:
        member.on_leave = True


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def run_import(
    category: str,
    rows: list,
    performed_by: str,
    notes: str | None = None,
    dry_run: bool = False,
) -> tuple[dict, None] | tuple[None, dict]:
    """Import one snapshot of the active or on-leave roster.

    Returns:
        (report, None) - report carries counts, created deltas, row errors
        and structure-match failures.
        (None, error_dict) when the category is unknown or no row is valid.

    Raises:
        FatalError: storage failed; nothing was applied.
    """
    if category not in IMPORT_CATEGORIES:
        return None, ValidationError(
            f"category must be one of {sorted(IMPORT_CATEGORIES)}", details={"category": str(category)},
        ).to_dict()
    if not isinstance(rows, list):
        return None, ValidationError("rows must be a list").to_dict()

    valid, errors = validate_rows(rows, category)
    if not valid:
        err = ValidationError("No valid rows in this load", details={"rows": errors[:50]})
        return None, err.to_dict()

    scope_key = detect_import_scope(valid.values())
    new_keys = set(valid)
    report = {
        "category": category,
        "scope_key": scope_key,
        "dry_run": bool(dry_run),
        "row_count": len(rows),
        "valid_rows": len(valid),
        "errors": errors,
        "entered": 0,
        "left": 0,
        "transfers": 0,
        "updated": 0,
        "created_members": 0,
        "reactivated": 0,
        "auto_resolved": 0,
        "unmatched": [],
        "warnings": [],
        "deltas": [],
    }

    try:
        _acquire_lock(category, scope_key, performed_by)
        previous_keys, previous_import_id = load_baseline(category, scope_key)
        changes = diff(previous_keys, new_keys)
        report["baseline_import_id"] = previous_import_id
        report["entered"], report["left"] = len(changes.entered), len(changes.left)

        roster_import = RosterImport(
            category=category,
            scope_key=scope_key,
            performed_by=performed_by,
            notes=notes or "",
            row_count=len(rows),
            raw_rows_json=json.dumps(rows, default=str, ensure_ascii=False),
            keys_json=json.dumps(sorted(new_keys)),
        )
        db.session.add(roster_import)
        db.session.flush()

        members = {
            m.registry_id: m
            for m in db.session.execute(
                select(Member).where(Member.registry_id.in_(new_keys | set(changes.left)))
            ).scalars()
        }

        if category == "active":
            _import_active(roster_import, valid, changes, members, scope_key, performed_by, report)
        else:
            _import_leave(roster_import, valid, changes, members, report)

        summary = {k: report[k] for k in (
            "entered", "left", "transfers", "updated", "created_members", "reactivated", "auto_resolved",
        )}
        summary["errors"] = len(errors)
        roster_import.summary_json = json.dumps(summary)
        db.session.flush()
        report["import"] = roster_import.to_dict()

        if dry_run:
            db.session.rollback()
            logger.info("Dry-run import %s/%s: %s", category, scope_key or "*", summary)
            return report, None

        from roster.services.notification import NotificationService
        if not NotificationService.notify_quietly(
            title=f"Roster import ({category})",
            message=(
                f"{report['entered']} entered, {report['left']} left, "
                f"{report['updated']} updated, {len(errors)} row errors"
            ),
            category="import",
            entity_type="roster_import",
            entity_id=roster_import.id,
        ):
            report["warnings"].append({"step": "notification", "message": "import applied, notification not recorded"})
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Roster import failed category=%s scope=%s", category, scope_key)
        raise FatalError("Roster import not applied: storage failure") from exc

    logger.info(
        "Roster import %s committed",
        roster_import.id,
        extra={"import_id": roster_import.id},
    )
    return report, None


def _record(roster_import, dtype, registry_id, row, member, observation, report):
    source = row or (member.to_dict() if member is not None else {})
    delta, paired = delta_resolution.record_delta(
        delta_type=dtype,
        registry_id=registry_id,
        import_id=roster_import.id,
        name=source.get("name") or "",
        division_label=source.get("division_label") or "",
        regional_label=source.get("regional_label") or "",
        rank=source.get("rank"),
        regional_id=member.regional_id if member is not None else None,
        division_id=member.division_id if member is not None else None,
        observation=observation,
        created_at=roster_import.created_at,
    )
    if paired:
        report["auto_resolved"] += 1
        _apply_pair_effect(member, delta)
    report["deltas"].append(delta.to_dict())
    return delta


def _import_active(roster_import, valid, changes, members, scope_key, performed_by, report):
    catalog = StructureCatalog.load()

    # entrants: create or reactivate
    for registry_id in sorted(changes.entered):
        row = valid[registry_id]
        match = _match(row, catalog)
        if match["failed_fields"]:
            report["unmatched"].append({"registry_id": registry_id, "failed_fields": match["failed_fields"]})
        member = members.get(registry_id)
        if member is None:
            member = Member(registry_id=registry_id)
            db.session.add(member)
            members[registry_id] = member
            report["created_members"] += 1
        before = member.snapshot() if member.is_active is False else None
        _apply_row(member, row, match)
        if before is not None:
            member.is_active = True
            member.deactivation_reason = None
            member.deactivated_on = None
            report["reactivated"] += 1
        db.session.flush()
        if before is not None and not _audit_update(
            member, before, performed_by, ["is_active"], action="member.import_reactivate",
        ):
            report["warnings"].append({
                "step": "audit", "message": f"member {registry_id} reactivated, history not recorded",
            })
        _record(roster_import, DeltaType.ACTIVE_ENTERED, registry_id, row, member, "", report)

    # leavers: transfers are those still active in another regional
    elsewhere = {
        rid for rid in changes.left
        if rid in members and members[rid].is_active and not _in_scope(members[rid], scope_key)
    }
    leavers, transfers = split_transfers(changes.left, elsewhere)
    report["transfers"] = len(transfers)
    for registry_id in sorted(transfers):
        _record(roster_import, DeltaType.ACTIVE_LEFT, registry_id, None,
                members.get(registry_id), TRANSFER_OBSERVATION, report)
    for registry_id in sorted(leavers):
        _record(roster_import, DeltaType.ACTIVE_LEFT, registry_id, None,
                members.get(registry_id), "", report)

    # members present in both snapshots: in-place field changes
    stayed = {rid: valid[rid] for rid in valid if rid not in changes.entered and rid in members}
    previous = {rid: members[rid].snapshot() for rid in stayed}
    for registry_id, field_changes in detect_changes(previous, stayed).items():
        member = members[registry_id]
        before = member.snapshot()
        _apply_row(member, stayed[registry_id], _match(stayed[registry_id], catalog))
        db.session.flush()
        report["updated"] += 1
        if not _audit_update(member, before, performed_by, [c["field"] for c in field_changes]):
            report["warnings"].append({
                "step": "audit", "message": f"member {registry_id} updated, history not recorded",
            })


def _import_leave(roster_import, valid, changes, members, report):
    for registry_id in sorted(changes.entered):
        row = valid[registry_id]
        member = members.get(registry_id)
        if member is not None:
            member.on_leave = True
            member.leave_reason = row.get("leave_reason") or None
            member.leave_started_on = row.get("leave_started_on")
            member.leave_expected_return = row.get("leave_expected_return")
            db.session.flush()
        _record(roster_import, DeltaType.LEAVE_ENTERED, registry_id, row, member,
                row.get("leave_reason") or "", report)

    for registry_id in sorted(changes.left):
        _record(roster_import, DeltaType.LEAVE_LEFT, registry_id, None,
                members.get(registry_id), "", report)
