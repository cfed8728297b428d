"""
Roster Governance Engine
Member domain models.

Models:
    - Member:           a person's current organisational placement
    - RoleAdjustment:   pending permission adjustment queued for a privileged reviewer
    - PlacementHistory: closed training / probation placements

Members are never hard-deleted; deactivation sets ``is_active=False`` with a
reason code and date.  Every manual edit appends an AuditLog row.
"""

from datetime import datetime, timezone

from roster.models import db

# ── Constants ────────────────────────────────────────────────────────────────

DEACTIVATION_REASONS = frozenset({
    "transferred", "deceased", "resigned", "expelled", "on_leave", "promoted", "other",
})

PLACEMENT_KINDS = frozenset({"training", "probation"})

ROLE_ADJUSTMENT_STATUSES = frozenset({"pending", "done"})

# Fields captured in before/after audit snapshots
SNAPSHOT_FIELDS = (
    "name", "rank",
    "command_id", "regional_id", "division_id", "role_id",
    "command_label", "regional_label", "division_label", "role_label",
    "is_active", "on_leave", "placement_role_id", "placement_kind",
    "deactivation_reason", "deactivated_on",
)


class Member(db.Model):
    """
    Current placement of one person.

    Structural ids *and* their free-text labels are both kept: imports
    arrive as text and matching can fail, so the label is the fallback.
    """

    __tablename__ = "members"

    id = db.Column(db.Integer, primary_key=True)
    registry_id = db.Column(
        db.String(32), nullable=False, unique=True, index=True,
        comment="Stable numeric registry identifier (natural key, immutable)",
    )
    name = db.Column(db.String(200), nullable=False)
    rank = db.Column(db.String(6), nullable=True, comment="I | II | … | XII")

    command_id = db.Column(db.Integer, db.ForeignKey("commands.id", ondelete="SET NULL"), nullable=True)
    regional_id = db.Column(
        db.Integer, db.ForeignKey("regionals.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    division_id = db.Column(
        db.Integer, db.ForeignKey("divisions.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)

    command_label = db.Column(db.String(150), default="")
    regional_label = db.Column(db.String(150), default="")
    division_label = db.Column(db.String(150), default="")
    role_label = db.Column(db.String(150), default="")

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    on_leave = db.Column(db.Boolean, nullable=False, default=False)
    leave_reason = db.Column(db.String(200), nullable=True)
    leave_started_on = db.Column(db.Date, nullable=True)
    leave_expected_return = db.Column(db.Date, nullable=True)

    # Staged placement (training / probation) - set tentatively by the
    # approval chain, cleared on rejection or cancellation
    placement_role_id = db.Column(db.Integer, db.ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    placement_kind = db.Column(db.String(20), nullable=True, comment="training | probation")

    deactivation_reason = db.Column(db.String(20), nullable=True)
    deactivated_on = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def snapshot(self) -> dict:
        """Field snapshot used for before/after audit records."""
        out = {}
        for field in SNAPSHOT_FIELDS:
            value = getattr(self, field)
            out[field] = value.isoformat() if hasattr(value, "isoformat") else value
        return out

    def to_dict(self):
        data = {"id": self.id, "registry_id": self.registry_id}
        data.update(self.snapshot())
        data.update({
            "leave_reason": self.leave_reason,
            "leave_started_on": self.leave_started_on.isoformat() if self.leave_started_on else None,
            "leave_expected_return": (
                self.leave_expected_return.isoformat() if self.leave_expected_return else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        })
        return data

    def __repr__(self):
        return f"<Member {self.registry_id}: {self.name}>"


class RoleAdjustment(db.Model):
    """
    Pending permission adjustment.

    The functional change (rank/role) takes effect immediately; the
    matching role-grant catch-up is tracked here until a privileged
    reviewer marks it done.
    """

    __tablename__ = "role_adjustments"

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(
        db.Integer, db.ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    registry_id = db.Column(db.String(32), nullable=False)
    previous_role_id = db.Column(db.Integer, nullable=True)
    new_role_id = db.Column(db.Integer, nullable=True)
    previous_rank = db.Column(db.String(6), nullable=True)
    new_rank = db.Column(db.String(6), nullable=True)
    reason = db.Column(db.Text, default="")
    requested_by = db.Column(db.String(150), nullable=False)
    status = db.Column(db.String(10), nullable=False, default="pending", index=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "member_id": self.member_id,
            "registry_id": self.registry_id,
            "previous_role_id": self.previous_role_id,
            "new_role_id": self.new_role_id,
            "previous_rank": self.previous_rank,
            "new_rank": self.new_rank,
            "reason": self.reason,
            "requested_by": self.requested_by,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class PlacementHistory(db.Model):
    __tablename__ = "placement_history"

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(
        db.Integer, db.ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    request_id = db.Column(
        db.Integer, db.ForeignKey("approval_requests.id", ondelete="SET NULL"), nullable=True,
    )
    role_id = db.Column(db.Integer, nullable=True)
    kind = db.Column(db.String(20), nullable=False)
    outcome = db.Column(db.String(30), nullable=False, comment="completed | interrupted | …")
    notes = db.Column(db.Text, default="")
    closed_by = db.Column(db.String(150), nullable=False)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ended_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "member_id": self.member_id,
            "request_id": self.request_id,
            "role_id": self.role_id,
            "kind": self.kind,
            "outcome": self.outcome,
            "notes": self.notes,
            "closed_by": self.closed_by,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }
