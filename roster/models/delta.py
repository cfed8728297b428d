"""
Roster Governance Engine
Delta domain model.

A Delta is an immutable detection of change produced by the Snapshot
Differ right after an import.  Only the resolution fields are ever
mutated (PENDING → RESOLVED, one-way); resolved deltas stay as history.
"""

import json
from datetime import datetime, timezone

from roster.models import db

DELTA_STATUSES = frozenset({"PENDING", "RESOLVED"})


class Delta(db.Model):
    __tablename__ = "deltas"
    __table_args__ = (
        db.Index("idx_delta_registry_status", "registry_id", "status"),
        db.Index("idx_delta_status_created", "status", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    import_id = db.Column(
        db.Integer, db.ForeignKey("roster_imports.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    # Subject - denormalised snapshot for display
    registry_id = db.Column(db.String(32), nullable=False)
    name = db.Column(db.String(200), default="")
    division_label = db.Column(db.String(150), default="")
    regional_label = db.Column(db.String(150), default="")
    rank = db.Column(db.String(6), nullable=True)
    regional_id = db.Column(db.Integer, nullable=True, index=True)
    division_id = db.Column(db.Integer, nullable=True, index=True)

    delta_type = db.Column(
        db.String(20), nullable=False,
        comment="active_entered | active_left | leave_entered | leave_left",
    )
    movement_type = db.Column(db.String(30), nullable=False, default="unclassified")
    observation = db.Column(db.Text, default="", comment="Free text from the source row (e.g. leave reason)")
    status = db.Column(db.String(10), nullable=False, default="PENDING")

    # Resolution metadata
    resolved_by = db.Column(db.String(150), nullable=True)
    resolution_note = db.Column(db.Text, nullable=True)
    action_code = db.Column(db.String(40), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    related_delta_id = db.Column(
        db.Integer, db.ForeignKey("deltas.id", ondelete="SET NULL"), nullable=True,
    )

    extra_json = db.Column(db.Text, default="{}")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    @property
    def extra(self) -> dict:
        try:
            return json.loads(self.extra_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def resolution(self) -> dict:
        return {
            "status": self.status,
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
            "action_code": self.action_code,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    def to_dict(self):
        data = {
            "id": self.id,
            "import_id": self.import_id,
            "registry_id": self.registry_id,
            "name": self.name,
            "division_label": self.division_label,
            "regional_label": self.regional_label,
            "rank": self.rank,
            "delta_type": self.delta_type,
            "movement_type": self.movement_type,
            "observation": self.observation,
            "related_delta_id": self.related_delta_id,
            "extra": self.extra,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        data.update(self.resolution())
        return data

    def __repr__(self):
        return f"<Delta {self.id}: {self.delta_type} {self.registry_id} [{self.status}]>"
