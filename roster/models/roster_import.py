"""
Roster Governance Engine
Snapshot import models.

Models:
    - RosterImport: one point-in-time bulk load (active or on-leave roster)
    - ImportLock:   one row per (category, scope) used as an advisory lock

The stored key set of an import is the comparison baseline for the next
import of the same category and scope; the raw rows are kept as a
forensic record.
"""

import json
from datetime import datetime, timezone

from roster.models import db

IMPORT_CATEGORIES = frozenset({"active", "on_leave"})


class RosterImport(db.Model):
    __tablename__ = "roster_imports"
    __table_args__ = (
        db.Index("idx_import_category_scope", "category", "scope_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(20), nullable=False, comment="active | on_leave")
    scope_key = db.Column(
        db.String(150), nullable=False, default="",
        comment="Normalised regional key the load covers ('' = whole organisation)",
    )
    performed_by = db.Column(db.String(150), nullable=False)
    notes = db.Column(db.Text, default="")
    row_count = db.Column(db.Integer, nullable=False, default=0)
    raw_rows_json = db.Column(db.Text, default="[]")
    keys_json = db.Column(db.Text, default="[]")
    summary_json = db.Column(db.Text, default="{}")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    deltas = db.relationship("Delta", backref="roster_import", lazy="dynamic")

    @property
    def raw_rows(self) -> list:
        try:
            return json.loads(self.raw_rows_json or "[]")
        except (json.JSONDecodeError, TypeError):
            return []

    @property
    def keys(self) -> set[str]:
        try:
            return set(json.loads(self.keys_json or "[]"))
        except (json.JSONDecodeError, TypeError):
            return set()

    @property
    def summary(self) -> dict:
        try:
            return json.loads(self.summary_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self, include_rows=False):
        data = {
            "id": self.id,
            "category": self.category,
            "scope_key": self.scope_key,
            "performed_by": self.performed_by,
            "notes": self.notes,
            "row_count": self.row_count,
            "summary": self.summary,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_rows:
            data["raw_rows"] = self.raw_rows
        return data

    def __repr__(self):
        return f"<RosterImport {self.id}: {self.category}/{self.scope_key}>"


class ImportLock(db.Model):
    """Row taken with SELECT … FOR UPDATE to serialise imports per scope."""

    __tablename__ = "import_locks"
    __table_args__ = (
        db.UniqueConstraint("category", "scope_key", name="uq_import_lock_scope"),
    )

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(20), nullable=False)
    scope_key = db.Column(db.String(150), nullable=False, default="")
    locked_by = db.Column(db.String(150), nullable=True)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
