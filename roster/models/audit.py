"""
Roster Governance Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for member and delta events.
"""

import json
from datetime import UTC, datetime

from roster.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "member", "delta", "approval_request", "roster_import",
}

AUDIT_ACTIONS = {
    # Member registry
    "member.create",
    "member.edit",
    "member.deactivate",
    "member.import_update",
    # Delta resolution
    "delta.resolve",
    "delta.promote",
    "delta.bulk_resolve",
    # Approval chain
    "approval.approve",
    "approval.reject",
    "approval.escalate",
    "approval.cancel",
    "placement.close",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every governed change.

    One row per action.  ``diff_json`` carries the before/after snapshot.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="member | delta | approval_request | roster_import",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="Registry id for members, PK-as-string otherwise",
    )

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="member.edit | delta.promote | approval.reject | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")
    justification = db.Column(db.Text, default="")
    request_id = db.Column(db.String(40), nullable=True, comment="X-Request-ID of the originating call")

    # Change payload
    diff_json = db.Column(
        db.Text, default="{}",
        comment="JSON: {before: {...}, after: {...}}",
    )

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "justification": self.justification,
            "request_id": self.request_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str = "system",
    justification: str = "",
    before: dict | None = None,
    after: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    from flask import g, has_request_context

    request_id = getattr(g, "request_id", None) if has_request_context() else None

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        justification=justification or "",
        request_id=request_id,
        diff_json=json.dumps({"before": before or {}, "after": after or {}}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
