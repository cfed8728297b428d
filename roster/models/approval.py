"""
Roster Governance Engine
Approval chain models.

Models:
    - ApprovalRequest: a staged placement (training / probation) for one member
    - ApprovalStep:    one ordered sign-off in the request's chain

A step at level n is only actionable once every step at a lower level is
approved.  Request status is kept in sync with the steps by the Approval
Chain Engine; ``cancelled`` is the only status not derived from them.
"""

from datetime import datetime, timezone

from roster.models import db

REQUEST_STATUSES = frozenset({"in_progress", "approved", "rejected", "cancelled"})
ACTIVE_REQUEST_STATUSES = frozenset({"in_progress"})
STEP_STATUSES = frozenset({"pending", "approved", "rejected"})


class ApprovalRequest(db.Model):
    __tablename__ = "approval_requests"

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(
        db.Integer, db.ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    kind = db.Column(db.String(20), nullable=False, comment="training | probation")
    target_role_id = db.Column(db.Integer, db.ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="in_progress", index=True)
    requested_by = db.Column(db.String(150), nullable=False)
    cancel_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    steps = db.relationship(
        "ApprovalStep",
        backref="request",
        order_by="ApprovalStep.level",
        cascade="all, delete-orphan",
        lazy="select",
    )
    member = db.relationship("Member", lazy="joined")

    def to_dict(self, include_steps=True):
        data = {
            "id": self.id,
            "member_id": self.member_id,
            "registry_id": self.member.registry_id if self.member else None,
            "kind": self.kind,
            "target_role_id": self.target_role_id,
            "status": self.status,
            "requested_by": self.requested_by,
            "cancel_reason": self.cancel_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }
        if include_steps:
            data["steps"] = [s.to_dict() for s in self.steps]
        return data

    def __repr__(self):
        return f"<ApprovalRequest {self.id}: {self.kind} member={self.member_id} [{self.status}]>"


class ApprovalStep(db.Model):
    __tablename__ = "approval_steps"
    __table_args__ = (
        db.UniqueConstraint("request_id", "level", name="uq_approval_step_level"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("approval_requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    level = db.Column(db.Integer, nullable=False)
    approver_type = db.Column(
        db.String(40), nullable=False, default="",
        comment="division_director | regional_director | command | …",
    )
    approver_id = db.Column(db.String(150), nullable=False)
    status = db.Column(db.String(10), nullable=False, default="pending")
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    decided_by = db.Column(db.String(150), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    escalated = db.Column(db.Boolean, nullable=False, default=False)
    escalation_justification = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "level": self.level,
            "approver_type": self.approver_type,
            "approver_id": self.approver_id,
            "status": self.status,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "decided_by": self.decided_by,
            "rejection_reason": self.rejection_reason,
            "escalated": self.escalated,
            "escalation_justification": self.escalation_justification,
        }

    def __repr__(self):
        return f"<ApprovalStep {self.id}: L{self.level} {self.approver_id} [{self.status}]>"
