"""
Roster Governance Engine
Organisational structure models.

Models:
    - Command:  top-level tier
    - Regional: second tier, belongs to a command
    - Division: third tier, belongs to a regional
    - Role:     functional position, bound to a rank code

These are the canonical entities the Structure Matcher resolves free-text
spreadsheet labels against.
"""

from datetime import datetime, timezone

from roster.models import db


class Command(db.Model):
    __tablename__ = "commands"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    regionals = db.relationship("Regional", backref="command", lazy="select")

    def to_dict(self):
        return {"id": self.id, "name": self.name}

    def __repr__(self):
        return f"<Command {self.id}: {self.name}>"


class Regional(db.Model):
    __tablename__ = "regionals"
    __table_args__ = (
        db.UniqueConstraint("command_id", "name", name="uq_regional_command_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    command_id = db.Column(
        db.Integer, db.ForeignKey("commands.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(150), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    divisions = db.relationship("Division", backref="regional", lazy="select")

    def to_dict(self):
        return {"id": self.id, "command_id": self.command_id, "name": self.name}

    def __repr__(self):
        return f"<Regional {self.id}: {self.name}>"


class Division(db.Model):
    __tablename__ = "divisions"
    __table_args__ = (
        db.UniqueConstraint("regional_id", "name", name="uq_division_regional_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    regional_id = db.Column(
        db.Integer, db.ForeignKey("regionals.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(150), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {"id": self.id, "regional_id": self.regional_id, "name": self.name}

    def __repr__(self):
        return f"<Division {self.id}: {self.name}>"


class Role(db.Model):
    """Functional position.  ``rank`` is the roman-numeral grade it belongs to."""

    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    rank = db.Column(db.String(6), nullable=False, index=True, comment="I | II | … | XII")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {"id": self.id, "name": self.name, "rank": self.rank}

    def __repr__(self):
        return f"<Role {self.id}: {self.name} ({self.rank})>"
