"""
Structure Matcher - free text → canonical structural ids.

Cascade, each stage scoped by the previous one:

    command   containment in either direction, against all commands
    regional  EXACT normalised equality, scoped to the matched command
              ("VP 1" must never partial-match "VP 3")
    division  containment, scoped to the matched regional
    role      containment, scoped by rank; attempted only when both the
              role text and the rank are given (no role text: not reported)

An unresolved parent marks every descendant as failed without attempting
it.  The result always lists matched and failed fields so callers can
surface partial success.

Within a stage an exact key match beats containment; among containment
hits the closest key length wins, then the lowest id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select

from roster.models import db
from roster.models.structure import Command, Division, Regional, Role
from roster.services.normalizer import keys_match, normalize

logger = logging.getLogger(__name__)

FIELDS = ("command", "regional", "division", "role")


@dataclass(frozen=True)
class Unit:
    """One candidate entity: id, display name, parent id (or rank for roles)."""
    id: int
    name: str
    parent: int | str | None = None


@dataclass
class StructureCatalog:
    commands: list[Unit] = field(default_factory=list)
    regionals: list[Unit] = field(default_factory=list)
    divisions: list[Unit] = field(default_factory=list)
    roles: list[Unit] = field(default_factory=list)

    @classmethod
    def load(cls) -> "StructureCatalog":
        """Snapshot the structural tables from the database."""
        return cls(
            commands=[Unit(c.id, c.name) for c in db.session.execute(select(Command)).scalars()],
            regionals=[
                Unit(r.id, r.name, r.command_id) for r in db.session.execute(select(Regional)).scalars()
            ],
            divisions=[
                Unit(d.id, d.name, d.regional_id) for d in db.session.execute(select(Division)).scalars()
            ],
            roles=[Unit(r.id, r.name, r.rank) for r in db.session.execute(select(Role)).scalars()],
        )


def _best(kind, text, candidates, *, containment, abbreviations=None):
    key = normalize(kind, text, abbreviations)
    if not key:
        return None
    exact, partial = [], []
    for unit in candidates:
        cand = normalize(kind, unit.name, abbreviations)
        if not cand:
            continue
        if cand == key:
            exact.append(unit)
        elif containment and keys_match(key, cand):
            partial.append((abs(len(cand) - len(key)), unit.id, unit))
    if exact:
        return min(exact, key=lambda u: u.id)
    if partial:
        return min(partial, key=lambda t: (t[0], t[1]))[2]
    return None


def match_structure(
    command_text,
    regional_text,
    division_text,
    role_text=None,
    rank=None,
    catalog: StructureCatalog | None = None,
    abbreviations: dict[str, str] | None = None,
) -> dict:
    """Resolve free-text labels to structural ids.

    Returns:
        {command_id, regional_id, division_id, role_id,
         matched_fields: [...], failed_fields: [...]}
    """
    catalog = catalog or StructureCatalog.load()
    result = {
        "command_id": None,
        "regional_id": None,
        "division_id": None,
        "role_id": None,
        "matched_fields": [],
        "failed_fields": [],
    }

    def _record(name, unit):
        if unit is None:
            result["failed_fields"].append(name)
            return None
        result[f"{name}_id"] = unit.id
        result["matched_fields"].append(name)
        return unit

    command = _record("command", _best(
        "command", command_text, catalog.commands, containment=True, abbreviations=abbreviations,
    ))

    regional = None
    if command is not None:
        regional = _record("regional", _best(
            "regional", regional_text,
            [u for u in catalog.regionals if u.parent == command.id],
            containment=False, abbreviations=abbreviations,
        ))
    else:
        result["failed_fields"].append("regional")

    if regional is not None:
        _record("division", _best(
            "division", division_text,
            [u for u in catalog.divisions if u.parent == regional.id],
            containment=True, abbreviations=abbreviations,
        ))
    else:
        result["failed_fields"].append("division")

    if role_text and rank:
        rank_code = str(rank).strip().upper()
        _record("role", _best(
            "role", role_text,
            [u for u in catalog.roles if str(u.parent or "").upper() == rank_code],
            containment=True,
        ))
    elif role_text:
        # role given without a rank cannot be scoped
        result["failed_fields"].append("role")

    if result["failed_fields"]:
        logger.debug(
            "Structure match partial: matched=%s failed=%s",
            result["matched_fields"], result["failed_fields"],
        )
    return result
