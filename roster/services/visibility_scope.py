"""
Visibility Scope Resolver.

Derives, from a user's rank and role grants, which slice of the roster the
user may see or act on.  Rules, evaluated in order:

    1. super-admin           → regional, mandatory, bound to the HOME regional
                               (functional power is global, data visibility is not)
    2. rank ≤ command cutoff  → organization-wide, not mandatory
       or a command role
    3. rank == regional cutoff → regional, mandatory, home regional
    4. otherwise             → division, mandatory, home division

Super-admin is checked first because admin accounts may carry an unrelated
or absent rank.  The numeric cutoffs are business policy and live in
``ScopePolicy`` (configured through ``RANK_SCOPE_POLICY``).
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import false

from roster.services.ranks import rank_to_number

LEVEL_ORGANIZATION = "organization"
LEVEL_REGIONAL = "regional"
LEVEL_DIVISION = "division"


@dataclass(frozen=True)
class ScopePolicy:
    command_threshold: int = 4
    regional_threshold: int = 5
    command_roles: frozenset = field(default_factory=lambda: frozenset({"command"}))

    @classmethod
    def from_config(cls, config) -> "ScopePolicy":
        raw = dict(config.get("RANK_SCOPE_POLICY") or {})
        return cls(
            command_threshold=int(raw.get("command_threshold", 4)),
            regional_threshold=int(raw.get("regional_threshold", 5)),
            command_roles=frozenset(raw.get("command_roles") or {"command"}),
        )


@dataclass(frozen=True)
class VisibilityScope:
    level: str
    regional_id: int | None = None
    division_id: int | None = None
    mandatory: bool = True

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "regional_id": self.regional_id,
            "division_id": self.division_id,
            "mandatory": self.mandatory,
        }


def resolve_scope(
    rank,
    roles=None,
    home_regional_id: int | None = None,
    home_division_id: int | None = None,
    is_super_admin: bool = False,
    policy: ScopePolicy | None = None,
) -> VisibilityScope:
    policy = policy or ScopePolicy()
    roles = {str(r).strip().lower() for r in (roles or ()) if r}

    if is_super_admin:
        return VisibilityScope(LEVEL_REGIONAL, regional_id=home_regional_id, mandatory=True)

    level = rank_to_number(rank)
    if level <= policy.command_threshold or roles & set(policy.command_roles):
        return VisibilityScope(LEVEL_ORGANIZATION, mandatory=False)

    if level == policy.regional_threshold:
        return VisibilityScope(LEVEL_REGIONAL, regional_id=home_regional_id, mandatory=True)

    return VisibilityScope(
        LEVEL_DIVISION,
        regional_id=home_regional_id,
        division_id=home_division_id,
        mandatory=True,
    )


# ── Helpers ──────────────────────────────────────────────────────────────────


def has_full_visibility(scope: VisibilityScope) -> bool:
    return scope.level == LEVEL_ORGANIZATION


def requires_regional_filter(scope: VisibilityScope) -> bool:
    return scope.mandatory and scope.level == LEVEL_REGIONAL


def requires_division_filter(scope: VisibilityScope) -> bool:
    return scope.mandatory and scope.level == LEVEL_DIVISION


def apply_scope(query, scope: VisibilityScope, model):
    """Restrict a SQLAlchemy select/query to the scope.

    *model* must expose ``regional_id`` and ``division_id`` columns.  A
    mandatory scope whose bound id is missing matches nothing.
    """
    if requires_regional_filter(scope):
        if scope.regional_id is None:
            return query.where(false())
        return query.where(model.regional_id == scope.regional_id)
    if requires_division_filter(scope):
        if scope.division_id is None:
            return query.where(false())
        return query.where(model.division_id == scope.division_id)
    return query


def in_scope(scope: VisibilityScope, regional_id: int | None, division_id: int | None) -> bool:
    """Row-level form of ``apply_scope`` for one record's placement."""
    if has_full_visibility(scope):
        return True
    if requires_regional_filter(scope):
        return scope.regional_id is not None and regional_id == scope.regional_id
    if requires_division_filter(scope):
        return scope.division_id is not None and division_id == scope.division_id
    return True
