"""
Snapshot Differ - what changed between two roster snapshots.

Pure set algebra, applied independently to each roster category
(active members, members on leave):

    entered = new − previous
    left    = previous − new

Identical inputs always produce identical outputs, so an import job can
be retried safely.  The helpers below refine the raw diff for the import
service: field-level change detection on members present in both
snapshots, detection of the regional a load covers, and separation of
leavers that are still active elsewhere (transfers).
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from roster.services.normalizer import normalize

# Row fields compared when looking for in-place changes, with the
# normaliser kind used to compare them
COMPARED_FIELDS = {
    "name": "person",
    "rank": "person",
    "division_label": "division",
    "regional_label": "regional",
    "role_label": "role",
}


@dataclass(frozen=True)
class SnapshotDiff:
    entered: frozenset = field(default_factory=frozenset)
    left: frozenset = field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not self.entered and not self.left

    def to_dict(self) -> dict:
        return {"entered": sorted(self.entered), "left": sorted(self.left)}


def diff(previous_keys, new_keys) -> SnapshotDiff:
    """Symmetric difference of two key sets, split into entrants and leavers."""
    previous = frozenset(previous_keys or ())
    new = frozenset(new_keys or ())
    return SnapshotDiff(entered=new - previous, left=previous - new)


def detect_changes(previous: dict, rows: dict, fields=COMPARED_FIELDS) -> dict[str, list[dict]]:
    """Members present in both snapshots whose comparable fields differ.

    Args:
        previous: registry_id → dict of stored field values.
        rows:     registry_id → dict of incoming row values.
        fields:   field name → normaliser kind.  A field absent (or blank)
                  in the incoming row is not compared.

    Returns:
        registry_id → [{"field", "old", "new"}, ...] for changed members only.
        Values are compared on their normalised keys, so "Divisao Vale I"
        and "DIVISÃO VALE 1 - SP" are the same division.
    """
    changes: dict[str, list[dict]] = {}
    for registry_id in sorted(set(previous) & set(rows)):
        old, new = previous[registry_id], rows[registry_id]
        field_changes = []
        for name, kind in fields.items():
            incoming = new.get(name)
            if incoming in (None, ""):
                continue
            if normalize(kind, str(incoming)) != normalize(kind, str(old.get(name) or "")):
                field_changes.append({"field": name, "old": old.get(name), "new": incoming})
        if field_changes:
            changes[registry_id] = field_changes
    return changes


def detect_import_scope(rows, label_field: str = "regional_label") -> str:
    """Normalised key of the predominant regional in a load ('' when none).

    Ties resolve to the alphabetically first key so the result is stable.
    """
    counts = Counter(
        key for key in (normalize("regional", r.get(label_field)) for r in rows or ()) if key
    )
    if not counts:
        return ""
    top = max(counts.values())
    return sorted(k for k, v in counts.items() if v == top)[0]


def split_transfers(left_keys, active_elsewhere) -> tuple[frozenset, frozenset]:
    """Separate leavers still active in another scope (transfers) from real leavers."""
    left = frozenset(left_keys or ())
    elsewhere = left & frozenset(active_elsewhere or ())
    return left - elsewhere, elsewhere
