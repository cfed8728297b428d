"""
Delta Classifier - what a roster change means.

Two-tier policy:
    1. An explicit action code (chosen by an admin at resolution time, or
       passed programmatically) is looked up in the per-category table.
       Codes outside the category's closed set parse to ``UNMAPPED`` and
       classify as ``unclassified``.
    2. With no action code, the free-text observation is scanned
       (case- and accent-insensitive) against a prioritised list of keyword
       groups for the category; the first matching group wins, otherwise
       the category default applies.

No code and no observation yields ``unclassified``.  ``classify()`` never
raises: a classification miss must not block an import.

Usage:
    from roster.services.delta_classifier import classify, DeltaType

    classify(DeltaType.ACTIVE_LEFT, observation="Transferido p/ Regional Norte")
    # -> MovementType.TRANSFER_OUT
"""

from __future__ import annotations

from enum import Enum

from roster.services.normalizer import comparison_key


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class DeltaType(str, Enum):
    """Raw appearance / disappearance per roster category."""
    ACTIVE_ENTERED = "active_entered"
    ACTIVE_LEFT = "active_left"
    LEAVE_ENTERED = "leave_entered"
    LEAVE_LEFT = "leave_left"


class MovementType(str, Enum):
    NEW_ENTRANT = "new_entrant"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    LEAVE_START = "leave_start"
    LEAVE_END = "leave_end"
    DEPARTURE_VOLUNTARY = "departure_voluntary"
    DEPARTURE_EXPELLED = "departure_expelled"
    UNCLASSIFIED = "unclassified"


class ActiveEnteredAction(str, Enum):
    CONFIRM_NEW = "confirm_new"
    CONFIRM_TRANSFERRED = "confirm_transferred"
    CAME_FROM_REGIONAL = "came_from_regional"
    CAME_FROM_COMMAND = "came_from_command"
    RETURN_FROM_LEAVE = "return_from_leave"
    PROMOTED = "promoted"
    UNMAPPED = "unmapped"


class ActiveLeftAction(str, Enum):
    TRANSFERRED = "transferred"
    TRANSFERRED_REGIONAL = "transferred_regional"
    TRANSFERRED_COMMAND = "transferred_command"
    RESIGNED = "resigned"
    REQUESTED_EXIT = "requested_exit"
    EXPELLED = "expelled"
    LEAVE_START = "leave_start"
    PROMOTED = "promoted"
    SPREADSHEET_ERROR = "spreadsheet_error"
    UNMAPPED = "unmapped"


class LeaveEnteredAction(str, Enum):
    CONFIRM_LEAVE = "confirm_leave"
    NEW_LEAVE = "new_leave"
    UNMAPPED = "unmapped"


class LeaveLeftAction(str, Enum):
    RETURNED = "returned"
    BACK_TO_ACTIVE = "back_to_active"
    RESIGNED = "resigned"
    EXPELLED = "expelled"
    ERROR = "error"
    UNMAPPED = "unmapped"


ACTIONS_BY_TYPE: dict[DeltaType, type[Enum]] = {
    DeltaType.ACTIVE_ENTERED: ActiveEnteredAction,
    DeltaType.ACTIVE_LEFT: ActiveLeftAction,
    DeltaType.LEAVE_ENTERED: LeaveEnteredAction,
    DeltaType.LEAVE_LEFT: LeaveLeftAction,
}


# ═════════════════════════════════════════════════════════════════════════════
# Tier 1 - action code tables
# ═════════════════════════════════════════════════════════════════════════════

M = MovementType

# (category, action) → movement; codes repeat across categories
ACTION_MOVEMENTS: dict[DeltaType, dict[Enum, MovementType]] = {
    DeltaType.ACTIVE_ENTERED: {
        ActiveEnteredAction.CONFIRM_NEW: M.NEW_ENTRANT,
        ActiveEnteredAction.CONFIRM_TRANSFERRED: M.TRANSFER_IN,
        ActiveEnteredAction.CAME_FROM_REGIONAL: M.TRANSFER_IN,
        ActiveEnteredAction.CAME_FROM_COMMAND: M.TRANSFER_IN,
        ActiveEnteredAction.RETURN_FROM_LEAVE: M.LEAVE_END,
        ActiveEnteredAction.PROMOTED: M.TRANSFER_IN,
    },
    DeltaType.ACTIVE_LEFT: {
        ActiveLeftAction.TRANSFERRED: M.TRANSFER_OUT,
        ActiveLeftAction.TRANSFERRED_REGIONAL: M.TRANSFER_OUT,
        ActiveLeftAction.TRANSFERRED_COMMAND: M.TRANSFER_OUT,
        ActiveLeftAction.RESIGNED: M.DEPARTURE_VOLUNTARY,
        ActiveLeftAction.REQUESTED_EXIT: M.DEPARTURE_VOLUNTARY,
        ActiveLeftAction.EXPELLED: M.DEPARTURE_EXPELLED,
        ActiveLeftAction.LEAVE_START: M.LEAVE_START,
        ActiveLeftAction.PROMOTED: M.TRANSFER_OUT,
        ActiveLeftAction.SPREADSHEET_ERROR: M.UNCLASSIFIED,
    },
    DeltaType.LEAVE_ENTERED: {
        LeaveEnteredAction.CONFIRM_LEAVE: M.LEAVE_START,
        LeaveEnteredAction.NEW_LEAVE: M.LEAVE_START,
    },
    DeltaType.LEAVE_LEFT: {
        LeaveLeftAction.RETURNED: M.LEAVE_END,
        LeaveLeftAction.BACK_TO_ACTIVE: M.LEAVE_END,
        LeaveLeftAction.RESIGNED: M.DEPARTURE_VOLUNTARY,
        LeaveLeftAction.EXPELLED: M.DEPARTURE_EXPELLED,
        LeaveLeftAction.ERROR: M.UNCLASSIFIED,
    },
}


# ═════════════════════════════════════════════════════════════════════════════
# Tier 2 - keyword groups (priority order, first match wins)
# ═════════════════════════════════════════════════════════════════════════════

_TRANSFER_WORDS = ("TRANSFERID", "TRANSFERENCIA")

KEYWORD_GROUPS: dict[DeltaType, tuple[tuple[MovementType, tuple[str, ...]], ...]] = {
    DeltaType.ACTIVE_ENTERED: (
        (M.TRANSFER_IN, ("VEIO",) + _TRANSFER_WORDS),
        (M.LEAVE_END, ("AFASTAD", "RETORNO", "RETORNOU", "SUSPENS", "VOLTOU")),
    ),
    DeltaType.ACTIVE_LEFT: (
        (M.TRANSFER_OUT, _TRANSFER_WORDS + ("FOI PARA",)),
        (M.DEPARTURE_EXPELLED, ("EXPULS",)),
        (M.LEAVE_START, ("AFASTAD", "AFASTAMENTO")),
        (M.DEPARTURE_VOLUNTARY, ("DESLIG", "OPTOU", "SAIU", "PEDIU")),
    ),
    DeltaType.LEAVE_ENTERED: (),
    DeltaType.LEAVE_LEFT: (
        (M.LEAVE_END, ("RETORN", "VOLTOU", "ATIVO")),
        (M.DEPARTURE_EXPELLED, ("EXPULS",)),
        (M.DEPARTURE_VOLUNTARY, ("DESLIG", "SAIU")),
    ),
}

KEYWORD_DEFAULTS: dict[DeltaType, MovementType] = {
    DeltaType.ACTIVE_ENTERED: M.NEW_ENTRANT,
    DeltaType.ACTIVE_LEFT: M.DEPARTURE_VOLUNTARY,
    DeltaType.LEAVE_ENTERED: M.LEAVE_START,
    DeltaType.LEAVE_LEFT: M.LEAVE_END,
}


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════

def parse_delta_type(value) -> DeltaType | None:
    if isinstance(value, DeltaType):
        return value
    try:
        return DeltaType(str(value).strip().lower())
    except ValueError:
        return None


def parse_action(delta_type, code):
    """Map a free-string action code onto the category's closed enum.

    Returns the ``UNMAPPED`` member for codes outside the set, or ``None``
    when the delta type itself is unknown.
    """
    dtype = parse_delta_type(delta_type)
    if dtype is None:
        return None
    enum_cls = ACTIONS_BY_TYPE[dtype]
    try:
        return enum_cls(str(code).strip().lower())
    except ValueError:
        return enum_cls.UNMAPPED


def valid_actions(delta_type) -> list[str]:
    """Action codes an admin may choose for this category (UNMAPPED excluded)."""
    dtype = parse_delta_type(delta_type)
    if dtype is None:
        return []
    return [a.value for a in ACTIONS_BY_TYPE[dtype] if a.value != "unmapped"]


def classify_observation(delta_type, observation) -> MovementType:
    dtype = parse_delta_type(delta_type)
    if dtype is None:
        return M.UNCLASSIFIED
    text = comparison_key(observation)
    if not text:
        return M.UNCLASSIFIED
    for movement, words in KEYWORD_GROUPS[dtype]:
        if any(w in text for w in words):
            return movement
    return KEYWORD_DEFAULTS[dtype]


def classify(delta_type, action_code=None, observation=None) -> MovementType:
    """Label a raw delta with its semantic movement type.  Never raises."""
    dtype = parse_delta_type(delta_type)
    if dtype is None:
        return M.UNCLASSIFIED
    if action_code is not None and str(action_code).strip():
        action = parse_action(dtype, action_code)
        return ACTION_MOVEMENTS[dtype].get(action, M.UNCLASSIFIED)
    return classify_observation(dtype, observation)
