"""
Rank ("grau") helpers.

Ranks are roman-numeral seniority codes I..XII; a lower numeral means
higher authority.  Unknown codes sort last (999) rather than raising.
"""

from __future__ import annotations

import re

from roster.services.normalizer import comparison_key

ROMAN_RANKS = {
    "I": 1, "II": 2, "III": 3, "IV": 4, "V": 5, "VI": 6,
    "VII": 7, "VIII": 8, "IX": 9, "X": 10, "XI": 11, "XII": 12,
}

UNKNOWN_RANK = 999

_ROLE_RANK_RE = re.compile(r"^(?P<role>.+?)\s*\(?\s*GRAU\s+(?P<rank>[IVX]+)\s*\)?\s*$")


def rank_to_number(code) -> int:
    if not isinstance(code, str):
        return UNKNOWN_RANK
    return ROMAN_RANKS.get(code.strip().upper(), UNKNOWN_RANK)


def is_valid_rank(code) -> bool:
    return rank_to_number(code) != UNKNOWN_RANK


def compare_ranks(a, b) -> int:
    """Negative if *a* outranks *b*, zero if equal, positive otherwise."""
    return rank_to_number(a) - rank_to_number(b)


def parse_role_rank(text) -> tuple[str, str | None]:
    """Split "Diretor Regional (Grau V)" into ("DIRETOR REGIONAL", "V").

    Text without a recognisable rank comes back as (key, None).
    """
    key = comparison_key(text)
    if not key:
        return "", None
    m = _ROLE_RANK_RE.match(key)
    if not m or not is_valid_rank(m.group("rank")):
        return key, None
    return m.group("role").strip(), m.group("rank")
