"""
Text normalisation for organisational-unit and person names.

Spreadsheets spell the same unit many ways ("Divisão Vale do Paraíba I - SP",
"DIVISAO VALE DO PARAIBA 1", "vale do paraiba i").  ``normalize()`` turns each
into one comparison key.

Pipeline for organisational kinds (command, regional, division):
    1. uppercase, strip diacritics (NFD), collapse whitespace
    2. strip hierarchy prefixes ("COMANDO REGIONAL ", "REGIONAL ", "DIVISAO ", …)
    3. strip trailing " - XX" state suffix, dangling hyphen, "(note)"
    4. fold whole-word roman numerals I/II/III → 1/2/3
    5. expand known abbreviations (word-bounded prefix replacement)

The pipeline is repeated until the key stops changing, so
``normalize(k, normalize(k, x)) == normalize(k, x)`` for every input.

All functions are pure and total: ``None`` or non-string input yields ``""``.
"""

from __future__ import annotations

import re
import unicodedata

ORG_KINDS = frozenset({"command", "regional", "division"})
KINDS = ORG_KINDS | {"role", "person"}

HIERARCHY_PREFIXES = (
    "COMANDO REGIONAL ",
    "COMANDO ",
    "REGIONAL ",
    "DIVISAO ",
)

ROMAN_FOLDING = {"I": "1", "II": "2", "III": "3"}

# Brazilian state codes; none of them collides with a roman numeral.
STATE_CODES = (
    "AC", "AL", "AP", "AM", "BA", "CE", "DF", "ES", "GO", "MA", "MT", "MS", "MG", "PA",
    "PB", "PR", "PE", "PI", "RJ", "RN", "RS", "RO", "RR", "SC", "SP", "SE", "TO",
)

DEFAULT_ABBREVIATIONS = {
    "SJC": "SAO JOSE DOS CAMPOS",
}

_WS_RE = re.compile(r"\s+")
_STATE_SUFFIX_RE = re.compile(r"\s+-\s+(?:" + "|".join(STATE_CODES) + r")$")
_NUMERAL_SUFFIX_RE = re.compile(r"\s+-\s+(III|II|I|\d+)$")
_LABEL_STATE_RE = re.compile(r"\s*-\s*(?:" + "|".join(STATE_CODES) + r")\s*$")
_DANGLING_HYPHEN_RE = re.compile(r"\s+-\s*$")
_PAREN_SUFFIX_RE = re.compile(r"\s*\([^)]*\)\s*$")
_ROMAN_RE = re.compile(r"\b(" + "|".join(sorted(ROMAN_FOLDING, key=len, reverse=True)) + r")\b")

_MAX_PASSES = 8


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def comparison_key(text) -> str:
    """Accent-, case- and whitespace-insensitive key (no structural rewriting)."""
    if not isinstance(text, str):
        return ""
    return _WS_RE.sub(" ", strip_accents(text).upper()).strip()


def fold_roman_numerals(text: str) -> str:
    """Replace isolated I/II/III tokens; numerals inside longer words are left alone."""
    return _ROMAN_RE.sub(lambda m: ROMAN_FOLDING[m.group(1)], text)


def _strip_prefixes(key: str) -> str:
    for prefix in HIERARCHY_PREFIXES:
        if key.startswith(prefix) and len(key) > len(prefix):
            return key[len(prefix):]
    return key


def _strip_suffixes(key: str) -> str:
    key = _STATE_SUFFIX_RE.sub("", key)
    key = _NUMERAL_SUFFIX_RE.sub(r" \1", key)
    key = _DANGLING_HYPHEN_RE.sub("", key)
    key = _PAREN_SUFFIX_RE.sub("", key)
    return key


def _expand_abbreviations(key: str, abbreviations: dict[str, str]) -> str:
    for short, full in abbreviations.items():
        short_key = comparison_key(short)
        full_key = comparison_key(full)
        if not short_key or key.startswith(full_key):
            continue
        pattern = r"^" + re.escape(short_key) + r"\b"
        if re.match(pattern, key):
            return re.sub(pattern, lambda _m: full_key, key, count=1)
    return key


def _org_pass(key: str, abbreviations: dict[str, str]) -> str:
    key = comparison_key(key)
    key = _strip_prefixes(key)
    key = _strip_suffixes(key).strip()
    key = fold_roman_numerals(key)
    key = _WS_RE.sub(" ", key).strip()
    return _expand_abbreviations(key, abbreviations)


def _role_pass(key: str) -> str:
    return _strip_suffixes(comparison_key(key)).strip()


def normalize(kind: str, text, abbreviations: dict[str, str] | None = None) -> str:
    """Return the canonical comparison key for *text*.

    Args:
        kind: "command" | "regional" | "division" | "role" | "person".
              Unknown kinds fall back to the person rules.
        text: Free text as it appears in a spreadsheet or form.
        abbreviations: Optional override of the abbreviation table
              (short form → full form), applied to organisational kinds.
    """
    if not isinstance(text, str):
        return ""
    if abbreviations is None:
        abbreviations = DEFAULT_ABBREVIATIONS

    if kind in ORG_KINDS:
        step = lambda k: _org_pass(k, abbreviations)  # noqa: E731
    elif kind == "role":
        step = _role_pass
    else:
        step = comparison_key

    key = step(text)
    for _ in range(_MAX_PASSES):
        nxt = step(key)
        if nxt == key:
            break
        key = nxt
    return key


def keys_match(a: str, b: str, containment: bool = True) -> bool:
    """Compare two normalised keys.  Empty keys never match."""
    if not a or not b:
        return False
    if a == b:
        return True
    return containment and (a in b or b in a)


# ── Display labels ───────────────────────────────────────────────────────────


def canonical_label(kind: str, text, state: str = "SP") -> str:
    """Standard display form used when storing labels.

    division → "DIVISAO <NAME> - SP"  (a regional-level placement keeps "REGIONAL")
    regional → "REGIONAL <NAME> - SP"
    command  → "COMANDO <NAME>"
    other kinds → plain comparison key
    """
    label = comparison_key(text)
    if not label:
        return ""

    if kind == "command":
        label = re.sub(r"^COMANDO\s*", "", label)
        return f"COMANDO {label}".strip()

    if kind == "division":
        if "REGIONAL" in label:
            label = re.sub(r"^(DIVISAO\s+)?REGIONAL\s*", "REGIONAL ", label)
        elif not label.startswith("DIVISAO"):
            label = f"DIVISAO {label}"
    elif kind == "regional":
        label = "REGIONAL " + re.sub(r"^REGIONAL\s*", "", label)
    else:
        return label

    label = _LABEL_STATE_RE.sub("", label)
    label = _NUMERAL_SUFFIX_RE.sub(r" \1", label)
    label = re.sub(r"\s*-\s*$", "", label)
    return f"{label} - {state}"
