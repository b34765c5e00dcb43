"""
parsers.py — tolerant readers for the mixed field encodings found in uploads

Phase fields arrive as ranges ("1 - 3"), JSON arrays ("[2,3,4]"), broken
JSON ("[2-4]") or plain comma lists ("1,2,3"). Skill and task-ID fields are
comma lists, AttributesJSON is a JSON object or free text.

None of the functions here raise; bad input comes back as None, an error
string, or an invalid PhaseSet.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Optional

BRACKETED_RE = re.compile(r"^\[.*\]$", re.DOTALL)
RANGE_RE = re.compile(r"^\s*(\d+)\s*-\s*(\d+)\s*$")
DIGITS_RE = re.compile(r"\d+")
INTEGER_TEXT_RE = re.compile(r"^[+-]?\d+(?:\.0+)?$")


@dataclass(frozen=True)
class PhaseSet:
    spans: tuple[tuple[int, int], ...]
    encoding: str
    valid: bool

    @property
    def is_empty(self) -> bool:
        return not self.spans

    def contains(self, phase: int) -> bool:
        return any(start <= phase <= end for start, end in self.spans)

    def overlaps(self, start: int, end: int) -> bool:
        if start > end:
            return False
        return any(lo <= end and start <= hi for lo, hi in self.spans)

    def members(self, limit: int = 1000) -> list[int]:
        found: list[int] = []
        for lo, hi in self.spans:
            for phase in range(lo, hi + 1):
                if len(found) >= limit:
                    return sorted(set(found))
                found.append(phase)
        return sorted(set(found))


EMPTY_PHASES = PhaseSet(spans=(), encoding="empty", valid=False)


# ══════════════════════════════════════════════════════════════════════════════
# SCALARS
# ══════════════════════════════════════════════════════════════════════════════

def parse_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_integer(value: Any) -> Optional[int]:
    """Return value as an int when it is integral ("3", 3, 3.0), else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value) or not value.is_integer():
            return None
        return int(value)
    text = str(value).strip()
    if not INTEGER_TEXT_RE.match(text):
        return None
    return int(float(text))


def _positive_int(value: Any) -> Optional[int]:
    number = parse_integer(value)
    if number is None or number < 1:
        return None
    return number


# ══════════════════════════════════════════════════════════════════════════════
# LISTS
# ══════════════════════════════════════════════════════════════════════════════

def split_list(value: Any) -> Optional[list[str]]:
    """
    Split a comma-separated field into trimmed tokens.

    Empty tokens are kept so callers can decide whether "a,,b" is an error.
    Sequences pass through with each item stringified; anything else that is
    not a string returns None.
    """
    if isinstance(value, (list, tuple)):
        return ["" if item is None else str(item).strip() for item in value]
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return [str(value)]
    if not isinstance(value, str):
        return None
    return [token.strip() for token in value.split(",")]


def parse_json_array(value: Any) -> tuple[Optional[list], Optional[str]]:
    if isinstance(value, (list, tuple)):
        return list(value), None
    if not isinstance(value, str):
        return None, "must be valid JSON array"
    try:
        parsed = json.loads(value)
    except (ValueError, TypeError):
        return None, "must be valid JSON array"
    if not isinstance(parsed, list):
        return None, "must be valid JSON array"
    return parsed, None


def parse_attributes(value: Any) -> Any:
    """JSON object when AttributesJSON parses, otherwise the raw free text."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value
    text = str(value)
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return text


# ══════════════════════════════════════════════════════════════════════════════
# PHASES
# ══════════════════════════════════════════════════════════════════════════════

def _spans_from_numbers(numbers: list[int]) -> tuple[tuple[int, int], ...]:
    return tuple((number, number) for number in sorted(set(numbers)))


def _phases_from_sequence(items: list) -> PhaseSet:
    numbers = [_positive_int(item) for item in items]
    if any(number is None for number in numbers):
        usable = [number for number in numbers if number is not None]
        return PhaseSet(_spans_from_numbers(usable), "json", False)
    return PhaseSet(_spans_from_numbers(numbers), "json", True)


def _phases_from_text(text: str) -> PhaseSet:
    if "-" in text:
        match = RANGE_RE.match(text)
        if match:
            start, end = int(match.group(1)), int(match.group(2))
            if start > end:
                return PhaseSet((), "range", True)
            if start < 1:
                return PhaseSet(((1, end),) if end >= 1 else (), "range", False)
            return PhaseSet(((start, end),), "range", True)
        return _scan_digits(text)

    tokens = [token.strip() for token in text.split(",")]
    numbers = [_positive_int(token) for token in tokens]
    if tokens and all(number is not None for number in numbers):
        return PhaseSet(_spans_from_numbers(numbers), "list", True)
    return _scan_digits(text)


def _scan_digits(text: str) -> PhaseSet:
    numbers = [int(digits) for digits in DIGITS_RE.findall(text) if int(digits) >= 1]
    if not numbers:
        return PhaseSet((), "invalid", False)
    return PhaseSet(_spans_from_numbers(numbers), "scan", False)


def parse_phase_set(value: Any) -> PhaseSet:
    """
    Read a PreferredPhases / AvailableSlots style value.

    Order: JSON array when bracketed, then "a-b" range, then comma list,
    then a digit scan. Bracketed text that is not valid JSON ("[2-4]",
    "[2 - 4]") is re-read without its brackets and marked invalid, so the
    phases are still usable for filtering while validation reports it.
    """
    if value is None or isinstance(value, bool):
        return EMPTY_PHASES
    if isinstance(value, (list, tuple)):
        return _phases_from_sequence(list(value))
    if isinstance(value, (int, float)):
        number = _positive_int(value)
        if number is None:
            return PhaseSet((), "invalid", False)
        return PhaseSet(((number, number),), "list", True)

    text = str(value).strip()
    if not text:
        return EMPTY_PHASES

    if BRACKETED_RE.match(text):
        try:
            parsed = json.loads(text)
        except ValueError:
            inner = text[1:-1].strip()
            recovered = _phases_from_text(inner) if inner else EMPTY_PHASES
            return PhaseSet(recovered.spans, recovered.encoding, False)
        if isinstance(parsed, list):
            return _phases_from_sequence(parsed)
        return PhaseSet((), "invalid", False)

    return _phases_from_text(text)
