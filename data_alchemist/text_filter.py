"""
text_filter.py — deterministic natural-language row filtering

    apply_text_filter("duration greater than 3", tasks, "task")
    apply_text_filter("skills include coding", workers, "worker")
    apply_text_filter("tasks that last 1 phase and run in phase 2", tasks, "task")

Every query first gets a plain substring answer: does the lowercased query
appear in any value of the row. When the query also carries a comparison cue
("greater", "is", ">", "phase", ...) the structured rules below are tried in
order, most specific first. A rule applies only when its pattern matches, its
field resolves to a key present in the row and its operands parse; the first
rule that applies decides the row. Otherwise the substring answer stands.

Nothing in this module raises for bad queries or bad rows.
"""

from __future__ import annotations

import itertools
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

from data_alchemist.errors import FilterError, create_user_friendly_error, validate_query
from data_alchemist.expression import ExpressionError, compile_expression, filter_rows, test_expression
from data_alchemist.parsers import parse_integer, parse_number, parse_phase_set
from data_alchemist.resolver import find_matching_field
from data_alchemist.schema import PHASE_FIELDS, is_blank, normalize_entity_type

Row = Mapping[str, Any]
RuleOutcome = Optional[bool]

QUICK_FILTERS: dict[str, tuple[dict[str, str], ...]] = {
    "client": (
        {"label": 'Contains "Corp"', "query": "client name contains Corp"},
        {"label": "Group A Clients", "query": "group tag equals GroupA"},
        {"label": "VIP Clients", "query": "vip client"},
        {"label": "Location: New York", "query": "location is New York"},
        {"label": "Budget > 100k", "query": "budget greater than 100000"},
        {"label": "Has Task TX", "query": "includes TX"},
    ),
    "worker": (
        {"label": "Qualification 5", "query": "qualification level is 5"},
        {"label": "Has Coding Skills", "query": "skills include coding"},
        {"label": "Data & ML Skills", "query": "skills contain data and ml"},
        {"label": "Group B Workers", "query": "group is GroupB"},
        {"label": "Available Slot 2", "query": "available slots include 2"},
        {"label": "Max Load 3", "query": "max load per phase equals 3"},
        {"label": "UI/UX Skills", "query": "skills include ui/ux"},
        {"label": "Testing Skills", "query": "skills include testing"},
    ),
    "task": (
        {"label": "Duration > 3", "query": "duration greater than 3"},
        {"label": "ETL Category", "query": "category equals ETL"},
        {"label": "Analytics Tasks", "query": "category is Analytics"},
        {"label": "Requires Coding", "query": "required skills include coding"},
        {"label": "Phase 2-4", "query": "preferred phases include 2"},
        {"label": "ML Category", "query": "category equals ML"},
        {"label": "Max Concurrent 1", "query": "max concurrent equals 1"},
        {"label": "Design Tasks", "query": "category is Design"},
    ),
}

COMPARISON_CUES = (
    ">", "<", "=", "≥", "≤",
    "greater", "less", "more", "longer", "fewer", "shorter", "above", "below",
    "at least", "at most", "equal", "contain", "include", " has ", " is ", " to ",
    "phase", "concurren", "between",
)

NUMBER = r"(-?\d+(?:\.\d+)?)"

DURATION_AND_PHASE_RE = re.compile(
    r"tasks?\s+that\s+last\s+(\d+)\s+phases?\s+and\s+run\s+in\s+phase\s+(\d+)"
)
CATEGORY_LONGER_RE = re.compile(
    r"(\w+)\s+tasks?\s+(?:longer|more|greater)\s+than\s+(\d+)\s+(?:phases?|duration)"
)
CONCURRENCY_RE = re.compile(r"concurrenc(?:y|ies)\s*(?:>=|=>|≥|>)\s*(\d+)")
GREATER_RE = re.compile(
    r"^(.+?)\s*(?:\b(greater\s+than\s+or\s+equal\s+to|greater\s+than|more\s+than|longer\s+than"
    r"|above|over|at\s+least)\b|(>=|≥|>))\s*" + NUMBER + r"\b"
)
LESS_RE = re.compile(
    r"^(.+?)\s*(?:\b(less\s+than\s+or\s+equal\s+to|less\s+than|fewer\s+than|shorter\s+than"
    r"|below|under|at\s+most)\b|(<=|≤|<))\s*" + NUMBER + r"\b"
)
RANGE_RES = (
    re.compile(r"^(.+?)\s+is\s+(\d+)\s*to\s*(\d+)\b"),
    re.compile(r"^(.+?)\s+(?:is\s+)?between\s+(\d+)\s+and\s+(\d+)\b"),
    re.compile(r"^(.+?)\s+(?:is\s+)?from\s+(\d+)\s+to\s+(\d+)\b"),
)
EQUALS_RE = re.compile(r"^(.+?)\s+(?:is\s+equal\s+to|equal\s+to|equals|is)\s+(.+)$")
CONTAINS_RE = re.compile(r"^(?:(.+?)\s+)?(?:contains|contain|includes|include|including|has|have)\s+(.+)$")
PHASE_RE = re.compile(r"(?:tasks?\s+)?in\s+phase\s+(\d+)|(?:^|\s)phase\s+(\d+)")
GENERIC_RE = re.compile(r"^(.+?)\s*(>=|<=|===|==|=|>|<|≥|≤)\s*(.+)$")

INCLUSIVE_OPERATORS = {"greater than or equal to", "less than or equal to", "at least", "at most", ">=", "<=", "≥", "≤"}
LEADING_FILLER_RE = re.compile(
    r"^(?:show|list|find|get|display|filter|give|me|all|only|the|any|every|rows?|records?|entries"
    r"|with|whose|where|which|that|having|their|its)\s+"
)
# "worker group" names a field; "workers with" is filler.
ENTITY_FILLER_RE = re.compile(r"^(?:clients?|workers?|tasks?)\s+(?=(?:with|whose|where|which|that|having)\b)")
PHASE_FIELD_BY_ENTITY = {"task": "PreferredPhases", "worker": "AvailableSlots"}


# ══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ══════════════════════════════════════════════════════════════════════════════

def _normalize_query(query: Any) -> str:
    return " ".join(str(query or "").lower().split())


def _display_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    return str(value)


def _substring_match(search: str, row: Row) -> bool:
    return any(
        value is not None and search in _display_text(value).lower()
        for value in row.values()
    )


def _has_cue(search: str) -> bool:
    padded = f" {search} "
    return any(cue in padded for cue in COMPARISON_CUES)


def _clean_field_phrase(phrase: str) -> str:
    text = phrase.strip()
    previous = None
    while text != previous:
        previous = text
        text = ENTITY_FILLER_RE.sub("", LEADING_FILLER_RE.sub("", text))
    return text.strip()


def _clean_value(value: str) -> str:
    return value.strip().strip("'\"").strip()


def _resolve(phrase: Optional[str], row: Row, entity_type: str) -> Optional[str]:
    """Field key in row for phrase, or None when it is absent or holds no value."""
    if not phrase:
        return None
    cleaned = _clean_field_phrase(phrase)
    for candidate in (cleaned, phrase.strip()):
        if not candidate:
            continue
        key = find_matching_field(candidate, row, entity_type)
        if key is not None:
            return key if row.get(key) is not None else None
    return None


def _numeric(value: Any) -> Optional[float]:
    if isinstance(value, str) and not value.strip():
        return None
    return parse_number(value)


def _text_equal(field_value: Any, wanted: str) -> bool:
    left = _display_text(field_value).strip().lower()
    right = wanted.strip().lower()
    left_number, right_number = _numeric(left), _numeric(right)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    return left == right


# ══════════════════════════════════════════════════════════════════════════════
# STRUCTURED RULES
# ══════════════════════════════════════════════════════════════════════════════
# Each rule returns True/False when it applies to the row and None otherwise.

def _rule_duration_and_phase(search: str, row: Row, entity_type: str) -> RuleOutcome:
    match = DURATION_AND_PHASE_RE.search(search)
    if not match:
        return None
    duration, phase = int(match.group(1)), int(match.group(2))
    return parse_integer(row.get("Duration")) == duration and parse_phase_set(row.get("PreferredPhases")).contains(phase)


def _rule_category_longer(search: str, row: Row, entity_type: str) -> RuleOutcome:
    match = CATEGORY_LONGER_RE.search(search)
    if not match or is_blank(row.get("Category")):
        return None
    duration = _numeric(row.get("Duration"))
    if duration is None:
        return None
    category_matches = str(row["Category"]).strip().lower() == match.group(1)
    return category_matches and duration > float(match.group(2))


def _rule_concurrency(search: str, row: Row, entity_type: str) -> RuleOutcome:
    match = CONCURRENCY_RE.search(search)
    if not match:
        return None
    concurrency = _numeric(row.get("MaxConcurrent"))
    if concurrency is None:
        return None
    return concurrency >= int(match.group(1))


def _numeric_rule(pattern: re.Pattern, greater: bool) -> Callable[[str, Row, str], RuleOutcome]:
    def rule(search: str, row: Row, entity_type: str) -> RuleOutcome:
        match = pattern.search(search)
        if not match:
            return None
        key = _resolve(match.group(1), row, entity_type)
        if key is None:
            return None
        field_value = _numeric(row[key])
        if field_value is None:
            return None
        operator = " ".join((match.group(2) or match.group(3)).split())
        target = float(match.group(4))
        if operator in INCLUSIVE_OPERATORS:
            return field_value >= target if greater else field_value <= target
        return field_value > target if greater else field_value < target

    return rule


def _rule_range(search: str, row: Row, entity_type: str) -> RuleOutcome:
    for pattern in RANGE_RES:
        match = pattern.search(search)
        if not match:
            continue
        key = _resolve(match.group(1), row, entity_type)
        if key is None:
            return None
        phases = parse_phase_set(row[key])
        if phases.encoding in {"empty", "invalid"}:
            return None
        return phases.overlaps(int(match.group(2)), int(match.group(3)))
    return None


def _rule_equals(search: str, row: Row, entity_type: str) -> RuleOutcome:
    match = EQUALS_RE.search(search)
    if not match:
        return None
    key = _resolve(match.group(1), row, entity_type)
    if key is None:
        return None
    return _text_equal(row[key], _clean_value(match.group(2)))


def _contains_term(key: Optional[str], value: Any, term: str) -> bool:
    if key in PHASE_FIELDS:
        phase = parse_integer(term)
        if phase is not None:
            return parse_phase_set(value).contains(phase)
    return term in _display_text(value).lower()


def _rule_contains(search: str, row: Row, entity_type: str) -> RuleOutcome:
    match = CONTAINS_RE.search(search)
    if not match:
        return None
    wanted = _clean_value(match.group(2))
    if not wanted:
        return None

    if " or " in wanted:
        terms, combine = [_clean_value(term) for term in wanted.split(" or ")], any
    else:
        terms, combine = [_clean_value(term) for term in wanted.split(" and ")], all
    terms = [term for term in terms if term]

    phrase = match.group(1)
    if phrase is None or not _clean_field_phrase(phrase):
        # "includes TX": no field named, look at every value.
        return combine(
            any(value is not None and _contains_term(None, value, term) for value in row.values())
            for term in terms
        )

    key = _resolve(phrase, row, entity_type)
    if key is None:
        return None
    return combine(_contains_term(key, row[key], term) for term in terms)


def _rule_phase(search: str, row: Row, entity_type: str) -> RuleOutcome:
    match = PHASE_RE.search(search)
    if not match:
        return None
    key = PHASE_FIELD_BY_ENTITY.get(entity_type)
    if key is None or row.get(key) is None:
        return None
    return parse_phase_set(row[key]).contains(int(match.group(1) or match.group(2)))


def _rule_generic(search: str, row: Row, entity_type: str) -> RuleOutcome:
    match = GENERIC_RE.search(search)
    if not match:
        return None
    key = _resolve(match.group(1), row, entity_type)
    if key is None:
        return None
    operator = match.group(2)
    wanted = _clean_value(match.group(3))
    field_number, wanted_number = _numeric(row[key]), _numeric(wanted)

    if field_number is not None and wanted_number is not None:
        if operator == ">":
            return field_number > wanted_number
        if operator == "<":
            return field_number < wanted_number
        if operator in {">=", "≥"}:
            return field_number >= wanted_number
        if operator in {"<=", "≤"}:
            return field_number <= wanted_number
        return field_number == wanted_number
    if operator in {"=", "==", "==="}:
        return _display_text(row[key]).strip().lower() == wanted
    return None


RULES: tuple[Callable[[str, Row, str], RuleOutcome], ...] = (
    _rule_duration_and_phase,
    _rule_category_longer,
    _rule_concurrency,
    _numeric_rule(GREATER_RE, greater=True),
    _numeric_rule(LESS_RE, greater=False),
    _rule_range,
    _rule_equals,
    _rule_contains,
    _rule_phase,
    _rule_generic,
)


# ══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ══════════════════════════════════════════════════════════════════════════════

def _evaluate(search: str, row: Row, entity_type: str) -> bool:
    baseline = _substring_match(search, row)
    if not _has_cue(search):
        return baseline
    for rule in RULES:
        outcome = rule(search, row, entity_type)
        if outcome is not None:
            return bool(outcome)
    return baseline


def row_matches(query: Any, row: Any, entity_type: Any) -> bool:
    search = _normalize_query(query)
    if not search:
        return True
    mapping = row if isinstance(row, Mapping) else {}
    entity = normalize_entity_type(entity_type) or ""
    try:
        return _evaluate(search, mapping, entity)
    except Exception:
        try:
            return _substring_match(search, mapping)
        except Exception:
            return False


def apply_text_filter(query: Any, rows: Optional[Iterable[Any]], entity_type: Any) -> list[Any]:
    """Return the rows the query keeps, in their original order."""
    data = list(rows or [])
    if not _normalize_query(query):
        return data
    return [row for row in data if row_matches(query, row, entity_type)]


def quick_filter_query(entity_type: Any, label: str) -> Optional[str]:
    for preset in QUICK_FILTERS.get(normalize_entity_type(entity_type) or "", ()):
        if preset["label"].lower() == str(label).strip().lower():
            return preset["query"]
    return None


# ══════════════════════════════════════════════════════════════════════════════
# FILTER SESSION
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class FilterChip:
    id: str
    label: str
    type: str
    query: str
    expression: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload = {"id": self.id, "label": self.label, "type": self.type, "query": self.query}
        if self.expression is not None:
            payload["expression"] = self.expression
        return payload


@dataclass
class FilterResult:
    data: list[Any]
    error: Optional[FilterError] = None
    query: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


ExpressionGenerator = Callable[[str, str, list[Any]], Mapping[str, Any]]


@dataclass
class FilterSession:
    """
    Stacked filters over one dataset.

    Chips narrow the current rows one after another. Removing a chip replays
    the remaining chips against the original rows. A failed AI request leaves
    rows and chips exactly as they were.
    """

    original_rows: list[Any]
    entity_type: str
    current_rows: list[Any] = field(default_factory=list)
    chips: list[FilterChip] = field(default_factory=list)
    _ids: Any = field(default_factory=lambda: itertools.count(1), repr=False)

    def __post_init__(self) -> None:
        entity = normalize_entity_type(self.entity_type)
        if entity is None:
            raise ValueError(f"Unknown entity type: {self.entity_type!r}")
        self.entity_type = entity
        self.original_rows = list(self.original_rows or [])
        self.current_rows = list(self.original_rows)

    def _next_id(self, kind: str) -> str:
        return f"{kind}-{next(self._ids)}"

    def _unchanged(self, error: FilterError, query: Optional[str]) -> FilterResult:
        return FilterResult(list(self.current_rows), error, query)

    def apply_text(self, query: str, label: Optional[str] = None) -> FilterResult:
        is_valid, message = validate_query(query)
        if not is_valid:
            return self._unchanged(FilterError("validation", message or "Invalid query", ""), query)
        self.current_rows = apply_text_filter(query, self.current_rows, self.entity_type)
        self.chips.append(FilterChip(self._next_id("manual"), label or query, "manual", query))
        return FilterResult(list(self.current_rows), None, query)

    def apply_quick(self, label: str) -> FilterResult:
        query = quick_filter_query(self.entity_type, label)
        if query is None:
            return self._unchanged(
                FilterError("validation", f"Unknown quick filter: {label}", "Run `presets` to list them."),
                None,
            )
        return self.apply_text(query, label=label)

    def apply_ai(self, query: str, generator: Optional[ExpressionGenerator] = None) -> FilterResult:
        is_valid, message = validate_query(query)
        if not is_valid:
            return self._unchanged(FilterError("validation", message or "Invalid query", ""), query)

        if generator is None:
            from data_alchemist.llm import generate_expression as generator

        try:
            reply = generator(query, self.entity_type, self.current_rows[:5])
        except Exception as exc:
            return self._unchanged(create_user_friendly_error(exc), query)

        if not isinstance(reply, Mapping):
            return self._unchanged(
                FilterError("api", "AI service returned an unexpected response", "Try again or use the text filter."),
                query,
            )
        if reply.get("error"):
            return self._unchanged(
                FilterError("api", str(reply["error"]), str(reply.get("details") or "")),
                query,
            )
        expression = str(reply.get("expression") or "").strip()
        if not expression:
            return self._unchanged(create_user_friendly_error("No filter expression generated"), query)

        try:
            compile_expression(expression)
        except ExpressionError as exc:
            return self._unchanged(create_user_friendly_error(exc), query)
        usable, problem = test_expression(expression, self.current_rows)
        if not usable:
            return self._unchanged(FilterError("expression", problem or "Expression test failed", ""), query)

        self.current_rows = filter_rows(expression, self.current_rows)
        self.chips.append(FilterChip(self._next_id("ai"), query, "ai", query, expression))
        return FilterResult(list(self.current_rows), None, query)

    def _replay(self) -> None:
        rows = list(self.original_rows)
        for chip in self.chips:
            if chip.type == "ai" and chip.expression:
                rows = filter_rows(chip.expression, rows)
            else:
                rows = apply_text_filter(chip.query, rows, self.entity_type)
        self.current_rows = rows

    def remove_chip(self, chip_id: str) -> FilterResult:
        self.chips = [chip for chip in self.chips if chip.id != chip_id]
        self._replay()
        return FilterResult(list(self.current_rows))

    def clear_ai_filters(self) -> FilterResult:
        self.chips = [chip for chip in self.chips if chip.type != "ai"]
        self._replay()
        return FilterResult(list(self.current_rows))

    def reset(self) -> FilterResult:
        self.chips = []
        self.current_rows = list(self.original_rows)
        return FilterResult(list(self.current_rows))
