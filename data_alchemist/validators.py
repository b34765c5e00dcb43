"""
validators.py — per-entity validation for client, worker and task rows

Each validator takes the full row list for one entity type (duplicate
detection needs the whole set) and returns ValidationDiagnostic records in
row-major, field-discovery order. Validators never raise: a value that cannot
be read becomes a diagnostic for that field and validation moves on.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Optional

from data_alchemist.parsers import (
    parse_integer,
    parse_json_array,
    parse_phase_set,
    split_list,
)
from data_alchemist.schema import (
    GROUP_TAGS,
    ID_FIELDS,
    REQUIRED_FIELDS,
    TASK_CATEGORIES,
    is_blank,
    normalize_entity_type,
)

TASK_ID_RE = re.compile(r"^T\d+$")
CATEGORY_LOOKUP = {category.lower(): category for category in TASK_CATEGORIES}

_MISSING = object()


@dataclass(frozen=True)
class ValidationDiagnostic:
    row_index: int
    column: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"rowIndex": self.row_index, "column": self.column, "message": self.message}


FieldCheck = Callable[[Any], Optional[str]]


# ══════════════════════════════════════════════════════════════════════════════
# FIELD CHECKS
# ══════════════════════════════════════════════════════════════════════════════
# Each check receives the raw value (or _MISSING when the key is absent) and
# returns a message or None.

def _present(value: Any) -> bool:
    return value is not _MISSING and value is not None


def _integer_between(field: str, low: int, high: int) -> FieldCheck:
    message = f"{field} must be integer {low}–{high}"

    def check(value: Any) -> Optional[str]:
        if not _present(value):
            return None
        number = parse_integer(value)
        if number is None or number < low or number > high:
            return message
        return None

    return check


def _positive_integer(field: str) -> FieldCheck:
    def check(value: Any) -> Optional[str]:
        if not _present(value) or is_blank(value):
            return None
        number = parse_integer(value)
        if number is None or number < 1:
            return f"{field} must be a positive integer"
        return None

    return check


def _list_without_gaps(field: str) -> FieldCheck:
    def check(value: Any) -> Optional[str]:
        if not _present(value) or is_blank(value):
            return None
        tokens = split_list(value)
        if tokens is None:
            return f"{field} must be comma-separated string or array"
        if any(token == "" for token in tokens):
            return f"{field} contains an empty entry"
        return None

    return check


def check_requested_task_ids(value: Any) -> Optional[str]:
    message = _list_without_gaps("RequestedTaskIDs")(value)
    if message or not _present(value) or is_blank(value):
        return message
    invalid = [token for token in split_list(value) or [] if not TASK_ID_RE.match(token)]
    if invalid:
        return f"RequestedTaskIDs has invalid task IDs: {', '.join(invalid)}"
    return None


def check_group_tag(value: Any) -> Optional[str]:
    if not _present(value) or is_blank(value):
        return None
    if str(value).strip() not in GROUP_TAGS:
        return f"GroupTag must be one of {', '.join(GROUP_TAGS)}"
    return None


def check_available_slots(value: Any) -> Optional[str]:
    if not _present(value) or is_blank(value):
        return None
    slots, error = parse_json_array(value)
    if error:
        return f"AvailableSlots {error}"
    for slot in slots or []:
        number = parse_integer(slot)
        if isinstance(slot, str) or number is None or number < 1:
            return "AvailableSlots must contain positive integers"
    return None


def check_worker_group(value: Any) -> Optional[str]:
    # Absent is fine, present-but-blank is not.
    if not _present(value):
        return None
    if str(value).strip() == "":
        return "WorkerGroup cannot be empty"
    return None


def check_category(value: Any) -> Optional[str]:
    if not _present(value) or is_blank(value):
        return None
    if str(value).strip().lower() not in CATEGORY_LOOKUP:
        return f"Category must be one of {', '.join(TASK_CATEGORIES)}"
    return None


def check_preferred_phases(value: Any) -> Optional[str]:
    if not _present(value) or is_blank(value):
        return None
    if not parse_phase_set(value).valid:
        return "PreferredPhases must be a range, JSON array, or list of positive integers"
    return None


CLIENT_CHECKS: tuple[tuple[str, FieldCheck], ...] = (
    ("PriorityLevel", _integer_between("PriorityLevel", 1, 5)),
    ("RequestedTaskIDs", check_requested_task_ids),
    ("GroupTag", check_group_tag),
)

WORKER_CHECKS: tuple[tuple[str, FieldCheck], ...] = (
    ("Skills", _list_without_gaps("Skills")),
    ("AvailableSlots", check_available_slots),
    ("MaxLoadPerPhase", _positive_integer("MaxLoadPerPhase")),
    ("WorkerGroup", check_worker_group),
    ("QualificationLevel", _integer_between("QualificationLevel", 1, 10)),
)

TASK_CHECKS: tuple[tuple[str, FieldCheck], ...] = (
    ("Category", check_category),
    ("Duration", _positive_integer("Duration")),
    ("RequiredSkills", _list_without_gaps("RequiredSkills")),
    ("PreferredPhases", check_preferred_phases),
    ("MaxConcurrent", _positive_integer("MaxConcurrent")),
)


# ══════════════════════════════════════════════════════════════════════════════
# ENTITY VALIDATORS
# ══════════════════════════════════════════════════════════════════════════════

def _as_row(row: Any) -> Mapping[str, Any]:
    return row if isinstance(row, Mapping) else {}


def _validate_entity(
    entity_type: str,
    rows: Optional[Iterable[Any]],
    checks: tuple[tuple[str, FieldCheck], ...],
) -> list[ValidationDiagnostic]:
    diagnostics: list[ValidationDiagnostic] = []
    id_field = ID_FIELDS[entity_type]
    seen_ids: set[str] = set()

    for index, raw_row in enumerate(rows or []):
        row = _as_row(raw_row)

        for field in REQUIRED_FIELDS[entity_type]:
            if is_blank(row.get(field)):
                diagnostics.append(ValidationDiagnostic(index, field, f"Missing {field}"))

        identifier = row.get(id_field)
        if not is_blank(identifier):
            key = str(identifier).strip()
            if key in seen_ids:
                diagnostics.append(ValidationDiagnostic(index, id_field, f"Duplicate {id_field}"))
            else:
                seen_ids.add(key)

        for field, check in checks:
            value = row.get(field, _MISSING)
            try:
                message = check(value)
            except Exception:
                message = f"{field} could not be validated"
            if message:
                diagnostics.append(ValidationDiagnostic(index, field, message))

    return diagnostics


def validate_clients(rows: Optional[Iterable[Any]]) -> list[ValidationDiagnostic]:
    return _validate_entity("client", rows, CLIENT_CHECKS)


def validate_workers(rows: Optional[Iterable[Any]]) -> list[ValidationDiagnostic]:
    return _validate_entity("worker", rows, WORKER_CHECKS)


def validate_tasks(rows: Optional[Iterable[Any]]) -> list[ValidationDiagnostic]:
    return _validate_entity("task", rows, TASK_CHECKS)


VALIDATORS = {
    "client": validate_clients,
    "worker": validate_workers,
    "task": validate_tasks,
}


# ══════════════════════════════════════════════════════════════════════════════
# DISPATCH
# ══════════════════════════════════════════════════════════════════════════════

def run_validations(entity_type: Any, rows: Optional[Iterable[Any]]) -> list[ValidationDiagnostic]:
    validator = VALIDATORS.get(normalize_entity_type(entity_type) or "")
    if validator is None:
        return []
    return validator(rows)


def validate_single_field(
    entity_type: Any,
    field_name: str,
    candidate_value: Any,
    current_row: Optional[Mapping[str, Any]],
) -> Optional[str]:
    """
    Live-edit feedback for one cell.

    Validates a copy of current_row with field_name replaced and returns the
    first message for that column, or None. The row is validated on its own,
    so duplicate IDs across the dataset are not reported here.
    """
    try:
        row = dict(current_row or {})
        row[field_name] = candidate_value
        for diagnostic in run_validations(entity_type, [row]):
            if diagnostic.column == field_name:
                return diagnostic.message
    except Exception:
        return None
    return None


def group_diagnostics_by_row(
    diagnostics: Iterable[ValidationDiagnostic],
    row_count: int,
) -> list[dict[str, str]]:
    grouped: list[dict[str, str]] = [{} for _ in range(max(row_count, 0))]
    for diagnostic in diagnostics:
        if 0 <= diagnostic.row_index < len(grouped):
            grouped[diagnostic.row_index].setdefault(diagnostic.column, diagnostic.message)
    return grouped


# ══════════════════════════════════════════════════════════════════════════════
# CROSS-ENTITY REFERENCES
# ══════════════════════════════════════════════════════════════════════════════

def _tokens(value: Any) -> list[str]:
    if is_blank(value):
        return []
    return [token for token in split_list(value) or [] if token]


def validate_references(
    clients: Optional[Iterable[Any]],
    workers: Optional[Iterable[Any]],
    tasks: Optional[Iterable[Any]],
) -> dict[str, list[ValidationDiagnostic]]:
    """
    Check links between the three datasets.

    Clients may only request tasks that exist, and every skill a task needs
    should be offered by at least one worker. A check is skipped when the
    dataset it compares against is empty.
    """
    client_rows = [_as_row(row) for row in clients or []]
    worker_rows = [_as_row(row) for row in workers or []]
    task_rows = [_as_row(row) for row in tasks or []]
    result: dict[str, list[ValidationDiagnostic]] = {"client": [], "worker": [], "task": []}

    task_ids = {str(row.get("TaskID")).strip() for row in task_rows if not is_blank(row.get("TaskID"))}
    if task_ids:
        for index, row in enumerate(client_rows):
            unknown = [token for token in _tokens(row.get("RequestedTaskIDs")) if token not in task_ids]
            if unknown:
                result["client"].append(
                    ValidationDiagnostic(
                        index,
                        "RequestedTaskIDs",
                        f"RequestedTaskIDs references unknown tasks: {', '.join(unknown)}",
                    )
                )

    worker_skills = {
        token.lower() for row in worker_rows for token in _tokens(row.get("Skills"))
    }
    if worker_skills:
        for index, row in enumerate(task_rows):
            missing = [
                token for token in _tokens(row.get("RequiredSkills")) if token.lower() not in worker_skills
            ]
            if missing:
                result["task"].append(
                    ValidationDiagnostic(
                        index,
                        "RequiredSkills",
                        f"RequiredSkills not covered by any worker: {', '.join(missing)}",
                    )
                )

    return result
