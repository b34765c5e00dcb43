"""Map natural-language field phrases ("priority level", "group") to canonical field names."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional, Union

from data_alchemist.schema import compact_name, normalize_entity_type

FieldMapping = Union[str, dict[str, str]]

# Per-entity dicts resolve words that mean different columns per entity type.
FIELD_MAPPINGS: dict[str, FieldMapping] = {
    "priority": "PriorityLevel",
    "priority level": "PriorityLevel",
    "client name": "ClientName",
    "name": {"client": "ClientName", "worker": "WorkerName", "task": "TaskName"},
    "id": {"client": "ClientID", "worker": "WorkerID", "task": "TaskID"},
    "client id": "ClientID",
    "worker id": "WorkerID",
    "task id": "TaskID",
    "group tag": "GroupTag",
    "group": {"client": "GroupTag", "worker": "WorkerGroup", "task": "WorkerGroup"},
    "qualification": "QualificationLevel",
    "qualification level": "QualificationLevel",
    "worker group": "WorkerGroup",
    "worker name": "WorkerName",
    "task name": "TaskName",
    "duration": "Duration",
    "category": "Category",
    "skills": {"client": "RequiredSkills", "worker": "Skills", "task": "RequiredSkills"},
    "required skills": "RequiredSkills",
    "preferred phases": "PreferredPhases",
    "phases": "PreferredPhases",
    "available slots": "AvailableSlots",
    "slots": "AvailableSlots",
    "max concurrent": "MaxConcurrent",
    "concurrency": "MaxConcurrent",
    "concurrent": "MaxConcurrent",
    "max load": "MaxLoadPerPhase",
    "max load per phase": "MaxLoadPerPhase",
    "requested tasks": "RequestedTaskIDs",
    "requested task ids": "RequestedTaskIDs",
    "attributes": "AttributesJSON",
}


def _normalize_phrase(phrase: Any) -> str:
    return " ".join(str(phrase or "").lower().split())


def resolve_field_name(phrase: Any, entity_type: Any) -> Optional[str]:
    mapping = FIELD_MAPPINGS.get(_normalize_phrase(phrase))
    if mapping is None:
        return None
    if isinstance(mapping, dict):
        return mapping.get(normalize_entity_type(entity_type) or "")
    return mapping


def find_matching_field(phrase: Any, row: Optional[Mapping[str, Any]], entity_type: Any) -> Optional[str]:
    """
    Resolve phrase against the keys of row.

    The static table wins when its field is a key of row; otherwise the first
    key that contains the phrase (or is contained in it) is returned, compared
    case-insensitively and again with spaces and punctuation removed.
    """
    normalized = _normalize_phrase(phrase)
    if not normalized or not isinstance(row, Mapping):
        return None

    resolved = resolve_field_name(normalized, entity_type)
    if resolved and resolved in row:
        return resolved

    compact_phrase = compact_name(normalized)
    for key in row:
        lowered = str(key).lower()
        if not lowered:
            continue
        if lowered in normalized or normalized in lowered:
            return key
        compact_key = compact_name(lowered)
        if compact_phrase and compact_key and (compact_key in compact_phrase or compact_phrase in compact_key):
            return key
    return None
