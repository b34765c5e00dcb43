"""Canonical client / worker / task schemas shared by validation, filtering and export."""

from __future__ import annotations

import re
from typing import Any, Optional

ENTITY_TYPES = ("client", "worker", "task")

CANONICAL_FIELDS = {
    "client": (
        "ClientID",
        "ClientName",
        "PriorityLevel",
        "RequestedTaskIDs",
        "GroupTag",
        "AttributesJSON",
    ),
    "worker": (
        "WorkerID",
        "WorkerName",
        "Skills",
        "AvailableSlots",
        "MaxLoadPerPhase",
        "WorkerGroup",
        "QualificationLevel",
    ),
    "task": (
        "TaskID",
        "TaskName",
        "Category",
        "Duration",
        "RequiredSkills",
        "PreferredPhases",
        "MaxConcurrent",
    ),
}

ID_FIELDS = {"client": "ClientID", "worker": "WorkerID", "task": "TaskID"}

REQUIRED_FIELDS = {
    "client": ("ClientID", "ClientName"),
    "worker": ("WorkerID", "WorkerName"),
    "task": ("TaskID", "TaskName", "Category"),
}

GROUP_TAGS = ("GroupA", "GroupB", "GroupC")

TASK_CATEGORIES = (
    "ETL",
    "Analytics",
    "ML",
    "Design",
    "QA",
    "Security",
    "Infrastructure",
    "Writing",
    "DevOps",
    "Research",
    "Marketing",
    "Sales",
    "Compliance",
)

# Fields holding phase numbers, parsed with parsers.parse_phase_set.
PHASE_FIELDS = {"PreferredPhases", "AvailableSlots"}

ENTITY_ALIASES = {
    "client": "client",
    "clients": "client",
    "worker": "worker",
    "workers": "worker",
    "task": "task",
    "tasks": "task",
}

HEADER_ALIASES = {
    "client": {
        "id": "ClientID",
        "name": "ClientName",
        "priority": "PriorityLevel",
        "tasks": "RequestedTaskIDs",
        "requestedtasks": "RequestedTaskIDs",
        "taskids": "RequestedTaskIDs",
        "group": "GroupTag",
        "attributes": "AttributesJSON",
        "attrs": "AttributesJSON",
    },
    "worker": {
        "id": "WorkerID",
        "name": "WorkerName",
        "skill": "Skills",
        "slots": "AvailableSlots",
        "maxload": "MaxLoadPerPhase",
        "group": "WorkerGroup",
        "qualification": "QualificationLevel",
        "level": "QualificationLevel",
    },
    "task": {
        "id": "TaskID",
        "name": "TaskName",
        "type": "Category",
        "skills": "RequiredSkills",
        "phases": "PreferredPhases",
        "concurrency": "MaxConcurrent",
        "maxconcurrency": "MaxConcurrent",
    },
}

_COMPACT_RE = re.compile(r"[^a-z0-9]+")


def normalize_entity_type(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return ENTITY_ALIASES.get(value.strip().lower())


def compact_name(value: str) -> str:
    return _COMPACT_RE.sub("", str(value).lower())


def canonical_field_for_header(header: str, entity_type: str) -> Optional[str]:
    """Best offline guess of the canonical field for an uploaded header."""
    fields = CANONICAL_FIELDS.get(entity_type)
    if not fields:
        return None
    key = compact_name(header)
    if not key:
        return None
    for field in fields:
        if compact_name(field) == key:
            return field
    alias = HEADER_ALIASES[entity_type].get(key)
    if alias:
        return alias
    # "client_id" / "worker name" style headers carry the entity prefix.
    if key.startswith(entity_type):
        return HEADER_ALIASES[entity_type].get(key[len(entity_type):])
    return None


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, float) and value != value:
        return True
    return False
