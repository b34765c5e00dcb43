"""Business rules: construction, structural checks and the rules.json export."""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Optional

from data_alchemist.contracts import utc_now_iso

RULES_VERSION = "1.0.0"
EXPORT_SOURCE = "Data Alchemist - Manual Rule Builder"

RULE_TYPES = (
    "coRun",
    "loadLimit",
    "validation",
    "slotRestriction",
    "phaseWindow",
    "patternMatch",
    "precedence",
    "exclusion",
)

# Keys that belong to a rule record itself; everything else is rule data.
RECORD_KEYS = {"id", "type", "description", "data", "confidence", "createdAt", "updatedAt"}


def _describe(rule_type: str, data: Mapping[str, Any]) -> str:
    if rule_type == "coRun":
        return f"Tasks {', '.join(map(str, data.get('tasks') or []))} run together"
    if rule_type == "exclusion":
        return f"Tasks {', '.join(map(str, data.get('tasks') or []))} never run together"
    if rule_type == "loadLimit":
        return f"Group {data.get('group')} limited to {data.get('maxSlotsPerPhase')} slots per phase"
    if rule_type == "validation":
        return f"{data.get('field')} must be between {data.get('min')} and {data.get('max')}"
    if rule_type == "slotRestriction":
        return f"{data.get('clientGroup')} clients share slots with {data.get('workerGroup')} workers"
    if rule_type == "phaseWindow":
        return f"Task {data.get('taskId')} runs in phases {data.get('startPhase')}-{data.get('endPhase')}"
    if rule_type == "patternMatch":
        return f"{data.get('field')} matches {data.get('pattern')}"
    if rule_type == "precedence":
        return f"Rule {data.get('ruleName')} takes precedence"
    return f"{rule_type} rule"


def _rule_data(rule_type: str, options: Mapping[str, Any]) -> dict[str, Any]:
    if rule_type == "coRun" or rule_type == "exclusion":
        return {"tasks": list(options.get("tasks") or [])}
    if rule_type == "loadLimit":
        return {"group": options.get("group"), "maxSlotsPerPhase": options.get("maxSlotsPerPhase")}
    return dict(options)


def build_rule(
    rule_type: str,
    options: Optional[Mapping[str, Any]] = None,
    *,
    description: Optional[str] = None,
    rule_id: Optional[str] = None,
    confidence: Optional[float] = None,
) -> dict[str, Any]:
    data = _rule_data(rule_type, options or {})
    now = utc_now_iso()
    rule: dict[str, Any] = {
        "id": rule_id or uuid.uuid4().hex[:12],
        "type": rule_type,
        "description": description or _describe(rule_type, data),
        "data": data,
        "createdAt": now,
        "updatedAt": now,
    }
    if confidence is not None:
        rule["confidence"] = confidence
    return rule


def rule_from_parsed(parsed: Mapping[str, Any], source_text: str = "") -> dict[str, Any]:
    """Turn a model reply like {"type": "coRun", "tasks": [...]} into a rule record."""
    if parsed.get("error"):
        raise ValueError(str(parsed["error"]))
    rule_type = str(parsed.get("type") or "")
    if not rule_type:
        raise ValueError("Parsed rule has no type")
    options = {key: value for key, value in parsed.items() if key not in RECORD_KEYS}
    if isinstance(parsed.get("data"), Mapping):
        options.update(parsed["data"])
    return build_rule(rule_type, options, description=source_text.strip() or None)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    try:
        float(str(value))
    except (TypeError, ValueError):
        return False
    return True


def validate_rule_structure(rule: Any) -> tuple[bool, list[str]]:
    if not isinstance(rule, Mapping):
        return False, ["Rule must be an object"]

    errors: list[str] = []
    if not rule.get("id"):
        errors.append("Rule ID is required")
    if not rule.get("type"):
        errors.append("Rule type is required")
    if not rule.get("description"):
        errors.append("Rule description is required")
    data = rule.get("data")
    if not isinstance(data, Mapping):
        errors.append("Rule data must be an object")
        data = {}

    rule_type = rule.get("type")
    if rule_type and rule_type not in RULE_TYPES:
        errors.append(f"Unknown rule type: {rule_type}")
    elif rule_type in {"coRun", "exclusion"}:
        if not isinstance(data.get("tasks"), list):
            label = "Co-run" if rule_type == "coRun" else "Exclusion"
            errors.append(f"{label} rules must have a tasks array")
    elif rule_type == "loadLimit":
        if not data.get("group"):
            errors.append("Load limit rules must specify a group")
        if not data.get("maxSlotsPerPhase") or not _is_number(data.get("maxSlotsPerPhase")):
            errors.append("Load limit rules must specify maxSlotsPerPhase as a number")
    elif rule_type == "slotRestriction":
        if not data.get("clientGroup"):
            errors.append("Slot restriction rules must specify clientGroup")
        if not data.get("workerGroup"):
            errors.append("Slot restriction rules must specify workerGroup")
    elif rule_type == "phaseWindow":
        if not data.get("taskId"):
            errors.append("Phase window rules must specify taskId")
        if not data.get("startPhase") or not data.get("endPhase"):
            errors.append("Phase window rules must specify startPhase and endPhase")
    elif rule_type == "patternMatch":
        if not data.get("field"):
            errors.append("Pattern match rules must specify field")
        if not data.get("pattern"):
            errors.append("Pattern match rules must specify pattern")
    elif rule_type == "precedence":
        if not data.get("ruleName"):
            errors.append("Precedence rules must specify ruleName")
    elif rule_type == "validation":
        if not data.get("field"):
            errors.append("Validation rules must specify field")

    return not errors, errors


def export_rules_payload(rules: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
    now = utc_now_iso()
    exported = [
        {**rule, "createdAt": rule.get("createdAt") or now, "updatedAt": rule.get("updatedAt") or now}
        for rule in rules
    ]
    rule_types: list[str] = []
    for rule in exported:
        if rule.get("type") not in rule_types:
            rule_types.append(rule.get("type"))
    return {
        "version": RULES_VERSION,
        "exportDate": now,
        "rules": exported,
        "metadata": {
            "totalRules": len(exported),
            "ruleTypes": rule_types,
            "exportSource": EXPORT_SOURCE,
        },
    }


def load_rules(path: "str | Path") -> list[dict[str, Any]]:
    """
    Read rules from a rules.json export or a bare JSON list.

    Raises ValueError when the file is not JSON or any rule is malformed.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Rules file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid rules JSON: {exc}") from exc

    rules = payload.get("rules") if isinstance(payload, dict) else payload
    if not isinstance(rules, list):
        raise ValueError("Rules file must contain a list of rules or an object with a 'rules' list")

    problems: list[str] = []
    for index, rule in enumerate(rules):
        is_valid, errors = validate_rule_structure(rule)
        if not is_valid:
            problems.append(f"rule {index}: {'; '.join(errors)}")
    if problems:
        raise ValueError("Invalid rules — " + " | ".join(problems))
    return [dict(rule) for rule in rules]
