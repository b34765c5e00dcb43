"""
priorities.py — allocation criteria weights carried into rules.json

    config = build_priority_config(preset_profile="fair_distribution", weights={"Fairness": 100})

A priority configuration holds one 0–100 weight per criterion, a ranking of
the criteria (most important first), a pairwise comparison matrix and the
name of the preset profile it started from ("" when none). Preset weights are
applied first; explicit weights override them.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Optional

CRITERIA = (
    "PriorityLevel",
    "RequestedTaskFulfillment",
    "Fairness",
    "CostEfficiency",
    "WorkloadBalance",
)
DEFAULT_WEIGHT = 50
MIN_WEIGHT = 0
MAX_WEIGHT = 100

PRESET_PROFILES: dict[str, dict[str, Any]] = {
    "maximize_fulfillment": {
        "label": "Maximize Fulfillment",
        "weights": {"PriorityLevel": 90, "RequestedTaskFulfillment": 95, "Fairness": 30, "CostEfficiency": 70, "WorkloadBalance": 40},
    },
    "fair_distribution": {
        "label": "Fair Distribution",
        "weights": {"PriorityLevel": 50, "RequestedTaskFulfillment": 60, "Fairness": 95, "CostEfficiency": 40, "WorkloadBalance": 90},
    },
    "minimize_workload": {
        "label": "Minimize Workload",
        "weights": {"PriorityLevel": 60, "RequestedTaskFulfillment": 50, "Fairness": 70, "CostEfficiency": 90, "WorkloadBalance": 95},
    },
    "balanced": {
        "label": "Balanced Approach",
        "weights": {"PriorityLevel": 60, "RequestedTaskFulfillment": 65, "Fairness": 60, "CostEfficiency": 60, "WorkloadBalance": 65},
    },
}


# ══════════════════════════════════════════════════════════════════════════════
# VALIDATION
# ══════════════════════════════════════════════════════════════════════════════

def _weight(criterion: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"Weight for {criterion} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Weight for {criterion} must be a number, got {value!r}") from exc
    if math.isnan(number) or not MIN_WEIGHT <= number <= MAX_WEIGHT:
        raise ValueError(f"Weight for {criterion} must be between {MIN_WEIGHT} and {MAX_WEIGHT}, got {value!r}")
    return int(number) if number.is_integer() else number


def _check_criterion(name: Any) -> str:
    if name not in CRITERIA:
        raise ValueError(f"Unknown priority criterion: {name} (expected one of {', '.join(CRITERIA)})")
    return name


def validate_weights(weights: Mapping[str, Any]) -> dict[str, float]:
    """Checked copy of weights; raises ValueError on unknown criteria or values outside 0–100."""
    if not isinstance(weights, Mapping):
        raise ValueError("Priority weights must be an object")
    return {_check_criterion(name): _weight(name, value) for name, value in weights.items()}


def validate_ranking(ranking: Iterable[Any]) -> list[str]:
    """The ranking must name every criterion exactly once."""
    if isinstance(ranking, (str, bytes)) or not isinstance(ranking, Iterable):
        raise ValueError("Priority ranking must be a list of criteria")
    ordered = [_check_criterion(name) for name in ranking]
    if len(set(ordered)) != len(ordered) or set(ordered) != set(CRITERIA):
        raise ValueError(f"Priority ranking must list each criterion once: {', '.join(CRITERIA)}")
    return ordered


def _pairwise_matrix(overrides: Optional[Mapping[str, Any]] = None) -> dict[str, dict[str, float]]:
    matrix = {row: {column: 1 for column in CRITERIA} for row in CRITERIA}
    if overrides is None:
        return matrix
    if not isinstance(overrides, Mapping):
        raise ValueError("Pairwise matrix must be an object")
    for row, columns in overrides.items():
        _check_criterion(row)
        if not isinstance(columns, Mapping):
            raise ValueError(f"Pairwise matrix row {row} must be an object")
        for column, value in columns.items():
            _check_criterion(column)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not value > 0:
                raise ValueError(f"Pairwise value {row}/{column} must be a positive number, got {value!r}")
            matrix[row][column] = value
    return matrix


# ══════════════════════════════════════════════════════════════════════════════
# PUBLIC API
# ══════════════════════════════════════════════════════════════════════════════

def build_priority_config(
    weights: Optional[Mapping[str, Any]] = None,
    ranking: Optional[Iterable[Any]] = None,
    preset_profile: Optional[str] = None,
    pairwise_matrix: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """
    Assemble the priorityConfiguration object written to rules.json.

    Raises ValueError on an unknown preset, an unknown criterion, a weight
    outside 0–100, or a ranking that does not list every criterion once.
    """
    resolved = {criterion: DEFAULT_WEIGHT for criterion in CRITERIA}
    if preset_profile:
        if preset_profile not in PRESET_PROFILES:
            raise ValueError(
                f"Unknown preset profile: {preset_profile} (expected one of {', '.join(PRESET_PROFILES)})"
            )
        resolved.update(PRESET_PROFILES[preset_profile]["weights"])
    if weights:
        resolved.update(validate_weights(weights))

    return {
        "weights": resolved,
        "ranking": validate_ranking(ranking) if ranking is not None else list(CRITERIA),
        "pairwiseMatrix": _pairwise_matrix(pairwise_matrix),
        "presetProfile": preset_profile or "",
    }


def parse_weight_overrides(items: Optional[Iterable[str]]) -> dict[str, float]:
    """Parse CLI-style "Criterion=NUMBER" items."""
    weights: dict[str, Any] = {}
    for item in items or []:
        name, sep, value = str(item).partition("=")
        if not sep or not name.strip():
            raise ValueError(f"Expected CRITERION=WEIGHT, got {item!r}")
        weights[name.strip()] = value.strip()
    return validate_weights(weights)


def load_priority_config(path: "str | Path") -> dict[str, Any]:
    """
    Read a priority configuration from JSON.

    Accepts a bare configuration object or a rules.json export carrying a
    "priorityConfiguration" key. Missing parts fall back to the defaults.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Priorities file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid priorities JSON: {exc}") from exc
    if isinstance(payload, dict) and isinstance(payload.get("priorityConfiguration"), dict):
        payload = payload["priorityConfiguration"]
    if not isinstance(payload, dict):
        raise ValueError("Priorities file must contain a JSON object")

    return build_priority_config(
        weights=payload.get("weights"),
        ranking=payload.get("ranking"),
        preset_profile=payload.get("presetProfile") or None,
        pairwise_matrix=payload.get("pairwiseMatrix"),
    )
