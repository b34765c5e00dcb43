"""
export.py — the cleaned-data bundle

    manifest = build_export_bundle(clients, workers, tasks, rules, Path("out.zip"))

The ZIP holds clients.csv / workers.csv / tasks.csv (non-empty sets only),
rules.json (rules, priority configuration, counts) and data-export.xlsx with
one sheet per non-empty set.
"""

from __future__ import annotations

import csv
import io
import json
import zipfile
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Optional

import pandas as pd

from data_alchemist.contracts import build_contract, utc_now_iso
from data_alchemist.priorities import build_priority_config

SHEET_NAMES = {"clients": "Clients", "workers": "Workers", "tasks": "Tasks"}
WORKBOOK_NAME = "data-export.xlsx"
RULES_NAME = "rules.json"


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_rules_config(
    rules: Iterable[Mapping[str, Any]],
    counts: Mapping[str, int],
    priority_config: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """rules.json body; the default priority configuration is used when none is given."""
    return {
        "exportDate": utc_now_iso(),
        "priorityConfiguration": dict(priority_config) if priority_config is not None else build_priority_config(),
        "rules": [dict(rule) for rule in rules],
        "metadata": {
            "clientsCount": int(counts.get("clients", 0)),
            "workersCount": int(counts.get("workers", 0)),
            "tasksCount": int(counts.get("tasks", 0)),
        },
    }


def rows_to_csv(rows: list[Mapping[str, Any]]) -> str:
    """Header from the first row's keys; cells with commas, quotes or newlines are quoted."""
    if not rows:
        return ""
    headers = list(rows[0].keys())
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow([_cell_text(row.get(header)) for header in headers])
    return buffer.getvalue()


def _rules_frame(rules: list[Mapping[str, Any]]) -> pd.DataFrame:
    records = [{key: _cell_text(value) for key, value in rule.items()} for rule in rules]
    return pd.DataFrame.from_records(records)


def _rows_frame(rows: list[Mapping[str, Any]]) -> pd.DataFrame:
    headers = list(rows[0].keys())
    return pd.DataFrame(
        [[_cell_text(row.get(header)) for header in headers] for row in rows],
        columns=headers,
    )


def write_workbook(
    datasets: Mapping[str, list[Mapping[str, Any]]],
    rules: list[Mapping[str, Any]],
    path: "Path | io.BytesIO",
) -> list[str]:
    """Write one sheet per non-empty dataset plus Rules; returns the sheet names written."""
    frames: list[tuple[str, pd.DataFrame]] = []
    for key, sheet_name in SHEET_NAMES.items():
        rows = datasets.get(key) or []
        if rows:
            frames.append((sheet_name, _rows_frame(rows)))
    if rules:
        frames.append(("Rules", _rules_frame(rules)))
    if not frames:
        # openpyxl refuses to save a workbook without a visible sheet.
        frames.append(("Summary", pd.DataFrame({"note": ["No data to export"]})))

    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        for sheet_name, frame in frames:
            frame.to_excel(writer, index=False, sheet_name=sheet_name)
    return [sheet_name for sheet_name, _ in frames]


def build_export_bundle(
    clients: Optional[list[Mapping[str, Any]]],
    workers: Optional[list[Mapping[str, Any]]],
    tasks: Optional[list[Mapping[str, Any]]],
    rules: Optional[list[Mapping[str, Any]]],
    output_path: Path,
    priority_config: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    datasets = {"clients": list(clients or []), "workers": list(workers or []), "tasks": list(tasks or [])}
    rule_list = list(rules or [])
    counts = {key: len(rows) for key, rows in datasets.items()}

    members: list[str] = []
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(output_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for key, rows in datasets.items():
            if rows:
                name = f"{key}.csv"
                archive.writestr(name, rows_to_csv(rows))
                members.append(name)

        rules_config = build_rules_config(rule_list, counts, priority_config)
        archive.writestr(RULES_NAME, json.dumps(rules_config, indent=2, ensure_ascii=False))
        members.append(RULES_NAME)

        workbook = io.BytesIO()
        sheets = write_workbook(datasets, rule_list, workbook)
        archive.writestr(WORKBOOK_NAME, workbook.getvalue())
        members.append(WORKBOOK_NAME)

    return {
        "contract": build_contract("data_alchemist.export_manifest"),
        "output": str(output_path),
        "members": members,
        "sheets": sheets,
        "counts": counts,
        "rules_count": len(rule_list),
        "preset_profile": rules_config["priorityConfiguration"].get("presetProfile") or None,
    }
