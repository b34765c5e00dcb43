"""
report.py — validation reports for one client / worker / task dataset

Builds the JSON report the CLI writes and prints, plus a plain-text
rendering of it. Diagnostics are grouped per row the way the review table
consumes them: {column: first message}.
"""

from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Any, Optional

from data_alchemist import __version__ as TOOL_VERSION
from data_alchemist.contracts import build_contract, build_run_summary
from data_alchemist.schema import CANONICAL_FIELDS, REQUIRED_FIELDS
from data_alchemist.validators import ValidationDiagnostic, group_diagnostics_by_row, run_validations

SCORE_LABELS = [
    (100, "Clean — no validation errors"),
    (90, "Good — a few rows to fix"),
    (70, "Fair — several rows need attention"),
    (0, "Poor — most rows have errors"),
]

MAX_TEXT_DIAGNOSTICS = 50


def score_label(score: int) -> str:
    return next(text for threshold, text in SCORE_LABELS if score >= threshold)


def column_overview(entity_type: str, headers: list[str]) -> dict[str, list[str]]:
    canonical = CANONICAL_FIELDS[entity_type]
    return {
        "missing_required": [field for field in REQUIRED_FIELDS[entity_type] if field not in headers],
        "missing_optional": [
            field for field in canonical if field not in headers and field not in REQUIRED_FIELDS[entity_type]
        ],
        "unknown": [header for header in headers if header not in canonical],
    }


def build_validation_report(
    entity_type: str,
    rows: list[dict[str, Any]],
    *,
    headers: Optional[list[str]] = None,
    input_path: Optional[Path] = None,
    extra_diagnostics: Optional[list[ValidationDiagnostic]] = None,
    warnings: Optional[list[str]] = None,
) -> dict[str, Any]:
    headers = list(headers if headers is not None else (rows[0].keys() if rows else []))
    diagnostics = run_validations(entity_type, rows) + list(extra_diagnostics or [])
    grouped = group_diagnostics_by_row(diagnostics, len(rows))
    rows_with_errors = sum(1 for cells in grouped if cells)
    score = 100 if not rows else round(100 * (len(rows) - rows_with_errors) / len(rows))

    contract = build_contract("data_alchemist.validation_report")
    report = {
        "contract": contract,
        "schema_version": contract["version"],
        "tool_version": TOOL_VERSION,
        "entity_type": entity_type,
        "file_overview": {
            "file": input_path.name if input_path else None,
            "rows": len(rows),
            "columns": len(headers),
            "headers": headers,
        },
        "columns": column_overview(entity_type, headers),
        "valid": not diagnostics,
        "error_count": len(diagnostics),
        "rows_with_errors": rows_with_errors,
        "clean_score": {"score": score, "label": score_label(score)},
        "errors_by_column": dict(sorted(Counter(item.column for item in diagnostics).items())),
        "diagnostics": [item.to_dict() for item in diagnostics],
        "rows": {str(index): cells for index, cells in enumerate(grouped) if cells},
    }
    report["run_summary"] = build_run_summary(
        tool="data-alchemist",
        command="validate",
        input_path=input_path,
        status="ok" if report["valid"] else "invalid",
        metrics={
            "rows": len(rows),
            "error_count": len(diagnostics),
            "rows_with_errors": rows_with_errors,
            "clean_score": score,
        },
        warnings=warnings,
    )
    report["text_report"] = render_text_report(report)
    return report


def render_text_report(report: dict[str, Any]) -> str:
    overview = report["file_overview"]
    columns = report["columns"]
    score = report["clean_score"]
    lines = [
        "data-alchemist validate",
        f"File: {overview['file'] or '-'} ({report['entity_type']})",
        f"Rows: {overview['rows']} | Columns: {overview['columns']}",
        f"Valid: {report['valid']}",
        f"Errors: {report['error_count']} across {report['rows_with_errors']} rows",
        f"Clean score: {score['score']}/100 ({score['label']})",
    ]
    if columns["missing_required"]:
        lines.append("Missing required columns: " + ", ".join(columns["missing_required"]))
    if columns["unknown"]:
        lines.append("Unmapped columns: " + ", ".join(columns["unknown"]))
    if report["errors_by_column"]:
        lines.append("")
        lines.append("Errors by column:")
        for column, count in report["errors_by_column"].items():
            lines.append(f"- {column}: {count}")

    diagnostics = report["diagnostics"]
    if diagnostics:
        lines.append("")
        lines.append("Diagnostics:")
        for item in diagnostics[:MAX_TEXT_DIAGNOSTICS]:
            lines.append(f"- row {item['rowIndex'] + 1} | {item['column']} | {item['message']}")
        if len(diagnostics) > MAX_TEXT_DIAGNOSTICS:
            lines.append(f"... {len(diagnostics) - MAX_TEXT_DIAGNOSTICS} more in the JSON report")
    return "\n".join(lines) + "\n"
