"""Shared versioned contracts for data-alchemist outputs."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

CONTRACT_VERSIONS = {
    "data_alchemist.validation_report": "1.0.0",
    "data_alchemist.filter_result": "1.0.0",
    "data_alchemist.header_mapping": "1.0.0",
    "data_alchemist.export_manifest": "1.0.0",
    "data_alchemist.rule": "1.0.0",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def build_contract(name: str) -> dict[str, str]:
    version = CONTRACT_VERSIONS[name]
    return {"name": name, "version": version}


def build_run_summary(
    *,
    tool: str,
    command: str,
    input_path: Optional[Path],
    status: str = "ok",
    output_path: Optional[Path] = None,
    metrics: Optional[dict[str, Any]] = None,
    warnings: Optional[list[str]] = None,
) -> dict[str, Any]:
    return {
        "tool": tool,
        "command": command,
        "status": status,
        "generated_at": utc_now_iso(),
        "input_file": str(input_path) if input_path else None,
        "output_file": str(output_path) if output_path else None,
        "warnings_count": len(warnings or []),
        "warnings": list(warnings or []),
        "metrics": metrics or {},
    }
