from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from data_alchemist import __version__ as TOOL_VERSION
from data_alchemist.config import ENV_OUTPUT_STAMP, DEFAULT_CONFIG_NAME, AlchemistConfig, load_config, starter_config
from data_alchemist.contracts import build_contract, build_run_summary
from data_alchemist.export import build_export_bundle, rows_to_csv
from data_alchemist.llm import (
    apply_header_mapping,
    generate_expression,
    identity_mapping,
    map_headers,
    parse_rule,
    suggest_header_mapping,
)
from data_alchemist.loader import guess_entity_type, load_file
from data_alchemist.priorities import (
    CRITERIA,
    PRESET_PROFILES,
    build_priority_config,
    load_priority_config,
    parse_weight_overrides,
)
from data_alchemist.report import build_validation_report
from data_alchemist.rules import RULE_TYPES, build_rule, export_rules_payload, load_rules, rule_from_parsed, validate_rule_structure
from data_alchemist.schema import ENTITY_TYPES, normalize_entity_type
from data_alchemist.text_filter import QUICK_FILTERS, FilterSession
from data_alchemist.validators import validate_references

EXIT_SUCCESS = 0
EXIT_COMMAND_ERROR = 1
EXIT_PARSE_FAILED = 2
EXIT_VALIDATE_FAILED = 5

HEADER_MODES = ("as-is", "offline", "llm")
DATASET_KEYS = {"client": "clients", "worker": "workers", "task": "tasks"}


class CliError(Exception):
    def __init__(self, message: str, code: int = EXIT_COMMAND_ERROR) -> None:
        super().__init__(message)
        self.code = code


class DataAlchemistArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise CliError(message, EXIT_COMMAND_ERROR)


def eprint(message: str) -> None:
    print(message, file=sys.stderr)


def emit_human(message: str, *, quiet: bool = False) -> None:
    if not quiet:
        eprint(message)


def emit_verbose(message: str, args: argparse.Namespace) -> None:
    if getattr(args, "verbose", False) and not getattr(args, "quiet", False):
        eprint(message)


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True, default=str)


def timestamp_token(config: Optional[AlchemistConfig] = None) -> str:
    override = (config.output_stamp if config else None) or os.environ.get(ENV_OUTPUT_STAMP)
    if override:
        return override
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def default_output_dir(input_path: Path, config: AlchemistConfig) -> Path:
    return Path.cwd() / config.output_dir / f"{input_path.stem}-{timestamp_token(config)}"


def determine_output_dir(args: argparse.Namespace, input_path: Path, config: AlchemistConfig) -> Path:
    if getattr(args, "out_dir", None):
        return Path(args.out_dir)
    return default_output_dir(input_path, config)


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def write_text(path: Path, payload: str) -> None:
    ensure_parent(path)
    path.write_text(payload, encoding="utf-8")


def write_json(path: Path, payload: Any) -> None:
    write_text(path, json_dumps(payload))


def remove_generated_at(value: Any) -> Any:
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            if key == "generated_at":
                result[key] = "1970-01-01T00:00:00Z"
            else:
                result[key] = remove_generated_at(item)
        return result
    if isinstance(value, list):
        return [remove_generated_at(item) for item in value]
    return value


def normalize_report_for_cli(payload: Any) -> Any:
    if os.environ.get(ENV_OUTPUT_STAMP):
        return remove_generated_at(payload)
    return payload


def classify_backend_exception(exc: Exception) -> int:
    if isinstance(exc, CliError):
        return exc.code
    if isinstance(exc, (ImportError, UnicodeDecodeError)):
        return EXIT_PARSE_FAILED
    if isinstance(exc, FileNotFoundError):
        return EXIT_COMMAND_ERROR
    if isinstance(exc, ValueError):
        return EXIT_PARSE_FAILED
    return EXIT_COMMAND_ERROR


def maybe_emit_json_stdout(payload: Any, enabled: bool) -> None:
    if enabled:
        print(json_dumps(payload))


def resolve_config(args: argparse.Namespace) -> AlchemistConfig:
    path = getattr(args, "config", None)
    try:
        return load_config(Path(path) if path else None)
    except (OSError, ValueError) as exc:
        raise CliError(str(exc), EXIT_COMMAND_ERROR) from exc


# ══════════════════════════════════════════════════════════════════════════════
# DATASETS
# ══════════════════════════════════════════════════════════════════════════════

def resolve_entity(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    entity = normalize_entity_type(value)
    if entity is None:
        raise CliError(f"Unknown entity type '{value}'. Use one of: {', '.join(ENTITY_TYPES)}", EXIT_COMMAND_ERROR)
    return entity


def build_header_mapping(headers: list[str], entity_type: str, mode: str, config: AlchemistConfig) -> dict[str, str]:
    if mode == "as-is":
        return identity_mapping(headers)
    if mode == "llm":
        return map_headers(headers, entity_type, config=config)
    return suggest_header_mapping(headers, entity_type)


def load_dataset(
    input_path: Path,
    *,
    entity: Optional[str],
    sheet_name: Optional[str],
    header_mode: str,
    config: AlchemistConfig,
) -> dict[str, Any]:
    if not input_path.exists():
        raise CliError(f"File not found: {input_path}", EXIT_COMMAND_ERROR)
    hint = entity or guess_entity_type(input_path)
    loaded = load_file(input_path, sheet_name=sheet_name, entity_type=hint)
    entity_type = entity or guess_entity_type(input_path, loaded["headers"])
    if entity_type is None:
        raise CliError(
            f"Could not infer the entity type of {input_path.name}; pass --entity client|worker|task",
            EXIT_COMMAND_ERROR,
        )

    mapping = build_header_mapping(loaded["headers"], entity_type, header_mode, config)
    rows = apply_header_mapping(loaded["rows"], mapping)
    headers: list[str] = []
    for header in loaded["headers"]:
        target = mapping.get(header, header)
        if target not in headers:
            headers.append(target)
    return {
        "input": input_path,
        "entity_type": entity_type,
        "rows": rows,
        "headers": headers,
        "mapping": mapping,
        "loaded": loaded,
    }


def add_dataset_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--entity", help="Entity type: client, worker or task (inferred from file name or ID column)")
    parser.add_argument("--sheet", dest="sheet_name", help="Workbook sheet name")
    parser.add_argument(
        "--headers",
        dest="header_mode",
        choices=HEADER_MODES,
        default="offline",
        help="Header mapping: keep as-is, offline aliases, or the LLM mapper",
    )
    parser.add_argument("--config", help=f"Config path (default: ./{DEFAULT_CONFIG_NAME} when present)")


def add_log_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-q", "--quiet", action="store_true", help="Minimal human logs")
    parser.add_argument("-v", "--verbose", action="store_true", help="More human logs")


# ══════════════════════════════════════════════════════════════════════════════
# PARSER
# ══════════════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = DataAlchemistArgumentParser(
        prog="data-alchemist",
        description="Validate, filter and export client / worker / task spreadsheets.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Validate one or more datasets.")
    validate.add_argument("inputs", nargs="+", help="Input file paths")
    add_dataset_arguments(validate)
    validate.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    validate.add_argument("-o", "--out", dest="out_dir", help="Output directory for validation reports")
    validate.add_argument("--output", help="Explicit validation output path (single input only)")
    add_log_arguments(validate)

    filter_cmd = subparsers.add_parser("filter", help="Filter a dataset with a natural-language query.")
    filter_cmd.add_argument("input", help="Input file path")
    filter_cmd.add_argument("queries", nargs="*", help="Filter queries, applied one after another")
    add_dataset_arguments(filter_cmd)
    filter_cmd.add_argument("--preset", action="append", default=[], help="Quick filter label (repeatable)")
    filter_cmd.add_argument("--ai", action="store_true", help="Turn each query into an expression with the LLM")
    filter_cmd.add_argument("--output", help="Write matching rows as CSV")
    filter_cmd.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    add_log_arguments(filter_cmd)

    presets = subparsers.add_parser("presets", help="List quick filter presets.")
    presets.add_argument("--entity", help="Only presets for this entity type")
    presets.add_argument("--json", action="store_true", help="Write machine JSON to stdout")

    mapping = subparsers.add_parser("map-headers", help="Map uploaded headers onto the canonical schema.")
    mapping.add_argument("input", help="Input file path")
    add_dataset_arguments(mapping)
    mapping.add_argument("--output", help="Write the renamed rows as CSV")
    mapping.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    add_log_arguments(mapping)

    export = subparsers.add_parser("export", help="Bundle cleaned datasets and rules into a ZIP.")
    export.add_argument("output", help="Output .zip path")
    export.add_argument("--clients", help="Clients file")
    export.add_argument("--workers", help="Workers file")
    export.add_argument("--tasks", help="Tasks file")
    export.add_argument("--rules", help="Rules JSON file")
    export.add_argument("--priorities", help="Priority configuration JSON (or a previous rules.json export)")
    export.add_argument(
        "--preset-profile",
        choices=sorted(PRESET_PROFILES),
        help="Start the criteria weights from a preset profile",
    )
    export.add_argument(
        "--weight",
        dest="weights",
        action="append",
        default=[],
        metavar="CRITERION=WEIGHT",
        help=f"Override one criterion weight (0-100); criteria: {', '.join(CRITERIA)}",
    )
    export.add_argument(
        "--headers",
        dest="header_mode",
        choices=HEADER_MODES,
        default="offline",
        help="Header mapping applied before export",
    )
    export.add_argument("--config", help=f"Config path (default: ./{DEFAULT_CONFIG_NAME} when present)")
    export.add_argument("--force", action="store_true", help="Overwrite an existing bundle")
    export.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    add_log_arguments(export)

    rule = subparsers.add_parser("rule", help="Create a business rule from text or explicit data.")
    rule.add_argument("text", nargs="*", help="Natural-language rule (parsed with the LLM)")
    rule.add_argument("--type", dest="rule_type", choices=RULE_TYPES, help="Build the rule without the LLM")
    rule.add_argument("--data", help="Rule data as a JSON object (with --type)")
    rule.add_argument("--description", help="Rule description")
    rule.add_argument("--append", help="Add the rule to this rules.json export")
    rule.add_argument("--config", help=f"Config path (default: ./{DEFAULT_CONFIG_NAME} when present)")
    rule.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    add_log_arguments(rule)

    config = subparsers.add_parser("config", help="Generate configuration.")
    config_subparsers = config.add_subparsers(dest="config_command", required=True)
    config_init = config_subparsers.add_parser("init", help="Write a starter config file.")
    config_init.add_argument("--path", default=DEFAULT_CONFIG_NAME, help="Config output path")

    subparsers.add_parser("version", help="Print version")
    return parser


# ══════════════════════════════════════════════════════════════════════════════
# COMMANDS
# ══════════════════════════════════════════════════════════════════════════════

def run_validate(args: argparse.Namespace) -> int:
    try:
        config = resolve_config(args)
        entity = resolve_entity(args.entity)
        if args.output and len(args.inputs) > 1:
            raise CliError("--output only works with a single input; use --out for several", EXIT_COMMAND_ERROR)

        datasets = []
        for raw_path in args.inputs:
            dataset = load_dataset(
                Path(raw_path),
                entity=entity,
                sheet_name=args.sheet_name,
                header_mode=args.header_mode,
                config=config,
            )
            emit_verbose(f"Loaded {len(dataset['rows'])} {dataset['entity_type']} rows from {raw_path}", args)
            datasets.append(dataset)

        by_entity = {item["entity_type"]: item["rows"] for item in datasets}
        references = validate_references(by_entity.get("client"), by_entity.get("worker"), by_entity.get("task"))

        reports = []
        for dataset in datasets:
            report = build_validation_report(
                dataset["entity_type"],
                dataset["rows"],
                headers=dataset["headers"],
                input_path=dataset["input"],
                extra_diagnostics=references[dataset["entity_type"]] if len(datasets) > 1 else None,
                warnings=dataset["loaded"]["warnings"],
            )
            report["header_mapping"] = {k: v for k, v in dataset["mapping"].items() if k != v}
            reports.append(normalize_report_for_cli(report))

        valid = all(report["valid"] for report in reports)
        payload = {
            "tool": "data-alchemist",
            "command": "validate",
            "version": TOOL_VERSION,
            "valid": valid,
            "error_count": sum(report["error_count"] for report in reports),
            "reports": reports,
        }

        if args.output or args.out_dir:
            for dataset, report in zip(datasets, reports):
                if args.output:
                    output_path = Path(args.output)
                else:
                    out_dir = determine_output_dir(args, dataset["input"], config)
                    output_path = out_dir / f"{dataset['input'].stem}-validation.json"
                write_json(output_path, report)
                emit_human(f"Validation report: {output_path}", quiet=args.quiet)

        if args.json:
            maybe_emit_json_stdout(payload, True)
        else:
            for report in reports:
                emit_human(report["text_report"].rstrip(), quiet=args.quiet)
        return EXIT_SUCCESS if valid else EXIT_VALIDATE_FAILED
    except Exception as exc:
        eprint(str(exc))
        return classify_backend_exception(exc)


def run_filter(args: argparse.Namespace) -> int:
    try:
        config = resolve_config(args)
        if not args.queries and not args.preset:
            raise CliError("Give at least one query or --preset", EXIT_COMMAND_ERROR)
        dataset = load_dataset(
            Path(args.input),
            entity=resolve_entity(args.entity),
            sheet_name=args.sheet_name,
            header_mode=args.header_mode,
            config=config,
        )
        session = FilterSession(dataset["rows"], dataset["entity_type"])

        error = None
        for label in args.preset:
            result = session.apply_quick(label)
            if result.error:
                error = result.error
                break
        if error is None:
            for query in args.queries:
                if args.ai:
                    result = session.apply_ai(
                        query,
                        lambda text, entity, sample: _generate(text, entity, sample, config),
                    )
                else:
                    result = session.apply_text(query)
                if result.error:
                    error = result.error
                    break
                emit_verbose(f"{query!r}: {len(result.data)} rows", args)

        rows = session.current_rows
        contract = build_contract("data_alchemist.filter_result")
        payload = {
            "contract": contract,
            "schema_version": contract["version"],
            "tool_version": TOOL_VERSION,
            "entity_type": session.entity_type,
            "filters": [chip.to_dict() for chip in session.chips],
            "error": error.to_dict() if error else None,
            "total_rows": len(session.original_rows),
            "matched_rows": len(rows),
            "rows": rows,
        }
        payload["run_summary"] = build_run_summary(
            tool="data-alchemist",
            command="filter",
            input_path=dataset["input"],
            status="error" if error else "ok",
            output_path=Path(args.output) if args.output else None,
            metrics={"total_rows": len(session.original_rows), "matched_rows": len(rows)},
            warnings=dataset["loaded"]["warnings"],
        )
        payload = normalize_report_for_cli(payload)

        if error:
            eprint(f"Filter error ({error.type}): {error.message}")
            if error.details:
                eprint(error.details)
        if args.output:
            write_text(Path(args.output), rows_to_csv(rows))
            emit_human(f"Filtered rows: {args.output}", quiet=args.quiet)
        if args.json:
            maybe_emit_json_stdout(payload, True)
        else:
            emit_human(f"Showing {len(rows)} of {len(session.original_rows)} records.", quiet=args.quiet)
            if not args.output and rows:
                sys.stdout.write(rows_to_csv(rows))
        return EXIT_COMMAND_ERROR if error else EXIT_SUCCESS
    except Exception as exc:
        eprint(str(exc))
        return classify_backend_exception(exc)


def _generate(query: str, entity_type: str, sample_rows: list[Any], config: AlchemistConfig) -> dict[str, str]:
    return generate_expression(query, entity_type, sample_rows, config=config)


def run_presets(args: argparse.Namespace) -> int:
    try:
        entity = resolve_entity(args.entity)
    except CliError as exc:
        eprint(str(exc))
        return exc.code
    entities = [entity] if entity else list(ENTITY_TYPES)
    payload = {name: [dict(preset) for preset in QUICK_FILTERS[name]] for name in entities}
    if args.json:
        maybe_emit_json_stdout(payload, True)
        return EXIT_SUCCESS
    lines = []
    for name in entities:
        lines.append(f"{name}:")
        for preset in payload[name]:
            lines.append(f"  {preset['label']:<22} {preset['query']}")
    print("\n".join(lines))
    return EXIT_SUCCESS


def run_map_headers(args: argparse.Namespace) -> int:
    try:
        config = resolve_config(args)
        dataset = load_dataset(
            Path(args.input),
            entity=resolve_entity(args.entity),
            sheet_name=args.sheet_name,
            header_mode=args.header_mode,
            config=config,
        )
        mapping = dataset["mapping"]
        if args.header_mode == "llm" and not config.llm_enabled:
            emit_human("No API key configured; headers kept as-is.", quiet=args.quiet)
        contract = build_contract("data_alchemist.header_mapping")
        payload = {
            "contract": contract,
            "schema_version": contract["version"],
            "entity_type": dataset["entity_type"],
            "mode": args.header_mode,
            "mapping": mapping,
            "unmapped": [header for header, target in mapping.items() if header == target],
        }
        if args.output:
            write_text(Path(args.output), rows_to_csv(dataset["rows"]))
            emit_human(f"Renamed rows: {args.output}", quiet=args.quiet)
        if args.json:
            maybe_emit_json_stdout(payload, True)
        else:
            for header, target in mapping.items():
                marker = "->" if header != target else "=="
                print(f"{header} {marker} {target}")
        return EXIT_SUCCESS
    except Exception as exc:
        eprint(str(exc))
        return classify_backend_exception(exc)


def resolve_priority_config(args: argparse.Namespace) -> dict[str, Any]:
    try:
        base = load_priority_config(Path(args.priorities)) if args.priorities else None
        weights = dict(base["weights"]) if base and not args.preset_profile else {}
        weights.update(parse_weight_overrides(args.weights))
        preset = args.preset_profile or (base["presetProfile"] if base else None) or None
        return build_priority_config(
            weights=weights,
            ranking=base["ranking"] if base else None,
            preset_profile=preset,
            pairwise_matrix=base["pairwiseMatrix"] if base else None,
        )
    except (OSError, ValueError) as exc:
        raise CliError(str(exc), EXIT_COMMAND_ERROR) from exc


def run_export(args: argparse.Namespace) -> int:
    try:
        config = resolve_config(args)
        output_path = Path(args.output)
        if output_path.exists() and not args.force:
            raise CliError(f"Refusing to overwrite existing output: {output_path}", EXIT_COMMAND_ERROR)
        if not any((args.clients, args.workers, args.tasks, args.rules)):
            raise CliError("Nothing to export; pass --clients, --workers, --tasks or --rules", EXIT_COMMAND_ERROR)
        priority_config = resolve_priority_config(args)

        datasets: dict[str, list[dict[str, Any]]] = {"clients": [], "workers": [], "tasks": []}
        for entity, raw_path in (("client", args.clients), ("worker", args.workers), ("task", args.tasks)):
            if not raw_path:
                continue
            dataset = load_dataset(
                Path(raw_path),
                entity=entity,
                sheet_name=None,
                header_mode=args.header_mode,
                config=config,
            )
            datasets[DATASET_KEYS[entity]] = dataset["rows"]
            emit_verbose(f"Loaded {len(dataset['rows'])} {entity} rows from {raw_path}", args)

        rules = load_rules(Path(args.rules)) if args.rules else []
        manifest = build_export_bundle(
            datasets["clients"],
            datasets["workers"],
            datasets["tasks"],
            rules,
            output_path,
            priority_config=priority_config,
        )
        manifest["run_summary"] = build_run_summary(
            tool="data-alchemist",
            command="export",
            input_path=None,
            output_path=output_path,
            metrics=dict(manifest["counts"], rules=len(rules)),
        )
        manifest = normalize_report_for_cli(manifest)
        if args.json:
            maybe_emit_json_stdout(manifest, True)
        emit_human(f"Export bundle: {output_path} ({', '.join(manifest['members'])})", quiet=args.quiet)
        if priority_config["presetProfile"]:
            label = PRESET_PROFILES[priority_config["presetProfile"]]["label"]
            emit_human(f"Priority profile: {label}", quiet=args.quiet)
        return EXIT_SUCCESS
    except Exception as exc:
        eprint(str(exc))
        return classify_backend_exception(exc)


def _read_rules_export(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    return load_rules(path)


def run_rule(args: argparse.Namespace) -> int:
    try:
        config = resolve_config(args)
        text = " ".join(args.text).strip()
        if args.rule_type:
            try:
                data = json.loads(args.data) if args.data else {}
            except json.JSONDecodeError as exc:
                raise CliError(f"--data is not valid JSON: {exc}", EXIT_COMMAND_ERROR) from exc
            if not isinstance(data, dict):
                raise CliError("--data must be a JSON object", EXIT_COMMAND_ERROR)
            rule = build_rule(args.rule_type, data, description=args.description or text or None)
        elif text:
            parsed = parse_rule(text, config=config)
            if parsed.get("error"):
                details = parsed.get("details")
                raise CliError(f"{parsed['error']}" + (f": {details}" if details else ""), EXIT_COMMAND_ERROR)
            rule = rule_from_parsed(parsed, args.description or text)
        else:
            raise CliError("Give rule text or --type", EXIT_COMMAND_ERROR)

        is_valid, errors = validate_rule_structure(rule)
        if not is_valid:
            raise CliError("Invalid rule: " + "; ".join(errors), EXIT_VALIDATE_FAILED)

        if args.append:
            append_path = Path(args.append)
            rules = _read_rules_export(append_path) + [rule]
            write_json(append_path, export_rules_payload(rules))
            emit_human(f"Rules file: {append_path} ({len(rules)} rules)", quiet=args.quiet)

        contract = build_contract("data_alchemist.rule")
        payload = {"contract": contract, "rule": rule}
        if args.json:
            maybe_emit_json_stdout(payload, True)
        else:
            print(f"{rule['type']}: {rule['description']}")
            print(json_dumps(rule["data"]))
        return EXIT_SUCCESS
    except Exception as exc:
        eprint(str(exc))
        return classify_backend_exception(exc)


def run_config_init(args: argparse.Namespace) -> int:
    config_path = Path(args.path)
    if config_path.exists():
        eprint(f"Refusing to overwrite existing config: {config_path}")
        return EXIT_COMMAND_ERROR
    write_json(config_path, starter_config())
    emit_human(f"Config written: {config_path}")
    emit_human("Set OPENROUTER_API_KEY in the environment to enable LLM features.")
    return EXIT_SUCCESS


def run_version() -> int:
    print(TOOL_VERSION)
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        if args.command == "validate":
            return run_validate(args)
        if args.command == "filter":
            return run_filter(args)
        if args.command == "presets":
            return run_presets(args)
        if args.command == "map-headers":
            return run_map_headers(args)
        if args.command == "export":
            return run_export(args)
        if args.command == "rule":
            return run_rule(args)
        if args.command == "config":
            if args.config_command == "init":
                return run_config_init(args)
        if args.command == "version":
            return run_version()
        raise CliError(f"Unknown command: {args.command}", EXIT_COMMAND_ERROR)
    except CliError as exc:
        eprint(str(exc))
        return exc.code


if __name__ == "__main__":
    raise SystemExit(main())
