"""
loader.py — file loader for client / worker / task uploads

Supports: .csv .tsv .txt .xlsx .xls .xlsm .json .jsonl

Public API:
    result = load_file("path/to/clients.csv")
    rows   = result["rows"]

Result dict keys:
    dataframe         — pandas DataFrame, every cell read as text for tabular formats
    rows              — list of row dicts, empty cells as None
    headers           — column names in file order
    detected_format   — "csv", "xlsx", "json", etc.
    detected_encoding — encoding name for text files; None for workbooks
    encoding_info     — full dict: detected, confidence, is_utf8, suspicious_chars
    delimiter         — delimiter char for text files; None otherwise
    sheet_name        — active sheet name for workbooks; None otherwise
    sheet_names       — all sheet names for workbooks; None otherwise
    warnings          — list of warning strings
"""

from __future__ import annotations

import csv
import io
import json
from collections import Counter
from pathlib import Path
from typing import Any, Optional

import chardet
import pandas as pd

from data_alchemist.schema import ENTITY_TYPES, ID_FIELDS, compact_name

# ── Format groups ──────────────────────────────────────────────────────────────
TEXT_FORMATS  = {".csv", ".tsv", ".txt"}
EXCEL_FORMATS = {".xlsx", ".xls", ".xlsm"}
JSON_FORMATS  = {".json"}
JSONL_FORMATS = {".jsonl"}
ALL_FORMATS   = TEXT_FORMATS | EXCEL_FORMATS | JSON_FORMATS | JSONL_FORMATS


# ══════════════════════════════════════════════════════════════════════════════
# ENCODING DETECTION
# ══════════════════════════════════════════════════════════════════════════════

def _detect_encoding_info(raw: bytes) -> dict:
    """
    Detect encoding from raw bytes with chardet.

    Returns dict with: detected, confidence, is_utf8, suspicious_chars.
    """
    result     = chardet.detect(raw)
    detected   = result.get("encoding") or "unknown"
    confidence = round(result.get("confidence") or 0.0, 2)

    is_utf8 = detected.upper().replace("-", "") in ("UTF8", "ASCII", "UTF8SIG")

    suspicious: list[str] = []
    if not is_utf8:
        for row_idx, line in enumerate(raw.split(b"\n")[:100], start=1):
            try:
                line.decode("utf-8")
            except UnicodeDecodeError as e:
                bad_byte = line[e.start : e.end]
                suspicious.append(f"row {row_idx}: byte {bad_byte!r} at position {e.start}")

    return {
        "detected":         detected,
        "confidence":       confidence,
        "is_utf8":          is_utf8,
        "suspicious_chars": suspicious[:10],
    }


def _read_text_safely(raw: bytes, preferred_encoding: str) -> str:
    """
    Decode raw bytes line-by-line.

    Per line: UTF-8, then the detected encoding, then latin-1, finally CP1252
    with replacement. Null bytes and a leading BOM are dropped.
    """
    decoded_lines: list[str] = []
    for raw_line in raw.split(b"\n"):
        decoded: Optional[str] = None
        for enc in ("utf-8", preferred_encoding, "latin-1"):
            if not enc or enc == "unknown":
                continue
            try:
                decoded = raw_line.decode(enc)
                break
            except (LookupError, UnicodeDecodeError):
                continue
        if decoded is None:
            decoded = raw_line.decode("cp1252", errors="replace")
        decoded_lines.append(decoded.replace("\x00", ""))
    return "\n".join(decoded_lines).lstrip("\ufeff")


# ══════════════════════════════════════════════════════════════════════════════
# DELIMITER DETECTION
# ══════════════════════════════════════════════════════════════════════════════

def _detect_delimiter(text: str) -> str:
    """
    Infer the delimiter from sample lines.

    csv.Sniffer first; otherwise score each candidate by column-count
    consistency and width.
    """
    sample_lines = [line for line in text.splitlines() if line.strip()][:50]
    sample = "\n".join(sample_lines[:25])

    if sample:
        try:
            return csv.Sniffer().sniff(sample, delimiters=",;\t|").delimiter
        except csv.Error:
            pass

    best_delim = ","
    best_score = float("-inf")
    for delim in (",", ";", "\t", "|"):
        rows = [
            row
            for row in csv.reader(io.StringIO("\n".join(sample_lines)), delimiter=delim)
            if any(cell.strip() for cell in row)
        ]
        if len(rows) < 2:
            continue
        widths = Counter(len(row) for row in rows)
        mode_width, mode_count = widths.most_common(1)[0]
        score = mode_width * 2.0 + (mode_count / len(rows)) * mode_width
        if len(rows[0]) == mode_width:
            score += 1.0
        if mode_width == 1:
            score -= 10.0
        if score > best_score:
            best_score = score
            best_delim = delim
    return best_delim


# ══════════════════════════════════════════════════════════════════════════════
# FORMAT LOADERS
# ══════════════════════════════════════════════════════════════════════════════

def _result(df: pd.DataFrame, detected_format: str, **extra: Any) -> dict:
    payload = {
        "dataframe":         df,
        "detected_format":   detected_format,
        "detected_encoding": None,
        "encoding_info":     None,
        "delimiter":         None,
        "sheet_name":        None,
        "sheet_names":       None,
        "warnings":          [],
    }
    payload.update(extra)
    return payload


def _load_text(path: Path, suffix: str) -> dict:
    raw      = path.read_bytes()
    enc_info = _detect_encoding_info(raw)
    enc      = enc_info["detected"] if enc_info["detected"] != "unknown" else "utf-8"
    text     = _read_text_safely(raw, enc)

    if not text.strip():
        raise ValueError(f"{path.name} is empty")

    delimiter = "\t" if suffix == ".tsv" else _detect_delimiter(text)
    sep = r"\|" if delimiter == "|" else delimiter
    try:
        df = pd.read_csv(
            io.StringIO(text),
            dtype=str,
            keep_default_na=False,
            on_bad_lines="skip",
            sep=sep,
            engine="python",
        )
    except Exception as exc:
        raise ValueError(f"Could not parse {suffix} file: {exc}") from exc

    warnings: list[str] = []
    if not enc_info["is_utf8"]:
        warnings.append(f"Decoded as {enc} (confidence {enc_info['confidence']})")
    return _result(
        df,
        suffix.lstrip("."),
        detected_encoding=enc,
        encoding_info=enc_info,
        delimiter=delimiter,
        warnings=warnings,
    )


def _pick_sheet(all_sheets: list[str], entity_hint: Optional[str]) -> str:
    if entity_hint:
        for name in all_sheets:
            if compact_name(name).rstrip("s") == entity_hint:
                return name
    return all_sheets[0]


def _load_excel(path: Path, suffix: str, sheet_name: Optional[str], entity_hint: Optional[str]) -> dict:
    # .xls requires xlrd; give a clear error if missing.
    if suffix == ".xls":
        try:
            import xlrd  # noqa: F401
        except ImportError:
            raise ImportError(".xls files require xlrd — run: pip install data-alchemist[excel-legacy]")

    try:
        with pd.ExcelFile(path) as xf:
            all_sheets = list(xf.sheet_names)
    except Exception as exc:
        raise ValueError(f"Could not open workbook: {exc}") from exc
    if not all_sheets:
        raise ValueError("Workbook has no sheets")

    warnings: list[str] = []
    if sheet_name is not None:
        if sheet_name not in all_sheets:
            raise ValueError(f"Sheet '{sheet_name}' not found. Available: {all_sheets}")
        chosen = sheet_name
    else:
        chosen = _pick_sheet(all_sheets, entity_hint)
        if len(all_sheets) > 1:
            others = [name for name in all_sheets if name != chosen]
            warnings.append(f"Multiple sheets found ({len(all_sheets)} total); used '{chosen}'. Ignored: {others}")

    try:
        df = pd.read_excel(path, sheet_name=chosen, dtype=str)
    except Exception as exc:
        raise ValueError(f"Could not load sheet '{chosen}': {exc}") from exc

    return _result(df, suffix.lstrip("."), sheet_name=chosen, sheet_names=all_sheets, warnings=warnings)


def _decode_json_text(path: Path) -> tuple[str, dict]:
    raw      = path.read_bytes()
    enc_info = _detect_encoding_info(raw)
    enc      = enc_info["detected"] if enc_info["detected"] != "unknown" else "utf-8"
    return raw.decode(enc, errors="replace").lstrip("\ufeff"), enc_info


def _load_json(path: Path) -> dict:
    """
    Arrays load directly. Objects use the first top-level list value (for
    {"clients": [...]} style exports) or become a one-row table.
    """
    text, enc_info = _decode_json_text(path)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON: {exc}") from exc

    warnings: list[str] = []
    if isinstance(data, list):
        records = data
    elif isinstance(data, dict):
        list_keys = [key for key, value in data.items() if isinstance(value, list)]
        if list_keys:
            records = data[list_keys[0]]
            warnings.append(f"Nested JSON: used array at top-level key '{list_keys[0]}'")
        else:
            records = [data]
            warnings.append("JSON is a single object; treated as a one-row table")
    else:
        raise ValueError(f"JSON root must be an array or object, got {type(data).__name__}")

    if any(not isinstance(record, dict) for record in records):
        raise ValueError("JSON records must be objects")
    df = pd.DataFrame.from_records(records) if records else pd.DataFrame()
    return _result(
        df,
        "json",
        detected_encoding=enc_info["detected"],
        encoding_info=enc_info,
        warnings=warnings,
    )


def _load_jsonl(path: Path) -> dict:
    text, enc_info = _decode_json_text(path)
    records: list[dict] = []
    parse_errors: list[str] = []

    for line_num, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as exc:
            parse_errors.append(f"line {line_num}: {exc}")
            continue
        if isinstance(obj, dict):
            records.append(obj)
        else:
            parse_errors.append(f"line {line_num}: not a JSON object")

    warnings: list[str] = []
    if parse_errors:
        sample = "; ".join(parse_errors[:3])
        extra  = f" (+{len(parse_errors) - 3} more)" if len(parse_errors) > 3 else ""
        warnings.append(f"{len(parse_errors)} lines could not be parsed — {sample}{extra}")

    df = pd.DataFrame.from_records(records) if records else pd.DataFrame()
    return _result(
        df,
        "jsonl",
        detected_encoding=enc_info["detected"],
        encoding_info=enc_info,
        warnings=warnings,
    )


# ══════════════════════════════════════════════════════════════════════════════
# ROWS
# ══════════════════════════════════════════════════════════════════════════════

def _clean_cell(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return value
    if value is None or pd.isna(value):
        return None
    if isinstance(value, str):
        # A blank text cell is present but empty; only NaN counts as absent.
        return value.strip()
    return value


def dataframe_to_rows(df: pd.DataFrame) -> list[dict[str, Any]]:
    """Row dicts with stripped string headers and cells; NaN cells become None."""
    headers = [str(column).strip() for column in df.columns]
    rows: list[dict[str, Any]] = []
    for record in df.astype(object).itertuples(index=False, name=None):
        rows.append({header: _clean_cell(value) for header, value in zip(headers, record)})
    return rows


def guess_entity_type(path: "str | Path", headers: Optional[list[str]] = None) -> Optional[str]:
    """Entity type from the file name ("clients.csv") or, failing that, the ID column."""
    stem = compact_name(Path(path).stem)
    for entity in ENTITY_TYPES:
        if entity in stem:
            return entity
    compact_headers = {compact_name(header) for header in headers or []}
    for entity in ENTITY_TYPES:
        if compact_name(ID_FIELDS[entity]) in compact_headers:
            return entity
    return None


# ══════════════════════════════════════════════════════════════════════════════
# PUBLIC API
# ══════════════════════════════════════════════════════════════════════════════

def load_file(
    path: "str | Path",
    sheet_name: Optional[str] = None,
    entity_type: Optional[str] = None,
) -> dict:
    """
    Load any supported file.

    Args:
        path:        Path to the file (str or Path).
        sheet_name:  For workbooks: which sheet to load. When None, a sheet
                     named after entity_type ("Clients") is preferred, then
                     the first sheet.
        entity_type: Optional hint used for workbook sheet selection.

    Raises:
        FileNotFoundError  if the file does not exist.
        ValueError         if the format is unsupported or unreadable.
        ImportError        if a required optional dependency is missing.
    """
    path   = Path(path)
    suffix = path.suffix.lower()

    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    if suffix not in ALL_FORMATS:
        supported = ", ".join(sorted(ALL_FORMATS))
        raise ValueError(f"Unsupported format '{suffix}'. Supported: {supported}")

    if suffix in TEXT_FORMATS:
        result = _load_text(path, suffix)
    elif suffix in EXCEL_FORMATS:
        result = _load_excel(path, suffix, sheet_name, entity_type)
    elif suffix in JSON_FORMATS:
        result = _load_json(path)
    else:
        result = _load_jsonl(path)

    df = result["dataframe"]
    result["headers"] = [str(column).strip() for column in df.columns]
    result["rows"] = dataframe_to_rows(df)
    return result
