"""
llm.py — chat-completion collaborators for header mapping, AI filters and rules

All three calls go to an OpenRouter-compatible /chat/completions endpoint with
one blocking requests.post. There are no retries. The public functions never
raise: header mapping falls back to identity, expression generation and rule
parsing return an {"error", "details"} dict instead.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from typing import Any, Optional

import requests

from data_alchemist.config import AlchemistConfig, load_config
from data_alchemist.expression import ExpressionError, compile_expression
from data_alchemist.schema import CANONICAL_FIELDS, canonical_field_for_header, normalize_entity_type

MIN_EXPRESSION_LENGTH = 5

FIELD_NOTES = {
    "client": """- ClientID: text "C<number>" (e.g. "C1", "C25")
- ClientName: company name (e.g. "Acme Corp", "Globex Inc")
- PriorityLevel: integer 1-5
- RequestedTaskIDs: comma-separated task IDs (e.g. "T17,T27,T33")
- GroupTag: exactly "GroupA", "GroupB" or "GroupC"
- AttributesJSON: JSON object text ('{"location":"New York","budget":100000}') or free text""",
    "worker": """- WorkerID: text "W<number>"
- WorkerName: text (e.g. "Worker1")
- Skills: comma-separated skills (e.g. "coding,ml", "testing,ui/ux")
- AvailableSlots: JSON array text of phase numbers (e.g. "[1,2,3]")
- MaxLoadPerPhase: integer >= 1
- WorkerGroup: exactly "GroupA", "GroupB" or "GroupC"
- QualificationLevel: integer 1-10""",
    "task": """- TaskID: text "T<number>"
- TaskName: text (e.g. "Data Cleanup", "Model Training")
- Category: one of ETL, Analytics, ML, Design, QA, Security, Infrastructure, Writing, DevOps, Research, Marketing, Sales, Compliance
- Duration: integer number of phases
- RequiredSkills: comma-separated skills
- PreferredPhases: "1 - 3" range, "[2,3,4]" JSON array, or malformed "[2 - 4]"
- MaxConcurrent: integer >= 1""",
}

EXPRESSION_PROMPT = """You convert natural language filters into boolean filter expressions over a `row` object.

ENTITY TYPE: "{entity_type}"

FIELDS:
{field_notes}

SAMPLE ROWS:
{sample_rows}

USER QUERY: "{query}"

The expression language is a small JavaScript subset:
- field access: row.Field or row["Field"]
- literals: numbers, 'strings', true, false, null
- operators: === !== == != > < >= <= && || ! and parentheses
- string methods: includes, startsWith, endsWith, toLowerCase, toUpperCase, trim, substring, slice, indexOf, split; .length
- functions: parseInt, parseFloat, Number, String, Boolean
- inPhase(row.PreferredPhases, 2) tests phase membership for any phase encoding
- phasesOverlap(row.AvailableSlots, 2, 4) tests whether any phase in 2..4 is present

Examples:
- "duration is 2" -> row.Duration == 2
- "client name contains Corp" -> row.ClientName && row.ClientName.toLowerCase().includes('corp')
- "skills include coding" -> row.Skills && row.Skills.toLowerCase().includes('coding')
- "available slots include 2" -> inPhase(row.AvailableSlots, 2)
- "phases 2 to 4" -> phasesOverlap(row.PreferredPhases, 2, 4)
- "group is GroupB" -> row.GroupTag === 'GroupB' || row.WorkerGroup === 'GroupB'

Rules:
- use exact PascalCase field names
- guard optional fields (row.Field && ...)
- no functions, arrow functions, statements, semicolons or comments
- return ONLY the expression

Expression:
"""

HEADER_PROMPT = """You are a data cleaning assistant.

Match messy spreadsheet headers to the expected schema fields.

Uploaded headers: {headers}

Expected schema for "{entity_type}": {fields}

Examples: "client_id" -> "ClientID", "client name" -> "ClientName", "priority" -> "PriorityLevel", "worker_name" -> "WorkerName"

Answer with JSON only, in this exact shape:
{{"mapped": {{"uploadedHeader": "CorrectFieldName"}}}}
"""

RULE_PROMPT = """You are a JSON rule generator for a spreadsheet tool. Convert natural language rules into structured JSON.

Examples:

Input: "Tasks T12 and T14 must always run together."
Output: {{"type": "coRun", "tasks": ["T12", "T14"]}}

Input: "Limit workers in group A to maximum 2 tasks per phase."
Output: {{"type": "loadLimit", "group": "A", "maxSlotsPerPhase": 2}}

Input: "Priority level must be between 1 and 5."
Output: {{"type": "validation", "field": "priority", "min": 1, "max": 5}}

Input: "Task T5 should never run with T9."
Output: {{"type": "exclusion", "tasks": ["T5", "T9"]}}

Now convert this rule to JSON (return only the JSON, no explanations):
"{text}"
"""

FORBIDDEN_PATTERNS = (
    re.compile(r"eval\(", re.I),
    re.compile(r"function\s*\(", re.I),
    re.compile(r"=>"),
    re.compile(r";\s*\w"),
    re.compile(r"/\*[\s\S]*?\*/"),
)
JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class LLMError(RuntimeError):
    """The completion endpoint could not produce a usable reply."""


# ══════════════════════════════════════════════════════════════════════════════
# TRANSPORT
# ══════════════════════════════════════════════════════════════════════════════

def complete(
    prompt: str,
    *,
    config: Optional[AlchemistConfig] = None,
    session: Optional[requests.Session] = None,
) -> str:
    """Send one user message and return the first choice's text."""
    config = config or load_config()
    if not config.api_key:
        raise LLMError("API request failed: no API key configured (set OPENROUTER_API_KEY)")

    http = session or requests
    response = http.post(
        config.api_url,
        headers={
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
        },
        json={
            "model": config.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": config.temperature,
        },
        timeout=config.timeout,
    )
    if not response.ok:
        raise LLMError(f"API request failed: {response.status_code} - {response.text[:200]}")
    try:
        payload = response.json()
    except ValueError as exc:
        raise LLMError("API request failed: response was not JSON") from exc
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = ""
    if not content or not str(content).strip():
        raise LLMError("No response from AI")
    return str(content)


def _extract_json_object(text: str) -> Any:
    match = JSON_OBJECT_RE.search(text)
    return json.loads(match.group(0) if match else text)


# ══════════════════════════════════════════════════════════════════════════════
# HEADER MAPPING
# ══════════════════════════════════════════════════════════════════════════════

def identity_mapping(headers: Iterable[str]) -> dict[str, str]:
    return {str(header): str(header) for header in headers}


def suggest_header_mapping(headers: Iterable[str], entity_type: Any) -> dict[str, str]:
    """Offline mapping from compact-name and alias matches; unknown headers map to themselves."""
    entity = normalize_entity_type(entity_type)
    mapping: dict[str, str] = {}
    used: set[str] = set()
    for header in headers:
        text = str(header)
        target = canonical_field_for_header(text, entity) if entity else None
        if target and target not in used:
            mapping[text] = target
            used.add(target)
        else:
            mapping[text] = text
    return mapping


def map_headers(
    headers: Iterable[str],
    entity_type: Any,
    *,
    config: Optional[AlchemistConfig] = None,
    session: Optional[requests.Session] = None,
) -> dict[str, str]:
    header_list = [str(header) for header in headers]
    mapping = identity_mapping(header_list)
    entity = normalize_entity_type(entity_type)
    if entity is None or not header_list:
        return mapping

    fields = CANONICAL_FIELDS[entity]
    prompt = HEADER_PROMPT.format(
        headers=json.dumps(header_list, ensure_ascii=False),
        entity_type=entity,
        fields=", ".join(fields),
    )
    try:
        reply = _extract_json_object(complete(prompt, config=config, session=session))
    except Exception:
        return mapping

    mapped = reply.get("mapped") if isinstance(reply, dict) else None
    if not isinstance(mapped, dict):
        return mapping
    for header, target in mapped.items():
        if header in mapping and isinstance(target, str) and target in fields:
            mapping[header] = target
    return mapping


def apply_header_mapping(rows: Iterable[Mapping[str, Any]], mapping: Mapping[str, str]) -> list[dict[str, Any]]:
    renamed: list[dict[str, Any]] = []
    for row in rows:
        new_row: dict[str, Any] = {}
        for key, value in row.items():
            target = mapping.get(key, key)
            # Two headers landing on one field keep the first non-empty value.
            if target in new_row and new_row[target] not in (None, ""):
                continue
            new_row[target] = value
        renamed.append(new_row)
    return renamed


# ══════════════════════════════════════════════════════════════════════════════
# FILTER EXPRESSIONS
# ══════════════════════════════════════════════════════════════════════════════

def clean_expression(raw_text: str) -> str:
    text = raw_text.strip()
    text = re.sub(r"^Expression:\s*", "", text, flags=re.I)
    text = re.sub(r"^```(?:javascript|js)?\s*", "", text, flags=re.I)
    text = re.sub(r"\s*```\s*$", "", text)
    text = re.sub(r"^return\s+", "", text, flags=re.I)
    text = text.strip()
    if text.endswith(";"):
        text = text[:-1].rstrip()
    return text


def _error(error: str, details: str) -> dict[str, str]:
    return {"error": error, "details": details}


def _sample_rows_text(sample_rows: Optional[Iterable[Any]]) -> str:
    rows = [dict(row) for row in list(sample_rows or [])[:3] if isinstance(row, Mapping)]
    if not rows:
        return "(none)"
    return json.dumps(rows, ensure_ascii=False, default=str)


def generate_expression(
    query: Any,
    entity_type: Any,
    sample_rows: Optional[Iterable[Any]] = None,
    *,
    config: Optional[AlchemistConfig] = None,
    session: Optional[requests.Session] = None,
) -> dict[str, str]:
    if not query or not entity_type:
        return _error(
            "Missing required parameters",
            "Both query and entityType are required. Provide a natural language filter query "
            "and an entity type (client, worker, or task).",
        )
    if not str(query).strip():
        return _error("Empty query", 'Provide a meaningful filter query, e.g. "contains Corp", "skills include coding".')
    entity = normalize_entity_type(entity_type)
    if entity is None:
        return _error("Invalid entity type", 'Entity type must be one of: "client", "worker", or "task".')

    prompt = EXPRESSION_PROMPT.format(
        entity_type=entity,
        field_notes=FIELD_NOTES[entity],
        sample_rows=_sample_rows_text(sample_rows),
        query=str(query).strip(),
    )
    try:
        raw_text = complete(prompt, config=config, session=session)
    except requests.RequestException as exc:
        return _error("AI service unavailable", f"Unable to connect to the AI service: {exc}")
    except LLMError as exc:
        return _error("Filter processing failed", f"{exc}. Try rephrasing your query or use the text filter.")
    except Exception as exc:
        return _error("Filter processing failed", f"Unexpected error while calling the AI service: {exc}")

    expression = clean_expression(raw_text)
    if len(expression) < MIN_EXPRESSION_LENGTH:
        return _error(
            "Invalid filter expression generated",
            "The AI generated an expression that is too short or invalid. Try rephrasing your query.",
        )
    if any(pattern.search(expression) for pattern in FORBIDDEN_PATTERNS):
        return _error(
            "Unsafe filter expression detected",
            "The generated expression contains unsupported code patterns. Try a simpler query.",
        )
    try:
        compile_expression(expression)
    except ExpressionError as exc:
        return _error("Invalid filter expression generated", f"Expression evaluation failed: {exc}")
    return {"expression": expression}


# ══════════════════════════════════════════════════════════════════════════════
# RULES
# ══════════════════════════════════════════════════════════════════════════════

def parse_rule(
    text: Any,
    *,
    config: Optional[AlchemistConfig] = None,
    session: Optional[requests.Session] = None,
) -> dict[str, Any]:
    if not text or not str(text).strip():
        return {"error": "Rule text is required"}
    try:
        raw_text = complete(RULE_PROMPT.format(text=str(text).strip()), config=config, session=session)
    except (requests.RequestException, LLMError) as exc:
        return {"error": "Rule parsing failed", "details": str(exc)}
    except Exception as exc:
        return {"error": "Rule parsing failed", "details": f"Unexpected error: {exc}"}
    try:
        parsed = _extract_json_object(raw_text)
    except ValueError as exc:
        return {"error": "AI did not return valid JSON", "raw": raw_text, "details": str(exc)}
    if not isinstance(parsed, dict):
        return {"error": "AI did not return a JSON object", "raw": raw_text}
    return parsed
