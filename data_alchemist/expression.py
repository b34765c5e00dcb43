"""
expression.py — safe evaluation of model-generated filter expressions

The AI filter collaborator answers with a JavaScript-flavoured boolean
expression over a `row` object, e.g.

    row.ClientName && row.ClientName.toLowerCase().includes('corp')

Nothing here hands that text to eval/exec. The expression is normalised
(bare field names get a `row.` prefix, `item.` / `data.` become `row.`),
parsed by a small recursive-descent parser into a tree, and interpreted
directly with JavaScript-like truthiness. Anything outside the grammar is an
ExpressionError at compile time; anything that goes wrong while evaluating a
row makes that row evaluate to False.

Grammar (lowest precedence first):

    or         := and (("||" | "or") and)*
    and        := equality (("&&" | "and") equality)*
    equality   := relational (("===" | "!==" | "==" | "!=" | "=") relational)*
    relational := unary ((">" | "<" | ">=" | "<=" | "≥" | "≤") unary)*
    unary      := ("!" | "not" | "-") unary | postfix
    postfix    := primary ("." name [args] | "[" or "]" | args)*
    primary    := number | string | true | false | null | undefined
                | name | "(" or ")" | "[" [or ("," or)*] "]"
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Iterable, Mapping
from functools import lru_cache
from typing import Any, Optional

from data_alchemist.parsers import parse_number, parse_phase_set

MAX_EXPRESSION_LENGTH = 2000
MAX_NESTING = 64
SAMPLE_SIZE = 3


class ExpressionError(ValueError):
    """Raised when an expression cannot be parsed into the safe grammar."""


class _EvaluationError(Exception):
    pass


class _Undefined:
    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = _Undefined()
NAN = float("nan")

TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<number>\d+(?:\.\d+)?)
      | (?P<string>'(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*")
      | (?P<name>[A-Za-z_$][\w$]*)
      | (?P<op>===|!==|==|!=|>=|<=|&&|\|\||[><!()\[\].,=≥≤-])
    )
    """,
    re.VERBOSE,
)
ESCAPE_RE = re.compile(r"\\(.)")
ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}

STRING_LITERAL_RE = re.compile(r"""('(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*")""")
BARE_COMPARISON_RE = re.compile(r"(?<![\w.$])([A-Za-z_]\w*)(?=\s*(?:[><=!]|≥|≤))")
BARE_RECEIVER_RE = re.compile(r"(?<![\w.$])([A-Za-z_]\w*)(?=\.[A-Za-z_]\w*)")
ALIAS_RE = re.compile(r"(?<![\w.$])(?:item|data)\.")

RESERVED_NAMES = {
    "row", "item", "data", "true", "false", "null", "undefined",
    "and", "or", "not", "JSON", "Math", "Number", "String", "Array",
}

KEYWORD_LITERALS = {"true": True, "false": False, "null": None, "undefined": UNDEFINED}
EQUALITY_OPS = {"===", "!==", "==", "!=", "="}
RELATIONAL_OPS = {">", "<", ">=", "<=", "≥", "≤"}


# ══════════════════════════════════════════════════════════════════════════════
# NORMALISATION
# ══════════════════════════════════════════════════════════════════════════════

def _rewrite_outside_strings(expression: str, rewrite: Callable[[str], str]) -> str:
    parts = STRING_LITERAL_RE.split(expression)
    return "".join(part if index % 2 else rewrite(part) for index, part in enumerate(parts))


def _prefix_bare_names(segment: str) -> str:
    def prefix(match: re.Match) -> str:
        name = match.group(1)
        if name in RESERVED_NAMES or name in FUNCTIONS:
            return name
        return f"row.{name}"

    segment = BARE_COMPARISON_RE.sub(prefix, segment)
    return BARE_RECEIVER_RE.sub(prefix, segment)


def _replace_aliases(segment: str) -> str:
    return ALIAS_RE.sub("row.", segment)


def normalize_expression(expression: Any) -> str:
    normalized = str(expression or "").strip()
    if not normalized.startswith("row."):
        normalized = _rewrite_outside_strings(normalized, _prefix_bare_names)
    return _rewrite_outside_strings(normalized, _replace_aliases)


# ══════════════════════════════════════════════════════════════════════════════
# PARSER
# ══════════════════════════════════════════════════════════════════════════════

def _tokenize(text: str) -> list[tuple[str, Any]]:
    tokens: list[tuple[str, Any]] = []
    position = 0
    while position < len(text):
        if text[position:].strip() == "":
            break
        match = TOKEN_RE.match(text, position)
        if not match or match.end() == position:
            raise ExpressionError(f"Unexpected character at position {position}: {text[position:position + 10]!r}")
        position = match.end()
        if match.group("number") is not None:
            tokens.append(("number", float(match.group("number"))))
        elif match.group("string") is not None:
            body = match.group("string")[1:-1]
            tokens.append(("string", ESCAPE_RE.sub(lambda m: ESCAPES.get(m.group(1), m.group(1)), body)))
        elif match.group("name") is not None:
            tokens.append(("name", match.group("name")))
        else:
            tokens.append(("op", match.group("op")))
    tokens.append(("end", None))
    return tokens


class _Parser:
    def __init__(self, tokens: list[tuple[str, Any]]) -> None:
        self.tokens = tokens
        self.position = 0
        self.depth = 0

    def peek(self) -> tuple[str, Any]:
        return self.tokens[self.position]

    def advance(self) -> tuple[str, Any]:
        token = self.tokens[self.position]
        self.position += 1
        return token

    def accept(self, kind: str, value: Any = None) -> bool:
        token_kind, token_value = self.peek()
        if token_kind == kind and (value is None or token_value == value):
            self.position += 1
            return True
        return False

    def expect(self, kind: str, value: Any = None) -> tuple[str, Any]:
        token = self.peek()
        if token[0] != kind or (value is not None and token[1] != value):
            raise ExpressionError(f"Expected {value or kind}, found {token[1]!r}")
        return self.advance()

    def parse(self) -> tuple:
        node = self.parse_or()
        if self.peek()[0] != "end":
            raise ExpressionError(f"Unexpected token {self.peek()[1]!r}")
        return node

    def _nested(self) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise ExpressionError("Expression is nested too deeply")

    def parse_or(self) -> tuple:
        self._nested()
        node = self.parse_and()
        while self.accept("op", "||") or self.accept("name", "or"):
            node = ("logical", "||", node, self.parse_and())
        self.depth -= 1
        return node

    def parse_and(self) -> tuple:
        node = self.parse_equality()
        while self.accept("op", "&&") or self.accept("name", "and"):
            node = ("logical", "&&", node, self.parse_equality())
        return node

    def parse_equality(self) -> tuple:
        node = self.parse_relational()
        while self.peek()[0] == "op" and self.peek()[1] in EQUALITY_OPS:
            operator = self.advance()[1]
            node = ("binary", operator, node, self.parse_relational())
        return node

    def parse_relational(self) -> tuple:
        node = self.parse_unary()
        while self.peek()[0] == "op" and self.peek()[1] in RELATIONAL_OPS:
            operator = {"≥": ">=", "≤": "<="}.get(self.advance()[1], self.tokens[self.position - 1][1])
            node = ("binary", operator, node, self.parse_unary())
        return node

    def parse_unary(self) -> tuple:
        if self.accept("op", "!") or self.accept("name", "not"):
            self._nested()
            node = ("unary", "!", self.parse_unary())
            self.depth -= 1
            return node
        if self.accept("op", "-"):
            self._nested()
            node = ("unary", "-", self.parse_unary())
            self.depth -= 1
            return node
        return self.parse_postfix()

    def parse_arguments(self) -> list[tuple]:
        arguments: list[tuple] = []
        if self.accept("op", ")"):
            return arguments
        while True:
            arguments.append(self.parse_or())
            if self.accept("op", ")"):
                return arguments
            self.expect("op", ",")

    def parse_postfix(self) -> tuple:
        node = self.parse_primary()
        while True:
            if self.accept("op", "."):
                name = self.expect("name")[1]
                if self.accept("op", "("):
                    node = ("method", node, name, self.parse_arguments())
                else:
                    node = ("member", node, ("literal", name))
            elif self.accept("op", "["):
                key = self.parse_or()
                self.expect("op", "]")
                node = ("member", node, key)
            elif self.accept("op", "("):
                if node[0] != "name" or node[1] not in FUNCTIONS:
                    raise ExpressionError("Only built-in helper functions can be called")
                node = ("call", node[1], self.parse_arguments())
            else:
                return node

    def parse_primary(self) -> tuple:
        kind, value = self.advance()
        if kind == "number" or kind == "string":
            return ("literal", value)
        if kind == "name":
            if value in KEYWORD_LITERALS:
                return ("literal", KEYWORD_LITERALS[value])
            return ("name", value)
        if kind == "op" and value == "(":
            node = self.parse_or()
            self.expect("op", ")")
            return node
        if kind == "op" and value == "[":
            items: list[tuple] = []
            if not self.accept("op", "]"):
                while True:
                    items.append(self.parse_or())
                    if self.accept("op", "]"):
                        break
                    self.expect("op", ",")
            return ("array", items)
        raise ExpressionError(f"Unexpected token {value!r}")


@lru_cache(maxsize=256)
def parse_expression(expression: str) -> tuple:
    """Parse an already-normalised expression into a tree of tuples."""
    if not expression or not expression.strip():
        raise ExpressionError("Expression is empty")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError("Expression is too long")
    return _Parser(_tokenize(expression)).parse()


# ══════════════════════════════════════════════════════════════════════════════
# JAVASCRIPT-LIKE VALUE SEMANTICS
# ══════════════════════════════════════════════════════════════════════════════

def _is_nullish(value: Any) -> bool:
    return value is None or value is UNDEFINED


def _truthy(value: Any) -> bool:
    if _is_nullish(value) or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if value is UNDEFINED:
        return NAN
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        if value.strip() == "":
            return 0.0
        number = parse_number(value)
        return NAN if number is None else number
    return NAN


def _to_text(value: Any) -> str:
    if value is None:
        return "null"
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if value.is_integer():
            return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join("" if _is_nullish(item) else _to_text(item) for item in value)
    return str(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _equal(left: Any, right: Any, strict: bool) -> bool:
    if _is_nullish(left) or _is_nullish(right):
        if strict:
            return left is right
        return _is_nullish(left) and _is_nullish(right)
    if isinstance(left, bool) or isinstance(right, bool):
        if strict and not (isinstance(left, bool) and isinstance(right, bool)):
            return False
        return _to_number(left) == _to_number(right)
    # Uploaded rows hold numbers as text, so "2" and 2 compare equal.
    if _is_number(left) or _is_number(right):
        return _to_number(left) == _to_number(right)
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    return left is right


def _compare(operator: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    else:
        a, b = _to_number(left), _to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if operator == ">":
        return a > b
    if operator == "<":
        return a < b
    if operator == ">=":
        return a >= b
    return a <= b


def _parse_int(value: Any, *_: Any) -> float:
    match = re.match(r"^\s*([+-]?\d+)", _to_text(value))
    return float(int(match.group(1))) if match else NAN


def _parse_float(value: Any) -> float:
    match = re.match(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)", _to_text(value))
    return float(match.group(1)) if match else NAN


def _in_phase(value: Any, phase: Any) -> bool:
    number = _to_number(phase)
    if math.isnan(number):
        return False
    return parse_phase_set(value).contains(int(number))


def _phases_overlap(value: Any, start: Any, end: Any) -> bool:
    low, high = _to_number(start), _to_number(end)
    if math.isnan(low) or math.isnan(high):
        return False
    return parse_phase_set(value).overlaps(int(low), int(high))


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "parseInt": _parse_int,
    "parseFloat": _parse_float,
    "Number": _to_number,
    "String": _to_text,
    "Boolean": _truthy,
    "inPhase": _in_phase,
    "phasesOverlap": _phases_overlap,
}


def _js_substring(text: str, start: Any, end: Any = UNDEFINED) -> str:
    length = len(text)
    begin = min(max(int(_to_number(start) or 0), 0), length)
    finish = length if end is UNDEFINED else min(max(int(_to_number(end) or 0), 0), length)
    if begin > finish:
        begin, finish = finish, begin
    return text[begin:finish]


def _call_method(target: Any, name: str, arguments: list[Any]) -> Any:
    if _is_nullish(target):
        raise _EvaluationError(f"Cannot read properties of {_to_text(target)} (reading '{name}')")
    first = arguments[0] if arguments else UNDEFINED

    if name == "toString":
        return _to_text(target)

    if isinstance(target, (list, tuple)):
        if name == "includes":
            return any(_equal(item, first, strict=False) for item in target)
        if name == "indexOf":
            for index, item in enumerate(target):
                if _equal(item, first, strict=False):
                    return float(index)
            return -1.0
        if name == "join":
            separator = "," if first is UNDEFINED else _to_text(first)
            return separator.join("" if _is_nullish(item) else _to_text(item) for item in target)
        raise _EvaluationError(f"Unsupported array method {name}")

    text = _to_text(target)
    if name == "includes":
        return _to_text(first) in text
    if name == "startsWith":
        return text.startswith(_to_text(first))
    if name == "endsWith":
        return text.endswith(_to_text(first))
    if name == "toLowerCase":
        return text.lower()
    if name == "toUpperCase":
        return text.upper()
    if name == "trim":
        return text.strip()
    if name == "indexOf":
        return float(text.find(_to_text(first)))
    if name == "substring":
        return _js_substring(text, first, arguments[1] if len(arguments) > 1 else UNDEFINED)
    if name == "slice":
        start = int(_to_number(first)) if first is not UNDEFINED else 0
        if len(arguments) > 1:
            return text[start:int(_to_number(arguments[1]))]
        return text[start:]
    if name == "split":
        if first is UNDEFINED:
            return [text]
        separator = _to_text(first)
        return list(text) if separator == "" else text.split(separator)
    raise _EvaluationError(f"Unsupported method {name}")


def _get_member(target: Any, key: Any) -> Any:
    if _is_nullish(target):
        raise _EvaluationError(f"Cannot read properties of {_to_text(target)} (reading '{_to_text(key)}')")
    if isinstance(target, Mapping):
        return target.get(_to_text(key), UNDEFINED)
    if isinstance(target, (str, list, tuple)):
        if key == "length":
            return float(len(target))
        number = _to_number(key)
        if not math.isnan(number) and number.is_integer() and 0 <= number < len(target):
            return target[int(number)]
    return UNDEFINED


def _evaluate(node: tuple, row: Mapping[str, Any]) -> Any:
    kind = node[0]
    if kind == "literal":
        return node[1]
    if kind == "name":
        if node[1] == "row":
            return row
        raise _EvaluationError(f"{node[1]} is not defined")
    if kind == "array":
        return [_evaluate(item, row) for item in node[1]]
    if kind == "member":
        return _get_member(_evaluate(node[1], row), _evaluate(node[2], row))
    if kind == "method":
        target = _evaluate(node[1], row)
        return _call_method(target, node[2], [_evaluate(argument, row) for argument in node[3]])
    if kind == "call":
        return FUNCTIONS[node[1]](*[_evaluate(argument, row) for argument in node[2]])
    if kind == "unary":
        operand = _evaluate(node[2], row)
        return not _truthy(operand) if node[1] == "!" else -_to_number(operand)
    if kind == "logical":
        left = _evaluate(node[2], row)
        if node[1] == "&&":
            return _evaluate(node[3], row) if _truthy(left) else left
        return left if _truthy(left) else _evaluate(node[3], row)
    if kind == "binary":
        operator = node[1]
        left, right = _evaluate(node[2], row), _evaluate(node[3], row)
        if operator in {"===", "==", "="}:
            return _equal(left, right, strict=operator == "===")
        if operator in {"!==", "!="}:
            return not _equal(left, right, strict=operator == "!==")
        return _compare(operator, left, right)
    raise _EvaluationError(f"Unknown node {kind}")


# ══════════════════════════════════════════════════════════════════════════════
# PUBLIC API
# ══════════════════════════════════════════════════════════════════════════════

def compile_expression(expression: Any) -> Callable[[Any], bool]:
    """
    Normalise and parse expression, returning a row predicate.

    Raises ExpressionError when the text is outside the grammar. The returned
    predicate never raises and never mutates the row it is given.
    """
    tree = parse_expression(normalize_expression(expression))

    def predicate(row: Any) -> bool:
        snapshot = dict(row) if isinstance(row, Mapping) else {}
        try:
            return _truthy(_evaluate(tree, snapshot))
        except Exception:
            return False

    return predicate


def safe_evaluate_expression(expression: Any, row: Any) -> bool:
    try:
        predicate = compile_expression(expression)
    except Exception:
        return False
    return predicate(row)


def filter_rows(expression: Any, rows: Iterable[Any]) -> list[Any]:
    predicate = compile_expression(expression)
    return [row for row in rows if predicate(row)]


def test_expression(expression: Any, sample_rows: Optional[Iterable[Any]]) -> tuple[bool, Optional[str]]:
    try:
        tree = parse_expression(normalize_expression(expression))
    except ExpressionError as exc:
        return False, f"Expression test failed: {exc}"
    for row in list(sample_rows or [])[:SAMPLE_SIZE]:
        snapshot = dict(row) if isinstance(row, Mapping) else {}
        try:
            _evaluate(tree, snapshot)
        except _EvaluationError:
            # Missing fields on individual rows are expected; the row is simply excluded.
            continue
        except Exception as exc:
            return False, f"Expression test failed: {exc}"
    return True, None


# Not a test case; keeps pytest from collecting the helper above.
test_expression.__test__ = False
