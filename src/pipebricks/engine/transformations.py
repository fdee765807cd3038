"""
Record transformation expressions.

Each pipeline transformation is a one-line expression, compiled once per run
and applied to every record in declared order. Two statement forms exist:

    dest = <expr>            assign the value of an expression to ``dest``
    FUNC(field, args...)     apply FUNC to ``field`` in place

Expressions are built from quoted literals (``'x'`` or ``"x"``), numbers,
field references (``name``, ``a.b`` or ``[name with spaces]``), function
calls and the binary operators ``+ - * /`` with the usual precedence.
``+`` adds numbers and concatenates anything else; division by zero yields
0.0.

Example:
    >>> compiled = compile_transformations(["full = CONCAT(first, ' ', last)", "UPPER(full)"])
    >>> outcome = apply_transformations([{"first": "ada", "last": "lovelace"}], compiled)
    >>> outcome.records[0]["full"]
    'ADA LOVELACE'
"""

from __future__ import annotations

import base64
import hashlib
import math
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote, unquote

from pipebricks.connectors.watermark import parse_datetime
from pipebricks.core.contracts import Record
from pipebricks.core.exceptions import TransformationError, ValidationError
from pipebricks.core.logger import get_logger
from pipebricks.core.utils import utcnow
from pipebricks.models.run_log import RecordError

log = get_logger(__name__)

# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<number>\d+(?:\.\d+)?)
      | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<bracket>\[[^\]]+\])
      | (?P<name>[A-Za-z_][\w.]*)
      | (?P<op>[-+*/(),=])
    )""",
    re.VERBOSE,
)

Token = Tuple[str, str]


def _tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if m is None or m.end() == pos:
            raise ValidationError(f"Unexpected character at position {pos} in {text!r}")
        kind = m.lastgroup or ""
        value = m.group(kind)
        if kind == "string":
            value = re.sub(r"\\(.)", r"\1", value[1:-1])
        elif kind == "bracket":
            kind, value = "name", value[1:-1].strip()
        tokens.append((kind, value))
        pos = m.end()
    return tokens


# ---------------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------------


class Node:
    def evaluate(self, record: Record) -> Any:  # pragma: no cover
        raise NotImplementedError


@dataclass(frozen=True)
class Literal(Node):
    value: Any

    def evaluate(self, record: Record) -> Any:
        return self.value


@dataclass(frozen=True)
class FieldRef(Node):
    name: str

    def evaluate(self, record: Record) -> Any:
        if self.name in record:
            return record[self.name]
        # Dotted names reach into nested objects
        current: Any = record
        for part in self.name.split("."):
            if not isinstance(current, dict) or part not in current:
                return None
            current = current[part]
        return current


@dataclass(frozen=True)
class Call(Node):
    name: str
    args: Tuple[Node, ...]

    def evaluate(self, record: Record) -> Any:
        fn = FUNCTIONS[self.name].fn
        return fn(*(a.evaluate(record) for a in self.args))


@dataclass(frozen=True)
class BinOp(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, record: Record) -> Any:
        return _binary(self.op, self.left.evaluate(record), self.right.evaluate(record))


class _Parser:
    def __init__(self, tokens: List[Token], text: str):
        self.tokens = tokens
        self.text = text
        self.pos = 0

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> Token:
        tok = self._peek()
        if tok is None:
            raise ValidationError(f"Unexpected end of expression {self.text!r}")
        self.pos += 1
        return tok

    def _expect(self, value: str) -> None:
        kind, got = self._next()
        if kind != "op" or got != value:
            raise ValidationError(f"Expected {value!r} but found {got!r} in {self.text!r}")

    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def expression(self) -> Node:
        node = self.term()
        while self._peek() in (("op", "+"), ("op", "-")):
            _, op = self._next()
            node = BinOp(op, node, self.term())
        return node

    def term(self) -> Node:
        node = self.factor()
        while self._peek() in (("op", "*"), ("op", "/")):
            _, op = self._next()
            node = BinOp(op, node, self.factor())
        return node

    def factor(self) -> Node:
        kind, value = self._next()
        if kind == "number":
            return Literal(float(value) if "." in value else int(value))
        if kind == "string":
            return Literal(value)
        if kind == "op" and value == "-":
            return BinOp("-", Literal(0), self.factor())
        if kind == "op" and value == "(":
            node = self.expression()
            self._expect(")")
            return node
        if kind == "name":
            tok = self._peek()
            if tok == ("op", "("):
                return self.call(value)
            return FieldRef(value)
        raise ValidationError(f"Unexpected {value!r} in {self.text!r}")

    def call(self, name: str) -> Call:
        fname = name.upper()
        spec = FUNCTIONS.get(fname)
        if spec is None:
            raise ValidationError(f"Unsupported function {name!r} in {self.text!r}")
        self._expect("(")
        args: List[Node] = []
        if self._peek() != ("op", ")"):
            args.append(self.expression())
            while self._peek() == ("op", ","):
                self.pos += 1
                args.append(self.expression())
        self._expect(")")
        if len(args) < spec.min_args or (spec.max_args is not None and len(args) > spec.max_args):
            raise ValidationError(f"{fname} takes {spec.arity_text} argument(s), got {len(args)} in {self.text!r}")
        if fname == "REGEX_REPLACE" and isinstance(args[1], Literal) and isinstance(args[1].value, str):
            try:
                re.compile(args[1].value)
            except re.error as exc:
                raise ValidationError(f"Invalid pattern {args[1].value!r} in {self.text!r}: {exc}") from exc
        return Call(fname, tuple(args))


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

_INT_TEXT = re.compile(r"^[+-]?\d+$")


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if _INT_TEXT.match(text):
            return int(text)
        try:
            return float(text)
        except ValueError:
            return None
    return None


def _require_number(value: Any, fname: str) -> float:
    num = _number(value)
    if num is None:
        raise ValueError(f"{fname} expects a number, got {value!r}")
    return num


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _binary(op: str, left: Any, right: Any) -> Any:
    ln, rn = _number(left), _number(right)
    if op == "+":
        if ln is not None and rn is not None:
            return ln + rn
        return _text(left) + _text(right)
    if ln is None or rn is None:
        raise ValueError(f"operator {op!r} needs numbers, got {left!r} and {right!r}")
    if op == "-":
        return ln - rn
    if op == "*":
        return ln * rn
    if rn == 0:
        return 0.0
    return ln / rn


def _date_value(value: Any, fname: str) -> datetime:
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError(f"{fname} expects a date, got {value!r}")
    return parsed


def _is_date_only(value: Any) -> bool:
    if isinstance(value, datetime):
        return False
    return isinstance(value, date) or (isinstance(value, str) and len(value.strip()) == 10)


def _nullable(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Return None when the first argument is None."""

    def wrapper(value: Any, *args: Any) -> Any:
        if value is None:
            return None
        return fn(value, *args)

    return wrapper


# ---------------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------------


def _substring(value: Any, start: Any, length: Any = None) -> str:
    text = _text(value)
    begin = max(int(_require_number(start, "SUBSTRING")) - 1, 0)
    if length is None:
        return text[begin:]
    return text[begin : begin + max(int(_require_number(length, "SUBSTRING")), 0)]


def _split(value: Any, delimiter: Any, index: Any) -> Optional[str]:
    parts = _text(value).split(_text(delimiter))
    i = int(_require_number(index, "SPLIT"))
    if i < 1 or i > len(parts):
        return None
    return parts[i - 1]


def _pad(left: bool) -> Callable[..., str]:
    def pad(value: Any, width: Any, fill: Any = " ") -> str:
        char = _text(fill)[:1] or " "
        size = int(_require_number(width, "PAD"))
        return _text(value).rjust(size, char) if left else _text(value).ljust(size, char)

    return pad


def _normalize(value: Any) -> str:
    decomposed = unicodedata.normalize("NFKD", _text(value))
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return " ".join(stripped.split())


def _slug(value: Any) -> str:
    return re.sub(r"[^a-z0-9]+", "-", _normalize(value).lower()).strip("-")


def _round(value: Any, digits: Any = 0) -> float:
    return round(_require_number(value, "ROUND"), int(_require_number(digits, "ROUND")))


def _mod(value: Any, divisor: Any) -> float:
    d = _require_number(divisor, "MOD")
    if d == 0:
        return 0
    return _require_number(value, "MOD") % d


def _to_int(value: Any) -> int:
    return int(_require_number(value, "TO_INT"))


def _to_float(value: Any) -> float:
    return float(_require_number(value, "TO_FLOAT"))


_TRUE = {"true", "1", "yes", "y", "on"}
_FALSE = {"false", "0", "no", "n", "off", ""}


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = _text(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"TO_BOOL cannot convert {value!r}")


def _format_date(value: Any, fmt: Any) -> str:
    return _date_value(value, "FORMAT_DATE").strftime(_text(fmt))


def _add_days(value: Any, days: Any) -> str:
    shifted = _date_value(value, "ADD_DAYS") + timedelta(days=_require_number(days, "ADD_DAYS"))
    if _is_date_only(value):
        return shifted.date().isoformat()
    return shifted.isoformat()


def _date_diff(start: Any, end: Any) -> int:
    """Whole days from ``start`` to ``end``."""
    return (_date_value(end, "DATE_DIFF") - _date_value(start, "DATE_DIFF")).days


def _coalesce(*values: Any) -> Any:
    for v in values:
        if v is not None and v != "":
            return v
    return None


def _default(value: Any, fallback: Any) -> Any:
    return fallback if value is None or value == "" else value


def _nullif(value: Any, other: Any) -> Any:
    return None if _text(value) == _text(other) else value


def _digest(algorithm: str) -> Callable[[Any], str]:
    def digest(value: Any) -> str:
        return hashlib.new(algorithm, _text(value).encode("utf-8")).hexdigest()

    return digest


@dataclass(frozen=True)
class FunctionSpec:
    fn: Callable[..., Any]
    min_args: int
    max_args: Optional[int]

    @property
    def arity_text(self) -> str:
        if self.max_args is None:
            return f"at least {self.min_args}"
        if self.min_args == self.max_args:
            return str(self.min_args)
        return f"{self.min_args}-{self.max_args}"


FUNCTIONS: Dict[str, FunctionSpec] = {
    # string
    "UPPER": FunctionSpec(_nullable(lambda v: _text(v).upper()), 1, 1),
    "LOWER": FunctionSpec(_nullable(lambda v: _text(v).lower()), 1, 1),
    "TRIM": FunctionSpec(_nullable(lambda v: _text(v).strip()), 1, 1),
    "LTRIM": FunctionSpec(_nullable(lambda v: _text(v).lstrip()), 1, 1),
    "RTRIM": FunctionSpec(_nullable(lambda v: _text(v).rstrip()), 1, 1),
    "REPLACE": FunctionSpec(_nullable(lambda v, old, new: _text(v).replace(_text(old), _text(new))), 3, 3),
    "REGEX_REPLACE": FunctionSpec(_nullable(lambda v, pat, rep: re.sub(_text(pat), _text(rep), _text(v))), 3, 3),
    "REVERSE": FunctionSpec(_nullable(lambda v: _text(v)[::-1]), 1, 1),
    "LEFT": FunctionSpec(_nullable(lambda v, n: _text(v)[: max(int(_require_number(n, "LEFT")), 0)]), 2, 2),
    "RIGHT": FunctionSpec(
        _nullable(lambda v, n: _text(v)[-int(_require_number(n, "RIGHT")):] if int(_require_number(n, "RIGHT")) > 0 else ""),
        2,
        2,
    ),
    "SUBSTRING": FunctionSpec(_nullable(_substring), 2, 3),
    "LEN": FunctionSpec(lambda v: len(_text(v)), 1, 1),
    "LENGTH": FunctionSpec(lambda v: len(_text(v)), 1, 1),
    "PAD_LEFT": FunctionSpec(_pad(left=True), 2, 3),
    "PAD_RIGHT": FunctionSpec(_pad(left=False), 2, 3),
    "SPLIT": FunctionSpec(_nullable(_split), 3, 3),
    "NORMALIZE": FunctionSpec(_nullable(_normalize), 1, 1),
    "TITLE_CASE": FunctionSpec(_nullable(lambda v: " ".join(w.capitalize() for w in _text(v).split())), 1, 1),
    "SLUG": FunctionSpec(_nullable(_slug), 1, 1),
    "CONCAT": FunctionSpec(lambda *vs: "".join(_text(v) for v in vs), 1, None),
    # numeric
    "ROUND": FunctionSpec(_nullable(_round), 1, 2),
    "CEIL": FunctionSpec(_nullable(lambda v: math.ceil(_require_number(v, "CEIL"))), 1, 1),
    "CEILING": FunctionSpec(_nullable(lambda v: math.ceil(_require_number(v, "CEILING"))), 1, 1),
    "FLOOR": FunctionSpec(_nullable(lambda v: math.floor(_require_number(v, "FLOOR"))), 1, 1),
    "ABS": FunctionSpec(_nullable(lambda v: abs(_require_number(v, "ABS"))), 1, 1),
    "MOD": FunctionSpec(_nullable(_mod), 2, 2),
    # conversion
    "TO_INT": FunctionSpec(_nullable(_to_int), 1, 1),
    "TO_FLOAT": FunctionSpec(_nullable(_to_float), 1, 1),
    "TO_STRING": FunctionSpec(lambda v: _text(v), 1, 1),
    "TO_BOOL": FunctionSpec(_nullable(_to_bool), 1, 1),
    # date
    "NOW": FunctionSpec(lambda: utcnow().isoformat(), 0, 0),
    "TODAY": FunctionSpec(lambda: utcnow().date().isoformat(), 0, 0),
    "FORMAT_DATE": FunctionSpec(_nullable(_format_date), 2, 2),
    "ADD_DAYS": FunctionSpec(_nullable(_add_days), 2, 2),
    "DATE_DIFF": FunctionSpec(_date_diff, 2, 2),
    "YEAR": FunctionSpec(_nullable(lambda v: _date_value(v, "YEAR").year), 1, 1),
    "MONTH": FunctionSpec(_nullable(lambda v: _date_value(v, "MONTH").month), 1, 1),
    "DAY": FunctionSpec(_nullable(lambda v: _date_value(v, "DAY").day), 1, 1),
    # null handling
    "COALESCE": FunctionSpec(_coalesce, 1, None),
    "DEFAULT": FunctionSpec(_default, 2, 2),
    "NULLIF": FunctionSpec(_nullif, 2, 2),
    # encoding
    "MD5": FunctionSpec(_nullable(_digest("md5")), 1, 1),
    "SHA256": FunctionSpec(_nullable(_digest("sha256")), 1, 1),
    "BASE64_ENCODE": FunctionSpec(_nullable(lambda v: base64.b64encode(_text(v).encode("utf-8")).decode("ascii")), 1, 1),
    "BASE64_DECODE": FunctionSpec(_nullable(lambda v: base64.b64decode(_text(v), validate=True).decode("utf-8")), 1, 1),
    "URL_ENCODE": FunctionSpec(_nullable(lambda v: quote(_text(v), safe="")), 1, 1),
    "URL_DECODE": FunctionSpec(_nullable(lambda v: unquote(_text(v))), 1, 1),
}


# ---------------------------------------------------------------------------
# Compilation and application
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompiledTransformation:
    expression: str
    target: str
    node: Node

    def apply(self, record: Record) -> None:
        try:
            record[self.target] = self.node.evaluate(record)
        except (ValueError, TypeError, ArithmeticError, UnicodeDecodeError, re.error) as exc:
            raise TransformationError(self.expression, str(exc)) from exc


def compile_transformation(expression: str) -> CompiledTransformation:
    text = (expression or "").strip()
    if not text:
        raise ValidationError("Empty transformation expression")
    tokens = _tokenize(text)
    parser = _Parser(tokens, text)

    if len(tokens) >= 2 and tokens[0][0] == "name" and tokens[1] == ("op", "="):
        target = tokens[0][1]
        parser.pos = 2
        node = parser.expression()
    else:
        node = parser.expression()
        if not isinstance(node, Call) or not node.args or not isinstance(node.args[0], FieldRef):
            raise ValidationError(
                f"Unsupported transformation {text!r}; expected 'dest = expr' or 'FUNC(field, ...)'"
            )
        target = node.args[0].name

    if not parser.at_end():
        raise ValidationError(f"Unexpected trailing input in {text!r}")
    return CompiledTransformation(expression=text, target=target, node=node)


def compile_transformations(expressions: Iterable[str]) -> List[CompiledTransformation]:
    return [compile_transformation(e) for e in expressions]


@dataclass
class TransformOutcome:
    records: List[Record] = field(default_factory=list)
    errors: List[RecordError] = field(default_factory=list)


def apply_transformations(
    records: Sequence[Record], compiled: Sequence[CompiledTransformation]
) -> TransformOutcome:
    """Apply ``compiled`` to copies of ``records``.

    A record whose transformation fails is left out of ``records`` and
    reported in ``errors``; the rest continue.
    """
    outcome = TransformOutcome()
    if not compiled:
        outcome.records = [dict(r) for r in records]
        return outcome
    for index, source in enumerate(records):
        record = dict(source)
        try:
            for step in compiled:
                step.apply(record)
        except TransformationError as exc:
            log.warning(f"Skipping record {index}: {exc}")
            outcome.errors.append(RecordError(index=index, message=str(exc), record=dict(source)))
            continue
        outcome.records.append(record)
    return outcome
