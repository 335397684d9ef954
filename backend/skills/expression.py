"""
Metric expression language.

    IF(status = "Done", amount, 0)
    price * quantity - discount
    SUM(revenue) / COUNT(order_id)

Expressions that reference a column outside an aggregate call are evaluated
row by row and the row results are summed (null rows contribute zero).
Expressions made only of literals and aggregate calls are evaluated once.
Arithmetic never raises on data: non-numeric operands read as zero and
division by zero yields zero.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from core.errors import ExpressionParseError, MissingColumnError
from core.utils import Number, coerce_number, is_null, round4, stringify_cell, to_number
from skills import metric_calculator

Rows = Sequence[Sequence[Any]]

# Aggregate functions taking one column argument, mapped to calculator operations.
AGGREGATE_FUNCTIONS: Dict[str, str] = {
    "SUM": "sum",
    "MEAN": "mean",
    "AVG": "mean",
    "AVERAGE": "mean",
    "MIN": "min",
    "MINIMUM": "min",
    "MAX": "max",
    "MAXIMUM": "max",
    "STDEV": "stdev",
    "STDDEV": "stdev",
    "COUNT": "count",
}
DISTINCT_FUNCTIONS = {"COUNT_DISTINCT", "COUNTDISTINCT"}
TEXT_FUNCTIONS = {"TEXT"}
ROW_MODES = {"sum", "mean"}

KEYWORDS = {"AND", "OR", "NOT", "TRUE", "FALSE", "NULL"}
COMPARISONS = {">", "<", ">=", "<=", "=", "==", "!=", "<>"}


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Token:
    kind: str  # NUMBER, STRING, IDENT, KEYWORD, OP, END
    value: Any
    pos: int


_NUMBER = re.compile(r"\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?")
_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_OPERATORS = (">=", "<=", "==", "!=", "<>", ">", "<", "=", "+", "-", "*", "/", "(", ")", ",")
_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\"}


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch.isspace():
            i += 1
            continue

        m = _NUMBER.match(text, i)
        if m:
            raw = m.group(0)
            value: Number = float(raw) if any(c in raw for c in ".eE") else int(raw)
            tokens.append(Token("NUMBER", value, i))
            i = m.end()
            continue

        if ch in ("'", '"'):
            start = i
            i += 1
            chars: List[str] = []
            while i < len(text) and text[i] != ch:
                if text[i] == "\\" and i + 1 < len(text):
                    i += 1
                    chars.append(_ESCAPES.get(text[i], text[i]))
                else:
                    chars.append(text[i])
                i += 1
            if i >= len(text):
                raise ExpressionParseError(f"Unclosed string literal at position {start}")
            i += 1
            tokens.append(Token("STRING", "".join(chars), start))
            continue

        if ch in ("`", "["):
            # Quoted column name: `order total` or [order total]
            closing = "`" if ch == "`" else "]"
            end = text.find(closing, i + 1)
            if end == -1:
                raise ExpressionParseError(f"Unclosed column reference at position {i}")
            tokens.append(Token("IDENT", text[i + 1:end], i))
            i = end + 1
            continue

        m = _IDENT.match(text, i)
        if m:
            word = m.group(0)
            if word.upper() in KEYWORDS:
                tokens.append(Token("KEYWORD", word.upper(), i))
            else:
                tokens.append(Token("IDENT", word, i))
            i = m.end()
            continue

        for op in _OPERATORS:
            if text.startswith(op, i):
                tokens.append(Token("OP", op, i))
                i += len(op)
                break
        else:
            raise ExpressionParseError(f"Unexpected character '{ch}' at position {i}")

    tokens.append(Token("END", None, len(text)))
    return tokens


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Column:
    name: str


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...]


class _Parser:
    def __init__(self, tokens: List[Token]) -> None:
        self.tokens = tokens
        self.index = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _is_op(self, *ops: str) -> bool:
        return self.current.kind == "OP" and self.current.value in ops

    def _is_keyword(self, word: str) -> bool:
        return self.current.kind == "KEYWORD" and self.current.value == word

    def _expect_op(self, op: str) -> None:
        if not self._is_op(op):
            raise ExpressionParseError(f"Expected '{op}' at position {self.current.pos}")
        self._advance()

    def parse(self) -> Any:
        if self.current.kind == "END":
            raise ExpressionParseError("Metric expression is required")
        node = self._or()
        if self.current.kind != "END":
            raise ExpressionParseError(
                f"Unexpected token '{self.current.value}' at position {self.current.pos}"
            )
        return node

    def _or(self) -> Any:
        node = self._and()
        while self._is_keyword("OR"):
            self._advance()
            node = Binary("OR", node, self._and())
        return node

    def _and(self) -> Any:
        node = self._not()
        while self._is_keyword("AND"):
            self._advance()
            node = Binary("AND", node, self._not())
        return node

    def _not(self) -> Any:
        if self._is_keyword("NOT"):
            self._advance()
            return Unary("NOT", self._not())
        return self._comparison()

    def _comparison(self) -> Any:
        node = self._additive()
        if self.current.kind == "OP" and self.current.value in COMPARISONS:
            op = self._advance().value
            node = Binary(op, node, self._additive())
        return node

    def _additive(self) -> Any:
        node = self._multiplicative()
        while self._is_op("+", "-"):
            op = self._advance().value
            node = Binary(op, node, self._multiplicative())
        return node

    def _multiplicative(self) -> Any:
        node = self._unary()
        while self._is_op("*", "/"):
            op = self._advance().value
            node = Binary(op, node, self._unary())
        return node

    def _unary(self) -> Any:
        if self._is_op("-", "+"):
            op = self._advance().value
            return Unary(op, self._unary())
        return self._primary()

    def _primary(self) -> Any:
        token = self.current
        if token.kind in ("NUMBER", "STRING"):
            self._advance()
            return Literal(token.value)
        if token.kind == "KEYWORD" and token.value in ("TRUE", "FALSE", "NULL"):
            self._advance()
            return Literal({"TRUE": 1, "FALSE": 0, "NULL": None}[token.value])
        if token.kind == "IDENT":
            self._advance()
            if self._is_op("("):
                return self._call(token)
            return Column(token.value)
        if self._is_op("("):
            self._advance()
            node = self._or()
            self._expect_op(")")
            return node
        if token.kind == "END":
            raise ExpressionParseError("Unexpected end of expression")
        raise ExpressionParseError(f"Unexpected token '{token.value}' at position {token.pos}")

    def _call(self, name_token: Token) -> Call:
        self._expect_op("(")
        args: List[Any] = []
        if not self._is_op(")"):
            args.append(self._or())
            while self._is_op(","):
                self._advance()
                args.append(self._or())
        self._expect_op(")")
        call = Call(name_token.value.upper(), tuple(args))
        _check_call(call, name_token.pos)
        return call


def _check_call(call: Call, pos: int) -> None:
    name, args = call.name, call.args
    if name == "IF":
        if len(args) not in (2, 3):
            raise ExpressionParseError(
                "IF function expects 2 or 3 arguments: IF(condition, value_if_true, [value_if_false])"
            )
        return
    if name in DISTINCT_FUNCTIONS:
        if len(args) != 1:
            raise ExpressionParseError("COUNT_DISTINCT function expects exactly 1 argument")
        return
    if name in AGGREGATE_FUNCTIONS or name in TEXT_FUNCTIONS:
        if len(args) != 1 or not isinstance(args[0], Column):
            raise ExpressionParseError(f"Function {name} expects exactly 1 argument (column name)")
        return
    supported = ", ".join(sorted(set(AGGREGATE_FUNCTIONS) | DISTINCT_FUNCTIONS | TEXT_FUNCTIONS | {"IF"}))
    raise ExpressionParseError(f"Unknown function {name} at position {pos}. Supported functions: {supported}")


def parse_expression(text: str) -> Any:
    if not isinstance(text, str) or not text.strip():
        raise ExpressionParseError("Metric expression is required")
    return _Parser(tokenize(text)).parse()


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def _walk(node: Any) -> Iterator[Any]:
    yield node
    if isinstance(node, Unary):
        yield from _walk(node.operand)
    elif isinstance(node, Binary):
        yield from _walk(node.left)
        yield from _walk(node.right)
    elif isinstance(node, Call):
        for arg in node.args:
            yield from _walk(arg)


def referenced_columns(node: Any) -> Set[str]:
    return {n.name for n in _walk(node) if isinstance(n, Column)}


def is_row_wise(node: Any) -> bool:
    """True when a column is read outside an aggregate call."""
    if isinstance(node, Column):
        return True
    if isinstance(node, Literal):
        return False
    if isinstance(node, Unary):
        return is_row_wise(node.operand)
    if isinstance(node, Binary):
        return is_row_wise(node.left) or is_row_wise(node.right)
    if isinstance(node, Call):
        if node.name in AGGREGATE_FUNCTIONS or node.name in DISTINCT_FUNCTIONS:
            return False
        return any(is_row_wise(arg) for arg in node.args)
    return False


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def _truthy(value: Any) -> bool:
    if is_null(value):
        return False
    number = to_number(value)
    if number is not None:
        return number != 0
    return bool(str(value))


def _compare(op: str, left: Any, right: Any) -> Optional[int]:
    if is_null(left) or is_null(right):
        both = is_null(left) and is_null(right)
        if op in ("=", "=="):
            return int(both)
        if op in ("!=", "<>"):
            return int(not both)
        return 0

    ln, rn = to_number(left), to_number(right)
    if ln is not None and rn is not None:
        a, b = ln, rn
    else:
        a, b = stringify_cell(left), stringify_cell(right)

    if op in ("=", "=="):
        return int(a == b)
    if op in ("!=", "<>"):
        return int(a != b)
    if op == ">":
        return int(a > b)
    if op == "<":
        return int(a < b)
    if op == ">=":
        return int(a >= b)
    return int(a <= b)


def _arithmetic(op: str, left: Any, right: Any) -> Optional[Number]:
    if is_null(left) or is_null(right):
        return None
    a, b = coerce_number(left), coerce_number(right)
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if b == 0:
        return 0
    return a / b


class _Evaluator:
    def __init__(self, rows: Rows, columns: Sequence[str]) -> None:
        self.rows = rows
        self.columns = list(columns)
        self._aggregate_cache: Dict[Tuple[str, str], Number] = {}

    def _cell(self, name: str, row_index: Optional[int]) -> Any:
        index = self.columns.index(name)
        if row_index is None:
            raise ExpressionParseError(f'Column "{name}" can only be read inside a row expression')
        row = self.rows[row_index]
        return row[index] if len(row) > index else None

    def evaluate(self, node: Any, row_index: Optional[int] = None) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Column):
            return self._cell(node.name, row_index)
        if isinstance(node, Unary):
            value = self.evaluate(node.operand, row_index)
            if node.op == "NOT":
                return int(not _truthy(value))
            if is_null(value):
                return None
            return -coerce_number(value) if node.op == "-" else coerce_number(value)
        if isinstance(node, Binary):
            if node.op == "AND":
                return int(_truthy(self.evaluate(node.left, row_index))
                           and _truthy(self.evaluate(node.right, row_index)))
            if node.op == "OR":
                return int(_truthy(self.evaluate(node.left, row_index))
                           or _truthy(self.evaluate(node.right, row_index)))
            left = self.evaluate(node.left, row_index)
            right = self.evaluate(node.right, row_index)
            if node.op in COMPARISONS:
                return _compare(node.op, left, right)
            return _arithmetic(node.op, left, right)
        if isinstance(node, Call):
            return self._call(node, row_index)
        raise ExpressionParseError(f"Unknown expression node: {node!r}")

    def _call(self, node: Call, row_index: Optional[int]) -> Any:
        name, args = node.name, node.args
        if name == "IF":
            if _truthy(self.evaluate(args[0], row_index)):
                return self.evaluate(args[1], row_index)
            return self.evaluate(args[2], row_index) if len(args) == 3 else None

        if name in TEXT_FUNCTIONS:
            value = self._cell(args[0].name, row_index)
            return "" if is_null(value) else stringify_cell(value)

        if name in DISTINCT_FUNCTIONS:
            arg = args[0]
            if isinstance(arg, Column):
                return self._aggregate("count_distinct", arg.name)
            seen = set()
            for i in range(len(self.rows)):
                value = self.evaluate(arg, i)
                if not is_null(value):
                    seen.add(stringify_cell(value))
            return len(seen)

        return self._aggregate(AGGREGATE_FUNCTIONS[name], args[0].name)

    def _aggregate(self, operation: str, column: str) -> Number:
        key = (operation, column)
        if key not in self._aggregate_cache:
            self._aggregate_cache[key] = metric_calculator.calculate_metric(
                self.rows, self.columns, column, operation,
            )
        return self._aggregate_cache[key]


def evaluate_expression(
    expression: str,
    rows: Rows,
    columns: Sequence[str],
    mode: str = "sum",
) -> Number:
    """Evaluate a metric expression to a scalar.

    Row-wise expressions are reduced with ``mode`` (``sum`` or ``mean``).
    """
    if mode not in ROW_MODES:
        raise ExpressionParseError(f"Unsupported expression mode: {mode}")

    node = parse_expression(expression)
    columns = list(columns or [])
    for name in sorted(referenced_columns(node)):
        if name not in columns:
            raise MissingColumnError(name, columns)

    evaluator = _Evaluator(rows or [], columns)
    if not is_row_wise(node):
        return coerce_number(evaluator.evaluate(node))

    results = [coerce_number(evaluator.evaluate(node, i)) for i in range(len(evaluator.rows))]
    if not results:
        return 0
    total = sum(results)
    if mode == "mean":
        return round4(total / len(results))
    return round4(total) if isinstance(total, float) else total
