"""Formula parser: recursive descent over the raw cell text.

Grammar (whitespace is allowed between tokens, never inside one)::

    Formula   = ident? "=" "ambify" "(" CellRange ")"
              | ident? "=" "deambify" "(" cellRef ")"
              | ident? "=" "normal" "(" number "," number "," number ")"
              | ident? "=" Exp
              | ident? "=" Amb
              | Amb
    Exp       = AddExp (relop AddExp)?
    AddExp    = MulExp (("+" | "-") MulExp)*
    MulExp    = CallExp (("*" | "/") CallExp)*
    CallExp   = "if" "(" Exp "," Exp "," Exp ")" | ident "(" [Exp ("," Exp)*] ")" | UnExp
    UnExp     = "-" PriExp | PriExp
    PriExp    = "(" Exp ")" | Literal | CellRange | cellRef
    Amb       = "{" [AmbPart ("," AmbPart)*] "}"
    AmbPart   = number "to" number "by" number | number "to" number
              | Literal "x" digits | Literal

Alternatives are ordered: the first one that matches wins, and the whole
input must be consumed afterwards.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from ambsheet.calc._ast import (
    Amb,
    AmbPart,
    AmbRange,
    AmbRepeat,
    Ambify,
    Call,
    CellRange,
    CellRef,
    Const,
    Deambify,
    If,
    LiteralValue,
    Named,
    NamedCellRef,
    Node,
    Normal,
    PositionalCellRef,
)
from ambsheet.calc._values import Position

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ORIGIN = Position(0, 0)

# ---------------------------------------------------------------------------
# Lexical patterns
# ---------------------------------------------------------------------------

_WS_RE = re.compile(r"\s*")
_IDENT_RE = re.compile(r"[A-Za-z][A-Za-z0-9]*")
_CELL_REF_RE = re.compile(r"(\$?)([A-Za-z])(\$?)(\d+)")
_NUMBER_RE = re.compile(r"(?:-|\+?)(?:\d*\.\d+|\d+)")
_DIGITS_RE = re.compile(r"\d+")
_STRING_RE = re.compile(r'"([^"\n]*)"')

KEYWORDS = ("ambify", "by", "deambify", "false", "if", "normal", "to", "true", "x")

_RELATIONAL_OPS = ("=", "<>", ">=", ">", "<=", "<")
_ESCAPES = {"n": "\n", "t": "\t"}


class FormulaSyntaxError(ValueError):
    """Raised by :func:`parse_formula` when the text does not match the grammar."""

    def __init__(self, message: str, text: str, offset: int) -> None:
        super().__init__(message)
        self.text = text
        self.offset = offset


class _NoMatch(Exception):
    """Internal backtracking signal."""


def _unescape(body: str) -> str:
    """Apply ``\\n`` and ``\\t``; any other backslash is dropped, keeping the next char."""
    chars: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        i += 1
        if ch == "\\" and i < len(body):
            ch = _ESCAPES.get(body[i], body[i])
            i += 1
        chars.append(ch)
    return "".join(chars)


def _number_value(text: str) -> int | float:
    if "." in text:
        return float(text)
    return int(text)


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------


class _Reader:
    """One-shot parser over *text* for the cell at *cell*."""

    def __init__(self, text: str, cell: Position) -> None:
        self.text = text
        self.cell = cell
        self.i = 0
        self.furthest = 0
        self.expected: set[str] = set()

    # -- primitives --------------------------------------------------------

    def fail(self, expected: str) -> None:
        if self.i > self.furthest:
            self.furthest = self.i
            self.expected = {expected}
        elif self.i == self.furthest:
            self.expected.add(expected)
        raise _NoMatch(expected)

    def ws(self) -> None:
        self.i = _WS_RE.match(self.text, self.i).end()

    def at(self, token: str) -> bool:
        self.ws()
        return self.text.startswith(token, self.i)

    def expect(self, token: str) -> None:
        if not self.at(token):
            self.fail(repr(token))
        self.i += len(token)

    def regex(self, pattern: re.Pattern[str], expected: str) -> re.Match[str]:
        self.ws()
        m = pattern.match(self.text, self.i)
        if m is None:
            self.fail(expected)
        self.i = m.end()
        return m

    def attempt(self, rule: Callable[[], T]) -> T | None:
        start = self.i
        try:
            return rule()
        except _NoMatch:
            self.i = start
            return None

    def first_of(self, *rules: Callable[[], T]) -> T:
        for rule in rules:
            result = self.attempt(rule)
            if result is not None:
                return result
        raise _NoMatch("alternative")

    def keyword_at(self, word: str, i: int) -> bool:
        end = i + len(word)
        if self.text[i:end].lower() != word:
            return False
        if end >= len(self.text):
            return True
        nxt = self.text[end]
        # "x" is only a keyword when not followed by a letter ("3x4" repeats).
        return not nxt.isalpha() if word == "x" else not nxt.isalnum()

    def keyword(self, word: str) -> None:
        self.ws()
        if not self.keyword_at(word, self.i):
            self.fail(word)
        self.i += len(word)

    def end(self) -> None:
        self.ws()
        if self.i != len(self.text):
            self.fail("end of input")

    # -- lexical rules -----------------------------------------------------

    def ident(self) -> str:
        self.ws()
        if any(self.keyword_at(word, self.i) for word in KEYWORDS):
            self.fail("identifier")
        return self.regex(_IDENT_RE, "identifier").group(0)

    def number(self) -> int | float:
        return _number_value(self.regex(_NUMBER_RE, "number").group(0))

    def boolean(self) -> bool:
        self.ws()
        if self.keyword_at("true", self.i):
            self.i += 4
            return True
        if self.keyword_at("false", self.i):
            self.i += 5
            return False
        self.fail("boolean")
        raise AssertionError("unreachable")

    def string(self) -> str:
        return _unescape(self.regex(_STRING_RE, "string").group(1))

    def literal(self) -> LiteralValue:
        for rule in (self.number, self.boolean, self.string):
            start = self.i
            try:
                return rule()
            except _NoMatch:
                self.i = start
        self.fail("literal")
        raise AssertionError("unreachable")

    def positional_ref(self) -> PositionalCellRef:
        m = self.regex(_CELL_REF_RE, "cell reference")
        col_abs, letter, row_abs, digits = m.groups()
        row_mode = "absolute" if row_abs else "relative"
        col_mode = "absolute" if col_abs else "relative"
        row = int(digits) - 1
        col = ord(letter.upper()) - ord("A")
        if row_mode == "relative":
            row -= self.cell.row
        if col_mode == "relative":
            col -= self.cell.col
        return PositionalCellRef(row_mode, col_mode, row, col)

    def named_ref(self) -> NamedCellRef:
        return NamedCellRef(self.ident())

    def cell_ref(self) -> CellRef:
        return self.first_of(self.positional_ref, self.named_ref)

    def cell_range(self) -> CellRange:
        top_left = self.cell_ref()
        self.expect(":")
        return CellRange(top_left, self.cell_ref())

    # -- expressions -------------------------------------------------------

    def exp(self) -> Node:
        left = self.add_exp()
        for op in _RELATIONAL_OPS:
            if not self.at(op):
                continue
            start = self.i
            self.i += len(op)
            right = self.attempt(self.add_exp)
            if right is not None:
                return Call(op, (left, right))
            self.i = start
        return left

    def _binary_chain(self, operand: Callable[[], Node], ops: tuple[str, ...]) -> Node:
        left = operand()
        while True:
            op = next((o for o in ops if self.at(o)), None)
            if op is None:
                return left
            start = self.i
            self.i += len(op)
            right = self.attempt(operand)
            if right is None:
                self.i = start
                return left
            left = Call(op, (left, right))

    def add_exp(self) -> Node:
        return self._binary_chain(self.mul_exp, ("+", "-"))

    def mul_exp(self) -> Node:
        return self._binary_chain(self.call_exp, ("*", "/"))

    def call_exp(self) -> Node:
        return self.first_of(self.if_exp, self.func_call, self.un_exp)

    def if_exp(self) -> Node:
        self.keyword("if")
        self.expect("(")
        cond = self.exp()
        self.expect(",")
        then = self.exp()
        self.expect(",")
        else_ = self.exp()
        self.expect(")")
        return If(cond, then, else_)

    def func_call(self) -> Node:
        name = self.ident()
        self.expect("(")
        args: list[Node] = []
        first = self.attempt(self.exp)
        if first is not None:
            args.append(first)
            while True:
                start = self.i
                try:
                    self.expect(",")
                    args.append(self.exp())
                except _NoMatch:
                    self.i = start
                    break
        self.expect(")")
        return Call(name.lower(), tuple(args))

    def un_exp(self) -> Node:
        if self.at("-"):
            start = self.i
            self.i += 1
            operand = self.attempt(self.pri_exp)
            if operand is not None:
                return Call("-", (Const(0), operand))
            self.i = start
        return self.pri_exp()

    def paren(self) -> Node:
        self.expect("(")
        node = self.exp()
        self.expect(")")
        return node

    def const(self) -> Node:
        return Const(self.literal())

    def pri_exp(self) -> Node:
        return self.first_of(self.paren, self.const, self.cell_range, self.cell_ref)

    # -- amb literals and named constructs --------------------------------

    def range_with_step(self) -> AmbPart:
        start = self.number()
        self.keyword("to")
        stop = self.number()
        self.keyword("by")
        return AmbRange(start, stop, self.number())

    def range_auto_step(self) -> AmbPart:
        start = self.number()
        self.keyword("to")
        stop = self.number()
        return AmbRange(start, stop, 1 if start < stop else -1)

    def repeated(self) -> AmbPart:
        value = self.literal()
        self.keyword("x")
        count = int(self.regex(_DIGITS_RE, "repeat count").group(0))
        return AmbRepeat(value, count)

    def single(self) -> AmbPart:
        return AmbRepeat(self.literal(), 1)

    def amb_part(self) -> AmbPart:
        return self.first_of(self.range_with_step, self.range_auto_step, self.repeated, self.single)

    def amb(self) -> Node:
        self.expect("{")
        parts: list[AmbPart] = []
        first = self.attempt(self.amb_part)
        if first is not None:
            parts.append(first)
            while True:
                start = self.i
                try:
                    self.expect(",")
                    parts.append(self.amb_part())
                except _NoMatch:
                    self.i = start
                    break
        self.expect("}")
        return Amb(self.cell, tuple(parts))

    def ambify(self) -> Node:
        self.keyword("ambify")
        self.expect("(")
        rng = self.cell_range()
        self.expect(")")
        return Ambify(self.cell, rng)

    def deambify(self) -> Node:
        self.keyword("deambify")
        self.expect("(")
        ref = self.cell_ref()
        self.expect(")")
        return Deambify(self.cell, ref)

    def normal(self) -> Node:
        self.keyword("normal")
        self.expect("(")
        mean = self.number()
        self.expect(",")
        stdev = self.number()
        self.expect(",")
        samples = self.number()
        self.expect(")")
        return Normal(self.cell, float(mean), float(stdev), int(samples))

    # -- entry points ------------------------------------------------------

    def formula(self) -> Node:
        if self.at("{"):
            node = self.amb()
            self.end()
            return node
        name = self.attempt(self.ident)
        self.expect("=")
        node = self.first_of(self.ambify, self.deambify, self.normal, self.exp, self.amb)
        self.end()
        if name is None:
            return node
        return Named(name, node, self.cell)

    def whole_literal(self) -> LiteralValue:
        value = self.literal()
        self.end()
        return value

    def error(self) -> FormulaSyntaxError:
        expected = " or ".join(sorted(self.expected)) or "formula"
        return FormulaSyntaxError(
            f"Expected {expected} at offset {self.furthest} in {self.text!r}",
            self.text,
            self.furthest,
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def is_formula(text: Any) -> bool:
    """True when *text* is a string matching the formula grammar."""
    if not text or not isinstance(text, str):
        return False
    try:
        _Reader(text, _ORIGIN).formula()
    except (_NoMatch, RecursionError):
        return False
    return True


def parse_formula(text: str, pos: Position) -> Node:
    """Parse *text* as the formula of the cell at *pos*.

    Relative cell references are stored as offsets from *pos*.
    Raises :class:`FormulaSyntaxError` when *text* is not a formula, including
    text nested too deeply for the recursive descent.
    """
    reader = _Reader(text or "", pos)
    try:
        return reader.formula()
    except _NoMatch:
        raise reader.error() from None
    except RecursionError:
        raise FormulaSyntaxError(
            f"Formula nested too deeply at offset {reader.i} in {text!r}", text, reader.i
        ) from None


def parse_literal(text: str, pos: Position | None = None) -> LiteralValue:
    """Parse a number, boolean or double-quoted string; otherwise return *text* as-is."""
    reader = _Reader(text, pos or _ORIGIN)
    try:
        return reader.whole_literal()
    except _NoMatch:
        return text


def coerce_literal(raw: Any) -> Any:
    """Raw grid content to a literal value. Non-strings pass through."""
    if isinstance(raw, str):
        return parse_literal(raw)
    return raw


def references(node: Node) -> list[CellRef | CellRange]:
    """Every cell reference a node reads the *evaluated* value of.

    The range inside ``ambify`` reads raw contents and is not included.
    """
    found: list[CellRef | CellRange] = []
    stack: list[Node] = [node]
    while stack:
        n = stack.pop()
        if isinstance(n, (PositionalCellRef, NamedCellRef, CellRange)):
            found.append(n)
        elif isinstance(n, If):
            stack.extend((n.else_, n.then, n.cond))
        elif isinstance(n, Call):
            stack.extend(reversed(n.args))
        elif isinstance(n, Deambify):
            found.append(n.ref)
        elif isinstance(n, Named):
            stack.append(n.node)
    return found


# ---------------------------------------------------------------------------
# FormulaParser: per-cell classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParsedCell:
    """A non-empty cell after classification.

    ``node`` is the formula AST, or a :class:`Const` holding the literal.
    """

    pos: Position
    raw: Any
    node: Node
    is_formula: bool

    @property
    def name(self) -> str | None:
        return self.node.name if isinstance(self.node, Named) else None


class FormulaParser:
    """Classifies raw cell contents into formulas and literals."""

    def is_formula(self, text: Any) -> bool:
        return is_formula(text)

    def parse(self, text: str, pos: Position) -> Node:
        return parse_formula(text, pos)

    def parse_literal(self, text: str, pos: Position | None = None) -> LiteralValue:
        return parse_literal(text, pos)

    def parse_cell(self, raw: Any, pos: Position) -> ParsedCell | None:
        """Classify one raw cell. Returns None for an empty cell."""
        if raw is None:
            return None
        if not isinstance(raw, str):
            return ParsedCell(pos, raw, Const(raw), False)
        if not raw.strip():
            return None
        try:
            node = parse_formula(raw, pos)
        except FormulaSyntaxError as e:
            if raw.lstrip().startswith("="):
                logger.debug("Treating %s as text: %s", pos, e)
            return ParsedCell(pos, raw, Const(parse_literal(raw, pos)), False)
        return ParsedCell(pos, raw, node, True)
