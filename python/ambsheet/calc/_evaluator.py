"""SheetEvaluator: evaluates every cell of a grid to its list of possible values.

Each cell evaluates to a tuple of :class:`Value` objects, one per possible
world, where a world is a :class:`Context` naming the branch taken at every amb
site the value depends on. Operators combine their operands with a cross join
that drops combinations disagreeing on a shared amb site, so a value never
mixes two branches of the same site.

Cells are evaluated in dependency order with memoization by position; a cell on
a reference cycle, or one that reads an empty cell, yields ``NOT_READY``.
Authoring mistakes (unknown function, bad amb literal, ...) yield a
``CellError`` for that cell only.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from statistics import NormalDist
from typing import Any, Callable

import numpy as np

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
    Named,
    NamedCellRef,
    Node,
    Normal,
    PositionalCellRef,
)
from ambsheet.calc._functions import FunctionRegistry
from ambsheet.calc._graph import DependencyGraph
from ambsheet.calc._parser import FormulaParser, ParsedCell, coerce_literal, references
from ambsheet.calc._protocol import CellDelta, RecalcResult
from ambsheet.calc._values import (
    EMPTY_CONTEXT,
    NOT_READY,
    CellError,
    CellResult,
    Context,
    EvaluationError,
    Position,
    RawValue,
    Value,
    cross_join,
    join_values,
)

logger = logging.getLogger(__name__)

# Result of evaluating a node: values, or an out-of-band outcome.
_Outcome = Any

# Float noise from repeated step addition is rounded away at this many digits.
_RANGE_DIGITS = 12

# Operators of equal precedence; a left-nested run of them is folded in a loop.
_OPERATOR_GROUPS = (frozenset(("+", "-")), frozenset(("*", "/")))


# ---------------------------------------------------------------------------
# Amb building blocks
# ---------------------------------------------------------------------------


def _expand_range(part: AmbRange) -> Iterator[int | float]:
    start, stop, step = part.start, part.stop, part.step
    if step == 0:
        raise EvaluationError("amb range step must not be zero", code=CellError.AMB)
    span = stop - start
    if span != 0 and (span > 0) != (step > 0):
        raise EvaluationError(
            f"amb range {start} to {stop} by {step} never reaches its end",
            code=CellError.AMB,
        )
    count = int(span / step + 1e-9) + 1
    integral = all(isinstance(v, int) for v in (start, step))
    for i in range(count):
        v = start + i * step
        yield v if integral else round(v, _RANGE_DIGITS)


def expand_amb_parts(parts: Iterable[AmbPart]) -> Iterator[RawValue]:
    """Branch values of an amb literal, in part order.

    A range yields every step from its start to its end inclusive; a repeat
    yields its value ``num_repeats`` times.
    """
    for part in parts:
        if isinstance(part, AmbRange):
            yield from _expand_range(part)
        elif isinstance(part, AmbRepeat):
            if part.num_repeats < 0:
                raise EvaluationError("amb repeat count must not be negative", code=CellError.AMB)
            for _ in range(part.num_repeats):
                yield part.value
        else:
            raise TypeError(f"Unknown amb part: {part!r}")


def normal_samples(mean: float, stdev: float, samples: int) -> list[float]:
    """*samples* evenly spaced quantiles of N(mean, stdev).

    The i-th sample is the quantile at ``(i + 0.5) / samples``, so the result
    depends only on the three parameters.
    """
    if samples < 1:
        raise EvaluationError("normal() needs at least one sample", code=CellError.AMB)
    if stdev < 0:
        raise EvaluationError("normal() standard deviation must not be negative", code=CellError.NUM)
    if stdev == 0:
        return [mean] * samples
    dist = NormalDist(mean, stdev)
    probabilities = (np.arange(samples) + 0.5) / samples
    return [dist.inv_cdf(float(p)) for p in probabilities]


def deambify(values: Sequence[Value]) -> Value:
    """Collapse an amb value list to one representative value.

    Policy: the first value in enumeration order, with its context dropped, so
    the result no longer ties the referencing cell to any amb site.
    """
    if not values:
        raise EvaluationError("deambify() of a cell with no possible values", code=CellError.AMB)
    return Value(values[0].raw_value, EMPTY_CONTEXT)


def _truthy(value: Any) -> bool:
    if isinstance(value, (int, float)):
        return value != 0
    return bool(value)


def _first_failure(outcomes: Iterable[_Outcome]) -> _Outcome | None:
    """NOT_READY if any outcome is NOT_READY, else the first CellError, else None."""
    error: CellError | None = None
    for outcome in outcomes:
        if outcome is NOT_READY:
            return NOT_READY
        if error is None and isinstance(outcome, CellError):
            error = outcome
    return error


def _operator_chain(node: Call) -> tuple[Node, list[tuple[str, Node]]]:
    """Unwind ``a - b + c`` into ``(a, [("-", b), ("+", c)])``.

    Only left-nested operators of the same precedence are unwound; anything
    else comes back as ``(node, [])``.
    """
    group = next((g for g in _OPERATOR_GROUPS if node.func_name in g), None)
    if group is None:
        return node, []
    steps: list[tuple[str, Node]] = []
    head: Node = node
    while isinstance(head, Call) and head.func_name in group and len(head.args) == 2:
        steps.append((head.func_name, head.args[1]))
        head = head.args[0]
    steps.reverse()
    return head, steps


def _guarded(name: str, func: Callable[..., RawValue]) -> Callable[..., RawValue]:
    """Wrap *func* so Python arithmetic and type errors become ``#VALUE!``."""

    def apply(*raws: RawValue) -> RawValue:
        try:
            return func(*raws)
        except EvaluationError:
            raise
        except (ArithmeticError, TypeError, ValueError) as e:
            raise EvaluationError(f"{name}: {e}") from e

    return apply


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class SheetEvaluator:
    """Evaluates every cell of a grid of raw cell contents.

    Usage::

        evaluator = SheetEvaluator()
        evaluator.load([["={1,2}", "=A1+10"]])
        results = evaluator.calculate()
        # results[0][1] == (Value(11, {A1: 0}), Value(12, {A1: 1}))
        recalc = evaluator.recalculate({"A1": "={5,6}"})
    """

    def __init__(
        self,
        functions: FunctionRegistry | None = None,
        max_values: int | None = None,
    ) -> None:
        self._functions = functions or FunctionRegistry()
        self._max_values = max_values
        self._parser = FormulaParser()
        self._grid: list[list[Any]] = []
        self._cells: dict[Position, ParsedCell] = {}
        self._names: dict[str, Position] = {}
        self._graph = DependencyGraph()
        self._results: dict[Position, CellResult] = {}
        self._evaluating: set[Position] = set()
        self._loaded = False
        self._dispatch: dict[type, Callable[[Any, Position], _Outcome]] = {
            Const: self._eval_const,
            PositionalCellRef: self._eval_ref,
            NamedCellRef: self._eval_ref,
            CellRange: self._eval_range,
            If: self._eval_if,
            Call: self._eval_call,
            Amb: self._eval_amb,
            Ambify: self._eval_ambify,
            Deambify: self._eval_deambify,
            Normal: self._eval_normal,
            Named: self._eval_named,
        }

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, sheet: Any) -> None:
        """Take a :class:`~ambsheet.Sheet` or a grid (sequence of rows) of raw cells."""
        rows = sheet.to_grid() if hasattr(sheet, "to_grid") else sheet
        width = max((len(r) for r in rows), default=0)
        self._grid = [list(r) + [None] * (width - len(r)) for r in rows]
        self._rebuild()
        self._loaded = True

    def _rebuild(self) -> None:
        self._cells.clear()
        self._names.clear()
        self._results.clear()
        self._graph = DependencyGraph()

        for r, row in enumerate(self._grid):
            for c, raw in enumerate(row):
                pos = Position(r, c)
                cell = self._parser.parse_cell(raw, pos)
                if cell is None:
                    continue
                self._cells[pos] = cell
                name = cell.name
                if name is None:
                    continue
                if name in self._names:
                    logger.warning(
                        "Name %r defined in both %s and %s; using %s",
                        name, self._names[name].a1, pos.a1, self._names[name].a1,
                    )
                else:
                    self._names[name] = pos

        for pos, cell in self._cells.items():
            if cell.is_formula:
                self._graph.add_formula(pos, cell.raw, self._dependency_positions(cell))

    def _dependency_positions(self, cell: ParsedCell) -> list[Position]:
        deps: list[Position] = []
        for ref in references(cell.node):
            if isinstance(ref, CellRange):
                deps.extend(self._range_positions(ref, cell.pos) or ())
            else:
                target = self._resolve_ref(ref, cell.pos)
                if target is not None:
                    deps.append(target)
        return deps

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def names(self) -> dict[str, Position]:
        """Cell names defined with the ``name = ...`` syntax."""
        return dict(self._names)

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    def calculate(self) -> list[list[CellResult]]:
        """Evaluate every cell.

        Returns a grid shaped like the input whose entries are tuples of
        :class:`Value`, ``NOT_READY``, a :class:`CellError`, or None for
        empty cells.
        """
        if not self._loaded:
            raise RuntimeError("Call load() before calculate()")

        self._results.clear()
        order, blocked = self._graph.evaluation_order()
        for pos in sorted(blocked):
            logger.debug("Cell %s is on or behind a reference cycle", pos.a1)
            self._results[pos] = NOT_READY
        for pos in order:
            self._value_of(pos)
        for pos in sorted(self._cells):
            self._value_of(pos)
        return self.results

    @property
    def results(self) -> list[list[CellResult]]:
        return [
            [self._results.get(Position(r, c)) for c in range(len(row))]
            for r, row in enumerate(self._grid)
        ]

    def value_at(self, pos: Position | str) -> CellResult:
        """Outcome for one cell after :meth:`calculate`."""
        if isinstance(pos, str):
            pos = Position.from_a1(pos)
        return self._results.get(pos)

    def recalculate(self, edits: Mapping[Position | str, Any]) -> RecalcResult:
        """Apply raw cell edits and re-evaluate the whole sheet.

        Returns a :class:`RecalcResult` listing every cell whose outcome changed.
        """
        if not self._loaded:
            raise RuntimeError("Call load() before recalculate()")

        old_results = dict(self._results)
        applied: dict[Position, Any] = {}
        for key, raw in edits.items():
            pos = Position.from_a1(key) if isinstance(key, str) else key
            self._set_raw(pos, raw)
            applied[pos] = raw

        self._rebuild()
        self.calculate()
        affected = self._graph.affected_cells(set(applied))

        deltas: list[CellDelta] = []
        for pos in sorted(set(old_results) | set(self._results)):
            old = old_results.get(pos)
            new = self._results.get(pos)
            if old != new:
                cell = self._cells.get(pos)
                formula = cell.raw if cell is not None and cell.is_formula else None
                deltas.append(CellDelta(pos, old, new, formula))

        return RecalcResult(
            edits=applied,
            deltas=tuple(deltas),
            total_formula_cells=len(self._graph.formulas),
            affected_cells=len(affected),
        )

    def _set_raw(self, pos: Position, raw: Any) -> None:
        if pos.row < 0 or pos.col < 0:
            raise ValueError(f"Invalid cell position: {pos!r}")
        width = max(len(self._grid[0]) if self._grid else 0, pos.col + 1)
        for row in self._grid:
            row.extend([None] * (width - len(row)))
        while len(self._grid) <= pos.row:
            self._grid.append([None] * width)
        self._grid[pos.row][pos.col] = raw

    # ------------------------------------------------------------------
    # Cell evaluation (memoized)
    # ------------------------------------------------------------------

    def _value_of(self, pos: Position) -> _Outcome:
        if pos in self._results:
            return self._results[pos]
        cell = self._cells.get(pos)
        if cell is None:
            # Empty or outside the grid: not memoized, shown as an empty cell.
            return NOT_READY
        if pos in self._evaluating:
            logger.debug("Cycle reached at %s", pos.a1)
            return NOT_READY

        self._evaluating.add(pos)
        try:
            result = self._evaluate_cell(cell)
        finally:
            self._evaluating.discard(pos)
        self._results[pos] = result
        return result

    def _evaluate_cell(self, cell: ParsedCell) -> CellResult:
        try:
            return self._eval(cell.node, cell.pos)
        except EvaluationError as e:
            logger.debug("Error evaluating %s (%r): %s", cell.pos.a1, cell.raw, e)
            return e.to_cell_error()
        except RecursionError:
            logger.warning("Formula in %s is nested too deeply to evaluate", cell.pos.a1)
            return CellError(CellError.LIMIT, "formula nested too deeply")

    def _eval(self, node: Node, origin: Position) -> _Outcome:
        handler = self._dispatch.get(type(node))
        if handler is None:
            raise TypeError(f"Unknown node type: {type(node).__name__}")
        return handler(node, origin)

    def _collect(self, values: Iterable[Value]) -> tuple[Value, ...]:
        if self._max_values is None:
            return tuple(values)
        out: list[Value] = []
        for v in values:
            out.append(v)
            if len(out) > self._max_values:
                raise EvaluationError(
                    f"more than {self._max_values} possible values",
                    code=CellError.LIMIT,
                )
        return tuple(out)

    # ------------------------------------------------------------------
    # Reference resolution
    # ------------------------------------------------------------------

    def _resolve_ref(self, ref: CellRef, origin: Position) -> Position | None:
        if isinstance(ref, NamedCellRef):
            return self._names.get(ref.name)
        pos = ref.resolve(origin)
        if pos.row < 0 or pos.col < 0:
            return None
        return pos

    def _range_positions(self, rng: CellRange, origin: Position) -> list[Position] | None:
        """Row-major positions covered by *rng*, or None if a corner is unresolvable."""
        a = self._resolve_ref(rng.top_left, origin)
        b = self._resolve_ref(rng.bottom_right, origin)
        if a is None or b is None:
            return None
        r_min, r_max = min(a.row, b.row), max(a.row, b.row)
        c_min, c_max = min(a.col, b.col), max(a.col, b.col)
        return [Position(r, c) for r in range(r_min, r_max + 1) for c in range(c_min, c_max + 1)]

    def _raw_at(self, pos: Position) -> Any:
        if pos.row < len(self._grid) and pos.col < len(self._grid[pos.row]):
            return self._grid[pos.row][pos.col]
        return None

    # ------------------------------------------------------------------
    # Node handlers
    # ------------------------------------------------------------------

    def _eval_const(self, node: Const, origin: Position) -> _Outcome:
        return (Value(node.value),)

    def _eval_ref(self, node: CellRef, origin: Position) -> _Outcome:
        target = self._resolve_ref(node, origin)
        if target is None:
            return NOT_READY
        return self._value_of(target)

    def _eval_range(self, node: CellRange, origin: Position) -> _Outcome:
        positions = self._range_positions(node, origin)
        if positions is None:
            return NOT_READY
        sequences = [self._value_of(p) for p in positions if p in self._cells]
        failure = _first_failure(sequences)
        if failure is not None:
            return failure
        return self._collect(Value(raws, ctx) for raws, ctx in cross_join(sequences))

    def _eval_if(self, node: If, origin: Position) -> _Outcome:
        cond, then, else_ = (self._eval(n, origin) for n in (node.cond, node.then, node.else_))
        failure = _first_failure((cond, then, else_))
        if failure is not None:
            return failure

        def choose() -> Iterator[Value]:
            for c in cond:
                branch = then if _truthy(c.raw_value) else else_
                for (_, raw), context in cross_join(((c,), branch)):
                    yield Value(raw, context)

        return self._collect(choose())

    def _eval_call(self, node: Call, origin: Position) -> _Outcome:
        head, steps = _operator_chain(node)
        if steps:
            return self._eval_chain(head, steps, origin)

        func = self._functions.resolve(node.func_name)
        args = [self._eval(arg, origin) for arg in node.args]
        failure = _first_failure(args)
        if failure is not None:
            return failure
        return self._collect(join_values(args, _guarded(node.func_name, func)))

    def _eval_chain(self, head: Node, steps: list[tuple[str, Node]], origin: Position) -> _Outcome:
        """Left fold of ``head op1 x1 op2 x2 ...``, one operator at a time."""
        funcs = [_guarded(op, self._functions.resolve(op)) for op, _ in steps]
        operands = [self._eval(head, origin)] + [self._eval(n, origin) for _, n in steps]
        failure = _first_failure(operands)
        if failure is not None:
            return failure

        result = operands[0]
        for func, operand in zip(funcs, operands[1:]):
            result = self._collect(join_values((result, operand), func))
        return result

    def _eval_amb(self, node: Amb, origin: Position) -> _Outcome:
        return self._branches(node.pos, expand_amb_parts(node.parts))

    def _eval_ambify(self, node: Ambify, origin: Position) -> _Outcome:
        positions = self._range_positions(node.range, origin)
        if positions is None:
            return NOT_READY
        raws = (self._raw_at(p) for p in positions)
        literals = (
            coerce_literal(raw) for raw in raws
            if raw is not None and not (isinstance(raw, str) and not raw.strip())
        )
        return self._branches(node.pos, literals)

    def _eval_deambify(self, node: Deambify, origin: Position) -> _Outcome:
        values = self._eval_ref(node.ref, origin)
        if values is NOT_READY or isinstance(values, CellError):
            return values
        return (deambify(values),)

    def _eval_normal(self, node: Normal, origin: Position) -> _Outcome:
        return self._branches(node.pos, normal_samples(node.mean, node.stdev, node.samples))

    def _eval_named(self, node: Named, origin: Position) -> _Outcome:
        return self._eval(node.node, origin)

    def _branches(self, site: Position, raws: Iterable[RawValue]) -> tuple[Value, ...]:
        values = self._collect(
            Value(raw, Context({site: i})) for i, raw in enumerate(raws)
        )
        if not values:
            raise EvaluationError(f"amb value in {site.a1} has no branches", code=CellError.AMB)
        return values


def evaluate_sheet(
    grid: Any,
    functions: FunctionRegistry | None = None,
    max_values: int | None = None,
) -> list[list[CellResult]]:
    """Evaluate a :class:`~ambsheet.Sheet` or grid of raw cells in one call."""
    evaluator = SheetEvaluator(functions=functions, max_values=max_values)
    evaluator.load(grid)
    return evaluator.calculate()
