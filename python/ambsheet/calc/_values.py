"""Value model: positions, contexts (possible worlds), values and the cross join."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Callable, Union

from ambsheet._utils import a1_to_rowcol, rowcol_to_a1

RawValue = Union[int, float, bool, str, tuple]


# ---------------------------------------------------------------------------
# Position
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class Position:
    """0-based cell coordinate. Also identifies the amb site a cell defines."""

    row: int
    col: int

    @classmethod
    def from_a1(cls, ref: str) -> Position:
        row, col = a1_to_rowcol(ref)
        return cls(row, col)

    @property
    def a1(self) -> str:
        return rowcol_to_a1(self.row, self.col)

    def offset(self, rows: int, cols: int) -> Position:
        return Position(self.row + rows, self.col + cols)

    def __repr__(self) -> str:
        if self.row >= 0 and self.col >= 0:
            return f"Position({self.a1})"
        return f"Position(row={self.row}, col={self.col})"


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class Context(Mapping[Position, int]):
    """Immutable mapping of amb site -> chosen branch index.

    One context is one self-consistent possible world. Contexts are hashable
    and never mutated after construction, so they are shared freely between
    values.
    """

    __slots__ = ("_items", "_hash")

    def __init__(self, items: Mapping[Position, int] | Iterable[tuple[Position, int]] = ()) -> None:
        self._items: dict[Position, int] = dict(items)
        self._hash: int | None = None

    def __getitem__(self, key: Position) -> int:
        return self._items[key]

    def __iter__(self) -> Iterator[Position]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Context):
            return self._items == other._items
        if isinstance(other, Mapping):
            return self._items == dict(other.items())
        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._items.items()))
        return self._hash

    def __repr__(self) -> str:
        inner = ", ".join(f"{pos.a1}: {idx}" for pos, idx in sorted(self._items.items()))
        return f"Context({{{inner}}})"

    def compatible(self, other: Context) -> bool:
        """True when both contexts agree on every amb site they share."""
        small, big = (self, other) if len(self) <= len(other) else (other, self)
        for pos, idx in small._items.items():
            theirs = big._items.get(pos)
            if theirs is not None and theirs != idx:
                return False
        return True

    def merge(self, other: Context) -> Context:
        """Key-wise union. Only meaningful for compatible contexts."""
        if not other._items:
            return self
        if not self._items:
            return other
        merged = dict(self._items)
        merged.update(other._items)
        return Context(merged)

    def to_dict(self) -> dict[str, int]:
        """``{"A1": 0}`` form, handy for JSON and display."""
        return {pos.a1: idx for pos, idx in sorted(self._items.items())}


EMPTY_CONTEXT = Context()


def contexts_compatible(a: Context, b: Context) -> bool:
    return a.compatible(b)


def merge_contexts(a: Context, b: Context) -> Context:
    return a.merge(b)


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Value:
    """One possible value of a cell together with the world that produced it."""

    raw_value: RawValue
    context: Context = EMPTY_CONTEXT


@dataclass(frozen=True)
class FilteredValue:
    """A value annotated with whether it is consistent with the pinned selections."""

    value: Value
    include: bool

    @property
    def raw_value(self) -> RawValue:
        return self.value.raw_value

    @property
    def context(self) -> Context:
        return self.value.context


# ---------------------------------------------------------------------------
# Out-of-band results
# ---------------------------------------------------------------------------


class _NotReadyType:
    """Sentinel for "no determinate value right now" (cycle or missing input)."""

    __slots__ = ()
    _instance: _NotReadyType | None = None

    def __new__(cls) -> _NotReadyType:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_READY"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self) -> str:
        return "NOT_READY"


NOT_READY = _NotReadyType()


@dataclass(frozen=True)
class CellError:
    """Failure result for an authoring mistake in a cell.

    Propagates through references like a spreadsheet error value, and is
    distinct from :data:`NOT_READY`.
    """

    code: str
    message: str = ""

    NAME = "#NAME?"
    VALUE = "#VALUE!"
    NUM = "#NUM!"
    AMB = "#AMB!"
    LIMIT = "#LIMIT!"

    def __str__(self) -> str:
        return self.code


class EvaluationError(Exception):
    """Raised during evaluation; converted to a :class:`CellError` per cell."""

    def __init__(self, message: str, code: str = CellError.VALUE) -> None:
        super().__init__(message)
        self.code = code

    def to_cell_error(self) -> CellError:
        return CellError(self.code, str(self))


CellResult = Union[tuple, CellError, _NotReadyType, None]


def is_values(result: Any) -> bool:
    """True when *result* is an evaluated value sequence (not a sentinel/error/empty)."""
    return isinstance(result, tuple)


# ---------------------------------------------------------------------------
# Cross join with compatibility pruning
# ---------------------------------------------------------------------------


def cross_join(
    sequences: Sequence[Sequence[Value]],
    start: Context = EMPTY_CONTEXT,
) -> Iterator[tuple[tuple[RawValue, ...], Context]]:
    """Enumerate every compatible combination of one value per sequence.

    Order is depth-first with the first sequence outermost. Combinations whose
    contexts disagree on a shared amb site are dropped. Yields
    ``(raw_values, merged_context)``.

    The walk keeps its own cursor stack, so joining thousands of sequences
    (a large range argument) does not grow the call stack.
    """
    count = len(sequences)
    if count == 0:
        yield (), start
        return

    # cursors[d] is the next index to try in sequences[d]; contexts[d] is the
    # merged context of the choices made above depth d.
    cursors = [0]
    contexts = [start]
    raws: list[RawValue] = []
    while cursors:
        depth = len(cursors) - 1
        i = cursors[depth]
        if i == len(sequences[depth]):
            cursors.pop()
            contexts.pop()
            if raws:
                raws.pop()
            continue
        cursors[depth] = i + 1
        value = sequences[depth][i]
        context = contexts[depth]
        if not context.compatible(value.context):
            continue
        merged = context.merge(value.context)
        if depth + 1 == count:
            yield tuple(raws) + (value.raw_value,), merged
        else:
            raws.append(value.raw_value)
            contexts.append(merged)
            cursors.append(0)


def join_values(
    sequences: Sequence[Sequence[Value]],
    combine: Callable[..., RawValue],
) -> Iterator[Value]:
    """Cross join *sequences* and apply ``combine(*raw_values)`` to each world."""
    for raws, context in cross_join(sequences):
        yield Value(combine(*raws), context)
