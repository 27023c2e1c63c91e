"""Selection filter: marks which values are consistent with the pinned branches."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from ambsheet.calc._values import CellResult, Context, FilteredValue, Position, is_values

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Selection:
    """Indexes a user pinned in one cell's evaluated value list."""

    row: int
    col: int
    selected_indexes: tuple[int, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "selected_indexes", tuple(self.selected_indexes))

    @classmethod
    def at(cls, pos: Position | str, *indexes: int) -> Selection:
        if isinstance(pos, str):
            pos = Position.from_a1(pos)
        return cls(pos.row, pos.col, indexes)

    @property
    def position(self) -> Position:
        return Position(self.row, self.col)


def _cell(results: Sequence[Sequence[CellResult]], row: int, col: int) -> CellResult:
    if 0 <= row < len(results) and 0 <= col < len(results[row]):
        return results[row][col]
    return None


def filter_contexts(
    results: Sequence[Sequence[CellResult]],
    selections: Iterable[Selection],
) -> list[list[Context]]:
    """One list of contexts per effective pin.

    A selection with no indexes, or pointing at a cell without values, pins
    nothing. Indexes past the end of the cell's values are ignored.
    """
    pins: list[list[Context]] = []
    for sel in selections:
        if not sel.selected_indexes:
            continue
        values = _cell(results, sel.row, sel.col)
        if not is_values(values):
            logger.debug("Ignoring selection on %s: cell has no values (%r)", sel.position.a1, values)
            continue
        contexts: list[Context] = []
        for i in sel.selected_indexes:
            if 0 <= i < len(values):
                contexts.append(values[i].context)
            else:
                logger.debug("Ignoring stale index %d on %s", i, sel.position.a1)
        if contexts:
            pins.append(contexts)
    return pins


def is_included(context: Context, pins: Sequence[Sequence[Context]]) -> bool:
    """True when *context* agrees with at least one context of every pin.

    Indexes within a pin are alternatives; separate pins must all hold.
    """
    return all(any(context.compatible(c) for c in pin) for pin in pins)


def filter_sheet(
    results: Sequence[Sequence[CellResult]],
    selections: Iterable[Selection],
) -> list[list[CellResult]]:
    """Annotate every value in *results* with its inclusion under *selections*.

    Value tuples become tuples of :class:`FilteredValue`; ``NOT_READY``,
    errors and empty cells pass through unchanged.
    """
    pins = filter_contexts(results, selections)
    filtered: list[list[CellResult]] = []
    for row in results:
        out_row: list[CellResult] = []
        for cell in row:
            if is_values(cell):
                out_row.append(tuple(FilteredValue(v, is_included(v.context, pins)) for v in cell))
            else:
                out_row.append(cell)
        filtered.append(out_row)
    return filtered
