"""CalcEngine protocol and result dataclasses."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ambsheet.calc._values import CellResult, Position

if TYPE_CHECKING:
    from ambsheet._sheet import Sheet


@dataclass(frozen=True)
class CellDelta:
    """A single cell's outcome change from recalculation."""

    position: Position
    old_result: CellResult
    new_result: CellResult
    formula: str | None = None  # raw formula text, None for literal cells


@dataclass(frozen=True)
class RecalcResult:
    """Result of an edit-driven recalculation."""

    edits: dict[Position, Any]  # cell -> new raw content
    deltas: tuple[CellDelta, ...]  # cells whose outcome changed
    total_formula_cells: int = 0
    affected_cells: int = 0  # formula cells downstream of the edits

    @property
    def changed_cells(self) -> int:
        return len(self.deltas)

    @property
    def change_ratio(self) -> float:
        if self.total_formula_cells == 0:
            return 0.0
        return sum(1 for d in self.deltas if d.formula is not None) / self.total_formula_cells


@runtime_checkable
class CalcEngine(Protocol):
    """Protocol for amb sheet evaluation engines."""

    def load(self, sheet: Sheet | Sequence[Sequence[Any]]) -> None:
        """Parse every cell, build the name table and dependency graph."""
        ...

    def calculate(self) -> list[list[CellResult]]:
        """Evaluate every cell.

        Returns a grid shaped like the input of value tuples, ``NOT_READY``,
        ``CellError`` or ``None`` for empty cells.
        """
        ...

    def recalculate(self, edits: Mapping[Position | str, Any]) -> RecalcResult:
        """Apply raw cell edits and re-evaluate, reporting changed cells."""
        ...
