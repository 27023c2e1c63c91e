"""Formula AST: a closed set of frozen node types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union

from ambsheet.calc._values import Position

AddressingMode = Literal["relative", "absolute"]
LiteralValue = Union[int, float, bool, str]


@dataclass(frozen=True)
class Const:
    value: LiteralValue


@dataclass(frozen=True)
class PositionalCellRef:
    """A1-style reference.

    Relative coordinates hold the offset from the defining cell, absolute ones
    the 0-based coordinate itself.
    """

    row_mode: AddressingMode
    col_mode: AddressingMode
    row: int
    col: int

    def resolve(self, origin: Position) -> Position:
        row = self.row if self.row_mode == "absolute" else origin.row + self.row
        col = self.col if self.col_mode == "absolute" else origin.col + self.col
        return Position(row, col)


@dataclass(frozen=True)
class NamedCellRef:
    name: str


CellRef = Union[PositionalCellRef, NamedCellRef]


@dataclass(frozen=True)
class CellRange:
    top_left: CellRef
    bottom_right: CellRef


@dataclass(frozen=True)
class If:
    cond: Node
    then: Node
    else_: Node


@dataclass(frozen=True)
class Call:
    func_name: str
    args: tuple[Node, ...]


@dataclass(frozen=True)
class AmbRange:
    """``from to to by step`` part of an amb literal."""

    start: float
    stop: float
    step: float


@dataclass(frozen=True)
class AmbRepeat:
    """``value x num_repeats`` part of an amb literal (a bare literal repeats once)."""

    value: LiteralValue
    num_repeats: int


AmbPart = Union[AmbRange, AmbRepeat]


@dataclass(frozen=True)
class Amb:
    pos: Position
    parts: tuple[AmbPart, ...]


@dataclass(frozen=True)
class Ambify:
    pos: Position
    range: CellRange


@dataclass(frozen=True)
class Deambify:
    pos: Position
    ref: CellRef


@dataclass(frozen=True)
class Normal:
    pos: Position
    mean: float
    stdev: float
    samples: int


@dataclass(frozen=True)
class Named:
    name: str
    node: Node
    pos: Position


Node = Union[
    Const,
    PositionalCellRef,
    NamedCellRef,
    CellRange,
    If,
    Call,
    Amb,
    Ambify,
    Deambify,
    Normal,
    Named,
]
