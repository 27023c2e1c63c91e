"""Dependency graph for formula cells with topological ordering."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from ambsheet.calc._values import Position


class CircularReferenceError(ValueError):
    """Raised by :meth:`DependencyGraph.topological_order` when cells form a cycle."""

    def __init__(self, cells: set[Position]) -> None:
        names = ", ".join(p.a1 for p in sorted(cells))
        super().__init__(f"Circular reference detected involving: {names}")
        self.cells = cells


class DependencyGraph:
    """Tracks which cells each formula cell reads from.

    Only formula cells are ordered; literal cells are leaves.
    """

    __slots__ = ("dependencies", "dependents", "formulas")

    def __init__(self) -> None:
        # cell -> cells it reads from
        self.dependencies: dict[Position, set[Position]] = {}
        # cell -> cells that read from it (reverse edges)
        self.dependents: dict[Position, set[Position]] = {}
        # cell -> formula text
        self.formulas: dict[Position, str] = {}

    def add_formula(self, cell: Position, formula: str, refs: Iterable[Position]) -> None:
        """Register a formula cell and the positions it reads from."""
        self.formulas[cell] = formula
        deps = set(refs)
        self.dependencies[cell] = deps
        for ref in deps:
            self.dependents.setdefault(ref, set()).add(cell)

    def evaluation_order(self) -> tuple[list[Position], set[Position]]:
        """Kahn's algorithm over formula cells.

        Returns ``(order, blocked)``: ``order`` lists cells whose inputs come
        earlier in the list; ``blocked`` holds the cells on a cycle or
        downstream of one. Ties are broken by position so the order is stable.
        """
        formula_cells = set(self.formulas)
        if not formula_cells:
            return [], set()

        in_degree: dict[Position, int] = {}
        for cell in formula_cells:
            # Only count deps that are themselves formula cells
            in_degree[cell] = len(self.dependencies.get(cell, set()) & formula_cells)

        queue: deque[Position] = deque(sorted(c for c in formula_cells if in_degree[c] == 0))
        order: list[Position] = []
        while queue:
            cell = queue.popleft()
            order.append(cell)
            for dep in sorted(self.dependents.get(cell, ())):
                if dep in formula_cells:
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        queue.append(dep)

        return order, formula_cells - set(order)

    def topological_order(self) -> list[Position]:
        """Evaluation order; raises :class:`CircularReferenceError` on a cycle."""
        order, blocked = self.evaluation_order()
        if blocked:
            raise CircularReferenceError(blocked)
        return order

    def affected_cells(self, changed_cells: set[Position]) -> list[Position]:
        """Formula cells downstream of *changed_cells*, in evaluation order.

        Uses BFS on the dependents graph; blocked cells come last.
        """
        affected: set[Position] = set()
        queue: deque[Position] = deque(sorted(changed_cells))
        visited: set[Position] = set(changed_cells)

        while queue:
            cell = queue.popleft()
            for dep in self.dependents.get(cell, ()):
                if dep not in visited:
                    visited.add(dep)
                    queue.append(dep)
                    if dep in self.formulas:
                        affected.add(dep)

        order, blocked = self.evaluation_order()
        ranked = order + sorted(blocked)
        return [c for c in ranked if c in affected]
