"""Per-sheet formula dependency graph and topological sequencing.

Nodes are cell addresses.  An edge ``ref -> cell`` means *cell*'s formula
reads *ref*.  Only references that resolve to populated cells of the same
sheet become edges; references qualified to another sheet are collected
as external references and never enter the graph.

Sequencing uses Kahn's algorithm with a row-major tie order, so the same
sheet always yields the same order.  A cycle is reported, never raised.
"""

from __future__ import annotations

from collections import deque
from typing import Any

from pydantic import BaseModel, Field

from relaycore.formulas import (
    AddressIndex,
    FormulaParseError,
    is_formula,
    normalize_addr,
    parse_addr,
    split_references,
)
from relaycore.logging.events import FORMULA_CYCLE, EventType, emit_warning


def _row_major(addr: str) -> tuple[int, int]:
    return parse_addr(addr)


def _formula_text(cell: Any) -> str | None:
    """Pull formula text from a cell payload (``{"formula": ...}`` or a raw ``=...`` string)."""
    if isinstance(cell, dict):
        formula = cell.get("formula")
        if isinstance(formula, str) and formula:
            return formula if formula.startswith("=") else "=" + formula
        value = cell.get("value")
        return value if is_formula(value) else None
    return cell if is_formula(cell) else None


class DependencyGraph:
    """Directed graph of intra-sheet formula dependencies.

    Attributes:
        sheet_name: Sheet the graph belongs to.
        nodes: Every formula cell plus every populated cell a formula reads.
        successors: ``ref -> {dependent formula cells}``.
        in_degree: Number of distinct inputs per node.
        external_refs: Formula cell -> reference texts into other sheets.
        unparsed: Formula cell -> tokenizer error message.
    """

    def __init__(self, sheet_name: str | None = None) -> None:
        self.sheet_name = sheet_name
        self.nodes: set[str] = set()
        self.successors: dict[str, set[str]] = {}
        self.in_degree: dict[str, int] = {}
        self.formula_cells: set[str] = set()
        self.external_refs: dict[str, list[str]] = {}
        self.unparsed: dict[str, str] = {}

    def add_node(self, node: str) -> None:
        if node not in self.nodes:
            self.nodes.add(node)
            self.successors.setdefault(node, set())
            self.in_degree.setdefault(node, 0)

    def add_edge(self, ref: str, cell: str) -> None:
        self.add_node(ref)
        self.add_node(cell)
        if cell not in self.successors[ref]:
            self.successors[ref].add(cell)
            self.in_degree[cell] += 1

    @property
    def edge_count(self) -> int:
        return sum(len(s) for s in self.successors.values())

    def dependencies_of(self, cell: str) -> list[str]:
        return sorted((r for r, succ in self.successors.items() if cell in succ), key=_row_major)


def build_dependency_graph(cells: dict[str, Any], sheet_name: str | None = None) -> DependencyGraph:
    """Build the intra-sheet dependency graph of a sheet's formula cells.

    Args:
        cells: Address -> cell payload.  A payload is a ``{"value"|"formula": ...}``
            dict or a bare value; strings starting with ``=`` count as formulas.
        sheet_name: Name of the sheet; references qualified with it count as
            intra-sheet.

    Returns:
        The dependency graph.  Formulas the tokenizer rejects are recorded
        in ``unparsed`` and contribute no edges.
    """
    graph = DependencyGraph(sheet_name)
    by_addr = {normalize_addr(a): payload for a, payload in cells.items()}
    index = AddressIndex.from_addresses(list(by_addr))

    for addr in sorted(by_addr, key=_row_major):
        formula = _formula_text(by_addr[addr])
        if formula is None:
            continue
        graph.formula_cells.add(addr)
        graph.add_node(addr)
        try:
            internal, external = split_references(formula, sheet_name)
        except FormulaParseError as exc:
            graph.unparsed[addr] = str(exc)
            continue
        if external:
            graph.external_refs[addr] = [ref.text for ref in external]
        for ref in internal:
            if ref.is_range:
                deps = index.resolve_range(ref.start, ref.end)
            else:
                dep = index.resolve(ref.start)
                deps = [dep] if dep is not None else []
            for dep in deps:
                graph.add_edge(dep, addr)

    return graph


class SequenceResult(BaseModel):
    """Outcome of sequencing one sheet's formula graph."""

    sheet: str | None = None
    order: list[str] = Field(default_factory=list)
    has_cycle: bool = False
    cyclic_cells: list[str] = Field(default_factory=list)
    node_count: int = 0

    @property
    def formula_state(self) -> str:
        return "indeterminate" if self.has_cycle else "ordered"


def sequence(graph: DependencyGraph) -> SequenceResult:
    """Order graph nodes so every cell follows the cells it reads.

    If the order comes out shorter than the node count the graph holds a
    cycle: the partial order and the unresolved cells are returned, a
    ``formula_cycle_detected`` warning is emitted, and nothing is raised.
    """
    in_degree = dict(graph.in_degree)
    queue = deque(sorted((n for n, d in in_degree.items() if d == 0), key=_row_major))
    order: list[str] = []

    while queue:
        node = queue.popleft()
        order.append(node)
        for succ in sorted(graph.successors.get(node, ()), key=_row_major):
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                queue.append(succ)

    node_count = len(graph.nodes)
    result = SequenceResult(sheet=graph.sheet_name, order=order, node_count=node_count)
    if len(order) < node_count:
        placed = set(order)
        result.has_cycle = True
        result.cyclic_cells = sorted((n for n in graph.nodes if n not in placed), key=_row_major)
        emit_warning(
            EventType.formula_cycle_detected,
            f"Circular reference in sheet {graph.sheet_name!r}: {', '.join(result.cyclic_cells[:10])}",
            {
                "sheet": graph.sheet_name,
                "cyclic_cells": result.cyclic_cells,
                "ordered": len(order),
                "nodes": node_count,
            },
            error_code=FORMULA_CYCLE,
        )
    return result


def sequence_sheet(cells: dict[str, Any], sheet_name: str | None = None) -> SequenceResult:
    """Convenience: build the graph for *cells* and sequence it."""
    return sequence(build_dependency_graph(cells, sheet_name))
