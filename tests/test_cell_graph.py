"""Tests for per-sheet dependency graphs and topological sequencing."""

from __future__ import annotations

import json

from relaycore.cell_graph import build_dependency_graph, sequence, sequence_sheet
from relaycore.logging.events import set_project_dir


class TestBuildGraph:
    def test_edges_point_from_reference_to_formula(self):
        graph = build_dependency_graph(
            {"A1": {"value": 1}, "A2": {"value": 2}, "A3": {"formula": "=A1+A2"}}, "S"
        )
        assert graph.successors["A1"] == {"A3"}
        assert graph.successors["A2"] == {"A3"}
        assert graph.in_degree["A3"] == 2
        assert graph.formula_cells == {"A3"}
        assert graph.dependencies_of("A3") == ["A1", "A2"]

    def test_raw_formula_strings_are_accepted(self):
        graph = build_dependency_graph({"A1": 5, "B1": "=A1*2"})
        assert graph.edge_count == 1

    def test_ranges_resolve_only_populated_cells(self):
        cells = {"A1": 1, "A3": 3, "B1": "=SUM(A1:A1000)"}
        graph = build_dependency_graph(cells)
        assert graph.dependencies_of("B1") == ["A1", "A3"]

    def test_duplicate_references_add_one_edge(self):
        graph = build_dependency_graph({"A1": 1, "B1": "=A1+A1*A1"})
        assert graph.in_degree["B1"] == 1

    def test_references_to_empty_cells_add_no_edges(self):
        graph = build_dependency_graph({"B1": "=Z99+1"})
        assert graph.edge_count == 0
        assert graph.nodes == {"B1"}

    def test_external_references_are_collected_not_graphed(self):
        graph = build_dependency_graph({"A1": 1, "B1": "=A1+Other!A1"}, "Main")
        assert graph.external_refs == {"B1": ["Other!A1"]}
        assert graph.edge_count == 1

    def test_self_qualified_reference_is_internal(self):
        graph = build_dependency_graph({"A1": 1, "B1": "=Main!A1"}, "Main")
        assert graph.successors["A1"] == {"B1"}
        assert graph.external_refs == {}

    def test_unparseable_formula_is_recorded(self):
        graph = build_dependency_graph({"A1": 1, "B1": "=A1+[Ext]S!A1"})
        assert "B1" in graph.unparsed
        assert "B1" in graph.formula_cells
        assert graph.edge_count == 0

    def test_lowercase_and_absolute_addresses_normalise(self):
        graph = build_dependency_graph({"a1": 1, "$B$1": "=A1"})
        assert graph.successors["A1"] == {"B1"}


class TestSequence:
    def test_acyclic_order_covers_all_nodes(self):
        cells = {"A1": 1, "B1": "=A1+1", "C1": "=B1*2", "D1": "=A1+C1"}
        result = sequence_sheet(cells, "S")
        assert not result.has_cycle
        assert len(result.order) == result.node_count == 4
        pos = {addr: i for i, addr in enumerate(result.order)}
        assert pos["A1"] < pos["B1"] < pos["C1"] < pos["D1"]
        assert result.formula_state == "ordered"

    def test_two_cell_cycle_is_flagged(self):
        result = sequence_sheet({"A1": "=B1", "B1": "=A1"}, "S")
        assert result.has_cycle
        assert len(result.order) < result.node_count
        assert result.cyclic_cells == ["A1", "B1"]
        assert result.formula_state == "indeterminate"

    def test_cycle_keeps_partial_order(self):
        cells = {"A1": 1, "B1": "=A1", "C1": "=D1", "D1": "=C1"}
        result = sequence_sheet(cells)
        assert result.order == ["A1", "B1"]
        assert result.cyclic_cells == ["C1", "D1"]

    def test_cycle_through_decimal_literals(self):
        result = sequence_sheet({"A1": "=.5*B1", "B1": "=A1+1.", "C1": "=2.5E3"})
        assert result.has_cycle
        assert result.cyclic_cells == ["A1", "B1"]
        assert result.order == ["C1"]

    def test_self_reference_is_a_cycle(self):
        result = sequence_sheet({"A1": "=A1+1"})
        assert result.has_cycle
        assert result.order == []

    def test_order_is_deterministic_row_major(self):
        cells = {"B2": 1, "A2": 1, "B1": 1, "A1": 1, "C3": "=A1+B1+A2+B2"}
        first = sequence_sheet(cells).order
        second = sequence_sheet(dict(reversed(list(cells.items())))).order
        assert first == second == ["A1", "B1", "A2", "B2", "C3"]

    def test_empty_graph(self):
        result = sequence(build_dependency_graph({}))
        assert result.order == []
        assert not result.has_cycle

    def test_cycle_emits_warning_event(self, tmp_path):
        set_project_dir(tmp_path)
        sequence_sheet({"A1": "=B1", "B1": "=A1"}, "Loop")
        lines = (tmp_path / "logs" / "events.ndjson").read_text().splitlines()
        events = [json.loads(line) for line in lines]
        cycle = [e for e in events if e["event_type"] == "formula_cycle_detected"]
        assert len(cycle) == 1
        assert cycle[0]["level"] == "warning"
        assert cycle[0]["error_code"] == "formula_cycle"
        assert cycle[0]["context"]["sheet"] == "Loop"
