"""Tests for KPI snapshots."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from relaycore.kpi import KpiLedger, coerce_metric
from relaycore.schema import ModuleDef, ModuleRegistry
from relaycore.sheets import SheetStore


def _module(bindings: list[dict]) -> ModuleDef:
    return ModuleDef.model_validate({
        "moduleId": "T",
        "branchId": "branch.test",
        "factSheets": [{"sheetId": "T.Facts", "columns": [{"id": "name"}, {"id": "amount", "type": "number"}]}],
        "summarySheets": [{"sheetId": "T.Summary", "columns": [{"id": "metric"}, {"id": "value"}]}],
        "kpiBindings": bindings,
    })


@pytest.fixture
def bound():
    module = _module([
        {"metricId": "amount", "sourceCell": "T.Facts!B2", "unit": "USD"},
        {"metricId": "total", "sourceCell": "T.Summary!B2", "unit": "USD"},
        {"metricId": "blank", "sourceCell": "T.Facts!B9"},
        {"metricId": "text", "sourceCell": "T.Facts!A2"},
    ])
    store = SheetStore.from_registry(ModuleRegistry([module]))
    store.get("T.Facts").append_rows([["widget", 42.5]])
    store.get("T.Summary").replace_rows([["Total", "=SUM(T.Facts!B2:B2)"]])
    return module, store


class TestCoerce:
    def test_values(self) -> None:
        assert coerce_metric(3) == 3.0
        assert coerce_metric(" 2.5 ") == 2.5
        assert coerce_metric("abc") == 0.0
        assert coerce_metric("") == 0.0
        assert coerce_metric(None) == 0.0
        assert coerce_metric(float("inf")) == 0.0


class TestCapture:
    def test_readings(self, bound) -> None:
        module, store = bound
        snap = KpiLedger().capture(module, store, "test")
        assert snap.seq == 1
        assert snap.branch_id == "branch.test"
        assert snap.metrics["amount"].value == 42.5
        assert snap.metrics["amount"].unit == "USD"
        assert snap.metrics["blank"].value == 0.0
        assert snap.metrics["text"].value == 0.0

    def test_formula_cells_keep_text(self, bound) -> None:
        module, store = bound
        snap = KpiLedger().capture(module, store, "test")
        reading = snap.metrics["total"]
        assert reading.value == 0.0
        assert reading.formula == "=SUM(T.Facts!B2:B2)"
        assert reading.source_cell == "T.Summary!B2"

    def test_unresolvable_bindings_skipped(self) -> None:
        module = _module([
            {"metricId": "bad", "sourceCell": "not an address"},
            {"metricId": "ghost", "sourceCell": "Nowhere!A1"},
            {"metricId": "ok", "sourceCell": "T.Facts!A1"},
        ])
        store = SheetStore.from_registry(ModuleRegistry([module]))
        snap = KpiLedger().capture(module, store, "test")
        assert set(snap.metrics) == {"ok"}

    def test_no_bindings(self) -> None:
        module = _module([])
        store = SheetStore.from_registry(ModuleRegistry([module]))
        ledger = KpiLedger()
        assert ledger.capture(module, store, "test") is None
        assert ledger.branch_ids() == []


class TestHistory:
    def test_append_only_sequence(self, bound) -> None:
        module, store = bound
        ledger = KpiLedger()
        ledger.capture(module, store, "a")
        store.get("T.Facts").append_rows([["gadget", 1]])
        ledger.capture(module, store, "b")
        history = ledger.history("branch.test")
        assert [s.seq for s in history] == [1, 2]
        assert [s.triggered_by for s in history] == ["a", "b"]
        assert ledger.latest("branch.test").seq == 2
        assert ledger.latest("branch.none") is None

    def test_history_is_a_copy(self, bound) -> None:
        module, store = bound
        ledger = KpiLedger()
        ledger.capture(module, store, "a")
        ledger.history("branch.test").clear()
        assert len(ledger.history("branch.test")) == 1

    def test_returned_metrics_cannot_rewrite_history(self, bound) -> None:
        module, store = bound
        ledger = KpiLedger()
        captured = ledger.capture(module, store, "a")
        original = ledger.history("branch.test")[0].metrics["amount"]

        captured.metrics.clear()
        leaked = ledger.history("branch.test")[0].metrics
        leaked.pop("amount")
        leaked["forged"] = original
        ledger.latest("branch.test").metrics.clear()

        (stored,) = ledger.history("branch.test")
        assert "forged" not in stored.metrics
        assert stored.metrics["amount"] == original
        assert len(stored.metrics) == 4

    def test_snapshots_frozen(self, bound) -> None:
        module, store = bound
        snap = KpiLedger().capture(module, store, "a")
        with pytest.raises(ValidationError):
            snap.seq = 9

    def test_state_entries_ignore_sequence(self, bound) -> None:
        module, store = bound
        once, twice = KpiLedger(), KpiLedger()
        once.capture(module, store, "a")
        twice.capture(module, store, "a")
        twice.capture(module, store, "b")
        assert once.state_entries() == twice.state_entries()
        (entry,) = once.state_entries()
        assert entry["branchId"] == "branch.test"
        assert entry["metricCount"] == 4
        assert "formula" not in entry["latest"]["amount"]


def test_seeded_runtime_snapshots(runtime) -> None:
    finance = runtime.kpi_history("branch.finance")
    assert len(finance) == 1
    assert finance[0].triggered_by == "seed"
    assert finance[0].metrics["p2p.matchRate"].formula == "=IF(B2>0,B3/B2*100,0)"
    assert runtime.kpi_history("branch.operations")[0].module_id == "MFG"
