"""Tests for summary formula generation."""

from __future__ import annotations

import json

import pytest

from relaycore.formulas import extract_references, is_formula
from relaycore.logging.events import set_project_dir
from relaycore.schema import ModuleDef
from relaycore.summary import build_summary_data, qualify, summary_sheets_to_rebuild


@pytest.fixture
def p2p(modules) -> ModuleDef:
    return modules.get("P2P")


def _current(runtime, module: ModuleDef):
    fact_data = {sid: runtime.store.get(sid).data_rows() for sid in module.fact_sheet_ids()}
    match_data = {sid: runtime.store.get(sid).data_rows() for sid in module.match_sheet_ids()}
    return fact_data, match_data


class TestQualify:
    def test_plain(self) -> None:
        assert qualify("P2P.POLines") == "P2P.POLines"

    def test_quoted(self) -> None:
        assert qualify("AP Aging") == "'AP Aging'"
        assert qualify("2024") == "'2024'"


class TestTemplates:
    def test_match_rate(self, runtime, p2p) -> None:
        out = build_summary_data(p2p, *_current(runtime, p2p), summary_sheet_ids=["P2P.MatchRateSummary"])
        rows = out["P2P.MatchRateSummary"]
        assert [r[0] for r in rows] == [
            "Total Match Lines",
            "Matched Count",
            "QTY Exceptions",
            "Price Exceptions",
            "Unmatched",
            "Total Exceptions",
            "Match Rate %",
        ]
        # Seven three-way match rows -> ranges end at row 8.
        assert rows[0][1] == "=COUNT(P2P.ThreeWayMatch!C2:C8)"
        assert rows[1][1] == '=COUNTIF(P2P.ThreeWayMatch!N2:N8,"MATCH")'
        assert rows[6][1] == "=IF(B2>0,B3/B2*100,0)"

    def test_ap_aging(self, runtime, p2p) -> None:
        out = build_summary_data(p2p, *_current(runtime, p2p), summary_sheet_ids=["P2P.AP_Aging"])
        rows = dict((r[0], r[1]) for r in out["P2P.AP_Aging"])
        assert len(out["P2P.AP_Aging"]) == 13
        assert rows["Total Invoiced"] == "=SUM(P2P.InvoiceToPaymentMatch!F2:F5)"
        assert rows["Total Paid"] == "=SUM(P2P.InvoiceToPaymentMatch!G2:G5)"
        assert rows["Outstanding"] == "=B2-B3"
        assert rows["Current Date"] == "=TODAY()"
        assert "COUNTIFS" in rows["Aging 31-60d"]

    def test_spend_by_vendor(self, runtime, p2p) -> None:
        out = build_summary_data(p2p, *_current(runtime, p2p), summary_sheet_ids=["P2P.SpendByCategory"])
        rows = out["P2P.SpendByCategory"]
        assert [r[0] for r in rows] == ["V-200", "V-301", "V-150", "V-410", "Total"]
        assert rows[0] == [
            "V-200",
            "Acme Fasteners",
            '=SUMIF(P2P.POLines!C2:C7,"V-200",P2P.POLines!I2:I7)',
            '=SUMIF(P2P.InvoiceLines!C2:C7,"V-200",P2P.InvoiceLines!H2:H7)',
            "=C2-D2",
        ]
        assert rows[-1] == ["Total", "", "=SUM(C2:C5)", "=SUM(D2:D5)", "=C6-D6"]

    def test_only_formulas_or_literals(self, runtime, p2p) -> None:
        out = build_summary_data(p2p, *_current(runtime, p2p))
        for rows in out.values():
            for row in rows:
                for value in row:
                    assert isinstance(value, str)
                    if is_formula(value):
                        extract_references(value)

    def test_ranges_follow_growth(self, empty_runtime, p2p) -> None:
        out = build_summary_data(p2p, *_current(empty_runtime, p2p), summary_sheet_ids=["P2P.MatchRateSummary"])
        # An empty source still yields a valid two-row range.
        assert out["P2P.MatchRateSummary"][0][1] == "=COUNT(P2P.ThreeWayMatch!C2:C2)"

    def test_literal_formula_rows_win(self, modules) -> None:
        mfg = modules.get("MFG")
        out = build_summary_data(mfg, {}, {})
        rows = out["MFG.ProductionSummary"]
        assert rows[0] == ["Work Orders", "=COUNT(MFG.WOMaterialMatch!C2:C200)"]
        assert len(rows) == 5


class TestFallbacks:
    def _module(self, **summary) -> ModuleDef:
        return ModuleDef.model_validate({
            "moduleId": "X",
            "branchId": "b",
            "summarySheets": [{"sheetId": "X.S", "columns": [{"id": "metric"}, {"id": "value"}], **summary}],
        })

    def test_unknown_template_is_empty(self, tmp_path) -> None:
        set_project_dir(tmp_path)
        out = build_summary_data(self._module(template="nope"), {}, {})
        assert out == {"X.S": []}
        events = [json.loads(line) for line in (tmp_path / "logs" / "events.ndjson").read_text().splitlines()]
        assert events[-1]["event_type"] == "summary_template_missing"

    def test_template_with_undeclared_source(self) -> None:
        module = self._module(template="match_rate", sourceSheets=["X.Missing"])
        assert build_summary_data(module, {}, {}) == {"X.S": []}

    @pytest.mark.parametrize(
        "template, sources",
        [("match_rate", []), ("ap_aging", []), ("spend_by_vendor", ["X.F"])],
    )
    def test_template_without_enough_sources(self, tmp_path, template, sources) -> None:
        set_project_dir(tmp_path)
        module = self._module(template=template, sourceSheets=sources)
        assert build_summary_data(module, {"X.F": []}, {}) == {"X.S": []}
        events = [json.loads(line) for line in (tmp_path / "logs" / "events.ndjson").read_text().splitlines()]
        assert "needs" in events[-1]["message"]


class TestGate:
    def test_all_when_not_dirty(self, p2p) -> None:
        assert summary_sheets_to_rebuild(p2p, None) == p2p.summary_sheet_ids()

    def test_match_source(self, p2p) -> None:
        assert summary_sheets_to_rebuild(p2p, {"P2P.ThreeWayMatch"}) == ["P2P.MatchRateSummary"]

    def test_fact_source(self, p2p) -> None:
        assert summary_sheets_to_rebuild(p2p, {"P2P.InvoiceLines"}) == ["P2P.SpendByCategory"]

    def test_unrelated(self, p2p) -> None:
        assert summary_sheets_to_rebuild(p2p, {"P2P.RequisitionLines"}) == []
