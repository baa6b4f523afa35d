"""Tests for sheet storage, typed rows, and Parquet export."""

from __future__ import annotations

import json

import polars as pl
import pytest

from relaycore.errors import AppendOnlyViolation, UnknownSheetError
from relaycore.export import export_sheets
from relaycore.schema import ColumnDef
from relaycore.sheets import Provenance, RowSchema, Sheet, SheetStore, display_value

COLUMNS = [
    ColumnDef(id="poLineId", label="PO Line"),
    ColumnDef(id="qty", label="Qty", type="number"),
    ColumnDef(id="note"),
]


def _prov(n: int) -> Provenance:
    return Provenance(
        source_system="SAP",
        source_id=f"DOC-{n}",
        ingested_at="2026-03-01T00:00:00Z",
        event_timestamp="2026-03-01T00:00:00Z",
        route_id="r",
    )


class TestRowSchema:
    def test_letters_follow_declared_order(self):
        schema = RowSchema(COLUMNS)
        assert schema.letter("poLineId") == "A"
        assert schema.letter("note") == "C"
        with pytest.raises(KeyError):
            schema.letter("missing")

    def test_label_defaults_to_id(self):
        assert RowSchema(COLUMNS).labels() == ["PO Line", "Qty", "note"]

    def test_row_record_access(self):
        row = RowSchema(COLUMNS).record(["POL-1", 10])
        assert row["poLineId"] == "POL-1"
        assert row["note"] == ""
        assert row.get("undeclared", "x") == "x"
        assert dict(row) == {"poLineId": "POL-1", "qty": 10, "note": ""}

    def test_from_mapping_orders_by_schema(self):
        schema = RowSchema(COLUMNS)
        assert schema.from_mapping({"note": "n", "poLineId": "P"}) == ["P", "", "n"]


class TestDisplayValue:
    @pytest.mark.parametrize(
        "value, text",
        [(10.0, "10"), (0.42, "0.42"), (None, ""), (True, "TRUE"), ("x", "x"), (7, "7")],
    )
    def test_display(self, value, text):
        assert display_value(value) == text


class TestSheet:
    def test_header_is_row_zero(self):
        sheet = Sheet("S", "fact", COLUMNS)
        assert sheet.n_rows == 1
        assert sheet.n_cols == 3
        assert sheet.cell(0, 0).value == "PO Line"
        assert sheet.data_row_count == 0

    def test_append_assigns_next_indices(self):
        sheet = Sheet("S", "fact", COLUMNS)
        assert sheet.append_rows([["A", 1, ""], ["B", 2, ""]]) == [1, 2]
        assert sheet.append_rows([["C", 3, ""]]) == [3]
        assert sheet.n_rows == 4
        assert sheet.cell_at("A4").value == "C"

    def test_provenance_only_on_first_cell(self):
        sheet = Sheet("S", "fact", COLUMNS)
        (row,) = sheet.append_rows([["A", 1, ""]], provenance=[_prov(1)])
        assert sheet.cell(row, 0).provenance.source_id == "DOC-1"
        assert sheet.cell(row, 1).provenance is None
        assert sheet.provenance_for(row).source_system == "SAP"

    def test_deferred_index_is_rebuilt_on_demand(self):
        sheet = Sheet("S", "fact", COLUMNS)
        sheet.append_rows([["A", 1, ""]], defer_index=True)
        assert sheet.cell(1, 0).value == "A"

    def test_short_rows_are_padded(self):
        sheet = Sheet("S", "fact", COLUMNS)
        sheet.append_rows([["A"]])
        assert sheet.data_rows() == [["A", "", ""]]

    def test_fact_sheet_is_append_only(self):
        sheet = Sheet("S", "fact", COLUMNS)
        sheet.append_rows([["A", 1, ""]])
        with pytest.raises(AppendOnlyViolation):
            sheet.replace_rows([])
        assert sheet.data_row_count == 1

    def test_replace_rows_regenerates_derived_sheet(self):
        sheet = Sheet("M", "match", COLUMNS)
        sheet.replace_rows([["A", 1, ""], ["B", 2, ""]])
        sheet.replace_rows([["C", 3, ""]])
        assert sheet.n_rows == 2
        assert sheet.data_rows() == [["C", 3, ""]]
        assert sheet.cell(0, 0).value == "PO Line"
        assert sheet.cell(2, 0) is None

    def test_formula_cells_only_on_summary_sheets(self):
        summary = Sheet("Sum", "summary", COLUMNS)
        summary.replace_rows([["Total", "=SUM(B2:B3)", ""]])
        cell = summary.cell(1, 1)
        assert cell.formula == "=SUM(B2:B3)"
        assert cell.value is None

        fact = Sheet("F", "fact", COLUMNS)
        fact.append_rows([["=HYPERLINK(1)", 1, ""]])
        assert fact.cell(1, 0).formula is None
        assert fact.cell(1, 0).value == "=HYPERLINK(1)"

    def test_state_entries(self):
        sheet = Sheet("S", "fact", COLUMNS)
        sheet.append_rows([["A", 1, "n"]])
        assert sheet.state_entries() == [
            {"sheetId": "S", "idx": 0, "row": {"poLineId": "A", "qty": 1, "note": "n"}}
        ]

    def test_to_frame_uses_display_strings(self):
        sheet = Sheet("S", "fact", COLUMNS)
        sheet.append_rows([["A", 10.0, ""], ["B", 0.5, "x"]])
        df = sheet.to_frame()
        assert df.columns == ["poLineId", "qty", "note"]
        assert df["qty"].to_list() == ["10", "0.5"]
        assert df.schema["qty"] == pl.Utf8


class TestSheetStore:
    def test_from_registry_creates_every_sheet(self, modules):
        store = SheetStore.from_registry(modules)
        assert "P2P.POLines" in store
        assert store.get("P2P.ThreeWayMatch").kind == "match"
        assert {s.sheet_id for s in store.of_kind("summary")} >= {"P2P.AP_Aging", "MFG.ProductionSummary"}

    def test_unknown_sheet(self):
        with pytest.raises(UnknownSheetError):
            SheetStore().get("nope")

    def test_row_counts_include_header(self, modules):
        store = SheetStore.from_registry(modules)
        assert store.row_counts()["P2P.POLines"] == 1


class TestExport:
    def test_export_writes_parquet_and_manifest(self, runtime, tmp_path):
        out = tmp_path / "exports"
        manifest = export_sheets(runtime.store, out, kinds=["match"])
        assert set(manifest) == {s.sheet_id for s in runtime.store.of_kind("match")}
        df = pl.read_parquet(out / "P2P.ThreeWayMatch.parquet")
        assert df.height == manifest["P2P.ThreeWayMatch"]["rows"] == 7
        on_disk = json.loads((out / "manifest.json").read_text())
        assert on_disk["P2P.ThreeWayMatch"]["kind"] == "match"
        assert len(on_disk["P2P.ThreeWayMatch"]["sha256"]) == 64

    def test_summary_export_keeps_formula_text(self, runtime, tmp_path):
        export_sheets(runtime.store, tmp_path, kinds=["summary"])
        df = pl.read_parquet(tmp_path / "P2P.MatchRateSummary.parquet")
        assert df["value"].to_list()[-1] == "=IF(B2>0,B3/B2*100,0)"
