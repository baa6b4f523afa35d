"""Tests for XLSX formula dependency import."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import openpyxl
import pytest

from relaycore.logging.events import set_project_dir
from relaycore.xlsx_import import analyze_sheet, import_xlsx


@pytest.fixture
def workbook(tmp_path: Path) -> Path:
    wb = openpyxl.Workbook()
    model = wb.active
    model.title = "Model"
    model["A1"] = 10
    model["A2"] = "=A1*2"
    model["A3"] = "=A2+1"
    model["B1"] = datetime(2026, 1, 1)

    loop = wb.create_sheet("Loop")
    loop["A1"] = "=B1"
    loop["B1"] = "=A1"
    loop["C1"] = 5

    refs = wb.create_sheet("Refs")
    refs["A1"] = "=Model!A1+1"

    path = tmp_path / "book.xlsx"
    wb.save(path)
    return path


def _sheet(report: dict, name: str) -> dict:
    return next(s for s in report["sheets"] if s["name"] == name)


class TestImport:
    def test_ordered_sheet(self, workbook) -> None:
        report = import_xlsx(workbook)
        model = _sheet(report, "Model")
        assert model["order"] == ["A1", "A2", "A3"]
        assert model["formulas"] == 2
        assert model["formula_state"] == "ordered"
        assert model["cells"] == 4

    def test_cycle_reported_not_raised(self, workbook) -> None:
        report = import_xlsx(workbook)
        loop = _sheet(report, "Loop")
        assert loop["has_cycle"]
        assert loop["cyclic_cells"] == ["A1", "B1"]
        assert loop["formula_state"] == "indeterminate"
        assert report["sheets_with_cycles"] == ["Loop"]
        # The sheet after the cyclic one is still imported.
        assert _sheet(report, "Refs")["formula_state"] == "ordered"

    def test_external_refs(self, workbook) -> None:
        refs = _sheet(import_xlsx(workbook), "Refs")
        assert list(refs["external_refs"]) == ["A1"]
        assert refs["edges"] == 0

    def test_totals(self, workbook) -> None:
        report = import_xlsx(workbook)
        assert report["formulas_imported"] == 5
        assert report["cells_imported"] == 8
        assert report["warnings"] == []
        assert "report_path" not in report

    def test_report_written(self, workbook, project_dir) -> None:
        report = import_xlsx(workbook, project_dir)
        path = project_dir / "imports" / "book" / "import_report.json"
        assert report["report_path"] == str(path)
        saved = json.loads(path.read_text())
        assert saved["sheets_with_cycles"] == ["Loop"]

    def test_row_limit_warns(self, workbook) -> None:
        report = import_xlsx(workbook, max_rows=2)
        assert any("truncated from 3 to 2 rows" in w for w in report["warnings"])
        assert _sheet(report, "Model")["order"] == ["A1", "A2"]

    def test_events(self, workbook, tmp_path) -> None:
        set_project_dir(tmp_path)
        import_xlsx(workbook)
        events = [json.loads(line) for line in (tmp_path / "logs" / "events.ndjson").read_text().splitlines()]
        types = [e["event_type"] for e in events]
        assert "formula_cycle_detected" in types
        assert types[-1] == "import_completed"


def test_analyze_sheet_unparsed(tmp_path) -> None:
    set_project_dir(tmp_path)
    entry = analyze_sheet({"A1": {"value": 1}, "B1": {"formula": "=[oops"}}, "S")
    assert list(entry["unparsed"]) == ["B1"]
    events = [json.loads(line) for line in (tmp_path / "logs" / "events.ndjson").read_text().splitlines()]
    assert events[-1]["event_type"] == "formula_unparsed"
    assert events[-1]["error_code"] == "formula_unparseable"
