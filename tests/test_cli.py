"""Tests for the relaycore command-line interface."""

from __future__ import annotations

import json
from pathlib import Path

import openpyxl
import pytest
from click.testing import CliRunner

from relaycore import __version__
from relaycore.cli import main

PO = {
    "purchaseOrder": "PO-2001",
    "lineId": "POL-100",
    "vendorCode": "V-410",
    "orderQuantity": 100,
    "netPrice": 31.5,
}


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _write_json(path: Path, data) -> str:
    path.write_text(json.dumps(data))
    return str(path)


def test_version(runner) -> None:
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


class TestInit:
    def test_creates_project(self, runner, tmp_path) -> None:
        target = tmp_path / "new"
        result = runner.invoke(main, ["init", str(target)])
        assert result.exit_code == 0, result.output
        assert (target / "relay.yaml").exists()

    def test_existing_project(self, runner, project_dir) -> None:
        result = runner.invoke(main, ["init", str(project_dir)])
        assert result.exit_code == 1
        assert "already exists" in result.output


class TestIngest:
    def test_ingest_file(self, runner, project_dir, tmp_path) -> None:
        file = _write_json(tmp_path / "po.json", {"records": [PO], "meta": {"sourceSystem": "SAP"}})
        result = runner.invoke(main, ["ingest", "p2p.po_line.sap", file, "--project", str(project_dir)])
        assert result.exit_code == 0, result.output
        assert "Ingested 1 record(s) into P2P.POLines (failed: 0)" in result.output
        assert "Rebuilt matches: P2P.ThreeWayMatch" in result.output
        assert "KPI snapshot #2" in result.output

    def test_unknown_route(self, runner, project_dir, tmp_path) -> None:
        file = _write_json(tmp_path / "po.json", PO)
        result = runner.invoke(main, ["ingest", "nope", file, "--project", str(project_dir)])
        assert result.exit_code == 1
        assert "Unknown route" in result.output

    def test_proof_without_timestamp(self, runner, project_dir, tmp_path) -> None:
        file = _write_json(tmp_path / "po.json", [PO])
        result = runner.invoke(main, ["ingest", "p2p.po_line.sap", file, "--project", str(project_dir), "--proof"])
        assert result.exit_code == 1
        assert "eventTimestamp required" in result.output

    def test_invalid_json(self, runner, project_dir, tmp_path) -> None:
        file = tmp_path / "bad.json"
        file.write_text("{nope")
        result = runner.invoke(main, ["ingest", "p2p.po_line.sap", str(file), "--project", str(project_dir)])
        assert result.exit_code == 1
        assert "invalid JSON" in result.output

    def test_events_logged(self, runner, project_dir, tmp_path) -> None:
        file = _write_json(tmp_path / "po.json", [PO])
        runner.invoke(main, ["ingest", "p2p.po_line.sap", file, "--project", str(project_dir)])
        result = runner.invoke(main, ["events", "--project", str(project_dir), "--type", "batch_completed"])
        assert result.exit_code == 0
        assert "batch_completed" in result.output


class TestPreviewAndMock:
    def test_preview(self, runner, project_dir, tmp_path) -> None:
        file = _write_json(tmp_path / "po.json", PO)
        result = runner.invoke(main, ["preview", "p2p.po_line.sap", file, "--project", str(project_dir)])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["target_sheet"] == "P2P.POLines"
        assert data["would_append"] is True

    def test_mock_reproducible(self, runner, project_dir) -> None:
        args = ["mock", "mfg.material_issue.mes", "--project", str(project_dir), "--seed", "5"]
        first = json.loads(runner.invoke(main, args).output)
        second = json.loads(runner.invoke(main, args).output)
        first.pop("eventTimestamp")
        second.pop("eventTimestamp")
        assert first == second
        assert "orderReference" in first


class TestState:
    def test_hashes(self, runner, project_dir) -> None:
        result = runner.invoke(main, ["hashes", "--project", str(project_dir)])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert set(data["hashes"]) == {"facts", "matches", "summaries", "kpis"}

    def test_kpis(self, runner, project_dir) -> None:
        result = runner.invoke(main, ["kpis", "branch.operations", "--project", str(project_dir)])
        assert result.exit_code == 0, result.output
        assert "Snapshot #1 (triggered by seed)" in result.output
        assert "mfg.matchedWorkOrders" in result.output

    def test_kpis_unknown_branch(self, runner, project_dir) -> None:
        result = runner.invoke(main, ["kpis", "branch.none", "--project", str(project_dir)])
        assert result.exit_code == 1

    def test_export(self, runner, project_dir, tmp_path) -> None:
        out = tmp_path / "out"
        result = runner.invoke(main, ["export", str(out), "--project", str(project_dir), "--kind", "summary"])
        assert result.exit_code == 0, result.output
        assert "Exported 4 sheet(s)" in result.output
        manifest = json.loads((out / "manifest.json").read_text())
        assert set(manifest) == {
            "MFG.ProductionSummary",
            "P2P.AP_Aging",
            "P2P.MatchRateSummary",
            "P2P.SpendByCategory",
        }


class TestImportXlsx:
    def test_import(self, runner, project_dir, tmp_path) -> None:
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Calc"
        ws["A1"] = 1
        ws["A2"] = "=A3"
        ws["A3"] = "=A2"
        path = tmp_path / "calc.xlsx"
        wb.save(path)

        result = runner.invoke(main, ["import-xlsx", str(path), "--project", str(project_dir)])
        assert result.exit_code == 0, result.output
        assert "Calc: 2 formula(s), 2 edge(s), CYCLE" in result.output
        assert "cyclic: A2, A3" in result.output
        assert (project_dir / "imports" / "calc" / "import_report.json").exists()

    def test_import_json(self, runner, tmp_path) -> None:
        wb = openpyxl.Workbook()
        wb.active["A1"] = "=1+1"
        path = tmp_path / "one.xlsx"
        wb.save(path)
        result = runner.invoke(main, ["import-xlsx", str(path), "--json"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["formulas_imported"] == 1
