"""XLSX import: per-sheet formula dependency graphs and evaluation order.

Uses openpyxl to read .xlsx files.  For each worksheet the cell values
and formula texts are collected, a dependency graph is built between
formula cells of that sheet, and the sheet is sequenced.  Nothing is
evaluated.  Sheets holding a circular reference are reported with
``formula_state: indeterminate`` and never block the rest of the import.

Produces an ``import_report.json`` summarising each sheet.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import openpyxl

from relaycore.cell_graph import build_dependency_graph, sequence
from relaycore.formulas import make_addr
from relaycore.logging.events import FORMULA_UNPARSEABLE, EventType, emit_info, emit_warning

DEFAULT_MAX_ROWS = 500
DEFAULT_MAX_COLS = 100
DEFAULT_MAX_TOTAL_CELLS = 500_000


def _read_cells(ws: Any, n_rows: int, n_cols: int) -> dict[str, Any]:
    cells: dict[str, Any] = {}
    for row_idx in range(1, n_rows + 1):
        for col_idx in range(1, n_cols + 1):
            cell = ws.cell(row=row_idx, column=col_idx)
            if cell.value is None:
                continue
            addr = make_addr(row_idx - 1, col_idx - 1)
            if cell.data_type == "f" or (isinstance(cell.value, str) and cell.value.startswith("=")):
                text = str(cell.value)
                cells[addr] = {"formula": text if text.startswith("=") else "=" + text}
            elif isinstance(cell.value, datetime):
                cells[addr] = {"value": cell.value.isoformat()}
            else:
                cells[addr] = {"value": cell.value}
    return cells


def analyze_sheet(cells: dict[str, Any], sheet_name: str) -> dict[str, Any]:
    """Graph and sequence one sheet's cells; returns its report entry."""
    graph = build_dependency_graph(cells, sheet_name)
    result = sequence(graph)
    for addr, error in sorted(graph.unparsed.items()):
        emit_warning(
            EventType.formula_unparsed,
            f"{sheet_name}!{addr}: formula not tokenized: {error}",
            {"sheet": sheet_name, "addr": addr},
            error_code=FORMULA_UNPARSEABLE,
        )
    return {
        "name": sheet_name,
        "cells": len(cells),
        "formulas": len(graph.formula_cells),
        "nodes": result.node_count,
        "edges": graph.edge_count,
        "order": result.order,
        "has_cycle": result.has_cycle,
        "cyclic_cells": result.cyclic_cells,
        "formula_state": result.formula_state,
        "external_refs": {addr: refs for addr, refs in sorted(graph.external_refs.items())},
        "unparsed": dict(sorted(graph.unparsed.items())),
    }


def import_xlsx(
    xlsx_path: Path,
    project_dir: Path | None = None,
    *,
    max_rows: int = DEFAULT_MAX_ROWS,
    max_cols: int = DEFAULT_MAX_COLS,
    max_total_cells: int = DEFAULT_MAX_TOTAL_CELLS,
) -> dict[str, Any]:
    """Analyze an XLSX workbook's formula dependencies.

    Args:
        xlsx_path: Path to the .xlsx file.
        project_dir: When given, the report is written to
            ``<project_dir>/imports/<stem>/import_report.json``.
        max_rows: Maximum rows read per sheet.
        max_cols: Maximum columns read per sheet.
        max_total_cells: Stop reading further sheets past this many cells.

    Returns:
        The import report dict.
    """
    wb = openpyxl.load_workbook(str(xlsx_path), data_only=False)

    report: dict[str, Any] = {
        "source": str(xlsx_path),
        "imported_at": datetime.now(timezone.utc).isoformat(),
        "sheets": [],
        "cells_imported": 0,
        "formulas_imported": 0,
        "sheets_with_cycles": [],
        "warnings": [],
    }

    total_cells = 0
    for ws in wb.worksheets:
        if total_cells >= max_total_cells:
            report["warnings"].append(
                f"Sheet {ws.title!r}: skipped, total cell limit ({max_total_cells}) reached"
            )
            break

        source_rows = ws.max_row or 1
        source_cols = ws.max_column or 1
        if source_rows > max_rows:
            report["warnings"].append(
                f"Sheet {ws.title!r}: truncated from {source_rows} to {max_rows} rows"
            )
        if source_cols > max_cols:
            report["warnings"].append(
                f"Sheet {ws.title!r}: truncated from {source_cols} to {max_cols} columns"
            )

        cells = _read_cells(ws, min(source_rows, max_rows), min(source_cols, max_cols))
        entry = analyze_sheet(cells, ws.title)
        report["sheets"].append(entry)
        report["cells_imported"] += entry["cells"]
        report["formulas_imported"] += entry["formulas"]
        if entry["has_cycle"]:
            report["sheets_with_cycles"].append(ws.title)
        total_cells += entry["cells"]

    if project_dir is not None:
        out_dir = project_dir / "imports" / Path(xlsx_path).stem
        out_dir.mkdir(parents=True, exist_ok=True)
        report_path = out_dir / "import_report.json"
        report_path.write_text(json.dumps(report, indent=2))
        report["report_path"] = str(report_path)

    emit_info(
        EventType.import_completed,
        f"Imported {len(report['sheets'])} sheet(s) from {Path(xlsx_path).name}",
        {
            "source": str(xlsx_path),
            "sheets": len(report["sheets"]),
            "formulas": report["formulas_imported"],
            "sheets_with_cycles": report["sheets_with_cycles"],
        },
    )
    return report
