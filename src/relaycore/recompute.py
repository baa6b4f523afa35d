"""Recomputation orchestrator: fact edit -> matches -> summaries -> KPI snapshot."""

from __future__ import annotations

import time
from datetime import date
from typing import Any

from pydantic import BaseModel, Field

from relaycore.kpi import KpiLedger
from relaycore.logging.events import EventType, emit_info
from relaycore.matching import build_matches, count_exceptions
from relaycore.schema import ModuleDef, ModuleRegistry
from relaycore.sheets import SheetStore
from relaycore.summary import build_summary_data, summary_sheets_to_rebuild


class RecomputeReport(BaseModel):
    """What one recompute pass rebuilt."""

    module_id: str
    triggered_by: str
    rebuilt_matches: list[str] = Field(default_factory=list)
    rebuilt_summaries: list[str] = Field(default_factory=list)
    exceptions: dict[str, int] = Field(default_factory=dict)
    kpi_seq: int | None = None
    elapsed_ms: float = 0.0


class Recomputer:
    """Runs the dependency-gated rebuild cascade for one edited fact sheet.

    The registry and the store are injected; the recomputer holds no
    state of its own beyond the pinned aging date.
    """

    def __init__(
        self,
        modules: ModuleRegistry,
        store: SheetStore,
        ledger: KpiLedger,
        *,
        as_of: date | None = None,
    ) -> None:
        self.modules = modules
        self.store = store
        self.ledger = ledger
        self.as_of = as_of

    def _fact_data(self, module: ModuleDef) -> dict[str, list[list[Any]]]:
        return {sid: self.store.get(sid).data_rows() for sid in module.fact_sheet_ids()}

    def _match_data(self, module: ModuleDef) -> dict[str, list[list[Any]]]:
        return {sid: self.store.get(sid).data_rows() for sid in module.match_sheet_ids()}

    def recompute(self, edited_sheet_id: str) -> RecomputeReport:
        """Rebuild everything downstream of *edited_sheet_id*.

        Raises:
            UnknownSheetError: If no module declares the sheet.
        """
        module = self.modules.module_for_sheet(edited_sheet_id)
        if self.modules.sheet_kind(edited_sheet_id) != "fact":
            return RecomputeReport(module_id=module.module_id, triggered_by=edited_sheet_id)
        return self._run(module, edited_sheet_id, frozenset({edited_sheet_id}))

    def rebuild_module(self, module: ModuleDef, triggered_by: str = "seed") -> RecomputeReport:
        """Rebuild every match and summary sheet of *module*."""
        return self._run(module, triggered_by, None)

    def rebuild_all(self, triggered_by: str = "seed") -> list[RecomputeReport]:
        return [self.rebuild_module(module, triggered_by) for module in self.modules]

    def _run(self, module: ModuleDef, triggered_by: str, dirty: frozenset[str] | None) -> RecomputeReport:
        started = time.perf_counter()
        report = RecomputeReport(module_id=module.module_id, triggered_by=triggered_by)

        fact_data = self._fact_data(module)
        matches = build_matches(fact_data, module, dirty_source_sheets=dirty, as_of=self.as_of)
        match_defs = {m.sheet_id: m for m in module.match_sheets}
        for sheet_id, rows in matches.items():
            self.store.get(sheet_id).replace_rows(rows)
            report.rebuilt_matches.append(sheet_id)
            report.exceptions[sheet_id] = count_exceptions(match_defs[sheet_id], rows)
        if matches:
            emit_info(
                EventType.matches_rebuilt,
                f"Rebuilt {len(matches)} match sheet(s) for {module.module_id}",
                {
                    "module_id": module.module_id,
                    "triggered_by": triggered_by,
                    "sheets": {sid: len(rows) for sid, rows in matches.items()},
                    "exceptions": report.exceptions,
                },
            )

        summary_dirty = None if dirty is None else dirty | set(matches)
        summary_ids = summary_sheets_to_rebuild(module, summary_dirty)
        if summary_ids:
            summaries = build_summary_data(
                module, fact_data, self._match_data(module), summary_sheet_ids=summary_ids
            )
            for sheet_id, rows in summaries.items():
                self.store.get(sheet_id).replace_rows(rows)
                report.rebuilt_summaries.append(sheet_id)
            emit_info(
                EventType.summaries_rebuilt,
                f"Rebuilt {len(summaries)} summary sheet(s) for {module.module_id}",
                {"module_id": module.module_id, "triggered_by": triggered_by, "sheets": sorted(summaries)},
            )

        snapshot = self.ledger.capture(module, self.store, triggered_by)
        if snapshot is not None:
            report.kpi_seq = snapshot.seq
        report.elapsed_ms = round((time.perf_counter() - started) * 1000, 3)
        return report
