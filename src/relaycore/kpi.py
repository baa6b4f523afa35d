"""KPI binder: snapshot bound cells into per-branch metric history."""

from __future__ import annotations

import math
import threading
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from relaycore.errors import UnknownSheetError
from relaycore.formulas import AddressError, parse_sheet_ref
from relaycore.logging.events import KPI_ADDRESS_INVALID, EventType, emit_info, emit_warning
from relaycore.schema import ModuleDef
from relaycore.sheets import SheetStore


class KpiReading(BaseModel):
    """One metric value read from its bound cell."""

    model_config = ConfigDict(frozen=True)

    value: float
    unit: str = ""
    source_cell: str
    formula: str | None = None


class KpiSnapshot(BaseModel):
    """Immutable metric snapshot appended to a branch history."""

    model_config = ConfigDict(frozen=True)

    seq: int
    branch_id: str
    module_id: str
    triggered_by: str
    metrics: dict[str, KpiReading] = Field(default_factory=dict)


def coerce_metric(value: Any) -> float:
    """Numeric value of a cell; anything non-numeric reads as 0.0."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if isinstance(value, str):
        try:
            f = float(value.strip())
        except ValueError:
            return 0.0
        return f if math.isfinite(f) else 0.0
    return 0.0


class KpiLedger:
    """Append-only KPI snapshot histories, one per branch."""

    def __init__(self) -> None:
        self._history: dict[str, list[KpiSnapshot]] = {}
        self._lock = threading.Lock()

    def _read(self, store: SheetStore, source_cell: str) -> KpiReading | None:
        try:
            parsed = parse_sheet_ref(source_cell)
        except AddressError:
            parsed = None
        if parsed is None:
            return None
        sheet_id, row, col = parsed
        try:
            sheet = store.get(sheet_id)
        except UnknownSheetError:
            return None
        cell = sheet.cell(row, col)
        if cell is None:
            return KpiReading(value=0.0, source_cell=source_cell)
        if cell.formula is not None:
            return KpiReading(value=0.0, source_cell=source_cell, formula=cell.formula)
        return KpiReading(value=coerce_metric(cell.value), source_cell=source_cell)

    def capture(self, module: ModuleDef, store: SheetStore, triggered_by: str) -> KpiSnapshot | None:
        """Read every binding of *module* and append one snapshot.

        Bindings whose address does not parse or names an unknown sheet
        are skipped with a warning.  Returns None when the module declares
        no bindings.
        """
        if not module.kpi_bindings:
            return None

        metrics: dict[str, KpiReading] = {}
        for binding in module.kpi_bindings:
            reading = self._read(store, binding.source_cell)
            if reading is None:
                emit_warning(
                    EventType.kpi_snapshot_appended,
                    f"KPI {binding.metric_id}: cannot resolve {binding.source_cell!r}",
                    {"metric_id": binding.metric_id, "source_cell": binding.source_cell},
                    error_code=KPI_ADDRESS_INVALID,
                )
                continue
            metrics[binding.metric_id] = reading.model_copy(update={"unit": binding.unit})

        with self._lock:
            history = self._history.setdefault(module.branch_id, [])
            snapshot = KpiSnapshot(
                seq=len(history) + 1,
                branch_id=module.branch_id,
                module_id=module.module_id,
                triggered_by=triggered_by,
                metrics=metrics,
            )
            history.append(snapshot)
            # Callers get a copy; the stored snapshot is never handed out.
            snapshot = snapshot.model_copy(deep=True)

        emit_info(
            EventType.kpi_snapshot_appended,
            f"KPI snapshot #{snapshot.seq} for {module.branch_id}",
            {
                "branch_id": module.branch_id,
                "seq": snapshot.seq,
                "triggered_by": triggered_by,
                "metrics": len(metrics),
            },
        )
        return snapshot

    def history(self, branch_id: str) -> list[KpiSnapshot]:
        """Deep copies of the branch history, oldest first."""
        with self._lock:
            return [s.model_copy(deep=True) for s in self._history.get(branch_id, [])]

    def latest(self, branch_id: str) -> KpiSnapshot | None:
        with self._lock:
            history = self._history.get(branch_id)
            return history[-1].model_copy(deep=True) if history else None

    def branch_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._history)

    def state_entries(self) -> list[dict[str, Any]]:
        """Per-branch entries for state hashing.

        Sequence numbers and trigger ids are left out so that two runs
        reaching the same state by different routes hash the same.
        """
        entries = []
        with self._lock:
            for branch_id, history in sorted(self._history.items()):
                latest = history[-1]
                entries.append({
                    "branchId": branch_id,
                    "metricCount": len(latest.metrics),
                    "latest": {
                        mid: reading.model_dump(mode="json", exclude_none=True)
                        for mid, reading in sorted(latest.metrics.items())
                    },
                })
        return entries
