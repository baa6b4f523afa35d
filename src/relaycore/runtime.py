"""Relay runtime: registries, sheet store, and the single-writer ingest path."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from relaycore.errors import ConfigError, PayloadError
from relaycore.kpi import KpiLedger, KpiSnapshot
from relaycore.project import DEFAULT_CONFIG, load_project_config, load_registries, load_seed_data
from relaycore.recompute import RecomputeReport, Recomputer
from relaycore.routes import BatchResult, ingest_batch
from relaycore.schema import ModuleRegistry, RouteRegistry
from relaycore.sheets import Provenance, SheetStore
from relaycore.utils.hash import compute_state_hashes

DEFAULT_ENTRY_SOURCE = "api-bridge"


class IngestOutcome(BaseModel):
    """Result of one gateway ingest: the batch counts plus the recompute it caused."""

    batch: BatchResult
    recompute: RecomputeReport | None = None


def _parse_as_of(value: Any) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ConfigError(f"aging_as_of is not an ISO date: {value!r}") from exc


def _filled(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


class RelayRuntime:
    """Owns all mutable relay state.

    Every ingest-then-recompute sequence runs under one lock, so sheet
    state only ever has a single writer.  Registries are built before
    construction and never change afterwards.
    """

    def __init__(
        self,
        modules: ModuleRegistry,
        routes: RouteRegistry,
        *,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.config = dict(DEFAULT_CONFIG) if config is None else config
        self.modules = modules
        self.routes = routes
        self.store = SheetStore.from_registry(modules)
        self.ledger = KpiLedger()
        self.recomputer = Recomputer(
            modules, self.store, self.ledger, as_of=_parse_as_of(self.config.get("aging_as_of"))
        )
        self._lock = threading.Lock()

    @classmethod
    def from_project(
        cls, project_dir: Path | None = None, config: dict[str, Any] | None = None
    ) -> "RelayRuntime":
        """Load registries (and seed data, if enabled) for a project directory."""
        if config is None:
            config = load_project_config(project_dir) if project_dir is not None else dict(DEFAULT_CONFIG)
        modules, routes = load_registries(project_dir, config)
        runtime = cls(modules, routes, config=config)
        runtime.seed(load_seed_data(project_dir, config))
        return runtime

    # -- seeding -----------------------------------------------------------

    def seed(self, seed_data: Mapping[str, list[Any]]) -> list[RecomputeReport]:
        """Append seed rows to fact sheets, then run one full rebuild per module."""
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        with self._lock:
            for sheet_id, rows in seed_data.items():
                sheet = self.store.get(sheet_id)
                values = [
                    sheet.schema.from_mapping(r) if isinstance(r, Mapping) else list(r)
                    for r in rows
                ]
                provenance = [
                    Provenance(
                        source_system="seed",
                        source_id=f"seed-{sheet_id}-{i + 1}",
                        ingested_at=now,
                        event_timestamp=now,
                        route_id="seed",
                    )
                    for i in range(len(values))
                ]
                sheet.append_rows(values, provenance=provenance)
            return self.recomputer.rebuild_all("seed")

    # -- ingest ------------------------------------------------------------

    def prepare_records(
        self,
        route_id: str,
        records_input: Any,
        meta: Mapping[str, Any] | None = None,
        *,
        proof: bool = False,
    ) -> list[Any]:
        """Validate record count and fill provenance defaults from *meta*.

        A single object is treated as a one-record batch.  Under *proof*
        every record must carry an event timestamp, either itself or
        through ``meta.eventTimestamp``.

        Raises:
            PayloadError: Empty batch, too many records, or a missing
                timestamp in proof mode.
        """
        route = self.routes.get(route_id)
        records = list(records_input) if isinstance(records_input, list) else [records_input]
        if not records:
            raise PayloadError("records empty")
        max_records = int(self.config.get("max_records", DEFAULT_CONFIG["max_records"]))
        if len(records) > max_records:
            raise PayloadError(f"records exceeds max ({max_records})")

        meta = dict(meta or {})
        prov = route.provenance
        system_field = prov.system_field or "sourceSystem"
        id_field = prov.source_id_field or "sourceId"
        ts_field = prov.timestamp_field or "eventTimestamp"

        if proof and not _filled(meta.get("eventTimestamp")):
            if any(not (isinstance(r, Mapping) and _filled(r.get(ts_field))) for r in records):
                raise PayloadError("eventTimestamp required in proof mode")

        now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        prepared: list[Any] = []
        for idx, record in enumerate(records):
            if not isinstance(record, Mapping):
                prepared.append(record)
                continue
            rec = dict(record)
            defaults = {
                "entrySource": meta.get("entrySource") or DEFAULT_ENTRY_SOURCE,
                system_field: meta.get("sourceSystem") or DEFAULT_ENTRY_SOURCE,
                id_field: meta.get("sourceId") or f"{route_id}-{idx + 1}",
                ts_field: meta.get("eventTimestamp") or now,
            }
            for name, default in defaults.items():
                if not _filled(rec.get(name)):
                    rec[name] = default
            prepared.append(rec)
        return prepared

    def ingest(
        self,
        route_id: str,
        records_input: Any,
        *,
        meta: Mapping[str, Any] | None = None,
        proof: bool = False,
        batch_id: str | None = None,
    ) -> IngestOutcome:
        """Ingest a batch through *route_id* and run one recompute cascade.

        Raises:
            UnknownRouteError: If *route_id* is not registered.
            PayloadError: See ``prepare_records``.
        """
        records = self.prepare_records(route_id, records_input, meta, proof=proof)
        strict = bool(self.config.get("strict_required_fields", False))
        with self._lock:
            batch = ingest_batch(
                self.store, self.routes, route_id, records, strict=strict, batch_id=batch_id
            )
            report = None
            if batch.ingested > 0:
                report = self.recomputer.recompute(batch.sheet_id)
        return IngestOutcome(batch=batch, recompute=report)

    # -- read side ---------------------------------------------------------

    def state_hashes(self) -> dict[str, Any]:
        with self._lock:
            hashes = compute_state_hashes(
                self.store.state_entries("fact"),
                self.store.state_entries("match"),
                self.store.state_entries("summary"),
                self.ledger.state_entries(),
            )
            counts = self.store.row_counts()
        return {"hashes": hashes, "rowCounts": counts}

    def kpi_history(self, branch_id: str) -> list[KpiSnapshot]:
        return self.ledger.history(branch_id)
