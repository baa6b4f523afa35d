"""Route execution: normalize external records and append them to fact sheets.

Routes are pure mappings from an external record to one fact row.  The
only mutation a route performs is appending rows to its target fact
sheet; match, summary and KPI updates are driven by the recompute cascade.
"""

from __future__ import annotations

import math
import random
import time
from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import uuid4

from pydantic import BaseModel, Field

from relaycore.logging.events import (
    REQUIRED_FIELD_MISSING,
    EventLevel,
    EventType,
    emit,
    emit_info,
    emit_warning,
    make_batch_event,
)
from relaycore.schema import RouteDef, RouteField, RouteRegistry
from relaycore.sheets import Provenance, RowSchema, SheetStore


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class NormalizedRecord(BaseModel):
    route_id: str
    sheet_id: str
    fact_class: str = ""
    scope: str = ""
    row: list[Any]
    keys: dict[str, Any] = Field(default_factory=dict)
    provenance: Provenance
    warnings: list[str] = Field(default_factory=list)
    accepted: bool = True


class MappedField(BaseModel):
    column: str
    source_field: str
    value: Any
    type: str
    required: bool
    missing: bool


class DroppedField(BaseModel):
    field: str
    value: Any
    is_provenance: bool


class RoutePreview(BaseModel):
    route_id: str
    target_sheet: str
    fact_class: str = ""
    scope: str = ""
    keys: list[str] = Field(default_factory=list)
    mapped: list[MappedField] = Field(default_factory=list)
    dropped: list[DroppedField] = Field(default_factory=list)
    provenance: dict[str, str] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    would_append: bool = True


class IngestResult(BaseModel):
    success: bool
    sheet_id: str
    row_index: int | None = None
    provenance: Provenance | None = None
    warnings: list[str] = Field(default_factory=list)


class BatchResult(BaseModel):
    batch_id: str
    route_id: str
    sheet_id: str
    ingested: int = 0
    failed: int = 0
    warnings: int = 0
    elapsed_ms: float = 0.0


class IngestContext:
    """Per-batch ingestion state threaded through ``ingest_record`` calls.

    Attributes:
        batch_id: Attribution id for events written during the batch.
        quiet: Suppress per-record ``record_ingested`` events.
        defer_index: Leave sheet indexes stale until the batch finishes.
        touched: Sheet ids appended to during the batch.
    """

    def __init__(self, batch_id: str, *, quiet: bool = True, defer_index: bool = True) -> None:
        self.batch_id = batch_id
        self.quiet = quiet
        self.defer_index = defer_index
        self.touched: set[str] = set()


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _utc_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


def coerce_value(value: Any, field_type: str) -> Any:
    """Coerce a source value to the declared column type.

    Number fields parse via ``float``; unparsable or non-finite values keep
    the raw value.  Other types become ``str``.  Missing values become ``""``.
    """
    if value is None:
        return ""
    if field_type == "number":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str) and value.strip() == "":
            return ""
        try:
            n = float(value)
        except (TypeError, ValueError):
            return value
        return n if math.isfinite(n) else value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _build_provenance(route: RouteDef, record: Mapping[str, Any], now: str) -> Provenance:
    prov = route.provenance

    def pick(name: str | None) -> Any:
        return record.get(name) if name else None

    source_system = pick(prov.system_field)
    source_id = pick(prov.source_id_field)
    event_ts = pick(prov.timestamp_field)
    return Provenance(
        source_system=str(source_system) if not _is_missing(source_system) else "unknown",
        source_id=str(source_id) if not _is_missing(source_id) else f"auto-{int(time.time() * 1000)}",
        ingested_at=now,
        event_timestamp=str(event_ts) if not _is_missing(event_ts) else now,
        route_id=route.route_id,
    )


def _column_order(route: RouteDef, schema: RowSchema | None) -> list[str]:
    if schema is None:
        return list(route.fields)
    return list(schema.ids)


def normalize_record(
    routes: RouteRegistry,
    route_id: str,
    record: Mapping[str, Any],
    *,
    schema: RowSchema | None = None,
    strict: bool = False,
) -> NormalizedRecord:
    """Map an external record onto the target sheet's columns.

    Args:
        routes: Route registry.
        route_id: Route to apply.
        record: Raw external record.
        schema: Target sheet schema.  When given, the row is emitted in
            schema order with unmapped columns left empty; otherwise in
            route field order.
        strict: Mark records with required-field violations as not accepted.

    Returns:
        The normalized record.  Required-field violations are reported in
        ``warnings``; in lenient mode the record is still accepted.

    Raises:
        UnknownRouteError: If *route_id* is not registered.
    """
    route = routes.get(route_id)
    now = _utc_iso()

    row: list[Any] = []
    keys: dict[str, Any] = {}
    warnings: list[str] = []
    for column_id in _column_order(route, schema):
        field_def: RouteField | None = route.fields.get(column_id)
        if field_def is None:
            row.append("")
            continue
        value = coerce_value(record.get(field_def.source), field_def.type)
        if field_def.required and _is_missing(value):
            warnings.append(f"{column_id} is required (source: {field_def.source})")
        row.append(value)
        if column_id in route.keys:
            keys[column_id] = value

    return NormalizedRecord(
        route_id=route.route_id,
        sheet_id=route.target_sheet,
        fact_class=route.fact_class,
        scope=route.scope,
        row=row,
        keys=keys,
        provenance=_build_provenance(route, record, now),
        warnings=warnings,
        accepted=not (strict and warnings),
    )


def preview_route(routes: RouteRegistry, route_id: str, record: Mapping[str, Any]) -> RoutePreview:
    """Dry-run a route: report the mapping without appending anything.

    Raises:
        UnknownRouteError: If *route_id* is not registered.
    """
    route = routes.get(route_id)

    mapped: list[MappedField] = []
    used: set[str] = set()
    for column_id, field_def in route.fields.items():
        raw = record.get(field_def.source)
        has_value = not _is_missing(raw)
        mapped.append(
            MappedField(
                column=column_id,
                source_field=field_def.source,
                value=coerce_value(raw, field_def.type) if has_value else "(empty)",
                type=field_def.type,
                required=field_def.required,
                missing=field_def.required and not has_value,
            )
        )
        used.add(field_def.source)

    prov_fields = route.provenance_fields()
    dropped = [
        DroppedField(field=key, value=value, is_provenance=key in prov_fields)
        for key, value in record.items()
        if key not in used
    ]

    prov = route.provenance

    def shown(name: str | None) -> str:
        value = record.get(name) if name else None
        return str(value) if not _is_missing(value) else "(not provided)"

    errors = [f"{m.column} is required (source: {m.source_field})" for m in mapped if m.missing]
    return RoutePreview(
        route_id=route.route_id,
        target_sheet=route.target_sheet,
        fact_class=route.fact_class,
        scope=route.scope,
        keys=list(route.keys),
        mapped=mapped,
        dropped=dropped,
        provenance={
            "source_system": shown(prov.system_field),
            "source_id": shown(prov.source_id_field),
            "event_timestamp": shown(prov.timestamp_field),
        },
        errors=errors,
        would_append=not errors,
    )


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


def ingest_record(
    store: SheetStore,
    routes: RouteRegistry,
    route_id: str,
    record: Mapping[str, Any],
    *,
    ctx: IngestContext | None = None,
    strict: bool = False,
) -> IngestResult:
    """Normalize *record* and append it to the route's target fact sheet.

    Raises:
        UnknownRouteError: If *route_id* is not registered.
        UnknownSheetError: If the target sheet is not in the store.
    """
    route = routes.get(route_id)
    sheet = store.get(route.target_sheet)
    normalized = normalize_record(routes, route_id, record, schema=sheet.schema, strict=strict)
    batch_id = ctx.batch_id if ctx is not None else None

    if normalized.warnings:
        emit_warning(
            EventType.route_warning,
            f"{route_id}: {'; '.join(normalized.warnings)}",
            {"route_id": route_id, "sheet_id": sheet.sheet_id, "warnings": normalized.warnings},
            error_code=REQUIRED_FIELD_MISSING,
            batch_id=batch_id,
        )
    if not normalized.accepted:
        emit_warning(
            EventType.record_rejected,
            f"{route_id}: record rejected in strict mode",
            {"route_id": route_id, "sheet_id": sheet.sheet_id, "source_id": normalized.provenance.source_id},
            error_code=REQUIRED_FIELD_MISSING,
            batch_id=batch_id,
        )
        return IngestResult(success=False, sheet_id=sheet.sheet_id, warnings=normalized.warnings)

    defer = ctx is not None and ctx.defer_index
    (row_index,) = sheet.append_rows(
        [normalized.row], provenance=[normalized.provenance], defer_index=defer
    )
    if ctx is not None:
        ctx.touched.add(sheet.sheet_id)

    if ctx is None or not ctx.quiet:
        emit_info(
            EventType.record_ingested,
            f"Ingested {route_id} -> {sheet.sheet_id} row {row_index}",
            {
                "route_id": route_id,
                "sheet_id": sheet.sheet_id,
                "row": row_index,
                "source_system": normalized.provenance.source_system,
                "source_id": normalized.provenance.source_id,
            },
            batch_id=batch_id,
        )

    return IngestResult(
        success=True,
        sheet_id=sheet.sheet_id,
        row_index=row_index,
        provenance=normalized.provenance,
        warnings=normalized.warnings,
    )


def ingest_batch(
    store: SheetStore,
    routes: RouteRegistry,
    route_id: str,
    records: list[Any],
    *,
    strict: bool = False,
    batch_id: str | None = None,
) -> BatchResult:
    """Ingest many records through one route.

    Per-record events are suppressed and the target sheet's index is
    rebuilt exactly once after all appends.  Records that are not objects,
    or that strict mode rejects, count as failed.

    Raises:
        UnknownRouteError: If *route_id* is not registered.
    """
    route = routes.get(route_id)
    ctx = IngestContext(batch_id or uuid4().hex)
    started = time.perf_counter()

    emit(
        make_batch_event(
            EventType.batch_started,
            EventLevel.info,
            f"Batch {ctx.batch_id} started: {len(records)} records via {route_id}",
            batch_id=ctx.batch_id,
            route_id=route_id,
            sheet_id=route.target_sheet,
            extra={"records": len(records)},
        ),
        batch_id=ctx.batch_id,
    )

    result = BatchResult(batch_id=ctx.batch_id, route_id=route_id, sheet_id=route.target_sheet)
    try:
        for record in records:
            if not isinstance(record, Mapping):
                result.failed += 1
                continue
            outcome = ingest_record(store, routes, route_id, record, ctx=ctx, strict=strict)
            if outcome.success:
                result.ingested += 1
            else:
                result.failed += 1
            if outcome.warnings:
                result.warnings += 1
    finally:
        for sheet_id in ctx.touched:
            store.get(sheet_id).rebuild_index()

    result.elapsed_ms = round((time.perf_counter() - started) * 1000, 3)
    emit(
        make_batch_event(
            EventType.batch_completed,
            EventLevel.info,
            f"Batch {ctx.batch_id} complete: ingested={result.ingested} failed={result.failed}",
            batch_id=ctx.batch_id,
            route_id=route_id,
            sheet_id=route.target_sheet,
            extra={
                "ingested": result.ingested,
                "failed": result.failed,
                "elapsed_ms": result.elapsed_ms,
            },
        ),
        batch_id=ctx.batch_id,
    )
    return result


# ---------------------------------------------------------------------------
# Mock records
# ---------------------------------------------------------------------------


def generate_mock_record(
    routes: RouteRegistry, route_id: str, *, seed: int | None = None
) -> dict[str, Any]:
    """Build a synthetic external record for *route_id* using its source field names.

    Number fields get random two-decimal amounts; other fields get a
    column-derived token.  The same *seed* always yields the same values.

    Raises:
        UnknownRouteError: If *route_id* is not registered.
    """
    route = routes.get(route_id)
    rng = random.Random(seed)
    token = "".join(rng.choice("0123456789ABCDEFGHJKLMNPQRSTUVWXYZ") for _ in range(6))
    doc_id = f"MOCK-{token}"

    prov = route.provenance
    record: dict[str, Any] = {
        prov.system_field or "sourceSystem": "MockStream",
        prov.source_id_field or "documentId": doc_id,
        prov.timestamp_field or "eventTimestamp": _utc_iso(),
    }
    for column_id, field_def in route.fields.items():
        if field_def.type == "number":
            record[field_def.source] = round(rng.random() * 1000, 2)
        else:
            record[field_def.source] = f"{column_id}-{token}"
    return record
