"""Relay event model, error codes and the process-wide emit helpers.

Events are pydantic models written as one JSON object per line by
:class:`relaycore.logging.sink.EventSink`.  Nothing is written until a
project directory has been attached with :func:`set_project_dir`, so library
callers and tests stay silent by default.  ``emit`` and its helpers never
propagate failures to the caller.
"""

from __future__ import annotations

import contextlib
import re
import sys
import time
import traceback
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class EventType(str, Enum):
    # registry loading
    module_loaded = "module_loaded"
    route_loaded = "route_loaded"
    route_skipped = "route_skipped"

    # ingestion
    route_warning = "route_warning"
    record_ingested = "record_ingested"
    record_rejected = "record_rejected"
    batch_started = "batch_started"
    batch_completed = "batch_completed"
    ingest_refused = "ingest_refused"
    ingest_failed = "ingest_failed"

    # derived sheets
    matches_rebuilt = "matches_rebuilt"
    summaries_rebuilt = "summaries_rebuilt"
    summary_template_missing = "summary_template_missing"
    kpi_snapshot_appended = "kpi_snapshot_appended"

    # xlsx import
    formula_cycle_detected = "formula_cycle_detected"
    formula_unparsed = "formula_unparsed"
    import_completed = "import_completed"


REQUIRED_FIELD_MISSING = "required_field_missing"
TARGET_SHEET_MISSING = "target_sheet_missing"
ROUTE_INVALID = "route_invalid"
FORMULA_CYCLE = "formula_cycle"
FORMULA_UNPARSEABLE = "formula_unparseable"
KPI_ADDRESS_INVALID = "kpi_address_invalid"


# ---------------------------------------------------------------------------
# Context scrubbing
# ---------------------------------------------------------------------------

REDACTED = "[REDACTED]"
TRUNCATED_SUFFIX = "...[truncated]"
MAX_CONTEXT_STR = 256

_SECRET_KEY = re.compile(
    r"password|passwd|secret|token|api_?key|relay.key|authorization|cookie"
    r"|session|bearer|credential",
    re.IGNORECASE,
)
_HEADER_ALLOWLIST = {"user-agent", "accept", "content-type", "content-length"}


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """Copy *context* with credentials, URL queries and long strings scrubbed.

    Keys that look like secrets are replaced by ``[REDACTED]``.  A nested
    ``headers`` mapping keeps only the allow-listed header names.  HTTP(S)
    URLs lose their userinfo, query and fragment, and strings longer than
    256 characters are cut.
    """
    return {key: _scrub(key, value) for key, value in context.items()}


def _scrub(key: Any, value: Any) -> Any:
    name = str(key)
    if _SECRET_KEY.search(name):
        return REDACTED
    if isinstance(value, dict):
        if name.lower() == "headers":
            return {h: v for h, v in value.items() if str(h).lower() in _HEADER_ALLOWLIST}
        return redact_context(value)
    if isinstance(value, list):
        return [_scrub("", item) for item in value]
    if isinstance(value, str):
        return _scrub_text(value)
    return value


def _scrub_text(text: str) -> str:
    if "://" in text:
        parts = urlsplit(text)
        if parts.scheme in ("http", "https"):
            bare = urlunsplit((parts.scheme, parts.hostname or "", parts.path, "", ""))
            return f"{bare}?{REDACTED}" if parts.query else bare
    if len(text) > MAX_CONTEXT_STR:
        return text[:MAX_CONTEXT_STR] + TRUNCATED_SUFFIX
    return text


# ---------------------------------------------------------------------------
# Event model
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class RelayEvent(BaseModel):
    """One structured log line."""

    schema_version: int = 1
    ts: str = Field(default_factory=_utc_now)
    level: EventLevel
    event_type: EventType
    context: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    error_code: str | None = None


def make_batch_event(
    event_type: EventType,
    level: EventLevel,
    message: str,
    *,
    batch_id: str,
    route_id: str | None = None,
    sheet_id: str | None = None,
    error_code: str | None = None,
    extra: dict[str, Any] | None = None,
) -> RelayEvent:
    """Event whose context always names the batch, plus route and sheet when known."""
    attribution = {"batch_id": batch_id, "route_id": route_id, "sheet_id": sheet_id}
    context = {k: v for k, v in attribution.items() if v is not None}
    context.update(extra or {})
    return RelayEvent(
        level=level,
        event_type=event_type,
        message=message,
        context=context,
        error_code=error_code,
    )


# ---------------------------------------------------------------------------
# Process-wide sink
# ---------------------------------------------------------------------------

_sink: Any = None  # EventSink once a project is attached


def set_project_dir(project_dir: Any) -> None:
    """Attach the event sink to *project_dir*.

    ``logging_fsync`` and ``logging_tail_bytes`` from the project's
    ``relay.yaml`` configure the sink.  Raises ``ConfigError`` when that file
    is malformed.
    """
    global _sink
    from relaycore.logging.sink import EventSink
    from relaycore.project import load_project_config

    root = Path(project_dir)
    cfg = load_project_config(root)
    tail = cfg.get("logging_tail_bytes")
    _sink = EventSink(
        root,
        fsync=bool(cfg.get("logging_fsync")),
        tail_bytes=None if tail is None else int(tail),
    )


def reset_sink() -> None:
    """Detach the sink; ``emit`` is a no-op again afterwards."""
    global _sink
    _sink = None


_WARN_EVERY_SECS = 60.0
_last_warned = float("-inf")


def _warn_stderr(msg: str) -> None:
    # At most one warning per minute.
    global _last_warned
    now = time.monotonic()
    if now - _last_warned < _WARN_EVERY_SECS:
        return
    _last_warned = now
    with contextlib.suppress(OSError, ValueError):
        sys.stderr.write(f"[relaycore] {msg}\n")


# ---------------------------------------------------------------------------
# Emit
# ---------------------------------------------------------------------------


def emit(event: RelayEvent, *, batch_id: str | None = None) -> None:
    """Scrub *event* and append it to the global log (and the batch log).

    Never raises: a failing write is reported on stderr, rate-limited.
    """
    sink = _sink
    if sink is None:
        return
    try:
        clean = event.model_copy(update={"context": redact_context(event.context)})
        sink.write(clean, batch_id=batch_id)
    except Exception:
        _warn_stderr(f"logging failed: {traceback.format_exc()}")


def _emit_at(
    level: EventLevel,
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None,
    error_code: str | None,
    batch_id: str | None,
) -> None:
    emit(
        RelayEvent(
            level=level,
            event_type=event_type,
            message=message,
            context=dict(context or {}),
            error_code=error_code,
        ),
        batch_id=batch_id,
    )


def emit_info(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    batch_id: str | None = None,
) -> None:
    _emit_at(EventLevel.info, event_type, message, context, None, batch_id)


def emit_warning(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
    batch_id: str | None = None,
) -> None:
    _emit_at(EventLevel.warning, event_type, message, context, error_code, batch_id)


def emit_error(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
    batch_id: str | None = None,
) -> None:
    _emit_at(EventLevel.error, event_type, message, context, error_code, batch_id)
