"""Structured event logging for relaycore.

Event model, NDJSON file sink and emit helpers that never raise.
"""

from relaycore.logging.events import (
    EventLevel,
    EventType,
    RelayEvent,
    emit,
    emit_error,
    emit_info,
    emit_warning,
    make_batch_event,
    redact_context,
    reset_sink,
    set_project_dir,
)
from relaycore.logging.sink import EventSink

__all__ = [
    "EventLevel",
    "EventSink",
    "EventType",
    "RelayEvent",
    "emit",
    "emit_error",
    "emit_info",
    "emit_warning",
    "make_batch_event",
    "redact_context",
    "reset_sink",
    "set_project_dir",
]
