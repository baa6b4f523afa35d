"""NDJSON event files under ``<project>/logs``.

``events.ndjson`` receives every event.  Events that belong to an ingest
batch are also appended to ``batches/<batch_id>.ndjson``.  Lines are JSON
with sorted keys.  Appends hold an exclusive ``flock`` and reads a shared
one; where ``fcntl`` is unavailable files are used unlocked.
"""

from __future__ import annotations

import json
import os
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from relaycore.logging.events import RelayEvent

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None  # type: ignore[assignment]

GLOBAL_LOG = "events.ndjson"
BATCH_DIR = "batches"
DEFAULT_TAIL_BYTES = 2 * 1024 * 1024
MAX_READ_LIMIT = 2000

_BATCH_ID = re.compile(r"[A-Za-z0-9_\-]+")


@contextmanager
def _flock(fd: int, mode: int) -> Iterator[None]:
    if fcntl is None:
        yield
        return
    fcntl.flock(fd, mode)
    try:
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)


def _safe_batch_id(batch_id: str | None) -> bool:
    return bool(batch_id) and _BATCH_ID.fullmatch(batch_id) is not None


class EventSink:
    """Append-only event log for one project directory."""

    def __init__(self, project_dir: Path, *, fsync: bool = False, tail_bytes: int | None = None) -> None:
        self.logs_dir = Path(project_dir) / "logs"
        self.fsync = fsync
        self.tail_bytes = DEFAULT_TAIL_BYTES if tail_bytes is None else tail_bytes
        (self.logs_dir / BATCH_DIR).mkdir(parents=True, exist_ok=True)

    def _batch_path(self, batch_id: str) -> Path:
        return self.logs_dir / BATCH_DIR / f"{batch_id}.ndjson"

    def write(self, event: RelayEvent, *, batch_id: str | None = None) -> None:
        payload = json.dumps(event.model_dump(mode="json"), sort_keys=True, default=str)
        data = (payload + "\n").encode("utf-8")
        targets = [self.logs_dir / GLOBAL_LOG]
        # Ids that could leave the batch directory only reach the global log.
        if _safe_batch_id(batch_id):
            targets.append(self._batch_path(batch_id))
        for path in targets:
            self._append(path, data)

    def read_global(
        self,
        *,
        level: str | None = None,
        event_type: str | None = None,
        batch_id: str | None = None,
        route_id: str | None = None,
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        """Newest-first events from the global log matching every given filter.

        Only the last ``tail_bytes`` of the file are scanned and at most
        ``MAX_READ_LIMIT`` events are returned.
        """
        wanted_top = {"level": level, "event_type": event_type}
        wanted_ctx = {"batch_id": batch_id, "route_id": route_id}

        def keep(event: dict[str, Any]) -> bool:
            ctx = event.get("context") or {}
            return all(v is None or event.get(k) == v for k, v in wanted_top.items()) and all(
                v is None or ctx.get(k) == v for k, v in wanted_ctx.items()
            )

        matched = [e for e in reversed(self._load(self.logs_dir / GLOBAL_LOG)) if keep(e)]
        return matched[: min(limit, MAX_READ_LIMIT)]

    def read_batch_log(self, batch_id: str) -> list[dict[str, Any]]:
        """Events of one batch in write order; unsafe ids read as empty."""
        if not _safe_batch_id(batch_id):
            return []
        return self._load(self._batch_path(batch_id))

    def _append(self, path: Path, data: bytes) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
        try:
            with _flock(fd, fcntl.LOCK_EX if fcntl else 0):
                os.write(fd, data)
                if self.fsync:
                    os.fsync(fd)
        finally:
            os.close(fd)

    def _load(self, path: Path) -> list[dict[str, Any]]:
        if not path.is_file():
            return []
        with open(path, "rb") as fh, _flock(fh.fileno(), fcntl.LOCK_SH if fcntl else 0):
            size = os.fstat(fh.fileno()).st_size
            clipped = size > self.tail_bytes
            if clipped:
                fh.seek(size - self.tail_bytes)
            raw = fh.read()
        if clipped:
            # first line is probably cut
            raw = raw.partition(b"\n")[2]

        events: list[dict[str, Any]] = []
        for line in raw.decode("utf-8", errors="replace").splitlines():
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return events
