"""Sheet export to Parquet."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable

from relaycore.schema import SheetKind
from relaycore.sheets import SheetStore
from relaycore.utils.hash import sha256_file


def export_sheets(
    store: SheetStore,
    out_dir: Path,
    *,
    kinds: Iterable[SheetKind] | None = None,
) -> dict[str, dict[str, object]]:
    """Write each sheet as ``<sheet_id>.parquet`` plus a ``manifest.json``.

    Cells are exported as display strings; formula cells keep their
    formula text.

    Returns:
        Sheet id -> ``{path, kind, rows, sha256}``.
    """
    wanted = set(kinds) if kinds is not None else None
    out_dir.mkdir(parents=True, exist_ok=True)

    manifest: dict[str, dict[str, object]] = {}
    for sheet in sorted(store, key=lambda s: s.sheet_id):
        if wanted is not None and sheet.kind not in wanted:
            continue
        path = out_dir / f"{sheet.sheet_id}.parquet"
        df = sheet.to_frame()
        df.write_parquet(path)
        manifest[sheet.sheet_id] = {
            "path": path.name,
            "kind": sheet.kind,
            "rows": df.height,
            "sha256": sha256_file(path),
        }

    (out_dir / "manifest.json").write_text(json.dumps(manifest, indent=2, sort_keys=True))
    return manifest
