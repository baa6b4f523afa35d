"""In-memory sheet storage: schemas, cells, and the fact/match/summary store.

A sheet keeps an ordered list of cells plus a lazily rebuilt
``(row, col) -> Cell`` index.  Row 0 always holds the header labels.
Fact sheets are append-only; derived sheets are replaced wholesale.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

import polars as pl
from pydantic import BaseModel, ConfigDict

from relaycore.errors import AppendOnlyViolation, UnknownSheetError
from relaycore.formulas import index_to_col_letter, is_formula, make_addr, parse_addr
from relaycore.schema import ColumnDef, ModuleRegistry, SheetKind


class Provenance(BaseModel):
    """Origin of an ingested row; attached to the row's first cell only."""

    model_config = ConfigDict(frozen=True)

    source_system: str
    source_id: str
    ingested_at: str
    event_timestamp: str
    route_id: str


def display_value(value: Any) -> str:
    """Render a cell value as display text (integral floats drop the ``.0``)."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


@dataclass
class Cell:
    """One cell: exactly one of ``value`` / ``formula`` is meaningful."""

    row: int
    col: int
    value: Any = None
    formula: str | None = None
    display: str = ""
    provenance: Provenance | None = None

    @property
    def address(self) -> str:
        return make_addr(self.row, self.col)

    @property
    def content(self) -> Any:
        """Formula text for formula cells, else the literal value."""
        return self.formula if self.formula is not None else self.value


# ---------------------------------------------------------------------------
# Typed rows
# ---------------------------------------------------------------------------


class RowSchema:
    """Column-id -> index lookup, built once per sheet schema."""

    def __init__(self, columns: Iterable[ColumnDef]) -> None:
        self.columns: tuple[ColumnDef, ...] = tuple(columns)
        self.ids: tuple[str, ...] = tuple(c.id for c in self.columns)
        self.index: dict[str, int] = {cid: i for i, cid in enumerate(self.ids)}

    def __len__(self) -> int:
        return len(self.columns)

    def __contains__(self, column_id: object) -> bool:
        return column_id in self.index

    def letter(self, column_id: str) -> str:
        """Spreadsheet column letter of *column_id* (``KeyError`` when undeclared)."""
        return index_to_col_letter(self.index[column_id])

    def labels(self) -> list[str]:
        return [c.label for c in self.columns]

    def record(self, values: list[Any]) -> "Row":
        return Row(self, tuple(values))

    def from_mapping(self, data: Mapping[str, Any], default: Any = "") -> list[Any]:
        """Order a ``{column_id: value}`` mapping by this schema."""
        return [data.get(cid, default) for cid in self.ids]


class Row(Mapping):
    """Read-only row record addressed by column id."""

    __slots__ = ("_schema", "_values")

    def __init__(self, schema: RowSchema, values: tuple[Any, ...]) -> None:
        self._schema = schema
        self._values = values

    def __getitem__(self, column_id: str) -> Any:
        idx = self._schema.index[column_id]
        return self._values[idx] if idx < len(self._values) else ""

    def __iter__(self) -> Iterator[str]:
        return iter(self._schema.ids)

    def __len__(self) -> int:
        return len(self._schema.ids)

    @property
    def raw(self) -> tuple[Any, ...]:
        return self._values

    def to_dict(self) -> dict[str, Any]:
        return {cid: self[cid] for cid in self._schema.ids}


# ---------------------------------------------------------------------------
# Sheet
# ---------------------------------------------------------------------------


class Sheet:
    """Ordered cell collection with a declared column schema."""

    def __init__(self, sheet_id: str, kind: SheetKind, columns: Iterable[ColumnDef], name: str = "") -> None:
        self.sheet_id = sheet_id
        self.kind = kind
        self.name = name or sheet_id
        self.schema = RowSchema(columns)
        self.cells: list[Cell] = []
        self.n_rows = 0
        self.n_cols = len(self.schema)
        self._index: dict[tuple[int, int], Cell] | None = None
        self._write_header()

    # -- internal ----------------------------------------------------------

    def _write_header(self) -> None:
        for col, label in enumerate(self.schema.labels()):
            self.cells.append(Cell(row=0, col=col, value=label, display=label))
        self.n_rows = 1

    def _make_cell(self, row: int, col: int, value: Any) -> Cell:
        # Only summary sheets carry formula cells; ingested text is always literal.
        if self.kind == "summary" and is_formula(value):
            return Cell(row=row, col=col, formula=value, display=value)
        return Cell(row=row, col=col, value=value, display=display_value(value))

    def _emit_row(self, values: list[Any], provenance: Provenance | None = None) -> int:
        row_idx = self.n_rows
        for col in range(self.n_cols):
            value = values[col] if col < len(values) else ""
            cell = self._make_cell(row_idx, col, value)
            if col == 0:
                cell.provenance = provenance
            self.cells.append(cell)
        self.n_rows = row_idx + 1
        return row_idx

    # -- mutation ----------------------------------------------------------

    def append_rows(
        self,
        rows: Iterable[list[Any]],
        *,
        provenance: Iterable[Provenance | None] | None = None,
        defer_index: bool = False,
    ) -> list[int]:
        """Append rows at the next row index.

        Args:
            rows: Schema-ordered row values.
            provenance: Optional per-row provenance, parallel to *rows*.
            defer_index: Leave the address index stale; the caller must
                call ``rebuild_index()`` once all appends are done.

        Returns:
            Row indices assigned to the appended rows.
        """
        rows = list(rows)
        provs = list(provenance) if provenance is not None else [None] * len(rows)
        indices = [self._emit_row(list(r), p) for r, p in zip(rows, provs)]
        self._index = None
        if not defer_index:
            self.rebuild_index()
        return indices

    def replace_rows(self, rows: Iterable[list[Any]]) -> None:
        """Regenerate a derived sheet: clear, re-emit header and rows, re-index.

        Raises:
            AppendOnlyViolation: On fact sheets.
        """
        if self.kind == "fact":
            raise AppendOnlyViolation(self.sheet_id, "replace_rows")
        self.cells = []
        self.n_rows = 0
        self._index = None
        self._write_header()
        for values in rows:
            self._emit_row(list(values))
        self.rebuild_index()

    def rebuild_index(self) -> None:
        self._index = {(c.row, c.col): c for c in self.cells}

    # -- access ------------------------------------------------------------

    @property
    def data_row_count(self) -> int:
        return max(self.n_rows - 1, 0)

    def cell(self, row: int, col: int) -> Cell | None:
        if self._index is None:
            self.rebuild_index()
        return self._index.get((row, col))

    def cell_at(self, addr: str) -> Cell | None:
        row, col = parse_addr(addr)
        return self.cell(row, col)

    def data_rows(self) -> list[list[Any]]:
        """Data rows (header excluded) as schema-ordered content lists."""
        grid: list[list[Any]] = [[""] * self.n_cols for _ in range(self.data_row_count)]
        for c in self.cells:
            if c.row == 0 or c.col >= self.n_cols:
                continue
            grid[c.row - 1][c.col] = c.content
        return grid

    def records(self) -> list[Row]:
        return [self.schema.record(values) for values in self.data_rows()]

    def provenance_for(self, row: int) -> Provenance | None:
        first = self.cell(row, 0)
        return first.provenance if first is not None else None

    def state_entries(self) -> list[dict[str, Any]]:
        """Row entries used for state hashing: ``{sheetId, idx, row}``."""
        return [
            {"sheetId": self.sheet_id, "idx": idx, "row": dict(zip(self.schema.ids, values))}
            for idx, values in enumerate(self.data_rows())
        ]

    def to_frame(self) -> pl.DataFrame:
        """Data rows as a polars frame of display strings, one column per schema id."""
        columns: dict[str, list[str]] = {cid: [] for cid in self.schema.ids}
        for values in self.data_rows():
            for cid, value in zip(self.schema.ids, values):
                columns[cid].append(display_value(value))
        return pl.DataFrame(columns, schema={cid: pl.Utf8 for cid in self.schema.ids})


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SheetStore:
    """All sheets of a running relay, keyed by sheet id."""

    def __init__(self) -> None:
        self._sheets: dict[str, Sheet] = {}

    @classmethod
    def from_registry(cls, modules: ModuleRegistry) -> "SheetStore":
        """Create an empty sheet (header only) for every declared sheet."""
        store = cls()
        for module in modules:
            for kind, sheet_def in module.iter_sheets():
                store.add(Sheet(sheet_def.sheet_id, kind, sheet_def.columns, name=sheet_def.name))
        return store

    def add(self, sheet: Sheet) -> Sheet:
        self._sheets[sheet.sheet_id] = sheet
        return sheet

    def __contains__(self, sheet_id: object) -> bool:
        return sheet_id in self._sheets

    def __iter__(self) -> Iterator[Sheet]:
        return iter(self._sheets.values())

    def get(self, sheet_id: str) -> Sheet:
        try:
            return self._sheets[sheet_id]
        except KeyError:
            raise UnknownSheetError(sheet_id) from None

    def of_kind(self, kind: SheetKind) -> list[Sheet]:
        return [s for s in self._sheets.values() if s.kind == kind]

    def state_entries(self, kind: SheetKind) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        for sheet in sorted(self.of_kind(kind), key=lambda s: s.sheet_id):
            entries.extend(sheet.state_entries())
        return entries

    def row_counts(self) -> dict[str, int]:
        return {sid: s.n_rows for sid, s in sorted(self._sheets.items())}
