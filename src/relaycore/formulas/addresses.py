"""A1-style address helpers and the address -> cell id index."""

from __future__ import annotations

import re
from typing import Iterator

from relaycore.formulas.errors import AddressError

_ADDR_RE = re.compile(r"^\$?([A-Z]{1,3})\$?(\d+)$")

# Sheet ids may contain dots (``P2P.InvoiceLines``); quoted names may contain anything but a quote.
_SHEET_REF_RE = re.compile(r"^(?:'([^']+)'|([A-Za-z0-9_.\-]+))!(\$?[A-Z]{1,3}\$?\d+)$")


def col_letter_to_index(letters: str) -> int:
    """Convert column letter(s) to 0-based index.  A=0, B=1, ..., Z=25, AA=26."""
    idx = 0
    for ch in letters:
        idx = idx * 26 + (ord(ch) - ord("A") + 1)
    return idx - 1


def index_to_col_letter(idx: int) -> str:
    """Convert 0-based column index to letter(s).  0=A, 25=Z, 26=AA."""
    result = ""
    n = idx + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        result = chr(65 + rem) + result
    return result


def normalize_addr(addr: str) -> str:
    """Strip absolute-reference markers and upper-case an address (``$b$3`` -> ``B3``)."""
    return addr.replace("$", "").upper()


def parse_addr(addr: str) -> tuple[int, int]:
    """Parse 'A1' -> (row_0based, col_0based).

    Raises AddressError (a ValueError) on bad address.
    """
    m = _ADDR_RE.match(addr.upper())
    if not m:
        raise AddressError(addr)
    col = col_letter_to_index(m.group(1))
    row = int(m.group(2)) - 1
    if row < 0:
        raise AddressError(addr)
    return row, col


def make_addr(row: int, col: int) -> str:
    """Build cell address from 0-based row/col."""
    return f"{index_to_col_letter(col)}{row + 1}"


def parse_sheet_ref(ref: str) -> tuple[str, int, int] | None:
    """Parse ``"Sheet!A1"`` into ``(sheet_id, row, col)`` (0-based).

    Returns None when *ref* is not a sheet-qualified single-cell address.
    """
    m = _SHEET_REF_RE.match(str(ref or "").strip())
    if not m:
        return None
    sheet_id = m.group(1) or m.group(2)
    row, col = parse_addr(m.group(3))
    return sheet_id, row, col


def _bounds(start: str, end: str) -> tuple[int, int, int, int]:
    r0, c0 = parse_addr(start)
    r1, c1 = parse_addr(end)
    # Normalise so r0 <= r1, c0 <= c1
    if r0 > r1:
        r0, r1 = r1, r0
    if c0 > c1:
        c0, c1 = c1, c0
    return r0, c0, r1, c1


def iter_range(start: str, end: str) -> Iterator[tuple[int, int]]:
    """Yield (row, col) pairs of a rectangular range in row-major order."""
    r0, c0, r1, c1 = _bounds(start, end)
    for r in range(r0, r1 + 1):
        for c in range(c0, c1 + 1):
            yield r, c


def expand_range(start: str, end: str) -> list[str]:
    """Expand a rectangular range (e.g. A1:C3) into a flat list of addresses (row-major).

    Args:
        start: Top-left address, e.g. "A1".
        end: Bottom-right address, e.g. "C3".

    Returns:
        Flat list of cell addresses in row-major order.
    """
    return [make_addr(r, c) for r, c in iter_range(start, end)]


class AddressIndex:
    """Pre-built lookup from A1 address to a sheet cell id.

    Built once per sheet from the cells present; ranges are resolved by
    clipping to the populated extent so that ``A1:A100000`` never enumerates
    empty addresses.
    """

    def __init__(self, cell_ids: dict[tuple[int, int], str]) -> None:
        self._ids = dict(cell_ids)
        self.max_row = max((r for r, _ in self._ids), default=-1)
        self.max_col = max((c for _, c in self._ids), default=-1)

    @classmethod
    def from_addresses(cls, addrs: list[str]) -> "AddressIndex":
        """Index a sheet whose cell ids are their own normalised addresses."""
        ids: dict[tuple[int, int], str] = {}
        for addr in addrs:
            norm = normalize_addr(addr)
            ids[parse_addr(norm)] = norm
        return cls(ids)

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, addr: object) -> bool:
        return isinstance(addr, str) and self.resolve(addr) is not None

    def resolve(self, addr: str) -> str | None:
        """Map an A1 address to its cell id, or None when the cell is absent."""
        try:
            key = parse_addr(normalize_addr(addr))
        except AddressError:
            return None
        return self._ids.get(key)

    def resolve_range(self, start: str, end: str) -> list[str]:
        """Resolve every populated cell inside a range, row-major."""
        r0, c0, r1, c1 = _bounds(normalize_addr(start), normalize_addr(end))
        r1 = min(r1, self.max_row)
        c1 = min(c1, self.max_col)
        out: list[str] = []
        for r in range(r0, r1 + 1):
            for c in range(c0, c1 + 1):
                cell_id = self._ids.get((r, c))
                if cell_id is not None:
                    out.append(cell_id)
        return out
