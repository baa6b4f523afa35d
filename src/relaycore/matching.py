"""Deterministic match builder.

``build_matches`` joins fact tables on business keys and returns fresh
match rows for every match sheet selected by the dependency gate.  It is a
pure function of its inputs: the same fact data (and ``as_of`` date)
always yields the same rows.

Matchers are chosen by ``matchClass``:

- ``ThreeWayMatch`` -- PO / goods receipt / invoice lines on the PO line id.
  ``sourceSheets`` lists the PO, receipt and invoice sheets in that order.
- ``InvoiceToGLMatch`` -- invoice totals against GL postings (``sourceSheets``:
  invoice, GL).
- ``InvoiceToPaymentMatch`` -- invoice totals against payments, with aging
  (``sourceSheets``: invoice, payment).
- anything else -- the generic two-sheet quantity matcher on ``joinKey``.
"""

from __future__ import annotations

import math
from datetime import date
from typing import Any, Callable, Iterable

from relaycore.errors import UnknownSheetError
from relaycore.schema import MatchSheetDef, ModuleDef
from relaycore.sheets import Row, RowSchema

FactData = dict[str, list[list[Any]]]

MATCH = "MATCH"
UNMATCHED = "UNMATCHED"
QTY_EXCEPTION = "QTY_EXCEPTION"
PRICE_EXCEPTION = "PRICE_EXCEPTION"
AMOUNT_EXCEPTION = "AMOUNT_EXCEPTION"
OVERPAY = "OVERPAY"
PARTIAL = "PARTIAL"

EXACT = "EXACT"

_LEFT_QTY_COLUMNS = ("plannedQty", "qty", "quantity")
_RIGHT_QTY_COLUMNS = ("qtyIssued", "qty", "quantity")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_number(value: Any) -> float | int | None:
    """Coerce a cell value to a finite number, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            n = float(value)
        except ValueError:
            return None
        return n if math.isfinite(n) else None
    return None


def _amount(value: Any) -> float:
    n = to_number(value)
    return round(n, 2) if n is not None else 0.0


def _blank(value: Any) -> Any:
    return "" if value is None else value


def _match_id(prefix: str, counter: int) -> str:
    return f"{prefix}-{counter:03d}"


class _Table:
    """A fact table read through its schema."""

    def __init__(self, schema: RowSchema, rows: list[Row]) -> None:
        self.schema = schema
        self.rows = rows

    def __contains__(self, column_id: str) -> bool:
        return column_id in self.schema


def _table(module: ModuleDef, fact_data: FactData, sheet_id: str) -> _Table:
    try:
        schema = RowSchema(module.columns_for(sheet_id))
    except UnknownSheetError:
        return _Table(RowSchema([]), [])
    rows = [schema.record(list(values)) for values in fact_data.get(sheet_id, [])]
    return _Table(schema, rows)


def _first_by_key(rows: Iterable[Row], column_id: str) -> dict[Any, Row]:
    """Index rows by *column_id*; the first row per key wins, empty keys are skipped."""
    out: dict[Any, Row] = {}
    for row in rows:
        key = row.get(column_id, "")
        if key in ("", None):
            continue
        out.setdefault(key, row)
    return out


def _group_by_key(rows: Iterable[Row], column_id: str, *, skip_empty: bool = True) -> dict[Any, list[Row]]:
    out: dict[Any, list[Row]] = {}
    for row in rows:
        key = row.get(column_id, "")
        if skip_empty and key in ("", None):
            continue
        out.setdefault(key, []).append(row)
    return out


def _emit(match_def: MatchSheetDef, values: dict[str, Any]) -> list[Any]:
    """Lay a ``{column_id: value}`` dict onto the match sheet's declared columns."""
    return [_blank(values.get(col.id, "")) for col in match_def.columns]


def _variance(a: Any, b: Any, ndigits: int) -> float | None:
    """``a - b`` rounded, or None when either side is non-numeric."""
    na, nb = to_number(a), to_number(b)
    if na is None or nb is None:
        return None
    return round(na - nb, ndigits)


def _parse_date(value: Any) -> date | None:
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Three-way match
# ---------------------------------------------------------------------------


def _three_way(match_def: MatchSheetDef, module: ModuleDef, fact_data: FactData, as_of: date) -> list[list[Any]]:
    if len(match_def.source_sheets) < 3:
        return []
    po_id, gr_id, inv_id = match_def.source_sheets[:3]
    key = match_def.join_key or "poLineId"
    po = _table(module, fact_data, po_id)
    gr = _table(module, fact_data, gr_id)
    inv = _table(module, fact_data, inv_id)

    po_by_key = _first_by_key(po.rows, key)
    gr_by_key = _first_by_key(gr.rows, key)
    inv_by_key = _first_by_key(inv.rows, key)
    paired_invoices = {id(row) for row in inv_by_key.values() if row.get(key) in po_by_key}

    rows: list[list[Any]] = []
    counter = 0
    for po_line_id, po_row in po_by_key.items():
        counter += 1
        gr_row = gr_by_key.get(po_line_id)
        inv_row = inv_by_key.get(po_line_id)

        po_qty = po_row.get("qty", "")
        po_price = po_row.get("unitPrice", "")
        inv_qty = inv_row.get("qty", "") if inv_row is not None else None
        inv_price = inv_row.get("unitPrice", "") if inv_row is not None else None
        qty_var = _variance(inv_qty, po_qty, 4) if inv_row is not None else None
        price_var = _variance(inv_price, po_price, 4) if inv_row is not None else None

        confidence = 1.0
        if gr_row is None and inv_row is None:
            status = UNMATCHED
        elif gr_row is None or inv_row is None:
            status = UNMATCHED
            confidence = 0.5
        elif qty_var is None or qty_var != 0:
            status = QTY_EXCEPTION
        elif price_var is None or price_var != 0:
            status = PRICE_EXCEPTION
        else:
            status = MATCH

        rows.append(_emit(match_def, {
            "matchId": _match_id("3WM", counter),
            "joinKeyType": EXACT,
            "confidence": confidence,
            "poLineId": po_line_id,
            "grLineId": gr_row.get("grLineId", "") if gr_row is not None else "",
            "invLineId": inv_row.get("invLineId", "") if inv_row is not None else "",
            "poQty": po_qty,
            "grQty": gr_row.get("qtyReceived", "") if gr_row is not None else "",
            "invQty": inv_qty,
            "poPrice": po_price,
            "invPrice": inv_price,
            "qtyVariance": qty_var,
            "priceVariance": price_var,
            "matchStatus": status,
        }))

    # Every invoice line not paired above appears once more as UNMATCHED.
    for inv_row in inv.rows:
        if id(inv_row) in paired_invoices:
            continue
        counter += 1
        rows.append(_emit(match_def, {
            "matchId": _match_id("3WM", counter),
            "joinKeyType": EXACT,
            "confidence": 1.0,
            "poLineId": inv_row.get(key, ""),
            "invLineId": inv_row.get("invLineId", ""),
            "invQty": inv_row.get("qty", ""),
            "invPrice": inv_row.get("unitPrice", ""),
            "matchStatus": UNMATCHED,
        }))
    return rows


# ---------------------------------------------------------------------------
# Invoice-level matchers
# ---------------------------------------------------------------------------


def _invoice_groups(inv: _Table, key: str) -> dict[Any, list[Row]]:
    return _group_by_key(inv.rows, key, skip_empty=False)


def _invoice_total(group: list[Row]) -> float:
    return round(sum(_amount(r.get("lineTotal")) + _amount(r.get("taxAmount")) for r in group), 2)


def _line_ids(rows: list[Row], column_id: str) -> str:
    return ";".join(str(r.get(column_id, "")) for r in rows)


def _invoice_to_gl(match_def: MatchSheetDef, module: ModuleDef, fact_data: FactData, as_of: date) -> list[list[Any]]:
    if len(match_def.source_sheets) < 2:
        return []
    inv_id, gl_id = match_def.source_sheets[:2]
    key = match_def.join_key or "invId"
    inv = _table(module, fact_data, inv_id)
    gl = _table(module, fact_data, gl_id)

    gl_by_invoice = _group_by_key(
        (r for r in gl.rows if r.get("sourceType", "") == "INV"), "sourceId"
    )

    rows: list[list[Any]] = []
    for counter, (invoice_id, group) in enumerate(_invoice_groups(inv, key).items(), start=1):
        inv_total = _invoice_total(group)
        entries = gl_by_invoice.get(invoice_id, [])
        gl_credit = round(sum(_amount(g.get("credit")) for g in entries), 2)
        gl_debit = round(sum(_amount(g.get("debit")) for g in entries), 2)
        variance = round(inv_total - gl_credit, 2)

        if not entries:
            status = UNMATCHED
        elif abs(variance) < 0.01:
            status = MATCH
        else:
            status = AMOUNT_EXCEPTION

        rows.append(_emit(match_def, {
            "matchId": _match_id("IGL", counter),
            "joinKeyType": EXACT,
            "confidence": 1.0,
            "invLineIds": _line_ids(group, "invLineId"),
            "glLineIds": _line_ids(entries, "glLineId"),
            "invTotal": inv_total,
            "glDebit": gl_debit,
            "glCredit": gl_credit,
            "variance": variance,
            "matchStatus": status,
        }))
    return rows


def _invoice_to_payment(
    match_def: MatchSheetDef, module: ModuleDef, fact_data: FactData, as_of: date
) -> list[list[Any]]:
    if len(match_def.source_sheets) < 2:
        return []
    inv_id, pay_id = match_def.source_sheets[:2]
    key = match_def.join_key or "invId"
    inv = _table(module, fact_data, inv_id)
    pay = _table(module, fact_data, pay_id)

    pay_by_invoice = _group_by_key(pay.rows, key)

    rows: list[list[Any]] = []
    for counter, (invoice_id, group) in enumerate(_invoice_groups(inv, key).items(), start=1):
        inv_total = _invoice_total(group)
        payments = pay_by_invoice.get(invoice_id, [])
        paid_total = round(sum(_amount(p.get("amount")) for p in payments), 2)
        variance = round(inv_total - paid_total, 2)

        if not payments:
            status = UNMATCHED
        elif abs(variance) < 0.01:
            status = MATCH
        elif paid_total > inv_total:
            status = OVERPAY
        else:
            status = PARTIAL

        due_raw = group[0].get("dueDate", "")
        due = _parse_date(due_raw)
        age_days = max(0, (as_of - due).days) if due is not None else 0

        rows.append(_emit(match_def, {
            "matchId": _match_id("IPY", counter),
            "joinKeyType": EXACT,
            "confidence": 1.0,
            "invLineIds": _line_ids(group, "invLineId"),
            "payIds": _line_ids(payments, "paymentId"),
            "invAmount": inv_total,
            "paidAmount": paid_total,
            "variance": variance,
            "matchStatus": status,
            "dueDate": due_raw,
            "ageDays": age_days,
        }))
    return rows


# ---------------------------------------------------------------------------
# Generic matcher
# ---------------------------------------------------------------------------


def _pick_quantity(row: Row, table: _Table, candidates: tuple[str, ...]) -> float | int | None:
    for column_id in candidates:
        if column_id in table:
            n = to_number(row.get(column_id))
            if n is not None:
                return n
    return None


def _generic(match_def: MatchSheetDef, module: ModuleDef, fact_data: FactData, as_of: date) -> list[list[Any]]:
    key = match_def.join_key
    if len(match_def.source_sheets) < 2 or not key:
        return []
    left = _table(module, fact_data, match_def.source_sheets[0])
    right = _table(module, fact_data, match_def.source_sheets[1])
    if key not in left or key not in right:
        return []

    right_by_key = _first_by_key(right.rows, key)
    prefix = match_def.match_class or "MT"

    rows: list[list[Any]] = []
    for counter, left_row in enumerate(left.rows, start=1):
        join_value = left_row.get(key, "")
        right_row = right_by_key.get(join_value) if join_value not in ("", None) else None
        left_qty = _pick_quantity(left_row, left, _LEFT_QTY_COLUMNS)
        right_qty = _pick_quantity(right_row, right, _RIGHT_QTY_COLUMNS) if right_row is not None else None
        variance = round(right_qty - left_qty, 3) if left_qty is not None and right_qty is not None else None

        if right_row is None:
            status = UNMATCHED
        elif variance == 0:
            status = MATCH
        else:
            status = QTY_EXCEPTION

        rows.append(_emit(match_def, {
            "matchId": _match_id(prefix, counter),
            "joinKeyType": EXACT,
            "confidence": 1.0 if right_row is not None else 0.5,
            key: join_value,
            "woQty": left_qty,
            "issuedQty": right_qty,
            "variance": variance,
            "matchStatus": status,
        }))
    return rows


Matcher = Callable[[MatchSheetDef, ModuleDef, FactData, date], list[list[Any]]]

MATCHERS: dict[str, Matcher] = {
    "ThreeWayMatch": _three_way,
    "InvoiceToGLMatch": _invoice_to_gl,
    "InvoiceToPaymentMatch": _invoice_to_payment,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def should_rebuild(
    match_def: MatchSheetDef,
    dirty_source_sheets: frozenset[str] | set[str] | None,
    match_sheet_ids: set[str] | None,
) -> bool:
    """Dependency gate for one match definition.

    A definition rebuilds unless an explicit id filter excludes it, and
    then only when there is no dirty set, it declares no sources, or one
    of its sources is dirty.
    """
    if match_sheet_ids is not None and match_def.sheet_id not in match_sheet_ids:
        return False
    if not dirty_source_sheets:
        return True
    if not match_def.source_sheets:
        return True
    return any(src in dirty_source_sheets for src in match_def.source_sheets)


def build_matches(
    fact_data: FactData,
    module: ModuleDef,
    *,
    dirty_source_sheets: frozenset[str] | set[str] | None = None,
    match_sheet_ids: Iterable[str] | None = None,
    as_of: date | None = None,
) -> dict[str, list[list[Any]]]:
    """Rebuild the gated subset of a module's match sheets.

    Args:
        fact_data: Fact sheet id -> schema-ordered data rows (header excluded).
        module: The owning module definition.
        dirty_source_sheets: Sheets edited in this pass; ``None`` rebuilds all.
        match_sheet_ids: Optional explicit subset of match sheets.
        as_of: Reference date for invoice aging (default: today).

    Returns:
        Match sheet id -> freshly built rows, for rebuilt sheets only.
    """
    explicit = set(match_sheet_ids) if match_sheet_ids is not None else None
    ref_date = as_of or date.today()

    results: dict[str, list[list[Any]]] = {}
    for match_def in module.match_sheets:
        if not should_rebuild(match_def, dirty_source_sheets, explicit):
            continue
        matcher = MATCHERS.get(match_def.match_class, _generic)
        results[match_def.sheet_id] = matcher(match_def, module, fact_data, ref_date)
    return results


def count_exceptions(match_def: MatchSheetDef, rows: list[list[Any]]) -> int:
    """Number of rows whose ``matchStatus`` is anything but MATCH."""
    ids = [c.id for c in match_def.columns]
    if "matchStatus" not in ids:
        return 0
    idx = ids.index("matchStatus")
    return sum(1 for r in rows if idx < len(r) and r[idx] != MATCH)
