"""Summary builder: formula-only aggregate rows over fact and match sheets.

No aggregate is computed here.  Every generated cell is either literal
configuration text (labels, vendor ids) or formula text whose ranges end
at the current last data row of the referenced sheet, so the formulas stay
valid as sheets grow.

A summary sheet gets its rows from, in order of precedence:

1. literal ``formulaRows`` in the module definition;
2. a named ``template`` (see ``TEMPLATES``);
3. nothing (empty rows, with a ``summary_template_missing`` warning).
"""

from __future__ import annotations

import re
from typing import Any, Callable, Iterable

from relaycore.errors import UnknownSheetError
from relaycore.logging.events import EventType, emit_warning
from relaycore.schema import ModuleDef, SummarySheetDef
from relaycore.sheets import RowSchema

SheetRows = dict[str, list[list[Any]]]

_PLAIN_SHEET_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


class SummaryContext:
    """Resolves sheet schemas and current row counts for template expansion."""

    def __init__(self, module: ModuleDef, fact_data: SheetRows, match_results: SheetRows) -> None:
        self.module = module
        self.fact_data = fact_data
        self.match_results = match_results

    def schema(self, sheet_id: str) -> RowSchema:
        return RowSchema(self.module.columns_for(sheet_id))

    def rows(self, sheet_id: str) -> list[list[Any]]:
        if sheet_id in self.match_results:
            return self.match_results[sheet_id]
        return self.fact_data.get(sheet_id, [])

    def last_row(self, sheet_id: str) -> int:
        """1-based last data row of *sheet_id* (header is row 1, never below 2)."""
        return max(len(self.rows(sheet_id)) + 1, 2)

    def column(self, sheet_id: str, column_id: str) -> str:
        """Qualified data range of one column, e.g. ``P2P.POLines!I2:I7``."""
        letter = self.schema(sheet_id).letter(column_id)
        return f"{qualify(sheet_id)}!{letter}2:{letter}{self.last_row(sheet_id)}"


def qualify(sheet_id: str) -> str:
    """Sheet prefix for a cross-sheet reference, quoted when needed."""
    if _PLAIN_SHEET_RE.match(sheet_id):
        return sheet_id
    return "'" + sheet_id.replace("'", "") + "'"


def _quote(text: Any) -> str:
    return '"' + str(text).replace('"', '""') + '"'


def _sources(sheet_def: SummarySheetDef, count: int) -> list[str]:
    if len(sheet_def.source_sheets) < count:
        raise ValueError(f"template needs {count} sourceSheets, got {len(sheet_def.source_sheets)}")
    return list(sheet_def.source_sheets[:count])


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def _ap_aging(sheet_def: SummarySheetDef, ctx: SummaryContext) -> list[list[Any]]:
    """Accounts-payable position and aging buckets over the invoice/payment match."""
    (src,) = _sources(sheet_def, 1)
    inv = ctx.column(src, "invAmount")
    paid = ctx.column(src, "paidAmount")
    status = ctx.column(src, "matchStatus")
    age = ctx.column(src, "ageDays")
    return [
        ["Total Invoiced", f"=SUM({inv})"],
        ["Total Paid", f"=SUM({paid})"],
        ["Outstanding", "=B2-B3"],
        ["Matched Invoices", f'=COUNTIF({status},"MATCH")'],
        ["Partial Payments", f'=COUNTIF({status},"PARTIAL")'],
        ["Unpaid Invoices", f'=COUNTIF({status},"UNMATCHED")'],
        ["Avg Age (Days)", f"=IF(COUNT({age})>0,AVERAGE({age}),0)"],
        ["Current (0-30d)", f'=COUNTIF({age},"<=30")'],
        ["Aging 31-60d", f'=COUNTIFS({age},">30",{age},"<=60")'],
        ["Aging 61-90d", f'=COUNTIFS({age},">60",{age},"<=90")'],
        ["Aging 90d+", f'=COUNTIF({age},">90")'],
        ["DPO (Days Payable)", "=IF(B2>0,B8*B4/B2,0)"],
        ["Current Date", "=TODAY()"],
    ]


def _match_rate(sheet_def: SummarySheetDef, ctx: SummaryContext) -> list[list[Any]]:
    """Three-way match status counts and match rate."""
    (src,) = _sources(sheet_def, 1)
    confidence = ctx.column(src, "confidence")
    status = ctx.column(src, "matchStatus")
    return [
        ["Total Match Lines", f"=COUNT({confidence})"],
        ["Matched Count", f'=COUNTIF({status},"MATCH")'],
        ["QTY Exceptions", f'=COUNTIF({status},"QTY_EXCEPTION")'],
        ["Price Exceptions", f'=COUNTIF({status},"PRICE_EXCEPTION")'],
        ["Unmatched", f'=COUNTIF({status},"UNMATCHED")'],
        ["Total Exceptions", "=B4+B5+B6"],
        ["Match Rate %", "=IF(B2>0,B3/B2*100,0)"],
    ]


def _vendors(ctx: SummaryContext, sheet_ids: Iterable[str]) -> list[tuple[str, str]]:
    """Distinct ``(vendorId, vendorName)`` pairs in first-appearance order."""
    names: dict[str, str] = {}
    for sheet_id in sheet_ids:
        schema = ctx.schema(sheet_id)
        if "vendorId" not in schema:
            continue
        for values in ctx.rows(sheet_id):
            row = schema.record(values)
            vendor_id = str(row.get("vendorId", "") or "")
            if not vendor_id:
                continue
            name = str(row.get("vendorName", "") or "")
            if vendor_id not in names or (not names[vendor_id] and name):
                names[vendor_id] = name
    return list(names.items())


def _spend_by_vendor(sheet_def: SummarySheetDef, ctx: SummaryContext) -> list[list[Any]]:
    """Per-vendor PO spend against invoiced amount, with a totals row."""
    po_sheet, inv_sheet = _sources(sheet_def, 2)
    po_vendor = ctx.column(po_sheet, "vendorId")
    po_total = ctx.column(po_sheet, "lineTotal")
    inv_vendor = ctx.column(inv_sheet, "vendorId")
    inv_total = ctx.column(inv_sheet, "lineTotal")

    rows: list[list[Any]] = []
    for i, (vendor_id, vendor_name) in enumerate(_vendors(ctx, [po_sheet, inv_sheet])):
        r = i + 2
        rows.append([
            vendor_id,
            vendor_name,
            f"=SUMIF({po_vendor},{_quote(vendor_id)},{po_total})",
            f"=SUMIF({inv_vendor},{_quote(vendor_id)},{inv_total})",
            f"=C{r}-D{r}",
        ])
    total_row = len(rows) + 2
    last = max(total_row - 1, 2)
    rows.append([
        "Total",
        "",
        f"=SUM(C2:C{last})",
        f"=SUM(D2:D{last})",
        f"=C{total_row}-D{total_row}",
    ])
    return rows


Template = Callable[[SummarySheetDef, SummaryContext], list[list[Any]]]

TEMPLATES: dict[str, Template] = {
    "ap_aging": _ap_aging,
    "match_rate": _match_rate,
    "spend_by_vendor": _spend_by_vendor,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def summary_sheets_to_rebuild(module: ModuleDef, dirty: frozenset[str] | set[str] | None) -> list[str]:
    """Summary sheets whose sources intersect *dirty* (or that declare none)."""
    out = []
    for sheet_def in module.summary_sheets:
        if not dirty or not sheet_def.source_sheets or any(s in dirty for s in sheet_def.source_sheets):
            out.append(sheet_def.sheet_id)
    return out


def build_summary_data(
    module: ModuleDef,
    fact_data: SheetRows,
    match_results: SheetRows,
    *,
    summary_sheet_ids: Iterable[str] | None = None,
) -> dict[str, list[list[Any]]]:
    """Generate formula rows for a module's summary sheets.

    Args:
        module: The owning module definition.
        fact_data: Fact sheet id -> current data rows.
        match_results: Match sheet id -> current data rows.
        summary_sheet_ids: Optional subset to build; default all.

    Returns:
        Summary sheet id -> rows of literal text and formula strings.
    """
    wanted = set(summary_sheet_ids) if summary_sheet_ids is not None else None
    ctx = SummaryContext(module, fact_data, match_results)

    results: dict[str, list[list[Any]]] = {}
    for sheet_def in module.summary_sheets:
        if wanted is not None and sheet_def.sheet_id not in wanted:
            continue
        if sheet_def.formula_rows:
            results[sheet_def.sheet_id] = [list(row) for row in sheet_def.formula_rows]
            continue
        template = TEMPLATES.get(sheet_def.template or "")
        if template is None:
            emit_warning(
                EventType.summary_template_missing,
                f"Summary {sheet_def.sheet_id} has no formulaRows and no known template",
                {"sheet_id": sheet_def.sheet_id, "template": sheet_def.template},
            )
            results[sheet_def.sheet_id] = []
            continue
        try:
            results[sheet_def.sheet_id] = template(sheet_def, ctx)
        except (KeyError, ValueError, UnknownSheetError) as exc:
            # A source sheet or column the template needs is not declared.
            emit_warning(
                EventType.summary_template_missing,
                f"Summary {sheet_def.sheet_id}: template {sheet_def.template!r} unresolved: {exc}",
                {"sheet_id": sheet_def.sheet_id, "template": sheet_def.template},
            )
            results[sheet_def.sheet_id] = []
    return results
