"""Lark-based reference extractor for spreadsheet formula text.

Formulas are never evaluated here.  The lexer splits formula text into
tokens so that cell and range references can be picked out reliably:
references inside string literals (``"A1"``) and function names that look
like addresses (``LOG10(``) are not mistaken for cells.

Supports:
- In-sheet cell references: ``F2``, ``$AA$10``
- In-sheet ranges: ``A1:B2``
- Sheet-qualified references: ``P2P.InvoiceLines!H2:H7``, ``'My Sheet'!A1``
"""

from __future__ import annotations

from typing import NamedTuple

from lark import Lark
from lark.exceptions import LarkError

from relaycore.formulas.addresses import expand_range, normalize_addr
from relaycore.formulas.errors import FormulaParseError

# Terminal priority decides which alternative wins at a given position:
# strings, then ranges, then single cells, then numbers and names.
GRAMMAR = r"""
start: _item*

_item: STRING | RANGE_REF | CELL_REF | ERROR_LIT | NUMBER | NAME | OP

STRING.6: /"(?:[^"]|"")*"/

RANGE_REF.5: /(?:(?:'[^']+'|[A-Za-z_][A-Za-z0-9_.]*)!)?\$?[A-Z]{1,3}\$?[0-9]+:\$?[A-Z]{1,3}\$?[0-9]+(?![A-Za-z0-9_(])/

CELL_REF.4: /(?:(?:'[^']+'|[A-Za-z_][A-Za-z0-9_.]*)!)?\$?[A-Z]{1,3}\$?[0-9]+(?![A-Za-z0-9_(.])/

ERROR_LIT.3: /#[A-Z0-9\/]+[!?]?/

NUMBER.2: /(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][-+]?[0-9]+)?/

NAME.1: /[A-Za-z_][A-Za-z0-9_.]*/

OP: /<>|<=|>=|[-+*\/^&=<>(),;%:{}!@]/

%import common.WS
%ignore WS
"""

_lexer = Lark(GRAMMAR, parser="lalr", lexer="basic", start="start")

_REF_TYPES = ("RANGE_REF", "CELL_REF")


class FormulaRef(NamedTuple):
    """One reference found in formula text.

    ``sheet`` is None for unqualified references.  ``end`` is None for a
    single-cell reference.
    """

    sheet: str | None
    start: str
    end: str | None
    text: str

    @property
    def is_range(self) -> bool:
        return self.end is not None

    def cells(self) -> list[str]:
        """Enumerate the referenced addresses (row-major for ranges)."""
        if self.end is None:
            return [self.start]
        return expand_range(self.start, self.end)


def _split_sheet(token: str) -> tuple[str | None, str]:
    """Split ``Sheet!A1`` / ``'My Sheet'!A1`` / ``A1`` into (sheet, rest)."""
    if "!" not in token:
        return None, token
    if token.startswith("'"):
        close_quote = token.index("'", 1)
        return token[1:close_quote], token[close_quote + 2:]
    bang = token.rindex("!")
    return token[:bang], token[bang + 1:]


def _to_ref(token_type: str, token: str) -> FormulaRef:
    sheet, rest = _split_sheet(token)
    if token_type == "RANGE_REF":
        start, end = rest.split(":", 1)
        return FormulaRef(sheet, normalize_addr(start), normalize_addr(end), token)
    return FormulaRef(sheet, normalize_addr(rest), None, token)


def tokenize(formula: str) -> list[tuple[str, str]]:
    """Tokenize formula text into ``(token_type, text)`` pairs.

    Raises:
        FormulaParseError: If the text contains characters the lexer cannot match.
    """
    text = formula.strip()
    if text.startswith("="):
        text = text[1:]
    try:
        return [(tok.type, str(tok)) for tok in _lexer.lex(text)]
    except LarkError as exc:
        pos = getattr(exc, "column", None)
        raise FormulaParseError(str(exc).splitlines()[0], position=pos) from exc


def extract_references(formula: str) -> list[FormulaRef]:
    """Extract every cell and range reference from formula text, in order of appearance.

    Args:
        formula: Formula text, with or without the leading ``=``.

    Returns:
        List of references.  Duplicates are kept.

    Raises:
        FormulaParseError: If the formula cannot be tokenized.
    """
    return [_to_ref(kind, text) for kind, text in tokenize(formula) if kind in _REF_TYPES]


def is_formula(value: object) -> bool:
    """True for strings that carry formula text (leading ``=``)."""
    return isinstance(value, str) and value.startswith("=") and len(value) > 1


def split_references(
    formula: str, current_sheet: str | None = None
) -> tuple[list[FormulaRef], list[FormulaRef]]:
    """Partition references into (intra-sheet, external).

    A reference qualified with *current_sheet* counts as intra-sheet; any
    other qualified reference is external.
    """
    internal: list[FormulaRef] = []
    external: list[FormulaRef] = []
    for ref in extract_references(formula):
        if ref.sheet is None or ref.sheet == current_sheet:
            internal.append(ref)
        else:
            external.append(ref)
    return internal, external


def referenced_sheets(formula: str) -> set[str]:
    """Return the set of sheet ids a formula reaches into."""
    return {ref.sheet for ref in extract_references(formula) if ref.sheet is not None}
