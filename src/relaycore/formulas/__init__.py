"""Formula reference extraction (parsing only, never evaluation).

Public API::

    from relaycore.formulas import extract_references, split_references
"""

from relaycore.formulas.addresses import (
    AddressIndex,
    col_letter_to_index,
    expand_range,
    index_to_col_letter,
    make_addr,
    normalize_addr,
    parse_addr,
    parse_sheet_ref,
)
from relaycore.formulas.errors import AddressError, FormulaError, FormulaParseError
from relaycore.formulas.parser import (
    FormulaRef,
    extract_references,
    is_formula,
    referenced_sheets,
    split_references,
    tokenize,
)

__all__ = [
    "AddressError",
    "AddressIndex",
    "FormulaError",
    "FormulaParseError",
    "FormulaRef",
    "col_letter_to_index",
    "expand_range",
    "extract_references",
    "index_to_col_letter",
    "is_formula",
    "make_addr",
    "normalize_addr",
    "parse_addr",
    "parse_sheet_ref",
    "referenced_sheets",
    "split_references",
    "tokenize",
]
