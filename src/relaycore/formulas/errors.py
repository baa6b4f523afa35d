"""Error types for formula reference extraction."""

from __future__ import annotations


class FormulaError(Exception):
    """Base class for all formula-related errors."""


class FormulaParseError(FormulaError):
    """Formula text could not be tokenized.

    Attributes:
        position: Character position where the error was detected.
    """

    def __init__(self, message: str, position: int | None = None) -> None:
        self.position = position
        full = f"Formula parse error: {message}"
        if position is not None:
            full += f" (at position {position})"
        super().__init__(full)


class AddressError(FormulaError, ValueError):
    """An A1-style address is malformed."""

    def __init__(self, addr: str) -> None:
        self.addr = addr
        super().__init__(f"Invalid cell address: {addr!r}")
