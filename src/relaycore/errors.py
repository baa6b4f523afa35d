"""Error types for the relaycore data layer."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relaycore errors."""


class ConfigError(RelayError):
    """A module, route, or project configuration file is malformed.

    Attributes:
        path: The offending file, when known.
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        full = message if path is None else f"{path}: {message}"
        super().__init__(full)


class UnknownRouteError(RelayError):
    """Reference to a route id that is not registered."""

    def __init__(self, route_id: str, available: list[str] | None = None) -> None:
        self.route_id = route_id
        self.available = available or []
        msg = f"Unknown route: {route_id!r}"
        if self.available:
            msg += f". Available: {self.available}"
        super().__init__(msg)


class UnknownSheetError(RelayError):
    """Reference to a sheet id that is not in the store."""

    def __init__(self, sheet_id: str) -> None:
        self.sheet_id = sheet_id
        super().__init__(f"Sheet {sheet_id!r} not found")


class AppendOnlyViolation(RelayError):
    """An operation would edit or remove rows of a fact sheet."""

    def __init__(self, sheet_id: str, operation: str) -> None:
        self.sheet_id = sheet_id
        self.operation = operation
        super().__init__(f"Fact sheet {sheet_id!r} is append-only; {operation} refused")


class PayloadError(RelayError):
    """An ingest payload is structurally unacceptable (empty, oversized, incomplete)."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)
