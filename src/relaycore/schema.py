"""Module and route definitions, and the read-only registries built from them.

Definitions are pydantic models using the camelCase field names of the
YAML configuration files (``sheetId``, ``joinKey``, ...).  Registries are
constructed once at startup and expose ``MappingProxyType`` views only.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Iterator, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from relaycore.errors import UnknownRouteError, UnknownSheetError

SheetKind = Literal["fact", "match", "summary"]


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Module definitions
# ---------------------------------------------------------------------------


class ColumnDef(_ConfigModel):
    """One declared column of a sheet schema."""

    id: str
    label: str = ""
    type: str = "string"
    required: bool = False

    @model_validator(mode="before")
    @classmethod
    def _default_label(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("label") and data.get("id"):
            data = {**data, "label": data["id"]}
        return data


class FactSheetDef(_ConfigModel):
    sheet_id: str
    fact_class: str = ""
    name: str = ""
    columns: list[ColumnDef] = Field(default_factory=list)


class MatchSheetDef(_ConfigModel):
    sheet_id: str
    match_class: str = ""
    name: str = ""
    columns: list[ColumnDef] = Field(default_factory=list)
    source_sheets: list[str] = Field(default_factory=list)
    join_key: str | None = None


class SummarySheetDef(_ConfigModel):
    """A summary sheet: literal ``formulaRows`` or a named ``template``."""

    sheet_id: str
    summary_class: str = ""
    name: str = ""
    columns: list[ColumnDef] = Field(default_factory=list)
    source_sheets: list[str] = Field(default_factory=list)
    formula_rows: list[list[Any]] | None = None
    template: str | None = None


class KpiBinding(_ConfigModel):
    metric_id: str
    source_cell: str
    unit: str = ""


class ModuleDef(_ConfigModel):
    """A business module: its sheets and KPI bindings, owned by one branch."""

    module_id: str
    branch_id: str
    name: str = ""
    fact_sheets: list[FactSheetDef] = Field(default_factory=list)
    match_sheets: list[MatchSheetDef] = Field(default_factory=list)
    summary_sheets: list[SummarySheetDef] = Field(default_factory=list)
    kpi_bindings: list[KpiBinding] = Field(default_factory=list)

    def fact_sheet_ids(self) -> list[str]:
        return [s.sheet_id for s in self.fact_sheets]

    def match_sheet_ids(self) -> list[str]:
        return [s.sheet_id for s in self.match_sheets]

    def summary_sheet_ids(self) -> list[str]:
        return [s.sheet_id for s in self.summary_sheets]

    def iter_sheets(self) -> Iterator[tuple[SheetKind, FactSheetDef | MatchSheetDef | SummarySheetDef]]:
        """Yield ``(kind, definition)`` for every sheet in declaration order."""
        for f in self.fact_sheets:
            yield "fact", f
        for m in self.match_sheets:
            yield "match", m
        for s in self.summary_sheets:
            yield "summary", s

    def columns_for(self, sheet_id: str) -> list[ColumnDef]:
        """Return the declared columns of any sheet in this module."""
        for _, sheet_def in self.iter_sheets():
            if sheet_def.sheet_id == sheet_id:
                return list(sheet_def.columns)
        raise UnknownSheetError(sheet_id)


# ---------------------------------------------------------------------------
# Route definitions
# ---------------------------------------------------------------------------


class RouteField(_ConfigModel):
    source: str
    type: str = "string"
    required: bool = False


class ProvenanceMap(_ConfigModel):
    system_field: str | None = None
    source_id_field: str | None = None
    timestamp_field: str | None = None


class RouteDef(_ConfigModel):
    """Maps an external record's fields onto one fact sheet's columns."""

    route_id: str
    target_sheet: str
    fact_class: str = ""
    scope: str = ""
    keys: list[str] = Field(default_factory=list)
    fields: dict[str, RouteField] = Field(default_factory=dict)
    provenance: ProvenanceMap = Field(default_factory=ProvenanceMap)

    def provenance_fields(self) -> set[str]:
        p = self.provenance
        return {n for n in (p.system_field, p.source_id_field, p.timestamp_field) if n}


# ---------------------------------------------------------------------------
# Registries
# ---------------------------------------------------------------------------


class ModuleRegistry:
    """Read-only lookup of modules and the sheets they declare."""

    def __init__(self, modules: list[ModuleDef]) -> None:
        self._modules = {m.module_id: m for m in modules}
        self._sheet_owner: dict[str, tuple[str, SheetKind]] = {}
        for module in modules:
            for kind, sheet_def in module.iter_sheets():
                self._sheet_owner[sheet_def.sheet_id] = (module.module_id, kind)

    @property
    def modules(self) -> MappingProxyType:
        return MappingProxyType(self._modules)

    def __iter__(self) -> Iterator[ModuleDef]:
        return iter(self._modules.values())

    def __len__(self) -> int:
        return len(self._modules)

    def get(self, module_id: str) -> ModuleDef:
        try:
            return self._modules[module_id]
        except KeyError:
            raise KeyError(f"Unknown module: {module_id!r}") from None

    def module_for_sheet(self, sheet_id: str) -> ModuleDef:
        """Return the module that declares *sheet_id*.

        Raises:
            UnknownSheetError: If no module declares the sheet.
        """
        owner = self._sheet_owner.get(sheet_id)
        if owner is None:
            raise UnknownSheetError(sheet_id)
        return self._modules[owner[0]]

    def sheet_kind(self, sheet_id: str) -> SheetKind:
        owner = self._sheet_owner.get(sheet_id)
        if owner is None:
            raise UnknownSheetError(sheet_id)
        return owner[1]

    def branch_ids(self) -> list[str]:
        return sorted({m.branch_id for m in self._modules.values()})


class RouteRegistry:
    """Read-only lookup of ingestion routes by id."""

    def __init__(self, routes: list[RouteDef]) -> None:
        self._routes = {r.route_id: r for r in routes}

    @property
    def routes(self) -> MappingProxyType:
        return MappingProxyType(self._routes)

    def __contains__(self, route_id: object) -> bool:
        return route_id in self._routes

    def __len__(self) -> int:
        return len(self._routes)

    def get(self, route_id: str) -> RouteDef:
        """Return the route definition.

        Raises:
            UnknownRouteError: If *route_id* is not registered.
        """
        route = self._routes.get(route_id)
        if route is None:
            raise UnknownRouteError(route_id, available=self.route_ids())
        return route

    def route_ids(self) -> list[str]:
        return sorted(self._routes)

    def sheet_for_fact_class(self, fact_class: str) -> str | None:
        """Return the target sheet of the first route carrying *fact_class*."""
        for route_id in self.route_ids():
            route = self._routes[route_id]
            if route.fact_class == fact_class:
                return route.target_sheet
        return None
