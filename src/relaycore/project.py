"""Project-level configuration, module/route loading, and scaffolding."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from relaycore.errors import ConfigError
from relaycore.logging.events import ROUTE_INVALID, TARGET_SHEET_MISSING, EventType, emit_info, emit_warning
from relaycore.schema import ModuleDef, ModuleRegistry, RouteDef, RouteRegistry

CONFIG_DIR = Path(__file__).parent / "config"

DEFAULT_CONFIG = {
    "module_files": ["modules/p2p.yaml", "modules/mfg.yaml"],
    "route_files": ["routes/p2p_routes.yaml", "routes/mfg_routes.yaml"],
    "seed_sample_data": True,
    "seed_files": ["seeds/p2p_seed.yaml", "seeds/mfg_seed.yaml"],
    "strict_required_fields": False,
    "max_records": 1000,
    "max_body_bytes": 1_048_576,  # 1 MiB
    "rate_capacity": 5,
    "rate_refill_per_sec": 2.0,
    "gateway_key_env": "RELAY_GATEWAY_KEY",
    "gateway_dev_key": "relay-dev-key",
    "aging_as_of": None,  # ISO date; default: today
    "logging_fsync": False,
    "logging_tail_bytes": 2_097_152,  # 2 MB
}

DEMO_RELAY_CONFIG = """\
# relaycore project configuration
# Paths are relative to this directory; unprefixed bundled names
# (modules/p2p.yaml, ...) resolve to the packaged configs.

seed_sample_data: true
strict_required_fields: false

# Gateway admission control
max_records: 1000
max_body_bytes: 1048576
rate_capacity: 5
rate_refill_per_sec: 2.0
gateway_key_env: RELAY_GATEWAY_KEY

# Pin invoice aging to a fixed date for reproducible rebuilds
# aging_as_of: "2026-03-15"

# logging_fsync: false
"""


def load_project_config(project_dir: Path) -> dict[str, Any]:
    """Load project configuration from ``relay.yaml``, with defaults.

    Args:
        project_dir: Root of the relay project.

    Returns:
        Merged configuration dict.

    Raises:
        ConfigError: If ``relay.yaml`` is not a YAML mapping.
    """
    config = dict(DEFAULT_CONFIG)
    config_path = project_dir / "relay.yaml"
    if config_path.exists():
        try:
            user_config = yaml.safe_load(config_path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML: {exc}", path=str(config_path)) from exc
        if not isinstance(user_config, dict):
            raise ConfigError("expected a mapping at top level", path=str(config_path))
        config.update(user_config)
    return config


def resolve_config_path(name: str, project_dir: Path | None = None) -> Path:
    """Resolve a config file name against the project dir, then the bundled configs."""
    candidate = Path(name)
    if candidate.is_absolute():
        return candidate
    if project_dir is not None and (project_dir / candidate).exists():
        return project_dir / candidate
    return CONFIG_DIR / candidate


def _read_yaml(path: Path) -> Any:
    if not path.exists():
        raise ConfigError("file not found", path=str(path))
    try:
        return yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML: {exc}", path=str(path)) from exc


def load_module_file(path: Path) -> ModuleDef:
    """Load and validate one module definition.

    Raises:
        ConfigError: If the file is missing, not YAML, or fails validation.
    """
    data = _read_yaml(path)
    try:
        module = ModuleDef.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid module definition: {exc}", path=str(path)) from exc
    emit_info(
        EventType.module_loaded,
        f"Loaded module {module.module_id}",
        {
            "module_id": module.module_id,
            "branch_id": module.branch_id,
            "fact_sheets": len(module.fact_sheets),
            "match_sheets": len(module.match_sheets),
            "summary_sheets": len(module.summary_sheets),
        },
    )
    return module


def load_route_group(path: Path) -> list[RouteDef]:
    """Load a route group file (``routes: [...]``).

    Individual routes that fail validation are skipped with a warning
    event; the rest of the group still loads.

    Raises:
        ConfigError: If the file itself is malformed.
    """
    data = _read_yaml(path)
    if isinstance(data, dict):
        raw_routes = data.get("routes", [])
    elif isinstance(data, list):
        raw_routes = data
    else:
        raise ConfigError("expected a mapping with 'routes' or a list", path=str(path))

    routes: list[RouteDef] = []
    for i, raw in enumerate(raw_routes):
        try:
            route = RouteDef.model_validate(raw)
        except ValidationError as exc:
            route_id = raw.get("routeId") if isinstance(raw, dict) else None
            emit_warning(
                EventType.route_skipped,
                f"Skipped invalid route #{i} in {path.name}",
                {"route_id": route_id, "file": str(path), "errors": exc.error_count()},
                error_code=ROUTE_INVALID,
            )
            continue
        emit_info(
            EventType.route_loaded,
            f"Loaded route {route.route_id} -> {route.target_sheet}",
            {"route_id": route.route_id, "sheet_id": route.target_sheet},
        )
        routes.append(route)
    return routes


def load_registries(
    project_dir: Path | None = None, config: dict[str, Any] | None = None
) -> tuple[ModuleRegistry, RouteRegistry]:
    """Build the read-only module and route registries for a project.

    Routes targeting a sheet no module declares are skipped with a warning.
    """
    if config is None:
        config = load_project_config(project_dir) if project_dir is not None else dict(DEFAULT_CONFIG)

    modules = [
        load_module_file(resolve_config_path(name, project_dir))
        for name in config.get("module_files") or []
    ]
    module_registry = ModuleRegistry(modules)
    fact_sheet_ids = {sid for m in modules for sid in m.fact_sheet_ids()}

    routes: list[RouteDef] = []
    for name in config.get("route_files") or []:
        for route in load_route_group(resolve_config_path(name, project_dir)):
            if route.target_sheet not in fact_sheet_ids:
                emit_warning(
                    EventType.route_skipped,
                    f"Route {route.route_id} targets unknown fact sheet {route.target_sheet}",
                    {"route_id": route.route_id, "sheet_id": route.target_sheet},
                    error_code=TARGET_SHEET_MISSING,
                )
                continue
            routes.append(route)
    return module_registry, RouteRegistry(routes)


def load_seed_data(
    project_dir: Path | None = None, config: dict[str, Any] | None = None
) -> dict[str, list[Any]]:
    """Load sample rows keyed by fact sheet id.

    Rows are schema-ordered lists or ``{columnId: value}`` mappings.

    Returns an empty dict when ``seed_sample_data`` is off.
    """
    if config is None:
        config = load_project_config(project_dir) if project_dir is not None else dict(DEFAULT_CONFIG)
    if not config.get("seed_sample_data", True):
        return {}

    seeds: dict[str, list[Any]] = {}
    for name in config.get("seed_files") or []:
        path = resolve_config_path(name, project_dir)
        data = _read_yaml(path) or {}
        sheets = data.get("sheets", {}) if isinstance(data, dict) else None
        if not isinstance(sheets, dict):
            raise ConfigError("expected 'sheets' mapping", path=str(path))
        for sheet_id, rows in sheets.items():
            seeds.setdefault(sheet_id, []).extend(rows or [])
    return seeds


def scaffold_project(target_dir: Path) -> Path:
    """Create a new relay project at the target directory.

    Args:
        target_dir: Directory to create (must not already contain relay.yaml).

    Returns:
        Path to the created project directory.
    """
    target_dir = target_dir.resolve()
    target_dir.mkdir(parents=True, exist_ok=True)

    if (target_dir / "relay.yaml").exists():
        raise FileExistsError(f"relay.yaml already exists in {target_dir}")

    (target_dir / "relay.yaml").write_text(DEMO_RELAY_CONFIG)
    (target_dir / "logs").mkdir(exist_ok=True)
    (target_dir / "imports").mkdir(exist_ok=True)
    (target_dir / "exports").mkdir(exist_ok=True)

    return target_dir
