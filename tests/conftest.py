"""Shared fixtures for the relaycore test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from relaycore.logging.events import reset_sink
from relaycore.project import DEFAULT_CONFIG, load_registries
from relaycore.runtime import RelayRuntime

AS_OF = "2026-03-15"


@pytest.fixture(autouse=True)
def _silent_sink():
    """Every test starts and ends with logging disabled."""
    reset_sink()
    yield
    reset_sink()


@pytest.fixture
def config() -> dict[str, Any]:
    cfg = dict(DEFAULT_CONFIG)
    cfg["aging_as_of"] = AS_OF
    return cfg


@pytest.fixture
def registries(config):
    return load_registries(None, config)


@pytest.fixture
def modules(registries):
    return registries[0]


@pytest.fixture
def routes(registries):
    return registries[1]


@pytest.fixture
def runtime(config) -> RelayRuntime:
    """Runtime over the bundled P2P and MFG modules, seeded with sample data."""
    return RelayRuntime.from_project(None, config)


@pytest.fixture
def empty_runtime(config) -> RelayRuntime:
    """Runtime over the bundled modules with no seed rows."""
    cfg = dict(config)
    cfg["seed_sample_data"] = False
    return RelayRuntime.from_project(None, cfg)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A scaffolded project directory."""
    from relaycore.project import scaffold_project

    return scaffold_project(tmp_path / "proj")

