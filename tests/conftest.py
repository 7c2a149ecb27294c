"""Pytest fixtures for Shipyard tests."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from hypothesis import Phase, Verbosity, settings

_TEST_BASE_DIR = Path(tempfile.mkdtemp(prefix="shipyard-tests-"))
os.environ["SHIPYARD_DATA_DIR"] = str(_TEST_BASE_DIR / "data")
os.environ["SHIPYARD_CONFIG_DIR"] = str(_TEST_BASE_DIR / "config")

from shipyard.config import LoopConfig, ShipyardConfig  # noqa: E402
from shipyard.services.runs import get_registry  # noqa: E402

if TYPE_CHECKING:
    from collections.abc import Generator


settings.register_profile(
    "ci",
    max_examples=100,
    deadline=None,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
)
settings.register_profile(
    "dev",
    max_examples=20,
    deadline=500,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))


@pytest.fixture(autouse=True)
def _clean_registry() -> Generator[None, None, None]:
    """Live runs never leak between tests."""
    yield
    get_registry().clear()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def fast_config() -> ShipyardConfig:
    """Config with supervision intervals short enough for tests."""
    return ShipyardConfig(
        loop=LoopConfig(
            heartbeat_interval_seconds=0.05,
            stale_heartbeat_seconds=30,
            pause_poll_seconds=0.01,
            pause_max_seconds=5,
        )
    )
