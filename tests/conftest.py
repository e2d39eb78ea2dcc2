"""Shared fixtures for the Ibex test suite."""

import pytest

from ibex.config import IbexConfig
from ibex.logging import set_json_mode

from fakes import FakeEngine


@pytest.fixture
def config(tmp_path) -> IbexConfig:
    """Config pointing model storage at a throwaway directory."""
    return IbexConfig(
        model_storage_directory=tmp_path / "models",
        log_level="warning",
        restart_delay=0.0,
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def plain_logs(monkeypatch):
    """Leave the logger in plain-text mode after a test toggles JSON output."""
    monkeypatch.delenv("IBEX_LOG_JSON", raising=False)
    yield
    set_json_mode(False)
