"""Shared test fixtures and helpers for livetalk tests."""

import importlib.util
import sys
from pathlib import Path

import pytest

# Load helpers module from the tests directory using importlib to avoid
# polluting sys.path.
_helpers_path = Path(__file__).resolve().parent / "helpers.py"
_spec = importlib.util.spec_from_file_location("helpers", _helpers_path)
_helpers = importlib.util.module_from_spec(_spec)
sys.modules["helpers"] = _helpers
_spec.loader.exec_module(_helpers)

from helpers import MockSessionFactory, all_builders, make_config  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    """Keep model directory resolution inside the test's tmp dir."""
    monkeypatch.setenv("LIVETALK_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("LIVETALK_MODELS_DIR", raising=False)


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def factory():
    return MockSessionFactory(all_builders())
