"""
Global test configuration with support for different test types.
"""

from collections.abc import Generator
from contextlib import contextmanager
import logging
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from nrql_discovery.config import FrozenConfig
from nrql_discovery.core.models import CapabilityProfile
from nrql_discovery.events import EventDispatcher, RecordingListener
from nrql_discovery.executor import AdaptiveQueryExecutor
from nrql_discovery.pipeline.estimator import CostEstimator
from tests.fakes import FakeBackend, FakeClock


# --- Environment Isolation (Autouse) ---
@pytest.fixture(autouse=True)
def isolate_new_relic_env(request, monkeypatch):
    """Ensure a clean NEW_RELIC_* environment for each test.

    Escape hatch: @pytest.mark.allow_env_pollution keeps the current env.
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return

    for key in list(os.environ.keys()):
        if key.startswith(("NEW_RELIC_", "NRQL_DISCOVERY_")):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def neutral_home_config(request, monkeypatch, tmp_path):
    """Point the home config at an isolated temp file and run from ``tmp_path``.

    Prevents reading a developer's real ~/.config/nrql_discovery.toml or a
    stray pyproject.toml, and keeps checkpoint/output files out of the tree.
    """
    if request.node.get_closest_marker("allow_real_home_config"):
        return

    fake_home_dir = tmp_path / "home_config_isolated"
    fake_home_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv(
        "NRQL_DISCOVERY_CONFIG_HOME", str(fake_home_dir / "nrql_discovery.toml")
    )
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def clean_env_patch():
    """Helper to apply a clean env baseline plus overrides.

    Usage:
        with clean_env_patch({"NEW_RELIC_REGION": "EU"}):
            ...
    """

    @contextmanager
    def _apply(extra: dict[str, str] | None = None) -> Generator[None]:
        base = {
            k: v
            for k, v in os.environ.items()
            if not k.startswith(("NEW_RELIC_", "NRQL_DISCOVERY_"))
        }
        if extra:
            base.update(extra)
        with patch.dict(os.environ, base, clear=True):
            yield

    return _apply


@pytest.fixture
def temp_toml_file(tmp_path):
    """Write TOML content to ``tmp_path/pyproject.toml`` and return its path."""

    def _create(content: str, name: str = "pyproject.toml") -> Path:
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path

    return _create


# --- Logging Fixtures ---
@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Sets the log level for noisy external libraries to WARNING."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# --- Test Environment Markers ---
def pytest_configure(config):
    """Configure custom markers for test organization."""
    markers = [
        "unit: Fast, isolated unit tests",
        "integration: Component integration tests with fake backends",
        "contract: Behavioural guarantees that must hold across refactors",
        "slow: Tests that take >1 second",
        "allow_env_pollution: Keep NEW_RELIC_* variables from the real environment",
        "allow_real_home_config: Read the real home configuration file",
    ]
    for marker in markers:
        config.addinivalue_line("markers", marker)


# --- Core Fixtures ---


@pytest.fixture
def mock_api_key():
    """Provide a consistent, fake API key for tests."""
    return "NRAK-TEST0000000000000000000000"


@pytest.fixture
def config(mock_api_key, tmp_path) -> FrozenConfig:
    """Credentials set, zero retry delays and paths under ``tmp_path``."""
    return FrozenConfig(
        api_key=mock_api_key,
        account_id=1234567,
        backoff_base_delay=0.0,
        backoff_max_delay=0.0,
        network_retry_delay=0.0,
        poll_interval=1.0,
        progress_file=tmp_path / "progress.json",
        output_dir=tmp_path / "output",
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def make_executor(config, recorder):
    """Factory for executors over a fake backend.

    The estimator performs no volume look-ups so the backend only sees the
    queries under test; the conservative profile is used unless one is given.
    """

    def _make(
        backend: FakeBackend,
        *,
        profile: CapabilityProfile | None = None,
        **kwargs,
    ) -> AdaptiveQueryExecutor:
        cfg = kwargs.pop("config", config)
        kwargs.setdefault("estimator", CostEstimator())
        kwargs.setdefault("events", EventDispatcher(recorder))
        kwargs.setdefault("sleep", FakeClock().sleep)
        return AdaptiveQueryExecutor(
            backend,
            cfg,
            capabilities=profile or CapabilityProfile.conservative(),
            **kwargs,
        )

    return _make
