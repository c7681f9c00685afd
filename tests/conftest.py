"""Pytest configuration for path setup, markers and shared fixtures."""

import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parent.parent))

from sona.config import SonaConfig  # noqa: E402


def pytest_addoption(parser):
    parser.addoption(
        "--runslow", action="store_true", default=False, help="run tests marked as slow"
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: long-running concurrency tests")


def pytest_collection_modifyitems(config, items):
    if config.getoption("--runslow"):
        return
    skip_slow = pytest.mark.skip(reason="need --runslow to run slow tests")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


def make_config(**overrides) -> SonaConfig:
    """Small configuration used across the suite."""

    values = dict(
        hidden_dim=8,
        embedding_dim=8,
        micro_lora_rank=2,
        base_lora_rank=4,
        micro_lora_lr=0.05,
        base_lora_lr=0.1,
        ewc_lambda=10.0,
        pattern_clusters=16,
        trajectory_capacity=32,
        quality_threshold=0.6,
        num_layers=2,
        cluster_radius=0.1,
        batch_size=4,
        background_interval_s=3600.0,
    )
    values.update(overrides)
    return SonaConfig(**values)


@pytest.fixture
def small_config() -> SonaConfig:
    return make_config()


@pytest.fixture(name="make_config")
def make_config_fixture():
    return make_config
