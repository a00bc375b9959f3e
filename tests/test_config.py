"""Tests for PipelineConfig validation."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from reliable_pipeline.config import IdempotencyMode, PipelineConfig, ShutdownPolicy


def test_defaults() -> None:
    config = PipelineConfig()
    assert config.worker_count == 8
    assert config.max_attempts == 5
    assert config.retention == timedelta(days=7)
    assert config.max_assembly_age == timedelta(minutes=5)
    assert config.idempotency_mode is IdempotencyMode.TRANSACTIONAL
    assert config.shutdown_policy is ShutdownPolicy.DROP


def test_config_is_frozen() -> None:
    config = PipelineConfig()
    with pytest.raises(ValidationError):
        config.worker_count = 2


def test_enums_accept_their_values() -> None:
    config = PipelineConfig(idempotency_mode="best_effort", shutdown_policy="persist")
    assert config.idempotency_mode is IdempotencyMode.BEST_EFFORT
    assert config.shutdown_policy is ShutdownPolicy.PERSIST


@pytest.mark.parametrize(
    "overrides",
    [
        {"worker_count": 0},
        {"max_attempts": -1},
        {"fetch_timeout": 0},
        {"base_delay": 10, "max_delay": 1},
        {"retention": timedelta(0)},
        {"max_assembly_age": timedelta(seconds=-1)},
        {"sweep_interval": 0},
        {"dead_letter_publish_attempts": 0},
    ],
)
def test_invalid_settings_are_rejected(overrides) -> None:
    with pytest.raises(ValidationError):
        PipelineConfig(**overrides)


def test_optional_intervals_can_be_disabled() -> None:
    config = PipelineConfig(sweep_interval=None, store_timeout=None)
    assert config.sweep_interval is None
    assert config.store_timeout is None
