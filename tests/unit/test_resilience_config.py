"""Unit tests for WorkerResilienceConfig validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from durq.core.models.resilience import WorkerResilienceConfig
from durq.core.errors import ConfigurationError, ErrorCode


@pytest.mark.unit
class TestResilienceConfigDefaults:
    def test_defaults(self) -> None:
        cfg = WorkerResilienceConfig()
        assert cfg.db_retry_initial_ms == 500
        assert cfg.db_retry_max_ms == 30_000
        assert cfg.db_retry_max_attempts == 0


@pytest.mark.unit
class TestResilienceConfigBoundaries:
    """Tests for field boundary constraints."""

    # --- db_retry_initial_ms [100, 60_000] ---

    def test_initial_ms_below_minimum_raises(self) -> None:
        with pytest.raises(ValidationError, match=r'db_retry_initial_ms'):
            WorkerResilienceConfig(db_retry_initial_ms=99)

    def test_initial_ms_at_minimum(self) -> None:
        cfg = WorkerResilienceConfig(db_retry_initial_ms=100)
        assert cfg.db_retry_initial_ms == 100

    def test_initial_ms_above_maximum_raises(self) -> None:
        with pytest.raises(ValidationError, match=r'db_retry_initial_ms'):
            WorkerResilienceConfig(db_retry_initial_ms=60_001)

    # --- db_retry_max_ms [500, 300_000] ---

    def test_max_ms_below_minimum_raises(self) -> None:
        with pytest.raises(ValidationError, match=r'db_retry_max_ms'):
            WorkerResilienceConfig(db_retry_max_ms=499)

    def test_max_ms_above_maximum_raises(self) -> None:
        with pytest.raises(ValidationError, match=r'db_retry_max_ms'):
            WorkerResilienceConfig(db_retry_max_ms=300_001)

    # --- db_retry_max_attempts [0, 10_000] ---

    def test_negative_attempts_raises(self) -> None:
        with pytest.raises(ValidationError, match=r'db_retry_max_attempts'):
            WorkerResilienceConfig(db_retry_max_attempts=-1)

    def test_attempts_at_maximum(self) -> None:
        cfg = WorkerResilienceConfig(db_retry_max_attempts=10_000)
        assert cfg.db_retry_max_attempts == 10_000


@pytest.mark.unit
class TestResilienceConfigCrossField:
    def test_max_below_initial_raises_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            WorkerResilienceConfig(db_retry_initial_ms=5_000, db_retry_max_ms=1_000)
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID_RESILIENCE
        assert 'db_retry_initial_ms=5000ms' in exc_info.value.notes

    def test_max_equal_initial_allowed(self) -> None:
        cfg = WorkerResilienceConfig(db_retry_initial_ms=2_000, db_retry_max_ms=2_000)
        assert cfg.db_retry_max_ms == 2_000
