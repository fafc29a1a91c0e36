"""Unit tests for outbox retry backoff."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from eventbus_service.core.settings import OutboxSettings
from eventbus_service.infra.events.outbox.backoff import calculate_delay, next_retry_at


class TestCalculateDelay:
    """Tests for calculate_delay."""

    @pytest.mark.parametrize("attempts", [0, 1, 2, 3, 4])
    def test_within_jitter_bounds(self, attempts):
        expected = 1.0 * 2**attempts

        for _ in range(50):
            delay = calculate_delay(attempts, base_delay=1.0, max_delay=60.0)
            assert expected * 0.9 <= delay <= expected * 1.1

    def test_capped_before_jitter(self):
        for _ in range(50):
            delay = calculate_delay(20, base_delay=1.0, max_delay=60.0)
            assert 54.0 <= delay <= 66.0

    def test_no_jitter_is_exact(self):
        assert calculate_delay(3, base_delay=0.5, max_delay=60.0, jitter_ratio=0.0) == 4.0

    def test_jitter_uses_uniform_range(self):
        with patch("eventbus_service.infra.events.outbox.backoff.random.uniform") as uniform:
            uniform.return_value = 1.05

            delay = calculate_delay(2, base_delay=1.0, max_delay=60.0, jitter_ratio=0.1)

        uniform.assert_called_once_with(pytest.approx(0.9), pytest.approx(1.1))
        assert delay == pytest.approx(4.2)


class TestNextRetryAt:
    """Tests for next_retry_at."""

    def test_schedules_from_now(self):
        settings = OutboxSettings(base_retry_delay=2.0, max_retry_delay=60.0, jitter_ratio=0.0)
        now = datetime(2025, 1, 15, 10, 0, tzinfo=UTC)

        retry_at, delay = next_retry_at(2, settings, now)

        assert delay == 8.0
        assert retry_at == now + timedelta(seconds=8)

    def test_uses_settings_cap(self):
        settings = OutboxSettings(base_retry_delay=1.0, max_retry_delay=5.0, jitter_ratio=0.0)
        now = datetime.now(UTC)

        _, delay = next_retry_at(10, settings, now)

        assert delay == 5.0
