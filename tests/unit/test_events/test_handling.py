"""Unit tests for handler error tiers and in-handler retries."""

from __future__ import annotations

import logging
from typing import ClassVar

import pytest

from eventbus_service.core.events import (
    RETRY_PRESETS,
    CascadeErrorTracker,
    ErrorTier,
    EventEmitter,
    EventPayload,
    RetryPolicy,
    SchemaRegistry,
    with_error_handling,
    with_event_retry,
)
from eventbus_service.core.exceptions import DeliveryError
from eventbus_service.core.settings import EventSettings
from eventbus_service.infra.metrics import REGISTRY

NO_WAIT = RetryPolicy(max_attempts=3, initial_delay=0.0, jitter=False)


class CacheFlushed(EventPayload):
    event_type: ClassVar[str] = "test.cache_flushed"

    key: str


def _errors(tier: str) -> float:
    return REGISTRY.get_sample_value("eventbus_handler_errors_total", {"tier": tier}) or 0.0


def _retries(context: str, outcome: str) -> float:
    return (
        REGISTRY.get_sample_value(
            "eventbus_handler_retries_total", {"context": context, "outcome": outcome}
        )
        or 0.0
    )


async def _boom(event):
    raise RuntimeError("cache unavailable")


@pytest.fixture
def emitter() -> EventEmitter:
    registry = SchemaRegistry()
    registry.register(CacheFlushed)
    return EventEmitter(registry, settings=EventSettings(handler_concurrency=4))


class TestErrorTiers:
    """Tests for with_error_handling."""

    @pytest.mark.parametrize("tier", [ErrorTier.CRITICAL, ErrorTier.IMPORTANT])
    async def test_propagating_tiers_reraise(self, tier, make_event):
        wrapped = with_error_handling(_boom, tier=tier, context="billing.payment")
        before = _errors(tier.value)

        with pytest.raises(RuntimeError, match="cache unavailable"):
            await wrapped(make_event())

        assert _errors(tier.value) == before + 1

    async def test_non_critical_logs_warning_and_returns_none(self, make_event, caplog):
        wrapped = with_error_handling(_boom, tier="non_critical", context="flags.cache")

        with caplog.at_level(logging.WARNING, logger="eventbus_service.core.events.handling"):
            result = await wrapped(make_event())

        assert result is None
        record = next(r for r in caplog.records if r.levelno == logging.WARNING)
        assert record.context == "flags.cache"
        assert record.tier == "non_critical"

    async def test_monitoring_stays_quiet(self, make_event, caplog):
        wrapped = with_error_handling(_boom, tier=ErrorTier.MONITORING, context="audit.trail")

        with caplog.at_level(logging.INFO, logger="eventbus_service.core.events.handling"):
            result = await wrapped(make_event())

        assert result is None
        assert not caplog.records

    async def test_success_passes_result_through(self, make_event):
        wrapped = with_error_handling(
            lambda event: event.type, tier=ErrorTier.CRITICAL, context="noop"
        )

        assert await wrapped(make_event()) == "tenant.created"

    def test_unknown_tier_is_rejected(self):
        with pytest.raises(ValueError):
            with_error_handling(_boom, tier="optional", context="x")

    async def test_swallowed_errors_do_not_fail_dispatch(self, emitter):
        emitter.on(
            "test.cache_flushed",
            with_error_handling(_boom, tier=ErrorTier.NON_CRITICAL, context="cache"),
        )
        event = emitter.build_event("test.cache_flushed", {"key": "flags"})

        await emitter.redeliver(event)

    async def test_critical_errors_fail_redelivery(self, emitter):
        emitter.on(
            "test.cache_flushed",
            with_error_handling(_boom, tier=ErrorTier.CRITICAL, context="cache"),
        )
        event = emitter.build_event("test.cache_flushed", {"key": "flags"})

        with pytest.raises(DeliveryError):
            await emitter.redeliver(event)


class TestCascadeErrorTracker:
    """Tests for collecting swallowed errors across handlers."""

    async def test_tracks_each_swallowed_error(self, make_event):
        tracker = CascadeErrorTracker("tenant.deleted")
        handlers = [
            with_error_handling(
                _boom, tier=ErrorTier.NON_CRITICAL, context=name, on_error=tracker.track
            )
            for name in ("cleanup.api_keys", "cleanup.settings")
        ]

        for handler in handlers:
            await handler(make_event("tenant.deleted"))

        assert tracker.has_errors
        assert len(tracker) == 2
        assert tracker.errors == [
            {"context": "cleanup.api_keys", "message": "cache unavailable"},
            {"context": "cleanup.settings", "message": "cache unavailable"},
        ]

    def test_starts_empty(self):
        tracker = CascadeErrorTracker("tenant.deleted")

        assert not tracker.has_errors
        assert tracker.errors == []


class TestEventRetry:
    """Tests for with_event_retry."""

    async def test_recovers_after_transient_failures(self):
        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise ConnectionError("reset by peer")
            return "ok"

        before = _retries("billing.api", "recovered")

        result = await with_event_retry(flaky, NO_WAIT, context="billing.api")

        assert result == "ok"
        assert attempts == 3
        assert _retries("billing.api", "recovered") == before + 1

    async def test_reraises_last_error_when_exhausted(self):
        attempts = 0

        async def down():
            nonlocal attempts
            attempts += 1
            raise ConnectionError(f"attempt {attempts}")

        before = _retries("billing.down", "exhausted")

        with pytest.raises(ConnectionError, match="attempt 3"):
            await with_event_retry(down, NO_WAIT, context="billing.down")

        assert attempts == 3
        assert _retries("billing.down", "exhausted") == before + 1

    async def test_non_retryable_error_stops_immediately(self):
        attempts = 0

        async def invalid():
            nonlocal attempts
            attempts += 1
            raise ValueError("bad request")

        with pytest.raises(ValueError):
            await with_event_retry(
                invalid,
                NO_WAIT,
                is_retryable=lambda exc: isinstance(exc, ConnectionError),
            )

        assert attempts == 1

    def test_delay_grows_and_is_capped(self):
        policy = RetryPolicy(initial_delay=0.1, max_delay=0.3, backoff_multiplier=2, jitter=False)

        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == pytest.approx([0.1, 0.2, 0.3, 0.3])

    def test_jitter_stays_within_half_to_one_and_a_half(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=1.0)

        for _ in range(50):
            assert 0.5 <= policy.delay_for(1) <= 1.5

    def test_presets(self):
        assert set(RETRY_PRESETS) == {"quick", "standard", "extended"}
        assert RETRY_PRESETS["extended"].max_attempts == 5
        assert RETRY_PRESETS["quick"].max_delay < RETRY_PRESETS["standard"].max_delay
