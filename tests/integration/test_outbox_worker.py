"""Integration tests for the outbox worker against a real store."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from eventbus_service.core.events import OutboxStatus
from eventbus_service.core.exceptions import DeliveryError
from eventbus_service.infra.events.outbox import OutboxWorker
from eventbus_service.infra.metrics import REGISTRY
from eventbus_service.infra.metrics.events import record_outbox_depth

# Longer than max_retry_delay plus jitter in the test settings
RETRY_WAIT = 0.08


async def _run_passes(worker: OutboxWorker, passes: int) -> None:
    for _ in range(passes):
        await worker.process_batch()
        await asyncio.sleep(RETRY_WAIT)


def _deliveries(event_type: str, outcome: str) -> float:
    return (
        REGISTRY.get_sample_value(
            "eventbus_outbox_deliveries_total",
            {"event_type": event_type, "outcome": outcome},
        )
        or 0.0
    )


@pytest.fixture
def worker(outbox_store, emitter, outbox_settings) -> OutboxWorker:
    return OutboxWorker(outbox_store, emitter, settings=outbox_settings)


class TestDelivery:
    """Tests for claim-and-deliver passes."""

    async def test_pending_entry_is_delivered_once(
        self, worker, emitter, outbox_store, recorder, tenant_payload
    ):
        emitter.on("tenant.created", recorder)
        event_id = await emitter.emit_reliable("tenant.created", tenant_payload)

        assert recorder.calls == 0

        claimed = await worker.process_batch()

        assert claimed == 1
        assert recorder.event_ids == [event_id]
        entry = await outbox_store.get_by_event_id(event_id)
        assert entry.status is OutboxStatus.COMPLETED
        assert entry.attempts == 1

    async def test_redelivery_keeps_original_metadata(
        self, worker, emitter, recorder, tenant_payload
    ):
        emitter.on("tenant.created", recorder)
        event_id = await emitter.emit_reliable("tenant.created", tenant_payload, source="billing")

        await worker.process_batch()

        [event] = recorder.events
        assert event.event_id == event_id
        assert event.meta.source == "billing"
        assert event.payload == tenant_payload

    async def test_empty_outbox_claims_nothing(self, worker):
        assert await worker.process_batch() == 0

    async def test_delivered_metric(self, worker, emitter, recorder, tenant_payload):
        emitter.on("tenant.created", recorder)
        before = _deliveries("tenant.created", "delivered")
        await emitter.emit_reliable("tenant.created", tenant_payload)

        await worker.process_batch()

        assert _deliveries("tenant.created", "delivered") == before + 1


class TestRetries:
    """Tests for retry scheduling and dead-lettering."""

    async def test_transient_failures_then_success(
        self, worker, emitter, outbox_store, make_recorder, tenant_payload
    ):
        # Fails twice, succeeds on the third attempt (max_retries is 3)
        handler = make_recorder(fail_times=2)
        emitter.on("tenant.created", handler)
        event_id = await emitter.emit_reliable("tenant.created", tenant_payload)

        await _run_passes(worker, 3)

        entry = await outbox_store.get_by_event_id(event_id)
        assert entry.status is OutboxStatus.COMPLETED
        assert entry.attempts == 3
        assert handler.calls == 3
        assert handler.event_ids == [event_id]

    async def test_failed_attempt_schedules_retry(
        self, worker, emitter, outbox_store, make_recorder, tenant_payload
    ):
        emitter.on("tenant.created", make_recorder(fail_times=1))
        event_id = await emitter.emit_reliable("tenant.created", tenant_payload)

        before = datetime.now(UTC)
        await worker.process_batch()

        entry = await outbox_store.get_by_event_id(event_id)
        assert entry.status is OutboxStatus.PROCESSING
        assert entry.attempts == 1
        assert entry.last_error is not None
        assert "handler failed" in entry.last_error
        assert entry.next_retry_at > before

    async def test_exhausted_retries_dead_letter_and_hook_fires_once(
        self, outbox_store, emitter, outbox_settings, make_recorder, tenant_payload
    ):
        failures: list[tuple[str, BaseException]] = []

        async def on_dead(entry, exc):
            failures.append((entry.event_id, exc))

        worker = OutboxWorker(
            outbox_store, emitter, settings=outbox_settings, on_permanent_failure=on_dead
        )
        handler = make_recorder(fail_times=100)
        emitter.on("tenant.created", handler)
        event_id = await emitter.emit_reliable("tenant.created", tenant_payload)

        await _run_passes(worker, outbox_settings.max_retries + 2)

        entry = await outbox_store.get_by_event_id(event_id)
        assert entry.status is OutboxStatus.FAILED
        assert entry.attempts == outbox_settings.max_retries
        assert entry.failed_at is not None
        assert handler.calls == outbox_settings.max_retries
        assert len(failures) == 1
        assert failures[0][0] == event_id
        assert isinstance(failures[0][1], DeliveryError)
        assert await worker.get_failed_count() == 1

    async def test_hook_errors_are_contained(
        self, outbox_store, emitter, outbox_settings, make_recorder, tenant_payload, caplog
    ):
        def on_dead(entry, exc):
            raise RuntimeError("pager offline")

        worker = OutboxWorker(
            outbox_store, emitter, settings=outbox_settings, on_permanent_failure=on_dead
        )
        emitter.on("tenant.created", make_recorder(fail_times=100))
        event_id = await emitter.emit_reliable("tenant.created", tenant_payload)

        await _run_passes(worker, outbox_settings.max_retries)

        entry = await outbox_store.get_by_event_id(event_id)
        assert entry.status is OutboxStatus.FAILED
        assert "Permanent failure hook raised" in caplog.text

    async def test_one_failing_entry_does_not_block_others(
        self, worker, emitter, outbox_store, tenant_payload
    ):
        delivered: list[str] = []

        async def handler(event):
            if event.payload["tenant_id"] == "t-bad":
                raise ValueError("bad tenant")
            delivered.append(event.event_id)

        emitter.on("tenant.created", handler)
        bad_id = await emitter.emit_reliable("tenant.created", {**tenant_payload, "tenant_id": "t-bad"})
        good_id = await emitter.emit_reliable("tenant.created", tenant_payload)

        await worker.process_batch()

        assert delivered == [good_id]
        assert (await outbox_store.get_by_event_id(bad_id)).status is OutboxStatus.PROCESSING
        assert (await outbox_store.get_by_event_id(good_id)).status is OutboxStatus.COMPLETED


class TestManualRetry:
    """Tests for requeueing dead-lettered entries."""

    async def test_retry_failed_resets_budget(
        self, worker, emitter, outbox_store, outbox_settings, make_recorder, tenant_payload
    ):
        handler = make_recorder(fail_times=outbox_settings.max_retries)
        emitter.on("tenant.created", handler)
        event_id = await emitter.emit_reliable("tenant.created", tenant_payload)
        await _run_passes(worker, outbox_settings.max_retries)
        assert (await outbox_store.get_by_event_id(event_id)).status is OutboxStatus.FAILED

        assert await worker.retry_failed(event_id) is True

        entry = await outbox_store.get_by_event_id(event_id)
        assert entry.status is OutboxStatus.PENDING
        assert entry.attempts == 0
        assert entry.last_error is None
        assert entry.failed_at is None

        await worker.process_batch()

        entry = await outbox_store.get_by_event_id(event_id)
        assert entry.status is OutboxStatus.COMPLETED
        assert entry.attempts == 1
        assert handler.event_ids == [event_id]

    async def test_retry_failed_ignores_live_entries(self, worker, emitter, tenant_payload):
        event_id = await emitter.emit_reliable("tenant.created", tenant_payload)

        assert await worker.retry_failed(event_id) is False
        assert await worker.retry_failed("evt_missing") is False


class TestLifecycle:
    """Tests for the background loop."""

    async def test_start_is_idempotent_and_stop_drains(
        self, worker, emitter, outbox_store, recorder, tenant_payload
    ):
        emitter.on("tenant.created", recorder)

        await worker.start()
        first_task = worker._task
        await worker.start()

        assert worker.is_running
        assert worker._task is first_task

        event_id = await emitter.emit_reliable("tenant.created", tenant_payload)
        for _ in range(100):
            if recorder.calls:
                break
            await asyncio.sleep(0.01)

        await worker.stop()
        await worker.stop()

        assert not worker.is_running
        assert recorder.event_ids == [event_id]
        assert (await outbox_store.get_by_event_id(event_id)).status is OutboxStatus.COMPLETED

    async def test_loop_survives_store_errors(self, worker, monkeypatch):
        calls = 0

        async def broken_claim(now, limit):
            nonlocal calls
            calls += 1
            raise ConnectionError("database unavailable")

        monkeypatch.setattr(worker.store, "claim_batch", broken_claim)
        before = REGISTRY.get_sample_value("eventbus_outbox_poll_errors_total") or 0.0

        await worker.start()
        await asyncio.sleep(0.1)
        await worker.stop()

        assert calls >= 1
        assert REGISTRY.get_sample_value("eventbus_outbox_poll_errors_total") >= before + 1

    async def test_refresh_metrics_publishes_depth(self, worker, emitter, tenant_payload):
        await emitter.emit_reliable("tenant.created", tenant_payload)
        await emitter.emit_reliable("tenant.created", {**tenant_payload, "tenant_id": "t-2"})

        counts = await worker.refresh_metrics()

        assert counts[OutboxStatus.PENDING] == 2
        assert REGISTRY.get_sample_value("eventbus_outbox_entries", {"status": "pending"}) == 2

    async def test_loop_refreshes_depth_gauges(
        self, outbox_store, emitter, outbox_settings, recorder, tenant_payload
    ):
        settings = outbox_settings.model_copy(update={"metrics_interval": 0.0})
        worker = OutboxWorker(outbox_store, emitter, settings=settings)
        emitter.on("tenant.created", recorder)
        record_outbox_depth({"completed": 0})

        await emitter.emit_reliable("tenant.created", tenant_payload)
        await worker.start()
        for _ in range(100):
            if REGISTRY.get_sample_value("eventbus_outbox_entries", {"status": "completed"}) == 1:
                break
            await asyncio.sleep(0.01)
        await worker.stop()

        assert recorder.calls == 1
        assert REGISTRY.get_sample_value("eventbus_outbox_entries", {"status": "completed"}) == 1
        assert REGISTRY.get_sample_value("eventbus_outbox_entries", {"status": "pending"}) == 0
