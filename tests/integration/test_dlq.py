"""Integration tests for dead-letter queue management."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from eventbus_service.core.events import OutboxEntry, OutboxStatus
from eventbus_service.core.exceptions import DLQBatchTooLargeError, InvalidCursorError
from eventbus_service.infra.events.outbox import DeadLetterManager
from eventbus_service.infra.metrics import REGISTRY


async def _dead_entries(
    store, make_event, count: int, *, event_type: str = "tenant.created", scope_id=None, error="boom"
) -> list[OutboxEntry]:
    """Insert entries and dead-letter them one at a time (oldest first)."""
    dead = []
    for _ in range(count):
        entry = await store.insert(OutboxEntry.pending(make_event(event_type, scope_id=scope_id)))
        [claimed] = await store.claim_batch(datetime.now(UTC), limit=1)
        assert claimed.id == entry.id
        await store.mark_failed(entry.id, error)
        dead.append(await store.get(entry.id))
    return dead


@pytest.fixture
def dlq(outbox_store) -> DeadLetterManager:
    return DeadLetterManager(outbox_store)


class TestListing:
    """Tests for cursor-paginated listing."""

    async def test_pages_cover_every_entry_newest_first(self, dlq, outbox_store, make_event):
        dead = await _dead_entries(outbox_store, make_event, 5)

        first = await dlq.list_dead_events(limit=2)
        second = await dlq.list_dead_events(cursor=first.next_cursor, limit=2)
        third = await dlq.list_dead_events(cursor=second.next_cursor, limit=2)

        listed = [entry.id for page in (first, second, third) for entry in page.items]
        assert listed == [entry.id for entry in reversed(dead)]
        assert first.has_more
        assert second.has_more
        assert third.next_cursor is None

    async def test_exact_page_has_no_cursor(self, dlq, outbox_store, make_event):
        await _dead_entries(outbox_store, make_event, 2)

        page = await dlq.list_dead_events(limit=2)

        assert len(page.items) == 2
        assert page.next_cursor is None

    async def test_filters(self, dlq, outbox_store, make_event):
        await _dead_entries(outbox_store, make_event, 2, scope_id="t-1")
        await _dead_entries(outbox_store, make_event, 1, scope_id="t-2")
        await _dead_entries(outbox_store, make_event, 1, event_type="payment.failed", scope_id="t-1")

        by_scope = await dlq.list_dead_events(scope_id="t-1")
        by_type = await dlq.list_dead_events(event_type="payment.failed")

        assert len(by_scope.items) == 3
        assert {entry.event.meta.scope_id for entry in by_scope.items} == {"t-1"}
        assert [entry.event_type for entry in by_type.items] == ["payment.failed"]
        assert await dlq.count_dead_events(event_type="tenant.created", scope_id="t-1") == 2
        assert await dlq.count_dead_events() == 4

    async def test_live_entries_are_not_listed(self, dlq, outbox_store, make_event):
        await outbox_store.insert(OutboxEntry.pending(make_event()))

        page = await dlq.list_dead_events()

        assert page.items == []

    async def test_invalid_cursor_raises(self, dlq):
        with pytest.raises(InvalidCursorError):
            await dlq.list_dead_events(cursor="garbage")

    async def test_limit_is_clamped(self, dlq, outbox_store, make_event):
        await _dead_entries(outbox_store, make_event, 2)

        page = await dlq.list_dead_events(limit=0)

        assert len(page.items) == 1

    async def test_get_dead_event_only_returns_failed(self, dlq, outbox_store, make_event):
        [dead] = await _dead_entries(outbox_store, make_event, 1)
        live = await outbox_store.insert(OutboxEntry.pending(make_event()))

        assert (await dlq.get_dead_event(dead.id)).id == dead.id
        assert await dlq.get_dead_event(live.id) is None
        assert await dlq.get_dead_event("missing") is None


class TestRetryAndPurge:
    """Tests for requeueing and purging."""

    async def test_retry_dead_event(self, dlq, outbox_store, make_event):
        [dead] = await _dead_entries(outbox_store, make_event, 1)
        before = REGISTRY.get_sample_value("eventbus_dlq_requeued_total") or 0.0

        assert await dlq.retry_dead_event(dead.id) is True
        assert await dlq.retry_dead_event(dead.id) is False

        entry = await outbox_store.get(dead.id)
        assert entry.status is OutboxStatus.PENDING
        assert entry.attempts == 0
        assert REGISTRY.get_sample_value("eventbus_dlq_requeued_total") == before + 1

    async def test_purge_dead_event(self, dlq, outbox_store, make_event):
        [dead] = await _dead_entries(outbox_store, make_event, 1)
        live = await outbox_store.insert(OutboxEntry.pending(make_event()))

        assert await dlq.purge_dead_event(dead.id) is True
        assert await dlq.purge_dead_event(live.id) is False

        assert await outbox_store.get(dead.id) is None
        assert await outbox_store.get(live.id) is not None

    async def test_batch_reports_missing_ids(self, dlq, outbox_store, make_event):
        dead = await _dead_entries(outbox_store, make_event, 2)
        ids = [dead[0].id, "missing", dead[1].id, dead[0].id]

        result = await dlq.retry_dead_event_batch(ids)

        assert result.succeeded == [dead[0].id, dead[1].id]
        assert result.failed == [{"id": "missing", "error": "Not found in dead-letter queue"}]
        assert result.total == 3

    async def test_purge_batch(self, dlq, outbox_store, make_event):
        dead = await _dead_entries(outbox_store, make_event, 3)

        result = await dlq.purge_dead_event_batch([entry.id for entry in dead[:2]])

        assert len(result.succeeded) == 2
        assert result.failed == []
        assert await dlq.count_dead_events() == 1

    @pytest.mark.parametrize("method", ["retry_dead_event_batch", "purge_dead_event_batch"])
    async def test_batch_size_is_capped(self, dlq, method):
        with pytest.raises(DLQBatchTooLargeError):
            await getattr(dlq, method)([f"id-{i}" for i in range(1001)])

    async def test_retry_all_dead_respects_limit(self, dlq, outbox_store, make_event):
        dead = await _dead_entries(outbox_store, make_event, 3)

        assert await dlq.retry_all_dead(limit=2) == 2

        # Oldest failures are requeued first
        assert (await outbox_store.get(dead[0].id)).status is OutboxStatus.PENDING
        assert (await outbox_store.get(dead[2].id)).status is OutboxStatus.FAILED

    async def test_purge_all_dead(self, dlq, outbox_store, make_event):
        await _dead_entries(outbox_store, make_event, 3)

        assert await dlq.purge_all_dead() == 3
        assert await dlq.purge_all_dead() == 0


class TestStats:
    """Tests for DLQ statistics."""

    async def test_stats_breakdown(self, dlq, outbox_store, make_event):
        await _dead_entries(outbox_store, make_event, 2, error="timeout")
        await _dead_entries(outbox_store, make_event, 1, event_type="payment.failed", error="declined")
        await outbox_store.insert(OutboxEntry.pending(make_event()))

        stats = await dlq.get_dlq_stats()

        assert stats.dead_total == 3
        assert stats.by_status[OutboxStatus.PENDING] == 1
        assert stats.dead_by_type == {"tenant.created": 2, "payment.failed": 1}
        assert stats.dead_by_error == {"timeout": 2, "declined": 1}
        assert stats.oldest_failure <= stats.newest_failure
        assert stats.oldest_failure.tzinfo is not None

    async def test_empty_stats(self, dlq):
        stats = await dlq.get_dlq_stats()

        assert stats.dead_total == 0
        assert stats.dead_by_type == {}
        assert stats.oldest_failure is None
