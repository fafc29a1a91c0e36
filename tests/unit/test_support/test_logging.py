"""Unit tests for structured logging."""

from __future__ import annotations

import asyncio
import json
import logging
from logging.handlers import QueueHandler
import sys

import pytest

from eventbus_service.infra.logging import (
    ContextInjectingFilter,
    JSONFormatter,
    TextFormatter,
    clear_log_context,
    configure_logging,
    get_log_context,
    log_context,
    remove_from_log_context,
    set_log_context,
    shutdown,
)


def _record(msg: str = "hello", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="eventbus_service.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def _reset_context():
    clear_log_context()
    yield
    clear_log_context()


class TestLogContext:
    """Tests for contextvars-based log context."""

    def test_set_get_remove(self):
        set_log_context(event_id="evt_1", event_type="user.created")
        assert get_log_context() == {"event_id": "evt_1", "event_type": "user.created"}

        remove_from_log_context("event_type")
        assert get_log_context() == {"event_id": "evt_1"}

    def test_log_context_restores_on_exit(self):
        set_log_context(scope_id="t-1")

        with log_context(event_id="evt_2", correlation_id=None):
            assert get_log_context() == {"scope_id": "t-1", "event_id": "evt_2"}

        assert get_log_context() == {"scope_id": "t-1"}

    def test_log_context_restores_on_error(self):
        with pytest.raises(RuntimeError), log_context(event_id="evt_3"):
            raise RuntimeError

        assert get_log_context() == {}

    async def test_tasks_have_isolated_context(self):
        async def worker(name: str) -> dict[str, object]:
            with log_context(worker=name):
                await asyncio.sleep(0)
                return get_log_context()

        first, second = await asyncio.gather(worker("a"), worker("b"))

        assert first == {"worker": "a"}
        assert second == {"worker": "b"}


class TestContextInjectingFilter:
    """Tests for ContextInjectingFilter."""

    def test_injects_context(self):
        record = _record()

        with log_context(event_id="evt_4"):
            assert ContextInjectingFilter().filter(record) is True

        assert record.event_id == "evt_4"

    def test_does_not_override_extra(self):
        record = _record(event_id="explicit")

        with log_context(event_id="from-context"):
            ContextInjectingFilter().filter(record)

        assert record.event_id == "explicit"


class TestJSONFormatter:
    """Tests for JSONFormatter."""

    def test_basic_fields(self):
        line = JSONFormatter(static={"service": "eventbus-service"}).format(_record("delivered"))
        data = json.loads(line)

        assert data["level"] == "INFO"
        assert data["logger"] == "eventbus_service.test"
        assert data["message"] == "delivered"
        assert data["service"] == "eventbus-service"
        assert data["timestamp"].endswith("Z")

    def test_extra_fields_are_top_level(self):
        data = json.loads(JSONFormatter().format(_record(event_id="evt_5", attempts=2)))

        assert data["event_id"] == "evt_5"
        assert data["attempts"] == 2
        assert "msg" not in data
        assert "args" not in data

    def test_exception_stays_on_one_line(self):
        try:
            raise ValueError("bad payload")
        except ValueError:
            record = _record()
            record.exc_info = sys.exc_info()

        line = JSONFormatter().format(record)

        assert "\n" not in line
        assert "ValueError: bad payload" in json.loads(line)["exception"]

    def test_unserializable_values_use_str(self):
        data = json.loads(JSONFormatter().format(_record(path=object())))

        assert data["path"].startswith("<object object")

    def test_event_keys_follow_header(self):
        data = json.loads(JSONFormatter().format(_record(extra_key=1, event_id="evt_7")))

        assert list(data)[:5] == ["timestamp", "level", "logger", "message", "event_id"]


class TestTextFormatter:
    """Tests for TextFormatter."""

    def test_appends_event_id(self):
        line = TextFormatter().format(_record("retrying", event_id="evt_8"))

        assert line.endswith("retrying [evt_8]")

    def test_plain_without_event(self):
        assert TextFormatter().format(_record("idle")).endswith("eventbus_service.test idle")


class TestConfigureLogging:
    """Tests for configure_logging."""

    @pytest.fixture
    def root_handlers(self):
        root = logging.getLogger()
        saved = list(root.handlers)
        saved_level = root.level
        yield root
        shutdown()
        root.handlers[:] = saved
        root.setLevel(saved_level)

    def test_installs_queue_handler_with_context(self, root_handlers, tmp_path):
        log_file = tmp_path / "logs" / "bus.jsonl"

        configure_logging(
            log_level="DEBUG",
            file_path=log_file,
            console_enabled=False,
            capture_warnings=False,
        )

        queue_handlers = [h for h in root_handlers.handlers if isinstance(h, QueueHandler)]
        assert len(queue_handlers) == 1
        assert any(isinstance(f, ContextInjectingFilter) for f in queue_handlers[0].filters)
        assert root_handlers.level == logging.DEBUG

        with log_context(event_id="evt_6"):
            logging.getLogger("eventbus_service.test").info("written", extra={"attempts": 1})
        shutdown()

        data = json.loads(log_file.read_text().splitlines()[-1])
        assert data["message"] == "written"
        assert data["event_id"] == "evt_6"
        assert data["attempts"] == 1
