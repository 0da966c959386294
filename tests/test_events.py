"""Tests for the event bus, recorder and logging bridge."""

import json
import logging

from pipeline_core.events import EventBus, EventRecorder
from pipeline_core.logging_config import JSONFormatter, configure_logging, log_event


class TestEventBus:
    def test_named_and_global_handlers(self):
        bus = EventBus()
        named, everything = [], []
        bus.subscribe("job_started", named.append)
        bus.subscribe_all(everything.append)

        bus.publish("job_started", "etl_pipeline", job_id="j1")
        bus.publish("job_completed", "etl_pipeline", job_id="j1")

        assert [e.payload["job_id"] for e in named] == ["j1"]
        assert [e.name for e in everything] == ["job_started", "job_completed"]
        assert everything[0].source == "etl_pipeline"

    def test_failing_handler_does_not_break_publish(self, caplog):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe("tick", broken)
        bus.subscribe("tick", received.append)

        with caplog.at_level(logging.ERROR):
            event = bus.publish("tick", "test")

        assert received == [event]
        assert "Error in handler" in caplog.text

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe("tick", received.append)

        assert bus.unsubscribe("tick", received.append)
        assert not bus.unsubscribe("tick", received.append)
        bus.publish("tick", "test")

        assert received == []
        assert bus.handler_count() == 0


class TestEventRecorder:
    def test_bounded_history_and_query(self):
        bus = EventBus()
        recorder = EventRecorder(max_size=3)
        bus.subscribe_all(recorder)

        for i in range(5):
            bus.publish("a" if i % 2 else "b", "test", i=i)

        assert len(recorder) == 3
        assert [e.payload["i"] for e in recorder.query()] == [2, 3, 4]
        assert [e.payload["i"] for e in recorder.query(name="b")] == [2, 4]
        assert [e.payload["i"] for e in recorder.query(limit=1)] == [4]

        recorder.clear()
        assert recorder.names() == []


class TestLogging:
    def test_event_levels(self, caplog):
        bus = EventBus()
        bus.subscribe_all(log_event)

        with caplog.at_level(logging.INFO, logger="pipeline_core.events"):
            bus.publish("job_started", "etl_pipeline")
            bus.publish("retry_attempt", "error_handler")
            bus.publish("job_failed", "etl_pipeline")

        levels = [(r.getMessage(), r.levelno) for r in caplog.records]
        assert levels == [
            ("job_started from etl_pipeline", logging.INFO),
            ("retry_attempt from error_handler", logging.WARNING),
            ("job_failed from etl_pipeline", logging.ERROR),
        ]

    def test_json_formatter_includes_extra_context(self):
        record = logging.LogRecord(
            "pipeline_core.events", logging.WARNING, __file__, 1, "hello %s", ("world",), None
        )
        record.event = "retry_attempt"

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "hello world"
        assert data["level"] == "WARNING"
        assert data["logger"] == "pipeline_core.events"
        assert data["context"] == {"event": "retry_attempt"}

    def test_configure_logging_installs_one_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            configure_logging("debug", "json")
            configure_logging("debug", "json")

            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.DEBUG
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
