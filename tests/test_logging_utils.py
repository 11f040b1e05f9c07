import json
import logging

from ecogram_offline.logging_utils import (
    StructuredJsonFormatter,
    SyncLoggerAdapter,
    configure_structured_logging,
)


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="ecogram_offline.sync.engine",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Sync pass %s",
        args=("finished",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredJsonFormatter:
    def test_basic_fields(self):
        line = StructuredJsonFormatter().format(_record())
        data = json.loads(line)

        assert data["level"] == "INFO"
        assert data["logger"] == "ecogram_offline.sync.engine"
        assert data["message"] == "Sync pass finished"
        assert "timestamp" in data

    def test_extra_fields_included(self):
        data = json.loads(StructuredJsonFormatter().format(_record(remaining=3, sync_state="idle")))

        assert data["remaining"] == 3
        assert data["sync_state"] == "idle"

    def test_unserializable_extra_is_stringified(self):
        data = json.loads(StructuredJsonFormatter().format(_record(when={1, 2})))
        assert isinstance(data["when"], str)


class TestConfigure:
    def test_single_handler_after_repeated_calls(self):
        configure_structured_logging(logger_name="ecogram_offline.test_configure")
        logger = configure_structured_logging(
            level=logging.DEBUG, logger_name="ecogram_offline.test_configure"
        )

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, StructuredJsonFormatter)
        assert logger.level == logging.DEBUG
        logger.handlers.clear()


class TestSyncLoggerAdapter:
    def test_context_merged_into_extra(self):
        adapter = SyncLoggerAdapter(logging.getLogger("x"), {"drain": 4})

        msg, kwargs = adapter.process("hello", {"extra": {"seq": 7}})

        assert msg == "hello"
        assert kwargs["extra"] == {"seq": 7, "drain": 4}

    def test_extra_created_when_missing(self):
        adapter = SyncLoggerAdapter(logging.getLogger("x"), {"drain": 1})

        _, kwargs = adapter.process("hello", {})

        assert kwargs["extra"] == {"drain": 1}
