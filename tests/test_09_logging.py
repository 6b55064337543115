"""
Tests for structured logging.

Tests cover:
- coerce_level() for ints, names and Python levels
- Numeric level gating of info/verbose/debug helpers
- Request id propagation into records
- JSONL and console formatters
"""
import json
import logging

import pytest


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__(level=0)
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def captured():
    """A logger with a capturing handler; restores the global level afterwards."""
    from parler_serve.core.logging import get_level, get_logger, set_level

    logger = get_logger("parler-serve.test")
    handler = _Capture()
    logger.addHandler(handler)
    previous = get_level()
    yield logger, handler
    logger.removeHandler(handler)
    set_level(previous)


class TestLevels:
    @pytest.mark.parametrize("value,expected", [
        (1, 1), (4, 4), ("verbose", 3), ("DEBUG", 4), ("trace", 4), ("info", 2),
        (logging.WARNING, 1), (logging.INFO, 2), ("nonsense", 2), (None, 2),
    ])
    def test_coerce_level(self, value, expected):
        from parler_serve.core.logging import coerce_level

        assert int(coerce_level(value)) == expected


class TestGating:
    def test_normal_hides_verbose(self, captured):
        from parler_serve.core.logging import LogLevel, debug, info, set_level, verbose

        logger, handler = captured
        set_level(LogLevel.NORMAL)
        info(logger, "shown")
        verbose(logger, "hidden")
        debug(logger, "hidden too")

        assert [r.getMessage() for r in handler.records] == ["shown"]

    def test_debug_shows_everything(self, captured):
        from parler_serve.core.logging import LogLevel, debug, info, set_level, verbose

        logger, handler = captured
        set_level(LogLevel.DEBUG)
        info(logger, "a")
        verbose(logger, "b")
        debug(logger, "c")

        assert [r.numeric_level for r in handler.records] == [2, 3, 4]

    def test_minimal_keeps_failures(self, captured):
        from parler_serve.core.logging import LogLevel, fail, info, set_level, warn

        logger, handler = captured
        set_level(LogLevel.MINIMAL)
        info(logger, "x")
        warn(logger, "y")
        fail(logger, "request_failed", error="ENGINE_FAILURE")

        assert len(handler.records) == 1
        assert handler.records[0].tag == "FAIL"


class TestRecordFields:
    def test_fields_and_request_id(self, captured):
        """Keyword fields land in extra_data; event/seconds get their own slots."""
        from parler_serve.core.logging import LogLevel, info, set_level, set_request_id

        logger, handler = captured
        set_level(LogLevel.NORMAL)
        set_request_id("abc123def456")
        try:
            info(logger, "stage", event="generate", seconds=1.5, job_id=7)
        finally:
            set_request_id("-")

        record = handler.records[0]
        assert record.request_id == "abc123def456"
        assert record.event == "generate"
        assert record.seconds == 1.5
        assert record.extra_data == {"job_id": 7}

    def test_jsonl_formatter(self, captured):
        from parler_serve.core.logging import JsonlFormatter, LogLevel, set_level, warn

        logger, handler = captured
        set_level(LogLevel.NORMAL)
        warn(logger, "param_clamped", field="top_p", value=1.5, clamped_to=1.0)

        payload = json.loads(JsonlFormatter().format(handler.records[0]))
        assert payload["tag"] == "WARN"
        assert payload["message"] == "param_clamped"
        assert payload["request_id"] == "-"
        assert payload["extra"] == {"field": "top_p", "value": 1.5, "clamped_to": 1.0}

    def test_console_formatter_plain(self, captured):
        from parler_serve.core.logging import ColoredConsoleFormatter, LogLevel, info, set_level

        logger, handler = captured
        set_level(LogLevel.NORMAL)
        info(logger, "job_enqueued", job_id=3, queue_depth=2, seconds=0.05)

        line = ColoredConsoleFormatter(use_colors=False).format(handler.records[0])
        assert "[ INFO  ]" in line
        assert "job_enqueued" in line
        assert "job_id=3" in line
        assert "queue_depth=2" in line
        assert line.endswith("0.050s")
        assert "\x1b[" not in line


class TestConfigureLogging:
    def test_env_level(self, monkeypatch):
        from parler_serve.core.logging import configure_logging, get_level, set_level

        previous = get_level()
        monkeypatch.setenv("PARLER_SERVE_LOG_LEVEL", "VERBOSE")
        try:
            configure_logging(force=True)
            assert int(get_level()) == 3
        finally:
            monkeypatch.delenv("PARLER_SERVE_LOG_LEVEL")
            configure_logging(force=True)
            set_level(previous)

    def test_jsonl_file(self, monkeypatch, tmp_path):
        """PARLER_SERVE_LOG_DIR adds a JSONL file handler."""
        from parler_serve.core.logging import LogLevel, configure_logging, get_logger, info

        monkeypatch.setenv("PARLER_SERVE_LOG_DIR", str(tmp_path))
        monkeypatch.setenv("PARLER_SERVE_JSONL_FILE", "test.jsonl")
        try:
            configure_logging(level=LogLevel.NORMAL, force=True)
            info(get_logger("parler-serve.test"), "written_to_file", n=1)
            for h in logging.getLogger().handlers:
                h.flush()

            lines = (tmp_path / "test.jsonl").read_text(encoding="utf-8").splitlines()
            assert json.loads(lines[-1])["message"] == "written_to_file"
        finally:
            for h in logging.getLogger().handlers:
                h.close()
            monkeypatch.delenv("PARLER_SERVE_LOG_DIR")
            monkeypatch.delenv("PARLER_SERVE_JSONL_FILE")
            configure_logging(force=True)
