"""Tests for logging setup and track-scoped log context."""

import json
import logging

import pytest

from setbreak.utils.logging import JSONFormatter, setup_logging, track_logger


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


def _record(logger_name="orchestrator", msg="hello", **extra):
    record = logging.LogRecord(logger_name, logging.WARNING, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:

    def test_basic_fields(self):
        payload = json.loads(JSONFormatter().format(_record()))
        assert payload["level"] == "WARNING"
        assert payload["logger"] == "orchestrator"
        assert payload["message"] == "hello"

    def test_track_context_included(self):
        payload = json.loads(JSONFormatter().format(_record(track_id=7, stage="decode", chunk=2)))
        assert payload["track_id"] == 7
        assert payload["stage"] == "decode"
        assert payload["chunk"] == 2


class TestTrackLogger:

    def test_prefix_and_extra(self, caplog):
        log = track_logger("orchestrator", 42, "engine")
        with caplog.at_level(logging.WARNING, logger="orchestrator"):
            log.warning("fft failed")
        (record,) = caplog.records
        assert record.getMessage() == "[track 42/engine] fft failed"
        assert record.track_id == 42
        assert record.stage == "engine"

    def test_without_stage(self, caplog):
        with caplog.at_level(logging.INFO, logger="orchestrator"):
            track_logger("orchestrator", 3).info("queued")
        assert caplog.records[0].getMessage() == "[track 3] queued"


class TestSetupLogging:

    def test_level_and_console_handler(self, restore_root_logger):
        setup_logging(level="DEBUG", colored=False)
        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1

    def test_file_handler_writes_json(self, tmp_path, restore_root_logger):
        log_file = tmp_path / "logs" / "setbreak.log"
        setup_logging(level="INFO", log_file=str(log_file), console_enabled=False)
        logging.getLogger("storage").info("committed")
        for handler in restore_root_logger.handlers:
            handler.flush()
        line = log_file.read_text().strip().splitlines()[-1]
        assert json.loads(line)["message"] == "committed"

    def test_quiets_noisy_libraries(self, restore_root_logger):
        setup_logging(level="DEBUG", console_enabled=False)
        assert logging.getLogger("numba").level == logging.WARNING
