"""Tests for logging setup and local address discovery."""

import json
import logging
import sys
from unittest.mock import MagicMock, patch

import pytest

from opentsdb_nozzle.config.settings import LoggingConfig
from opentsdb_nozzle.errors import LocalIPError
from opentsdb_nozzle.utils.logging import JSONFormatter, NozzleContextFilter, TextFormatter, setup_logging
from opentsdb_nozzle.utils.network import local_ip


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(message="Posted %d metrics", args=(3,), **extra):
    record = logging.LogRecord("opentsdb_nozzle.nozzle", logging.INFO, __file__, 42, message, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:

    def test_fields(self):
        entry = json.loads(JSONFormatter().format(make_record(points=3)))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "opentsdb_nozzle.nozzle"
        assert entry["message"] == "Posted 3 metrics"
        assert entry["source"].endswith(":42")
        assert entry["timestamp"].endswith("Z")
        assert entry["points"] == 3
        assert "args" not in entry
        assert "msg" not in entry

    def test_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))

        assert "ValueError: boom" in entry["exception"]


class TestTextFormatter:

    def test_line(self):
        record = make_record()
        NozzleContextFilter("opentsdb-firehose-nozzle/2").filter(record)

        line = TextFormatter(use_colors=False).format(record)

        assert line.endswith("[INFO] opentsdb-firehose-nozzle/2 opentsdb_nozzle.nozzle: Posted 3 metrics")


class TestSetupLogging:

    def test_json_to_file(self, tmp_path, restore_root_logger):
        """Test records land in the file as JSON with the nozzle identity."""
        path = tmp_path / "nozzle.log"
        setup_logging(LoggingConfig(level="DEBUG", format="json", output=str(path)), nozzle="nozzle/1", deployment="cf")

        logging.getLogger("opentsdb_nozzle.test").debug("hello", extra={"points": 7})
        for handler in restore_root_logger.handlers:
            handler.flush()

        entries = [json.loads(line) for line in path.read_text().splitlines()]
        hello = [entry for entry in entries if entry["message"] == "hello"][0]
        assert hello["nozzle"] == "nozzle/1"
        assert hello["deployment"] == "cf"
        assert hello["points"] == 7

    def test_level_and_noise(self, restore_root_logger):
        setup_logging(LoggingConfig(level="warning", format="text", output="stderr"))

        assert restore_root_logger.level == logging.WARNING
        assert len(restore_root_logger.handlers) == 1
        assert logging.getLogger("websockets").level == logging.WARNING


class TestLocalIP:

    def test_returns_outbound_address(self):
        probe = MagicMock()
        probe.__enter__.return_value = probe
        probe.getsockname.return_value = ("10.244.0.7", 50000)

        with patch("opentsdb_nozzle.utils.network.socket.socket", return_value=probe):
            assert local_ip() == "10.244.0.7"

    def test_no_route(self):
        probe = MagicMock()
        probe.__enter__.return_value = probe
        probe.connect.side_effect = OSError("Network is unreachable")

        with patch("opentsdb_nozzle.utils.network.socket.socket", return_value=probe):
            with pytest.raises(LocalIPError):
                local_ip()
