"""Tests for log formatting and setup."""

import json
import logging

import pytest

from kline_ingest.config.settings import LoggingConfig
from kline_ingest.utils.logging import JSONFormatter, TextFormatter, build_handler, setup_logging


def make_record(message="Fetched 10 klines", level=logging.INFO, **extra):
    record = logging.LogRecord(
        name="kline_ingest.backfill",
        level=level,
        pathname=__file__,
        lineno=10,
        msg=message,
        args=(),
        exc_info=None,
    )
    record.created = 0.0
    record.msecs = 7.0
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:

    def test_json_carries_backfill_context(self):
        record = make_record(pair="BTCUSDT", range_start=0, range_end=60_000, rows=2, service="kline-ingest")

        entry = json.loads(JSONFormatter().format(record))

        assert entry["time"] == "1970-01-01_00-00-00_007"
        assert entry["tag"] == "NFO"
        assert entry["channel"] == "kline_ingest.backfill"
        assert entry["message"] == "Fetched 10 klines"
        assert entry["pair"] == "BTCUSDT"
        assert entry["range_end"] == 60_000
        assert entry["rows"] == 2

    def test_json_ignores_unknown_attributes(self):
        entry = json.loads(JSONFormatter().format(make_record(unrelated="x")))

        assert "unrelated" not in entry

    def test_text_line_shape(self):
        line = TextFormatter().format(make_record(level=logging.ERROR))

        assert line == "[1970-01-01_00-00-00_007] [ERR] [kline_ingest.backfill] : Fetched 10 klines"

    def test_text_appends_context_without_service(self):
        record = make_record(level=logging.DEBUG, pair="ETHUSDT", page_start=120_000, service="kline-ingest")

        line = TextFormatter().format(record)

        assert "[FIN]" in line
        assert line.endswith(": Fetched 10 klines pair=ETHUSDT page_start=120000")


class TestSetupLogging:

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        for handler in root.handlers[:]:
            root.removeHandler(handler)
        for handler in handlers:
            root.addHandler(handler)
        root.setLevel(level)

    def test_installs_single_handler(self):
        handler = setup_logging(LoggingConfig(level="DEBUG", format="json"), "kline-ingest-test")

        root = logging.getLogger()
        assert root.handlers == [handler]
        assert root.level == logging.DEBUG
        assert isinstance(handler.formatter, JSONFormatter)

    def test_stamps_service_name(self):
        handler = setup_logging(LoggingConfig(), "kline-ingest-test")
        record = make_record()

        assert handler.filter(record)
        assert record.service == "kline-ingest-test"

    def test_file_destination(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        handler = build_handler("file")
        handler.close()

        assert isinstance(handler, logging.FileHandler)
        assert [p.name.startswith("log_") for p in tmp_path.iterdir()] == [True]
