"""Tests for library logging setup."""

import logging
import sys
from collections.abc import Iterator

import pytest

from metal_harness._logging import LIBRARY_LOGGER_NAME, _ContextFormatter, _QueueingHandler, configure_logging


def _record(msg: str, **extra: object) -> logging.LogRecord:
    record = logging.makeLogRecord(
        {"name": "metal_harness.pxe", "levelno": logging.INFO, "levelname": "INFO", "msg": msg}
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestContextFormatter:
    def test_plain_message(self) -> None:
        text = _ContextFormatter().format(_record("PXE install staged"))
        assert text.endswith("metal_harness.pxe - PXE install staged")

    def test_extra_rendered_sorted(self) -> None:
        text = _ContextFormatter().format(_record("Machine started", ssh_address="127.0.0.1:2222", machine_id="m1"))
        assert text.endswith("Machine started machine_id=m1 ssh_address=127.0.0.1:2222")

    def test_traceback_after_context(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = _record("failed", machine_id="m1")
            record.exc_info = sys.exc_info()
        first, _, rest = _ContextFormatter().format(record).partition("\n")
        assert first.endswith("failed machine_id=m1")
        assert "ValueError: boom" in rest


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def restore_logger(self) -> Iterator[None]:
        lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
        handlers, level = list(lib_logger.handlers), lib_logger.level
        yield
        for handler in lib_logger.handlers:
            if handler not in handlers:
                lib_logger.removeHandler(handler)
                handler.close()
        lib_logger.setLevel(level)

    def test_idempotent(self) -> None:
        configure_logging(level="DEBUG")
        configure_logging(level="DEBUG")
        lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
        assert sum(isinstance(h, _QueueingHandler) for h in lib_logger.handlers) == 1
        assert lib_logger.level == logging.DEBUG

    def test_quiet_wins(self) -> None:
        configure_logging(level=logging.DEBUG, quiet=True)
        assert logging.getLogger(LIBRARY_LOGGER_NAME).level == logging.ERROR
