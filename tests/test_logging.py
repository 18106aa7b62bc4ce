"""Tests for MachineFormatter and configure_logging()."""

import logging
from collections.abc import Iterator

import pytest

from vm_test_driver._logging import LIBRARY_LOGGER_NAME, MachineFormatter, configure_logging


def _record(msg: str, **extra: object) -> logging.LogRecord:
    return logging.makeLogRecord(
        {"name": "vm_test_driver.machine", "levelno": logging.INFO, "levelname": "INFO", "msg": msg, **extra}
    )


class TestMachineFormatter:
    def test_extras_rendered_after_message(self) -> None:
        text = MachineFormatter().format(_record("VM exited", machine="web", exit_code=0))
        assert text.endswith("vm_test_driver.machine - VM exited [machine=web exit_code=0]")

    def test_plain_record_unchanged(self) -> None:
        assert MachineFormatter().format(_record("hello")).endswith(" - hello")

    @pytest.mark.parametrize("msg", ["web# ===UP===", "web: connected"])
    def test_machine_tag_omitted_when_message_names_it(self, msg: str) -> None:
        text = MachineFormatter().format(_record(msg, machine="web", output="===UP==="))
        assert text.endswith(f" - {msg}")

    def test_other_machine_still_tagged(self) -> None:
        text = MachineFormatter().format(_record("webserver# boot", machine="web"))
        assert text.endswith("[machine=web]")


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def _restore(self) -> Iterator[logging.Logger]:
        lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
        handlers, level = list(lib_logger.handlers), lib_logger.level
        yield lib_logger
        for handler in lib_logger.handlers:
            if handler not in handlers:
                lib_logger.removeHandler(handler)
                handler.close()
        lib_logger.setLevel(level)

    def test_idempotent(self) -> None:
        lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
        before = len(lib_logger.handlers)
        configure_logging(level="INFO")
        configure_logging(level="INFO")
        assert len(lib_logger.handlers) == before + 1

    def test_quiet_wins_over_level(self) -> None:
        configure_logging(level="DEBUG", quiet=True)
        assert logging.getLogger(LIBRARY_LOGGER_NAME).level == logging.ERROR

    def test_level(self) -> None:
        configure_logging(level="WARNING")
        assert logging.getLogger(LIBRARY_LOGGER_NAME).level == logging.WARNING
