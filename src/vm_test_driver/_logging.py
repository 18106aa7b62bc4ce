"""Logging for vm-test-driver.

The library only attaches a NullHandler to the `vm_test_driver` logger;
output handling is left to the application. VM_TEST_DRIVER_LOG_LEVEL sets
the library level. configure_logging() wires up stderr output for the CLI.

Every module logs with structured `extra={"machine": ..., ...}` fields.
MachineFormatter renders them after the message:

    DEBUG [2026-02-25 10:02:54] vm_test_driver.process - Sending SIGTERM to VM [machine=server pid=4242]
    INFO [2026-02-25 10:02:55] vm_test_driver.console - server# ===UP===

Console lines and driver steps already start with the machine name, so
the machine tag is omitted for them.

Records go through a bounded queue drained by a QueueListener thread. A
chatty boot console then never waits on stderr. When the queue is full,
records are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "vm_test_driver"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level = logging.getLevelNamesMapping().get(os.environ.get("VM_TEST_DRIVER_LOG_LEVEL", "").strip().upper())
if _env_level:
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"
_QUEUE_CAPACITY = 4096

# Attributes every LogRecord has; anything else came in through `extra`
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}
# Console text is already the message body
_HIDDEN_EXTRAS = frozenset({"output"})


class MachineFormatter(logging.Formatter):
    """Formatter that appends a record's `extra` fields as key=value pairs."""

    def __init__(self) -> None:
        super().__init__(fmt=_FMT, datefmt=_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        fields = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and k not in _HIDDEN_EXTRAS}

        machine = fields.get("machine")
        if machine is not None and record.getMessage().startswith((f"{machine}#", f"{machine}:")):
            del fields["machine"]

        if not fields:
            return text
        return f"{text} [{' '.join(f'{k}={v}' for k, v in fields.items())}]"


class _StderrHandler(logging.Handler):
    """Writes formatted records to stderr; INFO and below are dimmed.

    Called from the QueueListener thread only.
    """

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(MachineFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            text = self.format(record)
            if record.levelno >= logging.WARNING:
                text = click.style(text, fg="yellow" if record.levelno == logging.WARNING else "red")
            else:
                text = click.style(text, dim=True)
            click.echo(text, err=True)
        except BlockingIOError:
            pass  # stderr full, drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedStderrHandler(logging.handlers.QueueHandler):
    """Enqueues records for a listener thread that owns the stderr handler."""

    def __init__(self) -> None:
        super().__init__(queue.Queue(maxsize=_QUEUE_CAPACITY))
        self._listener = logging.handlers.QueueListener(self.queue, _StderrHandler())
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: keep args and extras for MachineFormatter
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger for a vm_test_driver module (pass __name__)."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send library logs to stderr. Idempotent.

    Args:
        level: Library log level; overrides VM_TEST_DRIVER_LOG_LEVEL.
        quiet: Only show errors. Wins over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _QueuedStderrHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_QueuedStderrHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
