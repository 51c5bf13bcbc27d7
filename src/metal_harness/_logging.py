"""Logging for metal-harness.

The library only ever attaches a NullHandler; test runners and scripts call
configure_logging() to get output.  Level can also be forced with
METAL_HARNESS_LOG_LEVEL (e.g. "DEBUG").

Modules log a fixed message plus structured context in `extra`:

    logger.info("PXE install staged", extra={"tftp_dir": ..., "base_url": ...})

and the console formatter renders that context as key=value pairs:

    INFO [2026-02-25 10:02:54] metal_harness.pxe - PXE install staged tftp_dir=/var/tmp/... base_url=http://...

Output goes through a bounded queue drained by a daemon thread (stdlib
QueueHandler + QueueListener), so a machine flooding the log while an install
is running never stalls the event loop on stderr.  Records are dropped when
the queue is full.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "metal_harness"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level = logging.getLevelNamesMapping().get(os.environ.get("METAL_HARNESS_LOG_LEVEL", "").strip().upper())
if _env_level:
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level)

_QUEUE_CAPACITY = 4096

# Attributes every LogRecord has; anything else came from `extra`
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_LEVEL_COLORS = {
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "red",
}


class _ContextFormatter(logging.Formatter):
    """Appends `extra` context to the message as sorted key=value pairs."""

    def __init__(self) -> None:
        super().__init__(fmt="%(levelname)s [%(asctime)s] %(name)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and not k.startswith("_")}
        if not context:
            return text
        pairs = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        head, sep, tail = text.partition("\n")  # keep tracebacks below the context
        return f"{head} {pairs}{sep}{tail}"


class _StderrHandler(logging.Handler):
    """Writes to stderr with click, colored by level (plain when not a TTY)."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(_ContextFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            color = _LEVEL_COLORS.get(record.levelno)
            msg = self.format(record)
            click.echo(click.style(msg, fg=color) if color else msg, err=True)
        except BlockingIOError:
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueueingHandler(logging.handlers.QueueHandler):
    """Hands records to a listener thread; never blocks, drops when full."""

    def __init__(self) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(records)
        self.listener = logging.handlers.QueueListener(records, _StderrHandler())
        self.listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: the default prepare() would flatten `extra` into the message
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self.listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger for a metal_harness module (pass __name__)."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send library logs to stderr.

    Idempotent: the stderr handler is installed once.

    Args:
        level: Log level (e.g. logging.DEBUG, "INFO"). Overrides METAL_HARNESS_LOG_LEVEL.
        quiet: Only errors. Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    if not any(isinstance(h, _QueueingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_QueueingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
