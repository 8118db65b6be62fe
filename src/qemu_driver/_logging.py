"""Logging for qemu-driver.

The ``qemu_driver`` logger carries a NullHandler only; embedding tools
decide where records go. ``QEMU_DRIVER_LOG_LEVEL`` sets its level at
import time, and the CLI calls configure_logging().

Modules attach structured context with ``extra=``::

    logger.debug("Allocated forward ports", extra={"machine": "dev", "ssh_port": 40022})

The CLI formatter renders that context after the message:

    DEBUG [2026-02-25 10:02:54] qemu_driver.driver - Allocated forward ports machine=dev ssh_port=40022

Emission never blocks a lifecycle coroutine: records go into a bounded
queue drained by a QueueListener thread that writes with click.echo(err=True).
Records arriving while the queue is full are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "qemu_driver"

_lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
_lib_logger.addHandler(logging.NullHandler())

_env_level = logging.getLevelNamesMapping().get(os.environ.get("QEMU_DRIVER_LOG_LEVEL", "").strip().upper())
if _env_level:
    _lib_logger.setLevel(_env_level)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_QUEUE_CAPACITY = 1024

# Attributes every LogRecord has; anything else came in through ``extra=``.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime", "taskName"}


class _ContextFormatter(logging.Formatter):
    """Standard line plus ``key=value`` pairs for each ``extra`` field."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        if not context:
            return line
        pairs = " ".join(f"{k}={v}" for k, v in context.items())
        if "\n" in line:  # keep tracebacks below the context
            head, _, tail = line.partition("\n")
            return f"{head} {pairs}\n{tail}"
        return f"{line} {pairs}"


class _StderrHandler(logging.Handler):
    """Writes on the listener thread; errors and warnings in color, the rest dim."""

    _STYLES = {logging.ERROR: {"fg": "red"}, logging.WARNING: {"fg": "yellow"}}

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(_ContextFormatter(fmt=_FMT, datefmt=_DATEFMT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            style = self._STYLES.get(min(record.levelno, logging.ERROR), {"dim": True})
            click.echo(click.style(self.format(record), **style), err=True)
        except BlockingIOError:
            pass  # stderr full
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedStderrHandler(logging.handlers.QueueHandler):
    """Enqueues without blocking; a listener thread owns the stderr writes."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _StderrHandler())
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        return record  # same process, formatting happens on the listener

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``qemu_driver`` hierarchy."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send library logs to stderr. Safe to call more than once.

    Args:
        level: Log level name or number; overrides QEMU_DRIVER_LOG_LEVEL.
        quiet: Only show errors. Wins over ``level``.
    """
    if not any(isinstance(h, _QueuedStderrHandler) for h in _lib_logger.handlers):
        _lib_logger.addHandler(_QueuedStderrHandler())

    if quiet:
        _lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        _lib_logger.setLevel(level)
