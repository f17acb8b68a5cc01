"""Trace sink of a pipe.

A trace has three channels: control messages (a logger), the bytes written
to connection A (``a2b``) and the bytes written to connection B (``b2a``).
"""

import contextlib
import dataclasses
import datetime
import logging
import os
from pathlib import Path
from typing import BinaryIO, Protocol


TRACE_FILENAME_FMT = "mapipe-trace-<date>-<pid>-<direction>"
TRACE_FILENAME_DATE_FMT = "%Y-%m-%d-%H:%M:%SZ"


class Writable(Protocol):
    def write(self, data: bytes) -> int | None: ...


class Discard:
    def write(self, data: bytes) -> int:
        return len(data)


DISCARD = Discard()


def _null_control() -> logging.Logger:
    logger = logging.getLogger("mapipe.control.null")
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


@dataclasses.dataclass(slots=True)
class Trace:
    control: logging.Logger = dataclasses.field(default_factory=_null_control)
    a2b: Writable = DISCARD
    b2a: Writable = DISCARD


class PrefixWriter:
    """Writes ``prefix`` in front of every chunk written to ``stream``."""

    def __init__(self, stream: BinaryIO, prefix: str):
        self.stream = stream
        self.prefix = prefix.encode()

    def write(self, data: bytes) -> int:
        n = self.stream.write(self.prefix + data)
        self.stream.flush()
        if n is None:
            return len(data)
        # Report only the caller's bytes.
        return max(n - len(self.prefix), 0)


def trace_filenames(
    now: datetime.datetime | None = None, pid: int | None = None
) -> tuple[str, str, str]:
    """Returns the a2b, b2a and ctl trace file names."""

    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    if pid is None:
        pid = os.getpid()

    name = TRACE_FILENAME_FMT.replace("<date>", now.strftime(TRACE_FILENAME_DATE_FMT))
    name = name.replace("<pid>", str(pid))
    return (
        name.replace("<direction>", "a2b"),
        name.replace("<direction>", "b2a"),
        name.replace("<direction>", "ctl"),
    )


def open_trace_files(trace: Trace, directory: str | Path, stack: contextlib.ExitStack):
    """Mirrors ``trace`` into three new files under ``directory``.

    The payload channels are replaced by the files and the control channel
    gets an extra file handler. Files are closed when ``stack`` is closed.
    """

    directory = Path(directory)
    directory.mkdir(mode=0o755, parents=True, exist_ok=True)

    a2b_name, b2a_name, ctl_name = trace_filenames()
    trace.a2b = stack.enter_context(open(directory / a2b_name, "wb"))
    trace.b2a = stack.enter_context(open(directory / b2a_name, "wb"))

    handler = logging.FileHandler(directory / ctl_name)
    handler.setFormatter(logging.Formatter(fmt="%(message)s"))
    trace.control.addHandler(handler)

    def remove_handler():
        trace.control.removeHandler(handler)
        handler.close()

    stack.callback(remove_handler)
