import logging
import os
import sys
from typing import TextIO


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(os.environ.get("MAPIPE_LOG_LEVEL", "WARN").upper())
    return logger


def get_control_logger(
    name: str = "mapipe.control",
    *,
    stream: TextIO | None = None,
    prefix: str = "",
) -> logging.Logger:
    """Returns the logger used as the control channel of a trace.

    Control lines are plain messages, one per lifecycle event. Any handler
    previously attached to the logger is replaced.

    Parameters
    ----------
    name : str
        Name of the logger.
    stream : TextIO | None
        Stream receiving the control lines, stderr if not given.
    prefix : str
        Text put in front of every line, e.g. ``"# "`` in tee mode.
    """

    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=prefix + "%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger
