"""
Logging configuration.

Log records go through a QueueHandler so that producers on the event loop
never block on log I/O; a QueueListener thread writes them out.
"""

from __future__ import annotations

import logging
import logging.handlers
import queue
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_LEVELS = {
    "off": logging.CRITICAL + 10,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

_listener: Optional[logging.handlers.QueueListener] = None


def level_for(name: str) -> int:
    """Map a configured level name (off/error/warn/info/debug) to a logging level."""
    return _LEVELS.get(name.lower(), logging.INFO)


def configure_logging(level: str = "info", stream=None) -> logging.handlers.QueueListener:
    """
    Install a queue-backed root handler.

    Calling again replaces the previous handler and listener.

    Returns:
        The running QueueListener (stop it via shutdown_logging())
    """
    global _listener
    shutdown_logging()

    output = logging.StreamHandler(stream or sys.stderr)
    output.setFormatter(logging.Formatter(LOG_FORMAT))

    log_queue: queue.Queue = queue.Queue(-1)
    handler = logging.handlers.QueueHandler(log_queue)

    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing, logging.handlers.QueueHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level_for(level))

    _listener = logging.handlers.QueueListener(log_queue, output, respect_handler_level=False)
    _listener.start()
    return _listener


def shutdown_logging() -> None:
    """Flush and stop the background listener, if any."""
    global _listener
    if _listener is not None:
        _listener.stop()
        _listener = None
