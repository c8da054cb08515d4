"""Allocation event log and diagnostic logging setup.

The event log is an optional append-only file (``log`` in the config) with
one line per store change::

    2026-01-02T15:04:05Z ALLOC_ADD port=3001 dir=/home/u/project name=main

Diagnostic messages from the module loggers go to stderr only when
``--verbose`` is given.
"""

import logging
import sys
import time
from pathlib import Path

logger = logging.getLogger(__name__)

ALLOC_ADD = "ALLOC_ADD"
ALLOC_UPDATE = "ALLOC_UPDATE"
ALLOC_LOCK = "ALLOC_LOCK"
ALLOC_DELETE = "ALLOC_DELETE"
ALLOC_DELETE_ALL = "ALLOC_DELETE_ALL"
ALLOC_EXPIRE = "ALLOC_EXPIRE"
ALLOC_EXTERNAL = "ALLOC_EXTERNAL"
ALLOC_REFRESH = "ALLOC_REFRESH"

PACKAGE_LOGGER = "port_selector"
EVENT_LOGGER = "port_selector.events"

_events_logger = logging.getLogger(EVENT_LOGGER)
_events_logger.propagate = False
_events_logger.setLevel(logging.INFO)


class EventFormatter(logging.Formatter):
    """Formats event records as ``<RFC3339 UTC> <EVENT> key=value ...``."""

    converter = time.gmtime

    def __init__(self):
        super().__init__(fmt="%(asctime)s %(message)s", datefmt="%Y-%m-%dT%H:%M:%SZ")

    def format(self, record: logging.LogRecord) -> str:
        fields = getattr(record, "fields", None) or {}
        msg = super().format(record)
        if fields:
            msg += " " + " ".join(f"{key}={_quote(value)}" for key, value in fields.items())
        return msg


def _quote(value: object) -> str:
    text = str(value)
    if text == "" or any(c.isspace() for c in text):
        return '"' + text.replace('"', '\\"') + '"'
    return text


class EventLog:
    """Writes allocation events to a file, or nowhere when no path is set.

    Events are queued by :meth:`log` and only reach the file on
    :meth:`flush`, which callers run once the store has been saved; a
    failed invocation calls :meth:`discard` instead. All instances share the
    ``port_selector.events`` logger, each attaching its own file handler
    only while flushing.
    """

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path).expanduser() if path else None
        self._handler: logging.Handler | None = None
        self._pending: list[tuple[str, dict]] = []

        if self.path is None:
            return
        if not self.path.parent.is_dir():
            logger.warning("log directory does not exist: %s", self.path.parent)
            self.path = None
            return
        self._handler = logging.FileHandler(self.path, encoding="utf-8", delay=True)
        self._handler.setFormatter(EventFormatter())

    @property
    def enabled(self) -> bool:
        return self._handler is not None

    @property
    def pending(self) -> int:
        return len(self._pending)

    def log(self, event: str, **fields) -> None:
        """Queue ``event`` with its ``key=value`` fields, if enabled."""
        if self._handler is None:
            return
        self._pending.append((event, fields))

    def flush(self) -> None:
        """Append every queued event to the file."""
        pending, self._pending = self._pending, []
        if self._handler is None or not pending:
            return
        _events_logger.addHandler(self._handler)
        try:
            for event, fields in pending:
                _events_logger.info(event, extra={"fields": fields})
        finally:
            _events_logger.removeHandler(self._handler)

    def discard(self) -> None:
        """Drop queued events describing changes that were not saved."""
        if self._pending:
            logger.debug("discarding %d unsaved events", len(self._pending))
        self._pending = []

    def close(self) -> None:
        """Release the file; events still queued are discarded."""
        self.discard()
        if self._handler is not None:
            self._handler.close()
            self._handler = None


class StderrHandler(logging.StreamHandler):
    """Diagnostics handler installed by :func:`setup_logging`."""

    def __init__(self, verbose: bool):
        super().__init__(sys.stderr)
        if verbose:
            self.setLevel(logging.DEBUG)
            self.setFormatter(logging.Formatter("[DEBUG] %(name)s: %(message)s"))
        else:
            self.setLevel(logging.WARNING)
            self.setFormatter(logging.Formatter("warning: %(message)s"))


def setup_logging(verbose: bool = False) -> None:
    """Send package warnings, and with ``verbose`` debug output, to stderr."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        if isinstance(handler, StderrHandler):
            package_logger.removeHandler(handler)

    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    package_logger.addHandler(StderrHandler(verbose))
