"""Append-only price log, one file per 15-minute market slot.

File layout: ``<log_dir>/monitor_YYYY-MM-DD_HH-MM.log``.

Once :meth:`MonitorLog.start` has been called, price lines and bot log
records are queued and written by a ``QueueListener`` thread, so the poll
loop never waits on the disk. Without it, writes happen inline.

Usage::

    monitor_log = MonitorLog("logs")
    logging.getLogger("updown_arb").addHandler(monitor_log.start())
    monitor_log.append(line, snapshot.fetched_at)
    ...
    monitor_log.stop()
"""

from __future__ import annotations

import logging
import queue
from datetime import datetime
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path

from updown_arb.market_slot import slot_key

LOGGER = logging.getLogger(__name__)


class MonitorLog:
    def __init__(self, log_dir: str | Path = "logs") -> None:
        self._log_dir = Path(log_dir)
        self._queue: queue.SimpleQueue | None = None
        self._listener: QueueListener | None = None

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    @property
    def running(self) -> bool:
        return self._listener is not None

    def path_for(self, at: datetime) -> Path:
        return self._log_dir / f"monitor_{slot_key(at)}.log"

    # ------------------------------------------------------------------
    # Background writer
    # ------------------------------------------------------------------

    def start(self) -> QueueHandler:
        """Starts the writer thread. Returns a handler that feeds it log records."""
        if self._listener is None:
            self._queue = queue.SimpleQueue()
            self._listener = QueueListener(self._queue, SlotLogHandler(self))
            self._listener.start()
        return QueueHandler(self._queue)

    def stop(self) -> None:
        """Writes everything still queued, then joins the writer thread."""
        if self._listener is None:
            return
        self._listener.stop()
        self._listener = None
        self._queue = None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, line: str, at: datetime) -> None:
        """Appends ``line`` to the file of ``at``'s slot. Errors are logged, not raised."""
        if self._queue is not None:
            self._queue.put_nowait(logging.makeLogRecord({"msg": line, "slot_at": at}))
            return
        self.append_now(line, at)

    def append_now(self, line: str, at: datetime) -> None:
        try:
            self.write(line, at)
        except OSError as exc:
            LOGGER.error("monitor log append failed: %s", exc)

    def append_with_timestamp(self, message: str, at: datetime | None = None) -> None:
        at = at or datetime.now().astimezone()
        self.append(f"[{at.isoformat()}] {message}", at)

    def write(self, line: str, at: datetime) -> None:
        self._log_dir.mkdir(parents=True, exist_ok=True)
        with self.path_for(at).open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")


class SlotLogHandler(logging.Handler):
    """Routes log records into the slot file matching their creation time.

    Records carrying ``slot_at`` are price lines queued by
    :meth:`MonitorLog.append` and are written verbatim.
    """

    def __init__(self, monitor_log: MonitorLog, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._monitor_log = monitor_log

    def emit(self, record: logging.LogRecord) -> None:
        slot_at = getattr(record, "slot_at", None)
        if slot_at is not None:
            self._monitor_log.append_now(record.getMessage(), slot_at)
            return
        try:
            at = datetime.fromtimestamp(record.created).astimezone()
            message = self.format(record)
            self._monitor_log.write(f"[{at.isoformat()}] {message}", at)
        except Exception:
            self.handleError(record)
