from __future__ import annotations

import datetime as dt
import json
import logging
import sys
import threading
import time
from pathlib import Path
from typing import IO, Any, Dict, Optional
from zoneinfo import ZoneInfo

from pcapsidecar.capture.base import RecordSink, SinkError
from pcapsidecar.logging_setup import get_execution
from pcapsidecar.utils import ensure_dir

LOGGER = logging.getLogger(__name__)


class RotatingJsonFileSink(RecordSink):
    """
    JSON-lines writer rotated every ``interval`` seconds.

    ``output`` is a strftime template rendered with the wall clock of
    ``timezone`` each time a new file is opened; a file is only opened once a
    record arrives. ``close`` ends the current file only: the sink is reused by
    every execution of a scheduled job, and the next record opens a new file.
    """

    def __init__(self, output: str, extension: str, timezone: str = "UTC", interval: int = 60) -> None:
        if interval <= 0:
            raise SinkError(f"invalid rotation interval: {interval}")
        try:
            self._tz = ZoneInfo(timezone)
        except (ValueError, KeyError) as exc:
            raise SinkError(f"invalid timezone '{timezone}': {exc}") from exc
        self.output = output
        self.extension = extension.lstrip(".")
        self.interval = int(interval)
        try:
            ensure_dir(Path(output).parent)
        except OSError as exc:
            raise SinkError(f"cannot create output directory for {output}: {exc}") from exc
        self._lock = threading.Lock()
        self._fh: Optional[IO[str]] = None
        self._current_path: Optional[Path] = None
        self._opened_monotonic = 0.0

    @property
    def current_path(self) -> Optional[Path]:
        return self._current_path

    def _render_path(self) -> Path:
        now = dt.datetime.now(tz=self._tz)
        return Path(f"{now.strftime(self.output)}.{self.extension}")

    def _open_next(self) -> IO[str]:
        path = self._render_path()
        fh = open(path, "a", encoding="utf-8")
        self._fh = fh
        self._current_path = path
        self._opened_monotonic = time.monotonic()
        LOGGER.info(
            "opened JSON capture file=%s",
            path,
            extra={"category": "CAPTURE", "execution": get_execution()},
        )
        return fh

    def _writer(self) -> IO[str]:
        fh = self._fh
        if fh is None:
            return self._open_next()
        if (time.monotonic() - self._opened_monotonic) < self.interval:
            return fh
        previous = self._current_path
        fh.close()
        self._fh = None
        fh = self._open_next()
        LOGGER.info(
            "JSON capture file rotated previous_file=%s next_file=%s",
            previous.name if previous else "-",
            self._current_path.name if self._current_path else "-",
            extra={"category": "CAPTURE", "execution": get_execution()},
        )
        return fh

    def accept(self, record: Dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False, default=str)
        with self._lock:
            fh = self._writer()
            fh.write(line + "\n")
            fh.flush()

    def close(self) -> None:
        with self._lock:
            if self._fh is None:
                return
            self._fh.close()
            self._fh = None
        LOGGER.debug(
            "closed JSON capture file=%s",
            self._current_path,
            extra={"category": "CAPTURE", "execution": get_execution()},
        )


class StdoutSink(RecordSink):
    """Mirrors decoded records to standard output, one JSON object per line."""

    def __init__(self, stream: Optional[IO[str]] = None) -> None:
        self._stream = stream if stream is not None else sys.stdout
        writable = getattr(self._stream, "writable", None)
        if getattr(self._stream, "closed", False) or (callable(writable) and not writable()):
            raise SinkError("standard output is not writable")
        self._lock = threading.Lock()

    def accept(self, record: Dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False, default=str)
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()

    def close(self) -> None:
        with self._lock:
            if not getattr(self._stream, "closed", False):
                self._stream.flush()
