from __future__ import annotations

import contextlib
import contextvars
import dataclasses
import datetime as dt
import json
import logging
import os
import sys
import uuid
from typing import IO, Iterator, Optional, Tuple

NIL_ID = str(uuid.UUID(int=0))
DEFAULT_CATEGORY = "CONFIG"
_SEVERITIES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARNING",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "FATAL",
}
_NOISY_LOGGERS = ("apscheduler", "scapy", "scapy.runtime", "scapy.loading")


@dataclasses.dataclass(frozen=True)
class ExecutionContext:
    """Identity of the job and execution a log line belongs to."""

    jid: str = NIL_ID
    name: str = ""
    tags: Tuple[str, ...] = ()
    xid: str = NIL_ID

    def with_execution(self, xid: str) -> "ExecutionContext":
        return dataclasses.replace(self, xid=xid)

    def as_job_dict(self) -> dict:
        job = {"xid": self.xid, "jid": self.jid, "name": self.name}
        return {key: value for key, value in job.items() if value}


EMPTY_CONTEXT = ExecutionContext()

# Propagated automatically within the current thread only; worker threads get
# the context passed explicitly.
_execution_var: contextvars.ContextVar[ExecutionContext] = contextvars.ContextVar(
    "execution", default=EMPTY_CONTEXT
)

def new_execution_id() -> str:
    return str(uuid.uuid4())


def get_execution() -> ExecutionContext:
    return _execution_var.get()


@contextlib.contextmanager
def execution_scope(ctx: ExecutionContext) -> Iterator[None]:
    token = _execution_var.set(ctx)
    try:
        yield
    finally:
        _execution_var.reset(token)


class ContextEnricherFilter(logging.Filter):
    """
    Ensures every LogRecord has:
      - category
      - execution (ExecutionContext)
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not getattr(record, "category", None):
            record.category = DEFAULT_CATEGORY
        if not isinstance(getattr(record, "execution", None), ExecutionContext):
            record.execution = _execution_var.get()
        return True


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, shaped for the log ingestion pipeline."""

    def __init__(self, sidecar: str = "", module: str = "") -> None:
        super().__init__()
        self.sidecar = sidecar
        self.module = module

    def format(self, record: logging.LogRecord) -> str:
        ctx = getattr(record, "execution", None)
        if not isinstance(ctx, ExecutionContext):
            ctx = EMPTY_CONTEXT
        entry = {
            "severity": _SEVERITIES.get(record.levelno, record.levelname),
            "message": record.getMessage(),
            "sidecar": self.sidecar,
            "module": self.module,
            "job": ctx.as_job_dict(),
        }
        if ctx.tags:
            entry["tags"] = list(ctx.tags)
        entry["category"] = getattr(record, "category", DEFAULT_CATEGORY)
        entry["logger"] = record.name
        entry["timestamp"] = (
            dt.datetime.fromtimestamp(record.created, tz=dt.timezone.utc).isoformat(timespec="milliseconds")
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _level_from_env(name: str, default: int) -> int:
    level_name = os.environ.get(name, "").strip().upper()
    if not level_name:
        return default
    level = getattr(logging, level_name, None)
    return level if isinstance(level, int) else default


def setup_logging(sidecar: str = "", module: str = "", stream: Optional[IO[str]] = None) -> None:
    """
    Central logging setup.

    Every record leaves the process as a single JSON line on stdout:
      {"severity", "message", "sidecar", "module", "job": {"xid", "jid", "name"}, "tags", ...}
    """
    level = _level_from_env("PCAP_LOG_LEVEL", logging.INFO)
    external_level = _level_from_env("PCAP_EXTERNAL_LIB_LOG_LEVEL", logging.WARNING)

    root_logger = logging.getLogger()

    # Avoid double-installation; still allow runtime level and identity update.
    handler = getattr(root_logger, "_pcapsidecar_handler", None)
    if handler is not None:
        root_logger.setLevel(level)
        handler.setLevel(level)
        handler.setFormatter(JsonLogFormatter(sidecar=sidecar, module=module))
        if stream is not None:
            handler.setStream(stream)
        for noisy in _NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(external_level)
        return

    root_logger.setLevel(level)
    handler = logging.StreamHandler(stream if stream is not None else sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter(sidecar=sidecar, module=module))
    handler.addFilter(ContextEnricherFilter())
    root_logger.addHandler(handler)
    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(external_level)
    root_logger._pcapsidecar_handler = handler  # type: ignore[attr-defined]
