from __future__ import annotations

import datetime as dt
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Tuple

from pcapsidecar.logging_setup import NIL_ID, ExecutionContext
from pcapsidecar.scope import ExecutionScope
from pcapsidecar.tasks import Task


@dataclass
class JobRecord:
    jid: str
    name: str
    tags: Tuple[str, ...]
    scope: ExecutionScope
    tasks: Tuple[Task, ...]
    timeout: float = 0.0
    last_run: Optional[dt.datetime] = None
    context: ExecutionContext = field(init=False)

    def __post_init__(self) -> None:
        self.tasks = tuple(self.tasks)
        self.context = ExecutionContext(jid=self.jid, name=self.name, tags=tuple(self.tags), xid=NIL_ID)

    def execution(self, xid: str) -> ExecutionContext:
        return self.context.with_execution(xid)


class JobRegistry:
    """Job id -> JobRecord, safe for concurrent readers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, JobRecord] = {}

    def store(self, job: JobRecord) -> None:
        with self._lock:
            self._jobs[job.jid] = job

    def load(self, jid: str) -> Optional[JobRecord]:
        with self._lock:
            return self._jobs.get(jid)

    def remove(self, jid: str) -> Optional[JobRecord]:
        with self._lock:
            return self._jobs.pop(jid, None)

    def __contains__(self, jid: object) -> bool:
        with self._lock:
            return jid in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __iter__(self) -> Iterator[JobRecord]:
        with self._lock:
            return iter(list(self._jobs.values()))
