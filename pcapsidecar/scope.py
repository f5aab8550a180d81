from __future__ import annotations

import threading
import time
from typing import List, Optional

REASON_CANCELLED = "cancelled"
REASON_DEADLINE = "deadline"


class ExecutionScope:
    """
    Cancellable, optionally deadline-bounded scope shared by capture workers.

    Cancellation flows from a scope to all of its children, never upwards.
    """

    def __init__(self, parent: Optional["ExecutionScope"] = None, timeout: Optional[float] = None) -> None:
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._children: List[ExecutionScope] = []
        self._parent = parent
        self._reason: Optional[str] = None
        self._timer: Optional[threading.Timer] = None
        self.deadline: Optional[float] = None

        if timeout is not None and timeout > 0:
            self.deadline = time.monotonic() + float(timeout)
            self._timer = threading.Timer(float(timeout), self.cancel, kwargs={"reason": REASON_DEADLINE})
            self._timer.daemon = True
            self._timer.start()

        if parent is not None:
            parent._attach(self)

    def _attach(self, child: "ExecutionScope") -> None:
        with self._lock:
            if not self._done.is_set():
                self._children.append(child)
                return
            reason = self._reason
        child.cancel(reason=reason or REASON_CANCELLED)

    def _detach(self, child: "ExecutionScope") -> None:
        with self._lock:
            try:
                self._children.remove(child)
            except ValueError:
                pass

    def child(self, timeout: Optional[float] = None) -> "ExecutionScope":
        return ExecutionScope(parent=self, timeout=timeout)

    def cancel(self, reason: str = REASON_CANCELLED) -> None:
        with self._lock:
            if self._done.is_set():
                return
            self._reason = reason
            self._done.set()
            children = list(self._children)
            self._children.clear()
            timer = self._timer
            self._timer = None
        if timer is not None:
            timer.cancel()
        for child in children:
            child.cancel(reason=reason)
        if self._parent is not None:
            self._parent._detach(self)

    @property
    def cancelled(self) -> bool:
        return self._done.is_set()

    def done(self) -> bool:
        return self._done.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the scope ends; returns True once it has."""
        return self._done.wait(timeout)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def __enter__(self) -> "ExecutionScope":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()
