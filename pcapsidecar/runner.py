from __future__ import annotations

import logging
import threading
from typing import List, Sequence

from pcapsidecar.logging_setup import EMPTY_CONTEXT, ExecutionContext, execution_scope
from pcapsidecar.scope import ExecutionScope
from pcapsidecar.tasks import Task

LOGGER = logging.getLogger(__name__)

JOIN_POLL_SECONDS = 0.2


def _run_task(task: Task, scope: ExecutionScope, ctx: ExecutionContext, finished: threading.Semaphore) -> None:
    try:
        with execution_scope(ctx):
            task.engine.run(scope, list(task.sinks))
    except Exception:
        LOGGER.exception(
            "PCAP task failed task=%s",
            task.label or type(task.engine).__name__,
            extra={"category": "ERRORS", "execution": ctx},
        )
    finally:
        finished.release()


def run_tasks(
    scope: ExecutionScope,
    timeout: float,
    tasks: Sequence[Task],
    ctx: ExecutionContext = EMPTY_CONTEXT,
) -> None:
    """
    Run every task concurrently and return once all of them have stopped.

    A positive ``timeout`` bounds this run only; otherwise the run lasts until
    ``scope`` is cancelled or every engine stops by itself.
    """
    run_scope = scope.child(timeout=timeout if timeout and timeout > 0 else None)
    finished = threading.Semaphore(0)
    workers: List[threading.Thread] = []
    for idx, task in enumerate(tasks):
        worker = threading.Thread(
            target=_run_task,
            args=(task, run_scope, ctx, finished),
            name=f"pcap-task-{idx + 1}",
            daemon=True,
        )
        workers.append(worker)

    LOGGER.info(
        "starting PCAP tasks count=%s timeout_s=%s",
        len(workers),
        timeout if timeout and timeout > 0 else "-",
        extra={"category": "CAPTURE", "execution": ctx},
    )
    for worker in workers:
        worker.start()

    # Phase one: scope ended, or every task stopped by itself.
    pending = len(workers)
    while pending > 0 and not run_scope.done():
        if finished.acquire(timeout=JOIN_POLL_SECONDS):
            pending -= 1

    # Phase two: make sure every engine saw the stop and returned.
    run_scope.cancel()
    for worker in workers:
        worker.join()

    LOGGER.info(
        "execution scope ended (%s)",
        run_scope.reason if pending > 0 else "tasks finished",
        extra={"category": "CAPTURE", "execution": ctx},
    )
