from __future__ import annotations

import contextlib
import datetime as dt
import logging
import signal
import threading
from typing import Callable, Dict, Iterator, List

from pcapsidecar.config_loader import SidecarSettings, settings_summary
from pcapsidecar.devices import Device, find_devices
from pcapsidecar.logging_setup import EMPTY_CONTEXT, ExecutionContext
from pcapsidecar.registry import JobRegistry
from pcapsidecar.runner import run_tasks
from pcapsidecar.scheduler import CaptureScheduler, SchedulerError, resolve_timezone
from pcapsidecar.scope import ExecutionScope
from pcapsidecar.tasks import CaptureOptions, Task, TaskFactory

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NO_TASKS = 1
EXIT_NO_SCHEDULER = 2
EXIT_NO_JOB = 3

JOB_NAME = "tcpdump"
WAIT_POLL_SECONDS = 1.0
STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Supervisor:
    """
    Top-level driver: build tasks, run them once or on a schedule, and tear
    everything down when the process is told to stop.
    """

    def __init__(
        self,
        settings: SidecarSettings,
        device_finder: Callable[[str], List[Device]] = find_devices,
        task_factory: Callable[[CaptureOptions], TaskFactory] = TaskFactory,
        scheduler_factory: Callable[..., CaptureScheduler] = CaptureScheduler,
        runner: Callable[..., None] = run_tasks,
    ) -> None:
        self.settings = settings
        self.registry = JobRegistry()
        self.scope = ExecutionScope()
        self._device_finder = device_finder
        self._task_factory = task_factory
        self._scheduler_factory = scheduler_factory
        self._runner = runner
        self._ctx: ExecutionContext = EMPTY_CONTEXT

    def _log(self, message: str, *args: object, category: str = "LIFECYCLE") -> None:
        LOGGER.info(message, *args, extra={"category": category, "execution": self._ctx})

    def _error(self, message: str, *args: object) -> None:
        LOGGER.error(message, *args, extra={"category": "ERRORS", "execution": self._ctx})

    def stop(self) -> None:
        self.scope.cancel()

    def build_tasks(self, timezone: str) -> List[Task]:
        options = CaptureOptions.from_settings(self.settings.model_copy(update={"timezone": timezone}))
        devices = self._device_finder(self.settings.iface_pattern)
        return self._task_factory(options).build(devices)

    def run(self) -> int:
        settings = self.settings
        self._log(settings_summary(settings), category="CONFIG")

        tz, tz_name = resolve_timezone(settings.timezone)
        self._log("parsed timezone: %s", tz_name, category="CONFIG")

        tasks = self.build_tasks(tz_name)
        if not tasks:
            self._error("no PCAP tasks available")
            return EXIT_NO_TASKS

        timeout = float(settings.timeout)
        self._log("parsed timeout: %ss", settings.timeout, category="CONFIG")

        with self._signal_handlers():
            if not settings.use_cron:
                self._runner(self.scope, timeout, tasks, EMPTY_CONTEXT)
                self._log("PCAP tasks finished")
                return EXIT_OK
            return self._run_scheduled(tz, tasks, timeout)

    def _run_scheduled(self, tz: dt.tzinfo, tasks: List[Task], timeout: float) -> int:
        try:
            scheduler = self._scheduler_factory(tz, self.registry, self.settings.tags, self._runner)
        except SchedulerError as exc:
            self._error("failed to create scheduler: %s", exc)
            return EXIT_NO_SCHEDULER

        try:
            job = scheduler.add_job(JOB_NAME, self.settings.cron_exp, tasks, self.scope, timeout)
        except SchedulerError as exc:
            self._error("failed to create scheduled job: %s", exc)
            scheduler.shutdown()
            return EXIT_NO_JOB

        self._ctx = job.context
        self._log("scheduled job", category="SCHEDULER")

        scheduler.start()
        self._log("next execution: %s", scheduler.next_run(job.jid), category="SCHEDULER")

        while not self.scope.wait(WAIT_POLL_SECONDS):
            pass

        scheduler.shutdown(job.jid)
        self._log("scheduler stopped", category="SCHEDULER")
        return EXIT_OK

    def _on_signal(self, signum: int, _frame: object) -> None:
        self._log("signaled: %s", signal.Signals(signum).name)
        self.stop()

    @contextlib.contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        # Handlers can only be installed from the main thread.
        if threading.current_thread() is not threading.main_thread():
            yield
            return
        previous: Dict[int, object] = {}
        for signum in STOP_SIGNALS:
            previous[signum] = signal.signal(signum, self._on_signal)
        try:
            yield
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)  # type: ignore[arg-type]
