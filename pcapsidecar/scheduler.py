from __future__ import annotations

import datetime as dt
import logging
import re
import uuid
from typing import Callable, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MAX_INSTANCES, JobExecutionEvent, JobSubmissionEvent
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers import SchedulerNotRunningError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from pcapsidecar.logging_setup import EMPTY_CONTEXT, ExecutionContext, new_execution_id
from pcapsidecar.registry import JobRecord, JobRegistry
from pcapsidecar.runner import run_tasks
from pcapsidecar.scope import ExecutionScope
from pcapsidecar.tasks import Task

LOGGER = logging.getLogger(__name__)

Runner = Callable[[ExecutionScope, float, Sequence[Task], ExecutionContext], None]

UTC_NAME = "UTC"
DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}
_EVERY_RE = re.compile(r"^@every\s+(?P<amount>\d+)(?P<unit>[smh])$")
_EVERY_UNITS = {"s": "seconds", "m": "minutes", "h": "hours"}
_TZ_PREFIX_RE = re.compile(r"^(?:CRON_)?TZ=(?P<tz>\S+)\s+(?P<rest>.+)$")
# crontab numbering: 0 and 7 are Sunday.
_DOW_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


class SchedulerError(Exception):
    """The scheduler or its job could not be created."""


def resolve_timezone(name: str) -> Tuple[dt.tzinfo, str]:
    try:
        return ZoneInfo(name), name
    except (ZoneInfoNotFoundError, ValueError) as exc:
        LOGGER.error(
            "could not load timezone '%s': %s",
            name,
            exc,
            extra={"category": "ERRORS", "execution": EMPTY_CONTEXT},
        )
        return ZoneInfo(UTC_NAME), UTC_NAME


def _day_of_week(field: str) -> str:
    def name(value: str) -> str:
        if value.isdigit() and int(value) < len(_DOW_NAMES):
            return _DOW_NAMES[int(value)]
        return value

    tokens = []
    for token in field.split(","):
        body, sep, step = token.partition("/")
        if body == "0-7":
            body = "*"
        bounds = [name(value) for value in body.split("-")]
        if len(bounds) == 2 and bounds[0] == "sun" and bounds[1] != "sun" and not sep:
            # Sunday is the last weekday for APScheduler ranges.
            tokens.extend(["sun", f"mon-{bounds[1]}"] if bounds[1] != "mon" else ["sun", "mon"])
            continue
        tokens.append("-".join(bounds) + sep + step)
    return ",".join(tokens)


def cron_trigger(expression: str, tz: dt.tzinfo) -> BaseTrigger:
    """
    Build a trigger from a cron expression.

    Accepts 5 fields (minute precision), 6 fields (leading seconds), the
    ``@hourly``-style descriptors, ``@every <N>s|m|h`` and an optional
    ``TZ=<zone>`` prefix overriding ``tz``.
    """
    text = " ".join((expression or "").split())
    prefixed = _TZ_PREFIX_RE.match(text)
    if prefixed:
        tz, _ = resolve_timezone(prefixed.group("tz"))
        text = prefixed.group("rest")
    if not text:
        raise ValueError("empty cron expression")

    every = _EVERY_RE.match(text)
    if every:
        amount = int(every.group("amount"))
        if amount <= 0:
            raise ValueError(f"invalid interval in cron expression: {expression}")
        return IntervalTrigger(timezone=tz, **{_EVERY_UNITS[every.group("unit")]: amount})

    text = DESCRIPTORS.get(text.lower(), text)
    fields = text.split(" ")
    if len(fields) == 5:
        fields = ["0"] + fields
    if len(fields) != 6:
        raise ValueError(f"wrong number of fields in cron expression: {expression}")
    second, minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        second=second,
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_day_of_week(day_of_week),
        timezone=tz,
    )


def _format_time(value: Optional[dt.datetime]) -> str:
    return value.isoformat() if value is not None else "-"


class CaptureScheduler:
    """
    Cron-driven trigger for capture jobs.

    One worker slot process-wide and ``max_instances=1`` per job: a trigger
    that fires while the same job is still running is dropped, and the next
    fire time is computed as if it never happened.
    """

    def __init__(
        self,
        tz: dt.tzinfo,
        registry: JobRegistry,
        tags: Sequence[str] = (),
        runner: Runner = run_tasks,
    ) -> None:
        self.tz = tz
        self.tags = tuple(tags)
        self._registry = registry
        self._runner = runner
        try:
            self._scheduler = BackgroundScheduler(
                timezone=tz,
                executors={"default": ThreadPoolExecutor(max_workers=1)},
                job_defaults={"max_instances": 1, "coalesce": True, "misfire_grace_time": None},
            )
        except (TypeError, ValueError) as exc:
            raise SchedulerError(f"failed to create scheduler: {exc}") from exc
        self._scheduler.add_listener(self._on_skipped, EVENT_JOB_MAX_INSTANCES)
        self._scheduler.add_listener(self._on_error, EVENT_JOB_ERROR)

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def add_job(
        self,
        name: str,
        cron_exp: str,
        tasks: Sequence[Task],
        scope: ExecutionScope,
        timeout: float = 0.0,
    ) -> JobRecord:
        jid = str(uuid.uuid4())
        try:
            trigger = cron_trigger(cron_exp, self.tz)
            self._scheduler.add_job(
                self._execute,
                trigger=trigger,
                args=[jid],
                id=jid,
                name=name,
                max_instances=1,
                coalesce=True,
            )
        except (TypeError, ValueError, LookupError) as exc:
            raise SchedulerError(f"failed to create scheduled job: {exc}") from exc
        job = JobRecord(jid=jid, name=name, tags=self.tags, scope=scope, tasks=tuple(tasks), timeout=timeout)
        self._registry.store(job)
        return job

    def start(self) -> None:
        self._scheduler.start()

    def next_run(self, jid: str) -> Optional[dt.datetime]:
        job = self._scheduler.get_job(jid)
        # Pending jobs get a next_run_time only once the scheduler starts.
        return getattr(job, "next_run_time", None) if job is not None else None

    def shutdown(self, jid: Optional[str] = None) -> None:
        """Stop triggering, drop the job, and wait for an in-flight execution."""
        if self._scheduler.running:
            self._scheduler.pause()
        if jid is not None:
            try:
                self._scheduler.remove_job(jid)
            except JobLookupError:
                pass
            self._registry.remove(jid)
        try:
            self._scheduler.shutdown(wait=True)
        except SchedulerNotRunningError:
            pass

    def _execute(self, jid: str) -> None:
        job = self._registry.load(jid)
        if job is None:
            LOGGER.error(
                "job[id:%s] not found",
                jid,
                extra={"category": "ERRORS", "execution": EMPTY_CONTEXT},
            )
            return
        if job.scope.done():
            # Stopping: the scheduler is about to be paused and shut down.
            return

        ctx = job.execution(new_execution_id())
        LOGGER.info(
            "execution started ( last execution: %s )",
            _format_time(job.last_run),
            extra={"category": "SCHEDULER", "execution": ctx},
        )
        job.last_run = dt.datetime.now(tz=self.tz)
        try:
            self._runner(job.scope, job.timeout, job.tasks, ctx)
        finally:
            LOGGER.info("execution complete", extra={"category": "SCHEDULER", "execution": ctx})
            LOGGER.info(
                "next execution: %s",
                _format_time(self.next_run(jid)),
                extra={"category": "SCHEDULER", "execution": ctx},
            )

    def _on_skipped(self, event: JobSubmissionEvent) -> None:
        job = self._registry.load(event.job_id)
        LOGGER.info(
            "execution skipped: previous execution still running ( scheduled: %s )",
            ", ".join(_format_time(ts) for ts in event.scheduled_run_times),
            extra={"category": "SCHEDULER", "execution": job.context if job else EMPTY_CONTEXT},
        )

    def _on_error(self, event: JobExecutionEvent) -> None:
        job = self._registry.load(event.job_id)
        LOGGER.error(
            "execution failed: %s",
            event.exception,
            extra={"category": "ERRORS", "execution": job.context if job else EMPTY_CONTEXT},
        )
