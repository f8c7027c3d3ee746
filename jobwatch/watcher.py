"""Running watched tasks in the background and recording their status."""

from __future__ import annotations

import abc
import asyncio
import dataclasses
import logging
import socket
import time
from collections.abc import Coroutine
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from jobwatch.config import TaskConfig, WatcherConfig
from jobwatch.rest_api import start_rest_api
from jobwatch.status import (
    TaskCounts,
    TaskError,
    TaskLabel,
    TaskResult,
    TaskResultValue,
    TaskStatus,
    TaskStatuses,
    WatcherAppContext,
)

logger = logging.getLogger(__name__)

MAX_TASK_SECONDS = 180


class WatcherError(RuntimeError):
    """Raised when the watcher is misconfigured or a watched job fails."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _describe_error(err: BaseException) -> str:
    """Error message followed by the chain of its causes."""
    message = str(err) or type(err).__name__
    causes = []
    cause = err.__cause__
    while cause is not None:
        causes.append(str(cause) or type(cause).__name__)
        cause = cause.__cause__
    if not causes:
        return message
    chain = "\n".join(f"    {index}: {text}" for index, text in enumerate(causes))
    return f"{message}\n\nCaused by:\n{chain}"


@dataclass(frozen=True)
class WatchedTaskOutput:
    """What a successful run of a task reports.

    ``skip_delay`` starts the next run at once; ``suppress`` keeps the previous
    result; ``expire_alert`` is a pair of (seconds, monotonic start) after which
    an error result stops alerting; ``error`` marks the message as an error.
    """

    message: str
    skip_delay: bool = False
    suppress: bool = False
    expire_alert: tuple[float, float] | None = None
    error: bool = False

    def with_expiry(self, seconds: float) -> WatchedTaskOutput:
        """Stop alerting on this result once ``seconds`` have passed."""
        return dataclasses.replace(self, expire_alert=(float(seconds), time.monotonic()))

    def without_delay(self) -> WatchedTaskOutput:
        """Run the task again immediately instead of waiting."""
        return dataclasses.replace(self, skip_delay=True)

    def as_error(self) -> WatchedTaskOutput:
        """Record the message as an error result."""
        return dataclasses.replace(self, error=True)


@dataclass(frozen=True)
class Heartbeat:
    """Handle a running task uses to look at its own live status."""

    task_status: TaskStatus


class WatchedTask(abc.ABC):
    """A unit of work run repeatedly by the watcher."""

    @abc.abstractmethod
    async def run_single(self, app: Any, heartbeat: Heartbeat) -> WatchedTaskOutput:
        """Perform one run and describe its outcome; raise on failure."""

    async def run_single_with_timeout(
        self, app: Any, heartbeat: Heartbeat, should_timeout: bool
    ) -> WatchedTaskOutput:
        """Perform one run, giving up after ``MAX_TASK_SECONDS`` when asked to."""
        if not should_timeout:
            return await self.run_single(app, heartbeat)
        try:
            return await asyncio.wait_for(
                self.run_single(app, heartbeat), timeout=MAX_TASK_SECONDS
            )
        except asyncio.TimeoutError:
            raise WatcherError(
                "Running a single task took too long, killing. "
                "Elapsed time: deadline has elapsed"
            ) from None


@dataclass
class _PeriodicJob:
    label: TaskLabel
    task: WatchedTask
    config: TaskConfig
    status: TaskStatus
    app: WatcherAppContext

    def _log(self, message: str, *, failed: bool) -> None:
        if self.app.show_output(self.label):
            logger.log(logging.WARNING if failed else logging.INFO, message)
        else:
            logger.debug(message)

    def _finish_run(self) -> None:
        started = self.status.current_run_started
        self.status.last_run_seconds = (
            None if started is None else int((_now() - started).total_seconds())
        )
        self.status.current_run_started = None

    def _record_success(self, output: WatchedTaskOutput, old_counts: TaskCounts) -> None:
        self._log(f"{self.label}: Success! {output.message}", failed=False)
        status = self.status
        self._finish_run()
        if output.suppress:
            value = status.last_result.value
        elif output.error:
            value = TaskResultValue.err(output.message)
        else:
            value = TaskResultValue.ok(output.message)
        status.last_result = TaskResult(value, _now())
        status.last_retry_error = None
        status.counts = dataclasses.replace(
            old_counts,
            successes=old_counts.successes + (0 if output.error else 1),
            errors=old_counts.errors + (1 if output.error else 0),
        )
        status.expire_last_result = output.expire_alert

    def _record_failure(self, err: Exception, retries: int, old_counts: TaskCounts) -> int:
        self._log(f"{self.label}: Error: {err!r}", failed=True)
        status = self.status
        max_retries = (
            self.config.retries
            if self.config.retries is not None
            else self.app.watcher_config().retries
        )
        message = _describe_error(err)
        # Report the first failure at once so the status page is never misleadingly green.
        give_up = retries >= max_retries or status.counts.total() == 0
        self._finish_run()
        status.expire_last_result = None
        if give_up:
            status.last_result = TaskResult(TaskResultValue.err(message), _now())
            status.last_retry_error = None
            status.counts = dataclasses.replace(old_counts, errors=old_counts.errors + 1)
            return 0
        status.last_retry_error = TaskError(message, _now())
        status.counts = dataclasses.replace(old_counts, retries=old_counts.retries + 1)
        return retries

    def _retry_delay(self) -> float:
        if self.config.delay_between_retries is not None:
            return float(self.config.delay_between_retries)
        return float(self.app.watcher_config().delay_between_retries)

    async def run(self) -> None:
        retries = 0
        should_timeout = self.status.out_of_date is not None
        while True:
            self.status.current_run_started = _now()
            old_counts = self.status.counts
            try:
                output = await self.task.run_single_with_timeout(
                    self.app, Heartbeat(self.status), should_timeout
                )
            except Exception as err:
                retries = self._record_failure(err, retries + 1, old_counts)
                await asyncio.sleep(self._retry_delay())
            else:
                self._record_success(output, old_counts)
                retries = 0
                delay = 0.0 if output.skip_delay else self.config.delay.sample_seconds()
                await asyncio.sleep(delay)


async def _labelled(label: TaskLabel, job: Coroutine[Any, Any, None]) -> None:
    try:
        await job
    except Exception as exc:
        raise WatcherError(f"Failure while running: {label}") from exc


@dataclass
class AppBuilder:
    """Collects watched tasks for an application and runs them with the status server."""

    app: WatcherAppContext
    _statuses: dict[TaskLabel, TaskStatus] = field(default_factory=dict, init=False)
    _jobs: list[tuple[TaskLabel, _PeriodicJob]] = field(default_factory=list, init=False)
    _background: list[Coroutine[Any, Any, Any]] = field(default_factory=list, init=False)

    def watch_background(self, coro: Coroutine[Any, Any, Any]) -> None:
        """Run a continuous background job alongside the watched tasks."""
        self._background.append(coro)

    def watch_periodic(self, label: TaskLabel, task: WatchedTask) -> None:
        """Register ``task`` to run periodically under ``label``."""
        config: WatcherConfig = self.app.watcher_config()
        task_config = config.tasks.get(label.ident)
        if task_config is None:
            raise WatcherError(f"all tasks in TaskLabel must have a config: {label.ident}")
        if label in self._statuses:
            raise WatcherError(f"Two periodic tasks with label {label.ident!r}")
        out_of_date = (
            None
            if task_config.out_of_date is None
            else timedelta_seconds(task_config.out_of_date)
        )
        status = TaskStatus(
            last_result=TaskResult(TaskResultValue.not_yet_run(), _now()),
            out_of_date=out_of_date,
        )
        self._statuses[label] = status
        self._jobs.append((label, _PeriodicJob(label, task, task_config, status, self.app)))

    def statuses(self) -> TaskStatuses:
        """Live view of the status of every registered task."""
        return TaskStatuses(self._statuses)

    async def wait(self, listener: socket.socket) -> None:
        """Serve status on ``listener`` and run every job until one of them fails."""
        coros: list[Coroutine[Any, Any, Any]] = [
            start_rest_api(self.app, self.statuses(), listener)
        ]
        coros += self._background
        coros += [_labelled(label, job.run()) for label, job in self._jobs]
        self._background = []
        self._jobs = []

        tasks = [asyncio.create_task(coro) for coro in coros]
        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for finished in done:
                    error = finished.exception()
                    if error is not None:
                        raise error
        finally:
            for running in tasks:
                running.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)


def timedelta_seconds(seconds: int):
    """A ``timedelta`` of whole ``seconds``."""
    from datetime import timedelta

    return timedelta(seconds=seconds)