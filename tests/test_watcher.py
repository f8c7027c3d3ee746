import asyncio
import contextlib
import json
import socket
from dataclasses import dataclass, field

import aiohttp
import pytest

from jobwatch import watcher
from jobwatch.config import Delay, TaskConfig, WatcherConfig
from jobwatch.status import ResultKind, TaskLabel, WatcherAppContext
from jobwatch.watcher import (
    AppBuilder,
    Heartbeat,
    WatchedTask,
    WatchedTaskOutput,
    WatcherError,
)


class _Context(WatcherAppContext):
    def __init__(self, tasks):
        self._config = WatcherConfig(retries=0, delay_between_retries=0, tasks=tasks)

    def title(self):
        return "Test"

    def environment(self):
        return "test"

    def build_version(self):
        return None

    def live_since(self):
        from datetime import datetime, timezone

        return datetime.now(timezone.utc)

    def watcher_config(self):
        return self._config

    def triggers_alert(self, label, selected_label):
        return True

    def show_output(self, label):
        return False


def _task_config(retries=None):
    return TaskConfig(delay=Delay.no_delay(), retries=retries, delay_between_retries=0)


@dataclass
class _Scripted(WatchedTask):
    outcomes: list
    reached: asyncio.Event = field(default_factory=asyncio.Event)
    heartbeats: list = field(default_factory=list)
    calls: int = 0

    async def run_single(self, app, heartbeat):
        self.calls += 1
        self.heartbeats.append(heartbeat)
        if self.calls > len(self.outcomes):
            self.reached.set()
            await asyncio.Event().wait()
        outcome = self.outcomes[self.calls - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@contextlib.asynccontextmanager
async def _serving(builder):
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen()
        port = sock.getsockname()[1]
        runner = asyncio.create_task(builder.wait(sock))
        try:
            yield port
        finally:
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner


async def _run_script(outcomes, retries=None):
    label = TaskLabel("job")
    builder = AppBuilder(_Context({"job": _task_config(retries)}))
    task = _Scripted(outcomes)
    builder.watch_periodic(label, task)
    async with _serving(builder):
        await asyncio.wait_for(task.reached.wait(), 5)
        status = builder.statuses().statuses[label]
    return status, task, builder


def test_output_defaults_and_modifiers():
    base = WatchedTaskOutput("done")
    assert (base.skip_delay, base.suppress, base.error, base.expire_alert) == (
        False,
        False,
        False,
        None,
    )
    assert base.without_delay().skip_delay is True
    assert base.as_error().error is True
    assert base.as_error().message == "done"
    assert base.with_expiry(5).expire_alert[0] == 5.0


def test_missing_config_is_rejected():
    builder = AppBuilder(_Context({}))
    with pytest.raises(WatcherError, match="must have a config: absent"):
        builder.watch_periodic(TaskLabel("absent"), _Scripted([]))


def test_duplicate_label_is_rejected():
    builder = AppBuilder(_Context({"job": _task_config()}))
    builder.watch_periodic(TaskLabel("job"), _Scripted([]))
    with pytest.raises(WatcherError, match="Two periodic tasks"):
        builder.watch_periodic(TaskLabel("job"), _Scripted([]))


def test_registered_task_starts_not_yet_run():
    builder = AppBuilder(_Context({"job": _task_config()}))
    builder.watch_periodic(TaskLabel("job"), _Scripted([]))
    status = builder.statuses().statuses[TaskLabel("job")]
    assert status.last_result.value.kind is ResultKind.NOT_YET_RUN
    assert status.counts.total() == 0


@pytest.mark.asyncio
async def test_successful_runs_are_counted():
    outcomes = [WatchedTaskOutput("first"), WatchedTaskOutput("second")]
    status, task, _ = await _run_script(outcomes)
    assert status.last_result.value.kind is ResultKind.OK
    assert status.last_result.value.message == "second"
    assert status.counts.successes == len(outcomes)
    assert status.current_run_started is not None
    assert status.last_run_seconds == 0


@pytest.mark.asyncio
async def test_first_failure_is_reported_without_retry():
    status, _, _ = await _run_script([RuntimeError("boom")], retries=3)
    assert status.last_result.value.kind is ResultKind.ERR
    assert status.last_result.value.message == "boom"
    assert status.counts.errors == 1
    assert status.counts.retries == 0
    assert status.last_retry_error is None


@pytest.mark.asyncio
async def test_failures_after_success_are_retried():
    outcomes = [WatchedTaskOutput("ok"), RuntimeError("boom1"), RuntimeError("boom2")]
    status, _, _ = await _run_script(outcomes, retries=3)
    assert status.last_result.value.message == "ok"
    assert status.last_retry_error.value == "boom2"
    assert status.counts.retries == 2
    assert status.counts.successes == 1


@pytest.mark.asyncio
async def test_retries_exhausted_become_error():
    outcomes = [WatchedTaskOutput("ok"), RuntimeError("e1"), RuntimeError("e2")]
    status, _, _ = await _run_script(outcomes, retries=2)
    assert status.last_result.value.kind is ResultKind.ERR
    assert status.last_result.value.message == "e2"
    assert status.last_retry_error is None
    assert status.counts.total() == len(outcomes)


@pytest.mark.asyncio
async def test_error_output_counts_as_error():
    status, _, _ = await _run_script([WatchedTaskOutput("bad").as_error()])
    assert status.last_result.value.kind is ResultKind.ERR
    assert status.last_result.value.message == "bad"
    assert status.counts.errors == 1
    assert status.counts.successes == 0


@pytest.mark.asyncio
async def test_heartbeat_shares_live_status():
    status, task, _ = await _run_script([WatchedTaskOutput("x")])
    assert task.heartbeats[-1].task_status is status
    assert task.heartbeats[-1].task_status.counts.successes == 1


@pytest.mark.asyncio
async def test_status_endpoint_served_while_waiting():
    label = TaskLabel("job")
    builder = AppBuilder(_Context({"job": _task_config()}))
    task = _Scripted([WatchedTaskOutput("served")])
    builder.watch_periodic(label, task)
    async with _serving(builder) as port:
        await asyncio.wait_for(task.reached.wait(), 5)
        async with aiohttp.ClientSession() as session:
            async with session.get(
                f"http://127.0.0.1:{port}/status/job",
                headers={"Accept": "application/json"},
            ) as response:
                code = response.status
                body = json.loads(await response.text())
    assert code == 200
    assert [entry["label"] for entry in body["statuses"]] == ["job"]


@pytest.mark.asyncio
async def test_background_failure_stops_wait():
    builder = AppBuilder(_Context({}))

    async def broken():
        raise ValueError("background broke")

    builder.watch_background(broken())
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen()
        with pytest.raises(ValueError, match="background broke"):
            await asyncio.wait_for(builder.wait(sock), 5)


@pytest.mark.asyncio
async def test_timeout_kills_slow_run(monkeypatch):
    monkeypatch.setattr(watcher, "MAX_TASK_SECONDS", 0.01)

    class Slow(WatchedTask):
        async def run_single(self, app, heartbeat):
            await asyncio.sleep(1)
            return WatchedTaskOutput("late")

    with pytest.raises(WatcherError, match="took too long"):
        await Slow().run_single_with_timeout(None, Heartbeat(None), True)


@pytest.mark.asyncio
async def test_without_timeout_result_passes_through():
    class Quick(WatchedTask):
        async def run_single(self, app, heartbeat):
            return WatchedTaskOutput(f"ran for {app}")

    output = await Quick().run_single_with_timeout("ctx", Heartbeat(None), False)
    assert output.message == "ran for ctx"