"""Example application watching a leaderboard task and a second task."""

from __future__ import annotations

import argparse
import asyncio
import logging
import socket
from dataclasses import dataclass
from datetime import datetime, timezone

from jobwatch.config import Delay, TaskConfig, WatcherConfig
from jobwatch.status import TaskLabel, WatcherAppContext
from jobwatch.watcher import AppBuilder, Heartbeat, WatchedTask, WatchedTaskOutput, WatcherError


class DummyApp(WatcherAppContext):
    """Application context for the example."""

    def environment(self) -> str | None:
        return "test-env"

    def live_since(self) -> datetime:
        return datetime.now(timezone.utc)

    def watcher_config(self) -> WatcherConfig:
        config = WatcherConfig()
        config.tasks["leaderboard"] = TaskConfig(delay=Delay.constant_secs(10), out_of_date=30)
        config.tasks["task_two"] = TaskConfig(delay=Delay.constant_secs(1), out_of_date=30)
        return config

    def triggers_alert(self, label: TaskLabel, selected_label: TaskLabel | None) -> bool:
        return label.ident != "leaderboard"

    def show_output(self, label: TaskLabel) -> bool:
        return True

    def build_version(self) -> str | None:
        return "dfa2test"

    def title(self) -> str:
        return "Example application Status"


@dataclass
class LeaderBoard(WatchedTask):
    """Pretends to refresh a leaderboard."""

    work_seconds: float = 1.0

    async def run_single(self, app: DummyApp, heartbeat: Heartbeat) -> WatchedTaskOutput:
        print("Executing leaderboard task...")
        await asyncio.sleep(self.work_seconds)
        print("Finished executing leaderboard task.")
        return WatchedTaskOutput("Finished executing leaderboard task")


@dataclass
class TaskTwo(WatchedTask):
    """Succeeds a few times, then fails on every run."""

    work_seconds: float = 1.0

    async def run_single(self, app: DummyApp, heartbeat: Heartbeat) -> WatchedTaskOutput:
        if heartbeat.task_status.counts.successes > 3:
            print("Skipping execution of task two")
            raise WatcherError("Skipping!")
        print("Executing task two...")
        await asyncio.sleep(self.work_seconds)
        print("Finished executing task two.")
        return WatchedTaskOutput("Finished executing task two")


async def start(host: str = "127.0.0.1", port: int = 8080) -> None:
    """Run the example watcher, serving its status page on ``host``:``port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen()
        print("Starting leaderboard watcher example.")
        print(f"The status page is served at http://{host}:{port}/status")
        builder = AppBuilder(DummyApp())
        builder.watch_periodic(TaskLabel("leaderboard"), LeaderBoard())
        builder.watch_periodic(TaskLabel("task_two"), TaskTwo())
        await builder.wait(sock)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the example leaderboard watcher.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(start(args.host, args.port))
    except KeyboardInterrupt:
        pass
    return 0