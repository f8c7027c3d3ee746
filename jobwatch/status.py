"""Task status bookkeeping and rendering of status reports as HTML, JSON and text."""

from __future__ import annotations

import abc
import dataclasses
import enum
import html
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from jobwatch.config import WatcherConfig

logger = logging.getLogger(__name__)

NOT_YET_RUN_MESSAGE = "Task has not yet completed a single run"
VERY_OUT_OF_DATE = timedelta(seconds=300)

HTML_CONTENT_TYPE = "text/html; charset=utf-8"
JSON_CONTENT_TYPE = "application/json"
TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"

HTTP_OK = 200
HTTP_INTERNAL_SERVER_ERROR = 500


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _fraction(dt: datetime) -> str:
    if not dt.microsecond:
        return ""
    if dt.microsecond % 1000 == 0:
        return f".{dt.microsecond // 1000:03d}"
    return f".{dt.microsecond:06d}"


def _display_time(dt: datetime) -> str:
    """Human form of a UTC timestamp, e.g. ``2024-01-01 12:00:00 UTC``."""
    dt = _utc(dt)
    return f"{dt.strftime('%Y-%m-%d %H:%M:%S')}{_fraction(dt)} UTC"


def _rfc3339(dt: datetime) -> str:
    dt = _utc(dt)
    return f"{dt.strftime('%Y-%m-%dT%H:%M:%S')}{_fraction(dt)}Z"


def format_since(updated: datetime, now: datetime | None = None) -> str:
    """Describe how long ago ``updated`` was, followed by the timestamp itself."""
    now = _now() if now is None else _utc(now)
    stamp = _display_time(updated)
    secs = int((now - _utc(updated)).total_seconds())
    if secs < 0:
        return stamp
    if secs == 0:
        return f"just now ({stamp})"
    minutes, secs = divmod(secs, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    parts = [
        f"{number}{letter}"
        for number, letter in ((days, "d"), (hours, "h"), (minutes, "m"), (secs, "s"))
        if number > 0
    ]
    return f"{' '.join(parts)} ({stamp})"


@dataclass(frozen=True, order=True)
class TaskLabel:
    """Name identifying a watched task."""

    ident: str

    def __str__(self) -> str:
        return self.ident


class ResultKind(enum.Enum):
    """Outcome of the last completed run of a task."""

    OK = "ok"
    ERR = "err"
    NOT_YET_RUN = "not-yet-run"


@dataclass(frozen=True)
class TaskResultValue:
    """The message produced by a task run, tagged by its outcome."""

    kind: ResultKind
    message: str = ""

    @classmethod
    def ok(cls, message: str) -> TaskResultValue:
        return cls(ResultKind.OK, message)

    @classmethod
    def err(cls, message: str) -> TaskResultValue:
        return cls(ResultKind.ERR, message)

    @classmethod
    def not_yet_run(cls) -> TaskResultValue:
        return cls(ResultKind.NOT_YET_RUN)

    def as_str(self) -> str:
        if self.kind is ResultKind.NOT_YET_RUN:
            return NOT_YET_RUN_MESSAGE
        return self.message

    def to_value(self) -> str | dict[str, str]:
        if self.kind is ResultKind.NOT_YET_RUN:
            return self.kind.value
        return {self.kind.value: self.message}


@dataclass(frozen=True)
class TaskResult:
    """The last result of a task and when it was recorded."""

    value: TaskResultValue
    updated: datetime

    def since(self, now: datetime | None = None) -> str:
        return format_since(self.updated, now)

    def to_dict(self) -> dict[str, Any]:
        return {"updated": _rfc3339(self.updated)}


@dataclass(frozen=True)
class TaskError:
    """An error from a failed attempt that is being retried."""

    value: str
    updated: datetime

    def since(self, now: datetime | None = None) -> str:
        return format_since(self.updated, now)

    def to_dict(self) -> dict[str, Any]:
        return {"updated": _rfc3339(self.updated)}


@dataclass(frozen=True)
class TaskCounts:
    """How many runs of a task succeeded, were retried or failed."""

    successes: int = 0
    retries: int = 0
    errors: int = 0

    def total(self) -> int:
        return self.successes + self.retries + self.errors

    def to_dict(self) -> dict[str, int]:
        return {"successes": self.successes, "retries": self.retries, "errors": self.errors}


class OutOfDate(enum.Enum):
    """How far a running task is past its allowed run time."""

    NOT = "not"
    SLIGHTLY = "slightly"
    VERY = "very"


class ShortStatus(enum.Enum):
    """Summary status of a task, declared from most to least severe."""

    ERROR = "error"
    OUT_OF_DATE_ERROR = "out-of-date-error"
    OUT_OF_DATE = "out-of-date"
    ERROR_NO_ALERT = "error-no-alert"
    OUT_OF_DATE_NO_ALERT = "out-of-date-no-alert"
    SUCCESS = "success"
    NOT_YET_RUN = "not-yet-run"

    @property
    def rank(self) -> int:
        """Position in severity order; lower is more severe."""
        return list(type(self)).index(self)

    def as_str(self) -> str:
        return _SHORT_TEXT[self]

    def alert(self) -> bool:
        return self in (ShortStatus.ERROR, ShortStatus.OUT_OF_DATE_ERROR)

    def css_class(self) -> str:
        return _SHORT_CSS[self]


_SHORT_TEXT = {
    ShortStatus.OUT_OF_DATE: "OUT OF DATE",
    ShortStatus.OUT_OF_DATE_ERROR: "ERROR DUE TO OUT OF DATE",
    ShortStatus.OUT_OF_DATE_NO_ALERT: "OUT OF DATE (no alert)",
    ShortStatus.SUCCESS: "SUCCESS",
    ShortStatus.ERROR: "ERROR",
    ShortStatus.ERROR_NO_ALERT: "ERROR (no alert)",
    ShortStatus.NOT_YET_RUN: "NOT YET RUN",
}

_SHORT_CSS = {
    ShortStatus.ERROR: "link-danger",
    ShortStatus.OUT_OF_DATE_ERROR: "link-danger",
    ShortStatus.OUT_OF_DATE: "text-red-400",
    ShortStatus.ERROR_NO_ALERT: "text-red-400",
    ShortStatus.OUT_OF_DATE_NO_ALERT: "text-red-300",
    ShortStatus.SUCCESS: "link-success",
    ShortStatus.NOT_YET_RUN: "link-primary",
}


class WatcherAppContext(abc.ABC):
    """What the hosting application tells the watcher about itself."""

    @abc.abstractmethod
    def title(self) -> str:
        """Title shown on the status page."""

    @abc.abstractmethod
    def environment(self) -> str | None:
        """Name of the deployment environment, if known."""

    @abc.abstractmethod
    def build_version(self) -> str | None:
        """Version of the running build, if known."""

    @abc.abstractmethod
    def live_since(self) -> datetime:
        """When the application started."""

    @abc.abstractmethod
    def watcher_config(self) -> WatcherConfig:
        """Configuration of the watcher and its tasks."""

    @abc.abstractmethod
    def triggers_alert(self, label: TaskLabel, selected_label: TaskLabel | None) -> bool:
        """Whether a failure of ``label`` should raise an alert."""

    @abc.abstractmethod
    def show_output(self, label: TaskLabel) -> bool:
        """Whether run results of ``label`` are logged at info level."""


@dataclass
class TaskStatus:
    """Current state of one watched task.

    ``out_of_date`` is how long a run may take before its result counts as out
    of date. ``expire_last_result`` is a pair of (seconds, monotonic start)
    after which an error result no longer alerts.
    """

    last_result: TaskResult
    last_retry_error: TaskError | None = None
    current_run_started: datetime | None = None
    out_of_date: timedelta | None = None
    expire_last_result: tuple[float, float] | None = None
    counts: TaskCounts = field(default_factory=TaskCounts)
    last_run_seconds: int | None = None

    def total_run_time(self) -> str:
        if self.last_run_seconds is None:
            return "Unknown"
        return str(self.last_run_seconds)

    def is_expired(self) -> bool:
        if self.expire_last_result is None:
            return False
        duration, started = self.expire_last_result
        return time.monotonic() - started >= duration

    def out_of_date_level(self, now: datetime | None = None) -> OutOfDate:
        if self.current_run_started is None or self.out_of_date is None:
            return OutOfDate.NOT
        now = _now() if now is None else _utc(now)
        started = _utc(self.current_run_started)
        if started + VERY_OUT_OF_DATE <= now:
            return OutOfDate.VERY
        if started + self.out_of_date <= now:
            return OutOfDate.SLIGHTLY
        return OutOfDate.NOT

    def short(
        self,
        app: WatcherAppContext,
        label: TaskLabel,
        selected_label: TaskLabel | None,
    ) -> ShortStatus:
        kind = self.last_result.value.kind
        if kind is ResultKind.OK:
            level = self.out_of_date_level()
            if level is OutOfDate.NOT:
                return ShortStatus.SUCCESS
            if not app.triggers_alert(label, selected_label):
                return ShortStatus.OUT_OF_DATE_NO_ALERT
            if level is OutOfDate.SLIGHTLY:
                return ShortStatus.OUT_OF_DATE
            return ShortStatus.OUT_OF_DATE_ERROR
        if kind is ResultKind.ERR:
            if app.triggers_alert(label, selected_label) and not self.is_expired():
                return ShortStatus.ERROR
            return ShortStatus.ERROR_NO_ALERT
        return ShortStatus.NOT_YET_RUN

    def to_dict(self) -> dict[str, Any]:
        return {
            "last-result": self.last_result.to_dict(),
            "last-retry-error": (
                None if self.last_retry_error is None else self.last_retry_error.to_dict()
            ),
            "current-run-started": (
                None if self.current_run_started is None else _rfc3339(self.current_run_started)
            ),
            "counts": self.counts.to_dict(),
            "last-run-seconds": self.last_run_seconds,
        }


@dataclass(frozen=True)
class RenderedStatus:
    """A snapshot of a task's status together with its summary."""

    label: TaskLabel
    status: TaskStatus
    short: ShortStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": str(self.label),
            "status": self.status.to_dict(),
            "short": self.short.value,
        }


@dataclass(frozen=True)
class StatusReport:
    """Everything shown on a status page."""

    statuses: list[RenderedStatus]
    env: str
    build_version: str
    live_since: datetime
    now: datetime
    alert: bool
    title: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "statuses": [rendered.to_dict() for rendered in self.statuses],
            "env": self.env,
            "build-version": self.build_version,
            "live-since": _rfc3339(self.live_since),
            "now": _rfc3339(self.now),
            "alert": self.alert,
            "title": self.title,
        }


@dataclass(frozen=True)
class StatusResponse:
    """An HTTP response body with its status code and content type."""

    status_code: int
    content_type: str
    body: str


def format_status_text(rendered: RenderedStatus) -> str:
    """Plain-text block describing one task."""
    status = rendered.status
    lines = [f"# {rendered.label}. Status: {rendered.short.as_str()}"]
    if status.current_run_started is not None:
        lines.append(f"Currently running, started at {_display_time(status.current_run_started)}")
    if status.last_run_seconds is not None:
        lines.append(f"Last run took {status.last_run_seconds} seconds")
    lines += ["", status.last_result.value.as_str(), ""]
    if status.last_retry_error is not None:
        lines += [
            "",
            f"Currently retrying, last attempt failed with:\n\n{status.last_retry_error.value}",
            "",
        ]
    lines.append("")
    return "".join(f"{line}\n" for line in lines)


def _render_task_html(rendered: RenderedStatus, now: datetime) -> str:
    status = rendered.status
    label = html.escape(str(rendered.label))
    parts = [
        f'<section id="{label}">',
        f'<h2><a class="{rendered.short.css_class()}" href="/status/{label}">{label}</a>'
        f" {html.escape(rendered.short.as_str())}</h2>",
        f"<p>Last result updated {html.escape(status.last_result.since(now))}</p>",
        f"<pre>{html.escape(status.last_result.value.as_str())}</pre>",
    ]
    if status.current_run_started is not None:
        parts.append(
            "<p>Currently running, started at "
            f"{html.escape(format_since(status.current_run_started, now))}</p>"
        )
    parts.append(f"<p>Last run took {html.escape(status.total_run_time())} seconds</p>")
    counts = status.counts
    parts.append(
        f"<p>Successes: {counts.successes}, retries: {counts.retries}, errors: {counts.errors}</p>"
    )
    if status.last_retry_error is not None:
        error = status.last_retry_error
        parts.append(
            f"<p>Currently retrying, last attempt failed {html.escape(error.since(now))}:</p>"
            f"<pre>{html.escape(error.value)}</pre>"
        )
    parts.append("</section>")
    return "\n".join(parts)


def render_html_page(report: StatusReport) -> str:
    """Render a status report as a standalone HTML page."""
    title = html.escape(report.title)
    overall = "ALERT" if report.alert else "OK"
    overall_class = "link-danger" if report.alert else "link-success"
    sections = "\n".join(_render_task_html(rendered, report.now) for rendered in report.statuses)
    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n'
        "<head>\n"
        '<meta charset="utf-8">\n'
        f"<title>{title}</title>\n"
        "</head>\n"
        "<body>\n"
        f"<h1>{title}</h1>\n"
        f"<p>Environment: {html.escape(report.env)}</p>\n"
        f"<p>Build version: {html.escape(report.build_version)}</p>\n"
        f"<p>Live since: {html.escape(format_since(report.live_since, report.now))}</p>\n"
        f"<p>Rendered at: {html.escape(_display_time(report.now))}</p>\n"
        f'<p class="{overall_class}">Overall: {overall}</p>\n'
        f"{sections}\n"
        "</body>\n"
        "</html>\n"
    )


def _log_failures(statuses: list[RenderedStatus]) -> None:
    failing = [rendered for rendered in statuses if rendered.short.alert()]
    logger.error("Status failure: %r", failing)


@dataclass
class TaskStatuses:
    """The live status of every registered task, keyed by label."""

    statuses: Mapping[TaskLabel, TaskStatus] = field(default_factory=dict)

    def rendered(
        self, app: WatcherAppContext, selected_label: TaskLabel | None = None
    ) -> list[RenderedStatus]:
        """Snapshots of the selected task (or all tasks), most severe first."""
        result = [
            RenderedStatus(label, snapshot, snapshot.short(app, label, selected_label))
            for label, snapshot in (
                (label, dataclasses.replace(status)) for label, status in self.statuses.items()
            )
            if selected_label is None or label == selected_label
        ]
        result.sort(key=lambda rendered: (rendered.short.rank, rendered.label))
        return result

    def report(
        self, app: WatcherAppContext, selected_label: TaskLabel | None = None
    ) -> StatusReport:
        statuses = self.rendered(app, selected_label)
        return StatusReport(
            statuses=statuses,
            env=app.environment() or "Unknown",
            build_version=app.build_version() or "Unknown",
            live_since=app.live_since(),
            now=_now(),
            alert=any(rendered.short.alert() for rendered in statuses),
            title=app.title(),
        )

    def _respond(self, report: StatusReport, content_type: str, body: str) -> StatusResponse:
        code = HTTP_OK
        if report.alert:
            _log_failures(report.statuses)
            code = HTTP_INTERNAL_SERVER_ERROR
        return StatusResponse(code, content_type, body)

    def render_html(
        self, app: WatcherAppContext, selected_label: TaskLabel | None = None
    ) -> StatusResponse:
        report = self.report(app, selected_label)
        return self._respond(report, HTML_CONTENT_TYPE, render_html_page(report))

    def render_json(
        self, app: WatcherAppContext, selected_label: TaskLabel | None = None
    ) -> StatusResponse:
        report = self.report(app, selected_label)
        return self._respond(report, JSON_CONTENT_TYPE, json.dumps(report.to_dict()))

    def render_text(
        self, app: WatcherAppContext, selected_label: TaskLabel | None = None
    ) -> StatusResponse:
        report = self.report(app, selected_label)
        body = "".join(format_status_text(rendered) for rendered in report.statuses)
        return self._respond(report, TEXT_CONTENT_TYPE, body)