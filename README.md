# jobwatch

jobwatch runs long-lived background jobs inside an asyncio application.
It runs each job again on a schedule and retries it when it fails. It
serves the current state of every job over HTTP as an HTML page, as JSON
or as plain text.

## Installing

```
pip install jobwatch
```

To run the test suite:

```
pip install "jobwatch[test]"
pytest
```

## How it fits together

1. **An application context.** Subclass `jobwatch.status.WatcherAppContext`
   and implement `title()`, `environment()`, `build_version()`,
   `live_since()`, `watcher_config()`, `triggers_alert(label, selected_label)`
   and `show_output(label)`. The status page and the alerting rules use
   this object. When `environment()` or `build_version()` returns `None`,
   the page shows `Unknown`. `show_output(label)` sets the log level for
   that task's results. When it returns true, results are logged at info
   level and failures at warning level. Otherwise both are logged at debug
   level.

2. **Configuration.** `watcher_config()` returns a
   `jobwatch.config.WatcherConfig`. It holds `retries`,
   `delay_between_retries` (in seconds) and `tasks`, which maps each task
   label to a `TaskConfig`. A `WatcherConfig` built directly has zero
   retries and no pause between retries.
   `WatcherConfig.from_dict(data)` reads plain kebab-case data such as
   parsed JSON or YAML. For keys that are missing it uses 6 retries and a
   20 second pause. It raises `jobwatch.config.ConfigError` (a
   `ValueError`) when a key is unknown, a field is missing, a value is
   malformed or an integer is out of range. `to_dict()` turns a config
   back into the same form. The package does not read files: load the
   data yourself and pass it to `from_dict`.

   A `TaskConfig` has these fields:
   - `delay`: the pause after a successful run. It is one of
     `Delay.no_delay()`, `Delay.constant_secs(n)`,
     `Delay.constant_msecs(n)` or `Delay.random(low, high)`. A random
     delay picks a whole number of seconds between `low` and `high`,
     both included.
   - `out_of_date`: the number of seconds a run may take before its
     result counts as out of date.
   - `retries`: overrides the watcher-wide number of retries.
   - `delay_between_retries`: overrides the watcher-wide pause between
     retries.

   In the dictionary form a task looks like this:

   ```python
   {
       "retries": 3,
       "tasks": {
           "refresh": {"delay": {"constant-secs": 30}, "out-of-date": 60},
           "sweep": {"delay": {"random": {"low": 5, "high": 15}}},
           "spin": {"delay": "no-delay"},
       },
   }
   ```

3. **Tasks.** Subclass `jobwatch.watcher.WatchedTask` and implement the
   coroutine `run_single(app, heartbeat)`. It returns a
   `WatchedTaskOutput(message)`. The output has these methods:
   - `.without_delay()` starts the next run immediately.
   - `.as_error()` records the message as an error result.
   - `.with_expiry(seconds)` stops an error result from alerting once that
     many seconds have passed.

   `heartbeat.task_status` is the task's own live `TaskStatus`, including
   its `counts`. An exception raised by `run_single` counts as a failed
   attempt. For a task that has `out_of_date` set, each run is abandoned
   after 180 seconds and counted as a failure.

4. **Retries.** The first failure of a task that has never run before is
   recorded as an error straight away. After that, failed attempts are
   recorded as retries, each followed by the retry pause. The task is
   recorded as failed once the number of consecutive failures reaches the
   retry limit. A success resets the count.

5. **Registration.** Create `jobwatch.watcher.AppBuilder(app)` and add
   each task with `watch_periodic(label, task)`, where `label` is a
   `jobwatch.status.TaskLabel`. Each label must have an entry in the
   configuration, and each label may be registered only once. Otherwise
   `WatcherError` is raised. `watch_background(coro)` adds a coroutine
   that runs alongside the tasks. `statuses()` returns the live
   `TaskStatuses`.

6. **Running.** `await builder.wait(sock)` serves HTTP on an already bound
   and listening socket and starts every task. The periodic tasks loop
   forever. `wait` returns only after every job has finished. If any job
   raises, `wait` stops all of them and raises that error. A failing
   periodic task raises `WatcherError("Failure while running: <label>")`,
   with the original exception as its cause.

```python
import asyncio
import socket
from datetime import datetime, timezone

from jobwatch.config import Delay, TaskConfig, WatcherConfig
from jobwatch.status import TaskLabel, WatcherAppContext
from jobwatch.watcher import AppBuilder, WatchedTask, WatchedTaskOutput


class MyApp(WatcherAppContext):
    def title(self):
        return "My service status"

    def environment(self):
        return "staging"

    def build_version(self):
        return None

    def live_since(self):
        return datetime.now(timezone.utc)

    def watcher_config(self):
        return WatcherConfig.from_dict(
            {"tasks": {"refresh": {"delay": {"constant-secs": 30}, "out-of-date": 60}}}
        )

    def triggers_alert(self, label, selected_label):
        return True

    def show_output(self, label):
        return True


class Refresh(WatchedTask):
    async def run_single(self, app, heartbeat):
        return WatchedTaskOutput("refreshed")


async def run():
    builder = AppBuilder(MyApp())
    builder.watch_periodic(TaskLabel("refresh"), Refresh())
    with socket.create_server(("127.0.0.1", 8080)) as sock:
        await builder.wait(sock)


asyncio.run(run())
```

## HTTP endpoints

| Path              | Response                        |
|-------------------|---------------------------------|
| `/`               | `Index page`                    |
| `/healthz`        | `Yup, I'm healthy!`             |
| `/status`         | the status of every task        |
| `/status/{label}` | the status of one task          |

The status endpoints pick their format from the `Accept` header. A header
that contains `application/json` gets JSON. One that contains `text/plain`
gets plain text. Anything else gets HTML. Every response allows any
origin through CORS. If any listed task is in an alerting state, the
endpoints answer with HTTP 500 and log the failing tasks, so an uptime
checker that polls them will notice.

The HTML and text forms show each task's last message. The JSON form
shows timestamps, counts, run times and the summary state of each task,
but no messages.

The server can be used on its own: `jobwatch.rest_api.create_app(context,
statuses)` returns an `aiohttp.web.Application`. The same reports are
available without HTTP through `TaskStatuses.render_html`, `render_json`
and `render_text`, which return a `StatusResponse` with a status code,
content type and body.

## States

Each task is reported in one of the states below. The page lists tasks in
this order and sorts tasks in the same state by label.

- `ERROR`: the last run failed and the task triggers alerts.
- `ERROR DUE TO OUT OF DATE`: the current run has been going for at least
  300 seconds.
- `OUT OF DATE`: the current run has taken longer than `out_of_date`.
- `ERROR (no alert)`: the last run failed, but the task does not trigger
  alerts or its error has expired.
- `OUT OF DATE (no alert)`: the task is out of date but does not trigger
  alerts.
- `SUCCESS`: the last run succeeded.
- `NOT YET RUN`: the task has not completed a run yet.

Only `ERROR` and `ERROR DUE TO OUT OF DATE` count as alerts.

## What it does not do

Alerts are reported only through the HTTP status code and the error log.
jobwatch does not send notifications to paging or incident services, and
it does not keep any state between restarts.

## Example

The package includes a small demonstration with two periodic tasks. The
task `leaderboard` never alerts. The task `task_two` starts failing after
four successes. To serve their status on 127.0.0.1:8080, run:

```
jobwatch-leaderboard
```

To serve on another address, use `--host` and `--port`, for example
`jobwatch-leaderboard --port 9000`.