"""Run periodic background tasks with retries and report their status over HTTP."""

__version__ = "0.1.0"

__all__ = ["config", "status", "rest_api", "watcher", "leaderboard"]