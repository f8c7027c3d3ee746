"""Watcher and per-task configuration, with a kebab-case dictionary format."""

from __future__ import annotations

import enum
import random
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

DEFAULT_RETRIES = 6
DEFAULT_DELAY_BETWEEN_RETRIES = 20

_U32_BITS = 32
_U64_BITS = 64


class ConfigError(ValueError):
    """Raised when a configuration value is malformed."""


def _unsigned(value: Any, what: str, bits: int = _U64_BITS) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{what}: expected an unsigned integer, got {value!r}")
    if not 0 <= value < 2**bits:
        raise ConfigError(f"{what}: {value} is out of range for a {bits}-bit unsigned integer")
    return value


def _optional_unsigned(value: Any, what: str, bits: int) -> int | None:
    return None if value is None else _unsigned(value, what, bits)


def _mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ConfigError(f"{what}: expected a mapping, got {type(data).__name__}")
    return data


def _reject_unknown(data: Mapping[str, Any], allowed: set[str], what: str) -> None:
    unknown = sorted(str(key) for key in data if key not in allowed)
    if unknown:
        raise ConfigError(f"{what}: unknown field(s): {', '.join(unknown)}")


class DelayKind(enum.Enum):
    """The strategies for waiting between successful runs."""

    NO_DELAY = "no-delay"
    CONSTANT_SECS = "constant-secs"
    CONSTANT_MSECS = "constant-m-secs"
    RANDOM = "random"


@dataclass(frozen=True)
class Delay:
    """Delay between runs of a task."""

    kind: DelayKind
    amount: int = 0
    low: int = 0
    high: int = 0

    @classmethod
    def no_delay(cls) -> Delay:
        return cls(DelayKind.NO_DELAY)

    @classmethod
    def constant_secs(cls, secs: int) -> Delay:
        return cls(DelayKind.CONSTANT_SECS, amount=_unsigned(secs, "constant-secs"))

    @classmethod
    def constant_msecs(cls, msecs: int) -> Delay:
        return cls(DelayKind.CONSTANT_MSECS, amount=_unsigned(msecs, "constant-m-secs"))

    @classmethod
    def random(cls, low: int, high: int) -> Delay:
        low = _unsigned(low, "random.low")
        high = _unsigned(high, "random.high")
        if low > high:
            raise ConfigError(f"random: low ({low}) must not exceed high ({high})")
        return cls(DelayKind.RANDOM, low=low, high=high)

    def sample_seconds(self) -> float:
        """Seconds to wait for one delay; random delays pick a whole second in [low, high]."""
        if self.kind is DelayKind.NO_DELAY:
            return 0.0
        if self.kind is DelayKind.CONSTANT_SECS:
            return float(self.amount)
        if self.kind is DelayKind.CONSTANT_MSECS:
            return self.amount / 1000
        return float(random.randint(self.low, self.high))

    @classmethod
    def from_value(cls, value: Any) -> Delay:
        """Build a delay from its serialized form."""
        if isinstance(value, str):
            if value == DelayKind.NO_DELAY.value:
                return cls.no_delay()
            raise ConfigError(f"delay: unknown or incomplete variant {value!r}")
        data = _mapping(value, "delay")
        if len(data) != 1:
            raise ConfigError("delay: expected exactly one variant")
        ((tag, payload),) = data.items()
        try:
            kind = DelayKind(tag)
        except ValueError:
            raise ConfigError(f"delay: unknown variant {tag!r}") from None
        if kind is DelayKind.NO_DELAY:
            if payload is not None:
                raise ConfigError("delay: no-delay takes no value")
            return cls.no_delay()
        if kind is DelayKind.CONSTANT_SECS:
            return cls.constant_secs(payload)
        if kind is DelayKind.CONSTANT_MSECS:
            return cls.constant_msecs(payload)
        fields = _mapping(payload, "random")
        _reject_unknown(fields, {"low", "high"}, "random")
        missing = [name for name in ("low", "high") if name not in fields]
        if missing:
            raise ConfigError(f"random: missing field(s): {', '.join(missing)}")
        return cls.random(fields["low"], fields["high"])

    def to_value(self) -> str | dict[str, Any]:
        """Serialized form of the delay."""
        if self.kind is DelayKind.NO_DELAY:
            return self.kind.value
        if self.kind is DelayKind.RANDOM:
            return {self.kind.value: {"low": self.low, "high": self.high}}
        return {self.kind.value: self.amount}


@dataclass(frozen=True)
class TaskConfig:
    """Configuration of one periodic task.

    ``out_of_date`` is the number of seconds a run may take before its result is
    considered out of date. ``retries`` and ``delay_between_retries`` override the
    watcher-wide values when set.
    """

    delay: Delay
    out_of_date: int | None = None
    retries: int | None = None
    delay_between_retries: int | None = None

    _FIELDS = ("delay", "out-of-date", "retries", "delay-between-retries")

    @classmethod
    def from_dict(cls, data: Any) -> TaskConfig:
        data = _mapping(data, "task config")
        _reject_unknown(data, set(cls._FIELDS), "task config")
        if "delay" not in data:
            raise ConfigError("task config: missing field: delay")
        return cls(
            delay=Delay.from_value(data["delay"]),
            out_of_date=_optional_unsigned(data.get("out-of-date"), "out-of-date", _U32_BITS),
            retries=_optional_unsigned(data.get("retries"), "retries", _U64_BITS),
            delay_between_retries=_optional_unsigned(
                data.get("delay-between-retries"), "delay-between-retries", _U32_BITS
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "delay": self.delay.to_value(),
            "out-of-date": self.out_of_date,
            "retries": self.retries,
            "delay-between-retries": self.delay_between_retries,
        }


@dataclass
class WatcherConfig:
    """Watcher-wide configuration and the configuration of every task.

    A directly constructed config has zero retries and zero delay between
    retries; a config read with :meth:`from_dict` falls back to
    ``DEFAULT_RETRIES`` and ``DEFAULT_DELAY_BETWEEN_RETRIES``.
    """

    retries: int = 0
    delay_between_retries: int = 0
    tasks: dict[str, TaskConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> WatcherConfig:
        data = _mapping(data, "watcher config")
        _reject_unknown(data, {"retries", "delay-between-retries", "tasks"}, "watcher config")
        retries = _unsigned(data.get("retries", DEFAULT_RETRIES), "retries", _U64_BITS)
        delay = _unsigned(
            data.get("delay-between-retries", DEFAULT_DELAY_BETWEEN_RETRIES),
            "delay-between-retries",
            _U32_BITS,
        )
        tasks: dict[str, TaskConfig] = {}
        for name, task in _mapping(data.get("tasks", {}), "tasks").items():
            if not isinstance(name, str):
                raise ConfigError(f"tasks: task names must be strings, got {name!r}")
            try:
                tasks[name] = TaskConfig.from_dict(task)
            except ConfigError as exc:
                raise ConfigError(f"tasks.{name}: {exc}") from exc
        return cls(retries=retries, delay_between_retries=delay, tasks=tasks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "retries": self.retries,
            "delay-between-retries": self.delay_between_retries,
            "tasks": {name: task.to_dict() for name, task in self.tasks.items()},
        }