import pytest

from jobwatch.config import (
    DEFAULT_DELAY_BETWEEN_RETRIES,
    DEFAULT_RETRIES,
    ConfigError,
    Delay,
    DelayKind,
    TaskConfig,
    WatcherConfig,
)


@pytest.mark.parametrize(
    "delay",
    [
        Delay.no_delay(),
        Delay.constant_secs(10),
        Delay.constant_msecs(250),
        Delay.random(1, 5),
    ],
)
def test_delay_round_trip(delay):
    assert Delay.from_value(delay.to_value()) == delay


def test_no_delay_is_a_plain_string():
    assert Delay.no_delay().to_value() == "no-delay"
    assert Delay.from_value("no-delay").kind is DelayKind.NO_DELAY


def test_constant_msecs_tag():
    delay = Delay.from_value({"constant-m-secs": 250})
    assert delay.kind is DelayKind.CONSTANT_MSECS
    assert delay.amount == 250


def test_random_from_value():
    delay = Delay.from_value({"random": {"low": 2, "high": 7}})
    assert (delay.low, delay.high) == (2, 7)


def test_sample_seconds_constant():
    assert Delay.no_delay().sample_seconds() == 0.0
    assert Delay.constant_secs(10).sample_seconds() == 10.0
    assert Delay.constant_msecs(1500).sample_seconds() == 1.5


def test_sample_seconds_random_within_bounds():
    delay = Delay.random(3, 6)
    for _ in range(200):
        value = delay.sample_seconds()
        assert 3 <= value <= 6
        assert value == int(value)


def test_random_single_point():
    assert Delay.random(4, 4).sample_seconds() == 4.0


@pytest.mark.parametrize(
    "value",
    [
        "constant-secs",
        "sometimes",
        {"constant-secs": -1},
        {"constant-secs": 1.5},
        {"constant-secs": True},
        {"constant-secs": 1, "no-delay": None},
        {"random": {"low": 1}},
        {"random": {"low": 1, "high": 2, "mid": 3}},
        {"random": {"low": 5, "high": 1}},
        {"unknown": 1},
        42,
    ],
)
def test_delay_invalid(value):
    with pytest.raises(ConfigError):
        Delay.from_value(value)


def test_task_config_round_trip():
    config = TaskConfig(Delay.constant_secs(10), out_of_date=30, retries=3, delay_between_retries=5)
    assert TaskConfig.from_dict(config.to_dict()) == config


def test_task_config_optional_fields():
    config = TaskConfig.from_dict({"delay": {"constant-secs": 1}})
    assert config.out_of_date is None
    assert config.retries is None
    assert config.delay_between_retries is None
    assert config.to_dict()["out-of-date"] is None


def test_task_config_kebab_keys():
    config = TaskConfig.from_dict(
        {"delay": "no-delay", "out-of-date": 30, "delay-between-retries": 4}
    )
    assert config.out_of_date == 30
    assert config.delay_between_retries == 4


@pytest.mark.parametrize(
    "data",
    [
        {},
        {"delay": "no-delay", "out_of_date": 30},
        {"delay": "no-delay", "out-of-date": 2**32},
        {"delay": "no-delay", "retries": -1},
        ["delay"],
    ],
)
def test_task_config_invalid(data):
    with pytest.raises(ConfigError):
        TaskConfig.from_dict(data)


def test_watcher_config_defaults_from_dict():
    config = WatcherConfig.from_dict({})
    assert config.retries == DEFAULT_RETRIES == 6
    assert config.delay_between_retries == DEFAULT_DELAY_BETWEEN_RETRIES == 20
    assert config.tasks == {}


def test_watcher_config_constructed_defaults():
    config = WatcherConfig()
    assert config.retries == 0
    assert config.delay_between_retries == 0
    assert config.tasks == {}


def test_watcher_config_round_trip():
    config = WatcherConfig(
        retries=2,
        delay_between_retries=7,
        tasks={
            "leaderboard": TaskConfig(Delay.constant_secs(10), out_of_date=30),
            "task_two": TaskConfig(Delay.random(1, 3)),
        },
    )
    assert WatcherConfig.from_dict(config.to_dict()) == config


def test_watcher_config_tasks_are_independent():
    first = WatcherConfig()
    first.tasks["a"] = TaskConfig(Delay.no_delay())
    assert WatcherConfig().tasks == {}


@pytest.mark.parametrize(
    "data",
    [
        {"retry": 1},
        {"tasks": {"a": {"delay": "bogus"}}},
        {"tasks": {1: {"delay": "no-delay"}}},
        {"delay-between-retries": 2**32},
        {"tasks": []},
    ],
)
def test_watcher_config_invalid(data):
    with pytest.raises(ConfigError):
        WatcherConfig.from_dict(data)


def test_task_error_names_the_task():
    with pytest.raises(ConfigError, match="tasks.broken"):
        WatcherConfig.from_dict({"tasks": {"broken": {}}})


def test_config_error_is_value_error():
    with pytest.raises(ValueError):
        Delay.constant_secs(-5)