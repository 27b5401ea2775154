from pathlib import Path

import pytest

from fleetsync.config.config_loader import (
    ConfigLoader,
    env_overrides,
    insert_path,
    parse_cli_overrides,
)
from fleetsync.config.configs import (
    DEFAULT_BATCHES,
    AlertConfig,
    BatchSettings,
    ConnectionConfig,
    RealtimeConfig,
    UpdateQueueConfig,
)
from fleetsync.core.clock import parse_duration, parse_duration_ms
from fleetsync.errors.errors import ConfigurationError

TOML = """
[connection]
url = "wss://telemetry.example/ws"
heartbeat_interval_s = "15s"
max_reconnect_attempts = 4

[queue]
max_retries = 5
retry_base_delay_s = "250ms"

[[queue.batches]]
batch_key = "position_updates"
max_batch_size = 50
max_wait_s = "200ms"

[alerts]
overspeed_kmh = 90
"""


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "fleet.toml"
    path.write_text(TOML)
    return path


# --- Defaults and validation ---


def test_defaults():
    cfg = RealtimeConfig()
    assert cfg.connection.base_reconnect_delay_s == 5.0
    assert cfg.connection.max_reconnect_delay_s == 30.0
    assert cfg.connection.heartbeat_timeout_factor == 2.0
    assert cfg.bus.history_size == 100
    assert cfg.queue.max_retries == 3
    assert cfg.queue.batches == DEFAULT_BATCHES
    assert cfg.state.history_size == 50

    batches = {b.batch_key: b for b in cfg.queue.batches}
    assert batches["vehicle_updates"].max_batch_size == 10
    assert batches["position_updates"].max_wait_s == 0.5
    assert batches["connection_status"].max_batch_size == 1


@pytest.mark.parametrize(
    "factory",
    [
        lambda: ConnectionConfig(base_reconnect_delay_s=10, max_reconnect_delay_s=5),
        lambda: ConnectionConfig(heartbeat_interval_s=0),
        lambda: ConnectionConfig(heartbeat_timeout_factor=0.5),
        lambda: ConnectionConfig(reconnect_jitter=1.5),
        lambda: UpdateQueueConfig(concurrency=0),
        lambda: UpdateQueueConfig(retry_base_delay_s=2, retry_max_delay_s=1),
        lambda: UpdateQueueConfig(
            batches=(BatchSettings("k", 1, 1.0), BatchSettings("k", 2, 1.0))
        ),
        lambda: BatchSettings("", 1, 1.0),
        lambda: AlertConfig(low_battery_percent=120),
    ],
)
def test_invalid_configs_raise(factory):
    with pytest.raises(ConfigurationError):
        factory()


# --- Durations ---


def test_parse_duration():
    assert parse_duration_ms("250ms") == 250
    assert parse_duration_ms("5s") == 5000
    assert parse_duration_ms("2m") == 120_000
    assert parse_duration_ms("1h") == 3_600_000
    assert parse_duration("500ms") == 0.5
    assert parse_duration("1.5") == 1.5
    assert parse_duration(3) == 3.0


@pytest.mark.parametrize("bad", ["", "5", "ms", "0s", "1.5s", "10d", "-3s"])
def test_parse_duration_ms_rejects(bad):
    with pytest.raises(ValueError):
        parse_duration_ms(bad)


def test_parse_duration_rejects_negative_and_bool():
    with pytest.raises(ValueError):
        parse_duration(-1)
    with pytest.raises(ValueError):
        parse_duration(True)


# --- Override layers ---


def test_insert_path_and_cli_overrides():
    tree: dict = {}
    insert_path(tree, "connection.url", "wss://x")
    insert_path(tree, "connection.auto_reconnect", "false")
    assert tree == {"connection": {"url": "wss://x", "auto_reconnect": "false"}}

    assert parse_cli_overrides(["queue.max_retries=7", "alerts.enabled=no"]) == {
        "queue": {"max_retries": "7"},
        "alerts": {"enabled": "no"},
    }
    with pytest.raises(ValueError):
        parse_cli_overrides(["queue.max_retries"])
    with pytest.raises(ValueError):
        insert_path({"a": 1}, "a.b", 2)


def test_env_overrides_use_prefix_and_double_underscore():
    environ = {
        "FLEETSYNC_CONNECTION__URL": "wss://env",
        "FLEETSYNC_QUEUE__MAX_RETRIES": "9",
        "OTHER_VAR": "ignored",
    }
    assert env_overrides(environ) == {
        "connection": {"url": "wss://env"},
        "queue": {"max_retries": "9"},
    }


def test_load_file(config_file: Path):
    cfg = ConfigLoader().load_realtime_config(config_file, environ={})

    assert cfg.connection.url == "wss://telemetry.example/ws"
    assert cfg.connection.heartbeat_interval_s == 15.0
    assert cfg.connection.max_reconnect_attempts == 4
    assert cfg.queue.max_retries == 5
    assert cfg.queue.retry_base_delay_s == 0.25
    assert cfg.queue.batches == (BatchSettings("position_updates", 50, 0.2),)
    assert cfg.alerts.overspeed_kmh == 90.0


def test_precedence_file_env_cli(config_file: Path):
    environ = {"FLEETSYNC_QUEUE__MAX_RETRIES": "6", "FLEETSYNC_CONNECTION__URL": "wss://env"}
    cfg = ConfigLoader().load_realtime_config(
        config_file,
        overrides=["queue.max_retries=8", "connection.auto_reconnect=off"],
        environ=environ,
    )

    assert cfg.connection.url == "wss://env"
    assert cfg.queue.max_retries == 8
    assert cfg.connection.auto_reconnect is False
    # untouched file values survive
    assert cfg.connection.max_reconnect_attempts == 4


def test_relative_path_uses_base_dir(config_file: Path):
    loader = ConfigLoader(base_dir=str(config_file.parent))
    assert loader.load(config_file.name)["connection"]["max_reconnect_attempts"] == 4


def test_missing_file_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        ConfigLoader().load(tmp_path / "missing.toml")


def test_unknown_section_and_key_raise():
    loader = ConfigLoader()
    with pytest.raises(ConfigurationError):
        loader.build({"nope": {}})
    with pytest.raises(ConfigurationError):
        loader.build({"connection": {"colour": "blue"}})
    with pytest.raises(ConfigurationError):
        loader.build({"connection": "wss://x"})


def test_bad_values_raise_configuration_error():
    loader = ConfigLoader()
    with pytest.raises(ConfigurationError) as exc:
        loader.build({"queue": {"max_retries": "many"}})
    assert exc.value.field == "queue.max_retries"

    with pytest.raises(ConfigurationError):
        loader.build({"connection": {"auto_reconnect": "maybe"}})
    with pytest.raises(ConfigurationError):
        loader.build({"queue": {"batches": "position_updates"}})
    with pytest.raises(ConfigurationError) as exc:
        loader.build({"queue": {"batches": [{"batch_key": "k", "max_batch_size": "lots"}]}})
    assert exc.value.field == "queue.batches.max_batch_size"
    with pytest.raises(ConfigurationError):
        loader.build({"connection": {"url": 5}})
    with pytest.raises(ConfigurationError):
        loader.build({"mode": "poll"})


def test_string_values_validated_against_field_types():
    cfg = ConfigLoader().build(
        {
            "connection": {"auto_reconnect": "yes", "message_queue_size": "25"},
            "alerts": {"overspeed_kmh": "95.5", "alarm_enabled": "0"},
            "health": {"check_interval_s": "2s"},
            "queue": {"batches": [{"batch_key": "k", "max_batch_size": "3"}]},
        }
    )

    assert cfg.connection.auto_reconnect is True
    assert cfg.connection.message_queue_size == 25
    assert cfg.alerts.overspeed_kmh == 95.5
    assert cfg.alerts.alarm_enabled is False
    assert cfg.health.check_interval_s == 2.0
    assert cfg.queue.batches == (BatchSettings("k", 3, 1.0),)
