from __future__ import annotations

from pathlib import Path

import pytest

from gqgmc_mqtt.config import AppConfig, config_path_from_env, load_config
from gqgmc_mqtt.errors import ConfigError, FatalError


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_for_optional_keys(tmp_path: Path) -> None:
    config = load_config(_write(tmp_path, "mqtt_server_addr: broker.local\n"))

    assert config.mqtt_server_addr == "broker.local"
    assert config.client_id == "sunspec_gateway"
    assert config.server_port == 1883
    assert config.mqtt_keepalive_seconds == 5
    assert config.poll_interval_seconds == 5.0
    assert config.serial_baudrate == 57600
    assert config.mqtt_subscribe_topics == []
    assert config.log_level == "INFO"


def test_explicit_values_and_unknown_keys(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "\n".join(
            [
                "mqtt_client_id: geiger-lab",
                "mqtt_server_addr: 10.0.0.5",
                "mqtt_server_port: 8883",
                "mqtt_username: bridge",
                "mqtt_password: secret",
                "serial_port: /dev/ttyACM0",
                "log_level: debug",
                "mqtt_subscribe_topics: [gqgmcmqtt/cmd/#]",
                "legacy_option: true",
            ]
        ),
    )
    config = load_config(path)

    assert config.client_id == "geiger-lab"
    assert config.server_port == 8883
    assert config.mqtt_username == "bridge"
    assert config.mqtt_password == "secret"
    assert config.serial_port == "/dev/ttyACM0"
    assert config.log_level == "DEBUG"
    assert config.mqtt_subscribe_topics == ["gqgmcmqtt/cmd/#"]


def test_path_comes_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write(tmp_path, "mqtt_server_addr: from-env\n")
    monkeypatch.setenv("CONFIG_FILE_PATH", str(path))

    assert config_path_from_env() == path
    assert load_config().mqtt_server_addr == "from-env"


def test_default_path_without_environment() -> None:
    assert config_path_from_env() == Path("config.yaml")


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError) as excinfo:
        load_config(tmp_path / "absent.yaml")
    assert "Can't read config file" in str(excinfo.value)


@pytest.mark.parametrize(
    "text",
    [
        "mqtt_server_addr: [unclosed\n",
        "- just\n- a list\n",
        "",
        "mqtt_server_port: 1883\n",
        "mqtt_server_addr: '   '\n",
        "mqtt_server_addr: broker\nmqtt_server_port: 70000\n",
        "mqtt_server_addr: broker\nlog_level: loud\n",
    ],
)
def test_invalid_config_is_fatal(tmp_path: Path, text: str) -> None:
    with pytest.raises(ConfigError) as excinfo:
        load_config(_write(tmp_path, text))
    assert isinstance(excinfo.value, FatalError)


def test_validation_error_is_one_line(tmp_path: Path) -> None:
    with pytest.raises(ConfigError) as excinfo:
        load_config(_write(tmp_path, "mqtt_server_port: 99999\n"))
    message = str(excinfo.value)
    assert message.startswith("Couldn't deserialize AppConfig")
    assert "\n" not in message
    assert "mqtt_server_addr" in message
    assert "mqtt_server_port" in message


def test_yaml_error_is_one_line(tmp_path: Path) -> None:
    with pytest.raises(ConfigError) as excinfo:
        load_config(_write(tmp_path, "mqtt_server_addr: [unclosed\n"))
    assert "\n" not in str(excinfo.value)


def test_undecodable_file(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_bytes(b"mqtt_server_addr: \xff\xfe\n")
    with pytest.raises(ConfigError) as excinfo:
        load_config(path)
    assert "Can't read config file" in str(excinfo.value)


@pytest.mark.parametrize(("raw", "expected"), [(0.1, 1.0), (30, 30.0), (99999, 3600.0)])
def test_poll_interval_is_clamped(raw, expected) -> None:
    config = AppConfig(mqtt_server_addr="broker", poll_interval_seconds=raw)
    assert config.poll_interval_seconds == expected


def test_config_is_immutable() -> None:
    config = AppConfig(mqtt_server_addr="broker")
    with pytest.raises(Exception):
        config.mqtt_server_addr = "other"
