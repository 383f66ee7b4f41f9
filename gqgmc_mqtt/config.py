"""Runtime configuration for the Geiger counter bridge."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gqgmc_mqtt.consts import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_SERIAL_BAUDRATE,
    DEFAULT_SERIAL_PORT,
    DEFAULT_SERIAL_TIMEOUT_SECONDS,
    MQTT_DEFAULT_CLIENT_ID,
    MQTT_DEFAULT_PORT,
    MQTT_KEEPALIVE_SECONDS,
    MQTT_RECONNECT_DELAY_SECONDS,
    POLL_INTERVAL_SECONDS,
)
from gqgmc_mqtt.errors import ConfigError

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 1.0
MAX_INTERVAL_SECONDS = 3600.0


def _clamp_interval_seconds(value: float, *, field: str) -> float:
    try:
        parsed = float(value)
    except Exception as exc:
        raise ValueError(f"{field} must be a number") from exc
    if parsed != parsed:  # NaN
        raise ValueError(f"{field} must be a real number")
    return max(MIN_INTERVAL_SECONDS, min(parsed, MAX_INTERVAL_SECONDS))


class RuntimeEnvironment(BaseSettings):
    """Process environment consulted before the config file is read."""

    config_file_path: str = Field(default=DEFAULT_CONFIG_PATH, description="Path to the YAML config file")

    model_config = SettingsConfigDict(extra="ignore")


class AppConfig(BaseModel):
    """Settings read from the YAML config file.

    The value is built once at startup and handed to each component; nothing
    mutates it afterwards.
    """

    mqtt_client_id: Optional[str] = None
    mqtt_server_addr: str = Field(description="MQTT broker host name or address")
    mqtt_server_port: Optional[int] = None
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_keepalive_seconds: int = Field(default=MQTT_KEEPALIVE_SECONDS, ge=1)
    mqtt_reconnect_delay_seconds: float = Field(default=MQTT_RECONNECT_DELAY_SECONDS, ge=0.0)
    mqtt_subscribe_topics: List[str] = Field(
        default_factory=list,
        description="Topics relayed to the inbound channel; none by default",
    )
    serial_port: str = DEFAULT_SERIAL_PORT
    serial_baudrate: int = DEFAULT_SERIAL_BAUDRATE
    serial_timeout_seconds: float = Field(default=DEFAULT_SERIAL_TIMEOUT_SECONDS, gt=0.0)
    poll_interval_seconds: float = POLL_INTERVAL_SECONDS
    log_level: str = "INFO"
    service_name: str = "gqgmc-mqtt"

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("mqtt_server_addr")
    @classmethod
    def _require_server_addr(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("mqtt_server_addr must not be empty")
        return cleaned

    @field_validator("mqtt_server_port")
    @classmethod
    def _check_port(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and not 0 < value < 65536:
            raise ValueError("mqtt_server_port must be between 1 and 65535")
        return value

    @field_validator("poll_interval_seconds")
    @classmethod
    def _clamp_poll_interval(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="poll_interval_seconds")

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log_level {value!r}")
        return level

    @property
    def client_id(self) -> str:
        return self.mqtt_client_id or MQTT_DEFAULT_CLIENT_ID

    @property
    def server_port(self) -> int:
        return self.mqtt_server_port if self.mqtt_server_port is not None else MQTT_DEFAULT_PORT


def _one_line(text: str) -> str:
    return " ".join(text.split())


def _validation_summary(exc: ValidationError) -> str:
    return _one_line(
        "; ".join(f"{'.'.join(map(str, error['loc'])) or 'config'}: {error['msg']}" for error in exc.errors())
    )


def config_path_from_env() -> Path:
    return Path(RuntimeEnvironment().config_file_path)


def load_config(path: str | Path | None = None) -> AppConfig:
    """Read and validate the YAML config file.

    Every failure is reported as ``ConfigError`` so startup can exit with a
    single diagnostic line.
    """

    cfg_path = Path(path) if path is not None else config_path_from_env()
    try:
        text = cfg_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Can't read config file {cfg_path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Couldn't parse config file {cfg_path}: {_one_line(str(exc))}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {cfg_path} must contain a mapping, got {type(data).__name__}")
    try:
        config = AppConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Couldn't deserialize AppConfig: {_validation_summary(exc)}") from exc
    logger.debug("Loaded configuration from %s", cfg_path)
    return config


__all__ = ["AppConfig", "RuntimeEnvironment", "config_path_from_env", "load_config"]
