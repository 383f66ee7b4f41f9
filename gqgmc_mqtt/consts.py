"""Tuning constants shared by the bridge tasks."""
from __future__ import annotations

MQTT_KEEPALIVE_SECONDS = 5
MQTT_RECONNECT_DELAY_SECONDS = 5.0
MQTT_DEFAULT_CLIENT_ID = "sunspec_gateway"
MQTT_DEFAULT_PORT = 1883

# Capacity of the outbound and inbound point-to-point channels.
CHANNEL_CAPACITY = 100
# Per-receiver buffer of the control broadcast.
BROADCAST_CAPACITY = 16

POLL_INTERVAL_SECONDS = 5.0

DEFAULT_CONFIG_PATH = "./config.yaml"
DEFAULT_SERIAL_PORT = "/dev/ttyUSB0"
DEFAULT_SERIAL_BAUDRATE = 57600
DEFAULT_SERIAL_TIMEOUT_SECONDS = 2.0

DISCOVERY_PREFIX = "homeassistant"
STATE_PREFIX = "gqgmcmqtt"
SENSOR_OBJECT_ID = "geiger_counter_cpm"
DISCOVERY_EXPIRE_AFTER_SECONDS = 300
