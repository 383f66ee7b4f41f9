"""Error taxonomy for the bridge.

Transient errors are absorbed by the task that sees them. Every ``FatalError``
ends the process; ``main`` turns it into a diagnostic line and exit status 1.
"""
from __future__ import annotations


class ChannelClosed(Exception):
    """Raised by channel and broadcast primitives once the other side is gone."""


class InstrumentError(Exception):
    """A single instrument query failed; the current poll cycle is skipped."""


class FatalError(Exception):
    """Base class for conditions that terminate the process."""


class ConfigError(FatalError):
    pass


class MqttConnectError(FatalError):
    pass


class InstrumentConnectError(FatalError):
    pass


class OutboundChannelClosed(FatalError):
    """The MQTT session task exited, so published payloads have nowhere to go."""


__all__ = [
    "ChannelClosed",
    "ConfigError",
    "FatalError",
    "InstrumentConnectError",
    "InstrumentError",
    "MqttConnectError",
    "OutboundChannelClosed",
]
