"""Long-running tasks of the bridge."""
from __future__ import annotations

from .mqtt_session import MqttSession
from .poller import Poller, consume_inbound

__all__ = [
    "MqttSession",
    "Poller",
    "consume_inbound",
]
