"""Hardware abstraction layer for the bridge."""
from __future__ import annotations

from .gmc import GMCDevice
from .instrument import InstrumentDriver

__all__ = [
    "GMCDevice",
    "InstrumentDriver",
]
