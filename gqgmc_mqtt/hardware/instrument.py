"""Instrument driver contract consumed by the payload builder."""
from __future__ import annotations

from typing import Protocol


class InstrumentDriver(Protocol):
    """Queries a radiation counter. Each call may raise ``InstrumentError`` on its own."""

    async def get_version(self) -> str:
        ...

    async def get_serial_number(self) -> str:
        ...

    async def get_cpm(self) -> int:
        ...
