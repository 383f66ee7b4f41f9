"""GQ Electronics GMC Geiger counter driver.

Speaks the GQ RFC1201 command protocol over the counter's USB serial port:

- ``<GETVER>>``    14 ASCII bytes of model and firmware, e.g. ``GMC-500Re 1.18``;
  newer firmware may append a few more bytes.
- ``<GETSERIAL>>`` 7 raw bytes, rendered as upper-case hex.
- ``<GETCPM>>``    big-endian counts per minute; 2 bytes on the GMC-300 family,
  4 bytes on GMC-500/600 and later.

The port calls block, so the async API runs them on a worker thread. A lock
keeps one command/response exchange on the wire at a time.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Optional

import serial

from gqgmc_mqtt.consts import DEFAULT_SERIAL_BAUDRATE, DEFAULT_SERIAL_TIMEOUT_SECONDS
from gqgmc_mqtt.errors import InstrumentConnectError, InstrumentError

logger = logging.getLogger(__name__)

VERSION_LENGTH = 14
SERIAL_LENGTH = 7
SHORT_CPM_MODELS = ("GMC-280", "GMC-300", "GMC-320")


def cpm_width_for(version: str) -> int:
    return 2 if version.upper().startswith(SHORT_CPM_MODELS) else 4


class GMCDevice:
    """Serial connection to one GMC counter; implements ``InstrumentDriver``."""

    def __init__(
        self,
        port: str,
        baudrate: int = DEFAULT_SERIAL_BAUDRATE,
        *,
        timeout: float = DEFAULT_SERIAL_TIMEOUT_SECONDS,
        serial_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.port = port
        self.baudrate = int(baudrate)
        self.timeout = float(timeout)
        self._serial_factory = serial_factory or serial.Serial
        self._serial: Any = None
        self._lock = threading.Lock()
        self._version: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self._serial is not None

    def open(self) -> "GMCDevice":
        if self._serial is not None:
            return self
        try:
            self._serial = self._serial_factory(port=self.port, baudrate=self.baudrate, timeout=self.timeout)
        except (serial.SerialException, OSError, ValueError) as exc:
            raise InstrumentConnectError(f"Can't connect to unit on {self.port}: {exc}") from exc
        # A counter left in heartbeat mode streams CPM every second; silence it.
        try:
            with self._lock:
                self._serial.write(b"<HEARTBEAT0>>")
                self._serial.reset_input_buffer()
        except (serial.SerialException, OSError) as exc:
            self.close()
            raise InstrumentConnectError(f"Unit on {self.port} is not responding: {exc}") from exc
        logger.info("Opened GMC counter on %s at %s baud", self.port, self.baudrate)
        return self

    def close(self) -> None:
        port, self._serial = self._serial, None
        if port is None:
            return
        try:
            port.close()
        except (serial.SerialException, OSError) as exc:
            logger.debug("Closing %s failed: %s", self.port, exc)

    def __enter__(self) -> "GMCDevice":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _query(self, command: bytes, length: int, *, allow_trailing: bool = False) -> bytes:
        with self._lock:
            port = self._serial
            if port is None:
                raise InstrumentError("instrument port is not open")
            try:
                port.reset_input_buffer()
                port.write(command)
                data = port.read(length)
                if allow_trailing and len(data) == length:
                    extra = port.in_waiting
                    if extra:
                        data += port.read(extra)
            except (serial.SerialException, OSError) as exc:
                raise InstrumentError(f"{command.decode('ascii')} failed: {exc}") from exc
        if len(data) < length:
            raise InstrumentError(
                f"{command.decode('ascii')} returned {len(data)} bytes, expected {length}"
            )
        return data

    def read_version(self) -> str:
        raw = self._query(b"<GETVER>>", VERSION_LENGTH, allow_trailing=True)
        version = raw.decode("ascii", errors="replace").strip("\x00 \r\n")
        if not version:
            raise InstrumentError("GETVER returned an empty version string")
        self._version = version
        return version

    def read_serial_number(self) -> str:
        return self._query(b"<GETSERIAL>>", SERIAL_LENGTH).hex().upper()

    def read_cpm(self) -> int:
        version = self._version or self.read_version()
        width = cpm_width_for(version)
        raw = self._query(b"<GETCPM>>", width)
        return int.from_bytes(raw[:width], "big")

    async def get_version(self) -> str:
        return await asyncio.to_thread(self.read_version)

    async def get_serial_number(self) -> str:
        return await asyncio.to_thread(self.read_serial_number)

    async def get_cpm(self) -> int:
        return await asyncio.to_thread(self.read_cpm)


__all__ = ["GMCDevice", "cpm_width_for"]
