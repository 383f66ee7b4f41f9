from __future__ import annotations

import asyncio
import logging
import os
import socket
from typing import Optional

logger = logging.getLogger(__name__)


class SystemdNotifier:
    """sd_notify client with an asyncio watchdog task.

    Outside systemd (no NOTIFY_SOCKET / WATCHDOG_USEC) every call is a no-op
    that returns False.
    """

    def __init__(self) -> None:
        self._watchdog_task: Optional[asyncio.Task] = None
        self._watchdog_interval: Optional[float] = None

    def ready(self, status: Optional[str] = None) -> bool:
        return self._send(self._compose_message({"READY": "1"}, status=status))

    def status(self, status: str) -> bool:
        return self._send(self._compose_message({}, status=status))

    def stopping(self, status: Optional[str] = None) -> bool:
        return self._send(self._compose_message({"STOPPING": "1"}, status=status))

    def watchdog_ping(self) -> bool:
        return self._send("WATCHDOG=1")

    @property
    def watchdog_running(self) -> bool:
        return self._watchdog_task is not None and not self._watchdog_task.done()

    def start_watchdog(self) -> bool:
        """Start pinging at half of WATCHDOG_USEC; must run inside an event loop."""

        interval = self._watchdog_interval_seconds()
        if interval is None:
            return False
        if self.watchdog_running:
            return True
        self._watchdog_interval = interval
        self._watchdog_task = asyncio.create_task(self._watchdog_loop(interval), name="systemd-watchdog")
        return True

    async def stop_watchdog(self) -> None:
        task, self._watchdog_task = self._watchdog_task, None
        self._watchdog_interval = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _watchdog_loop(self, interval: float) -> None:
        self.watchdog_ping()
        while True:
            await asyncio.sleep(interval)
            if not self.watchdog_ping():
                logger.warning("systemd watchdog ping failed; stopping watchdog")
                return

    def _watchdog_interval_seconds(self) -> Optional[float]:
        raw = os.environ.get("WATCHDOG_USEC")
        if not raw:
            return None
        try:
            usec = int(raw)
        except ValueError:
            logger.warning("Invalid WATCHDOG_USEC value: %s", raw)
            return None
        if usec <= 0:
            return None
        return usec / 1_000_000.0 / 2.0

    def _compose_message(self, properties: dict[str, str], status: Optional[str] = None) -> str:
        parts = [f"{key}={value}" for key, value in properties.items()]
        if status is not None:
            parts.append(f"STATUS={status}")
        return "\n".join(parts)

    def _notify_socket_address(self) -> Optional[bytes]:
        path = os.environ.get("NOTIFY_SOCKET")
        if not path:
            return None
        if path.startswith("@"):
            path = "\0" + path[1:]
        return path.encode("utf-8")

    def _send(self, payload: str) -> bool:
        address = self._notify_socket_address()
        if not address:
            return False
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
                sock.settimeout(0.2)
                sock.sendto(payload.encode("utf-8"), address)
            return True
        except OSError as exc:
            logger.debug("Failed to send sd_notify payload %s: %s", payload, exc)
            return False


__all__ = ["SystemdNotifier"]
