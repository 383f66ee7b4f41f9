"""Fixed-interval poll loop feeding the MQTT session."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, List

from gqgmc_mqtt.consts import POLL_INTERVAL_SECONDS
from gqgmc_mqtt.errors import ChannelClosed, OutboundChannelClosed
from gqgmc_mqtt.hardware.instrument import InstrumentDriver
from gqgmc_mqtt.ipc import ControlReceiver, Inbound, Outbound, PublishMessage, Receiver, Sender
from gqgmc_mqtt.observability import generate_cycle_id, reset_cycle_id, set_cycle_id
from gqgmc_mqtt.payload import CompoundPayload, build_payloads

logger = logging.getLogger(__name__)

PayloadBuilder = Callable[[InstrumentDriver], Awaitable[List[CompoundPayload]]]


class Poller:
    """Queries the instrument every ``interval`` seconds and enqueues payload pairs."""

    def __init__(
        self,
        driver: InstrumentDriver,
        outbound: Sender,
        control: ControlReceiver,
        *,
        interval: float = POLL_INTERVAL_SECONDS,
        builder: PayloadBuilder = build_payloads,
    ) -> None:
        self._driver = driver
        self._outbound = outbound
        self._control = control
        self._interval = max(float(interval), 0.0)
        self._builder = builder
        self.cycles = 0
        self.enqueued = 0

    async def _send(self, topic: str, payload) -> None:
        try:
            await self._outbound.send(Outbound(PublishMessage(topic=topic, payload=payload)))
        except ChannelClosed as exc:
            raise OutboundChannelClosed("Channel closed: MQTT session is gone") from exc

    async def poll_once(self) -> int:
        """Run one cycle; returns how many messages were enqueued."""

        token = set_cycle_id(generate_cycle_id())
        try:
            self.cycles += 1
            payloads = await self._builder(self._driver)
            sent = 0
            for compound in payloads:
                # Discovery first, so the entity exists before its state arrives.
                await self._send(compound.config_topic, compound.config)
                await self._send(compound.state_topic, compound.state)
                sent += 2
            if sent:
                logger.debug("Enqueued %d messages", sent)
            self.enqueued += sent
            return sent
        finally:
            reset_cycle_id(token)

    def _stop_requested(self) -> bool:
        try:
            message = self._control.try_recv()
        except ChannelClosed:
            logger.info("Control channel closed; poller stopping")
            return True
        if message is None:
            return False
        logger.info("Poller received %r; stopping", message)
        return True

    async def _wait_interval(self, remaining: float) -> bool:
        """Sleep up to ``remaining`` seconds; True if a control message ended the wait."""

        if remaining <= 0:
            return self._stop_requested()
        waiter = asyncio.ensure_future(self._control.recv())
        try:
            done, _ = await asyncio.wait({waiter}, timeout=remaining)
        finally:
            if not waiter.done():
                waiter.cancel()
        if waiter not in done:
            return False
        try:
            message = waiter.result()
        except ChannelClosed:
            logger.info("Control channel closed; poller stopping")
        else:
            logger.info("Poller received %r; stopping", message)
        return True

    async def run(self) -> None:
        """Poll until a control message arrives.

        Raises ``OutboundChannelClosed`` when the session task is no longer
        consuming; that ends the process.
        """

        logger.info("Polling instrument every %.1fs", self._interval)
        while not self._stop_requested():
            started = time.monotonic()
            await self.poll_once()
            remaining = self._interval - (time.monotonic() - started)
            if await self._wait_interval(remaining):
                break
        logger.info("Poller stopped after %d cycles", self.cycles)


async def consume_inbound(inbound: Receiver) -> None:
    """Drain broker messages relayed by the session; they carry no commands."""

    while True:
        try:
            message = await inbound.recv()
        except ChannelClosed:
            return
        if isinstance(message, Inbound):
            logger.debug("Inbound message on %s (%d bytes)", message.topic, len(message.payload))
        else:
            logger.warning("Ignoring unexpected message on inbound channel: %r", message)


__all__ = ["Poller", "consume_inbound"]
