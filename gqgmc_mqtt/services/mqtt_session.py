"""Long-lived MQTT session task.

The session owns the only broker connection. It multiplexes three inputs:
the outbound publish channel, the control broadcast, and the broker's own
message stream, which is relayed to the inbound channel. Transport errors
trigger a reconnect with the same parameters; producers only notice
added latency through channel backpressure.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any, Callable, Iterable, List, Optional

from aiomqtt import Client, MqttError

from gqgmc_mqtt.consts import MQTT_KEEPALIVE_SECONDS, MQTT_RECONNECT_DELAY_SECONDS
from gqgmc_mqtt.errors import ChannelClosed, MqttConnectError
from gqgmc_mqtt.ipc import ControlReceiver, Inbound, Outbound, PublishMessage, Receiver, Sender
from gqgmc_mqtt.payload import encode_payload

logger = logging.getLogger(__name__)

# Errors that mean the connection is gone rather than the message being bad.
TRANSPORT_ERRORS = (MqttError, OSError)

ClientFactory = Callable[[], Any]


async def _cancel_task(task: Optional[asyncio.Future]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except (ChannelClosed, *TRANSPORT_ERRORS) as exc:
        logger.debug("Background task ended with %s", exc)


def _topic_text(topic: Any) -> str:
    value = getattr(topic, "value", None)
    if value is None:
        value = str(topic)
    return value


def _payload_bytes(payload: Any) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return str(payload).encode("utf-8")


class MqttSession:
    """One broker connection kept alive for the lifetime of the process."""

    def __init__(
        self,
        client_id: str,
        address: str,
        port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
        *,
        keepalive: int = MQTT_KEEPALIVE_SECONDS,
        reconnect_delay: float = MQTT_RECONNECT_DELAY_SECONDS,
        subscriptions: Iterable[str] = (),
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.client_id = client_id
        self.address = address
        self.port = int(port)
        self.username = username
        self.password = password
        self.keepalive = int(keepalive)
        self.reconnect_delay = max(float(reconnect_delay), 0.0)
        self.subscriptions: List[str] = list(subscriptions or [])
        self._client_factory: ClientFactory = client_factory or self._make_client
        self._client: Any = None
        self._stack: Optional[AsyncExitStack] = None
        self.connected = False
        self.reconnects = 0
        self.published = 0
        self.dropped = 0
        self.last_error: Optional[str] = None

    @classmethod
    async def connect(
        cls,
        client_id: str,
        address: str,
        port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
        **kwargs: Any,
    ) -> "MqttSession":
        """Open the initial connection; failure here is fatal for the process."""

        session = cls(client_id, address, port, username, password, **kwargs)
        try:
            await session._open()
        except TRANSPORT_ERRORS as exc:
            raise MqttConnectError(f"Couldn't create mqtt connection to {address}:{port}: {exc}") from exc
        return session

    def _make_client(self) -> Client:
        return Client(
            self.address,
            port=self.port,
            username=self.username,
            password=self.password,
            identifier=self.client_id,
            keepalive=self.keepalive,
        )

    async def _open(self) -> None:
        logger.info("Connecting to MQTT broker %s:%s as %s", self.address, self.port, self.client_id)
        stack = AsyncExitStack()
        try:
            client = await stack.enter_async_context(self._client_factory())
            for topic in self.subscriptions:
                await client.subscribe(topic)
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        self._client = client
        self.connected = True
        self.last_error = None
        logger.info("MQTT connected to %s:%s", self.address, self.port)

    async def _close(self) -> None:
        stack, self._stack, self._client = self._stack, None, None
        self.connected = False
        if stack is None:
            return
        try:
            await stack.aclose()
        except TRANSPORT_ERRORS as exc:
            logger.debug("MQTT disconnect failed: %s", exc)

    async def close(self) -> None:
        await self._close()

    async def _reconnect(self, control_task: asyncio.Future) -> bool:
        """Retry until connected (True) or a control message arrives (False)."""

        while True:
            done, _ = await asyncio.wait({control_task}, timeout=self.reconnect_delay)
            if control_task in done:
                self._log_control(control_task)
                return False
            try:
                await self._open()
            except TRANSPORT_ERRORS as exc:
                self.last_error = str(exc)
                logger.warning(
                    "MQTT reconnect to %s:%s failed: %s; retrying in %.1fs",
                    self.address,
                    self.port,
                    exc,
                    self.reconnect_delay,
                )
                continue
            self.reconnects += 1
            return True

    def _log_control(self, control_task: asyncio.Future) -> None:
        try:
            message = control_task.result()
        except ChannelClosed:
            logger.info("Control channel closed; MQTT session stopping")
        else:
            logger.info("MQTT session received %r; stopping", message)

    async def _publish(self, client: Any, message: PublishMessage) -> None:
        try:
            body = encode_payload(message.payload)
            await client.publish(message.topic, payload=body, qos=0, retain=False)
        except (ValueError, TypeError) as exc:
            self.dropped += 1
            logger.error("Dropping message for topic %r: %s", message.topic, exc)
            return
        self.published += 1
        logger.debug("Published %d bytes to %s", len(body), message.topic)

    async def _relay_inbound(self, client: Any, inbound: Sender) -> None:
        # Awaiting the send stalls transport reads while the inbound channel is full.
        async for message in client.messages:
            relayed = Inbound(topic=_topic_text(message.topic), payload=_payload_bytes(message.payload))
            try:
                await inbound.send(relayed)
            except ChannelClosed:
                logger.warning("Inbound channel closed; no longer relaying broker messages")
                return

    async def run(self, outbound: Receiver, control: ControlReceiver, inbound: Sender) -> None:
        """Serve the connection until shutdown.

        Returns when a control message arrives, the control channel closes, or
        every outbound producer is gone. The outbound channel is closed on the
        way out so a producer's next send fails instead of waiting forever.
        """

        control_task: asyncio.Future = asyncio.ensure_future(control.recv())
        outbound_task: Optional[asyncio.Future] = None
        pending: Optional[PublishMessage] = None
        try:
            while True:
                if self._client is None and not await self._reconnect(control_task):
                    return
                client = self._client
                relay: asyncio.Future = asyncio.ensure_future(self._relay_inbound(client, inbound))
                lost: Optional[BaseException] = None
                try:
                    while True:
                        if control_task.done():
                            self._log_control(control_task)
                            return
                        if pending is not None:
                            await self._publish(client, pending)
                            pending = None
                        if outbound_task is None:
                            outbound_task = asyncio.ensure_future(outbound.recv())

                        done, _ = await asyncio.wait(
                            {control_task, relay, outbound_task},
                            return_when=asyncio.FIRST_COMPLETED,
                        )
                        if control_task in done:
                            continue
                        if relay in done:
                            relay.result()
                            # Relay stopped because nobody reads inbound any more.
                            relay = asyncio.get_running_loop().create_future()
                        if outbound_task in done:
                            finished, outbound_task = outbound_task, None
                            try:
                                item = finished.result()
                            except ChannelClosed:
                                logger.info("Outbound channel closed; MQTT session stopping")
                                return
                            if isinstance(item, Outbound):
                                pending = item.message
                            else:
                                logger.warning("Ignoring unexpected message on outbound channel: %r", item)
                except TRANSPORT_ERRORS as exc:
                    lost = exc
                finally:
                    await _cancel_task(relay)

                self.last_error = str(lost)
                logger.warning("MQTT connection to %s:%s lost: %s; reconnecting", self.address, self.port, lost)
                await self._close()
        finally:
            await _cancel_task(outbound_task)
            await _cancel_task(control_task)
            await self._close()
            outbound.close()
            logger.info(
                "MQTT session stopped (published=%d dropped=%d reconnects=%d)",
                self.published,
                self.dropped,
                self.reconnects,
            )


__all__ = ["MqttSession", "TRANSPORT_ERRORS"]
