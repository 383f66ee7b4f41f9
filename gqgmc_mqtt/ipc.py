"""Messages and channels passed between the bridge tasks.

Tasks share no mutable state. The poller talks to the MQTT session through a
bounded outbound channel, the session relays broker messages back through a
bounded inbound channel, and a single ``Broadcaster`` carries the shutdown
signal to every task.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Deque, Generic, List, Optional, Tuple, TypeVar, Union

from gqgmc_mqtt.consts import BROADCAST_CAPACITY, CHANNEL_CAPACITY
from gqgmc_mqtt.errors import ChannelClosed

if TYPE_CHECKING:
    from gqgmc_mqtt.payload import Payload

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PublishMessage:
    topic: str
    payload: "Payload"


@dataclass(frozen=True)
class Outbound:
    """Request to publish ``message`` to the broker."""

    message: PublishMessage


@dataclass(frozen=True)
class Inbound:
    """Message delivered by the broker on a subscribed topic."""

    topic: str
    payload: bytes


@dataclass(frozen=True)
class Shutdown:
    """Control message: every task that sees it stops."""

    reason: str = "shutdown"


IPCMessage = Union[Outbound, Inbound, Shutdown]


class _ChannelState:
    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("channel capacity must be at least 1")
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self.closed = asyncio.Event()


class Sender(Generic[T]):
    def __init__(self, state: _ChannelState) -> None:
        self._state = state

    @property
    def closed(self) -> bool:
        return self._state.closed.is_set()

    def qsize(self) -> int:
        return self._state.queue.qsize()

    async def send(self, message: T) -> None:
        """Enqueue ``message``, waiting while the channel is full.

        Raises ``ChannelClosed`` if the channel is closed before the message
        could be enqueued.
        """

        state = self._state
        if state.closed.is_set():
            raise ChannelClosed("channel closed")
        try:
            state.queue.put_nowait(message)
            return
        except asyncio.QueueFull:
            pass

        put = asyncio.ensure_future(state.queue.put(message))
        closed = asyncio.ensure_future(state.closed.wait())
        try:
            await asyncio.wait({put, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if not put.done():
                put.cancel()
        if put.done() and not put.cancelled():
            put.result()
            return
        raise ChannelClosed("channel closed")

    def close(self) -> None:
        self._state.closed.set()


class Receiver(Generic[T]):
    def __init__(self, state: _ChannelState) -> None:
        self._state = state

    @property
    def closed(self) -> bool:
        return self._state.closed.is_set()

    def qsize(self) -> int:
        return self._state.queue.qsize()

    async def recv(self) -> T:
        """Return the next message in FIFO order.

        Messages already queued are still delivered after ``close()``; once the
        queue is drained a closed channel raises ``ChannelClosed``.
        """

        state = self._state
        try:
            return state.queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        if state.closed.is_set():
            raise ChannelClosed("channel closed")

        get = asyncio.ensure_future(state.queue.get())
        closed = asyncio.ensure_future(state.closed.wait())
        try:
            await asyncio.wait({get, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if not get.done():
                get.cancel()
        if get.done() and not get.cancelled():
            return get.result()
        # close() and a put can land in the same loop step; drain before giving up.
        try:
            return state.queue.get_nowait()
        except asyncio.QueueEmpty:
            raise ChannelClosed("channel closed") from None

    def close(self) -> None:
        self._state.closed.set()


def channel(capacity: int = CHANNEL_CAPACITY) -> Tuple[Sender[Any], Receiver[Any]]:
    """Create a bounded single-consumer FIFO channel."""

    state = _ChannelState(capacity)
    return Sender(state), Receiver(state)


class ControlReceiver:
    """One subscriber's view of the control broadcast."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._buffer: Deque[IPCMessage] = deque()
        self._wakeup = asyncio.Event()
        self._closed = False
        self.lagged = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, message: IPCMessage) -> None:
        if len(self._buffer) >= self._capacity:
            dropped = self._buffer.popleft()
            self.lagged += 1
            logger.warning("Control receiver lagging; dropped %r", dropped)
        self._buffer.append(message)
        self._wakeup.set()

    def _close(self) -> None:
        self._closed = True
        self._wakeup.set()

    def try_recv(self) -> Optional[IPCMessage]:
        """Return a buffered message without waiting, or None if there is none."""

        if self._buffer:
            return self._buffer.popleft()
        if self._closed:
            raise ChannelClosed("control broadcast closed")
        return None

    async def recv(self) -> IPCMessage:
        while True:
            if self._buffer:
                return self._buffer.popleft()
            if self._closed:
                raise ChannelClosed("control broadcast closed")
            self._wakeup.clear()
            await self._wakeup.wait()


class Broadcaster:
    """Single sender fanning control messages out to every subscriber."""

    def __init__(self, capacity: int = BROADCAST_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("broadcast capacity must be at least 1")
        self._capacity = capacity
        self._receivers: List[ControlReceiver] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def receiver_count(self) -> int:
        return len(self._receivers)

    def subscribe(self) -> ControlReceiver:
        receiver = ControlReceiver(self._capacity)
        if self._closed:
            receiver._close()
        self._receivers.append(receiver)
        return receiver

    def send(self, message: IPCMessage) -> int:
        if self._closed:
            raise ChannelClosed("control broadcast closed")
        for receiver in self._receivers:
            receiver._push(message)
        return len(self._receivers)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for receiver in self._receivers:
            receiver._close()


__all__ = [
    "Broadcaster",
    "ControlReceiver",
    "IPCMessage",
    "Inbound",
    "Outbound",
    "PublishMessage",
    "Receiver",
    "Sender",
    "Shutdown",
    "channel",
]
