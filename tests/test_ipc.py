from __future__ import annotations

import asyncio

import pytest

from gqgmc_mqtt.errors import ChannelClosed
from gqgmc_mqtt.ipc import Broadcaster, Shutdown, channel


def test_channel_preserves_fifo_order() -> None:
    async def runner():
        tx, rx = channel(5)
        for value in range(5):
            await tx.send(value)
        return [await rx.recv() for _ in range(5)]

    assert asyncio.run(runner()) == [0, 1, 2, 3, 4]


def test_full_channel_makes_sender_wait() -> None:
    async def runner():
        tx, rx = channel(2)
        await tx.send("a")
        await tx.send("b")
        blocked = asyncio.create_task(tx.send("c"))
        await asyncio.sleep(0.02)
        assert not blocked.done()
        assert tx.qsize() == 2

        first = await rx.recv()
        await asyncio.wait_for(blocked, 1.0)
        return [first, await rx.recv(), await rx.recv()]

    assert asyncio.run(runner()) == ["a", "b", "c"]


def test_close_wakes_blocked_sender() -> None:
    async def runner() -> None:
        tx, rx = channel(1)
        await tx.send("a")
        blocked = asyncio.create_task(tx.send("b"))
        await asyncio.sleep(0.01)
        rx.close()
        with pytest.raises(ChannelClosed):
            await asyncio.wait_for(blocked, 1.0)

    asyncio.run(runner())


def test_receiver_drains_before_reporting_close() -> None:
    async def runner():
        tx, rx = channel(3)
        await tx.send(1)
        await tx.send(2)
        tx.close()
        received = [await rx.recv(), await rx.recv()]
        with pytest.raises(ChannelClosed):
            await rx.recv()
        with pytest.raises(ChannelClosed):
            await tx.send(3)
        return received

    assert asyncio.run(runner()) == [1, 2]


def test_waiting_receiver_sees_close() -> None:
    async def runner() -> None:
        tx, rx = channel(1)
        waiting = asyncio.create_task(rx.recv())
        await asyncio.sleep(0.01)
        tx.close()
        with pytest.raises(ChannelClosed):
            await asyncio.wait_for(waiting, 1.0)

    asyncio.run(runner())


def test_channel_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError):
        channel(0)


def test_broadcast_reaches_every_receiver() -> None:
    async def runner():
        broadcaster = Broadcaster()
        first, second = broadcaster.subscribe(), broadcaster.subscribe()
        reached = broadcaster.send(Shutdown(reason="signal"))
        assert broadcaster.receiver_count == 2
        return reached, await first.recv(), await second.recv()

    reached, first, second = asyncio.run(runner())
    assert reached == 2
    assert first == second == Shutdown(reason="signal")


def test_lagging_receiver_drops_oldest() -> None:
    broadcaster = Broadcaster(capacity=2)
    receiver = broadcaster.subscribe()
    for index in range(3):
        broadcaster.send(Shutdown(reason=str(index)))

    assert receiver.lagged == 1
    assert receiver.try_recv() == Shutdown(reason="1")
    assert receiver.try_recv() == Shutdown(reason="2")
    assert receiver.try_recv() is None


def test_closed_broadcaster() -> None:
    async def runner() -> None:
        broadcaster = Broadcaster()
        receiver = broadcaster.subscribe()
        broadcaster.send(Shutdown())
        broadcaster.close()

        assert await receiver.recv() == Shutdown()
        with pytest.raises(ChannelClosed):
            await receiver.recv()
        with pytest.raises(ChannelClosed):
            broadcaster.send(Shutdown())
        assert broadcaster.subscribe().closed

    asyncio.run(runner())


def test_close_wakes_waiting_control_receiver() -> None:
    async def runner() -> None:
        broadcaster = Broadcaster()
        receiver = broadcaster.subscribe()
        waiting = asyncio.create_task(receiver.recv())
        await asyncio.sleep(0.01)
        broadcaster.close()
        with pytest.raises(ChannelClosed):
            await asyncio.wait_for(waiting, 1.0)

    asyncio.run(runner())
