from __future__ import annotations

import asyncio

import pytest

from gqgmc_mqtt.errors import OutboundChannelClosed
from gqgmc_mqtt.ipc import Broadcaster, Inbound, Outbound, Shutdown, channel
from gqgmc_mqtt.observability import get_cycle_id
from gqgmc_mqtt.payload import DiscoveryPayload, StatePayload, build_payloads
from gqgmc_mqtt.services.poller import Poller, consume_inbound
from tests.fakes import FakeDriver, wait_until


def test_poll_once_enqueues_discovery_before_state() -> None:
    async def runner():
        tx, rx = channel(10)
        poller = Poller(FakeDriver(), tx, Broadcaster().subscribe(), interval=60)
        sent = await poller.poll_once()
        return sent, [await rx.recv(), await rx.recv()]

    sent, (first, second) = asyncio.run(runner())

    assert sent == 2
    assert isinstance(first, Outbound) and isinstance(second, Outbound)
    assert first.message.topic == "homeassistant/sensor/12345/geiger_counter_cpm/config"
    assert isinstance(first.message.payload, DiscoveryPayload)
    assert second.message.topic == "gqgmcmqtt/12345/geiger_counter_cpm"
    assert isinstance(second.message.payload, StatePayload)
    assert second.message.payload.value == 42


@pytest.mark.parametrize(
    "driver",
    [FakeDriver(cpm=0), FakeDriver(fail="version"), FakeDriver(fail="serial"), FakeDriver(fail="cpm")],
)
def test_skipped_cycle_sends_nothing(driver) -> None:
    async def runner():
        tx, rx = channel(10)
        poller = Poller(driver, tx, Broadcaster().subscribe(), interval=60)
        return await poller.poll_once(), rx.qsize()

    assert asyncio.run(runner()) == (0, 0)


def test_closed_outbound_channel_is_fatal() -> None:
    async def runner() -> None:
        tx, rx = channel(10)
        rx.close()
        poller = Poller(FakeDriver(), tx, Broadcaster().subscribe(), interval=60)
        await poller.poll_once()

    with pytest.raises(OutboundChannelClosed):
        asyncio.run(runner())


def test_each_cycle_gets_its_own_cycle_id() -> None:
    seen = []

    async def builder(driver):
        seen.append(get_cycle_id())
        return await build_payloads(driver)

    async def runner():
        tx, _ = channel(10)
        poller = Poller(FakeDriver(), tx, Broadcaster().subscribe(), interval=60, builder=builder)
        await poller.poll_once()
        await poller.poll_once()
        return get_cycle_id()

    assert asyncio.run(runner()) is None
    assert len(seen) == 2
    assert all(seen)
    assert seen[0] != seen[1]


def test_run_stops_on_shutdown_without_further_sends() -> None:
    async def runner():
        tx, rx = channel(10)
        control = Broadcaster()
        poller = Poller(FakeDriver(), tx, control.subscribe(), interval=60)
        task = asyncio.create_task(poller.run())
        await wait_until(lambda: rx.qsize() == 2)
        control.send(Shutdown())
        await asyncio.wait_for(task, 1.0)
        return poller, rx.qsize()

    poller, queued = asyncio.run(runner())

    assert poller.cycles == 1
    assert queued == 2


def test_run_polls_again_after_interval() -> None:
    async def runner():
        tx, rx = channel(100)
        control = Broadcaster()
        driver = FakeDriver()
        poller = Poller(driver, tx, control.subscribe(), interval=0.01)
        task = asyncio.create_task(poller.run())
        await wait_until(lambda: poller.cycles >= 2)
        control.close()
        await asyncio.wait_for(task, 1.0)
        return poller

    poller = asyncio.run(runner())
    assert poller.enqueued >= 4


def test_shutdown_before_first_cycle() -> None:
    async def runner():
        tx, rx = channel(10)
        control = Broadcaster()
        receiver = control.subscribe()
        control.send(Shutdown())
        driver = FakeDriver()
        poller = Poller(driver, tx, receiver, interval=60)
        await asyncio.wait_for(poller.run(), 1.0)
        return driver, rx.qsize()

    driver, queued = asyncio.run(runner())
    assert driver.calls == []
    assert queued == 0


def test_full_outbound_channel_holds_the_poller() -> None:
    async def runner():
        tx, rx = channel(1)
        poller = Poller(FakeDriver(), tx, Broadcaster().subscribe(), interval=60)
        cycle = asyncio.create_task(poller.poll_once())
        await asyncio.sleep(0.02)
        assert not cycle.done()
        first = await rx.recv()
        second = await rx.recv()
        assert await asyncio.wait_for(cycle, 1.0) == 2
        return first, second

    first, second = asyncio.run(runner())
    assert isinstance(first.message.payload, DiscoveryPayload)
    assert isinstance(second.message.payload, StatePayload)


def test_consume_inbound_returns_when_closed() -> None:
    async def runner() -> None:
        tx, rx = channel(5)
        await tx.send(Inbound(topic="gqgmcmqtt/cmd", payload=b"ping"))
        tx.close()
        await asyncio.wait_for(consume_inbound(rx), 1.0)
        assert rx.qsize() == 0

    asyncio.run(runner())
