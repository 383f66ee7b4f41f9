"""Process entry point: wire the instrument, the MQTT session and the poller together."""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import NoReturn, Optional

from gqgmc_mqtt.config import AppConfig, load_config
from gqgmc_mqtt.consts import BROADCAST_CAPACITY, CHANNEL_CAPACITY
from gqgmc_mqtt.errors import FatalError, OutboundChannelClosed
from gqgmc_mqtt.hardware import GMCDevice, InstrumentDriver
from gqgmc_mqtt.ipc import Broadcaster, Shutdown, channel
from gqgmc_mqtt.observability import configure_logging
from gqgmc_mqtt.services import MqttSession, Poller, consume_inbound
from gqgmc_mqtt.services.mqtt_session import ClientFactory
from gqgmc_mqtt.utils.systemd import SystemdNotifier

logger = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def die(message: str) -> NoReturn:
    print(" ".join(str(message).split()), flush=True)
    sys.exit(1)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, broadcaster: Broadcaster) -> None:
    def _request_shutdown(name: str) -> None:
        if broadcaster.closed:
            return
        logger.info("Received %s; shutting down", name)
        broadcaster.send(Shutdown(reason=name))

    for sig in _SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s not supported here", sig.name)


def _remove_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    for sig in _SHUTDOWN_SIGNALS:
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError):
            pass


async def run(
    config: AppConfig,
    *,
    driver: Optional[InstrumentDriver] = None,
    broadcaster: Optional[Broadcaster] = None,
    notifier: Optional[SystemdNotifier] = None,
    client_factory: Optional[ClientFactory] = None,
) -> None:
    """Run the bridge until shutdown is broadcast.

    Fatal conditions surface as ``FatalError``. Shutdown is requested by
    SIGINT/SIGTERM or by sending on ``broadcaster``.
    """

    notifier = notifier or SystemdNotifier()
    broadcaster = broadcaster or Broadcaster(BROADCAST_CAPACITY)
    notifier.status("Connecting to MQTT broker")
    session = await MqttSession.connect(
        config.client_id,
        config.mqtt_server_addr,
        config.server_port,
        config.mqtt_username,
        config.mqtt_password,
        keepalive=config.mqtt_keepalive_seconds,
        reconnect_delay=config.mqtt_reconnect_delay_seconds,
        subscriptions=config.mqtt_subscribe_topics,
        client_factory=client_factory,
    )

    device: Optional[GMCDevice] = None
    if driver is None:
        notifier.status(f"Opening instrument on {config.serial_port}")
        device = GMCDevice(config.serial_port, config.serial_baudrate, timeout=config.serial_timeout_seconds)
        try:
            await asyncio.to_thread(device.open)
        except FatalError:
            await session.close()
            raise
        driver = device

    outbound_tx, outbound_rx = channel(CHANNEL_CAPACITY)
    inbound_tx, inbound_rx = channel(CHANNEL_CAPACITY)
    session_control = broadcaster.subscribe()
    poller = Poller(
        driver,
        outbound_tx,
        broadcaster.subscribe(),
        interval=config.poll_interval_seconds,
    )

    loop = asyncio.get_running_loop()
    _install_signal_handlers(loop, broadcaster)
    session_task = asyncio.create_task(session.run(outbound_rx, session_control, inbound_tx), name="mqtt-session")
    consumer_task = asyncio.create_task(consume_inbound(inbound_rx), name="inbound-consumer")

    notifier.ready("Publishing Geiger counter readings")
    notifier.start_watchdog()
    session_error: Optional[Exception] = None
    try:
        await poller.run()
    finally:
        notifier.stopping("Shutting down")
        _remove_signal_handlers(loop)
        broadcaster.close()
        try:
            await session_task
        except Exception as exc:
            # An error already raised by the poller takes precedence.
            logger.exception("MQTT session task failed")
            session_error = exc
        finally:
            inbound_tx.close()
            await consumer_task
            await notifier.stop_watchdog()
            if device is not None:
                device.close()
        logger.info("Bridge stopped")
    if session_error is not None:
        raise OutboundChannelClosed(f"MQTT session failed: {session_error}") from session_error


def main() -> None:
    configure_logging("gqgmc-mqtt")
    try:
        config = load_config()
        configure_logging(config.service_name, config.log_level)
        asyncio.run(run(config))
    except FatalError as exc:
        die(str(exc))


if __name__ == "__main__":
    main()
