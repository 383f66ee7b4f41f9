from gqgmc_mqtt.utils.systemd import SystemdNotifier

__all__ = ["SystemdNotifier"]
