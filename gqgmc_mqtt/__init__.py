"""Bridge a GQ GMC Geiger counter to Home Assistant over MQTT."""

__version__ = "0.1.0"
