"""MQTT-driven display power bridge."""

__version__ = "0.1.0"
