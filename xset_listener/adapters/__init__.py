"""Adapter modules for external integrations."""

from .mqtt import MQTTClient, MQTTConnectionError, MQTTSubscriptionError

__all__ = [
    "MQTTClient",
    "MQTTConnectionError",
    "MQTTSubscriptionError",
]
