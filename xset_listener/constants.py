"""Constants used across the xset-listener package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "xset-listener"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_BROKER_HOST = "mqtt"
DEFAULT_BROKER_PORT = 1883
DEFAULT_KEEPALIVE_SECONDS = 30

DEFAULT_TOPICS = ("home/monitors/all", "home/monitors/{hostname}")
DEFAULT_QOS = 0
DEFAULT_QUEUE_SIZE = 16

DEFAULT_CLIENT_ID_PREFIX = APP_NAME
