"""Decoding of inbound MQTT payloads into display actions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ActionKind(str, Enum):
    TURN_ON = "on"
    TURN_OFF = "off"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class LogicalAction:
    kind: ActionKind
    payload: bytes = b""

    @property
    def is_known(self) -> bool:
        return self.kind is not ActionKind.UNKNOWN


_TOKENS = {
    "on": ActionKind.TURN_ON,
    "off": ActionKind.TURN_OFF,
}


def interpret(payload: bytes) -> LogicalAction:
    """Map a raw payload to a :class:`LogicalAction`.

    Only the exact strings ``on`` and ``off`` are recognised. Anything else,
    including payloads that are not valid UTF-8, is ``UNKNOWN``.
    """

    raw = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        return LogicalAction(ActionKind.UNKNOWN, raw)
    return LogicalAction(_TOKENS.get(text, ActionKind.UNKNOWN), raw)
