"""Static table of display power commands per host platform."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Sequence, Tuple

from .errors import BridgeError, ErrorCategory

CommandLine = Tuple[str, ...]


class PlatformKey(str, Enum):
    """Host operating systems the bridge knows how to drive."""

    DARWIN = "darwin"
    LINUX = "linux"


class UnsupportedPlatformError(BridgeError):
    """Raised when no commands are defined for the host platform."""

    category = ErrorCategory.STARTUP

    def __init__(self, platform: str) -> None:
        super().__init__(f"Unsupported OS {platform}")
        self.platform = platform


@dataclass(frozen=True, slots=True)
class ActionSpec:
    """The pair of command lines that switch a display on and off."""

    on_command: CommandLine
    off_command: CommandLine

    def __post_init__(self) -> None:
        for name in ("on_command", "off_command"):
            value = tuple(getattr(self, name))
            if not value or not all(value):
                raise ValueError(f"{name} must be a non-empty command line")
            object.__setattr__(self, name, value)


DEFAULT_ACTIONS: Mapping[PlatformKey, ActionSpec] = {
    PlatformKey.DARWIN: ActionSpec(
        on_command=("caffeinate", "-u", "-t", "2"),
        off_command=("pmset", "displaysleepnow"),
    ),
    PlatformKey.LINUX: ActionSpec(
        on_command=("xset", "dpms", "force", "on"),
        off_command=("xset", "dpms", "force", "off"),
    ),
}


class ActionTable:
    """Read-only lookup from platform to :class:`ActionSpec`."""

    def __init__(self, actions: Optional[Mapping[PlatformKey, ActionSpec]] = None) -> None:
        source = DEFAULT_ACTIONS if actions is None else actions
        self._actions: Mapping[str, ActionSpec] = MappingProxyType(
            {PlatformKey(key).value: spec for key, spec in source.items()}
        )

    def lookup(self, platform: str) -> ActionSpec:
        key = platform.value if isinstance(platform, PlatformKey) else platform
        try:
            return self._actions[key]
        except KeyError:
            raise UnsupportedPlatformError(str(key)) from None

    def supported_platforms(self) -> Sequence[str]:
        return sorted(self._actions)

    def __contains__(self, platform: object) -> bool:
        key = platform.value if isinstance(platform, PlatformKey) else platform
        return key in self._actions


def detect_platform(override: Optional[str] = None) -> str:
    """Return the platform key for this host.

    ``sys.platform`` reports ``linux`` on every modern Linux interpreter, so
    it maps directly onto :class:`PlatformKey` values.
    """

    if override:
        return override.strip().lower()
    if sys.platform.startswith("linux"):
        return PlatformKey.LINUX.value
    return sys.platform
