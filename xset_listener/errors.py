"""Error taxonomy shared by the bridge components."""

from __future__ import annotations

from enum import Enum
from typing import Dict


class ErrorCategory(str, Enum):
    """Which stage of the bridge a fatal error belongs to."""

    STARTUP = "startup"
    CONNECTION = "connection"
    SUBSCRIPTION = "subscription"
    COMMAND = "command"


EXIT_OK = 0
EXIT_UNEXPECTED = 1

EXIT_CODES: Dict[ErrorCategory, int] = {
    ErrorCategory.STARTUP: 2,
    ErrorCategory.CONNECTION: 3,
    ErrorCategory.SUBSCRIPTION: 4,
    ErrorCategory.COMMAND: 5,
}


class BridgeError(RuntimeError):
    """Base class for errors the supervisor knows how to classify."""

    category: ErrorCategory = ErrorCategory.STARTUP


def exit_code_for(exc: BaseException) -> int:
    """Map an exception to the process exit status."""

    if isinstance(exc, BridgeError):
        return EXIT_CODES[exc.category]
    return EXIT_UNEXPECTED
