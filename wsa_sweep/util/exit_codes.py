"""Exit codes for the wsa-peakfind driver.

Usage:
    from wsa_sweep.util.exit_codes import ExitCode
    sys.exit(ExitCode.CAPTURE_TIMEOUT)
"""

from __future__ import annotations

from wsa_sweep.errors import (
    CaptureTimeout,
    DeviceBusy,
    InvalidPlan,
    TransportError,
)


class ExitCode:
    """Exit code constants.

    Attributes:
        SUCCESS: Sweep completed and peaks were reported.
        GENERAL_ERROR: Unspecified runtime error.
        INVALID_ARGS: Command-line or sweep plan validation failed.
        DEVICE_UNAVAILABLE: Instrument unreachable, busy, or the link failed.
        CAPTURE_TIMEOUT: A capture produced no data within its deadline.
    """

    SUCCESS: int = 0
    GENERAL_ERROR: int = 1
    INVALID_ARGS: int = 2
    DEVICE_UNAVAILABLE: int = 4
    CAPTURE_TIMEOUT: int = 5

    @classmethod
    def message(cls, code: int) -> str:
        messages = {
            cls.SUCCESS: "Success",
            cls.GENERAL_ERROR: "General error",
            cls.INVALID_ARGS: "Invalid arguments",
            cls.DEVICE_UNAVAILABLE: "Instrument unavailable",
            cls.CAPTURE_TIMEOUT: "Capture timed out",
        }
        return messages.get(code, f"Unknown exit code {code}")

    @classmethod
    def for_error(cls, exc: BaseException) -> int:
        if isinstance(exc, InvalidPlan):
            return cls.INVALID_ARGS
        if isinstance(exc, CaptureTimeout):
            return cls.CAPTURE_TIMEOUT
        if isinstance(exc, (DeviceBusy, TransportError)):
            return cls.DEVICE_UNAVAILABLE
        return cls.GENERAL_ERROR
