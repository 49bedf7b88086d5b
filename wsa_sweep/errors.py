"""Error taxonomy for the sweep pipeline.

Every failure the core can surface is a SweepError subclass carrying a stable
error_code and a recoverable flag, so the CLI and HTTP layers can report the
kind of failure without parsing messages.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class SweepError(Exception):
    """Base class for all sweep pipeline errors."""

    error_code = "sweep_error"
    recoverable = False

    def __init__(self, message: str, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details) if details else None


class TransportError(SweepError):
    """Link-level I/O failure talking to the instrument."""

    error_code = "transport_error"


class CaptureTimeout(SweepError):
    """No IF data packet arrived within the read deadline."""

    error_code = "capture_timeout"
    recoverable = True


class DeviceBusy(SweepError):
    """The instrument rejected the trigger or the acquisition lock."""

    error_code = "device_busy"
    recoverable = True


class MalformedPacket(SweepError):
    """A packet's framing or body is inconsistent."""

    error_code = "malformed_packet"


class UnknownStreamId(SweepError):
    """A packet carried a stream id that is not a known constant.

    Non-fatal: readers log it and keep scanning.
    """

    error_code = "unknown_stream_id"
    recoverable = True

    def __init__(self, stream_id: int, header: Any = None):
        super().__init__(
            f"Unknown stream id 0x{stream_id:08x}",
            details={"stream_id": f"0x{stream_id:08x}"},
        )
        self.stream_id = stream_id
        self.header = header


class InvalidPlan(SweepError):
    """Sweep parameters rejected before any device I/O."""

    error_code = "invalid_plan"

    def __init__(self, message: str, parameter: str, value: Any):
        super().__init__(message, details={"parameter": parameter, "value": value})
        self.parameter = parameter
        self.value = value


class AllocationFailure(SweepError):
    """The composite spectrum buffer could not be sized."""

    error_code = "allocation_failure"
