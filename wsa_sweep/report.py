"""Report frames for sweep results.

Frames are plain dicts built via helpers and validated against the JSON
schema returned by report_json_schema(). The CLI prints them with --json and
the HTTP server returns them as response bodies.
"""

from __future__ import annotations

import time
from typing import Any, Mapping, Optional, Sequence

from wsa_sweep.errors import SweepError
from wsa_sweep.peaks import Peak
from wsa_sweep.sweep import SweepBuffer

PROTO_VERSION = "1.0"
FRAME_TYPES = {
    "peaks",
    "error",
}


def report_json_schema() -> dict[str, Any]:
    """Return the JSON schema for report frames."""

    base_fields = {
        "proto_version": {"const": PROTO_VERSION},
        "type": {"enum": sorted(FRAME_TYPES)},
        "ts_monotonic_ns": {"type": "integer", "minimum": 0},
    }

    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "title": "WSA Sweep Report Frames",
        "type": "object",
        "oneOf": [
            {
                "title": "Peaks Frame",
                "type": "object",
                "properties": {
                    **base_fields,
                    "type": {"const": "peaks"},
                    "mode": {"type": "string"},
                    "fstart_hz": {"type": "integer", "minimum": 0},
                    "fstop_hz": {"type": "integer", "minimum": 0},
                    "rbw_hz": {"type": "integer", "minimum": 1},
                    "n_bins": {"type": "integer", "minimum": 1},
                    "step_count": {"type": "integer", "minimum": 1},
                    "dropped_packets": {"type": "integer", "minimum": 0},
                    "y_units": {"const": "dBm"},
                    "peaks": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "frequency_hz": {"type": "integer"},
                                "amplitude_dbm": {"type": "number"},
                            },
                            "required": ["frequency_hz", "amplitude_dbm"],
                            "additionalProperties": False,
                        },
                    },
                },
                "required": [
                    "proto_version",
                    "type",
                    "ts_monotonic_ns",
                    "mode",
                    "fstart_hz",
                    "fstop_hz",
                    "rbw_hz",
                    "n_bins",
                    "step_count",
                    "dropped_packets",
                    "y_units",
                    "peaks",
                ],
                "additionalProperties": False,
            },
            {
                "title": "Error Frame",
                "type": "object",
                "properties": {
                    **base_fields,
                    "type": {"const": "error"},
                    "error_code": {"type": "string"},
                    "message": {"type": "string"},
                    "details": {"type": ["object", "null"]},
                    "recoverable": {"type": "boolean"},
                },
                "required": [
                    "proto_version",
                    "type",
                    "ts_monotonic_ns",
                    "error_code",
                    "message",
                    "recoverable",
                ],
                "additionalProperties": False,
            },
        ],
    }


def make_frame_base(*, frame_type: str, ts_monotonic_ns: Optional[int] = None) -> dict[str, Any]:
    """Build shared metadata fields for report frames."""

    if frame_type not in FRAME_TYPES:
        raise ValueError(f"Unsupported frame type: {frame_type}")
    if ts_monotonic_ns is None:
        ts_monotonic_ns = time.monotonic_ns()
    return {
        "proto_version": PROTO_VERSION,
        "type": frame_type,
        "ts_monotonic_ns": int(ts_monotonic_ns),
    }


def make_peaks_report(
    buf: SweepBuffer,
    peaks: Sequence[Peak],
    *,
    mode: str,
    ts_monotonic_ns: Optional[int] = None,
) -> dict[str, Any]:
    frame = make_frame_base(frame_type="peaks", ts_monotonic_ns=ts_monotonic_ns)
    plan = buf.plan
    frame.update(
        {
            "mode": str(mode),
            "fstart_hz": int(plan.fstart_hz),
            "fstop_hz": int(plan.fstop_hz),
            "rbw_hz": int(plan.rbw_hz),
            "n_bins": len(buf),
            "step_count": int(buf.step_count),
            "dropped_packets": int(buf.dropped_packets),
            "y_units": "dBm",
            "peaks": [
                {"frequency_hz": int(p.frequency_hz), "amplitude_dbm": float(p.amplitude_dbm)}
                for p in peaks
            ],
        }
    )
    return frame


def make_error_report(
    exc: BaseException,
    *,
    ts_monotonic_ns: Optional[int] = None,
) -> dict[str, Any]:
    """Error frame for any exception; non-SweepErrors report as internal_error."""

    frame = make_frame_base(frame_type="error", ts_monotonic_ns=ts_monotonic_ns)
    if isinstance(exc, SweepError):
        frame.update(
            {
                "error_code": exc.error_code,
                "message": exc.message,
                "details": _jsonable(exc.details),
                "recoverable": exc.recoverable,
            }
        )
    else:
        frame.update(
            {
                "error_code": "internal_error",
                "message": str(exc) or type(exc).__name__,
                "details": {"exception": type(exc).__name__},
                "recoverable": False,
            }
        )
    return frame


def _jsonable(details: Optional[Mapping[str, Any]]) -> Optional[dict[str, Any]]:
    if details is None:
        return None
    out: dict[str, Any] = {}
    for key, value in details.items():
        if value is None or isinstance(value, (bool, int, float, str)):
            out[str(key)] = value
        else:
            out[str(key)] = str(value)
    return out
