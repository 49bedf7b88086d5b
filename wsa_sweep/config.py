"""Sweep configuration defaults.

Defines the SweepConfig dataclass and default values. This module should not
import device, DSP or server classes, and it should stay focused on
configuration data only.
"""

from dataclasses import dataclass


@dataclass
class SweepConfig:
    """
    Configuration for one sweep-and-peakfind run.

    Notes
    RBW is the width of one output bin. The capture geometry (samples per
    packet) fixes how many bins one capture contributes: spp / 2.
    """

    # Instrument endpoint. SCPI control and VRT data use separate sockets.
    host: str = "192.168.1.100"
    scpi_port: int = 37001
    data_port: int = 37000

    # Detector/RF path string passed to the instrument.
    mode: str = "SH"

    # Requested span and resolution bandwidth.
    fstart_hz: int = 2_000_000_000
    fstop_hz: int = 3_000_000_000
    rbw_hz: int = 100_000

    # Peak reporting.
    peaks: int = 1
    min_peak_separation_hz: int = 0

    # Capture geometry. spp must be a power of two.
    samples_per_packet: int = 1024
    packets_per_block: int = 1

    # Read deadline for one capture, in milliseconds.
    read_timeout_ms: int = 5000

    # Caller-side retry policy for capture timeouts. The sweep core never retries.
    capture_retries: int = 0
    retry_backoff_ms: int = 250

    # Estimator window, fixed for a whole sweep.
    window: str = "Flat top"

    # Used when a capture carries no digitizer context.
    reference_level_dbm: float = 0.0

    # Upper bound on the composite buffer size.
    max_bins: int = 10_000_000

    # Run against the in-memory instrument instead of hardware.
    simulate: bool = False

    # Logging.
    log_level: str = "INFO"
    log_json_file: str = ""
