"""Headless engine for instrument lifecycle and sweep requests."""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from wsa_sweep.config import SweepConfig
from wsa_sweep.dsp.processor import SpectrumProcessor
from wsa_sweep.errors import CaptureTimeout, DeviceBusy, SweepError, TransportError
from wsa_sweep.peaks import Peak, find_peaks
from wsa_sweep.report import make_error_report, make_peaks_report
from wsa_sweep.sdr.wsa import DeviceControl, SimulatedTone, SimulatedWsa, WsaDevice
from wsa_sweep.sweep import FrequencyPlan, SweepBuffer, sweep
from wsa_sweep.util.logging import get_logger

logger = get_logger(__name__)

# Tones the simulated instrument carries when no device is supplied.
SIMULATED_TONES = (
    SimulatedTone(frequency_hz=2_432_100_000, amplitude_dbm=-20.0),
    SimulatedTone(frequency_hz=2_750_000_000, amplitude_dbm=-35.0),
)


class Engine:
    """
    Owns the instrument handle and runs sweeps under the retry policy.

    One lock serialises sweeps so concurrent HTTP requests never interleave
    captures on the same instrument.
    """

    def __init__(self, cfg: SweepConfig, device: Optional[DeviceControl] = None):
        self.cfg = cfg
        self._lock = threading.Lock()
        self._device = device
        self._owns_device = device is None
        self._connected = False
        self._proc = SpectrumProcessor(cfg.samples_per_packet, cfg.window)
        self._last_error: Optional[Dict[str, Any]] = None
        self._sweeps_completed = 0
        self._last_sweep_ms = 0.0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def last_error(self) -> Optional[Dict[str, Any]]:
        return self._last_error

    def status(self) -> Dict[str, Any]:
        return {
            "connected": self._connected,
            "host": None if self.cfg.simulate else self.cfg.host,
            "simulated": bool(self.cfg.simulate),
            "mode": self.cfg.mode,
            "samples_per_packet": int(self.cfg.samples_per_packet),
            "window": self._proc.window_name,
            "sweeps_completed": self._sweeps_completed,
            "last_sweep_ms": round(self._last_sweep_ms, 1),
            "last_error": self._last_error,
        }

    def connect(self) -> None:
        """Open the instrument if needed, take the acquisition lock and reset it."""

        with self._lock:
            self._connect_locked()

    def disconnect(self) -> None:
        with self._lock:
            self._drop_connection()
            logger.info("Disconnected")

    def sweep(self, plan: FrequencyPlan, mode: Optional[str] = None) -> SweepBuffer:
        with self._lock:
            return self._sweep_locked(plan, (mode or self.cfg.mode).upper())

    def measure(
        self,
        plan: FrequencyPlan,
        max_peaks: int,
        mode: Optional[str] = None,
        min_separation_hz: Optional[int] = None,
    ) -> Tuple[SweepBuffer, List[Peak]]:
        if max_peaks < 0:
            raise ValueError(f"max_peaks must not be negative, got {max_peaks}")
        if min_separation_hz is None:
            min_separation_hz = self.cfg.min_peak_separation_hz
        buf = self.sweep(plan, mode)
        return buf, find_peaks(buf, max_peaks, min_separation_hz=min_separation_hz)

    def run(self, plan: FrequencyPlan, max_peaks: int, mode: Optional[str] = None) -> Dict[str, Any]:
        """Sweep and return the peaks report frame."""

        mode = (mode or self.cfg.mode).upper()
        buf, peaks = self.measure(plan, max_peaks, mode)
        return make_peaks_report(buf, peaks, mode=mode)

    def _connect_locked(self) -> None:
        if self._connected:
            return
        try:
            if self._device is None:
                self._device = self._open_device()
            device = self._device
            if not device.request_acquisition_access():
                raise DeviceBusy(
                    "Acquisition lock is held by another client",
                    details={"host": self.cfg.host},
                )
            # Leave no capture from a previous owner in flight.
            device.abort_capture()
            device.flush()
        except SweepError as exc:
            self._record_error(exc)
            self._drop_connection()
            raise
        self._connected = True

    def _open_device(self) -> DeviceControl:
        if self.cfg.simulate:
            logger.info("Using simulated instrument")
            # Sample rate chosen so the configured rbw needs no decimation.
            return SimulatedWsa(
                SIMULATED_TONES,
                sample_rate_hz=self.cfg.samples_per_packet * self.cfg.rbw_hz,
            )
        return WsaDevice(self.cfg.host, scpi_port=self.cfg.scpi_port, data_port=self.cfg.data_port)

    def _sweep_locked(self, plan: FrequencyPlan, mode: str) -> SweepBuffer:
        self._connect_locked()
        attempts = max(0, int(self.cfg.capture_retries)) + 1
        attempt = 1
        while True:
            started = time.monotonic()
            try:
                buf = sweep(self._device, plan, mode, config=self.cfg, processor=self._proc)
            except CaptureTimeout as exc:
                if attempt >= attempts:
                    self._record_error(exc)
                    raise
                logger.warning(
                    "Capture timed out (attempt %d of %d); retrying in %d ms",
                    attempt,
                    attempts,
                    self.cfg.retry_backoff_ms,
                    extra={"error_type": exc.error_code},
                )
                attempt += 1
                time.sleep(max(0, self.cfg.retry_backoff_ms) / 1000.0)
                continue
            except TransportError as exc:
                self._record_error(exc)
                self._drop_connection()
                raise
            except SweepError as exc:
                self._record_error(exc)
                raise
            self._last_sweep_ms = (time.monotonic() - started) * 1000.0
            self._sweeps_completed += 1
            self._last_error = None
            return buf

    def _drop_connection(self) -> None:
        # The next request reconnects from scratch.
        if self._owns_device and self._device is not None:
            self._device.close()
            self._device = None
        self._connected = False

    def _record_error(self, exc: SweepError) -> None:
        self._last_error = make_error_report(exc)
        logger.error("%s: %s", exc.error_code, exc.message, extra={"error_type": exc.error_code})
