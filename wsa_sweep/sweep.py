"""Sweep planning and spectrum stitching.

A sweep covers [fstart, fstop) with bins of width rbw. Each capture
contributes spp / 2 bins; captures run in ascending frequency and their bins
are copied into one composite buffer so that bin i is always fstart + i*rbw,
however many captures it took.
"""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import List, Optional

import numpy as np

from wsa_sweep.capture import capture_one_block
from wsa_sweep.config import SweepConfig
from wsa_sweep.dsp.processor import SpectrumProcessor
from wsa_sweep.errors import AllocationFailure, InvalidPlan, TransportError
from wsa_sweep.protocol import SequenceTracker
from wsa_sweep.sdr.wsa import DeviceControl
from wsa_sweep.util.logging import get_logger

logger = get_logger(__name__)

# Allowed mismatch between the instrument's bin width and the requested RBW.
RBW_TOLERANCE = 0.01


@dataclass(frozen=True)
class FrequencyPlan:
    """Requested span and resolution. Validated on construction."""

    fstart_hz: int
    fstop_hz: int
    rbw_hz: int

    def __post_init__(self) -> None:
        for name in ("fstart_hz", "fstop_hz", "rbw_hz"):
            value = getattr(self, name)
            try:
                coerced = int(value)
            except (TypeError, ValueError, OverflowError):
                raise InvalidPlan(f"{name} must be an integer", name, value) from None
            if coerced != value:
                raise InvalidPlan(f"{name} must be a whole number of Hz", name, value)
            object.__setattr__(self, name, coerced)

        if self.fstart_hz < 0:
            raise InvalidPlan("fstart must not be negative", "fstart_hz", self.fstart_hz)
        if self.rbw_hz <= 0:
            raise InvalidPlan("rbw must be positive", "rbw_hz", self.rbw_hz)
        if self.fstop_hz <= self.fstart_hz:
            raise InvalidPlan("fstop must be above fstart", "fstop_hz", self.fstop_hz)
        if self.fstop_hz - self.fstart_hz < self.rbw_hz:
            raise InvalidPlan("span must be at least one rbw wide", "rbw_hz", self.rbw_hz)

    @property
    def bin_count(self) -> int:
        return (self.fstop_hz - self.fstart_hz) // self.rbw_hz

    @property
    def bin_hz(self) -> int:
        return self.rbw_hz

    def frequency_of(self, index: int) -> int:
        if not 0 <= index < self.bin_count:
            raise IndexError(f"bin {index} outside 0..{self.bin_count - 1}")
        return self.fstart_hz + index * self.rbw_hz

    def frequencies(self) -> np.ndarray:
        return self.fstart_hz + np.arange(self.bin_count, dtype=np.int64) * self.rbw_hz


@dataclass(frozen=True)
class SweepBuffer:
    """Completed composite spectrum. power_dbm is read-only."""

    plan: FrequencyPlan
    power_dbm: np.ndarray
    step_count: int
    dropped_packets: int = 0

    def __len__(self) -> int:
        return int(self.power_dbm.size)

    def frequency_of(self, index: int) -> int:
        return self.plan.frequency_of(index)

    def frequencies(self) -> np.ndarray:
        return self.plan.frequencies()


@dataclass(frozen=True)
class SweepStep:
    index: int
    center_hz: int
    offset: int
    count: int


def plan_steps(plan: FrequencyPlan, bins_per_capture: int) -> List[SweepStep]:
    """
    Split the plan into captures of bins_per_capture bins each (spp / 2).

    Step k fills slots [k*B, k*B + count). Its centre sits half a block above
    the step's first bin, so local bin j lands on fstart + (k*B + j)*rbw.
    """

    bins_per_capture = int(bins_per_capture)
    if bins_per_capture < 1:
        raise ValueError(f"bins_per_capture must be positive, got {bins_per_capture}")
    bin_count = plan.bin_count
    step_count = -(-bin_count // bins_per_capture)
    steps = []
    for k in range(step_count):
        offset = k * bins_per_capture
        steps.append(
            SweepStep(
                index=k,
                center_hz=plan.fstart_hz + (offset + bins_per_capture // 2) * plan.rbw_hz,
                offset=offset,
                count=min(bins_per_capture, bin_count - offset),
            )
        )
    return steps


def choose_decimation(sample_rate_hz: float, samples_per_packet: int, rbw_hz: int) -> int:
    return max(1, int(round(float(sample_rate_hz) / (samples_per_packet * rbw_hz))))


def sweep(
    device: DeviceControl,
    plan: FrequencyPlan,
    mode: str,
    *,
    config: Optional[SweepConfig] = None,
    processor: Optional[SpectrumProcessor] = None,
) -> SweepBuffer:
    """
    Capture, estimate and stitch every step of the plan.

    All-or-nothing: the first failing step's error propagates and no buffer
    is returned.
    """

    cfg = config or SweepConfig()
    spp = int(cfg.samples_per_packet)
    proc = processor or SpectrumProcessor(spp, cfg.window)
    if proc.fft_size != spp:
        raise ValueError(f"Processor FFT size {proc.fft_size} does not match spp {spp}")

    steps = plan_steps(plan, proc.bins_per_block)
    power = _allocate(plan.bin_count, cfg.max_bins)

    decimation = choose_decimation(device.sample_rate_hz, spp, plan.rbw_hz)
    bin_width = float(device.sample_rate_hz) / decimation / spp
    if abs(bin_width - plan.rbw_hz) > RBW_TOLERANCE * plan.rbw_hz:
        logger.warning(
            "Instrument bin width %.1f Hz differs from requested rbw %d Hz; bins are labelled at rbw",
            bin_width,
            plan.rbw_hz,
        )
    logger.info(
        "Sweeping %d-%d Hz at rbw %d Hz: %d bins in %d steps (mode %s, decimation %d, %s window ENBW %.2f bins)",
        plan.fstart_hz,
        plan.fstop_hz,
        plan.rbw_hz,
        plan.bin_count,
        len(steps),
        mode,
        decimation,
        proc.window_name,
        proc.enbw_bins,
    )

    started = time.monotonic()
    tracker = SequenceTracker()
    try:
        device.set_decimation(decimation)
    except OSError as exc:
        raise TransportError(f"Setting decimation failed: {exc}") from exc

    for step in steps:
        try:
            device.set_center_frequency(step.center_hz)
        except OSError as exc:
            raise TransportError(f"Tuning to {step.center_hz} Hz failed: {exc}") from exc
        result = capture_one_block(
            device,
            mode,
            spp,
            timeout_ms=cfg.read_timeout_ms,
            packets_per_block=cfg.packets_per_block,
            tracker=tracker,
        )
        reference_level = result.reference_level_dbm
        if reference_level is None:
            reference_level = cfg.reference_level_dbm
        bins = proc.estimate(result.samples, reference_level, full_scale=result.full_scale)
        power[step.offset : step.offset + step.count] = bins[: step.count]
        logger.debug(
            "Step %d/%d at %d Hz filled bins %d..%d",
            step.index + 1,
            len(steps),
            step.center_hz,
            step.offset,
            step.offset + step.count - 1,
            extra={"step": step.index},
        )

    elapsed_ms = (time.monotonic() - started) * 1000.0
    logger.info("Sweep finished in %.1f ms", elapsed_ms, extra={"duration_ms": round(elapsed_ms, 1)})
    power.flags.writeable = False
    return SweepBuffer(
        plan=plan,
        power_dbm=power,
        step_count=len(steps),
        dropped_packets=tracker.dropped,
    )


def _allocate(bin_count: int, max_bins: int) -> np.ndarray:
    if bin_count > max_bins:
        raise AllocationFailure(
            f"{bin_count} bins exceeds the limit of {max_bins}",
            details={"bin_count": bin_count, "max_bins": max_bins},
        )
    try:
        # NaN marks slots no capture has written yet.
        return np.full(bin_count, np.nan, dtype=np.float32)
    except MemoryError as exc:
        raise AllocationFailure(
            f"Unable to allocate {bin_count} bins", details={"bin_count": bin_count}
        ) from exc
