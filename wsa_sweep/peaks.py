"""Local-maximum peak search over a finished sweep buffer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

import numpy as np

from wsa_sweep.sweep import SweepBuffer


@dataclass(frozen=True)
class Peak:
    frequency_hz: int
    amplitude_dbm: float


def find_peaks(buf: SweepBuffer, max_peaks: int, *, min_separation_hz: int = 0) -> List[Peak]:
    """
    Return up to max_peaks local maxima, strongest first.

    A bin qualifies when it is strictly above each neighbour it has; edge bins
    have one neighbour, a single-bin buffer has none and yields no peaks.
    Equal amplitudes are ordered by ascending frequency. With
    min_separation_hz > 0, candidates closer than that to a stronger accepted
    peak are dropped.
    """

    if max_peaks < 0:
        raise ValueError(f"max_peaks must not be negative, got {max_peaks}")
    if min_separation_hz < 0:
        raise ValueError(f"min_separation_hz must not be negative, got {min_separation_hz}")
    data = np.asarray(buf.power_dbm, dtype=np.float64)
    if max_peaks == 0 or data.size < 2:
        return []

    left = np.r_[-np.inf, data[:-1]]
    right = np.r_[data[1:], -np.inf]
    # NaN compares false, so unfilled bins never qualify.
    candidates = np.flatnonzero((data > left) & (data > right))
    if candidates.size == 0:
        return []

    amplitudes = data[candidates]
    order = candidates[np.lexsort((candidates, -amplitudes))]

    plan = buf.plan
    peaks: List[Peak] = []
    for idx in order:
        freq = plan.fstart_hz + int(idx) * plan.rbw_hz
        if min_separation_hz and any(abs(freq - p.frequency_hz) < min_separation_hz for p in peaks):
            continue
        peaks.append(Peak(frequency_hz=freq, amplitude_dbm=float(data[idx])))
        if len(peaks) == max_peaks:
            break
    return peaks
