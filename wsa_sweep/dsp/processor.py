"""DSP primitives for the sweep.

Provides FFT windowing, window statistics and the per-capture power estimate.
This module must not import device or server classes; it is purely numerical.
"""

from __future__ import annotations

import math

import numpy as np

# Full-scale magnitude of 16-bit samples.
DEFAULT_FULL_SCALE = 32768.0


def power_scale_db(
    reference_level_dbm: float,
    coherent_gain: float,
    fft_size: int,
    full_scale: float = DEFAULT_FULL_SCALE,
    one_sided: bool = True,
) -> float:
    """
    dB offset turning 10*log10(|X|^2) into dBm.

    A full-scale sinusoid on a bin centre reads reference_level_dbm. One-sided
    (real input) spectra fold the negative-frequency half back in, hence +6 dB.
    """

    scale = reference_level_dbm - 20.0 * math.log10(fft_size * coherent_gain * full_scale)
    if one_sided:
        scale += 20.0 * math.log10(2.0)
    return scale


class SpectrumProcessor:
    """
    Handles DSP for one sweep.
    Converts a block of time-domain samples into N/2 power bins in dBm.
    """

    WINDOW_NAMES = ("Hann", "Blackman Harris", "Flat top")

    def __init__(self, fft_size: int, window_name: str = "Flat top"):
        self.fft_size = _check_fft_size(fft_size)
        self.window_name = window_name
        self.window = self._make_window(self.fft_size, self.window_name)
        self._update_window_stats()

    def _make_window(self, n: int, name: str) -> np.ndarray:
        if name not in self.WINDOW_NAMES:
            raise ValueError(f"Unsupported window: {name}")
        if name == "Hann":
            return np.hanning(n).astype(np.float64)
        idx = np.arange(n)
        if name == "Blackman Harris":
            # Coefficients per Harris 1978, used for low sidelobes.
            a0, a1, a2, a3 = 0.35875, 0.48829, 0.14128, 0.01168
            w = (
                a0
                - a1 * np.cos(2.0 * np.pi * idx / (n - 1))
                + a2 * np.cos(4.0 * np.pi * idx / (n - 1))
                - a3 * np.cos(6.0 * np.pi * idx / (n - 1))
            )
            return w.astype(np.float64)
        # Flattop coefficients favor amplitude accuracy over sidelobes.
        a0, a1, a2, a3, a4 = 1.0, 1.93, 1.29, 0.388, 0.028
        w = (
            a0
            - a1 * np.cos(2.0 * np.pi * idx / (n - 1))
            + a2 * np.cos(4.0 * np.pi * idx / (n - 1))
            - a3 * np.cos(6.0 * np.pi * idx / (n - 1))
            + a4 * np.cos(8.0 * np.pi * idx / (n - 1))
        )
        return w.astype(np.float64)

    def _update_window_stats(self) -> None:
        win = self.window
        # Coherent gain for amplitude correction, ENBW for the effective resolution.
        self.coherent_gain = float(np.sum(win) / len(win))
        self.enbw_bins = float(len(win) * np.sum(win**2) / (np.sum(win) ** 2))

    @property
    def bins_per_block(self) -> int:
        return self.fft_size // 2

    def estimate(
        self,
        samples: np.ndarray,
        reference_level_dbm: float,
        full_scale: float = DEFAULT_FULL_SCALE,
    ) -> np.ndarray:
        """
        Power per bin (dBm) for one block, ascending in frequency.

        Real blocks keep the first N/2 rfft bins. Complex blocks keep the
        central N/2 bins of the shifted spectrum, so local bin j is always
        (j - N/4) bin widths from the tuned centre.
        """

        x = np.asarray(samples)
        n = self.fft_size
        if x.ndim != 1 or x.size != n:
            raise ValueError(f"Expected a block of {n} samples, got shape {x.shape}")

        one_sided = not np.iscomplexobj(x)
        if one_sided:
            windowed = x.astype(np.float64) * self.window
            spectrum = np.fft.rfft(windowed)[: n // 2]
        else:
            windowed = x.astype(np.complex128) * self.window
            spectrum = np.fft.fftshift(np.fft.fft(windowed))[n // 4 : n // 4 + n // 2]

        power = np.abs(spectrum) ** 2
        scale = power_scale_db(
            reference_level_dbm,
            self.coherent_gain,
            n,
            full_scale=full_scale,
            one_sided=one_sided,
        )
        return (10.0 * np.log10(np.maximum(power, 1e-20)) + scale).astype(np.float32)


def _check_fft_size(n: int) -> int:
    n = int(n)
    if n < 4 or n & (n - 1):
        raise ValueError(f"FFT size must be a power of two >= 4, got {n}")
    return n
