"""WSA instrument wrappers and the device-control contract.

Encapsulates SCPI control and VRT data-socket framing. This module must not
import the sweep or server layers so device operations stay headless and
testable.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import socket
import struct
import time
from typing import Deque, Dict, Iterable, Optional, Protocol

import numpy as np

from wsa_sweep.errors import TransportError
from wsa_sweep.protocol import (
    DIGITIZER_STREAM_ID,
    EXTENSION_STREAM_ID,
    FULL_SCALE,
    I16_DATA_STREAM_ID,
    I16Q16_DATA_STREAM_ID,
    I32_DATA_STREAM_ID,
    DATA_STREAM_FORMATS,
    RECEIVER_STREAM_ID,
    WORD_BYTES,
    DigitizerContext,
    ExtensionContext,
    ReceiverContext,
    SampleFormat,
    Timestamp,
    make_context_packet,
    make_if_packet,
)
from wsa_sweep.util.logging import get_logger

logger = get_logger(__name__)

# Full ADC rate before decimation.
WSA_SAMPLE_RATE_HZ = 125_000_000


class DeviceControl(Protocol):
    """What the sweep core needs from an instrument handle."""

    @property
    def sample_rate_hz(self) -> float: ...

    def request_acquisition_access(self) -> bool: ...

    def abort_capture(self) -> None: ...

    def flush(self) -> None: ...

    def set_input_mode(self, mode: str) -> None: ...

    def set_samples_per_packet(self, spp: int) -> None: ...

    def set_packets_per_block(self, ppb: int) -> None: ...

    def set_center_frequency(self, hz: int) -> None: ...

    def set_decimation(self, factor: int) -> None: ...

    def trigger_capture(self) -> bool: ...

    def read_raw_packet(self, timeout_s: float) -> Optional[bytes]: ...

    def close(self) -> None: ...


def mode_stream_id(mode: str) -> int:
    """Data stream an RF input mode produces."""

    mode = mode.upper()
    if mode == "ZIF":
        return I16Q16_DATA_STREAM_ID
    if mode == "HDR":
        return I32_DATA_STREAM_ID
    return I16_DATA_STREAM_ID


class WsaDevice:
    """
    Small wrapper around a networked WSA.

    SCPI commands go over the control socket; VRT packets are read from the
    data socket and framed by the size field in their first word.
    """

    def __init__(
        self,
        host: str,
        scpi_port: int = 37001,
        data_port: int = 37000,
        connect_timeout_s: float = 5.0,
    ):
        self.host = host
        self.decimation = 1
        try:
            self._scpi = socket.create_connection((host, scpi_port), timeout=connect_timeout_s)
            self._data = socket.create_connection((host, data_port), timeout=connect_timeout_s)
        except OSError as exc:
            raise TransportError(
                f"Unable to connect to {host}: {exc}", details={"host": host}
            ) from exc
        self._scpi_reader = self._scpi.makefile("rb")
        logger.info("Connected to WSA at %s", host, extra={"device": host})

    def close(self) -> None:
        for sock in (self._scpi, self._data):
            try:
                sock.close()
            except OSError:
                continue

    def scpiset(self, cmd: str) -> None:
        try:
            self._scpi.sendall(cmd.encode("ascii") + b"\n")
        except OSError as exc:
            raise TransportError(f"SCPI write failed ({cmd}): {exc}") from exc

    def scpiget(self, cmd: str) -> str:
        self.scpiset(cmd)
        try:
            line = self._scpi_reader.readline()
        except OSError as exc:
            raise TransportError(f"SCPI read failed ({cmd}): {exc}") from exc
        if not line:
            raise TransportError("SCPI connection closed by instrument")
        return line.decode("ascii", errors="replace").strip()

    @property
    def sample_rate_hz(self) -> float:
        return float(WSA_SAMPLE_RATE_HZ)

    def request_acquisition_access(self) -> bool:
        return self.scpiget(":SYST:LOCK:REQ? ACQ") == "1"

    def abort_capture(self) -> None:
        self.scpiset(":SYST:ABORT")

    def flush(self) -> None:
        self.scpiset(":SYST:FLUSH")

    def set_input_mode(self, mode: str) -> None:
        self.scpiset(f":INPUT:MODE {mode}")

    def set_samples_per_packet(self, spp: int) -> None:
        self.scpiset(f":TRACE:SPP {int(spp)}")

    def set_packets_per_block(self, ppb: int) -> None:
        self.scpiset(f":TRACE:BLOCK:PACKETS {int(ppb)}")

    def set_center_frequency(self, hz: int) -> None:
        self.scpiset(f":FREQ:CENT {int(hz)}")

    def set_decimation(self, factor: int) -> None:
        self.decimation = int(factor)
        self.scpiset(f":SENSE:DEC {self.decimation}")

    def trigger_capture(self) -> bool:
        # Losing the acquisition lock means another client owns the capture engine.
        if self.scpiget(":SYST:LOCK:HAVE? ACQ") != "1":
            return False
        self.scpiset(":TRACE:BLOCK:DATA?")
        return True

    def read_raw_packet(self, timeout_s: float) -> Optional[bytes]:
        self._data.settimeout(max(float(timeout_s), 0.001))
        try:
            first = self._data.recv(WORD_BYTES)
        except socket.timeout:
            return None
        except OSError as exc:
            raise TransportError(f"Data socket read failed: {exc}") from exc
        if not first:
            raise TransportError("Data connection closed by instrument")
        word0 = first + self._recv_exact(WORD_BYTES - len(first))
        size_words = struct.unpack(">I", word0)[0] & 0xFFFF
        return word0 + self._recv_exact(max(size_words * WORD_BYTES - WORD_BYTES, 0))

    def _recv_exact(self, count: int) -> bytes:
        chunks = []
        remaining = count
        while remaining > 0:
            try:
                chunk = self._data.recv(remaining)
            except OSError as exc:
                # A timeout here leaves the stream mid-packet, so framing is lost.
                raise TransportError(f"Data socket read failed mid-packet: {exc}") from exc
            if not chunk:
                raise TransportError("Data connection closed mid-packet")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)


@dataclass(frozen=True)
class SimulatedTone:
    frequency_hz: float
    amplitude_dbm: float


class SimulatedWsa:
    """
    In-memory instrument used when hardware is unavailable.

    Each accepted trigger queues receiver, digitizer and extension context
    packets followed by one IF packet holding the configured tones plus
    seeded noise, all encoded as real VRT packets.
    """

    def __init__(
        self,
        tones: Iterable[SimulatedTone] = (),
        *,
        sample_rate_hz: float = WSA_SAMPLE_RATE_HZ,
        reference_level_dbm: float = -10.0,
        noise_counts: float = 1.0,
        seed: int = 0,
        busy: bool = False,
        stall_captures: int = 0,
    ):
        self.tones = list(tones)
        self._sample_rate_hz = float(sample_rate_hz)
        self.reference_level_dbm = float(reference_level_dbm)
        self.noise_counts = float(noise_counts)
        self.busy = busy
        # Number of upcoming triggers that are accepted but never deliver data.
        self.stall_captures = int(stall_captures)
        self._rng = np.random.default_rng(seed)
        self._queue: Deque[bytes] = deque()
        self._counts: Dict[int, int] = {}
        self.mode = "SH"
        self.spp = 1024
        self.ppb = 1
        self.center_hz = 0
        self.decimation = 1
        self.have_access = False
        self.closed = False
        self.sweep_id = 0
        self.triggered_at_hz: list[int] = []

    @property
    def sample_rate_hz(self) -> float:
        return self._sample_rate_hz

    def request_acquisition_access(self) -> bool:
        self.have_access = not self.busy
        return self.have_access

    def abort_capture(self) -> None:
        self._queue.clear()

    def flush(self) -> None:
        self._queue.clear()

    def set_input_mode(self, mode: str) -> None:
        self.mode = mode.upper()

    def set_samples_per_packet(self, spp: int) -> None:
        self.spp = int(spp)

    def set_packets_per_block(self, ppb: int) -> None:
        self.ppb = int(ppb)

    def set_center_frequency(self, hz: int) -> None:
        self.center_hz = int(hz)

    def set_decimation(self, factor: int) -> None:
        self.decimation = max(1, int(factor))

    def trigger_capture(self) -> bool:
        if self.busy:
            return False
        self.triggered_at_hz.append(self.center_hz)
        if self.stall_captures > 0:
            self.stall_captures -= 1
            return True

        self.sweep_id += 1
        now = time.time()
        timestamp = Timestamp(sec=int(now), psec=int((now % 1.0) * 1e12))
        fs = self._sample_rate_hz / self.decimation
        self._queue.append(
            make_context_packet(
                ReceiverContext(rf_frequency_hz=float(self.center_hz), gain_if_db=0.0, gain_rf_db=0.0),
                packet_count=self._next_count(RECEIVER_STREAM_ID),
                timestamp=timestamp,
            )
        )
        self._queue.append(
            make_context_packet(
                DigitizerContext(bandwidth_hz=fs / 2.0, reference_level_dbm=self.reference_level_dbm),
                packet_count=self._next_count(DIGITIZER_STREAM_ID),
                timestamp=timestamp,
            )
        )
        self._queue.append(
            make_context_packet(
                ExtensionContext(sweep_start_id=self.sweep_id),
                packet_count=self._next_count(EXTENSION_STREAM_ID),
                timestamp=timestamp,
            )
        )
        stream_id = mode_stream_id(self.mode)
        for _ in range(max(1, self.ppb)):
            self._queue.append(
                make_if_packet(
                    self._synthesize(DATA_STREAM_FORMATS[stream_id], fs),
                    stream_id=stream_id,
                    packet_count=self._next_count(stream_id),
                    timestamp=timestamp,
                )
            )
        return True

    def read_raw_packet(self, timeout_s: float) -> Optional[bytes]:
        if self._queue:
            return self._queue.popleft()
        # Emulate a blocking socket read that sees nothing.
        time.sleep(min(max(float(timeout_s), 0.0), 0.01))
        return None

    def close(self) -> None:
        self._queue.clear()
        self.closed = True

    def _next_count(self, stream_id: int) -> int:
        count = self._counts.get(stream_id, -1) + 1
        self._counts[stream_id] = count % 16
        return self._counts[stream_id]

    def _synthesize(self, fmt: SampleFormat, fs: float) -> np.ndarray:
        n = self.spp
        t = np.arange(n) / fs
        full_scale = FULL_SCALE[fmt]
        is_complex = fmt == SampleFormat.I16Q16
        x = np.zeros(n, dtype=np.complex128 if is_complex else np.float64)

        for tone in self.tones:
            offset = float(tone.frequency_hz) - float(self.center_hz)
            amplitude = full_scale * 10.0 ** ((tone.amplitude_dbm - self.reference_level_dbm) / 20.0)
            if is_complex:
                # Only the central half of a complex capture is kept downstream.
                if abs(offset) < fs / 4.0:
                    x += amplitude * np.exp(2j * np.pi * offset * t)
            else:
                # Real captures place the tuned centre at fs/4 in the IF.
                if_hz = offset + fs / 4.0
                if 0.0 <= if_hz < fs / 2.0:
                    x += amplitude * np.cos(2.0 * np.pi * if_hz * t)

        noise_scale = self.noise_counts * full_scale / 32768.0
        if is_complex:
            x += noise_scale * (self._rng.standard_normal(n) + 1j * self._rng.standard_normal(n))
            limit = full_scale - 1
            real = np.clip(np.round(x.real), -limit, limit)
            imag = np.clip(np.round(x.imag), -limit, limit)
            return (real + 1j * imag).astype(np.complex64)

        x += noise_scale * self._rng.standard_normal(n)
        x = np.clip(np.round(x), -(full_scale - 1), full_scale - 1)
        return x.astype(np.int32 if fmt == SampleFormat.I32 else np.int16)
