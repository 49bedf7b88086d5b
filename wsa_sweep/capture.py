"""Single-block acquisition against an instrument handle.

Configures the capture geometry, triggers one block and reads VRT packets
until the IF data packet arrives. Context packets are folded into the result
and otherwise discarded. Nothing here retries; retry policy belongs to the
caller.
"""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Dict, Optional

import numpy as np

from wsa_sweep.errors import CaptureTimeout, DeviceBusy, MalformedPacket, TransportError, UnknownStreamId
from wsa_sweep.protocol import (
    FULL_SCALE,
    DigitizerContext,
    ExtensionContext,
    PacketHeader,
    ReceiverContext,
    SampleFormat,
    SequenceTracker,
    context_fields,
    describe_header,
    read_packet,
)
from wsa_sweep.sdr.wsa import DeviceControl
from wsa_sweep.util.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MS = 5000


@dataclass(frozen=True)
class CaptureResult:
    """Raw samples from one IF packet plus the context seen before it."""

    samples: np.ndarray
    header: PacketHeader
    sample_format: SampleFormat
    receiver: Optional[ReceiverContext] = None
    digitizer: Optional[DigitizerContext] = None
    extension: Optional[ExtensionContext] = None
    skipped_packets: int = 0

    @property
    def full_scale(self) -> float:
        return FULL_SCALE[self.sample_format]

    @property
    def reference_level_dbm(self) -> Optional[float]:
        if self.digitizer is None:
            return None
        return self.digitizer.reference_level_dbm


def capture_one_block(
    device: DeviceControl,
    mode: str,
    samples_per_packet: int,
    *,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    packets_per_block: int = 1,
    tracker: Optional[SequenceTracker] = None,
) -> CaptureResult:
    """
    Acquire one block and return the first IF packet's samples.

    The remaining packets_per_block - 1 IF packets are read and passed to the
    tracker before returning.

    Raises CaptureTimeout when the block is incomplete at the deadline,
    DeviceBusy when the trigger is rejected, TransportError on device I/O
    failure and MalformedPacket on undecodable packets or a sample count that
    does not match the requested geometry.
    """

    if tracker is None:
        tracker = SequenceTracker()
    start = time.monotonic()

    try:
        device.set_input_mode(mode)
        device.set_samples_per_packet(samples_per_packet)
        device.set_packets_per_block(packets_per_block)
        # Stale packets from an earlier capture would be mistaken for this one.
        device.flush()
        _mark(start, "configure")
        accepted = device.trigger_capture()
    except OSError as exc:
        raise TransportError(f"Device configuration failed: {exc}") from exc
    if not accepted:
        raise DeviceBusy("Instrument rejected the capture trigger", details={"mode": mode})
    _mark(start, "capture")

    deadline = time.monotonic() + timeout_ms / 1000.0
    contexts: Dict[type, object] = {}
    skipped = 0
    data_packet = None
    # Every IF packet of the block is read so the next flush discards none unseen.
    pending = max(1, int(packets_per_block))
    while pending:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            what = "No IF data packet" if data_packet is None else f"{pending} IF packets of the block missing"
            raise CaptureTimeout(
                f"{what} within {timeout_ms} ms",
                details={"timeout_ms": timeout_ms, "mode": mode},
            )
        try:
            raw = device.read_raw_packet(remaining)
        except OSError as exc:
            raise TransportError(f"Packet read failed: {exc}") from exc
        if raw is None:
            continue

        try:
            packet = read_packet(raw)
        except UnknownStreamId as exc:
            skipped += 1
            logger.warning(
                "Skipping packet from unknown stream 0x%08x", exc.stream_id,
                extra={"stream_id": f"0x{exc.stream_id:08x}"},
            )
            continue

        tracker.observe(packet.header)
        logger.debug(describe_header(packet.header))
        if packet.is_context_packet():
            logger.debug("Context %s", context_fields(packet.payload))
            contexts[type(packet.payload)] = packet.payload
            continue
        pending -= 1
        if data_packet is None:
            data_packet = packet

    packet = data_packet
    data = packet.payload
    if data.samples.size != samples_per_packet:
        raise MalformedPacket(
            f"IF packet carries {data.samples.size} samples, expected {samples_per_packet}",
            details={"samples": int(data.samples.size), "expected": samples_per_packet},
        )
    _mark(start, "read")

    return CaptureResult(
        samples=data.samples,
        header=packet.header,
        sample_format=data.sample_format,
        receiver=contexts.get(ReceiverContext),
        digitizer=contexts.get(DigitizerContext),
        extension=contexts.get(ExtensionContext),
        skipped_packets=skipped,
    )


def _mark(since: float, label: str) -> None:
    elapsed = time.monotonic() - since
    logger.debug("Mark -- %s -- %.6f s", label, elapsed, extra={"duration_ms": round(elapsed * 1000.0, 3)})
