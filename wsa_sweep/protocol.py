"""VRT packet decoding for the instrument's data stream.

Packets arrive already framed by the transport; read_packet decodes one
delimited buffer into a typed header plus exactly one payload variant. The
wire layout is big-endian 32-bit words. The header always carries the
integer-seconds and fractional-picoseconds timestamps.

Builders for the same layout (make_if_packet, make_context_packet) are used by
the simulated instrument and by tests.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
import enum
import struct
from typing import Dict, Optional, Tuple, Union

import numpy as np

from wsa_sweep.errors import MalformedPacket, UnknownStreamId
from wsa_sweep.util.logging import get_logger

logger = get_logger(__name__)

RECEIVER_STREAM_ID = 0x90000001
DIGITIZER_STREAM_ID = 0x90000002
EXTENSION_STREAM_ID = 0x90000003
I16Q16_DATA_STREAM_ID = 0x90000004
I16_DATA_STREAM_ID = 0x90000005
I32_DATA_STREAM_ID = 0x90000006

WORD_BYTES = 4
HEADER_WORDS = 5
CLASS_ID_WORDS = 2
TRAILER_WORDS = 1
PACKET_COUNT_MODULO = 16
MAX_PACKET_WORDS = 0xFFFF

_CLASS_ID_BIT = 1 << 27
_TRAILER_BIT = 1 << 26

_WORD0_STREAM_STRUCT = struct.Struct(">II")
_TIMESTAMP_STRUCT = struct.Struct(">IQ")
_WORD_STRUCT = struct.Struct(">I")


class PacketType(enum.IntEnum):
    IF = 0x1
    CONTEXT = 0x4
    EXTENSION = 0x5


class SampleFormat(enum.Enum):
    I16Q16 = "i16q16"
    I16 = "i16"
    I32 = "i32"


DATA_STREAM_FORMATS = {
    I16Q16_DATA_STREAM_ID: SampleFormat.I16Q16,
    I16_DATA_STREAM_ID: SampleFormat.I16,
    I32_DATA_STREAM_ID: SampleFormat.I32,
}

# Largest magnitude a sample of each format can carry.
FULL_SCALE = {
    SampleFormat.I16Q16: 32768.0,
    SampleFormat.I16: 32768.0,
    SampleFormat.I32: 2147483648.0,
}

_STREAM_NAMES = {
    RECEIVER_STREAM_ID: "CTX_RECEIVER",
    DIGITIZER_STREAM_ID: "CTX_DIGITIZER",
    EXTENSION_STREAM_ID: "CTX_EXTENSION",
    I16Q16_DATA_STREAM_ID: "DATA_I16Q16",
    I16_DATA_STREAM_ID: "DATA_I16",
    I32_DATA_STREAM_ID: "DATA_I32",
}

_STREAM_PACKET_TYPES = {
    RECEIVER_STREAM_ID: PacketType.CONTEXT,
    DIGITIZER_STREAM_ID: PacketType.CONTEXT,
    EXTENSION_STREAM_ID: PacketType.EXTENSION,
    I16Q16_DATA_STREAM_ID: PacketType.IF,
    I16_DATA_STREAM_ID: PacketType.IF,
    I32_DATA_STREAM_ID: PacketType.IF,
}


@dataclass(frozen=True)
class Timestamp:
    sec: int
    psec: int


@dataclass(frozen=True)
class PacketHeader:
    """Decoded VRT header for one wire packet."""

    stream_id: int
    packet_type: PacketType
    packet_count: int
    packet_size_words: int
    samples_per_packet: int
    timestamp: Timestamp
    has_trailer: bool = False


@dataclass(frozen=True)
class ReceiverContext:
    """RF front-end tuning state."""

    rf_frequency_hz: Optional[float] = None
    rf_offset_hz: Optional[float] = None
    gain_if_db: Optional[float] = None
    gain_rf_db: Optional[float] = None
    reference_point: Optional[int] = None


@dataclass(frozen=True)
class DigitizerContext:
    """Digitizer bandwidth and calibration state."""

    bandwidth_hz: Optional[float] = None
    rf_offset_hz: Optional[float] = None
    reference_level_dbm: Optional[float] = None


@dataclass(frozen=True)
class ExtensionContext:
    """Vendor extension fields carrying sweep/stream bookkeeping."""

    sweep_start_id: Optional[int] = None
    stream_start_id: Optional[int] = None


@dataclass(frozen=True)
class IFData:
    """Raw IF samples. complex64 for I16Q16, int16 for I16, int32 for I32."""

    sample_format: SampleFormat
    samples: np.ndarray
    trailer: Optional[int] = None

    @property
    def full_scale(self) -> float:
        return FULL_SCALE[self.sample_format]


Payload = Union[ReceiverContext, DigitizerContext, ExtensionContext, IFData]


@dataclass(frozen=True)
class VrtPacket:
    header: PacketHeader
    payload: Payload

    def is_data_packet(self) -> bool:
        return self.header.packet_type == PacketType.IF

    def is_context_packet(self) -> bool:
        return self.header.packet_type != PacketType.IF


@dataclass(frozen=True)
class _ContextField:
    mask: int
    attrs: Tuple[Optional[str], ...]
    fmt: str
    scale: float = 1.0


# Fields appear on the wire in descending indicator-bit order.
_CONTEXT_FIELDS = {
    RECEIVER_STREAM_ID: (
        _ContextField(0x40000000, ("reference_point",), ">I"),
        _ContextField(0x08000000, ("rf_frequency_hz",), ">q", float(1 << 20)),
        _ContextField(0x04000000, ("rf_offset_hz",), ">q", float(1 << 20)),
        _ContextField(0x01000000, ("gain_if_db", "gain_rf_db"), ">hh", 128.0),
    ),
    DIGITIZER_STREAM_ID: (
        _ContextField(0x20000000, ("bandwidth_hz",), ">q", float(1 << 20)),
        _ContextField(0x04000000, ("rf_offset_hz",), ">q", float(1 << 20)),
        _ContextField(0x01000000, (None, "reference_level_dbm"), ">hh", 128.0),
    ),
    EXTENSION_STREAM_ID: (
        _ContextField(0x00004000, ("sweep_start_id",), ">I"),
        _ContextField(0x00002000, ("stream_start_id",), ">I"),
    ),
}

_CONTEXT_CLASSES = {
    RECEIVER_STREAM_ID: ReceiverContext,
    DIGITIZER_STREAM_ID: DigitizerContext,
    EXTENSION_STREAM_ID: ExtensionContext,
}


def read_packet(raw: bytes) -> VrtPacket:
    """Decode one framed VRT packet.

    Raises MalformedPacket when the framing or body is inconsistent, and
    UnknownStreamId (carrying the decoded header) for stream ids that are not
    recognised. The latter is non-fatal for readers.
    """

    raw = bytes(raw)
    if len(raw) < HEADER_WORDS * WORD_BYTES:
        raise MalformedPacket(
            f"Packet of {len(raw)} bytes is shorter than a VRT header",
            details={"length": len(raw)},
        )
    word0, stream_id = _WORD0_STREAM_STRUCT.unpack_from(raw, 0)
    size_words = word0 & 0xFFFF
    has_class_id = bool(word0 & _CLASS_ID_BIT)
    has_trailer = bool(word0 & _TRAILER_BIT)
    header_words = HEADER_WORDS + (CLASS_ID_WORDS if has_class_id else 0)

    if size_words * WORD_BYTES != len(raw):
        raise MalformedPacket(
            f"Declared size {size_words} words does not match {len(raw)} byte buffer",
            details={"declared_words": size_words, "length": len(raw)},
        )
    if size_words < header_words + (TRAILER_WORDS if has_trailer else 0):
        raise MalformedPacket(
            f"Declared size {size_words} words is smaller than the header",
            details={"declared_words": size_words},
        )

    raw_type = (word0 >> 28) & 0xF
    try:
        packet_type = PacketType(raw_type)
    except ValueError:
        raise MalformedPacket(
            f"Unsupported packet type {raw_type}", details={"packet_type": raw_type}
        ) from None

    packet_count = (word0 >> 16) & 0xF
    ts_offset = (header_words - 3) * WORD_BYTES
    sec, psec = _TIMESTAMP_STRUCT.unpack_from(raw, ts_offset)
    timestamp = Timestamp(sec=sec, psec=psec)

    if stream_id not in _STREAM_PACKET_TYPES:
        header = PacketHeader(
            stream_id=stream_id,
            packet_type=packet_type,
            packet_count=packet_count,
            packet_size_words=size_words,
            samples_per_packet=0,
            timestamp=timestamp,
            has_trailer=has_trailer,
        )
        raise UnknownStreamId(stream_id, header)

    if _STREAM_PACKET_TYPES[stream_id] != packet_type:
        raise MalformedPacket(
            f"Packet type {packet_type.name} is not valid for stream {_STREAM_NAMES[stream_id]}",
            details={"stream_id": f"0x{stream_id:08x}", "packet_type": packet_type.name},
        )

    body_end = len(raw) - (TRAILER_WORDS * WORD_BYTES if has_trailer else 0)
    body = raw[header_words * WORD_BYTES : body_end]
    trailer = None
    if has_trailer:
        (trailer,) = _WORD_STRUCT.unpack_from(raw, body_end)

    payload: Payload
    if packet_type == PacketType.IF:
        payload = _decode_if_data(DATA_STREAM_FORMATS[stream_id], body, trailer)
        samples_per_packet = int(payload.samples.size)
    else:
        payload = _decode_context(stream_id, body)
        samples_per_packet = 0

    header = PacketHeader(
        stream_id=stream_id,
        packet_type=packet_type,
        packet_count=packet_count,
        packet_size_words=size_words,
        samples_per_packet=samples_per_packet,
        timestamp=timestamp,
        has_trailer=has_trailer,
    )
    return VrtPacket(header=header, payload=payload)


def _decode_if_data(fmt: SampleFormat, body: bytes, trailer: Optional[int]) -> IFData:
    if fmt == SampleFormat.I16Q16:
        iq = np.frombuffer(body, dtype=">i2").astype(np.float32)
        samples = (iq[0::2] + 1j * iq[1::2]).astype(np.complex64)
    elif fmt == SampleFormat.I16:
        samples = np.frombuffer(body, dtype=">i2").astype(np.int16)
    else:
        samples = np.frombuffer(body, dtype=">i4").astype(np.int32)
    return IFData(sample_format=fmt, samples=samples, trailer=trailer)


def _decode_context(stream_id: int, body: bytes) -> Payload:
    if len(body) < WORD_BYTES:
        raise MalformedPacket("Context packet has no indicator word")
    (indicator,) = _WORD_STRUCT.unpack_from(body, 0)
    table = {field.mask: field for field in _CONTEXT_FIELDS[stream_id]}
    values: Dict[str, object] = {}
    offset = WORD_BYTES

    # Bit 31 is the change indicator and carries no field.
    for bit in range(30, -1, -1):
        mask = 1 << bit
        if not indicator & mask:
            continue
        field = table.get(mask)
        if field is None:
            # Width of an unknown field is unknown; nothing after it can be located.
            logger.debug(
                "Stopping context decode at unknown indicator bit 0x%08x (stream 0x%08x)",
                mask,
                stream_id,
            )
            break
        size = struct.calcsize(field.fmt)
        if offset + size > len(body):
            raise MalformedPacket(
                f"Context field 0x{mask:08x} truncated",
                details={"stream_id": f"0x{stream_id:08x}", "indicator": f"0x{indicator:08x}"},
            )
        raw_values = struct.unpack_from(field.fmt, body, offset)
        offset += size
        for attr, value in zip(field.attrs, raw_values):
            if attr is None:
                continue
            values[attr] = value / field.scale if field.scale != 1.0 else value

    return _CONTEXT_CLASSES[stream_id](**values)


def make_if_packet(
    samples: np.ndarray,
    *,
    stream_id: int = I16_DATA_STREAM_ID,
    packet_count: int = 0,
    timestamp: Timestamp = Timestamp(0, 0),
    trailer: Optional[int] = 0,
) -> bytes:
    """Build an IF data packet carrying samples in the stream's format."""

    fmt = DATA_STREAM_FORMATS.get(stream_id)
    if fmt is None:
        raise ValueError(f"Not a data stream id: 0x{stream_id:08x}")
    samples = np.asarray(samples)
    if fmt == SampleFormat.I16Q16:
        iq = np.empty(samples.size * 2, dtype=">i2")
        iq[0::2] = np.real(samples)
        iq[1::2] = np.imag(samples)
        body = iq.tobytes()
    elif fmt == SampleFormat.I16:
        if samples.size % 2:
            raise ValueError("I16 packets carry an even number of samples")
        body = samples.astype(">i2").tobytes()
    else:
        body = samples.astype(">i4").tobytes()
    return _frame(PacketType.IF, stream_id, packet_count, timestamp, body, trailer)


def make_context_packet(
    context: Payload,
    *,
    stream_id: Optional[int] = None,
    packet_count: int = 0,
    timestamp: Timestamp = Timestamp(0, 0),
) -> bytes:
    """Build a context packet from a context dataclass, encoding its non-None fields."""

    if stream_id is None:
        stream_id = next(
            (sid for sid, cls in _CONTEXT_CLASSES.items() if isinstance(context, cls)),
            None,
        )
    if stream_id not in _CONTEXT_FIELDS:
        raise ValueError(f"No context stream for {type(context).__name__}")

    indicator = 0
    encoded = []
    for field in _CONTEXT_FIELDS[stream_id]:
        present = [getattr(context, attr) for attr in field.attrs if attr is not None]
        if all(value is None for value in present):
            continue
        indicator |= field.mask
        wire_values = []
        for attr in field.attrs:
            value = getattr(context, attr) if attr is not None else None
            wire_values.append(int(round((value or 0) * field.scale)))
        encoded.append(struct.pack(field.fmt, *wire_values))

    body = _WORD_STRUCT.pack(indicator) + b"".join(encoded)
    return _frame(_STREAM_PACKET_TYPES[stream_id], stream_id, packet_count, timestamp, body, None)


def _frame(
    packet_type: PacketType,
    stream_id: int,
    packet_count: int,
    timestamp: Timestamp,
    body: bytes,
    trailer: Optional[int],
) -> bytes:
    tail = b"" if trailer is None else _WORD_STRUCT.pack(trailer)
    size_words = HEADER_WORDS + (len(body) + len(tail)) // WORD_BYTES
    if size_words > MAX_PACKET_WORDS:
        raise ValueError("Packet exceeds the 16-bit size field")
    word0 = (int(packet_type) << 28) | ((packet_count % PACKET_COUNT_MODULO) << 16) | size_words
    if trailer is not None:
        word0 |= _TRAILER_BIT
    header = _WORD0_STREAM_STRUCT.pack(word0, stream_id) + _TIMESTAMP_STRUCT.pack(
        timestamp.sec, timestamp.psec
    )
    return header + body + tail


def stream_name(stream_id: int) -> str:
    return _STREAM_NAMES.get(stream_id, f"UNKNOWN=0x{stream_id:08x}")


def describe_header(header: PacketHeader) -> str:
    """One-line header dump used in debug logs."""

    return (
        f"VRT Header({stream_name(header.stream_id)}): type={header.packet_type.name}, "
        f"count={header.packet_count}, spp={header.samples_per_packet}, "
        f"ts:{header.timestamp.sec}.{header.timestamp.psec:012d}s"
    )


def context_fields(context: Payload) -> Dict[str, object]:
    """Return the populated fields of a context payload."""

    return {
        f.name: getattr(context, f.name)
        for f in fields(context)
        if getattr(context, f.name) is not None
    }


class SequenceTracker:
    """Checks that each stream's packet counter advances by one, modulo 16.

    A gap means packets were dropped; it is logged and added to `dropped`.
    """

    def __init__(self) -> None:
        self._last: Dict[int, int] = {}
        self.dropped = 0

    def observe(self, header: PacketHeader) -> int:
        last = self._last.get(header.stream_id)
        self._last[header.stream_id] = header.packet_count
        if last is None:
            return 0
        expected = (last + 1) % PACKET_COUNT_MODULO
        gap = (header.packet_count - expected) % PACKET_COUNT_MODULO
        if gap:
            self.dropped += gap
            logger.warning(
                "Packet counter gap on %s: expected %d, got %d (%d dropped)",
                stream_name(header.stream_id),
                expected,
                header.packet_count,
                gap,
                extra={"stream_id": f"0x{header.stream_id:08x}"},
            )
        return gap

