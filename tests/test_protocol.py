import struct

import numpy as np
import pytest

from wsa_sweep import protocol
from wsa_sweep.errors import MalformedPacket, UnknownStreamId


def _raw_packet(word0_flags: int, stream_id: int, body: bytes, *, count: int = 0, extra_words: bytes = b"") -> bytes:
    size_words = 5 + (len(extra_words) + len(body)) // 4
    word0 = word0_flags | (count << 16) | size_words
    return struct.pack(">II", word0, stream_id) + extra_words + struct.pack(">IQ", 12, 345) + body


def test_context_packet_vector() -> None:
    raw = protocol.make_context_packet(
        protocol.ExtensionContext(sweep_start_id=7),
        packet_count=2,
        timestamp=protocol.Timestamp(1, 5),
    )
    assert raw.hex() == (
        "50020007" "90000003" "00000001" "0000000000000005" "00004000" "00000007"
    )


def test_if_packet_header_fields() -> None:
    body = struct.pack(">4h", 1, -2, 300, -32768)
    raw = _raw_packet(0x1 << 28, protocol.I16_DATA_STREAM_ID, body, count=3)

    packet = protocol.read_packet(raw)

    assert packet.is_data_packet()
    assert not packet.is_context_packet()
    header = packet.header
    assert header.stream_id == protocol.I16_DATA_STREAM_ID
    assert header.packet_type == protocol.PacketType.IF
    assert header.packet_count == 3
    assert header.packet_size_words == 7
    assert header.samples_per_packet == 4
    assert header.timestamp == protocol.Timestamp(12, 345)
    assert not header.has_trailer
    assert packet.payload.sample_format == protocol.SampleFormat.I16
    assert packet.payload.samples.tolist() == [1, -2, 300, -32768]


def test_i16q16_samples_are_interleaved_i_then_q() -> None:
    body = struct.pack(">4h", 10, -20, 30, 40)
    raw = _raw_packet(0x1 << 28, protocol.I16Q16_DATA_STREAM_ID, body)

    samples = protocol.read_packet(raw).payload.samples

    assert samples.dtype == np.complex64
    assert samples.tolist() == [complex(10, -20), complex(30, 40)]


def test_i32_samples() -> None:
    body = struct.pack(">2i", -2_000_000_000, 5)
    raw = _raw_packet(0x1 << 28, protocol.I32_DATA_STREAM_ID, body)

    payload = protocol.read_packet(raw).payload

    assert payload.samples.dtype == np.int32
    assert payload.samples.tolist() == [-2_000_000_000, 5]
    assert payload.full_scale == 2147483648.0


def test_trailer_and_class_id_are_skipped() -> None:
    body = struct.pack(">2h", 7, 8) + struct.pack(">I", 0xABCD)
    class_id = struct.pack(">II", 0x11111111, 0x22222222)
    flags = (0x1 << 28) | (1 << 27) | (1 << 26)
    raw = _raw_packet(flags, protocol.I16_DATA_STREAM_ID, body, extra_words=class_id)

    packet = protocol.read_packet(raw)

    assert packet.header.has_trailer
    assert packet.header.timestamp == protocol.Timestamp(12, 345)
    assert packet.payload.samples.tolist() == [7, 8]
    assert packet.payload.trailer == 0xABCD


def test_receiver_context_fields() -> None:
    context = protocol.ReceiverContext(
        rf_frequency_hz=2_450_000_000.0,
        rf_offset_hz=-1_250_000.5,
        gain_if_db=-10.5,
        gain_rf_db=15.0,
        reference_point=0x64,
    )
    packet = protocol.read_packet(protocol.make_context_packet(context))

    assert packet.is_context_packet()
    assert packet.header.packet_type == protocol.PacketType.CONTEXT
    assert packet.payload == context


def test_digitizer_reference_level() -> None:
    context = protocol.DigitizerContext(bandwidth_hz=62_500_000.0, reference_level_dbm=-12.5)
    decoded = protocol.read_packet(protocol.make_context_packet(context)).payload

    assert decoded.reference_level_dbm == -12.5
    assert decoded.bandwidth_hz == 62_500_000.0
    assert decoded.rf_offset_hz is None
    assert protocol.context_fields(decoded) == {
        "bandwidth_hz": 62_500_000.0,
        "reference_level_dbm": -12.5,
    }


def test_context_decode_stops_at_unknown_indicator_bit() -> None:
    rf_word = struct.pack(">q", 100_000_000 << 20)
    known_first = struct.pack(">I", 0x08000000 | 0x00100000) + rf_word + b"\xff" * 8
    raw = _raw_packet(0x4 << 28, protocol.RECEIVER_STREAM_ID, known_first)
    assert protocol.read_packet(raw).payload.rf_frequency_hz == 100_000_000.0

    # Bit 28 is unknown for the receiver stream and precedes the frequency.
    unknown_first = struct.pack(">I", 0x10000000 | 0x08000000) + b"\x00" * 8 + rf_word
    raw = _raw_packet(0x4 << 28, protocol.RECEIVER_STREAM_ID, unknown_first)
    assert protocol.read_packet(raw).payload.rf_frequency_hz is None


def test_truncated_context_is_malformed() -> None:
    body = struct.pack(">I", 0x08000000) + b"\x00" * 4
    raw = _raw_packet(0x4 << 28, protocol.RECEIVER_STREAM_ID, body)

    with pytest.raises(MalformedPacket):
        protocol.read_packet(raw)


def test_framing_errors_are_malformed() -> None:
    good = protocol.make_if_packet(np.zeros(4, dtype=np.int16))
    word0 = struct.unpack(">I", good[:4])[0]

    cases = [
        good[:12],
        good + b"\x00\x00\x00\x00",
        # Five words leaves no room for the trailer the header announces.
        struct.pack(">I", (word0 & ~0xFFFF) | 5) + good[4:20],
        struct.pack(">I", (word0 & 0x0FFFFFFF) | (0x2 << 28)) + good[4:],
        # Context type on a data stream id.
        struct.pack(">I", (word0 & 0x0FFFFFFF) | (0x4 << 28)) + good[4:],
    ]
    for raw in cases:
        with pytest.raises(MalformedPacket):
            protocol.read_packet(raw)


def test_unknown_stream_carries_header() -> None:
    raw = _raw_packet(0x1 << 28, 0x12345678, b"\x00" * 8, count=9)

    with pytest.raises(UnknownStreamId) as info:
        protocol.read_packet(raw)

    assert info.value.stream_id == 0x12345678
    assert info.value.recoverable
    assert info.value.header.packet_count == 9
    assert info.value.header.packet_size_words == 7


def test_describe_header() -> None:
    raw = protocol.make_if_packet(
        np.zeros(8, dtype=np.int16), packet_count=4, timestamp=protocol.Timestamp(1700000000, 42)
    )
    header = protocol.read_packet(raw).header

    assert protocol.describe_header(header) == (
        "VRT Header(DATA_I16): type=IF, count=4, spp=8, ts:1700000000.000000000042s"
    )


def test_sequence_tracker_counts_gaps_and_wraps() -> None:
    tracker = protocol.SequenceTracker()

    def header(stream_id: int, count: int) -> protocol.PacketHeader:
        return protocol.PacketHeader(
            stream_id=stream_id,
            packet_type=protocol.PacketType.IF,
            packet_count=count,
            packet_size_words=5,
            samples_per_packet=0,
            timestamp=protocol.Timestamp(0, 0),
        )

    assert tracker.observe(header(protocol.I16_DATA_STREAM_ID, 14)) == 0
    assert tracker.observe(header(protocol.I16_DATA_STREAM_ID, 15)) == 0
    assert tracker.observe(header(protocol.I16_DATA_STREAM_ID, 0)) == 0
    assert tracker.observe(header(protocol.RECEIVER_STREAM_ID, 5)) == 0
    assert tracker.observe(header(protocol.I16_DATA_STREAM_ID, 3)) == 2
    assert tracker.dropped == 2
