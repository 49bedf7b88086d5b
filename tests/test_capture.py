import struct
import time
from typing import List, Optional

import numpy as np
import pytest

from wsa_sweep import protocol
from wsa_sweep.capture import capture_one_block
from wsa_sweep.errors import CaptureTimeout, DeviceBusy, MalformedPacket, TransportError


class ScriptedDevice:
    """Replays a fixed list of raw packets and records control calls."""

    def __init__(self, packets: List[bytes], *, accept_trigger: bool = True, read_error: bool = False):
        self.packets = list(packets)
        self.accept_trigger = accept_trigger
        self.read_error = read_error
        self.calls: List[str] = []

    @property
    def sample_rate_hz(self) -> float:
        return 6_400_000.0

    def request_acquisition_access(self) -> bool:
        return True

    def abort_capture(self) -> None:
        self.calls.append("abort_capture")

    def flush(self) -> None:
        self.calls.append("flush")

    def set_input_mode(self, mode: str) -> None:
        self.calls.append(f"set_input_mode {mode}")

    def set_samples_per_packet(self, spp: int) -> None:
        self.calls.append(f"set_samples_per_packet {spp}")

    def set_packets_per_block(self, ppb: int) -> None:
        self.calls.append(f"set_packets_per_block {ppb}")

    def set_center_frequency(self, hz: int) -> None:
        self.calls.append(f"set_center_frequency {hz}")

    def set_decimation(self, factor: int) -> None:
        self.calls.append(f"set_decimation {factor}")

    def trigger_capture(self) -> bool:
        self.calls.append("trigger_capture")
        return self.accept_trigger

    def read_raw_packet(self, timeout_s: float) -> Optional[bytes]:
        if self.read_error:
            raise OSError("connection reset")
        if self.packets:
            return self.packets.pop(0)
        time.sleep(min(timeout_s, 0.005))
        return None

    def close(self) -> None:
        self.calls.append("close")


def _if_packet(n: int = 8, count: int = 0) -> bytes:
    return protocol.make_if_packet(np.arange(n, dtype=np.int16), packet_count=count)


def _unknown_stream_packet() -> bytes:
    word0 = (0x1 << 28) | 7
    return struct.pack(">IIIQ", word0, 0x0BADF00D, 0, 0) + b"\x00" * 8


def test_configures_before_trigger() -> None:
    device = ScriptedDevice([_if_packet()])

    capture_one_block(device, "SH", 8)

    assert device.calls == [
        "set_input_mode SH",
        "set_samples_per_packet 8",
        "set_packets_per_block 1",
        "flush",
        "trigger_capture",
    ]


def test_context_packets_fold_into_result() -> None:
    device = ScriptedDevice(
        [
            protocol.make_context_packet(protocol.ReceiverContext(rf_frequency_hz=2.4e9)),
            protocol.make_context_packet(protocol.DigitizerContext(reference_level_dbm=-7.5)),
            protocol.make_context_packet(protocol.ExtensionContext(sweep_start_id=3)),
            _if_packet(),
        ]
    )

    result = capture_one_block(device, "SH", 8)

    assert result.samples.tolist() == list(range(8))
    assert result.sample_format == protocol.SampleFormat.I16
    assert result.full_scale == 32768.0
    assert result.receiver.rf_frequency_hz == 2.4e9
    assert result.reference_level_dbm == -7.5
    assert result.extension.sweep_start_id == 3
    assert result.skipped_packets == 0


def test_reference_level_absent_without_digitizer_context() -> None:
    result = capture_one_block(ScriptedDevice([_if_packet()]), "SH", 8)

    assert result.digitizer is None
    assert result.reference_level_dbm is None


def test_unknown_stream_packets_are_skipped() -> None:
    device = ScriptedDevice(
        [
            protocol.make_context_packet(protocol.ReceiverContext(rf_frequency_hz=1e9)),
            _unknown_stream_packet(),
            _if_packet(),
        ]
    )

    result = capture_one_block(device, "SH", 8)

    assert result.samples.tolist() == list(range(8))
    assert result.skipped_packets == 1


def test_timeout_when_no_data_arrives() -> None:
    device = ScriptedDevice([])
    start = time.monotonic()

    with pytest.raises(CaptureTimeout) as info:
        capture_one_block(device, "SH", 8, timeout_ms=50)

    elapsed = time.monotonic() - start
    assert 0.04 <= elapsed < 1.0
    assert info.value.recoverable


def test_only_context_packets_still_times_out() -> None:
    device = ScriptedDevice([protocol.make_context_packet(protocol.ReceiverContext(rf_frequency_hz=1e9))])

    with pytest.raises(CaptureTimeout):
        capture_one_block(device, "SH", 8, timeout_ms=30)


def test_rejected_trigger_is_device_busy() -> None:
    device = ScriptedDevice([_if_packet()], accept_trigger=False)

    with pytest.raises(DeviceBusy):
        capture_one_block(device, "SH", 8)


def test_malformed_packet_propagates() -> None:
    device = ScriptedDevice([b"\x10\x00\x00\x09" + b"\x00" * 8, _if_packet()])

    with pytest.raises(MalformedPacket):
        capture_one_block(device, "SH", 8)


def test_sample_count_mismatch_is_malformed() -> None:
    device = ScriptedDevice([_if_packet(n=16)])

    with pytest.raises(MalformedPacket):
        capture_one_block(device, "SH", 8)


def test_read_failure_is_transport_error() -> None:
    device = ScriptedDevice([], read_error=True)

    with pytest.raises(TransportError):
        capture_one_block(device, "SH", 8)


def test_tracker_sees_counter_gaps() -> None:
    tracker = protocol.SequenceTracker()

    capture_one_block(ScriptedDevice([_if_packet(count=1)]), "SH", 8, tracker=tracker)
    capture_one_block(ScriptedDevice([_if_packet(count=4)]), "SH", 8, tracker=tracker)

    assert tracker.dropped == 2


def test_rest_of_block_is_read_and_counted() -> None:
    tracker = protocol.SequenceTracker()
    second = protocol.make_if_packet(np.full(8, 7, dtype=np.int16), packet_count=1)
    device = ScriptedDevice([_if_packet(count=0), second, _if_packet(count=2)])

    result = capture_one_block(device, "SH", 8, packets_per_block=2, tracker=tracker)

    assert result.samples.tolist() == list(range(8))
    assert device.packets == [_if_packet(count=2)]
    assert "set_packets_per_block 2" in device.calls

    device.packets = [_if_packet(count=2), _if_packet(count=3)]
    capture_one_block(device, "SH", 8, packets_per_block=2, tracker=tracker)
    assert tracker.dropped == 0


def test_incomplete_block_times_out() -> None:
    device = ScriptedDevice([_if_packet()])

    with pytest.raises(CaptureTimeout):
        capture_one_block(device, "SH", 8, timeout_ms=50, packets_per_block=2)
