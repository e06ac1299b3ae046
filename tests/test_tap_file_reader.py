#!/usr/bin/env python3
"""
Tests for reading TAP containers: header encoding and validation, size correction, and pulse reading
"""

import logging
import struct

import pytest

from tap_builders import make_tap, write_tap
from tap_file_reader import TapFileReader, TapFormatError, TapPulseStream, pack_tap_header, unpack_tap_header


class TestTapHeader:
    """Encode and decode the 20-byte container header"""

    def test_header_layout(self):
        header = pack_tap_header(version=1, data_length=0x12345)
        assert len(header) == 20
        assert header[:12] == b"C64-TAPE-RAW"
        assert header[12] == 1
        assert header[13:16] == b"\x00\x00\x00"
        assert header[16:20] == b"\x45\x23\x01\x00"

    @pytest.mark.parametrize("data_length", [0, 1, 74565, 0xffffffff])
    def test_length_survives_encoding(self, data_length):
        version, decoded_length = unpack_tap_header(pack_tap_header(version=2, data_length=data_length))
        assert version == 2
        assert decoded_length == data_length

    def test_bad_signature_is_fatal(self):
        with pytest.raises(TapFormatError):
            unpack_tap_header(b"C64-TAPE-RAX" + bytes(8))

    def test_short_file_is_fatal(self):
        with pytest.raises(TapFormatError):
            unpack_tap_header(b"C64-TAPE")


class TestTapFileReader:
    """Open TAP files from disk"""

    def test_open(self, tmp_path):
        filename = write_tap(tmp_path / "tape.tap", bytes([0x30] * 100), version=0)
        reader = TapFileReader(filename)
        assert reader.version == 0
        assert reader.data_length == 100
        assert reader.data_start == 20
        assert reader.data_end == 120
        assert reader.read_block(20, 25) == bytes([0x30] * 5)

    def test_not_a_tap_file(self, tmp_path):
        path = tmp_path / "tape.wav"
        path.write_bytes(b"RIFF" + bytes(100))
        with pytest.raises(TapFormatError):
            TapFileReader(str(path))

    def test_wrong_length_is_fixed_in_place(self, tmp_path):
        filename = write_tap(tmp_path / "tape.tap", bytes(range(1, 200)), data_length=5)
        reader = TapFileReader(filename)

        file_bytes = (tmp_path / "tape.tap").read_bytes()
        assert struct.unpack("<I", file_bytes[16:20])[0] == len(file_bytes) - 20
        assert reader.header_data_length == len(file_bytes) - 20
        assert reader.file_bytes == file_bytes

    def test_wrong_length_left_alone(self, tmp_path):
        original = make_tap(bytes(range(1, 200)), data_length=5)
        (tmp_path / "tape.tap").write_bytes(original)
        reader = TapFileReader(str(tmp_path / "tape.tap"), fix_header=False)

        assert (tmp_path / "tape.tap").read_bytes() == original
        assert reader.header_data_length == 5
        assert reader.data_length == 199

    def test_pulse_stream_covers_data(self, tmp_path):
        filename = write_tap(tmp_path / "tape.tap", bytes([0x30, 0x42, 0x56]))
        stream = TapFileReader(filename).pulse_stream()
        assert [stream.fetch_pulse() for _ in range(4)] == [0x30, 0x42, 0x56, None]


class TestTapPulseStream:
    """Read pulse lengths in the short and extended forms"""

    def test_short_form(self):
        stream = TapPulseStream(data=bytes([1, 0x30, 0xff]), version=1)
        assert stream.fetch_pulse() == 1
        assert stream.fetch_pulse() == 0x30
        assert stream.fetch_pulse() == 0xff
        assert not stream.end_of_stream
        assert stream.fetch_pulse() is None
        assert stream.end_of_stream

    def test_version_0_long_pulse(self):
        stream = TapPulseStream(data=bytes([0, 0x30]), version=0)
        assert stream.fetch_pulse() == 0x100
        assert stream.fetch_pulse() == 0x30

    def test_version_1_extended_pulse(self):
        # 0x001f40 = 8000, stored as eight times the pulse length
        stream = TapPulseStream(data=bytes([0x30, 0, 0x40, 0x1f, 0x00, 0x42]), version=1)
        assert stream.fetch_pulse() == 0x30
        assert stream.fetch_pulse() == 1000
        assert stream.fetch_pulse() == 0x42
        assert stream.fetch_pulse() is None

    def test_truncated_extended_pulse(self):
        stream = TapPulseStream(data=bytes([0x30, 0, 0x10]), version=2)
        assert stream.fetch_pulse() == 0x30
        assert stream.fetch_pulse() is None
        assert stream.end_of_stream
        assert stream.position == 3

    def test_region(self):
        stream = TapPulseStream(data=bytes([1, 2, 3, 4, 5]), version=1, start=1, end=3)
        assert stream.fetch_pulse() == 2
        assert stream.fetch_pulse() == 3
        assert stream.fetch_pulse() is None

    def test_extended_pulse_cut_by_region_end(self):
        stream = TapPulseStream(data=bytes([0, 8, 0, 0]), version=1, end=3)
        assert stream.fetch_pulse() is None

    def test_long_pulses_reported_at_verbosity_2(self, caplog):
        stream = TapPulseStream(data=bytes([0x30, 0, 0x40, 0x1f, 0x00]), version=1, verbosity=2)
        with caplog.at_level(logging.DEBUG):
            assert stream.fetch_pulse() == 0x30
            assert stream.fetch_pulse() == 1000
        assert "HIGHPULSE @ 0x00000001=0x000003e8" in caplog.text

    def test_long_pulses_not_reported_at_verbosity_1(self, caplog):
        stream = TapPulseStream(data=bytes([0, 0x40, 0x1f, 0x00]), version=1, verbosity=1)
        with caplog.at_level(logging.DEBUG):
            assert stream.fetch_pulse() == 1000
        assert "HIGHPULSE" not in caplog.text
