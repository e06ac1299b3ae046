#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# tap_file_reader.py
#
# The Python script in this file provides a utility class for reading TAP
# files, which hold raw pulse-length captures of 8-bit Commodore cassettes.
#
# Copyright (C) 2022 Dominic Ford <https://dcford.org.uk/>
#
# This code is free software; you can redistribute it and/or modify it under
# the terms of the GNU General Public License as published by the Free Software
# Foundation; either version 2 of the License, or (at your option) any later
# version.
#
# You should have received a copy of the GNU General Public License along with
# this file; if not, write to the Free Software Foundation, Inc., 51 Franklin
# Street, Fifth Floor, Boston, MA  02110-1301, USA

# ----------------------------------------------------------------------------

"""
Utility classes to read TAP files of Commodore datasette tapes. A TAP file is a 20-byte header followed by a stream
of bytes, each of which records the length of one pulse (wave cycle) on the tape. This stream can then be analysed
to extract the binary bits encoded on the tape.
"""

import logging
import struct

from typing import Optional, Tuple

from constants import tap_header_format, tap_header_length, tap_length_format, tap_length_offset, \
    tap_signature, tap_version0_long_pulse, tap_versions


class TapFormatError(Exception):
    """
    Raised when a file does not start with a valid TAP container header.
    """


def pack_tap_header(version: int, data_length: int):
    """
    Build the 20-byte header of a TAP file.

    :param version:
        TAP version number (0, 1 or 2)
    :param data_length:
        Number of bytes of pulse data which will follow the header
    :return:
        bytes
    """

    return struct.pack(tap_header_format, tap_signature, version, data_length)


def unpack_tap_header(header_bytes: bytes) -> Tuple[int, int]:
    """
    Decode the 20-byte header of a TAP file.

    :param header_bytes:
        The first bytes of the file (any bytes beyond the header are ignored)
    :return:
        Tuple of (version, data length recorded in the header)
    """

    if len(header_bytes) < tap_header_length:
        raise TapFormatError("File is too short to be a TAP file ({:d} bytes)".format(len(header_bytes)))

    signature, version, data_length = struct.unpack(tap_header_format, header_bytes[:tap_header_length])

    if signature != tap_signature:
        raise TapFormatError("File isn't a valid TAP! Signature <{}>".format(repr(signature)))

    return version, data_length


class TapPulseStream:
    """
    Read pulse lengths, one at a time, from a region of a TAP file held in memory.
    """

    def __init__(self, data: bytes, version: int, start: int = 0, end: Optional[int] = None, verbosity: int = 0):
        """
        Read pulse lengths, one at a time, from a region of a TAP file.

        :param data:
            The bytes of the TAP file
        :param version:
            TAP version number, which determines how long pulses are stored
        :param start:
            Offset of the first byte to read
        :param end:
            Offset of the end of the region (exclusive). By default, read to the end of the data.
        :param verbosity:
            Diagnostic level (0-2); long pulses are reported at level 2
        """

        self.data = data
        self.version = version
        self.position = start
        self.end = len(data) if end is None else min(end, len(data))
        self.verbosity = verbosity

        # Flag set once a read has run off the end of the region
        self.end_of_stream = False

    def fetch_pulse(self):
        """
        Fetch the length of the next pulse.

        A non-zero byte is the pulse length itself. A zero byte marks a long pulse: in version 0 files its length is
        fixed at 256; in later versions the next three bytes hold eight times its length, little-endian.

        :return:
            Pulse length (int), or None at the end of the stream
        """

        if self.position >= self.end:
            self.end_of_stream = True
            return None

        pulse_position = self.position
        data_byte = self.data[self.position]
        self.position += 1

        if data_byte != 0:
            return data_byte

        if self.version == 0:
            pulse_length = tap_version0_long_pulse
        else:
            # An extended pulse truncated by the end of the data is not a pulse
            if self.position + 3 > self.end:
                self.position = self.end
                self.end_of_stream = True
                return None
            extended = self.data[self.position: self.position + 3]
            self.position += 3
            pulse_length = (extended[0] | (extended[1] << 8) | (extended[2] << 16)) >> 3

        if self.verbosity > 1 and pulse_length > 0xff:
            logging.debug("HIGHPULSE @ 0x{:08x}=0x{:08x}".format(pulse_position, pulse_length))

        return pulse_length


class TapFileReader:
    """
    Utility class to read TAP files of Commodore datasette tapes, check their header, and provide access to the raw
    pulse data they contain.
    """

    def __init__(self, input_filename: str, fix_header: bool = True, verbosity: int = 0):
        """
        Utility class to read TAP files of Commodore datasette tapes.

        :param input_filename:
            Filename of the TAP file to process.
        :param fix_header:
            If the length recorded in the header disagrees with the size of the file, rewrite the header in place.
        :param verbosity:
            Diagnostic level (0-2)
        :return:
        """

        # Input settings
        self.input_filename = input_filename
        self.verbosity = verbosity

        # Read TAP file
        with open(self.input_filename, "rb") as f:
            self.file_bytes = f.read()

        # Populate metadata from the header
        self.version, self.header_data_length = unpack_tap_header(self.file_bytes)
        self.data_length = len(self.file_bytes) - tap_header_length

        # Report metadata about the TAP file
        logging.info("Opened <{}>: TAP version {:d}, {:d} bytes of pulse data".format(
            self.input_filename, self.version, self.data_length))

        if self.version not in tap_versions:
            logging.warning("Unknown TAP version {:d}; treating zero bytes as extended pulses".format(self.version))

        # Check that the file size matches the header
        if self.header_data_length != self.data_length:
            logging.warning("File internal problem. Reported dimension 0x{:08X} instead of 0x{:08X}".format(
                self.header_data_length, self.data_length))
            if fix_header:
                self.fix_header_length()

    @property
    def data_start(self):
        """
        File offset of the first byte of pulse data.
        """
        return tap_header_length

    @property
    def data_end(self):
        """
        File offset just beyond the last byte of pulse data.
        """
        return tap_header_length + self.data_length

    def fix_header_length(self):
        """
        Rewrite the length field in the header of the TAP file on disk, so that it matches the size of the file.

        :return:
            None
        """

        length_field = struct.pack(tap_length_format, self.data_length)

        with open(self.input_filename, "r+b") as f:
            f.seek(tap_length_offset)
            f.write(length_field)

        self.file_bytes = (self.file_bytes[:tap_length_offset] + length_field +
                           self.file_bytes[tap_length_offset + len(length_field):])
        self.header_data_length = self.data_length
        logging.info("Fixed header length of <{}>".format(self.input_filename))

    def read_block(self, start: int, end: int):
        """
        Return the raw bytes between two file offsets.

        :param start:
            File offset of the first byte
        :param end:
            File offset just beyond the last byte
        :return:
            bytes
        """

        return self.file_bytes[start:end]

    def pulse_stream(self, start: Optional[int] = None, end: Optional[int] = None):
        """
        Return a stream of pulses read from a region of the file.

        :param start:
            File offset at which to start reading. By default, the start of the pulse data.
        :param end:
            File offset at which to stop reading. By default, the end of the file.
        :return:
            TapPulseStream
        """

        return TapPulseStream(data=self.file_bytes,
                              version=self.version,
                              start=self.data_start if start is None else start,
                              end=self.data_end if end is None else end,
                              verbosity=self.verbosity)

    @staticmethod
    def position_string(file_position: int):
        """
        Return a human-readable string representation of a position in the TAP file.

        :param file_position:
            The file offset to display
        :return:
            str
        """

        return "[0x{:08X}]".format(file_position)
