#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# tap_pulse_decoder.py
#
# The Python script in this file turns the pulses stored in Commodore TAP
# files back into the bytes that were saved onto the tape.
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
Decode bytes from the pulses on a Commodore tape. Each pulse is categorised as short (s), medium (m) or long (l).
Every byte starts with the marker pair LM, followed by eight bits stored least-significant first, where SM (or SL)
is a 0 and MS (or LS) is a 1, and ends with a parity pair.

References:

https://wav-prg.sourceforge.io/tape.html
https://www.c64-wiki.com/wiki/Datassette_Encoding
"""

import logging

from constants import pilot_max, pilot_min, pulse_types
from tap_file_reader import TapPulseStream


def classify_pulse(pulse_length: int):
    """
    Categorise a pulse as short, medium or long.

    :param pulse_length:
        Length of the pulse, in TAP units
    :return:
        's', 'm' or 'l', or '?' if the pulse fits none of these
    """

    for pulse_type, pulse_spec in pulse_types.items():
        if pulse_spec['min'] <= pulse_length <= pulse_spec['max']:
            return pulse_type
    return '?'


def is_pilot(byte_value):
    """
    Test whether a raw byte of a TAP file looks like part of a pilot tone. Works on single bytes and on numpy arrays.
    """
    return (byte_value > pilot_min) & (byte_value < pilot_max)


class TapByteDecoder:
    """
    Class to decode a stream of bytes from the pulses on a Commodore tape.
    """

    def __init__(self, pulse_stream: TapPulseStream):
        """
        Decode bytes from a stream of pulses.

        :param pulse_stream:
            The stream of pulses to decode, positioned where decoding should start
        """

        self.pulse_stream = pulse_stream

        # Did the most recent call to <fetch_byte> find a sync marker?
        self.sync_found = False

        # Count the number of times we failed to find a sync marker
        self.sync_failures = 0

    @property
    def end_of_stream(self):
        return self.pulse_stream.end_of_stream

    def _fetch_pulse_type(self):
        pulse_length = self.pulse_stream.fetch_pulse()
        if pulse_length is None:
            return None
        return classify_pulse(pulse_length)

    def _find_sync(self):
        """
        Step through the pulse stream, one pulse at a time, until we find a long pulse followed by a medium pulse.

        :return:
            Boolean indicating whether the sync marker was found before the end of the stream
        """

        previous_type = self._fetch_pulse_type()
        if previous_type is None:
            return False

        while True:
            pulse_type = self._fetch_pulse_type()
            if pulse_type is None:
                return False
            if previous_type == 'l' and pulse_type == 'm':
                return True
            previous_type = pulse_type

    def _fetch_pulse_pair(self):
        first_type = self._fetch_pulse_type()
        if first_type is None:
            return None
        second_type = self._fetch_pulse_type()
        if second_type is None:
            return None
        return first_type + second_type

    def fetch_byte(self):
        """
        Decode the next byte from the pulse stream.

        If no sync marker is found before the end of the stream, zero is returned. If the stream ends part way
        through the byte, the bits read so far are returned.

        :return:
            int
        """

        position = self.pulse_stream.position
        self.sync_found = self._find_sync()

        if not self.sync_found:
            self.sync_failures += 1
            logging.debug("[0x{:08X}] !!! SYNC NOT FOUND !!!".format(position))
            return 0

        byte_value = 0
        bit_value = 0

        for _ in range(8):
            pulse_pair = self._fetch_pulse_pair()
            if pulse_pair is None:
                break

            # Pairs which are neither a 0 nor a 1 repeat the previous bit
            if pulse_pair in ('sm', 'sl'):
                bit_value = 0
            elif pulse_pair in ('ms', 'ls'):
                bit_value = 0x80

            # Bits arrive least-significant first
            byte_value = (byte_value >> 1) | bit_value

        # Skip parity bit
        self._fetch_pulse_pair()

        return byte_value
