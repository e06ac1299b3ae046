#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# commodore_tap_split.py
#
# This Python script splits TAP files of cassette tapes recorded by 8-bit
# Commodore computers (e.g. C64, C16, Plus/4 and C128) into one TAP file per
# program, by searching for the pilot tones which precede each program.
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
This Python script splits TAP files of 8-bit Commodore cassette tapes into one TAP file for each program on the tape.

Programs are found by searching for long pilot tones - the steady tone recorded before every program. The tape is cut
at the start of each pilot tone, and pieces which are too short to be a program are merged into their neighbours.
The name of each program is recovered by decoding the header block which follows the pilot tone, and any noise
pulses after the end of each program are trimmed off.

By default, this script writes one TAP file per program into the output directory. It can also list the programs it
finds, write a text index of their positions, or write a single cleaned TAP file containing all the programs. If a
more sophisticated export is required, it is simple to call the <TapCommodoreFileSplit> class from an external
script.

Limitations:

* This script only finds programs preceded by a pilot tone of the usual length. Turbo loaders with short pilot tones
  may need a smaller --header-min setting.

References:

https://vice-emu.sourceforge.io/vice_17.html#SEC330
https://wav-prg.sourceforge.io/tape.html
https://www.c64-wiki.com/wiki/Datassette_Encoding
"""

import argparse
import logging
import numpy as np
import os
import sys

from typing import Dict, List, NamedTuple, Optional, Sequence

from constants import block_min_size_default, filename_replacements, header_info_length, header_marker, \
    header_min_size_default, header_name_length, index_file_banner, min_size_lower_limit, min_size_upper_limit, \
    naming_styles, no_name, tail_margin, tail_search_window, tap_header_length
from tap_file_reader import TapFileReader, TapFormatError, pack_tap_header
from tap_pulse_decoder import TapByteDecoder, is_pilot


class InsufficientSegmentsError(Exception):
    """
    Raised when a tape holds fewer than two programs, so there is nothing to split.
    """


class TapSegment(NamedTuple):
    """
    A range of file offsets within a TAP file holding one program. <end> is exclusive.
    """
    start: int
    end: int

    @property
    def length(self):
        return self.end - self.start


def find_pilot_tones(file_bytes: bytes, header_min_size: int, data_offset: int = tap_header_length):
    """
    Search the raw pulse data of a TAP file for pilot tones: continuous runs of pulses whose raw byte values all lie
    strictly between <pilot_min> and <pilot_max>.

    A run is recorded when it is ended by a non-pilot byte and it contains more than <header_min_size> bytes. A run
    still in progress at the end of the file is not recorded.

    :param file_bytes:
        The bytes of the TAP file
    :param header_min_size:
        Pilot tones must be longer than this many bytes to count
    :param data_offset:
        File offset of the start of the pulse data
    :return:
        List of dictionaries, each with the file offsets of the first and last byte of a pilot tone
    """

    if len(file_bytes) <= data_offset:
        return []

    data = np.frombuffer(file_bytes, dtype=np.uint8)[data_offset:]
    pilot = is_pilot(data).astype(np.int8)

    # +1 where a pilot tone starts, -1 at the first byte after one ends
    transitions = np.diff(np.concatenate(([0], pilot)))
    run_starts = np.flatnonzero(transitions == 1)
    run_ends = np.flatnonzero(transitions == -1)

    pilot_tones = []
    for run_start, run_end in zip(run_starts, run_ends):
        run_length = int(run_end - run_start)
        if run_length > header_min_size:
            pilot_tones.append({
                'start': data_offset + int(run_start),
                'end': data_offset + int(run_end) - 1,
                'length': run_length
            })

    logging.debug("Found {:d} pilot tones longer than {:d} bytes".format(len(pilot_tones), header_min_size))

    return pilot_tones


def filter_short_segments(boundaries: Sequence[int], block_min_size: int):
    """
    Remove block boundaries until every block is at least <block_min_size> bytes long. A short block is merged into
    the block which follows it; a short final block is merged into the block before it.

    :param boundaries:
        Ascending list of file offsets; block i runs from boundaries[i] to boundaries[i+1]
    :param block_min_size:
        Minimum allowed length of a block, in bytes
    :return:
        New list of boundaries
    """

    boundaries = list(boundaries)
    index = 0

    while index < len(boundaries) - 1 and len(boundaries) > 2:
        if boundaries[index + 1] - boundaries[index] >= max(block_min_size, 1):
            index += 1
            continue

        if index + 2 < len(boundaries):
            del boundaries[index + 1]
        else:
            del boundaries[index]

    return boundaries


def build_segments(pilot_tones: List[Dict], data_start: int, data_end: int, block_min_size: int):
    """
    Cut the pulse data of a TAP file into segments, starting a new segment at the start of each pilot tone.

    :param pilot_tones:
        List of pilot tones, as returned by <find_pilot_tones>
    :param data_start:
        File offset of the start of the pulse data
    :param data_end:
        File offset of the end of the pulse data
    :param block_min_size:
        Segments shorter than this are merged into their neighbours
    :return:
        List of <TapSegment>
    """

    if data_end <= data_start:
        return []

    boundaries = [data_start] + [tone['start'] for tone in pilot_tones] + [data_end]
    boundaries = filter_short_segments(boundaries=boundaries, block_min_size=block_min_size)

    return [TapSegment(start=start, end=end) for start, end in zip(boundaries[:-1], boundaries[1:]) if end > start]


def merge_segments(segments: Sequence[TapSegment], index: int):
    """
    Join a segment with the segment which follows it.

    :param segments:
        List of segments
    :param index:
        Index (0-based) of the first of the two segments to join
    :return:
        New list of segments
    """

    if not 0 <= index < len(segments) - 1:
        raise IndexError("Block {:d} has no following block to join".format(index + 1))

    merged = TapSegment(start=segments[index].start, end=segments[index + 1].end)
    return list(segments[:index]) + [merged] + list(segments[index + 2:])


def fix_end_tape(block: bytes):
    """
    Work out how much of a segment to keep, by removing the noise pulses that commonly follow the end of a program.

    Starting four bytes before the end, we step backwards over pulses (short pulses, in practice) looking for a zero
    byte, which marks the long pulse at the end of the recorded data. The segment is cut four bytes after it. If the
    byte four before the end is already zero, or no zero byte lies within <tail_search_window> bytes of the end,
    the segment is kept whole.

    :param block:
        The raw bytes of the segment
    :return:
        The number of bytes to keep
    """

    length = len(block)
    position = length - tail_margin

    if position < 0 or block[position] == 0:
        return length

    search_limit = max(length - tail_search_window, -1)
    while position > search_limit:
        if block[position] == 0:
            return position + tail_margin
        position -= 1

    return length


def sanitise_program_name(name_bytes: Sequence[int]):
    """
    Turn the name bytes from a Commodore tape header into a string which is safe to use in a filename.

    :param name_bytes:
        Up to 16 bytes of PETSCII program name
    :return:
        str
    """

    cleaned = []
    for byte_value in name_bytes[:header_name_length]:
        if byte_value == 0:
            break
        if byte_value < 0x20:
            byte_value = ord('_')
        elif 0xa0 <= byte_value < 0xff:
            # Shifted characters
            byte_value &= 0x7f
        cleaned.append(byte_value)

    name = bytes(cleaned).decode('latin-1').rstrip(' ')
    name = name.translate(filename_replacements)
    name = "".join(character if ord(character) <= 0x7f else '_' for character in name)

    if name.strip(' _') == "":
        return no_name
    return name


class TapCommodoreFileSplit:
    """
    Class to split TAP files of Commodore datasette tapes into individual programs.
    """

    def __init__(self, input_filename: str,
                 header_min_size: int = header_min_size_default,
                 block_min_size: int = block_min_size_default,
                 naming_style: int = 0,
                 verbosity: int = 0,
                 fix_header: bool = True):
        """
        Split TAP files of Commodore datasette tapes into individual programs.

        :param input_filename:
            Filename of the TAP file to process
        :param header_min_size:
            Pilot tones must be longer than this many bytes to mark the start of a program
        :param block_min_size:
            Programs shorter than this many bytes are merged into their neighbours
        :param naming_style:
            Style of output filenames, 0-3 (see <constants.naming_styles>)
        :param verbosity:
            Diagnostic level, 0-2
        :param fix_header:
            Rewrite the length in the header of the input file if it is wrong
        :return:
        """

        # Input settings
        self.input_filename = input_filename
        self.header_min_size = header_min_size
        self.block_min_size = block_min_size
        self.naming_style = naming_style
        self.verbosity = verbosity

        assert naming_style in naming_styles, "Naming style must be between 0 and 3"

        # Open TAP file
        self.tap_file = TapFileReader(input_filename=self.input_filename,
                                      fix_header=fix_header,
                                      verbosity=self.verbosity)

        # Program headers we have decoded, indexed by the file offset of the segment
        self.program_headers: Dict[int, Dict] = {}

    @property
    def tap_name(self):
        """
        The filename of the input TAP file, without its directory or extension.
        """
        return os.path.splitext(os.path.basename(self.input_filename))[0]

    def scan(self):
        """
        Main entry point for finding the programs on the tape.

        :return:
            List of <TapSegment>, one for each program
        """

        pilot_tones = find_pilot_tones(file_bytes=self.tap_file.file_bytes,
                                       header_min_size=self.header_min_size,
                                       data_offset=self.tap_file.data_start)

        for tone in pilot_tones:
            logging.debug("Pilot tone 0x{:08x}-0x{:08x} ({:d} bytes)".format(
                tone['start'], tone['end'], tone['length']))

        segments = build_segments(pilot_tones=pilot_tones,
                                  data_start=self.tap_file.data_start,
                                  data_end=self.tap_file.data_end,
                                  block_min_size=self.block_min_size)

        logging.debug("{:d} pilot tones give {:d} blocks".format(len(pilot_tones), len(segments)))

        return segments

    def program_header(self, segment: TapSegment):
        """
        Decode the Commodore header block at the start of a segment. Each segment is only decoded once.

        :param segment:
            The segment to decode
        :return:
            Dictionary describing the header, with a sanitised program name
        """

        if segment.start in self.program_headers:
            return self.program_headers[segment.start]

        decoder = TapByteDecoder(pulse_stream=self.tap_file.pulse_stream(start=segment.start, end=segment.end))

        # Search for the countdown which starts a header block
        header_bytes = [0] * header_info_length
        found_marker = False
        while not decoder.end_of_stream:
            if decoder.fetch_byte() == header_marker:
                found_marker = True
                break

        if not found_marker:
            logging.debug("{} !!! Premature end of file !!!".format(self.tap_file.position_string(segment.start)))
            header = {
                'name': no_name,
                'found': False
            }
        else:
            header_bytes[0] = header_marker
            for index in range(1, header_info_length):
                if decoder.end_of_stream:
                    break
                header_bytes[index] = decoder.fetch_byte()

            name_bytes = []
            for _ in range(header_name_length):
                if decoder.end_of_stream:
                    break
                name_bytes.append(decoder.fetch_byte())

            header = {
                'name': sanitise_program_name(name_bytes),
                'found': True,
                'file_type': header_bytes[9],
                'start_address': header_bytes[10] + 256 * header_bytes[11],
                'end_address': header_bytes[12] + 256 * header_bytes[13]
            }

        header['sync_failures'] = decoder.sync_failures
        self.program_headers[segment.start] = header
        return header

    def decode_name(self, segment: TapSegment):
        """
        Return the sanitised name of the program held in a segment.
        """
        return self.program_header(segment)['name']

    def fetch_segment_bytes(self, segment: TapSegment):
        """
        Return the pulse data of a segment, with trailing noise trimmed off.

        :param segment:
            The segment to read
        :return:
            bytes
        """

        block = self.tap_file.read_block(start=segment.start, end=segment.end)
        return block[:fix_end_tape(block)]

    def emit_segment(self, segment: TapSegment):
        """
        Build a complete TAP file containing a single segment.

        :param segment:
            The segment to export
        :return:
            bytes
        """

        block = self.fetch_segment_bytes(segment)
        return pack_tap_header(version=self.tap_file.version, data_length=len(block)) + block

    def emit_cleaned(self, segments: Sequence[TapSegment]):
        """
        Build a single TAP file containing all the segments, each with its trailing noise trimmed off.

        :param segments:
            The segments to include
        :return:
            bytes
        """

        blocks = [self.fetch_segment_bytes(segment) for segment in segments]
        block_lengths = np.array([len(block) for block in blocks], dtype=np.int64)

        original_size = self.tap_file.data_length
        cleaned_size = int(block_lengths.sum())
        reduction = original_size - cleaned_size
        logging.info("  Original size: {:d} bytes".format(original_size))
        logging.info("  Cleaned size:  {:d} bytes".format(cleaned_size))
        logging.info("  Reduction:     {:d} bytes ({:.1f}%)".format(
            reduction, 100. * reduction / original_size if original_size > 0 else 0.))

        for index, segment in enumerate(segments):
            logging.info("  Block {:02d} ({}): {:d} bytes".format(
                index + 1, self.decode_name(segment), int(block_lengths[index])))

        return pack_tap_header(version=self.tap_file.version, data_length=cleaned_size) + b"".join(blocks)

    @staticmethod
    def emit_index(segments: Sequence[TapSegment], names: Sequence[str]):
        """
        Build the text of an index file, listing the file offset and name of each program.

        :param segments:
            The segments to list
        :param names:
            The name of each segment
        :return:
            str
        """

        output = index_file_banner + "\n"
        for segment, name in zip(segments, names):
            output += "0x{:08X} {:<16.16s}\n".format(segment.start, name)
        return output

    def output_filename(self, block_index: int, program_name: str):
        """
        Work out the filename for the TAP file of one program, according to <self.naming_style>.

        :param block_index:
            Index (0-based) of the program on the tape
        :param program_name:
            Sanitised name of the program
        :return:
            str
        """

        return naming_styles[self.naming_style].format(tap_name=self.tap_name,
                                                       block=block_index + 1,
                                                       program_name=program_name) + ".tap"

    def describe_segments(self, segments: Sequence[TapSegment]):
        """
        Output human-readable text listing all the programs found on the tape.

        :param segments:
            List of segments, as returned by <scan>
        :return:
            String containing a human-readable table of programs
        """

        output = ""

        for index, segment in enumerate(segments):
            header = self.program_header(segment)
            output += "{:02d}) {:8d} bytes, 0x{:08X} to 0x{:08X} - {:16s}".format(
                index + 1, segment.length, segment.start, segment.end - 1, header['name'])
            if self.verbosity and header['found']:
                output += " type {:02X} from ${:04X} to ${:04X}".format(
                    header['file_type'], header['start_address'], header['end_address'])
            if self.verbosity and header['sync_failures']:
                output += " sync errors: {:d}".format(header['sync_failures'])
            output += "\n"

        return output

    def write_segments(self, segments: Sequence[TapSegment], output_dir: str):
        """
        Write one TAP file for each program into an output directory. A failure to write one file is reported,
        and the remaining files are still written.

        :param segments:
            List of segments, as returned by <scan>
        :param output_dir:
            The directory in which to save the output files
        :return:
            List of the filenames written
        """

        if len(segments) < 2:
            raise InsufficientSegmentsError("There are no blocks to split.")

        os.makedirs(output_dir, exist_ok=True)
        filenames_written = []

        for index, segment in enumerate(segments):
            output_file = os.path.join(output_dir, self.output_filename(block_index=index,
                                                                        program_name=self.decode_name(segment)))
            logging.debug("{:16s} 0x{:08x}-0x{:08x}".format(self.decode_name(segment), segment.start, segment.end))
            try:
                with open(output_file, "wb") as file_handle:
                    file_handle.write(self.emit_segment(segment))
            except OSError as error:
                logging.error("Could not write <{}>: {}".format(output_file, error))
                continue
            logging.info(output_file)
            filenames_written.append(output_file)

        return filenames_written

    def write_cleaned(self, segments: Sequence[TapSegment], output_dir: str):
        """
        Write a single cleaned TAP file containing all the programs.

        :param segments:
            List of segments, as returned by <scan>
        :param output_dir:
            The directory in which to save the output file
        :return:
            Filename of the cleaned TAP file
        """

        output_file = os.path.join(output_dir, "{}_cleaned.tap".format(self.tap_name))
        logging.info("Creating cleaned TAP file: {}".format(output_file))

        os.makedirs(output_dir, exist_ok=True)
        with open(output_file, "wb") as file_handle:
            file_handle.write(self.emit_cleaned(segments))

        logging.info("Cleaned TAP file created successfully: {}".format(output_file))
        logging.info("  {:d} programs included".format(len(segments)))
        return output_file

    def write_index(self, segments: Sequence[TapSegment], output_dir: str):
        """
        Write an index file listing the position and name of each program.

        :param segments:
            List of segments, as returned by <scan>
        :param output_dir:
            The directory in which to save the index file
        :return:
            Filename of the index file
        """

        output_file = os.path.join(output_dir, "{}.idx".format(self.tap_name))
        names = [self.decode_name(segment) for segment in segments]

        os.makedirs(output_dir, exist_ok=True)
        with open(output_file, "wt") as file_handle:
            file_handle.write(self.emit_index(segments=segments, names=names))

        logging.info("Index file created: {}".format(output_file))
        logging.info("  {:d} programs indexed".format(len(segments)))
        return output_file


def clamp_min_size(value: int):
    """
    Keep a minimum-size setting from the command line within sensible limits.
    """
    return min(max(value, min_size_lower_limit), min_size_upper_limit)


def main(argv: Optional[Sequence[str]] = None):
    # Read input parameters
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument('--input',
                        required=True,
                        type=str,
                        dest="input_filename",
                        help="Input TAP file to process")
    parser.add_argument('--output',
                        default=None,
                        type=str,
                        dest="output_directory",
                        help="Directory in which to put the output files (default: alongside the input)")
    parser.add_argument('--list',
                        action='store_true',
                        dest="list_only",
                        help="List the programs on the tape and exit")
    parser.add_argument('--index',
                        action='store_true',
                        dest="create_index",
                        help="Create an index file (.idx) of program positions and names")
    parser.add_argument('--clean',
                        action='store_true',
                        dest="clean",
                        help="Create a single cleaned TAP file, with short blocks merged and trailing noise removed")
    parser.add_argument('--names',
                        default=0,
                        type=int,
                        choices=sorted(naming_styles.keys()),
                        dest="naming_style",
                        help="Output filename style: 0 tap_NN, 1 tap_NN_name, 2 NN_name, 3 name")
    parser.add_argument('--debug',
                        default=0,
                        type=int,
                        choices=[0, 1, 2],
                        dest="verbosity",
                        help="Verbosity of debugging output: 0 none, 1 header details and sync errors, 2 all")
    parser.add_argument('--header-min',
                        default=header_min_size_default,
                        type=int,
                        dest="header_min_size",
                        help="Minimum length of a pilot tone, in bytes (try 5000)")
    parser.add_argument('--block-min',
                        default=block_min_size_default,
                        type=int,
                        dest="block_min_size",
                        help="Minimum length of a program, in bytes (try 18000)")
    parser.add_argument('--join',
                        action='append',
                        type=int,
                        dest="join",
                        help="Join block N with the block after it before splitting (may be repeated)")
    parser.add_argument('--no-fix',
                        action='store_false',
                        dest="fix_header",
                        help="Don't rewrite the header of the input file if its length field is wrong")
    parser.set_defaults(list_only=False, create_index=False, clean=False, fix_header=True)
    args = parser.parse_args(argv)
    blocks_to_join = args.join or []

    # Set up a logging object
    logging.basicConfig(level=logging.DEBUG if args.verbosity > 0 else logging.INFO,
                        stream=sys.stdout,
                        format='[%(asctime)s] %(levelname)s:%(filename)s:%(message)s',
                        datefmt='%d/%m/%Y %H:%M:%S')
    logger = logging.getLogger(__name__)
    logger.debug(__doc__.strip())

    output_directory = args.output_directory
    if output_directory is None:
        output_directory = os.path.dirname(os.path.abspath(args.input_filename))

    # Open input TAP file
    try:
        processor = TapCommodoreFileSplit(input_filename=args.input_filename,
                                          header_min_size=clamp_min_size(args.header_min_size),
                                          block_min_size=clamp_min_size(args.block_min_size),
                                          naming_style=args.naming_style,
                                          verbosity=args.verbosity,
                                          fix_header=args.fix_header)
    except TapFormatError as error:
        logging.error(str(error))
        return 1
    except OSError as error:
        logging.error("Open error or File not found: {} ({})".format(args.input_filename, error))
        return 1

    # Search for programs
    segments = processor.scan()
    logging.info("Blocks list:\n{}".format(processor.describe_segments(segments)))

    if args.create_index:
        processor.write_index(segments=segments, output_dir=output_directory)

    if args.list_only:
        return 0

    if args.clean:
        processor.write_cleaned(segments=segments, output_dir=output_directory)
        return 0

    # Join blocks, working from the highest block number so that earlier numbers stay valid
    try:
        for block in sorted(set(blocks_to_join), reverse=True):
            segments = merge_segments(segments=segments, index=block - 1)
    except IndexError as error:
        logging.error(str(error))
        return 1
    if blocks_to_join:
        logging.info("Blocks list:\n{}".format(processor.describe_segments(segments)))

    logging.info("Now {:d} blocks will be created. TAP version: {:d}".format(
        len(segments), processor.tap_file.version))

    try:
        processor.write_segments(segments=segments, output_dir=output_directory)
    except InsufficientSegmentsError as error:
        logging.error(str(error))
        return 1

    logging.info("Operation successfully completed.")
    return 0


# Do it right away if we're run as a script
if __name__ == "__main__":
    sys.exit(main())
