# constants.py
# -*- coding: utf-8 -*-
#
# The Python script in this file contains the fixed values of the Commodore
# TAP container format and the pulse-length tables used to decode it.
#
# Copyright (C) 2022-2023 Dominic Ford <https://dcford.org.uk/>
#
# This code is free software; you can redistribute it and/or modify it under
# the terms of the GNU General Public License as published by the Free Software
# Foundation; either version 3 of the License, or (at your option) any later
# version.
#
# You should have received a copy of the GNU General Public License along with
# this file; if not, write to the Free Software Foundation, Inc., 51 Franklin
# Street, Fifth Floor, Boston, MA  02110-1301, USA

# ----------------------------------------------------------------------------

"""
This file contains the layout of the TAP container used to store raw Commodore datasette captures, together with
the lookup tables used to categorise pulse lengths and to clean up program names.

References:

https://vice-emu.sourceforge.io/vice_17.html#SEC330
https://wav-prg.sourceforge.io/tape.html
https://www.c64-wiki.com/wiki/Datassette_Encoding
"""

# TAP container header: signature, version, three reserved bytes, little-endian payload length
tap_signature = b"C64-TAPE-RAW"
tap_header_format = "<12sB3xI"
tap_header_length = 20
tap_length_offset = 16
tap_length_format = "<I"
tap_versions = (0, 1, 2)

# In version 0 files a zero byte stands for any pulse too long to fit in one byte
tap_version0_long_pulse = 0x100

# Typical pulse lengths found on KERNAL tapes, measured in TAP units
pulse_types = {
    's': {'min': 0x24, 'max': 0x36},  # clean value 0x30
    'm': {'min': 0x37, 'max': 0x49},  # clean value 0x42
    'l': {'min': 0x4a, 'max': 0x64}  # clean value 0x56
}

# Pilot tone bytes lie strictly between these raw values
pilot_min = 40
pilot_max = 60

# Default and allowed minimum lengths (in bytes) of pilot tones and program blocks
header_min_size_default = 7000
block_min_size_default = 14000
min_size_lower_limit = 500
min_size_upper_limit = 0xffff

# Tail trimming: how far back we search for the end-of-data marker, and how many bytes we keep after it
tail_search_window = 0x4000
tail_margin = 4

# Commodore header blocks start with the countdown $89 $88 ... $81, then type, start address, end address, name
header_marker = 0x89
header_info_length = 14
header_name_length = 16
no_name = "NO-NAME"

# Characters that can't safely appear in an output filename
filename_replacements = str.maketrans({
    '*': '_', '<': '_', '>': '_', '?': '_', ':': '_', '|': '_', '^': '_',
    ',': '.', '\\': '.', '/': '.',
    '"': "'"
})

# Output filename styles, selected with --names
naming_styles = {
    0: "{tap_name}_{block:02d}",
    1: "{tap_name}_{block:02d}_{program_name}",
    2: "{block:02d}_{program_name}",
    3: "{program_name}"
}

# First line of .idx index files
index_file_banner = "; Index file generated by Split Tap"
