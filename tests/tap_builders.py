"""
Builders for synthetic TAP files and pulse streams used by the tests.
"""

import struct

SHORT = 0x30
MEDIUM = 0x42
LONG = 0x56
PILOT = SHORT
FILLER = 0x70  # neither a pilot byte nor a short/medium/long pulse


def byte_pulses(value):
    """
    Pulses for one byte as the KERNAL saves it: LM marker, eight bits least-significant first, then a parity pair.
    """
    pulses = [LONG, MEDIUM]
    for bit in range(8):
        if (value >> bit) & 1:
            pulses += [MEDIUM, SHORT]
        else:
            pulses += [SHORT, MEDIUM]
    pulses += [SHORT, MEDIUM]
    return pulses


def bytes_pulses(values):
    pulses = []
    for value in values:
        pulses += byte_pulses(value)
    return pulses


def header_block_pulses(name: bytes, file_type=0x01, start_address=0x0801, end_address=0x1000):
    values = list(range(0x89, 0x80, -1))
    values += [file_type, start_address & 0xff, start_address >> 8, end_address & 0xff, end_address >> 8]
    values += list(name.ljust(16, b' '))
    return bytes_pulses(values)


def program_payload(name: bytes, length=20000, pilot_length=8000, tail=b""):
    """
    One program: a pilot tone, a header block carrying <name>, then filler up to <length> bytes, then <tail>.
    """
    payload = [PILOT] * pilot_length + header_block_pulses(name)
    payload += [FILLER] * (length - len(payload))
    return bytes(payload) + tail


def make_tap(payload: bytes, version=1, data_length=None):
    if data_length is None:
        data_length = len(payload)
    return b"C64-TAPE-RAW" + bytes([version, 0, 0, 0]) + struct.pack("<I", data_length) + payload


def write_tap(path, payload: bytes, **kwargs):
    path.write_bytes(make_tap(payload, **kwargs))
    return str(path)
