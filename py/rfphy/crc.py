from __future__ import annotations

# MSB first CRCs: CRC-16/XMODEM for the USB bridge frames, CRC-32/BZIP2 for
# persisted fastlock profiles.

import array
import struct

def make_table(poly: int, width: int) -> array.array:
    top = 1 << width
    table = array.array('I', (0, poly))
    for i in range(1, 128):
        assert len(table) == 2 * i
        dbl = table[i] << 1
        dbl = min(dbl, dbl ^ poly ^ top)
        table.extend((dbl, dbl ^ poly))
    assert len(table) == 256
    return table

CRC16_TABLE = make_table(0x1021, 16)
CRC32_TABLE = make_table(0x04c11db7, 32)

CRC32_RESIDUE = 0x38fb2284

def crc16(bb: bytes|bytearray) -> int:
    result = 0
    for b in bb:
        result = result << 8 & 0xff00 ^ CRC16_TABLE[result >> 8 ^ b]
    return result

def crc32(bb: bytes|bytearray) -> int:
    result = 0xffffffff
    for b in bb:
        result = result << 8 & 0xffffff00 ^ CRC32_TABLE[result >> 24 ^ b]
    return result ^ 0xffffffff

def test_check_values() -> None:
    assert crc16(b'123456789') == 0x31c3
    assert crc32(b'123456789') == 0xfc891918

def test_crc32_residue() -> None:
    data = b'Fastlock profile 0123456789'
    data += struct.pack('>I', crc32(data))
    assert crc32(data) == CRC32_RESIDUE
    assert crc32(struct.pack('>I', crc32(b''))) == CRC32_RESIDUE
