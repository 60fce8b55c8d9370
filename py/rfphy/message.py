from __future__ import annotations

# USB SPI bridge framing, and the register / FPGA / GPIO ports built on it.
#
# Frame: magic, code, payload length, payload, CRC-16 (big endian) over all
# of it.  Responses carry the request code | 0x80, ACK or NACK.

from .crc import crc16
from .errors import RegisterIOError
from .fpga import FpgaPort
from .port import GpioPort, RegisterPort

import logging
import struct

from dataclasses import dataclass
from typing import TypeAlias
from usb.core import Device, USBError

log = logging.getLogger(__name__)

Target: TypeAlias = Device | bytearray

MAGIC = b'\xce\x93'

ACK=0x80
NACK=0x81

PING=0x00
GET_PROTOCOL_VERSION=0x02
GET_SERIAL_NUMBER=0x03

GPIO_SET=0x12

SPI_WRITE=0x60
SPI_READ=0x61

PEEK=0x71
POKE=0x72

OUT_ENDPOINT = 0x03
IN_ENDPOINT = 0x83
TIMEOUT_MS = 10000

# The chip takes at most 8 bytes per SPI instruction.
SPI_MAX_BURST = 8
SPI_WRITE_BIT = 0x8000

GPIO_LINES = {GpioPort.RESET: 0, GpioPort.SYNC: 1}

@dataclass
class Message:
    # Magic is implicit.
    code: int
    # len is implicit in payload.
    payload: bytes
    # CRC is implied.
    def frame(self) -> bytes:
        return frame(self.code, self.payload)
    def __str__(self) -> str:
        return f'{self.code:#06x} ' + self.payload.hex(' ')

def frame(code: int, payload: bytes|bytearray, limit: int = 64) -> bytes:
    assert len(payload) + 6 <= limit
    message = MAGIC + bytes((code, len(payload))) + payload
    return message + struct.pack('>H', crc16(message))

def deframe(message: bytes) -> Message:
    if len(message) < 6:
        raise RegisterIOError('Under-length message')
    if message[:2] != MAGIC:
        raise RegisterIOError('Incorrect magic')
    if crc16(message) != 0:
        raise RegisterIOError('Bad CRC')
    code = message[2]
    length = message[3]
    if len(message) != length + 6:
        raise RegisterIOError('Length mismatch')

    return Message(code, message[4:-2])

def command(dev: Target, code: int, payload: bytes|bytearray,
            expect: int = ACK) -> Message:
    data = frame(code, payload)
    if isinstance(dev, bytearray):
        dev += data
        return Message(ACK, b'')
    try:
        dev.write(OUT_ENDPOINT, data) # type: ignore
        result = deframe(bytes(dev.read(IN_ENDPOINT, 64, TIMEOUT_MS))) # type: ignore
    except USBError as e:
        raise RegisterIOError(f'USB transfer failed: {e}') from e
    if expect != NACK and result.code == NACK:
        raise RegisterIOError(f'Result code is NACK ' + result.payload.hex(' '))
    if result.code != expect:
        raise RegisterIOError(f'Result code is {result.code:#04x}')
    return result

def retrieve(dev: Target, code: int, payload: bytes = b'') -> Message:
    return command(dev, code, payload, expect = code | 0x80)

def ping(dev: Target, payload: bytes) -> bytes:
    resp = retrieve(dev, PING, payload)
    if resp.payload != payload:
        raise RegisterIOError('Ping payload mismatch')
    return resp.payload

def get_protocol_version(dev: Target) -> int:
    data = retrieve(dev, GET_PROTOCOL_VERSION, b'')
    return struct.unpack('<I', data.payload)[0]

def get_serial_number(dev: Target) -> bytes:
    return retrieve(dev, GET_SERIAL_NUMBER, b'').payload

def spi_instruction(write: bool, address: int, count: int) -> bytes:
    assert 1 <= count <= SPI_MAX_BURST
    word = (SPI_WRITE_BIT if write else 0) | count - 1 << 12 | address & 0x3ff
    return struct.pack('>H', word)

def spi_read(dev: Target, address: int, count: int) -> bytes:
    r = retrieve(dev, SPI_READ, spi_instruction(False, address, count))
    if len(r.payload) != count:
        raise RegisterIOError(f'SPI read of {count} returned '
                              f'{len(r.payload)} bytes')
    return r.payload

def spi_write(dev: Target, address: int, data: bytes|bytearray) -> None:
    command(dev, SPI_WRITE, spi_instruction(True, address, len(data)) + data)

def peek32(dev: Target, address: int) -> int:
    data = retrieve(dev, PEEK, struct.pack('<II', address, 4))
    if len(data.payload) != 8:
        raise RegisterIOError(f'PEEK returned {len(data.payload)} bytes')
    aa, value = struct.unpack('<II', data.payload)
    if aa != address:
        raise RegisterIOError(f'PEEK address {aa:#x} != {address:#x}')
    return value

def poke32(dev: Target, address: int, value: int) -> None:
    command(dev, POKE, struct.pack('<II', address, value & 0xffffffff))

def gpio_set(dev: Target, line: str, level: bool) -> None:
    command(dev, GPIO_SET, bytes((GPIO_LINES[line], level)))

class UsbRegisterPort(RegisterPort):
    '''Chip registers over the bridge, in bursts of up to 8 bytes.'''
    def __init__(self, dev: Target):
        self.dev = dev

    def read_many(self, address: int, count: int) -> bytes:
        result = b''
        while len(result) < count:
            todo = min(count - len(result), SPI_MAX_BURST)
            result += spi_read(self.dev, address - len(result), todo)
        return result

    def write_many(self, address: int, data: bytes|bytearray) -> None:
        base = 0
        while base < len(data):
            todo = min(SPI_MAX_BURST, len(data) - base)
            spi_write(self.dev, address - base, data[base:base + todo])
            base += todo

class UsbFpgaPort(FpgaPort):
    def __init__(self, dev: Target, num_channels: int = 4):
        self.dev = dev
        self.num_channels = num_channels

    def read32(self, address: int) -> int:
        return peek32(self.dev, address)

    def write32(self, address: int, value: int) -> None:
        poke32(self.dev, address, value)

class UsbGpio(GpioPort):
    def __init__(self, dev: Target):
        self.dev = dev

    def set_line(self, line: str, level: bool) -> None:
        log.debug('GPIO %s = %d', line, level)
        gpio_set(self.dev, line, level)

class LoopbackBridge:
    '''Answers bridge requests from a simulated chip, for the tests.'''
    def __init__(self) -> None:
        from .sim import SimulatedChip
        self.chip = SimulatedChip()
        self.fpga: dict[int, int] = {}
        self.lines: dict[int, int] = {}
        self.nack = False
        self.response = b''

    def write(self, endpoint: int, data: bytes) -> None:
        m = deframe(bytes(data))
        code, payload = m.code | 0x80, b''
        if self.nack:
            code = NACK
        elif m.code == SPI_READ or m.code == SPI_WRITE:
            word = struct.unpack('>H', m.payload[:2])[0]
            address = word & 0x3ff
            count = (word >> 12 & 7) + 1
            if m.code == SPI_WRITE:
                self.chip.write_many(address, m.payload[2:2 + count])
                code = ACK
            else:
                payload = self.chip.read_many(address, count)
        elif m.code == PEEK:
            address = struct.unpack('<I', m.payload[:4])[0]
            payload = struct.pack('<II', address, self.fpga.get(address, 0))
        elif m.code == POKE:
            address, value = struct.unpack('<II', m.payload)
            self.fpga[address] = value
            code = ACK
        elif m.code == GPIO_SET:
            self.lines[m.payload[0]] = m.payload[1]
            code = ACK
        self.response = frame(code, payload)

    def read(self, endpoint: int, size: int, timeout: int) -> bytes:
        return self.response

def test_frame_codec() -> None:
    import pytest
    code = 0x12
    payload = b'This is a test'
    assert deframe(frame(code, payload)) == Message(code, payload)
    framed = bytearray(frame(code, payload))
    framed[5] ^= 0x40
    with pytest.raises(RegisterIOError):
        deframe(bytes(framed))
    with pytest.raises(RegisterIOError):
        deframe(b'\xce\x93\x00')
    with pytest.raises(RegisterIOError):
        deframe(b'\x00' + frame(code, payload)[1:])

def test_spi_instruction() -> None:
    assert spi_instruction(True, 0x237, 5) == b'\xc2\x37'
    assert spi_instruction(False, 0x017, 1) == b'\x00\x17'

def test_capture_frames() -> None:
    captured = bytearray()
    spi_write(captured, 0x014, b'\x21')
    assert captured == frame(SPI_WRITE, b'\x80\x14\x21')

def test_register_port_bursts() -> None:
    bridge = LoopbackBridge()
    port = UsbRegisterPort(bridge) # type: ignore
    data = bytes(range(1, 13))
    port.write_many(0x3a0, data)
    assert bridge.chip.regs[0x3a0] == 1
    assert bridge.chip.regs[0x3a0 - 11] == 12
    assert port.read_many(0x3a0, 12) == data
    port.write_field(0x3a0, 0xf0, 0xa)
    assert port.read(0x3a0) == 0xa1

def test_fpga_and_gpio() -> None:
    bridge = LoopbackBridge()
    fpga = UsbFpgaPort(bridge) # type: ignore
    fpga.write32(0x4418, 0x12345678)
    assert fpga.read32(0x4418) == 0x12345678
    UsbGpio(bridge).set_line(GpioPort.RESET, False) # type: ignore
    assert bridge.lines == {0: 0}

def test_nack_raises() -> None:
    import pytest
    bridge = LoopbackBridge()
    bridge.nack = True
    with pytest.raises(RegisterIOError):
        UsbRegisterPort(bridge).read(0x017) # type: ignore
