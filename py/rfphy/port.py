from __future__ import annotations

from .errors import CalibrationTimeout
from .plan_constants import CAL_CTRL_POLL_US, CAL_TIMEOUT_POLLS, LOCK_POLL_US
from .regs import REG_CALIBRATION_CTRL, field_shift

import logging
import time

log = logging.getLogger(__name__)

class RegisterPort:
    '''Byte addressed access to the transceiver register space.

    Burst transfers walk the address downwards from the start address, as the
    chip's SPI does: read_many(a, 3) returns registers a, a-1, a-2.

    Subclasses provide read_many() and write_many(); everything else is built
    on those.'''

    def read_many(self, address: int, count: int) -> bytes:
        raise NotImplementedError

    def write_many(self, address: int, data: bytes|bytearray) -> None:
        raise NotImplementedError

    def read(self, address: int) -> int:
        return self.read_many(address, 1)[0]

    def write(self, address: int, value: int) -> None:
        self.write_many(address, bytes((value & 0xff,)))

    def read_field(self, address: int, mask: int) -> int:
        return (self.read(address) & mask) >> field_shift(mask)

    def write_field(self, address: int, mask: int, value: int) -> None:
        old = self.read(address)
        new = old & ~mask | value << field_shift(mask) & mask
        self.write(address, new)

    def udelay(self, microseconds: int) -> None:
        time.sleep(microseconds / 1e6)

    def mdelay(self, milliseconds: int) -> None:
        time.sleep(milliseconds / 1e3)

    def check_cal_done(self, address: int, mask: int, done_state: int,
                       polls: int = CAL_TIMEOUT_POLLS) -> None:
        '''Poll a field until it reads done_state.  The calibration control
        register is polled at 1200µs, lock and status bits at 120µs.'''
        interval = CAL_CTRL_POLL_US if address == REG_CALIBRATION_CTRL \
            else LOCK_POLL_US
        for _ in range(polls):
            if self.read_field(address, mask) == done_state:
                return
            self.udelay(interval)
        log.error('Calibration timeout: register %#05x mask %#04x',
                  address, mask)
        raise CalibrationTimeout(
            f'Register {address:#05x} mask {mask:#04x} did not reach '
            f'{done_state} after {polls} polls')

class GpioPort:
    '''Level control of the chip's reset and sync lines.'''
    RESET = 'resetb'
    SYNC = 'sync'

    def set_line(self, line: str, level: bool) -> None:
        raise NotImplementedError
