from __future__ import annotations

# RF synthesizer fastlock profiles: snapshots of the synthesizer setup held
# in the chip's profile memory, 8 profiles of 16 words per direction.

from .config import PlatformData
from .crc import crc32
from .errors import InvalidParameter
from .plan_constants import FASTLOCK_PROFILES, FASTLOCK_WORDS
from .plan_tools import from_clk, to_clk
from .port import RegisterPort
from .regs import *
from .rfpll import divider_mask, vco_cal_control

import logging
import struct

from dataclasses import dataclass

log = logging.getLogger(__name__)

@dataclass
class FastlockEntry:
    initialized: bool = False
    alc_orig: int = 0
    alc_written: int = 0

def direction(tx: bool) -> str:
    return 'TX' if tx else 'RX'

class FastlockStore:
    def __init__(self, port: RegisterPort, pdata: PlatformData):
        self.port = port
        self.pdata = pdata
        self.entries = [[FastlockEntry() for _ in range(FASTLOCK_PROFILES)]
                        for _ in range(2)]
        # Active profile + 1 per direction; 0 when none is active.
        self.current = [0, 0]

    @staticmethod
    def check_profile(profile: int) -> None:
        if not 0 <= profile < FASTLOCK_PROFILES:
            raise InvalidParameter(f'Fastlock profile {profile} not in 0..'
                                   f'{FASTLOCK_PROFILES - 1}')

    def select(self, tx: bool, profile: int, word: int) -> int:
        offs = synth_offset(tx)
        self.port.write(REG_RX_FAST_LOCK_PROGRAM_ADDR + offs,
                        field_value(FAST_LOCK_PROFILE_ADDR, profile)
                        | field_value(FAST_LOCK_PROFILE_WORD, word))
        return offs

    def readval(self, tx: bool, profile: int, word: int) -> int:
        offs = self.select(tx, profile, word)
        return self.port.read(REG_RX_FAST_LOCK_PROGRAM_READ + offs)

    def writeval(self, tx: bool, profile: int, word: int, val: int,
                 last: bool) -> None:
        offs = self.select(tx, profile, word)
        self.port.write(REG_RX_FAST_LOCK_PROGRAM_DATA + offs, val)
        self.port.write(REG_RX_FAST_LOCK_PROGRAM_CTRL + offs,
                        FAST_LOCK_PROGRAM_WRITE
                        | FAST_LOCK_PROGRAM_CLOCK_ENABLE)
        if last:
            # Stop clocks.
            self.port.write(REG_RX_FAST_LOCK_PROGRAM_CTRL + offs, 0)

    def load(self, tx: bool, profile: int, values: bytes|bytearray) -> None:
        '''Write the 16 words of a profile into the chip.'''
        self.check_profile(profile)
        if len(values) != FASTLOCK_WORDS:
            raise InvalidParameter(
                f'Fastlock profile needs {FASTLOCK_WORDS} bytes')
        log.debug('%s profile %d load: %s', direction(tx), profile,
                  bytes(values).hex(' '))
        for word, val in enumerate(values):
            self.writeval(tx, profile, word, val, word == FASTLOCK_WORDS - 1)
        entry = self.entries[tx][profile]
        entry.initialized = True
        entry.alc_orig = values[15]
        entry.alc_written = values[15]

    def capture(self, tx: bool) -> bytes:
        '''Assemble profile words from the live synthesizer registers.'''
        port = self.port
        offs = synth_offset(tx)
        def field(address: int, mask: int) -> int:
            return port.read_field(address + offs, mask)

        val = bytearray(FASTLOCK_WORDS)
        val[0] = port.read(REG_RX_INTEGER_BYTE_0 + offs)
        val[1] = port.read(REG_RX_INTEGER_BYTE_1 + offs)
        val[2] = port.read(REG_RX_FRACT_BYTE_0 + offs)
        val[3] = port.read(REG_RX_FRACT_BYTE_1 + offs)
        val[4] = port.read(REG_RX_FRACT_BYTE_2 + offs)

        val[5] = field(REG_RX_VCO_BIAS_1, VCO_BIAS_REF) << 4 \
            | field(REG_RX_ALC_VARACTOR, VCO_VARACTOR)

        # Wide bandwidth option, N = 1: initial and steady state charge
        # pump currents are the same.
        cp = field(REG_RX_CP_CURRENT, CHARGE_PUMP_CURRENT)
        val[6] = field(REG_RX_VCO_BIAS_1, VCO_BIAS_TCF) << 3 | cp
        val[7] = cp

        r3 = field(REG_RX_LOOP_FILTER_3, LOOP_FILTER_R3)
        val[8] = r3 << 4 | r3
        c3 = field(REG_RX_LOOP_FILTER_2, LOOP_FILTER_C3)
        val[9] = c3 << 4 | c3
        val[10] = field(REG_RX_LOOP_FILTER_1, LOOP_FILTER_C1) << 4 \
            | field(REG_RX_LOOP_FILTER_1, LOOP_FILTER_C2)
        r1 = field(REG_RX_LOOP_FILTER_2, LOOP_FILTER_R1)
        val[11] = r1 << 4 | r1

        val[12] = field(REG_RX_VCO_VARACTOR_CTRL_0,
                        VCO_VARACTOR_REFERENCE_TCF) << 4 \
            | port.read_field(REG_RFPLL_DIVIDERS, divider_mask(tx))
        val[13] = field(REG_RX_FORCE_VCO_TUNE_1, VCO_CAL_OFFSET) << 4 \
            | field(REG_RX_VCO_VARACTOR_CTRL_1, VCO_VARACTOR_REFERENCE)
        val[14] = port.read(REG_RX_FORCE_VCO_TUNE_0 + offs)
        val[15] = field(REG_RX_FORCE_ALC, FORCE_ALC_WORD) << 1 \
            | field(REG_RX_FORCE_VCO_TUNE_1, FORCE_VCO_TUNE)
        return bytes(val)

    def store(self, tx: bool, profile: int) -> None:
        '''Capture the live synthesizer setup into a profile.'''
        self.check_profile(profile)
        log.debug('%s profile %d store', direction(tx), profile)
        self.load(tx, profile, self.capture(tx))

    def prepare(self, tx: bool, profile: int, prepare: bool) -> None:
        '''Enter or leave fastlock mode.  Leaving is a no-op when no profile
        is active.'''
        log.debug('%s profile %d: %s', direction(tx), profile,
                  'prepare' if prepare else 'un-prepare')
        port = self.port
        offs = synth_offset(tx)
        ready_mask = TX_SYNTH_READY_MASK if tx else RX_SYNTH_READY_MASK
        is_prepared = self.current[tx] != 0

        if prepare and not is_prepared:
            delay = self.pdata.tx_fastlock_delay_ns if tx \
                else self.pdata.rx_fastlock_delay_ns
            port.write(REG_RX_FAST_LOCK_SETUP_INIT_DELAY + offs, delay // 250)
            port.write(REG_RX_FAST_LOCK_SETUP + offs,
                       field_value(FAST_LOCK_PROFILE, profile)
                       | FAST_LOCK_MODE_ENABLE)
            port.write(REG_RX_FAST_LOCK_PROGRAM_CTRL + offs, 0)
            port.write_field(REG_ENSM_CONFIG_2, ready_mask, 1)
            vco_cal_control(port, tx, False)
        elif not prepare and is_prepared:
            port.write(REG_RX_FAST_LOCK_SETUP + offs, 0)
            # Exiting fastlock mode needs the ALC and VCO tune forced and
            # released.
            port.write_field(REG_RX_FORCE_ALC + offs, FORCE_ALC_ENABLE, 1)
            port.write_field(REG_RX_FORCE_VCO_TUNE_1 + offs, FORCE_VCO_TUNE, 1)
            port.write_field(REG_RX_FORCE_ALC + offs, FORCE_ALC_ENABLE, 0)
            port.write_field(REG_RX_FORCE_VCO_TUNE_1 + offs, FORCE_VCO_TUNE, 0)
            vco_cal_control(port, tx, True)
            port.write_field(REG_ENSM_CONFIG_2, ready_mask, 0)
            self.current[tx] = 0

    def recall(self, tx: bool, profile: int) -> None:
        '''Switch the synthesizer to a stored profile.'''
        self.check_profile(profile)
        entry = self.entries[tx][profile]
        if not entry.initialized:
            raise InvalidParameter(
                f'{direction(tx)} fastlock profile {profile} not stored')
        log.debug('%s profile %d recall', direction(tx), profile)

        port = self.port
        offs = synth_offset(tx)

        # The synthesizer fails to lock when recalling a profile with the
        # same ALC word as the current one.
        current = self.current[tx]
        new = entry.alc_written
        if current == 0:
            curr = port.read_field(REG_RX_FORCE_ALC + offs,
                                   FORCE_ALC_WORD) << 1
        else:
            curr = self.entries[tx][current - 1].alc_written

        if curr >> 1 == new >> 1:
            if entry.alc_orig >> 1 == new >> 1:
                entry.alc_written = entry.alc_written + 2 & 0xff
            else:
                entry.alc_written = entry.alc_orig
            self.writeval(tx, profile, 15, entry.alc_written, True)

        self.prepare(tx, profile, True)
        self.current[tx] = profile + 1

        pinctrl = self.pdata.tx_fastlock_pinctrl_en if tx \
            else self.pdata.rx_fastlock_pinctrl_en
        port.write(REG_RX_FAST_LOCK_SETUP + offs,
                   field_value(FAST_LOCK_PROFILE, profile)
                   | (FAST_LOCK_PROFILE_PIN_SELECT if pinctrl else 0)
                   | FAST_LOCK_MODE_ENABLE)

    def save(self, tx: bool, profile: int) -> bytes:
        '''Read a profile's words back from the chip.'''
        self.check_profile(profile)
        return bytes(self.readval(tx, profile, word)
                     for word in range(FASTLOCK_WORDS))

# Persisted profile record: magic, direction, index, version, carrier (held
# halved), 16 profile words, then a CRC-32 over everything before it.
PROFILE_MAGIC = b'RFlk'
PROFILE_VERSION = 1
PROFILE_FORMAT = '<4sBBHI16s'
PROFILE_LENGTH = struct.calcsize(PROFILE_FORMAT) + 4

@dataclass
class FastlockProfile:
    tx: bool
    index: int
    # Hz, in the to_clk() resolution.
    carrier: int
    values: bytes

    def pack(self) -> bytes:
        FastlockStore.check_profile(self.index)
        if len(self.values) != FASTLOCK_WORDS:
            raise InvalidParameter(
                f'Fastlock profile needs {FASTLOCK_WORDS} bytes')
        body = struct.pack(PROFILE_FORMAT, PROFILE_MAGIC, self.tx, self.index,
                           PROFILE_VERSION, to_clk(self.carrier), self.values)
        return body + struct.pack('<I', crc32(body))

    @staticmethod
    def unpack(data: bytes) -> FastlockProfile:
        if len(data) != PROFILE_LENGTH:
            raise InvalidParameter(
                f'Fastlock record length {len(data)} != {PROFILE_LENGTH}')
        body, crc = data[:-4], struct.unpack('<I', data[-4:])[0]
        if crc32(body) != crc:
            raise InvalidParameter('Fastlock record bad CRC')
        magic, tx, index, version, clk, values = struct.unpack(
            PROFILE_FORMAT, body)
        if magic != PROFILE_MAGIC or version != PROFILE_VERSION:
            raise InvalidParameter('Not a fastlock record')
        FastlockStore.check_profile(index)
        return FastlockProfile(bool(tx), index, from_clk(clk), values)

    def __str__(self) -> str:
        return f'{direction(self.tx)} {self.index} {self.carrier} ' \
            + self.values.hex(' ')

def test_profile_record() -> None:
    import pytest
    values = bytes(range(16))
    record = FastlockProfile(True, 3, 5_000_000_001, values).pack()
    assert len(record) == PROFILE_LENGTH
    profile = FastlockProfile.unpack(record)
    # The carrier is held halved.
    assert profile.carrier == 5_000_000_000
    assert profile.tx and profile.index == 3 and profile.values == values

    corrupt = bytearray(record)
    corrupt[10] ^= 1
    with pytest.raises(InvalidParameter):
        FastlockProfile.unpack(bytes(corrupt))
    with pytest.raises(InvalidParameter):
        FastlockProfile(False, 8, 0, values).pack()

def test_store_recall() -> None:
    from .clock import ClockSource
    from .sim import make_sim_phy
    phy = make_sim_phy()
    phy.set_lo_freq(False, 2_400_000_000)
    phy.fastlock.store(False, 2)
    saved = phy.fastlock.save(False, 2)
    assert saved[0] == 120
    assert phy.fastlock.entries[False][2].initialized

    phy.set_lo_freq(False, 1_000_000_000)
    phy.fastlock.recall(False, 2)
    assert phy.fastlock.current[False] == 3
    setup = phy.port.regs[REG_RX_FAST_LOCK_SETUP]
    assert setup & FAST_LOCK_MODE_ENABLE
    assert setup & FAST_LOCK_PROFILE == field_value(FAST_LOCK_PROFILE, 2)
    assert phy.clocks.recalc_rate(ClockSource.RX_RFPLL) \
        == to_clk(2_400_000_000)
    # Same ALC word as the live registers: the written word is bumped.
    assert phy.fastlock.save(False, 2)[15] == saved[15] + 2 & 0xff

    # Reprogramming the synthesizer leaves fastlock mode.
    phy.set_lo_freq(False, 1_000_000_000)
    assert phy.fastlock.current[False] == 0
    assert phy.port.regs[REG_RX_FAST_LOCK_SETUP] == 0

def test_recall_unstored() -> None:
    import pytest
    from .sim import make_sim_phy
    phy = make_sim_phy()
    with pytest.raises(InvalidParameter):
        phy.fastlock.recall(True, 0)
    with pytest.raises(InvalidParameter):
        phy.fastlock.store(True, 9)
