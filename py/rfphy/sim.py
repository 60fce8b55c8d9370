from __future__ import annotations

# Register level simulation of the chip and the FPGA cores, for the tests and
# for the --sim option of the command line tool.  Calibrations finish at
# once, the PLLs lock at once, and the data interface passes inside a
# configurable eye.

from .config import PlatformData
from .ensm import EnsmState
from .fpga import *
from .lut import GainBand, GainTables, RefRange, SynthLut, SynthLutRow
from .plan_constants import FASTLOCK_PROFILES, FASTLOCK_WORDS
from .port import GpioPort, RegisterPort
from .regs import *

import logging

from typing import Callable, TYPE_CHECKING

if TYPE_CHECKING:
    from .phy import Phy

log = logging.getLogger(__name__)

LOCK_BITS = {
    REG_CH_1_OVERFLOW: BBPLL_LOCK,
    REG_RX_CP_OVERRANGE_VCO_LOCK: VCO_LOCK,
    REG_TX_CP_OVERRANGE_VCO_LOCK: VCO_LOCK,
    REG_RX_CAL_STATUS: CP_CAL_VALID,
    REG_RX_CAL_STATUS + SYNTH_TX_OFFSET: CP_CAL_VALID,
}
VCO_LOCK_REGS = {REG_RX_CP_OVERRANGE_VCO_LOCK, REG_TX_CP_OVERRANGE_VCO_LOCK}

def ensm_state_for(config: int) -> int|None:
    '''The state a write to ENSM_CONFIG_1 moves the chip to.'''
    force = config & (FORCE_TX_ON | FORCE_RX_ON)
    if force == FORCE_TX_ON | FORCE_RX_ON:
        return EnsmState.FDD
    if force == FORCE_TX_ON:
        return EnsmState.TX
    if force == FORCE_RX_ON:
        return EnsmState.RX
    if config & (TO_ALERT | FORCE_ALERT_STATE):
        return EnsmState.ALERT
    return None

class SimulatedChip(RegisterPort):
    def __init__(self) -> None:
        self.regs = bytearray(REGISTER_SPACE)
        self.regs[REG_STATE] = EnsmState.ALERT
        self.writes: list[tuple[int, int]] = []
        # Every value written to CALIBRATION_CTRL.
        self.cal_log: list[int] = []
        # Calibration bits that never clear.
        self.stuck_cal = 0
        self.vco_unlocked = False
        self.quad_converges: Callable[[int], bool] = lambda phase: True
        self.fastlock = [[bytearray(FASTLOCK_WORDS)
                          for _ in range(FASTLOCK_PROFILES)]
                         for _ in range(2)]
        self.elapsed_us = 0

    def read_reg(self, address: int) -> int:
        value = self.regs[address]
        if address in LOCK_BITS:
            if address not in VCO_LOCK_REGS or not self.vco_unlocked:
                value |= LOCK_BITS[address]
        elif address == REG_QUAD_CAL_STATUS_TX1:
            phase = self.regs[REG_QUAD_CAL_NCO_FREQ_PHASE_OFFSET] \
                & RX_NCO_PHASE_OFFSET
            if self.quad_converges(phase):
                value = TX1_LO_CONV | TX1_SSB_CONV
            else:
                value = 0
        elif address in (REG_RX_FAST_LOCK_PROGRAM_READ,
                         REG_RX_FAST_LOCK_PROGRAM_READ + SYNTH_TX_OFFSET):
            tx = address != REG_RX_FAST_LOCK_PROGRAM_READ
            value = self.fastlock_cell(tx)[0]
        return value

    def fastlock_cell(self, tx: bool) -> tuple[int, bytearray, int]:
        addr = self.regs[REG_RX_FAST_LOCK_PROGRAM_ADDR + synth_offset(tx)]
        profile = (addr & FAST_LOCK_PROFILE_ADDR) >> field_shift(
            FAST_LOCK_PROFILE_ADDR)
        word = addr & FAST_LOCK_PROFILE_WORD
        memory = self.fastlock[tx][profile]
        return memory[word], memory, word

    def write_reg(self, address: int, value: int) -> None:
        self.writes.append((address, value))
        if address == REG_CALIBRATION_CTRL:
            self.cal_log.append(value)
            self.regs[address] = value & self.stuck_cal
            return

        if address == REG_SPI_CONF and value & SOFT_RESET:
            self.regs[:] = bytes(REGISTER_SPACE)
            self.regs[REG_STATE] = EnsmState.ALERT
            return

        self.regs[address] = value
        if address == REG_ENSM_CONFIG_1:
            state = ensm_state_for(value)
            if state is not None:
                self.regs[REG_STATE] = self.regs[REG_STATE] & ~ENSM_STATE \
                    | state
        elif address in (REG_RX_FAST_LOCK_PROGRAM_CTRL,
                         REG_RX_FAST_LOCK_PROGRAM_CTRL + SYNTH_TX_OFFSET):
            tx = address != REG_RX_FAST_LOCK_PROGRAM_CTRL
            if value & FAST_LOCK_PROGRAM_WRITE:
                _, memory, word = self.fastlock_cell(tx)
                memory[word] = self.regs[REG_RX_FAST_LOCK_PROGRAM_DATA
                                         + synth_offset(tx)]

    def read_many(self, address: int, count: int) -> bytes:
        return bytes(self.read_reg(address - i) for i in range(count))

    def write_many(self, address: int, data: bytes|bytearray) -> None:
        for i, value in enumerate(data):
            self.write_reg(address - i, value)

    def udelay(self, microseconds: int) -> None:
        self.elapsed_us += microseconds

    def mdelay(self, milliseconds: int) -> None:
        self.elapsed_us += milliseconds * 1000

def default_eye(tx: bool, data: int, clk: int) -> bool:
    return clk == 0 and 3 <= data <= 9 or data == 0 and clk <= 1

class SimulatedFpga(FpgaPort):
    '''The PN checkers report errors unless the delays of the direction under
    test are inside eye(tx, data_delay, clk_delay).  The chip's data port
    loopback selects TX.'''
    def __init__(self, chip: SimulatedChip, num_channels: int = 4,
                 dac_version: int = 0x00080000):
        self.chip = chip
        self.num_channels = num_channels
        self.regs: dict[int, int] = {
            ADI_REG_STATUS: ADI_STATUS,
            ADI_REG_DAC_VERSION: dac_version,
        }
        self.status_regs = {chan_status(chan) for chan in range(num_channels)}
        self.eye: Callable[[bool, int, int], bool] = default_eye

    def read32(self, address: int) -> int:
        if address in self.status_regs:
            regs = self.chip.regs
            tx = bool(regs[REG_OBSERVE_CONFIG] & DATA_PORT_LOOP_TEST_ENABLE)
            delay = regs[REG_TX_CLOCK_DATA_DELAY if tx
                         else REG_RX_CLOCK_DATA_DELAY]
            if self.eye(tx, delay & DATA_DELAY,
                        (delay & CLK_DELAY) >> field_shift(CLK_DELAY)):
                return 0
            return ADI_PN_ERR
        return self.regs.get(address, 0)

    def write32(self, address: int, value: int) -> None:
        self.regs[address] = value & 0xffffffff

class SimulatedGpio(GpioPort):
    def __init__(self) -> None:
        self.history: list[tuple[str, bool]] = []

    def set_line(self, line: str, level: bool) -> None:
        self.history.append((line, level))

def demo_synth_lut() -> SynthLut:
    '''A plausible VCO table, 6GHz .. 12GHz in 250MHz steps, used for every
    mode and reference range.'''
    rows = []
    for i, mhz in enumerate(range(12000, 5999, -250)):
        rows.append(SynthLutRow(
            vco_mhz=mhz, vco_output_level=10 + i % 4,
            vco_varactor=1 + i % 10, vco_bias_ref=4 - i % 3, vco_bias_tcf=1,
            vco_cal_offset=7 + i % 8, vco_varactor_reference=4 + i % 8,
            charge_pump_current=12 + i % 20, lf_c2=14, lf_c1=12, lf_r1=14,
            lf_c3=12, lf_r3=12))
    return SynthLut({(fdd, ref): rows
                     for fdd in (True, False) for ref in RefRange})

def demo_gain_tables() -> GainTables:
    full = [(0x00, 0x00, 0x20), (0x00, 0x00, 0x00), (0x00, 0x01, 0x00),
            (0x00, 0x20, 0x00), (0x01, 0x20, 0x00), (0x21, 0x20, 0x00)]
    split = [(0x00, 0x18, 0x20), (0x00, 0x38, 0x00), (0x01, 0x38, 0x00)]
    return GainTables({band: full for band in GainBand},
                      {band: split for band in GainBand})

def make_sim_phy(pdata: PlatformData|None = None, setup: bool = True) -> Phy:
    from .phy import Phy
    chip = SimulatedChip()
    phy = Phy(chip, pdata or PlatformData(), demo_synth_lut(),
              demo_gain_tables(), gpio=SimulatedGpio(),
              fpga=SimulatedFpga(chip))
    if setup:
        phy.setup()
    return phy

def test_ensm_state_for() -> None:
    assert ensm_state_for(FORCE_TX_ON | FORCE_RX_ON | TO_ALERT) \
        == EnsmState.FDD
    assert ensm_state_for(TO_ALERT | FORCE_ALERT_STATE) == EnsmState.ALERT
    assert ensm_state_for(LEVEL_MODE) is None

def test_chip_burst_order() -> None:
    chip = SimulatedChip()
    chip.write_many(0x235, b'\x01\x02\x03')
    assert chip.regs[0x233] == 3
    assert chip.read_many(0x235, 2) == b'\x01\x02'
    assert chip.writes == [(0x235, 1), (0x234, 2), (0x233, 3)]

def test_stuck_calibration() -> None:
    import pytest
    from .errors import CalibrationTimeout
    chip = SimulatedChip()
    chip.stuck_cal = RFDC_CAL
    chip.write(REG_CALIBRATION_CTRL, BBDC_CAL)
    chip.check_cal_done(REG_CALIBRATION_CTRL, BBDC_CAL, 0)
    chip.write(REG_CALIBRATION_CTRL, RFDC_CAL)
    with pytest.raises(CalibrationTimeout):
        chip.check_cal_done(REG_CALIBRATION_CTRL, RFDC_CAL, 0)
    assert chip.cal_log == [BBDC_CAL, RFDC_CAL]
    # Polled every 1200µs.
    assert chip.elapsed_us == 5000 * 1200
