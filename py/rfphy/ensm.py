from __future__ import annotations

# Enable state machine control: single slot force / restore used to bracket
# calibrations, plus the normal state and mode setters.

from .clock import ClockSource, ClockTree
from .config import PlatformData
from .errors import InvalidClockChain, InvalidParameter
from .port import RegisterPort
from .regs import *
from .rfpll import vco_cal_control

import logging

from enum import IntEnum

log = logging.getLogger(__name__)

class EnsmState(IntEnum):
    SLEEP_WAIT = 0x0
    ALERT = 0x5
    TX = 0x6
    TX_FLUSH = 0x7
    RX = 0x8
    RX_FLUSH = 0x9
    FDD = 0xa
    FDD_FLUSH = 0xb
    INVALID = 0xff
    # Software only; the chip reports SLEEP_WAIT.
    SLEEP = 0x80

    @staticmethod
    def get(key: str) -> EnsmState:
        try:
            return EnsmState[key.upper()]
        except KeyError:
            raise InvalidParameter(f'Unknown ENSM state {key}') from None

def state_name(state: int) -> str:
    try:
        return EnsmState(state).name
    except ValueError:
        return f'{state:#x}'

FORCE_BITS = {
    EnsmState.TX: FORCE_TX_ON,
    EnsmState.RX: FORCE_RX_ON,
    EnsmState.FDD: FORCE_TX_ON | FORCE_RX_ON,
}

class EnsmController:
    '''ENSM state for one chip.  The save slot holds one state; forcing
    twice without a restore loses the first snapshot.'''
    def __init__(self, port: RegisterPort, pdata: PlatformData,
                 clocks: ClockTree):
        self.port = port
        self.pdata = pdata
        self.clocks = clocks
        self.fdd = pdata.fdd
        self.prev_state: int = EnsmState.INVALID
        self.current: int = EnsmState.INVALID
        self.pin_ctrl_en = False
        self.txmon_tdd_en = False

    def read_state(self) -> int:
        return self.port.read_field(REG_STATE, ENSM_STATE)

    def check_legal(self, state: int) -> None:
        if state in (EnsmState.TX, EnsmState.RX) and self.fdd:
            raise InvalidParameter(
                f'Cannot enter {state_name(state)} in FDD mode')
        if state == EnsmState.FDD and not self.fdd:
            raise InvalidParameter('Cannot enter FDD in TDD mode')

    def force_state(self, state: EnsmState) -> None:
        '''Snapshot the current state and force the chip to state, going
        through ALERT.'''
        if state not in FORCE_BITS and state != EnsmState.ALERT:
            raise InvalidParameter(f'No handling for forcing {state.name}')
        self.check_legal(state)

        dev_state = self.read_state()
        self.prev_state = dev_state

        if dev_state == state:
            log.debug('Nothing to do, device is already in %s', state.name)
            return

        log.debug('Device is in %s, forcing to %s', state_name(dev_state),
                  state.name)

        val = self.port.read(REG_ENSM_CONFIG_1)
        # Control through SPI writes, and take it out of ALERT.
        self.pin_ctrl_en = bool(val & ENABLE_ENSM_PIN_CTRL)
        val &= ~ENABLE_ENSM_PIN_CTRL

        if dev_state:
            val &= ~TO_ALERT

        if state == EnsmState.ALERT:
            val &= ~(FORCE_TX_ON | FORCE_RX_ON)
            val |= TO_ALERT | FORCE_ALERT_STATE
        else:
            val |= FORCE_BITS[state]

        self.port.write(REG_ENSM_CONFIG_1, TO_ALERT | FORCE_ALERT_STATE)
        self.port.write(REG_ENSM_CONFIG_1, val)

    def restore_state(self) -> None:
        '''Return to the state saved by force_state().  The slot keeps its
        value.'''
        prev = self.prev_state
        if prev == EnsmState.INVALID:
            log.debug('No need to restore, ENSM state was not saved')
            return
        if prev not in FORCE_BITS and prev != EnsmState.ALERT:
            log.debug('Could not restore to ENSM state %s', state_name(prev))
            return
        self.check_legal(prev)

        val = self.port.read(REG_ENSM_CONFIG_1)
        # Clear the state bits which may have been set by forcing.
        val &= ~(FORCE_TX_ON | FORCE_RX_ON | TO_ALERT | FORCE_ALERT_STATE)
        if prev == EnsmState.ALERT:
            val |= TO_ALERT
        else:
            val |= FORCE_BITS[EnsmState(prev)]

        self.port.write(REG_ENSM_CONFIG_1, TO_ALERT | FORCE_ALERT_STATE)
        self.port.write(REG_ENSM_CONFIG_1, val)
        if self.pin_ctrl_en:
            self.port.write(REG_ENSM_CONFIG_1, val | ENABLE_ENSM_PIN_CTRL)

    def set_state(self, state: EnsmState, pinctrl: bool) -> None:
        '''Move the ENSM as a normal operation.  TX and RX are only entered
        from ALERT, in TDD mode.'''
        log.debug('Device is in %s, moving to %s', state_name(self.current),
                  state.name)
        if state in (EnsmState.TX, EnsmState.RX):
            self.check_legal(state)
            if self.current != EnsmState.ALERT:
                raise InvalidParameter(
                    f'{state.name} only from ALERT, not '
                    f'{state_name(self.current)}')
        elif state == EnsmState.FDD:
            self.check_legal(state)
        elif state not in (EnsmState.ALERT, EnsmState.SLEEP_WAIT,
                           EnsmState.SLEEP):
            raise InvalidParameter(f'No handling for moving to {state.name}')

        adc_rate = 0
        if state == EnsmState.SLEEP:
            adc_rate = self.clocks.get_rate(ClockSource.ADC)
            if adc_rate == 0:
                raise InvalidClockChain('ADC clock not set, cannot sleep')

        port = self.port
        if self.current == EnsmState.SLEEP:
            port.write(REG_CLOCK_ENABLE,
                       DIGITAL_POWER_UP | CLOCK_ENABLE_DFLT | BBPLL_ENABLE
                       | (XO_BYPASS if self.pdata.use_extclk else 0))
            port.udelay(20)
            port.write(REG_ENSM_CONFIG_1, TO_ALERT | FORCE_ALERT_STATE)
            vco_cal_control(port, False, True)
            vco_cal_control(port, True, True)

        if state == EnsmState.SLEEP:
            vco_cal_control(port, False, False)
            vco_cal_control(port, True, False)
            # Clear TO_ALERT, flush for 384 ADC clocks, then wait.
            port.write(REG_ENSM_CONFIG_1, 0)
            port.write(REG_ENSM_CONFIG_1,
                       FORCE_TX_ON if self.fdd else FORCE_RX_ON)
            port.udelay(384_000_000 // adc_rate)
            port.write(REG_ENSM_CONFIG_1, 0)
            port.udelay(1)
            port.write(REG_CLOCK_ENABLE, 0)
            self.current = state
            return

        val = (0 if self.pdata.ensm_pin_pulse_mode else LEVEL_MODE) \
            | (ENABLE_ENSM_PIN_CTRL if pinctrl else 0) \
            | (ENABLE_RX_DATA_PORT_FOR_CAL if self.txmon_tdd_en else 0) \
            | TO_ALERT
        if state == EnsmState.ALERT:
            val &= ~(FORCE_TX_ON | FORCE_RX_ON)
            val |= TO_ALERT | FORCE_ALERT_STATE
        elif state in FORCE_BITS:
            val |= FORCE_BITS[state]

        port.write(REG_ENSM_CONFIG_1, val)
        self.current = state

    def set_mode(self, fdd: bool, pinctrl: bool) -> None:
        '''Select FDD or TDD operation and the synthesizer enables.'''
        pd = self.pdata
        self.port.write(REG_ENSM_MODE, FDD_MODE if fdd else 0)

        val = 0
        if pd.use_ext_rx_lo:
            val |= POWER_DOWN_RX_SYNTH
        if pd.use_ext_tx_lo:
            val |= POWER_DOWN_TX_SYNTH

        if fdd:
            val |= DUAL_SYNTH_MODE
            if pinctrl and pd.fdd_independent_mode:
                val |= FDD_EXTERNAL_CTRL_ENABLE
        elif pd.tdd_use_dual_synth:
            val |= DUAL_SYNTH_MODE
        else:
            val |= SYNTH_ENABLE_PIN_CTRL_MODE if pinctrl else TXNRX_SPI_CTRL

        self.port.write(REG_ENSM_CONFIG_2, val)
        self.fdd = fdd

def make_test_ensm(fdd: bool) -> EnsmController:
    from .plan_constants import MHz
    from .sim import SimulatedChip
    chip = SimulatedChip()
    pdata = PlatformData(fdd=fdd)
    return EnsmController(chip, pdata, ClockTree(chip, 40 * MHz))

def test_force_restore_tdd() -> None:
    ensm = make_test_ensm(False)
    assert ensm.read_state() == EnsmState.ALERT
    ensm.force_state(EnsmState.TX)
    assert ensm.read_state() == EnsmState.TX
    ensm.restore_state()
    assert ensm.read_state() == EnsmState.ALERT

    ensm.port.regs[REG_STATE] = EnsmState.RX
    ensm.force_state(EnsmState.TX)
    assert ensm.read_state() == EnsmState.TX
    assert ensm.prev_state == EnsmState.RX
    ensm.restore_state()
    assert ensm.read_state() == EnsmState.RX

def test_force_rejects_without_writes() -> None:
    import pytest
    ensm = make_test_ensm(True)
    with pytest.raises(InvalidParameter):
        ensm.force_state(EnsmState.RX)
    with pytest.raises(InvalidParameter):
        ensm.force_state(EnsmState.TX)
    with pytest.raises(InvalidParameter):
        ensm.force_state(EnsmState.SLEEP)
    assert ensm.port.writes == []
    assert ensm.prev_state == EnsmState.INVALID

    ensm = make_test_ensm(False)
    with pytest.raises(InvalidParameter):
        ensm.force_state(EnsmState.FDD)
    assert ensm.port.writes == []

def test_restore_unsaved_is_noop() -> None:
    ensm = make_test_ensm(True)
    ensm.restore_state()
    assert ensm.port.writes == []

def test_force_same_state() -> None:
    ensm = make_test_ensm(True)
    ensm.force_state(EnsmState.ALERT)
    assert ensm.prev_state == EnsmState.ALERT
    assert ensm.port.writes == []

def test_pin_control_reenabled() -> None:
    ensm = make_test_ensm(True)
    ensm.port.regs[REG_ENSM_CONFIG_1] = ENABLE_ENSM_PIN_CTRL | TO_ALERT
    ensm.force_state(EnsmState.FDD)
    assert ensm.read_state() == EnsmState.FDD
    assert ensm.port.writes == [
        (REG_ENSM_CONFIG_1, TO_ALERT | FORCE_ALERT_STATE),
        (REG_ENSM_CONFIG_1, FORCE_TX_ON | FORCE_RX_ON)]
    ensm.restore_state()
    assert ensm.read_state() == EnsmState.ALERT
    assert ensm.port.writes[-1] == (REG_ENSM_CONFIG_1,
                                    TO_ALERT | ENABLE_ENSM_PIN_CTRL)

def test_set_state_rules() -> None:
    import pytest
    ensm = make_test_ensm(False)
    ensm.current = EnsmState.ALERT
    ensm.set_state(EnsmState.RX, False)
    assert ensm.read_state() == EnsmState.RX
    with pytest.raises(InvalidParameter):
        # Only from ALERT.
        ensm.set_state(EnsmState.TX, False)
    ensm.set_state(EnsmState.ALERT, False)
    ensm.set_state(EnsmState.TX, False)
    assert ensm.read_state() == EnsmState.TX
    with pytest.raises(InvalidParameter):
        ensm.set_state(EnsmState.FDD, False)

def test_sleep_and_wake() -> None:
    ensm = make_test_ensm(True)
    ensm.clocks.rates[ClockSource.ADC] = 245_760_000
    ensm.current = EnsmState.FDD
    ensm.set_state(EnsmState.SLEEP, False)
    assert ensm.port.regs[REG_CLOCK_ENABLE] == 0
    assert ensm.port.regs[REG_RX_PFD_CONFIG] & BYPASS_LD_SYNTH
    ensm.set_state(EnsmState.ALERT, False)
    assert ensm.port.regs[REG_CLOCK_ENABLE] & BBPLL_ENABLE
    assert not ensm.port.regs[REG_TX_PFD_CONFIG] & BYPASS_LD_SYNTH
    assert ensm.read_state() == EnsmState.ALERT
    assert ensm.current == EnsmState.ALERT

def test_set_mode() -> None:
    ensm = make_test_ensm(True)
    ensm.set_mode(False, False)
    assert not ensm.fdd
    assert ensm.port.regs[REG_ENSM_MODE] == 0
    assert ensm.port.regs[REG_ENSM_CONFIG_2] == TXNRX_SPI_CTRL
    ensm.pdata.use_ext_tx_lo = True
    ensm.set_mode(True, True)
    assert ensm.fdd
    assert ensm.port.regs[REG_ENSM_CONFIG_2] \
        == DUAL_SYNTH_MODE | POWER_DOWN_TX_SYNTH
