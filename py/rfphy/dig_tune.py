from __future__ import annotations

# Digital data interface between the chip and the FPGA: BIST control, the
# clock / data delay sweep, and the FPGA core setup after the chip is up.

from .ensm import EnsmState
from .errors import InterfaceTuningFailed, InvalidParameter
from .fpga import *
from .plan_constants import (DIG_TUNE_LOW_RATE, DIG_TUNE_SETTINGS,
                             DIG_TUNE_SETTLE_MS)
from .regs import *
from .window import find_opt, window_center

import logging

from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .phy import Phy

log = logging.getLogger(__name__)

class BistMode(IntEnum):
    DISABLE = 0
    INJ_TX = 1
    INJ_RX = 2

BIST_CONFIG = {
    BistMode.DISABLE: 0,
    BistMode.INJ_TX: field_value(BIST_CTRL_POINT, 0) | BIST_ENABLE,
    BistMode.INJ_RX: field_value(BIST_CTRL_POINT, 2) | BIST_ENABLE,
}

def bist_prbs(phy: Phy, mode: BistMode) -> None:
    log.debug('BIST PRBS %s', mode.name)
    phy.bist_prbs_mode = mode
    phy.port.write(REG_BIST_CONFIG, BIST_CONFIG[mode])

def bist_loopback(phy: Phy, mode: int) -> None:
    '''0: off, 1: chip internal TX to RX, 2: FPGA internal RX to TX.'''
    if mode not in (0, 1, 2):
        raise InvalidParameter(f'BIST loopback mode {mode}')
    log.debug('BIST loopback %d', mode)
    port = phy.port
    reg = port.read(REG_OBSERVE_CONFIG)
    phy.bist_loopback_mode = mode

    phy.fpga.hdl_loopback(mode == 2)
    if mode == 1:
        sp_hd = port.read(REG_PARALLEL_PORT_CONF_3)
        if sp_hd & SINGLE_PORT_MODE and sp_hd & HALF_DUPLEX_MODE:
            reg |= DATA_PORT_SP_HD_LOOP_TEST_OE
        else:
            reg &= ~DATA_PORT_SP_HD_LOOP_TEST_OE
        reg |= DATA_PORT_LOOP_TEST_ENABLE
    else:
        reg &= ~(DATA_PORT_SP_HD_LOOP_TEST_OE | DATA_PORT_LOOP_TEST_ENABLE)
    port.write(REG_OBSERVE_CONFIG, reg)

def sample_errors(fpga: FpgaPort, check_status: bool) -> int:
    '''Non-zero if the PN checkers saw errors since they were cleared.'''
    if check_status and not fpga.read32(ADI_REG_STATUS) & ADI_STATUS:
        return 1
    return fpga.channel_errors()

def tune_delay(phy: Phy, tx: bool, max_freq: int) -> bool:
    '''Sweep the data delay then the clock delay of one direction, at a low
    rate and at max_freq.  Programs the centre of the widest passing window
    and returns False if nothing passed.'''
    port = phy.port
    fpga = phy.fpga
    address = REG_TX_CLOCK_DATA_DELAY if tx else REG_RX_CLOCK_DATA_DELAY
    field = [[0] * DIG_TUNE_SETTINGS for _ in range(2)]

    for rate in DIG_TUNE_LOW_RATE, max_freq:
        if max_freq:
            phy.set_trx_clock_chain_freq(rate)
        for row, mask in zip(field, (DATA_DELAY, CLK_DELAY)):
            for j in range(DIG_TUNE_SETTINGS):
                port.write(address, field_value(mask, j))
                fpga.clear_channel_errors()
                port.mdelay(DIG_TUNE_SETTLE_MS)
                row[j] |= sample_errors(fpga, not tx)

    for name, row in zip(('data', 'clk'), field):
        log.debug('%s %s: %s', 'TX' if tx else 'RX', name,
                  ' '.join('#' if f else 'o' for f in row))

    s0, c0 = find_opt(field[0])
    s1, c1 = find_opt(field[1])
    if c1 > c0:
        port.write(address, field_value(CLK_DELAY, window_center(s1, c1)))
    else:
        port.write(address, field_value(DATA_DELAY, window_center(s0, c0)))

    if c0 == 0 and c1 == 0:
        log.error('Tuning %s FAILED!', 'TX' if tx else 'RX')
        return False
    return True

def select_test_data(fpga: FpgaPort, pn_sel: int, dac_sel: int) -> None:
    new_core = fpga.dac_version_major() > 7
    for chan in range(fpga.tune_channels()):
        fpga.write32(chan_cntrl(chan), CHAN_DEFAULT)
        fpga.set_pnsel(chan, pn_sel)
        if new_core:
            fpga.write32(dac_chan_cntrl_7(chan), dac_sel)
            fpga.write32(ADI_REG_DAC_CNTRL_SYNC, 1)
        else:
            fpga.write32(dac_chan_cntrl_6(chan), 1 if dac_sel else 0)

def dig_tune(phy: Phy, max_freq: int) -> None:
    '''Find working RX and TX clock / data delays.  max_freq 0 tunes at the
    current rate only.  On failure the configured delays are put back and
    InterfaceTuningFailed raised.'''
    pd = phy.pdata
    port = phy.port

    if pd.dig_interface_tune_skipmode == 2:
        # Skip completely and use the configured delays.
        port.write(REG_RX_CLOCK_DATA_DELAY, pd.rx_clk_data_delay)
        port.write(REG_TX_CLOCK_DATA_DELAY, pd.tx_clk_data_delay)
        return

    fpga = phy.fpga
    if fpga is None:
        raise InvalidParameter('Interface tuning needs the FPGA cores')

    if not pd.fdd:
        phy.ensm.set_mode(True, False)
        phy.ensm.force_state(EnsmState.FDD)
    try:
        tune_both(phy, max_freq)
    finally:
        if not pd.fdd:
            phy.ensm.set_mode(pd.fdd, pd.ensm_pin_ctrl)
            phy.ensm.restore_state()

def tune_both(phy: Phy, max_freq: int) -> None:
    pd = phy.pdata
    port = phy.port
    fpga = phy.fpga

    bist_prbs(phy, BistMode.INJ_RX)
    try:
        rx_ok = tune_delay(phy, False, max_freq)
    finally:
        bist_prbs(phy, BistMode.DISABLE)

    if pd.dig_interface_tune_skipmode == 1:
        # Skip TX.
        if not rx_ok:
            port.write(REG_RX_CLOCK_DATA_DELAY, pd.rx_clk_data_delay)
            raise InterfaceTuningFailed('RX interface tuning failed')
        pd.rx_clk_data_delay = port.read(REG_RX_CLOCK_DATA_DELAY)
        return

    # Loop the chip's TX back to RX and tune the digital outputs.
    bist_loopback(phy, 1)
    select_test_data(fpga, ADC_PN_CUSTOM, DAC_DATA_SEL_PN)
    old_core = fpga.dac_version_major() < 8
    saved = 0
    if old_core:
        saved = fpga.read32(ADI_REG_DAC_CNTRL_2)
        fpga.write32(ADI_REG_DAC_CNTRL_2, saved & ~0xf | 1)
    try:
        tx_ok = tune_delay(phy, True, max_freq)
    finally:
        bist_loopback(phy, 0)
        if old_core:
            fpga.write32(ADI_REG_DAC_CNTRL_2, saved)
        select_test_data(fpga, ADC_PN9, DAC_DATA_SEL_DDS)

    if not (rx_ok and tx_ok):
        port.write(REG_RX_CLOCK_DATA_DELAY, pd.rx_clk_data_delay)
        port.write(REG_TX_CLOCK_DATA_DELAY, pd.tx_clk_data_delay)
        raise InterfaceTuningFailed(
            f'Interface tuning failed: RX {"ok" if rx_ok else "FAILED"} '
            f'TX {"ok" if tx_ok else "FAILED"}')

    pd.rx_clk_data_delay = port.read(REG_RX_CLOCK_DATA_DELAY)
    pd.tx_clk_data_delay = port.read(REG_TX_CLOCK_DATA_DELAY)
    log.info('Interface delays: RX %#04x TX %#04x', pd.rx_clk_data_delay,
             pd.tx_clk_data_delay)

def timing_analysis(phy: Phy) -> str:
    '''Pass / fail chart of the RX interface over every data (rows) and clock
    (columns) delay.  The RX delay is restored afterwards.'''
    from .clock import ClockSource
    port = phy.port
    fpga = phy.fpga
    if fpga is None:
        raise InvalidParameter('Timing analysis needs the FPGA cores')
    rx = port.read(REG_RX_CLOCK_DATA_DELAY)

    bist_prbs(phy, BistMode.INJ_RX)
    field = []
    try:
        for i in range(DIG_TUNE_SETTINGS):
            row = []
            for j in range(DIG_TUNE_SETTINGS):
                port.write(REG_RX_CLOCK_DATA_DELAY,
                           field_value(CLK_DELAY, j)
                           | field_value(DATA_DELAY, i))
                fpga.clear_channel_errors()
                port.mdelay(1)
                row.append(sample_errors(fpga, True))
            field.append(row)
    finally:
        port.write(REG_RX_CLOCK_DATA_DELAY, rx)
        bist_prbs(phy, BistMode.DISABLE)

    rate = phy.clocks.get_rate(ClockSource.RX_SAMPL)
    lines = [f"CLK: {rate} Hz 'o' = PASS",
             'DC' + ''.join(f'{i:x}:' for i in range(DIG_TUNE_SETTINGS))]
    for i, row in enumerate(field):
        lines.append(f'{i:x}:' + ''.join('. ' if f else 'o ' for f in row))
    return '\n'.join(lines) + '\n'

def post_setup(phy: Phy) -> None:
    '''Configure the FPGA cores for the channel count, tune the interface,
    then put back the configured clock chain.'''
    fpga = phy.fpga
    if fpga is None:
        raise InvalidParameter('Post setup needs the FPGA cores')
    rx2tx2 = phy.pdata.rx2tx2

    fpga.write32(ADI_REG_CNTRL, 0 if rx2tx2 else ADI_R1_MODE)
    tmp = fpga.read32(ADI_REG_DAC_CNTRL_2)
    if rx2tx2:
        fpga.write32(ADI_REG_DAC_CNTRL_2, tmp & ~ADI_DAC_R1_MODE)
        fpga.write32(ADI_REG_DAC_RATECNTRL, 3)
    else:
        fpga.write32(ADI_REG_DAC_CNTRL_2, tmp | ADI_DAC_R1_MODE)
        fpga.write32(ADI_REG_DAC_RATECNTRL, 1)

    for chan in range(fpga.tune_channels()):
        fpga.write32(chan_cntrl_1(chan), 0)
        fpga.write32(chan_cntrl_2(chan), 0x4000 if chan & 1 else 0x40000000)
        fpga.write32(chan_cntrl(chan), CHAN_DEFAULT)

    slave = fpga.num_channels > MAX_TUNE_CHANNELS or fpga.read32(ADI_REG_ID)
    dig_tune(phy, 0 if slave else 61_440_000)
    phy.apply_clock_chain()

def test_bist_registers() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    bist_prbs(phy, BistMode.INJ_RX)
    assert phy.port.regs[REG_BIST_CONFIG] == 0x09
    bist_prbs(phy, BistMode.INJ_TX)
    assert phy.port.regs[REG_BIST_CONFIG] == BIST_ENABLE

    phy.port.regs[REG_PARALLEL_PORT_CONF_3] = SINGLE_PORT_MODE \
        | HALF_DUPLEX_MODE
    bist_loopback(phy, 1)
    assert phy.port.regs[REG_OBSERVE_CONFIG] == DATA_PORT_LOOP_TEST_ENABLE \
        | DATA_PORT_SP_HD_LOOP_TEST_OE
    bist_loopback(phy, 2)
    assert phy.port.regs[REG_OBSERVE_CONFIG] == 0
    assert phy.fpga.read32(dac_chan_cntrl_7(0)) == DAC_DATA_SEL_LOOPBACK
    bist_loopback(phy, 0)
    assert phy.fpga.read32(dac_chan_cntrl_7(0)) == DAC_DATA_SEL_DDS

def test_bist_loopback_rejects() -> None:
    import pytest
    from .sim import make_sim_phy
    phy = make_sim_phy()
    writes = len(phy.port.writes)
    with pytest.raises(InvalidParameter):
        bist_loopback(phy, 3)
    assert len(phy.port.writes) == writes

def test_dig_tune_centres() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    dig_tune(phy, 61_440_000)
    # Data delays 0 and 3..9 pass at clock delay 0, clock delays 0..1 at
    # data delay 0: the data window wins.
    assert phy.port.regs[REG_RX_CLOCK_DATA_DELAY] == 0x06
    assert phy.port.regs[REG_TX_CLOCK_DATA_DELAY] == 0x06
    assert phy.pdata.rx_clk_data_delay == 0x06
    assert phy.pdata.tx_clk_data_delay == 0x06
    assert phy.port.regs[REG_BIST_CONFIG] == 0
    assert phy.port.regs[REG_OBSERVE_CONFIG] & DATA_PORT_LOOP_TEST_ENABLE == 0

def test_dig_tune_clock_window() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    phy.fpga.eye = lambda tx, data, clk: data == 0 and 4 <= clk <= 12
    dig_tune(phy, 0)
    assert phy.port.regs[REG_RX_CLOCK_DATA_DELAY] \
        == field_value(CLK_DELAY, 8)

def test_dig_tune_failure_rolls_back() -> None:
    import pytest
    from .sim import make_sim_phy
    phy = make_sim_phy()
    phy.pdata.rx_clk_data_delay = 0x21
    phy.pdata.tx_clk_data_delay = 0x12
    # Only the RX direction has an eye.
    phy.fpga.eye = lambda tx, data, clk: not tx and data == 5
    with pytest.raises(InterfaceTuningFailed):
        dig_tune(phy, 0)
    assert phy.port.regs[REG_RX_CLOCK_DATA_DELAY] == 0x21
    assert phy.port.regs[REG_TX_CLOCK_DATA_DELAY] == 0x12
    assert phy.pdata.rx_clk_data_delay == 0x21
    # The test data path is put back.
    assert phy.fpga.read32(dac_chan_cntrl_7(0)) == DAC_DATA_SEL_DDS
    assert phy.port.regs[REG_OBSERVE_CONFIG] == 0

def test_dig_tune_skip_modes() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    phy.pdata.dig_interface_tune_skipmode = 2
    phy.pdata.rx_clk_data_delay = 0x34
    phy.pdata.tx_clk_data_delay = 0x43
    writes = len(phy.port.writes)
    dig_tune(phy, 0)
    assert phy.port.writes[writes:] == [(REG_RX_CLOCK_DATA_DELAY, 0x34),
                                        (REG_TX_CLOCK_DATA_DELAY, 0x43)]

    phy.pdata.dig_interface_tune_skipmode = 1
    dig_tune(phy, 0)
    assert phy.pdata.rx_clk_data_delay == 0x06
    # TX untouched.
    assert phy.port.regs[REG_TX_CLOCK_DATA_DELAY] == 0x43

def test_dig_tune_tdd_restores_mode() -> None:
    from .config import PlatformData
    from .sim import make_sim_phy
    phy = make_sim_phy(PlatformData(fdd=False))
    state = phy.ensm.read_state()
    dig_tune(phy, 0)
    assert not phy.ensm.fdd
    assert phy.port.regs[REG_ENSM_MODE] == 0
    assert phy.ensm.read_state() == state

def test_timing_analysis() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    phy.port.regs[REG_RX_CLOCK_DATA_DELAY] = 0x06
    text = timing_analysis(phy)
    lines = text.splitlines()
    assert lines[0] == "CLK: 30720000 Hz 'o' = PASS"
    assert len(lines) == 2 + DIG_TUNE_SETTINGS
    # Data delay 5, clock delay 0 passes; clock delay 1 fails.
    assert lines[2 + 5].startswith('5:o . ')
    assert phy.port.regs[REG_RX_CLOCK_DATA_DELAY] == 0x06

def test_post_setup() -> None:
    from .chain_plan import get_trx_clock_chain
    from .sim import make_sim_phy
    phy = make_sim_phy()
    before = get_trx_clock_chain(phy.clocks)
    post_setup(phy)
    assert phy.fpga.read32(ADI_REG_DAC_RATECNTRL) == 3
    assert phy.fpga.read32(chan_cntrl_2(1)) == 0x4000
    assert phy.fpga.read32(chan_cntrl(0)) == CHAN_DEFAULT
    assert get_trx_clock_chain(phy.clocks) == before
    assert phy.pdata.tx_clk_data_delay == 0x06
