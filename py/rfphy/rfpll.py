from __future__ import annotations

# RX and TX fractional-N RF synthesizers.  Node rates are carried halved
# (see to_clk) so that 6GHz carriers fit the 32-bit clock rates.

from .clock import ClockNode, ClockSource
from .errors import CalibrationTimeout, InvalidRate
from .lut import load_gt
from .plan_constants import (MAX_CARRIER_FREQ, MIN_CARRIER_FREQ,
                             MIN_VCO_FREQ, RFPLL_MODULUS)
from .plan_tools import from_clk, to_clk
from .port import RegisterPort
from .regs import *

import logging

from typing import Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from .phy import Phy

log = logging.getLogger(__name__)

def calc_rfpll_divider(freq: int, parent_rate: int) -> Tuple[int, int, int, int]:
    '''Return (integer, fract, vco_div, vco_freq) for the carrier.  The VCO
    runs above 6GHz, divided down by 2 << vco_div.'''
    if not MIN_CARRIER_FREQ <= freq <= MAX_CARRIER_FREQ:
        raise InvalidRate(f'Carrier {freq} out of range')
    vco_div = -1
    while freq <= MIN_VCO_FREQ:
        freq <<= 1
        vco_div += 1

    integer, rem = divmod(freq, parent_rate)
    fract = (rem * RFPLL_MODULUS + (parent_rate >> 1)) // parent_rate
    return integer, fract, vco_div, freq

def calc_rfpll_freq(parent_rate: int, integer: int, fract: int,
                    vco_div: int) -> int:
    rate = parent_rate * fract // RFPLL_MODULUS + parent_rate * integer
    return rate >> vco_div + 1

def vco_cal_control(port: RegisterPort, tx: bool, enable: bool) -> None:
    log.debug('%s VCO cal %s', 'TX' if tx else 'RX', enable)
    port.write_field(REG_RX_PFD_CONFIG + synth_offset(tx), BYPASS_LD_SYNTH,
                     not enable)

def vco_init(phy: Phy, tx: bool, vco_freq: int, ref_clk: int) -> None:
    '''Program the VCO tuning profile for the VCO frequency.'''
    fdd_tables = phy.pdata.fdd or phy.pdata.tdd_use_fdd_tables
    row = phy.synth_lut.select(fdd_tables, ref_clk, vco_freq)
    log.debug('VCO %d ref %d: table row %d MHz', vco_freq, ref_clk,
              row.vco_mhz)

    port = phy.port
    offs = synth_offset(tx)
    port.write(REG_RX_VCO_OUTPUT + offs,
               field_value(VCO_OUTPUT_LEVEL, row.vco_output_level)
               | PORB_VCO_LOGIC)
    port.write_field(REG_RX_ALC_VARACTOR + offs, VCO_VARACTOR,
                     row.vco_varactor)
    port.write(REG_RX_VCO_BIAS_1 + offs,
               field_value(VCO_BIAS_REF, row.vco_bias_ref)
               | field_value(VCO_BIAS_TCF, row.vco_bias_tcf))
    port.write(REG_RX_FORCE_VCO_TUNE_1 + offs,
               field_value(VCO_CAL_OFFSET, row.vco_cal_offset))
    port.write(REG_RX_VCO_VARACTOR_CTRL_1 + offs,
               field_value(VCO_VARACTOR_REFERENCE,
                           row.vco_varactor_reference))
    port.write(REG_RX_VCO_CAL_REF + offs, field_value(VCO_CAL_REF_TCF, 0))
    port.write(REG_RX_VCO_VARACTOR_CTRL_0 + offs,
               field_value(VCO_VARACTOR_OFFSET, 0)
               | field_value(VCO_VARACTOR_REFERENCE_TCF, 7))
    port.write_field(REG_RX_CP_CURRENT + offs, CHARGE_PUMP_CURRENT,
                     row.charge_pump_current)
    port.write(REG_RX_LOOP_FILTER_1 + offs,
               field_value(LOOP_FILTER_C2, row.lf_c2)
               | field_value(LOOP_FILTER_C1, row.lf_c1))
    port.write(REG_RX_LOOP_FILTER_2 + offs,
               field_value(LOOP_FILTER_R1, row.lf_r1)
               | field_value(LOOP_FILTER_C3, row.lf_c3))
    port.write(REG_RX_LOOP_FILTER_3 + offs,
               field_value(LOOP_FILTER_R3, row.lf_r3))

def divider_mask(tx: bool) -> int:
    return TX_VCO_DIVIDER if tx else RX_VCO_DIVIDER

class RfpllClock(ClockNode):
    '''Clock node for one RF synthesizer.  Rates are in the halved
    encoding, the parent is the synthesizer reference in Hz.'''
    def __init__(self, phy: Phy, tx: bool):
        self.phy = phy
        self.tx = tx
        self.source = ClockSource.TX_RFPLL if tx else ClockSource.RX_RFPLL
        self.name = 'TX' if tx else 'RX'

    def round_rate(self, rate: int, parent_rate: int) -> int:
        if not MIN_CARRIER_FREQ <= from_clk(rate) <= MAX_CARRIER_FREQ:
            raise InvalidRate(f'Carrier {from_clk(rate)} out of range')
        return rate

    def set_rate(self, rate: int, parent_rate: int) -> int:
        phy = self.phy
        port = phy.port
        carrier = from_clk(rate)
        integer, fract, vco_div, vco = calc_rfpll_divider(carrier,
                                                          parent_rate)
        log.debug('%s RFPLL: carrier %d parent %d int %d fract %d div %d',
                  self.name, carrier, parent_rate, integer, fract, vco_div)

        phy.fastlock.prepare(self.tx, 0, False)

        # Option to skip VCO cal in TDD mode when moving from TX/RX to Alert.
        if phy.pdata.tdd_skip_vco_cal:
            vco_cal_control(port, self.tx, True)

        vco_init(phy, self.tx, vco, parent_rate)

        offs = synth_offset(self.tx)
        port.write_many(REG_RX_FRACT_BYTE_2 + offs, bytes((
            fract >> 16 & 0xff, fract >> 8 & 0xff, fract & 0xff,
            integer >> 8 & 0xff, integer & 0xff)))
        port.write_field(REG_RFPLL_DIVIDERS, divider_mask(self.tx), vco_div)

        if not self.tx:
            load_gt(phy, carrier, GT_RX1 + GT_RX2)
        else:
            self.auto_recalibrate(carrier)

        port.check_cal_done(REG_RX_CP_OVERRANGE_VCO_LOCK + offs, VCO_LOCK, 1)

        if phy.pdata.tdd_skip_vco_cal:
            vco_cal_control(port, self.tx, False)

        return to_clk(calc_rfpll_freq(parent_rate, integer, fract, vco_div))

    def auto_recalibrate(self, carrier: int) -> None:
        '''Rerun the TX quadrature calibration when the TX carrier has moved
        more than the threshold since the last one.'''
        ctx = self.phy.ctx
        if not ctx.auto_cal_en:
            return
        if abs(ctx.last_tx_quad_cal_freq - carrier) <= ctx.cal_threshold_freq:
            return
        try:
            self.phy.do_calib_run(TX_QUAD_CAL, -1)
        except CalibrationTimeout:
            log.error('TX quadrature recalibration at %d failed', carrier)
        ctx.last_tx_quad_cal_freq = carrier

    def recalc_rate(self, parent_rate: int) -> int:
        phy = self.phy
        profile = phy.fastlock.current[self.tx]
        if profile:
            words = [phy.fastlock.readval(self.tx, profile - 1, word)
                     for word in (4, 3, 2, 1, 0)]
            vco_div = phy.fastlock.readval(self.tx, profile - 1, 12) & 0xf
        else:
            words = list(phy.port.read_many(
                REG_RX_FRACT_BYTE_2 + synth_offset(self.tx), 5))
            vco_div = phy.port.read_field(REG_RFPLL_DIVIDERS,
                                          divider_mask(self.tx))

        fract = words[0] << 16 | words[1] << 8 | words[2]
        integer = words[3] << 8 | words[4]
        return to_clk(calc_rfpll_freq(parent_rate, integer, fract, vco_div))

def test_calc_rfpll_divider() -> None:
    integer, fract, vco_div, vco = calc_rfpll_divider(2_400_000_000,
                                                      40_000_000)
    assert (integer, fract, vco_div, vco) == (240, 0, 1, 9_600_000_000)
    assert calc_rfpll_freq(40_000_000, integer, fract, vco_div) \
        == 2_400_000_000
    # At 6GHz the VCO divider is at its minimum.
    assert calc_rfpll_divider(6_000_000_000, 40_000_000)[2] == 0
    assert calc_rfpll_divider(70_000_000, 40_000_000)[2] == 6

def test_calc_rfpll_fractional() -> None:
    carrier = 2_412_345_678
    integer, fract, vco_div, _ = calc_rfpll_divider(carrier, 40_000_000)
    assert 0 < fract < RFPLL_MODULUS
    freq = calc_rfpll_freq(40_000_000, integer, fract, vco_div)
    # Resolution of a few Hz after the VCO divider.
    assert abs(freq - carrier) < 4

def test_calc_rfpll_rejects() -> None:
    import pytest
    with pytest.raises(InvalidRate):
        calc_rfpll_divider(69_999_999, 40_000_000)
    with pytest.raises(InvalidRate):
        calc_rfpll_divider(6_000_000_001, 40_000_000)

def test_rfpll_set_and_recalc() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    rate = phy.set_lo_freq(False, 2_400_000_000)
    assert rate == 2_400_000_000
    assert phy.clocks.recalc_rate(ClockSource.RX_RFPLL) \
        == to_clk(2_400_000_000)
    assert phy.port.regs[REG_RX_INTEGER_BYTE_0] == 120
    assert phy.port.read_field(REG_RFPLL_DIVIDERS, RX_VCO_DIVIDER) == 1
    # The RX path loads the gain table for the band.
    assert phy.ctx.current_table is not None

def test_rfpll_writes_nothing_on_bad_carrier() -> None:
    import pytest
    from .sim import make_sim_phy
    phy = make_sim_phy()
    writes = len(phy.port.writes)
    with pytest.raises(InvalidRate):
        phy.set_lo_freq(True, 7_000_000_000)
    assert len(phy.port.writes) == writes

def test_rfpll_lock_timeout() -> None:
    import pytest
    from .sim import make_sim_phy
    phy = make_sim_phy()
    phy.port.vco_unlocked = True
    with pytest.raises(CalibrationTimeout):
        phy.set_lo_freq(False, 2_400_000_000)

def test_auto_recal_threshold() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    phy.ctx.auto_cal_en = True
    phy.ctx.last_tx_quad_cal_freq = 0
    phy.set_lo_freq(True, 2_400_000_000)
    assert phy.ctx.last_tx_quad_cal_freq == 2_400_000_000
    cals = phy.port.cal_log.count(TX_QUAD_CAL)
    assert cals > 0

    # Within 100MHz: no calibration, the carrier is not recorded.
    phy.set_lo_freq(True, 2_450_000_000)
    assert phy.ctx.last_tx_quad_cal_freq == 2_400_000_000
    assert phy.port.cal_log.count(TX_QUAD_CAL) == cals

    phy.set_lo_freq(True, 2_600_000_000)
    assert phy.ctx.last_tx_quad_cal_freq == 2_600_000_000
    assert phy.port.cal_log.count(TX_QUAD_CAL) > cals

def test_auto_recal_timeout_is_logged() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    phy.ctx.auto_cal_en = True
    phy.ctx.last_tx_quad_cal_freq = 0
    phy.port.stuck_cal = TX_QUAD_CAL
    phy.set_lo_freq(True, 2_400_000_000)
    # The carrier is recorded even though the calibration timed out.
    assert phy.ctx.last_tx_quad_cal_freq == 2_400_000_000
