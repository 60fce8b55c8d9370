from __future__ import annotations

# One transceiver: the register port and FPGA cores, and the state the
# operations share.  Bring-up and the public rate / carrier / bandwidth /
# calibration API.

from . import calib, dig_tune
from .calib import CalibrationContext
from .chain_plan import (ChainPlan, PathClocks, calculate_clock_chain,
                         get_trx_clock_chain, set_trx_clock_chain,
                         validate_clock_chain)
from .clock import ClockSource, ClockTree
from .config import PlatformData
from .dig_tune import BistMode
from .ensm import EnsmController, EnsmState, state_name
from .errors import InvalidParameter, InvalidRate
from .fastlock import FastlockStore
from .fpga import FpgaPort
from .lut import GainTables, SynthLut
from .plan_constants import (DEFAULT_CAL_THRESHOLD, MAX_BBPLL_FREF,
                             MAX_SYNTH_FREF, MIN_SYNTH_FREF)
from .plan_tools import clamp, freq_to_str, from_clk, to_clk
from .port import GpioPort, RegisterPort
from .regs import *
from .rfpll import RfpllClock, calc_rfpll_divider

import logging

log = logging.getLogger(__name__)

def ref_div_sel(refin: int, max_freq: int) -> int:
    '''Scale the reference by x2, x1, /2 or /4 to the highest rate not above
    max_freq.'''
    if refin <= max_freq // 2:
        return 2 * refin
    if refin <= max_freq:
        return refin
    if refin <= max_freq * 2:
        return refin // 2
    if refin <= max_freq * 4:
        return refin // 4
    raise InvalidRate(f'Reference {freq_to_str(refin)} too high for '
                      f'{freq_to_str(max_freq)}')

def rfpll_source(tx: bool) -> ClockSource:
    return ClockSource.TX_RFPLL if tx else ClockSource.RX_RFPLL

class Phy:
    def __init__(self, port: RegisterPort, pdata: PlatformData,
                 synth_lut: SynthLut, gain_tables: GainTables,
                 gpio: GpioPort|None = None, fpga: FpgaPort|None = None):
        self.port = port
        self.pdata = pdata
        self.synth_lut = synth_lut
        self.gain_tables = gain_tables
        self.gpio = gpio
        self.fpga = fpga

        self.clocks = ClockTree(port, pdata.ref_clk)
        self.clocks.install(RfpllClock(self, False))
        self.clocks.install(RfpllClock(self, True))
        self.ensm = EnsmController(port, pdata, self.clocks)
        self.fastlock = FastlockStore(port, pdata)
        self.ctx = CalibrationContext()

        self.rx_eq_2tx = False
        self.rx_path_clks: PathClocks = []
        self.tx_path_clks: PathClocks = []
        self.bist_prbs_mode = BistMode.DISABLE
        self.bist_loopback_mode = 0

    def clear_state(self) -> None:
        self.ctx = CalibrationContext()
        self.ensm = EnsmController(self.port, self.pdata, self.clocks)
        self.fastlock = FastlockStore(self.port, self.pdata)

    def reset(self) -> None:
        '''Hardware reset through the reset line when there is one, otherwise
        a SPI soft reset.'''
        if self.gpio is not None:
            self.gpio.set_line(GpioPort.RESET, False)
            self.port.mdelay(1)
            self.gpio.set_line(GpioPort.RESET, True)
            self.port.mdelay(1)
            log.debug('Reset by GPIO')
        else:
            self.port.write(REG_SPI_CONF, SOFT_RESET | SOFT_RESET_MIRROR)
            self.port.write(REG_SPI_CONF, 0)
            log.debug('Reset by SPI')
        self.clear_state()

    def plan_clock_chain(self) -> None:
        '''The configured path clocks, or the solver's for the sample
        rate.'''
        pd = self.pdata
        if pd.rx_path_clks is not None and pd.tx_path_clks is not None:
            rx, tx = list(pd.rx_path_clks), list(pd.tx_path_clks)
        else:
            plan = self.solve(pd.sample_rate)
            rx, tx = plan.rx, plan.tx
        validate_clock_chain(rx, pd.rx2tx2)
        self.rx_path_clks, self.tx_path_clks = rx, tx

    def solve(self, rate: int) -> ChainPlan:
        pd = self.pdata
        return calculate_clock_chain(rate, pd.rate_governor,
                                     pd.rx_decimation(), pd.tx_interpolation(),
                                     pd.rx2tx2, self.rx_eq_2tx)

    def apply_clock_chain(self) -> None:
        set_trx_clock_chain(self.clocks, self.rx_path_clks,
                            self.tx_path_clks, self.pdata.rx2tx2)

    def set_trx_clock_chain_freq(self, rate: int) -> ChainPlan:
        '''Program the chain for a sample rate without recording it.'''
        plan = self.solve(rate)
        set_trx_clock_chain(self.clocks, plan.rx, plan.tx, self.pdata.rx2tx2)
        return plan

    def en_dis_tx(self, channel: int, enable: bool) -> None:
        if channel == 2 and not self.pdata.rx2tx2 and enable:
            raise InvalidParameter('TX2 needs 2R2T mode')
        self.port.write_field(REG_TX_ENABLE_FILTER_CTRL,
                              field_value(TX_CHANNEL_ENABLE, channel), enable)

    def en_dis_rx(self, channel: int, enable: bool) -> None:
        if channel == 2 and not self.pdata.rx2tx2 and enable:
            raise InvalidParameter('RX2 needs 2R2T mode')
        self.port.write_field(REG_RX_ENABLE_FILTER_CTRL,
                              field_value(RX_CHANNEL_ENABLE, channel), enable)

    def pp_port_setup(self, restore_c3: bool) -> None:
        pd = self.pdata
        port = self.port
        if restore_c3:
            port.write(REG_PARALLEL_PORT_CONF_3, pd.pp_conf[2])
            return
        port.write(REG_PARALLEL_PORT_CONF_1, pd.pp_conf[0])
        port.write(REG_PARALLEL_PORT_CONF_2, pd.pp_conf[1])
        port.write(REG_PARALLEL_PORT_CONF_3, pd.pp_conf[2])
        port.write(REG_RX_CLOCK_DATA_DELAY, pd.rx_clk_data_delay)
        port.write(REG_TX_CLOCK_DATA_DELAY, pd.tx_clk_data_delay)
        if calib.phase_inverted(self):
            port.write_field(REG_PARALLEL_PORT_CONF_2, INVERT_RX2, 1)
            port.write_field(REG_INVERT_BITS, INVERT_RX2_RF_DC_CGOUT_WORD, 0)

    def apply_platform(self) -> None:
        pd = self.pdata
        if pd.fdd:
            pd.tdd_skip_vco_cal = False
        elif pd.tdd_use_dual_synth or pd.tdd_skip_vco_cal:
            pd.tdd_use_fdd_tables = True
        self.rx_eq_2tx = bool(pd.pp_conf[2] & FDD_RX_RATE_2TX_RATE)
        self.clocks.set_ext_ref(pd.ref_clk)
        self.clocks.bypass_rx_fir = pd.bypass_rx_fir
        self.clocks.bypass_tx_fir = pd.bypass_tx_fir
        self.ensm.fdd = pd.fdd

    def attach(self) -> None:
        '''Pick up a chip brought up by an earlier setup(): rates, carriers
        and ENSM state are read back from the registers.'''
        pd = self.pdata
        self.apply_platform()
        self.clocks.recalc_all()
        self.rx_path_clks, self.tx_path_clks = \
            get_trx_clock_chain(self.clocks)
        self.ensm.fdd = bool(self.port.read_field(REG_ENSM_MODE, FDD_MODE))
        self.ensm.current = self.ensm.read_state()
        self.ctx.current_rx_bw = pd.rf_rx_bandwidth
        self.ctx.current_tx_bw = pd.rf_tx_bandwidth
        self.ctx.auto_cal_en = True
        log.debug('Attached: sample rate %d, ENSM %s', self.get_sample_rate(),
                  state_name(self.ensm.current))

    def setup(self) -> None:
        '''Bring the chip up from reset: clocks, synthesizers, calibrations,
        then the ENSM mode and initial state.'''
        pd = self.pdata
        port = self.port

        self.apply_platform()

        # Everything that can be rejected is rejected before the first write.
        bb_ref = ref_div_sel(pd.ref_clk, MAX_BBPLL_FREF)
        # A lower synthesizer reference trades phase noise for fractional
        # spurs.
        pd.trx_synth_max_fref = clamp(pd.trx_synth_max_fref, MIN_SYNTH_FREF,
                                      MAX_SYNTH_FREF)
        synth_ref = ref_div_sel(pd.ref_clk, pd.trx_synth_max_fref)
        self.plan_clock_chain()
        calc_rfpll_divider(pd.rx_synth_freq, synth_ref)
        calc_rfpll_divider(pd.tx_synth_freq, synth_ref)
        if pd.rf_rx_bandwidth <= 0 or pd.rf_tx_bandwidth <= 0:
            raise InvalidParameter(f'RF bandwidth {pd.rf_rx_bandwidth} / '
                                   f'{pd.rf_tx_bandwidth}')
        log.info('Setup: reference %s, %s, RX %s TX %s',
                 freq_to_str(pd.ref_clk), 'FDD' if pd.fdd else 'TDD',
                 freq_to_str(pd.rx_synth_freq), freq_to_str(pd.tx_synth_freq))

        port.write_field(REG_REF_DIVIDE_CONFIG_1, RX_REF_RESET_BAR, 1)
        port.write_field(REG_REF_DIVIDE_CONFIG_2, TX_REF_RESET_BAR, 1)
        port.write_field(REG_REF_DIVIDE_CONFIG_2, TX_REF_DOUBLER_FB_DELAY, 3)
        port.write_field(REG_REF_DIVIDE_CONFIG_2, RX_REF_DOUBLER_FB_DELAY, 3)
        port.write(REG_CLOCK_ENABLE,
                   DIGITAL_POWER_UP | CLOCK_ENABLE_DFLT | BBPLL_ENABLE
                   | (XO_BYPASS if pd.use_extclk else 0))

        self.clocks.set_rate(ClockSource.BB_REFCLK, bb_ref)
        self.apply_clock_chain()

        self.en_dis_tx(1, True)
        self.en_dis_rx(1, True)
        self.en_dis_tx(2, pd.rx2tx2)
        self.en_dis_rx(2, pd.rx2tx2)
        self.pp_port_setup(False)

        self.clocks.set_rate(ClockSource.RX_REFCLK, synth_ref)
        self.clocks.set_rate(ClockSource.TX_REFCLK, synth_ref)
        calib.txrx_synth_cp_calib(self, synth_ref, False)
        calib.txrx_synth_cp_calib(self, synth_ref, True)
        self.set_lo_freq(False, pd.rx_synth_freq)
        self.set_lo_freq(True, pd.tx_synth_freq)

        ctx = self.ctx
        ctx.current_rx_bw = pd.rf_rx_bandwidth
        ctx.current_tx_bw = pd.rf_tx_bandwidth
        calib.rf_bandwidth_filters(self, pd.rf_rx_bandwidth,
                                   pd.rf_tx_bandwidth)
        calib.bb_dc_offset_calib(self)
        calib.rf_dc_offset_calib(self, self.get_lo_freq(False))
        calib.tx_quad_calib(self, pd.rf_rx_bandwidth // 2,
                            pd.rf_tx_bandwidth // 2, -1)
        calib.restore_tracking(self)

        if not pd.fdd:
            calib.run_calibration(port, TXMON_CAL)

        self.pp_port_setup(True)
        self.ensm.set_mode(pd.fdd, pd.ensm_pin_ctrl)
        self.ensm.current = self.ensm.read_state()
        self.ensm.set_state(EnsmState.FDD if pd.fdd else EnsmState.RX,
                            pd.ensm_pin_ctrl)

        ctx.auto_cal_en = True
        ctx.cal_threshold_freq = DEFAULT_CAL_THRESHOLD
        log.info('Setup done')

    def set_sample_rate(self, rate: int) -> PathClocks:
        '''Move both paths to a new sample rate and retune the filters for
        the current bandwidths.  Returns the RX path clocks.'''
        plan = self.set_trx_clock_chain_freq(rate)
        self.rx_path_clks, self.tx_path_clks = plan.rx, plan.tx
        if self.ctx.current_rx_bw and self.ctx.current_tx_bw:
            self.update_rf_bandwidth(self.ctx.current_rx_bw,
                                     self.ctx.current_tx_bw)
        return plan.rx

    def get_sample_rate(self) -> int:
        return self.clocks.get_rate(ClockSource.RX_SAMPL)

    def set_lo_freq(self, tx: bool, freq: int) -> int:
        '''Tune a synthesizer; returns the carrier achieved in Hz.'''
        return from_clk(self.clocks.set_rate(rfpll_source(tx), to_clk(freq)))

    def get_lo_freq(self, tx: bool) -> int:
        return from_clk(self.clocks.recalc_rate(rfpll_source(tx)))

    def update_rf_bandwidth(self, rf_rx_bw: int, rf_tx_bw: int) -> None:
        calib.update_rf_bandwidth(self, rf_rx_bw, rf_tx_bw)

    def do_calib_run(self, cal: int, arg: int) -> None:
        calib.do_calib_run(self, cal, arg)

    def set_tracking(self, bbdc: bool, rfdc: bool, quad: bool) -> None:
        self.ctx.bbdc_track_en = bbdc
        self.ctx.rfdc_track_en = rfdc
        self.ctx.quad_track_en = quad
        calib.restore_tracking(self)

    def set_ensm_state(self, state: EnsmState) -> None:
        self.ensm.set_state(state, self.pdata.ensm_pin_ctrl)

    def dig_tune(self, max_freq: int) -> None:
        dig_tune.dig_tune(self, max_freq)

    def post_setup(self) -> None:
        dig_tune.post_setup(self)

    def timing_analysis(self) -> str:
        return dig_tune.timing_analysis(self)

def test_ref_div_sel() -> None:
    import pytest
    assert ref_div_sel(40_000_000, 80_000_000) == 80_000_000
    assert ref_div_sel(40_000_000, 70_000_000) == 40_000_000
    assert ref_div_sel(122_880_000, 70_000_000) == 61_440_000
    assert ref_div_sel(250_000_000, 70_000_000) == 62_500_000
    with pytest.raises(InvalidRate):
        ref_div_sel(300_000_000, 70_000_000)

def test_setup_fdd() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    assert phy.ensm.read_state() == EnsmState.FDD
    assert phy.ensm.current == EnsmState.FDD
    assert phy.get_sample_rate() == 30_720_000
    assert phy.get_lo_freq(False) == 2_400_000_000
    assert phy.get_lo_freq(True) == 2_450_000_000
    assert phy.clocks.get_rate(ClockSource.RX_REFCLK) == 80_000_000
    assert phy.ctx.auto_cal_en
    assert phy.ctx.current_rx_bw == 18_000_000
    # Tracking follows the context flags.
    assert phy.port.regs[REG_DC_OFFSET_CONFIG2] \
        & ENABLE_BB_DC_OFFSET_TRACKING
    cals = phy.port.cal_log
    assert cals.index(RX_BB_TUNE_CAL) < cals.index(BBDC_CAL) \
        < cals.index(RFDC_CAL) < cals.index(TX_QUAD_CAL)
    assert TXMON_CAL not in cals

def test_setup_tdd() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy(PlatformData(fdd=False, tdd_use_dual_synth=True))
    assert phy.pdata.tdd_use_fdd_tables
    assert phy.ensm.read_state() == EnsmState.RX
    assert phy.port.regs[REG_ENSM_MODE] == 0
    assert phy.port.regs[REG_ENSM_CONFIG_2] == DUAL_SYNTH_MODE
    assert TXMON_CAL in phy.port.cal_log

def test_setup_rejects_before_writes() -> None:
    import pytest
    from .sim import make_sim_phy
    phy = make_sim_phy(PlatformData(rx_synth_freq=6_500_000_000),
                       setup=False)
    with pytest.raises(InvalidRate):
        phy.setup()
    assert phy.port.writes == []

    phy = make_sim_phy(PlatformData(sample_rate=100_000_000), setup=False)
    with pytest.raises(InvalidRate):
        phy.setup()
    assert phy.port.writes == []

def test_set_sample_rate() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    start = len(phy.port.cal_log)
    rx = phy.set_sample_rate(61_440_000)
    assert phy.get_sample_rate() == 61_440_000
    assert rx[-1] == 61_440_000
    # The filters are retuned for the new BBPLL rate.
    assert RX_BB_TUNE_CAL in phy.port.cal_log[start:]
    assert phy.ensm.read_state() == EnsmState.FDD

def test_reset() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    phy.reset()
    assert phy.gpio.history[-2:] == [(GpioPort.RESET, False),
                                     (GpioPort.RESET, True)]
    assert not phy.ctx.auto_cal_en
    assert phy.ensm.prev_state == EnsmState.INVALID

    phy.gpio = None
    phy.reset()
    assert phy.port.writes[-2:] == [
        (REG_SPI_CONF, SOFT_RESET | SOFT_RESET_MIRROR), (REG_SPI_CONF, 0)]
    assert phy.port.regs[REG_CLOCK_ENABLE] == 0

def test_update_rf_bandwidth() -> None:
    import pytest
    from .sim import make_sim_phy
    phy = make_sim_phy()
    phy.update_rf_bandwidth(10_000_000, 8_000_000)
    assert phy.ctx.current_rx_bw == 10_000_000
    assert phy.ctx.current_tx_bw == 8_000_000
    assert phy.port.regs[REG_RX_BBBW_MHZ] == 5
    assert phy.ensm.read_state() == EnsmState.FDD
    with pytest.raises(InvalidParameter):
        phy.update_rf_bandwidth(0, 8_000_000)

def test_channel_enables() -> None:
    import pytest
    from .sim import make_sim_phy
    phy = make_sim_phy()
    assert phy.port.regs[REG_TX_ENABLE_FILTER_CTRL] & TX_CHANNEL_ENABLE \
        == TX_CHANNEL_ENABLE
    phy.pdata.rx2tx2 = False
    with pytest.raises(InvalidParameter):
        phy.en_dis_rx(2, True)
    phy.en_dis_rx(2, False)
    assert phy.port.read_field(REG_RX_ENABLE_FILTER_CTRL,
                               RX_CHANNEL_ENABLE) == 1

def test_attach() -> None:
    from .sim import demo_gain_tables, demo_synth_lut, make_sim_phy
    phy = make_sim_phy()
    again = Phy(phy.port, PlatformData(), demo_synth_lut(),
                demo_gain_tables())
    again.attach()
    assert abs(again.get_sample_rate() - 30_720_000) < 4
    assert again.get_lo_freq(False) == 2_400_000_000
    assert again.ensm.fdd
    assert again.ensm.current == EnsmState.FDD
    assert again.rx_path_clks[0] == again.clocks.get_rate(ClockSource.BBPLL)
