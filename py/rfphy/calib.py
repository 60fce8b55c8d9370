from __future__ import annotations

# Calibrations: baseband filter tuning, TIA, charge pump, DC offset and TX
# quadrature, plus RX tracking control.  The public entry points run inside a
# calibration session: tracking off, ENSM forced to ALERT, both put back
# afterwards whether or not the calibration succeeded.

from .clock import ClockSource
from .ensm import EnsmState
from .errors import InvalidParameter
from .lut import GainBand
from .plan_constants import DEFAULT_CAL_THRESHOLD, RF_DC_HIGH_BAND
from .plan_tools import clamp, div_round_closest, div_round_up, from_clk
from .port import RegisterPort
from .regs import *
from .window import find_opt, window_center

import contextlib
import logging

from dataclasses import dataclass
from typing import Iterator, TYPE_CHECKING

if TYPE_CHECKING:
    from .phy import Phy

log = logging.getLogger(__name__)

MAX_RX_PHASE = 0x1f

@dataclass
class CalibrationContext:
    '''Calibration related state kept across operations.'''
    current_table: GainBand|None = None
    last_tx_quad_cal_freq: int = 0
    auto_cal_en: bool = False
    cal_threshold_freq: int = DEFAULT_CAL_THRESHOLD
    bbdc_track_en: bool = True
    rfdc_track_en: bool = True
    quad_track_en: bool = True
    # RF bandwidths, twice the baseband bandwidths.
    current_rx_bw: int = 0
    current_tx_bw: int = 0

def run_calibration(port: RegisterPort, mask: int) -> None:
    '''Start the calibrations in mask and wait for the chip to clear them.'''
    log.debug('Calibration %#04x', mask)
    port.write(REG_CALIBRATION_CTRL, mask)
    port.check_cal_done(REG_CALIBRATION_CTRL, mask, 0)

def tracking_control(phy: Phy, bbdc_track: bool, rfdc_track: bool,
                     rxquad_track: bool) -> None:
    log.debug('Tracking: BB DC %s RF DC %s RX quad %s', bbdc_track,
              rfdc_track, rxquad_track)
    port = phy.port
    pd = phy.pdata
    port.write(REG_CALIBRATION_CONFIG_2,
               CALIBRATION_CONFIG2_DFLT | field_value(K_EXP_PHASE, 0x15))
    port.write(REG_CALIBRATION_CONFIG_3,
               PREVENT_POS_LOOP_GAIN | field_value(K_EXP_AMPLITUDE, 0x15))
    port.write(REG_DC_OFFSET_CONFIG2,
               USE_WAIT_COUNTER_FOR_RF_DC_INIT_CAL
               | field_value(DC_OFFSET_UPDATE, pd.dc_offset_update_events)
               | (ENABLE_BB_DC_OFFSET_TRACKING if bbdc_track else 0)
               | (ENABLE_RF_OFFSET_TRACKING if rfdc_track else 0))
    port.write_field(REG_RX_QUAD_GAIN2, CORRECTION_WORD_DECIMATION_M,
                     4 if pd.qec_tracking_slow_mode_en else 0)

    qtrack = 0
    if rxquad_track:
        qtrack = ENABLE_TRACKING_MODE_CH1 \
            | (ENABLE_TRACKING_MODE_CH2 if pd.rx2tx2 else 0)
    port.write(REG_CALIBRATION_CONFIG_1,
               ENABLE_PHASE_CORR | ENABLE_GAIN_CORR | FREE_RUN_MODE
               | ENABLE_CORR_WORD_DECIMATION | qtrack)

def restore_tracking(phy: Phy) -> None:
    ctx = phy.ctx
    tracking_control(phy, ctx.bbdc_track_en, ctx.rfdc_track_en,
                     ctx.quad_track_en)

@contextlib.contextmanager
def calibration_session(phy: Phy) -> Iterator[None]:
    tracking_control(phy, False, False, False)
    try:
        phy.ensm.force_state(EnsmState.ALERT)
        try:
            yield
        finally:
            phy.ensm.restore_state()
    finally:
        restore_tracking(phy)

def phase_inverted(phy: Phy) -> bool:
    pd = phy.pdata
    return bool(pd.rx1rx2_phase_inversion_en or pd.pp_conf[1] & INVERT_RX2)

def rx_bb_analog_filter_calib(phy: Phy, rx_bb_bw: int, bbpll_freq: int) -> None:
    port = phy.port
    rx_bb_bw = clamp(rx_bb_bw, 200_000, 28_000_000)
    target = 126906 * (rx_bb_bw // 10000)
    rxbbf_div = min(511, div_round_up(bbpll_freq, target))
    log.debug('RX BB filter: bw %d divider %d', rx_bb_bw, rxbbf_div)

    port.write(REG_RX_BBF_TUNE_DIVIDE, rxbbf_div & 0xff)
    port.write_field(REG_RX_BBF_TUNE_CONFIG, RX_BBF_TUNE_DIVIDE_MSB,
                     rxbbf_div >> 8)
    port.write(REG_RX_BBBW_MHZ, rx_bb_bw // 1_000_000)
    khz = div_round_closest(rx_bb_bw % 1_000_000 * 128, 1_000_000)
    port.write(REG_RX_BBBW_KHZ, min(127, khz))
    port.write(REG_RX_MIX_LO_CM, RX_MIX_LO_CM)
    port.write(REG_RX_MIX_GM_CONFIG, field_value(RX_MIX_GM_PLOAD, 3))
    port.write(REG_RX1_TUNE_CTRL, RX_TUNE_RESAMPLE)
    port.write(REG_RX2_TUNE_CTRL, RX_TUNE_RESAMPLE)
    try:
        run_calibration(port, RX_BB_TUNE_CAL)
    finally:
        port.write(REG_RX1_TUNE_CTRL, RX_TUNE_RESAMPLE | RX_PD_TUNE)
        port.write(REG_RX2_TUNE_CTRL, RX_TUNE_RESAMPLE | RX_PD_TUNE)

def tx_bb_analog_filter_calib(phy: Phy, tx_bb_bw: int, bbpll_freq: int) -> None:
    port = phy.port
    tx_bb_bw = clamp(tx_bb_bw, 625_000, 20_000_000)
    target = 145036 * (tx_bb_bw // 10000)
    txbbf_div = min(511, div_round_up(bbpll_freq, target))
    log.debug('TX BB filter: bw %d divider %d', tx_bb_bw, txbbf_div)

    port.write(REG_TX_BBF_TUNE_DIVIDER, txbbf_div & 0xff)
    port.write_field(REG_TX_BBF_TUNE_MODE, TX_BBF_TUNE_DIVIDER,
                     txbbf_div >> 8)
    tune = TUNER_RESAMPLE | field_value(TUNE_CTRL, 1)
    port.write(REG_TX_TUNE_CTRL, tune)
    try:
        run_calibration(port, TX_BB_TUNE_CAL)
    finally:
        port.write(REG_TX_TUNE_CTRL, tune | PD_TUNE)

def rx_tia_calib(phy: Phy, bb_bw: int) -> None:
    '''Set the TIA capacitors from the factory programmed filter values.'''
    port = phy.port
    bb_bw = clamp(bb_bw, 200_000, 20_000_000)
    reg1eb = port.read(REG_RX_BBF_C3_MSB)
    reg1ec = port.read(REG_RX_BBF_C3_LSB)
    reg1e6 = port.read(REG_RX_BBF_R2346)

    cbbf = reg1eb * 160 + reg1ec * 10 + 140     # fF
    r2346 = 18300 * (reg1e6 & RX_BBF_R2346)
    ctia = cbbf * r2346 * 560 // 3_500_000
    log.debug('TIA: bw %d Cbbf %d R2346 %d CTIA %d fF', bb_bw, cbbf, r2346,
              ctia)

    if bb_bw <= 3_000_000:
        config = 0xe0
    elif bb_bw <= 10_000_000:
        config = 0x60
    else:
        config = 0x20

    if ctia > 2920:
        lsb = 0x40
        msb = min(127, div_round_closest(ctia - 400, 320))
    else:
        lsb = div_round_closest(ctia - 400, 40) + 0x40
        msb = 0

    port.write(REG_RX_TIA_CONFIG, config)
    port.write(REG_TIA1_C_LSB, lsb)
    port.write(REG_TIA1_C_MSB, msb)
    port.write(REG_TIA2_C_LSB, lsb)
    port.write(REG_TIA2_C_MSB, msb)

SECOND_FILTER_RESISTOR = {1: 0x0c, 2: 0x04, 4: 0x03, 8: 0x01}

def tx_bb_second_filter_calib(phy: Phy, tx_bb_bw: int) -> None:
    port = phy.port
    tx_bb_bw = clamp(tx_bb_bw, 530_000, 20_000_000)
    # 2 pi / 4 * bw, in units of 10kHz.
    corner = 15708 * (tx_bb_bw // 10000)

    res = 1
    for _ in range(4):
        div = corner * res
        cap = (500_000_000 + (div >> 1)) // div - 12
        if cap < 64:
            break
        res <<= 1
    cap = min(cap, 63)

    if tx_bb_bw <= 4_500_000:
        config = 0x59
    elif tx_bb_bw <= 12_000_000:
        config = 0x56
    else:
        config = 0x57
    resistor = SECOND_FILTER_RESISTOR.get(res, 0x01)
    log.debug('TX second filter: bw %d res %d cap %d', tx_bb_bw, res, cap)

    port.write(REG_CONFIG0, config)
    port.write(REG_RESISTOR, resistor)
    port.write(REG_CAPACITOR, cap)

def txrx_synth_cp_calib(phy: Phy, ref_clk: int, tx: bool) -> None:
    '''Charge pump calibration for one RF synthesizer.  Leaves the ENSM
    forced to ALERT in FDD mode.'''
    port = phy.port
    pd = phy.pdata
    offs = synth_offset(tx)
    log.debug('%s charge pump calibration, ref %d', 'TX' if tx else 'RX',
              ref_clk)

    port.write(REG_RX_CP_LEVEL_DETECT + offs, 0x17)
    port.write(REG_RX_DSM_SETUP_1 + offs, 0x0)
    port.write(REG_RX_LO_GEN_POWER_MODE + offs, 0x00)
    port.write(REG_RX_VCO_LDO + offs, 0x0b)
    port.write(REG_RX_VCO_PD_OVERRIDES + offs, 0x02)
    port.write(REG_RX_CP_CURRENT + offs, 0x80)
    port.write(REG_RX_CP_CONFIG + offs, 0x00)

    # VCO calibration reference clock is the reference /4 in FDD tables,
    # otherwise the count scales with the reference.
    if pd.fdd or pd.tdd_use_fdd_tables:
        vco_cal = VCO_CAL_EN | field_value(VCO_CAL_COUNT, 3) \
            | field_value(FB_CLOCK_ADV, 2)
    else:
        vco_cal = field_value(VCO_CAL_COUNT, 1 if ref_clk > 40_000_000 else 0) \
            | field_value(FB_CLOCK_ADV, 2)
    port.write(REG_RX_VCO_CAL + offs, vco_cal)

    if not pd.fdd:
        port.write(REG_PARALLEL_PORT_CONF_3, LVDS_MODE)

    port.write(REG_ENSM_CONFIG_2, DUAL_SYNTH_MODE)
    port.write(REG_ENSM_CONFIG_1, FORCE_ALERT_STATE | TO_ALERT)
    port.write(REG_ENSM_MODE, FDD_MODE)

    port.write(REG_RX_CP_CONFIG + offs, CP_CAL_ENABLE)
    port.check_cal_done(REG_RX_CAL_STATUS + offs, CP_CAL_VALID, 1)

def bb_dc_offset_calib(phy: Phy) -> None:
    port = phy.port
    port.write(REG_BB_DC_OFFSET_COUNT, 0x3f)
    port.write(REG_BB_DC_OFFSET_SHIFT, field_value(BB_DC_M_SHIFT, 0xf))
    port.write(REG_BB_DC_OFFSET_ATTEN, field_value(BB_DC_OFFSET_ATTEN, 1))
    run_calibration(port, BBDC_CAL)

def rf_dc_offset_calib(phy: Phy, rx_freq: int) -> None:
    port = phy.port
    pd = phy.pdata
    log.debug('RF DC offset calibration at %d', rx_freq)

    port.write(REG_WAIT_COUNT, 0x20)
    if rx_freq <= RF_DC_HIGH_BAND:
        port.write(REG_RF_DC_OFFSET_COUNT, pd.rf_dc_offset_count_low)
        port.write(REG_RF_DC_OFFSET_CONFIG_1,
                   field_value(RF_DC_CALIBRATION_COUNT, 4)
                   | field_value(DAC_FS, 2))
        port.write(REG_RF_DC_OFFSET_ATTEN,
                   field_value(RF_DC_OFFSET_ATTEN,
                               pd.dc_offset_attenuation_low))
    else:
        port.write(REG_RF_DC_OFFSET_COUNT, pd.rf_dc_offset_count_high)
        port.write(REG_RF_DC_OFFSET_CONFIG_1,
                   field_value(RF_DC_CALIBRATION_COUNT, 4)
                   | field_value(DAC_FS, 3))
        port.write(REG_RF_DC_OFFSET_ATTEN,
                   field_value(RF_DC_OFFSET_ATTEN,
                               pd.dc_offset_attenuation_high))

    port.write(REG_DC_OFFSET_CONFIG2,
               USE_WAIT_COUNTER_FOR_RF_DC_INIT_CAL
               | field_value(DC_OFFSET_UPDATE, 3))

    if phase_inverted(phy):
        port.write(REG_INVERT_BITS, INVERT_RX1_RF_DC_CGOUT_WORD)
    else:
        port.write(REG_INVERT_BITS, INVERT_RX1_RF_DC_CGOUT_WORD
                   | INVERT_RX2_RF_DC_CGOUT_WORD)

    run_calibration(port, RFDC_CAL)

def rf_bandwidth_filters(phy: Phy, rf_rx_bw: int, rf_tx_bw: int) -> None:
    '''Tune the analog filters for the RF bandwidths, without bracketing.'''
    rx_bb_bw = rf_rx_bw // 2
    tx_bb_bw = rf_tx_bw // 2
    bbpll_freq = phy.clocks.get_rate(ClockSource.BBPLL)
    log.debug('RF bandwidth RX %d TX %d, BBPLL %d', rf_rx_bw, rf_tx_bw,
              bbpll_freq)

    rx_bb_analog_filter_calib(phy, rx_bb_bw, bbpll_freq)
    tx_bb_analog_filter_calib(phy, tx_bb_bw, bbpll_freq)
    rx_tia_calib(phy, rx_bb_bw)
    tx_bb_second_filter_calib(phy, tx_bb_bw)

def nco_setup(clkrf: int, clktf: int, bw_tx: int,
              port: RegisterPort) -> tuple[int, int, int]:
    '''Pick NCO words so that RX NCO = TX NCO = BW/4:

        RX NCO = CLKRF * (rxnco + 1) / 32
        TX NCO = CLKTF * (txnco + 1) / 32

    Returns (txnco_word, rxnco_word, default RX phase).'''
    txnco_word = clamp(div_round_closest(bw_tx * 8, clktf) - 1, 0, 3)
    rxnco_word = txnco_word
    rx_phase = 0

    if clkrf == 2 * clktf:
        rx_phase = 0x0e
        if txnco_word == 0:
            txnco_word += 1
        elif txnco_word == 1:
            rxnco_word -= 1
        elif txnco_word == 2:
            rxnco_word -= 2
            txnco_word -= 1
        else:
            rxnco_word -= 2
            rx_phase = 0x08
    elif clkrf == clktf:
        if txnco_word in (0, 3):
            rx_phase = 0x15
        elif txnco_word == 2:
            rx_phase = 0x1f
        elif port.read_field(REG_TX_ENABLE_FILTER_CTRL, 0x3f) == 0x22:
            rx_phase = 0x15
        else:
            rx_phase = 0x1a
    else:
        log.error('Unhandled NCO setup: CLKRF %d CLKTF %d', clkrf, clktf)

    return txnco_word, rxnco_word, rx_phase

def nco_word(rxnco_word: int, phase: int) -> int:
    return field_value(RX_NCO_FREQ, rxnco_word) \
        | field_value(RX_NCO_PHASE_OFFSET, phase)

def tx_quad_phase_search(phy: Phy, rxnco_word: int) -> int:
    '''Run the TX quadrature calibration at each of the 32 RX NCO phase
    offsets and settle on the middle of the widest converging window,
    treating the phases as circular.  Returns the phase chosen.'''
    port = phy.port
    field = [0] * 64
    for i in range(32):
        port.write(REG_QUAD_CAL_NCO_FREQ_PHASE_OFFSET, nco_word(rxnco_word, i))
        run_calibration(port, TX_QUAD_CAL)
        val = port.read(REG_QUAD_CAL_STATUS_TX1)
        # 360 / 0 wrap around.
        field[i] = field[i + 32] = \
            int(not (val & TX1_LO_CONV and val & TX1_SSB_CONV))

    start, length = find_opt(field)
    phase = window_center(start, length, 32)
    if length == 0:
        log.error('TX quadrature calibration did not converge at any phase')
    log.debug('%s RX_NCO_PHASE_OFFSET(%d)',
              ''.join('#' if f else 'o' for f in field), phase)

    port.write(REG_QUAD_CAL_NCO_FREQ_PHASE_OFFSET, nco_word(rxnco_word, phase))
    # Sometimes the calibration needs two passes to converge.
    run_calibration(port, TX_QUAD_CAL)
    run_calibration(port, TX_QUAD_CAL)
    return phase

def tx_quad_calib(phy: Phy, bw_rx: int, bw_tx: int, rx_phase: int) -> None:
    '''TX quadrature calibration at baseband bandwidths bw_rx / bw_tx.  A
    negative rx_phase selects the default phase for the clock ratio.'''
    port = phy.port
    pd = phy.pdata
    ctx = phy.ctx
    clkrf = phy.clocks.get_rate(ClockSource.CLKRF)
    clktf = phy.clocks.get_rate(ClockSource.CLKTF)
    log.debug('TX quad: bw_tx %d clkrf %d clktf %d', bw_tx, clkrf, clktf)

    txnco_word, rxnco_word, phase = nco_setup(clkrf, clktf, bw_tx, port)
    if rx_phase >= 0:
        phase = rx_phase

    txnco_freq = clktf * (txnco_word + 1) // 32
    log.debug('TX NCO frequency %d (BW/4 %d) word %d', txnco_freq,
              bw_tx // 4, txnco_word)

    # The bandwidth during calibration must cover the NCO tone.
    widen = txnco_freq > bw_rx // 4 or txnco_freq > bw_tx // 4
    if widen:
        rf_bandwidth_filters(phy, txnco_freq * 8, txnco_freq * 8)

    try:
        inverted = phase_inverted(phy)
        inv_bits = 0
        if inverted:
            port.write_field(REG_PARALLEL_PORT_CONF_2, INVERT_RX2, 0)
            inv_bits = port.read(REG_INVERT_BITS)
            port.write(REG_INVERT_BITS, INVERT_RX1_RF_DC_CGOUT_WORD
                       | INVERT_RX2_RF_DC_CGOUT_WORD)
        try:
            port.write(REG_QUAD_CAL_NCO_FREQ_PHASE_OFFSET,
                       nco_word(rxnco_word, phase))
            port.write_field(REG_KEXP_2, TX_NCO_FREQ, txnco_word)
            port.write(REG_QUAD_CAL_CTRL,
                       SETTLE_MAIN_ENABLE | DC_OFFSET_ENABLE | GAIN_ENABLE
                       | PHASE_ENABLE | field_value(M_DECIM, 3))
            port.write(REG_QUAD_CAL_COUNT, 0xff)
            port.write(REG_KEXP_1, field_value(KEXP_TX, 1)
                       | field_value(KEXP_TX_COMP, 3)
                       | field_value(KEXP_DC_I, 3)
                       | field_value(KEXP_DC_Q, 3))
            port.write(REG_MAG_FTEST_THRESH, 0x01)
            port.write(REG_MAG_FTEST_THRESH_2, 0x01)

            write_full_lmt_gain(phy)

            port.write(REG_QUAD_SETTLE_COUNT, 0xf0)
            port.write(REG_TX_QUAD_LPF_GAIN, 0x00)

            run_calibration(port, TX_QUAD_CAL)
            val = port.read(REG_QUAD_CAL_STATUS_TX1) \
                & (TX1_LO_CONV | TX1_SSB_CONV)
            log.debug('LO leakage: %d quadrature: %d RX phase %d',
                      bool(val & TX1_LO_CONV), bool(val & TX1_SSB_CONV),
                      phase)
            if val != TX1_LO_CONV | TX1_SSB_CONV:
                tx_quad_phase_search(phy, rxnco_word)
        finally:
            if inverted:
                port.write_field(REG_PARALLEL_PORT_CONF_2, INVERT_RX2, 1)
                port.write(REG_INVERT_BITS, inv_bits)
    finally:
        if widen:
            rf_bandwidth_filters(phy, ctx.current_rx_bw, ctx.current_tx_bw)

def write_full_lmt_gain(phy: Phy) -> None:
    '''The calibration runs at the first gain index whose LPF/TIA word is
    0x20.'''
    split = phy.pdata.split_gt
    if phy.ctx.current_table is None:
        log.error('No gain table loaded for the TX quadrature calibration')
        return
    table = phy.gain_tables.table(split, phy.ctx.current_table)
    mask = 0x20 if split else 0x3f
    for index, row in enumerate(table):
        if row[1] & mask == 0x20:
            phy.port.write(REG_TX_QUAD_FULL_LMT_GAIN, index)
            return
    log.error('No suitable LPF TIA value in the gain table')

def update_rf_bandwidth(phy: Phy, rf_rx_bw: int, rf_tx_bw: int) -> None:
    '''Retune the analog filters and redo the TX quadrature calibration for
    new RF bandwidths.'''
    if rf_rx_bw <= 0 or rf_tx_bw <= 0:
        raise InvalidParameter(f'RF bandwidth {rf_rx_bw} / {rf_tx_bw}')
    with calibration_session(phy):
        rf_bandwidth_filters(phy, rf_rx_bw, rf_tx_bw)
        phy.ctx.current_rx_bw = rf_rx_bw
        phy.ctx.current_tx_bw = rf_tx_bw
        tx_quad_calib(phy, rf_rx_bw // 2, rf_tx_bw // 2, -1)

def bb_dc_offset_calibration(phy: Phy) -> None:
    with calibration_session(phy):
        bb_dc_offset_calib(phy)

def rf_dc_offset_calibration(phy: Phy, rx_freq: int|None = None) -> None:
    '''RF DC offset calibration, by default at the current RX carrier.'''
    if rx_freq is None:
        rx_freq = from_clk(phy.clocks.get_rate(ClockSource.RX_RFPLL))
    with calibration_session(phy):
        rf_dc_offset_calib(phy, rx_freq)

def tx_quadrature_calibration(phy: Phy, rf_rx_bw: int, rf_tx_bw: int,
                              rx_phase: int = -1) -> None:
    if not -1 <= rx_phase <= MAX_RX_PHASE:
        raise InvalidParameter(
            f'RX phase {rx_phase} not in -1..{MAX_RX_PHASE}')
    with calibration_session(phy):
        tx_quad_calib(phy, rf_rx_bw // 2, rf_tx_bw // 2, rx_phase)

def do_calib_run(phy: Phy, cal: int, arg: int) -> None:
    '''Run one calibration by its CALIBRATION_CTRL bit.  For the TX
    quadrature calibration arg is the RX phase override, -1 for none.'''
    ctx = phy.ctx
    if cal == TX_QUAD_CAL:
        tx_quadrature_calibration(phy, ctx.current_rx_bw, ctx.current_tx_bw,
                                  arg)
    elif cal == RFDC_CAL:
        rf_dc_offset_calibration(phy)
    elif cal == BBDC_CAL:
        bb_dc_offset_calibration(phy)
    else:
        raise InvalidParameter(f'Calibration {cal:#04x} not supported')

def test_tracking_control() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    tracking_control(phy, True, False, True)
    regs = phy.port.regs
    assert regs[REG_DC_OFFSET_CONFIG2] & ENABLE_BB_DC_OFFSET_TRACKING
    assert not regs[REG_DC_OFFSET_CONFIG2] & ENABLE_RF_OFFSET_TRACKING
    assert regs[REG_CALIBRATION_CONFIG_1] & ENABLE_TRACKING_MODE_CH2
    phy.pdata.rx2tx2 = False
    tracking_control(phy, False, False, True)
    assert regs[REG_CALIBRATION_CONFIG_1] & (
        ENABLE_TRACKING_MODE_CH1 | ENABLE_TRACKING_MODE_CH2) \
        == ENABLE_TRACKING_MODE_CH1

def test_session_restores_on_success() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    phy.ctx.rfdc_track_en = False
    restore_tracking(phy)
    before = phy.port.regs[REG_DC_OFFSET_CONFIG2]
    state = phy.ensm.read_state()
    bb_dc_offset_calibration(phy)
    assert phy.port.regs[REG_DC_OFFSET_CONFIG2] == before
    assert phy.ensm.read_state() == state
    assert phy.port.cal_log[-1] == BBDC_CAL

def test_session_restores_on_timeout() -> None:
    import pytest
    from .errors import CalibrationTimeout
    from .sim import make_sim_phy
    phy = make_sim_phy()
    regs = phy.port.regs
    dc = regs[REG_DC_OFFSET_CONFIG2]
    quad = regs[REG_CALIBRATION_CONFIG_1]
    state = phy.ensm.read_state()
    assert state == EnsmState.FDD
    phy.port.stuck_cal = TX_QUAD_CAL
    with pytest.raises(CalibrationTimeout):
        tx_quadrature_calibration(phy, 18_000_000, 18_000_000)
    assert regs[REG_DC_OFFSET_CONFIG2] == dc
    assert regs[REG_CALIBRATION_CONFIG_1] == quad
    assert phy.ensm.read_state() == state

def test_session_restores_tracking_when_force_fails() -> None:
    import pytest
    from .errors import PhyError
    from .sim import make_sim_phy
    phy = make_sim_phy()
    regs = phy.port.regs
    dc = regs[REG_DC_OFFSET_CONFIG2]
    quad = regs[REG_CALIBRATION_CONFIG_1]

    def refuse(state: EnsmState) -> None:
        raise PhyError(f'Cannot force {state.name}')
    phy.ensm.force_state = refuse
    with pytest.raises(PhyError):
        bb_dc_offset_calibration(phy)
    assert regs[REG_DC_OFFSET_CONFIG2] == dc
    assert regs[REG_CALIBRATION_CONFIG_1] == quad

def test_phase_search_wraps() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    phy.port.quad_converges = lambda phase: phase in (30, 31, 0, 1)
    start = len(phy.port.cal_log)
    tx_quadrature_calibration(phy, 18_000_000, 18_000_000, rx_phase=5)
    # The first attempt, 32 phases, then two at the chosen phase.
    assert phy.port.cal_log[start:].count(TX_QUAD_CAL) == 35
    offset = phy.port.regs[REG_QUAD_CAL_NCO_FREQ_PHASE_OFFSET]
    assert offset & RX_NCO_PHASE_OFFSET == 0

def test_quad_first_pass_converges() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    start = len(phy.port.cal_log)
    tx_quadrature_calibration(phy, 18_000_000, 18_000_000, rx_phase=7)
    assert phy.port.cal_log[start:].count(TX_QUAD_CAL) == 1
    offset = phy.port.regs[REG_QUAD_CAL_NCO_FREQ_PHASE_OFFSET]
    assert offset & RX_NCO_PHASE_OFFSET == 7

def test_quad_restores_inversion() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    phy.pdata.rx1rx2_phase_inversion_en = True
    phy.port.regs[REG_INVERT_BITS] = INVERT_RX1_RF_DC_CGOUT_WORD
    tx_quadrature_calibration(phy, 18_000_000, 18_000_000)
    assert phy.port.regs[REG_INVERT_BITS] == INVERT_RX1_RF_DC_CGOUT_WORD
    assert phy.port.regs[REG_PARALLEL_PORT_CONF_2] & INVERT_RX2

def test_rx_tia_calib() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    regs = phy.port.regs
    regs[REG_RX_BBF_C3_MSB] = 2
    regs[REG_RX_BBF_C3_LSB] = 5
    regs[REG_RX_BBF_R2346] = 3
    # Cbbf 510fF, R2346 54900, CTIA 4479fF.
    rx_tia_calib(phy, 9_000_000)
    assert regs[REG_RX_TIA_CONFIG] == 0x60
    assert regs[REG_TIA1_C_LSB] == regs[REG_TIA2_C_LSB] == 0x40
    assert regs[REG_TIA1_C_MSB] == regs[REG_TIA2_C_MSB] == 13

    regs[REG_RX_BBF_R2346] = 1
    # CTIA 1493fF.
    rx_tia_calib(phy, 1_000_000)
    assert regs[REG_RX_TIA_CONFIG] == 0xe0
    assert regs[REG_TIA1_C_LSB] == 0x40 + 27
    assert regs[REG_TIA1_C_MSB] == 0

def test_second_filter() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    regs = phy.port.regs
    tx_bb_second_filter_calib(phy, 9_000_000)
    assert regs[REG_CONFIG0] == 0x56
    assert regs[REG_RESISTOR] == 0x0c
    assert regs[REG_CAPACITOR] == 23
    # Narrow: the resistor steps up until the capacitor fits.
    tx_bb_second_filter_calib(phy, 100_000)
    assert regs[REG_CONFIG0] == 0x59
    assert regs[REG_RESISTOR] == 0x01
    assert regs[REG_CAPACITOR] == 63

def test_rx_filter_divider() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    regs = phy.port.regs
    rx_bb_analog_filter_calib(phy, 9_000_000, 983_040_000)
    # ceil(983.04M / (126906 * 900)) = 9
    assert regs[REG_RX_BBF_TUNE_DIVIDE] == 9
    assert regs[REG_RX_BBBW_MHZ] == 9
    assert regs[REG_RX_BBBW_KHZ] == 0
    assert regs[REG_RX1_TUNE_CTRL] == RX_TUNE_RESAMPLE | RX_PD_TUNE
    assert phy.port.cal_log[-1] == RX_BB_TUNE_CAL

def test_do_calib_run_rejects() -> None:
    import pytest
    from .sim import make_sim_phy
    phy = make_sim_phy()
    writes = len(phy.port.writes)
    with pytest.raises(InvalidParameter):
        do_calib_run(phy, RX_GAIN_STEP_CAL, 0)
    with pytest.raises(InvalidParameter):
        do_calib_run(phy, TX_QUAD_CAL, 40)
    with pytest.raises(InvalidParameter):
        do_calib_run(phy, TX_QUAD_CAL, -2)
    assert len(phy.port.writes) == writes

def test_rf_dc_offset_bands() -> None:
    from .sim import make_sim_phy
    phy = make_sim_phy()
    regs = phy.port.regs
    rf_dc_offset_calibration(phy, 5_000_000_000)
    assert regs[REG_RF_DC_OFFSET_COUNT] == phy.pdata.rf_dc_offset_count_high
    assert regs[REG_RF_DC_OFFSET_CONFIG_1] & DAC_FS == field_value(DAC_FS, 3)
    rf_dc_offset_calibration(phy)
    assert regs[REG_RF_DC_OFFSET_COUNT] == phy.pdata.rf_dc_offset_count_low
    assert regs[REG_INVERT_BITS] == INVERT_RX1_RF_DC_CGOUT_WORD \
        | INVERT_RX2_RF_DC_CGOUT_WORD
