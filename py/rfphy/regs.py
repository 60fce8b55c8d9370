from __future__ import annotations

# AD9361 register map: the addresses and bit fields the control core touches.
# Multi-bit fields are given as masks; use field_shift() / field_value() to
# place values into them.

import difflib

from dataclasses import dataclass

def field_shift(mask: int) -> int:
    assert mask != 0
    return (mask & -mask).bit_length() - 1

def field_value(mask: int, value: int) -> int:
    '''Place value into the field given by mask.'''
    return value << field_shift(mask) & mask

# SPI / general.
REG_SPI_CONF = 0x000
SOFT_RESET = 0x80
SOFT_RESET_MIRROR = 0x01

REG_TX_ENABLE_FILTER_CTRL = 0x002
TX_FIR_ENABLE_INTERPOLATION = 0x03
THB1_EN = 0x04
THB2_EN = 0x08
THB3_ENABLE_INTERP = 0x30
TX_CHANNEL_ENABLE = 0xc0

REG_RX_ENABLE_FILTER_CTRL = 0x003
RX_FIR_ENABLE_DECIMATION = 0x03
RHB1_EN = 0x04
RHB2_EN = 0x08
DEC3_ENABLE_DECIMATION = 0x30
RX_CHANNEL_ENABLE = 0xc0

REG_RFPLL_DIVIDERS = 0x005
RX_VCO_DIVIDER = 0x0f
TX_VCO_DIVIDER = 0xf0

REG_RX_CLOCK_DATA_DELAY = 0x006
REG_TX_CLOCK_DATA_DELAY = 0x007
# Same layout for both delay registers.
DATA_DELAY = 0x0f
CLK_DELAY = 0xf0

REG_CLOCK_ENABLE = 0x009
CLOCK_ENABLE_DFLT = 0x01
BBPLL_ENABLE = 0x02
DIGITAL_POWER_UP = 0x04
XO_BYPASS = 0x10

REG_BBPLL = 0x00a
BBPLL_DIVIDER = 0x07
DAC_CLK_DIV2 = 0x08

REG_PARALLEL_PORT_CONF_1 = 0x010
REG_PARALLEL_PORT_CONF_2 = 0x011
INVERT_RX2 = 0x04
REG_PARALLEL_PORT_CONF_3 = 0x012
FDD_RX_RATE_2TX_RATE = 0x02
SINGLE_PORT_MODE = 0x04
HALF_DUPLEX_MODE = 0x08
LVDS_MODE = 0x10

REG_ENSM_MODE = 0x013
FDD_MODE = 0x01

REG_ENSM_CONFIG_1 = 0x014
TO_ALERT = 0x01
AUTO_GAIN_LOCK = 0x02
FORCE_ALERT_STATE = 0x04
LEVEL_MODE = 0x08
ENABLE_ENSM_PIN_CTRL = 0x10
FORCE_TX_ON = 0x20
FORCE_RX_ON = 0x40
ENABLE_RX_DATA_PORT_FOR_CAL = 0x80

REG_ENSM_CONFIG_2 = 0x015
TX_SYNTH_READY_MASK = 0x01
RX_SYNTH_READY_MASK = 0x02
SYNTH_ENABLE_PIN_CTRL_MODE = 0x04
TXNRX_SPI_CTRL = 0x08
POWER_DOWN_TX_SYNTH = 0x10
POWER_DOWN_RX_SYNTH = 0x20
FDD_EXTERNAL_CTRL_ENABLE = 0x40
DUAL_SYNTH_MODE = 0x80

REG_CALIBRATION_CTRL = 0x016
BBDC_CAL = 0x01
RFDC_CAL = 0x02
TXMON_CAL = 0x04
RX_GAIN_STEP_CAL = 0x08
TX_QUAD_CAL = 0x10
RX_QUAD_CAL = 0x20
TX_BB_TUNE_CAL = 0x40
RX_BB_TUNE_CAL = 0x80

REG_STATE = 0x017
ENSM_STATE = 0x0f
CALIBRATION_SEQUENCE_STATE = 0xf0

# BBPLL.
REG_SDM_CTRL_1 = 0x03f
BBPLL_RESET_BAR = 0x01
INIT_BB_FO_CAL = 0x04
REG_FRACT_BB_FREQ_WORD_1 = 0x041
REG_FRACT_BB_FREQ_WORD_2 = 0x042
REG_FRACT_BB_FREQ_WORD_3 = 0x043
REG_INTEGER_BB_FREQ_WORD = 0x044
REG_CLOCK_CTRL = 0x045
REF_FREQ_SCALER = 0x03
REG_CP_CURRENT = 0x048
REG_LOOP_FILTER_1 = 0x049
REG_LOOP_FILTER_2 = 0x04a
REG_LOOP_FILTER_3 = 0x04b
REG_VCO_CTRL = 0x04c
FREQ_CAL_COUNT_LENGTH = 0x30
FREQ_CAL_ENABLE = 0x04
REG_SDM_CTRL = 0x04e
REG_VCO_PROGRAM_1 = 0x050
REG_VCO_PROGRAM_2 = 0x051
REG_CH_1_OVERFLOW = 0x05e
BBPLL_LOCK = 0x80

# TX quadrature calibration.
REG_QUAD_CAL_NCO_FREQ_PHASE_OFFSET = 0x0a0
RX_NCO_FREQ = 0x60
RX_NCO_PHASE_OFFSET = 0x1f
REG_TX_QUAD_FULL_LMT_GAIN = 0x0a3
REG_TX_QUAD_LPF_GAIN = 0x0a4
REG_QUAD_CAL_STATUS_TX1 = 0x0a7
TX1_SSB_CONV = 0x40
TX1_LO_CONV = 0x80
REG_QUAD_CAL_CTRL = 0x0a9
M_DECIM = 0x07
PHASE_ENABLE = 0x10
GAIN_ENABLE = 0x20
DC_OFFSET_ENABLE = 0x40
SETTLE_MAIN_ENABLE = 0x80
REG_KEXP_1 = 0x0aa
KEXP_DC_Q = 0x03
KEXP_DC_I = 0x0c
KEXP_TX_COMP = 0x30
KEXP_TX = 0xc0
REG_KEXP_2 = 0x0ab
TX_NCO_FREQ = 0xc0
REG_QUAD_CAL_COUNT = 0x0ac
REG_QUAD_SETTLE_COUNT = 0x0ae
REG_MAG_FTEST_THRESH = 0x0af
REG_MAG_FTEST_THRESH_2 = 0x0b0

# TX baseband filters.
REG_TX_TUNE_CTRL = 0x0ca
TUNER_RESAMPLE = 0x02
PD_TUNE = 0x04
TUNE_CTRL = 0x60
REG_CAPACITOR = 0x0d0
REG_RESISTOR = 0x0d1
REG_CONFIG0 = 0x0d2
REG_TX_BBF_TUNE_DIVIDER = 0x0d6
REG_TX_BBF_TUNE_MODE = 0x0d7
TX_BBF_TUNE_DIVIDER = 0x01

# Gain table.
REG_AGC_CONFIG_2 = 0x0fb
AGC_USE_FULL_GAIN_TABLE = 0x08
REG_GAIN_TABLE_ADDRESS = 0x130
REG_GAIN_TABLE_WRITE_DATA1 = 0x131
REG_GAIN_TABLE_WRITE_DATA2 = 0x132
REG_GAIN_TABLE_WRITE_DATA3 = 0x133
REG_GAIN_TABLE_READ_DATA1 = 0x134
REG_GAIN_TABLE_CONFIG = 0x137
START_GAIN_TABLE_CLOCK = 0x01
WRITE_GAIN_TABLE = 0x02
RECEIVER_SELECT = 0x60
GT_RX1 = 1
GT_RX2 = 2

# RX tracking and DC offset.
REG_CALIBRATION_CONFIG_1 = 0x169
ENABLE_TRACKING_MODE_CH1 = 0x01
ENABLE_TRACKING_MODE_CH2 = 0x02
ENABLE_CORR_WORD_DECIMATION = 0x10
FREE_RUN_MODE = 0x20
ENABLE_GAIN_CORR = 0x40
ENABLE_PHASE_CORR = 0x80
REG_CALIBRATION_CONFIG_2 = 0x16a
CALIBRATION_CONFIG2_DFLT = 0x60
K_EXP_PHASE = 0x1f
REG_CALIBRATION_CONFIG_3 = 0x16b
K_EXP_AMPLITUDE = 0x1f
PREVENT_POS_LOOP_GAIN = 0x80
REG_RX_QUAD_GAIN2 = 0x16e
CORRECTION_WORD_DECIMATION_M = 0x07

REG_WAIT_COUNT = 0x185
REG_RF_DC_OFFSET_COUNT = 0x186
REG_RF_DC_OFFSET_CONFIG_1 = 0x187
DAC_FS = 0x0c
RF_DC_CALIBRATION_COUNT = 0xf0
REG_RF_DC_OFFSET_ATTEN = 0x188
RF_DC_OFFSET_ATTEN = 0x1f
REG_INVERT_BITS = 0x189
INVERT_RX1_RF_DC_CGOUT_WORD = 0x04
INVERT_RX2_RF_DC_CGOUT_WORD = 0x08
REG_DC_OFFSET_CONFIG2 = 0x18b
ENABLE_RF_OFFSET_TRACKING = 0x04
DC_OFFSET_UPDATE = 0x38
ENABLE_BB_DC_OFFSET_TRACKING = 0x40
USE_WAIT_COUNTER_FOR_RF_DC_INIT_CAL = 0x80
REG_BB_DC_OFFSET_SHIFT = 0x190
BB_DC_M_SHIFT = 0x1e
REG_BB_DC_OFFSET_COUNT = 0x193
REG_BB_DC_OFFSET_ATTEN = 0x194
BB_DC_OFFSET_ATTEN = 0x0f

# RX baseband filter and TIA.
REG_RX_MIX_GM_CONFIG = 0x1d5
RX_MIX_GM_PLOAD = 0x03
REG_RX_MIX_LO_CM = 0x1d6
RX_MIX_LO_CM = 0x3f
REG_RX_TIA_CONFIG = 0x1db
REG_TIA1_C_LSB = 0x1dc
REG_TIA1_C_MSB = 0x1dd
REG_TIA2_C_LSB = 0x1de
REG_TIA2_C_MSB = 0x1df
REG_RX1_TUNE_CTRL = 0x1e2
REG_RX2_TUNE_CTRL = 0x1e3
RX_PD_TUNE = 0x01
RX_TUNE_RESAMPLE = 0x02
REG_RX_BBF_R2346 = 0x1e6
RX_BBF_R2346 = 0x07
REG_RX_BBF_C3_MSB = 0x1eb
REG_RX_BBF_C3_LSB = 0x1ec
REG_RX_BBF_TUNE_DIVIDE = 0x1f8
REG_RX_BBF_TUNE_CONFIG = 0x1f9
RX_BBF_TUNE_DIVIDE_MSB = 0x01
REG_RX_BBBW_MHZ = 0x1fb
REG_RX_BBBW_KHZ = 0x1fc

# RX synthesizer.  The TX synthesizer is the same layout at SYNTH_TX_OFFSET.
SYNTH_TX_OFFSET = 0x40

REG_RX_INTEGER_BYTE_0 = 0x231
REG_RX_INTEGER_BYTE_1 = 0x232
REG_RX_FRACT_BYTE_0 = 0x233
REG_RX_FRACT_BYTE_1 = 0x234
REG_RX_FRACT_BYTE_2 = 0x235
REG_RX_FORCE_ALC = 0x236
FORCE_ALC_WORD = 0x7e
FORCE_ALC_ENABLE = 0x80
REG_RX_FORCE_VCO_TUNE_0 = 0x237
REG_RX_FORCE_VCO_TUNE_1 = 0x238
FORCE_VCO_TUNE = 0x01
VCO_CAL_OFFSET = 0x78
REG_RX_ALC_VARACTOR = 0x239
VCO_VARACTOR = 0x0f
REG_RX_VCO_OUTPUT = 0x23a
VCO_OUTPUT_LEVEL = 0x0f
PORB_VCO_LOGIC = 0x40
REG_RX_CP_CURRENT = 0x23b
CHARGE_PUMP_CURRENT = 0x3f
REG_RX_CP_OFFSET = 0x23c
REG_RX_CP_CONFIG = 0x23d
CP_CAL_ENABLE = 0x04
REG_RX_LOOP_FILTER_1 = 0x23e
LOOP_FILTER_C1 = 0x0f
LOOP_FILTER_C2 = 0xf0
REG_RX_LOOP_FILTER_2 = 0x23f
LOOP_FILTER_C3 = 0x0f
LOOP_FILTER_R1 = 0xf0
REG_RX_LOOP_FILTER_3 = 0x240
LOOP_FILTER_R3 = 0x0f
REG_RX_DSM_SETUP_1 = 0x241
REG_RX_VCO_BIAS_1 = 0x242
VCO_BIAS_REF = 0x07
VCO_BIAS_TCF = 0x18
REG_RX_CAL_STATUS = 0x244
CP_CAL_VALID = 0x80
REG_RX_PFD_CONFIG = 0x245
BYPASS_LD_SYNTH = 0x08
REG_RX_CP_LEVEL_DETECT = 0x246
REG_RX_CP_OVERRANGE_VCO_LOCK = 0x247
VCO_LOCK = 0x02
REG_RX_VCO_LDO = 0x248
REG_RX_VCO_PD_OVERRIDES = 0x249
REG_RX_VCO_CAL = 0x24a
VCO_CAL_EN = 0x80
VCO_CAL_COUNT = 0x60
FB_CLOCK_ADV = 0x03
REG_RX_LO_GEN_POWER_MODE = 0x24b
REG_RX_VCO_CAL_REF = 0x24f
VCO_CAL_REF_TCF = 0x07
REG_RX_VCO_VARACTOR_CTRL_0 = 0x250
VCO_VARACTOR_REFERENCE_TCF = 0x07
VCO_VARACTOR_OFFSET = 0xf0
REG_RX_VCO_VARACTOR_CTRL_1 = 0x251
VCO_VARACTOR_REFERENCE = 0x0f
REG_RX_FAST_LOCK_SETUP = 0x25a
FAST_LOCK_MODE_ENABLE = 0x01
FAST_LOCK_PROFILE_PIN_SELECT = 0x02
FAST_LOCK_PROFILE = 0x1c
REG_RX_FAST_LOCK_SETUP_INIT_DELAY = 0x25b
REG_RX_FAST_LOCK_PROGRAM_ADDR = 0x25c
FAST_LOCK_PROFILE_WORD = 0x0f
FAST_LOCK_PROFILE_ADDR = 0x70
REG_RX_FAST_LOCK_PROGRAM_DATA = 0x25d
REG_RX_FAST_LOCK_PROGRAM_READ = 0x25e
REG_RX_FAST_LOCK_PROGRAM_CTRL = 0x25f
FAST_LOCK_PROGRAM_CLOCK_ENABLE = 0x01
FAST_LOCK_PROGRAM_WRITE = 0x02

REG_TX_FRACT_BYTE_2 = REG_RX_FRACT_BYTE_2 + SYNTH_TX_OFFSET
REG_TX_CP_OVERRANGE_VCO_LOCK = REG_RX_CP_OVERRANGE_VCO_LOCK + SYNTH_TX_OFFSET
REG_TX_PFD_CONFIG = REG_RX_PFD_CONFIG + SYNTH_TX_OFFSET
REG_TX_FAST_LOCK_SETUP = REG_RX_FAST_LOCK_SETUP + SYNTH_TX_OFFSET

# Reference dividers.
REG_REF_DIVIDE_CONFIG_1 = 0x2ab
RX_REF_DIVIDER_MSB = 0x01
RX_REF_RESET_BAR = 0x80
REG_REF_DIVIDE_CONFIG_2 = 0x2ac
TX_REF_RESET_BAR = 0x01
RX_REF_DOUBLER_FB_DELAY = 0x06
TX_REF_DOUBLER_FB_DELAY = 0x18
TX_REF_DIVIDER = 0x60
RX_REF_DIVIDER_LSB = 0x80

# BIST and data port observation.
REG_BIST_CONFIG = 0x3f4
BIST_ENABLE = 0x01
TONE_PRBS = 0x02
BIST_CTRL_POINT = 0x0c
REG_OBSERVE_CONFIG = 0x3f5
DATA_PORT_LOOP_TEST_ENABLE = 0x01
DATA_PORT_SP_HD_LOOP_TEST_OE = 0x80

REGISTER_SPACE = 0x400

def synth_offset(tx: bool) -> int:
    return SYNTH_TX_OFFSET if tx else 0

@dataclass(frozen=True)
class Register:
    name: str
    address: int

    def __str__(self) -> str:
        return self.name

    @staticmethod
    def get(key: str) -> Register:
        '''Look up a register by name (with or without REG_ prefix), or by
        numeric address.'''
        try:
            return Register(f'R{int(key, 0):#05x}', int(key, 0))
        except ValueError:
            pass
        key = key.upper().replace('-', '_')
        if not key.startswith('REG_'):
            key = 'REG_' + key
        try:
            return REGISTERS[key]
        except KeyError:
            prompt = ' '.join(difflib.get_close_matches(key, REGISTERS))
            if prompt:
                print(f'Did you mean: {prompt}?')
            raise

REGISTERS: dict[str, Register] = {
    k: Register(k, v) for k, v in sorted(globals().items())
    if k.startswith('REG_') and isinstance(v, int)}

def test_field_helpers() -> None:
    assert field_shift(DATA_DELAY) == 0
    assert field_shift(CLK_DELAY) == 4
    assert field_value(CLK_DELAY, 0x3) == 0x30
    assert field_value(TUNE_CTRL, 1) | TUNER_RESAMPLE == 0x22
    assert field_value(TUNE_CTRL, 1) | TUNER_RESAMPLE | PD_TUNE == 0x26
    # Over-wide values are truncated to the field.
    assert field_value(RX_NCO_PHASE_OFFSET, 0x25) == 0x05

def test_register_lookup() -> None:
    assert Register.get('state').address == REG_STATE
    assert Register.get('REG_ENSM_CONFIG_1').address == 0x014
    assert Register.get('0x3f5').address == REG_OBSERVE_CONFIG
    assert REGISTERS['REG_TX_FRACT_BYTE_2'].address == 0x275
