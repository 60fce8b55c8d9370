from __future__ import annotations

# The chip's clock tree: a fixed set of nodes, each an integer scaler (or a
# PLL) relative to its parent.  Rates are cached per node; nothing is
# re-propagated automatically, so callers re-apply whole paths in order.

from .errors import (InvalidClockChain, InvalidParameter, InvalidRate,
                     InvalidScaler)
from .plan_constants import (BBPLL_MODULUS, MAX_BBPLL_FREQ, MIN_BBPLL_FREQ,
                             MHz)
from .plan_tools import clamp, div_round_closest, ilog2, is_power_of_two
from .port import RegisterPort
from .regs import *

import logging

from dataclasses import dataclass
from enum import IntEnum
from typing import Tuple

log = logging.getLogger(__name__)

class ClockSource(IntEnum):
    EXT_REF = 0
    BB_REFCLK = 1
    RX_REFCLK = 2
    TX_REFCLK = 3
    BBPLL = 4
    ADC = 5
    R2 = 6
    R1 = 7
    CLKRF = 8
    RX_SAMPL = 9
    DAC = 10
    T2 = 11
    T1 = 12
    CLKTF = 13
    TX_SAMPL = 14
    RX_RFPLL = 15
    TX_RFPLL = 16

CS = ClockSource

# Every parent precedes its children in enum order.
PARENTS: dict[ClockSource, ClockSource] = {
    CS.BB_REFCLK: CS.EXT_REF,
    CS.RX_REFCLK: CS.EXT_REF,
    CS.TX_REFCLK: CS.EXT_REF,
    CS.BBPLL: CS.BB_REFCLK,
    CS.ADC: CS.BBPLL,
    CS.R2: CS.ADC,
    CS.R1: CS.R2,
    CS.CLKRF: CS.R1,
    CS.RX_SAMPL: CS.CLKRF,
    CS.DAC: CS.ADC,
    CS.T2: CS.DAC,
    CS.T1: CS.T2,
    CS.CLKTF: CS.T1,
    CS.TX_SAMPL: CS.CLKTF,
    CS.RX_RFPLL: CS.RX_REFCLK,
    CS.TX_RFPLL: CS.TX_REFCLK,
}

# (address, mask, value) field writes.
FieldWrites = list[Tuple[int, int, int]]

@dataclass
class ClockScaler:
    source: ClockSource
    parent: ClockSource
    mult: int = 1
    div: int = 1

    def apply(self, parent_rate: int) -> int:
        return parent_rate * self.mult // self.div

    def __str__(self) -> str:
        return f'{self.source.name} = {self.parent.name} * {self.mult} / {self.div}'

class ScalerFields:
    '''Legal values and register encoding for one kind of scaler.'''
    def encode(self, mult: int, div: int, bypass: bool) -> FieldWrites:
        raise NotImplementedError

    def decode(self, port: RegisterPort, bypass: bool) -> Tuple[int, int]:
        raise NotImplementedError

# Reference scaler encodings: x1, x1/2, x1/4, x2.
REFCLK_SCALER = {(1, 1): 0, (1, 2): 1, (1, 4): 2, (2, 1): 3}
REFCLK_DECODE = {v: k for k, v in REFCLK_SCALER.items()}

class RefScaler(ScalerFields):
    def __init__(self, *fields: Tuple[int, int]):
        # Fields are most significant first.
        self.fields = fields

    def encode(self, mult: int, div: int, bypass: bool) -> FieldWrites:
        try:
            value = REFCLK_SCALER[mult, div]
        except KeyError:
            raise InvalidScaler(f'Reference scaler x{mult}/{div}') from None
        writes = []
        for address, mask in reversed(self.fields):
            width = (mask >> field_shift(mask)).bit_length()
            writes.append((address, mask, value & (1 << width) - 1))
            value >>= width
        writes.reverse()
        return writes

    def decode(self, port: RegisterPort, bypass: bool) -> Tuple[int, int]:
        value = 0
        for address, mask in self.fields:
            width = (mask >> field_shift(mask)).bit_length()
            value = value << width | port.read_field(address, mask)
        return REFCLK_DECODE[value]

class Pow2Scaler(ScalerFields):
    '''Divide by a power of two, field holds log2 of the divider.'''
    def __init__(self, address: int, mask: int, low: int, high: int):
        self.address, self.mask = address, mask
        self.low, self.high = low, high

    def encode(self, mult: int, div: int, bypass: bool) -> FieldWrites:
        if mult != 1 or not is_power_of_two(div) \
           or not self.low <= div <= self.high:
            raise InvalidScaler(f'Power of two divider x{mult}/{div}')
        return [(self.address, self.mask, ilog2(div))]

    def decode(self, port: RegisterPort, bypass: bool) -> Tuple[int, int]:
        return 1, 1 << port.read_field(self.address, self.mask)

class DivScaler(ScalerFields):
    '''Divide by 1 .. max_div, field holds divider - 1.'''
    def __init__(self, address: int, mask: int, max_div: int):
        self.address, self.mask, self.max_div = address, mask, max_div

    def encode(self, mult: int, div: int, bypass: bool) -> FieldWrites:
        if mult != 1 or not 1 <= div <= self.max_div:
            raise InvalidScaler(f'Divider x{mult}/{div}, max {self.max_div}')
        return [(self.address, self.mask, div - 1)]

    def decode(self, port: RegisterPort, bypass: bool) -> Tuple[int, int]:
        return 1, port.read_field(self.address, self.mask) + 1

class SampleScaler(ScalerFields):
    '''FIR stage: divide by 1, 2 or 4.  The field is 0 with the FIR bypassed,
    otherwise log2(div) + 1.'''
    def __init__(self, address: int, mask: int):
        self.address, self.mask = address, mask

    def encode(self, mult: int, div: int, bypass: bool) -> FieldWrites:
        if mult != 1 or div not in (1, 2, 4):
            raise InvalidScaler(f'FIR divider x{mult}/{div}')
        if bypass and div != 1:
            raise InvalidScaler(f'FIR divider {div} with the FIR bypassed')
        value = 0 if bypass else ilog2(div) + 1
        return [(self.address, self.mask, value)]

    def decode(self, port: RegisterPort, bypass: bool) -> Tuple[int, int]:
        value = port.read_field(self.address, self.mask)
        return 1, 1 if value == 0 else 1 << value - 1

SCALERS: dict[ClockSource, ScalerFields] = {
    CS.BB_REFCLK: RefScaler((REG_CLOCK_CTRL, REF_FREQ_SCALER)),
    CS.RX_REFCLK: RefScaler((REG_REF_DIVIDE_CONFIG_1, RX_REF_DIVIDER_MSB),
                            (REG_REF_DIVIDE_CONFIG_2, RX_REF_DIVIDER_LSB)),
    CS.TX_REFCLK: RefScaler((REG_REF_DIVIDE_CONFIG_2, TX_REF_DIVIDER)),
    CS.ADC: Pow2Scaler(REG_BBPLL, BBPLL_DIVIDER, 2, 64),
    CS.R2: DivScaler(REG_RX_ENABLE_FILTER_CTRL, DEC3_ENABLE_DECIMATION, 3),
    CS.R1: DivScaler(REG_RX_ENABLE_FILTER_CTRL, RHB2_EN, 2),
    CS.CLKRF: DivScaler(REG_RX_ENABLE_FILTER_CTRL, RHB1_EN, 2),
    CS.RX_SAMPL: SampleScaler(REG_RX_ENABLE_FILTER_CTRL,
                              RX_FIR_ENABLE_DECIMATION),
    CS.DAC: DivScaler(REG_BBPLL, DAC_CLK_DIV2, 2),
    CS.T2: DivScaler(REG_TX_ENABLE_FILTER_CTRL, THB3_ENABLE_INTERP, 3),
    CS.T1: DivScaler(REG_TX_ENABLE_FILTER_CTRL, THB2_EN, 2),
    CS.CLKTF: DivScaler(REG_TX_ENABLE_FILTER_CTRL, THB1_EN, 2),
    CS.TX_SAMPL: SampleScaler(REG_TX_ENABLE_FILTER_CTRL,
                              TX_FIR_ENABLE_INTERPOLATION),
}

class ClockNode:
    '''One node of the tree.  Rates passed in and out are in the node's own
    encoding; the parent rate comes from the tree's cache.'''
    source: ClockSource

    def round_rate(self, rate: int, parent_rate: int) -> int:
        raise NotImplementedError

    def set_rate(self, rate: int, parent_rate: int) -> int:
        '''Program the node and return the rate actually achieved.'''
        raise NotImplementedError

    def recalc_rate(self, parent_rate: int) -> int:
        '''Read the node back from the chip.'''
        raise NotImplementedError

class FactorClock(ClockNode):
    def __init__(self, tree: ClockTree, source: ClockSource):
        self.tree = tree
        self.source = source
        self.fields = SCALERS[source]
        self.scaler = ClockScaler(source, PARENTS[source])

    def bypass(self) -> bool:
        if self.source == CS.RX_SAMPL:
            return self.tree.bypass_rx_fir
        if self.source == CS.TX_SAMPL:
            return self.tree.bypass_tx_fir
        return False

    def muldiv(self, rate: int, parent_rate: int) -> Tuple[int, int]:
        if rate <= 0:
            raise InvalidScaler(f'{self.source.name}: rate {rate}')
        if rate >= parent_rate:
            return div_round_closest(rate, parent_rate), 1
        return 1, max(div_round_closest(parent_rate, rate), 1)

    def round_rate(self, rate: int, parent_rate: int) -> int:
        mult, div = self.muldiv(rate, parent_rate)
        self.fields.encode(mult, div, self.bypass())
        return parent_rate * mult // div

    def set_rate(self, rate: int, parent_rate: int) -> int:
        mult, div = self.muldiv(rate, parent_rate)
        writes = self.fields.encode(mult, div, self.bypass())
        self.scaler.mult, self.scaler.div = mult, div
        log.debug('%s: rate %d: %s', self.source.name, rate, self.scaler)
        for address, mask, value in writes:
            self.tree.port.write_field(address, mask, value)
        return self.scaler.apply(parent_rate)

    def recalc_rate(self, parent_rate: int) -> int:
        self.scaler.mult, self.scaler.div = self.fields.decode(
            self.tree.port, self.bypass())
        return self.scaler.apply(parent_rate)

BBPLL_LOOP_FILTER = bytes((0x35, 0x5b, 0xe8))

def bbpll_words(rate: int, parent_rate: int) -> Tuple[int, int]:
    integer, rem = divmod(rate, parent_rate)
    fract = (rem * BBPLL_MODULUS + (parent_rate >> 1)) // parent_rate
    return integer, fract

def bbpll_freq(parent_rate: int, integer: int, fract: int) -> int:
    return parent_rate * integer + parent_rate * fract // BBPLL_MODULUS

def bbpll_cp_current(rate: int, parent_rate: int) -> int:
    '''Charge pump setting, 25µA/LSB with a 25µA offset.'''
    scaled = (rate >> 7) * 150
    scaled //= (parent_rate >> 7) * 32 + (scaled >> 1)
    return clamp(div_round_closest(scaled, 25) - 1, 1, 64)

class BbpllClock(ClockNode):
    source = CS.BBPLL

    def __init__(self, tree: ClockTree):
        self.tree = tree

    def round_rate(self, rate: int, parent_rate: int) -> int:
        if rate > MAX_BBPLL_FREQ:
            return MAX_BBPLL_FREQ
        if rate < MIN_BBPLL_FREQ:
            return MIN_BBPLL_FREQ
        return bbpll_freq(parent_rate, *bbpll_words(rate, parent_rate))

    def set_rate(self, rate: int, parent_rate: int) -> int:
        if not MIN_BBPLL_FREQ <= rate <= MAX_BBPLL_FREQ:
            raise InvalidRate(f'BBPLL rate {rate} out of range')
        port = self.tree.port
        icp = bbpll_cp_current(rate, parent_rate)
        integer, fract = bbpll_words(rate, parent_rate)
        log.debug('BBPLL: rate %d parent %d icp %d int %d fract %d',
                  rate, parent_rate, icp, integer, fract)

        port.write(REG_CP_CURRENT, icp)
        port.write_many(REG_LOOP_FILTER_3, BBPLL_LOOP_FILTER)
        # Calibration count 1024, calibration clock REFCLK/4.
        port.write(REG_VCO_CTRL,
                   FREQ_CAL_ENABLE | field_value(FREQ_CAL_COUNT_LENGTH, 3))
        port.write(REG_SDM_CTRL, 0x10)

        port.write(REG_INTEGER_BB_FREQ_WORD, integer)
        port.write(REG_FRACT_BB_FREQ_WORD_3, fract & 0xff)
        port.write(REG_FRACT_BB_FREQ_WORD_2, fract >> 8 & 0xff)
        port.write(REG_FRACT_BB_FREQ_WORD_1, fract >> 16 & 0xff)

        # Start and clear the BBPLL calibration.
        port.write(REG_SDM_CTRL_1, INIT_BB_FO_CAL | BBPLL_RESET_BAR)
        port.write(REG_SDM_CTRL_1, BBPLL_RESET_BAR)

        # Increase KV and phase margin.
        port.write(REG_VCO_PROGRAM_1, 0x86)
        port.write(REG_VCO_PROGRAM_2, 0x01)
        port.write(REG_VCO_PROGRAM_2, 0x05)

        port.check_cal_done(REG_CH_1_OVERFLOW, BBPLL_LOCK, 1)
        return bbpll_freq(parent_rate, integer, fract)

    def recalc_rate(self, parent_rate: int) -> int:
        buf = self.tree.port.read_many(REG_INTEGER_BB_FREQ_WORD, 4)
        fract = buf[3] << 16 | buf[2] << 8 | buf[1]
        return bbpll_freq(parent_rate, buf[0], fract)

class ClockTree:
    '''Enum indexed table of clock nodes and their cached rates.'''
    def __init__(self, port: RegisterPort, ext_ref: int):
        self.port = port
        self.bypass_rx_fir = True
        self.bypass_tx_fir = True
        self.rates = [0] * len(ClockSource)
        self.rates[CS.EXT_REF] = ext_ref
        self.nodes: dict[ClockSource, ClockNode] = {
            source: FactorClock(self, source) for source in SCALERS}
        self.nodes[CS.BBPLL] = BbpllClock(self)

    def install(self, node: ClockNode) -> None:
        self.nodes[node.source] = node

    def node(self, source: ClockSource) -> ClockNode:
        try:
            return self.nodes[source]
        except KeyError:
            raise InvalidParameter(f'No clock node for {source.name}') \
                from None

    def parent_rate(self, source: ClockSource) -> int:
        return self.rates[PARENTS[source]]

    def known_parent_rate(self, source: ClockSource) -> int:
        parent = PARENTS[source]
        rate = self.rates[parent]
        if rate == 0:
            raise InvalidClockChain(
                f'{source.name}: parent {parent.name} has no rate yet')
        return rate

    def get_rate(self, source: ClockSource) -> int:
        return self.rates[source]

    def set_ext_ref(self, rate: int) -> None:
        self.rates[CS.EXT_REF] = rate

    def round_rate(self, source: ClockSource, rate: int) -> int:
        return self.node(source).round_rate(rate,
                                           self.known_parent_rate(source))

    def set_rate(self, source: ClockSource, rate: int) -> int:
        node = self.node(source)
        achieved = node.set_rate(rate, self.known_parent_rate(source))
        self.rates[source] = achieved
        return achieved

    def recalc_rate(self, source: ClockSource) -> int:
        rate = self.node(source).recalc_rate(self.parent_rate(source))
        self.rates[source] = rate
        return rate

    def recalc_all(self) -> None:
        for source in ClockSource:
            if source != CS.EXT_REF and source in self.nodes:
                self.recalc_rate(source)

    def report(self) -> list[str]:
        return [f'{source.name:9} {self.rates[source]:>11}'
                for source in ClockSource]

def test_refclk_encoding() -> None:
    from .sim import SimulatedChip
    chip = SimulatedChip()
    tree = ClockTree(chip, 40 * MHz)
    assert tree.set_rate(CS.RX_REFCLK, 80 * MHz) == 80 * MHz
    assert chip.regs[REG_REF_DIVIDE_CONFIG_1] & RX_REF_DIVIDER_MSB
    assert chip.regs[REG_REF_DIVIDE_CONFIG_2] & RX_REF_DIVIDER_LSB
    assert tree.recalc_rate(CS.RX_REFCLK) == 80 * MHz
    assert tree.set_rate(CS.RX_REFCLK, 10 * MHz) == 10 * MHz
    assert tree.recalc_rate(CS.RX_REFCLK) == 10 * MHz
    assert tree.set_rate(CS.TX_REFCLK, 20 * MHz) == 20 * MHz
    assert tree.recalc_rate(CS.TX_REFCLK) == 20 * MHz

def test_scaler_legality() -> None:
    import pytest
    from .sim import SimulatedChip
    chip = SimulatedChip()
    tree = ClockTree(chip, 40 * MHz)
    tree.rates[CS.BBPLL] = 983_040_000
    tree.rates[CS.R2] = 122_880_000
    tree.rates[CS.CLKRF] = 61_440_000
    writes = len(chip.writes)
    with pytest.raises(InvalidScaler):
        # /3 is not a power of two.
        tree.set_rate(CS.ADC, 983_040_000 // 3)
    with pytest.raises(InvalidScaler):
        tree.set_rate(CS.R1, 122_880_000 // 3)
    with pytest.raises(InvalidScaler):
        tree.set_rate(CS.BB_REFCLK, 40 * MHz // 3)
    with pytest.raises(InvalidScaler):
        # FIR bypassed: the sample clock must equal its parent.
        tree.set_rate(CS.RX_SAMPL, 30_720_000)
    tree.bypass_rx_fir = False
    with pytest.raises(InvalidScaler):
        tree.set_rate(CS.RX_SAMPL, 61_440_000 // 3)
    assert len(chip.writes) == writes

def test_scaler_round_trip() -> None:
    from .sim import SimulatedChip
    chip = SimulatedChip()
    tree = ClockTree(chip, 40 * MHz)
    tree.bypass_rx_fir = False
    tree.bypass_tx_fir = False
    refs = [(CS.BB_REFCLK, 40 * MHz), (CS.RX_REFCLK, 80 * MHz),
            (CS.TX_REFCLK, 20 * MHz)]
    for source, target in refs:
        assert tree.set_rate(source, target) == target
        assert tree.recalc_rate(source) == target
    bbpll = tree.set_rate(CS.BBPLL, 983_040_000)
    # Fractional-N granularity is parent / modulus.
    assert abs(bbpll - 983_040_000) <= 40 * MHz // BBPLL_MODULUS + 1
    assert tree.recalc_rate(CS.BBPLL) == bbpll
    targets = [(CS.ADC, bbpll // 4), (CS.R2, bbpll // 8), (CS.R1, bbpll // 16),
               (CS.CLKRF, bbpll // 32), (CS.RX_SAMPL, bbpll // 64),
               (CS.DAC, bbpll // 8), (CS.T2, bbpll // 16),
               (CS.T1, bbpll // 32), (CS.CLKTF, bbpll // 32),
               (CS.TX_SAMPL, bbpll // 128)]
    for source, target in targets:
        achieved = tree.set_rate(source, target)
        assert achieved == target
        assert tree.recalc_rate(source) == achieved

def test_round_rate_writes_nothing() -> None:
    from .sim import SimulatedChip
    chip = SimulatedChip()
    tree = ClockTree(chip, 40 * MHz)
    tree.rates[CS.BB_REFCLK] = 40 * MHz
    assert tree.round_rate(CS.BBPLL, 2000 * MHz) == MAX_BBPLL_FREQ
    assert tree.round_rate(CS.BBPLL, 100 * MHz) == MIN_BBPLL_FREQ
    assert tree.round_rate(CS.BB_REFCLK, 20 * MHz) == 20 * MHz
    assert chip.writes == []

def test_bbpll_cp_current() -> None:
    assert bbpll_cp_current(1280 * MHz, 40 * MHz) == 1
    assert bbpll_cp_current(715 * MHz, 40 * MHz) >= 1

def test_unset_parent_rate() -> None:
    import pytest
    from .sim import SimulatedChip
    chip = SimulatedChip()
    tree = ClockTree(chip, 40 * MHz)
    with pytest.raises(InvalidClockChain):
        tree.set_rate(CS.BBPLL, 983_040_000)
    with pytest.raises(InvalidClockChain):
        tree.round_rate(CS.ADC, 245_760_000)
    assert chip.writes == []
