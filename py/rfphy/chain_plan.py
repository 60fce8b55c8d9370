from __future__ import annotations

# Baseband clock chain planning: from a sample rate to the BBPLL, ADC/DAC and
# half-band stage rates for both directions.

from .clock import ClockSource, ClockTree
from .errors import InvalidClockChain, InvalidRate
from .plan_constants import *
from .plan_tools import freq_to_str

import logging

from dataclasses import dataclass

log = logging.getLogger(__name__)

# Path clock indexes: BBPLL, ADC|DAC, stage 2, stage 1, stage 0, sample.
BBPLL_FREQ, ADC_FREQ, R2_FREQ, R1_FREQ, CLKRF_FREQ, RX_SAMPL_FREQ = range(6)
DAC_FREQ, T2_FREQ, T1_FREQ, CLKTF_FREQ, TX_SAMPL_FREQ = range(1, 6)

PathClocks = list[int]

# Rows of (ADC/sample ratio, stage 2, stage 1, stage 0 dividers).  Earlier
# rows give more oversampling.
CLK_DIVIDERS = (
    (12, 3, 2, 2),
    (8, 2, 2, 2),
    (6, 3, 1, 2),
    (4, 2, 2, 1),
    (3, 3, 1, 1),
    (2, 2, 1, 1),
    (1, 1, 1, 1),
)
MAX_GOVERNOR = len(CLK_DIVIDERS) - 1

RX_CHAIN = (ClockSource.ADC, ClockSource.R2, ClockSource.R1,
            ClockSource.CLKRF, ClockSource.RX_SAMPL)
TX_CHAIN = (ClockSource.DAC, ClockSource.T2, ClockSource.T1,
            ClockSource.CLKTF, ClockSource.TX_SAMPL)

@dataclass
class ChainPlan:
    rx: PathClocks
    tx: PathClocks
    # The governor the plan was actually found at.
    governor: int

def row_indexes(adc_rate: int, dac_rate: int, index: int) -> tuple[int, int]:
    '''Given a row whose ADC rate is legal, return the (RX row, TX row) pair.
    The TX row may be out of range.'''
    if dac_rate > adc_rate:
        ratio = -(dac_rate // adc_rate)
    else:
        ratio = adc_rate // dac_rate
    adjust = 0 if ratio == 1 else ratio

    if adc_rate <= MAX_DAC_CLK:
        return index, index - adjust
    if index == 4 and ratio >= 0:
        # 3/2 is not an integer, no TX row fits.
        return index, len(CLK_DIVIDERS)
    step = 1 if index == 5 and ratio >= 0 else 2
    return index, index + step - adjust

def calculate_clock_chain(sample_rate: int, governor: int = 0,
                          rx_decimation: int = 1, tx_interpolation: int = 1,
                          dual: bool = False,
                          rx_eq_2tx: bool = False) -> ChainPlan:
    '''Find RX and TX path clocks for the sample rate.  No register I/O.'''
    limit = MAX_SAMPLE_RATE_2R2T if dual else MAX_SAMPLE_RATE
    if sample_rate > limit:
        raise InvalidRate(f'Sample rate {freq_to_str(sample_rate)} above '
                          f'{freq_to_str(limit)}')
    if sample_rate <= 0:
        raise InvalidRate(f'Sample rate {sample_rate}')

    clktf = sample_rate * tx_interpolation
    clkrf = sample_rate * rx_decimation * (2 if rx_eq_2tx else 1)

    adc_rate = 0
    for gov in range(governor, MAX_GOVERNOR + 1):
        index_rx, index_tx = -1, -1
        for i in range(gov, len(CLK_DIVIDERS)):
            adc_rate = clkrf * CLK_DIVIDERS[i][0]
            dac_rate = clktf * CLK_DIVIDERS[i][0]
            if MIN_ADC_CLK <= adc_rate <= MAX_ADC_CLK:
                index_rx, index_tx = row_indexes(adc_rate, dac_rate, i)
                break
        if 0 <= index_rx <= MAX_GOVERNOR and 0 <= index_tx <= MAX_GOVERNOR:
            break
    else:
        reason = 'ADC clock below limit' if adc_rate < MIN_ADC_CLK \
            else 'BBPLL rate above limit'
        log.error('Failed to find suitable dividers: %s', reason)
        raise InvalidRate(f'No clock chain for {freq_to_str(sample_rate)}: '
                          f'{reason}')

    if adc_rate <= MAX_DAC_CLK:
        dac_rate = adc_rate
    else:
        dac_rate = adc_rate // 2

    div = MAX_BBPLL_DIV
    while True:
        bbpll_rate = adc_rate * div
        div >>= 1
        if bbpll_rate <= MAX_BBPLL_FREQ or div < MIN_BBPLL_DIV:
            break

    rx_row = CLK_DIVIDERS[index_rx]
    tx_row = CLK_DIVIDERS[index_tx]
    rx = [bbpll_rate, adc_rate]
    tx = [bbpll_rate, dac_rate]
    for stage in 1, 2, 3:
        rx.append(rx[-1] // rx_row[stage])
        tx.append(tx[-1] // tx_row[stage])
    rx.append(rx[-1] // rx_decimation)
    tx.append(tx[-1] // tx_interpolation)

    log.debug('Rate %d governor %d rows %d/%d: RX %s TX %s', sample_rate,
              gov, index_rx, index_tx, rx, tx)
    return ChainPlan(rx, tx, gov)

def validate_clock_chain(rx: PathClocks, dual: bool) -> None:
    '''One of the RX clocks from the ADC to stage 0 must equal the data
    clock.'''
    data_clk = (4 if dual else 2) * rx[RX_SAMPL_FREQ]
    for clk in rx[ADC_FREQ:RX_SAMPL_FREQ]:
        if abs(clk - data_clk) < DATA_CLK_TOLERANCE:
            return
    log.error('At least one clock rate must equal the data clock %d',
              data_clk)
    raise InvalidClockChain(
        f'No RX path clock equals the data clock {freq_to_str(data_clk)}')

def set_trx_clock_chain(tree: ClockTree, rx: PathClocks, tx: PathClocks,
                        dual: bool) -> None:
    '''Program the BBPLL then each RX / TX stage pair in order.'''
    if len(rx) != 6 or len(tx) != 6:
        raise InvalidClockChain('Path clocks need 6 entries')
    log.debug('RX path clocks %s', rx)
    log.debug('TX path clocks %s', tx)
    validate_clock_chain(rx, dual)

    tree.set_rate(ClockSource.BBPLL, rx[BBPLL_FREQ])
    for rx_source, tx_source, rx_rate, tx_rate in zip(
            RX_CHAIN, TX_CHAIN, rx[ADC_FREQ:], tx[DAC_FREQ:]):
        tree.set_rate(rx_source, rx_rate)
        tree.set_rate(tx_source, tx_rate)

def get_trx_clock_chain(tree: ClockTree) -> tuple[PathClocks, PathClocks]:
    bbpll = tree.get_rate(ClockSource.BBPLL)
    rx = [bbpll] + [tree.get_rate(s) for s in RX_CHAIN]
    tx = [bbpll] + [tree.get_rate(s) for s in TX_CHAIN]
    return rx, tx

RX_NAMES = 'BBPLL', 'ADC', 'R2', 'R1', 'CLKRF', 'RX sample'
TX_NAMES = 'BBPLL', 'DAC', 'T2', 'T1', 'CLKTF', 'TX sample'

def report_chain(rx: PathClocks, tx: PathClocks) -> None:
    for rx_name, rx_rate, tx_name, tx_rate in zip(
            RX_NAMES, rx, TX_NAMES, tx):
        print(f'{rx_name:10} {freq_to_str(rx_rate):18} '
              f'{tx_name:10} {freq_to_str(tx_rate)}')

def test_solver_single_sweep() -> None:
    rates = list(range(2_100_000, MAX_SAMPLE_RATE, 997_331))
    rates += [2_500_000, 30_720_000, 61_440_000, MAX_SAMPLE_RATE]
    for rate in rates:
        plan = calculate_clock_chain(rate)
        assert plan.governor == 0, rate
        assert MIN_ADC_CLK <= plan.rx[ADC_FREQ] <= MAX_ADC_CLK
        assert MIN_BBPLL_FREQ <= plan.rx[BBPLL_FREQ] <= MAX_BBPLL_FREQ
        assert plan.rx[RX_SAMPL_FREQ] == rate
        assert plan.tx[TX_SAMPL_FREQ] == rate
        validate_clock_chain(plan.rx, False)

def test_solver_dual_sweep() -> None:
    rates = list(range(2_100_000, MAX_SAMPLE_RATE_2R2T, 1_234_567))
    rates += [MAX_SAMPLE_RATE_2R2T]
    for rate in rates:
        plan = calculate_clock_chain(rate, dual=True)
        assert plan.governor == 0, rate
        assert MIN_ADC_CLK <= plan.rx[ADC_FREQ] <= MAX_ADC_CLK
        assert plan.tx[TX_SAMPL_FREQ] == rate
        validate_clock_chain(plan.rx, True)

def test_solver_known_chain() -> None:
    plan = calculate_clock_chain(30_720_000)
    assert plan.rx == [737_280_000, 368_640_000, 122_880_000,
                       61_440_000, 30_720_000, 30_720_000]
    assert plan.tx == [737_280_000, 184_320_000, 61_440_000,
                       61_440_000, 30_720_000, 30_720_000]
    # Governor 1 starts at the second row.
    plan = calculate_clock_chain(30_720_000, governor=1)
    assert plan.rx[ADC_FREQ] == 245_760_000

def test_solver_rejects() -> None:
    import pytest
    with pytest.raises(InvalidRate):
        calculate_clock_chain(MAX_SAMPLE_RATE + 1)
    with pytest.raises(InvalidRate):
        calculate_clock_chain(MAX_SAMPLE_RATE_2R2T + 1, dual=True)
    with pytest.raises(InvalidRate):
        calculate_clock_chain(1_000_000)

def test_validate_chain() -> None:
    import pytest
    validate_clock_chain([0, 245_760_000, 122_880_000, 61_440_000,
                          30_720_000, 30_720_000], True)
    # Within tolerance.
    validate_clock_chain([0, 61_440_003, 0, 0, 0, 30_720_000], False)
    with pytest.raises(InvalidClockChain):
        validate_clock_chain([0, 92_160_000, 30_720_000, 30_720_000,
                              30_720_000, 30_720_000], False)

def test_set_trx_clock_chain() -> None:
    from .sim import SimulatedChip
    chip = SimulatedChip()
    tree = ClockTree(chip, 40 * MHz)
    tree.set_rate(ClockSource.BB_REFCLK, 40 * MHz)
    plan = calculate_clock_chain(30_720_000, dual=True)
    set_trx_clock_chain(tree, plan.rx, plan.tx, True)
    rx, tx = get_trx_clock_chain(tree)
    assert rx[RX_SAMPL_FREQ] == 30_720_000
    assert tx[TX_SAMPL_FREQ] == 30_720_000
    assert abs(rx[BBPLL_FREQ] - plan.rx[BBPLL_FREQ]) < 20
    # Read back from the registers.
    tree.recalc_all()
    assert get_trx_clock_chain(tree) == (rx, tx)

def test_set_trx_clock_chain_rejects_before_writes() -> None:
    import pytest
    from .sim import SimulatedChip
    chip = SimulatedChip()
    tree = ClockTree(chip, 40 * MHz)
    plan = calculate_clock_chain(100_000_000)
    with pytest.raises(InvalidClockChain):
        set_trx_clock_chain(tree, plan.rx, plan.tx, True)
    assert chip.writes == []
