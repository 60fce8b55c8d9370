from .plan_constants import GHz, Hz, MHz, kHz

from fractions import Fraction

def div_round_closest(n: int, d: int) -> int:
    return (n + d // 2) // d

def div_round_up(n: int, d: int) -> int:
    return -(-n // d)

def clamp(x: int, low: int, high: int) -> int:
    return max(low, min(x, high))

def ilog2(x: int) -> int:
    assert x > 0
    return x.bit_length() - 1

def is_power_of_two(x: int) -> bool:
    return x > 0 and x & (x - 1) == 0

def to_clk(freq: int) -> int:
    '''Carrier frequencies are held halved so that they fit in 32 bits.'''
    return freq >> 1

def from_clk(clk: int) -> int:
    return clk << 1

def str_to_freq(s: str) -> int:
    '''Parse a frequency with an optional unit suffix, defaulting to MHz.
    Returns Hz, rounded to the nearest integer.'''
    s = s.lower().strip()
    for suffix, scale in ('khz', kHz), ('mhz', MHz), ('ghz', GHz), ('hz', Hz):
        if s.endswith(suffix):
            break
        if suffix != 'hz' and s.endswith(suffix[0]):
            suffix = suffix[0]
            break
    else:
        suffix = ''
        scale = MHz

    return round(Fraction(s.removesuffix(suffix).strip()) * scale)

# Set the name of str_to_freq to give sensible argparse help test.
str_to_freq.__name__ = 'frequency'

def freq_to_str(freq: int) -> str:
    if freq >= GHz:
        scale, suffix = GHz, 'GHz'
    elif freq >= MHz:
        scale, suffix = MHz, 'MHz'
    elif freq >= kHz:
        scale, suffix = kHz, 'kHz'
    else:
        return f'{freq} Hz'
    whole, part = divmod(freq, scale)
    if part == 0:
        return f'{whole} {suffix}'
    digits = len(str(scale)) - 1
    return f'{whole}.{part:0{digits}d}'.rstrip('0') + f' {suffix}'

def test_str_to_freq() -> None:
    assert str_to_freq('30.72') == 30_720_000
    assert str_to_freq('2.4G') == 2_400_000_000
    assert str_to_freq('2400mhz') == 2_400_000_000
    assert str_to_freq('125k') == 125_000
    assert str_to_freq('17hz') == 17
    assert str_to_freq('1/3') == 333333

def test_freq_to_str() -> None:
    assert freq_to_str(30_720_000) == '30.72 MHz'
    assert freq_to_str(2_400_000_000) == '2.4 GHz'
    assert freq_to_str(737_280_005) == '737.280005 MHz'
    assert freq_to_str(12) == '12 Hz'

def test_clk_encoding() -> None:
    assert to_clk(6_000_000_000) == 3_000_000_000
    assert from_clk(to_clk(6_000_000_000)) == 6_000_000_000
    # Odd frequencies lose their last Hz.
    assert from_clk(to_clk(5_000_000_001)) == 5_000_000_000
    assert to_clk(6_000_000_000) < 1 << 32

def test_rounding() -> None:
    assert div_round_closest(7, 2) == 4
    assert div_round_closest(5, 3) == 2
    assert div_round_up(7, 2) == 4
    assert div_round_up(8, 2) == 4
    assert ilog2(64) == 6
    assert is_power_of_two(32) and not is_power_of_two(12)
