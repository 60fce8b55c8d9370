from __future__ import annotations

from .errors import InvalidParameter
from .plan_constants import MAX_SYNTH_FREF, MHz
from .plan_tools import str_to_freq

import configparser
import dataclasses
import logging

from dataclasses import dataclass, field

log = logging.getLogger(__name__)

@dataclass
class PlatformData:
    '''Board level settings for one transceiver.'''
    ref_clk: int = 40 * MHz
    use_extclk: bool = False

    fdd: bool = True
    fdd_independent_mode: bool = False
    rx2tx2: bool = True

    # Either a sample rate for the chain solver, or explicit path clocks
    # {BBPLL, ADC|DAC, stage 2, stage 1, stage 0, sample}.
    sample_rate: int = 30_720_000
    rx_path_clks: list[int]|None = None
    tx_path_clks: list[int]|None = None
    rate_governor: int = 1
    bypass_rx_fir: bool = True
    bypass_tx_fir: bool = True
    rx_fir_dec: int = 1
    tx_fir_int: int = 1

    rx_synth_freq: int = 2_400_000_000
    tx_synth_freq: int = 2_450_000_000
    rf_rx_bandwidth: int = 18 * MHz
    rf_tx_bandwidth: int = 18 * MHz
    trx_synth_max_fref: int = MAX_SYNTH_FREF
    use_ext_rx_lo: bool = False
    use_ext_tx_lo: bool = False

    split_gt: bool = False
    tdd_use_dual_synth: bool = False
    tdd_skip_vco_cal: bool = False
    tdd_use_fdd_tables: bool = False

    ensm_pin_pulse_mode: bool = False
    ensm_pin_ctrl: bool = False

    rf_dc_offset_count_high: int = 0x28
    rf_dc_offset_count_low: int = 0x32
    dc_offset_attenuation_high: int = 6
    dc_offset_attenuation_low: int = 5
    dc_offset_update_events: int = 5
    qec_tracking_slow_mode_en: bool = False
    rx1rx2_phase_inversion_en: bool = False

    pp_conf: list[int] = field(default_factory=lambda: [0x00, 0x00, 0x00])
    rx_clk_data_delay: int = 0
    tx_clk_data_delay: int = 0
    dig_interface_tune_skipmode: int = 0

    rx_fastlock_delay_ns: int = 0
    tx_fastlock_delay_ns: int = 0
    rx_fastlock_pinctrl_en: bool = False
    tx_fastlock_pinctrl_en: bool = False

    def rx_decimation(self) -> int:
        return 1 if self.bypass_rx_fir else self.rx_fir_dec

    def tx_interpolation(self) -> int:
        return 1 if self.bypass_tx_fir else self.tx_fir_int

# Integer fields given in the frequency syntax (default unit MHz).
FREQ_FIELDS = {
    'ref_clk', 'sample_rate', 'rx_path_clks', 'tx_path_clks',
    'rx_synth_freq', 'tx_synth_freq', 'rf_rx_bandwidth', 'rf_tx_bandwidth',
    'trx_synth_max_fref'}

def parse_value(name: str, kind: str, text: str,
                section: configparser.SectionProxy) -> object:
    if kind == 'bool':
        return section.getboolean(name)
    if kind.startswith('list[int]'):
        items = text.replace(',', ' ').split()
        if name in FREQ_FIELDS:
            return [str_to_freq(s) for s in items]
        return [int(s, 0) for s in items]
    if name in FREQ_FIELDS:
        return str_to_freq(text)
    return int(text, 0)

def read_platform_file(path: str, section: str = 'platform') -> PlatformData:
    '''Load PlatformData from the given section of an INI file.  Keys are the
    PlatformData field names; missing keys keep their defaults.'''
    config = configparser.ConfigParser()
    if not config.read((path,)):
        raise FileNotFoundError(path)
    return platform_from_config(config, section)

def platform_from_config(config: configparser.ConfigParser,
                         section: str = 'platform') -> PlatformData:
    if not config.has_section(section):
        raise InvalidParameter(f'No [{section}] section')
    kinds = {f.name: str(f.type) for f in dataclasses.fields(PlatformData)}
    values = config[section]
    settings = {}
    for name, text in values.items():
        if name not in kinds:
            raise InvalidParameter(f'Unknown platform setting {name}')
        try:
            settings[name] = parse_value(name, kinds[name], text, values)
        except ValueError as e:
            raise InvalidParameter(f'Bad value for {name}: {text}') from e
    pdata = PlatformData(**settings)
    for name in 'rx_path_clks', 'tx_path_clks':
        clks = getattr(pdata, name)
        if clks is not None and len(clks) != 6:
            raise InvalidParameter(f'{name} needs 6 entries')
    if len(pdata.pp_conf) != 3:
        raise InvalidParameter('pp_conf needs 3 bytes')
    log.debug('Platform: %s', pdata)
    return pdata

def test_platform_from_config() -> None:
    config = configparser.ConfigParser()
    config.read_string('''
[platform]
ref_clk = 40
fdd = no
sample_rate = 61.44
rx_synth_freq = 2.4G
pp_conf = 0x10, 0x00, 0x1e
rf_dc_offset_count_low = 0x30
''')
    pdata = platform_from_config(config)
    assert pdata.ref_clk == 40_000_000
    assert not pdata.fdd
    assert pdata.sample_rate == 61_440_000
    assert pdata.rx_synth_freq == 2_400_000_000
    assert pdata.pp_conf == [0x10, 0x00, 0x1e]
    assert pdata.rf_dc_offset_count_low == 0x30
    assert pdata.tx_synth_freq == 2_450_000_000

def test_platform_path_clks() -> None:
    config = configparser.ConfigParser()
    config.read_string('''
[platform]
rx_path_clks = 983.04, 245.76, 122.88, 61.44, 30.72, 30.72
''')
    pdata = platform_from_config(config)
    assert pdata.rx_path_clks == [983_040_000, 245_760_000, 122_880_000,
                                  61_440_000, 30_720_000, 30_720_000]

def test_platform_rejects_unknown() -> None:
    import pytest
    config = configparser.ConfigParser()
    config.read_string('[platform]\nwarp_drive = 9\n')
    with pytest.raises(InvalidParameter):
        platform_from_config(config)
    config = configparser.ConfigParser()
    config.read_string('[platform]\nrx_path_clks = 1, 2, 3\n')
    with pytest.raises(InvalidParameter):
        platform_from_config(config)
