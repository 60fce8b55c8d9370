from __future__ import annotations

# Table data: VCO tuning profiles for the RF synthesizers, and the RX gain
# tables.  The data itself is supplied in INI files; this module loads it and
# programs the gain table into the chip.

from .errors import InvalidParameter
from .plan_constants import GAIN_BAND_MID_EDGE, GAIN_BAND_LOW_EDGE, MHz
from .regs import *

import configparser
import logging

from dataclasses import dataclass, field, fields
from enum import IntEnum
from typing import Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from .phy import Phy

log = logging.getLogger(__name__)

class GainBand(IntEnum):
    BAND_200_1300 = 0
    BAND_1300_4000 = 1
    BAND_4000_6000 = 2

def gain_band(freq: int) -> GainBand:
    if freq <= GAIN_BAND_LOW_EDGE:
        return GainBand.BAND_200_1300
    if freq <= GAIN_BAND_MID_EDGE:
        return GainBand.BAND_1300_4000
    return GainBand.BAND_4000_6000

class RefRange(IntEnum):
    '''Synthesizer reference frequency ranges with their own VCO tables.'''
    REF_40 = 0
    REF_60 = 1
    REF_80 = 2

def vco_table_index(ref_clk: int) -> RefRange:
    if ref_clk < 50 * MHz:
        return RefRange.REF_40
    if ref_clk <= 70 * MHz:
        return RefRange.REF_60
    return RefRange.REF_80

@dataclass(frozen=True)
class SynthLutRow:
    vco_mhz: int
    vco_output_level: int
    vco_varactor: int
    vco_bias_ref: int
    vco_bias_tcf: int
    vco_cal_offset: int
    vco_varactor_reference: int
    charge_pump_current: int
    lf_c2: int
    lf_c1: int
    lf_r1: int
    lf_c3: int
    lf_r3: int

SYNTH_LUT_COLUMNS = len(fields(SynthLutRow))

@dataclass
class SynthLut:
    '''VCO tables keyed by (fdd, reference range); rows in descending VCO
    frequency.'''
    tables: dict[Tuple[bool, RefRange], list[SynthLutRow]] = \
        field(default_factory=dict)

    def table(self, fdd: bool, ref_range: RefRange) -> list[SynthLutRow]:
        try:
            return self.tables[fdd, ref_range]
        except KeyError:
            raise InvalidParameter(
                f'No {"FDD" if fdd else "TDD"} VCO table for '
                f'{ref_range.name}') from None

    def select(self, fdd: bool, ref_clk: int, vco_freq: int) -> SynthLutRow:
        '''First row whose VCO frequency is not above vco_freq; the last row
        if every row is above it.'''
        rows = self.table(fdd, vco_table_index(ref_clk))
        vco_mhz = vco_freq // MHz
        for row in rows:
            if row.vco_mhz <= vco_mhz:
                return row
        return rows[-1]

GainRow = Tuple[int, int, int]

@dataclass
class GainTables:
    '''RX gain tables: full and split variants, one per gain band.  Each row
    is (LNA/mixer word, TIA/LPF word, DC cal/digital gain word).'''
    full: dict[GainBand, list[GainRow]] = field(default_factory=dict)
    split: dict[GainBand, list[GainRow]] = field(default_factory=dict)

    def table(self, split: bool, band: GainBand) -> list[GainRow]:
        tables = self.split if split else self.full
        try:
            return tables[band]
        except KeyError:
            raise InvalidParameter(
                f'No {"split" if split else "full"} gain table for '
                f'{band.name}') from None

def int_list(text: str) -> list[int]:
    return [int(s, 0) for s in text.replace(',', ' ').split()]

LUT_SECTIONS = {
    f'{mode}_{ref}': (mode == 'fdd', RefRange[f'REF_{ref}'])
    for mode in ('fdd', 'tdd') for ref in ('40', '60', '80')}

def read_synth_lut_file(path: str) -> SynthLut:
    '''Sections fdd_40 ... tdd_80, one key per row holding the columns of
    SynthLutRow in order.'''
    config = configparser.ConfigParser()
    if not config.read((path,)):
        raise FileNotFoundError(path)
    lut = SynthLut()
    for name in config.sections():
        if name not in LUT_SECTIONS:
            raise InvalidParameter(f'Unknown VCO table section [{name}]')
        rows = []
        for key, text in config[name].items():
            values = int_list(text)
            if len(values) != SYNTH_LUT_COLUMNS:
                raise InvalidParameter(
                    f'[{name}] {key}: expected {SYNTH_LUT_COLUMNS} values')
            rows.append(SynthLutRow(*values))
        rows.sort(key=lambda r: r.vco_mhz, reverse=True)
        lut.tables[LUT_SECTIONS[name]] = rows
        log.debug('VCO table %s: %d rows', name, len(rows))
    return lut

GAIN_SECTIONS = {
    f'{kind}_{band.name.removeprefix("BAND_").lower()}': (kind, band)
    for kind in ('full', 'split') for band in GainBand}

def read_gain_table_file(path: str) -> GainTables:
    '''Sections full_200_1300 ... split_4000_6000; rows are taken in key
    order, three values each.'''
    config = configparser.ConfigParser()
    if not config.read((path,)):
        raise FileNotFoundError(path)
    tables = GainTables()
    for name in config.sections():
        if name not in GAIN_SECTIONS:
            raise InvalidParameter(f'Unknown gain table section [{name}]')
        kind, band = GAIN_SECTIONS[name]
        rows: list[GainRow] = []
        for key, text in config[name].items():
            values = int_list(text)
            if len(values) != 3:
                raise InvalidParameter(f'[{name}] {key}: expected 3 values')
            rows.append((values[0], values[1], values[2]))
        getattr(tables, kind)[band] = rows
    return tables

def load_gt(phy: Phy, freq: int, dest: int) -> None:
    '''Program the gain table for the band containing freq into the given
    receivers, unless that band is already loaded.'''
    band = gain_band(freq)
    log.debug('Gain table: frequency %d band %s', freq, band.name)
    if phy.ctx.current_table == band:
        return

    port = phy.port
    split = phy.pdata.split_gt
    table = phy.gain_tables.table(split, band)

    port.write_field(REG_AGC_CONFIG_2, AGC_USE_FULL_GAIN_TABLE, not split)
    select = field_value(RECEIVER_SELECT, dest)
    port.write(REG_GAIN_TABLE_CONFIG, START_GAIN_TABLE_CLOCK | select)
    for index, (lna, tia, dig) in enumerate(table):
        port.write(REG_GAIN_TABLE_ADDRESS, index)
        port.write(REG_GAIN_TABLE_WRITE_DATA1, lna)
        port.write(REG_GAIN_TABLE_WRITE_DATA2, tia)
        port.write(REG_GAIN_TABLE_WRITE_DATA3, dig)
        port.write(REG_GAIN_TABLE_CONFIG,
                   START_GAIN_TABLE_CLOCK | WRITE_GAIN_TABLE | select)
        # Dummy writes for delay.
        port.write(REG_GAIN_TABLE_READ_DATA1, 0)
        port.write(REG_GAIN_TABLE_READ_DATA1, 0)

    port.write(REG_GAIN_TABLE_CONFIG, START_GAIN_TABLE_CLOCK | select)
    port.write(REG_GAIN_TABLE_READ_DATA1, 0)
    port.write(REG_GAIN_TABLE_READ_DATA1, 0)
    port.write(REG_GAIN_TABLE_CONFIG, 0)

    phy.ctx.current_table = band

def test_gain_band() -> None:
    assert gain_band(70_000_000) == GainBand.BAND_200_1300
    assert gain_band(1_300_000_000) == GainBand.BAND_200_1300
    assert gain_band(1_300_000_001) == GainBand.BAND_1300_4000
    assert gain_band(4_000_000_000) == GainBand.BAND_1300_4000
    assert gain_band(5_800_000_000) == GainBand.BAND_4000_6000

def test_vco_table_index() -> None:
    assert vco_table_index(40 * MHz) == RefRange.REF_40
    assert vco_table_index(50 * MHz) == RefRange.REF_60
    assert vco_table_index(70 * MHz) == RefRange.REF_60
    assert vco_table_index(80 * MHz) == RefRange.REF_80

def test_synth_lut_file(tmp_path) -> None:
    path = tmp_path / 'lut.ini'
    path.write_text('''
[fdd_40]
r0 = 12000, 13, 10, 0, 1, 9, 10, 12, 14, 12, 14, 12, 12
r1 = 6000, 10, 1, 4, 0, 0, 1, 15, 14, 12, 14, 12, 12
r2 = 9000, 12, 5, 2, 1, 7, 4, 14, 14, 12, 14, 12, 12
''')
    lut = read_synth_lut_file(str(path))
    rows = lut.table(True, RefRange.REF_40)
    assert [r.vco_mhz for r in rows] == [12000, 9000, 6000]
    assert lut.select(True, 40 * MHz, 9_500_000_000).vco_mhz == 9000
    assert lut.select(True, 40 * MHz, 12_000_000_000).vco_mhz == 12000
    # Below every row: the last row.
    assert lut.select(True, 40 * MHz, 5_000_000_000).vco_mhz == 6000

def test_gain_table_file(tmp_path) -> None:
    path = tmp_path / 'gt.ini'
    path.write_text('''
[full_1300_4000]
0 = 0x00, 0x00, 0x20
1 = 0x00, 0x20, 0x00
[split_200_1300]
0 = 0x00, 0x18, 0x20
''')
    tables = read_gain_table_file(str(path))
    assert tables.table(False, GainBand.BAND_1300_4000)[1] == (0, 0x20, 0)
    assert len(tables.table(True, GainBand.BAND_200_1300)) == 1
