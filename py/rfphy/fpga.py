from __future__ import annotations

# Companion FPGA (AXI ADC/DAC cores) registers used for interface tuning.

# Non-zero on the second core of a multi-chip setup.
ADI_REG_ID = 0x0004

ADI_REG_STATUS = 0x005c
ADI_STATUS = 0x01

ADI_REG_CNTRL = 0x0044
ADI_R1_MODE = 0x04

ADI_REG_DAC_VERSION = 0x4000
ADI_REG_DAC_CNTRL_SYNC = 0x4044
ADI_REG_DAC_CNTRL_2 = 0x4048
ADI_DAC_R1_MODE = 0x20
ADI_REG_DAC_RATECNTRL = 0x404c

ADI_ENABLE = 0x001
ADI_FORMAT_ENABLE = 0x004
ADI_FORMAT_SIGNEXT = 0x040
ADI_IQCOR_ENB = 0x200
CHAN_DEFAULT = ADI_FORMAT_SIGNEXT | ADI_FORMAT_ENABLE | ADI_ENABLE \
    | ADI_IQCOR_ENB

ADI_PN_OOS = 0x02
ADI_PN_ERR = 0x04

ADC_PN_SEL = 0xf0000
ADC_PN9 = 0
ADC_PN23A = 1
ADC_PN_CUSTOM = 9

DAC_DATA_SEL_DDS = 0
DAC_DATA_SEL_LOOPBACK = 8
DAC_DATA_SEL_PN = 9
DAC_LB_ENB = 0x02

MAX_TUNE_CHANNELS = 4

def chan_cntrl(chan: int) -> int:
    return 0x0400 + chan * 0x40

def chan_status(chan: int) -> int:
    return 0x0404 + chan * 0x40

def chan_cntrl_1(chan: int) -> int:
    return 0x0410 + chan * 0x40

def chan_cntrl_2(chan: int) -> int:
    return 0x0414 + chan * 0x40

def chan_cntrl_3(chan: int) -> int:
    return 0x0418 + chan * 0x40

def dac_chan_cntrl_7(chan: int) -> int:
    '''DAC data select register on cores with major version > 7.'''
    return 0x4418 + chan * 0x40

def dac_chan_cntrl_6(chan: int) -> int:
    '''DAC loopback control on cores with major version <= 7.'''
    return 0x4414 + chan * 0x40

def pcore_version_major(version: int) -> int:
    return version >> 16

class FpgaPort:
    '''32-bit register access to the FPGA cores behind the chip.'''
    num_channels: int = 4

    def read32(self, address: int) -> int:
        raise NotImplementedError

    def write32(self, address: int, value: int) -> None:
        raise NotImplementedError

    def dac_version_major(self) -> int:
        return pcore_version_major(self.read32(ADI_REG_DAC_VERSION))

    def tune_channels(self) -> int:
        return min(self.num_channels, MAX_TUNE_CHANNELS)

    def set_pnsel(self, chan: int, sel: int) -> None:
        reg = self.read32(chan_cntrl_3(chan))
        reg = reg & ~ADC_PN_SEL | sel << 16 & ADC_PN_SEL
        self.write32(chan_cntrl_3(chan), reg)

    def hdl_loopback(self, enable: bool) -> None:
        '''Loop received data back into the DAC core.'''
        new_layout = self.dac_version_major() > 7
        for chan in range(self.num_channels):
            if new_layout:
                addr = dac_chan_cntrl_7(chan)
                reg = DAC_DATA_SEL_LOOPBACK if enable else DAC_DATA_SEL_DDS
            else:
                addr = dac_chan_cntrl_6(chan)
                reg = self.read32(addr)
                reg = reg | DAC_LB_ENB if enable else reg & ~DAC_LB_ENB
            self.write32(addr, reg)

    def channel_errors(self) -> int:
        '''OR of PN error / out-of-sync flags across the tuned channels.'''
        result = 0
        for chan in range(self.tune_channels()):
            result |= self.read32(chan_status(chan))
        return result

    def clear_channel_errors(self) -> None:
        for chan in range(self.tune_channels()):
            self.write32(chan_status(chan), ADI_PN_ERR | ADI_PN_OOS)
