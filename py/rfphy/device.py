from __future__ import annotations

from . import message
from .config import PlatformData
from .fpga import FpgaPort
from .lut import GainTables, SynthLut
from .message import UsbFpgaPort, UsbGpio, UsbRegisterPort
from .phy import Phy
from .port import GpioPort, RegisterPort
from .sim import SimulatedChip, SimulatedFpga, SimulatedGpio

import argparse, sys
import usb.core # pyright: ignore

from usb.core import Device as USBDevice # pyright: ignore

PRODUCT = 'RF Bridge'

class Device:
    '''Lazily opened connection to one bridge, or to the simulated chip with
    --sim.'''
    args: argparse.Namespace | None

    usb: USBDevice | None = None
    port: RegisterPort | None = None
    fpga: FpgaPort | None = None
    gpio: GpioPort | None = None

    def __init__(self, args: argparse.Namespace|None = None):
        self.args = args

    def simulated(self) -> bool:
        return bool(self.args and getattr(self.args, 'sim', False))

    def get_usb(self) -> USBDevice:
        if self.usb is not None:
            return self.usb

        opts = {}
        if self.args and self.args.name:
            opts['serial_number'] = self.args.name
        gen = usb.core.find(True, product=PRODUCT, **opts)
        u = list(gen) # type: ignore
        if len(u) == 0:
            print('No RF bridge USB device found', file=sys.stderr)
            sys.exit(1)
        if len(u) > 1:
            print('Multiple RF bridge USB devices found.', file=sys.stderr)
            print('You may select one with the --name option.',
                  file=sys.stderr)
            print('Available names are:', file=sys.stderr)
            for d in u:
                print(f'    {d.serial_number}', file=sys.stderr)
            sys.exit(1)
        assert isinstance(u[0], USBDevice)
        self.usb = u[0]
        # Flush any stale data.
        try:
            self.usb.read(message.IN_ENDPOINT, 64, 10) # pyright: ignore
        except usb.core.USBTimeoutError:
            pass

        return self.usb

    def get_port(self) -> RegisterPort:
        if self.port is not None:
            return self.port
        if self.simulated():
            chip = SimulatedChip()
            self.port = chip
            self.fpga = SimulatedFpga(chip)
            self.gpio = SimulatedGpio()
        else:
            dev = self.get_usb()
            self.port = UsbRegisterPort(dev)
            self.fpga = UsbFpgaPort(dev)
            self.gpio = UsbGpio(dev)
        return self.port

    def get_phy(self, pdata: PlatformData, synth_lut: SynthLut,
                gain_tables: GainTables) -> Phy:
        port = self.get_port()
        return Phy(port, pdata, synth_lut, gain_tables,
                   gpio=self.gpio, fpga=self.fpga)

def test_sim_device() -> None:
    from .sim import demo_gain_tables, demo_synth_lut
    device = Device(argparse.Namespace(sim=True, name=None))
    phy = device.get_phy(PlatformData(), demo_synth_lut(), demo_gain_tables())
    assert isinstance(phy.port, SimulatedChip)
    assert device.get_port() is phy.port
    assert isinstance(phy.fpga, SimulatedFpga)
