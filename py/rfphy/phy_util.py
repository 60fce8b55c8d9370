from __future__ import annotations

# Command line front end: argparse sub-commands driving one Phy.

from .chain_plan import calculate_clock_chain, report_chain
from .config import PlatformData, read_platform_file
from .device import Device
from .ensm import EnsmState, state_name
from .fastlock import FastlockProfile
from .lut import GainTables, SynthLut, read_gain_table_file, \
    read_synth_lut_file
from .phy import Phy
from .plan_tools import freq_to_str, str_to_freq
from .regs import *
from .sim import demo_gain_tables, demo_synth_lut

import argparse, logging, sys

from typing import Tuple

CALIBRATIONS = {
    'bbdc': BBDC_CAL,
    'rfdc': RFDC_CAL,
    'txquad': TX_QUAD_CAL,
}

def add_global_options(argp: argparse.ArgumentParser) -> None:
    argp.add_argument('-n', '--name', metavar='NAME',
                      help='Name of bridge to connect to (USB ser. no.)')
    argp.add_argument('-s', '--sim', action='store_true',
                      help='Run against the simulated chip, set up afresh')
    argp.add_argument('-p', '--platform', metavar='FILE',
                      help='Platform settings (INI, [platform] section)')
    argp.add_argument('-l', '--lut', metavar='FILE',
                      help='VCO tuning table (INI)')
    argp.add_argument('-g', '--gain-table', metavar='FILE',
                      help='RX gain tables (INI)')
    argp.add_argument('-v', '--verbose', action='count', default=0,
                      help='Log progress; twice for debug')

def add_to_argparse(argp: argparse.ArgumentParser,
                    dest: str = 'command', metavar: str = 'COMMAND') -> None:

    def register_lookup(name: str) -> Register:
        try:
            return Register.get(name)
        except KeyError:
            raise ValueError
    register_lookup.__name__ = 'register name'

    def reg_key_value(s: str) -> Tuple[Register, int]:
        if not '=' in s:
            raise ValueError('Key/value pairs must be in the form KEY=VALUE')
        K, V = s.split('=', 1)
        return register_lookup(K), int(V, 0)
    reg_key_value.__name__ = 'register key=value pair'

    subp = argp.add_subparsers(
        dest=dest, metavar=metavar, required=True, help='Sub-command')

    epilog = '''Frequencies can be given with an optional unit (Hz, kHz,
    MHz, GHz) that defaults to MHz.'''

    plan = subp.add_parser(
        'plan', help='Clock chain planning', epilog=epilog,
        description='''Compute and print the baseband clock chain for a
        sample rate without touching a device.''')
    plan.add_argument('RATE', type=str_to_freq, help='Sample rate')
    plan.add_argument('-G', '--governor', type=int,
                      help='Rate governor (default from platform)')

    rate = subp.add_parser(
        'rate', help='Set/report sample rate', epilog=epilog,
        description='''Program the sample rate, or report the clock chain with
        no argument.''')
    rate.add_argument('RATE', type=str_to_freq, nargs='?', help='Sample rate')

    lo = subp.add_parser(
        'lo', help='Set/report LO frequency', epilog=epilog,
        description='Tune or report an RF synthesizer.')
    lo.add_argument('DIR', choices=('rx', 'tx'), help='Synthesizer')
    lo.add_argument('FREQ', type=str_to_freq, nargs='?', help='Carrier')

    bw = subp.add_parser(
        'bw', help='Set/report RF bandwidth', epilog=epilog,
        description='''Retune the analog filters for RF bandwidths, or report
        the current ones.''')
    bw.add_argument('BW', type=str_to_freq, nargs='*', metavar='RX TX',
                    help='RX and TX RF bandwidths')

    cal = subp.add_parser(
        'cal', help='Run a calibration',
        description='Run one calibration with the device in ALERT.')
    cal.add_argument('CAL', choices=sorted(CALIBRATIONS), help='Calibration')
    cal.add_argument('-P', '--phase', type=int, default=-1,
                     help='RX NCO phase for txquad, -1 to search')

    ensm = subp.add_parser(
        'ensm', help='Set/report ENSM state',
        description='Move the ENSM to a state, or report the current one.')
    ensm.add_argument('STATE', nargs='?',
                      help='alert, fdd, tx, rx, sleep, sleep_wait')

    valget = subp.add_parser(
        'get', help='Get registers', description='Get registers')
    valget.add_argument('KEY', type=register_lookup, nargs='+', help='KEYs')

    valset = subp.add_parser(
        'set', help='Set registers', description='Set registers')
    valset.add_argument('KV', type=reg_key_value, nargs='+',
                        metavar='KEY=VALUE', help='KEY=VALUE pairs')

    fastlock = subp.add_parser(
        'fastlock', help='Fastlock profiles',
        description='''Store the live synthesizer setup in a profile, recall
        a profile, or save / load a profile record file.''',
        epilog='''store and recall take an optional FILE: store writes the
        profile record to it, recall loads the record before switching.''')
    fastlock.add_argument('ACTION', choices=('store', 'recall', 'save', 'load'))
    fastlock.add_argument('DIR', choices=('rx', 'tx'), help='Synthesizer')
    fastlock.add_argument('PROFILE', type=int, help='Profile 0..7')
    fastlock.add_argument('FILE', nargs='?', help='Profile record file')

    tune = subp.add_parser(
        'tune', help='Tune the data interface', epilog=epilog,
        description='''Sweep the RX and TX clock / data delays against the
        FPGA PN checkers and program the centre of the passing window.''')
    tune.add_argument('-m', '--max-freq', type=str_to_freq, default=0,
                      help='Also tune at this sample rate')

    subp.add_parser('timing', help='RX interface timing chart',
                    description='''Print pass / fail for every RX clock and
                    data delay.''')

    setup = subp.add_parser(
        'setup', help='Full device bring-up',
        description='Reset and bring up the device from platform settings.')
    setup.add_argument('CONFIG', nargs='?',
                       help='Platform settings (default from --platform)')

    subp.add_parser('reset', help='Reset the device',
                    description='''Reset through the reset line, or by SPI
                    soft reset.''')

def make_parser() -> argparse.ArgumentParser:
    argp = argparse.ArgumentParser(description='RF transceiver utility')
    add_global_options(argp)
    add_to_argparse(argp)
    return argp

def load_platform(args: argparse.Namespace) -> PlatformData:
    path = getattr(args, 'CONFIG', None) or args.platform
    return read_platform_file(path) if path else PlatformData()

def load_tables(args: argparse.Namespace) -> Tuple[SynthLut, GainTables]:
    if args.lut is not None:
        lut = read_synth_lut_file(args.lut)
    elif args.sim:
        lut = demo_synth_lut()
    else:
        print('A VCO table (--lut) is needed for a real device',
              file=sys.stderr)
        sys.exit(1)
    if args.gain_table is not None:
        tables = read_gain_table_file(args.gain_table)
    elif args.sim:
        tables = demo_gain_tables()
    else:
        print('Gain tables (--gain-table) are needed for a real device',
              file=sys.stderr)
        sys.exit(1)
    return lut, tables

def get_phy(args: argparse.Namespace, device: Device,
            setup: bool = False) -> Phy:
    '''The simulated chip starts from reset every run, so it is always set
    up; a real device is attached to unless asked otherwise.'''
    lut, tables = load_tables(args)
    phy = device.get_phy(load_platform(args), lut, tables)
    if setup:
        phy.reset()
    if setup or device.simulated():
        phy.setup()
    else:
        phy.attach()
    return phy

def do_plan(args: argparse.Namespace) -> None:
    pd = load_platform(args)
    governor = pd.rate_governor if args.governor is None else args.governor
    plan = calculate_clock_chain(args.RATE, governor, pd.rx_decimation(),
                                 pd.tx_interpolation(), pd.rx2tx2,
                                 bool(pd.pp_conf[2] & FDD_RX_RATE_2TX_RATE))
    print(f'Governor {plan.governor}')
    report_chain(plan.rx, plan.tx)

def do_bw(phy: Phy, bw: list[int]) -> None:
    if len(bw) == 2:
        phy.update_rf_bandwidth(bw[0], bw[1])
    elif len(bw) != 0:
        print('Give both RX and TX bandwidths', file=sys.stderr)
        sys.exit(1)
    print('RX bandwidth:', freq_to_str(phy.ctx.current_rx_bw))
    print('TX bandwidth:', freq_to_str(phy.ctx.current_tx_bw))

def do_fastlock(phy: Phy, action: str, tx: bool, profile: int,
                path: str|None) -> None:
    store = phy.fastlock
    if action in ('load', 'recall') and path is not None:
        with open(path, 'rb') as f:
            record = FastlockProfile.unpack(f.read())
        store.load(tx, profile, record.values)
        print(f'Loaded {record}')
    elif action == 'load':
        print('load needs a FILE', file=sys.stderr)
        sys.exit(1)

    if action == 'store':
        store.store(tx, profile)
    elif action == 'recall':
        store.recall(tx, profile)
        print('LO:', freq_to_str(phy.get_lo_freq(tx)))

    if action in ('store', 'save'):
        record = FastlockProfile(tx, profile, phy.get_lo_freq(tx),
                                 store.save(tx, profile))
        if path is not None:
            with open(path, 'wb') as f:
                f.write(record.pack())
        print(record)

def run_command(args: argparse.Namespace, device: Device, command: str) -> None:
    if command == 'plan':
        do_plan(args)
        return

    phy = get_phy(args, device, setup = command == 'setup')

    if command == 'rate':
        if args.RATE is not None:
            phy.set_sample_rate(args.RATE)
        report_chain(phy.rx_path_clks, phy.tx_path_clks)

    elif command == 'lo':
        tx = args.DIR == 'tx'
        if args.FREQ is not None:
            phy.set_lo_freq(tx, args.FREQ)
        print(f'{args.DIR.upper()} LO:', freq_to_str(phy.get_lo_freq(tx)))

    elif command == 'bw':
        do_bw(phy, args.BW)

    elif command == 'cal':
        phy.do_calib_run(CALIBRATIONS[args.CAL], args.phase)

    elif command == 'ensm':
        if args.STATE is not None:
            phy.set_ensm_state(EnsmState.get(args.STATE))
        print('ENSM:', state_name(phy.ensm.read_state()))

    elif command == 'get':
        for reg in args.KEY:
            print(f'{reg} = {phy.port.read(reg.address):#04x}')

    elif command == 'set':
        for reg, value in args.KV:
            phy.port.write(reg.address, value)

    elif command == 'fastlock':
        do_fastlock(phy, args.ACTION, args.DIR == 'tx', args.PROFILE,
                    args.FILE)

    elif command == 'tune':
        phy.dig_tune(args.max_freq)
        print(f'RX delay {phy.pdata.rx_clk_data_delay:#04x} '
              f'TX delay {phy.pdata.tx_clk_data_delay:#04x}')

    elif command == 'timing':
        print(phy.timing_analysis(), end='')

    elif command == 'setup':
        print('ENSM:', state_name(phy.ensm.read_state()))
        report_chain(phy.rx_path_clks, phy.tx_path_clks)

    elif command == 'reset':
        phy.reset()

    else:
        print(args)
        assert None, f'This should never happen: {command}'

def setup_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level,
                        format='%(levelname)s %(name)s: %(message)s')

def sim_run(capsys, *argv: str) -> str:
    args = make_parser().parse_args(['--sim', *argv])
    run_command(args, Device(args), args.command)
    return capsys.readouterr().out

def test_plan(capsys) -> None:
    out = sim_run(capsys, 'plan', '30.72')
    assert 'RX sample  30.72 MHz' in out
    assert out.startswith('Governor ')

def test_rate_and_lo(capsys) -> None:
    out = sim_run(capsys, 'rate', '61.44')
    assert '61.44 MHz' in out.splitlines()[-1]
    out = sim_run(capsys, 'lo', 'tx', '1.5GHz')
    assert out == 'TX LO: 1.5 GHz\n'

def test_ensm_and_registers(capsys) -> None:
    assert sim_run(capsys, 'ensm', 'alert') == 'ENSM: ALERT\n'
    assert sim_run(capsys, 'get', 'ensm_mode') == 'REG_ENSM_MODE = 0x01\n'

def test_bw_needs_pair(capsys) -> None:
    import pytest
    out = sim_run(capsys, 'bw', '10', '8')
    assert out == 'RX bandwidth: 10 MHz\nTX bandwidth: 8 MHz\n'
    with pytest.raises(SystemExit):
        sim_run(capsys, 'bw', '10')

def test_fastlock_file(capsys, tmp_path) -> None:
    path = str(tmp_path / 'rx2.bin')
    sim_run(capsys, 'fastlock', 'store', 'rx', '2', path)
    with open(path, 'rb') as f:
        record = FastlockProfile.unpack(f.read())
    assert not record.tx and record.index == 2
    assert record.carrier == 2_400_000_000
    out = sim_run(capsys, 'fastlock', 'recall', 'rx', '2', path)
    assert out.splitlines()[-1] == 'LO: 2.4 GHz'

def test_real_device_needs_tables() -> None:
    import pytest
    args = make_parser().parse_args(['rate'])
    with pytest.raises(SystemExit):
        load_tables(args)
