#!/usr/bin/python3

assert __name__ == '__main__'

import sys
if sys.version_info < (3, 10):
    print(f'Your python version {sys.version} is too old. ',
          'This program needs 3.10 or later')
    sys.exit(1)

import rfphy.phy_util as phy_util

from rfphy.device import Device
from rfphy.errors import PhyError

argp = phy_util.make_parser()

if len(sys.argv) < 2:
    argp.print_help()
    sys.exit(1)

args = argp.parse_args()

phy_util.setup_logging(args.verbose)

device = Device(args)

try:
    phy_util.run_command(args, device, args.command)
except PhyError as e:
    print(f'{type(e).__name__}: {e}', file=sys.stderr)
    sys.exit(1)
