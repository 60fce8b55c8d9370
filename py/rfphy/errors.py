# Error taxonomy.  Every operation either returns normally or raises exactly
# one of these.

class PhyError(RuntimeError):
    pass

class RegisterIOError(PhyError):
    '''Transport failure talking to the chip or FPGA.  Always fatal.'''
    pass

class InvalidParameter(PhyError, ValueError):
    pass

class InvalidScaler(InvalidParameter):
    pass

class InvalidRate(PhyError):
    pass

class InvalidClockChain(PhyError):
    pass

class CalibrationTimeout(PhyError):
    '''Poll budget exhausted.  The chip is left as last written.'''
    pass

class InterfaceTuningFailed(PhyError):
    pass
