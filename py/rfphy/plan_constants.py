# Chip limits.  All frequencies are integers in Hz.

Hz = 1
kHz = 1000 * Hz
MHz = 1000 * kHz
GHz = 1000 * MHz

# Converter clock limits.
MIN_ADC_CLK = 25 * MHz
MAX_ADC_CLK = 640 * MHz
MAX_DAC_CLK = MAX_ADC_CLK // 2

# BBPLL.
MIN_BBPLL_FREQ = 715 * MHz
MAX_BBPLL_FREQ = 1430 * MHz
MIN_BBPLL_DIV = 2
MAX_BBPLL_DIV = 64
BBPLL_MODULUS = 2088960
MAX_BBPLL_FREF = 70 * MHz

# RF synthesizers.
MIN_CARRIER_FREQ = 70 * MHz
MAX_CARRIER_FREQ = 6 * GHz
MIN_VCO_FREQ = 6 * GHz
MAX_VCO_FREQ = 12 * GHz
RFPLL_MODULUS = 8388593
MIN_SYNTH_FREF = 10 * MHz
MAX_SYNTH_FREF = 80 * MHz

# Maximum complex sample rates, single and dual channel.
MAX_SAMPLE_RATE = 122_880_000
MAX_SAMPLE_RATE_2R2T = 61_440_000

# The rate solver accepts a data clock this close to the target.
DATA_CLK_TOLERANCE = 4

# Gain table band edges.
GAIN_BAND_LOW_EDGE = 1300 * MHz
GAIN_BAND_MID_EDGE = 4000 * MHz

# RF DC offset calibration constants switch at this RX carrier.
RF_DC_HIGH_BAND = 4 * GHz

# Carrier movement on TX that triggers a quadrature recalibration.
DEFAULT_CAL_THRESHOLD = 100 * MHz

# Poll budget for calibrations and lock bits.
CAL_TIMEOUT_POLLS = 5000
CAL_CTRL_POLL_US = 1200
LOCK_POLL_US = 120

# Fastlock.
FASTLOCK_PROFILES = 8
FASTLOCK_WORDS = 16

# Digital interface tuning.
DIG_TUNE_SETTINGS = 16
DIG_TUNE_LOW_RATE = 10 * MHz
DIG_TUNE_SETTLE_MS = 4
