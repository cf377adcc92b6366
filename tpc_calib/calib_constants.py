# calib_constants.py

import math

# Framework return codes
EVENT_OK = 0
ABORTEVENT = -1
ABORTRUN = -2

# Units (geometry tables are in mm, outputs in cm)
MM = 1.0
CM = 10.0

# --- Central membrane stripe pattern ---
N_RADII = 8
N_PETALS = 18
PHI_PETAL = math.pi / 9.0      # angle span of one petal
PHI_MODULE = math.pi / 6.0     # angle span of a module
PR_MULT = 3                    # multiples of intrinsic resolution of pads
DW_MULT = 8                    # multiples of diffusion width
DIFFWIDTH = 0.6 * MM           # diffusion width
ADJUST = 0.015                 # angle used to center the pattern in a petal

N_PADS_R1 = 6 * 16
N_PADS_R2 = 8 * 16
N_PADS_R3 = 12 * 16

R1_E = (227.0902789, 238.4100043, 249.7297296, 261.0494550,
        272.3691804, 283.6889058, 295.0086312, 306.3283566)
R1 = (317.6480820, 328.9678074, 340.2875328, 351.6072582,
      362.9269836, 374.2467090, 385.5664344, 396.8861597)
R2 = (421.7055320, 442.1192580, 462.5329840, 482.9467101,
      503.3604362, 523.7741623, 544.1878884, 564.6016145)
R3 = (594.6048201, 616.5450510, 638.4852818, 660.4255127,
      682.3657436, 704.3059744, 726.2462053, 748.1864361)

KEEP_THIS_AND_AFTER = (1, 0, 1, 0, 1, 0, 1, 0)
KEEP_UNTIL_R1_E = (4, 4, 5, 4, 5, 5, 5, 5)
KEEP_UNTIL_R1 = (5, 5, 6, 5, 6, 5, 6, 5)
KEEP_UNTIL_R2 = (7, 7, 8, 7, 8, 8, 8, 8)
KEEP_UNTIL_R3 = (11, 10, 11, 11, 11, 11, 12, 11)

# --- Occupancy histograms (phi, r) ---
R_PHI_PHI_BINS = 360
R_PHI_R_BINS = 500
R_PHI_R_MIN = 0.0
R_PHI_R_MAX = 100.0

# --- Peak / gap finding ---
PEAK_THRESHOLD_FRACTION = 0.15
PEAK_MIN_SEPARATION = 0.75     # cm
PHI_GAP_MIN_SEPARATION = math.pi / 36.0
PHI_GAP_R_EDGES = (0.0, 40.0, 58.0, 99.99)
R23_GAP_MIN = 2.5              # cm, separation between mid and outer peaks
R23_GAP_LAYER = 23             # truth layer index of the last mid-region peak
TRUTH_PEAK_TOLERANCE = 0.5     # cm

# 1-based r-bin ranges of the phi profiles used in the rotation fit
PROFILE_R_BIN_RANGES = ((151, 206), (206, 290), (290, 499))

# --- Matching ---
N_MATCH_ITERATIONS = 2
ANGLE_REGION_R_EDGES = (41.0, 58.0)
DIAG_REGION_R_EDGES = (40.0, 58.0)
DEFAULT_PHI_CUT = 0.02
DEFAULT_HIT_ROTATION = (0.0, 0.0, 0.0, 0.0)

# --- Distortion grid ---
DEFAULT_PHI_BINS = 24
DEFAULT_R_BINS = 12
DEFAULT_PHI_MIN = 0.0
DEFAULT_PHI_MAX = 2.0 * math.pi
DEFAULT_R_MIN = 20.0
DEFAULT_R_MAX = 78.0
SIDE_EXTENSIONS = ("_negz", "_posz")

# --- Diagnostics ---
MAX_DR = 5.0
MAX_DPHI = 0.05

# --- QA ---
TPC_REGION_LAYER_LOW = (7, 23, 39)
TPC_REGION_LAYER_HIGH = (22, 38, 54)
QA_PT_CUT = 1.0                # GeV
QA_MIN_TPC_CLUSTERS = 25
