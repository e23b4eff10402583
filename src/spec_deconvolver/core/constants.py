import math

# --- Physical constants ---
PROTON_MASS = 1.007276467
# Average spacing between isotope peaks of a peptide/protein envelope.
ISOTOPE_MASS_DIFF = 1.0026
FWHM_TO_SIGMA = 2 * math.sqrt(2 * math.log(2))

# --- Averagine model ---
# Elemental composition of one averagine residue and its average mass.
AVERAGINE_MASS = 111.1254
AVERAGINE_COMPOSITION = {
    'C': 4.9384,
    'H': 7.7583,
    'N': 1.3577,
    'O': 1.4773,
    'S': 0.0417,
}

# --- Native charge prediction ---
# z_native = NATIVE_CHARGE_A * mass ** NATIVE_CHARGE_B
NATIVE_CHARGE_A = 0.0467
NATIVE_CHARGE_B = 0.533

# --- Solver constants ---
# Amplitudes below BLUR_CUTOFF * max are zeroed after iteration.
BLUR_CUTOFF = 1e-6
# Simulated intensities at or below this are treated as empty.
SIM_FLOOR = 1e-30
# Reported as the convergence metric when the whole grid has gone to zero.
EMPTY_GRID_CONVERGENCE = 12345678.0
# Number of extra refinements of the baseline estimate in subtract mode.
BASELINE_REFINEMENTS = 10
# Half window (in points) of the median-like baseline filter.
BASELINE_MEDIAN_WINDOW = 25

# --- Isotope envelopes ---
# Isotope peaks below this fraction of the most abundant peak are dropped.
ISOTOPE_RELATIVE_CUTOFF = 1e-3
# Isotope peaks at or above this fraction of the cluster maximum must have
# data above the intensity threshold for a cell to survive.
ISOTOPE_KILL_FRACTION = 0.5
