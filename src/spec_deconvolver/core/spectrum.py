import math
from typing import Optional, Sequence

import numba
import numpy as np

from .constants import FWHM_TO_SIGMA, PROTON_MASS
from .isotopes import isotope_calculator

# Synthetic peaks are truncated this many sigmas from their centre.
PEAK_TRUNCATION_SIGMAS = 5.0


@numba.jit(nopython=True, fastmath=True)
def _sum_gaussian_peaks(axis, centres, heights, sigma):
    out = np.zeros(axis.shape[0])
    reach = PEAK_TRUNCATION_SIGMAS * sigma
    denominator = 2.0 * sigma * sigma
    for p in range(centres.shape[0]):
        first = np.searchsorted(axis, centres[p] - reach, side='left')
        last = np.searchsorted(axis, centres[p] + reach, side='right')
        for i in range(first, last):
            offset = axis[i] - centres[p]
            out[i] += heights[p] * np.exp(-offset * offset / denominator)
    return out


def build_spectrum_from_peaks(mz_range: np.ndarray, peak_mzs, peak_intensities, peak_fwhm: float) -> np.ndarray:
    """
    Sums Gaussian peaks of a common FWHM onto `mz_range`.
    """
    return _sum_gaussian_peaks(np.asarray(mz_range, dtype=np.float64),
                               np.asarray(peak_mzs, dtype=np.float64),
                               np.asarray(peak_intensities, dtype=np.float64),
                               float(peak_fwhm) / FWHM_TO_SIGMA)


def generate_protein_spectrum(
    protein_mass: float,
    mz_range: np.ndarray,
    peak_fwhm: float,
    intensity_scalar: float = 1.0,
    isotopic_enabled: bool = False,
    charges: Optional[Sequence[int]] = None,
    adduct_mass: float = PROTON_MASS,
) -> np.ndarray:
    """
    Generates a clean synthetic spectrum of one species: a Gaussian charge
    state envelope, optionally an averagine isotope envelope per charge, and
    Gaussian peaks of width `peak_fwhm`.

    `protein_mass` is the monoisotopic mass when isotopes are enabled.
    Without explicit `charges`, every charge placing the species inside
    `mz_range` is used (at most 150).
    """
    mz_range = np.asarray(mz_range, dtype=np.float64)
    if isotopic_enabled:
        distribution, _ = isotope_calculator.get_distribution(protein_mass)
    else:
        distribution = [(0.0, 1.0)]
    offsets = np.array([offset for offset, _ in distribution])
    abundances = np.array([abundance for _, abundance in distribution])

    if charges is None:
        lowest = math.ceil(protein_mass / (mz_range[-1] - adduct_mass)) if mz_range[-1] > adduct_mass else 1
        highest = math.floor(protein_mass / (mz_range[0] - adduct_mass)) if mz_range[0] > adduct_mass else 150
        charges = np.arange(max(1, lowest), min(150, highest) + 1)
    charges = np.asarray(charges, dtype=np.float64)
    if len(charges) == 0:
        return np.zeros_like(mz_range)

    rank = np.arange(len(charges))
    spread = max(1.0, len(charges) / 4.0)
    envelope = intensity_scalar * np.exp(-np.square(rank - (len(charges) - 1) / 2.0) / (2 * spread * spread))

    # One row per charge, one column per isotope peak.
    peak_mzs = (protein_mass + offsets[np.newaxis, :] + charges[:, np.newaxis] * adduct_mass) / charges[:, np.newaxis]
    heights = envelope[:, np.newaxis] * abundances[np.newaxis, :]
    visible = (peak_mzs >= mz_range[0]) & (peak_mzs <= mz_range[-1])
    if not visible.any():
        return np.zeros_like(mz_range)
    return build_spectrum_from_peaks(mz_range, peak_mzs[visible], heights[visible], peak_fwhm)
