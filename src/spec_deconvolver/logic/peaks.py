"""
Peak detection, FWHM measurement and per-peak quality scores on the mass axis.

The per-peak score is the product of four factors in [0, 1]:

* FWHM: narrow peaks score higher, overlapping ("bad") peaks are halved.
* Residual: how well the fit explains the data in the m/z windows the peak
  occupies across charge states.
* Charge: smoothness of the peak's charge-state distribution.
* Mass: agreement of the per-charge mass profiles with their sum.

The product never decreases when the FWHM narrows or the residual drops.
"""
import logging
import math
from typing import List, Sequence, Tuple

import numpy as np
from scipy import ndimage
from scipy.signal import find_peaks, peak_widths

from ..config import DeconvolutionConfig, PeakShape
from ..core.indexing import nearest_index
from ..core.types import DetectedPeak, MassSpectrum
from .grid import Grid

logger = logging.getLogger(__name__)

CHARGE_SMOOTHING_WEIGHTS = np.array([0.25, 0.5, 0.25])


# --- Detection ---

def detect_peaks(x: np.ndarray, y: np.ndarray, window: float, threshold: float) -> np.ndarray:
    """
    Indices of local maxima at least `threshold * max(y)` high and at least
    `window` apart; the higher peak wins. A flat top reports its middle point.
    """
    y = np.asarray(y, dtype=np.float64)
    if len(y) == 0 or y.max() <= 0:
        return np.zeros(0, dtype=np.int64)
    spacing = float(np.median(np.diff(x)))
    distance = max(1, int(round(window / spacing))) if spacing > 0 else 1
    peak_indices, _ = find_peaks(y, height=threshold * y.max(), distance=distance)
    return peak_indices.astype(np.int64)


def normalise_peaks(heights: np.ndarray, mode: int) -> np.ndarray:
    """peaknorm 0 leaves heights alone, 1 divides by the maximum, 2 by the sum."""
    heights = np.asarray(heights, dtype=np.float64)
    norm = 0.0
    if mode == 1 and len(heights):
        norm = heights.max()
    elif mode == 2:
        norm = heights.sum()
    if norm != 0:
        return heights / norm
    return heights.copy()


def find_fwhm(massaxis: np.ndarray, massaxisval: np.ndarray, peak_positions: Sequence[int],
              index: int) -> Tuple[float, float, bool]:
    """
    Half-maximum bounds of the apex at `index`, interpolated between points.

    Returns:
        (low, high, bad): the bounds, and whether another apex in
        `peak_positions` lies inside them. A bad peak's bound is clipped to
        that apex.
    """
    y = np.ascontiguousarray(massaxisval, dtype=np.float64)
    height = y[index]
    if height <= 0:
        return float(massaxis[index]), float(massaxis[index]), False

    # Absolute half maximum, searched over the whole axis.
    prominence_data = (np.array([height]), np.array([0], dtype=np.intp),
                       np.array([len(y) - 1], dtype=np.intp))
    _, _, left_ips, right_ips = peak_widths(y, np.array([index]), rel_height=0.5,
                                            prominence_data=prominence_data)
    left_ip, right_ip = float(left_ips[0]), float(right_ips[0])

    bad = False
    others = np.asarray([p for p in peak_positions if p != index], dtype=np.int64)
    below = others[(others < index) & (others >= left_ip)]
    if len(below):
        left_ip, bad = float(below.max()), True
    above = others[(others > index) & (others <= right_ip)]
    if len(above):
        right_ip, bad = float(above.min()), True

    points = np.arange(len(y), dtype=float)
    low = float(np.interp(left_ip, points, massaxis))
    high = float(np.interp(right_ip, points, massaxis))
    return low, high, bad


# --- Component scores ---

def fwhm_score(width: float, reference: float, bad: bool = False) -> float:
    score = reference / (reference + max(width, 0.0))
    return score / 2.0 if bad else score


def residual_score(data: np.ndarray, fitdat: np.ndarray, mask: np.ndarray) -> float:
    total = float(data[mask].sum())
    if total <= 0:
        return 0.0
    mismatch = float(np.abs(data[mask] - fitdat[mask]).sum())
    return 1.0 - min(1.0, mismatch / total)


def charge_score(charge_profile: np.ndarray) -> float:
    total = float(charge_profile.sum())
    if total <= 0:
        return 0.0
    smooth = ndimage.convolve1d(charge_profile.astype(np.float64), CHARGE_SMOOTHING_WEIGHTS, mode='nearest')
    deviation = float(np.abs(charge_profile - smooth).sum())
    return float(np.clip(1.0 - deviation / (2.0 * total), 0.0, 1.0))


def mass_score(window_grid: np.ndarray) -> float:
    """
    One minus the intensity-weighted total variation distance between each
    charge state's mass profile and the summed profile.
    """
    column_totals = window_grid.sum(axis=0)
    total = float(column_totals.sum())
    if total <= 0:
        return 0.0
    summed = window_grid.sum(axis=1) / total
    score = 0.0
    for j in np.nonzero(column_totals > 0)[0]:
        profile = window_grid[:, j] / column_totals[j]
        score += column_totals[j] * (1.0 - 0.5 * float(np.abs(profile - summed).sum()))
    return float(np.clip(score / total, 0.0, 1.0))


def combine_scores(components: dict) -> float:
    return float(np.prod(list(components.values())))


def peak_mz_mask(grid: Grid, low: float, high: float, apex: float, charges_present: np.ndarray,
                 adduct_mass: float) -> np.ndarray:
    """The m/z points covered by a peak's mass window at each charge it occupies."""
    mask = np.zeros(grid.lengthmz, dtype=bool)
    for z in grid.charges[charges_present]:
        lo_mz = (low + z * adduct_mass) / z
        hi_mz = (high + z * adduct_mass) / z
        start = np.searchsorted(grid.mz, lo_mz, side='left')
        end = np.searchsorted(grid.mz, hi_mz, side='right')
        mask[start:end] = True
        mask[nearest_index(grid.mz, (apex + z * adduct_mass) / z)] = True
    return mask


# --- Extraction ---

def extract_peak_value(peak: float, massaxis: np.ndarray, massaxisval: np.ndarray,
                       config: DeconvolutionConfig) -> float:
    """
    Extracts a value for the peak at mass `peak` according to `exchoice`:
    0 height, 1 local maximum, 2 integral, 3 centre of mass, 4 position of
    the local maximum, 5 area estimated from height and FWHM. A zero
    extraction window always gives the height.
    """
    if len(massaxis) == 0 or peak < massaxis[0] or peak > massaxis[-1]:
        return 0.0
    choice = config.exchoice if config.exwindow != 0 else 0
    if choice == 0:
        return float(massaxisval[nearest_index(massaxis, peak)])

    pos1 = nearest_index(massaxis, peak - config.exwindow)
    pos2 = nearest_index(massaxis, peak + config.exwindow)
    xwin = massaxis[pos1:pos2 + 1]
    ywin = massaxisval[pos1:pos2 + 1]
    floor = config.exthresh / 100.0 * massaxisval.max() if config.exthresh > 0 else 0.0

    if choice == 1:
        return float(ywin.max())
    if choice == 4:
        return float(xwin[np.argmax(ywin)])
    if choice == 2:
        keep = (ywin[1:] > floor) & (ywin[:-1] > floor)
        return float(np.sum((np.diff(xwin) * (ywin[1:] + ywin[:-1]) / 2.0)[keep]))
    if choice == 3:
        keep = ywin > floor
        weight = ywin[keep].sum()
        return float((xwin[keep] * ywin[keep]).sum() / weight) if weight > 0 else 0.0

    index = nearest_index(xwin, peak)
    low, high, _ = find_fwhm(xwin, ywin, [index], index)
    height = float(ywin[index])
    gauss_coeff = math.sqrt(math.pi / math.log(2.0)) / 2.0
    if config.psfun == PeakShape.GAUSSIAN:
        return height * (high - low) * gauss_coeff
    if config.psfun == PeakShape.LORENTZIAN:
        return height * (high - low) * math.pi / 2.0
    return height * (high - low) * (0.5 * gauss_coeff + math.pi / 4.0)


# --- Putting it together ---

def score_peak(peak: DetectedPeak, index: int, spectrum: MassSpectrum, grid: Grid,
               data: np.ndarray, fitdat: np.ndarray, config: DeconvolutionConfig) -> DetectedPeak:
    massaxis = spectrum.mass
    lo = nearest_index(massaxis, peak.fwhm_low)
    hi = max(nearest_index(massaxis, peak.fwhm_high), lo)
    window_grid = spectrum.grid[lo:hi + 1]
    profile = window_grid.sum(axis=0)
    present = np.nonzero(profile > 0)[0]
    if len(present) == 0:
        present = np.array([int(np.argmax(spectrum.grid[index]))])

    mask = peak_mz_mask(grid, peak.fwhm_low, peak.fwhm_high, peak.mass, present, config.adductmass)
    components = {
        'fwhm': fwhm_score(peak.fwhm, config.fwhm_reference, peak.bad),
        'residual': residual_score(data, fitdat, mask),
        'charge': charge_score(profile),
        'mass': mass_score(window_grid),
    }
    peak.components = components
    peak.score = combine_scores(components)
    return peak


def uniscore(heights: np.ndarray, scores: np.ndarray, rsquared: float, threshold: float = 0.0) -> float:
    """R^2 times the height-squared weighted mean of the peak scores above `threshold`."""
    heights = np.asarray(heights, dtype=np.float64)
    scores = np.asarray(scores, dtype=np.float64)
    keep = scores > threshold
    weights = np.square(heights[keep])
    if weights.sum() <= 0:
        return 0.0
    return float(rsquared * np.sum(weights * scores[keep]) / weights.sum())


def analyse_peaks(spectrum: MassSpectrum, grid: Grid, data: np.ndarray, fitdat: np.ndarray,
                  rsquared: float, config: DeconvolutionConfig) -> tuple[List[DetectedPeak], float]:
    """Detects, measures and scores the peaks of a mass spectrum."""
    massaxis, massaxisval = spectrum.mass, spectrum.intensity
    positions = detect_peaks(massaxis, massaxisval, config.peakwin, config.peakthresh)
    if len(positions) == 0:
        return [], 0.0

    raw_heights = massaxisval[positions]
    heights = normalise_peaks(raw_heights, config.peaknorm)
    peaks = []
    for index, height in zip(positions, heights):
        low, high, bad = find_fwhm(massaxis, massaxisval, positions, index)
        peak = DetectedPeak(mass=float(massaxis[index]), intensity=float(height),
                            fwhm_low=low, fwhm_high=high, bad=bad)
        score_peak(peak, index, spectrum, grid, data, fitdat, config)
        peak.area = extract_peak_value(peak.mass, massaxis, massaxisval, config)
        peaks.append(peak)

    global_score = uniscore(raw_heights, [p.score for p in peaks], rsquared, config.score_threshold)
    logger.debug("Detected %d peaks, global score %.4f", len(peaks), global_score)
    return peaks, global_score
