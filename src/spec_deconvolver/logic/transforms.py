import logging

import numpy as np

from ..config import DeconvolutionConfig, Projection
from ..core.constants import BLUR_CUTOFF
from ..core.indexing import nearest_indices
from ..core.types import MassSpectrum
from .grid import Grid

logger = logging.getLogger(__name__)


def mass_axis_bounds(grid: Grid, amplitudes: np.ndarray, valid: np.ndarray, threshold: float,
                     ampmax: float, config: DeconvolutionConfig) -> tuple[float, float, int, bool]:
    """
    Returns (massmin, massmax, mlen, fallback) for the mass axis.

    The adaptive axis spans every significant cell widened by the peak-shape
    window at its charge, rounded outward to multiples of `massbins`. A degenerate
    result falls back to the configured mass bounds.
    """
    massbins = config.massbins
    if config.fixed_mass_axis:
        massmin, massmax = config.masslb, config.massub
    else:
        cutoff = BLUR_CUTOFF if ampmax != 0 else 0.0
        significant = (amplitudes * valid) > ampmax * cutoff
        massmin, massmax = config.massub, config.masslb
        if significant.any():
            rows, cols = np.nonzero(significant)
            masses = grid.mass_table[rows, cols]
            spread = threshold * np.abs(grid.charges[cols])
            massmin = float(np.floor((masses - spread).min() / massbins) * massbins)
            massmax = float(np.ceil((masses + spread + massbins).max() / massbins) * massbins)

    mlen = int(round((massmax - massmin) / massbins))
    fallback = False
    if mlen < 1:
        logger.warning("Bad mass axis length %d; falling back to [%g, %g]", mlen, config.masslb, config.massub)
        massmin, massmax = config.masslb, config.massub
        mlen = max(int((massmax - massmin) / massbins), 1)
        fallback = True
    logger.debug("Mass axis %g to %g, %d bins", massmin, massmax, mlen)
    return massmin, massmax, mlen, fallback


def integrate_transform(mass_table: np.ndarray, amplitudes: np.ndarray, massaxis: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Splits each cell's amplitude linearly between the two mass bins around
    its mass. Cells past either end of the axis land in the end bin, so the
    total amplitude is preserved.

    Returns:
        (massaxisval, massgrid) with massgrid of shape (len(massaxis), numz).
    """
    mlen = len(massaxis)
    numz = amplitudes.shape[1]
    massgrid = np.zeros((mlen, numz))
    rows, cols = np.nonzero(amplitudes)
    if len(rows) == 0:
        return np.zeros(mlen), massgrid

    masses = mass_table[rows, cols]
    values = amplitudes[rows, cols]
    if mlen == 1:
        np.add.at(massgrid, (np.zeros(len(rows), dtype=np.int64), cols), values)
        return massgrid.sum(axis=1), massgrid

    nearest = nearest_indices(massaxis, masses)
    left = np.where(massaxis[nearest] > masses, nearest - 1, nearest)
    left = np.clip(left, 0, mlen - 2)
    right = left + 1
    position = (masses - massaxis[left]) / (massaxis[right] - massaxis[left])
    position = np.clip(position, 0.0, 1.0)

    np.add.at(massgrid, (left, cols), (1.0 - position) * values)
    np.add.at(massgrid, (right, cols), position * values)
    return massgrid.sum(axis=1), massgrid


def cubic_interpolate(y0, y1, y2, y3, mu):
    mu2 = mu * mu
    a0 = y3 - y2 - y0 + y1
    a1 = y0 - y1 - a0
    a2 = y2 - y0
    return a0 * mu * mu2 + a1 * mu2 + a2 * mu + y1


def interpolate_transform(mz: np.ndarray, charges: np.ndarray, adduct_mass: float,
                          amplitudes: np.ndarray, massaxis: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Samples every charge column at the m/z of each mass bin: cubic
    interpolation between interior points, linear next to the axis ends,
    clipped at zero.
    """
    lengthmz = len(mz)
    massgrid = np.zeros((len(massaxis), len(charges)))
    if lengthmz < 2:
        return massgrid.sum(axis=1), massgrid

    for j, z in enumerate(charges):
        column = amplitudes[:, j]
        if not column.any():
            continue
        mztest = (massaxis + z * adduct_mass) / z
        inside = (mztest > mz[0]) & (mztest < mz[-1])
        if not inside.any():
            continue
        target = mztest[inside]
        nearest = nearest_indices(mz, target)
        left = np.where(mz[nearest] > target, nearest - 1, nearest)
        left = np.clip(left, 0, lengthmz - 2)
        right = left + 1
        mu = (target - mz[left]) / (mz[right] - mz[left])

        linear = column[left] + (column[right] - column[left]) * mu
        interior = (left >= 1) & (right <= lengthmz - 2)
        y0 = column[np.maximum(left - 1, 0)]
        y3 = column[np.minimum(right + 1, lengthmz - 1)]
        cubic = cubic_interpolate(y0, column[left], column[right], y3, mu)
        massgrid[inside, j] = np.clip(np.where(interior, cubic, linear), 0.0, None)

    return massgrid.sum(axis=1), massgrid


def project_to_mass_axis(grid: Grid, amplitudes: np.ndarray, valid: np.ndarray, threshold: float,
                         ampmax: float, config: DeconvolutionConfig) -> MassSpectrum:
    """Projects the converged (m/z x charge) grid onto an even neutral-mass axis."""
    massmin, _, mlen, fallback = mass_axis_bounds(grid, amplitudes, valid, threshold, ampmax, config)
    massaxis = massmin + np.arange(mlen) * config.massbins
    amplitudes = np.where(valid, amplitudes, 0.0)

    if config.projection == Projection.INTERPOLATE:
        massaxisval, massgrid = interpolate_transform(grid.mz, grid.charges, config.adductmass,
                                                      amplitudes, massaxis)
    else:
        massaxisval, massgrid = integrate_transform(grid.mass_table, amplitudes, massaxis)
    return MassSpectrum(mass=massaxis, intensity=massaxisval, grid=massgrid, fallback=fallback)
