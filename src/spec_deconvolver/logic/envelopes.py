"""
Isotope envelopes of every grid cell, mapped into m/z index space.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..config import DeconvolutionConfig, IsotopeMode
from ..core.constants import ISOTOPE_KILL_FRACTION, ISOTOPE_MASS_DIFF
from ..core.errors import EmptySearchSpaceError
from ..core.indexing import nearest_indices
from ..core.isotopes import IsotopeCalculator, isotope_calculator
from .grid import Grid

logger = logging.getLogger(__name__)


@dataclass
class IsotopeEnvelopes:
    """
    positions[i, j, k] is the m/z index of isotope slot k of cell (i, j) and
    values[i, j, k] its share of the cell's amplitude. Values of a valid cell
    sum to 1; padding slots point at the cell itself with value 0.
    """
    positions: np.ndarray
    values: np.ndarray
    identity: bool = False

    @property
    def isolength(self) -> int:
        return self.positions.shape[2]

    def scatter(self, blur: np.ndarray) -> np.ndarray:
        """Spreads cell amplitudes onto their isotope peaks and sums over charge."""
        lengthmz = blur.shape[0]
        if self.identity:
            return blur.sum(axis=1)
        weights = blur[:, :, np.newaxis] * self.values
        return np.bincount(self.positions.ravel(), weights=weights.ravel(), minlength=lengthmz)

    def gather(self, profile: np.ndarray) -> np.ndarray:
        """Collects a per-m/z profile back onto every cell through its envelope."""
        if self.identity:
            return profile[:, np.newaxis] * self.values[:, :, 0]
        return (self.values * profile[self.positions]).sum(axis=2)


def identity_envelopes(grid: Grid) -> IsotopeEnvelopes:
    positions = np.broadcast_to(
        np.arange(grid.lengthmz)[:, np.newaxis, np.newaxis], (grid.lengthmz, grid.numz, 1)).copy()
    values = grid.valid[:, :, np.newaxis].astype(np.float64)
    return IsotopeEnvelopes(positions=positions, values=values, identity=True)


def build_envelopes(grid: Grid, config: DeconvolutionConfig,
                    calculator: Optional[IsotopeCalculator] = None) -> IsotopeEnvelopes:
    """
    Builds the isotope envelope of every valid cell.

    Distributions are computed once per mass quantum of `isotope_mass_step`
    and shared by every cell falling in it. Isotope peaks landing beyond the
    end of the m/z axis are dropped and the rest renormalised.
    """
    if config.isotopemode == IsotopeMode.OFF:
        return identity_envelopes(grid)

    calculator = calculator or isotope_calculator
    rows, cols = np.nonzero(grid.valid)
    masses = grid.mass_table[rows, cols]
    quanta = np.round(masses / config.isotope_mass_step).astype(np.int64)
    unique_quanta, key = np.unique(quanta, return_inverse=True)

    distributions = []
    for quantum in unique_quanta:
        offsets, values = calculator.neutron_distribution(quantum * config.isotope_mass_step)
        if len(values) == 0 or values.sum() <= 0:
            offsets, values = np.zeros(1, dtype=np.int64), np.ones(1)
        distributions.append((offsets, values))

    isolength = max(len(values) for _, values in distributions)
    offset_table = np.zeros((len(distributions), isolength))
    value_table = np.zeros((len(distributions), isolength))
    for n, (offsets, values) in enumerate(distributions):
        offset_table[n, :len(offsets)] = offsets
        value_table[n, :len(values)] = values

    cell_offsets = offset_table[key]
    cell_values = value_table[key]
    cell_charges = grid.charges[cols].astype(np.float64)
    target_mz = grid.mz[rows, np.newaxis] + cell_offsets * ISOTOPE_MASS_DIFF / cell_charges[:, np.newaxis]

    cell_positions = nearest_indices(grid.mz, target_mz)
    beyond = target_mz > grid.mz[-1]
    cell_values = np.where(beyond, 0.0, cell_values)
    cell_positions = np.where(cell_values > 0, cell_positions, rows[:, np.newaxis])

    totals = cell_values.sum(axis=1)
    degenerate = totals <= 0
    if degenerate.any():
        cell_values[degenerate, 0] = 1.0
        cell_positions[degenerate, 0] = rows[degenerate]
        totals[degenerate] = 1.0
    cell_values /= totals[:, np.newaxis]

    positions = np.broadcast_to(
        np.arange(grid.lengthmz)[:, np.newaxis, np.newaxis], (grid.lengthmz, grid.numz, isolength)).copy()
    values = np.zeros((grid.lengthmz, grid.numz, isolength))
    positions[rows, cols] = cell_positions
    values[rows, cols] = cell_values

    logger.debug("Isotope envelopes: isolength %d from %d mass quanta", isolength, len(unique_quanta))
    return IsotopeEnvelopes(positions=positions, values=values)


def kill_cells(grid: Grid, envelopes: IsotopeEnvelopes, config: DeconvolutionConfig) -> np.ndarray:
    """
    Returns a copy of the validity mask with low-intensity cells removed.

    Without isotopes a cell dies when its own data point is below
    `intthresh`. With isotopes it dies when any of its major isotope peaks
    (at least half the cluster maximum) sits on data at or below `intthresh`.
    `intthresh == -1` disables killing.

    Raises:
        EmptySearchSpaceError: If no cell survives.
    """
    valid = grid.valid.copy()
    if config.intthresh != -1:
        if envelopes.identity:
            valid &= (grid.data >= config.intthresh)[:, np.newaxis]
        else:
            cluster_max = envelopes.values.max(axis=2, keepdims=True)
            major = (envelopes.values >= ISOTOPE_KILL_FRACTION * cluster_max) & (envelopes.values > 0)
            starved = major & (grid.data[envelopes.positions] <= config.intthresh)
            valid &= ~starved.any(axis=2)

    if not valid.any():
        raise EmptySearchSpaceError(
            f"No grid cell survives the intensity threshold {config.intthresh}.", scan_id=grid.scan_id)
    logger.debug("%d of %d valid cells survive the intensity threshold",
                 int(valid.sum()), int(grid.valid.sum()))
    return valid


def monoisotopic_to_average(blur: np.ndarray, envelopes: IsotopeEnvelopes) -> np.ndarray:
    """Moves each cell's amplitude onto its isotope peaks, within the same charge column."""
    if envelopes.identity:
        return blur.copy()
    numz = blur.shape[1]
    columns = np.broadcast_to(np.arange(numz)[np.newaxis, :, np.newaxis], envelopes.positions.shape)
    averaged = np.zeros_like(blur)
    np.add.at(averaged, (envelopes.positions, columns), blur[:, :, np.newaxis] * envelopes.values)
    return averaged
