import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..config import DeconvolutionConfig
from ..core.constants import NATIVE_CHARGE_A, NATIVE_CHARGE_B
from ..core.errors import EmptySearchSpaceError
from ..core.indexing import nearest_indices
from ..core.types import SpectrumInput

logger = logging.getLogger(__name__)


@dataclass
class Grid:
    """
    The (m/z x charge) search space of one spectrum.

    Attributes:
        mz: The m/z axis, length `lengthmz`.
        data: Observed intensity at each m/z.
        charges: Charge state of each column, length `numz`.
        mass_table: Neutral mass implied by each cell, shape (lengthmz, numz).
        valid: Cells allowed to carry amplitude, same shape as `mass_table`.
    """
    mz: np.ndarray
    data: np.ndarray
    charges: np.ndarray
    mass_table: np.ndarray
    valid: np.ndarray
    scan_id: Optional[str] = None

    @property
    def lengthmz(self) -> int:
        return len(self.mz)

    @property
    def numz(self) -> int:
        return len(self.charges)


def predict_native_charge(mass):
    """Empirical charge state of a natively sprayed species of `mass`."""
    return NATIVE_CHARGE_A * np.power(np.maximum(mass, 0.0), NATIVE_CHARGE_B)


def mass_range_mask(mass_table: np.ndarray, config: DeconvolutionConfig) -> np.ndarray:
    return (mass_table >= config.masslb) & (mass_table <= config.massub)


def native_charge_mask(mass_table: np.ndarray, charges: np.ndarray, config: DeconvolutionConfig) -> np.ndarray:
    offset = charges[np.newaxis, :] - predict_native_charge(mass_table)
    return (offset >= config.nativezlb) & (offset <= config.nativezub)


def listed_mass_window_mask(mass_table: np.ndarray, test_masses, window: float) -> np.ndarray:
    """Cells whose mass lies within `window` of any test mass."""
    mask = np.zeros(mass_table.shape, dtype=bool)
    for test_mass in test_masses:
        mask |= np.abs(mass_table - test_mass) <= window
    return mask


def listed_mass_point_mask(mz: np.ndarray, charges: np.ndarray, test_masses, adduct_mass: float) -> np.ndarray:
    """Only the m/z point nearest to each test mass at each charge."""
    mask = np.zeros((len(mz), len(charges)), dtype=bool)
    columns = np.arange(len(charges))
    for test_mass in test_masses:
        target_mz = (test_mass + adduct_mass * charges) / charges
        mask[nearest_indices(mz, target_mz), columns] = True
    return mask


def build_grid(spectrum: SpectrumInput, config: DeconvolutionConfig) -> Grid:
    """
    Builds the search grid and its validity mask.

    Raises:
        ConfigurationError: If the spectrum arrays are malformed.
        EmptySearchSpaceError: If no cell maps to an allowed mass.
    """
    spectrum.validate()
    charges = config.charges(spectrum.precursor_mz)

    mass_table = (spectrum.mz[:, np.newaxis] - config.adductmass) * charges[np.newaxis, :]
    valid = mass_range_mask(mass_table, config)
    valid &= native_charge_mask(mass_table, charges, config)
    if config.test_masses:
        if config.mtabsig > 0:
            valid &= listed_mass_window_mask(mass_table, config.test_masses, config.mtabsig)
        else:
            valid &= listed_mass_point_mask(spectrum.mz, charges, config.test_masses, config.adductmass)

    if not valid.any():
        raise EmptySearchSpaceError(
            f"No (m/z, charge) cell maps into the mass range [{config.masslb}, {config.massub}] "
            f"for charges {charges[0]}..{charges[-1]}.", scan_id=spectrum.scan_id)

    logger.debug("Grid %d x %d, %d valid cells", len(spectrum.mz), len(charges), int(valid.sum()))
    return Grid(mz=spectrum.mz, data=spectrum.intensity, charges=charges,
                mass_table=mass_table, valid=valid, scan_id=spectrum.scan_id)
