import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy import sparse

from ..config import DeconvolutionConfig, SmoothingMode
from ..core.indexing import nearest_indices
from .grid import Grid
from .kernels import ClosenessKernel, peak_shape

logger = logging.getLogger(__name__)


def neighbour_tolerance(mz: np.ndarray, config: DeconvolutionConfig) -> tuple[np.ndarray, np.ndarray]:
    """
    Per m/z index, the peak width used to weight neighbours and how far a
    predicted neighbour may sit from the nearest data point (twice that
    width). Without a peak width, the width is twice the local spacing, at
    most twice the mass bin width.
    """
    if config.mzsig != 0:
        width = np.full(len(mz), abs(config.peak_sigma))
    else:
        lower = np.maximum(np.arange(len(mz)) - 1, 0)
        upper = np.minimum(np.arange(len(mz)) + 1, len(mz) - 1)
        width = 2 * np.abs(mz[upper] - mz[lower])
        width = np.where((width > config.massbins) | (width == 0), 2 * config.massbins, width)
    return 2 * width, width


@dataclass
class SmoothingOperator:
    """
    Sparse neighbour structure of the charge/mass smoothing prior.

    Row r describes valid cell `cells[r]` (flat index ``i * numz + j``):
    `neighbours[r, k]` is the flat index of its k-th neighbour or -1, and
    `weights[r, k]` the normalised weight. Each row sums to 1 and always
    includes the cell itself.
    """
    shape: tuple
    cells: np.ndarray
    neighbours: np.ndarray
    weights: np.ndarray
    mode: SmoothingMode
    zerolog: float

    @classmethod
    def build(cls, grid: Grid, kernel: ClosenessKernel, config: DeconvolutionConfig,
              valid: Optional[np.ndarray] = None) -> "SmoothingOperator":
        valid = grid.valid if valid is None else valid
        numz = grid.numz
        rows, cols = np.nonzero(valid)
        masses = grid.mass_table[rows, cols]
        tolerance, width = neighbour_tolerance(grid.mz, config)
        tolerance, width = tolerance[rows], width[rows]
        shape_width = abs(config.peak_sigma) if config.mzsig != 0 else None

        neighbours = np.full((len(rows), kernel.numclose), -1, dtype=np.int64)
        weights = np.zeros((len(rows), kernel.numclose))
        for k in range(kernel.numclose):
            dm = kernel.mass_offsets[k]
            dz = kernel.charge_offsets[k]
            if dz == 0 and dm * config.molig == 0:
                neighbours[:, k] = rows * numz + cols
                weights[:, k] = kernel.weights[k]
                continue

            target_cols = cols + dz
            in_range = (target_cols >= 0) & (target_cols < numz)
            target_cols = np.clip(target_cols, 0, numz - 1)
            target_z = grid.charges[target_cols]
            in_range &= target_z != 0
            safe_z = np.where(target_z == 0, 1, target_z)

            point = (masses + dm * config.molig + config.adductmass * safe_z) / safe_z
            nearest = nearest_indices(grid.mz, point)
            distance = point - grid.mz[nearest]
            reachable = (in_range
                         & (point >= grid.mz[0] - tolerance) & (point <= grid.mz[-1] + tolerance)
                         & valid[nearest, target_cols]
                         & (np.abs(distance) < tolerance))

            if shape_width is None:
                shape = peak_shape(distance, width, config.psfun)
            else:
                shape = peak_shape(distance, shape_width, config.psfun)
            neighbours[:, k] = np.where(reachable, nearest * numz + target_cols, -1)
            weights[:, k] = np.where(reachable, kernel.weights[k] * shape, 0.0)

        weights /= weights.sum(axis=1, keepdims=True)
        logger.debug("Smoothing operator: %d cells, %.2f neighbours per cell",
                     len(rows), float((neighbours >= 0).sum()) / max(len(rows), 1))
        return cls(shape=(grid.lengthmz, numz), cells=rows * numz + cols,
                   neighbours=neighbours, weights=weights,
                   mode=config.smoothing, zerolog=config.zerolog)

    def apply(self, blur: np.ndarray) -> np.ndarray:
        """Returns the smoothed grid; cells outside the operator are 0."""
        flat = blur.ravel()
        values = np.where(self.neighbours >= 0, flat[np.maximum(self.neighbours, 0)], 0.0)
        smoothed = (self.weights * values).sum(axis=1)
        if self.mode == SmoothingMode.GEOMETRIC:
            present = values > 0
            logs = np.where(present, np.log(np.where(present, values, 1.0)), self.zerolog)
            geometric = np.exp((self.weights * logs).sum(axis=1))
            # Cells without other neighbours, or with nothing around them, keep their value.
            lonely = (self.neighbours >= 0).sum(axis=1) == 1
            smoothed = np.where(lonely | (smoothed == 0), smoothed, geometric)
        out = np.zeros(flat.shape)
        out[self.cells] = smoothed
        return out.reshape(self.shape)

    def to_sparse(self) -> sparse.csr_matrix:
        """The linear form of the operator as a (cells x cells) matrix."""
        size = self.shape[0] * self.shape[1]
        present = self.neighbours >= 0
        row_index = np.broadcast_to(self.cells[:, np.newaxis], self.neighbours.shape)
        return sparse.csr_matrix(
            (self.weights[present], (row_index[present], self.neighbours[present])),
            shape=(size, size))
