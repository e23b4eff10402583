"""
Peak-shape convolution kernels in m/z and the closeness kernel used by the
charge/mass smoothing prior.

Peak-shape kernels are strategies chosen once per spectrum:

* `PeakShape2D` keeps a weight row per source point, so it is exact on
  non-uniform m/z axes.
* `PeakShape1D` keeps a single offset profile sampled at the median spacing,
  which assumes a (locally) linear axis.
* `IdentityKernel` is used when the peak width is zero.

Every source point spreads its amplitude over the window
``[starts[k], ends[k]]`` with weights that sum to one, so convolution
conserves total intensity.
"""
import logging
from dataclasses import dataclass

import numba
import numpy as np

from ..config import DeconvolutionConfig, PeakShape
from ..core.constants import FWHM_TO_SIGMA
from ..core.errors import ConfigurationError
from ..core.indexing import nearest_indices

logger = logging.getLogger(__name__)


# --- Peak shape functions ---

def gaussian(dx, sigma):
    return np.exp(-np.square(dx) / (2.0 * sigma * sigma))


def lorentzian(dx, fwhm):
    half = fwhm / 2.0
    return half * half / (np.square(dx) + half * half)


def split_gaussian_lorentzian(dx, fwhm):
    """Gaussian on the low m/z side of the centre, Lorentzian on the high side."""
    dx = np.asarray(dx, dtype=np.float64)
    return np.where(dx < 0, gaussian(dx, fwhm / FWHM_TO_SIGMA), lorentzian(dx, fwhm))


def peak_shape(dx, width: float, psfun: PeakShape):
    """
    Evaluates the peak shape at offset `dx` from the centre.

    `width` is the Gaussian sigma for GAUSSIAN and the FWHM otherwise, which
    is what `DeconvolutionConfig.peak_sigma` returns. Peak height is 1.
    """
    if psfun == PeakShape.GAUSSIAN:
        return gaussian(dx, width)
    if psfun == PeakShape.LORENTZIAN:
        return lorentzian(dx, width)
    return split_gaussian_lorentzian(dx, width)


# --- Convolution windows ---

@dataclass
class WindowTables:
    starts: np.ndarray
    ends: np.ndarray

    @property
    def maxlength(self) -> int:
        return int((self.ends - self.starts).max()) + 1


def window_tables(mz: np.ndarray, threshold: float) -> WindowTables:
    """
    For every m/z index, the first and last index within `threshold` of it,
    found with the nearest-index search and truncated at the axis edges.

    Raises:
        ConfigurationError: If every window spans the entire axis, meaning
            the threshold leaves no locality to exploit.
    """
    starts = nearest_indices(mz, mz - threshold)
    ends = nearest_indices(mz, mz + threshold)
    n = len(mz)
    if n > 1 and np.all(starts == 0) and np.all(ends == n - 1):
        raise ConfigurationError(
            f"Peak-shape window of +/-{threshold:g} m/z spans the entire axis; "
            "lower psthresh or the peak width.")
    return WindowTables(starts=starts, ends=ends)


# --- numba inner loops ---

@numba.jit(nopython=True)
def _scatter_2d(x, starts, ends, weights):
    out = np.zeros(x.shape[0])
    for k in range(x.shape[0]):
        if x[k] == 0.0:
            continue
        start = starts[k]
        for o in range(ends[k] - start + 1):
            out[start + o] += x[k] * weights[k, o]
    return out


@numba.jit(nopython=True)
def _gather_2d(x, starts, ends, weights):
    out = np.zeros(x.shape[0])
    for k in range(x.shape[0]):
        start = starts[k]
        total = 0.0
        for o in range(ends[k] - start + 1):
            total += x[start + o] * weights[k, o]
        out[k] = total
    return out


@numba.jit(nopython=True)
def _reconvolve_2d(blur, valid, starts, ends, weights):
    lengthmz, numz = blur.shape
    out = np.zeros((lengthmz, numz))
    for k in range(lengthmz):
        start = starts[k]
        for j in range(numz):
            amplitude = blur[k, j]
            if amplitude == 0.0:
                continue
            for o in range(ends[k] - start + 1):
                out[start + o, j] += amplitude * weights[k, o]
    for i in range(lengthmz):
        for j in range(numz):
            if not valid[i, j]:
                out[i, j] = 0.0
    return out


@numba.jit(nopython=True)
def _scatter_1d(x, starts, ends, profile, centre, norms):
    out = np.zeros(x.shape[0])
    for k in range(x.shape[0]):
        if x[k] == 0.0:
            continue
        scale = x[k] / norms[k]
        for i in range(starts[k], ends[k] + 1):
            out[i] += scale * profile[i - k + centre]
    return out


@numba.jit(nopython=True)
def _gather_1d(x, starts, ends, profile, centre, norms):
    out = np.zeros(x.shape[0])
    for k in range(x.shape[0]):
        total = 0.0
        for i in range(starts[k], ends[k] + 1):
            total += x[i] * profile[i - k + centre]
        out[k] = total / norms[k]
    return out


@numba.jit(nopython=True)
def _reconvolve_1d(blur, valid, starts, ends, profile, centre, norms):
    lengthmz, numz = blur.shape
    out = np.zeros((lengthmz, numz))
    for k in range(lengthmz):
        for j in range(numz):
            amplitude = blur[k, j]
            if amplitude == 0.0:
                continue
            scale = amplitude / norms[k]
            for i in range(starts[k], ends[k] + 1):
                out[i, j] += scale * profile[i - k + centre]
    for i in range(lengthmz):
        for j in range(numz):
            if not valid[i, j]:
                out[i, j] = 0.0
    return out


# --- Kernel strategies ---

class PeakShapeKernel:
    """Common interface of the peak-shape strategies."""
    width: float = 0.0

    def convolve(self, x: np.ndarray) -> np.ndarray:
        """Spreads each point of `x` over its peak shape."""
        raise NotImplementedError

    def correlate(self, x: np.ndarray) -> np.ndarray:
        """Adjoint of `convolve`: collects `x` back through the mirrored shape."""
        raise NotImplementedError

    def reconvolve(self, blur: np.ndarray, valid: np.ndarray) -> np.ndarray:
        """Convolves every charge column of `blur`, keeping only valid cells."""
        raise NotImplementedError


class IdentityKernel(PeakShapeKernel):

    def convolve(self, x):
        return np.array(x, dtype=np.float64)

    def correlate(self, x):
        return np.array(x, dtype=np.float64)

    def reconvolve(self, blur, valid):
        return np.where(valid, blur, 0.0)


class PeakShape2D(PeakShapeKernel):

    def __init__(self, mz: np.ndarray, windows: WindowTables, width: float, psfun: PeakShape):
        self.starts = windows.starts
        self.ends = windows.ends
        self.width = width
        maxlength = windows.maxlength
        targets = self.starts[:, np.newaxis] + np.arange(maxlength)[np.newaxis, :]
        inside = targets <= self.ends[:, np.newaxis]
        dx = mz[np.minimum(targets, len(mz) - 1)] - mz[:, np.newaxis]
        weights = np.where(inside, peak_shape(dx, width, psfun), 0.0)
        self.weights = weights / weights.sum(axis=1, keepdims=True)

    def convolve(self, x):
        return _scatter_2d(np.ascontiguousarray(x, dtype=np.float64), self.starts, self.ends, self.weights)

    def correlate(self, x):
        return _gather_2d(np.ascontiguousarray(x, dtype=np.float64), self.starts, self.ends, self.weights)

    def reconvolve(self, blur, valid):
        return _reconvolve_2d(np.ascontiguousarray(blur, dtype=np.float64), valid,
                              self.starts, self.ends, self.weights)


class PeakShape1D(PeakShapeKernel):

    def __init__(self, mz: np.ndarray, windows: WindowTables, width: float, psfun: PeakShape):
        self.starts = windows.starts
        self.ends = windows.ends
        self.width = width
        index = np.arange(len(mz))
        self.centre = int(max((index - self.starts).max(), (self.ends - index).max()))
        step = float(np.median(np.diff(mz))) if len(mz) > 1 else 1.0
        offsets = np.arange(-self.centre, self.centre + 1)
        self.profile = np.asarray(peak_shape(offsets * step, width, psfun), dtype=np.float64)

        cumulative = np.concatenate(([0.0], np.cumsum(self.profile)))
        self.norms = (cumulative[self.ends - index + self.centre + 1]
                      - cumulative[self.starts - index + self.centre])

    def convolve(self, x):
        return _scatter_1d(np.ascontiguousarray(x, dtype=np.float64), self.starts, self.ends,
                           self.profile, self.centre, self.norms)

    def correlate(self, x):
        return _gather_1d(np.ascontiguousarray(x, dtype=np.float64), self.starts, self.ends,
                          self.profile, self.centre, self.norms)

    def reconvolve(self, blur, valid):
        return _reconvolve_1d(np.ascontiguousarray(blur, dtype=np.float64), valid, self.starts,
                              self.ends, self.profile, self.centre, self.norms)


def build_peak_kernel(mz: np.ndarray, config: DeconvolutionConfig, inflated: bool = True) -> PeakShapeKernel:
    """
    Resolves the peak-shape strategy for this spectrum.

    The window always uses the inflated threshold, so the working and the
    final (`inflated=False`) kernels share their support and only differ in
    width.

    Raises:
        ConfigurationError: If the window spans the whole axis, or the 2-D
            weight table would exceed `max_kernel_cells`.
    """
    if config.mzsig == 0:
        return IdentityKernel()

    windows = window_tables(mz, config.threshold)
    width = abs(config.peak_sigma) * (config.peakshapeinflate if inflated else 1.0)
    if config.speedy:
        kernel = PeakShape1D(mz, windows, width, config.psfun)
    else:
        cells = len(mz) * (windows.maxlength + 1)
        if cells > config.max_kernel_cells:
            raise ConfigurationError(
                f"2-D peak-shape table needs {cells} cells (limit {config.max_kernel_cells}); "
                "use speedy mode or a smaller peak width.")
        kernel = PeakShape2D(mz, windows, width, config.psfun)
    logger.debug("%s kernel, width %g, window length %d",
                 type(kernel).__name__, width, windows.maxlength)
    return kernel


# --- Closeness kernel ---

@dataclass
class ClosenessKernel:
    """
    Joint (mass offset, charge offset) weights of the smoothing prior.

    Entry k pairs `mass_offsets[k]` with `charge_offsets[k]`; `weights` sums
    to 1, as do the individual profiles `mdist` and `zdist`.
    """
    mass_offsets: np.ndarray
    charge_offsets: np.ndarray
    weights: np.ndarray
    mdist: np.ndarray
    zdist: np.ndarray

    @property
    def numclose(self) -> int:
        return len(self.weights)


def _profile(length: int, sigma: float) -> tuple[np.ndarray, np.ndarray]:
    offsets = np.arange(length) - (length - 1) // 2
    if sigma != 0:
        values = np.exp(-np.square(offsets) / (2.0 * sigma * sigma))
    else:
        values = np.ones(length)
    return offsets, values


def build_closeness_kernel(config: DeconvolutionConfig, numz: int) -> ClosenessKernel:
    mlength = config.mlength
    zlength = min(config.zlength, 2 * numz - 1)

    mind, mdist = _profile(mlength, config.msig)
    zind, zdist = _profile(zlength, config.zsig)

    # Mass offsets vary fastest.
    mass_offsets = np.tile(mind, zlength)
    charge_offsets = np.repeat(zind, mlength)
    weights = np.repeat(zdist, mlength) * np.tile(mdist, zlength)

    return ClosenessKernel(
        mass_offsets=mass_offsets,
        charge_offsets=charge_offsets,
        weights=weights / weights.sum(),
        mdist=mdist / mdist.sum(),
        zdist=zdist / zdist.sum(),
    )
