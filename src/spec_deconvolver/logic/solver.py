"""
The iterative Richardson-Lucy solver with a smoothing prior.

The solver runs as an explicit state machine:

    INIT -> BASELINE_SUBTRACT -> ITERATE -> CUTOFF_PRUNE -> RECONVOLVE -> DONE

`step` performs exactly one round and can be driven by hand from an
`IterationRecord`, which is how the tests exercise single iterations.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np
from scipy import ndimage

from ..config import BaselineMode, DeconvolutionConfig, IsotopeMode
from ..core.constants import (BASELINE_MEDIAN_WINDOW, BASELINE_REFINEMENTS, BLUR_CUTOFF,
                              EMPTY_GRID_CONVERGENCE, SIM_FLOOR)
from ..core.errors import EmptySearchSpaceError, NumericInstabilityError
from .envelopes import IsotopeEnvelopes, kill_cells, monoisotopic_to_average
from .grid import Grid
from .kernels import PeakShapeKernel
from .smoothing import SmoothingOperator

logger = logging.getLogger(__name__)


class SolverState(Enum):
    INIT = "init"
    BASELINE_SUBTRACT = "baseline_subtract"
    ITERATE = "iterate"
    CUTOFF_PRUNE = "cutoff_prune"
    RECONVOLVE = "reconvolve"
    DONE = "done"


@dataclass
class IterationRecord:
    """
    State of the solver after `iteration` rounds.

    Attributes:
        iteration: Number of completed rounds.
        blur: The (lengthmz x numz) amplitude grid.
        residual: Sum of squared differences between data and simulation.
        convergence: Relative change of `blur` in the last round.
        baseline: Tracked baseline per m/z, if any.
        noise: Absolute data/simulation mismatch per m/z, if a baseline is tracked.
    """
    iteration: int
    blur: np.ndarray
    residual: float = float("nan")
    convergence: float = float("nan")
    baseline: Optional[np.ndarray] = None
    noise: Optional[np.ndarray] = None


@dataclass
class SolverResult:
    blur: np.ndarray
    newblur: np.ndarray
    fitdat: np.ndarray
    baseline: Optional[np.ndarray]
    error: float
    rsquared: float
    iterations: int
    convergence: float
    valid: np.ndarray
    blurmax: float
    newblurmax: float
    history: List[Tuple[int, float, float]] = field(default_factory=list)


# --- Baseline helpers ---

def _reflect(index: np.ndarray, length: int) -> np.ndarray:
    index = np.where(index < 0, -index, index)
    index = np.where(index >= length, 2 * (length - 1) - index, index)
    return np.clip(index, 0, length - 1)


def midblur_baseline(baseline: np.ndarray, mult: int = 0) -> np.ndarray:
    """
    Lower-envelope filter: each point becomes the mean of the lower half of
    the sorted values in a strided window around it.
    """
    length = len(baseline)
    if mult == 0:
        mult = length // 400
    mult = max(mult, 1)
    offsets = np.arange(-BASELINE_MEDIAN_WINDOW, BASELINE_MEDIAN_WINDOW) * mult
    index = _reflect(np.arange(length)[:, np.newaxis] + offsets[np.newaxis, :], length)
    window = np.sort(baseline[index], axis=1)
    return window[:, :BASELINE_MEDIAN_WINDOW].mean(axis=1)


def blur_baseline(baseline: np.ndarray, mz: np.ndarray, mzsig: float, filterwidth: int) -> np.ndarray:
    """Boxcar filter with a stride of about two peak widths."""
    length = len(baseline)
    if length < 2:
        return baseline.copy()
    spacing = np.diff(mz)
    spacing = np.concatenate(([spacing[0]], spacing))
    mult = np.maximum((2 * mzsig / spacing).astype(np.int64), 1)
    offsets = np.arange(-filterwidth, filterwidth)
    index = _reflect(np.arange(length)[:, np.newaxis] + offsets[np.newaxis, :] * mult[:, np.newaxis], length)
    return baseline[index].sum(axis=1) / (2 * filterwidth + 1)


def deconvolve_baseline(data: np.ndarray, baseline: np.ndarray) -> np.ndarray:
    """One refinement of a multiplicative baseline estimate under `data`."""
    baseline = midblur_baseline(baseline, 0)
    baseline = midblur_baseline(baseline, 5)
    ratio = baseline.copy()
    usable = (ratio != 0) & (data >= 0)
    ratio[usable] = data[usable] / ratio[usable]
    ratio = midblur_baseline(ratio, 0)
    ratio = midblur_baseline(ratio, 5)
    return baseline * ratio


# --- Per-round transforms ---

def softargmax(blur: np.ndarray, valid: np.ndarray, beta: float) -> np.ndarray:
    """
    Sharpens the charge distribution at every m/z while keeping its sum:
    ``exp(beta * b) * sum(b) / sum(exp(beta * b))`` over the valid cells.
    """
    masked = np.where(valid, blur, -np.inf)
    top = masked.max(axis=1, keepdims=True)
    top = np.where(np.isfinite(top), top, 0.0)
    weights = np.where(valid, np.exp(beta * (masked - top)), 0.0)
    norm = weights.sum(axis=1, keepdims=True)
    total = np.where(valid, blur, 0.0).sum(axis=1, keepdims=True)
    factor = np.divide(total, norm, out=np.zeros_like(total), where=norm > 0)
    return weights * factor


def point_smoothing(blur: np.ndarray, valid: np.ndarray, width: int) -> np.ndarray:
    """Moving average of half width `width` points along m/z."""
    smoothed = ndimage.uniform_filter1d(blur, size=2 * width + 1, axis=0, mode='constant')
    return np.where(valid, smoothed, 0.0)


def charge_scaling(blur: np.ndarray, charges: np.ndarray) -> np.ndarray:
    """Divides amplitudes by charge, for detectors whose response grows with z."""
    return blur / np.abs(charges)[np.newaxis, :]


def fit_error(data: np.ndarray, fitdat: np.ndarray) -> tuple[float, float]:
    """Returns the squared error of the fit and its R^2."""
    error = float(np.sum(np.square(data - fitdat)))
    total = float(np.sum(np.square(data - data.mean())))
    rsquared = 1.0 - error / total if total > 0 else 0.0
    return error, rsquared


class DeconvolutionSolver:
    """
    Iterates one spectrum's amplitude grid to convergence.

    The peak-shape kernel passed in is the working (inflated) one; `final_kernel`
    is used for the fit and the reconvolution and defaults to it.
    """

    def __init__(self, grid: Grid, envelopes: IsotopeEnvelopes, kernel: PeakShapeKernel,
                 operator: SmoothingOperator, config: DeconvolutionConfig,
                 final_kernel: Optional[PeakShapeKernel] = None):
        self.grid = grid
        self.envelopes = envelopes
        self.kernel = kernel
        self.final_kernel = final_kernel or kernel
        self.operator = operator
        self.config = config
        self.state = SolverState.INIT
        self.valid = grid.valid
        self.data = grid.data
        self.baseline: Optional[np.ndarray] = None
        self.betafactor = max(1.0, float(grid.data.max()))

    @property
    def tracking_baseline(self) -> bool:
        return self.config.baseline == BaselineMode.TRACK and self.baseline is not None

    def initialise(self) -> IterationRecord:
        """
        Seeds the amplitude grid and removes low-intensity cells.

        Raises:
            EmptySearchSpaceError: If no signal survives.
        """
        self.state = SolverState.INIT
        self.valid = kill_cells(self.grid, self.envelopes, self.config)
        numz = self.grid.numz

        seed = self.grid.data / (numz + 2)
        if self.envelopes.identity:
            blur = np.where(self.valid, seed[:, np.newaxis], 0.0)
        else:
            blur = np.where(self.valid, 1.0, 0.0)
        if not np.any(blur > 0) or not np.any(self.grid.data > 0):
            raise EmptySearchSpaceError("No signal survives initialisation.", scan_id=self.grid.scan_id)

        if self.config.baseline != BaselineMode.NONE:
            self.baseline = seed.copy()
        return IterationRecord(iteration=0, blur=blur, baseline=self.baseline)

    def subtract_baseline(self) -> None:
        """Estimates the baseline before iterating, and removes it in SUBTRACT mode."""
        self.state = SolverState.BASELINE_SUBTRACT
        if self.baseline is None:
            return
        if self.config.mzsig == 0:
            logger.warning("Ignoring baseline subtraction because the peak width is 0")
            self.baseline = None
            return

        self.baseline = deconvolve_baseline(self.grid.data, self.baseline)
        if self.config.baseline == BaselineMode.SUBTRACT:
            for _ in range(BASELINE_REFINEMENTS):
                self.baseline = deconvolve_baseline(self.grid.data, self.baseline)
            self.data = np.clip(self.grid.data - np.clip(self.baseline, 0.0, None), 0.0, None)

    def simulate(self, blur: np.ndarray, kernel: Optional[PeakShapeKernel] = None,
                 baseline: Optional[np.ndarray] = None) -> np.ndarray:
        """The m/z spectrum implied by an amplitude grid."""
        kernel = kernel or self.kernel
        simulated = kernel.convolve(self.envelopes.scatter(blur))
        if baseline is not None:
            simulated = simulated + baseline
        return simulated

    def step(self, record: IterationRecord) -> IterationRecord:
        """
        Runs one round and returns the next record.

        Raises:
            NumericInstabilityError: If the update produces NaN or infinity.
        """
        config = self.config
        iteration = record.iteration + 1
        blur = record.blur
        if record.iteration > 0:
            if config.beta > 0:
                blur = softargmax(blur, self.valid, config.beta / self.betafactor)
            if config.psig >= 1:
                blur = point_smoothing(blur, self.valid, int(config.psig))

        baseline = record.baseline
        if self.tracking_baseline:
            baseline = blur_baseline(baseline, self.grid.mz, abs(config.peak_sigma), config.filterwidth)

        # (a) simulate
        simulated = self.simulate(blur, baseline=baseline if self.tracking_baseline else None)
        # (b) ratio of observed to simulated
        with np.errstate(divide='ignore', invalid='ignore'):
            ratio = np.where(simulated > SIM_FLOOR, self.data / simulated, 0.0)
        if config.true_rl:
            ratio = self.kernel.correlate(ratio)
        # (c) multiplicative correction
        updated = np.where(self.valid, blur * self.envelopes.gather(ratio), 0.0)
        if not np.all(np.isfinite(updated)):
            raise NumericInstabilityError(
                f"Non-finite amplitudes in iteration {iteration}.", iteration=iteration,
                scan_id=self.grid.scan_id)
        # (d) smoothing prior
        updated = self.operator.apply(updated)
        if not np.all(np.isfinite(updated)):
            raise NumericInstabilityError(
                f"Non-finite amplitudes after smoothing in iteration {iteration}.", iteration=iteration,
                scan_id=self.grid.scan_id)
        # (e) baseline tracking
        noise = None
        if self.tracking_baseline:
            baseline = baseline * blur_baseline(ratio, self.grid.mz, abs(config.peak_sigma), config.filterwidth)
            noise = np.abs(self.data - simulated)
        # (f) accounting
        residual = float(np.sum(np.square(self.data - simulated)))
        total = float(updated[self.valid].sum())
        if total != 0:
            convergence = float(np.sum(np.square(updated - record.blur)[self.valid])) / total
        else:
            logger.warning("m/z vs. charge grid is zero at iteration %d", iteration)
            convergence = EMPTY_GRID_CONVERGENCE

        return IterationRecord(iteration=iteration, blur=updated, residual=residual,
                               convergence=convergence, baseline=baseline, noise=noise)

    def iterate(self, record: IterationRecord) -> tuple[IterationRecord, List[Tuple[int, float, float]]]:
        self.state = SolverState.ITERATE
        history = []
        below_tolerance = False
        for _ in range(self.config.numit):
            record = self.step(record)
            history.append((record.iteration, record.residual, record.convergence))
            logger.debug("Iteration %d: convergence %g", record.iteration, record.convergence)
            if record.convergence < self.config.conv_tol:
                if below_tolerance and self.config.early_stop:
                    logger.debug("Converged in %d iterations", record.iteration)
                    break
                below_tolerance = True
            else:
                below_tolerance = False
        return record, history

    def finish(self, record: IterationRecord, history) -> SolverResult:
        config = self.config

        self.state = SolverState.CUTOFF_PRUNE
        blur = record.blur.copy()
        blurmax = float(blur.max())
        if blurmax != 0:
            blur[blur < blurmax * BLUR_CUTOFF] = 0.0

        self.state = SolverState.RECONVOLVE
        baseline = record.baseline if self.tracking_baseline else None
        fitdat = self.simulate(blur, kernel=self.final_kernel, baseline=baseline)
        error, rsquared = fit_error(self.data, fitdat)
        if config.intthresh != -1:
            empty = (self.grid.data[:-1] == 0) & (self.grid.data[1:] == 0)
            fitdat[:-1][empty] = 0.0
            fitdat[1:][empty] = 0.0

        if config.charge_scaling:
            blur = charge_scaling(blur, self.grid.charges)
        if config.isotopemode == IsotopeMode.AVERAGE:
            blur = monoisotopic_to_average(blur, self.envelopes)

        # The working kernel only differs from the final one when inflated.
        if config.mzsig != 0 and config.peakshapeinflate != 1:
            newblur = self.final_kernel.reconvolve(blur, self.valid)
        else:
            newblur = np.where(self.valid, blur, 0.0)
        newblurmax = float(newblur.max()) if newblur.size else 0.0

        self.state = SolverState.DONE
        return SolverResult(blur=blur, newblur=newblur, fitdat=fitdat, baseline=baseline,
                            error=error, rsquared=rsquared, iterations=record.iteration,
                            convergence=record.convergence, valid=self.valid,
                            blurmax=blurmax, newblurmax=newblurmax, history=history)

    def run(self) -> SolverResult:
        record = self.initialise()
        self.subtract_baseline()
        record.baseline = self.baseline
        record, history = self.iterate(record)
        result = self.finish(record, history)
        logger.info("Solver finished after %d iterations, convergence %g, R^2 %.4f",
                    result.iterations, result.convergence, result.rsquared)
        return result
