"""
One-spectrum deconvolution pipeline: grid, envelopes, kernels, solver,
mass-axis projection and peak scoring.
"""
import logging
import time
from typing import Optional

import numpy as np

from ..config import DeconvolutionConfig
from ..core.errors import DeconvolutionError
from ..core.isotopes import IsotopeCalculator
from ..core.types import DeconvolutionResult, SpectrumInput
from .envelopes import build_envelopes, kill_cells
from .grid import build_grid
from .kernels import build_closeness_kernel, build_peak_kernel
from .peaks import analyse_peaks
from .smoothing import SmoothingOperator
from .solver import DeconvolutionSolver
from .transforms import project_to_mass_axis

logger = logging.getLogger(__name__)


def deconvolve(spectrum: SpectrumInput, config: DeconvolutionConfig,
               isotope_calculator: Optional[IsotopeCalculator] = None) -> DeconvolutionResult:
    """
    Deconvolves one m/z spectrum into a neutral-mass spectrum.

    Args:
        spectrum: The raw spectrum, with an optional precursor m/z and scan id.
        config: Engine parameters.
        isotope_calculator: Source of isotope distributions; the shared
            averagine calculator is used when omitted.

    Returns:
        A DeconvolutionResult with the mass axis, its per-charge breakdown,
        the scored peaks and the fit diagnostics.

    Raises:
        ConfigurationError: For malformed input or unusable parameters.
        EmptySearchSpaceError: If nothing is left to deconvolve.
        NumericInstabilityError: If the iteration produces NaN or infinity.
    """
    try:
        return _deconvolve(spectrum, config, isotope_calculator)
    except DeconvolutionError as e:
        if e.scan_id is None:
            e.scan_id = spectrum.scan_id
        raise


def _deconvolve(spectrum, config, isotope_calculator):
    start_time = time.time()
    grid = build_grid(spectrum, config)
    logger.info("Deconvolving %s: %d m/z points, charges %d..%d",
                spectrum.scan_id or "spectrum", grid.lengthmz, grid.charges[0], grid.charges[-1])

    envelopes = build_envelopes(grid, config, isotope_calculator)
    valid = kill_cells(grid, envelopes, config)
    closeness = build_closeness_kernel(config, grid.numz)
    operator = SmoothingOperator.build(grid, closeness, config, valid=valid)
    kernel = build_peak_kernel(grid.mz, config, inflated=True)
    final_kernel = build_peak_kernel(grid.mz, config, inflated=False)

    solver = DeconvolutionSolver(grid, envelopes, kernel, operator, config, final_kernel=final_kernel)
    solved = solver.run()

    if config.use_reconvolved:
        amplitudes, ampmax = solved.newblur, solved.newblurmax
    else:
        amplitudes, ampmax = solved.blur, solved.blurmax
    threshold = config.threshold if config.mzsig != 0 else 0.0
    mass_spectrum = project_to_mass_axis(grid, amplitudes, solved.valid, threshold, ampmax, config)

    peaks, global_score = analyse_peaks(mass_spectrum, grid, solver.data, solved.fitdat,
                                        solved.rsquared, config)

    logger.info("Finished %s in %.2f s: %d iterations, %d peaks, R^2 %.4f",
                spectrum.scan_id or "spectrum", time.time() - start_time,
                solved.iterations, len(peaks), solved.rsquared)
    return DeconvolutionResult(
        mass_spectrum=mass_spectrum,
        peaks=peaks,
        charges=grid.charges,
        fit=solved.fitdat,
        error=solved.error,
        rsquared=solved.rsquared,
        uniscore=global_score,
        iterations=solved.iterations,
        convergence=solved.convergence,
        scan_id=spectrum.scan_id,
    )


def deconvolve_arrays(mz, intensity, config: DeconvolutionConfig, precursor_mz: Optional[float] = None,
                      scan_id: Optional[str] = None,
                      isotope_calculator: Optional[IsotopeCalculator] = None) -> DeconvolutionResult:
    """Convenience wrapper taking plain m/z and intensity arrays."""
    spectrum = SpectrumInput(mz=np.asarray(mz), intensity=np.asarray(intensity),
                             precursor_mz=precursor_mz, scan_id=scan_id)
    return deconvolve(spectrum, config, isotope_calculator)
