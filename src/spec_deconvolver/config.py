import math
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Optional, Tuple

import numpy as np

from .core.constants import FWHM_TO_SIGMA, PROTON_MASS
from .core.errors import ConfigurationError

# Upper bound on the number of charge states derived from a precursor m/z.
MAX_AUTO_CHARGES = 200


class PeakShape(IntEnum):
    GAUSSIAN = 0
    LORENTZIAN = 1
    SPLIT_GL = 2


class IsotopeMode(IntEnum):
    OFF = 0
    MONOISOTOPIC = 1
    AVERAGE = 2


class BaselineMode(IntEnum):
    NONE = 0
    # Track a baseline alongside the amplitudes every iteration.
    TRACK = 1
    # Estimate a baseline once and subtract it before iterating.
    SUBTRACT = 2


class SmoothingMode(str, Enum):
    GEOMETRIC = "geometric"
    LINEAR = "linear"


class Projection(str, Enum):
    INTEGRATE = "integrate"
    INTERPOLATE = "interpolate"


@dataclass(frozen=True)
class DeconvolutionConfig:
    """
    Immutable parameter record shared by every stage of the engine.

    Widths are in m/z (mzsig) or mass units (massbins, peakwin, mtabsig).
    `mzsig` is the peak full width at half maximum; `peak_sigma` converts it
    to the width parameter of the peak shape function.
    """
    # Charge search space
    startz: int = 1
    endz: Optional[int] = 100
    nativezub: float = 100.0
    nativezlb: float = -200.0
    adductmass: float = PROTON_MASS

    # Mass search space and mass axis
    masslb: float = 100.0
    massub: float = 5_000_000.0
    massbins: float = 100.0
    fixed_mass_axis: bool = False
    test_masses: Tuple[float, ...] = ()
    mtabsig: float = 0.0

    # Peak shape
    mzsig: float = 1.0
    psfun: PeakShape = PeakShape.GAUSSIAN
    peakshapeinflate: float = 1.0
    psthresh: float = 6.0
    speedy: bool = False
    max_kernel_cells: int = 50_000_000

    # Smoothing prior
    zsig: float = 1.0
    msig: float = 0.0
    molig: float = 0.0
    smoothing: SmoothingMode = SmoothingMode.GEOMETRIC
    zerolog: float = -12.0
    beta: float = 0.0
    psig: float = 0.0

    # Iteration
    numit: int = 100
    early_stop: bool = True
    conv_tol: float = 1e-6
    intthresh: float = 0.0
    true_rl: bool = False
    baseline: BaselineMode = BaselineMode.NONE
    filterwidth: int = 20
    charge_scaling: bool = False

    # Isotopes
    isotopemode: IsotopeMode = IsotopeMode.OFF
    isotope_mass_step: float = 10.0

    # Outputs
    projection: Projection = Projection.INTEGRATE
    use_reconvolved: bool = True

    # Peak detection and scoring
    peakwin: float = 500.0
    peakthresh: float = 0.1
    peaknorm: int = 1
    exchoice: int = 0
    exwindow: float = 0.0
    exthresh: float = 10.0
    score_fwhm_ref: Optional[float] = None
    score_threshold: float = 0.0

    def __post_init__(self):
        # Accept plain values for the enum fields.
        object.__setattr__(self, 'psfun', PeakShape(self.psfun))
        object.__setattr__(self, 'isotopemode', IsotopeMode(self.isotopemode))
        object.__setattr__(self, 'baseline', BaselineMode(self.baseline))
        object.__setattr__(self, 'smoothing', SmoothingMode(self.smoothing))
        object.__setattr__(self, 'projection', Projection(self.projection))
        object.__setattr__(self, 'test_masses', tuple(float(m) for m in self.test_masses))
        self.validate()

    def validate(self) -> None:
        problems = []
        if self.numit <= 0:
            problems.append("numit must be positive")
        if self.startz == 0 or self.endz == 0:
            problems.append("charge states cannot be 0")
        if self.endz is not None and self.startz > self.endz:
            problems.append("startz must not exceed endz")
        if not self.massbins > 0:
            problems.append("massbins must be positive")
        if not self.masslb > 0 or not self.massub > 0:
            problems.append("mass bounds must be positive")
        if self.masslb > self.massub:
            problems.append("masslb must not exceed massub")
        if not math.isfinite(self.mzsig) or self.mzsig < 0:
            problems.append("mzsig must be a finite, non-negative FWHM")
        if self.psthresh < 0:
            problems.append("psthresh must be non-negative")
        if not self.peakshapeinflate > 0:
            problems.append("peakshapeinflate must be positive")
        if self.intthresh < 0 and self.intthresh != -1:
            problems.append("intthresh must be non-negative (or -1 to disable)")
        if self.filterwidth < 1:
            problems.append("filterwidth must be at least 1")
        if not self.isotope_mass_step > 0:
            problems.append("isotope_mass_step must be positive")
        if self.peakwin < 0 or self.peakthresh < 0:
            problems.append("peak detection window and threshold must be non-negative")
        if self.peaknorm not in (0, 1, 2):
            problems.append("peaknorm must be 0, 1 or 2")
        if self.exchoice not in range(6):
            problems.append("exchoice must be between 0 and 5")
        if self.mtabsig < 0:
            problems.append("mtabsig must be non-negative")
        if self.max_kernel_cells <= 0:
            problems.append("max_kernel_cells must be positive")
        if self.score_fwhm_ref is not None and not self.score_fwhm_ref > 0:
            problems.append("score_fwhm_ref must be positive")
        if self.conv_tol < 0 or self.score_threshold < 0:
            problems.append("tolerances must be non-negative")
        if problems:
            raise ConfigurationError("Invalid configuration: " + "; ".join(problems))

    # --- Derived values ---

    @property
    def peak_sigma(self) -> float:
        """Width parameter of the peak shape function."""
        if self.psfun == PeakShape.GAUSSIAN:
            return self.mzsig / FWHM_TO_SIGMA
        return self.mzsig

    @property
    def threshold(self) -> float:
        """Half width in m/z of the peak-shape convolution window."""
        return self.psthresh * abs(self.peak_sigma) * self.peakshapeinflate

    @property
    def fwhm_reference(self) -> float:
        return self.score_fwhm_ref if self.score_fwhm_ref is not None else 4 * self.massbins

    @property
    def zlength(self) -> int:
        return _kernel_length(self.zsig)

    @property
    def mlength(self) -> int:
        return _kernel_length(self.msig)

    def charges(self, precursor_mz: Optional[float] = None) -> np.ndarray:
        """
        Returns the charge states to search.

        With `endz` unset, the range is derived from the precursor m/z so that
        every charge maps the precursor into [masslb, massub].
        """
        if self.endz is not None:
            return np.arange(self.startz, self.endz + 1)

        if precursor_mz is None:
            raise ConfigurationError("endz is unset and no precursor m/z was given to seed the charge search.")
        unit_mass = precursor_mz - self.adductmass
        if unit_mass <= 0:
            raise ConfigurationError(f"Precursor m/z {precursor_mz} is below the adduct mass.")
        zmin = max(1, self.startz, math.ceil(self.masslb / unit_mass))
        zmax = min(math.floor(self.massub / unit_mass), zmin + MAX_AUTO_CHARGES - 1)
        if zmax < zmin:
            # No charge maps the precursor into the mass range; fall back to
            # the single nearest charge so the grid check reports it.
            zmax = zmin
        return np.arange(zmin, zmax + 1)

    def with_changes(self, **changes) -> "DeconvolutionConfig":
        return replace(self, **changes)


def _kernel_length(sigma: float) -> int:
    if sigma >= 0:
        return 1 + 2 * int(sigma)
    return 1 + 2 * int(3 * abs(sigma) + 0.5)
