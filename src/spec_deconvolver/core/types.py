from dataclasses import dataclass, field
from typing import Dict, List, Optional
import numpy as np

from .errors import ConfigurationError


@dataclass
class SpectrumInput:
    """
    Represents a raw mass spectrum handed to the engine.

    Attributes:
        mz: A numpy array of strictly increasing m/z values.
        intensity: A numpy array of non-negative intensity values.
        precursor_mz: Optional isolation m/z used to seed the charge search.
        scan_id: Optional identifier carried into error reports.
    """
    mz: np.ndarray
    intensity: np.ndarray
    precursor_mz: Optional[float] = None
    scan_id: Optional[str] = None

    def __post_init__(self):
        self.mz = np.asarray(self.mz, dtype=np.float64)
        self.intensity = np.asarray(self.intensity, dtype=np.float64)

    def validate(self) -> None:
        """Raises ConfigurationError if the arrays cannot be deconvolved."""
        if self.mz.ndim != 1 or self.intensity.ndim != 1:
            raise ConfigurationError("m/z and intensity must be 1-D arrays.", scan_id=self.scan_id)
        if len(self.mz) != len(self.intensity):
            raise ConfigurationError(
                f"m/z and intensity lengths differ ({len(self.mz)} vs {len(self.intensity)}).",
                scan_id=self.scan_id)
        if len(self.mz) < 2:
            raise ConfigurationError("At least two data points are required.", scan_id=self.scan_id)
        if not np.all(np.isfinite(self.mz)) or not np.all(np.isfinite(self.intensity)):
            raise ConfigurationError("Input contains NaN or infinite values.", scan_id=self.scan_id)
        steps = np.diff(self.mz)
        if np.any(steps <= 0):
            first_bad = int(np.argmax(steps <= 0))
            raise ConfigurationError(
                f"m/z values must be strictly increasing: {self.mz[first_bad]} followed by {self.mz[first_bad + 1]}.",
                scan_id=self.scan_id)
        if np.any(self.intensity < 0):
            raise ConfigurationError("Intensities must be non-negative.", scan_id=self.scan_id)
        if self.precursor_mz is not None and not self.precursor_mz > 0:
            raise ConfigurationError("Precursor m/z must be positive.", scan_id=self.scan_id)


@dataclass
class MassSpectrum:
    """
    The deconvolved mass axis.

    Attributes:
        mass: Evenly spaced neutral masses.
        intensity: Accumulated intensity per mass bin.
        grid: (mass x charge) breakdown of `intensity`.
    """
    mass: np.ndarray
    intensity: np.ndarray
    grid: np.ndarray
    fallback: bool = False


@dataclass
class DetectedPeak:
    """
    A peak found on the mass axis.

    Attributes:
        mass: Neutral mass of the apex.
        intensity: Apex intensity (after peak normalisation).
        fwhm_low: Mass where the intensity first drops below half maximum on the left.
        fwhm_high: Same on the right.
        bad: True if a neighbouring apex was reached before half maximum.
        score: Composite quality score in [0, 1], higher is better.
        area: Value extracted according to the configured extraction mode.
        components: The individual factors making up `score`.
    """
    mass: float
    intensity: float
    fwhm_low: float
    fwhm_high: float
    bad: bool
    score: float = 0.0
    area: float = 0.0
    components: Dict[str, float] = field(default_factory=dict)

    @property
    def fwhm(self) -> float:
        return self.fwhm_high - self.fwhm_low


@dataclass
class DeconvolutionResult:
    """
    Everything returned for one deconvolved spectrum.
    """
    mass_spectrum: MassSpectrum
    peaks: List[DetectedPeak]
    charges: np.ndarray
    fit: np.ndarray
    error: float
    rsquared: float
    uniscore: float
    iterations: int
    convergence: float
    scan_id: Optional[str] = None

    @property
    def mass_axis(self) -> np.ndarray:
        return self.mass_spectrum.mass

    @property
    def mass_intensity(self) -> np.ndarray:
        return self.mass_spectrum.intensity

    @property
    def mass_grid(self) -> np.ndarray:
        return self.mass_spectrum.grid

    def mass_pairs(self) -> np.ndarray:
        """Returns the mass axis as an (N, 2) array of (mass, intensity)."""
        return np.column_stack((self.mass_spectrum.mass, self.mass_spectrum.intensity))
