import threading
from typing import Dict, Mapping, Optional

import numpy as np
from pyteomics.mass import nist_mass

from .constants import (AVERAGINE_COMPOSITION, AVERAGINE_MASS,
                        ISOTOPE_MASS_DIFF, ISOTOPE_RELATIVE_CUTOFF)

# Abundances below this fraction of the running maximum are discarded while
# convolving element distributions, which keeps large molecules tractable.
_TRIM_TOLERANCE = 1e-12


def _element_pattern(isotopes: Mapping) -> np.ndarray:
    """
    Converts one element entry of a nist_mass style table into an abundance
    vector indexed by the number of extra neutrons over the lightest isotope.
    """
    numbers = sorted(k for k in isotopes if k != 0)
    if not numbers:
        return np.ones(1)
    lightest = numbers[0]
    pattern = np.zeros(numbers[-1] - lightest + 1)
    for number in numbers:
        pattern[number - lightest] += isotopes[number][1]
    total = pattern.sum()
    if total <= 0:
        return np.ones(1)
    return pattern / total


def _trim(start: int, pattern: np.ndarray) -> tuple[int, np.ndarray]:
    keep = np.nonzero(pattern > pattern.max() * _TRIM_TOLERANCE)[0]
    return start + keep[0], pattern[keep[0]:keep[-1] + 1]


def _convolve(a: tuple[int, np.ndarray], b: tuple[int, np.ndarray]) -> tuple[int, np.ndarray]:
    return _trim(a[0] + b[0], np.convolve(a[1], b[1]))


def _power(pattern: np.ndarray, count: int) -> tuple[int, np.ndarray]:
    """Distribution of `count` independent atoms, by repeated squaring."""
    result = (0, np.ones(1))
    base = _trim(0, pattern)
    while count > 0:
        if count & 1:
            result = _convolve(result, base)
        count >>= 1
        if count:
            base = _convolve(base, base)
    return result


class IsotopeCalculator:
    """
    Calculates the theoretical isotopic distribution of a given mass from the
    'averagine' composition and a per-element isotope abundance table.

    The abundance table is read-only after construction and the distribution
    cache is guarded by a lock, so one instance can be shared by threads.
    """

    def __init__(self, abundance_table: Optional[Mapping] = None,
                 composition: Optional[Dict[str, float]] = None,
                 residue_mass: float = AVERAGINE_MASS):
        table = nist_mass if abundance_table is None else abundance_table
        self.composition = dict(AVERAGINE_COMPOSITION if composition is None else composition)
        self.residue_mass = residue_mass
        self._patterns = {element: _element_pattern(table[element]) for element in self.composition}
        self._cache: Dict[tuple, tuple] = {}
        self._lock = threading.Lock()

    def atom_counts(self, mass: float) -> Dict[str, int]:
        """Averagine atom counts scaled to `mass`."""
        residues = mass / self.residue_mass
        return {element: int(round(per_residue * residues))
                for element, per_residue in self.composition.items()}

    def neutron_distribution(self, mass: float) -> tuple[np.ndarray, np.ndarray]:
        """
        Returns (neutron_offsets, relative_abundances) for `mass`, with the
        most abundant peak normalised to 1 and peaks below the relative cutoff
        removed.
        """
        result = (0, np.ones(1))
        for element, count in self.atom_counts(mass).items():
            if count > 0:
                result = _convolve(result, _power(self._patterns[element], count))

        start, pattern = result
        pattern = pattern / pattern.max()
        keep = np.nonzero(pattern >= ISOTOPE_RELATIVE_CUTOFF)[0]
        return start + keep, pattern[keep]

    def get_distribution(self, mass: float, num_peaks: Optional[int] = None) -> tuple[list[tuple[float, float]], float]:
        """
        Calculates the isotopic distribution for a given mass.

        Args:
            mass: The mass of the molecule.
            num_peaks: Optional cap on the number of peaks returned; the most
                abundant peaks are kept.

        Returns:
            A tuple containing:
            - A list of (mass_offset, relative_intensity) tuples, offsets
              measured from the monoisotopic peak.
            - The mass offset of the most abundant isotope.
        """
        if mass <= 0:
            return [(0.0, 1.0)], 0.0

        key = (round(float(mass), 6), num_peaks)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return list(cached[0]), cached[1]

        offsets, values = self.neutron_distribution(mass)
        if num_peaks is not None and len(values) > num_peaks:
            top = np.sort(np.argsort(values)[::-1][:num_peaks])
            offsets, values = offsets[top], values[top]

        mass_offsets = offsets * ISOTOPE_MASS_DIFF
        most_abundant_offset = float(mass_offsets[np.argmax(values)])
        distribution = [(float(o), float(v)) for o, v in zip(mass_offsets, values)]

        with self._lock:
            self._cache[key] = (tuple(distribution), most_abundant_offset)
        return distribution, most_abundant_offset


# Singleton instance to be used across the application
isotope_calculator = IsotopeCalculator()
