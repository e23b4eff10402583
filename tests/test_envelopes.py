import unittest

import numpy as np
import pytest

from spec_deconvolver.config import DeconvolutionConfig, IsotopeMode
from spec_deconvolver.core.errors import EmptySearchSpaceError
from spec_deconvolver.core.isotopes import IsotopeCalculator
from spec_deconvolver.core.types import SpectrumInput
from spec_deconvolver.logic.envelopes import (build_envelopes, identity_envelopes, kill_cells,
                                              monoisotopic_to_average)
from spec_deconvolver.logic.grid import build_grid

# One "atom" per 1000 Da, with a 1% heavy isotope one neutron up.
HEAVY_TABLE = {'X': {0: (10.0, 1.0), 10: (10.0, 0.99), 11: (11.0, 0.01)}}


@pytest.fixture
def calculator():
    return IsotopeCalculator(abundance_table=HEAVY_TABLE, composition={'X': 1.0}, residue_mass=1000.0)


@pytest.fixture
def grid():
    mz = np.arange(990.0, 1010.0, 0.5)
    intensity = np.linspace(1.0, 2.0, len(mz))
    config = DeconvolutionConfig(startz=1, endz=1, adductmass=0.0)
    return build_grid(SpectrumInput(mz=mz, intensity=intensity), config)


@pytest.fixture
def config():
    return DeconvolutionConfig(startz=1, endz=1, adductmass=0.0, isotopemode=IsotopeMode.MONOISOTOPIC,
                               isotope_mass_step=1.0)


def test_envelope_positions_and_values(grid, config, calculator):
    envelopes = build_envelopes(grid, config, calculator)
    assert envelopes.isolength == 2
    np.testing.assert_allclose(envelopes.values.sum(axis=2), 1.0)
    # 1.0026 m/z above mz[0] is two points up on a 0.5 spaced axis.
    assert envelopes.positions[0, 0, 0] == 0
    assert envelopes.positions[0, 0, 1] == 2
    np.testing.assert_allclose(envelopes.values[0, 0], [1.0 / 1.0101, 0.0101 / 1.0101], rtol=1e-3)


def test_isotopes_past_the_axis_are_dropped(grid, config, calculator):
    envelopes = build_envelopes(grid, config, calculator)
    last = grid.lengthmz - 1
    np.testing.assert_allclose(envelopes.values[last, 0], [1.0, 0.0])
    assert envelopes.positions[last, 0, 1] == last


def test_scatter_and_gather_are_adjoint(grid, config, calculator):
    envelopes = build_envelopes(grid, config, calculator)
    rng = np.random.default_rng(3)
    blur = rng.uniform(0, 1, (grid.lengthmz, grid.numz))
    profile = rng.uniform(0, 1, grid.lengthmz)
    assert np.dot(envelopes.scatter(blur), profile) == pytest.approx(np.sum(blur * envelopes.gather(profile)))
    assert envelopes.scatter(blur).sum() == pytest.approx(blur.sum())


def test_isotopes_off_gives_identity(grid):
    envelopes = build_envelopes(grid, DeconvolutionConfig(startz=1, endz=1, adductmass=0.0))
    assert envelopes.identity
    blur = np.arange(grid.lengthmz, dtype=float)[:, np.newaxis]
    np.testing.assert_allclose(envelopes.scatter(blur), blur[:, 0])


def test_monoisotopic_to_average_conserves_amplitude(grid, config, calculator):
    envelopes = build_envelopes(grid, config, calculator)
    blur = np.ones((grid.lengthmz, grid.numz))
    averaged = monoisotopic_to_average(blur, envelopes)
    assert averaged.sum() == pytest.approx(blur.sum())
    assert averaged[0, 0] < blur[0, 0]


class TestKillCells(unittest.TestCase):

    def setUp(self):
        mz = np.arange(100.0, 110.0, 1.0)
        intensity = np.array([0.0, 1.0, 5.0, 0.2, 3.0, 0.0, 0.0, 4.0, 0.6, 1.0])
        self.grid = build_grid(SpectrumInput(mz=mz, intensity=intensity),
                               DeconvolutionConfig(startz=1, endz=1, adductmass=0.0))
        self.envelopes = identity_envelopes(self.grid)

    def test_cells_below_threshold_die(self):
        config = DeconvolutionConfig(startz=1, endz=1, intthresh=0.5)
        valid = kill_cells(self.grid, self.envelopes, config)
        np.testing.assert_array_equal(valid[:, 0], self.grid.data >= 0.5)

    def test_minus_one_disables_killing(self):
        config = DeconvolutionConfig(startz=1, endz=1, intthresh=-1)
        valid = kill_cells(self.grid, self.envelopes, config)
        np.testing.assert_array_equal(valid, self.grid.valid)

    def test_nothing_survives(self):
        config = DeconvolutionConfig(startz=1, endz=1, intthresh=100.0)
        with self.assertRaises(EmptySearchSpaceError):
            kill_cells(self.grid, self.envelopes, config)


def test_isotope_kill_uses_major_peaks(config, calculator):
    mz = np.arange(990.0, 1000.0, 0.5)
    intensity = np.ones(len(mz))
    intensity[4] = 0.0
    grid = build_grid(SpectrumInput(mz=mz, intensity=intensity), config)
    envelopes = build_envelopes(grid, config, calculator)
    valid = kill_cells(grid, envelopes, config)
    # The monoisotopic peak is major; the 1% heavy isotope is not.
    assert not valid[4, 0]
    assert valid[2, 0]
    assert valid.sum() == grid.lengthmz - 1


if __name__ == '__main__':
    unittest.main()
