import unittest

import numpy as np
import pytest

from spec_deconvolver.config import DeconvolutionConfig, Projection
from spec_deconvolver.logic.grid import Grid
from spec_deconvolver.logic.transforms import (integrate_transform, interpolate_transform,
                                               mass_axis_bounds, project_to_mass_axis)


def make_grid(mz, charges, adduct=0.0):
    mz = np.asarray(mz, dtype=float)
    charges = np.asarray(charges)
    mass_table = (mz[:, np.newaxis] - adduct) * charges[np.newaxis, :]
    return Grid(mz=mz, data=np.ones(len(mz)), charges=charges, mass_table=mass_table,
                valid=np.ones(mass_table.shape, dtype=bool))


class TestIntegrateTransform(unittest.TestCase):

    def setUp(self):
        self.massaxis = np.arange(0.0, 50.0, 1.0)

    def test_exact_bin_mass(self):
        values, grid = integrate_transform(np.array([[20.0]]), np.array([[3.0]]), self.massaxis)
        self.assertEqual(values[20], 3.0)
        self.assertEqual(values.sum(), 3.0)
        self.assertEqual(grid.shape, (50, 1))

    def test_mass_between_bins_is_split(self):
        values, _ = integrate_transform(np.array([[20.5]]), np.array([[2.0]]), self.massaxis)
        self.assertAlmostEqual(values[20], 1.0)
        self.assertAlmostEqual(values[21], 1.0)

    def test_total_is_conserved_including_out_of_range_cells(self):
        rng = np.random.default_rng(9)
        mass_table = rng.uniform(-20, 80, (200, 3))
        amplitudes = rng.uniform(0, 1, (200, 3))
        values, grid = integrate_transform(mass_table, amplitudes, self.massaxis)
        self.assertAlmostEqual(values.sum(), amplitudes.sum())
        np.testing.assert_allclose(grid.sum(axis=0), amplitudes.sum(axis=0))

    def test_single_bin_axis(self):
        values, _ = integrate_transform(np.array([[3.0, 9.0]]), np.array([[1.0, 2.0]]), np.array([5.0]))
        np.testing.assert_allclose(values, [3.0])


def test_interpolation_reproduces_linear_data_at_points_and_midpoints():
    mz = 100.0 + np.arange(20) * 0.5
    amplitudes = (2.0 * mz)[:, np.newaxis]
    massaxis = np.array([102.0, 102.25, 105.5])
    values, _ = interpolate_transform(mz, np.array([1]), 0.0, amplitudes, massaxis)
    np.testing.assert_allclose(values, 2.0 * massaxis)


def test_interpolation_outside_the_axis_is_zero():
    mz = 100.0 + np.arange(20) * 0.5
    amplitudes = np.ones((20, 1))
    values, _ = interpolate_transform(mz, np.array([1]), 0.0, amplitudes, np.array([50.0, 200.0]))
    np.testing.assert_array_equal(values, [0.0, 0.0])


class TestMassAxis(unittest.TestCase):

    def setUp(self):
        self.grid = make_grid(np.arange(100.0, 200.0, 1.0), [1, 2])
        self.config = DeconvolutionConfig(startz=1, endz=2, masslb=100.0, massub=1000.0, massbins=10.0)

    def test_fixed_axis(self):
        config = self.config.with_changes(fixed_mass_axis=True)
        amplitudes = np.ones(self.grid.mass_table.shape)
        massmin, massmax, mlen, fallback = mass_axis_bounds(self.grid, amplitudes, self.grid.valid, 0.0, 1.0, config)
        self.assertEqual((massmin, massmax, mlen, fallback), (100.0, 1000.0, 90, False))

    def test_adaptive_axis_covers_significant_cells(self):
        amplitudes = np.zeros(self.grid.mass_table.shape)
        amplitudes[50, 1] = 1.0
        massmin, massmax, mlen, fallback = mass_axis_bounds(self.grid, amplitudes, self.grid.valid, 1.0, 1.0,
                                                            self.config)
        self.assertFalse(fallback)
        self.assertLessEqual(massmin, self.grid.mass_table[50, 1])
        self.assertGreaterEqual(massmax, self.grid.mass_table[50, 1])
        self.assertEqual(massmin % 10.0, 0.0)

    def test_bounds_round_outward(self):
        amplitudes = np.zeros(self.grid.mass_table.shape)
        amplitudes[56, 0] = 1.0
        bounds = mass_axis_bounds(self.grid, amplitudes, self.grid.valid, 0.0, 1.0, self.config)
        self.assertEqual(bounds, (150.0, 170.0, 2, False))

    def test_empty_grid_falls_back(self):
        amplitudes = np.zeros(self.grid.mass_table.shape)
        massmin, massmax, mlen, fallback = mass_axis_bounds(self.grid, amplitudes, self.grid.valid, 0.0, 0.0,
                                                            self.config)
        self.assertTrue(fallback)
        self.assertEqual((massmin, massmax, mlen), (100.0, 1000.0, 90))


@pytest.mark.parametrize("projection", [Projection.INTEGRATE, Projection.INTERPOLATE])
def test_projection_shapes(projection):
    grid = make_grid(np.arange(100.0, 200.0, 0.5), [1, 2])
    amplitudes = np.zeros(grid.mass_table.shape)
    amplitudes[100:110, 0] = 1.0
    config = DeconvolutionConfig(startz=1, endz=2, massbins=0.5, projection=projection, adductmass=0.0)
    spectrum = project_to_mass_axis(grid, amplitudes, grid.valid, 1.0, 1.0, config)
    assert spectrum.grid.shape == (len(spectrum.mass), 2)
    np.testing.assert_allclose(np.diff(spectrum.mass), 0.5)
    assert spectrum.intensity.max() > 0
    if projection == Projection.INTEGRATE:
        assert spectrum.intensity.sum() == pytest.approx(10.0)


def test_projection_ignores_invalid_cells():
    grid = make_grid(np.arange(100.0, 200.0, 0.5), [1])
    grid.valid[:100] = False
    amplitudes = np.ones(grid.mass_table.shape)
    config = DeconvolutionConfig(startz=1, endz=1, massbins=0.5, adductmass=0.0)
    spectrum = project_to_mass_axis(grid, amplitudes, grid.valid, 1.0, 1.0, config)
    assert spectrum.intensity.sum() == pytest.approx(100.0)


if __name__ == '__main__':
    unittest.main()
