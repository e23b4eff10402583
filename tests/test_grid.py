import unittest

import numpy as np
import pytest

from spec_deconvolver.config import DeconvolutionConfig
from spec_deconvolver.core.errors import ConfigurationError, EmptySearchSpaceError
from spec_deconvolver.core.types import SpectrumInput
from spec_deconvolver.logic.grid import build_grid, predict_native_charge


def make_spectrum(scan_id=None):
    mz = np.array([500.0, 750.0, 1000.0])
    return SpectrumInput(mz=mz, intensity=np.array([1.0, 2.0, 3.0]), scan_id=scan_id)


class TestBuildGrid(unittest.TestCase):

    def test_mass_table(self):
        config = DeconvolutionConfig(startz=1, endz=2, adductmass=1.0)
        grid = build_grid(make_spectrum(), config)
        expected = np.array([[499.0, 998.0], [749.0, 1498.0], [999.0, 1998.0]])
        np.testing.assert_allclose(grid.mass_table, expected)
        self.assertEqual(grid.lengthmz, 3)
        self.assertEqual(grid.numz, 2)
        self.assertTrue(grid.valid.all())

    def test_mass_range_masks_cells(self):
        config = DeconvolutionConfig(startz=1, endz=2, adductmass=1.0, masslb=700.0, massub=1500.0)
        grid = build_grid(make_spectrum(), config)
        expected = np.array([[False, True], [True, True], [True, False]])
        np.testing.assert_array_equal(grid.valid, expected)

    def test_empty_search_space(self):
        config = DeconvolutionConfig(startz=1, endz=2, masslb=1e6, massub=2e6)
        with self.assertRaises(EmptySearchSpaceError) as ctx:
            build_grid(make_spectrum(scan_id="42"), config)
        self.assertEqual(ctx.exception.scan_id, "42")
        self.assertEqual(ctx.exception.kind, "empty_search_space")

    def test_native_charge_window(self):
        # Charges above the predicted native charge are removed.
        config = DeconvolutionConfig(startz=1, endz=10, adductmass=1.0, nativezub=0.0, nativezlb=-1000.0)
        grid = build_grid(make_spectrum(), config)
        predicted = predict_native_charge(grid.mass_table)
        np.testing.assert_array_equal(grid.valid, grid.charges[np.newaxis, :] <= predicted)

    def test_listed_masses_with_window(self):
        config = DeconvolutionConfig(startz=1, endz=2, adductmass=1.0, test_masses=(1000.0,), mtabsig=5.0)
        grid = build_grid(make_spectrum(), config)
        expected = np.array([[False, True], [False, False], [True, False]])
        np.testing.assert_array_equal(grid.valid, expected)

    def test_listed_masses_nearest_point(self):
        config = DeconvolutionConfig(startz=1, endz=2, adductmass=1.0, test_masses=(1500.0,))
        grid = build_grid(make_spectrum(), config)
        # m/z 751 at charge 2 is nearest to 750; at charge 1 the nearest point is the last one.
        self.assertTrue(grid.valid[1, 1])
        self.assertTrue(grid.valid[2, 0])
        self.assertEqual(int(grid.valid.sum()), 2)


def test_predict_native_charge_grows_with_mass():
    charges = predict_native_charge(np.array([1e3, 1e4, 1e5]))
    assert np.all(np.diff(charges) > 0)
    assert charges[0] > 0


@pytest.mark.parametrize("mz, intensity", [
    ([500.0, 400.0, 600.0], [1.0, 1.0, 1.0]),
    ([500.0, 500.0, 600.0], [1.0, 1.0, 1.0]),
    ([500.0, 600.0, 700.0], [1.0, -1.0, 1.0]),
    ([500.0, 600.0], [1.0, 1.0, 1.0]),
    ([500.0, 600.0, 700.0], [1.0, np.nan, 1.0]),
])
def test_malformed_input_raises(mz, intensity):
    spectrum = SpectrumInput(mz=np.array(mz), intensity=np.array(intensity), scan_id="bad")
    with pytest.raises(ConfigurationError) as excinfo:
        build_grid(spectrum, DeconvolutionConfig(startz=1, endz=2))
    assert excinfo.value.scan_id == "bad"


if __name__ == '__main__':
    unittest.main()
