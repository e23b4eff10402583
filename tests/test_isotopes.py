import threading
import unittest

import numpy as np

from spec_deconvolver.core.constants import ISOTOPE_MASS_DIFF
from spec_deconvolver.core.isotopes import IsotopeCalculator

# A one-element table with two equally abundant isotopes one neutron apart.
TWO_ISOTOPE_TABLE = {'X': {0: (10.0, 1.0), 10: (10.0, 0.5), 11: (11.0, 0.5)}}


class TestIsotopeCalculator(unittest.TestCase):

    def setUp(self):
        """Set up a new IsotopeCalculator instance for each test."""
        self.calculator = IsotopeCalculator()

    def test_get_distribution_zero_mass(self):
        """
        Test that a mass of 0 returns a single peak at offset 0 with intensity 1.0.
        """
        distribution, offset = self.calculator.get_distribution(0)
        self.assertEqual(distribution, [(0.0, 1.0)])
        self.assertEqual(offset, 0.0)

    def test_get_distribution_negative_mass(self):
        """
        Test that a negative mass behaves the same as a zero mass.
        """
        distribution, offset = self.calculator.get_distribution(-100)
        self.assertEqual(distribution, [(0.0, 1.0)])
        self.assertEqual(offset, 0.0)

    def test_get_distribution_for_large_mass(self):
        """
        Test that for a large mass, the distribution is plausible.
        - The offset should be positive.
        - The distribution should contain multiple peaks.
        - The most abundant peak should have an intensity of 1.0.
        """
        distribution, offset = self.calculator.get_distribution(25000)

        self.assertIsInstance(distribution, list)
        self.assertGreater(offset, 0, "Offset for a large mass should be positive.")
        self.assertGreater(len(distribution), 1, "Distribution for a large mass should have multiple peaks.")

        intensities = [p[1] for p in distribution]
        self.assertAlmostEqual(
            max(intensities), 1.0, places=5,
            msg="The most abundant peak should be normalized to 1.0."
        )

    def test_offsets_are_isotope_spacings(self):
        distribution, _ = self.calculator.get_distribution(10000)
        offsets = np.array([p[0] for p in distribution])
        np.testing.assert_allclose(np.diff(offsets), ISOTOPE_MASS_DIFF)
        self.assertEqual(offsets[0], 0.0)

    def test_num_peaks_keeps_most_abundant(self):
        full, offset = self.calculator.get_distribution(25000)
        capped, capped_offset = self.calculator.get_distribution(25000, num_peaks=3)
        self.assertEqual(len(capped), 3)
        self.assertEqual(offset, capped_offset)
        self.assertIn(max(full, key=lambda p: p[1]), capped)

    def test_binomial_pattern_from_custom_table(self):
        calculator = IsotopeCalculator(abundance_table=TWO_ISOTOPE_TABLE, composition={'X': 1.0},
                                       residue_mass=10.0)
        offsets, values = calculator.neutron_distribution(20.0)
        np.testing.assert_array_equal(offsets, [0, 1, 2])
        np.testing.assert_allclose(values, [0.5, 1.0, 0.5])

        distribution, most_abundant = calculator.get_distribution(20.0)
        self.assertAlmostEqual(most_abundant, ISOTOPE_MASS_DIFF)
        self.assertEqual(len(distribution), 3)

    def test_cached_results_are_stable_across_threads(self):
        expected = self.calculator.get_distribution(15000)
        results = []

        def target():
            results.append(self.calculator.get_distribution(15000))

        threads = [threading.Thread(target=target) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertTrue(all(result == expected for result in results))


if __name__ == '__main__':
    unittest.main()
