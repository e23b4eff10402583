import unittest

import numpy as np
import pytest

from spec_deconvolver.core.indexing import index2d, index3d, nearest_index, nearest_indices


class CountingArray:
    """Wraps an array and counts element reads."""

    def __init__(self, values):
        self.values = values
        self.reads = 0

    def __len__(self):
        return len(self.values)

    def __getitem__(self, index):
        self.reads += 1
        return self.values[index]


class TestNearestIndex(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(7)
        self.values = np.sort(np.unique(rng.uniform(0, 1000, 100_000)))
        self.queries = rng.uniform(-10, 1010, 500)

    def test_matches_linear_scan(self):
        for query in self.queries:
            expected = int(np.argmin(np.abs(self.values - query)))
            self.assertEqual(nearest_index(self.values, query), expected)

    def test_reads_logarithmic_number_of_elements(self):
        wrapped = CountingArray(self.values)
        nearest_index(wrapped, 512.3)
        self.assertLessEqual(wrapped.reads, 2 * int(np.ceil(np.log2(len(self.values)))) + 2)

    def test_ties_go_to_lower_index(self):
        values = np.array([1.0, 2.0, 3.0])
        self.assertEqual(nearest_index(values, 1.5), 0)
        self.assertEqual(nearest_index(values, 2.5), 1)

    def test_out_of_range_queries_clamp_to_ends(self):
        values = np.array([1.0, 2.0, 3.0])
        self.assertEqual(nearest_index(values, -5.0), 0)
        self.assertEqual(nearest_index(values, 50.0), 2)

    def test_single_element(self):
        self.assertEqual(nearest_index(np.array([4.0]), 100.0), 0)

    def test_empty_raises(self):
        with self.assertRaises(ValueError):
            nearest_index(np.array([]), 1.0)

    def test_vectorised_version_agrees(self):
        expected = [nearest_index(self.values, q) for q in self.queries]
        np.testing.assert_array_equal(nearest_indices(self.values, self.queries), expected)


@pytest.mark.parametrize("shape", [(4, 3), (1, 5), (7, 1)])
def test_index2d_is_row_major(shape):
    lengthmz, numz = shape
    for i in range(lengthmz):
        for j in range(numz):
            assert index2d(numz, i, j) == np.ravel_multi_index((i, j), shape)


def test_index3d_is_row_major():
    shape = (3, 4, 5)
    for i in range(3):
        for j in range(4):
            for k in range(5):
                assert index3d(4, 5, i, j, k) == np.ravel_multi_index((i, j, k), shape)


if __name__ == '__main__':
    unittest.main()
