"""
Index helpers shared by every stage of the engine.

Grids are stored flattened, row-major: cell (i, j) of an (lengthmz x numz)
grid lives at ``i * numz + j`` and isotope slot k of that cell at
``(i * numz + j) * isolength + k``.
"""
import numpy as np


def index2d(numz: int, i: int, j: int) -> int:
    return i * numz + j


def index3d(numz: int, isolength: int, i: int, j: int, k: int) -> int:
    return i * numz * isolength + j * isolength + k


def nearest_index(sorted_values, value: float) -> int:
    """
    Returns the index of the element of `sorted_values` closest to `value`.

    Uses a binary search, so only O(log n) elements are read. When two
    neighbours are equally close, the lower index wins.

    Args:
        sorted_values: Any indexable, ascending sequence supporting len().
        value: The query value.

    Returns:
        The index of the nearest element.
    """
    n = len(sorted_values)
    if n == 0:
        raise ValueError("Cannot search an empty array.")

    lo, hi = 0, n - 1
    # Narrow down to the pair of neighbours bracketing the value.
    while hi - lo > 1:
        mid = (lo + hi) // 2
        if sorted_values[mid] < value:
            lo = mid
        else:
            hi = mid

    if lo == hi:
        return lo
    low_val = sorted_values[lo]
    high_val = sorted_values[hi]
    if abs(value - low_val) <= abs(high_val - value):
        return lo
    return hi


def nearest_indices(sorted_values: np.ndarray, values) -> np.ndarray:
    """
    Vectorised `nearest_index` for many queries at once, using the same
    tie-breaking rule.
    """
    sorted_values = np.asarray(sorted_values, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64)
    n = len(sorted_values)
    if n == 0:
        raise ValueError("Cannot search an empty array.")

    right = np.searchsorted(sorted_values, values, side='left')
    right = np.clip(right, 1, max(n - 1, 1))
    left = right - 1
    if n == 1:
        return np.zeros(values.shape, dtype=np.int64)

    left_diff = np.abs(values - sorted_values[left])
    right_diff = np.abs(sorted_values[right] - values)
    return np.where(left_diff <= right_diff, left, right).astype(np.int64)
