"""
Growable fixed-width row storage backing the quantized indexes.
"""

import numpy as np


class RowBuffer:
    """Dense 2-D numpy buffer with amortized O(1) append and swap-with-last removal."""

    def __init__(self, width: int, dtype, capacity: int = 64):
        self.width = width
        self.dtype = np.dtype(dtype)
        self._data = np.zeros((max(capacity, 1), width), dtype=self.dtype)
        self._size = 0

    def __len__(self) -> int:
        return self._size

    @property
    def rows(self) -> np.ndarray:
        """View of the occupied rows. Invalidated by the next append."""
        return self._data[:self._size]

    @property
    def nbytes(self) -> int:
        return self._size * self.width * self.dtype.itemsize

    def row(self, position: int) -> np.ndarray:
        self._check(position)
        return self._data[position]

    def append(self, row) -> None:
        self._reserve(self._size + 1)
        self._data[self._size] = row
        self._size += 1

    def extend(self, rows: np.ndarray) -> None:
        count = len(rows)
        if count == 0:
            return
        self._reserve(self._size + count)
        self._data[self._size:self._size + count] = rows
        self._size += count

    def set(self, position: int, row) -> None:
        self._check(position)
        self._data[position] = row

    def swap_remove(self, position: int) -> None:
        """Move the last row into ``position`` and shrink by one."""
        self._check(position)
        last = self._size - 1
        if position != last:
            self._data[position] = self._data[last]
        self._size = last

    def reset(self, rows: np.ndarray) -> None:
        """Replace every row with ``rows``."""
        self._size = 0
        self.extend(rows)

    def clear(self) -> None:
        self._size = 0

    def _reserve(self, needed: int) -> None:
        capacity = self._data.shape[0]
        if needed <= capacity:
            return
        while capacity < needed:
            capacity *= 2
        grown = np.zeros((capacity, self.width), dtype=self.dtype)
        grown[:self._size] = self._data[:self._size]
        self._data = grown

    def _check(self, position: int) -> None:
        if not 0 <= position < self._size:
            raise IndexError(f"row {position} out of range for buffer of {self._size} rows")
