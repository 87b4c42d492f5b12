"""Fixed-size ring buffer backed by numpy arrays."""
from __future__ import annotations

import numpy as np


class RingBuffer:
    """
    Fixed-size ring buffer of ``ncols``-wide rows.

    ``full`` is set the first time the write index wraps back to 0; until
    then only the first ``idx`` rows hold data.
    """
    def __init__(self, maxlen: int, ncols: int = 1):
        if maxlen < 1:
            raise ValueError(f"maxlen must be >= 1, got {maxlen}")
        self.maxlen = maxlen
        self.ncols = ncols
        self.data = np.zeros((maxlen, ncols))
        self.idx = 0
        self.full = False

    def __len__(self) -> int:
        return self.maxlen if self.full else self.idx

    def append(self, row: np.ndarray | list | tuple | float) -> None:
        self.data[self.idx] = row
        self.idx += 1
        if self.idx >= self.maxlen:
            self.idx = 0
            self.full = True

    def get(self) -> np.ndarray:
        """Stored rows, oldest first."""
        if self.full:
            return np.roll(self.data, -self.idx, axis=0)
        return self.data[:self.idx]

    def mean(self) -> np.ndarray:
        """Per-column mean over the rows written so far (at least one)."""
        n = len(self)
        return self.data[:max(n, 1)].mean(axis=0)

    def clear(self) -> None:
        self.data[:] = 0.0
        self.idx = 0
        self.full = False
