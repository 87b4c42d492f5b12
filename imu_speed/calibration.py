#!/usr/bin/env python3
"""
calibration.py — Stillness bias estimation for linear acceleration.

Collects a fixed batch of raw samples while the device is at rest and
computes the per-axis mean, which is later subtracted from every reading.

The caller must ensure the device is **stationary** during calibration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from .imu_driver import Sample3

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalibrationOffset:
    """Per-axis bias offset estimated from a static capture."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    n_samples: int = 0
    std: np.ndarray = field(default_factory=lambda: np.zeros(3),
                            compare=False)                    # noise floor

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z])

    def summary(self) -> str:
        return (
            f"Calibration ({self.n_samples} samples)\n"
            f"  Offset : [{self.x:+.4f}, {self.y:+.4f}, {self.z:+.4f}] m/s²\n"
            f"  σ      : [{self.std[0]:.4f}, {self.std[1]:.4f}, "
            f"{self.std[2]:.4f}] m/s²\n"
        )


class BiasCalibrator:
    """
    Batch collector for stillness calibration.

    ``add_sample`` reports when ``target`` samples have been collected; the
    owner then calls ``finish`` and applies the returned offset.
    """

    def __init__(self, target: int = 100):
        if target < 1:
            raise ValueError(f"Calibration target must be >= 1, got {target}")
        self.target = target
        self.offset = CalibrationOffset()
        self.is_collecting = False
        self._batch: list[tuple[float, float, float]] = []

    @property
    def collected(self) -> int:
        return len(self._batch)

    def start(self) -> None:
        self._batch.clear()
        self.is_collecting = True

    def cancel(self) -> None:
        """Stop collecting and discard the batch; the offset is untouched."""
        self._batch.clear()
        self.is_collecting = False

    def add_sample(self, raw: Sample3) -> bool:
        """Append an uncorrected sample.  True once the batch is complete."""
        self._batch.append((raw.x, raw.y, raw.z))
        return len(self._batch) >= self.target

    def finish(self) -> CalibrationOffset:
        """
        Mean of each axis over the batch.

        An empty batch leaves the previous offset in place.
        """
        self.is_collecting = False
        if not self._batch:
            logger.warning("Calibration finished with no samples; "
                           "keeping offsets [%+.4f, %+.4f, %+.4f]",
                           self.offset.x, self.offset.y, self.offset.z)
            return self.offset

        batch = np.array(self._batch)             # (N, 3)
        # Averaged about the first sample: exact for a constant batch.
        ref = batch[0]
        mean = ref + (batch - ref).mean(axis=0)
        self.offset = CalibrationOffset(
            x=float(mean[0]), y=float(mean[1]), z=float(mean[2]),
            n_samples=len(batch),
            std=batch.std(axis=0),
        )
        return self.offset
