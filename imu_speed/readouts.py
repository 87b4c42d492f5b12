"""Text readouts for the display shells."""
from __future__ import annotations

import math

import numpy as np

from .imu_driver import G_MPS2, Sample3


def raw_accel_text(s: Sample3) -> str:
    return f"X: {s.ax:+.2f}  Y: {s.ay:+.2f}  Z: {s.az:+.2f}"


def accel_magnitude_text(s: Sample3) -> str:
    mag = math.sqrt(s.ax * s.ax + s.ay * s.ay + s.az * s.az)
    return f"Magnitude: {mag:.2f} (gravity ≈ {G_MPS2:.2f})"


def gyro_text(s: Sample3) -> str:
    return f"X: {s.gx:+.3f}  Y: {s.gy:+.3f}  Z: {s.gz:+.3f}"


def linear_accel_text(filtered: np.ndarray) -> str:
    """Filtered, bias-corrected linear acceleration."""
    return f"X: {filtered[0]:+.3f}  Y: {filtered[1]:+.3f}  Z: {filtered[2]:+.3f}"


def speed_text(speed: float | None) -> str:
    return "--" if speed is None else f"{speed:.1f}"
