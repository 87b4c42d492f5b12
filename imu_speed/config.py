"""Configuration dataclass for the speed-estimation pipeline."""
from __future__ import annotations

from dataclasses import dataclass

KMH_PER_MPS = 3.6


@dataclass(frozen=True)
class EstimatorConfig:
    """
    Every tunable of the pipeline.

    Defaults are the smoothed (moving average + EMA) edition; ``basic()``
    returns the constants of the simple, unsmoothed edition.
    """
    filter_alpha: float = 0.1               # accel EMA coefficient, (0, 1]
    zero_velocity_threshold: float = 0.12   # m/s^2, below -> stationary
    velocity_decay: float = 0.95            # per-sample decay while stationary
    zero_velocity_epsilon: float = 0.01     # m/s, |v| below -> snapped to 0
    buffer_size: int = 20                   # moving-average window (samples)
    speed_alpha: float = 0.15               # speed EMA coefficient, (0, 1]
    max_speed: float = 250.0                # display clamp (display unit)
    calibration_samples: int = 100          # stillness batch size
    max_dt: float = 0.5                     # s, larger gaps are dropped
    unit_factor: float = KMH_PER_MPS        # m/s -> display unit

    def __post_init__(self) -> None:
        if not 0.0 < self.filter_alpha <= 1.0:
            raise ValueError(f"filter_alpha must be in (0, 1], got {self.filter_alpha}")
        if not 0.0 < self.speed_alpha <= 1.0:
            raise ValueError(f"speed_alpha must be in (0, 1], got {self.speed_alpha}")
        if not 0.0 <= self.velocity_decay <= 1.0:
            raise ValueError(f"velocity_decay must be in [0, 1], got {self.velocity_decay}")
        if self.zero_velocity_threshold < 0.0:
            raise ValueError("zero_velocity_threshold must be >= 0, "
                             f"got {self.zero_velocity_threshold}")
        if self.zero_velocity_epsilon < 0.0:
            raise ValueError("zero_velocity_epsilon must be >= 0, "
                             f"got {self.zero_velocity_epsilon}")
        if self.buffer_size < 1:
            raise ValueError(f"buffer_size must be >= 1, got {self.buffer_size}")
        if self.calibration_samples < 1:
            raise ValueError("calibration_samples must be >= 1, "
                             f"got {self.calibration_samples}")
        if self.max_speed <= 0.0:
            raise ValueError(f"max_speed must be > 0, got {self.max_speed}")
        if self.max_dt <= 0.0:
            raise ValueError(f"max_dt must be > 0, got {self.max_dt}")
        if self.unit_factor <= 0.0:
            raise ValueError(f"unit_factor must be > 0, got {self.unit_factor}")

    @classmethod
    def basic(cls) -> "EstimatorConfig":
        """Simple edition: stronger filter, no speed smoothing, 200 km/h clamp."""
        return cls(
            filter_alpha=0.2,
            zero_velocity_threshold=0.15,
            velocity_decay=0.98,
            buffer_size=1,
            speed_alpha=1.0,
            max_speed=200.0,
        )
