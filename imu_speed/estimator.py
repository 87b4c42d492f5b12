#!/usr/bin/env python3
"""
estimator.py -- Dead-reckoning speed estimator with ZUPT drift correction.

Pipeline per linear-acceleration sample:

  * **Bias removal** -- a stillness calibration estimates a per-axis
    offset which is subtracted from every reading.

  * **EMA low-pass on accel** -- one recursive filter per axis; cheap and
    stateless apart from the previous output.

  * **ZUPT integration** -- when the filtered acceleration magnitude is
    below a noise threshold the device is treated as stationary and the
    velocity decays toward zero (components under epsilon are snapped to
    exactly 0).  Otherwise velocity is advanced with Euler integration.

  * **Two-stage speed smoothing** -- |v| converted to the display unit,
    a fixed-size moving average, then an EMA, then a clamp to
    [0, max_speed].

The estimator is a three-mode state machine::

    IDLE/RUNNING  --start_calibration()-->  CALIBRATING
    CALIBRATING   --batch full----------->  RUNNING   (offsets committed, reset)
    IDLE          --activate()----------->  RUNNING
    any           --deactivate()--------->  IDLE

Single producer: ``feed()`` must be called from one thread, in timestamp
order.  No locks are taken here.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .calibration import BiasCalibrator, CalibrationOffset
from .config import EstimatorConfig
from .imu_driver import Sample3
from .ring_buffer import RingBuffer

logger = logging.getLogger(__name__)

NS_PER_S = 1_000_000_000


# -- Exponential low-pass ------------------------------------------------------

class VectorLowPassFilter:
    """Per-axis EMA:  y = alpha * x + (1 - alpha) * y_prev."""

    def __init__(self, alpha: float, n_ch: int = 3):
        if not 0.0 < alpha <= 1.0:
            raise ValueError(f"alpha must be in (0, 1], got {alpha}")
        self.alpha = alpha
        self.state = np.zeros(n_ch)

    def apply(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        self.state = self.alpha * x + (1.0 - self.alpha) * self.state
        return self.state.copy()

    def reset(self) -> None:
        self.state = np.zeros_like(self.state)


# -- Zero-velocity-update integrator -------------------------------------------

class ZuptIntegrator:
    """
    Integrate filtered acceleration into a 3-axis velocity.

    Below ``threshold`` (m/s^2) the sample counts as stationary and the
    velocity bleeds off by ``decay`` per sample instead of integrating;
    this bounds the drift a residual bias would otherwise accumulate.
    """

    def __init__(self, threshold: float = 0.12, decay: float = 0.95,
                 epsilon: float = 0.01):
        self.threshold = threshold
        self.decay = decay
        self.epsilon = epsilon
        self.v = np.zeros(3)
        self.is_stationary = True

    def step(self, filtered: np.ndarray, dt: float) -> np.ndarray:
        accel_mag = float(np.linalg.norm(filtered))
        self.is_stationary = accel_mag < self.threshold

        if self.is_stationary:
            self.v *= self.decay
            self.v[np.abs(self.v) < self.epsilon] = 0.0
        else:
            self.v += np.asarray(filtered, dtype=float) * dt

        return self.v.copy()

    def speed(self, unit_factor: float = 1.0) -> float:
        """|v| scaled by *unit_factor* (3.6 for km/h)."""
        return float(np.linalg.norm(self.v)) * unit_factor

    def reset(self) -> None:
        self.v = np.zeros(3)
        self.is_stationary = True


# -- Speed smoothing -----------------------------------------------------------

class SpeedSmoother:
    """
    Moving average over the last ``size`` raw speeds followed by an EMA.

    Before the ring has wrapped once, the average only covers the slots
    written so far.  The EMA accumulator holds the clamped output, i.e. the
    last value reported.
    """

    def __init__(self, size: int = 20, alpha: float = 0.15,
                 max_speed: float = 250.0):
        self.ring = RingBuffer(size)
        self.alpha = alpha
        self.max_speed = max_speed
        self.speed = 0.0

    def push(self, raw_speed: float) -> float:
        self.ring.append(raw_speed)
        avg = float(self.ring.mean()[0])
        smoothed = self.alpha * avg + (1.0 - self.alpha) * self.speed
        self.speed = float(np.clip(np.nan_to_num(smoothed, nan=0.0),
                                   0.0, self.max_speed))
        return self.speed

    def reset(self) -> None:
        self.ring.clear()
        self.speed = 0.0


# -- Estimator output ----------------------------------------------------------

class Mode(enum.Enum):
    IDLE = "idle"
    CALIBRATING = "calibrating"
    RUNNING = "running"


@dataclass(frozen=True)
class EstimatorSnapshot:
    """Readable copy of the estimator outputs, for display shells."""
    mode: Mode
    status: str
    calibration_count: int
    calibration_target: int
    offset: CalibrationOffset
    filtered_acceleration: np.ndarray   # bias-corrected, filtered (m/s^2)
    velocity: np.ndarray                # sensor frame (m/s)
    is_stationary: bool
    raw_speed: float                    # display unit, unsmoothed
    speed: float                        # display unit, smoothed + clamped
    dropped_samples: int


# -- Orchestrator --------------------------------------------------------------

class SpeedEstimator:
    """
    Calibration / filtering / ZUPT / smoothing pipeline behind one object.

    ``feed()`` returns the display speed, or ``None`` while idle, while
    calibrating, on the warm-up sample, and when a sample is dropped for an
    out-of-range time step or a non-finite reading.
    """

    def __init__(self, config: Optional[EstimatorConfig] = None):
        self.config = config or EstimatorConfig()
        c = self.config

        self.calibrator = BiasCalibrator(c.calibration_samples)
        self.lowpass = VectorLowPassFilter(c.filter_alpha)
        self.integrator = ZuptIntegrator(c.zero_velocity_threshold,
                                         c.velocity_decay,
                                         c.zero_velocity_epsilon)
        self.smoother = SpeedSmoother(c.buffer_size, c.speed_alpha,
                                      c.max_speed)

        self._mode = Mode.IDLE
        self._offset = CalibrationOffset()
        self._bias = np.zeros(3)
        self.last_timestamp: int | None = None
        self.raw_speed = 0.0
        self.dropped_samples = 0
        self.status = "Place device flat, then calibrate."

    # -- Read-only accessors ---------------------------------------------------

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def calibration_offset(self) -> CalibrationOffset:
        return self._offset

    @property
    def calibration_count(self) -> int:
        return self.calibrator.collected

    @property
    def calibration_target(self) -> int:
        return self.calibrator.target

    @property
    def filtered_acceleration(self) -> np.ndarray:
        return self.lowpass.state.copy()

    @property
    def velocity(self) -> np.ndarray:
        return self.integrator.v.copy()

    @property
    def speed(self) -> float:
        return self.smoother.speed

    def snapshot(self) -> EstimatorSnapshot:
        return EstimatorSnapshot(
            mode=self._mode,
            status=self.status,
            calibration_count=self.calibration_count,
            calibration_target=self.calibration_target,
            offset=self._offset,
            filtered_acceleration=self.filtered_acceleration,
            velocity=self.velocity,
            is_stationary=self.integrator.is_stationary,
            raw_speed=self.raw_speed,
            speed=self.speed,
            dropped_samples=self.dropped_samples,
        )

    # -- Commands --------------------------------------------------------------

    def start_calibration(self) -> None:
        """Begin (or restart) a stillness calibration."""
        self.calibrator.start()
        self._mode = Mode.CALIBRATING
        self.status = "Calibrating... keep device still"
        logger.info("Calibration started (%d samples)", self.calibrator.target)

    def finish_calibration(self) -> None:
        """End an in-progress calibration with the samples collected so far."""
        if self._mode is Mode.CALIBRATING:
            self._complete_calibration()

    def reset(self) -> None:
        """Zero dead-reckoning state.  Calibration offsets are kept."""
        self.lowpass.reset()
        self.integrator.reset()
        self.smoother.reset()
        self.last_timestamp = None
        self.raw_speed = 0.0
        self.status = "Speed reset"
        logger.debug("Dead-reckoning state reset")

    def activate(self) -> None:
        """Host resumed: start accepting samples again."""
        if self._mode is Mode.IDLE:
            self._mode = Mode.RUNNING
            self.status = "Running"
            logger.info("Estimator active")

    def deactivate(self) -> None:
        """Host paused: ignore samples until ``activate()``."""
        if self._mode is Mode.CALIBRATING:
            logger.info("Calibration abandoned (%d/%d samples)",
                        self.calibrator.collected, self.calibrator.target)
            self.calibrator.cancel()
        self._mode = Mode.IDLE
        self.status = "Paused"

    # -- Per-sample processing -------------------------------------------------

    def feed(self, sample: Sample3) -> Optional[float]:
        """Process one linear-acceleration sample."""
        if self._mode is Mode.IDLE:
            return None

        if self._mode is Mode.CALIBRATING:
            if self.calibrator.add_sample(sample):
                self._complete_calibration()
            else:
                self.status = (f"Calibrating... keep device still "
                               f"({self.calibrator.collected}/"
                               f"{self.calibrator.target})")
            return None

        # -- Time step --
        if self.last_timestamp is None:
            self.last_timestamp = sample.timestamp
            return None

        dt = (sample.timestamp - self.last_timestamp) / NS_PER_S
        self.last_timestamp = sample.timestamp
        if dt <= 0 or dt > self.config.max_dt:
            self.dropped_samples += 1
            logger.debug("Dropping sample: dt=%.1f ms outside (0, %.0f] ms",
                         dt * 1e3, self.config.max_dt * 1e3)
            return None

        # -- Bias removal + low-pass --
        accel = np.array([sample.x, sample.y, sample.z]) - self._bias
        if not np.isfinite(accel).all():
            self.dropped_samples += 1
            logger.debug("Dropping non-finite sample at t=%d ns", sample.timestamp)
            return None
        filtered = self.lowpass.apply(accel)

        # -- ZUPT / integration --
        self.integrator.step(filtered, dt)
        self.raw_speed = self.integrator.speed(self.config.unit_factor)

        return self.smoother.push(self.raw_speed)

    def _complete_calibration(self) -> None:
        empty = self.calibrator.collected == 0
        self._offset = self.calibrator.finish()
        self._bias = self._offset.as_array()
        self._mode = Mode.RUNNING
        self.reset()

        o = self._offset
        if empty:
            self.status = "Calibration empty; offsets unchanged"
        else:
            self.status = f"Calibrated! Offsets: {o.x:.3f}, {o.y:.3f}, {o.z:.3f}"
        logger.info("Calibration done: offsets [%+.4f, %+.4f, %+.4f] from %d samples",
                    o.x, o.y, o.z, o.n_samples)
