#!/usr/bin/env python3
"""
test_estimator.py -- Tests for the dead-reckoning speed estimator.

Tests cover:
  * Configuration defaults, presets and validation
  * Ring buffer and speed smoothing
  * EMA low-pass filter
  * Stillness calibration
  * ZUPT integration
  * Estimator state machine: calibration, warm-up, gap rejection,
    reset, lifecycle hooks, clamping

Run:  python3 -m pytest imu_speed/tests -v
"""

import logging
import math
import numpy as np
import pytest

# Allow running from repo root
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from imu_speed.imu_driver import Sample3
from imu_speed.calibration import BiasCalibrator, CalibrationOffset
from imu_speed.config import EstimatorConfig
from imu_speed.ring_buffer import RingBuffer
from imu_speed.estimator import (
    Mode, SpeedEstimator, SpeedSmoother, VectorLowPassFilter, ZuptIntegrator,
    NS_PER_S,
)

DT_NS = 10_000_000      # 10 ms


# ── Fixtures ────────────────────────────────────────────────────────────────

def _make_sample(t_ns: int, x=0.0, y=0.0, z=0.0) -> Sample3:
    return Sample3(x=x, y=y, z=z, timestamp=t_ns)


def _calibrated(config=None, offset=(0.0, 0.0, 0.0)) -> SpeedEstimator:
    """Estimator that has completed a calibration on *offset*."""
    est = SpeedEstimator(config)
    est.start_calibration()
    for i in range(est.calibration_target):
        est.feed(_make_sample(i * DT_NS, *offset))
    assert est.mode is Mode.RUNNING
    return est


def _drive(est, accel, n, t0_ns=0, dt_ns=DT_NS):
    """Feed *n* samples of constant *accel*; return all feed() results."""
    return [est.feed(_make_sample(t0_ns + i * dt_ns, *accel)) for i in range(n)]


# ── Configuration ───────────────────────────────────────────────────────────

class TestConfig:
    def test_defaults(self):
        c = EstimatorConfig()
        assert c.filter_alpha == 0.1
        assert c.zero_velocity_threshold == 0.12
        assert c.velocity_decay == 0.95
        assert c.zero_velocity_epsilon == 0.01
        assert c.buffer_size == 20
        assert c.speed_alpha == 0.15
        assert c.max_speed == 250.0
        assert c.calibration_samples == 100
        assert c.max_dt == 0.5
        assert c.unit_factor == 3.6

    def test_basic_preset(self):
        c = EstimatorConfig.basic()
        assert c.filter_alpha == 0.2
        assert c.zero_velocity_threshold == 0.15
        assert c.velocity_decay == 0.98
        assert c.buffer_size == 1
        assert c.speed_alpha == 1.0
        assert c.max_speed == 200.0

    @pytest.mark.parametrize("kwargs", [
        {"filter_alpha": 0.0},
        {"filter_alpha": 1.5},
        {"speed_alpha": 0.0},
        {"velocity_decay": 1.1},
        {"zero_velocity_threshold": -0.1},
        {"buffer_size": 0},
        {"calibration_samples": 0},
        {"max_speed": 0.0},
        {"max_dt": 0.0},
    ])
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            EstimatorConfig(**kwargs)

    def test_frozen(self):
        c = EstimatorConfig()
        with pytest.raises(AttributeError):
            c.max_speed = 10.0


# ── Ring buffer ─────────────────────────────────────────────────────────────

class TestRingBuffer:
    def test_fills_then_wraps(self):
        rb = RingBuffer(3)
        rb.append(1.0)
        rb.append(2.0)
        assert len(rb) == 2 and not rb.full
        rb.append(3.0)
        assert rb.full and rb.idx == 0
        rb.append(4.0)
        np.testing.assert_allclose(rb.get().flatten(), [2.0, 3.0, 4.0])

    def test_mean_ignores_unwritten_slots(self):
        rb = RingBuffer(4)
        rb.append(6.0)
        rb.append(2.0)
        assert rb.mean()[0] == 4.0

    def test_mean_empty_is_zero(self):
        assert RingBuffer(5).mean()[0] == 0.0

    def test_clear(self):
        rb = RingBuffer(2, ncols=3)
        rb.append([1.0, 2.0, 3.0])
        rb.append([4.0, 5.0, 6.0])
        rb.clear()
        assert len(rb) == 0 and not rb.full
        np.testing.assert_array_equal(rb.data, np.zeros((2, 3)))


# ── Low-pass filter ─────────────────────────────────────────────────────────

class TestVectorLowPassFilter:
    def test_first_step_from_zero(self):
        lp = VectorLowPassFilter(alpha=0.1)
        np.testing.assert_allclose(lp.apply([1.0, -2.0, 0.5]), [0.1, -0.2, 0.05])

    def test_dc_converges(self):
        lp = VectorLowPassFilter(alpha=0.1)
        for _ in range(300):
            y = lp.apply([1.0, 2.0, 3.0])
        np.testing.assert_allclose(y, [1.0, 2.0, 3.0], atol=1e-6)

    def test_alpha_one_passes_through(self):
        lp = VectorLowPassFilter(alpha=1.0)
        lp.apply([5.0, 5.0, 5.0])
        np.testing.assert_array_equal(lp.apply([1.0, 2.0, 3.0]), [1.0, 2.0, 3.0])

    def test_reset(self):
        lp = VectorLowPassFilter(alpha=0.5)
        lp.apply([1.0, 1.0, 1.0])
        lp.reset()
        np.testing.assert_array_equal(lp.state, np.zeros(3))

    def test_invalid_alpha(self):
        with pytest.raises(ValueError):
            VectorLowPassFilter(alpha=0.0)


# ── ZUPT integrator ─────────────────────────────────────────────────────────

class TestZuptIntegrator:
    def test_integrates_above_threshold(self):
        z = ZuptIntegrator(threshold=0.12)
        v = z.step(np.array([1.0, 0.0, 0.0]), 0.1)
        np.testing.assert_allclose(v, [0.1, 0.0, 0.0])
        assert z.is_stationary is False

    def test_integrates_each_axis_with_sign(self):
        z = ZuptIntegrator()
        z.step(np.array([0.0, -2.0, 1.0]), 0.5)
        np.testing.assert_allclose(z.v, [0.0, -1.0, 0.5])
        assert z.speed(3.6) == pytest.approx(math.hypot(1.0, 0.5) * 3.6)

    def test_decays_below_threshold(self):
        z = ZuptIntegrator(threshold=0.12, decay=0.95)
        z.v = np.array([1.0, -2.0, 0.0])
        z.step(np.array([0.05, 0.0, 0.0]), 0.1)
        np.testing.assert_allclose(z.v, [0.95, -1.9, 0.0])
        assert z.is_stationary is True

    def test_small_components_snap_to_zero(self):
        z = ZuptIntegrator(threshold=0.12, decay=0.95, epsilon=0.01)
        z.v = np.array([0.0105, 0.5, -0.0101])
        z.step(np.zeros(3), 0.1)
        assert z.v[0] == 0.0
        assert z.v[2] == 0.0
        assert z.v[1] == pytest.approx(0.475)

    def test_threshold_uses_vector_magnitude(self):
        """Each axis below threshold, but |a| above it -> integrate."""
        z = ZuptIntegrator(threshold=0.12)
        z.step(np.array([0.1, 0.1, 0.0]), 1.0)
        np.testing.assert_allclose(z.v, [0.1, 0.1, 0.0])

    def test_reset(self):
        z = ZuptIntegrator()
        z.step(np.array([3.0, 0.0, 0.0]), 0.1)
        z.reset()
        np.testing.assert_array_equal(z.v, np.zeros(3))


# ── Speed smoother ──────────────────────────────────────────────────────────

class TestSpeedSmoother:
    def test_average_before_filled(self):
        s = SpeedSmoother(size=4, alpha=1.0)
        assert s.push(8.0) == 8.0
        assert s.push(4.0) == 6.0      # mean of 2 entries, not 4

    def test_average_after_wrap(self):
        s = SpeedSmoother(size=4, alpha=1.0)
        for v in (8.0, 4.0, 0.0, 0.0):
            s.push(v)
        assert s.ring.full
        assert s.push(4.0) == 2.0      # [4, 4, 0, 0]

    def test_ema_stage(self):
        s = SpeedSmoother(size=1, alpha=0.5)
        assert s.push(10.0) == 5.0
        assert s.push(10.0) == 7.5

    def test_clamped_to_max(self):
        s = SpeedSmoother(size=1, alpha=1.0, max_speed=250.0)
        assert s.push(1e6) == 250.0
        assert s.speed == 250.0

    def test_reset(self):
        s = SpeedSmoother(size=3, alpha=0.5)
        s.push(10.0)
        s.reset()
        assert s.speed == 0.0
        assert len(s.ring) == 0


# ── Calibration ─────────────────────────────────────────────────────────────

class TestCalibration:
    @pytest.mark.parametrize("axes", [
        (0.25, -0.5, 9.75),
        (0.1, -0.3, 9.81),
        (0.7, 1.3, -9.80665),
    ])
    def test_identical_samples_give_exact_offset(self, axes):
        cal = BiasCalibrator(target=100)
        cal.start()
        done = [cal.add_sample(_make_sample(i, *axes)) for i in range(100)]
        assert done[-1] is True
        assert not any(done[:-1])
        off = cal.finish()
        assert (off.x, off.y, off.z) == axes
        assert off.n_samples == 100
        np.testing.assert_allclose(off.std, np.zeros(3), atol=1e-12)

    def test_mean_of_batch(self):
        cal = BiasCalibrator(target=4)
        cal.start()
        for x in (1.0, 2.0, 3.0, 6.0):
            cal.add_sample(_make_sample(0, x, -x, 0.0))
        off = cal.finish()
        assert off.x == pytest.approx(3.0)
        assert off.y == pytest.approx(-3.0)

    def test_empty_batch_keeps_previous(self, caplog):
        cal = BiasCalibrator(target=10)
        cal.start()
        cal.add_sample(_make_sample(0, 1.0, 2.0, 3.0))
        first = cal.finish()

        cal.start()
        with caplog.at_level(logging.WARNING, logger="imu_speed.calibration"):
            second = cal.finish()
        assert second == first
        assert "no samples" in caplog.text

    def test_empty_first_run_is_zero(self):
        cal = BiasCalibrator()
        cal.start()
        assert cal.finish() == CalibrationOffset()

    def test_start_clears_batch(self):
        cal = BiasCalibrator(target=10)
        cal.start()
        cal.add_sample(_make_sample(0))
        cal.start()
        assert cal.collected == 0
        assert cal.is_collecting

    def test_cancel(self):
        cal = BiasCalibrator(target=10)
        cal.start()
        cal.add_sample(_make_sample(0))
        cal.cancel()
        assert cal.collected == 0
        assert not cal.is_collecting

    def test_invalid_target(self):
        with pytest.raises(ValueError):
            BiasCalibrator(target=0)

    def test_summary(self):
        off = CalibrationOffset(x=0.5, y=-0.25, z=0.0, n_samples=100)
        text = off.summary()
        assert "100 samples" in text
        assert "+0.5000" in text and "-0.2500" in text


# ── Estimator state machine ────────────────────────────────────────────────

class TestEstimatorCalibration:
    def test_starts_idle(self):
        est = SpeedEstimator()
        assert est.mode is Mode.IDLE
        assert est.feed(_make_sample(0, 1.0)) is None
        assert est.feed(_make_sample(DT_NS, 1.0)) is None
        np.testing.assert_array_equal(est.velocity, np.zeros(3))
        assert est.calibration_offset == CalibrationOffset()

    def test_calibration_transition_and_offset(self):
        est = SpeedEstimator()
        est.start_calibration()
        assert est.mode is Mode.CALIBRATING
        for i in range(99):
            assert est.feed(_make_sample(i * DT_NS, 0.25, -0.5, 9.75)) is None
        assert est.mode is Mode.CALIBRATING
        assert est.calibration_count == 99

        assert est.feed(_make_sample(99 * DT_NS, 0.25, -0.5, 9.75)) is None
        assert est.mode is Mode.RUNNING
        off = est.calibration_offset
        assert (off.x, off.y, off.z) == (0.25, -0.5, 9.75)
        assert est.status.startswith("Calibrated!")

    def test_offset_subtracted(self):
        est = _calibrated(offset=(0.25, -0.5, 9.75))
        outs = _drive(est, (0.25, -0.5, 9.75), 200, t0_ns=10 * NS_PER_S)
        assert outs[0] is None
        assert all(o == 0.0 for o in outs[1:])
        np.testing.assert_array_equal(est.filtered_acceleration, np.zeros(3))

    def test_calibration_resets_dead_reckoning(self):
        est = _calibrated()
        _drive(est, (3.0, 0.0, 0.0), 50, t0_ns=10 * NS_PER_S)
        assert est.speed > 0.0

        est.start_calibration()
        assert est.feed(_make_sample(0)) is None
        for i in range(1, 100):
            est.feed(_make_sample(i * DT_NS))
        assert est.mode is Mode.RUNNING
        assert est.speed == 0.0
        assert est.last_timestamp is None
        np.testing.assert_array_equal(est.velocity, np.zeros(3))
        np.testing.assert_array_equal(est.filtered_acceleration, np.zeros(3))

    def test_finish_calibration_early(self):
        est = SpeedEstimator()
        est.start_calibration()
        for i in range(10):
            est.feed(_make_sample(i * DT_NS, 1.0, 1.0, 1.0))
        est.finish_calibration()
        assert est.mode is Mode.RUNNING
        off = est.calibration_offset
        assert (off.x, off.y, off.z, off.n_samples) == (1.0, 1.0, 1.0, 10)

    def test_finish_calibration_empty_keeps_offsets(self):
        est = _calibrated(offset=(0.5, 0.5, 0.5))
        before = est.calibration_offset
        est.start_calibration()
        est.finish_calibration()
        assert est.mode is Mode.RUNNING
        assert est.calibration_offset == before
        assert "empty" in est.status

    def test_finish_calibration_noop_when_running(self):
        est = _calibrated()
        _drive(est, (3.0, 0.0, 0.0), 10, t0_ns=10 * NS_PER_S)
        speed = est.speed
        est.finish_calibration()
        assert est.speed == speed


class TestEstimatorRunning:
    def test_concrete_scenario(self):
        cfg = EstimatorConfig(filter_alpha=0.1, zero_velocity_threshold=0.12,
                              velocity_decay=0.95, buffer_size=20,
                              speed_alpha=0.15, max_speed=250.0)
        est = _calibrated(cfg)
        assert est.feed(_make_sample(0, 1.0, 0.0, 0.0)) is None
        assert est.last_timestamp == 0

        out = est.feed(_make_sample(100_000_000, 1.0, 0.0, 0.0))
        np.testing.assert_allclose(est.filtered_acceleration, [0.1, 0.0, 0.0])
        assert est.integrator.is_stationary is True
        assert est.raw_speed == 0.0
        assert out == 0.0

    def test_warm_up_sample_only_sets_baseline(self):
        est = _calibrated()
        assert est.feed(_make_sample(5 * NS_PER_S, 9.0, 9.0, 9.0)) is None
        assert est.last_timestamp == 5 * NS_PER_S
        np.testing.assert_array_equal(est.filtered_acceleration, np.zeros(3))

    def test_stationary_stays_zero(self):
        est = _calibrated()
        outs = _drive(est, (0.0, 0.0, 0.0), 2000, t0_ns=10 * NS_PER_S)
        assert all(o == 0.0 for o in outs[1:])
        np.testing.assert_array_equal(est.velocity, np.zeros(3))
        assert est.speed == 0.0

    def test_constant_accel_monotonic(self):
        """2 m/s² for 5 s: speed rises monotonically toward |a|*t*3.6."""
        est = _calibrated()
        a, n = 2.0, 500
        outs = _drive(est, (a, 0.0, 0.0), n + 1, t0_ns=10 * NS_PER_S)
        speeds = outs[1:]
        assert all(s is not None for s in speeds)
        assert all(b >= c for c, b in zip(speeds, speeds[1:]))

        # Filter lag: sum_{k=1..n} (1 - 0.9^k) = n - 9 (1 - 0.9^n)
        dt = DT_NS / NS_PER_S
        expected_v = a * dt * (n - 9.0 * (1.0 - 0.9 ** n))
        np.testing.assert_allclose(est.velocity, [expected_v, 0.0, 0.0], rtol=1e-9)

        target = a * n * dt * 3.6         # 36 km/h
        assert est.raw_speed == pytest.approx(target, rel=0.03)
        assert 33.0 < speeds[-1] < target

    def test_gap_rejected(self):
        est = _calibrated()
        t0 = 10 * NS_PER_S
        _drive(est, (2.0, 0.0, 0.0), 11, t0_ns=t0)
        t_last = t0 + 10 * DT_NS

        v = est.velocity
        f = est.filtered_acceleration
        ring = est.smoother.ring.data.copy()
        speed = est.speed

        t_gap = t_last + 600_000_000
        assert est.feed(_make_sample(t_gap, 50.0, 50.0, 50.0)) is None
        assert est.dropped_samples == 1
        np.testing.assert_array_equal(est.velocity, v)
        np.testing.assert_array_equal(est.filtered_acceleration, f)
        np.testing.assert_array_equal(est.smoother.ring.data, ring)
        assert est.speed == speed

        # Timing re-baselined on the dropped sample
        assert est.feed(_make_sample(t_gap + DT_NS, 2.0, 0.0, 0.0)) is not None

    def test_non_positive_dt_dropped(self):
        est = _calibrated()
        est.feed(_make_sample(NS_PER_S, 2.0))
        v = est.velocity
        assert est.feed(_make_sample(NS_PER_S, 2.0)) is None
        assert est.dropped_samples == 1
        np.testing.assert_array_equal(est.velocity, v)

    def test_max_dt_boundary_accepted(self):
        est = _calibrated()
        est.feed(_make_sample(0, 2.0))
        assert est.feed(_make_sample(500_000_000, 2.0)) is not None
        assert est.dropped_samples == 0

    def test_reset_idempotent_and_reproducible(self):
        est = _calibrated()
        _drive(est, (3.0, -1.0, 0.5), 100, t0_ns=10 * NS_PER_S)
        for _ in range(3):
            est.reset()
            assert est.speed == 0.0
            assert est.raw_speed == 0.0
            assert est.last_timestamp is None
            np.testing.assert_array_equal(est.velocity, np.zeros(3))
            np.testing.assert_array_equal(est.filtered_acceleration, np.zeros(3))
        assert est.status == "Speed reset"

        fresh = _calibrated()
        seq = [(1.0, 0.5, 0.0)] * 30 + [(0.0, 0.0, 0.0)] * 30 + [(-2.0, 0.0, 1.0)] * 30
        t0 = 20 * NS_PER_S
        a = [est.feed(_make_sample(t0 + i * DT_NS, *s)) for i, s in enumerate(seq)]
        b = [fresh.feed(_make_sample(t0 + i * DT_NS, *s)) for i, s in enumerate(seq)]
        assert a == b

    def test_reset_keeps_offset(self):
        est = _calibrated(offset=(0.25, 0.25, 0.25))
        est.reset()
        off = est.calibration_offset
        assert (off.x, off.y, off.z) == (0.25, 0.25, 0.25)

    def test_non_finite_samples_dropped(self):
        est = SpeedEstimator()
        est.activate()
        xs = [1.0, math.inf, -math.inf, math.nan, 1.0, 1.0]
        outs = [est.feed(_make_sample(i * DT_NS, x)) for i, x in enumerate(xs)]
        assert outs[:4] == [None, None, None, None]
        assert est.dropped_samples == 3
        assert np.isfinite(est.filtered_acceleration).all()
        assert all(0.0 <= o <= 250.0 for o in outs[4:])

    def test_smoother_clamp_nan_safe(self):
        s = SpeedSmoother(size=1, alpha=1.0, max_speed=250.0)
        assert s.push(math.nan) == 0.0
        assert s.push(math.inf) == 250.0
        assert s.push(10.0) == 10.0

    def test_output_clamped(self):
        est = _calibrated()
        outs = _drive(est, (1e4, -1e4, 1e4), 300, t0_ns=10 * NS_PER_S)
        speeds = [o for o in outs if o is not None]
        assert all(0.0 <= s <= 250.0 for s in speeds)
        assert speeds[-1] == 250.0
        assert est.raw_speed > 250.0

    def test_basic_preset_is_unsmoothed(self):
        est = _calibrated(EstimatorConfig.basic())
        outs = [est.feed(_make_sample(10 * NS_PER_S + i * DT_NS, 2.0)) for i in range(50)]
        assert outs[-1] == pytest.approx(est.raw_speed, rel=1e-12)
        assert est.smoother.ring.maxlen == 1


class TestEstimatorLifecycle:
    def test_activate_without_calibration(self):
        est = SpeedEstimator()
        est.activate()
        assert est.mode is Mode.RUNNING
        assert est.feed(_make_sample(0, 2.0)) is None
        assert est.feed(_make_sample(DT_NS, 2.0)) > 0.0

    def test_deactivate_ignores_samples(self):
        est = _calibrated()
        est.feed(_make_sample(0, 2.0))
        est.feed(_make_sample(DT_NS, 2.0))
        v = est.velocity

        est.deactivate()
        assert est.mode is Mode.IDLE
        assert est.feed(_make_sample(2 * DT_NS, 2.0)) is None
        np.testing.assert_array_equal(est.velocity, v)
        assert est.dropped_samples == 0

    def test_resume_after_long_pause(self):
        est = _calibrated()
        est.feed(_make_sample(0, 2.0))
        est.feed(_make_sample(DT_NS, 2.0))
        v = est.velocity

        est.deactivate()
        est.activate()
        assert est.feed(_make_sample(2 * NS_PER_S, 2.0)) is None
        assert est.dropped_samples == 1
        np.testing.assert_array_equal(est.velocity, v)
        assert est.feed(_make_sample(2 * NS_PER_S + DT_NS, 2.0)) is not None

    def test_deactivate_abandons_calibration(self):
        est = _calibrated(offset=(0.5, 0.0, 0.0))
        est.start_calibration()
        for i in range(50):
            est.feed(_make_sample(i * DT_NS, 3.0, 3.0, 3.0))
        est.deactivate()
        assert est.mode is Mode.IDLE
        assert est.calibration_count == 0
        assert est.calibration_offset.x == 0.5

    def test_snapshot_is_a_copy(self):
        est = _calibrated()
        est.feed(_make_sample(0, 2.0))
        est.feed(_make_sample(DT_NS, 2.0))
        snap = est.snapshot()
        assert snap.mode is Mode.RUNNING
        assert snap.speed == est.speed
        assert snap.calibration_target == 100
        snap.velocity[:] = 99.0
        assert est.velocity[0] != 99.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
