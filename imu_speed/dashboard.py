#!/usr/bin/env python3
"""
dashboard.py — Real-time speedometer dashboard with matplotlib.

Three-panel live visualization:
  ┌─────────────────┬─────────────────┐
  │  Linear Accel   │     Speed       │
  │  (filtered)     │  (raw/display)  │
  ├─────────────────┴─────────────────┤
  │          Gyroscope (raw)          │
  └───────────────────────────────────┘

Usage
-----
  python3 -m imu_speed.dashboard                    # auto-detect port
  python3 -m imu_speed.dashboard /dev/ttyUSB1       # explicit port
  python3 -m imu_speed.dashboard --replay drive.csv # replay a log
  python3 -m imu_speed.dashboard --window 10.0      # 10 s rolling window

Keys:  c = recalibrate,  r = reset speed
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
import threading
import time
from typing import Iterator

import numpy as np
import matplotlib
matplotlib.use("TkAgg")
import matplotlib.pyplot as plt
import matplotlib.gridspec as gridspec
from matplotlib.animation import FuncAnimation

from .config import EstimatorConfig
from .estimator import EstimatorSnapshot, Mode, SpeedEstimator
from .imu_driver import BAUD, Sample3, find_port, paced, replay, stream
from .readouts import accel_magnitude_text, gyro_text, raw_accel_text
from .ring_buffer import RingBuffer

logger = logging.getLogger(__name__)


# ── Shared state between IMU thread and plot thread ────────────────────────

class SharedState:
    """
    Plot buffers plus the estimator itself.

    The sampling thread is the only caller of ``feed()``; commands from
    the UI thread go through ``lock`` so they never interleave with it.
    """
    def __init__(self, ring_len: int, config: EstimatorConfig):
        self.lock = threading.Lock()
        self.est = SpeedEstimator(config)
        self.accel = RingBuffer(ring_len, 3)    # filtered linear accel (m/s²)
        self.speed = RingBuffer(ring_len, 2)    # raw, display (km/h)
        self.gyro = RingBuffer(ring_len, 3)     # gx, gy, gz (rad/s)
        self.time_buf = RingBuffer(ring_len, 1) # relative time (s)
        self.snapshot: EstimatorSnapshot = self.est.snapshot()
        self.readout = ""
        self.t0: int | None = None
        self.count = 0
        self.hz = 0.0
        self.done = False


# ── IMU processing thread ──────────────────────────────────────────────────

def _imu_thread(shared: SharedState, samples: Iterator[Sample3]) -> None:
    with shared.lock:
        shared.est.start_calibration()

    t_start = time.monotonic()

    for sample in samples:
        with shared.lock:
            shared.est.feed(sample)
            snap = shared.est.snapshot()
            shared.snapshot = snap
            shared.readout = (f"Accel {raw_accel_text(sample)}   │   "
                              f"{accel_magnitude_text(sample)}   │   "
                              f"Gyro {gyro_text(sample)}")
            shared.count += 1

            if snap.mode is Mode.RUNNING:
                if shared.t0 is None:
                    shared.t0 = sample.timestamp
                t_rel = (sample.timestamp - shared.t0) / 1e9
                shared.time_buf.append([t_rel])
                shared.accel.append(snap.filtered_acceleration)
                shared.speed.append([snap.raw_speed, snap.speed])
                shared.gyro.append([sample.gx, sample.gy, sample.gz])

            elapsed = time.monotonic() - t_start
            if elapsed > 0:
                shared.hz = shared.count / elapsed

    with shared.lock:
        shared.done = True
    logger.info("Sample source exhausted after %d samples", shared.count)


# ── Dashboard ──────────────────────────────────────────────────────────────

def _build_dashboard(shared: SharedState, window_sec: float):
    plt.style.use("dark_background")
    fig = plt.figure(figsize=(14, 8))
    fig.canvas.manager.set_window_title("Speedometer Dashboard")

    gs = gridspec.GridSpec(2, 2, hspace=0.35, wspace=0.30,
                           left=0.08, right=0.96, top=0.90, bottom=0.08)

    # ── Panel 1: Acceleration ──
    ax_acc = fig.add_subplot(gs[0, 0])
    ax_acc.set_title("Linear Acceleration (filtered)", fontsize=11, pad=8)
    ax_acc.set_ylabel("m/s²")
    ax_acc.set_xlabel("time (s)")
    line_ax, = ax_acc.plot([], [], lw=1, color="#FF6B6B", label="X")
    line_ay, = ax_acc.plot([], [], lw=1, color="#51CF66", label="Y")
    line_az, = ax_acc.plot([], [], lw=1, color="#339AF0", label="Z")
    ax_acc.legend(loc="upper right", fontsize=8)
    ax_acc.grid(alpha=0.2)

    # ── Panel 2: Speed ──
    ax_spd = fig.add_subplot(gs[0, 1])
    ax_spd.set_title("Speed", fontsize=11, pad=8)
    ax_spd.set_ylabel("km/h")
    ax_spd.set_xlabel("time (s)")
    line_raw, = ax_spd.plot([], [], lw=1, color="#868E96", label="raw")
    line_spd, = ax_spd.plot([], [], lw=2, color="#FCC419", label="display")
    ax_spd.legend(loc="upper right", fontsize=8)
    ax_spd.grid(alpha=0.2)

    # ── Panel 3: Gyroscope ──
    ax_gyr = fig.add_subplot(gs[1, :])
    ax_gyr.set_title("Gyroscope (raw, display only)", fontsize=11, pad=8)
    ax_gyr.set_ylabel("rad/s")
    ax_gyr.set_xlabel("time (s)")
    line_gx, = ax_gyr.plot([], [], lw=1, color="#DA77F2", label="X")
    line_gy, = ax_gyr.plot([], [], lw=1, color="#20C997", label="Y")
    line_gz, = ax_gyr.plot([], [], lw=1, color="#FAB005", label="Z")
    ax_gyr.legend(loc="upper right", fontsize=8)
    ax_gyr.grid(alpha=0.2)

    # ── Status bar ──
    status_text = fig.text(0.5, 0.955, "Calibrating …", ha="center", fontsize=12,
                           color="#FCC419", fontweight="bold")
    detail_text = fig.text(0.5, 0.925, "", ha="center", fontsize=9,
                           color="#868E96")
    raw_text = fig.text(0.5, 0.012, "", ha="center", fontsize=9,
                        color="#868E96", family="monospace")

    # ── Key bindings ──
    def _on_key(event):
        with shared.lock:
            if event.key == "c":
                shared.est.start_calibration()
            elif event.key == "r":
                shared.est.reset()
            shared.snapshot = shared.est.snapshot()

    fig.canvas.mpl_connect("key_press_event", _on_key)

    # ── Animation update ──
    def _update(frame):
        with shared.lock:
            t = shared.time_buf.get().flatten()
            acc = shared.accel.get()
            spd = shared.speed.get()
            gyr = shared.gyro.get()
            snap = shared.snapshot
            readout = shared.readout
            hz = shared.hz
            count = shared.count
            done = shared.done

        raw_text.set_text(readout)

        if snap.mode is Mode.CALIBRATING:
            pct = snap.calibration_count / snap.calibration_target
            status_text.set_text(f"⏳  Calibrating … {pct*100:.0f}%  —  hold device still")
            status_text.set_color("#FCC419")
            return []

        # ── Time window ──
        if len(t) > 1:
            t_max = t[-1]
            t_min = max(0, t_max - window_sec)
        else:
            t_min, t_max = 0, window_sec

        if len(acc) > 0:
            line_ax.set_data(t, acc[:, 0])
            line_ay.set_data(t, acc[:, 1])
            line_az.set_data(t, acc[:, 2])
            ax_acc.set_xlim(t_min, t_max)
            a_max = max(np.abs(acc).max() * 1.2, 1.0)
            ax_acc.set_ylim(-a_max, a_max)

        if len(spd) > 0:
            line_raw.set_data(t, spd[:, 0])
            line_spd.set_data(t, spd[:, 1])
            ax_spd.set_xlim(t_min, t_max)
            ax_spd.set_ylim(0, max(spd.max() * 1.3, 5.0))

        if len(gyr) > 0:
            line_gx.set_data(t, gyr[:, 0])
            line_gy.set_data(t, gyr[:, 1])
            line_gz.set_data(t, gyr[:, 2])
            ax_gyr.set_xlim(t_min, t_max)
            g_max = max(np.abs(gyr).max() * 1.2, 0.5)
            ax_gyr.set_ylim(-g_max, g_max)

        # ── Status ──
        state_str = "REST" if snap.is_stationary else "MOVE"
        state_col = "#51CF66" if snap.is_stationary else "#FF6B6B"
        source_str = "   │   source ended" if done else ""
        status_text.set_text(
            f"Speed: {snap.speed:.1f} km/h   │   State: {state_str}   │   "
            f"{hz:.0f} Hz   │   Samples: {count}   │   "
            f"Dropped: {snap.dropped_samples}{source_str}"
        )
        status_text.set_color(state_col)
        o = snap.offset
        detail_text.set_text(f"{snap.status}   │   Offsets: {o.x:+.3f}, {o.y:+.3f}, "
                             f"{o.z:+.3f}")

        return []

    ani = FuncAnimation(fig, _update, interval=50, blit=False, cache_frame_data=False)
    return fig, ani


# ── Main ────────────────────────────────────────────────────────────────────

def buffer_len(window_sec: float, rate_hz: float) -> int:
    """Plot-buffer rows for a rolling window; never less than one."""
    return max(1, int(window_sec * rate_hz))


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="Speedometer dashboard — real-time visualization")
    ap.add_argument("port", nargs="?", help="Serial port (auto-detect)")
    ap.add_argument("-b", "--baud", type=int, default=BAUD)
    ap.add_argument("--replay", metavar="FILE", help="Read samples from a CSV log")
    ap.add_argument("--replay-speed", type=float, default=1.0,
                    help="Replay playback rate, 1 = real time (default 1)")
    ap.add_argument("--basic", action="store_true",
                    help="Simple edition constants (no speed smoothing)")
    ap.add_argument("--cal-samples", type=int, default=100,
                    help="Calibration samples (default 100)")
    ap.add_argument("--window", type=float, default=5.0,
                    help="Rolling plot window in seconds (default 5)")
    ap.add_argument("--rate", type=float, default=200.0,
                    help="Expected sample rate in Hz, sizes the plot buffers")
    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    base = EstimatorConfig.basic() if args.basic else EstimatorConfig()
    try:
        config = dataclasses.replace(base, calibration_samples=args.cal_samples)
    except ValueError as exc:
        sys.exit(f"ERROR: {exc}")

    if args.window <= 0 or args.rate <= 0 or args.replay_speed <= 0:
        sys.exit("ERROR: --window, --rate and --replay-speed must be positive")

    if args.replay:
        samples = paced(replay(args.replay), args.replay_speed)
        source = args.replay
    else:
        port = args.port or find_port()
        if not port:
            sys.exit("ERROR: No serial port found.")
        samples = stream(port, args.baud)
        source = f"{port} @ {args.baud} baud"

    ring_len = buffer_len(args.window, args.rate)
    shared = SharedState(ring_len, config)

    # ── Start IMU thread ──
    t = threading.Thread(target=_imu_thread, args=(shared, samples), daemon=True)
    t.start()

    print(f"\n  Speedometer Dashboard — {source}")
    print(f"  Hold device still for calibration …\n")

    # ── Launch plot (blocks on main thread) ──
    fig, ani = _build_dashboard(shared, args.window)
    plt.show()


if __name__ == "__main__":
    main()
