#!/usr/bin/env python3
"""
speedometer.py -- Console speedometer.

Reads linear-acceleration samples (live serial stream or a recorded CSV log),
runs the dead-reckoning speed estimator, and prints the speed to the console.

Usage
-----
  python3 -m imu_speed.speedometer                       # auto-detect port
  python3 -m imu_speed.speedometer /dev/ttyUSB1          # explicit port
  python3 -m imu_speed.speedometer --replay drive.csv    # replay a log
  python3 -m imu_speed.speedometer --csv > session.csv   # log to CSV
  python3 -m imu_speed.speedometer --record drive.csv    # save raw samples
  python3 -m imu_speed.speedometer --basic               # unsmoothed edition

Workflow
--------
1. Hold the device STILL at startup -> calibration (100 samples).
2. Move -> the smoothed speed (km/h) is shown live.
3. Ctrl+C stops and prints a session summary.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, TextIO

from .config import EstimatorConfig
from .estimator import Mode, SpeedEstimator
from .imu_driver import BAUD, Sample3, find_port, replay, stream, write_csv
from .readouts import linear_accel_text, speed_text

logger = logging.getLogger(__name__)

# argparse dest -> EstimatorConfig field
_OVERRIDES = {
    "alpha": "filter_alpha",
    "threshold": "zero_velocity_threshold",
    "decay": "velocity_decay",
    "buffer": "buffer_size",
    "speed_alpha": "speed_alpha",
    "max_speed": "max_speed",
    "cal_samples": "calibration_samples",
    "max_dt": "max_dt",
}


@dataclass
class SessionStats:
    samples: int = 0
    outputs: int = 0
    dropped: int = 0
    max_speed: float = 0.0
    elapsed: float = 0.0

    @property
    def hz(self) -> float:
        return self.samples / self.elapsed if self.elapsed > 0 else 0.0


def build_config(args: argparse.Namespace) -> EstimatorConfig:
    """Preset selected by ``--basic``, with any explicit flag applied on top."""
    base = EstimatorConfig.basic() if args.basic else EstimatorConfig()
    changes = {field: getattr(args, dest) for dest, field in _OVERRIDES.items()
               if getattr(args, dest, None) is not None}
    return dataclasses.replace(base, **changes)


def _recording(samples: Iterable[Sample3],
               sink: list[Sample3]) -> Iterator[Sample3]:
    for s in samples:
        sink.append(s)
        yield s


def calibrate(est: SpeedEstimator, samples: Iterator[Sample3],
              should_stop: Callable[[], bool] = lambda: False) -> bool:
    """Feed *samples* until calibration completes.  False if interrupted."""
    est.start_calibration()
    for sample in samples:
        est.feed(sample)
        if est.mode is Mode.RUNNING:
            return True
        if should_stop():
            break
    return False


def run_session(est: SpeedEstimator, samples: Iterable[Sample3], *,
                csv: bool = False, out: TextIO | None = None,
                should_stop: Callable[[], bool] = lambda: False) -> SessionStats:
    """Stream *samples* through *est*, writing one line per sample to *out*."""
    if out is None:
        out = sys.stdout
    stats = SessionStats()
    t0 = time.monotonic()

    if csv:
        out.write("timestamp_ns,fx,fy,fz,vx,vy,vz,raw_speed,speed,stationary\n")

    for sample in samples:
        if should_stop():
            break

        speed = est.feed(sample)
        stats.samples += 1
        if speed is None:
            continue

        stats.outputs += 1
        stats.max_speed = max(stats.max_speed, speed)
        snap = est.snapshot()

        if csv:
            f, v = snap.filtered_acceleration, snap.velocity
            out.write(f"{sample.timestamp},{f[0]:.6f},{f[1]:.6f},{f[2]:.6f},"
                      f"{v[0]:.6f},{v[1]:.6f},{v[2]:.6f},"
                      f"{snap.raw_speed:.4f},{speed:.4f},"
                      f"{1 if snap.is_stationary else 0}\n")
        else:
            marker = "REST" if snap.is_stationary else "MOVE"
            out.write(f"\r  [{marker:4s}]  {speed_text(speed):>6s} km/h  "
                      f"a=({linear_accel_text(snap.filtered_acceleration)})  "
                      f"({stats.samples} samples)")
            out.flush()

    stats.dropped = est.dropped_samples
    stats.elapsed = time.monotonic() - t0
    return stats


# -- Main ----------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Inertial dead-reckoning speedometer")
    ap.add_argument("port", nargs="?", help="Serial port (auto-detect)")
    ap.add_argument("-b", "--baud", type=int, default=BAUD)
    ap.add_argument("--replay", metavar="FILE", help="Read samples from a CSV log")
    ap.add_argument("--csv", action="store_true", help="CSV output mode")
    ap.add_argument("--record", metavar="FILE",
                    help="Save the raw samples as a CSV log for --replay")
    ap.add_argument("--basic", action="store_true",
                    help="Simple edition constants (no speed smoothing)")
    ap.add_argument("--no-calibrate", action="store_true",
                    help="Skip stillness calibration (zero offsets)")
    ap.add_argument("-v", "--verbose", action="count", default=0)

    tun = ap.add_argument_group("tuning")
    tun.add_argument("--alpha", type=float, help="Accel EMA coefficient")
    tun.add_argument("--threshold", type=float, help="ZUPT threshold (m/s²)")
    tun.add_argument("--decay", type=float, help="Velocity decay when stationary")
    tun.add_argument("--buffer", type=int, help="Moving-average window")
    tun.add_argument("--speed-alpha", type=float, help="Speed EMA coefficient")
    tun.add_argument("--max-speed", type=float, help="Display clamp (km/h)")
    tun.add_argument("--cal-samples", type=int, help="Calibration batch size")
    tun.add_argument("--max-dt", type=float, help="Largest accepted time step (s)")
    return ap


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING - 10 * min(args.verbose, 2),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = build_config(args)
    except ValueError as exc:
        sys.exit(f"ERROR: {exc}")

    if args.replay:
        samples = replay(args.replay)
        source = args.replay
    else:
        port = args.port or find_port()
        if not port:
            sys.exit("ERROR: No serial port found.")
        samples = stream(port, args.baud)
        source = port
    logger.info("Reading samples from %s", source)

    recorded: list[Sample3] = []
    if args.record:
        samples = _recording(samples, recorded)

    stop = False
    def _sigint(*_):
        nonlocal stop
        stop = True
    signal.signal(signal.SIGINT, _sigint)

    est = SpeedEstimator(config)

    # -- Phase 1: Calibration --
    if not args.csv:
        print(f"\n{'='*62}")
        print(f"  Speedometer -- inertial dead-reckoning")
        print(f"{'='*62}")
        print(f"  Source: {source}")
        print(f"{'='*62}\n")

    try:
        if args.no_calibrate:
            est.activate()
        else:
            if not args.csv:
                print(f"  >> Hold device STILL -- calibrating "
                      f"({config.calibration_samples} samples) ...", flush=True)
            if not calibrate(est, samples, lambda: stop):
                sys.exit("\nAborted during calibration.")
            if not args.csv:
                print(f"  >> {est.status}\n")
                print(est.calibration_offset.summary())

        # -- Phase 2: Streaming --
        stats = run_session(est, samples, csv=args.csv, should_stop=lambda: stop)
    finally:
        if args.record:
            n = write_csv(args.record, recorded)
            logger.info("Recorded %d samples to %s", n, args.record)

    # -- Shutdown --
    if not args.csv:
        print(f"\n\n{'='*62}")
        print(f"  Processed {stats.samples} samples in {stats.elapsed:.1f} s  "
              f"({stats.hz:.0f} Hz)")
        print(f"  Dropped: {stats.dropped}  |  Max speed: {stats.max_speed:.1f} km/h")
        print(f"{'='*62}\n")


if __name__ == "__main__":
    main()
