#!/usr/bin/env python3
"""
imu_driver.py -- Sample sources for the speed estimator.

Two sources yield timestamped :class:`Sample3` values:

  * ``stream()``  live ICM-42688-P packets from a USB-UART bridge
  * ``replay()``  a previously recorded CSV log (``paced()`` plays it back
                  in real time)

Packet (18 bytes):
  [0xAA][0x55][AX_H][AX_L][AY_H][AY_L][AZ_H][AZ_L]
  [GX_H][GX_L][GY_H][GY_L][GZ_H][GZ_L][T_H][T_L][0x0D][0x0A]

The sensor reports specific force, so a live stream still contains gravity.
Keep the device in a fixed orientation: stillness calibration then absorbs
gravity into the bias offset.
"""

from __future__ import annotations

import csv
import glob
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Generator, Iterable, Optional

import serial
import serial.tools.list_ports

# ── Sensor constants ────────────────────────────────────────────────────────
BAUD       = 115_200
PKT_LEN    = 18
HEADER     = b"\xAA\x55"
TRAILER    = b"\x0D\x0A"
ACCEL_LSB  = 2048.0     # LSB/g   (±16 g)
GYRO_LSB   = 16.384     # LSB/dps (±2000 dps)  32768/2000
G_MPS2     = 9.80665    # m/s² per g
DEG2RAD    = math.pi / 180.0

CSV_FIELDS = ("timestamp_ns", "x", "y", "z", "ax", "ay", "az", "gx", "gy", "gz")


@dataclass(frozen=True)
class Sample3:
    """One linear-acceleration reading (m/s²) with its timestamp."""
    x: float
    y: float
    z: float
    timestamp: int          # monotonic timestamp (ns)

    # Raw accelerometer / gyroscope, for display only
    ax: float = 0.0         # m/s²
    ay: float = 0.0
    az: float = 0.0
    gx: float = 0.0         # rad/s
    gy: float = 0.0
    gz: float = 0.0


def _s16(hi: int, lo: int) -> int:
    v = (hi << 8) | lo
    return v - 0x10000 if v >= 0x8000 else v


def decode_packet(pkt: bytes, timestamp: int) -> Sample3:
    """Decode one framed packet into a :class:`Sample3` stamped *timestamp*."""
    if len(pkt) != PKT_LEN:
        raise ValueError(f"Packet must be {PKT_LEN} bytes, got {len(pkt)}")
    if pkt[:2] != HEADER or pkt[-2:] != TRAILER:
        raise ValueError(f"Bad packet framing: {pkt.hex()}")

    ax = _s16(pkt[2], pkt[3]) / ACCEL_LSB * G_MPS2
    ay = _s16(pkt[4], pkt[5]) / ACCEL_LSB * G_MPS2
    az = _s16(pkt[6], pkt[7]) / ACCEL_LSB * G_MPS2
    gx = _s16(pkt[8], pkt[9]) / GYRO_LSB * DEG2RAD
    gy = _s16(pkt[10], pkt[11]) / GYRO_LSB * DEG2RAD
    gz = _s16(pkt[12], pkt[13]) / GYRO_LSB * DEG2RAD

    return Sample3(x=ax, y=ay, z=az, timestamp=timestamp,
                   ax=ax, ay=ay, az=az, gx=gx, gy=gy, gz=gz)


def find_port() -> Optional[str]:
    """Auto-detect a USB-UART serial port."""
    for p in serial.tools.list_ports.comports():
        d = ((p.description or "") + (p.manufacturer or "")).lower()
        if any(k in d for k in ("ftdi", "ft2232", "digilent", "arty", "uart")):
            return p.device
    usbs = sorted(glob.glob("/dev/ttyUSB*"))
    return usbs[1] if len(usbs) >= 2 else (usbs[0] if usbs else None)


def stream(port: Optional[str] = None,
           baud: int = BAUD) -> Generator[Sample3, None, None]:
    """
    Open *port* and yield one :class:`Sample3` per valid packet.

    Handles header sync, trailer verification, and byte-level resync.
    """
    port = port or find_port()
    if port is None:
        raise RuntimeError("No serial port found.  Is the sensor connected?")

    ser = serial.Serial(port, baud, timeout=0.5)
    ser.reset_input_buffer()
    time.sleep(0.05)
    ser.reset_input_buffer()

    buf = bytearray()

    try:
        while True:
            chunk = ser.read(max(ser.in_waiting, 1))
            if not chunk:
                continue
            buf.extend(chunk)

            while len(buf) >= PKT_LEN:
                idx = buf.find(HEADER)
                if idx < 0:
                    buf = buf[-1:]
                    break
                if idx > 0:
                    buf = buf[idx:]
                if len(buf) < PKT_LEN:
                    break

                pkt = bytes(buf[:PKT_LEN])
                buf = buf[PKT_LEN:]

                if pkt[-2:] != TRAILER:
                    buf = bytearray(pkt[2:]) + buf
                    continue

                yield decode_packet(pkt, time.monotonic_ns())
    finally:
        ser.close()


# ── CSV logs ────────────────────────────────────────────────────────────────

def replay(path: str | Path) -> Generator[Sample3, None, None]:
    """
    Yield samples from a CSV log.

    Columns ``timestamp_ns,x,y,z`` are required; the raw ``ax..gz`` columns
    are optional and default to 0.
    """
    with open(path, newline="") as fh:
        reader = csv.DictReader(fh)
        missing = {"timestamp_ns", "x", "y", "z"} - set(reader.fieldnames or ())
        if missing:
            raise ValueError(f"{path}: missing columns {sorted(missing)}")

        for row in reader:
            try:
                extra = {k: float(row[k]) for k in CSV_FIELDS[4:]
                         if row.get(k) not in (None, "")}
                yield Sample3(
                    x=float(row["x"]), y=float(row["y"]), z=float(row["z"]),
                    timestamp=int(row["timestamp_ns"]),
                    **extra,
                )
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{path}:{reader.line_num}: bad row {row!r}") from exc


def write_csv(path: str | Path, samples: Iterable[Sample3]) -> int:
    """Write *samples* in the format read by :func:`replay`.  Returns row count."""
    n = 0
    with open(path, "w", newline="") as fh:
        w = csv.writer(fh)
        w.writerow(CSV_FIELDS)
        for s in samples:
            w.writerow([s.timestamp, s.x, s.y, s.z,
                        s.ax, s.ay, s.az, s.gx, s.gy, s.gz])
            n += 1
    return n


def paced(samples: Iterable[Sample3],
          speed: float = 1.0) -> Generator[Sample3, None, None]:
    """Re-emit *samples* at the rate their timestamps imply (replay playback)."""
    prev: Optional[int] = None
    for s in samples:
        if prev is not None:
            delay = (s.timestamp - prev) / 1e9 / speed
            if delay > 0:
                time.sleep(delay)
        prev = s.timestamp
        yield s
