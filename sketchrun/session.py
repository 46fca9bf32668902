"""
Serial session: optional line configuration, then a framed, recorded read loop.

The read loop copies raw bytes from the board to the console and to a record sink until
Ctrl-C or until the port goes away. The record sink is an explicit --recordfile, the
newest slot of a 16-file ring per sketch, or os.devnull when nothing is recorded.
Whatever ends the loop, the trailer line is written exactly once.
"""

from __future__ import annotations

import os
import sys
import time
from contextlib import contextmanager
from typing import BinaryIO, Callable, Iterator

import serial

from .detect import RunConfig
from .errors import InvariantViolation, ResolutionError
from .proc import banner, eprint, run, trace

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
BEGIN_MARKER = "==== BEGIN ===="
END_MARKER = "==== END ===="

RING_SIZE = 16
DEFAULT_RECORD_DIR = "~/.cache/sketchrun/records"
READ_TIMEOUT_S = 1.0


def record_dir() -> str:
    return os.path.expanduser(os.environ.get("SKETCHRUN_RECORD_DIR") or DEFAULT_RECORD_DIR)


def record_basename(source: str) -> str:
    name = os.path.basename(source)
    base = name.rsplit(".", 1)[0] if "." in name else name
    return base or "out"


def ring_path(directory: str, base: str, slot: int) -> str:
    return os.path.join(directory, f"{base}-{slot:02d}.txt")


def rotate_record_files(source: str, directory: str | None = None) -> str:
    """
    Shift the ring one slot older and return the path for the new recording.

    Slot 15 is the oldest and is overwritten by slot 14; the new file is always slot 00.
    """
    directory = directory or record_dir()
    os.makedirs(directory, exist_ok=True)
    base = record_basename(source)
    for slot in range(RING_SIZE - 1, 0, -1):
        newer = ring_path(directory, base, slot - 1)
        if os.path.exists(newer):
            os.replace(newer, ring_path(directory, base, slot))
    return ring_path(directory, base, 0)


def utc_stamp(ts: float) -> str:
    return time.strftime(TIMESTAMP_FORMAT, time.gmtime(ts))


def header_lines(cfg: RunConfig, now: float | None = None) -> list[str]:
    if now is None:
        now = time.time()
    return [
        f"speed: {cfg.read_speed}",
        f"fqbn: {cfg.fqbn}",
        f"port: {cfg.port}",
        f"file: {cfg.source}",
        f"file date: {utc_stamp(os.path.getmtime(cfg.source))}",
        f"now: {utc_stamp(now)}",
        "",
        BEGIN_MARKER,
    ]


class Tee:
    """Duplicate every write to the console and the record sink."""

    def __init__(self, *streams: BinaryIO):
        self.streams = streams

    def write(self, data: bytes) -> None:
        for s in self.streams:
            s.write(data)
            s.flush()

    def line(self, text: str) -> None:
        self.write(text.encode("utf-8") + b"\n")


@contextmanager
def framed(out: Tee, cfg: RunConfig) -> Iterator[Tee]:
    for line in header_lines(cfg):
        out.line(line)
    try:
        yield out
    finally:
        out.line("")
        out.line(END_MARKER)


def configure_line(cfg: RunConfig) -> None:
    if not cfg.port or not cfg.read_speed:
        raise InvariantViolation("stty", "line configuration without port/read speed")
    banner(f"Configuring {cfg.port} at {cfg.read_speed} baud")
    run(
        ["stty", "-F", cfg.port, str(cfg.read_speed), "raw", "-echo", "-ixon", "-ixoff", "-crtscts"],
        verbose=cfg.verbose,
    )


def open_sink(cfg: RunConfig) -> BinaryIO:
    if cfg.record_file:
        parent = os.path.dirname(cfg.record_file)
        if parent:
            os.makedirs(parent, exist_ok=True)
        path = cfg.record_file
    elif cfg.record:
        path = rotate_record_files(cfg.source)
    else:
        return open(os.devnull, "wb")
    eprint(f"Recording to {path}")
    return open(path, "wb")


def open_serial(cfg: RunConfig) -> serial.Serial:
    return serial.Serial(cfg.port, cfg.read_speed, timeout=READ_TIMEOUT_S)


def copy_serial(ser: serial.Serial, out: Tee) -> None:
    while True:
        chunk = ser.read(ser.in_waiting or 1)
        if chunk:
            out.write(chunk)


def run_session(
    cfg: RunConfig,
    *,
    console: BinaryIO | None = None,
    open_port: Callable[[RunConfig], serial.Serial] = open_serial,
) -> None:
    if cfg.stty:
        configure_line(cfg)
    if not cfg.catusb:
        return
    if console is None:
        console = sys.stdout.buffer

    banner(f"Reading {cfg.port} (Ctrl-C to stop)")
    with open_sink(cfg) as sink, framed(Tee(console, sink), cfg) as out:
        try:
            with open_port(cfg) as ser:
                copy_serial(ser, out)
        except KeyboardInterrupt:
            trace(cfg.verbose, "interrupted, closing session")
        except (serial.SerialException, OSError) as ex:
            raise ResolutionError(f"Serial read from {cfg.port} failed: {ex}") from ex
