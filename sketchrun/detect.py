"""
Board, port and speed inference.

Everything the user leaves unspecified is filled in here, preferring explicit flags,
then probing /dev for the device nodes each board family creates, then static defaults.
The result is a frozen `RunConfig` that the build and serial stages only read.
"""

from __future__ import annotations

import dataclasses
import glob
import os
import pathlib
from typing import Any

from .errors import CollaboratorFailure, InvariantViolation, ResolutionError, UsageError
from .proc import arduino_cli_cmd, eprint, run, trace


@dataclasses.dataclass(frozen=True)
class BoardFamily:
    name: str
    device_glob: str
    speed: int
    fqbn: str


# Known boards we care about. Genuine Unos enumerate as CDC-ACM, Nano clones sit
# behind a CH340/FTDI bridge and use the old 57600 baud bootloader.
BOARDS: dict[str, BoardFamily] = {
    "uno": BoardFamily("uno", "/dev/ttyACM*", 115200, "arduino:avr:uno"),
    "nano": BoardFamily("nano", "/dev/ttyUSB*", 57600, "arduino:avr:nano:cpu=atmega328old"),
}

# Checked in this order; the last rate found wins.
KNOWN_BAUD_RATES = (9600, 19200, 28800, 38400, 57600, 115200)
DEFAULT_READ_SPEED = 9600

BUILD_SUBDIR = "build"


@dataclasses.dataclass(frozen=True)
class RunConfig:
    source: str
    board: str
    fqbn: str
    build_dir: str
    port: str | None = None
    speed: int | None = None
    read_speed: int | None = None
    record_file: str | None = None
    test_plan: str | None = None
    compile: bool = True
    upload: bool = False
    catusb: bool = False
    stty: bool = False
    record: bool = False
    verbose: bool = False
    color: bool = True

    @property
    def needs_port(self) -> bool:
        return self.upload or self.catusb or self.stty

    @property
    def needs_read_speed(self) -> bool:
        return self.catusb or self.stty


@dataclasses.dataclass(frozen=True)
class DeviceProbe:
    counts: dict[str, int]

    def present(self) -> list[str]:
        return [name for name, n in self.counts.items() if n > 0]

    def describe(self) -> str:
        return ", ".join(f"{BOARDS[name].device_glob}: {n}" for name, n in self.counts.items())


def find_devices(family: BoardFamily) -> list[str]:
    return sorted(glob.glob(family.device_glob))


def probe_devices() -> DeviceProbe:
    """Count candidate device nodes for every family. Never cached."""
    return DeviceProbe({name: len(find_devices(fam)) for name, fam in BOARDS.items()})


def resolve_board(board: str | None) -> BoardFamily:
    if board is not None:
        family = BOARDS.get(board)
        if family is None:
            raise UsageError(f"Unknown board {board!r} (expected one of: {', '.join(BOARDS)})")
        return family

    probe = probe_devices()
    present = probe.present()
    if len(present) > 1:
        raise ResolutionError(
            f"Several board types attached, cannot pick one ({probe.describe()}). Use --board."
        )
    if not present:
        raise ResolutionError(f"No board found ({probe.describe()}).")
    return BOARDS[present[0]]


def resolve_port(family: BoardFamily, port: str | None) -> str:
    if not port:
        candidates = find_devices(family)
        if len(candidates) != 1:
            found = ", ".join(candidates) or "none"
            raise ResolutionError(
                f"Expected exactly one {family.name} port matching {family.device_glob}, "
                f"found {len(candidates)} ({found}). Use --port."
            )
        port = candidates[0]
    if not os.path.exists(port):
        raise ResolutionError(f"Serial port not found: {port}")
    return port


def default_build_dir(source: str) -> str:
    parent = os.path.dirname(source)
    return os.path.join(parent, BUILD_SUBDIR) if parent else BUILD_SUBDIR


def infer_read_speed(text: str) -> int:
    """
    Best-effort guess of the sketch's Serial.begin() rate.

    This is a plain substring scan, not a parser: a rate mentioned in a comment or a
    string counts just the same. Of the known rates present, the highest in scan order
    wins.
    """
    speed = DEFAULT_READ_SPEED
    for rate in KNOWN_BAUD_RATES:
        if str(rate) in text:
            speed = rate
    return speed


def preprocess_source(source: str, fqbn: str, *, verbose: bool = False) -> str:
    try:
        cp = run(arduino_cli_cmd("compile", "--fqbn", fqbn, "--preprocess", source), capture=True, verbose=verbose)
        return cp.stdout or ""
    except CollaboratorFailure as ex:
        eprint(f"Warning: could not preprocess {source} ({ex}); scanning the raw file instead.")
        return pathlib.Path(source).read_text(encoding="utf-8", errors="replace")


def check_config(cfg: RunConfig) -> RunConfig:
    family = BOARDS.get(cfg.board)
    if family is None:
        raise InvariantViolation("board", f"unresolved board {cfg.board!r}")
    if not cfg.fqbn:
        raise InvariantViolation("fqbn", "empty fqbn")
    if cfg.needs_port and not (cfg.port and cfg.speed):
        raise InvariantViolation("port", f"port={cfg.port!r} speed={cfg.speed!r}")
    if cfg.needs_read_speed and not cfg.read_speed:
        raise InvariantViolation("readspeed", "read speed not resolved")
    return cfg


def resolve_config(args: Any) -> RunConfig:
    """Build the RunConfig for one invocation from parsed arguments."""
    verbose = bool(args.verbose)
    family = resolve_board(args.board)
    trace(verbose, f"board: {family.name}")

    catusb = bool(args.catusb)
    needs_port = bool(args.upload or catusb or args.stty)

    port = resolve_port(family, args.port) if needs_port else args.port
    speed = args.speed or family.speed
    fqbn = args.fqbn or family.fqbn
    build_dir = args.builddir or default_build_dir(args.file)

    read_speed = args.readspeed
    if not read_speed and (catusb or args.stty):
        read_speed = infer_read_speed(preprocess_source(args.file, fqbn, verbose=verbose))
        trace(verbose, f"inferred read speed: {read_speed}")

    cfg = RunConfig(
        source=args.file,
        board=family.name,
        fqbn=fqbn,
        build_dir=build_dir,
        port=port,
        speed=speed,
        read_speed=read_speed,
        record_file=args.recordfile,
        test_plan=args.testplan,
        compile=not args.nocompile,
        upload=bool(args.upload),
        catusb=catusb,
        stty=bool(args.stty),
        record=bool(args.recordusb),
        verbose=verbose,
        color=not args.no_color,
    )
    trace(verbose, f"config: {cfg}")
    return check_config(cfg)
