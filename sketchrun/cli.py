"""
Command-line entry point.

Typical use:

    sketchrun -u -c blink/blink.ino      # detect board, compile, upload, watch serial
    sketchrun -n -r blink/blink.ino      # no compile, record serial output

Stages run strictly in order: resolve arguments, infer board/port/speeds, compile and
upload, then the serial session. Errors map to exit codes here and nowhere else.
"""

from __future__ import annotations

import argparse
import os
import sys

from . import __version__
from .build import build_and_upload
from .detect import BOARDS, resolve_config
from .errors import SketchrunError, UsageError
from .proc import eprint
from .session import run_session


class ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str):
        raise UsageError(f"{message}\n\n{self.format_usage().strip()}")


def build_parser() -> ArgumentParser:
    ap = ArgumentParser(
        prog="sketchrun",
        description="Detect an attached Arduino, compile a sketch for it, upload it and watch its serial output.",
    )
    ap.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("-v", "--verbose", action="store_true", help="Trace decisions and run arduino-cli verbosely.")
    ap.add_argument("-u", "--upload", action="store_true", help="Upload after compiling.")
    ap.add_argument("-b", "--board", help=f"Board type ({' or '.join(BOARDS)}); auto-detected when omitted.")
    ap.add_argument("-p", "--port", help="Serial port, e.g. /dev/ttyACM0; auto-detected when omitted.")
    ap.add_argument("-s", "--speed", type=int, help="Upload speed (default depends on the board).")
    ap.add_argument("-B", "--fqbn", help="Fully qualified board name (default depends on the board).")
    ap.add_argument("-d", "--builddir", help="Build directory (default: <sketch dir>/build).")
    ap.add_argument("-c", "--catusb", action="store_true", help="Print the board's serial output.")
    ap.add_argument("--stty", action="store_true", help="Configure the serial line before reading.")
    ap.add_argument("-r", "--recordusb", action="store_true", help="Record serial output (implies --catusb).")
    ap.add_argument("--recordfile", help="Record to this file instead of the rotating ring (implies --recordusb).")
    ap.add_argument("-n", "--nocompile", action="store_true", help="Skip compiling.")
    ap.add_argument("--readspeed", type=int, help="Serial read speed (default: guessed from the sketch).")
    ap.add_argument("-t", "--testplan", help="Compile with -DTEST_PLAN=<value>.")
    ap.add_argument("--no-color", action="store_true", help="Ask arduino-cli for uncolored output.")
    ap.add_argument("file", help="Sketch file (.ino).")
    return ap


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    args = build_parser().parse_args(argv)
    if not os.path.isfile(args.file):
        raise UsageError(f"Input file not found: {args.file}")
    if args.recordfile:
        args.recordusb = True
    if args.recordusb:
        args.catusb = True
    return args


def run(argv: list[str] | None = None) -> int:
    cfg = resolve_config(parse_args(argv))
    build_and_upload(cfg)
    run_session(cfg)
    return 0


def main(argv: list[str] | None = None) -> int:
    try:
        return run(argv)
    except SketchrunError as ex:
        eprint(f"\nERROR: {ex}")
        return int(ex.exit_code)
    except KeyboardInterrupt:
        # Ctrl-C while a child process runs; the serial session handles its own.
        eprint("\nInterrupted.")
        return 130


def entry() -> None:
    sys.exit(main())
