"""Console output helpers and child-process execution."""

from __future__ import annotations

import os
import subprocess
import sys

from .errors import CollaboratorFailure

DEFAULT_ARDUINO_CLI = "arduino-cli"


def eprint(*args: object) -> None:
    print(*args, file=sys.stderr)


def trace(enabled: bool, msg: str) -> None:
    """Trace log (stderr), only printed with --verbose."""
    if enabled:
        print(f"[sketchrun][trace] {msg}", file=sys.stderr)


def banner(title: str) -> None:
    print(f"\n=== {title} ===", flush=True)


def arduino_cli() -> str:
    return os.environ.get("ARDUINO_CLI") or DEFAULT_ARDUINO_CLI


def arduino_cli_cmd(*args: str) -> list[str]:
    return [arduino_cli(), *args]


def run(
    args: list[str],
    *,
    capture: bool = False,
    verbose: bool = False,
) -> subprocess.CompletedProcess[str]:
    """
    Run a command to completion; always text mode.

    A non-zero exit becomes CollaboratorFailure carrying the child's status, so the
    caller never continues past a failed step.
    """
    trace(verbose, "run: " + " ".join(args))
    try:
        return subprocess.run(args, check=True, text=True, capture_output=capture)
    except subprocess.CalledProcessError as ex:
        msg = f"Command failed (exit {ex.returncode}): {' '.join(args)}"
        err = (ex.stderr or "").strip()
        if err:
            msg += f"\n\nstderr:\n{err}"
        raise CollaboratorFailure(msg, ex.returncode) from ex
    except FileNotFoundError as ex:
        raise CollaboratorFailure(f"Command not found: {args[0]}", 127) from ex
