"""
Error kinds raised by sketchrun.

Each kind maps to a fixed process exit status; only `sketchrun.cli.main` turns them into
an actual exit.
"""

from __future__ import annotations

import enum


class ExitCode(enum.IntEnum):
    OK = 0
    USAGE = 1
    RESOLUTION = 10
    INVARIANT = 99


class SketchrunError(RuntimeError):
    """Base error for this tool."""

    exit_code: int = ExitCode.USAGE


class UsageError(SketchrunError):
    """Bad or missing command-line arguments."""

    exit_code = ExitCode.USAGE


class ResolutionError(SketchrunError):
    """Board, port or device could not be resolved unambiguously."""

    exit_code = ExitCode.RESOLUTION


class InvariantViolation(SketchrunError):
    """An internally impossible branch was reached."""

    exit_code = ExitCode.INVARIANT

    def __init__(self, marker: str, message: str = "should never happen"):
        super().__init__(f"internal error [{marker}]: {message}")
        self.marker = marker


class CollaboratorFailure(SketchrunError):
    """An external command (arduino-cli, stty) returned non-zero."""

    def __init__(self, message: str, returncode: int):
        super().__init__(message)
        # A signal-killed child reports a negative code; keep the exit non-zero.
        self.exit_code = returncode if returncode > 0 else ExitCode.USAGE
        self.returncode = returncode
