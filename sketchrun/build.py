"""Compile and upload a sketch through arduino-cli."""

from __future__ import annotations

import getpass
import os
import pathlib

from .detect import RunConfig
from .errors import InvariantViolation, ResolutionError
from .proc import arduino_cli_cmd, banner, eprint, run

LIBRARY_PATH_ENV = "ARDUINO_LIBRARY_PATH"


def ensure_dir(path: str) -> str:
    pathlib.Path(path).mkdir(parents=True, exist_ok=True)
    return path


def library_path() -> str | None:
    lib = os.environ.get(LIBRARY_PATH_ENV, "").strip()
    if not lib:
        eprint("")
        eprint("*" * 72)
        eprint(f"WARNING: {LIBRARY_PATH_ENV} is not set; compiling without extra libraries.")
        eprint("*" * 72)
        eprint("")
        return None
    return lib


def compile_command(cfg: RunConfig, lib: str | None) -> list[str]:
    cmd = arduino_cli_cmd("compile", "--fqbn", cfg.fqbn, "--build-path", cfg.build_dir)
    if lib:
        cmd += ["--libraries", lib]
    if not cfg.color:
        cmd.append("--no-color")
    if cfg.test_plan:
        cmd += ["--build-property", f"compiler.cpp.extra_flags=-DTEST_PLAN={cfg.test_plan}"]
    if cfg.verbose:
        cmd.append("--verbose")
    cmd.append(cfg.source)
    return cmd


def upload_command(cfg: RunConfig) -> list[str]:
    if not cfg.port:
        raise InvariantViolation("upload-port", "upload requested without a resolved port")
    cmd = arduino_cli_cmd("upload", "--fqbn", cfg.fqbn, "--port", cfg.port, "--input-dir", cfg.build_dir)
    if cfg.speed:
        # avrdude's -b comes from upload.speed; overrides the board definition.
        cmd += ["--upload-property", f"upload.speed={cfg.speed}"]
    if not cfg.color:
        cmd.append("--no-color")
    if cfg.verbose:
        cmd.append("--verbose")
    return cmd


def compile_sketch(cfg: RunConfig) -> None:
    banner(f"Compiling {cfg.source} for {cfg.fqbn}")
    ensure_dir(cfg.build_dir)
    run(compile_command(cfg, library_path()), verbose=cfg.verbose)


def check_port_access(port: str) -> None:
    # If we can't open the device, avrdude emits a noisy stack of errors. Give a clearer hint up front.
    if os.access(port, os.R_OK | os.W_OK):
        return
    user = getpass.getuser()
    group_name = None
    try:
        import grp

        group_name = grp.getgrgid(os.stat(port).st_gid).gr_name
    except (ImportError, KeyError, OSError):
        group_name = None
    raise ResolutionError(
        f"Permission denied opening {port} as user {user!r}.\n\n"
        "Fix:\n"
        f"- Add the user to the device-owning group:\n"
        f"    sudo usermod -aG {group_name or 'dialout'} {user}\n"
        "  Then log out/in (or reboot) and re-run."
    )


def upload_build(cfg: RunConfig) -> None:
    cmd = upload_command(cfg)
    banner(f"Uploading to {cfg.port}")
    check_port_access(cfg.port or "")
    run(cmd, verbose=cfg.verbose)


def build_and_upload(cfg: RunConfig) -> None:
    if cfg.compile:
        compile_sketch(cfg)
    if cfg.upload:
        upload_build(cfg)
