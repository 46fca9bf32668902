"""
End-to-end tests for `sketchrun.cli.main`: argument errors, exit codes, stage ordering.

No child process or serial port is ever touched; `subprocess.run` and the serial opener
are patched, and device nodes live in a temporary directory (see `DeviceDirTestCase`).
"""

from __future__ import annotations

import contextlib
import io
import os
import subprocess
import unittest
from unittest import mock

from sketchrun import cli, detect, session
from sketchrun.errors import ExitCode, InvariantViolation

from test_detect import DeviceDirTestCase


def ok(args, **kwargs):
    return subprocess.CompletedProcess(args, 0, stdout="", stderr="")


class CliTestBase(DeviceDirTestCase):
    def setUp(self) -> None:
        super().setUp()
        env = mock.patch.dict(
            os.environ,
            {
                "ARDUINO_CLI": "arduino-cli",
                "ARDUINO_LIBRARY_PATH": str(self.root / "libs"),
                "SKETCHRUN_RECORD_DIR": str(self.root / "records"),
            },
        )
        env.start()
        self.addCleanup(env.stop)
        run_patcher = mock.patch("sketchrun.proc.subprocess.run", side_effect=ok)
        self.run_mock = run_patcher.start()
        self.addCleanup(run_patcher.stop)

    def main(self, *argv: str) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = cli.main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def commands(self) -> list[list[str]]:
        return [c.args[0] for c in self.run_mock.call_args_list]


class TestUsageErrors(CliTestBase):
    def test_unknown_flag(self):
        code, _, err = self.main("--frobnicate", str(self.sketch))
        self.assertEqual(code, ExitCode.USAGE)
        self.assertIn("usage:", err)

    def test_two_positionals(self):
        code, _, _ = self.main(str(self.sketch), str(self.sketch))
        self.assertEqual(code, ExitCode.USAGE)

    def test_missing_positional(self):
        code, _, _ = self.main("-u")
        self.assertEqual(code, ExitCode.USAGE)

    def test_missing_file(self):
        code, _, err = self.main(str(self.root / "nope.ino"))
        self.assertEqual(code, ExitCode.USAGE)
        self.assertIn("not found", err)

    def test_bad_speed(self):
        code, _, _ = self.main("-s", "fast", str(self.sketch))
        self.assertEqual(code, ExitCode.USAGE)

    def test_unknown_board(self):
        code, _, _ = self.main("-b", "mega", str(self.sketch))
        self.assertEqual(code, ExitCode.USAGE)
        self.assertEqual(self.run_mock.call_count, 0)

    def test_version_exits_zero(self):
        with contextlib.redirect_stdout(io.StringIO()) as out:
            with self.assertRaises(SystemExit) as cm:
                cli.main(["--version"])
        self.assertEqual(cm.exception.code, 0)
        self.assertIn("sketchrun", out.getvalue())

    def test_help_exits_zero(self):
        with contextlib.redirect_stdout(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                cli.main(["-h"])
        self.assertEqual(cm.exception.code, 0)


class TestResolutionFailures(CliTestBase):
    def test_no_board_exits_10_without_child_process(self):
        code, _, err = self.main("-u", str(self.sketch))
        self.assertEqual(code, ExitCode.RESOLUTION)
        self.assertIn("No board found", err)
        self.assertEqual(self.run_mock.call_count, 0)

    def test_ambiguous_ports_exit_10_without_child_process(self):
        self.add_device("nano", 0)
        self.add_device("nano", 1)
        code, _, _ = self.main("-u", str(self.sketch))
        self.assertEqual(code, ExitCode.RESOLUTION)
        self.assertEqual(self.run_mock.call_count, 0)


class TestInternalErrors(CliTestBase):
    def test_invariant_violation_exits_99(self):
        self.add_device("uno")
        with mock.patch.object(detect, "check_config", side_effect=InvariantViolation("port", "lost port")):
            code, _, err = self.main("-u", str(self.sketch))
        self.assertEqual(code, ExitCode.INVARIANT)
        self.assertIn("internal error [port]", err)
        self.assertEqual(self.run_mock.call_count, 0)


class TestRuns(CliTestBase):
    def test_speed_flag_reaches_uploader(self):
        self.add_device("uno")
        code, _, _ = self.main("-u", str(self.sketch))
        self.assertEqual(code, 0)
        default_upload = self.commands()[-1]
        self.run_mock.reset_mock()

        code, _, _ = self.main("-u", "-s", "19200", str(self.sketch))
        self.assertEqual(code, 0)
        upload_cmd = self.commands()[-1]
        self.assertNotEqual(upload_cmd, default_upload)
        self.assertIn("upload.speed=19200", upload_cmd)
        self.assertIn("upload.speed=115200", default_upload)

    def test_unplugged_port_exits_10(self):
        self.add_device("uno")
        fake = mock.MagicMock()
        fake.__enter__.return_value = fake
        fake.__exit__.return_value = False
        type(fake).in_waiting = mock.PropertyMock(side_effect=OSError(5, "Input/output error"))

        real_run_session = session.run_session
        with mock.patch.object(
            cli,
            "run_session",
            side_effect=lambda cfg: real_run_session(cfg, console=io.BytesIO(), open_port=lambda c: fake),
        ):
            code, _, err = self.main("-n", "-c", "--readspeed", "9600", str(self.sketch))
        self.assertEqual(code, ExitCode.RESOLUTION)
        self.assertIn("Serial read", err)

    def test_compile_and_upload(self):
        port = self.add_device("uno")
        code, out, _ = self.main("-u", str(self.sketch))
        self.assertEqual(code, 0)
        compile_cmd, upload_cmd = self.commands()
        self.assertEqual(compile_cmd[:3], ["arduino-cli", "compile", "--fqbn"])
        self.assertIn(str(self.sketch.parent / "build"), compile_cmd)
        self.assertEqual(compile_cmd[-1], str(self.sketch))
        self.assertIn(port, upload_cmd)
        self.assertIn("Compiling", out)
        self.assertTrue((self.sketch.parent / "build").is_dir())

    def test_testplan_and_no_color_reach_compiler(self):
        self.add_device("nano")
        code, _, _ = self.main("-t", "3", "--no-color", str(self.sketch))
        self.assertEqual(code, 0)
        (compile_cmd,) = self.commands()
        self.assertIn("--no-color", compile_cmd)
        self.assertIn("compiler.cpp.extra_flags=-DTEST_PLAN=3", compile_cmd)

    def test_compiler_failure_exit_status_propagates(self):
        self.add_device("uno")
        self.run_mock.side_effect = subprocess.CalledProcessError(4, ["arduino-cli"])
        code, _, _ = self.main("-u", str(self.sketch))
        self.assertEqual(code, 4)
        self.assertEqual(self.run_mock.call_count, 1)

    def test_record_without_compile(self):
        self.add_device("uno")
        fake = mock.MagicMock()
        fake.__enter__.return_value = fake
        fake.__exit__.return_value = False
        fake.in_waiting = 0
        fake.read.side_effect = [b"tick\n", KeyboardInterrupt()]
        console = io.BytesIO()

        real_run_session = session.run_session
        with mock.patch.object(
            cli,
            "run_session",
            side_effect=lambda cfg: real_run_session(cfg, console=console, open_port=lambda c: fake),
        ):
            code, _, _ = self.main("-n", "-r", "--readspeed", "9600", str(self.sketch))

        self.assertEqual(code, 0)
        self.assertEqual(self.run_mock.call_count, 0)
        record = (self.root / "records" / "blink-00.txt").read_bytes()
        self.assertIn(b"speed: 9600\n", record)
        self.assertIn(b"tick\n", record)
        self.assertEqual(record.count(session.END_MARKER.encode()), 1)


if __name__ == "__main__":
    unittest.main()
