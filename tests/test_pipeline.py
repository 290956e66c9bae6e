from __future__ import annotations

from pathlib import Path
import shutil
import signal
import tempfile
import threading
import time
import unittest

from mobench.builders.common import (
    CompileJob,
    StagePipeline,
    compile_parallel,
    lock_path_for,
    output_dir_lock,
)
from mobench.command_runner import (
    CommandResult,
    CommandRunner,
    PlannedCommand,
    RecordingCommandRunner,
    SubprocessCommandRunner,
)
from mobench.console import Console
from mobench.errors import CommandError, CompileError


class ScriptedRunner(CommandRunner):
    """Fails commands whose program is listed in ``failures`` after ``delay`` seconds."""

    def __init__(self, failures: dict) -> None:
        self.failures = failures
        self.finished = []
        self._lock = threading.Lock()

    def run(self, command: PlannedCommand, *, check: bool = True) -> CommandResult:
        delay = self.failures.get(command.program, 0.0)
        time.sleep(delay if delay else 0.05)
        with self._lock:
            self.finished.append(command.program)
        if command.program in self.failures:
            raise CommandError(CommandResult(command=command, returncode=2, output_tail="error: linker failed"))
        return CommandResult(command=command, returncode=0)


def job(name: str) -> CompileJob:
    return CompileJob(arch=name, command=PlannedCommand.create([name], kind="compile"))


class CompileParallelTests(unittest.TestCase):
    def test_all_succeed(self) -> None:
        runner = ScriptedRunner({})
        results = compile_parallel([job("a"), job("b"), job("c")], runner, max_workers=3)
        self.assertEqual([result.command.program for result in results], ["a", "b", "c"])

    def test_first_failure_in_submission_order_is_raised(self) -> None:
        runner = ScriptedRunner({"slow-fail": 0.3, "fast-fail": 0.01})
        jobs = [job("ok"), job("slow-fail"), job("fast-fail")]
        with self.assertRaises(CompileError) as ctx:
            compile_parallel(jobs, runner, max_workers=3)
        self.assertEqual(ctx.exception.arch, "slow-fail")
        self.assertEqual(ctx.exception.context["exit_code"], 2)
        self.assertIsInstance(ctx.exception.__cause__, CommandError)
        self.assertEqual(sorted(runner.finished), ["fast-fail", "ok", "slow-fail"])

    def test_sequential_mode_preserves_order(self) -> None:
        runner = RecordingCommandRunner()
        compile_parallel([job("x"), job("y"), job("z")], runner, parallel=False)
        self.assertEqual([command.program for command in runner.commands], ["x", "y", "z"])

    def test_empty(self) -> None:
        self.assertEqual(compile_parallel([], RecordingCommandRunner()), [])


@unittest.skipUnless(shutil.which("sleep"), "requires the sleep utility")
@unittest.skipUnless(hasattr(signal, "pthread_kill"), "requires pthread_kill")
class CompileInterruptTests(unittest.TestCase):
    def setUp(self) -> None:
        if signal.getsignal(signal.SIGINT) is not signal.default_int_handler:
            self.skipTest("SIGINT is handled by the test runner")

    def test_interrupt_terminates_running_compiles(self) -> None:
        runner = SubprocessCommandRunner()
        jobs = [
            CompileJob(arch=arch, command=PlannedCommand.create(["sleep", "30"], kind="compile"))
            for arch in ("aarch64-linux-android", "x86_64-linux-android")
        ]
        main_thread = threading.main_thread().ident
        timer = threading.Timer(0.5, signal.pthread_kill, args=(main_thread, signal.SIGINT))
        started = time.monotonic()
        timer.start()
        try:
            with self.assertRaises(KeyboardInterrupt):
                compile_parallel(jobs, runner, max_workers=2)
        finally:
            timer.cancel()
            timer.join()
        self.assertLess(time.monotonic() - started, 10)

    def test_terminate_all_stops_a_running_command(self) -> None:
        runner = SubprocessCommandRunner()
        results = []
        worker = threading.Thread(
            target=lambda: results.append(runner.run(PlannedCommand.create(["sleep", "30"]), check=False))
        )
        started = time.monotonic()
        worker.start()
        time.sleep(0.5)
        runner.terminate_all()
        worker.join(10)
        self.assertFalse(worker.is_alive())
        self.assertLess(time.monotonic() - started, 10)
        self.assertNotEqual(results[0].returncode, 0)

    def test_recording_runner_ignores_terminate_all(self) -> None:
        runner = RecordingCommandRunner()
        runner.terminate_all()
        self.assertEqual(runner.commands, [])


class OutputLockTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.output_dir = Path(self.temp_dir.name) / "mobench" / "android"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_lock_file_is_sibling(self) -> None:
        with output_dir_lock(self.output_dir) as path:
            self.assertEqual(path, lock_path_for(self.output_dir))
            self.assertEqual(path.name, "android.lock")
            self.assertTrue(path.is_file())
        self.assertFalse(self.output_dir.exists())

    def test_dry_run_creates_nothing(self) -> None:
        with output_dir_lock(self.output_dir, dry_run=True) as path:
            self.assertIsNone(path)
        self.assertFalse(self.output_dir.parent.exists())

    def test_second_holder_waits(self) -> None:
        acquired = threading.Event()

        def contender() -> None:
            with output_dir_lock(self.output_dir):
                acquired.set()

        with output_dir_lock(self.output_dir):
            thread = threading.Thread(target=contender)
            thread.start()
            self.assertFalse(acquired.wait(0.2))
        self.assertTrue(acquired.wait(5))
        thread.join(5)


class StagePipelineTests(unittest.TestCase):
    def test_records_reached_states(self) -> None:
        pipeline = StagePipeline(Console("none"))
        self.assertEqual(pipeline.state, "Resolved")
        pipeline.run("CrossCompiled", lambda: None)
        self.assertEqual(pipeline.state, "CrossCompiled")

        def fail() -> None:
            raise RuntimeError("stage failed")

        with self.assertRaises(RuntimeError):
            pipeline.run("BindingsGenerated", fail)
        self.assertEqual(pipeline.completed, ["CrossCompiled"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
