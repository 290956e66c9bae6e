"""Utilities for executing external tools with optional dry-run support."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence, Set, Tuple
import os
import shlex
import subprocess
import threading

from .console import Console
from .errors import CommandError

OUTPUT_TAIL_LINES = 40
"""Number of trailing output lines kept for error reports."""

TERMINATE_GRACE_SECONDS = 5.0


@dataclass(frozen=True, slots=True)
class PlannedCommand:
    """A single external tool invocation: what would run, and where."""

    program: str
    args: Tuple[str, ...] = ()
    working_dir: Path | None = None
    kind: str = "tool"
    description: str | None = None
    env: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def create(
        cls,
        argv: Sequence[str | Path],
        *,
        cwd: Path | None = None,
        kind: str = "tool",
        description: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> "PlannedCommand":
        parts = [str(part) for part in argv]
        if not parts:
            raise ValueError("Command must contain at least a program name")
        return cls(
            program=parts[0],
            args=tuple(parts[1:]),
            working_dir=cwd,
            kind=kind,
            description=description,
            env=tuple(sorted((str(k), str(v)) for k, v in (env or {}).items())),
        )

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.args]

    def format(self) -> str:
        return " ".join(shlex.quote(part) for part in self.argv)


@dataclass(slots=True)
class CommandResult:
    """Represents the outcome of an executed (or recorded) command."""

    command: PlannedCommand
    returncode: int
    output: str = ""
    output_tail: str = ""
    recorded: bool = False


class CommandRunner:
    """Abstract command runner interface."""

    def run(self, command: PlannedCommand, *, check: bool = True) -> CommandResult:
        raise NotImplementedError

    def format_command(self, command: PlannedCommand) -> str:
        return command.format()

    def terminate_all(self) -> None:
        """Stop every process this runner has in flight. Runners that spawn nothing ignore it."""


class SubprocessCommandRunner(CommandRunner):
    """Command runner that executes commands via :mod:`subprocess`.

    stdout and stderr are merged and read line by line so that output can be
    echoed live in verbose mode while a bounded tail is kept for diagnostics.
    """

    def __init__(self, console: Console | None = None) -> None:
        self._console = console
        self._processes: Set[subprocess.Popen] = set()
        self._lock = threading.Lock()

    @staticmethod
    def _merge_environment(env: Iterable[Tuple[str, str]]) -> Dict[str, str] | None:
        overrides = dict(env)
        if not overrides:
            return None
        merged = os.environ.copy()
        merged.update(overrides)
        return merged

    @staticmethod
    def _terminate(process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def terminate_all(self) -> None:
        with self._lock:
            processes = list(self._processes)
        for process in processes:
            self._terminate(process)

    def _finalize(self, result: CommandResult, *, check: bool) -> CommandResult:
        if check and result.returncode != 0:
            raise CommandError(result)
        return result

    def run(self, command: PlannedCommand, *, check: bool = True) -> CommandResult:
        if self._console is not None:
            self._console.debug(f"$ {command.format()}" + (f"  (cwd={command.working_dir})" if command.working_dir else ""))
        try:
            process = subprocess.Popen(
                command.argv,
                cwd=str(command.working_dir) if command.working_dir else None,
                env=self._merge_environment(command.env),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            result = CommandResult(command=command, returncode=127, output=str(exc), output_tail=str(exc))
            raise CommandError(
                result,
                hint=f"Failed to start '{command.program}'. Ensure the tool is installed and available on PATH.",
            ) from exc

        with self._lock:
            self._processes.add(process)

        captured: List[str] = []
        tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        try:
            assert process.stdout is not None
            for raw_line in process.stdout:
                line = raw_line.rstrip("\n")
                captured.append(line)
                tail.append(line)
                if self._console is not None:
                    self._console.output(line)
            returncode = process.wait()
        except KeyboardInterrupt:
            self._terminate(process)
            raise
        finally:
            with self._lock:
                self._processes.discard(process)
            if process.stdout is not None:
                process.stdout.close()

        return self._finalize(
            CommandResult(
                command=command,
                returncode=returncode,
                output="\n".join(captured),
                output_tail="\n".join(tail),
            ),
            check=check,
        )


class RecordingCommandRunner(CommandRunner):
    """Command runner that records commands instead of executing them."""

    def __init__(self) -> None:
        self.commands: List[PlannedCommand] = []
        self._lock = threading.Lock()

    def run(self, command: PlannedCommand, *, check: bool = True) -> CommandResult:
        with self._lock:
            self.commands.append(command)
        return CommandResult(command=command, returncode=0, recorded=True)

    def iter_commands(self) -> Iterable[PlannedCommand]:
        return iter(list(self.commands))

    def iter_formatted(self, *, workspace: Path | None = None) -> Iterable[str]:
        return format_dry_run(list(self.commands), workspace=workspace)


def format_dry_run(commands: Iterable[PlannedCommand], *, workspace: Path | None = None) -> Iterable[str]:
    """Render planned commands as ``[dry-run] <description> (cwd=...) <command>`` lines."""

    default_cwd = str(workspace) if workspace else None
    for record in commands:
        cwd = str(record.working_dir) if record.working_dir else default_cwd
        parts: List[str] = ["[dry-run]"]
        if record.description:
            parts.append(record.description)
        if cwd:
            parts.append(f"(cwd={cwd})")
        parts.append(record.format())
        yield " ".join(parts)


__all__ = [
    "CommandResult",
    "CommandRunner",
    "OUTPUT_TAIL_LINES",
    "PlannedCommand",
    "RecordingCommandRunner",
    "SubprocessCommandRunner",
    "format_dry_run",
]
