"""Plumbing shared by the Android and iOS builders."""
from __future__ import annotations

from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Sequence, Tuple
import fcntl
import os
import shutil
import time

from ..command_runner import CommandResult, CommandRunner, PlannedCommand, RecordingCommandRunner, SubprocessCommandRunner
from ..config_loader import MobenchConfig
from ..console import Console
from ..errors import BindingGenError, CommandError, CompileError, ConfigError, PackagingError, wrap_command_error
from ..metadata import EmbeddedBenchSpec, create_bench_meta, embed_meta, embed_spec
from ..paths import ConfigResolver, ResolvedPaths
from ..registry import BenchmarkRegistry, discover_registry
from ..scaffold import ScaffoldContext, ensure_project
from ..types import BuildConfig, BuildProfile, BuildResult, BuilderOptions, SigningMethod, Target

INCOMPLETE_MARKER = ".mobench-incomplete"
LOCK_SUFFIX = ".lock"

TOOL_HINTS: Dict[str, str] = {
    "cargo": "Install Rust from https://rustup.rs.",
    "cargo-ndk": "Install cargo-ndk with `cargo install cargo-ndk`.",
    "uniffi-bindgen": "Install uniffi-bindgen with `cargo install uniffi-bindgen`.",
    "lipo": "Install Xcode and its command line tools (xcode-select --install).",
    "xcodebuild": "Install Xcode and its command line tools (xcode-select --install).",
    "codesign": "Install Xcode and its command line tools (xcode-select --install).",
}


@dataclass(frozen=True, slots=True)
class CompileJob:
    """One cross-compile invocation; ``arch`` labels failures."""

    arch: str
    command: PlannedCommand


class StagePipeline:
    """Run named stages in order, remembering the last state reached."""

    def __init__(self, console: Console) -> None:
        self._console = console
        self.completed: List[str] = []

    @property
    def state(self) -> str:
        return self.completed[-1] if self.completed else "Resolved"

    def run(self, name: str, action: Callable[[], None]) -> None:
        self._console.info(f"==> {name}")
        action()
        self.completed.append(name)
        self._console.debug(f"state: {name}")


def compile_parallel(
    jobs: Sequence[CompileJob],
    runner: CommandRunner,
    *,
    max_workers: int | None = None,
    parallel: bool = True,
) -> List[CommandResult]:
    """Run compile jobs concurrently.

    After the first failure, jobs already running are allowed to finish and
    the rest are cancelled. The failure raised is the first one in submission
    order. With ``parallel=False`` jobs run one by one in submission order.
    """

    if not jobs:
        return []

    if not parallel or len(jobs) == 1:
        results: List[CommandResult] = []
        for job in jobs:
            results.append(_run_compile(job, runner))
        return results

    workers = min(len(jobs), max_workers or os.cpu_count() or 1)
    executor = ThreadPoolExecutor(max_workers=workers)
    futures: List[Future[CommandResult]] = []
    try:
        futures = [executor.submit(_run_compile, job, runner) for job in jobs]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        if any(future.exception() is not None for future in done):
            for future in pending:
                future.cancel()
        wait(futures)
    except KeyboardInterrupt:
        for future in futures:
            future.cancel()
        runner.terminate_all()
        raise
    finally:
        executor.shutdown(wait=True)

    for future in futures:
        if future.cancelled():
            continue
        error = future.exception()
        if error is not None:
            raise error
    return [future.result() for future in futures]


def _run_compile(job: CompileJob, runner: CommandRunner) -> CommandResult:
    try:
        return runner.run(job.command)
    except CommandError as exc:
        raise wrap_command_error(
            CompileError,
            exc,
            f"Compilation failed for {job.arch}",
            arch=job.arch,
            hint=f"Check that the Rust target for {job.arch} is installed (rustup target list --installed).",
        ) from exc


def lock_path_for(output_dir: Path) -> Path:
    return output_dir.with_name(output_dir.name + LOCK_SUFFIX)


@contextmanager
def output_dir_lock(output_dir: Path, *, dry_run: bool = False) -> Iterator[Path | None]:
    """Hold an exclusive lock serializing builds that share ``output_dir``.

    The lock file sits next to the output directory so a clean does not remove it.
    """

    if dry_run:
        yield None
        return
    lock_path = lock_path_for(output_dir)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield lock_path
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def mark_incomplete(output_dir: Path) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    marker = output_dir / INCOMPLETE_MARKER
    marker.write_text(f"started {time.strftime('%Y-%m-%dT%H:%M:%S')}\n", encoding="utf-8")
    return marker


def clear_incomplete(output_dir: Path) -> None:
    (output_dir / INCOMPLETE_MARKER).unlink(missing_ok=True)


def copy_artifact(source: Path, destination: Path, *, dry_run: bool, console: Console) -> Path:
    if dry_run:
        console.dry(f"would copy {source} -> {destination}")
        return destination
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
    except OSError as exc:
        raise PackagingError(
            f"Failed to copy {source} to {destination}: {exc}",
            context={"source": source, "destination": destination},
        ) from exc
    console.debug(f"copied {source} -> {destination}")
    return destination


class MobileBuilder:
    """Stages and configuration common to both platform builders.

    The fluent setters return a new builder and leave the receiver untouched.
    Subclasses set ``platform`` and implement :meth:`_platform_stages`.
    """

    platform: Target

    def __init__(
        self,
        project_root: Path | str,
        crate_name: str,
        *,
        options: BuilderOptions | None = None,
        runner: CommandRunner | None = None,
        console: Console | None = None,
        config: MobenchConfig | None = None,
        registry: BenchmarkRegistry | None = None,
        spec: EmbeddedBenchSpec | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        self.crate_name = crate_name
        self.options = options or BuilderOptions()
        self.config = config or MobenchConfig()
        self.registry = registry
        self.spec = spec
        self._runner = runner
        self._console = console
        self._default_console: Console | None = None

    def _copy(self, **changes) -> "MobileBuilder":
        return type(self)(
            self.project_root,
            self.crate_name,
            options=self.options.with_options(**changes),
            runner=self._runner,
            console=self._console,
            config=self.config,
            registry=self.registry,
            spec=self.spec,
        )

    def verbose(self, enabled: bool = True) -> "MobileBuilder":
        return self._copy(verbose=enabled)

    def dry_run(self, enabled: bool = True) -> "MobileBuilder":
        return self._copy(dry_run=enabled)

    def output_dir(self, path: Path | str) -> "MobileBuilder":
        return self._copy(output_dir=Path(path))

    def crate_dir(self, path: Path | str) -> "MobileBuilder":
        return self._copy(crate_dir=Path(path))

    def signing(self, method: SigningMethod) -> "MobileBuilder":
        return self._copy(signing=method)

    def with_spec(self, spec: EmbeddedBenchSpec | None) -> "MobileBuilder":
        clone = self._copy()
        clone.spec = spec
        return clone

    @property
    def console(self) -> Console:
        if self._console is not None:
            return self._console
        if self._default_console is None:
            self._default_console = Console.for_options(verbose=self.options.verbose, dry_run=self.options.dry_run)
        return self._default_console

    def _make_runner(self) -> CommandRunner:
        if self.options.dry_run:
            return RecordingCommandRunner()
        if self._runner is not None:
            return self._runner
        return SubprocessCommandRunner(console=self.console)

    def resolve_paths(self) -> ResolvedPaths:
        resolver = ConfigResolver(
            self.project_root,
            self.config.project.crate_name or self.crate_name,
            library_name=self.config.library_name(),
        )
        output_dir = self.options.output_dir or self.config.project.output_dir
        return resolver.resolve(self.platform, crate_dir=self.options.crate_dir, output_dir=output_dir)

    def build(self, config: BuildConfig) -> BuildResult:
        if config.target is not self.platform:
            raise ConfigError(f"{type(self).__name__} cannot build target '{config.target.value}'")

        started = time.monotonic()
        paths = self.resolve_paths()
        self._validate(paths, config)

        runner = self._make_runner()
        dry_run = self.options.dry_run
        if not dry_run:
            self._preflight(paths, runner)
        result = BuildResult(platform=self.platform, dry_run=dry_run)
        pipeline = StagePipeline(self.console)
        self.console.info(
            f"Building {paths.crate_name} for {self.platform.value} ({config.profile.value}) into {paths.output_dir}"
        )

        with output_dir_lock(paths.output_dir, dry_run=dry_run):
            if not config.incremental:
                self._clean(paths, runner)
            if not dry_run:
                mark_incomplete(paths.output_dir)
            try:
                self._platform_stages(pipeline, paths, config, runner, result)
            finally:
                if isinstance(runner, RecordingCommandRunner):
                    result.planned_commands = tuple(runner.iter_commands())
            if not dry_run:
                clear_incomplete(paths.output_dir)

        result.duration = timedelta(seconds=time.monotonic() - started)
        if dry_run:
            result.app_path = None
        self.console.info(f"Finished {self.platform.value} build in {result.duration.total_seconds():.1f}s")
        return result

    def _validate(self, paths: ResolvedPaths, config: BuildConfig) -> None:
        """Raise ConfigError for inputs that make the build impossible."""

    def _required_tools(self) -> Tuple[str, ...]:
        return ("cargo", "uniffi-bindgen")

    def _rust_targets(self) -> Tuple[str, ...]:
        return ()

    def _preflight(self, paths: ResolvedPaths, runner: CommandRunner) -> None:
        """Check the host toolchain before anything is cleaned or compiled."""

        missing = [tool for tool in self._required_tools() if shutil.which(tool) is None]
        if missing:
            hints = [TOOL_HINTS[tool] for tool in missing if tool in TOOL_HINTS]
            raise ConfigError(
                f"Required tool(s) not found on PATH: {', '.join(missing)}",
                hint=" ".join(dict.fromkeys(hints)) or None,
            )

        targets = self._rust_targets()
        if not targets:
            return
        if shutil.which("rustup") is None:
            self.console.debug("rustup not found; skipping the installed target check")
            return
        command = PlannedCommand.create(
            ["rustup", "target", "list", "--installed"],
            cwd=paths.crate_dir,
            kind="preflight",
            description="List installed Rust targets",
        )
        try:
            result = runner.run(command)
        except CommandError as exc:
            raise wrap_command_error(ConfigError, exc, "Failed to list installed Rust targets") from exc
        installed = {line.strip() for line in result.output.splitlines()}
        absent = [target for target in targets if target not in installed]
        if absent:
            raise ConfigError(
                f"Rust target(s) not installed: {', '.join(absent)}",
                hint=f"Run: rustup target add {' '.join(absent)}",
            )

    def _platform_stages(
        self,
        pipeline: StagePipeline,
        paths: ResolvedPaths,
        config: BuildConfig,
        runner: CommandRunner,
        result: BuildResult,
    ) -> None:
        raise NotImplementedError

    def _clean(self, paths: ResolvedPaths, runner: CommandRunner) -> None:
        command = PlannedCommand.create(
            ["rm", "-rf", paths.output_dir],
            kind="clean",
            description="Remove previous build output",
        )
        try:
            runner.run(command)
        except CommandError as exc:
            raise wrap_command_error(PackagingError, exc, f"Failed to clean {paths.output_dir}") from exc

    def _host_compile_job(self, paths: ResolvedPaths) -> CompileJob:
        return CompileJob(
            arch="host",
            command=PlannedCommand.create(
                ["cargo", "build", "--lib"],
                cwd=paths.crate_dir,
                kind="compile",
                description="Build host library for binding generation",
            ),
        )

    def _compile(self, paths: ResolvedPaths, jobs: Sequence[CompileJob], runner: CommandRunner) -> None:
        all_jobs = [*jobs, self._host_compile_job(paths)]
        compile_parallel(
            all_jobs,
            runner,
            max_workers=self.options.jobs,
            parallel=not self.options.dry_run,
        )

    def _generate_bindings(self, paths: ResolvedPaths, runner: CommandRunner, language: str, out_dir: Path) -> None:
        if not self.options.dry_run and not paths.host_library.is_file():
            raise BindingGenError(
                f"Host library not found at {paths.host_library}",
                hint="The host compile must succeed before bindings can be generated.",
                context={"host_library": paths.host_library},
            )
        if not self.options.dry_run:
            out_dir.mkdir(parents=True, exist_ok=True)
        command = PlannedCommand.create(
            [
                "uniffi-bindgen",
                "generate",
                "--library",
                paths.host_library,
                "--language",
                language,
                "--out-dir",
                out_dir,
            ],
            cwd=paths.crate_dir,
            kind="bindgen",
            description=f"Generate {language} bindings",
        )
        try:
            runner.run(command)
        except CommandError as exc:
            raise wrap_command_error(
                BindingGenError,
                exc,
                f"Failed to generate {language} bindings",
                hint="Install uniffi-bindgen with `cargo install uniffi-bindgen` or add it to the crate.",
            ) from exc

    def _ensure_app_project(self, paths: ResolvedPaths) -> bool:
        context = ScaffoldContext.from_config(
            self.config,
            crate_name=paths.crate_name,
            library_name=paths.library_name,
            default_function=self.spec.function if self.spec is not None else None,
        )
        created = ensure_project(
            self.platform,
            paths.output_dir,
            context,
            dry_run=self.options.dry_run,
            console=self.console,
        )
        if created:
            self.console.debug(f"scaffolded {self.platform.value} app project in {paths.output_dir}")
        return created

    def _registry(self, paths: ResolvedPaths) -> BenchmarkRegistry:
        if self.registry is None:
            self.registry = discover_registry(self.config, paths.crate_dir, paths.library_name)
        return self.registry

    def _effective_spec(self, paths: ResolvedPaths) -> EmbeddedBenchSpec | None:
        if self.spec is not None:
            return self.spec
        benchmarks = self.config.benchmarks
        function = benchmarks.default_function
        if function is None:
            names = self._registry(paths).names()
            if not names:
                return None
            function = names[0]
        return EmbeddedBenchSpec(
            function=function,
            iterations=benchmarks.default_iterations,
            warmup=benchmarks.default_warmup,
        )

    def _embed_metadata(self, paths: ResolvedPaths, profile: BuildProfile) -> List[Path]:
        written: List[Path] = []
        spec = self._effective_spec(paths)
        dry_run = self.options.dry_run
        if spec is not None:
            written.append(embed_spec(paths.output_dir, spec, self.platform, dry_run=dry_run, console=self.console))
        else:
            self.console.info("No benchmark function configured; skipping bench_spec.json")
        meta = create_bench_meta(
            name=paths.crate_name,
            version=paths.crate_version,
            platform=self.platform,
            profile=profile,
            spec=spec,
            registry=self._registry(paths),
        )
        written.append(embed_meta(paths.output_dir, meta, self.platform, dry_run=dry_run, console=self.console))
        return written


def missing_artifacts(expected: Dict[str, Path]) -> List[Tuple[str, Path]]:
    return [(arch, path) for arch, path in expected.items() if not path.is_file()]


__all__ = [
    "CompileJob",
    "INCOMPLETE_MARKER",
    "MobileBuilder",
    "StagePipeline",
    "clear_incomplete",
    "compile_parallel",
    "copy_artifact",
    "lock_path_for",
    "mark_incomplete",
    "missing_artifacts",
    "output_dir_lock",
]
