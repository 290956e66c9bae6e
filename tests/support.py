"""Shared fixtures for the builder tests."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional
import shutil
import textwrap
import threading
from unittest.mock import patch

from mobench.command_runner import CommandResult, CommandRunner, PlannedCommand
from mobench.errors import CommandError


def tools_on_path(*missing: str):
    """Patch PATH lookups so every tool except ``missing`` looks installed."""

    return patch(
        "mobench.builders.common.shutil.which",
        side_effect=lambda name: None if name in missing else f"/usr/bin/{name}",
    )


def make_crate(root: Path, name: str = "bench-mobile", *, directory: str = "bench-mobile") -> Path:
    crate_dir = root / directory
    (crate_dir / "src").mkdir(parents=True)
    (crate_dir / "Cargo.toml").write_text(
        textwrap.dedent(
            f"""
            [package]
            name = "{name}"
            version = "0.3.1"
            edition = "2021"

            [lib]
            crate-type = ["cdylib", "staticlib", "lib"]
            """
        )
    )
    (crate_dir / "src" / "lib.rs").write_text(
        textwrap.dedent(
            """
            use mobench_sdk::benchmark;

            #[benchmark]
            pub fn fibonacci() {
                fib(30);
            }

            #[benchmark]
            fn checksum() {}

            pub fn helper() {}
            """
        )
    )
    return crate_dir


TRIPLE_ARCHS = {
    "aarch64-apple-ios": "arm64",
    "aarch64-apple-ios-sim": "arm64",
    "x86_64-apple-ios": "x86_64",
}

INSTALLED_TARGETS = (
    "aarch64-linux-android",
    "armv7-linux-androideabi",
    "x86_64-linux-android",
    "i686-linux-android",
    *TRIPLE_ARCHS,
)


class CountingCommandRunner(CommandRunner):
    """Counts spawns without running anything."""

    def __init__(self) -> None:
        self.spawned = 0

    def run(self, command: PlannedCommand, *, check: bool = True) -> CommandResult:
        self.spawned += 1
        return CommandResult(command=command, returncode=0)


class FakeToolchainRunner(CommandRunner):
    """Pretends to be rustup, cargo, uniffi-bindgen, lipo, gradle and xcodebuild.

    Each command creates the files the real tool would produce. Static libraries
    hold their target triple, and ``lipo -create`` concatenates its inputs, so
    ``lipo -archs`` can report what a merged binary really contains. Commands
    whose argv contains an entry of ``fail_on`` exit with status 1.
    """

    def __init__(
        self,
        target_dir: Path,
        library_name: str,
        *,
        fail_on: tuple = (),
        installed_targets: Optional[Iterable[str]] = None,
    ) -> None:
        self.target_dir = target_dir
        self.library_name = library_name
        self.fail_on = fail_on
        self.installed_targets = list(INSTALLED_TARGETS if installed_targets is None else installed_targets)
        self.commands: List[PlannedCommand] = []
        self._lock = threading.Lock()

    def run(self, command: PlannedCommand, *, check: bool = True) -> CommandResult:
        with self._lock:
            self.commands.append(command)
        if any(token in command.argv for token in self.fail_on):
            result = CommandResult(command=command, returncode=1, output="boom", output_tail="boom")
            if check:
                raise CommandError(result)
            return result
        output = self._produce(command) or ""
        return CommandResult(command=command, returncode=0, output=output, output_tail=output)

    def _touch(self, path: Path, content: str = "bin") -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    def _produce(self, command: PlannedCommand) -> Optional[str]:
        argv = command.argv
        if argv[0] == "rustup":
            return "\n".join(self.installed_targets)
        profile = "release" if "--release" in argv else "debug"
        lib = self.library_name
        if argv[:2] == ["cargo", "ndk"]:
            triple = {
                "arm64-v8a": "aarch64-linux-android",
                "armeabi-v7a": "armv7-linux-androideabi",
                "x86_64": "x86_64-linux-android",
                "x86": "i686-linux-android",
            }[argv[argv.index("--target") + 1]]
            self._touch(self.target_dir / triple / profile / f"lib{lib}.so")
        elif argv[:2] == ["cargo", "build"] and "--target" in argv:
            triple = argv[argv.index("--target") + 1]
            self._touch(self.target_dir / triple / profile / f"lib{lib}.a", triple)
        elif argv[:2] == ["cargo", "build"]:
            self._touch(self.target_dir / "debug" / f"lib{lib}.so")
        elif argv[0] == "uniffi-bindgen":
            out_dir = Path(argv[argv.index("--out-dir") + 1])
            language = argv[argv.index("--language") + 1]
            if language == "swift":
                self._touch(out_dir / f"{lib}FFI.h", "// header")
                self._touch(out_dir / f"{lib}.swift", "// swift")
            else:
                self._touch(out_dir / "uniffi" / lib / f"{lib}.kt", "// kotlin")
        elif argv[:2] == ["lipo", "-archs"]:
            triples = Path(argv[2]).read_text().split()
            return " ".join(TRIPLE_ARCHS[triple] for triple in triples)
        elif argv[:2] == ["lipo", "-create"]:
            inputs = argv[2 : argv.index("-output")]
            merged = "\n".join(Path(item).read_text() for item in self._lipo_inputs(inputs))
            self._touch(Path(argv[argv.index("-output") + 1]), merged)
        elif argv[0] in {"./gradlew", "gradle"}:
            variant = "release" if argv[1] == "assembleRelease" else "debug"
            apk = command.working_dir / "app" / "build" / "outputs" / "apk" / variant / f"app-{variant}.apk"
            self._touch(apk, "apk")
        elif argv[0] == "xcodebuild":
            derived = Path(argv[argv.index("-derivedDataPath") + 1])
            configuration = argv[argv.index("-configuration") + 1]
            app = derived / "Build" / "Products" / f"{configuration}-iphoneos" / "BenchRunner.app"
            self._touch(app / "BenchRunner", "exe")
            self._touch(app / "Info.plist", "plist")
        elif argv[0] == "rm":
            shutil.rmtree(argv[-1], ignore_errors=True)
        return None

    def _lipo_inputs(self, inputs: List[str]) -> List[str]:
        return inputs

    def kinds(self) -> List[str]:
        return [command.kind for command in self.commands]
