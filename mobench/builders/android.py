"""Android build pipeline: cargo-ndk cross compile, Kotlin bindings, Gradle APK."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Tuple

from ..command_runner import CommandRunner, PlannedCommand
from ..errors import CommandError, ConfigError, PackagingError, ToolError, wrap_command_error
from ..paths import ResolvedPaths
from ..types import BuildConfig, BuildProfile, BuildResult, Target
from .common import CompileJob, MobileBuilder, StagePipeline, copy_artifact, missing_artifacts

ABI_TRIPLES: Dict[str, str] = {
    "arm64-v8a": "aarch64-linux-android",
    "armeabi-v7a": "armv7-linux-androideabi",
    "x86_64": "x86_64-linux-android",
    "x86": "i686-linux-android",
}

DEFAULT_ABIS: Tuple[str, ...] = ("arm64-v8a", "armeabi-v7a", "x86_64")


def android_app_paths(app_dir: Path) -> Dict[str, Path]:
    main = app_dir / "app" / "src" / "main"
    return {
        "bindings": main / "java",
        "jni_libs": main / "jniLibs",
        "assets": main / "assets",
    }


def expected_apk(app_dir: Path, profile: BuildProfile) -> Path:
    name = profile.dir_name
    return app_dir / "app" / "build" / "outputs" / "apk" / name / f"app-{name}.apk"


class AndroidBuilder(MobileBuilder):
    """Build an installable benchmark APK from a Rust crate.

    Stages: cross compile every ABI (plus the host library), generate Kotlin
    bindings, copy the shared libraries into ``jniLibs``, embed the benchmark
    metadata and run Gradle.
    """

    platform = Target.ANDROID

    def abis(self) -> Tuple[str, ...]:
        requested = self.options.architectures or tuple(self.config.android.abis) or DEFAULT_ABIS
        return tuple(dict.fromkeys(requested))

    def _validate(self, paths: ResolvedPaths, config: BuildConfig) -> None:
        unknown = [abi for abi in self.abis() if abi not in ABI_TRIPLES]
        if unknown:
            supported = ", ".join(ABI_TRIPLES)
            raise ConfigError(
                f"Unsupported Android ABI(s): {', '.join(unknown)}",
                hint=f"Supported ABIs: {supported}",
            )

    def _required_tools(self) -> Tuple[str, ...]:
        return ("cargo", "cargo-ndk", "uniffi-bindgen")

    def _rust_targets(self) -> Tuple[str, ...]:
        return tuple(ABI_TRIPLES[abi] for abi in self.abis())

    def _platform_stages(
        self,
        pipeline: StagePipeline,
        paths: ResolvedPaths,
        config: BuildConfig,
        runner: CommandRunner,
        result: BuildResult,
    ) -> None:
        app_dir = paths.output_dir
        app_paths = android_app_paths(app_dir)

        pipeline.run("CrossCompiled", lambda: self._compile(paths, self._compile_jobs(paths, config), runner))
        pipeline.run(
            "BindingsGenerated",
            lambda: self._generate_bindings(paths, runner, "kotlin", app_paths["bindings"]),
        )
        pipeline.run("LibsPackaged", lambda: result.add_artifacts(self._package_libs(paths, config.profile)))
        pipeline.run("MetaEmbedded", lambda: result.add_artifacts(self._embed_metadata(paths, config.profile)))

        def invoke_gradle() -> None:
            apk = self._run_gradle(app_dir, config.profile, runner)
            if apk is not None:
                result.add_artifacts([apk])
                result.app_path = apk

        pipeline.run("ToolInvoked", invoke_gradle)

    def _compile_jobs(self, paths: ResolvedPaths, config: BuildConfig) -> List[CompileJob]:
        min_sdk = str(self.config.android.min_sdk)
        jobs: List[CompileJob] = []
        for abi in self.abis():
            argv = ["cargo", "ndk", "--target", abi, "--platform", min_sdk, "build", "--lib"]
            if config.profile is BuildProfile.RELEASE:
                argv.append("--release")
            jobs.append(
                CompileJob(
                    arch=abi,
                    command=PlannedCommand.create(
                        argv,
                        cwd=paths.crate_dir,
                        kind="compile",
                        description=f"Cross compile for {abi}",
                    ),
                )
            )
        return jobs

    def _package_libs(self, paths: ResolvedPaths, profile: BuildProfile) -> List[Path]:
        self._ensure_app_project(paths)
        library = f"lib{paths.library_name}.so"
        sources = {
            abi: paths.cross_artifact_dir(ABI_TRIPLES[abi], profile.dir_name) / library for abi in self.abis()
        }
        if not self.options.dry_run:
            missing = missing_artifacts(sources)
            if missing:
                listing = "\n".join(f"  - {abi}: {path}" for abi, path in missing)
                raise PackagingError(
                    f"Compiled library missing for {len(missing)} ABI(s):\n{listing}",
                    hint="Re-run the build; the cross compile did not produce the expected shared libraries.",
                )

        jni_libs = android_app_paths(paths.output_dir)["jni_libs"]
        return [
            copy_artifact(source, jni_libs / abi / library, dry_run=self.options.dry_run, console=self.console)
            for abi, source in sources.items()
        ]

    def _gradle_command(self, app_dir: Path, profile: BuildProfile) -> PlannedCommand:
        program = "./gradlew" if (app_dir / "gradlew").is_file() else "gradle"
        argv = [program, profile.gradle_task]
        if self.options.verbose:
            argv.append("--info")
        return PlannedCommand.create(
            argv,
            cwd=app_dir,
            kind="tool",
            description=f"Assemble {profile.value} APK",
        )

    def _run_gradle(self, app_dir: Path, profile: BuildProfile, runner: CommandRunner) -> Path | None:
        command = self._gradle_command(app_dir, profile)
        try:
            runner.run(command)
        except CommandError as exc:
            raise wrap_command_error(
                ToolError,
                exc,
                f"Gradle {profile.gradle_task} failed",
                hint="Check that the Android SDK is installed and ANDROID_HOME is set.",
            ) from exc
        if self.options.dry_run:
            return None

        apk = expected_apk(app_dir, profile)
        if not apk.is_file():
            raise ToolError(
                f"Gradle finished but the APK was not found at {apk}",
                context={"apk": apk},
            )
        self.console.info(f"APK: {apk}")
        return apk


__all__ = ["ABI_TRIPLES", "AndroidBuilder", "DEFAULT_ABIS", "android_app_paths", "expected_apk"]
