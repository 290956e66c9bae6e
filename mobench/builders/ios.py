"""iOS build pipeline: static libraries, Swift bindings, xcframework, xcodebuild."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Set, Tuple
import os
import plistlib
import shutil
import zipfile

from ..command_runner import CommandRunner, PlannedCommand
from ..errors import CommandError, ConfigError, PackagingError, SigningError, ToolError, wrap_command_error
from ..paths import ResolvedPaths
from ..scaffold import sanitize_bundle_id_component
from ..types import BuildConfig, BuildProfile, BuildResult, Target
from .common import CompileJob, MobileBuilder, StagePipeline, copy_artifact, missing_artifacts

DEVICE = "device"
SIMULATOR = "simulator"

IOS_TARGETS: Dict[str, Tuple[str, str]] = {
    "aarch64-apple-ios": (DEVICE, "arm64"),
    "aarch64-apple-ios-sim": (SIMULATOR, "arm64"),
    "x86_64-apple-ios": (SIMULATOR, "x86_64"),
}
"""Rust target triple -> (platform variant, architecture)."""

DEFAULT_TARGETS: Tuple[str, ...] = ("aarch64-apple-ios", "aarch64-apple-ios-sim")

SCHEME = "BenchRunner"

_ARCH_ORDER = ("arm64", "x86_64")


@dataclass(frozen=True, slots=True)
class FrameworkSlice:
    identifier: str
    variant: str
    archs: Tuple[str, ...]
    triples: Tuple[str, ...]

    @property
    def is_simulator(self) -> bool:
        return self.variant == SIMULATOR

    @property
    def needs_lipo(self) -> bool:
        return len(self.triples) > 1

    @property
    def supported_platform_name(self) -> str:
        return "iPhoneSimulator" if self.is_simulator else "iPhoneOS"


def _slice_identifier(variant: str, archs: Sequence[str]) -> str:
    identifier = "ios-" + "_".join(archs)
    return identifier + "-simulator" if variant == SIMULATOR else identifier


def plan_framework_slices(targets: Iterable[str]) -> Tuple[FrameworkSlice, ...]:
    """Group Rust targets into xcframework slices.

    The device build gets its own slice; all simulator architectures are
    merged into one fat slice.
    """

    grouped: Dict[str, Dict[str, str]] = {DEVICE: {}, SIMULATOR: {}}
    for triple in targets:
        if triple not in IOS_TARGETS:
            raise ConfigError(
                f"Unsupported iOS target '{triple}'",
                hint=f"Supported targets: {', '.join(IOS_TARGETS)}",
            )
        variant, arch = IOS_TARGETS[triple]
        grouped[variant].setdefault(arch, triple)

    slices: List[FrameworkSlice] = []
    for variant in (DEVICE, SIMULATOR):
        by_arch = grouped[variant]
        if not by_arch:
            continue
        archs = tuple(arch for arch in _ARCH_ORDER if arch in by_arch)
        slices.append(
            FrameworkSlice(
                identifier=_slice_identifier(variant, archs),
                variant=variant,
                archs=archs,
                triples=tuple(by_arch[arch] for arch in archs),
            )
        )
    return tuple(slices)


def verify_slices(slices: Sequence[FrameworkSlice], targets: Iterable[str]) -> None:
    """Check that the slices cover exactly the requested (variant, arch) pairs."""

    requested = {IOS_TARGETS[triple] for triple in targets if triple in IOS_TARGETS}
    produced: List[Tuple[str, str]] = [(item.variant, arch) for item in slices for arch in item.archs]
    duplicates = sorted({pair for pair in produced if produced.count(pair) > 1})
    missing = sorted(requested - set(produced))
    unexpected = sorted(set(produced) - requested)
    if not (missing or unexpected or duplicates):
        return

    def describe(pairs: Iterable[Tuple[str, str]]) -> str:
        return ", ".join(f"{arch} ({variant})" for variant, arch in pairs)

    details = []
    if missing:
        details.append(f"missing: {describe(missing)}")
    if unexpected:
        details.append(f"unexpected: {describe(unexpected)}")
    if duplicates:
        details.append(f"duplicated: {describe(duplicates)}")
    raise PackagingError(
        "xcframework slices do not match the requested architectures; " + "; ".join(details),
        context={"slices": ", ".join(item.identifier for item in slices)},
    )


def framework_info(name: str, *, bundle_prefix: str, version: str, deployment_target: str, slice_: FrameworkSlice) -> Dict[str, object]:
    return {
        "CFBundleExecutable": name,
        "CFBundleIdentifier": f"{bundle_prefix}.{sanitize_bundle_id_component(name)}",
        "CFBundleInfoDictionaryVersion": "6.0",
        "CFBundleName": name,
        "CFBundlePackageType": "FMWK",
        "CFBundleShortVersionString": version,
        "CFBundleVersion": "1",
        "CFBundleSupportedPlatforms": [slice_.supported_platform_name],
        "MinimumOSVersion": deployment_target,
    }


def xcframework_info(name: str, slices: Sequence[FrameworkSlice]) -> Dict[str, object]:
    libraries = []
    for item in slices:
        entry: Dict[str, object] = {
            "LibraryIdentifier": item.identifier,
            "LibraryPath": f"{name}.framework",
            "SupportedArchitectures": list(item.archs),
            "SupportedPlatform": "ios",
        }
        if item.is_simulator:
            entry["SupportedPlatformVariant"] = SIMULATOR
        libraries.append(entry)
    return {
        "AvailableLibraries": libraries,
        "CFBundlePackageType": "XFWK",
        "XCFrameworkFormatVersion": "1.0",
    }


def module_map(name: str) -> str:
    return (
        f"framework module {name} {{\n"
        f'  umbrella header "{name}FFI.h"\n'
        "  export *\n"
        "  module * { export * }\n"
        "}\n"
    )


def _write_plist(path: Path, payload: Dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as handle:
        plistlib.dump(payload, handle, sort_keys=True)


def ios_app_paths(app_dir: Path) -> Dict[str, Path]:
    runner_dir = app_dir / "BenchRunner"
    return {
        "runner": runner_dir,
        "bindings": runner_dir / "BenchRunner" / "Generated",
        "project_spec": runner_dir / "project.yml",
        "xcodeproj": runner_dir / "BenchRunner.xcodeproj",
    }


def expected_app(output_dir: Path, profile: BuildProfile, scheme: str = SCHEME) -> Path:
    configuration = profile.xcode_configuration
    return output_dir / "build" / "Build" / "Products" / f"{configuration}-iphoneos" / f"{scheme}.app"


class IosBuilder(MobileBuilder):
    """Build the BenchRunner iOS app around an xcframework of the benchmark crate."""

    platform = Target.IOS

    def targets(self) -> Tuple[str, ...]:
        requested = self.options.architectures or tuple(self.config.ios.targets) or DEFAULT_TARGETS
        return tuple(dict.fromkeys(requested))

    def framework_name(self, paths: ResolvedPaths) -> str:
        return paths.library_name

    def _validate(self, paths: ResolvedPaths, config: BuildConfig) -> None:
        plan_framework_slices(self.targets())
        self._check_signing()

    def _required_tools(self) -> Tuple[str, ...]:
        tools = ("cargo", "uniffi-bindgen", "lipo", "xcodebuild")
        return tools + ("codesign",) if self.options.signing.enabled else tools

    def _rust_targets(self) -> Tuple[str, ...]:
        return self.targets()

    def _platform_stages(
        self,
        pipeline: StagePipeline,
        paths: ResolvedPaths,
        config: BuildConfig,
        runner: CommandRunner,
        result: BuildResult,
    ) -> None:
        app_paths = ios_app_paths(paths.output_dir)
        scaffolded: List[bool] = []

        pipeline.run("CrossCompiled", lambda: self._compile(paths, self._compile_jobs(paths, config), runner))

        def generate_bindings() -> None:
            scaffolded.append(self._ensure_app_project(paths))
            self._generate_bindings(paths, runner, "swift", app_paths["bindings"])

        pipeline.run("BindingsGenerated", generate_bindings)

        xcframework = paths.output_dir / f"{self.framework_name(paths)}.xcframework"
        pipeline.run(
            "FrameworkAssembled",
            lambda: result.add_artifacts([self._assemble_xcframework(paths, config.profile, runner, xcframework)]),
        )
        if self.options.signing.enabled:
            pipeline.run("Signed", lambda: self._sign(xcframework, runner))
        pipeline.run("MetaEmbedded", lambda: result.add_artifacts(self._embed_metadata(paths, config.profile)))

        def invoke_xcode() -> None:
            would_have_spec = self.options.dry_run and any(scaffolded)
            if app_paths["project_spec"].is_file() or would_have_spec:
                self._run_tool(
                    PlannedCommand.create(
                        ["xcodegen", "generate"],
                        cwd=app_paths["runner"],
                        kind="tool",
                        description="Generate Xcode project",
                    ),
                    runner,
                    "xcodegen failed to generate BenchRunner.xcodeproj",
                    hint="Install XcodeGen (brew install xcodegen).",
                )
            self._run_tool(self._xcodebuild_command(paths, config.profile), runner, "xcodebuild failed")
            if self.options.dry_run:
                return
            app = expected_app(paths.output_dir, config.profile)
            if not app.is_dir():
                raise ToolError(f"xcodebuild finished but {app} was not produced", context={"app": app})
            self.console.info(f"App: {app}")
            result.add_artifacts([app])
            result.app_path = app

        pipeline.run("ToolInvoked", invoke_xcode)

    def _compile_jobs(self, paths: ResolvedPaths, config: BuildConfig) -> List[CompileJob]:
        jobs: List[CompileJob] = []
        for triple in self.targets():
            argv = ["cargo", "build", "--target", triple, "--lib"]
            if config.profile is BuildProfile.RELEASE:
                argv.append("--release")
            jobs.append(
                CompileJob(
                    arch=triple,
                    command=PlannedCommand.create(
                        argv,
                        cwd=paths.crate_dir,
                        kind="compile",
                        description=f"Cross compile for {triple}",
                    ),
                )
            )
        return jobs

    def _assemble_xcframework(
        self,
        paths: ResolvedPaths,
        profile: BuildProfile,
        runner: CommandRunner,
        xcframework: Path,
    ) -> Path:
        name = self.framework_name(paths)
        targets = self.targets()
        slices = plan_framework_slices(targets)
        verify_slices(slices, targets)

        dry_run = self.options.dry_run
        library = f"lib{paths.library_name}.a"
        sources = {triple: paths.cross_artifact_dir(triple, profile.dir_name) / library for triple in targets}
        header = ios_app_paths(paths.output_dir)["bindings"] / f"{name}FFI.h"
        if not dry_run:
            missing = missing_artifacts(sources)
            if missing:
                listing = "\n".join(f"  - {triple}: {path}" for triple, path in missing)
                raise PackagingError(f"Static library missing for {len(missing)} target(s):\n{listing}")
            if not header.is_file():
                raise PackagingError(
                    f"Generated header {header.name} not found at {header}",
                    hint="Binding generation must emit the C header alongside the Swift sources.",
                )

        if dry_run:
            self.console.dry(f"would assemble {xcframework} with slices {', '.join(s.identifier for s in slices)}")
        elif xcframework.exists():
            shutil.rmtree(xcframework)

        for item in slices:
            framework_dir = xcframework / item.identifier / f"{name}.framework"
            binary = framework_dir / name
            if item.needs_lipo:
                command = PlannedCommand.create(
                    ["lipo", "-create", *[sources[triple] for triple in item.triples], "-output", binary],
                    kind="assemble",
                    description=f"Merge {item.identifier} static libraries",
                )
                if not dry_run:
                    framework_dir.mkdir(parents=True, exist_ok=True)
                try:
                    runner.run(command)
                except CommandError as exc:
                    raise wrap_command_error(PackagingError, exc, f"lipo failed for slice {item.identifier}") from exc
            else:
                copy_artifact(sources[item.triples[0]], binary, dry_run=dry_run, console=self.console)

            headers_dir = framework_dir / "Headers"
            copy_artifact(header, headers_dir / header.name, dry_run=dry_run, console=self.console)
            if dry_run:
                self.console.dry(f"would write {headers_dir / 'module.modulemap'} and {framework_dir / 'Info.plist'}")
                continue
            (headers_dir / "module.modulemap").write_text(module_map(name), encoding="utf-8")
            _write_plist(
                framework_dir / "Info.plist",
                framework_info(
                    name,
                    bundle_prefix=self.config.ios.bundle_id,
                    version=paths.crate_version,
                    deployment_target=self.config.ios.deployment_target,
                    slice_=item,
                ),
            )

        if not dry_run:
            _write_plist(xcframework / "Info.plist", xcframework_info(name, slices))
            self._verify_assembled(xcframework, name, slices, runner)
            self.console.info(f"Assembled {xcframework}")
        return xcframework

    def _verify_assembled(
        self,
        xcframework: Path,
        name: str,
        slices: Sequence[FrameworkSlice],
        runner: CommandRunner,
    ) -> None:
        """Compare the slices on disk, and the architectures inside each binary, with the plan."""

        present = sorted(entry.name for entry in xcframework.iterdir() if entry.is_dir())
        planned = sorted(item.identifier for item in slices)
        if present != planned:
            raise PackagingError(
                f"{xcframework.name} holds slices {', '.join(present) or 'none'}; expected {', '.join(planned)}",
                context={"xcframework": xcframework},
            )
        for item in slices:
            binary = xcframework / item.identifier / f"{name}.framework" / name
            if not binary.is_file():
                raise PackagingError(f"Slice {item.identifier} has no binary at {binary}", context={"binary": binary})
            archs = self._binary_archs(binary, runner)
            if archs != set(item.archs):
                missing = sorted(set(item.archs) - archs)
                unexpected = sorted(archs - set(item.archs))
                details = []
                if missing:
                    details.append(f"missing {', '.join(missing)}")
                if unexpected:
                    details.append(f"unexpected {', '.join(unexpected)}")
                raise PackagingError(
                    f"Slice {item.identifier} architectures do not match the requested targets: " + "; ".join(details),
                    hint="Check the lipo inputs; every requested target must be merged into its slice.",
                    context={"binary": binary, "archs": " ".join(sorted(archs))},
                )

    def _binary_archs(self, binary: Path, runner: CommandRunner) -> Set[str]:
        command = PlannedCommand.create(
            ["lipo", "-archs", binary],
            kind="verify",
            description=f"Read architectures of {binary.parent.parent.name}",
        )
        try:
            result = runner.run(command)
        except CommandError as exc:
            raise wrap_command_error(PackagingError, exc, f"lipo could not read the architectures of {binary}") from exc
        return set(result.output.split())

    def _check_signing(self) -> None:
        method = self.options.signing
        if method.kind == "certificate":
            if not method.identity or not method.identity.strip():
                raise SigningError("Certificate signing requires a non-empty signing identity")
            profile = method.provisioning_profile
            if profile is None or not Path(profile).is_file():
                raise SigningError(
                    f"Provisioning profile not found: {profile}",
                    hint="Pass --provisioning-profile pointing at a .mobileprovision file.",
                    context={"provisioning_profile": profile},
                )

    def _sign(self, xcframework: Path, runner: CommandRunner) -> None:
        method = self.options.signing
        command = PlannedCommand.create(
            ["codesign", "--force", "--deep", "--sign", method.identity or "-", xcframework],
            kind="sign",
            description=f"Sign xcframework ({method.kind})",
        )
        try:
            runner.run(command)
        except CommandError as exc:
            raise wrap_command_error(SigningError, exc, f"codesign failed for {xcframework.name}") from exc

    def _signing_settings(self) -> List[str]:
        method = self.options.signing
        if method.kind == "certificate":
            settings = [
                f"CODE_SIGN_IDENTITY={method.identity}",
                f"PROVISIONING_PROFILE_SPECIFIER={Path(method.provisioning_profile).stem}",
            ]
            if self.config.ios.team_id:
                settings.append(f"DEVELOPMENT_TEAM={self.config.ios.team_id}")
            return settings
        return ["CODE_SIGNING_ALLOWED=NO"]

    def _xcodebuild_command(self, paths: ResolvedPaths, profile: BuildProfile) -> PlannedCommand:
        app_paths = ios_app_paths(paths.output_dir)
        argv: List[str | Path] = [
            "xcodebuild",
            "-project",
            app_paths["xcodeproj"],
            "-scheme",
            SCHEME,
            "-configuration",
            profile.xcode_configuration,
            "-destination",
            "generic/platform=iOS",
            "-derivedDataPath",
            paths.output_dir / "build",
            "build",
            *self._signing_settings(),
        ]
        return PlannedCommand.create(
            argv,
            cwd=app_paths["runner"],
            kind="tool",
            description=f"Build {SCHEME} ({profile.xcode_configuration})",
        )

    def _run_tool(self, command: PlannedCommand, runner: CommandRunner, message: str, *, hint: str | None = None) -> None:
        try:
            runner.run(command)
        except CommandError as exc:
            raise wrap_command_error(ToolError, exc, message, hint=hint) from exc

    def package_ipa(self, app_path: Path | str, scheme: str = SCHEME) -> Path:
        """Zip ``Payload/<scheme>.app`` into ``<output_dir>/<scheme>.ipa``."""

        app_path = Path(app_path)
        paths = self.resolve_paths()
        ipa_path = paths.output_dir / f"{scheme}.ipa"
        if self.options.dry_run:
            self.console.dry(f"would package {app_path} into {ipa_path}")
            return ipa_path
        if not app_path.is_dir():
            raise PackagingError(f"App bundle not found at {app_path}", context={"app": app_path})

        ipa_path.parent.mkdir(parents=True, exist_ok=True)
        payload_root = Path("Payload") / f"{scheme}.app"
        with zipfile.ZipFile(
            ipa_path,
            mode="w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=9,
            allowZip64=True,
            strict_timestamps=False,
        ) as archive:
            for dirpath, dirnames, filenames in os.walk(app_path, topdown=True):
                dirnames.sort()
                filenames.sort()
                relative_dir = Path(dirpath).relative_to(app_path)
                for filename in filenames:
                    archive.write(Path(dirpath) / filename, (payload_root / relative_dir / filename).as_posix())
        self.console.info(f"IPA: {ipa_path}")
        return ipa_path


__all__ = [
    "DEFAULT_TARGETS",
    "FrameworkSlice",
    "IOS_TARGETS",
    "IosBuilder",
    "expected_app",
    "framework_info",
    "ios_app_paths",
    "module_map",
    "plan_framework_slices",
    "verify_slices",
    "xcframework_info",
]
