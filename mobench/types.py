"""Core value types shared by the Android and iOS builders."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Tuple

from .command_runner import PlannedCommand


class Target(str, Enum):
    ANDROID = "android"
    IOS = "ios"

    @classmethod
    def parse(cls, value: str) -> "Target":
        normalized = value.strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown target '{value}'. Expected one of: android, ios")


class BuildProfile(str, Enum):
    DEBUG = "debug"
    RELEASE = "release"

    @classmethod
    def parse(cls, value: str) -> "BuildProfile":
        normalized = value.strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown profile '{value}'. Expected one of: debug, release")

    @property
    def dir_name(self) -> str:
        """Cargo output directory name for this profile."""
        return self.value

    @property
    def gradle_task(self) -> str:
        return "assembleRelease" if self is BuildProfile.RELEASE else "assembleDebug"

    @property
    def xcode_configuration(self) -> str:
        return "Release" if self is BuildProfile.RELEASE else "Debug"


@dataclass(frozen=True, slots=True)
class SigningMethod:
    """How the assembled iOS bundle is signed before packaging.

    Use the constructors :meth:`none`, :meth:`ad_hoc` and :meth:`certificate`
    rather than instantiating directly.
    """

    kind: str = "none"
    identity: str | None = None
    provisioning_profile: Path | None = None

    @classmethod
    def none(cls) -> "SigningMethod":
        return cls(kind="none")

    @classmethod
    def ad_hoc(cls) -> "SigningMethod":
        return cls(kind="ad-hoc", identity="-")

    @classmethod
    def certificate(cls, identity: str, provisioning_profile: Path | str) -> "SigningMethod":
        return cls(kind="certificate", identity=identity, provisioning_profile=Path(provisioning_profile))

    @property
    def enabled(self) -> bool:
        return self.kind != "none"


@dataclass(frozen=True, slots=True)
class BuildConfig:
    target: Target
    profile: BuildProfile = BuildProfile.DEBUG
    incremental: bool = True


@dataclass(frozen=True, slots=True)
class BuilderOptions:
    verbose: bool = False
    dry_run: bool = False
    output_dir: Path | None = None
    crate_dir: Path | None = None
    architectures: Tuple[str, ...] = ()
    signing: SigningMethod = field(default_factory=SigningMethod.none)
    jobs: int | None = None

    def with_options(self, **changes: Any) -> "BuilderOptions":
        for key in ("output_dir", "crate_dir"):
            if changes.get(key) is not None:
                changes[key] = Path(changes[key])
        if "architectures" in changes:
            changes["architectures"] = tuple(changes["architectures"] or ())
        return replace(self, **changes)


@dataclass(slots=True)
class BuildResult:
    platform: Target
    dry_run: bool
    planned_commands: Tuple[PlannedCommand, ...] = ()
    artifacts: Tuple[Path, ...] = ()
    duration: timedelta = timedelta(0)
    app_path: Path | None = None

    def add_artifacts(self, paths: Iterable[Path]) -> None:
        """Record produced files. A dry run produces none, so nothing is recorded."""
        if self.dry_run:
            return
        existing = list(self.artifacts)
        for path in paths:
            if path not in existing:
                existing.append(path)
        self.artifacts = tuple(existing)


__all__ = [
    "BuildConfig",
    "BuildProfile",
    "BuildResult",
    "BuilderOptions",
    "SigningMethod",
    "Target",
]
