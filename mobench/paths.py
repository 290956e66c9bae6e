"""Resolution of the crate, workspace and output paths every build stage depends on."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Mapping
import os
import platform
import tomllib

from .errors import ConfigError
from .types import Target

MANIFEST_NAME = "Cargo.toml"
DEFAULT_OUTPUT_SUBDIR = Path("target") / "mobench"

_HOST_LIBRARY_SUFFIXES = {
    "darwin": "dylib",
    "linux": "so",
}


@dataclass(frozen=True, slots=True)
class ResolvedPaths:
    project_root: Path
    workspace_root: Path
    crate_dir: Path
    crate_manifest: Path
    crate_name: str
    library_name: str
    crate_version: str
    target_dir: Path
    host_library: Path
    output_dir: Path

    def cross_artifact_dir(self, triple: str, profile_dir: str) -> Path:
        return self.target_dir / triple / profile_dir


def read_manifest(path: Path) -> Mapping[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}", context={"manifest": path}) from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read {path}: {exc}", context={"manifest": path}) from exc


def find_manifest_upward(start: Path) -> Path | None:
    """Return the first directory at or above ``start`` that holds a ``Cargo.toml``."""

    current = start
    while True:
        if (current / MANIFEST_NAME).is_file():
            return current
        if current.parent == current:
            return None
        current = current.parent


def find_workspace_root(crate_dir: Path) -> Path:
    """Return the outermost ancestor whose manifest declares ``[workspace]``."""

    workspace = crate_dir
    current = crate_dir
    while True:
        manifest = current / MANIFEST_NAME
        if manifest.is_file() and "workspace" in read_manifest(manifest):
            workspace = current
        if current.parent == current:
            return workspace
        current = current.parent


def host_library_suffix() -> str:
    system = platform.system().lower()
    suffix = _HOST_LIBRARY_SUFFIXES.get(system)
    if suffix is None:
        raise ConfigError(
            f"Unsupported host OS for binding generation: {platform.system()}",
            hint="Binding generation is supported on macOS (.dylib) and Linux (.so).",
        )
    return suffix


def cargo_target_dir(workspace_root: Path) -> Path:
    override = os.environ.get("CARGO_TARGET_DIR")
    if override:
        path = Path(override)
        return path if path.is_absolute() else (workspace_root / path)
    return workspace_root / "target"


class ConfigResolver:
    """Derive :class:`ResolvedPaths` for one builder invocation.

    Resolution only reads the filesystem; nothing is created. The output
    directory is created by the first stage that writes into it.
    """

    def __init__(
        self,
        project_root: Path | str,
        crate_name: str,
        *,
        library_name: str | None = None,
    ) -> None:
        self._project_root = Path(project_root).expanduser().resolve()
        self._crate_name = crate_name
        self._library_name = library_name

    def _candidate_crate_dirs(self, crate_dir: Path | None) -> List[Path]:
        if crate_dir is not None:
            path = crate_dir if crate_dir.is_absolute() else self._project_root / crate_dir
            return [path.resolve()]
        return [
            self._project_root / "bench-mobile",
            self._project_root / "crates" / self._crate_name,
        ]

    def find_crate_dir(self, crate_dir: Path | None = None) -> Path:
        candidates = self._candidate_crate_dirs(crate_dir)
        for candidate in candidates:
            if (candidate / MANIFEST_NAME).is_file():
                return candidate

        if crate_dir is not None:
            raise ConfigError(
                f"No {MANIFEST_NAME} found in crate directory '{candidates[0]}'",
                hint="Pass --crate-dir pointing at the benchmark crate.",
                context={"crate_dir": candidates[0]},
            )

        detected = find_manifest_upward(self._project_root)
        if detected is not None:
            return detected

        tried = "\n".join(f"  - {path}" for path in candidates)
        raise ConfigError(
            f"Benchmark crate '{self._crate_name}' not found. Tried:\n{tried}\n"
            f"  - {MANIFEST_NAME} in '{self._project_root}' or any parent directory",
            hint="Pass --crate-dir or run from inside the benchmark crate.",
        )

    def _derive_names(self, manifest: Mapping[str, Any]) -> tuple[str, str, str]:
        package = manifest.get("package", {}) if isinstance(manifest.get("package"), Mapping) else {}
        lib = manifest.get("lib", {}) if isinstance(manifest.get("lib"), Mapping) else {}
        crate_name = str(package.get("name") or self._crate_name)
        version = package.get("version", "0.0.0")
        if not isinstance(version, str):
            version = "0.0.0"
        library_name = self._library_name or lib.get("name") or crate_name
        return crate_name, str(library_name).replace("-", "_"), version

    def _resolve_output_dir(self, workspace_root: Path, output_dir: Path | None, target: Target) -> Path:
        if output_dir is None:
            base = workspace_root / DEFAULT_OUTPUT_SUBDIR
        else:
            base = output_dir if output_dir.is_absolute() else self._project_root / output_dir
        resolved = (base / target.value).resolve()
        if resolved.exists() and not resolved.is_dir():
            raise ConfigError(
                f"Output path '{resolved}' exists and is not a directory",
                context={"output_dir": resolved},
            )
        return resolved

    def resolve(
        self,
        target: Target,
        *,
        crate_dir: Path | None = None,
        output_dir: Path | None = None,
    ) -> ResolvedPaths:
        if not self._project_root.is_dir():
            raise ConfigError(
                f"Project root '{self._project_root}' does not exist",
                context={"project_root": self._project_root},
            )

        resolved_crate_dir = self.find_crate_dir(crate_dir)
        manifest_path = resolved_crate_dir / MANIFEST_NAME
        if not os.access(manifest_path, os.R_OK):
            raise ConfigError(f"Crate manifest '{manifest_path}' is not readable")

        manifest = read_manifest(manifest_path)
        crate_name, library_name, version = self._derive_names(manifest)
        workspace_root = find_workspace_root(resolved_crate_dir)
        target_dir = cargo_target_dir(workspace_root)
        host_library = target_dir / "debug" / f"lib{library_name}.{host_library_suffix()}"

        return ResolvedPaths(
            project_root=self._project_root,
            workspace_root=workspace_root,
            crate_dir=resolved_crate_dir,
            crate_manifest=manifest_path,
            crate_name=crate_name,
            library_name=library_name,
            crate_version=version,
            target_dir=target_dir,
            host_library=host_library,
            output_dir=self._resolve_output_dir(workspace_root, output_dir, target),
        )


__all__ = [
    "ConfigResolver",
    "MANIFEST_NAME",
    "ResolvedPaths",
    "cargo_target_dir",
    "find_manifest_upward",
    "find_workspace_root",
    "host_library_suffix",
    "read_manifest",
]
