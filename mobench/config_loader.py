"""Locating and loading ``mobench.toml`` project configuration."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple, TypeVar
import json
import tomllib

import yaml

from .errors import ConfigError

CONFIG_FILE_STEM = "mobench"
CONFIG_FILE_NAME = "mobench.toml"

ConfigLoader = Callable[[Any], Mapping[str, Any]]

FILE_LOADERS: Dict[str, ConfigLoader] = {
    ".toml": lambda stream: tomllib.load(stream),
    ".json": lambda stream: json.load(stream),
    ".yaml": lambda stream: yaml.safe_load(stream),
    ".yml": lambda stream: yaml.safe_load(stream),
}
"""Mapping of file suffixes to loader callables."""

_T = TypeVar("_T")


def load_config_file(path: Path) -> Mapping[str, Any]:
    """Load and decode a configuration mapping from ``path``."""

    suffix = path.suffix.lower()
    loader = FILE_LOADERS.get(suffix)
    if loader is None:
        supported = ", ".join(sorted(FILE_LOADERS)) or "<none>"
        raise ConfigError(
            f"Unsupported configuration file extension: {suffix}. Supported: {supported}",
            context={"path": path},
        )

    mode = "rb" if suffix == ".toml" else "r"
    kwargs: Dict[str, Any] = {}
    if mode == "r":
        kwargs["encoding"] = "utf-8"

    try:
        with path.open(mode, **kwargs) as handle:
            data = loader(handle)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to parse configuration file '{path}': {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read configuration file '{path}': {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Configuration file '{path}' must contain a mapping at the root")

    return data


def normalize_string_list(value: Any, *, field_name: str | None = None) -> List[str]:
    """Coerce ``value`` into a list of trimmed strings."""

    if value is None:
        return []

    if isinstance(value, (str, bytes)):
        text = str(value).strip()
        return [text] if text else []

    if isinstance(value, Sequence):
        items: List[str] = []
        for item in value:
            if not isinstance(item, (str, bytes)):
                label = f"{field_name} " if field_name else ""
                raise ConfigError(f"{label}entries must be strings")
            text = str(item).strip()
            if text:
                items.append(text)
        return items

    label = f"{field_name} " if field_name else ""
    raise ConfigError(f"{label}must be a string or sequence of strings")


def _check_keys(section: str, data: Mapping[str, Any], allowed: set[str]) -> None:
    unknown = {str(key) for key in data.keys() if str(key) not in allowed}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"[{section}] contains unknown keys: {joined}")


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name, {})
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"[{name}] must be a table")
    return value


def _int(section: str, data: Mapping[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"[{section}] {key} must be an integer")
    if value < 0:
        raise ConfigError(f"[{section}] {key} must not be negative")
    return value


def _optional_str(data: Mapping[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(slots=True)
class ProjectSection:
    crate_name: str | None = None
    library_name: str | None = None
    output_dir: Path | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProjectSection":
        _check_keys("project", data, {"crate", "library_name", "output_dir"})
        output_dir = _optional_str(data, "output_dir")
        return cls(
            crate_name=_optional_str(data, "crate"),
            library_name=_optional_str(data, "library_name"),
            output_dir=Path(output_dir) if output_dir else None,
        )


@dataclass(slots=True)
class AndroidSection:
    package: str = "dev.world.bench"
    min_sdk: int = 24
    target_sdk: int = 34
    abis: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AndroidSection":
        _check_keys("android", data, {"package", "min_sdk", "target_sdk", "abis"})
        return cls(
            package=_optional_str(data, "package") or "dev.world.bench",
            min_sdk=_int("android", data, "min_sdk", 24),
            target_sdk=_int("android", data, "target_sdk", 34),
            abis=normalize_string_list(data.get("abis"), field_name="android.abis"),
        )


@dataclass(slots=True)
class IosSection:
    bundle_id: str = "dev.world.bench"
    deployment_target: str = "15.0"
    team_id: str | None = None
    targets: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "IosSection":
        _check_keys("ios", data, {"bundle_id", "deployment_target", "team_id", "targets"})
        return cls(
            bundle_id=_optional_str(data, "bundle_id") or "dev.world.bench",
            deployment_target=_optional_str(data, "deployment_target") or "15.0",
            team_id=_optional_str(data, "team_id"),
            targets=normalize_string_list(data.get("targets"), field_name="ios.targets"),
        )


@dataclass(slots=True)
class BenchmarksSection:
    default_function: str | None = None
    default_iterations: int = 100
    default_warmup: int = 10
    functions: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BenchmarksSection":
        _check_keys("benchmarks", data, {"default_function", "default_iterations", "default_warmup", "functions"})
        return cls(
            default_function=_optional_str(data, "default_function"),
            default_iterations=_int("benchmarks", data, "default_iterations", 100),
            default_warmup=_int("benchmarks", data, "default_warmup", 10),
            functions=normalize_string_list(data.get("functions"), field_name="benchmarks.functions"),
        )


@dataclass(slots=True)
class MobenchConfig:
    project: ProjectSection = field(default_factory=ProjectSection)
    android: AndroidSection = field(default_factory=AndroidSection)
    ios: IosSection = field(default_factory=IosSection)
    benchmarks: BenchmarksSection = field(default_factory=BenchmarksSection)
    path: Path | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, path: Path | None = None) -> "MobenchConfig":
        _check_keys("root", data, {"project", "android", "ios", "benchmarks"})
        return cls(
            project=ProjectSection.from_mapping(_section(data, "project")),
            android=AndroidSection.from_mapping(_section(data, "android")),
            ios=IosSection.from_mapping(_section(data, "ios")),
            benchmarks=BenchmarksSection.from_mapping(_section(data, "benchmarks")),
            path=path,
        )

    @classmethod
    def load(cls, path: Path) -> "MobenchConfig":
        return cls.from_mapping(load_config_file(path), path=path)

    def library_name(self) -> str | None:
        if self.project.library_name:
            return self.project.library_name
        if self.project.crate_name:
            return self.project.crate_name.replace("-", "_")
        return None

    @staticmethod
    def resolve(cli_value: _T | None, config_value: _T | None, default: _T) -> _T:
        """CLI value wins over config value, which wins over ``default``."""
        if cli_value is not None:
            return cli_value
        if config_value is not None:
            return config_value
        return default


def _candidate_files(directory: Path) -> Tuple[Path, ...]:
    return tuple(directory / f"{CONFIG_FILE_STEM}{suffix}" for suffix in FILE_LOADERS)


def discover_config(start_dir: Path) -> MobenchConfig | None:
    """Search ``start_dir`` and its parents for a configuration file.

    The walk stops at a repository root (a directory containing ``.git``) or
    at the filesystem root.
    """

    current = start_dir.resolve()
    while True:
        found = [candidate for candidate in _candidate_files(current) if candidate.is_file()]
        if len(found) > 1:
            names = ", ".join(candidate.name for candidate in found)
            raise ConfigError(
                f"Multiple configuration files found in '{current}': {names}. "
                "Only one format per configuration entry is allowed."
            )
        if found:
            return MobenchConfig.load(found[0])
        if (current / ".git").exists() or current.parent == current:
            return None
        current = current.parent


def generate_starter_config(crate_name: str) -> str:
    """Render a commented starter ``mobench.toml`` for ``crate_name``."""

    library_name = crate_name.replace("-", "_")
    package = f"dev.world.{library_name.replace('_', '')}"
    return f"""# mobench configuration file
# CLI flags override these settings when provided.

[project]
# Name of the benchmark crate
crate = "{crate_name}"

# Rust library name (crate name with hyphens replaced by underscores)
library_name = "{library_name}"

# Output directory for build artifacts (default: target/mobench)
# output_dir = "target/mobench"

[android]
package = "{package}"
min_sdk = 24
target_sdk = 34
# abis = ["arm64-v8a", "armeabi-v7a", "x86_64"]

[ios]
bundle_id = "{package}"
deployment_target = "15.0"
# Development team ID for code signing (ad-hoc signing when unset)
# team_id = "YOUR_TEAM_ID"
# targets = ["aarch64-apple-ios", "aarch64-apple-ios-sim"]

[benchmarks]
default_function = "{library_name}::my_benchmark"
default_iterations = 100
default_warmup = 10
# functions = ["{library_name}::my_benchmark"]
"""


__all__ = [
    "AndroidSection",
    "BenchmarksSection",
    "CONFIG_FILE_NAME",
    "FILE_LOADERS",
    "IosSection",
    "MobenchConfig",
    "ProjectSection",
    "discover_config",
    "generate_starter_config",
    "load_config_file",
    "normalize_string_list",
]
