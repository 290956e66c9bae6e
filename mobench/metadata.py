"""Embedding the benchmark spec and build metadata into the app projects.

The on-device runner reads ``bench_spec.json`` to decide which benchmark to
run and ``bench_meta.json`` to label its report. Both files are rewritten on
every build; nothing is merged with a previous build's content.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List
import json
import os
import tempfile

from .console import Console
from .errors import ConfigError, PackagingError
from .registry import BenchmarkRegistry
from .types import BuildProfile, Target

SPEC_FILE_NAME = "bench_spec.json"
META_FILE_NAME = "bench_meta.json"

_RESOURCE_DIRS: Dict[Target, Path] = {
    Target.ANDROID: Path("app") / "src" / "main" / "assets",
    Target.IOS: Path("BenchRunner") / "BenchRunner" / "Resources",
}


@dataclass(frozen=True, slots=True)
class EmbeddedBenchSpec:
    function: str
    iterations: int = 100
    warmup: int = 10

    def __post_init__(self) -> None:
        if not self.function:
            raise ConfigError("Benchmark function name must not be empty")
        if self.iterations < 1:
            raise ConfigError("Benchmark iterations must be at least 1")
        if self.warmup < 0:
            raise ConfigError("Benchmark warmup must not be negative")

    def to_mapping(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class BenchMeta:
    name: str
    version: str
    platform: str
    profile: str
    benchmarks: List[str] = field(default_factory=list)
    spec: Dict[str, Any] | None = None
    generated_at: str | None = None

    def to_mapping(self) -> Dict[str, Any]:
        data = asdict(self)
        return {key: value for key, value in data.items() if value is not None}


def create_bench_meta(
    *,
    name: str,
    version: str,
    platform: Target,
    profile: BuildProfile,
    spec: EmbeddedBenchSpec | None = None,
    registry: BenchmarkRegistry | None = None,
    timestamp: datetime | None = None,
) -> BenchMeta:
    moment = timestamp or datetime.now(timezone.utc)
    return BenchMeta(
        name=name,
        version=version,
        platform=platform.value,
        profile=profile.value,
        benchmarks=registry.names() if registry is not None else [],
        spec=spec.to_mapping() if spec is not None else None,
        generated_at=moment.replace(microsecond=0).isoformat(),
    )


def resource_dir(app_project: Path, platform: Target) -> Path:
    return app_project / _RESOURCE_DIRS[platform]


def _write_json(path: Path, payload: Dict[str, Any]) -> None:
    text = json.dumps(payload, indent=2, sort_keys=True) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(temp_name, path)
    except OSError as exc:
        Path(temp_name).unlink(missing_ok=True)
        raise PackagingError(f"Failed to write {path}: {exc}", context={"path": path}) from exc


def _embed(
    app_project: Path,
    platform: Target,
    filename: str,
    payload: Dict[str, Any],
    *,
    dry_run: bool,
    console: Console | None,
) -> Path:
    destination = resource_dir(app_project, platform) / filename
    if dry_run:
        if console is not None:
            console.dry(f"would write {destination}")
        return destination
    _write_json(destination, payload)
    if console is not None:
        console.debug(f"wrote {destination}")
    return destination


def embed_spec(
    app_project: Path,
    spec: EmbeddedBenchSpec,
    platform: Target,
    *,
    dry_run: bool = False,
    console: Console | None = None,
) -> Path:
    """Write ``spec`` into the app project's bundled resources, replacing any stale copy."""

    return _embed(app_project, platform, SPEC_FILE_NAME, spec.to_mapping(), dry_run=dry_run, console=console)


def embed_meta(
    app_project: Path,
    meta: BenchMeta,
    platform: Target,
    *,
    dry_run: bool = False,
    console: Console | None = None,
) -> Path:
    return _embed(app_project, platform, META_FILE_NAME, meta.to_mapping(), dry_run=dry_run, console=console)


__all__ = [
    "BenchMeta",
    "EmbeddedBenchSpec",
    "META_FILE_NAME",
    "SPEC_FILE_NAME",
    "create_bench_meta",
    "embed_meta",
    "embed_spec",
    "resource_dir",
]
