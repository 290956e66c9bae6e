"""Explicit registry of benchmark functions discovered in the benchmark crate."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Tuple
import re

from .config_loader import MobenchConfig

_ATTRIBUTE_PATTERN = re.compile(r"#\[\s*(?:[\w:]+::)?benchmark\s*(?:\([^)]*\))?\s*\]")
_FN_PATTERN = re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?fn\s+([A-Za-z_][A-Za-z0-9_]*)")


@dataclass(frozen=True, slots=True)
class BenchFunction:
    qualified_name: str
    invoke: Callable[..., object] | None = None

    @property
    def short_name(self) -> str:
        return self.qualified_name.rsplit("::", 1)[-1]


class BenchmarkRegistry:
    """Read-only view over a fixed set of benchmark functions."""

    def __init__(self, functions: Iterable[BenchFunction] = ()) -> None:
        unique: Dict[str, BenchFunction] = {}
        for function in functions:
            unique.setdefault(function.qualified_name, function)
        self._functions: Tuple[BenchFunction, ...] = tuple(
            sorted(unique.values(), key=lambda item: item.qualified_name)
        )

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "BenchmarkRegistry":
        return cls(BenchFunction(name) for name in names)

    def __len__(self) -> int:
        return len(self._functions)

    def list(self) -> Tuple[BenchFunction, ...]:
        return self._functions

    def names(self) -> List[str]:
        return [function.qualified_name for function in self._functions]

    def find(self, name: str) -> BenchFunction | None:
        """Match either the fully-qualified name or its final ``::`` component."""
        suffix = f"::{name}"
        for function in self._functions:
            if function.qualified_name == name or function.qualified_name.endswith(suffix):
                return function
        return None


def _module_path(src_dir: Path, source: Path) -> List[str]:
    relative = source.relative_to(src_dir).with_suffix("")
    parts = list(relative.parts)
    if parts and parts[-1] in {"lib", "main", "mod"}:
        parts = parts[:-1]
    return parts


def scan_sources(crate_dir: Path, library_name: str) -> List[str]:
    """Find ``#[benchmark]``-annotated functions under ``src/``."""

    src_dir = crate_dir / "src"
    if not src_dir.is_dir():
        return []

    names: List[str] = []
    for source in sorted(src_dir.rglob("*.rs")):
        if "bin" in source.relative_to(src_dir).parts:
            continue
        pending = False
        for line in source.read_text(encoding="utf-8", errors="replace").splitlines():
            if _ATTRIBUTE_PATTERN.search(line):
                pending = True
                continue
            if not pending:
                continue
            match = _FN_PATTERN.match(line)
            if match:
                names.append("::".join([library_name, *_module_path(src_dir, source), match.group(1)]))
                pending = False
            elif line.strip() and not line.strip().startswith(("#[", "//")):
                pending = False
    return names


def discover_registry(config: MobenchConfig | None, crate_dir: Path, library_name: str) -> BenchmarkRegistry:
    """Build the registry from configured names, falling back to a source scan."""

    if config is not None and config.benchmarks.functions:
        return BenchmarkRegistry.from_names(config.benchmarks.functions)
    return BenchmarkRegistry.from_names(scan_sources(crate_dir, library_name))


__all__ = ["BenchFunction", "BenchmarkRegistry", "discover_registry", "scan_sources"]
