"""Generate the Android and iOS host app projects from bundled templates."""
from __future__ import annotations

from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterator, List, Tuple
import re

from .config_loader import MobenchConfig
from .console import Console
from .errors import ConfigError
from .template import TemplateError, TemplateResolver, extract_placeholders
from .types import Target

TEMPLATE_PACKAGE = "mobench"
TEMPLATE_ROOT = "templates"


@dataclass(frozen=True, slots=True)
class ScaffoldContext:
    crate_name: str
    library_name: str
    default_function: str
    android_package: str = "dev.world.bench"
    min_sdk: int = 24
    target_sdk: int = 34
    bundle_id: str = "dev.world.bench"
    deployment_target: str = "15.0"

    @classmethod
    def from_config(
        cls,
        config: MobenchConfig | None,
        *,
        crate_name: str,
        library_name: str,
        default_function: str | None = None,
    ) -> "ScaffoldContext":
        config = config or MobenchConfig()
        function = default_function or config.benchmarks.default_function or f"{library_name}::my_benchmark"
        return cls(
            crate_name=crate_name,
            library_name=library_name,
            default_function=function,
            android_package=config.android.package,
            min_sdk=config.android.min_sdk,
            target_sdk=config.android.target_sdk,
            bundle_id=config.ios.bundle_id,
            deployment_target=config.ios.deployment_target,
        )

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "project": {
                "name": self.crate_name,
                "library_name": self.library_name,
                "pascal_name": to_pascal_case(self.library_name),
            },
            "android": {
                "package": self.android_package,
                "package_path": self.android_package.replace(".", "/"),
                "min_sdk": self.min_sdk,
                "target_sdk": self.target_sdk,
            },
            "ios": {
                "bundle_id": self.bundle_id,
                "deployment_target": self.deployment_target,
                "framework_name": self.library_name,
            },
            "benchmarks": {
                "default_function": self.default_function,
            },
        }


def to_pascal_case(value: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in re.split(r"[-_\s]+", value) if part)


def sanitize_bundle_id_component(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", value.lower())


def _iter_templates(node: Traversable, prefix: PurePosixPath) -> Iterator[Tuple[PurePosixPath, Traversable]]:
    for child in sorted(node.iterdir(), key=lambda item: item.name):
        relative = prefix / child.name
        if child.is_dir():
            yield from _iter_templates(child, relative)
        elif child.is_file():
            yield relative, child


def _template_root(platform: Target) -> Traversable:
    return resources.files(TEMPLATE_PACKAGE).joinpath(TEMPLATE_ROOT, platform.value)


def render_project(platform: Target, context: ScaffoldContext) -> List[Tuple[PurePosixPath, str]]:
    """Render every template file for ``platform`` into ``(relative_path, content)`` pairs."""

    resolver = TemplateResolver(context.to_mapping())
    rendered: List[Tuple[PurePosixPath, str]] = []
    for relative, template in _iter_templates(_template_root(platform), PurePosixPath()):
        text = template.read_text(encoding="utf-8")
        try:
            path = PurePosixPath(resolver.resolve(str(relative)))
            content = resolver.resolve(text)
        except TemplateError as exc:
            raise ConfigError(f"Failed to render template '{relative}': {exc}") from exc
        leftover = extract_placeholders(content)
        if leftover:
            joined = ", ".join(sorted(leftover))
            raise ConfigError(f"Template '{relative}' has unreplaced placeholders: {joined}")
        rendered.append((path, content))
    return rendered


def project_exists(platform: Target, app_dir: Path) -> bool:
    if platform is Target.ANDROID:
        return any((app_dir / name).is_file() for name in ("settings.gradle", "settings.gradle.kts"))
    runner_dir = app_dir / "BenchRunner"
    return (runner_dir / "project.yml").is_file() or (runner_dir / "BenchRunner.xcodeproj").is_dir()


def generate_project(
    platform: Target,
    app_dir: Path,
    context: ScaffoldContext,
    *,
    force: bool = False,
    dry_run: bool = False,
    console: Console | None = None,
) -> List[Path]:
    """Write the rendered templates under ``app_dir``; existing files are kept unless ``force``."""

    written: List[Path] = []
    for relative, content in render_project(platform, context):
        destination = app_dir.joinpath(*relative.parts)
        if destination.exists() and not force:
            if console is not None:
                console.debug(f"keeping existing {destination}")
            continue
        if dry_run:
            if console is not None:
                console.dry(f"would generate {destination}")
            written.append(destination)
            continue
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(content, encoding="utf-8")
        written.append(destination)
    if console is not None and written and not dry_run:
        console.info(f"Generated {platform.value} app project in {app_dir} ({len(written)} files)")
    return written


def ensure_project(
    platform: Target,
    app_dir: Path,
    context: ScaffoldContext,
    *,
    dry_run: bool = False,
    console: Console | None = None,
) -> bool:
    """Generate the app project when it is missing. Returns ``True`` if generation was needed."""

    if project_exists(platform, app_dir):
        return False
    generate_project(platform, app_dir, context, dry_run=dry_run, console=console)
    return True


__all__ = [
    "ScaffoldContext",
    "ensure_project",
    "generate_project",
    "project_exists",
    "render_project",
    "sanitize_bundle_id_component",
    "to_pascal_case",
]
