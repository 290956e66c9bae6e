"""Build Rust benchmark crates into runnable Android and iOS apps."""
from .builders import AndroidBuilder, IosBuilder
from .command_runner import PlannedCommand, RecordingCommandRunner, SubprocessCommandRunner
from .config_loader import MobenchConfig, discover_config
from .errors import (
    BindingGenError,
    CommandError,
    CompileError,
    ConfigError,
    MobenchError,
    PackagingError,
    SigningError,
    ToolError,
)
from .metadata import EmbeddedBenchSpec
from .registry import BenchFunction, BenchmarkRegistry
from .types import BuildConfig, BuildProfile, BuildResult, BuilderOptions, SigningMethod, Target

__version__ = "0.1.0"

__all__ = [
    "AndroidBuilder",
    "BenchFunction",
    "BenchmarkRegistry",
    "BindingGenError",
    "BuildConfig",
    "BuildProfile",
    "BuildResult",
    "BuilderOptions",
    "CommandError",
    "CompileError",
    "ConfigError",
    "EmbeddedBenchSpec",
    "IosBuilder",
    "MobenchConfig",
    "MobenchError",
    "PackagingError",
    "PlannedCommand",
    "RecordingCommandRunner",
    "SigningError",
    "SigningMethod",
    "SubprocessCommandRunner",
    "Target",
    "ToolError",
    "discover_config",
]
