"""Command line interface for the mobile benchmark builder."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Iterable, List, Sequence
import sys
import tomllib

from .builders import AndroidBuilder, IosBuilder
from .builders.common import MobileBuilder
from .builders.ios import expected_app
from .command_runner import PlannedCommand, format_dry_run
from .config_loader import CONFIG_FILE_NAME, MobenchConfig, discover_config, generate_starter_config
from .console import Console
from .errors import ConfigError, MobenchError
from .metadata import EmbeddedBenchSpec
from .paths import ConfigResolver, DEFAULT_OUTPUT_SUBDIR
from .registry import discover_registry
from .scaffold import ScaffoldContext, generate_project
from .types import BuildConfig, BuildProfile, BuildResult, BuilderOptions, SigningMethod, Target

DEFAULT_CRATE = "bench-mobile"

EXIT_OK = 0
EXIT_STAGE_ERROR = 1
EXIT_CONFIG_ERROR = 2


def _emit_dry_run_output(commands: Sequence[PlannedCommand], *, workspace: Path) -> None:
    for line in format_dry_run(commands, workspace=workspace):
        print(line)


def _common_arguments() -> ArgumentParser:
    parent = ArgumentParser(add_help=False)
    parent.add_argument("--profile", choices=[p.value for p in BuildProfile], default=None, help="Build profile (default: debug)")
    parent.add_argument("--verbose", action="store_true", help="Enable verbose output")
    parent.add_argument("-n", "--dry-run", action="store_true", help="Print commands without executing them")
    parent.add_argument("--output-dir", type=Path, help="Output directory (default: <workspace>/target/mobench)")
    parent.add_argument("--crate-dir", type=Path, help="Path to the benchmark crate")
    parent.add_argument("--crate", help=f"Benchmark crate name (default: {DEFAULT_CRATE})")
    parent.add_argument(
        "-C",
        "--project-root",
        type=Path,
        default=None,
        metavar="PATH",
        help="Project root (default: current directory)",
    )
    return parent


def _build_arguments(parser: ArgumentParser) -> None:
    parser.add_argument("-t", "--target", required=True, choices=[t.value for t in Target], help="Target platform")
    parser.add_argument("--no-incremental", action="store_true", help="Remove previous output before building")
    parser.add_argument(
        "--arch",
        dest="architectures",
        action="append",
        default=[],
        metavar="ARCH",
        help="Android ABI or iOS target triple (repeatable)",
    )
    parser.add_argument("-j", "--jobs", type=int, help="Maximum parallel cross compiles")
    parser.add_argument(
        "--sign",
        choices=["none", "adhoc", "certificate"],
        default="none",
        help="Signing method for the iOS xcframework",
    )
    parser.add_argument("--identity", help="Signing identity for --sign certificate")
    parser.add_argument("--provisioning-profile", type=Path, help="Provisioning profile for --sign certificate")
    parser.add_argument("--ipa", action="store_true", help="Package the iOS app into an .ipa")


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="mobench", description="Build Rust benchmarks into Android and iOS apps")
    subparsers = parser.add_subparsers(dest="command", required=True)
    common = _common_arguments()

    init_parser = subparsers.add_parser("init", parents=[common], help="Write mobench.toml and app project templates")
    init_parser.add_argument(
        "-t",
        "--target",
        choices=[t.value for t in Target] + ["all"],
        default="all",
        help="Platform(s) to scaffold",
    )
    init_parser.add_argument("--force", action="store_true", help="Overwrite existing files")

    build_parser = subparsers.add_parser("build", parents=[common], help="Build the benchmark app")
    _build_arguments(build_parser)

    run_parser = subparsers.add_parser("run", parents=[common], help="Build the app with a benchmark spec embedded")
    _build_arguments(run_parser)
    run_parser.add_argument("-f", "--function", help="Benchmark function to run")
    run_parser.add_argument("--iterations", type=int, help="Measured iterations")
    run_parser.add_argument("--warmup", type=int, help="Warmup iterations")

    subparsers.add_parser("list", parents=[common], help="List discovered benchmark functions")

    return parser.parse_args(list(argv))


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    workspace = (args.project_root or Path.cwd()).resolve()
    console = Console.for_options(verbose=args.verbose, dry_run=args.dry_run)

    handlers = {
        "init": _handle_init,
        "build": _handle_build,
        "run": _handle_run,
        "list": _handle_list,
    }
    handler = handlers.get(args.command)
    if handler is None:
        raise ValueError(f"Unknown command: {args.command}")

    try:
        return handler(args, workspace, console)
    except ConfigError as exc:
        console.error(str(exc))
        return EXIT_CONFIG_ERROR
    except MobenchError as exc:
        console.error(f"{exc.kind} error: {exc}")
        return EXIT_STAGE_ERROR


def _load_config(workspace: Path) -> MobenchConfig:
    return discover_config(workspace) or MobenchConfig()


def _crate_name(args: Namespace, config: MobenchConfig) -> str:
    return MobenchConfig.resolve(args.crate, config.project.crate_name, DEFAULT_CRATE)


def _signing_method(args: Namespace) -> SigningMethod:
    if args.sign == "adhoc":
        return SigningMethod.ad_hoc()
    if args.sign == "certificate":
        if not args.identity or args.provisioning_profile is None:
            raise ConfigError(
                "--sign certificate requires --identity and --provisioning-profile",
            )
        return SigningMethod.certificate(args.identity, args.provisioning_profile)
    if args.identity or args.provisioning_profile:
        raise ConfigError("--identity and --provisioning-profile are only valid with --sign certificate")
    return SigningMethod.none()


def _make_builder(
    args: Namespace,
    workspace: Path,
    console: Console,
    config: MobenchConfig,
    *,
    spec: EmbeddedBenchSpec | None = None,
) -> MobileBuilder:
    target = Target.parse(args.target)
    options = BuilderOptions(
        verbose=args.verbose,
        dry_run=args.dry_run,
        output_dir=args.output_dir,
        crate_dir=args.crate_dir,
        architectures=tuple(args.architectures or ()),
        signing=_signing_method(args),
        jobs=args.jobs,
    )
    if options.signing.enabled and target is not Target.IOS:
        raise ConfigError("Signing options only apply to --target ios")
    if args.jobs is not None and args.jobs < 1:
        raise ConfigError("--jobs must be at least 1")
    if args.ipa and target is not Target.IOS:
        raise ConfigError("--ipa is only valid with --target ios")
    builder_type = AndroidBuilder if target is Target.ANDROID else IosBuilder
    return builder_type(
        workspace,
        _crate_name(args, config),
        options=options,
        console=console,
        config=config,
        spec=spec,
    )


def _run_build(args: Namespace, workspace: Path, builder: MobileBuilder, console: Console) -> BuildResult:
    target = Target.parse(args.target)
    profile = BuildProfile.parse(args.profile or BuildProfile.DEBUG.value)
    result = builder.build(BuildConfig(target=target, profile=profile, incremental=not args.no_incremental))

    if args.ipa and isinstance(builder, IosBuilder):
        if result.app_path is not None or args.dry_run:
            app_path = result.app_path or expected_app(builder.resolve_paths().output_dir, profile)
            result.add_artifacts([builder.package_ipa(app_path)])

    if result.dry_run:
        _emit_dry_run_output(result.planned_commands, workspace=workspace)
        return result

    for artifact in result.artifacts:
        console.info(f"artifact: {artifact}")
    return result


def _handle_build(args: Namespace, workspace: Path, console: Console) -> int:
    config = _load_config(workspace)
    builder = _make_builder(args, workspace, console, config)
    _run_build(args, workspace, builder, console)
    return EXIT_OK


def _handle_run(args: Namespace, workspace: Path, console: Console) -> int:
    config = _load_config(workspace)
    benchmarks = config.benchmarks
    function = args.function or benchmarks.default_function
    if not function:
        raise ConfigError(
            "No benchmark function selected",
            hint="Pass --function or set [benchmarks] default_function in mobench.toml.",
        )

    builder = _make_builder(args, workspace, console, config)
    paths = builder.resolve_paths()
    registry = discover_registry(config, paths.crate_dir, paths.library_name)
    if len(registry):
        match = registry.find(function)
        if match is None:
            available = "\n".join(f"  - {name}" for name in registry.names())
            raise ConfigError(f"Unknown benchmark '{function}'. Available:\n{available}")
        function = match.qualified_name

    spec = EmbeddedBenchSpec(
        function=function,
        iterations=MobenchConfig.resolve(args.iterations, benchmarks.default_iterations, 100),
        warmup=MobenchConfig.resolve(args.warmup, benchmarks.default_warmup, 10),
    )
    builder = builder.with_spec(spec)
    builder.registry = registry
    result = _run_build(args, workspace, builder, console)
    if not result.dry_run:
        console.info(
            f"Built {result.app_path} with {spec.function} "
            f"({spec.iterations} iterations, {spec.warmup} warmup); install it on a device to run"
        )
    return EXIT_OK


def _handle_list(args: Namespace, workspace: Path, console: Console) -> int:
    config = _load_config(workspace)
    resolver = ConfigResolver(workspace, _crate_name(args, config), library_name=config.library_name())
    paths = resolver.resolve(Target.ANDROID, crate_dir=args.crate_dir, output_dir=args.output_dir)
    registry = discover_registry(config, paths.crate_dir, paths.library_name)
    if not len(registry):
        console.info(f"No benchmarks found in {paths.crate_dir}")
        return EXIT_OK
    for function in registry.list():
        print(function.qualified_name)
    return EXIT_OK


def _init_targets(value: str) -> List[Target]:
    if value == "all":
        return [Target.ANDROID, Target.IOS]
    return [Target.parse(value)]


def _handle_init(args: Namespace, workspace: Path, console: Console) -> int:
    crate_name = args.crate or DEFAULT_CRATE
    config_path = workspace / CONFIG_FILE_NAME
    if config_path.exists() and not args.force:
        console.info(f"Keeping existing {config_path}")
        config = MobenchConfig.load(config_path)
    else:
        contents = generate_starter_config(crate_name)
        if args.dry_run:
            console.dry(f"would write {config_path}")
        else:
            config_path.write_text(contents, encoding="utf-8")
            console.info(f"Wrote {config_path}")
        config = MobenchConfig.from_mapping(tomllib.loads(contents), path=config_path)

    library_name = config.library_name() or crate_name.replace("-", "_")
    base = args.output_dir or config.project.output_dir or DEFAULT_OUTPUT_SUBDIR
    if not base.is_absolute():
        base = workspace / base
    context = ScaffoldContext.from_config(config, crate_name=crate_name, library_name=library_name)
    for target in _init_targets(args.target):
        generate_project(
            target,
            base / target.value,
            context,
            force=args.force,
            dry_run=args.dry_run,
            console=console,
        )
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
