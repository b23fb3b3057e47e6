"""Command line interface for nix-relocator."""

import argparse
import logging
import pathlib
import sys

from nix_relocator.builder import ArchiveResult, BuildError, build_installer_archive
from nix_relocator.closure import Closure, ClosureError, compute_closure
from nix_relocator.config import ArchitectureConfig, ConfigError, RelocatorConfig, load_config
from nix_relocator.registration import RegistrationFormatError, format_registration
from nix_relocator.store import ArtifactStore, StoreError
from nix_relocator.target import TargetConfig, TargetResolutionError, resolve_target_config

# Errors that fail one architecture without stopping the others.
_ARCH_ERRORS: tuple[type[Exception], ...] = (
    BuildError,
    ClosureError,
    StoreError,
    RegistrationFormatError,
    UnicodeDecodeError,
    OSError,
)


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the nix-relocator logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("nix_relocator")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _select_architectures(
    parser: argparse.ArgumentParser,
    config: RelocatorConfig,
    requested: list[str],
) -> list[str]:
    """Map ``--arch`` values onto configured architectures (exits on unknown ones)."""

    selected: list[str] = []
    for value in requested:
        try:
            arch: str = resolve_target_config(arch=value).arch
        except TargetResolutionError as e:
            parser.error(str(e))
        if arch not in config.architectures:
            configured: str = ", ".join(sorted(config.architectures))
            parser.error(f"architecture {arch!r} is not configured (configured: {configured})")
        if arch not in selected:
            selected.append(arch)
    return selected


def _closure_for(arch_cfg: ArchitectureConfig, logger: logging.Logger) -> tuple[Closure, ArtifactStore]:
    """Open the configured store and compute the closure of every root.

    :param arch_cfg: Architecture configuration.
    :param logger: Logger.
    :returns: Closure and the store it was computed from.
    :raises StoreError: If the store cannot be opened or queried.
    :raises ClosureError: If a root cannot be resolved.
    """

    store: ArtifactStore = arch_cfg.open_store(logger=logger)
    closure: Closure = compute_closure(arch_cfg.all_roots(), store, logger=logger)
    return closure, store


def _run_build(ns: argparse.Namespace, parser: argparse.ArgumentParser, logger: logging.Logger) -> int:
    """Build one archive per selected architecture.

    A failing architecture is logged and skipped; the remaining ones are still built.

    :param ns: Parsed arguments.
    :param parser: Parser, used to report usage errors.
    :param logger: Logger.
    :returns: 0 if every architecture was built, 1 otherwise.
    """

    config: RelocatorConfig = _load_config_or_exit(parser, ns.config)
    arches: list[str] = sorted(config.architectures) if ns.all is True else _select_architectures(parser, config, ns.arch)
    output_dir: pathlib.Path = ns.output if ns.output is not None else config.output_dir

    failed: list[str] = []
    for arch in arches:
        arch_cfg: ArchitectureConfig = config.architectures[arch]
        logger.info(f"nix-relocator: building {arch_cfg.target.archive_name}")
        try:
            closure, store = _closure_for(arch_cfg, logger)
            result: ArchiveResult = build_installer_archive(
                closure=closure,
                store=store,
                target=arch_cfg.target,
                output_dir=output_dir,
                logger=logger,
                staging_dir=ns.staging_dir,
                jobs=ns.jobs,
            )
        except _ARCH_ERRORS as e:
            logger.error(f"nix-relocator: {arch}: ERROR: {e}")
            failed.append(arch)
            continue

        if logger.isEnabledFor(logging.DEBUG) is True:
            for relpath, reason in result.rewrite_stats.refused:
                logger.debug(f"nix-relocator: {arch}: not relocated ({reason}): {relpath}")
        logger.info(
            f"nix-relocator: {arch}: {result.paths} paths, {result.rewrite_stats.patched} patched, "
            f"{len(result.rewrite_stats.refused)} refused -> {result.archive_path}"
        )

    if len(failed) > 0:
        logger.error(f"nix-relocator: failed architectures: {', '.join(failed)}")
        return 1
    return 0


def _run_closure(ns: argparse.Namespace, parser: argparse.ArgumentParser, logger: logging.Logger) -> int:
    """Print the relocated registration of one architecture's closure to stdout.

    :param ns: Parsed arguments.
    :param parser: Parser, used to report usage errors.
    :param logger: Logger.
    :returns: Exit code.
    """

    config: RelocatorConfig = _load_config_or_exit(parser, ns.config)
    arch: str = _select_architectures(parser, config, [ns.arch])[0]
    arch_cfg: ArchitectureConfig = config.architectures[arch]
    try:
        closure, _ = _closure_for(arch_cfg, logger)
    except _ARCH_ERRORS as e:
        logger.error(f"nix-relocator: {arch}: ERROR: {e}")
        return 1

    target: TargetConfig = arch_cfg.target
    sys.stdout.write(
        format_registration(
            e.relocated(source_store=target.source_store, dest_store=target.store_dir)
            for e in closure.registration
        )
    )
    return 0


def _load_config_or_exit(parser: argparse.ArgumentParser, path: pathlib.Path) -> RelocatorConfig:
    """Load the configuration, turning ``ConfigError`` into a usage error (exit code 2)."""

    try:
        return load_config(path)
    except ConfigError as e:
        parser.error(str(e))


def _add_logging_args(p: argparse.ArgumentParser) -> None:
    """Add ``-v`` and ``-q`` to a subcommand parser."""

    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def main(argv: list[str] | None = None) -> int:
    """Run the nix-relocator CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="nix-relocator",
        description=(
            "Package a Nix store closure for a relocated store prefix into a self-installing archive."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser(
        "build",
        help="Build installer archives.",
    )
    p_build.add_argument(
        "-c",
        "--config",
        type=pathlib.Path,
        required=True,
        help="Path to the YAML build configuration.",
    )
    arch_group = p_build.add_mutually_exclusive_group(required=True)
    arch_group.add_argument(
        "--arch",
        action="append",
        default=[],
        help="Architecture to build (e.g. aarch64, arm64, aarch64-linux). Repeatable.",
    )
    arch_group.add_argument(
        "--all",
        action="store_true",
        help="Build every configured architecture.",
    )
    p_build.add_argument(
        "-o",
        "--output-dir",
        dest="output",
        type=pathlib.Path,
        default=None,
        help="Directory for the archives (overrides output_dir from the configuration).",
    )
    p_build.add_argument(
        "--staging-dir",
        type=pathlib.Path,
        default=None,
        help=(
            "Keep the staged tree in this directory instead of a temporary one. "
            "Only one build may use a staging directory at a time."
        ),
    )
    p_build.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=1,
        help="Number of store paths copied concurrently.",
    )
    _add_logging_args(p_build)

    p_closure = subparsers.add_parser(
        "closure",
        help="Print the relocated registration record of a closure.",
    )
    p_closure.add_argument(
        "-c",
        "--config",
        type=pathlib.Path,
        required=True,
        help="Path to the YAML build configuration.",
    )
    p_closure.add_argument(
        "--arch",
        required=True,
        help="Architecture to resolve the closure for.",
    )
    _add_logging_args(p_closure)

    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)
    if ns.command == "build":
        if ns.jobs < 1:
            parser.error("--jobs must be at least 1")
        return _run_build(ns, parser, logger)
    if ns.command == "closure":
        return _run_closure(ns, parser, logger)

    raise AssertionError(f"Unhandled command: {ns.command}")
