"""Destination-side installer.

This module is shipped verbatim as the ``install`` script of every archive, with
its target configuration embedded, so it must only import the standard library.

The installation runs as a linear sequence of steps::

    architecture-check -> directory-creation -> store-copy -> database-import
    -> profile-link -> config-write

Only the architecture check (and a failing database import) abort the run.
Individual store copy failures, a missing import tool and a failed profile link
are logged and reported, and re-running the installer picks up where a
previous run left off.
"""

from dataclasses import asdict, dataclass, field
import argparse
import errno
import getpass
import json
import logging
import os
import pathlib
import platform
import shutil
import subprocess
import sys
import time
from typing import Callable


class InstallError(RuntimeError):
    """Raised when installation cannot continue."""


class ArchitectureMismatch(InstallError):
    """Raised when the archive was built for another CPU architecture."""


# Replaced with the JSON-encoded InstallConfig when rendered into an archive.
_EMBEDDED_CONFIG_JSON: str = "__NIX_RELOCATOR_INSTALL_CONFIG__"

_TRANSIENT_ERRNOS: frozenset[int] = frozenset(
    {errno.EIO, errno.EAGAIN, errno.EBUSY, errno.EINTR, errno.ETIMEDOUT}
)
_COPY_ATTEMPTS: int = 3
_COPY_BACKOFF_S: float = 0.5

_TERMUX_APP_DIR: str = "/data/data/com.termux"
_TERMUX_USR: str = "/data/data/com.termux/files/usr"


@dataclass(frozen=True, slots=True)
class InstallConfig:
    """Where and for what the archive installs.

    :ivar arch: Target CPU architecture (normalized, e.g. ``aarch64``).
    :ivar prefix: Installation prefix.
    :ivar store_dir: Destination store directory.
    :ivar state_dir: Destination state directory.
    :ivar conf_dir: Destination configuration directory.
    """

    arch: str
    prefix: str
    store_dir: str
    state_dir: str
    conf_dir: str

    def to_json(self) -> str:
        """Serialize to JSON."""

        return json.dumps(asdict(self), indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> "InstallConfig":
        """Deserialize from JSON.

        :raises InstallError: If a field is missing.
        """

        try:
            doc = json.loads(text)
        except json.JSONDecodeError as e:
            raise InstallError(f"Install configuration is not valid JSON: {e}") from e
        try:
            return cls(
                arch=str(doc["arch"]),
                prefix=str(doc["prefix"]),
                store_dir=str(doc["store_dir"]),
                state_dir=str(doc["state_dir"]),
                conf_dir=str(doc["conf_dir"]),
            )
        except (KeyError, TypeError) as e:
            raise InstallError(f"Invalid install configuration: {e}") from e


@dataclass(slots=True)
class InstallReport:
    """What an installation run did.

    :ivar copied: Store names copied into the destination store.
    :ivar skipped: Store names already present (left untouched).
    :ivar failed: ``(store name, error)`` for copies that failed.
    :ivar store_entries: Store names present in the destination store afterwards.
    :ivar database_imported: Whether the registration was loaded into the database.
    :ivar profile_linked: Whether the default profile link was created.
    :ivar warnings: Non-fatal problems, in order.
    """

    copied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    store_entries: list[str] = field(default_factory=list)
    database_imported: bool = False
    profile_linked: bool = False
    warnings: list[str] = field(default_factory=list)


def install(
    *,
    source_dir: pathlib.Path,
    config: InstallConfig,
    logger: logging.Logger | None = None,
    machine: str | None = None,
    user: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
    termux_usr: pathlib.Path = pathlib.Path(_TERMUX_USR),
) -> InstallReport:
    """Install an extracted archive.

    :param source_dir: Extracted archive root (holds ``store/`` and ``registration``).
    :param config: Target configuration.
    :param logger: Optional logger for progress output.
    :param machine: Override for ``platform.machine()``.
    :param user: Override for the invoking user's name.
    :param sleep: Sleep function used between copy retries.
    :param termux_usr: Termux ``usr`` directory expected to exist for Termux prefixes.
    :returns: Report of what was done.
    :raises ArchitectureMismatch: If the machine does not match ``config.arch``.
    :raises InstallError: If the archive is incomplete or the database import fails.
    """

    if logger is None:
        logger = logging.getLogger("nix_relocator.install")

    report: InstallReport = InstallReport()
    store_src: pathlib.Path = source_dir / "store"
    if store_src.is_dir() is False:
        raise InstallError(f"Archive has no store directory: {store_src}")

    logger.info(f"nix-relocator: installing into {config.prefix}")
    _check_architecture(config=config, machine=machine)
    _check_termux_prefix(config=config, termux_usr=termux_usr, report=report, logger=logger)
    _create_directories(config=config)
    _copy_store(
        store_src=store_src,
        store_dir=pathlib.Path(config.store_dir),
        report=report,
        logger=logger,
        sleep=sleep,
    )
    _import_database(
        registration_path=source_dir / "registration",
        config=config,
        report=report,
        logger=logger,
    )
    _link_profile(config=config, user=user, report=report, logger=logger)
    _write_config(config=config)

    report.store_entries = _store_entries(pathlib.Path(config.store_dir))
    logger.info(
        f"nix-relocator: store has {len(report.store_entries)} paths "
        f"({len(report.copied)} copied, {len(report.skipped)} already present, {len(report.failed)} failed)"
    )
    if len(report.failed) > 0:
        logger.warning("nix-relocator: some store paths failed to copy; re-run the installer to retry")
    return report


def normalize_arch(machine: str) -> str:
    """Normalize a machine string into a small set of expected values.

    :param machine: Raw machine string (e.g. from ``platform.machine()``).
    :returns: Normalized architecture string.
    """

    m: str = machine.strip().lower()
    if m == "amd64" or m == "x86_64":
        return "x86_64"
    if m == "aarch64" or m == "arm64":
        return "aarch64"
    if m == "armv7l" or m == "armv7" or m == "armv8l":
        return "armv7l"
    if m == "i386" or m == "i686":
        return "i686"
    return m


def _check_architecture(*, config: InstallConfig, machine: str | None) -> None:
    """Validate the running machine against the archive target.

    :raises ArchitectureMismatch: On mismatch.
    """

    actual_machine: str = machine if machine is not None else platform.machine()
    actual: str = normalize_arch(actual_machine)
    expected: str = normalize_arch(config.arch)
    if actual != expected:
        raise ArchitectureMismatch(
            "CPU architecture mismatch for this archive.\n"
            f"Expected: {expected}\n"
            f"Actual:   {actual} (machine={actual_machine})"
        )


def _check_termux_prefix(
    *,
    config: InstallConfig,
    termux_usr: pathlib.Path,
    report: InstallReport,
    logger: logging.Logger,
) -> None:
    """Warn when installing under the Termux app directory outside Termux."""

    prefix: str = config.prefix.rstrip("/")
    if prefix != _TERMUX_APP_DIR and prefix.startswith(_TERMUX_APP_DIR + "/") is False:
        return
    if termux_usr.is_dir() is True:
        return
    msg: str = f"{termux_usr} not found; this does not look like a Termux environment"
    logger.warning(f"nix-relocator: {msg}")
    report.warnings.append(msg)


def _create_directories(*, config: InstallConfig) -> None:
    """Create the destination directory layout (idempotent)."""

    state: pathlib.Path = pathlib.Path(config.state_dir)
    dirs: list[pathlib.Path] = [
        pathlib.Path(config.store_dir),
        state / "nix" / "db",
        state / "nix" / "gcroots",
        state / "nix" / "profiles",
        state / "nix" / "temproots",
        pathlib.Path(config.conf_dir) / "nix",
    ]
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)


def _copy_store(
    *,
    store_src: pathlib.Path,
    store_dir: pathlib.Path,
    report: InstallReport,
    logger: logging.Logger,
    sleep: Callable[[float], None],
) -> None:
    """Copy staged store paths that are not yet present at the destination."""

    for src in sorted(store_src.iterdir()):
        name: str = src.name
        dest: pathlib.Path = store_dir / name
        if os.path.lexists(dest) is True:
            report.skipped.append(name)
            continue

        error: OSError | None = None
        attempt: int = 1
        while True:
            try:
                _copy_path_atomic(src=src, dest=dest)
                error = None
                break
            except OSError as e:
                error = e
                if _is_transient(e) is False or attempt >= _COPY_ATTEMPTS:
                    break
                delay: float = _COPY_BACKOFF_S * (2 ** (attempt - 1))
                logger.debug(f"nix-relocator: transient error copying {name} ({e}); retrying in {delay:.1f}s")
                sleep(delay)
                attempt += 1

        if error is not None:
            report.failed.append((name, str(error)))
            logger.warning(f"nix-relocator: failed to copy {name}: {error}")
            continue

        report.copied.append(name)
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"nix-relocator: copied {name}")


def _copy_path_atomic(*, src: pathlib.Path, dest: pathlib.Path) -> None:
    """Copy ``src`` to a temporary sibling of ``dest`` and rename it into place.

    :raises OSError: If copying fails; the temporary copy is removed.
    """

    tmp: pathlib.Path = dest.with_name(f".{dest.name}.partial-{os.getpid()}")
    _remove_path(tmp)
    try:
        if src.is_dir() is True and src.is_symlink() is False:
            shutil.copytree(src, tmp, symlinks=True)
        else:
            shutil.copy2(src, tmp, follow_symlinks=False)
        os.rename(tmp, dest)
    except OSError:
        _remove_path(tmp)
        raise


def _remove_path(path: pathlib.Path) -> None:
    """Remove a file, symlink or directory tree if it exists."""

    if path.is_symlink() is True or path.is_file() is True:
        path.unlink()
    elif path.is_dir() is True:
        shutil.rmtree(path)


def _is_transient(e: OSError) -> bool:
    """Check whether an I/O error is worth retrying."""

    return e.errno is not None and e.errno in _TRANSIENT_ERRNOS


def _store_entries(store_dir: pathlib.Path) -> list[str]:
    """List store names present in ``store_dir`` (temporary copies excluded)."""

    return sorted(p.name for p in store_dir.iterdir() if p.name.startswith(".") is False)


def _find_import_tool(store_dir: pathlib.Path) -> pathlib.Path | None:
    """Locate ``nix-store`` inside the destination store."""

    for cand in sorted(store_dir.glob("*/bin/nix-store")):
        if cand.is_file() is True:
            return cand
    return None


def _nix_environment(config: InstallConfig) -> dict[str, str]:
    """Build the child environment pointing Nix at the relocated directories."""

    env: dict[str, str] = dict(os.environ)
    env["NIX_STORE_DIR"] = config.store_dir
    env["NIX_STATE_DIR"] = config.state_dir
    env["NIX_CONF_DIR"] = config.conf_dir
    return env


def _import_database(
    *,
    registration_path: pathlib.Path,
    config: InstallConfig,
    report: InstallReport,
    logger: logging.Logger,
) -> None:
    """Load the registration record into the destination store's database.

    :raises InstallError: If the import tool exits with an error.
    """

    if registration_path.is_file() is False:
        msg: str = f"No registration record in archive ({registration_path}); database not initialized."
        report.warnings.append(msg)
        logger.warning(f"nix-relocator: {msg}")
        return

    tool: pathlib.Path | None = _find_import_tool(pathlib.Path(config.store_dir))
    if tool is None:
        msg = "Could not find nix-store in the installed store; database not initialized."
        report.warnings.append(msg)
        logger.warning(f"nix-relocator: {msg}")
        return

    logger.info(f"nix-relocator: loading registration with {tool}")
    with open(registration_path, "rb") as f:
        proc = subprocess.run(
            [str(tool), "--load-db"],
            stdin=f,
            env=_nix_environment(config),
            check=False,
            capture_output=True,
        )
    if proc.returncode != 0:
        stderr: str = proc.stderr.decode("utf-8", errors="replace").strip()
        raise InstallError(f"nix-store --load-db failed (exit={proc.returncode}): {stderr}")
    report.database_imported = True


def _link_profile(
    *,
    config: InstallConfig,
    user: str | None,
    report: InstallReport,
    logger: logging.Logger,
) -> None:
    """Point the default profile at the invoking user's profile (non-fatal)."""

    profiles: pathlib.Path = pathlib.Path(config.state_dir) / "nix" / "profiles"
    try:
        user_name: str = user if user is not None else getpass.getuser()
        per_user: pathlib.Path = profiles / "per-user" / user_name
        per_user.mkdir(parents=True, exist_ok=True)
        link: pathlib.Path = profiles / "default"
        if os.path.lexists(link) is True:
            link.unlink()
        link.symlink_to(per_user / "profile")
    except (OSError, KeyError) as e:
        msg: str = f"Could not create the default profile link: {e}"
        report.warnings.append(msg)
        logger.warning(f"nix-relocator: {msg}")
        return
    report.profile_linked = True


def render_nix_conf(config: InstallConfig) -> str:
    """Render ``nix.conf`` for the relocated installation."""

    return (
        "# Nix configuration for a relocated store\n"
        "build-users-group =\n"
        "sandbox = false\n"
        "max-jobs = auto\n"
        "cores = 0\n"
        "\n"
        "# No binary cache serves the relocated store.\n"
        "substituters =\n"
        "trusted-public-keys =\n"
        "\n"
        f"store = {config.store_dir}\n"
        f"state = {config.state_dir}\n"
    )


def _write_config(*, config: InstallConfig) -> None:
    """Write ``nix.conf``, replacing any previous one."""

    conf_path: pathlib.Path = pathlib.Path(config.conf_dir) / "nix" / "nix.conf"
    tmp: pathlib.Path = conf_path.with_name("nix.conf.tmp")
    tmp.write_text(render_nix_conf(config), encoding="utf-8")
    os.replace(tmp, conf_path)


def _find_ca_bundle(store_dir: pathlib.Path) -> pathlib.Path | None:
    """Locate the CA bundle of an installed ``cacert`` store path."""

    for cand in sorted(store_dir.glob("*cacert*/etc/ssl/certs/ca-bundle.crt")):
        if cand.is_file() is True:
            return cand
    return None


def _log_next_steps(config: InstallConfig, logger: logging.Logger) -> None:
    """Tell the user how to point their shell at the installation."""

    profile_bin: str = f"{config.state_dir}/nix/profiles/default/bin"
    ca_bundle: pathlib.Path | None = _find_ca_bundle(pathlib.Path(config.store_dir))
    logger.info("")
    logger.info("Installation complete. Add the following to your shell profile:")
    logger.info("")
    logger.info(f'  export NIX_STORE_DIR="{config.store_dir}"')
    logger.info(f'  export NIX_STATE_DIR="{config.state_dir}"')
    logger.info(f'  export NIX_CONF_DIR="{config.conf_dir}"')
    logger.info(f'  export PATH="{profile_bin}:$PATH"')
    logger.info(f'  export MANPATH="{config.state_dir}/nix/profiles/default/share/man:$MANPATH"')
    if ca_bundle is not None:
        logger.info(f'  export NIX_SSL_CERT_FILE="{ca_bundle}"')
    logger.info("")
    logger.info("Binary caches serve /nix/store only; packages will be built from source.")


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the installer logger for script use."""

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("nix_relocator.install")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def main(argv: list[str] | None = None) -> int:
    """Run the installer.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="install",
        description="Install a relocated Nix store from an extracted nix-relocator archive.",
    )
    parser.add_argument(
        "--source-dir",
        type=pathlib.Path,
        default=pathlib.Path(__file__).resolve().parent,
        help="Extracted archive root (defaults to the directory of this script).",
    )
    parser.add_argument(
        "--config",
        type=pathlib.Path,
        default=None,
        help="Install configuration JSON (only needed when none is embedded).",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Enable verbose logging.")
    parser.add_argument("-q", "--quiet", action="count", default=0, help="Reduce logging.")
    ns = parser.parse_args(argv)

    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    config_text: str
    if ns.config is not None:
        config_text = ns.config.read_text(encoding="utf-8")
    elif _EMBEDDED_CONFIG_JSON.startswith("{") is True:
        config_text = _EMBEDDED_CONFIG_JSON
    else:
        parser.error("no embedded install configuration; pass --config")

    try:
        config: InstallConfig = InstallConfig.from_json(config_text)
        install(source_dir=ns.source_dir, config=config, logger=logger)
    except InstallError as e:
        logger.error(f"ERROR: {e}")
        return 1

    _log_next_steps(config, logger)
    return 0


if __name__ == "__main__":
    sys.exit(main())
