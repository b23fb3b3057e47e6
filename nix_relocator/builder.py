"""Installer archive builder.

This module implements the relocation pipeline's assembly step:

- It copies every store path of a closure into a ``store/`` staging directory,
  dereferencing symlinks so the archive does not depend on the build host.
- It rewrites the ELF interpreter of every staged binary from the source store
  to the destination store.
- It writes the relocated registration record, the installer script and a
  README next to ``store/``, and packs everything into one ``.tar.gz``.
"""

from dataclasses import dataclass
import concurrent.futures
import logging
import os
import pathlib
import shutil
import tarfile
import tempfile
import time

from nix_relocator import installer
from nix_relocator.closure import Closure, verify_topological_order
from nix_relocator.elf import RewriteStats, rewrite_tree
from nix_relocator.registration import RegistrationEntry, format_registration
from nix_relocator.store import ArtifactStore, StoreError
from nix_relocator.target import TargetConfig


class BuildError(RuntimeError):
    """Raised when building an archive fails."""


class EmptyClosure(BuildError):
    """Raised when there is nothing to package."""


class SourceUnavailable(BuildError):
    """Raised when a closure member cannot be read from the build host."""

    def __init__(self, identity: str, reason: str) -> None:
        super().__init__(f"Store path unavailable: {identity} ({reason})")
        self.identity: str = identity


@dataclass(frozen=True, slots=True)
class CopyStats:
    """Stats collected while copying a directory tree.

    :ivar files_copied: Number of files copied.
    :ivar bytes_copied: Total bytes copied (best-effort).
    :ivar links_skipped: Dangling or looping symlinks that were not copied.
    """

    files_copied: int
    bytes_copied: int
    links_skipped: int = 0


@dataclass(frozen=True, slots=True)
class ArchiveResult:
    """Outputs of one archive build.

    :ivar archive_path: The ``.tar.gz`` archive.
    :ivar registration_path: Uncompressed copy of the archive's registration record.
    :ivar paths: Number of store paths packaged.
    :ivar copy_stats: Totals of the staging copy.
    :ivar rewrite_stats: Interpreter relocation outcomes.
    """

    archive_path: pathlib.Path
    registration_path: pathlib.Path
    paths: int
    copy_stats: CopyStats
    rewrite_stats: RewriteStats


LOCK_NAME: str = ".nix-relocator.lock"


def _validate_compresslevel(compresslevel: int) -> None:
    """Validate a gzip compression level.

    :param compresslevel: Compression level (0-9).
    :raises BuildError: If the level is out of range.
    """

    if compresslevel < 0 or compresslevel > 9:
        raise BuildError(f"Invalid compresslevel={compresslevel}; expected 0-9.")


def build_installer_archive(
    *,
    closure: Closure,
    store: ArtifactStore,
    target: TargetConfig,
    output_dir: pathlib.Path,
    logger: logging.Logger | None = None,
    staging_dir: pathlib.Path | None = None,
    jobs: int = 1,
    compresslevel: int = 6,
) -> ArchiveResult:
    """Build the installer archive for a closure.

    :param closure: Closure to package.
    :param store: Store the closure was computed against (used to read contents).
    :param target: Relocation target.
    :param output_dir: Directory the archive and registration copy are written to.
    :param logger: Optional logger for realtime build progress output.
    :param staging_dir: Optional persistent staging directory (locked for the run).
        Defaults to a private temporary directory.
    :param jobs: Number of store paths copied concurrently.
    :param compresslevel: Gzip compression level.
    :returns: Build outputs.
    :raises EmptyClosure: If the closure has no members.
    :raises SourceUnavailable: If a store path cannot be copied.
    :raises BuildError: If the staging directory is in use.
    """

    if logger is None:
        logger = logging.getLogger("nix_relocator")

    if len(closure.registration) == 0:
        raise EmptyClosure("Closure is empty; nothing to package.")
    if jobs < 1:
        raise BuildError(f"Invalid jobs={jobs}; expected at least 1.")
    _validate_compresslevel(compresslevel)
    verify_topological_order(closure.registration)

    t_total0: float = time.perf_counter()
    logger.info(f"nix-relocator: target={target.system} prefix={target.prefix}")
    logger.info(
        f"nix-relocator: closure has {len(closure.registration)} paths "
        f"({closure.total_size / (1024 * 1024):.1f} MiB) from {len(closure.roots)} roots"
    )

    if staging_dir is None:
        with tempfile.TemporaryDirectory(prefix="nix_relocator_build_") as td:
            return _build_in(
                staging_root=pathlib.Path(td) / target.archive_name,
                closure=closure,
                store=store,
                target=target,
                output_dir=output_dir,
                logger=logger,
                jobs=jobs,
                compresslevel=compresslevel,
                t_total0=t_total0,
            )

    lock_path: pathlib.Path = _acquire_staging_lock(staging_dir)
    try:
        staging_root: pathlib.Path = staging_dir / target.archive_name
        if staging_root.exists() is True:
            shutil.rmtree(staging_root)
        return _build_in(
            staging_root=staging_root,
            closure=closure,
            store=store,
            target=target,
            output_dir=output_dir,
            logger=logger,
            jobs=jobs,
            compresslevel=compresslevel,
            t_total0=t_total0,
        )
    finally:
        lock_path.unlink(missing_ok=True)


def _build_in(
    *,
    staging_root: pathlib.Path,
    closure: Closure,
    store: ArtifactStore,
    target: TargetConfig,
    output_dir: pathlib.Path,
    logger: logging.Logger,
    jobs: int,
    compresslevel: int,
    t_total0: float,
) -> ArchiveResult:
    """Run the staging, rewrite and packing steps inside ``staging_root``."""

    store_stage: pathlib.Path = staging_root / "store"
    store_stage.mkdir(parents=True, exist_ok=True)
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"nix-relocator: staging_root={staging_root}")

    t_stage0: float = time.perf_counter()
    copy_stats: CopyStats = _stage_store(
        entries=list(closure.registration),
        store=store,
        store_stage=store_stage,
        jobs=jobs,
        logger=logger,
    )
    t_stage1: float = time.perf_counter()
    logger.info(
        f"nix-relocator: staged store ({copy_stats.files_copied} files, "
        f"{copy_stats.bytes_copied / (1024 * 1024):.1f} MiB) in {t_stage1 - t_stage0:.2f}s"
    )
    if copy_stats.links_skipped > 0:
        logger.warning(f"nix-relocator: skipped {copy_stats.links_skipped} dangling or looping symlinks")

    t_patch0: float = time.perf_counter()
    rewrite_stats: RewriteStats = rewrite_tree(
        store_stage,
        source_prefix=target.source_store,
        dest_prefix=target.store_dir,
        staged_root=store_stage,
        logger=logger,
    )
    t_patch1: float = time.perf_counter()
    logger.info(
        f"nix-relocator: checked {rewrite_stats.checked} files, patched {rewrite_stats.patched} binaries "
        f"in {t_patch1 - t_patch0:.2f}s"
    )
    if len(rewrite_stats.refused) > 0:
        logger.warning(
            f"nix-relocator: {len(rewrite_stats.refused)} binaries could not be relocated "
            "(use -v to list them)"
        )

    relocated: list[RegistrationEntry] = [
        e.relocated(source_store=target.source_store, dest_store=target.store_dir)
        for e in closure.registration
    ]
    registration_text: str = format_registration(relocated)
    (staging_root / "registration").write_text(registration_text, encoding="utf-8")

    install_path: pathlib.Path = staging_root / "install"
    install_path.write_text(render_install_script(target), encoding="utf-8")
    install_path.chmod(0o755)

    (staging_root / "README").write_text(_render_readme(target), encoding="utf-8")

    output_dir.mkdir(parents=True, exist_ok=True)
    archive_path: pathlib.Path = output_dir / f"{target.archive_name}.tar.gz"
    registration_path: pathlib.Path = output_dir / f"{target.archive_name}.registration"

    t_tar0: float = time.perf_counter()
    tmp_archive: pathlib.Path = archive_path.with_name(archive_path.name + ".tmp")
    _tar_dir_to_path(root=staging_root, out_path=tmp_archive, compresslevel=compresslevel)
    tmp_archive.replace(archive_path)

    tmp_registration: pathlib.Path = registration_path.with_name(registration_path.name + ".tmp")
    tmp_registration.write_text(registration_text, encoding="utf-8")
    tmp_registration.replace(registration_path)
    t_tar1: float = time.perf_counter()

    out_size: int = archive_path.stat().st_size
    logger.info(
        f"nix-relocator: wrote {archive_path} ({out_size / (1024 * 1024):.1f} MiB) in {t_tar1 - t_tar0:.2f}s"
    )
    t_total1: float = time.perf_counter()
    logger.info(f"nix-relocator: done in {t_total1 - t_total0:.2f}s")

    return ArchiveResult(
        archive_path=archive_path,
        registration_path=registration_path,
        paths=len(relocated),
        copy_stats=copy_stats,
        rewrite_stats=rewrite_stats,
    )


def _acquire_staging_lock(staging_dir: pathlib.Path) -> pathlib.Path:
    """Take exclusive ownership of a staging directory.

    :param staging_dir: Staging directory.
    :returns: Lock file path (to be removed by the caller).
    :raises BuildError: If another run holds the lock.
    """

    staging_dir.mkdir(parents=True, exist_ok=True)
    lock_path: pathlib.Path = staging_dir / LOCK_NAME
    try:
        fd: int = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        raise BuildError(
            f"Staging directory {staging_dir} is in use by another run "
            f"(remove {lock_path} if that run is gone)."
        ) from None
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(f"{os.getpid()}\n")
    return lock_path


def _stage_store(
    *,
    entries: list[RegistrationEntry],
    store: ArtifactStore,
    store_stage: pathlib.Path,
    jobs: int,
    logger: logging.Logger,
) -> CopyStats:
    """Copy every store path into ``store_stage/<store name>``.

    :param entries: Closure members.
    :param store: Store to read contents from.
    :param store_stage: Staged ``store/`` directory.
    :param jobs: Number of concurrent copies.
    :param logger: Logger for progress output.
    :returns: Summed copy statistics.
    :raises SourceUnavailable: If any store path cannot be copied.
    """

    def copy_one(entry: RegistrationEntry) -> CopyStats:
        try:
            src: pathlib.Path = store.path_of(entry.path)
        except StoreError as e:
            raise SourceUnavailable(entry.path, str(e)) from e
        if os.path.exists(src) is False:
            raise SourceUnavailable(entry.path, f"{src} does not exist")
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"nix-relocator: copying {entry.path}")
        try:
            return _copy_artifact(src=src, dst=store_stage / entry.name)
        except OSError as e:
            raise SourceUnavailable(entry.path, str(e)) from e

    results: list[CopyStats] = []
    if jobs == 1:
        for entry in entries:
            results.append(copy_one(entry))
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=jobs) as pool:
            for stats in pool.map(copy_one, entries):
                results.append(stats)

    return CopyStats(
        files_copied=sum(s.files_copied for s in results),
        bytes_copied=sum(s.bytes_copied for s in results),
        links_skipped=sum(s.links_skipped for s in results),
    )


def _raise_walk_error(e: OSError) -> None:
    raise e


def _copy_artifact(*, src: pathlib.Path, dst: pathlib.Path) -> CopyStats:
    """Copy a store path, dereferencing every symlink.

    Dangling symlinks and symlinks leading back into one of their own parent
    directories are skipped.

    :param src: Store path on the build host.
    :param dst: Destination in the staging tree.
    :returns: Copy statistics.
    :raises OSError: If a file or directory cannot be read.
    """

    if src.is_dir() is False:
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)
        return CopyStats(files_copied=1, bytes_copied=dst.stat().st_size)

    files_copied: int = 0
    bytes_copied: int = 0
    links_skipped: int = 0
    # Real paths of each walked directory and its ancestors.
    chains: dict[str, frozenset[str]] = {}

    dst.mkdir(parents=True, exist_ok=True)

    for root_str, dirs, files in os.walk(src, topdown=True, onerror=_raise_walk_error, followlinks=True):
        parent_chain: frozenset[str] = chains.get(os.path.dirname(root_str), frozenset())
        real_root: str = os.path.realpath(root_str)
        if real_root in parent_chain:
            dirs[:] = []
            links_skipped += 1
            continue
        chains[root_str] = parent_chain | {real_root}
        dirs.sort()

        root_path: pathlib.Path = pathlib.Path(root_str)
        rel_root: pathlib.Path = root_path.relative_to(src)
        out_dir: pathlib.Path = dst / rel_root
        out_dir.mkdir(parents=True, exist_ok=True)

        for name in sorted(files):
            src_path: pathlib.Path = root_path / name
            if src_path.exists() is False:
                links_skipped += 1
                continue

            dest_path: pathlib.Path = out_dir / name
            shutil.copy2(src_path, dest_path)
            files_copied += 1
            try:
                bytes_copied += dest_path.stat().st_size
            except OSError:
                pass

    return CopyStats(files_copied=files_copied, bytes_copied=bytes_copied, links_skipped=links_skipped)


def _tar_dir_to_path(*, root: pathlib.Path, out_path: pathlib.Path, compresslevel: int) -> None:
    """Pack a directory tree into a gzip-compressed tarball.

    Members are added in sorted order with neutral ownership, so archive
    contents depend only on the staged tree.

    :param root: Root directory to archive (its contents become the archive root).
    :param out_path: Output path.
    :param compresslevel: Gzip compression level.
    """

    def reset_owner(ti: tarfile.TarInfo) -> tarfile.TarInfo:
        ti.uid = 0
        ti.gid = 0
        ti.uname = ""
        ti.gname = ""
        return ti

    out_path.parent.mkdir(parents=True, exist_ok=True)
    paths: list[pathlib.Path] = sorted(root.rglob("*"), key=lambda p: p.relative_to(root).as_posix())
    with tarfile.open(out_path, "w:gz", compresslevel=compresslevel) as tf:
        for p in paths:
            arcname: str = p.relative_to(root).as_posix()
            tf.add(p, arcname=arcname, recursive=False, filter=reset_owner)


def install_config_for(target: TargetConfig) -> installer.InstallConfig:
    """Build the installer configuration embedded for ``target``."""

    return installer.InstallConfig(
        arch=target.arch,
        prefix=target.prefix,
        store_dir=target.store_dir,
        state_dir=target.state_dir,
        conf_dir=target.conf_dir,
    )


_CONFIG_MARKER: str = '"__NIX_RELOCATOR_INSTALL_CONFIG__"'


def render_install_script(target: TargetConfig) -> str:
    """Render the archive's ``install`` script for ``target``.

    The script is the :mod:`nix_relocator.installer` module source with the
    target configuration embedded.

    :param target: Relocation target.
    :returns: Script text.
    :raises BuildError: If the installer source lacks its configuration marker.
    """

    source: str = pathlib.Path(installer.__file__).read_text(encoding="utf-8")
    if source.count(_CONFIG_MARKER) != 1:
        raise BuildError("Internal error: installer source missing its configuration marker.")

    config_json: str = install_config_for(target).to_json()
    rendered: str = source.replace(_CONFIG_MARKER, repr(config_json))
    return (
        "#!/usr/bin/env python3\n"
        f"# This file was generated by nix-relocator for {target.system} ({target.prefix}).\n"
        + rendered
    )


def _render_readme(target: TargetConfig) -> str:
    """Render the archive README."""

    return (
        f"Relocated Nix installer ({target.system})\n"
        "==========================================\n"
        "\n"
        "This archive contains a Nix store closure relocated to:\n"
        f"  - Store:  {target.store_dir}\n"
        f"  - State:  {target.state_dir}\n"
        f"  - Config: {target.conf_dir}\n"
        "\n"
        "Installation:\n"
        "1. Extract this archive into an empty directory:\n"
        f"     mkdir {target.archive_name} && tar -xzf {target.archive_name}.tar.gz -C {target.archive_name}\n"
        "2. Run the installer (requires python3):\n"
        f"     cd {target.archive_name} && ./install\n"
        "\n"
        "The installer is safe to re-run: store paths that are already present are\n"
        "left untouched, and paths that failed to copy are retried.\n"
        "\n"
        "Processes using the installation must export NIX_STORE_DIR, NIX_STATE_DIR\n"
        "and NIX_CONF_DIR; the installer prints the exact values when it finishes.\n"
    )
