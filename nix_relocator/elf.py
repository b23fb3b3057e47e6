"""ELF interpreter relocation.

Dynamically linked executables and shared objects name their dynamic loader in
a ``PT_INTERP`` program header: a NUL-terminated absolute path stored in a
fixed-size field. This module rewrites that path from one prefix to another in
place, without ever changing the file's length or any other byte.

Both ELF classes (32/64-bit) and both byte orders are supported.
"""

from dataclasses import dataclass, field
import logging
import os
import pathlib
import stat
import struct


class ElfFormatError(ValueError):
    """Raised when an ELF file's headers are inconsistent with its size."""


ELF_MAGIC: bytes = b"\x7fELF"

_ET_EXEC: int = 2
_ET_DYN: int = 3
_PT_INTERP: int = 3

PATCHED: str = "patched"
NOT_APPLICABLE: str = "not-applicable"
REFUSED: str = "refused"

REASON_TARGET_NOT_STAGED: str = "target-not-staged"
REASON_CAPACITY_EXCEEDED: str = "capacity-exceeded"
REASON_MALFORMED: str = "malformed-elf"


@dataclass(frozen=True, slots=True)
class InterpreterField:
    """Location and contents of a ``PT_INTERP`` field.

    :ivar offset: File offset of the field.
    :ivar capacity: Field size in bytes, including the NUL terminator.
    :ivar value: Interpreter path (without the NUL terminator).
    """

    offset: int
    capacity: int
    value: str


@dataclass(frozen=True, slots=True)
class RewriteOutcome:
    """Result of relocating one file.

    :ivar kind: One of ``patched``, ``not-applicable`` or ``refused``.
    :ivar reason: Refusal reason (kind=refused).
    :ivar old: Interpreter path found in the file, if any.
    :ivar new: Interpreter path the file points to afterwards (kind=patched),
        or would have pointed to (kind=refused).
    """

    kind: str
    reason: str | None = None
    old: str | None = None
    new: str | None = None


@dataclass(slots=True)
class RewriteStats:
    """Outcome counts aggregated over a staged tree.

    :ivar checked: Number of regular files inspected.
    :ivar patched: Files whose interpreter now points into the destination prefix.
    :ivar not_applicable: Files that needed no relocation.
    :ivar refused: ``(relative path, reason)`` for every refused file.
    """

    checked: int = 0
    patched: int = 0
    not_applicable: int = 0
    refused: list[tuple[str, str]] = field(default_factory=list)

    def record(self, relpath: str, outcome: RewriteOutcome) -> None:
        """Count one outcome.

        :param relpath: File path relative to the tree root (POSIX).
        :param outcome: Outcome for that file.
        """

        self.checked += 1
        if outcome.kind == PATCHED:
            self.patched += 1
        elif outcome.kind == NOT_APPLICABLE:
            self.not_applicable += 1
        else:
            self.refused.append((relpath, outcome.reason if outcome.reason is not None else "unknown"))


def is_elf(path: pathlib.Path) -> bool:
    """Sniff the ELF magic number.

    :param path: File to check.
    :returns: ``True`` if the file starts with ``\\x7fELF``.
    """

    with open(path, "rb") as f:
        return f.read(4) == ELF_MAGIC


def read_interpreter(path: pathlib.Path) -> InterpreterField | None:
    """Locate the interpreter field of an ELF executable or shared object.

    :param path: File to inspect.
    :returns: The field, or ``None`` if the file is not a dynamically linked
        ELF executable/shared object.
    :raises ElfFormatError: If the headers point outside the file.
    """

    with open(path, "rb") as f:
        header: bytes = f.read(64)
        if len(header) < 16 or header[0:4] != ELF_MAGIC:
            return None

        ei_class: int = header[4]
        ei_data: int = header[5]
        bo: str
        if ei_data == 1:
            bo = "<"
        elif ei_data == 2:
            bo = ">"
        else:
            raise ElfFormatError(f"Unknown ELF data encoding {ei_data}")

        # (e_phoff, e_phentsize, e_phnum) offsets, address format, p_offset/p_filesz offsets.
        if ei_class == 2:
            min_header: int = 64
            phoff_fmt: str = "Q"
            phoff_at, phentsize_at, phnum_at = 32, 54, 56
            p_offset_at, p_filesz_at, min_phentsize = 8, 32, 56
        elif ei_class == 1:
            min_header = 52
            phoff_fmt = "I"
            phoff_at, phentsize_at, phnum_at = 28, 42, 44
            p_offset_at, p_filesz_at, min_phentsize = 4, 16, 32
        else:
            raise ElfFormatError(f"Unknown ELF class {ei_class}")

        if len(header) < min_header:
            raise ElfFormatError("Truncated ELF header")

        e_type: int = struct.unpack_from(bo + "H", header, 16)[0]
        if e_type != _ET_EXEC and e_type != _ET_DYN:
            return None

        e_phoff: int = struct.unpack_from(bo + phoff_fmt, header, phoff_at)[0]
        e_phentsize: int = struct.unpack_from(bo + "H", header, phentsize_at)[0]
        e_phnum: int = struct.unpack_from(bo + "H", header, phnum_at)[0]
        if e_phnum == 0:
            return None
        if e_phentsize < min_phentsize:
            raise ElfFormatError(f"Program header entry size too small ({e_phentsize})")

        file_size: int = os.fstat(f.fileno()).st_size
        table_size: int = e_phnum * e_phentsize
        if e_phoff + table_size > file_size:
            raise ElfFormatError("Program header table extends past end of file")

        f.seek(e_phoff)
        table: bytes = f.read(table_size)

        i: int = 0
        while i < e_phnum:
            base: int = i * e_phentsize
            p_type: int = struct.unpack_from(bo + "I", table, base)[0]
            if p_type == _PT_INTERP:
                p_offset: int = struct.unpack_from(bo + phoff_fmt, table, base + p_offset_at)[0]
                p_filesz: int = struct.unpack_from(bo + phoff_fmt, table, base + p_filesz_at)[0]
                if p_filesz == 0 or p_offset + p_filesz > file_size:
                    raise ElfFormatError("PT_INTERP segment lies outside the file")

                f.seek(p_offset)
                raw: bytes = f.read(p_filesz)
                nul: int = raw.find(b"\x00")
                if nul >= 0:
                    raw = raw[0:nul]
                return InterpreterField(offset=p_offset, capacity=p_filesz, value=os.fsdecode(raw))
            i += 1

    return None


def rewrite_interpreter(
    path: pathlib.Path,
    *,
    source_prefix: str,
    dest_prefix: str,
    staged_root: pathlib.Path,
) -> RewriteOutcome:
    """Relocate a file's interpreter from ``source_prefix`` to ``dest_prefix``.

    ``staged_root`` is the staged directory that will be installed at
    ``dest_prefix``; the relocated interpreter must exist inside it.

    :param path: Staged file to patch in place.
    :param source_prefix: Prefix the interpreter currently points into.
    :param dest_prefix: Prefix the interpreter should point into.
    :param staged_root: Staged counterpart of ``dest_prefix``.
    :returns: Outcome.
    """

    try:
        interp: InterpreterField | None = read_interpreter(path)
    except ElfFormatError:
        return RewriteOutcome(kind=REFUSED, reason=REASON_MALFORMED)

    if interp is None:
        return RewriteOutcome(kind=NOT_APPLICABLE)

    current: str = interp.value
    already: str | None = _strip_prefix(current, dest_prefix)
    if already is not None and _staged_path(staged_root, already).is_file() is True:
        return RewriteOutcome(kind=PATCHED, old=current, new=current)

    suffix: str | None = _strip_prefix(current, source_prefix)
    if suffix is None:
        return RewriteOutcome(kind=NOT_APPLICABLE, old=current)

    new: str = dest_prefix.rstrip("/") + suffix
    if _staged_path(staged_root, suffix).is_file() is False:
        return RewriteOutcome(kind=REFUSED, reason=REASON_TARGET_NOT_STAGED, old=current, new=new)

    encoded: bytes = os.fsencode(new)
    if len(encoded) + 1 > interp.capacity:
        return RewriteOutcome(kind=REFUSED, reason=REASON_CAPACITY_EXCEEDED, old=current, new=new)

    payload: bytes = encoded + b"\x00" * (interp.capacity - len(encoded))
    _write_at(path, offset=interp.offset, data=payload)
    return RewriteOutcome(kind=PATCHED, old=current, new=new)


def rewrite_tree(
    root: pathlib.Path,
    *,
    source_prefix: str,
    dest_prefix: str,
    staged_root: pathlib.Path,
    logger: logging.Logger,
) -> RewriteStats:
    """Relocate the interpreter of every regular file under ``root``.

    :param root: Directory to scan.
    :param source_prefix: Prefix interpreters currently point into.
    :param dest_prefix: Prefix interpreters should point into.
    :param staged_root: Staged counterpart of ``dest_prefix``.
    :param logger: Logger for per-file debug output.
    :returns: Aggregated outcome counts.
    """

    stats: RewriteStats = RewriteStats()
    paths: list[pathlib.Path] = []
    for p in root.rglob("*"):
        if p.is_symlink() is False and p.is_file() is True:
            paths.append(p)

    for p in sorted(paths):
        rel: str = p.relative_to(root).as_posix()
        outcome: RewriteOutcome = rewrite_interpreter(
            p,
            source_prefix=source_prefix,
            dest_prefix=dest_prefix,
            staged_root=staged_root,
        )
        stats.record(rel, outcome)
        if logger.isEnabledFor(logging.DEBUG) is True:
            if outcome.kind == PATCHED and outcome.old != outcome.new:
                logger.debug(f"nix-relocator: patched {rel}: {outcome.old} -> {outcome.new}")
            elif outcome.kind == REFUSED:
                logger.debug(f"nix-relocator: refused {rel} ({outcome.reason}): {outcome.old} -> {outcome.new}")
    return stats


def _strip_prefix(path: str, prefix: str) -> str | None:
    """Strip ``prefix`` from ``path`` on a path-component boundary.

    :returns: The remainder (empty or starting with ``/``), or ``None`` if
        ``path`` is not under ``prefix``.
    """

    p: str = prefix.rstrip("/")
    if path == p:
        return ""
    if path.startswith(p + "/") is True:
        return path[len(p) :]
    return None


def _staged_path(staged_root: pathlib.Path, suffix: str) -> pathlib.Path:
    """Map a prefix-relative suffix (``/x/y``) into the staged tree."""

    return staged_root.joinpath(*pathlib.PurePosixPath(suffix.lstrip("/")).parts)


def _write_at(path: pathlib.Path, *, offset: int, data: bytes) -> None:
    """Overwrite ``len(data)`` bytes at ``offset``, temporarily adding owner write permission.

    :param path: File to modify.
    :param offset: File offset.
    :param data: Replacement bytes.
    """

    mode: int = stat.S_IMODE(os.stat(path).st_mode)
    made_writable: bool = False
    if mode & stat.S_IWUSR == 0:
        os.chmod(path, mode | stat.S_IWUSR)
        made_writable = True
    try:
        with open(path, "r+b") as f:
            f.seek(offset)
            f.write(data)
    finally:
        if made_writable is True:
            os.chmod(path, mode)
