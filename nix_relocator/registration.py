"""Registration records.

A registration record lists every store path of a closure together with the
metadata a destination store needs to mark the paths valid without rebuilding
them. The text format is the one read by ``nix-store --load-db``::

    <store path>
    <nar hash>
    <nar size>
    <deriver, or an empty line>
    <reference count>
    <reference>
    ...
"""

from dataclasses import dataclass, replace
import pathlib
from typing import Iterable, Iterator


class RegistrationFormatError(ValueError):
    """Raised when a registration file cannot be parsed."""


@dataclass(frozen=True, slots=True)
class RegistrationEntry:
    """One store path in a registration record.

    :ivar path: Absolute store path (the artifact identity).
    :ivar nar_hash: NAR hash as reported by the store (e.g. ``sha256:...``).
    :ivar nar_size: NAR size in bytes.
    :ivar deriver: Deriver store path, or ``None``.
    :ivar references: Direct references (absolute store paths), sorted.
    :ivar is_root: Whether the path was explicitly requested (not serialized).
    """

    path: str
    nar_hash: str
    nar_size: int
    deriver: str | None
    references: tuple[str, ...]
    is_root: bool = False

    @property
    def name(self) -> str:
        """Store name of the path (its last component)."""

        return pathlib.PurePosixPath(self.path).name

    def relocated(self, *, source_store: str, dest_store: str) -> "RegistrationEntry":
        """Re-root every store path of this entry under another store directory.

        :param source_store: Store directory the entry currently points into.
        :param dest_store: Store directory to point into instead.
        :returns: New entry.
        """

        deriver: str | None = None
        if self.deriver is not None:
            deriver = relocate_store_path(self.deriver, source_store=source_store, dest_store=dest_store)
        return replace(
            self,
            path=relocate_store_path(self.path, source_store=source_store, dest_store=dest_store),
            deriver=deriver,
            references=tuple(
                relocate_store_path(r, source_store=source_store, dest_store=dest_store)
                for r in self.references
            ),
        )


def relocate_store_path(path: str, *, source_store: str, dest_store: str) -> str:
    """Re-root one store path.

    Paths outside ``source_store`` are returned unchanged.

    :param path: Absolute store path.
    :param source_store: Store directory to strip.
    :param dest_store: Store directory to prepend.
    :returns: Relocated path.
    """

    prefix: str = source_store.rstrip("/") + "/"
    if path.startswith(prefix) is False:
        return path
    return dest_store.rstrip("/") + "/" + path[len(prefix) :]


def format_registration(entries: Iterable[RegistrationEntry]) -> str:
    """Serialize entries into the ``nix-store --load-db`` text format.

    :param entries: Entries in the order they should be registered.
    :returns: Registration text.
    """

    lines: list[str] = []
    for e in entries:
        lines.append(e.path)
        lines.append(e.nar_hash)
        lines.append(str(e.nar_size))
        lines.append(e.deriver if e.deriver is not None else "")
        lines.append(str(len(e.references)))
        lines.extend(e.references)
    if len(lines) == 0:
        return ""
    return "\n".join(lines) + "\n"


def parse_registration(text: str) -> list[RegistrationEntry]:
    """Parse ``nix-store --load-db`` text into entries.

    :param text: Registration text.
    :returns: Entries in file order.
    :raises RegistrationFormatError: If the text is truncated or malformed.
    """

    lines: list[str] = text.splitlines()
    entries: list[RegistrationEntry] = []
    it: Iterator[tuple[int, str]] = iter(enumerate(lines, start=1))

    def take(what: str) -> tuple[int, str]:
        try:
            return next(it)
        except StopIteration:
            raise RegistrationFormatError(f"Registration truncated: expected {what}.") from None

    for lineno, path in it:
        if len(path) == 0:
            # Trailing blank lines are tolerated; blank lines between records are not.
            continue
        if path.startswith("/") is False:
            raise RegistrationFormatError(f"line {lineno}: expected an absolute store path, got {path!r}")

        _, nar_hash = take(f"NAR hash for {path}")
        size_lineno, size_text = take(f"NAR size for {path}")
        _, deriver = take(f"deriver for {path}")
        count_lineno, count_text = take(f"reference count for {path}")

        try:
            nar_size: int = int(size_text)
        except ValueError:
            raise RegistrationFormatError(f"line {size_lineno}: invalid NAR size {size_text!r}") from None
        try:
            count: int = int(count_text)
        except ValueError:
            raise RegistrationFormatError(
                f"line {count_lineno}: invalid reference count {count_text!r}"
            ) from None
        if nar_size < 0 or count < 0:
            raise RegistrationFormatError(f"line {size_lineno}: negative size or count for {path}")

        refs: list[str] = []
        for _ in range(count):
            _, ref = take(f"reference of {path}")
            refs.append(ref)

        entries.append(
            RegistrationEntry(
                path=path,
                nar_hash=nar_hash,
                nar_size=nar_size,
                deriver=deriver if len(deriver) > 0 else None,
                references=tuple(sorted(refs)),
            )
        )

    return entries


def read_registration(path: pathlib.Path) -> list[RegistrationEntry]:
    """Read and parse a registration file.

    :param path: File path.
    :returns: Entries in file order.
    """

    return parse_registration(path.read_text(encoding="utf-8"))


def write_registration(path: pathlib.Path, entries: Iterable[RegistrationEntry]) -> None:
    """Write entries to a registration file.

    :param path: File path.
    :param entries: Entries in registration order.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(format_registration(entries), encoding="utf-8")
