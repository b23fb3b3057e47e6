"""Artifact store query interface.

The relocation pipeline never builds anything; it only asks a store two things:

- ``resolve(identity)``: size, NAR hash, deriver and direct references;
- ``path_of(identity)``: where the artifact's bytes can be read on this host.

Three stores are provided: an in-memory mapping, a store backed by an existing
registration file (e.g. the output of Nix's ``closureInfo``), and a thin
wrapper around a local Nix installation.
"""

from dataclasses import dataclass
import json
import logging
import os
import pathlib
import subprocess

from nix_relocator.registration import RegistrationEntry, read_registration


class StoreError(RuntimeError):
    """Base class for store query failures."""


class ArtifactNotFound(StoreError):
    """Raised when a store cannot resolve an artifact identity."""

    def __init__(self, identity: str) -> None:
        super().__init__(f"Artifact not found in store: {identity}")
        self.identity: str = identity


class StoreQueryError(StoreError):
    """Raised when querying an external store fails."""


@dataclass(frozen=True, slots=True)
class ArtifactInfo:
    """Metadata of a single artifact.

    :ivar identity: Absolute store path.
    :ivar nar_size: NAR size in bytes.
    :ivar nar_hash: NAR hash (e.g. ``sha256:...``).
    :ivar deriver: Deriver store path, or ``None``.
    :ivar references: Direct references, sorted. May include ``identity`` itself.
    """

    identity: str
    nar_size: int
    nar_hash: str
    deriver: str | None
    references: tuple[str, ...]


class ArtifactStore:
    """Read-only view of a store."""

    def resolve(self, identity: str) -> ArtifactInfo:
        """Return metadata for ``identity``.

        :raises ArtifactNotFound: If the identity is unknown.
        """

        raise NotImplementedError

    def path_of(self, identity: str) -> pathlib.Path:
        """Return the on-disk location of ``identity``'s contents."""

        raise NotImplementedError


class MemoryStore(ArtifactStore):
    """A store defined by an explicit mapping of artifacts."""

    def __init__(self, infos: list[ArtifactInfo], *, content_root: pathlib.Path | None = None) -> None:
        """Initialize the store.

        :param infos: Known artifacts.
        :param content_root: Directory holding ``<store name>`` trees, if contents are needed.
        """

        self._infos: dict[str, ArtifactInfo] = {i.identity: i for i in infos}
        self._content_root: pathlib.Path | None = content_root

    def resolve(self, identity: str) -> ArtifactInfo:
        info: ArtifactInfo | None = self._infos.get(identity)
        if info is None:
            raise ArtifactNotFound(identity)
        return info

    def path_of(self, identity: str) -> pathlib.Path:
        if self._content_root is None:
            raise StoreError(f"Store has no content root; cannot read {identity}")
        return self._content_root / pathlib.PurePosixPath(identity).name


class RegistrationStore(MemoryStore):
    """A store backed by an existing registration file and a directory of store paths."""

    @classmethod
    def from_file(cls, *, registration_path: pathlib.Path, content_root: pathlib.Path) -> "RegistrationStore":
        """Load a registration file.

        :param registration_path: ``nix-store --load-db`` formatted file.
        :param content_root: Directory holding the store paths' contents by store name.
        :returns: Store.
        """

        entries: list[RegistrationEntry] = read_registration(registration_path)
        infos: list[ArtifactInfo] = [
            ArtifactInfo(
                identity=e.path,
                nar_size=e.nar_size,
                nar_hash=e.nar_hash,
                deriver=e.deriver,
                references=e.references,
            )
            for e in entries
        ]
        return cls(infos, content_root=content_root)


class NixStore(ArtifactStore):
    """Queries a local Nix installation with ``nix path-info``."""

    def __init__(
        self,
        *,
        nix_bin: str = "nix",
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the store.

        :param nix_bin: ``nix`` executable to invoke.
        :param logger: Optional logger for debug output.
        """

        self._nix_bin: str = nix_bin
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("nix_relocator")
        self._cache: dict[str, ArtifactInfo] = {}

    def resolve(self, identity: str) -> ArtifactInfo:
        cached: ArtifactInfo | None = self._cache.get(identity)
        if cached is not None:
            return cached

        out: str = self._nix(["path-info", "--json", identity], identity=identity)
        try:
            doc = json.loads(out)
        except json.JSONDecodeError as e:
            raise StoreQueryError(f"nix path-info returned invalid JSON for {identity}") from e

        info: ArtifactInfo = _artifact_info_from_path_info(doc, identity=identity)
        self._cache[identity] = info
        return info

    def path_of(self, identity: str) -> pathlib.Path:
        return pathlib.Path(identity)

    def _nix(self, args: list[str], *, identity: str) -> str:
        """Invoke ``nix`` and return its stdout.

        :param args: Arguments after the ``nix`` executable.
        :param identity: Store path being queried (for error messages).
        :returns: Captured stdout.
        :raises ArtifactNotFound: If nix reports the path as invalid.
        :raises StoreQueryError: If the invocation fails otherwise.
        """

        cmd: list[str] = [self._nix_bin, "--extra-experimental-features", "nix-command", *args]
        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"nix-relocator: running nix: {' '.join(cmd)}")

        try:
            proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise StoreQueryError(f"nix executable not found: {self._nix_bin}") from e

        if proc.returncode != 0:
            stderr: str = proc.stderr.strip()
            if "is not valid" in stderr or "does not exist" in stderr:
                raise ArtifactNotFound(identity)
            raise StoreQueryError(f"nix invocation failed (exit={proc.returncode}): {' '.join(cmd)}\n{stderr}")
        return proc.stdout


def _artifact_info_from_path_info(doc: object, *, identity: str) -> ArtifactInfo:
    """Convert ``nix path-info --json`` output for one path into :class:`ArtifactInfo`.

    Older Nix releases print a list of objects carrying a ``path`` key; newer ones
    print a mapping keyed by store path (with ``null`` for invalid paths).

    :param doc: Decoded JSON document.
    :param identity: Store path that was queried.
    :returns: Artifact info.
    :raises ArtifactNotFound: If the path is reported invalid.
    :raises StoreQueryError: If the document has an unexpected shape.
    """

    record: object = None
    if isinstance(doc, list):
        for item in doc:
            if isinstance(item, dict) and item.get("path") == identity:
                record = item
                break
    elif isinstance(doc, dict):
        record = doc.get(identity)
    else:
        raise StoreQueryError(f"Unexpected nix path-info output for {identity}")

    if record is None:
        raise ArtifactNotFound(identity)
    if not isinstance(record, dict) or record.get("valid", True) is False:
        raise ArtifactNotFound(identity)

    try:
        nar_size: int = int(record["narSize"])
        nar_hash: str = str(record["narHash"])
    except (KeyError, TypeError, ValueError) as e:
        raise StoreQueryError(f"nix path-info output for {identity} lacks narSize/narHash") from e

    store_dir: str = os.path.dirname(identity)
    refs: list[str] = []
    for r in record.get("references") or []:
        ref: str = str(r)
        # Some Nix versions print bare store names instead of full paths.
        if ref.startswith("/") is False:
            ref = f"{store_dir}/{ref}"
        refs.append(ref)

    deriver_raw = record.get("deriver")
    deriver: str | None = str(deriver_raw) if deriver_raw else None
    if deriver is not None and deriver.startswith("/") is False:
        deriver = f"{store_dir}/{deriver}"

    return ArtifactInfo(
        identity=identity,
        nar_size=nar_size,
        nar_hash=nar_hash,
        deriver=deriver,
        references=tuple(sorted(refs)),
    )
