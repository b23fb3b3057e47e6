import hashlib
import pathlib
import struct

import pytest

from nix_relocator.registration import RegistrationEntry, write_registration
from nix_relocator.store import ArtifactInfo, MemoryStore
from nix_relocator.target import TargetConfig, resolve_target_config


SOURCE_STORE = "/nix/store"
TRAILER = b"\xcc" * 32


def elf_bytes(
    interp: str | None,
    *,
    capacity: int | None = None,
    elf_class: int = 64,
    byteorder: str = "<",
    e_type: int = 2,
) -> bytes:
    """Build a minimal ELF image with one PT_INTERP program header.

    The interpreter field directly follows the program header table and is
    followed by :data:`TRAILER`, so tests can check that nothing else changes.
    ``interp=None`` produces an image without program headers (static binary).
    """

    ident: bytes = b"\x7fELF" + bytes([2 if elf_class == 64 else 1, 1 if byteorder == "<" else 2, 1]) + b"\x00" * 9

    if elf_class == 64:
        ehsize, phentsize = 64, 56
    else:
        ehsize, phentsize = 52, 32

    phnum: int = 0 if interp is None else 1
    field: bytes = b""
    if interp is not None:
        raw: bytes = interp.encode()
        cap: int = capacity if capacity is not None else len(raw) + 1
        field = raw + b"\x00" * (cap - len(raw))
    interp_offset: int = ehsize + phentsize * phnum

    if elf_class == 64:
        header: bytes = struct.pack(
            byteorder + "16sHHIQQQIHHHHHH",
            ident, e_type, 183, 1, 0, ehsize, 0, 0, ehsize, phentsize, phnum, 0, 0, 0,
        )
        phdr: bytes = struct.pack(
            byteorder + "IIQQQQQQ",
            3, 4, interp_offset, interp_offset, interp_offset, len(field), len(field), 1,
        )
    else:
        header = struct.pack(
            byteorder + "16sHHIIIIIHHHHHH",
            ident, e_type, 40, 1, 0, ehsize, 0, 0, ehsize, phentsize, phnum, 0, 0, 0,
        )
        phdr = struct.pack(
            byteorder + "IIIIIIII",
            3, interp_offset, interp_offset, interp_offset, len(field), len(field), 4, 1,
        )

    if interp is None:
        return header + TRAILER
    return header + phdr + field + TRAILER


def write_elf(path: pathlib.Path, interp: str | None, **kwargs) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(elf_bytes(interp, **kwargs))
    path.chmod(0o755)
    return path


class FakeStore:
    """A directory of store path contents plus the metadata describing them."""

    def __init__(self, content_root: pathlib.Path, store_dir: str = SOURCE_STORE) -> None:
        self.content_root: pathlib.Path = content_root
        self.store_dir: str = store_dir
        self.infos: list[ArtifactInfo] = []
        content_root.mkdir(parents=True, exist_ok=True)

    def identity(self, name: str) -> str:
        digest: str = hashlib.sha256(name.encode()).hexdigest()[:32]
        return f"{self.store_dir}/{digest}-{name}"

    def add(
        self,
        name: str,
        *,
        files: dict[str, bytes] | None = None,
        refs: tuple[str, ...] = (),
        contents: bool = True,
    ) -> str:
        """Register a store path and (optionally) create its contents."""

        identity: str = self.identity(name)
        if contents is True:
            root: pathlib.Path = self.content_root / identity.rsplit("/", 1)[1]
            root.mkdir(parents=True, exist_ok=True)
            for rel, data in (files or {"share/doc/README": name.encode()}).items():
                p: pathlib.Path = root / rel
                p.parent.mkdir(parents=True, exist_ok=True)
                p.write_bytes(data)
        self.infos.append(
            ArtifactInfo(
                identity=identity,
                nar_size=1024 * (len(self.infos) + 1),
                nar_hash="sha256:" + hashlib.sha256(identity.encode()).hexdigest(),
                deriver=identity + ".drv",
                references=tuple(sorted(refs)),
            )
        )
        return identity

    def path(self, identity: str) -> pathlib.Path:
        return self.content_root / identity.rsplit("/", 1)[1]

    def store(self) -> MemoryStore:
        return MemoryStore(self.infos, content_root=self.content_root)

    def write_registration(self, path: pathlib.Path) -> pathlib.Path:
        write_registration(
            path,
            [
                RegistrationEntry(
                    path=i.identity,
                    nar_hash=i.nar_hash,
                    nar_size=i.nar_size,
                    deriver=i.deriver,
                    references=i.references,
                )
                for i in self.infos
            ],
        )
        return path


@pytest.fixture
def fake_store(tmp_path: pathlib.Path) -> FakeStore:
    return FakeStore(tmp_path / "host-store")


@pytest.fixture
def termux_target() -> TargetConfig:
    return resolve_target_config(arch="aarch64")


def add_toolchain(fake_store: FakeStore) -> tuple[str, str]:
    """Add a libc with a dynamic loader and an app linked against it.

    :returns: ``(libc identity, app identity)``.
    """

    libc: str = fake_store.add("glibc-2.40", files={"lib/ld-linux-aarch64.so.1": b"loader"})
    loader: str = f"{libc}/lib/ld-linux-aarch64.so.1"
    app: str = fake_store.add(
        "hello-2.12",
        files={
            "bin/hello": elf_bytes(loader, capacity=128),
            "share/doc/README": b"hello",
        },
        refs=(libc,),
    )
    return libc, app
