"""Target resolution helpers.

This module is intentionally small and "pragmatic":

- It accepts an architecture name (e.g. ``aarch64``), a common alias
  (e.g. ``arm64``), a Nix system double (e.g. ``aarch64-linux``) or a
  Rust-like target triple (e.g. ``aarch64-unknown-linux-gnu``).
- It produces the prefix layout (store/state/config directories) that the
  relocated installation will live under.
"""

from dataclasses import dataclass
import pathlib


class TargetResolutionError(ValueError):
    """Raised when a target spec cannot be resolved to a supported architecture."""


SUPPORTED_ARCHES: tuple[str, ...] = ("aarch64", "armv7l", "x86_64", "i686")

DEFAULT_PREFIX: str = "/data/data/com.termux/files/nix"
DEFAULT_SOURCE_STORE: str = "/nix/store"


@dataclass(frozen=True, slots=True)
class TargetConfig:
    """Relocation target configuration.

    :ivar arch: Normalized CPU architecture (one of :data:`SUPPORTED_ARCHES`).
    :ivar system: Nix system double (e.g. ``aarch64-linux``).
    :ivar prefix: Destination prefix the installation is rooted at.
    :ivar source_store: Store directory the artifacts were built for.
    """

    arch: str
    system: str
    prefix: str
    source_store: str

    @property
    def store_dir(self) -> str:
        """Destination store directory."""

        return f"{self.prefix}/store"

    @property
    def state_dir(self) -> str:
        """Destination state directory (holds ``nix/db``, ``nix/profiles``...)."""

        return f"{self.prefix}/var"

    @property
    def conf_dir(self) -> str:
        """Destination configuration directory."""

        return f"{self.prefix}/etc"

    @property
    def archive_name(self) -> str:
        """Base file name (without suffix) of the archive built for this target."""

        return f"nix-termux-{self.arch}"


def resolve_target_config(
    *,
    arch: str,
    prefix: str = DEFAULT_PREFIX,
    source_store: str = DEFAULT_SOURCE_STORE,
) -> TargetConfig:
    """Resolve user-supplied target arguments into a :class:`~TargetConfig`.

    :param arch: Architecture name, alias, Nix system double or target triple.
    :param prefix: Absolute destination prefix.
    :param source_store: Absolute store directory the closure was built for.
    :returns: Resolved target config.
    :raises TargetResolutionError: If the config cannot be resolved.
    """

    norm_arch: str = normalize_arch(_arch_from_target_spec(arch))
    if norm_arch not in SUPPORTED_ARCHES:
        raise TargetResolutionError(
            f"Unsupported architecture {arch!r}; expected one of {', '.join(SUPPORTED_ARCHES)}."
        )

    return TargetConfig(
        arch=norm_arch,
        system=f"{norm_arch}-linux",
        prefix=_normalize_abs_dir(prefix, what="prefix"),
        source_store=_normalize_abs_dir(source_store, what="source store"),
    )


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


def _arch_from_target_spec(target: str) -> str:
    """Extract the architecture component of a target spec.

    :param target: Architecture, Nix system double or target triple.
    :returns: Raw (not yet normalized) architecture component.
    :raises TargetResolutionError: If the spec names a non-Linux OS.
    """

    parts: list[str] = target.strip().split("-")
    if len(parts) == 1:
        return parts[0]

    # Nix system doubles are "<arch>-<os>"; triples are "<arch>-<vendor>-<os>[-<env>]".
    os_part: str = parts[1] if len(parts) == 2 else parts[2]
    if os_part != "linux":
        raise TargetResolutionError(
            f"Unrecognized OS in target spec {target!r} (os={os_part!r}); only linux is supported."
        )
    return parts[0]


def _normalize_abs_dir(value: str, *, what: str) -> str:
    """Validate an absolute POSIX directory and strip trailing slashes.

    :param value: Directory path.
    :param what: Human-readable name used in error messages.
    :returns: Normalized directory path.
    :raises TargetResolutionError: If the path is not absolute.
    """

    p = pathlib.PurePosixPath(value)
    if p.is_absolute() is False:
        raise TargetResolutionError(f"The {what} must be an absolute path: {value!r}")
    if ".." in p.parts:
        raise TargetResolutionError(f"The {what} must not contain '..': {value!r}")
    return str(p)
