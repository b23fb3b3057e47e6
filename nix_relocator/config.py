"""Build configuration.

The configuration file is YAML. Relative paths resolve against the directory
holding the file. Example::

    prefix: /data/data/com.termux/files/nix
    source_store: /nix/store
    output_dir: result
    architectures:
      aarch64:
        roots:
          - /nix/store/<hash>-nix-2.31.0
          - /nix/store/<hash>-bash-interactive-5.2
        # Optional: resolve the closure from an exported registration file
        # instead of querying a local Nix installation.
        registration: closure-aarch64/registration
        content_root: /nix/store
        # Optional: bootstrap stages to include, newest first.
        stages:
          head: stdenv-final
          chain:
            stdenv-final: {artifact: /nix/store/<hash>-stdenv-linux, previous: stage4}
            stage4: {artifact: /nix/store/<hash>-bootstrap-tools, raw: true}
"""

from dataclasses import dataclass
import logging
import pathlib
from typing import Any

import yaml

from nix_relocator.closure import Stage, walk_stage_chain
from nix_relocator.store import ArtifactStore, NixStore, RegistrationStore
from nix_relocator.target import (
    DEFAULT_PREFIX,
    DEFAULT_SOURCE_STORE,
    TargetConfig,
    TargetResolutionError,
    resolve_target_config,
)


class ConfigError(ValueError):
    """Raised when the configuration file is missing or invalid."""


@dataclass(frozen=True, slots=True)
class ArchitectureConfig:
    """Per-architecture build inputs.

    :ivar target: Resolved target.
    :ivar roots: Explicit root store paths.
    :ivar registration: Exported registration file to resolve against, or ``None``
        to query the local Nix installation.
    :ivar content_root: Directory holding the store paths' contents.
    :ivar stage_head: Newest bootstrap stage, if any.
    :ivar stages: Bootstrap stages by name.
    """

    target: TargetConfig
    roots: tuple[str, ...]
    registration: pathlib.Path | None
    content_root: pathlib.Path
    stage_head: str | None
    stages: dict[str, Stage]

    def all_roots(self) -> list[str]:
        """Explicit roots plus every bootstrap stage output, deduplicated, in order."""

        out: list[str] = list(self.roots)
        if self.stage_head is not None:
            for stage in walk_stage_chain(self.stage_head, self.stages):
                out.append(stage.artifact)
        return list(dict.fromkeys(out))

    def open_store(self, *, logger: logging.Logger | None = None) -> ArtifactStore:
        """Create the store the closure is resolved against."""

        if self.registration is not None:
            return RegistrationStore.from_file(
                registration_path=self.registration,
                content_root=self.content_root,
            )
        return NixStore(logger=logger)


@dataclass(frozen=True, slots=True)
class RelocatorConfig:
    """Top-level configuration.

    :ivar output_dir: Directory archives are written to.
    :ivar architectures: Per-architecture inputs keyed by normalized architecture.
    """

    output_dir: pathlib.Path
    architectures: dict[str, ArchitectureConfig]


def load_yaml(path: pathlib.Path) -> Any:
    """Parse a YAML file with ``yaml.safe_load``.

    :param path: YAML file.
    :returns: Parsed document.
    :raises yaml.YAMLError: If the file is not valid YAML.
    """

    return yaml.safe_load(path.read_text(encoding="utf-8"))


def load_config(path: pathlib.Path) -> RelocatorConfig:
    """Load and validate a configuration file.

    :param path: YAML file.
    :returns: Configuration.
    :raises ConfigError: If the file is missing or invalid.
    """

    if path.is_file() is False:
        raise ConfigError(f"Configuration file does not exist: {path}")
    try:
        doc: Any = load_yaml(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(doc, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    base_dir: pathlib.Path = path.resolve().parent
    prefix: str = _opt_str(doc, "prefix", DEFAULT_PREFIX)
    source_store: str = _opt_str(doc, "source_store", DEFAULT_SOURCE_STORE)
    output_dir: pathlib.Path = _resolve_path(base_dir, _opt_str(doc, "output_dir", "result"))

    arch_docs: Any = doc.get("architectures")
    if not isinstance(arch_docs, dict) or len(arch_docs) == 0:
        raise ConfigError(f"{path}: 'architectures' must be a non-empty mapping")

    architectures: dict[str, ArchitectureConfig] = {}
    for arch_key, arch_doc in arch_docs.items():
        key_path: str = f"architectures.{arch_key}"
        arch_cfg: ArchitectureConfig = _parse_architecture(
            arch_doc,
            arch=str(arch_key),
            key_path=key_path,
            prefix=prefix,
            source_store=source_store,
            base_dir=base_dir,
        )
        if arch_cfg.target.arch in architectures:
            raise ConfigError(f"{key_path}: duplicate architecture {arch_cfg.target.arch!r}")
        architectures[arch_cfg.target.arch] = arch_cfg

    return RelocatorConfig(output_dir=output_dir, architectures=architectures)


def _parse_architecture(
    doc: Any,
    *,
    arch: str,
    key_path: str,
    prefix: str,
    source_store: str,
    base_dir: pathlib.Path,
) -> ArchitectureConfig:
    """Parse one ``architectures.<arch>`` block."""

    if not isinstance(doc, dict):
        raise ConfigError(f"{key_path}: must be a mapping")

    try:
        target: TargetConfig = resolve_target_config(arch=arch, prefix=prefix, source_store=source_store)
    except TargetResolutionError as e:
        raise ConfigError(f"{key_path}: {e}") from e

    roots_doc: Any = doc.get("roots", [])
    if not isinstance(roots_doc, list) or not all(isinstance(r, str) for r in roots_doc):
        raise ConfigError(f"{key_path}.roots: must be a list of store paths")
    for r in roots_doc:
        if r.startswith(target.source_store + "/") is False:
            raise ConfigError(f"{key_path}.roots: {r!r} is not inside {target.source_store}")

    registration: pathlib.Path | None = None
    if doc.get("registration") is not None:
        registration = _resolve_path(base_dir, _opt_str(doc, "registration", "", key_path=key_path))
    content_root: pathlib.Path = _resolve_path(
        base_dir,
        _opt_str(doc, "content_root", target.source_store, key_path=key_path),
    )

    stage_head: str | None = None
    stages: dict[str, Stage] = {}
    stages_doc: Any = doc.get("stages")
    if stages_doc is not None:
        stage_head, stages = _parse_stages(stages_doc, key_path=f"{key_path}.stages")

    if len(roots_doc) == 0 and stage_head is None:
        raise ConfigError(f"{key_path}: at least one root or a stage chain is required")

    return ArchitectureConfig(
        target=target,
        roots=tuple(roots_doc),
        registration=registration,
        content_root=content_root,
        stage_head=stage_head,
        stages=stages,
    )


def _parse_stages(doc: Any, *, key_path: str) -> tuple[str, dict[str, Stage]]:
    """Parse a ``stages`` block into ``(head, stages)``."""

    if not isinstance(doc, dict):
        raise ConfigError(f"{key_path}: must be a mapping")
    head: Any = doc.get("head")
    chain: Any = doc.get("chain")
    if not isinstance(head, str) or len(head) == 0:
        raise ConfigError(f"{key_path}.head: must be a stage name")
    if not isinstance(chain, dict) or len(chain) == 0:
        raise ConfigError(f"{key_path}.chain: must be a non-empty mapping")

    stages: dict[str, Stage] = {}
    for name, stage_doc in chain.items():
        stage_path: str = f"{key_path}.chain.{name}"
        if not isinstance(stage_doc, dict):
            raise ConfigError(f"{stage_path}: must be a mapping")
        artifact: Any = stage_doc.get("artifact")
        previous: Any = stage_doc.get("previous")
        raw: Any = stage_doc.get("raw", False)
        if not isinstance(artifact, str) or len(artifact) == 0:
            raise ConfigError(f"{stage_path}.artifact: must be a store path")
        if previous is not None and not isinstance(previous, str):
            raise ConfigError(f"{stage_path}.previous: must be a stage name")
        if not isinstance(raw, bool):
            raise ConfigError(f"{stage_path}.raw: must be a boolean")
        stages[str(name)] = Stage(name=str(name), artifact=artifact, previous=previous, raw=raw)

    if head not in stages:
        raise ConfigError(f"{key_path}.head: unknown stage {head!r}")
    return head, stages


def _opt_str(doc: dict, key: str, default: str, *, key_path: str | None = None) -> str:
    """Read an optional string value."""

    value: Any = doc.get(key, default)
    if not isinstance(value, str) or len(value) == 0:
        where: str = f"{key_path}.{key}" if key_path is not None else key
        raise ConfigError(f"{where}: must be a non-empty string")
    return value


def _resolve_path(base_dir: pathlib.Path, value: str) -> pathlib.Path:
    """Resolve ``value`` against ``base_dir`` unless it is absolute."""

    p: pathlib.Path = pathlib.Path(value)
    if p.is_absolute() is False:
        p = base_dir / p
    return p
