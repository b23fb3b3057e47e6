"""Closure collection.

Computes the transitive dependency closure of a set of root artifacts and the
registration record for it, in an order where every artifact's references come
before the artifact itself.
"""

from dataclasses import dataclass
import logging
from typing import Iterable, Iterator, Mapping

from nix_relocator.registration import RegistrationEntry
from nix_relocator.store import ArtifactInfo, ArtifactNotFound, ArtifactStore


class ClosureError(RuntimeError):
    """Raised when a closure cannot be computed."""


class UnresolvedDependency(ClosureError):
    """Raised when an artifact references an identity the store cannot resolve."""

    def __init__(self, identity: str, *, referrer: str | None) -> None:
        if referrer is None:
            msg: str = f"Root artifact cannot be resolved: {identity}"
        else:
            msg = f"Unresolved dependency {identity} (referenced by {referrer})"
        super().__init__(msg)
        self.identity: str = identity
        self.referrer: str | None = referrer


class CycleDetected(ClosureError):
    """Raised when the dependency relation is not acyclic."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__("Dependency cycle detected: " + " -> ".join(cycle))
        self.cycle: list[str] = cycle


@dataclass(frozen=True, slots=True)
class Closure:
    """A transitively complete set of artifacts.

    :ivar roots: Explicitly requested artifacts.
    :ivar registration: One entry per member, dependencies first.
    """

    roots: frozenset[str]
    registration: tuple[RegistrationEntry, ...]

    @property
    def artifacts(self) -> frozenset[str]:
        """Identities of every member."""

        return frozenset(e.path for e in self.registration)

    @property
    def total_size(self) -> int:
        """Sum of the members' NAR sizes."""

        return sum(e.nar_size for e in self.registration)


_IN_PROGRESS: int = 1
_DONE: int = 2


def compute_closure(
    roots: Iterable[str],
    store: ArtifactStore,
    *,
    logger: logging.Logger | None = None,
) -> Closure:
    """Compute the closure of ``roots``.

    The traversal is an iterative depth-first search with three-colour marking:
    unvisited identities are absent from ``state``, identities on the current
    path are ``_IN_PROGRESS`` and finished ones are ``_DONE``. Emitting an
    identity when it is finished yields a topological order. Roots and
    references are visited in sorted order so the result is deterministic.

    :param roots: Root artifact identities.
    :param store: Store to resolve identities against.
    :param logger: Optional logger for debug output.
    :returns: Closure.
    :raises UnresolvedDependency: If any identity cannot be resolved.
    :raises CycleDetected: If the references contain a cycle.
    """

    if logger is None:
        logger = logging.getLogger("nix_relocator")

    root_set: frozenset[str] = frozenset(roots)
    state: dict[str, int] = {}
    infos: dict[str, ArtifactInfo] = {}
    order: list[str] = []

    def resolve(identity: str, referrer: str | None) -> ArtifactInfo:
        try:
            info: ArtifactInfo = store.resolve(identity)
        except ArtifactNotFound:
            raise UnresolvedDependency(identity, referrer=referrer) from None
        infos[identity] = info
        return info

    def deps_of(info: ArtifactInfo) -> Iterator[str]:
        # A store path referring to itself is not a cycle.
        return iter(sorted(r for r in set(info.references) if r != info.identity))

    for root in sorted(root_set):
        if root in state:
            continue

        state[root] = _IN_PROGRESS
        stack: list[tuple[str, Iterator[str]]] = [(root, deps_of(resolve(root, None)))]
        while len(stack) > 0:
            node, pending = stack[-1]
            descended: bool = False
            for dep in pending:
                dep_state: int | None = state.get(dep)
                if dep_state == _DONE:
                    continue
                if dep_state == _IN_PROGRESS:
                    path: list[str] = [n for n, _ in stack]
                    raise CycleDetected([*path[path.index(dep) :], dep])

                state[dep] = _IN_PROGRESS
                stack.append((dep, deps_of(resolve(dep, node))))
                descended = True
                break

            if descended is False:
                stack.pop()
                state[node] = _DONE
                order.append(node)

    registration: tuple[RegistrationEntry, ...] = tuple(
        RegistrationEntry(
            path=identity,
            nar_hash=infos[identity].nar_hash,
            nar_size=infos[identity].nar_size,
            deriver=infos[identity].deriver,
            references=tuple(sorted(set(infos[identity].references))),
            is_root=identity in root_set,
        )
        for identity in order
    )

    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"nix-relocator: closure of {len(root_set)} roots has {len(registration)} paths")
    return Closure(roots=root_set, registration=registration)


def verify_topological_order(entries: Iterable[RegistrationEntry]) -> None:
    """Check that every entry's references appear at or before the entry.

    :param entries: Registration entries in file order.
    :raises ClosureError: On duplicates, forward references or dangling references.
    """

    entry_list: list[RegistrationEntry] = list(entries)
    members: set[str] = {e.path for e in entry_list}
    seen: set[str] = set()
    for e in entry_list:
        if e.path in seen:
            raise ClosureError(f"Duplicate registration entry: {e.path}")
        for ref in e.references:
            if ref == e.path or ref in seen:
                continue
            if ref in members:
                raise ClosureError(f"Registration entry {e.path} precedes its dependency {ref}")
            raise ClosureError(f"Registration entry {e.path} references {ref}, which is not in the closure")
        seen.add(e.path)


@dataclass(frozen=True, slots=True)
class Stage:
    """One stage of a bootstrap chain.

    :ivar name: Stage name.
    :ivar artifact: Store path of the stage's output.
    :ivar previous: Name of the stage this one was built with, if any.
    :ivar raw: Whether this is the terminal (raw bootstrap tools) stage.
    """

    name: str
    artifact: str
    previous: str | None = None
    raw: bool = False


def walk_stage_chain(head: str, stages: Mapping[str, Stage]) -> list[Stage]:
    """Collect a bootstrap stage chain, newest stage first.

    The walk stops after a stage marked ``raw`` or one without a predecessor.

    :param head: Name of the newest stage.
    :param stages: All known stages by name.
    :returns: The stages from ``head`` back to the terminal stage.
    :raises ClosureError: If a stage names an unknown predecessor.
    :raises CycleDetected: If the chain loops back on itself.
    """

    chain: list[Stage] = []
    seen: set[str] = set()
    current: str | None = head
    while current is not None:
        stage: Stage | None = stages.get(current)
        if stage is None:
            raise ClosureError(f"Unknown bootstrap stage: {current!r}")
        if stage.name in seen:
            raise CycleDetected([s.name for s in chain] + [stage.name])
        seen.add(stage.name)
        chain.append(stage)
        if stage.raw is True:
            break
        current = stage.previous
    return chain
