"""Dependency graph utilities.

Provides the tiered publish plan for a workspace. Packages must be published
in dependency order so that when package A depends on package B, B is
already on the registry when A arrives. Packages in the same tier have no
dependency relationship and may publish concurrently.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType

from .errors import GraphCycleError, UnknownDependencyError
from .models import PackageDescriptor


class DependencyGraph:
    """Immutable DAG over workspace packages.

    Build with DependencyGraph.build(); the constructor assumes its input
    was already validated. Safe to read from many threads.
    """

    def __init__(self, packages: Mapping[str, PackageDescriptor]) -> None:
        self._packages = MappingProxyType(dict(packages))
        self._tiers = self._compute_tiers()
        self._tier_of = {
            name: index for index, tier in enumerate(self._tiers) for name in tier
        }

    @classmethod
    def build(
        cls, descriptors: Iterable[PackageDescriptor] | Mapping[str, PackageDescriptor]
    ) -> DependencyGraph:
        """Validate descriptors and build the graph.

        Raises:
            UnknownDependencyError: If an internal dep names no package.
            GraphCycleError: If the dependencies form a cycle.
        """
        if isinstance(descriptors, Mapping):
            packages = dict(descriptors)
        else:
            packages = {d.name: d for d in descriptors}
        _check_known(packages)
        _check_acyclic(packages)
        return cls(packages)

    def validate(self) -> None:
        """Re-check that every dependency resolves and the graph is acyclic."""
        _check_known(self._packages)
        _check_acyclic(self._packages)

    @property
    def packages(self) -> Mapping[str, PackageDescriptor]:
        return self._packages

    def tiers(self) -> list[list[str]]:
        """Package names grouped by tier, ascending, names sorted per tier."""
        return [list(tier) for tier in self._tiers]

    def tier_of(self, name: str) -> int:
        return self._tier_of[name]

    def order(self) -> list[str]:
        """Flattened publish order (dependencies first)."""
        return [name for tier in self._tiers for name in tier]

    def dependents(self, name: str) -> set[str]:
        """Every package that depends on ``name``, directly or transitively."""
        found: set[str] = set()
        queue = [name]
        while queue:
            node = queue.pop()
            for other, info in self._packages.items():
                if node in info.internal_deps and other not in found:
                    found.add(other)
                    queue.append(other)
        return found

    def __len__(self) -> int:
        return len(self._packages)

    def _compute_tiers(self) -> list[tuple[str, ...]]:
        # Kahn's algorithm, one level at a time: tier(n) = 1 + max(tier(dep))
        in_degree = {n: len(info.internal_deps) for n, info in self._packages.items()}
        reverse_deps: dict[str, list[str]] = {n: [] for n in self._packages}
        for name, info in self._packages.items():
            for dep in info.internal_deps:
                reverse_deps[dep].append(name)

        tiers: list[tuple[str, ...]] = []
        current = sorted(n for n, d in in_degree.items() if d == 0)
        while current:
            tiers.append(tuple(current))
            ready: list[str] = []
            for node in current:
                for dependent in reverse_deps[node]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        ready.append(dependent)
            current = sorted(ready)
        return tiers


def _check_known(packages: Mapping[str, PackageDescriptor]) -> None:
    for name in sorted(packages):
        for dep in sorted(packages[name].internal_deps):
            if dep not in packages:
                raise UnknownDependencyError(name, dep)


def _check_acyclic(packages: Mapping[str, PackageDescriptor]) -> None:
    """Iterative DFS; raises GraphCycleError naming every package on the cycle."""
    done: set[str] = set()
    for start in sorted(packages):
        if start in done:
            continue
        path: list[str] = [start]
        on_path = {start}
        stack = [iter(sorted(packages[start].internal_deps))]
        while stack:
            dep = next(stack[-1], None)
            if dep is None:
                stack.pop()
                done.add(path[-1])
                on_path.discard(path.pop())
                continue
            if dep in on_path:
                raise GraphCycleError(_rotate(path[path.index(dep):]))
            if dep in done or dep not in packages:
                continue
            path.append(dep)
            on_path.add(dep)
            stack.append(iter(sorted(packages[dep].internal_deps)))


def _rotate(cycle: list[str]) -> list[str]:
    """Start the cycle at its smallest name so reports are deterministic."""
    pivot = cycle.index(min(cycle))
    return cycle[pivot:] + cycle[:pivot]
