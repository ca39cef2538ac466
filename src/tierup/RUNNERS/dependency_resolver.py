"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import Dict, FrozenSet, List, Mapping, Set

from ..errors import CyclicDependency, UnknownDependency
from ..MODELS.service_spec import ServiceSpec

StartBatch = FrozenSet[str]


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.

    The graph is held as index lists and sorted with Kahn's algorithm, so
    arbitrarily deep dependency chains never touch the recursion limit.
    """
    def resolve_batches(self, services: Mapping[str, ServiceSpec]) -> List[StartBatch]:
        """
        Groups services into batches that can be started concurrently.

        Every service lands in a later batch than all of its dependencies.

        :param services: Service definitions keyed by name.
        :return: Start batches, first to last.
        :raises UnknownDependency: If a dependency names a service that is not defined.
        :raises CyclicDependency: If the dependencies form a cycle.
        """
        names = list(services)
        index = {name: i for i, name in enumerate(names)}

        requires: List[List[int]] = [[] for _ in names]
        dependents: List[List[int]] = [[] for _ in names]
        pending = [0] * len(names)

        for name, svc in services.items():
            i = index[name]
            for dep in svc.dependency_names():
                if dep not in index:
                    raise UnknownDependency(name, dep)
                j = index[dep]
                requires[i].append(j)
                dependents[j].append(i)
                pending[i] += 1

        batches: List[StartBatch] = []
        ready = [i for i, count in enumerate(pending) if count == 0]
        resolved = 0
        while ready:
            batches.append(frozenset(names[i] for i in ready))
            resolved += len(ready)
            next_ready = []
            for i in ready:
                for j in dependents[i]:
                    pending[j] -= 1
                    if pending[j] == 0:
                        next_ready.append(j)
            ready = next_ready

        if resolved < len(names):
            unresolved = [i for i, count in enumerate(pending) if count > 0]
            cycle = self._find_cycle(unresolved[0], requires, pending)
            raise CyclicDependency([names[i] for i in cycle], (names[i] for i in unresolved))

        return batches

    def resolve_order(self, services: Mapping[str, ServiceSpec]) -> List[str]:
        """
        Determines a single start order, sorted by name within each batch.

        :param services: Service definitions keyed by name.
        :return: Service names in the order they should be started.
        """
        return [name for batch in self.resolve_batches(services) for name in sorted(batch)]

    def shutdown_order(self, services: Mapping[str, ServiceSpec]) -> List[str]:
        """
        Determines the stop order: dependents before their dependencies.
        """
        return list(reversed(self.resolve_order(services)))

    def dependents_of(self, services: Mapping[str, ServiceSpec], name: str) -> Set[str]:
        """
        Finds every service that directly or transitively depends on ``name``.

        :param services: Service definitions keyed by name.
        :param name: The service whose dependents are wanted.
        :return: Names of the dependents, excluding ``name`` itself.
        """
        reverse: Dict[str, List[str]] = {n: [] for n in services}
        for svc_name, svc in services.items():
            for dep in svc.dependency_names():
                if dep in reverse:
                    reverse[dep].append(svc_name)

        found: Set[str] = set()
        stack = list(reverse.get(name, []))
        while stack:
            current = stack.pop()
            if current in found or current == name:
                continue
            found.add(current)
            stack.extend(reverse[current])
        return found

    @staticmethod
    def _find_cycle(start: int, requires: List[List[int]], pending: List[int]) -> List[int]:
        """
        Walks unresolved dependencies from ``start`` until a node repeats.

        Every unresolved node has at least one unresolved dependency, so the walk
        always closes a cycle.
        """
        position: Dict[int, int] = {}
        path: List[int] = []
        current = start
        while current not in position:
            position[current] = len(path)
            path.append(current)
            current = next(dep for dep in requires[current] if pending[dep] > 0)
        return path[position[current]:] + [current]
