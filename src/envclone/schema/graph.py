"""
Dependency graph for ordering schema changes.

Nodes are schema changes (differences or migration operations). Each node
provides one qualified object name and requires zero or more others; a
requirement that no node in the graph provides refers to an object that
already exists and imposes no ordering.

The order is a topological sort (graphlib) in which, among the nodes ready
at any step, the one with the lowest base rank goes first, then the one
added first. The result is stable for identical inputs.
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from graphlib import CycleError, TopologicalSorter
from typing import Generic, TypeVar

from envclone.exceptions import SchemaDiffError

T = TypeVar("T")


@dataclass(frozen=True)
class _Node(Generic[T]):
    item: T
    provides: str
    requires: tuple[str, ...]
    rank: int


class DependencyGraph(Generic[T]):
    """
    Orders items so that providers always precede the items requiring them.

    Example:
        >>> graph: DependencyGraph[str] = DependencyGraph()
        >>> graph.add("create trigger", provides="public.t.trg", requires=["public.t"], rank=4)
        >>> graph.add("create table", provides="public.t", rank=1)
        >>> graph.sort()
        ['create table', 'create trigger']
    """

    def __init__(self) -> None:
        self._nodes: list[_Node[T]] = []

    def __len__(self) -> int:
        return len(self._nodes)

    def add(
        self,
        item: T,
        *,
        provides: str,
        requires: Iterable[str] = (),
        rank: int = 0,
    ) -> None:
        """
        Add an item.

        Args:
            item: The payload returned by sort().
            provides: Qualified name of the object the item creates or changes.
            requires: Qualified names that must be handled first.
            rank: Tie-breaker among items whose requirements are satisfied.
        """
        self._nodes.append(
            _Node(item=item, provides=provides, requires=tuple(requires), rank=rank)
        )

    def predecessors(self) -> dict[int, set[int]]:
        """Map each node index to the indexes of the nodes it must follow."""
        providers: dict[str, list[int]] = defaultdict(list)
        for index, node in enumerate(self._nodes):
            providers[node.provides].append(index)

        graph: dict[int, set[int]] = {}
        for index, node in enumerate(self._nodes):
            graph[index] = {
                provider
                for name in node.requires
                for provider in providers.get(name, ())
                if provider != index
            }
        return graph

    def sort(self) -> list[T]:
        """
        Return the items in dependency order.

        Raises:
            SchemaDiffError: If the requirements form a cycle.
        """
        sorter = TopologicalSorter(self.predecessors())
        try:
            sorter.prepare()
        except CycleError as e:
            cycle = [self._nodes[index].provides for index in e.args[1]]
            raise SchemaDiffError(
                f"Dependency cycle between schema objects: {' -> '.join(cycle)}"
            ) from e

        ready: list[tuple[int, int]] = []
        for index in sorter.get_ready():
            heapq.heappush(ready, (self._nodes[index].rank, index))

        ordered: list[T] = []
        while ready:
            _, index = heapq.heappop(ready)
            ordered.append(self._nodes[index].item)
            sorter.done(index)
            for follower in sorter.get_ready():
                heapq.heappush(ready, (self._nodes[follower].rank, follower))
        return ordered
