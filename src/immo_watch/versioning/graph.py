"""Undirected version graph over listing ids."""

from collections import defaultdict, deque
from collections.abc import Iterable

from immo_watch.models import EdgeKind, VersionEdge


class VersionGraph:
    """Adjacency index of ``previous_version_id`` edges and manual links.

    The graph is treated as undirected and may contain cycles (users can close
    a loop with manual links), so every traversal carries a visited set.
    """

    def __init__(self, edges: Iterable[VersionEdge] = ()) -> None:
        self._adjacency: dict[int, set[int]] = defaultdict(set)
        self._edge_kinds: dict[frozenset[int], set[EdgeKind]] = defaultdict(set)
        for edge in edges:
            self.add_edge(edge)

    def __contains__(self, listing_id: object) -> bool:
        return listing_id in self._adjacency

    def __len__(self) -> int:
        return len(self._adjacency)

    @property
    def nodes(self) -> set[int]:
        return set(self._adjacency)

    def add_node(self, listing_id: int) -> None:
        self._adjacency.setdefault(listing_id, set())

    def add_edge(self, edge: VersionEdge) -> None:
        if edge.source == edge.target:
            self.add_node(edge.source)
            return
        self._adjacency[edge.source].add(edge.target)
        self._adjacency[edge.target].add(edge.source)
        self._edge_kinds[frozenset((edge.source, edge.target))].add(edge.kind)

    def neighbors(self, listing_id: int) -> set[int]:
        return set(self._adjacency.get(listing_id, ()))

    def edge_kinds(self, listing_id1: int, listing_id2: int) -> set[EdgeKind]:
        """How two listings are directly connected; empty when they are not."""
        return set(self._edge_kinds.get(frozenset((listing_id1, listing_id2)), ()))

    def component(self, start: int, *, blocked: Iterable[int] = ()) -> set[int]:
        """All listings reachable from ``start`` without passing through ``blocked``.

        Breadth-first, bounded by a visited set, so cycles terminate.
        """
        blocked_ids = set(blocked)
        if start in blocked_ids:
            return set()
        visited = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for neighbor in self._adjacency.get(current, ()):
                if neighbor in visited or neighbor in blocked_ids:
                    continue
                visited.add(neighbor)
                queue.append(neighbor)
        return visited

    def components(self) -> list[set[int]]:
        """Connected components, each a set of listing ids."""
        seen: set[int] = set()
        result: list[set[int]] = []
        for node in sorted(self._adjacency):
            if node in seen:
                continue
            members = self.component(node)
            seen |= members
            result.append(members)
        return result
