"""
Stitch graph: which images overlap, and how they chain to a reference frame
"""

import heapq
import logging
from collections import defaultdict, deque
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np

from panostitch.core.types import PairEstimate

logger = logging.getLogger(__name__)


class StitchGraph:
    """Undirected graph with images as nodes and reliable pairs as edges"""

    def __init__(self, nodes: Iterable[int]):
        self.nodes: List[int] = sorted(set(nodes))
        self.adjacency: Dict[int, List[int]] = {n: [] for n in self.nodes}
        self.edges: Dict[Tuple[int, int], PairEstimate] = {}

    @classmethod
    def build(cls, nodes: Iterable[int], pair_estimates: Sequence[PairEstimate],
              min_inliers: int) -> 'StitchGraph':
        """
        Build connectivity graph from pair estimates

        An edge is added iff the pair transform is valid and has at least
        min_inliers inliers.
        """
        graph = cls(nodes)
        for estimate in pair_estimates:
            i, j = estimate.pair
            transform = estimate.transform
            if i not in graph.adjacency or j not in graph.adjacency:
                continue
            if not transform.valid or transform.inlier_count < min_inliers:
                continue
            graph.add_edge(estimate)

        # Log connectivity stats
        connected = sum(1 for n in graph.nodes if graph.adjacency[n])
        logger.info(f"Graph: {connected}/{len(graph.nodes)} images connected, "
                    f"{len(graph.edges)} edges")
        return graph

    def add_edge(self, estimate: PairEstimate):
        i, j = estimate.pair
        key = (min(i, j), max(i, j))
        if key in self.edges:
            return
        self.edges[key] = estimate
        self.adjacency[i].append(j)
        self.adjacency[j].append(i)
        self.adjacency[i].sort()
        self.adjacency[j].sort()

    def edge(self, i: int, j: int) -> PairEstimate:
        return self.edges[(min(i, j), max(i, j))]

    def weight(self, i: int, j: int) -> int:
        return self.edge(i, j).transform.inlier_count

    def relative(self, source: int, target: int) -> np.ndarray:
        """Matrix mapping image `source` coordinates into image `target`"""
        estimate = self.edge(source, target)
        if estimate.pair == (source, target):
            return estimate.transform.matrix
        return estimate.transform.inverse()

    def components(self) -> List[List[int]]:
        """Connected components, largest first, then by smallest index"""
        seen = set()
        components = []
        for start in self.nodes:
            if start in seen:
                continue
            seen.add(start)
            queue = deque([start])
            component = []
            while queue:
                node = queue.popleft()
                component.append(node)
                for neighbor in self.adjacency[node]:
                    if neighbor not in seen:
                        seen.add(neighbor)
                        queue.append(neighbor)
            components.append(sorted(component))
        components.sort(key=lambda c: (-len(c), c[0]))
        return components

    def component_edges(self, component: Sequence[int]) -> List[PairEstimate]:
        members = set(component)
        return [e for (i, j), e in sorted(self.edges.items()) if i in members and j in members]

    def reference_for(self, component: Sequence[int]) -> int:
        """Node with the highest total inlier count; ties go to the lowest index"""
        totals = {n: sum(self.weight(n, m) for m in self.adjacency[n]) for n in component}
        return min(component, key=lambda n: (-totals[n], n))

    def spanning_tree(self, component: Sequence[int], root: int) -> List[Tuple[int, int]]:
        """
        Maximum-inlier spanning tree using Prim's algorithm

        Returns:
            Tree edges as (parent, child) in the order they were added
        """
        members = set(component)
        in_tree = {root}
        tree = []

        # Priority queue: (-inliers, from_node, to_node)
        candidates = []
        for neighbor in self.adjacency[root]:
            if neighbor in members:
                heapq.heappush(candidates, (-self.weight(root, neighbor), root, neighbor))

        while candidates and len(in_tree) < len(members):
            _, from_node, to_node = heapq.heappop(candidates)
            if to_node in in_tree:
                continue
            in_tree.add(to_node)
            tree.append((from_node, to_node))
            for neighbor in self.adjacency[to_node]:
                if neighbor in members and neighbor not in in_tree:
                    heapq.heappush(candidates, (-self.weight(to_node, neighbor), to_node, neighbor))

        logger.debug(f"Spanning tree from {root}: {len(tree)} edges for {len(in_tree)} images")
        return tree

    def chain_transforms(self, component: Sequence[int], reference: int) -> Dict[int, np.ndarray]:
        """
        Image -> reference transforms by composing pairwise transforms along
        the spanning tree

        Each transform maps from the image's local coordinates to the
        reference coordinate system.
        """
        children = defaultdict(list)
        for parent, child in self.spanning_tree(component, reference):
            children[parent].append(child)

        # Reference image has identity transform
        transforms = {reference: np.eye(3, dtype=np.float64)}
        queue = deque([reference])
        while queue:
            current = queue.popleft()
            for child in children[current]:
                child_to_global = transforms[current] @ self.relative(child, current)
                transforms[child] = child_to_global / child_to_global[2, 2]
                queue.append(child)

                tx, ty = transforms[child][0, 2], transforms[child][1, 2]
                logger.debug(f"Image {child}: position=({tx:.1f}, {ty:.1f}) via {current}")
        return transforms
