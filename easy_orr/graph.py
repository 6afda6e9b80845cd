"""Conflict graph over hypotheses.

Two verified hypotheses conflict if they explain largely the same part of the scene. Only one of them can be right.

Classes:
    ConflictGraph: Undirected graph with node fitness values and a greedy on/off partition.
    SupportConflictGraph: Conflict graph whose edges follow from the overlap of the explained supports.

Functions:
    build_conflict_graph: Builds the conflict graph of verified hypotheses.
"""
import itertools
import logging
import time
from typing import Iterable, List, Set, Tuple

import numpy as np
from scipy.sparse import csr_array

from .interfaces import Hypothesis

logger = logging.getLogger(__name__)


class ConflictGraph:
    """Undirected graph with node fitness values.

    Nodes are the integers 0, ..., `num_nodes` - 1.
    """

    def __init__(self, num_nodes: int) -> None:
        self._fitness = np.zeros(num_nodes)
        self._neighbors: List[Set[int]] = [set() for _ in range(num_nodes)]

    def get_number_of_nodes(self) -> int:
        return len(self._neighbors)

    def get_number_of_edges(self) -> int:
        return sum(len(neighbors) for neighbors in self._neighbors) // 2

    def set_fitness(self, node: int, value: float) -> None:
        self._fitness[node] = value

    def get_fitness(self, node: int) -> float:
        return float(self._fitness[node])

    def insert_edge(self, node_1: int, node_2: int) -> None:
        if node_1 == node_2:
            raise ValueError(f"Self-loops are not allowed (node {node_1}).")
        self._neighbors[node_1].add(node_2)
        self._neighbors[node_2].add(node_1)

    def get_neighbors(self, node: int) -> Set[int]:
        return self._neighbors[node]

    def compute_maximal_on_off_partition(self) -> Tuple[List[int], List[int]]:
        """Greedily partitions the nodes into a maximal independent set ("on") and the rest ("off").

        Nodes are visited by decreasing fitness. Equal fitness values keep the node order. An undecided node is
        switched on and all of its undecided neighbors off.

        Returns:
            The on nodes and the off nodes, both in the order they were decided.
        """
        is_decided = np.zeros(self.get_number_of_nodes(), dtype=bool)
        on_nodes, off_nodes = list(), list()
        for node in np.argsort(-self._fitness, kind="stable").tolist():
            if is_decided[node]:
                continue
            is_decided[node] = True
            on_nodes.append(node)
            for neighbor in sorted(self.get_neighbors(node)):
                if not is_decided[neighbor]:
                    is_decided[neighbor] = True
                    off_nodes.append(neighbor)
        return on_nodes, off_nodes


class SupportConflictGraph(ConflictGraph):
    """Conflict graph whose edges follow from the overlap of the explained supports of its nodes.

    Two nodes are connected if the number of leaves in both supports, divided by the size of the smaller support,
    exceeds `intersection_fraction`. These edges are not stored: the neighbors of a node are computed from the sparse
    node-leaf incidence matrix when asked for. Memory thus grows with the total support size instead of the number of
    node pairs. Edges inserted with `insert_edge` are added on top.

    Attributes:
        intersection_fraction: The maximal tolerated support overlap.
    """

    def __init__(self, supports: List[Iterable[int]], intersection_fraction: float) -> None:
        super().__init__(len(supports))
        self.intersection_fraction = intersection_fraction
        sizes = [len(support) for support in supports]
        indptr = np.concatenate([[0], np.cumsum(sizes, dtype=np.int64)])
        indices = np.fromiter(itertools.chain.from_iterable(supports), dtype=np.int64, count=int(indptr[-1]))
        num_leaves = int(indices.max()) + 1 if len(indices) > 0 else 1
        self._incidence = csr_array((np.ones(len(indices), dtype=np.int32), indices, indptr),
                                    shape=(len(supports), num_leaves))
        self._incidence_t = self._incidence.T.tocsr()
        self._support_sizes = np.asarray(sizes, dtype=np.int64)

    def _get_conflicts(self, start: int, stop: int) -> np.ndarray:
        """Returns the (stop - start) x num_nodes conflict mask of the nodes `start`, ..., `stop` - 1."""
        shared = (self._incidence[start:stop] @ self._incidence_t).toarray()
        smaller_support = np.minimum(self._support_sizes[start:stop, None], self._support_sizes[None, :])
        conflicts = shared / np.maximum(smaller_support, 1) > self.intersection_fraction
        conflicts[np.arange(stop - start), np.arange(start, stop)] = False
        return conflicts

    def get_neighbors(self, node: int) -> Set[int]:
        neighbors = set(np.flatnonzero(self._get_conflicts(node, node + 1)[0]).tolist())
        return neighbors | self._neighbors[node]

    def get_number_of_edges(self) -> int:
        num_nodes = self.get_number_of_nodes()
        block_size = max(1, 2 ** 22 // max(num_nodes, 1))
        num_edges = 0
        for start in range(0, num_nodes, block_size):
            stop = min(start + block_size, num_nodes)
            conflicts = self._get_conflicts(start, stop)
            for row, node in enumerate(range(start, stop)):
                conflicts[row, list(self._neighbors[node])] = True
            num_edges += int(np.count_nonzero(conflicts))
        return num_edges // 2


def build_conflict_graph(hypotheses: List[Hypothesis], intersection_fraction: float) -> SupportConflictGraph:
    """Builds the conflict graph of verified hypotheses.

    Node i is hypothesis i with its match confidence as fitness. Two nodes are connected if the number of scene leaves
    both hypotheses explain, divided by the size of the smaller support, exceeds `intersection_fraction`.

    Args:
        hypotheses: The verified hypotheses.
        intersection_fraction: The maximal tolerated support overlap.

    Returns:
        The conflict graph.
    """
    start = time.time()
    graph = SupportConflictGraph([hypothesis.explained_support for hypothesis in hypotheses],
                                 intersection_fraction=intersection_fraction)
    for node, hypothesis in enumerate(hypotheses):
        graph.set_fitness(node, hypothesis.match_confidence)
    logger.debug(f"Built conflict graph with {graph.get_number_of_nodes()} nodes in {time.time() - start}s.")
    return graph
