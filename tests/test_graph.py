"""Unittests for the graph module."""

import numpy as np
import pytest

from .context import graph, interfaces


def get_hypothesis(name, match_confidence, explained_support):
    hypothesis = interfaces.Hypothesis(model=name)
    hypothesis.match_confidence = match_confidence
    hypothesis.explained_support = set(explained_support)
    return hypothesis


class TestConflictGraph:

    def test_edges(self):
        conflict_graph = graph.ConflictGraph(3)
        conflict_graph.insert_edge(0, 1)
        conflict_graph.insert_edge(1, 0)
        assert conflict_graph.get_neighbors(0) == {1}
        assert conflict_graph.get_neighbors(1) == {0}
        assert conflict_graph.get_neighbors(2) == set()
        assert conflict_graph.get_number_of_edges() == 1
        with pytest.raises(ValueError):
            conflict_graph.insert_edge(2, 2)

    def test_partition_chain(self):
        # 0 - 1 - 2 with the middle node being the fittest.
        conflict_graph = graph.ConflictGraph(3)
        for node, fitness in enumerate([0.5, 0.9, 0.4]):
            conflict_graph.set_fitness(node, fitness)
        conflict_graph.insert_edge(0, 1)
        conflict_graph.insert_edge(1, 2)
        on_nodes, off_nodes = conflict_graph.compute_maximal_on_off_partition()
        assert on_nodes == [1]
        assert sorted(off_nodes) == [0, 2]

    def test_partition_is_maximal_independent_set(self):
        conflict_graph = graph.ConflictGraph(6)
        for node, fitness in enumerate([0.3, 0.8, 0.6, 0.7, 0.2, 0.9]):
            conflict_graph.set_fitness(node, fitness)
        for edge in [(0, 1), (1, 2), (2, 3), (3, 4), (4, 5)]:
            conflict_graph.insert_edge(*edge)
        on_nodes, off_nodes = conflict_graph.compute_maximal_on_off_partition()
        assert on_nodes == [5, 1, 3]
        assert sorted(on_nodes + off_nodes) == list(range(6))
        for node in on_nodes:
            assert not conflict_graph.get_neighbors(node) & set(on_nodes)
        for node in off_nodes:
            assert conflict_graph.get_neighbors(node) & set(on_nodes)

    def test_partition_ties_keep_node_order(self):
        conflict_graph = graph.ConflictGraph(2)
        conflict_graph.set_fitness(0, 0.5)
        conflict_graph.set_fitness(1, 0.5)
        conflict_graph.insert_edge(0, 1)
        assert conflict_graph.compute_maximal_on_off_partition() == ([0], [1])

    def test_partition_without_edges(self):
        conflict_graph = graph.ConflictGraph(3)
        on_nodes, off_nodes = conflict_graph.compute_maximal_on_off_partition()
        assert sorted(on_nodes) == [0, 1, 2]
        assert off_nodes == []


class TestBuildConflictGraph:

    def test_build_conflict_graph(self):
        hypotheses = [get_hypothesis("a", 0.9, range(0, 100)),
                      get_hypothesis("b", 0.5, range(90, 150)),
                      get_hypothesis("c", 0.4, range(200, 260)),
                      get_hypothesis("d", 0.3, [149] + list(range(300, 400)))]
        conflict_graph = graph.build_conflict_graph(hypotheses, intersection_fraction=0.03)
        assert conflict_graph.get_number_of_nodes() == 4
        assert conflict_graph.get_fitness(0) == pytest.approx(0.9)
        # 10 shared leaves out of 60.
        assert conflict_graph.get_neighbors(0) == {1}
        # 1 shared leaf out of 60 is below the intersection fraction.
        assert conflict_graph.get_neighbors(3) == set()
        assert conflict_graph.get_neighbors(2) == set()

        on_nodes, off_nodes = conflict_graph.compute_maximal_on_off_partition()
        assert on_nodes == [0, 2, 3]
        assert off_nodes == [1]

    def test_build_conflict_graph_trivial(self):
        assert graph.build_conflict_graph([], intersection_fraction=0.03).get_number_of_nodes() == 0
        conflict_graph = graph.build_conflict_graph([get_hypothesis("a", 0.9, range(10))], intersection_fraction=0.03)
        assert conflict_graph.compute_maximal_on_off_partition() == ([0], [])

    def test_build_conflict_graph_number_of_edges(self):
        hypotheses = [get_hypothesis("a", 0.9, range(0, 100)),
                      get_hypothesis("b", 0.5, range(90, 150)),
                      get_hypothesis("c", 0.4, range(95, 130))]
        conflict_graph = graph.build_conflict_graph(hypotheses, intersection_fraction=0.03)
        assert conflict_graph.get_neighbors(2) == {0, 1}
        assert conflict_graph.get_number_of_edges() == 3

    def test_build_conflict_graph_explicit_edges(self):
        hypotheses = [get_hypothesis("a", 0.9, range(0, 10)), get_hypothesis("b", 0.5, range(10, 20))]
        conflict_graph = graph.build_conflict_graph(hypotheses, intersection_fraction=0.03)
        assert conflict_graph.get_number_of_edges() == 0
        conflict_graph.insert_edge(0, 1)
        assert conflict_graph.get_neighbors(1) == {0}
        assert conflict_graph.get_number_of_edges() == 1
        assert conflict_graph.compute_maximal_on_off_partition() == ([0], [1])

    def test_build_conflict_graph_many_hypotheses(self):
        # Four groups of 5000 hypotheses. Hypotheses within a group share many leaves, groups share none.
        rng = np.random.default_rng(0)
        num_groups, group_size, leaves_per_group = 4, 5000, 175
        fitness = rng.uniform(0.2, 1.0, size=num_groups * group_size)
        hypotheses = list()
        for group in range(num_groups):
            supports = np.argsort(rng.random((group_size, leaves_per_group)), axis=1)[:, :100]
            supports += group * leaves_per_group
            for support in supports:
                hypotheses.append(get_hypothesis("a", fitness[len(hypotheses)], support.tolist()))

        conflict_graph = graph.build_conflict_graph(hypotheses, intersection_fraction=0.03)
        assert conflict_graph.get_number_of_nodes() == num_groups * group_size
        on_nodes, off_nodes = conflict_graph.compute_maximal_on_off_partition()

        best = [group * group_size + int(np.argmax(fitness[group * group_size:(group + 1) * group_size]))
                for group in range(num_groups)]
        assert on_nodes == sorted(best, key=lambda node: -fitness[node])
        assert len(off_nodes) == num_groups * group_size - num_groups
        assert sorted(on_nodes + off_nodes) == list(range(num_groups * group_size))
