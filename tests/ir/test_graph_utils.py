from __future__ import annotations

import random

import pytest

from inferflow.errors import CycleDetected
from inferflow.ir import Graph, InletId, OutletId, build_consumer_map, build_producer_map
from inferflow.ops import Add, Const, Relu


def diamond() -> Graph:
    # a -> b, a -> c, (b, c) -> d, plus an unrelated e
    g = Graph()
    a = g.add_node(Const(1.0), name="a")
    b = g.add_node(Relu(), [a], name="b")
    c = g.add_node(Relu(), [a], name="c")
    g.add_node(Add(), [b, c], name="d")
    g.add_node(Const(5.0), name="e")
    return g


def test_producer_and_consumer_maps() -> None:
    g = diamond()
    assert build_producer_map(g) == {"a": 0, "b": 1, "c": 2, "d": 3, "e": 4}
    consumers = build_consumer_map(g)
    assert consumers[OutletId(0, 0)] == [InletId(1, 0), InletId(2, 0)]
    assert consumers[OutletId(1, 0)] == [InletId(3, 0)]
    assert OutletId(4, 0) not in consumers


def test_topo_order_restricts_to_reachable_nodes() -> None:
    g = diamond()
    assert g.topo_order([OutletId(3, 0)]) == [0, 1, 2, 3]
    assert g.topo_order([(1, 0)]) == [0, 1]
    assert g.topo_order([4]) == [4]
    assert g.topo_order() == [0, 1, 2, 3, 4]


def test_topo_order_breaks_ties_by_id() -> None:
    g = Graph()
    late = g.add_node(Const(1.0), name="late_root")
    early = g.add_node(Const(2.0), name="other_root")
    g.add_node(Add(), [early, late], name="sum")
    assert g.topo_order([2]) == [0, 1, 2]


def test_topo_order_boundary_stops_walk() -> None:
    g = diamond()
    assert g.topo_order([3], boundary=[1, 2]) == [1, 2, 3]


def test_random_dags_order_producers_first() -> None:
    rng = random.Random(7)
    for _ in range(25):
        g = Graph()
        ids = [g.add_node(Const(float(i)), name=f"c{i}") for i in range(3)]
        for i in range(20):
            picks = [rng.choice(ids), rng.choice(ids)]
            ids.append(g.add_node(Add(), picks, name=f"n{i}"))
        targets = [rng.choice(ids) for _ in range(3)]
        order = g.topo_order(targets)
        assert len(order) == len(set(order))
        assert set(order) == g.reachable(targets)
        position = {n: i for i, n in enumerate(order)}
        for n in order:
            for src in g.node(n).inputs:
                assert position[src.node] < position[n]


def test_cycle_check_on_validate() -> None:
    g = diamond()
    # bypass add_edge to plant a back edge and make sure validation catches it
    g.node(1).inputs[0] = OutletId(3, 0)
    with pytest.raises(CycleDetected):
        g.validate()
    with pytest.raises(CycleDetected):
        g.topo_order([3])
