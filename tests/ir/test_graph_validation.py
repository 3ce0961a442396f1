from __future__ import annotations

import pytest

from inferflow.errors import CycleDetected, InvalidInput
from inferflow.ir import Graph, InletId, OutletId, TensorFact
from inferflow.ops import Add, Const, Identity, Placeholder, Relu


def chain(n: int) -> tuple[Graph, list[int]]:
    g = Graph()
    ids = [g.add_node(Placeholder("F32", [2]), name="x")]
    for i in range(n):
        ids.append(g.add_node(Relu(), [ids[-1]], name=f"r{i}"))
    return g, ids


def test_add_node_assigns_dense_ids_and_names() -> None:
    g, ids = chain(2)
    assert ids == [0, 1, 2]
    assert len(g) == 3
    assert g.node_by_name("r1").id == 2
    assert g.node(1).inputs == [OutletId(0, 0)]
    anon = g.add_node(Const(1.0))
    assert g.node(anon).name == "Const_3"


def test_add_node_rejects_bad_references() -> None:
    g, _ = chain(1)
    with pytest.raises(InvalidInput) as exc:
        g.add_node(Relu(), [7])
    assert exc.value.code == "EINVALID"
    with pytest.raises(InvalidInput):
        g.add_node(Relu(), [(0, 1)])
    with pytest.raises(InvalidInput):
        g.add_node(Relu(), [0], name="x")
    assert len(g) == 2


def test_add_edge_wires_later_inputs() -> None:
    g = Graph()
    a = g.add_node(Const(1.0), name="a")
    b = g.add_node(Const(2.0), name="b")
    s = g.add_node(Add(), [a], name="s")
    g.add_edge(b, InletId(s, 1))
    assert g.node(s).inputs == [OutletId(a, 0), OutletId(b, 0)]
    g.add_edge(b, (s, 0))
    assert g.node(s).inputs == [OutletId(b, 0), OutletId(b, 0)]
    with pytest.raises(InvalidInput):
        g.add_edge(a, (s, 5))


def test_edge_closing_a_cycle_is_rejected_without_mutation() -> None:
    g, ids = chain(3)
    before = [list(n.inputs) for n in g.nodes]
    with pytest.raises(CycleDetected) as exc:
        g.add_edge(ids[-1], (ids[1], 0))
    assert exc.value.code == "ECYCLE"
    with pytest.raises(CycleDetected):
        g.add_edge(ids[1], (ids[1], 1))
    assert len(g) == len(ids)
    assert [list(n.inputs) for n in g.nodes] == before
    g.validate()


def test_designated_inputs_and_outputs() -> None:
    g, ids = chain(1)
    fact = g.designate_input(ids[0])
    assert fact == TensorFact.of("F32", [2])
    assert g.inputs == [0]
    assert g.designate_output(ids[1]) == OutletId(1, 0)
    g.designate_output(ids[1])
    assert g.outputs == [OutletId(1, 0)]
    with pytest.raises(InvalidInput):
        g.designate_input(ids[1])
    with pytest.raises(InvalidInput):
        g.designate_output(ids[1], slot=1)


def test_edge_into_a_graph_input_is_rejected_without_mutation() -> None:
    g = Graph()
    c = g.add_node(Const([1.0, 2.0]), name="c")
    p = g.add_node(Placeholder("F64", [2]), name="p")
    g.designate_input(p)
    with pytest.raises(InvalidInput) as exc:
        g.add_edge(c, InletId(p, 0))
    assert exc.value.node_name == "p"
    assert g.node(p).inputs == []
    g.validate()


def test_designate_input_with_explicit_fact() -> None:
    g = Graph()
    x = g.add_node(Placeholder(), name="x")
    assert g.designate_input(x, TensorFact.of("I32", ["S"])) == TensorFact.of("I32", ["S"])
    assert g.input_fact(x).datatype.name == "I32"


def test_validate_checks_arity() -> None:
    g = Graph()
    a = g.add_node(Const(1.0), name="a")
    g.add_node(Add(), [a], name="half_add")
    with pytest.raises(InvalidInput) as exc:
        g.validate()
    assert exc.value.node_name == "half_add"


def test_consumers_and_summary() -> None:
    g = Graph("demo")
    a = g.add_node(Const(1.0), name="a")
    i = g.add_node(Identity(), [a], name="i")
    s = g.add_node(Add(), [a, i], name="s")
    assert g.consumers(a) == [InletId(i, 0), InletId(s, 0)]
    text = g.summary()
    assert text.startswith("Graph(name='demo'")
    assert "#2 s: Add(0:0, 1:0)" in text
