from __future__ import annotations

import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper

from inferflow.errors import InvalidInput
from inferflow.ir import DataType, OutletId, analyse
from inferflow.parsers import OnnxParser
from inferflow.runtime import Plan


def _model(nodes, inputs, outputs, initializer=(), opset: int = 13) -> onnx.ModelProto:
    graph = helper.make_graph(list(nodes), "test_graph", inputs, outputs, initializer=list(initializer))
    return helper.make_model(graph, opset_imports=[helper.make_opsetid("", opset)])


def test_parse_add_graph_with_initializer_consts() -> None:
    a = helper.make_tensor("a", TensorProto.FLOAT, [2, 2], [1.0, -2.0, 3.0, -4.0])
    b = helper.make_tensor("b", TensorProto.FLOAT, [2, 2], [5.0, 6.0, 7.0, 8.0])
    c_info = helper.make_tensor_value_info("c", TensorProto.FLOAT, [2, 2])
    node = helper.make_node("Add", inputs=["a", "b"], outputs=["c"], name="add")
    model = _model([node], [], [c_info], initializer=[a, b])

    g = OnnxParser().parse(model)
    assert [n.op_type for n in g.nodes] == ["Const", "Const", "Add"]
    assert g.inputs == []
    add = g.node_by_name("add")
    assert g.outputs == [OutletId(add.id, 0)]
    assert g.node_by_name("a").op.value.to_list() == [[1.0, -2.0], [3.0, -4.0]]

    analysis = analyse(g)
    out = analysis.fact(OutletId(add.id, 0))
    assert out.datatype is DataType.F32
    assert out.value is not None
    assert out.value.to_list() == [[6.0, 4.0], [10.0, 4.0]]


def test_parse_with_graph_input_and_output() -> None:
    x_info = helper.make_tensor_value_info("x", TensorProto.FLOAT, [1, 3, 4, 4])
    y_info = helper.make_tensor_value_info("y", TensorProto.FLOAT, [1, 3, 4, 4])
    node = helper.make_node("Relu", inputs=["x"], outputs=["y"])
    model = _model([node], [x_info], [y_info])

    g = OnnxParser().parse(model)
    x = g.node_by_name("x")
    assert g.inputs == [x.id]
    assert str(g.input_fact(x.id)) == "F32[1,3,4,4]"
    relu = g.nodes[-1]
    assert relu.op_type == "Relu"
    assert relu.name == "Relu_0"

    data = np.linspace(-1, 1, 48, dtype=np.float32).reshape(1, 3, 4, 4)
    (y,) = Plan(g).run({"x": data})
    np.testing.assert_array_equal(y.array, np.maximum(data, 0))


def test_symbolic_batch_axis_becomes_streaming() -> None:
    x_info = helper.make_tensor_value_info("x", TensorProto.FLOAT, ["N", 4, "W"])
    y_info = helper.make_tensor_value_info("y", TensorProto.FLOAT, None)
    node = helper.make_node("Neg", ["x"], ["y"])
    g = OnnxParser().parse(_model([node], [x_info], [y_info]))
    x = g.node_by_name("x").id
    fact = g.input_fact(x)
    assert fact.shape is not None
    assert fact.shape[0].is_streaming
    assert fact.shape[1].value == 4
    assert fact.shape[2].is_unknown


def test_parse_reshape_with_shape_initializer() -> None:
    x_info = helper.make_tensor_value_info("x", TensorProto.FLOAT, [2, 3, 4])
    y_info = helper.make_tensor_value_info("y", TensorProto.FLOAT, [4, 6, 1])
    s = helper.make_tensor("s", TensorProto.INT64, [3], [-1, 6, 1])
    node = helper.make_node("Reshape", inputs=["x", "s"], outputs=["y"], name="reshape")
    g = OnnxParser().parse(_model([node], [x_info], [y_info], initializer=[s]))

    reshape = g.node_by_name("reshape")
    assert len(reshape.inputs) == 2
    analysis = analyse(g)
    assert str(analysis.fact(OutletId(reshape.id, 0))) == "F32[4,6,1]"
    (y,) = Plan(g, analysis=analysis).run({"x": np.arange(24, dtype=np.float32).reshape(2, 3, 4)})
    assert y.shape == (4, 6, 1)


def test_axes_inputs_become_attributes() -> None:
    x_info = helper.make_tensor_value_info("x", TensorProto.FLOAT, [2, 3])
    y_info = helper.make_tensor_value_info("y", TensorProto.FLOAT, [2, 1])
    axes = helper.make_tensor("axes", TensorProto.INT64, [1], [1])
    node = helper.make_node("ReduceSum", ["x", "axes"], ["y"], keepdims=1, name="sum")
    g = OnnxParser().parse(_model([node], [x_info], [y_info], initializer=[axes]))
    reduce = g.node_by_name("sum")
    assert len(reduce.inputs) == 1
    (y,) = Plan(g).run({"x": [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]]})
    assert y.to_list() == [[6.0], [15.0]]


def test_nodes_may_reference_later_outputs() -> None:
    x_info = helper.make_tensor_value_info("x", TensorProto.FLOAT, [2])
    y_info = helper.make_tensor_value_info("y", TensorProto.FLOAT, [2])
    relu = helper.make_node("Relu", ["c"], ["y"], name="relu")
    neg = helper.make_node("Neg", ["x"], ["c"], name="neg")
    g = OnnxParser().parse(_model([relu, neg], [x_info], [y_info]))
    assert g.node_by_name("relu").inputs == [OutletId(g.node_by_name("neg").id, 0)]
    assert Plan(g).run({"x": [1.0, -3.0]})[0].to_list() == [0.0, 3.0]


def test_loads_from_bytes_and_path(tmp_path) -> None:
    x_info = helper.make_tensor_value_info("x", TensorProto.FLOAT, [2])
    y_info = helper.make_tensor_value_info("y", TensorProto.FLOAT, [2])
    model = _model([helper.make_node("Abs", ["x"], ["y"])], [x_info], [y_info])
    path = tmp_path / "abs.onnx"
    onnx.save(model, str(path))

    for source in (model.SerializeToString(), str(path), path):
        g = OnnxParser().parse(source)
        assert Plan(g).run({"x": [-1.5, 2.0]})[0].to_list() == [1.5, 2.0]
    with pytest.raises(TypeError):
        OnnxParser().parse(42)


def test_unsupported_ops_and_attributes_are_rejected() -> None:
    x_info = helper.make_tensor_value_info("x", TensorProto.FLOAT, [1, 1, 4, 4])
    y_info = helper.make_tensor_value_info("y", TensorProto.FLOAT, None)

    lrn = helper.make_node("LRN", ["x"], ["y"], size=3)
    with pytest.raises(InvalidInput, match="LRN"):
        OnnxParser().parse(_model([lrn], [x_info], [y_info]))

    pool = helper.make_node("MaxPool", ["x"], ["y"], kernel_shape=[2, 2], ceil_mode=1)
    with pytest.raises(InvalidInput, match="ceil_mode"):
        OnnxParser().parse(_model([pool], [x_info], [y_info]))

    dangling = helper.make_node("Relu", ["missing"], ["y"])
    with pytest.raises(InvalidInput, match="missing"):
        OnnxParser().parse(_model([dangling], [x_info], [y_info]))


def test_parse_maxpool_attrs() -> None:
    x_info = helper.make_tensor_value_info("x", TensorProto.FLOAT, [1, 3, 32, 32])
    y_info = helper.make_tensor_value_info("y", TensorProto.FLOAT, [1, 3, 16, 16])
    node = helper.make_node("MaxPool", ["x"], ["y"], kernel_shape=[2, 2], strides=[2, 2], name="pool")
    g = OnnxParser().parse(_model([node], [x_info], [y_info]))
    pool = g.node_by_name("pool")
    assert pool.op_type == "MaxPool"
    assert pool.op.attributes()["kernel_shape"] == [2, 2]
    assert pool.op.attributes()["strides"] == [2, 2]
    assert str(analyse(g).fact(OutletId(pool.id, 0))) == "F32[1,3,16,16]"


def test_mod_accepts_default_fmod() -> None:
    a_info = helper.make_tensor_value_info("a", TensorProto.INT64, [2])
    b_info = helper.make_tensor_value_info("b", TensorProto.INT64, [2])
    y_info = helper.make_tensor_value_info("y", TensorProto.INT64, [2])
    node = helper.make_node("Mod", ["a", "b"], ["y"], fmod=0)
    g = OnnxParser().parse(_model([node], [a_info, b_info], [y_info]))
    assert g.nodes[-1].op_type == "Rem"
    assert Plan(g).run({"a": [-7, 7], "b": [3, -3]})[0].to_list() == [2, -2]

    c_style = helper.make_node("Mod", ["a", "b"], ["y"], fmod=1)
    with pytest.raises(InvalidInput, match="fmod"):
        OnnxParser().parse(_model([c_style], [a_info, b_info], [y_info]))


def test_variadic_max_min_and_sum() -> None:
    infos = [helper.make_tensor_value_info(n, TensorProto.FLOAT, [3]) for n in ("a", "b", "c")]
    outs = [helper.make_tensor_value_info(n, TensorProto.FLOAT, [3]) for n in ("hi", "lo", "total", "same")]
    nodes = [
        helper.make_node("Max", ["a", "b", "c"], ["hi"], name="hi"),
        helper.make_node("Min", ["a", "b", "c"], ["lo"], name="lo"),
        helper.make_node("Sum", ["a", "b", "c"], ["total"], name="total"),
        helper.make_node("Max", ["a"], ["same"], name="same"),
    ]
    g = OnnxParser().parse(_model(nodes, infos, outs))
    assert g.node_by_name("hi/1").op_type == "Maximum"
    assert g.node_by_name("hi").inputs[0] == OutletId(g.node_by_name("hi/1").id, 0)
    assert g.node_by_name("lo").op_type == "Minimum"
    assert g.node_by_name("total").op_type == "AddN"
    assert g.node_by_name("same").op_type == "Identity"

    hi, lo, total, same = Plan(g, analysis=analyse(g)).run(
        {"a": [1.0, 5.0, 3.0], "b": [4.0, 2.0, 6.0], "c": [0.0, 9.0, -1.0]}
    )
    assert hi.to_list() == [4.0, 9.0, 6.0]
    assert lo.to_list() == [0.0, 2.0, -1.0]
    assert total.to_list() == [5.0, 16.0, 8.0]
    assert same.to_list() == [1.0, 5.0, 3.0]
