from __future__ import annotations

import pytest

from inferflow.errors import AnalysisError, TypeMismatch
from inferflow.ir import Graph, TensorFact, analyse
from inferflow.ops import AvgPool, BatchNorm, Conv, MaxPool, Placeholder, Softmax


def infer_output(op, *shapes) -> TensorFact:
    g = Graph()
    ids = []
    for i, shape in enumerate(shapes):
        ids.append(g.add_node(Placeholder("F32", shape), name=f"in{i}"))
        g.designate_input(ids[-1])
    out = g.add_node(op, ids, name="out")
    return analyse(g).fact(out)


def test_conv2d_basic() -> None:
    fact = infer_output(Conv(pads=[1, 1, 1, 1], strides=[1, 1]), [1, 4, 8, 8], [6, 4, 3, 3])
    assert fact == TensorFact.of("F32", [1, 6, 8, 8])


def test_conv2d_stride_and_dilation() -> None:
    # h_out = (32 + 2 + 2 - (2 * (5 - 1) + 1)) // 2 + 1 = 14
    conv = Conv(pads=[2, 2, 2, 2], strides=[2, 2], dilations=[2, 2])
    fact = infer_output(conv, [1, 3, 32, 32], [8, 3, 5, 5])
    assert fact == TensorFact.of("F32", [1, 8, 14, 14])


def test_conv2d_groups() -> None:
    fact = infer_output(Conv(group=2), [1, 4, 5, 5], [6, 2, 3, 3])
    assert fact == TensorFact.of("F32", [1, 6, 3, 3])


def test_conv2d_group_mismatch() -> None:
    with pytest.raises(AnalysisError) as exc:
        infer_output(Conv(group=2), [1, 4, 5, 5], [6, 4, 3, 3])
    assert exc.value.op_type == "Conv"


def test_conv2d_same_padding_keeps_spatial_extent() -> None:
    fact = infer_output(Conv(auto_pad="SAME_UPPER", strides=[2, 2]), [2, 3, 7, 7], [4, 3, 3, 3])
    assert fact == TensorFact.of("F32", [2, 4, 4, 4])


def test_conv2d_nhwc_hwio_with_bias() -> None:
    conv = Conv(data_format="NHWC", kernel_format="HWIO")
    fact = infer_output(conv, [1, 6, 6, 3], [3, 3, 3, 5], [5])
    assert fact == TensorFact.of("F32", [1, 4, 4, 5])


def test_streaming_batch_propagates() -> None:
    fact = infer_output(Conv(pads=[1, 1, 1, 1]), ["S", 3, 8, 8], [2, 3, 3, 3])
    assert fact == TensorFact.of("F32", ["S", 2, 8, 8])


def test_unknown_spatial_extent_stays_unknown() -> None:
    fact = infer_output(Conv(), [1, 3, None, 8], [2, 3, 3, 3])
    assert fact == TensorFact.of("F32", [1, 2, None, None])


def test_pooling_shapes() -> None:
    assert infer_output(MaxPool(kernel_shape=[2, 2], strides=[2, 2]), [1, 3, 8, 8]) == (
        TensorFact.of("F32", [1, 3, 4, 4])
    )
    assert infer_output(AvgPool(kernel_shape=[3, 3], pads=[1, 1, 1, 1]), ["S", 2, 5, 5]) == (
        TensorFact.of("F32", ["S", 2, 5, 5])
    )


def test_window_larger_than_input_is_rejected() -> None:
    with pytest.raises(AnalysisError):
        infer_output(MaxPool(kernel_shape=[5, 5]), [1, 1, 3, 3])


def infer_typed(op, datatype: str, *shapes) -> TensorFact:
    g = Graph()
    ids = []
    for i, shape in enumerate(shapes):
        ids.append(g.add_node(Placeholder(datatype, shape), name=f"in{i}"))
        g.designate_input(ids[-1])
    out = g.add_node(op, ids, name="out")
    return analyse(g).fact(out)


@pytest.mark.parametrize(
    "op, shapes",
    [
        (Softmax(), [[2, 3]]),
        (BatchNorm(), [[1, 2, 3, 3], [2], [2], [2], [2]]),
        (AvgPool(kernel_shape=[2, 2]), [[1, 1, 4, 4]]),
        (Conv(), [[1, 1, 4, 4], [1, 1, 3, 3]]),
    ],
)
def test_float_only_ops_reject_integer_inputs_during_analysis(op, shapes) -> None:
    with pytest.raises(AnalysisError) as exc:
        infer_typed(op, "I32", *shapes)
    assert isinstance(exc.value.cause, TypeMismatch)
    assert exc.value.node_name == "out"


def test_max_pool_accepts_integer_inputs() -> None:
    fact = infer_typed(MaxPool(kernel_shape=[2, 2], strides=[2, 2]), "I32", [1, 1, 4, 4])
    assert fact == TensorFact.of("I32", [1, 1, 2, 2])
