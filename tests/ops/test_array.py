from __future__ import annotations

import numpy as np
import pytest

from inferflow.errors import ShapeMismatch, TypeMismatch
from inferflow.ir import DataType, Tensor, TensorFact
from inferflow.ops import (
    Cast,
    Concat,
    ExpandDims,
    Flatten,
    Pack,
    Reshape,
    Shape,
    Slice,
    Squeeze,
    Transpose,
)


def ev(op, *values) -> Tensor:
    (out,) = op.eval([v if isinstance(v, Tensor) else Tensor(v) for v in values])
    return out


def infer_out(op, *facts: TensorFact) -> TensorFact:
    _, outs = op.infer(list(facts), [TensorFact()])
    return outs[0]


def test_reshape_with_minus_one_and_zero() -> None:
    x = Tensor(np.arange(24).reshape(2, 3, 4))
    assert ev(Reshape(shape=[0, -1]), x).shape == (2, 12)
    assert ev(Reshape(shape=[4, 6]), x).shape == (4, 6)
    with pytest.raises(ShapeMismatch):
        ev(Reshape(shape=[5, -1]), x)
    with pytest.raises(ShapeMismatch):
        ev(Reshape(shape=[4, 5]), x)


def test_reshape_from_shape_input() -> None:
    x = Tensor(np.arange(6.0))
    out = ev(Reshape(), x, Tensor([3, 2]))
    assert out.shape == (3, 2)
    with pytest.raises(TypeMismatch):
        ev(Reshape(), x, Tensor([3.0, 2.0]))


def test_reshape_keeps_streaming() -> None:
    fact = infer_out(Reshape(shape=[-1, 2, 2]), TensorFact.of("F32", ["S", 4]))
    assert fact == TensorFact.of("F32", ["S", 2, 2])
    fact = infer_out(Reshape(shape=[0, 2, 2]), TensorFact.of("F32", ["S", 4]))
    assert fact == TensorFact.of("F32", ["S", 2, 2])
    fact = infer_out(Reshape(shape=[-1]), TensorFact.of("F32", [2, 3]))
    assert fact == TensorFact.of("F32", [6])


def test_transpose() -> None:
    x = Tensor(np.arange(6).reshape(2, 3))
    assert ev(Transpose(), x).to_list() == [[0, 3], [1, 4], [2, 5]]
    fact = infer_out(Transpose(perm=[2, 0, 1]), TensorFact.of("F32", ["S", 3, 4]))
    assert fact == TensorFact.of("F32", [4, "S", 3])
    ins, _ = Transpose(perm=[1, 0]).infer([TensorFact()], [TensorFact.of(None, [5, 7])])
    assert ins[0] == TensorFact.of(None, [7, 5])
    with pytest.raises(ShapeMismatch):
        ev(Transpose(perm=[0, 0]), x)


def test_concat() -> None:
    out = ev(Concat(axis=1), [[1, 2]], [[3]])
    assert out.to_list() == [[1, 2, 3]]
    with pytest.raises(ShapeMismatch):
        ev(Concat(axis=0), [[1, 2]], [[3]])
    fact = infer_out(Concat(axis=0), TensorFact.of("I64", [2, 3]), TensorFact.of(None, [4, None]))
    assert fact == TensorFact.of("I64", [6, 3])


def test_pack_promotes_to_common_type() -> None:
    out = ev(Pack(axis=1), Tensor([1, 2], "I32"), Tensor([0.5, 1.5], "F64"))
    assert out.datatype is DataType.F64
    assert out.to_list() == [[1.0, 0.5], [2.0, 1.5]]
    fact = infer_out(Pack(axis=0), TensorFact.of("F32", [3]), TensorFact.of("F32", [3]))
    assert fact == TensorFact.of("F32", [2, 3])


def test_slice() -> None:
    x = Tensor(np.arange(12).reshape(3, 4))
    assert ev(Slice(begin=[1, 1], size=[2, -1]), x).to_list() == [[5, 6, 7], [9, 10, 11]]
    with pytest.raises(ShapeMismatch):
        ev(Slice(begin=[2, 0], size=[2, 1]), x)
    fact = infer_out(Slice(begin=[0, 1], size=[-1, 2]), TensorFact.of("F32", ["S", 4]))
    assert fact == TensorFact.of("F32", ["S", 2])


def test_squeeze_and_expand_dims() -> None:
    x = Tensor(np.zeros((1, 3, 1)))
    assert ev(Squeeze(), x).shape == (3,)
    assert ev(Squeeze(axes=[-1]), x).shape == (1, 3)
    with pytest.raises(ShapeMismatch):
        ev(Squeeze(axes=[1]), x)
    assert ev(ExpandDims(axes=[0, -1]), Tensor([1, 2])).shape == (1, 2, 1)
    fact = infer_out(ExpandDims(axes=[1]), TensorFact.of("F32", ["S", 3]))
    assert fact == TensorFact.of("F32", ["S", 1, 3])


def test_flatten() -> None:
    x = Tensor(np.zeros((2, 3, 4)))
    assert ev(Flatten(), x).shape == (2, 12)
    assert ev(Flatten(axis=0), x).shape == (1, 24)
    fact = infer_out(Flatten(), TensorFact.of("F32", ["S", 3, 4]))
    assert fact == TensorFact.of("F32", ["S", 12])


def test_cast_and_shape() -> None:
    out = ev(Cast(to="I32"), [1.7, -1.7])
    assert out.datatype is DataType.I32
    assert out.to_list() == [1, -1]
    assert ev(Shape(), np.zeros((2, 5))).to_list() == [2, 5]
    fact = infer_out(Shape(), TensorFact.of("F32", [2, 5]))
    assert fact.value == Tensor(np.array([2, 5], dtype=np.int64))
    fact = infer_out(Shape(), TensorFact.of("F32", ["S", 5]))
    assert fact == TensorFact.of("I64", [2])
