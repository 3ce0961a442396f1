from __future__ import annotations

import numpy as np
import pytest

from inferflow.ir import DataType, Tensor
from inferflow.ir.tensor import as_tensor


def test_datatype_parse_accepts_names_values_and_numpy() -> None:
    assert DataType.parse("F32") is DataType.F32
    assert DataType.parse("float32") is DataType.F32
    assert DataType.parse(np.dtype("int64")) is DataType.I64
    assert DataType.parse(np.bool_) is DataType.BOOL
    with pytest.raises(TypeError):
        DataType.parse(np.dtype("complex64"))


def test_datatype_predicates() -> None:
    assert DataType.F16.is_float and not DataType.F16.is_integer
    assert DataType.U8.is_integer and not DataType.U8.is_signed
    assert DataType.I32.is_signed
    assert not DataType.BOOL.is_numeric
    assert not DataType.STRING.is_numeric


def test_tensor_is_read_only_and_shared() -> None:
    src = np.arange(6, dtype=np.float32).reshape(2, 3)
    t = Tensor(src)
    assert t.datatype is DataType.F32
    assert t.shape == (2, 3)
    assert t.rank == 2
    assert t.numel == 6
    with pytest.raises(ValueError):
        t.array[0, 0] = 1.0
    # the source stays writable and independent
    src[0, 0] = 42.0
    assert t.array[0, 0] == 0.0
    # a read-only array of the right type is wrapped without copying
    assert Tensor(t.array).array is t.array


def test_to_numpy_returns_writable_copy() -> None:
    t = Tensor([1, 2, 3])
    arr = t.to_numpy()
    arr[0] = 7
    assert t.to_list() == [1, 2, 3]


def test_explicit_datatype_converts() -> None:
    t = Tensor([1, 2], DataType.F32)
    assert t.array.dtype == np.float32
    assert Tensor.scalar(3, "I8").datatype is DataType.I8
    assert Tensor.zeros([2, 2]).to_list() == [[0.0, 0.0], [0.0, 0.0]]


def test_equality_is_bitwise() -> None:
    assert Tensor([1.0, 2.0]) == Tensor([1.0, 2.0])
    assert Tensor([1.0, 2.0]) != Tensor([1.0, 2.0], DataType.F32)
    assert Tensor([1.0, 2.0]) != Tensor([[1.0, 2.0]])
    nan = Tensor([np.nan])
    assert nan == Tensor([np.nan])
    assert Tensor([0.0]) != Tensor([-0.0])


def test_close_enough_tolerates_rounding() -> None:
    a = Tensor([0.1 + 0.2])
    b = Tensor([0.3])
    assert a != b
    assert a.close_enough(b)


def test_string_tensor() -> None:
    t = Tensor(["a", "bc"])
    assert t.datatype is DataType.STRING
    assert t == Tensor(["a", "bc"])


def test_as_tensor_passes_tensors_through() -> None:
    t = Tensor([1])
    assert as_tensor(t) is t
    assert as_tensor([1.5]).datatype is DataType.F64


def test_read_only_view_of_writable_memory_is_copied() -> None:
    base = np.zeros(3)
    view = base.view()
    view.setflags(write=False)
    t = Tensor(view)
    base[0] = 42.0
    assert t.to_list() == [0.0, 0.0, 0.0]
    assert not np.shares_memory(t.array, base)


def test_views_of_frozen_tensors_are_shared() -> None:
    t = Tensor(np.arange(6.0))
    reshaped = Tensor(t.array.reshape(2, 3))
    assert np.shares_memory(reshaped.array, t.array)
    assert reshaped.shape == (2, 3)
