from __future__ import annotations

from collections.abc import Sequence
from math import prod
from typing import Any

import numpy as np

from .dtypes import DataType

Shape = tuple[int, ...]


def _frozen(arr: np.ndarray) -> bool:
    """Whether no one can write to `arr` or to any array it views."""
    while True:
        if arr.flags.writeable:
            return False
        base = arr.base
        if base is None:
            return True
        if not isinstance(base, np.ndarray):
            return False
        arr = base


class Tensor:
    """An immutable, typed, shaped array.

    Think of a Tensor as a shared value: it wraps a read-only numpy array, so
    handing it to several consumers never copies. Construction copies the source
    unless it is already a read-only array of the right dtype whose memory
    nothing else can write.
    """

    __slots__ = ("_array", "_datatype")

    def __init__(self, data: Any, datatype: DataType | str | None = None) -> None:
        if isinstance(data, Tensor):
            data = data._array
        dt = DataType.parse(datatype) if datatype is not None else None
        if (
            isinstance(data, np.ndarray)
            and _frozen(data)
            and (dt is None or DataType.from_numpy(data.dtype) is dt)
        ):
            arr = data
        else:
            arr = np.array(data, dtype=dt.numpy_dtype if dt is not None else None)
            if dt is None and arr.dtype.kind == "S":
                arr = arr.astype(np.str_)
            arr.setflags(write=False)
        self._array = arr
        self._datatype = dt if dt is not None else DataType.from_numpy(arr.dtype)

    @classmethod
    def scalar(cls, value: Any, datatype: DataType | str | None = None) -> Tensor:
        return cls(np.asarray(value), datatype)

    @classmethod
    def zeros(cls, shape: Sequence[int], datatype: DataType | str = DataType.F32) -> Tensor:
        dt = DataType.parse(datatype)
        return cls(np.zeros(tuple(shape), dtype=dt.numpy_dtype), dt)

    @property
    def datatype(self) -> DataType:
        return self._datatype

    @property
    def shape(self) -> Shape:
        return tuple(int(d) for d in self._array.shape)

    @property
    def rank(self) -> int:
        return self._array.ndim

    @property
    def numel(self) -> int:
        return prod(self.shape)

    @property
    def array(self) -> np.ndarray:
        """Read-only view of the data."""
        return self._array

    def to_numpy(self) -> np.ndarray:
        """Writable copy of the data."""
        return np.array(self._array, copy=True)

    def to_list(self) -> Any:
        return self._array.tolist()

    def item(self) -> Any:
        return self._array.item()

    def close_enough(self, other: Tensor, rtol: float = 1e-5, atol: float = 1e-6) -> bool:
        if self.shape != other.shape or self.datatype is not other.datatype:
            return False
        if not self.datatype.is_numeric:
            return self == other
        return bool(np.allclose(self._array, other._array, rtol=rtol, atol=atol, equal_nan=True))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Tensor):
            return NotImplemented
        if self._datatype is not other._datatype or self.shape != other.shape:
            return False
        if self._array.dtype.kind in ("U", "O"):
            return bool(np.array_equal(self._array, other._array))
        return self._array.tobytes() == other._array.tobytes()

    __hash__ = None  # type: ignore[assignment]

    def __len__(self) -> int:
        return len(self._array)

    def __repr__(self) -> str:  # pragma: no cover
        body = np.array2string(self._array, threshold=8, separator=",")
        return f"Tensor({self._datatype.name}{list(self.shape)}, {body})"


def as_tensor(value: Any, datatype: DataType | str | None = None) -> Tensor:
    if isinstance(value, Tensor) and datatype is None:
        return value
    return Tensor(value, datatype)
