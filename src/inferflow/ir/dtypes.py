from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

import numpy as np


class DataType(Enum):
    """Closed set of element types a Tensor or TensorFact can carry."""

    F16 = "float16"
    F32 = "float32"
    F64 = "float64"
    I8 = "int8"
    I16 = "int16"
    I32 = "int32"
    I64 = "int64"
    U8 = "uint8"
    U16 = "uint16"
    U32 = "uint32"
    U64 = "uint64"
    BOOL = "bool"
    STRING = "str"
    OPAQUE = "object"

    def __str__(self) -> str:  # pragma: no cover
        return self.value

    @property
    def numpy_dtype(self) -> np.dtype:
        if self is DataType.STRING:
            return np.dtype(np.str_)
        return np.dtype(self.value)

    @property
    def is_float(self) -> bool:
        return self in _FLOATS

    @property
    def is_integer(self) -> bool:
        return self in _SIGNED or self in _UNSIGNED

    @property
    def is_signed(self) -> bool:
        return self in _SIGNED or self in _FLOATS

    @property
    def is_numeric(self) -> bool:
        return self.is_float or self.is_integer

    @classmethod
    def from_numpy(cls, dtype: np.dtype | type | str) -> DataType:
        dt = np.dtype(dtype)
        if dt.kind in ("U", "S"):
            return cls.STRING
        if dt.kind == "O":
            return cls.OPAQUE
        try:
            return cls(dt.name)
        except ValueError:
            raise TypeError(f"Unsupported numpy dtype {dt}") from None

    @classmethod
    def parse(cls, value: DataType | str | np.dtype | type) -> DataType:
        """Accept a DataType, its name ('F32'), its value ('float32') or a numpy dtype."""
        if isinstance(value, DataType):
            return value
        if isinstance(value, str):
            if value.upper() in cls.__members__:
                return cls[value.upper()]
            try:
                return cls(value)
            except ValueError:
                pass
        return cls.from_numpy(value)

    @staticmethod
    def super_type_for(types: Iterable[DataType]) -> DataType | None:
        """Smallest numeric type every given type promotes to, if any."""
        types = list(types)
        if not types:
            return None
        if all(t is types[0] for t in types):
            return types[0]
        if not all(t.is_numeric or t is DataType.BOOL for t in types):
            return None
        promoted = np.result_type(*(t.numpy_dtype for t in types))
        try:
            return DataType.from_numpy(promoted)
        except TypeError:
            return None


_FLOATS = frozenset({DataType.F16, DataType.F32, DataType.F64})
_SIGNED = frozenset({DataType.I8, DataType.I16, DataType.I32, DataType.I64})
_UNSIGNED = frozenset({DataType.U8, DataType.U16, DataType.U32, DataType.U64})
