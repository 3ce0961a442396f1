"""Partial knowledge about tensors, used by the analyser.

A `TensorFact` is an element of a small lattice: every component is either
unknown (None) or known, and `unify` combines two facts into the more specific
one or fails when they contradict each other.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Union

from inferflow.errors import FactConflict, ShapeMismatch, TypeMismatch

from .dtypes import DataType
from .tensor import Tensor


class DimKind(Enum):
    KNOWN = "known"
    STREAMING = "streaming"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class Dim:
    """One axis extent: a known integer, the symbolic Streaming extent, or unknown."""

    kind: DimKind
    value: int | None = None

    def __post_init__(self) -> None:
        if self.kind is DimKind.KNOWN:
            if not isinstance(self.value, int) or self.value < 0:
                raise ValueError(f"Known dimension needs a non-negative int, got {self.value!r}")
        elif self.value is not None:
            raise ValueError(f"{self.kind.value} dimension carries no value")

    @classmethod
    def known(cls, value: int) -> Dim:
        return cls(DimKind.KNOWN, int(value))

    @classmethod
    def of(cls, value: DimLike) -> Dim:
        if isinstance(value, Dim):
            return value
        if value is None:
            return UNKNOWN
        if isinstance(value, str):
            if value.upper() in ("S", "STREAMING"):
                return STREAMING
            if value in ("?", "_"):
                return UNKNOWN
            raise ValueError(f"Cannot read dimension from {value!r}")
        return cls.known(int(value))

    @property
    def is_known(self) -> bool:
        return self.kind is DimKind.KNOWN

    @property
    def is_streaming(self) -> bool:
        return self.kind is DimKind.STREAMING

    @property
    def is_unknown(self) -> bool:
        return self.kind is DimKind.UNKNOWN

    def accepts(self, extent: int) -> bool:
        """Whether a concrete runtime extent satisfies this dimension."""
        return not self.is_known or self.value == extent

    def unify(self, other: Dim) -> Dim:
        if self == other or other.is_unknown:
            return self
        if self.is_unknown:
            return other
        raise ShapeMismatch(f"Dimension conflict: {self} vs {other}")

    def __str__(self) -> str:
        if self.is_known:
            return str(self.value)
        return "S" if self.is_streaming else "?"


STREAMING = Dim(DimKind.STREAMING)
UNKNOWN = Dim(DimKind.UNKNOWN)

DimLike = Union[Dim, int, str, None]
ShapeFact = tuple[Dim, ...]


def shape_fact(dims: Iterable[DimLike] | None) -> ShapeFact | None:
    if dims is None:
        return None
    return tuple(Dim.of(d) for d in dims)


def format_shape(shape: ShapeFact | None) -> str:
    if shape is None:
        return "[..]"
    return "[" + ",".join(str(d) for d in shape) + "]"


def unify_shapes(a: ShapeFact | None, b: ShapeFact | None) -> ShapeFact | None:
    if a is None:
        return b
    if b is None:
        return a
    if len(a) != len(b):
        raise ShapeMismatch(f"Rank conflict: {format_shape(a)} vs {format_shape(b)}")
    try:
        return tuple(da.unify(db) for da, db in zip(a, b))
    except ShapeMismatch:
        raise ShapeMismatch(f"Shape conflict: {format_shape(a)} vs {format_shape(b)}") from None


@dataclass(frozen=True)
class TensorFact:
    """What is known about a tensor at analysis time.

    A fact holding a `value` always has the datatype and shape of that value.
    """

    datatype: DataType | None = None
    shape: ShapeFact | None = None
    value: Tensor | None = None

    def __post_init__(self) -> None:
        if self.shape is not None and not all(isinstance(d, Dim) for d in self.shape):
            object.__setattr__(self, "shape", shape_fact(self.shape))
        elif self.shape is not None and not isinstance(self.shape, tuple):
            object.__setattr__(self, "shape", tuple(self.shape))
        if self.value is None:
            return
        if self.datatype is not None and self.datatype is not self.value.datatype:
            raise TypeMismatch(
                f"Value of type {self.value.datatype.name} contradicts datatype {self.datatype.name}"
            )
        concrete = shape_fact(self.value.shape)
        unify_shapes(self.shape, concrete)
        object.__setattr__(self, "datatype", self.value.datatype)
        object.__setattr__(self, "shape", concrete)

    @classmethod
    def of(
        cls,
        datatype: DataType | str | None = None,
        shape: Sequence[DimLike] | None = None,
    ) -> TensorFact:
        dt = DataType.parse(datatype) if datatype is not None else None
        return cls(datatype=dt, shape=shape_fact(shape))

    @classmethod
    def from_tensor(cls, tensor: Tensor) -> TensorFact:
        return cls(value=tensor)

    @property
    def rank(self) -> int | None:
        return None if self.shape is None else len(self.shape)

    @property
    def is_unknown(self) -> bool:
        return self.datatype is None and self.shape is None and self.value is None

    @property
    def is_concrete(self) -> bool:
        """Datatype and every dimension are known (Streaming is not)."""
        return (
            self.datatype is not None
            and self.shape is not None
            and all(d.is_known for d in self.shape)
        )

    def concrete_shape(self) -> tuple[int, ...] | None:
        if self.shape is None or not all(d.is_known for d in self.shape):
            return None
        return tuple(d.value for d in self.shape)  # type: ignore[misc]

    def with_datatype(self, datatype: DataType | None) -> TensorFact:
        return unify(self, TensorFact(datatype=datatype))

    def with_shape(self, shape: Iterable[DimLike] | None) -> TensorFact:
        return unify(self, TensorFact(shape=shape_fact(shape)))

    def accepts(self, tensor: Tensor) -> None:
        """Check a concrete tensor against this fact, raising on mismatch."""
        if self.datatype is not None and tensor.datatype is not self.datatype:
            raise TypeMismatch(
                f"expected datatype {self.datatype.name}, got {tensor.datatype.name}"
            )
        if self.shape is not None:
            if len(self.shape) != tensor.rank or not all(
                d.accepts(n) for d, n in zip(self.shape, tensor.shape)
            ):
                raise ShapeMismatch(
                    f"expected shape {format_shape(self.shape)}, got {list(tensor.shape)}"
                )
        if self.value is not None and self.value != tensor:
            raise FactConflict("tensor differs from the known constant value")

    def __str__(self) -> str:
        dt = self.datatype.name if self.datatype is not None else "?"
        out = f"{dt}{format_shape(self.shape)}"
        if self.value is not None:
            out += f"={self.value.to_list()!r}"[:64]
        return out


def unify(a: TensorFact, b: TensorFact) -> TensorFact:
    """Most specific fact consistent with both `a` and `b`."""
    if b.is_unknown:
        return a
    if a.is_unknown:
        return b
    if a.datatype is not None and b.datatype is not None and a.datatype is not b.datatype:
        raise TypeMismatch(f"Datatype conflict: {a.datatype.name} vs {b.datatype.name}")
    shape = unify_shapes(a.shape, b.shape)
    if a.value is not None and b.value is not None and a.value != b.value:
        raise FactConflict(f"Value conflict: {a} vs {b}")
    return TensorFact(
        datatype=a.datatype if a.datatype is not None else b.datatype,
        shape=shape,
        value=a.value if a.value is not None else b.value,
    )


def unify_all(facts: Iterable[TensorFact]) -> TensorFact:
    result = TensorFact()
    for fact in facts:
        result = unify(result, fact)
    return result

