from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import ClassVar

import numpy as np

from inferflow.errors import EvalError, TypeMismatch
from inferflow.ir.facts import Dim
from inferflow.ir.tensor import Tensor

from .base import Facts, Op
from .registry import register_op
from .rules import normalize_axis, pad_facts, same_datatype, with_shape

_REDUCERS: dict[str, Callable[..., np.ndarray]] = {
    "sum": np.sum,
    "mean": np.mean,
    "max": np.max,
    "min": np.min,
    "prod": np.prod,
}


@register_op()
class Reduce(Op):
    """Reduce over `axes` (all axes when None). Integer means truncate."""

    op_type = "Reduce"
    default_kind: ClassVar[str] = "sum"

    def __init__(
        self,
        kind: str | None = None,
        axes: Sequence[int] | None = None,
        keepdims: bool | int = True,
    ) -> None:
        self.kind = (kind or self.default_kind).lower()
        if self.kind not in _REDUCERS:
            raise ValueError(f"Unknown reduction {kind!r}; expected one of {sorted(_REDUCERS)}")
        self.axes = [int(a) for a in axes] if axes is not None else None
        self.keepdims = bool(keepdims)

    def attributes(self) -> dict[str, object]:
        return {"kind": self.kind, "axes": self.axes, "keepdims": self.keepdims}

    def _axes(self, rank: int) -> tuple[int, ...]:
        if self.axes is None:
            return tuple(range(rank))
        return tuple(sorted({normalize_axis(a, rank) for a in self.axes}))

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x = inputs[0]
        if not x.datatype.is_numeric:
            raise TypeMismatch(f"{self.op_type} does not support datatype {x.datatype.name}")
        axes = self._axes(x.rank)
        if self.kind in ("max", "min") and any(x.shape[a] == 0 for a in axes):
            raise EvalError(f"{self.kind} over an empty axis")
        reducer = _REDUCERS[self.kind]
        kwargs = {"dtype": x.array.dtype} if self.kind in ("sum", "prod") else {}
        with np.errstate(all="ignore"):
            out = reducer(x.array, axis=axes, keepdims=self.keepdims, **kwargs)
        return [Tensor(np.asarray(out).astype(x.datatype.numpy_dtype), x.datatype)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        x, out = same_datatype(pad_facts(inputs, 1) + pad_facts(outputs, 1))
        if x.datatype is not None and not x.datatype.is_numeric:
            raise TypeMismatch(f"{self.op_type} does not support datatype {x.datatype.name}")
        if x.shape is not None:
            axes = self._axes(len(x.shape))
            if self.keepdims:
                dims = [Dim.known(1) if i in axes else d for i, d in enumerate(x.shape)]
            else:
                dims = [d for i, d in enumerate(x.shape) if i not in axes]
            out = with_shape(out, dims)
        return [x], [out]


@register_op()
class ReduceSum(Reduce):
    op_type = "ReduceSum"
    default_kind = "sum"


@register_op()
class ReduceMean(Reduce):
    op_type = "ReduceMean"
    default_kind = "mean"


@register_op()
class ReduceMax(Reduce):
    op_type = "ReduceMax"
    default_kind = "max"


@register_op()
class ReduceMin(Reduce):
    op_type = "ReduceMin"
    default_kind = "min"


@register_op()
class ReduceProd(Reduce):
    op_type = "ReduceProd"
    default_kind = "prod"
