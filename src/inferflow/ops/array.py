from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from inferflow.errors import EvalError, ShapeMismatch, TypeMismatch
from inferflow.ir.dtypes import DataType
from inferflow.ir.facts import STREAMING, UNKNOWN, Dim, ShapeFact, TensorFact, unify
from inferflow.ir.tensor import Tensor

from .base import Facts, Op
from .registry import register_op
from .rules import (
    dims_product,
    normalize_axis,
    pad_facts,
    same_datatype,
    same_shape,
    with_datatype,
    with_shape,
)


def _int_list(values: Sequence[int] | None) -> list[int] | None:
    if values is None:
        return None
    return [int(v) for v in values]


@register_op()
class Reshape(Op):
    """Reshape to a target given as attribute or as a second (shape) input.

    `-1` takes whatever extent is left, `0` copies the input extent at the same
    position. A Streaming extent is carried through as Streaming.
    """

    op_type = "Reshape"
    input_arity = (1, 2)

    def __init__(self, shape: Sequence[int] | None = None) -> None:
        self.shape = _int_list(shape)

    def attributes(self) -> dict[str, object]:
        return {"shape": self.shape} if self.shape is not None else {}

    def _target(self, shape_input: Tensor | None) -> list[int]:
        if shape_input is not None:
            if not shape_input.datatype.is_integer or shape_input.rank != 1:
                raise TypeMismatch("Reshape shape input must be a 1-D integer tensor")
            return [int(v) for v in shape_input.to_list()]
        if self.shape is None:
            raise EvalError("Reshape needs a 'shape' attribute or a shape input")
        return self.shape

    @staticmethod
    def resolve(input_shape: Sequence[int], target: Sequence[int]) -> tuple[int, ...]:
        dims = list(target)
        if sum(1 for d in dims if d == -1) > 1:
            raise ShapeMismatch("Reshape target may contain at most one -1")
        for i, d in enumerate(dims):
            if d == 0:
                if i >= len(input_shape):
                    raise ShapeMismatch(f"Reshape target copies missing axis {i}")
                dims[i] = input_shape[i]
            elif d < -1:
                raise ShapeMismatch(f"Invalid Reshape extent {d}")
        total = int(np.prod(input_shape, dtype=np.int64))
        known = int(np.prod([d for d in dims if d != -1], dtype=np.int64))
        if -1 in dims:
            if known == 0 or total % known != 0:
                raise ShapeMismatch(f"Cannot reshape {list(input_shape)} into {list(target)}")
            dims[dims.index(-1)] = total // known
        elif known != total:
            raise ShapeMismatch(f"Cannot reshape {list(input_shape)} into {list(target)}")
        return tuple(dims)

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x = inputs[0]
        target = self._target(inputs[1] if len(inputs) == 2 else None)
        shape = self.resolve(x.shape, target)
        return [Tensor(x.array.reshape(shape), x.datatype)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        inputs = list(inputs)
        out = pad_facts(outputs, 1)[0]
        x = pad_facts(inputs, 1)[0]
        if x.datatype is not None:
            out = with_datatype(out, x.datatype)
        elif out.datatype is not None:
            inputs[0] = with_datatype(x, out.datatype)
        target = self.shape
        if len(inputs) == 2:
            inputs[1] = with_shape(inputs[1], (UNKNOWN,))
            if inputs[1].value is not None:
                target = self._target(inputs[1].value)
        if target is not None:
            out = with_shape(out, self._infer_dims(x.shape, target))
        return inputs, [out]

    @staticmethod
    def _infer_dims(in_shape: ShapeFact | None, target: Sequence[int]) -> list[Dim]:
        dims: list[Dim] = []
        for i, d in enumerate(target):
            if d == 0:
                if in_shape is not None and i < len(in_shape):
                    dims.append(in_shape[i])
                else:
                    dims.append(UNKNOWN)
            elif d == -1:
                dims.append(UNKNOWN)
            else:
                dims.append(Dim.known(d))
        if in_shape is None or any(d.is_unknown for d in in_shape):
            return dims
        if -1 not in target:
            if all(d.is_known for d in in_shape + tuple(dims)) and dims_product(in_shape) != dims_product(dims):
                raise ShapeMismatch(f"Cannot reshape {[str(d) for d in in_shape]} into {list(target)}")
            return dims
        slot = list(target).index(-1)
        others = [d for i, d in enumerate(dims) if i != slot]
        if any(d.is_unknown for d in others):
            return dims
        in_known = dims_product([d for d in in_shape if d.is_known])
        out_known = dims_product([d for d in others if d.is_known])
        in_stream = sum(1 for d in in_shape if d.is_streaming)
        out_stream = sum(1 for d in others if d.is_streaming)
        if in_stream == out_stream:
            if out_known == 0 or in_known % out_known != 0:
                raise ShapeMismatch(f"Cannot reshape {[str(d) for d in in_shape]} into {list(target)}")
            dims[slot] = Dim.known(in_known // out_known)
        elif in_stream == out_stream + 1 and in_known == out_known:
            dims[slot] = STREAMING
        return dims


@register_op()
class Transpose(Op):
    op_type = "Transpose"

    def __init__(self, perm: Sequence[int] | None = None) -> None:
        self.perm = _int_list(perm)

    def attributes(self) -> dict[str, object]:
        return {"perm": self.perm}

    def _perm(self, rank: int) -> list[int]:
        perm = self.perm if self.perm is not None else list(reversed(range(rank)))
        if sorted(perm) != list(range(rank)):
            raise ShapeMismatch(f"Invalid Transpose perm {perm} for rank {rank}")
        return perm

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x = inputs[0]
        return [Tensor(np.transpose(x.array, self._perm(x.rank)), x.datatype)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        x, out = same_datatype(pad_facts(inputs, 1) + pad_facts(outputs, 1))
        if x.shape is not None:
            perm = self._perm(len(x.shape))
            out = with_shape(out, [x.shape[p] for p in perm])
        if out.shape is not None:
            perm = self._perm(len(out.shape))
            back: list[Dim] = [UNKNOWN] * len(perm)
            for i, p in enumerate(perm):
                back[p] = out.shape[i]
            x = with_shape(x, back)
        return [x], [out]


@register_op()
class Concat(Op):
    op_type = "Concat"
    input_arity = None

    def __init__(self, axis: int = 0) -> None:
        self.axis = int(axis)

    def attributes(self) -> dict[str, object]:
        return {"axis": self.axis}

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        dt = inputs[0].datatype
        if any(t.datatype is not dt for t in inputs):
            raise TypeMismatch("Concat inputs must share one datatype")
        rank = inputs[0].rank
        if any(t.rank != rank for t in inputs):
            raise ShapeMismatch("Concat inputs must have the same rank")
        axis = normalize_axis(self.axis, rank)
        for t in inputs:
            if any(t.shape[d] != inputs[0].shape[d] for d in range(rank) if d != axis):
                raise ShapeMismatch(
                    f"Concat dim mismatch: {[list(i.shape) for i in inputs]} on axis {axis}"
                )
        return [Tensor(np.concatenate([t.array for t in inputs], axis=axis), dt)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        facts = same_datatype(list(inputs) + pad_facts(outputs, 1))
        ins, out = facts[:-1], facts[-1]
        rank = next((f.rank for f in facts if f.rank is not None), None)
        if rank is None:
            return ins, [out]
        axis = normalize_axis(self.axis, rank)
        # every axis but the concat one is shared by inputs and output
        for d in range(rank):
            if d == axis:
                continue
            shared = UNKNOWN
            for f in facts:
                if f.shape is not None:
                    if len(f.shape) != rank:
                        raise ShapeMismatch("Concat inputs must have the same rank")
                    shared = shared.unify(f.shape[d])
            facts = [with_shape(f, self._set_axis(f.shape, rank, d, shared)) for f in facts]
        ins, out = facts[:-1], facts[-1]
        if all(f.shape is not None for f in ins):
            extents = [f.shape[axis] for f in ins]  # type: ignore[index]
            if all(e.is_known for e in extents):
                total = sum(e.value for e in extents)  # type: ignore[misc]
                out = with_shape(out, self._set_axis(out.shape, rank, axis, Dim.known(total)))
        return ins, [out]

    @staticmethod
    def _set_axis(shape: ShapeFact | None, rank: int, axis: int, dim: Dim) -> list[Dim]:
        dims = list(shape) if shape is not None else [UNKNOWN] * rank
        dims[axis] = dims[axis].unify(dim)
        return dims


@register_op("Pack", "Stack")
class Pack(Op):
    """Stack same-shaped inputs along a new axis, promoting to a common datatype."""

    op_type = "Pack"
    input_arity = None

    def __init__(self, axis: int = 0) -> None:
        self.axis = int(axis)

    def attributes(self) -> dict[str, object]:
        return {"axis": self.axis}

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        dt = DataType.super_type_for(t.datatype for t in inputs)
        if dt is None:
            raise TypeMismatch("Pack inputs have no common datatype")
        if any(t.shape != inputs[0].shape for t in inputs):
            raise ShapeMismatch(f"Pack inputs differ in shape: {[list(t.shape) for t in inputs]}")
        axis = normalize_axis(self.axis, inputs[0].rank + 1)
        arrays = [t.array.astype(dt.numpy_dtype, copy=False) for t in inputs]
        return [Tensor(np.stack(arrays, axis=axis), dt)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        ins = same_shape(inputs)
        out = pad_facts(outputs, 1)[0]
        if all(f.datatype is not None for f in ins):
            dt = DataType.super_type_for(f.datatype for f in ins)  # type: ignore[misc]
            if dt is None:
                raise TypeMismatch("Pack inputs have no common datatype")
            out = with_datatype(out, dt)
        shape = ins[0].shape if ins else None
        if shape is not None:
            axis = normalize_axis(self.axis, len(shape) + 1)
            dims = list(shape)
            dims.insert(axis, Dim.known(len(ins)))
            out = with_shape(out, dims)
        elif out.shape is not None:
            axis = normalize_axis(self.axis, len(out.shape))
            dims = list(out.shape)
            dims.pop(axis)
            ins = same_shape([with_shape(f, dims) for f in ins])
        return ins, [out]


@register_op()
class Slice(Op):
    """Take `size[i]` elements from `begin[i]` along each axis (size -1: to the end)."""

    op_type = "Slice"

    def __init__(self, begin: Sequence[int], size: Sequence[int]) -> None:
        self.begin = [int(b) for b in begin]
        self.size = [int(s) for s in size]
        if len(self.begin) != len(self.size):
            raise ValueError("Slice begin and size must have the same length")
        if any(b < 0 for b in self.begin) or any(s < -1 for s in self.size):
            raise ValueError("Slice begin must be >= 0 and size >= -1")

    def attributes(self) -> dict[str, object]:
        return {"begin": self.begin, "size": self.size}

    def _check_rank(self, rank: int) -> None:
        if rank != len(self.begin):
            raise ShapeMismatch(f"Slice expects rank {len(self.begin)}, got {rank}")

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x = inputs[0]
        self._check_rank(x.rank)
        index = []
        for axis, (b, s, n) in enumerate(zip(self.begin, self.size, x.shape)):
            end = n if s == -1 else b + s
            if b > n or end > n:
                raise ShapeMismatch(f"Slice [{b}:{end}] out of bounds for axis {axis} of {n}")
            index.append(slice(b, end))
        return [Tensor(x.array[tuple(index)], x.datatype)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        x, out = same_datatype(pad_facts(inputs, 1) + pad_facts(outputs, 1))
        x = with_shape(x, [UNKNOWN] * len(self.begin))
        dims: list[Dim] = []
        for b, s, d in zip(self.begin, self.size, x.shape or ()):
            if d.is_known and (b > d.value or (s != -1 and b + s > d.value)):  # type: ignore[operator]
                raise ShapeMismatch(f"Slice [{b}:+{s}] out of bounds for extent {d}")
            if s != -1:
                dims.append(Dim.known(s))
            elif d.is_known:
                dims.append(Dim.known(d.value - b))  # type: ignore[operator]
            elif d.is_streaming and b == 0:
                dims.append(STREAMING)
            else:
                dims.append(UNKNOWN)
        return [x], [with_shape(out, dims)]


@register_op("Squeeze")
class Squeeze(Op):
    op_type = "Squeeze"

    def __init__(self, axes: Sequence[int] | None = None) -> None:
        self.axes = _int_list(axes)

    def attributes(self) -> dict[str, object]:
        return {"axes": self.axes}

    def _axes(self, dims: Sequence[Dim]) -> list[int] | None:
        if self.axes is None:
            if not all(d.is_known for d in dims):
                return None
            return [i for i, d in enumerate(dims) if d.value == 1]
        axes = sorted({normalize_axis(a, len(dims)) for a in self.axes})
        for a in axes:
            if dims[a].is_known and dims[a].value != 1:
                raise ShapeMismatch(f"Cannot squeeze axis {a} of extent {dims[a]}")
        return axes

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x = inputs[0]
        axes = self._axes([Dim.known(n) for n in x.shape])
        return [Tensor(np.squeeze(x.array, axis=tuple(axes or ())), x.datatype)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        x, out = same_datatype(pad_facts(inputs, 1) + pad_facts(outputs, 1))
        if x.shape is not None:
            axes = self._axes(x.shape)
            if axes is not None:
                x = with_shape(x, [Dim.known(1) if i in axes else d for i, d in enumerate(x.shape)])
                out = with_shape(out, [d for i, d in enumerate(x.shape) if i not in axes])  # type: ignore[arg-type]
        return [x], [out]


@register_op("ExpandDims", "Unsqueeze")
class ExpandDims(Op):
    op_type = "ExpandDims"

    def __init__(self, axes: Sequence[int]) -> None:
        self.axes = [int(a) for a in axes]

    def attributes(self) -> dict[str, object]:
        return {"axes": self.axes}

    def _expand(self, dims: Sequence[Dim]) -> list[Dim]:
        rank = len(dims) + len(self.axes)
        axes = {normalize_axis(a, rank) for a in self.axes}
        if len(axes) != len(self.axes):
            raise ShapeMismatch(f"ExpandDims got repeated axes {self.axes}")
        rest = iter(dims)
        return [Dim.known(1) if i in axes else next(rest) for i in range(rank)]

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x = inputs[0]
        shape = tuple(d.value for d in self._expand([Dim.known(n) for n in x.shape]))
        return [Tensor(x.array.reshape(shape), x.datatype)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        x, out = same_datatype(pad_facts(inputs, 1) + pad_facts(outputs, 1))
        if x.shape is not None:
            out = with_shape(out, self._expand(x.shape))
        elif out.shape is not None:
            rank = len(out.shape)
            axes = {normalize_axis(a, rank) for a in self.axes}
            x = with_shape(x, [d for i, d in enumerate(out.shape) if i not in axes])
        return [x], [out]


@register_op()
class Flatten(Op):
    """Collapse to 2-D: axes before `axis` and axes from `axis` on."""

    op_type = "Flatten"

    def __init__(self, axis: int = 1) -> None:
        self.axis = int(axis)

    def attributes(self) -> dict[str, object]:
        return {"axis": self.axis}

    def _split(self, rank: int) -> int:
        axis = self.axis + rank if self.axis < 0 else self.axis
        if not 0 <= axis <= rank:
            raise ShapeMismatch(f"Flatten axis {self.axis} out of range for rank {rank}")
        return axis

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x = inputs[0]
        axis = self._split(x.rank)
        outer = int(np.prod(x.shape[:axis], dtype=np.int64))
        inner = int(np.prod(x.shape[axis:], dtype=np.int64))
        return [Tensor(x.array.reshape(outer, inner), x.datatype)]

    @staticmethod
    def _collapse(dims: Sequence[Dim]) -> Dim:
        if len(dims) == 1:
            return dims[0]
        total = dims_product(dims)
        if total is not None:
            return Dim.known(total)
        streaming = [d for d in dims if d.is_streaming]
        if len(streaming) == 1 and all(d.is_known and d.value == 1 for d in dims if not d.is_streaming):
            return STREAMING
        return UNKNOWN

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        x, out = same_datatype(pad_facts(inputs, 1) + pad_facts(outputs, 1))
        out = with_shape(out, [UNKNOWN, UNKNOWN])
        if x.shape is not None:
            axis = self._split(len(x.shape))
            out = with_shape(out, [self._collapse(x.shape[:axis]), self._collapse(x.shape[axis:])])
        return [x], [out]


@register_op()
class Cast(Op):
    op_type = "Cast"

    def __init__(self, to: DataType | str) -> None:
        self.to = DataType.parse(to)

    def attributes(self) -> dict[str, object]:
        return {"to": self.to.name}

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x = inputs[0]
        try:
            with np.errstate(all="ignore"):
                arr = x.array.astype(self.to.numpy_dtype)
        except ValueError as exc:
            raise EvalError(f"Cannot cast {x.datatype.name} to {self.to.name}: {exc}") from exc
        return [Tensor(arr, self.to)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        x, out = same_shape(pad_facts(inputs, 1) + pad_facts(outputs, 1))
        return [x], [with_datatype(out, self.to)]


@register_op()
class Shape(Op):
    """Shape of the input as a 1-D I64 tensor."""

    op_type = "Shape"

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        return [Tensor(np.array(inputs[0].shape, dtype=np.int64), DataType.I64)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        x = pad_facts(inputs, 1)[0]
        out = with_datatype(pad_facts(outputs, 1)[0], DataType.I64)
        if x.rank is not None:
            out = with_shape(out, [Dim.known(x.rank)])
        concrete = x.concrete_shape()
        if concrete is not None:
            out = unify(out, TensorFact.from_tensor(Tensor(np.array(concrete, dtype=np.int64))))
        return [x], [out]
