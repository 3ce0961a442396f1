"""Neural-network operators: MatMul, Softmax, BatchNorm, 2-D Conv and pooling."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from inferflow.errors import ShapeMismatch, TypeMismatch
from inferflow.ir.dtypes import DataType
from inferflow.ir.facts import UNKNOWN, Dim, ShapeFact, TensorFact
from inferflow.ir.tensor import Tensor

from .base import Facts, Op
from .registry import register_op
from .rules import (
    broadcast_shapes,
    normalize_axis,
    pad_facts,
    same_datatype,
    same_shape,
    with_shape,
)


def _require_float(op: Op, tensor: Tensor) -> None:
    if not tensor.datatype.is_float:
        raise TypeMismatch(f"{op.op_type} expects a float tensor, got {tensor.datatype.name}")


def _require_float_fact(op: Op, fact: TensorFact) -> None:
    if fact.datatype is not None and not fact.datatype.is_float:
        raise TypeMismatch(f"{op.op_type} expects a float tensor, got {fact.datatype.name}")


def _require_same_datatype(op: Op, tensors: Sequence[Tensor]) -> None:
    dt = tensors[0].datatype
    if any(t.datatype is not dt for t in tensors):
        raise TypeMismatch(
            f"{op.op_type} inputs differ in datatype: {[t.datatype.name for t in tensors]}"
        )


@register_op("MatMul", "BatchMatMul")
class MatMul(Op):
    """Matrix product with numpy semantics: (..., M, K) @ (..., K, N) -> (..., M, N)."""

    op_type = "MatMul"
    input_arity = 2

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        a, b = inputs
        _require_same_datatype(self, inputs)
        if not a.datatype.is_numeric:
            raise TypeMismatch(f"MatMul does not support datatype {a.datatype.name}")
        if a.rank == 0 or b.rank == 0:
            raise ShapeMismatch("MatMul operands must have rank >= 1")
        try:
            with np.errstate(all="ignore"):
                out = np.matmul(a.array, b.array)
        except ValueError:
            raise ShapeMismatch(f"MatMul shape mismatch: {list(a.shape)} @ {list(b.shape)}") from None
        return [Tensor(np.asarray(out), a.datatype)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        a, b, out = same_datatype(pad_facts(inputs, 2) + pad_facts(outputs, 1))
        if a.shape is None or b.shape is None:
            return [a, b], [out]
        sa, sb = a.shape, b.shape
        if not sa or not sb:
            raise ShapeMismatch("MatMul operands must have rank >= 1")
        k_a = sa[-1]
        k_b = sb[-2] if len(sb) >= 2 else sb[0]
        k = k_a.unify(k_b)
        a = with_shape(a, sa[:-1] + (k,))
        b = with_shape(b, sb[:-2] + (k, sb[-1]) if len(sb) >= 2 else (k,))
        batch = broadcast_shapes([sa[:-2], sb[:-2]])
        dims = list(batch)
        if len(sa) >= 2:
            dims.append(sa[-2])
        if len(sb) >= 2:
            dims.append(sb[-1])
        return [a, b], [with_shape(out, dims)]


@register_op()
class Softmax(Op):
    op_type = "Softmax"

    def __init__(self, axis: int = -1) -> None:
        self.axis = int(axis)

    def attributes(self) -> dict[str, object]:
        return {"axis": self.axis}

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x = inputs[0]
        _require_float(self, x)
        axis = normalize_axis(self.axis, x.rank)
        with np.errstate(all="ignore"):
            shifted = x.array - np.max(x.array, axis=axis, keepdims=True)
            e = np.exp(shifted)
            out = e / np.sum(e, axis=axis, keepdims=True)
        return [Tensor(out.astype(x.datatype.numpy_dtype, copy=False), x.datatype)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        x, out = same_shape(same_datatype(pad_facts(inputs, 1) + pad_facts(outputs, 1)))
        _require_float_fact(self, x)
        return [x], [out]


@register_op("BatchNorm", "BatchNormalization")
class BatchNorm(Op):
    """Inference-time batch normalization over axis 1.

    Inputs: x, scale, bias, mean, var; the four parameters are 1-D of length C.
    """

    op_type = "BatchNorm"
    input_arity = 5

    def __init__(self, epsilon: float = 1e-5, momentum: float | None = None) -> None:
        self.epsilon = float(epsilon)

    def attributes(self) -> dict[str, object]:
        return {"epsilon": self.epsilon}

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x = inputs[0]
        _require_float(self, x)
        _require_same_datatype(self, inputs)
        if x.rank < 2:
            raise ShapeMismatch("BatchNorm input must have rank >= 2")
        channels = x.shape[1]
        if any(p.shape != (channels,) for p in inputs[1:]):
            raise ShapeMismatch(
                f"BatchNorm parameters must have shape [{channels}], "
                f"got {[list(p.shape) for p in inputs[1:]]}"
            )
        view = (1, channels) + (1,) * (x.rank - 2)
        scale, bias, mean, var = (p.array.reshape(view) for p in inputs[1:])
        with np.errstate(all="ignore"):
            out = (x.array - mean) / np.sqrt(var + self.epsilon) * scale + bias
        return [Tensor(out.astype(x.datatype.numpy_dtype, copy=False), x.datatype)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        facts = same_datatype(pad_facts(inputs, 5) + pad_facts(outputs, 1))
        x, params, out = facts[0], facts[1:5], facts[5]
        _require_float_fact(self, x)
        x, out = same_shape([x, out])
        params = same_shape([with_shape(p, [UNKNOWN]) for p in params])
        if x.shape is not None:
            if len(x.shape) < 2:
                raise ShapeMismatch("BatchNorm input must have rank >= 2")
            params = [with_shape(p, [x.shape[1]]) for p in params]
            channel = params[0].shape[0]  # type: ignore[index]
            x = with_shape(x, [x.shape[0], channel, *x.shape[2:]])
            out = with_shape(out, x.shape)
        return [x, *params], [out]


@dataclass(frozen=True)
class PaddingSpec:
    """How spatial borders are handled: valid, same_upper, same_lower or explicit.

    Explicit pads follow the ONNX layout: all begins then all ends.
    """

    mode: str = "valid"
    pads: tuple[int, ...] = ()

    @classmethod
    def parse(cls, value: PaddingSpec | str | Sequence[int] | None) -> PaddingSpec:
        if value is None:
            return cls()
        if isinstance(value, PaddingSpec):
            return value
        if isinstance(value, str):
            mode = value.lower()
            if mode == "same":
                mode = "same_upper"
            if mode == "notset":
                mode = "valid"
            if mode not in ("valid", "same_upper", "same_lower"):
                raise ValueError(f"Unknown padding mode {value!r}")
            return cls(mode)
        pads = tuple(int(p) for p in value)
        if any(p < 0 for p in pads):
            raise ValueError("Explicit pads must be non-negative")
        return cls("explicit", pads)

    def compute(
        self, input_dim: int, kernel: int, stride: int, dilation: int, axis: int, n_axes: int
    ) -> tuple[int, int, int]:
        """Output extent and (begin, end) padding for one spatial axis."""
        field = dilation * (kernel - 1) + 1
        if self.mode == "explicit":
            if len(self.pads) != 2 * n_axes:
                raise ShapeMismatch(f"Expected {2 * n_axes} pads, got {list(self.pads)}")
            begin, end = self.pads[axis], self.pads[axis + n_axes]
        elif self.mode == "valid":
            begin = end = 0
        else:
            out = -(-input_dim // stride)
            total = max(0, (out - 1) * stride + field - input_dim)
            small, large = total // 2, total - total // 2
            begin, end = (small, large) if self.mode == "same_upper" else (large, small)
        span = input_dim + begin + end - field
        if span < 0:
            raise ShapeMismatch(
                f"Window of {field} does not fit input extent {input_dim} with padding {begin}+{end}"
            )
        return span // stride + 1, begin, end


@dataclass(frozen=True)
class Patch:
    """Geometry of a 2-D sliding window over NCHW (or NHWC) data."""

    kernel_shape: tuple[int, int]
    strides: tuple[int, int] = (1, 1)
    dilations: tuple[int, int] = (1, 1)
    padding: PaddingSpec = PaddingSpec()
    nhwc: bool = False

    @property
    def spatial_axes(self) -> tuple[int, int]:
        return (1, 2) if self.nhwc else (2, 3)

    @property
    def channel_axis(self) -> int:
        return 3 if self.nhwc else 1

    def output_spatial(self, spatial: Sequence[int]) -> tuple[list[int], list[tuple[int, int]]]:
        outs, pads = [], []
        for axis, n in enumerate(spatial):
            out, begin, end = self.padding.compute(
                n, self.kernel_shape[axis], self.strides[axis], self.dilations[axis], axis, 2
            )
            outs.append(out)
            pads.append((begin, end))
        return outs, pads

    def output_dims(self, input_shape: ShapeFact, channels: Dim) -> list[Dim]:
        """Output shape fact; spatial extents stay unknown until the input's are known."""
        spatial = [input_shape[a] for a in self.spatial_axes]
        if all(d.is_known for d in spatial):
            outs, _ = self.output_spatial([d.value for d in spatial])  # type: ignore[misc]
            out_spatial = [Dim.known(o) for o in outs]
        else:
            out_spatial = [UNKNOWN, UNKNOWN]
        if self.nhwc:
            return [input_shape[0], *out_spatial, channels]
        return [input_shape[0], channels, *out_spatial]

    def windows(self, padded: np.ndarray, out_hw: Sequence[int]):
        """Yield (kh, kw, view) for each kernel tap over an NCHW padded array."""
        (sh, sw), (dh, dw) = self.strides, self.dilations
        ho, wo = out_hw
        for kh in range(self.kernel_shape[0]):
            for kw in range(self.kernel_shape[1]):
                h0, w0 = kh * dh, kw * dw
                yield kh, kw, padded[
                    :, :, h0 : h0 + sh * (ho - 1) + 1 : sh, w0 : w0 + sw * (wo - 1) + 1 : sw
                ]


def _pair(values: Sequence[int] | int | None, default: int) -> tuple[int, int]:
    if values is None:
        return (default, default)
    if isinstance(values, int):
        return (values, values)
    values = [int(v) for v in values]
    if len(values) == 1:
        return (values[0], values[0])
    if len(values) != 2:
        raise ValueError(f"Expected 2 spatial values, got {values}")
    return (values[0], values[1])


def _to_nchw(x: np.ndarray, nhwc: bool) -> np.ndarray:
    return np.transpose(x, (0, 3, 1, 2)) if nhwc else x


def _from_nchw(x: np.ndarray, nhwc: bool) -> np.ndarray:
    return np.ascontiguousarray(np.transpose(x, (0, 2, 3, 1)) if nhwc else x)


@register_op("Conv", "Conv2D")
class Conv(Op):
    """2-D convolution: x, kernel, optional 1-D bias.

    Data is NCHW (or NHWC), kernel is OIHW (or HWIO).
    """

    op_type = "Conv"
    input_arity = (2, 3)

    def __init__(
        self,
        strides: Sequence[int] | None = None,
        dilations: Sequence[int] | None = None,
        pads: Sequence[int] | None = None,
        auto_pad: str | None = None,
        padding: PaddingSpec | str | None = None,
        group: int = 1,
        groups: int | None = None,
        kernel_shape: Sequence[int] | None = None,
        data_format: str = "NCHW",
        kernel_format: str = "OIHW",
    ) -> None:
        self.strides = _pair(strides, 1)
        self.dilations = _pair(dilations, 1)
        if padding is None:
            padding = pads if pads is not None and auto_pad in (None, "NOTSET") else auto_pad
        self.padding = PaddingSpec.parse(padding)
        self.groups = int(groups if groups is not None else group)
        if self.groups <= 0:
            raise ValueError("Conv groups must be a positive integer")
        self.kernel_shape = _pair(kernel_shape, 0) if kernel_shape is not None else None
        self.nhwc = data_format.upper() == "NHWC"
        self.hwio = kernel_format.upper() == "HWIO"

    def attributes(self) -> dict[str, object]:
        return {
            "strides": list(self.strides),
            "dilations": list(self.dilations),
            "padding": self.padding,
            "groups": self.groups,
        }

    def _kernel_oihw(self, kernel: np.ndarray) -> np.ndarray:
        return np.transpose(kernel, (3, 2, 0, 1)) if self.hwio else kernel

    def _patch(self, kh: int, kw: int) -> Patch:
        return Patch((kh, kw), self.strides, self.dilations, self.padding, self.nhwc)

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x, kernel = inputs[0], inputs[1]
        _require_float(self, x)
        _require_same_datatype(self, inputs)
        if x.rank != 4 or kernel.rank != 4:
            raise ShapeMismatch("Conv expects rank-4 data and kernel")
        data = _to_nchw(x.array, self.nhwc)
        w = self._kernel_oihw(kernel.array)
        n, c_in, h, wd = data.shape
        c_out, c_per_group, kh, kw = w.shape
        if c_per_group * self.groups != c_in or c_out % self.groups != 0:
            raise ShapeMismatch(
                f"Conv channel mismatch: input has {c_in}, kernel {list(w.shape)}, groups {self.groups}"
            )
        patch = self._patch(kh, kw)
        (ho, wo), ((pt, pb), (pl, pr)) = patch.output_spatial([h, wd])
        padded = np.pad(data, ((0, 0), (0, 0), (pt, pb), (pl, pr)))
        out = np.zeros((n, c_out, ho, wo), dtype=data.dtype)
        o_per_group = c_out // self.groups
        for i, j, view in patch.windows(padded, (ho, wo)):
            for g in range(self.groups):
                xs = view[:, g * c_per_group : (g + 1) * c_per_group]
                ws = w[g * o_per_group : (g + 1) * o_per_group, :, i, j]
                out[:, g * o_per_group : (g + 1) * o_per_group] += np.einsum("nchw,oc->nohw", xs, ws)
        if len(inputs) == 3:
            bias = inputs[2]
            if bias.shape != (c_out,):
                raise ShapeMismatch(f"Conv bias must have shape [{c_out}], got {list(bias.shape)}")
            out += bias.array.reshape(1, c_out, 1, 1)
        return [Tensor(_from_nchw(out, self.nhwc), x.datatype)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        facts = same_datatype(list(inputs) + pad_facts(outputs, 1))
        ins, out = facts[:-1], facts[-1]
        _require_float_fact(self, ins[0])
        x = with_shape(ins[0], [UNKNOWN] * 4)
        k = with_shape(ins[1], [UNKNOWN] * 4)
        o_axis, i_axis, sp = (3, 2, (0, 1)) if self.hwio else (0, 1, (2, 3))
        if self.kernel_shape is not None:
            k = with_shape(
                k,
                [Dim.known(self.kernel_shape[sp.index(a)]) if a in sp else UNKNOWN for a in range(4)],
            )
        xs, ks = x.shape, k.shape
        c_axis = 3 if self.nhwc else 1
        if xs[c_axis].is_known and ks[i_axis].is_known:  # type: ignore[index]
            if ks[i_axis].value * self.groups != xs[c_axis].value:  # type: ignore[index,operator]
                raise ShapeMismatch(
                    f"Conv input channels {xs[c_axis]} != kernel {ks[i_axis]} x groups {self.groups}"  # type: ignore[index]
                )
        c_out = ks[o_axis]  # type: ignore[index]
        rest = list(ins[2:])
        if rest:
            rest[0] = with_shape(rest[0], [c_out])
            c_out = rest[0].shape[0]  # type: ignore[index]
            k = with_shape(k, [c_out if a == o_axis else UNKNOWN for a in range(4)])
            ks = k.shape
        if ks[sp[0]].is_known and ks[sp[1]].is_known:  # type: ignore[index]
            patch = self._patch(ks[sp[0]].value, ks[sp[1]].value)  # type: ignore[index,arg-type]
            out = with_shape(out, patch.output_dims(xs, c_out))  # type: ignore[arg-type]
        else:
            dims = [xs[0], UNKNOWN, UNKNOWN, UNKNOWN]  # type: ignore[index]
            dims[c_axis] = c_out
            out = with_shape(out, dims)
        return [x, k, *rest], [out]


class Pool(Op):
    """Shared geometry for 2-D max / average pooling."""

    def __init__(
        self,
        kernel_shape: Sequence[int],
        strides: Sequence[int] | None = None,
        pads: Sequence[int] | None = None,
        auto_pad: str | None = None,
        padding: PaddingSpec | str | None = None,
        data_format: str = "NCHW",
    ) -> None:
        if padding is None:
            padding = pads if pads is not None and auto_pad in (None, "NOTSET") else auto_pad
        self.patch = Patch(
            kernel_shape=_pair(kernel_shape, 1),
            strides=_pair(strides, 1),
            padding=PaddingSpec.parse(padding),
            nhwc=data_format.upper() == "NHWC",
        )

    def attributes(self) -> dict[str, object]:
        return {
            "kernel_shape": list(self.patch.kernel_shape),
            "strides": list(self.patch.strides),
            "padding": self.patch.padding,
        }

    def check_datatype(self, dt: DataType) -> None:
        if not dt.is_numeric:
            raise TypeMismatch(f"{self.op_type} does not support datatype {dt.name}")

    def _prepare(self, x: Tensor) -> tuple[np.ndarray, tuple[int, int], list[tuple[int, int]]]:
        if x.rank != 4:
            raise ShapeMismatch(f"{self.op_type} expects rank-4 data, got rank {x.rank}")
        data = _to_nchw(x.array, self.patch.nhwc)
        out_hw, pads = self.patch.output_spatial(data.shape[2:])
        return data, (out_hw[0], out_hw[1]), pads

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        x, out = same_datatype(pad_facts(inputs, 1) + pad_facts(outputs, 1))
        if x.datatype is not None:
            self.check_datatype(x.datatype)
        x = with_shape(x, [UNKNOWN] * 4)
        channels = x.shape[self.patch.channel_axis]  # type: ignore[index]
        out = with_shape(out, self.patch.output_dims(x.shape, channels))  # type: ignore[arg-type]
        return [x], [out]


@register_op("MaxPool")
class MaxPool(Pool):
    op_type = "MaxPool"

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x = inputs[0]
        self.check_datatype(x.datatype)
        data, (ho, wo), ((pt, pb), (pl, pr)) = self._prepare(x)
        if x.datatype.is_float:
            lowest = -np.inf
        else:
            lowest = np.iinfo(data.dtype).min
        padded = np.pad(data, ((0, 0), (0, 0), (pt, pb), (pl, pr)), constant_values=lowest)
        out = np.full(data.shape[:2] + (ho, wo), lowest, dtype=data.dtype)
        for _, _, view in self.patch.windows(padded, (ho, wo)):
            out = np.maximum(out, view)
        return [Tensor(_from_nchw(out, self.patch.nhwc), x.datatype)]


@register_op("AvgPool", "AveragePool")
class AvgPool(Pool):
    """Average pooling; padded cells are excluded from the count."""

    op_type = "AvgPool"

    def check_datatype(self, dt: DataType) -> None:
        if not dt.is_float:
            raise TypeMismatch(f"AvgPool expects a float tensor, got {dt.name}")

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x = inputs[0]
        self.check_datatype(x.datatype)
        data, (ho, wo), ((pt, pb), (pl, pr)) = self._prepare(x)
        pad = ((0, 0), (0, 0), (pt, pb), (pl, pr))
        padded = np.pad(data, pad)
        mask = np.pad(np.ones((1, 1) + data.shape[2:], dtype=data.dtype), pad)
        total = np.zeros(data.shape[:2] + (ho, wo), dtype=data.dtype)
        count = np.zeros((1, 1, ho, wo), dtype=data.dtype)
        for (_, _, view), (_, _, ones) in zip(
            self.patch.windows(padded, (ho, wo)), self.patch.windows(mask, (ho, wo))
        ):
            total += view
            count += ones
        with np.errstate(all="ignore"):
            out = total / count
        return [Tensor(_from_nchw(out.astype(data.dtype, copy=False), self.patch.nhwc), x.datatype)]
