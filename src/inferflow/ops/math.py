"""Elementwise arithmetic, comparison and logic operators.

Numeric policy:
- binary inputs must share a datatype (no implicit promotion); numpy
  multidirectional broadcasting applies;
- integer overflow wraps around (two's complement);
- float division by zero follows IEEE (inf / nan);
- integer `Div` truncates toward zero, integer `Div`/`Rem` by zero is an
  EvalError, `Rem` takes the sign of the divisor (floor-mod);
- integer `Pow` with a negative exponent is an EvalError;
- transcendental functions accept floats only.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import ClassVar

import numpy as np

from inferflow.errors import EvalError, ShapeMismatch, TypeMismatch
from inferflow.ir.dtypes import DataType
from inferflow.ir.tensor import Tensor

from .base import Facts, Op
from .registry import register_op
from .rules import broadcast_rule, pad_facts, same_datatype, same_shape, with_datatype

DTypeCheck = Callable[[DataType], bool]


def _numeric(dt: DataType) -> bool:
    return dt.is_numeric


def _float(dt: DataType) -> bool:
    return dt.is_float


def _boolean(dt: DataType) -> bool:
    return dt is DataType.BOOL


def _any(dt: DataType) -> bool:
    return dt is not DataType.OPAQUE


def _check_datatype(op: Op, dt: DataType, check: DTypeCheck) -> None:
    if not check(dt):
        raise TypeMismatch(f"{op.op_type} does not support datatype {dt.name}")


def _broadcast(op: Op, arrays: Sequence[np.ndarray]) -> None:
    try:
        np.broadcast_shapes(*(a.shape for a in arrays))
    except ValueError:
        shapes = " vs ".join(str(list(a.shape)) for a in arrays)
        raise ShapeMismatch(f"{op.op_type} cannot broadcast {shapes}") from None


class Binary(Op):
    """Two-input elementwise op with broadcasting."""

    input_arity = 2
    accepts: ClassVar[DTypeCheck] = staticmethod(_numeric)
    # datatype of the result, None = same as inputs
    result_datatype: ClassVar[DataType | None] = None

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        raise NotImplementedError

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        a, b = inputs
        if a.datatype is not b.datatype:
            raise TypeMismatch(
                f"{self.op_type} inputs differ in datatype: {a.datatype.name} vs {b.datatype.name}"
            )
        _check_datatype(self, a.datatype, type(self).accepts)
        _broadcast(self, [a.array, b.array])
        out_dt = self.result_datatype or a.datatype
        with np.errstate(all="ignore"):
            out = self.compute(a.array, b.array, a.datatype)
        return [Tensor(np.asarray(out).astype(out_dt.numpy_dtype, copy=False), out_dt)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        inputs = same_datatype(pad_facts(inputs, 2))
        out = pad_facts(outputs, 1)[0]
        dt = inputs[0].datatype
        if dt is not None:
            _check_datatype(self, dt, type(self).accepts)
        if self.result_datatype is not None:
            out = with_datatype(out, self.result_datatype)
        elif dt is not None:
            out = with_datatype(out, dt)
        elif out.datatype is not None:
            inputs = same_datatype([with_datatype(inputs[0], out.datatype), inputs[1]])
        inputs, out = broadcast_rule(inputs, out)
        return inputs, [out]


@register_op()
class Add(Binary):
    op_type = "Add"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        return np.add(a, b)


@register_op()
class Sub(Binary):
    op_type = "Sub"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        return np.subtract(a, b)


@register_op()
class Mul(Binary):
    op_type = "Mul"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        return np.multiply(a, b)


def _check_nonzero(op: Op, b: np.ndarray) -> None:
    if np.any(b == 0):
        raise EvalError(f"{op.op_type}: integer division by zero")


@register_op()
class Div(Binary):
    op_type = "Div"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        if dt.is_float:
            return np.true_divide(a, b)
        _check_nonzero(self, b)
        q = np.floor_divide(a, b)
        r = np.remainder(a, b)
        # floor -> truncation for operands of opposite signs
        fix = (r != 0) & ((a < 0) != (b < 0))
        return q + fix.astype(q.dtype)


@register_op("Rem", "FloorMod", "Mod")
class Rem(Binary):
    op_type = "Rem"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        if not dt.is_float:
            _check_nonzero(self, b)
        return np.mod(a, b)


@register_op()
class Pow(Binary):
    op_type = "Pow"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        if dt.is_integer and dt.is_signed and np.any(b < 0):
            raise EvalError("Pow: negative exponent for an integer base")
        return np.power(a, b)


@register_op("Maximum", "Max")
class Maximum(Binary):
    op_type = "Maximum"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        return np.maximum(a, b)


@register_op("Minimum", "Min")
class Minimum(Binary):
    op_type = "Minimum"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        return np.minimum(a, b)


class Comparison(Binary):
    accepts = staticmethod(_any)
    result_datatype = DataType.BOOL


@register_op()
class Equal(Comparison):
    op_type = "Equal"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        return a == b


@register_op()
class NotEqual(Comparison):
    op_type = "NotEqual"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        return a != b


@register_op()
class Less(Comparison):
    op_type = "Less"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        return a < b


@register_op()
class LessEqual(Comparison):
    op_type = "LessEqual"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        return a <= b


@register_op()
class Greater(Comparison):
    op_type = "Greater"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        return a > b


@register_op()
class GreaterEqual(Comparison):
    op_type = "GreaterEqual"

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        return a >= b


@register_op()
class And(Binary):
    op_type = "And"
    accepts = staticmethod(_boolean)

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        return np.logical_and(a, b)


@register_op()
class Or(Binary):
    op_type = "Or"
    accepts = staticmethod(_boolean)

    def compute(self, a: np.ndarray, b: np.ndarray, dt: DataType) -> np.ndarray:
        return np.logical_or(a, b)


@register_op()
class AddN(Op):
    """Sum of any number of same-typed, broadcast-compatible inputs."""

    op_type = "AddN"
    input_arity = None

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        dt = inputs[0].datatype
        if any(t.datatype is not dt for t in inputs):
            raise TypeMismatch("AddN inputs must share one datatype")
        _check_datatype(self, dt, _numeric)
        _broadcast(self, [t.array for t in inputs])
        with np.errstate(all="ignore"):
            total = inputs[0].array
            for t in inputs[1:]:
                total = np.add(total, t.array)
        return [Tensor(np.asarray(total).astype(dt.numpy_dtype, copy=False), dt)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        facts = same_datatype(list(inputs) + pad_facts(outputs, 1))
        ins, out = facts[:-1], facts[-1]
        ins, out = broadcast_rule(ins, out)
        return ins, [out]


class Unary(Op):
    """Single-input elementwise op; output has the input's shape and datatype."""

    input_arity = 1
    accepts: ClassVar[DTypeCheck] = staticmethod(_float)

    def compute(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        x = inputs[0]
        _check_datatype(self, x.datatype, type(self).accepts)
        with np.errstate(all="ignore"):
            out = self.compute(x.array)
        return [Tensor(np.asarray(out).astype(x.datatype.numpy_dtype, copy=False), x.datatype)]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        both = same_shape(same_datatype(pad_facts(inputs, 1) + pad_facts(outputs, 1)))
        if both[0].datatype is not None:
            _check_datatype(self, both[0].datatype, type(self).accepts)
        return [both[0]], [both[1]]


@register_op()
class Abs(Unary):
    op_type = "Abs"
    accepts = staticmethod(_numeric)

    def compute(self, x: np.ndarray) -> np.ndarray:
        return np.abs(x)


@register_op()
class Neg(Unary):
    op_type = "Neg"
    accepts = staticmethod(_numeric)

    def compute(self, x: np.ndarray) -> np.ndarray:
        return np.negative(x)


@register_op()
class Sqrt(Unary):
    op_type = "Sqrt"

    def compute(self, x: np.ndarray) -> np.ndarray:
        return np.sqrt(x)


@register_op()
class Rsqrt(Unary):
    op_type = "Rsqrt"

    def compute(self, x: np.ndarray) -> np.ndarray:
        return np.reciprocal(np.sqrt(x))


@register_op()
class Exp(Unary):
    op_type = "Exp"

    def compute(self, x: np.ndarray) -> np.ndarray:
        return np.exp(x)


@register_op()
class Log(Unary):
    op_type = "Log"

    def compute(self, x: np.ndarray) -> np.ndarray:
        return np.log(x)


@register_op()
class Tanh(Unary):
    op_type = "Tanh"

    def compute(self, x: np.ndarray) -> np.ndarray:
        return np.tanh(x)


@register_op()
class Floor(Unary):
    op_type = "Floor"

    def compute(self, x: np.ndarray) -> np.ndarray:
        return np.floor(x)


@register_op()
class Ceil(Unary):
    op_type = "Ceil"

    def compute(self, x: np.ndarray) -> np.ndarray:
        return np.ceil(x)


@register_op()
class Sigmoid(Unary):
    op_type = "Sigmoid"

    def compute(self, x: np.ndarray) -> np.ndarray:
        one = np.ones((), dtype=x.dtype)
        return np.reciprocal(one + np.exp(-x))


@register_op()
class Relu(Unary):
    op_type = "Relu"
    accepts = staticmethod(_numeric)

    def compute(self, x: np.ndarray) -> np.ndarray:
        return np.maximum(x, np.zeros((), dtype=x.dtype))


@register_op()
class Not(Unary):
    op_type = "Not"
    accepts = staticmethod(_boolean)

    def compute(self, x: np.ndarray) -> np.ndarray:
        return np.logical_not(x)
