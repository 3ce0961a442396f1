"""Built-in operators. Importing this package registers every op by its type tag."""

from .array import Cast, Concat, ExpandDims, Flatten, Pack, Reshape, Shape, Slice, Squeeze, Transpose
from .base import Op
from .konst import Const, Identity, Placeholder
from .math import (
    Abs,
    Add,
    AddN,
    And,
    Ceil,
    Div,
    Equal,
    Exp,
    Floor,
    Greater,
    GreaterEqual,
    Less,
    LessEqual,
    Log,
    Maximum,
    Minimum,
    Mul,
    Neg,
    Not,
    NotEqual,
    Or,
    Pow,
    Relu,
    Rem,
    Rsqrt,
    Sigmoid,
    Sqrt,
    Sub,
    Tanh,
)
from .nn import AvgPool, BatchNorm, Conv, MatMul, MaxPool, PaddingSpec, Patch, Softmax
from .reduce import Reduce, ReduceMax, ReduceMean, ReduceMin, ReduceProd, ReduceSum
from .registry import OpRegistry, create_op, global_registry, register_op

__all__ = [
    "Op",
    "OpRegistry",
    "global_registry",
    "register_op",
    "create_op",
    "Const",
    "Placeholder",
    "Identity",
    "Add",
    "Sub",
    "Mul",
    "Div",
    "Rem",
    "Pow",
    "Maximum",
    "Minimum",
    "AddN",
    "Equal",
    "NotEqual",
    "Less",
    "LessEqual",
    "Greater",
    "GreaterEqual",
    "And",
    "Or",
    "Not",
    "Abs",
    "Neg",
    "Sqrt",
    "Rsqrt",
    "Exp",
    "Log",
    "Tanh",
    "Floor",
    "Ceil",
    "Sigmoid",
    "Relu",
    "Reshape",
    "Transpose",
    "Concat",
    "Pack",
    "Slice",
    "Squeeze",
    "ExpandDims",
    "Flatten",
    "Cast",
    "Shape",
    "Reduce",
    "ReduceSum",
    "ReduceMean",
    "ReduceMax",
    "ReduceMin",
    "ReduceProd",
    "MatMul",
    "Softmax",
    "BatchNorm",
    "Conv",
    "MaxPool",
    "AvgPool",
    "PaddingSpec",
    "Patch",
]
