from __future__ import annotations

import os
from typing import Any

import numpy as np
import onnx
from onnx import numpy_helper

from inferflow.errors import InvalidInput
from inferflow.ir.dtypes import DataType
from inferflow.ir.facts import STREAMING, UNKNOWN, Dim, TensorFact
from inferflow.ir.graph import Graph, InletId, OutletId
from inferflow.ir.tensor import Tensor
from inferflow.ops.base import Op
from inferflow.ops.konst import Const, Placeholder
from inferflow.ops.registry import OpRegistry, global_registry
from inferflow.utils.logger import get_logger

from .base import Parser

logger = get_logger(__name__)

_DTYPE_MAP = {
    onnx.TensorProto.FLOAT: DataType.F32,
    onnx.TensorProto.UINT8: DataType.U8,
    onnx.TensorProto.INT8: DataType.I8,
    onnx.TensorProto.UINT16: DataType.U16,
    onnx.TensorProto.INT16: DataType.I16,
    onnx.TensorProto.INT32: DataType.I32,
    onnx.TensorProto.INT64: DataType.I64,
    onnx.TensorProto.BOOL: DataType.BOOL,
    onnx.TensorProto.FLOAT16: DataType.F16,
    onnx.TensorProto.DOUBLE: DataType.F64,
    onnx.TensorProto.UINT32: DataType.U32,
    onnx.TensorProto.UINT64: DataType.U64,
    onnx.TensorProto.STRING: DataType.STRING,
}

# ONNX op type -> registered op type
_OP_MAP = {
    "Add": "Add",
    "Sub": "Sub",
    "Mul": "Mul",
    "Div": "Div",
    "Mod": "Rem",
    "Pow": "Pow",
    "Max": "Maximum",
    "Min": "Minimum",
    "Sum": "AddN",
    "Equal": "Equal",
    "Less": "Less",
    "LessOrEqual": "LessEqual",
    "Greater": "Greater",
    "GreaterOrEqual": "GreaterEqual",
    "And": "And",
    "Or": "Or",
    "Not": "Not",
    "Abs": "Abs",
    "Neg": "Neg",
    "Sqrt": "Sqrt",
    "Exp": "Exp",
    "Log": "Log",
    "Tanh": "Tanh",
    "Floor": "Floor",
    "Ceil": "Ceil",
    "Sigmoid": "Sigmoid",
    "Relu": "Relu",
    "Identity": "Identity",
    "Reshape": "Reshape",
    "Transpose": "Transpose",
    "Concat": "Concat",
    "Squeeze": "Squeeze",
    "Unsqueeze": "ExpandDims",
    "Flatten": "Flatten",
    "Cast": "Cast",
    "Shape": "Shape",
    "ReduceSum": "ReduceSum",
    "ReduceMean": "ReduceMean",
    "ReduceMax": "ReduceMax",
    "ReduceMin": "ReduceMin",
    "ReduceProd": "ReduceProd",
    "MatMul": "MatMul",
    "Softmax": "Softmax",
    "BatchNormalization": "BatchNorm",
    "Conv": "Conv",
    "MaxPool": "MaxPool",
    "AveragePool": "AvgPool",
}

# inputs that newer opsets pass as tensors but the ops take as attributes
_STATIC_INPUTS = {
    "Squeeze": {1: "axes"},
    "Unsqueeze": {1: "axes"},
    "ReduceSum": {1: "axes"},
    "ReduceMean": {1: "axes"},
    "ReduceMax": {1: "axes"},
    "ReduceMin": {1: "axes"},
    "ReduceProd": {1: "axes"},
}

# variadic ONNX ops lowered onto a chain of binary nodes
_CHAINED = {"Max", "Min"}

# attributes accepted only at their default value
_DEFAULT_ONLY = {
    "Mod": {"fmod": 0},
    "MaxPool": {"ceil_mode": 0, "storage_order": 0, "dilations": None},
    "AveragePool": {"ceil_mode": 0, "count_include_pad": 0, "dilations": None},
    "BatchNormalization": {"training_mode": 0},
    "Reshape": {"allowzero": 0},
    "ReduceSum": {"noop_with_empty_axes": 0},
    "ReduceMean": {"noop_with_empty_axes": 0},
    "ReduceMax": {"noop_with_empty_axes": 0},
    "ReduceMin": {"noop_with_empty_axes": 0},
    "ReduceProd": {"noop_with_empty_axes": 0},
}


def _datatype(elem_type: int) -> DataType:
    dt = _DTYPE_MAP.get(elem_type)
    if dt is None:
        name = onnx.TensorProto.DataType.Name(elem_type)
        raise InvalidInput(f"Unsupported ONNX element type {name}")
    return dt


def _fact_from_value_info(vi: onnx.ValueInfoProto) -> TensorFact:
    t = vi.type.tensor_type
    dt = _datatype(t.elem_type) if t.elem_type else None
    if not t.HasField("shape"):
        return TensorFact(datatype=dt)
    dims: list[Dim] = []
    for axis, d in enumerate(t.shape.dim):
        if d.HasField("dim_value"):
            dims.append(Dim.known(d.dim_value))
        else:
            # symbolic leading axis is the batch / stream axis
            dims.append(STREAMING if axis == 0 else UNKNOWN)
    return TensorFact(datatype=dt, shape=tuple(dims))


def _parse_attributes(node: onnx.NodeProto) -> dict[str, Any]:
    attrs: dict[str, Any] = {}
    for a in node.attribute:
        if a.type == onnx.AttributeProto.INT:
            attrs[a.name] = int(a.i)
        elif a.type == onnx.AttributeProto.FLOAT:
            attrs[a.name] = float(a.f)
        elif a.type == onnx.AttributeProto.STRING:
            attrs[a.name] = a.s.decode("utf-8", errors="ignore")
        elif a.type == onnx.AttributeProto.INTS:
            attrs[a.name] = [int(x) for x in a.ints]
        elif a.type == onnx.AttributeProto.FLOATS:
            attrs[a.name] = [float(x) for x in a.floats]
        elif a.type == onnx.AttributeProto.TENSOR:
            attrs[a.name] = numpy_helper.to_array(a.t)
        else:
            raise InvalidInput(
                f"Unsupported attribute '{a.name}' on {node.op_type} node '{node.name}'"
            )
    return attrs


def _check_defaults(node: onnx.NodeProto, attrs: dict[str, Any]) -> None:
    for name, default in _DEFAULT_ONLY.get(node.op_type, {}).items():
        if name not in attrs:
            continue
        value = attrs.pop(name)
        if default is None:
            ok = all(v == 1 for v in value)
        else:
            ok = value == default
        if not ok:
            raise InvalidInput(f"{node.op_type} attribute {name}={value!r} is not supported")


class OnnxParser(Parser):
    """Build a Graph from an ONNX model.

    Initializers become Const nodes, graph inputs become designated Placeholder
    nodes, and every ONNX node becomes one registered op.
    """

    def __init__(self, registry: OpRegistry | None = None) -> None:
        self.registry = registry or global_registry

    def parse(self, model_or_path: Any) -> Graph:
        model = self._load_model(model_or_path)
        g = Graph(name=model.graph.name or "onnx")
        values: dict[str, OutletId] = {}
        constants: dict[str, np.ndarray] = {}
        used: set[str] = set()

        for init in model.graph.initializer:
            arr = numpy_helper.to_array(init)
            constants[init.name] = arr
            node_id = g.add_node(Const(Tensor(arr, _datatype(init.data_type))), name=init.name)
            values[init.name] = OutletId(node_id, 0)
            used.add(init.name)

        for inp in model.graph.input:
            if inp.name in values:
                continue
            fact = _fact_from_value_info(inp)
            node_id = g.add_node(Placeholder(fact=fact), name=inp.name)
            g.designate_input(node_id)
            values[inp.name] = OutletId(node_id, 0)
            used.add(inp.name)

        # inputs defined later in the file are wired once every node exists
        pending: list[tuple[int, list[str]]] = []

        def wire(op: Op, names: list[str], name: str) -> int:
            if all(x in values for x in names):
                return g.add_node(op, [values[x] for x in names], name=name)
            node_id = g.add_node(op, name=name)
            pending.append((node_id, names))
            return node_id

        for index, n in enumerate(model.graph.node):
            op_type = _OP_MAP.get(n.op_type)
            if op_type is None:
                raise InvalidInput(f"Unsupported ONNX op type: {n.op_type}")
            attrs = _parse_attributes(n)
            _check_defaults(n, attrs)
            if n.op_type == "Cast":
                attrs["to"] = _datatype(attrs["to"])
            names = list(n.input)
            for position, attr in sorted(_STATIC_INPUTS.get(n.op_type, {}).items(), reverse=True):
                if position >= len(names) or not names[position]:
                    continue
                if names[position] not in constants:
                    raise InvalidInput(
                        f"{n.op_type} input '{names[position]}' must be an initializer"
                    )
                attrs[attr] = constants[names[position]].tolist()
                del names[position]
            while names and not names[-1]:
                names.pop()
            if any(not name for name in names):
                raise InvalidInput(f"{n.op_type} node '{n.name}' skips a non-trailing input")

            name = n.name or f"{n.op_type}_{index}"
            if name in used:
                name = f"{name}_{index}"
            used.add(name)
            if n.op_type in _CHAINED:
                if len(names) == 1:
                    op_type = "Identity"
                # left fold into binary nodes: ((a op b) op c) ...
                for k in range(1, len(names) - 1):
                    link = f"{name}/{k}"
                    if link in used or link in values:
                        raise InvalidInput(f"Node name '{link}' is already used")
                    used.add(link)
                    node_id = wire(self.registry.create(op_type, **attrs), names[:2], link)
                    values[link] = OutletId(node_id, 0)
                    names = [link] + names[2:]

            op = self.registry.create(op_type, **attrs)
            node_id = wire(op, names, name)
            for slot, out_name in enumerate(n.output):
                if not out_name:
                    continue
                if slot >= op.output_count:
                    continue
                values[out_name] = OutletId(node_id, slot)

        for node_id, names in pending:
            for inlet, x in enumerate(names):
                if x not in values:
                    raise InvalidInput(f"Value '{x}' is never produced", node_id=node_id)
                g.add_edge(values[x], InletId(node_id, inlet))

        for out in model.graph.output:
            if out.name not in values:
                raise InvalidInput(f"Graph output '{out.name}' is never produced")
            outlet = values[out.name]
            g.designate_output(outlet.node, outlet.slot)

        g.validate()
        logger.info(
            "parsed ONNX graph '%s': %d nodes, %d inputs, %d outputs",
            g.name,
            len(g),
            len(g.inputs),
            len(g.outputs),
        )
        return g

    def _load_model(self, model_or_path: Any) -> onnx.ModelProto:
        if isinstance(model_or_path, onnx.ModelProto):
            return model_or_path
        if isinstance(model_or_path, (bytes, bytearray)):
            return onnx.load_model_from_string(bytes(model_or_path))
        if isinstance(model_or_path, (str, os.PathLike)):
            return onnx.load(os.fspath(model_or_path))
        raise TypeError("Unsupported model type for ONNX parser")
