from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from inferflow.errors import EvalError
from inferflow.ir.dtypes import DataType
from inferflow.ir.facts import DimLike, TensorFact, unify
from inferflow.ir.tensor import Tensor, as_tensor

from .base import Facts, Op
from .registry import register_op
from .rules import pad_facts, same_datatype, same_shape


@register_op()
class Const(Op):
    """A node whose single output is a fixed tensor."""

    op_type = "Const"
    input_arity = 0

    def __init__(self, value: Any, datatype: DataType | str | None = None) -> None:
        self.value = as_tensor(value, datatype)

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        return [self.value]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        outputs = pad_facts(outputs, 1)
        return inputs, [unify(outputs[0], TensorFact.from_tensor(self.value))]

    def is_const(self) -> bool:
        return True

    def attributes(self) -> dict[str, object]:
        return {"datatype": self.value.datatype.name, "shape": list(self.value.shape)}


@register_op("Placeholder", "Source")
class Placeholder(Op):
    """Externally supplied input; its fact is what the caller promises to feed."""

    op_type = "Placeholder"
    input_arity = 0

    def __init__(
        self,
        datatype: DataType | str | None = None,
        shape: Sequence[DimLike] | None = None,
        fact: TensorFact | None = None,
    ) -> None:
        declared = TensorFact.of(datatype, shape)
        self.fact = unify(fact, declared) if fact is not None else declared

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        raise EvalError("Placeholder has no value; it must be fed by the caller")

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        outputs = pad_facts(outputs, 1)
        return inputs, [unify(outputs[0], self.fact)]

    def is_foldable(self) -> bool:
        return False

    def declared_fact(self) -> TensorFact:
        return self.fact

    def attributes(self) -> dict[str, object]:
        return {"fact": str(self.fact)}


@register_op("Identity")
class Identity(Op):
    op_type = "Identity"

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        self.check_inputs(inputs)
        return [inputs[0]]

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        both = [pad_facts(inputs, 1)[0], pad_facts(outputs, 1)[0]]
        both = same_shape(same_datatype(both))
        if both[0].value is not None:
            both[1] = unify(both[1], both[0])
        elif both[1].value is not None:
            both[0] = unify(both[0], both[1])
        return [both[0]], [both[1]]
