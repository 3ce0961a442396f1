from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import ClassVar, Union

from inferflow.errors import EvalError
from inferflow.ir.facts import TensorFact
from inferflow.ir.tensor import Tensor

Arity = Union[int, tuple[int, int], None]
Facts = list[TensorFact]


class Op(ABC):
    """Base class for operators.

    An op knows how to compute its outputs from concrete tensors (`eval`) and
    how to refine partial knowledge about its inputs and outputs (`infer`).
    Ops are stateless after construction; a single instance may be evaluated
    by many runs at once.
    """

    op_type: ClassVar[str] = "Op"
    # exact count, inclusive (min, max) range, or None for variadic
    input_arity: ClassVar[Arity] = 1

    @property
    def output_count(self) -> int:
        return 1

    def accepts_arity(self, n: int) -> bool:
        arity = self.input_arity
        if arity is None:
            return n >= 1
        if isinstance(arity, tuple):
            return arity[0] <= n <= arity[1]
        return n == arity

    def check_inputs(self, inputs: Sequence[object]) -> None:
        if not self.accepts_arity(len(inputs)):
            raise EvalError(f"{self.op_type} expects {self.input_arity} input(s), got {len(inputs)}")

    @abstractmethod
    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        raise NotImplementedError

    def infer(self, inputs: Facts, outputs: Facts) -> tuple[Facts, Facts]:
        """Refine facts; the default rule learns nothing."""
        return inputs, outputs

    def is_const(self) -> bool:
        return False

    def is_foldable(self) -> bool:
        """Whether the analyser may evaluate this op when all inputs are known."""
        return True

    def declared_fact(self) -> TensorFact | None:
        return None

    def attributes(self) -> dict[str, object]:
        return {}

    def describe(self) -> str:
        attrs = ", ".join(f"{k}={v!r}" for k, v in self.attributes().items())
        return f"{self.op_type}[{attrs}]" if attrs else self.op_type

    def __repr__(self) -> str:  # pragma: no cover
        return self.describe()
