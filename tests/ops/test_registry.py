from __future__ import annotations

from collections.abc import Sequence

import pytest

from inferflow.errors import InvalidInput
from inferflow.ir import Tensor
from inferflow.ops import Op, OpRegistry, Reshape, create_op, global_registry


class Echo(Op):
    op_type = "Echo"

    def eval(self, inputs: Sequence[Tensor]) -> list[Tensor]:
        return [inputs[0]]


def test_builtin_ops_are_registered_under_their_tags() -> None:
    names = global_registry.names()
    assert names == sorted(names)
    for tag in ("Add", "Const", "Conv", "Placeholder", "ReduceSum", "Unsqueeze", "AveragePool"):
        assert tag in names
    assert "Echo" not in global_registry


def test_create_builds_ops_with_attributes() -> None:
    op = create_op("Reshape", shape=[2, -1])
    assert isinstance(op, Reshape)
    assert op.attributes() == {"shape": [2, -1]}
    with pytest.raises(InvalidInput, match="Unknown op type"):
        create_op("NoSuchOp")
    with pytest.raises(InvalidInput, match="Bad attributes for Relu"):
        create_op("Relu", alpha=0.1)


def test_private_registry() -> None:
    registry = OpRegistry()
    registry.register("Echo", Echo)
    assert registry.names() == ["Echo"]
    assert registry.get("Echo").factory is Echo
    assert isinstance(registry.create("Echo"), Echo)
    assert registry.get("Add") is None
