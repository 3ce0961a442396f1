from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from inferflow.errors import InvalidInput

from .base import Op

OpFactory = Callable[..., Op]
T = TypeVar("T", bound=type)


@dataclass
class RegisteredOp:
    op_type: str
    factory: OpFactory


class OpRegistry:
    """Op type tag -> factory, so loaders can build ops by name."""

    def __init__(self) -> None:
        self._items: dict[str, RegisteredOp] = {}

    def register(self, op_type: str, factory: OpFactory) -> None:
        self._items[op_type] = RegisteredOp(op_type=op_type, factory=factory)

    def get(self, op_type: str) -> RegisteredOp | None:
        return self._items.get(op_type)

    def names(self) -> list[str]:
        return sorted(self._items)

    def __contains__(self, op_type: str) -> bool:
        return op_type in self._items

    def create(self, op_type: str, **attrs: Any) -> Op:
        item = self.get(op_type)
        if not item:
            raise InvalidInput(f"Unknown op type: {op_type}")
        try:
            return item.factory(**attrs)
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"Bad attributes for {op_type}: {exc}") from exc


global_registry = OpRegistry()


def register_op(*op_types: str) -> Callable[[T], T]:
    """Class decorator registering an op class under its tag (and any aliases)."""

    def wrapper(cls: T) -> T:
        names = op_types or (cls.op_type,)  # type: ignore[attr-defined]
        for name in names:
            global_registry.register(name, cls)
        return cls

    return wrapper


def create_op(op_type: str, **attrs: Any) -> Op:
    return global_registry.create(op_type, **attrs)
