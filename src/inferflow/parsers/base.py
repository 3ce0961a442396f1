from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from inferflow.ir.graph import Graph


class Parser(ABC):
    """Parser interface for importing serialized models into a Graph."""

    @abstractmethod
    def parse(self, model: Any) -> Graph:
        """Convert the given model into a Graph with inputs and outputs designated."""
        raise NotImplementedError
