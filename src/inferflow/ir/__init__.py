"""Graph IR data structures and analysis utilities."""

from .analyser import Analyser, Analysis, analyse
from .dtypes import DataType
from .facts import STREAMING, UNKNOWN, Dim, DimKind, TensorFact, unify, unify_all
from .graph import Graph, InletId, Node, OutletId
from .tensor import Tensor, as_tensor
from .utils import build_consumer_map, build_producer_map

__all__ = [
    "DataType",
    "Tensor",
    "as_tensor",
    "Dim",
    "DimKind",
    "STREAMING",
    "UNKNOWN",
    "TensorFact",
    "unify",
    "unify_all",
    "Graph",
    "Node",
    "OutletId",
    "InletId",
    "build_producer_map",
    "build_consumer_map",
    "Analyser",
    "Analysis",
    "analyse",
]
