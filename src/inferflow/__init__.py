"""inferflow: a small neural-network inference core.

Build a `Graph` of ops, annotate it with `analyse`, and run it through a `Plan`.
"""

from . import ops
from .errors import (
    AnalysisError,
    CycleDetected,
    EvalError,
    FactConflict,
    InferflowError,
    InvalidInput,
    MissingInput,
    ShapeMismatch,
    TypeMismatch,
)
from .ir import STREAMING, UNKNOWN, Analyser, Analysis, DataType, Dim, Graph, OutletId, Tensor, TensorFact, analyse
from .runtime import Plan, RunResult, RunStats
from .utils.config import AnalyserConfig, PlanConfig

__version__ = "0.1.0"

__all__ = [
    "ops",
    "Graph",
    "OutletId",
    "Tensor",
    "DataType",
    "Dim",
    "STREAMING",
    "UNKNOWN",
    "TensorFact",
    "Analyser",
    "Analysis",
    "analyse",
    "Plan",
    "RunResult",
    "RunStats",
    "AnalyserConfig",
    "PlanConfig",
    "InferflowError",
    "InvalidInput",
    "CycleDetected",
    "FactConflict",
    "TypeMismatch",
    "ShapeMismatch",
    "MissingInput",
    "EvalError",
    "AnalysisError",
]
