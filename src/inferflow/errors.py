from __future__ import annotations


class InferflowError(Exception):
    """Base error with a stable code and optional node context."""

    default_code = "EINFERFLOW"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        node_id: int | None = None,
        node_name: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.node_id = node_id
        self.node_name = node_name

    def __str__(self) -> str:
        if self.node_id is None:
            return self.message
        return f"node #{self.node_id} ({self.node_name}): {self.message}"


class InvalidInput(InferflowError):
    """Malformed graph construction or plan request."""

    default_code = "EINVALID"


class CycleDetected(InferflowError):
    default_code = "ECYCLE"


class FactConflict(InferflowError):
    """Two pieces of knowledge about the same tensor disagree."""

    default_code = "EFACT"


class TypeMismatch(FactConflict):
    default_code = "ETYPE"


class ShapeMismatch(FactConflict):
    default_code = "ESHAPE"


class MissingInput(InferflowError):
    default_code = "EMISSING"


class EvalError(InferflowError):
    """An operator failed while computing its outputs.

    When raised by a Plan, `node_id`/`node_name`/`op_type` identify the failing
    node and `cause` holds the operator's own error.
    """

    default_code = "EEVAL"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        node_id: int | None = None,
        node_name: str | None = None,
        op_type: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, code=code, node_id=node_id, node_name=node_name)
        self.op_type = op_type
        self.cause = cause

    @classmethod
    def wrap(
        cls, cause: Exception, *, node_id: int, node_name: str, op_type: str
    ) -> EvalError:
        """Build the error a Plan raises for a failing node.

        Shape and type causes keep their kind, so callers can catch either
        `EvalError` or the more specific `ShapeMismatch` / `TypeMismatch`.
        """
        if isinstance(cause, ShapeMismatch):
            kind: type[EvalError] = ShapeEvalError
        elif isinstance(cause, TypeMismatch):
            kind = TypeEvalError
        else:
            kind = EvalError
        return kind(
            f"{op_type} failed: {cause}",
            code=getattr(cause, "code", None),
            node_id=node_id,
            node_name=node_name,
            op_type=op_type,
            cause=cause,
        )


class ShapeEvalError(EvalError, ShapeMismatch):
    pass


class TypeEvalError(EvalError, TypeMismatch):
    pass


class AnalysisError(InferflowError):
    """The analyser hit a contradiction or failed to converge."""

    default_code = "EANALYSIS"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        node_id: int | None = None,
        node_name: str | None = None,
        op_type: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, code=code, node_id=node_id, node_name=node_name)
        self.op_type = op_type
        self.cause = cause
