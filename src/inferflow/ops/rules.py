"""Building blocks for operator inference rules.

Each helper takes the facts an op currently sees and returns tightened ones.
They raise `TypeMismatch` / `ShapeMismatch` when the facts contradict the
constraint being expressed.
"""

from __future__ import annotations

from collections.abc import Sequence

from inferflow.errors import ShapeMismatch
from inferflow.ir.dtypes import DataType
from inferflow.ir.facts import (
    STREAMING,
    UNKNOWN,
    Dim,
    ShapeFact,
    TensorFact,
    format_shape,
    unify,
    unify_all,
)

Facts = list[TensorFact]
ONE = Dim.known(1)


def pad_facts(facts: Sequence[TensorFact], n: int) -> Facts:
    """Extend (never truncate) a fact list to `n` entries with unknown facts."""
    out = list(facts)
    while len(out) < n:
        out.append(TensorFact())
    return out


def same_datatype(facts: Sequence[TensorFact]) -> Facts:
    """All facts share one datatype."""
    known = [f.datatype for f in facts if f.datatype is not None]
    if not known:
        return list(facts)
    shared = unify_all(TensorFact(datatype=dt) for dt in known)
    return [unify(f, shared) for f in facts]


def same_shape(facts: Sequence[TensorFact]) -> Facts:
    """All facts share one shape."""
    known = [f.shape for f in facts if f.shape is not None]
    if not known:
        return list(facts)
    shared = unify_all(TensorFact(shape=s) for s in known)
    return [unify(f, TensorFact(shape=shared.shape)) for f in facts]


def with_datatype(fact: TensorFact, datatype: DataType | None) -> TensorFact:
    return unify(fact, TensorFact(datatype=datatype))


def with_shape(fact: TensorFact, shape: Sequence[Dim] | None) -> TensorFact:
    if shape is None:
        return fact
    return unify(fact, TensorFact(shape=tuple(shape)))


def broadcast_dims(dims: Sequence[Dim]) -> Dim:
    """Extent of one axis after numpy-style broadcasting.

    Known(1) is neutral. Two different known extents conflict. A Streaming axis
    next to a known extent n takes n (either the stream is n long, or it is 1).
    """
    rest = [d for d in dims if d != ONE]
    known = {d.value for d in rest if d.is_known}
    if len(known) > 1:
        raise ShapeMismatch(f"Cannot broadcast extents {sorted(known)}")
    if known:
        return Dim.known(known.pop())
    if any(d.is_unknown for d in rest):
        return UNKNOWN
    if rest:
        return STREAMING
    return ONE


def broadcast_shapes(shapes: Sequence[ShapeFact]) -> ShapeFact:
    rank = max((len(s) for s in shapes), default=0)
    padded = [(ONE,) * (rank - len(s)) + tuple(s) for s in shapes]
    try:
        return tuple(broadcast_dims([s[i] for s in padded]) for i in range(rank))
    except ShapeMismatch:
        raise ShapeMismatch(
            "Broadcast mismatch: " + " vs ".join(format_shape(s) for s in shapes)
        ) from None


def is_all_ones(shape: ShapeFact | None) -> bool:
    return shape is not None and all(d == ONE for d in shape)


def broadcast_rule(inputs: Sequence[TensorFact], output: TensorFact) -> tuple[Facts, TensorFact]:
    """Shape part of a broadcasting n-ary op.

    Forward: once every input shape is known the output shape is their
    broadcast. Backward: when all inputs but one are all-ones (they contribute
    nothing), the remaining one must have exactly the output shape.
    """
    inputs = list(inputs)
    shapes = [f.shape for f in inputs]
    if all(s is not None for s in shapes):
        output = with_shape(output, broadcast_shapes(shapes))  # type: ignore[arg-type]
    if output.shape is not None:
        out_shape = output.shape
        # the remaining input must carry the full output rank
        full_rank = bool(out_shape) and out_shape[0].is_known and out_shape[0] != ONE
        unknown = [i for i, s in enumerate(shapes) if s is None]
        neutral = [
            i for i, s in enumerate(shapes)
            if is_all_ones(s) and (len(s) < len(out_shape) or full_rank)  # type: ignore[arg-type]
        ]
        if len(unknown) == 1 and len(neutral) == len(inputs) - 1:
            i = unknown[0]
            inputs[i] = with_shape(inputs[i], output.shape)
        for i, s in enumerate(shapes):
            if s is not None and len(s) > len(output.shape):
                raise ShapeMismatch(
                    f"Input {i} rank {len(s)} exceeds output rank {len(output.shape)}"
                )
    return inputs, output


def normalize_axis(axis: int, rank: int) -> int:
    a = axis + rank if axis < 0 else axis
    if not 0 <= a < rank:
        raise ShapeMismatch(f"Axis {axis} out of range for rank {rank}")
    return a


def dims_product(dims: Sequence[Dim]) -> int | None:
    total = 1
    for d in dims:
        if not d.is_known:
            return None
        total *= d.value  # type: ignore[operator]
    return total
