"""Fact propagation over a graph.

The analyser runs every op's local inference rule until no fact changes,
walking a worklist of node ids instead of recursing so deep graphs are fine.
Rules only ever add knowledge (results are unified with what is already
known), which together with the finite height of the fact lattice bounds the
number of rounds.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from types import MappingProxyType

from inferflow.errors import AnalysisError, InferflowError, InvalidInput
from inferflow.utils.config import AnalyserConfig
from inferflow.utils.logger import get_logger

from .facts import TensorFact, unify
from .graph import Graph, InletId, Node, OutletId, OutletLike, as_outlet
from .tensor import Tensor
from .utils import build_consumer_map

logger = get_logger(__name__)


class Analysis:
    """Result of a completed analysis: one fact per node output."""

    def __init__(self, graph: Graph, facts: dict[OutletId, TensorFact], iterations: int) -> None:
        self.graph = graph
        self._facts = facts
        self.iterations = iterations

    @property
    def facts(self) -> Mapping[OutletId, TensorFact]:
        return MappingProxyType(self._facts)

    def fact(self, outlet: OutletLike) -> TensorFact:
        key = as_outlet(outlet)
        if key not in self._facts:
            raise InvalidInput(f"No outlet {key} in graph '{self.graph.name}'")
        return self._facts[key]

    def input_facts(self, node_id: int) -> list[TensorFact]:
        return [self._facts[o] for o in self.graph.node(node_id).inputs]

    def output_facts(self, node_id: int) -> list[TensorFact]:
        return [self._facts[o] for o in self.graph.node(node_id).outlets()]

    def edge_fact(self, outlet: OutletLike, inlet: InletId | tuple[int, int]) -> TensorFact:
        """Fact carried by the edge from `outlet` into `inlet`."""
        src = as_outlet(outlet)
        dst = InletId(*inlet)
        inputs = self.graph.node(dst.node).inputs
        if not 0 <= dst.inlet < len(inputs) or inputs[dst.inlet] != src:
            raise InvalidInput(f"No edge {src} -> {dst}")
        return self._facts[src]

    def constant_outlets(self) -> dict[OutletId, Tensor]:
        return {o: f.value for o, f in self._facts.items() if f.value is not None}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Analysis):
            return NotImplemented
        return self.graph is other.graph and self._facts == other._facts

    __hash__ = None  # type: ignore[assignment]

    def summary(self) -> str:
        lines = [f"Analysis(graph={self.graph.name!r}, iterations={self.iterations})"]
        for node in self.graph.nodes:
            outs = ", ".join(str(self._facts[o]) for o in node.outlets())
            lines.append(f"- #{node.id} {node.name}: {outs}")
        return "\n".join(lines)


class Analyser:
    def __init__(self, graph: Graph, config: AnalyserConfig | None = None) -> None:
        self.graph = graph
        self.config = config or AnalyserConfig()

    def _seed(self) -> dict[OutletId, TensorFact]:
        facts: dict[OutletId, TensorFact] = {}
        for node in self.graph.nodes:
            for outlet in node.outlets():
                facts[outlet] = TensorFact()
            if self.graph.is_input(node.id):
                facts[OutletId(node.id, 0)] = self.graph.input_fact(node.id)
            elif node.op.is_const():
                values = node.op.eval([])
                for outlet, value in zip(node.outlets(), values):
                    facts[outlet] = TensorFact.from_tensor(value)
        return facts

    def run(self, order: Iterable[int] | None = None) -> Analysis:
        """Propagate facts to a fixpoint.

        `order` seeds the worklist; by default every node in id order. The
        result does not depend on it.
        """
        graph = self.graph
        graph.validate()
        facts = self._seed()
        consumers = build_consumer_map(graph)

        queue: deque[int] = deque()
        queued: set[int] = set()

        def enqueue(node_id: int) -> None:
            if node_id not in queued:
                queued.add(node_id)
                queue.append(node_id)

        for node_id in order if order is not None else range(len(graph)):
            graph.node(node_id)
            enqueue(node_id)
        for node_id in range(len(graph)):
            enqueue(node_id)

        logger.info("analysing graph '%s' (%d nodes)", graph.name, len(graph))
        iterations = 0
        while queue:
            iterations += 1
            if iterations > self.config.max_iterations:
                raise AnalysisError(
                    f"No fixpoint after {self.config.max_iterations} iterations",
                    code="EANALYSIS_LIMIT",
                )
            node = graph.node(queue.popleft())
            queued.discard(node.id)
            for outlet in self._visit(node, facts):
                enqueue(outlet.node)
                for inlet in consumers.get(outlet, ()):
                    enqueue(inlet.node)

        logger.info("analysis of '%s' converged after %d iterations", graph.name, iterations)
        return Analysis(graph, facts, iterations)

    def _visit(self, node: Node, facts: dict[OutletId, TensorFact]) -> list[OutletId]:
        """Apply one node's rule; return the outlets whose fact changed."""
        op = node.op
        outlets = node.outlets()
        ins = [facts[o] for o in node.inputs]
        outs = [facts[o] for o in outlets]
        try:
            new_ins, new_outs = op.infer(list(ins), list(outs))
            if len(new_ins) != len(ins) or len(new_outs) != len(outs):
                raise AnalysisError(
                    f"{op.op_type} rule returned {len(new_ins)}/{len(new_outs)} facts "
                    f"for {len(ins)} input(s) and {len(outs)} output(s)",
                    node_id=node.id,
                    node_name=node.name,
                    op_type=op.op_type,
                )
            new_ins = [unify(a, b) for a, b in zip(ins, new_ins)]
            new_outs = [unify(a, b) for a, b in zip(outs, new_outs)]
            if self._can_fold(node, new_ins, new_outs):
                values = op.eval([f.value for f in new_ins])  # type: ignore[misc]
                new_outs = [unify(f, TensorFact.from_tensor(v)) for f, v in zip(new_outs, values)]
                logger.debug("folded node %d %s", node.id, node.name)

            changed: list[OutletId] = []
            for outlet, fact in list(zip(node.inputs, new_ins)) + list(zip(outlets, new_outs)):
                merged = unify(facts[outlet], fact)
                if merged != facts[outlet]:
                    facts[outlet] = merged
                    changed.append(outlet)
            return changed
        except AnalysisError:
            raise
        except (InferflowError, ValueError, TypeError) as exc:
            logger.debug("analysis failed at node %d %s: %s", node.id, node.name, exc)
            raise AnalysisError(
                f"{op.describe()} rejects inputs {_render(ins)} and outputs {_render(outs)}: {exc}",
                node_id=node.id,
                node_name=node.name,
                op_type=op.op_type,
                cause=exc,
            ) from exc

    def _can_fold(self, node: Node, ins: Sequence[TensorFact], outs: Sequence[TensorFact]) -> bool:
        return (
            self.config.fold_constants
            and node.op.is_foldable()
            and not self.graph.is_input(node.id)
            and all(f.value is not None for f in ins)
            and any(f.value is None for f in outs)
        )


def _render(facts: Sequence[TensorFact]) -> str:
    return "[" + ", ".join(str(f) for f in facts) + "]"


def analyse(graph: Graph, config: AnalyserConfig | None = None) -> Analysis:
    return Analyser(graph, config).run()
