from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Union

from inferflow.errors import EvalError, FactConflict, InvalidInput, MissingInput, TypeMismatch
from inferflow.ir.analyser import Analysis
from inferflow.ir.graph import Graph, Node, OutletId
from inferflow.ir.tensor import Tensor
from inferflow.utils.config import PlanConfig
from inferflow.utils.logger import get_logger

logger = get_logger(__name__)

OutputRef = Union[OutletId, tuple[int, int], int, str]


@dataclass(frozen=True)
class RunStats:
    """What one run did: evaluated node ids in order and the cache high-water mark.

    `live_trace` holds, when tracing, the set of cached outlets after each
    schedule step.
    """

    evaluated: tuple[int, ...]
    peak_live: int
    live_trace: tuple[frozenset[OutletId], ...] | None = None


@dataclass(frozen=True)
class RunResult:
    outputs: list[Tensor]
    stats: RunStats


class Plan:
    """A reusable schedule for computing a fixed set of outputs.

    Only the nodes the requested outputs depend on are scheduled. Each run
    keeps its own cache and drops an intermediate tensor once its last
    scheduled consumer has run, so a Plan can be shared and re-run freely.
    """

    def __init__(
        self,
        graph: Graph,
        outputs: Iterable[OutputRef] | None = None,
        analysis: Analysis | None = None,
        config: PlanConfig | None = None,
    ) -> None:
        self.graph = graph
        self.config = config or PlanConfig()
        if analysis is not None and analysis.graph is not graph:
            raise InvalidInput("Analysis was computed for a different graph")
        self.analysis = analysis

        refs = list(outputs) if outputs is not None else graph.outputs
        self._outputs = [self._resolve_output(r) for r in refs]
        if not self._outputs:
            raise InvalidInput("A plan needs at least one output")

        boundary: set[int] = set()
        if analysis is not None and self.config.use_folded_constants:
            for node in graph.nodes:
                if graph.is_input(node.id):
                    continue
                if all(analysis.fact(o).value is not None for o in node.outlets()):
                    boundary.add(node.id)

        self._schedule = tuple(graph.topo_order(self._outputs, boundary))
        self._folded = frozenset(n for n in self._schedule if n in boundary)
        self._constants: dict[OutletId, Tensor] = {
            o: analysis.fact(o).value  # type: ignore[misc, union-attr]
            for n in self._folded
            for o in graph.node(n).outlets()
        }
        refcounts: Counter[OutletId] = Counter()
        for node_id in self._schedule:
            if node_id not in self._folded:
                refcounts.update(graph.node(node_id).inputs)
        self._refcounts = dict(refcounts)
        self._pinned = frozenset(self._outputs)
        self._required_inputs = tuple(n for n in self._schedule if graph.is_input(n))
        logger.info(
            "built plan for %s: %d of %d nodes scheduled, %d folded",
            [str(o) for o in self._outputs],
            len(self._schedule),
            len(graph),
            len(self._folded),
        )

    def _resolve_output(self, ref: OutputRef) -> OutletId:
        if isinstance(ref, (int, str)):
            node, slot = self.graph.resolve(ref), 0
        else:
            node_id, slot = ref
            node = self.graph.node(node_id)
        if not 0 <= slot < node.output_count:
            raise InvalidInput(
                f"Requested slot {slot} but {node.op_type} has {node.output_count} output(s)",
                node_id=node.id,
                node_name=node.name,
            )
        return OutletId(node.id, slot)

    @property
    def schedule(self) -> tuple[int, ...]:
        return self._schedule

    @property
    def outputs(self) -> list[OutletId]:
        return list(self._outputs)

    @property
    def required_inputs(self) -> tuple[int, ...]:
        return self._required_inputs

    @property
    def folded(self) -> frozenset[int]:
        return self._folded

    # -- running -----------------------------------------------------------

    def run(self, inputs: Mapping[int | str, Any]) -> list[Tensor]:
        return self.execute(inputs).outputs

    def execute(self, inputs: Mapping[int | str, Any], trace: bool = False) -> RunResult:
        feeds = self._bind(inputs)
        graph = self.graph
        cache: dict[OutletId, Tensor] = {}
        remaining = dict(self._refcounts)
        evaluated: list[int] = []
        live_trace: list[frozenset[OutletId]] = []
        peak = 0

        for node_id in self._schedule:
            node = graph.node(node_id)
            outlets = node.outlets()
            if node_id in feeds:
                values = [feeds[node_id]]
            elif node_id in self._folded:
                values = [self._constants[o] for o in outlets]
            else:
                values = self._eval(node, [cache[o] for o in node.inputs])
                evaluated.append(node_id)

            for outlet, value in zip(outlets, values):
                if remaining.get(outlet, 0) > 0 or outlet in self._pinned:
                    cache[outlet] = value
            peak = max(peak, len(cache))

            if node_id not in self._folded:
                for outlet in node.inputs:
                    remaining[outlet] -= 1
                    if remaining[outlet] == 0 and outlet not in self._pinned:
                        del cache[outlet]
            if trace:
                live_trace.append(frozenset(cache))

        stats = RunStats(
            evaluated=tuple(evaluated),
            peak_live=peak,
            live_trace=tuple(live_trace) if trace else None,
        )
        return RunResult(outputs=[cache[o] for o in self._outputs], stats=stats)

    def _eval(self, node: Node, args: list[Tensor]) -> list[Tensor]:
        logger.debug("evaluating node %d %s (%s)", node.id, node.name, node.op_type)
        try:
            values = node.op.eval(args)
        except Exception as exc:
            logger.debug("node %d %s failed: %s", node.id, node.name, exc)
            raise EvalError.wrap(
                exc, node_id=node.id, node_name=node.name, op_type=node.op_type
            ) from exc
        if len(values) != node.output_count:
            raise EvalError(
                f"{node.op_type} produced {len(values)} output(s), expected {node.output_count}",
                node_id=node.id,
                node_name=node.name,
                op_type=node.op_type,
            )
        return values

    def _bind(self, inputs: Mapping[int | str, Any]) -> dict[int, Tensor]:
        graph = self.graph
        feeds: dict[int, Tensor] = {}
        for key, value in inputs.items():
            node = graph.resolve(key)
            if not graph.is_input(node.id):
                raise InvalidInput(
                    "Node is not a graph input", node_id=node.id, node_name=node.name
                )
            if node.id in feeds:
                raise InvalidInput(
                    "Input supplied twice (by id and by name)", node_id=node.id, node_name=node.name
                )
            declared = graph.input_fact(node.id)
            feeds[node.id] = self._check_input(node, declared.datatype, value)

        missing = [n for n in self._required_inputs if n not in feeds]
        if missing:
            names = ", ".join(f"#{n} {graph.node(n).name}" for n in missing)
            raise MissingInput(f"No value supplied for input(s): {names}")
        return feeds

    def _check_input(self, node: Node, datatype: Any, value: Any) -> Tensor:
        if isinstance(value, Tensor):
            tensor = value
        else:
            try:
                tensor = Tensor(value, datatype)
            except (TypeError, ValueError) as exc:
                raise TypeMismatch(
                    f"Cannot convert value to a tensor: {exc}", node_id=node.id, node_name=node.name
                ) from exc
        if not self.config.validate_inputs:
            return tensor
        facts = [self.graph.input_fact(node.id)]
        if self.analysis is not None:
            facts.append(self.analysis.fact(OutletId(node.id, 0)))
        for fact in facts:
            try:
                fact.accepts(tensor)
            except FactConflict as exc:
                raise type(exc)(
                    f"input rejected, {exc.message}", node_id=node.id, node_name=node.name
                ) from exc
        return tensor
