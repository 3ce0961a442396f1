from __future__ import annotations

import heapq
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, NamedTuple, Union

from inferflow.errors import CycleDetected, InvalidInput
from inferflow.utils.logger import get_logger

from .facts import TensorFact

if TYPE_CHECKING:
    from inferflow.ops.base import Op

logger = get_logger(__name__)


class OutletId(NamedTuple):
    """Output `slot` of node `node`."""

    node: int
    slot: int = 0

    def __str__(self) -> str:
        return f"{self.node}:{self.slot}"


class InletId(NamedTuple):
    """Input position `inlet` of node `node`."""

    node: int
    inlet: int

    def __str__(self) -> str:
        return f"{self.node}<{self.inlet}"


OutletLike = Union[OutletId, tuple[int, int], int]


def as_outlet(value: OutletLike) -> OutletId:
    if isinstance(value, OutletId):
        return value
    if isinstance(value, int):
        return OutletId(value, 0)
    node, slot = value
    return OutletId(int(node), int(slot))


@dataclass
class Node:
    id: int
    name: str
    op: Op
    inputs: list[OutletId] = field(default_factory=list)

    @property
    def op_type(self) -> str:
        return self.op.op_type

    @property
    def output_count(self) -> int:
        return self.op.output_count

    def outlets(self) -> list[OutletId]:
        return [OutletId(self.id, slot) for slot in range(self.output_count)]


_WHITE, _GRAY, _BLACK = 0, 1, 2


class Graph:
    """An append-only DAG of operator nodes.

    Invariants:
    - Node ids are dense insertion indices and never change; nodes are never removed.
    - Edges live on the consumer side: `node.inputs[i]` is the producing outlet.
    - The graph holds no analysis results; the Analyser keeps facts in its own table.
    """

    def __init__(self, name: str = "graph") -> None:
        self.name = name
        self._nodes: list[Node] = []
        self._by_name: dict[str, int] = {}
        self._input_facts: dict[int, TensorFact] = {}
        self._outputs: list[OutletId] = []

    # -- construction ------------------------------------------------------

    def add_node(
        self, op: Op, inputs: Iterable[OutletLike] = (), name: str | None = None
    ) -> int:
        node_id = len(self._nodes)
        outlets = [as_outlet(i) for i in inputs]
        for inlet, outlet in enumerate(outlets):
            self._check_outlet(outlet, f"input {inlet} of new node")
        if name is None:
            name = f"{op.op_type}_{node_id}"
        if name in self._by_name:
            raise InvalidInput(f"Node name '{name}' already used by node {self._by_name[name]}")
        self._nodes.append(Node(id=node_id, name=name, op=op, inputs=outlets))
        self._by_name[name] = node_id
        logger.debug("added node %d %s (%s) inputs=%s", node_id, name, op.op_type, outlets)
        return node_id

    def add_edge(self, outlet: OutletLike, inlet: InletId | tuple[int, int]) -> None:
        """Connect `outlet` to `inlet`, appending or replacing an input of an existing node.

        Raises CycleDetected (graph unchanged) if the edge would close a loop.
        """
        src = as_outlet(outlet)
        dst = InletId(*inlet)
        self._check_outlet(src, f"source of edge to {dst}")
        if not 0 <= dst.node < len(self._nodes):
            raise InvalidInput(f"Edge target node {dst.node} does not exist", node_id=dst.node)
        node = self._nodes[dst.node]
        if self.is_input(dst.node):
            raise InvalidInput(
                "A graph input cannot have producers", node_id=node.id, node_name=node.name
            )
        if not 0 <= dst.inlet <= len(node.inputs):
            raise InvalidInput(
                f"Inlet {dst.inlet} out of range for node with {len(node.inputs)} inputs",
                node_id=node.id,
                node_name=node.name,
            )
        if self._reaches(src.node, dst.node):
            raise CycleDetected(
                f"Edge {src} -> {dst} would create a cycle",
                node_id=node.id,
                node_name=node.name,
            )
        if dst.inlet == len(node.inputs):
            node.inputs.append(src)
        else:
            node.inputs[dst.inlet] = src
        logger.debug("added edge %s -> %s", src, dst)

    def designate_input(self, node_id: int, fact: TensorFact | None = None) -> TensorFact:
        node = self.node(node_id)
        if node.inputs:
            raise InvalidInput(
                "A graph input cannot have producers", node_id=node.id, node_name=node.name
            )
        if fact is None:
            fact = node.op.declared_fact() or TensorFact()
        self._input_facts[node_id] = fact
        return fact

    def designate_output(self, node_id: int, slot: int = 0) -> OutletId:
        outlet = OutletId(node_id, slot)
        self._check_outlet(outlet, "graph output")
        if outlet not in self._outputs:
            self._outputs.append(outlet)
        return outlet

    def _check_outlet(self, outlet: OutletId, what: str) -> None:
        if not 0 <= outlet.node < len(self._nodes):
            raise InvalidInput(f"{what} refers to missing node {outlet.node}")
        producer = self._nodes[outlet.node]
        if not 0 <= outlet.slot < producer.output_count:
            raise InvalidInput(
                f"{what} refers to slot {outlet.slot} but {producer.op_type} has "
                f"{producer.output_count} output(s)",
                node_id=producer.id,
                node_name=producer.name,
            )

    def _reaches(self, start: int, target: int) -> bool:
        """Whether `target` is `start` or one of its (transitive) producers."""
        stack = [start]
        seen: set[int] = set()
        while stack:
            n = stack.pop()
            if n == target:
                return True
            if n in seen:
                continue
            seen.add(n)
            stack.extend(o.node for o in self._nodes[n].inputs)
        return False

    # -- queries -----------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> Sequence[Node]:
        return tuple(self._nodes)

    def node(self, node_id: int) -> Node:
        if not isinstance(node_id, int) or not 0 <= node_id < len(self._nodes):
            raise InvalidInput(f"Node {node_id} does not exist")
        return self._nodes[node_id]

    def node_by_name(self, name: str) -> Node:
        node_id = self._by_name.get(name)
        if node_id is None:
            raise InvalidInput(f"Node named '{name}' not found")
        return self._nodes[node_id]

    def resolve(self, ref: int | str) -> Node:
        return self.node_by_name(ref) if isinstance(ref, str) else self.node(ref)

    @property
    def inputs(self) -> list[int]:
        return list(self._input_facts)

    @property
    def outputs(self) -> list[OutletId]:
        return list(self._outputs)

    def input_fact(self, node_id: int) -> TensorFact:
        if node_id not in self._input_facts:
            raise InvalidInput(f"Node {node_id} is not a designated input", node_id=node_id)
        return self._input_facts[node_id]

    def is_input(self, node_id: int) -> bool:
        return node_id in self._input_facts

    def consumers(self, outlet: OutletLike) -> list[InletId]:
        outlet = as_outlet(outlet)
        return [
            InletId(node.id, i)
            for node in self._nodes
            for i, src in enumerate(node.inputs)
            if src == outlet
        ]

    # -- ordering ----------------------------------------------------------

    def reachable(self, targets: Iterable[OutletLike], boundary: Iterable[int] = ()) -> set[int]:
        """Nodes found by walking producer edges backward from `targets`.

        Boundary nodes are included but their producers are not followed.
        """
        stop = set(boundary)
        seen: set[int] = set()
        stack = [self.node(as_outlet(t).node).id for t in targets]
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            if n not in stop:
                stack.extend(o.node for o in self._nodes[n].inputs)
        return seen

    def topo_order(
        self, targets: Iterable[OutletLike] | None = None, boundary: Iterable[int] = ()
    ) -> list[int]:
        """Dependency-respecting order of the nodes needed for `targets`.

        With no targets, every node is ordered. Ties are broken by ascending id.
        """
        stop = set(boundary)
        if targets is None:
            wanted = set(range(len(self._nodes)))
        else:
            wanted = self.reachable(targets, stop)

        indegree: dict[int, int] = {n: 0 for n in wanted}
        adj: dict[int, list[int]] = {n: [] for n in wanted}
        for v in wanted:
            if v in stop:
                continue
            for src in {o.node for o in self._nodes[v].inputs}:
                if src in wanted:
                    adj[src].append(v)
                    indegree[v] += 1

        # Kahn's algorithm with a min-heap for deterministic ties
        ready = [n for n, d in indegree.items() if d == 0]
        heapq.heapify(ready)
        order: list[int] = []
        while ready:
            u = heapq.heappop(ready)
            order.append(u)
            for v in adj[u]:
                indegree[v] -= 1
                if indegree[v] == 0:
                    heapq.heappush(ready, v)

        if len(order) != len(wanted):
            raise CycleDetected("Cycle detected in graph")
        return order

    def validate(self) -> None:
        """Re-check every structural invariant."""
        for node in self._nodes:
            for inlet, outlet in enumerate(node.inputs):
                self._check_outlet(outlet, f"input {inlet} of node {node.id}")
            if not self.is_input(node.id) and not node.op.accepts_arity(len(node.inputs)):
                raise InvalidInput(
                    f"{node.op_type} expects {node.op.input_arity} input(s), "
                    f"has {len(node.inputs)}",
                    node_id=node.id,
                    node_name=node.name,
                )
        for node_id in self._input_facts:
            if self._nodes[node_id].inputs:
                raise InvalidInput("A graph input cannot have producers", node_id=node_id)
        for outlet in self._outputs:
            self._check_outlet(outlet, "graph output")
        self._check_acyclic()

    def _check_acyclic(self) -> None:
        color = [_WHITE] * len(self._nodes)
        for root in range(len(self._nodes)):
            if color[root] != _WHITE:
                continue
            color[root] = _GRAY
            stack = [(root, iter(self._nodes[root].inputs))]
            while stack:
                n, it = stack[-1]
                nxt = next(it, None)
                if nxt is None:
                    color[n] = _BLACK
                    stack.pop()
                    continue
                if color[nxt.node] == _GRAY:
                    node = self._nodes[n]
                    raise CycleDetected(
                        f"Back edge from node {nxt.node} to node {n}",
                        node_id=node.id,
                        node_name=node.name,
                    )
                if color[nxt.node] == _WHITE:
                    color[nxt.node] = _GRAY
                    stack.append((nxt.node, iter(self._nodes[nxt.node].inputs)))

    def summary(self) -> str:
        lines: list[str] = [
            f"Graph(name={self.name!r}, nodes={len(self._nodes)}, "
            f"inputs={self.inputs}, outputs={[str(o) for o in self._outputs]})"
        ]
        for node in self._nodes:
            ins = ", ".join(str(o) for o in node.inputs)
            lines.append(f"- #{node.id} {node.name}: {node.op.describe()}({ins})")
        return "\n".join(lines)
