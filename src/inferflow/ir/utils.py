from __future__ import annotations

from inferflow.ir.graph import Graph, InletId, OutletId


def build_producer_map(graph: Graph) -> dict[str, int]:
    """
    Map node name -> node id.
    """
    return {node.name: node.id for node in graph.nodes}


def build_consumer_map(graph: Graph) -> dict[OutletId, list[InletId]]:
    """
    Map outlet -> list of consuming inlets, in (node id, inlet) order.
    """
    consumers: dict[OutletId, list[InletId]] = {}
    for node in graph.nodes:
        for i, src in enumerate(node.inputs):
            consumers.setdefault(src, []).append(InletId(node.id, i))
    return consumers
