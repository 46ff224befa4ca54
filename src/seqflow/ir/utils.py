from __future__ import annotations

from collections.abc import Iterable

from seqflow.ir.graph import Graph, Node


def build_consumer_map(graph: Graph) -> dict[str, list[int]]:
    """
    Map tensor name -> list of consuming node indices.
    """
    consumers: dict[str, list[int]] = {}
    for idx, node in enumerate(graph.nodes):
        for inp in node.inputs:
            consumers.setdefault(inp, []).append(idx)
    return consumers


def output_nodes(
    graph: Graph,
    node: Node,
    outputs: Iterable[str] | None = None,
    consumers: dict[str, list[int]] | None = None,
) -> list[Node]:
    """
    Return the distinct nodes consuming ``outputs`` (default: every output of
    ``node``), in graph order. Callers walking many nodes of an unchanged graph
    pass a prebuilt ``consumers`` map.
    """
    if consumers is None:
        consumers = build_consumer_map(graph)
    names = node.outputs if outputs is None else outputs
    indices = sorted({i for o in names if o for i in consumers.get(o, [])})
    return [graph.nodes[i] for i in indices]
