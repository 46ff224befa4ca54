"""
Padding elimination for batched sequence models.

Token ids arrive as ``[batch, seq_len]`` tensors padded with the embedding's
``padding_idx``. Starting at the embedding lookup, this pass collapses the
leading two dims into one token dim, drops padding rows, and lets the reduced
layout flow through every operator the classifier proves safe. Adapters
convert between layouts at the frontier:

* ``FlattenAndUnpad(x, valid_indices) -> (y, [batch, seq_len])`` gathers the
  rows of ``x.reshape(batch * seq_len, ...)`` at ``valid_indices``.
* ``PadAndUnflatten(y, valid_indices, [batch, seq_len]) -> x`` scatters them
  back into a zero-filled ``[batch, seq_len, ...]`` tensor.

With ``enable=False`` the graph keeps its padded layout and only activation
inspection hooks are swapped for variants that also read the valid indices.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field

from seqflow.ir import Graph, GraphValidator, Node
from seqflow.optimizer.padding_rewrite import (
    PaddingContext,
    adjust_hook_ranks,
    check_subgraph_edges,
    collapse_shape,
    insert_expand_for_input,
    insert_first_two_dims,
    insert_flatten_for_input,
    insert_unflatten_for_input,
    insert_valid_indices,
    needs_flatten,
    new_token_dim,
    replace_inspect_hook,
    restore_graph_output,
)
from seqflow.optimizer.padding_subgraph import (
    ATEN_DOMAIN,
    SubgraphClassification,
    SubgraphClassifier,
)
from seqflow.optimizer.passes import Pass, PassError
from seqflow.utils import get_logger

logger = get_logger(__name__)

_PADDING_DTYPES = ("int32", "int64")


@dataclass
class EmbeddingAnchor:
    node: str
    input_ids: str
    padding: str
    padding_idx: int


@dataclass
class PaddingPlan:
    anchor: EmbeddingAnchor
    classification: SubgraphClassification


@dataclass
class PaddingStats:
    mode: str = "full"
    token_dim: str | None = None
    handled_inputs: int = 0
    handled_outputs: int = 0
    expanded_inputs: int = 0
    restored_outputs: int = 0
    replaced_hooks: int = 0
    reshaped_nodes: list[str] = field(default_factory=list)


def is_aten_embedding(node: Node) -> bool:
    return (
        node.op_type == "ATen"
        and node.domain == ATEN_DOMAIN
        and node.attributes.get("operator") == "embedding"
    )


def _padding_index(graph: Graph, name: str) -> int | None:
    t = graph.get_tensor(name)
    if t is None or not t.is_const or t.shape != [] or t.dtype not in _PADDING_DTYPES:
        return None
    value = t.metadata["const"]
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def find_embedding_anchor(
    graph: Graph,
    sparse_embedding_input_names: Iterable[str],
    compatible_providers: frozenset[str] = frozenset(),
) -> EmbeddingAnchor | None:
    """Return the first embedding lookup, in topological order, that padding
    elimination can start from."""
    names = set(sparse_embedding_input_names)
    for node in GraphValidator(graph).toposort():
        if not is_aten_embedding(node):
            continue
        if compatible_providers and node.provider not in compatible_providers:
            continue
        if len(node.inputs) < 3 or not node.inputs[1] or not node.inputs[2]:
            continue
        ids = graph.get_tensor(node.inputs[1])
        if (
            ids is None
            or not graph.is_graph_input(ids.name)
            or ids.shape is None
            or len(ids.shape) < 2
        ):
            continue
        if ids.name not in names:
            logger.debug(
                "Skip node %s(%s): embedding input is not in the sparse embedding input list",
                node.name,
                node.op_type,
            )
            continue
        padding_idx = _padding_index(graph, node.inputs[2])
        if padding_idx is None or padding_idx < 0:
            continue
        return EmbeddingAnchor(
            node=node.name,
            input_ids=ids.name,
            padding=node.inputs[2],
            padding_idx=padding_idx,
        )
    return None


class PaddingEliminationPass(Pass):
    """Remove padding tokens after the embedding lookup (see module docstring)."""

    def __init__(
        self,
        sparse_embedding_input_names: Iterable[str] = (),
        *,
        enable: bool = True,
        compatible_providers: Iterable[str] = (),
        restore_graph_outputs: bool = False,
    ) -> None:
        self.sparse_embedding_input_names = list(sparse_embedding_input_names)
        self.enable = enable
        self.compatible_providers = frozenset(compatible_providers)
        # When True, graph outputs inside the subgraph are scattered back to [batch, seq_len, ...]
        self.restore_graph_outputs = restore_graph_outputs

    def match(self, graph: Graph) -> Iterable[PaddingPlan]:
        if not self.sparse_embedding_input_names:
            logger.debug("Exit PaddingElimination, no sparse embedding input names.")
            return []
        anchor = find_embedding_anchor(
            graph, self.sparse_embedding_input_names, self.compatible_providers
        )
        if anchor is None:
            logger.debug("Exit PaddingElimination, no valid embedding node.")
            return []
        ids_shape = graph.tensors[anchor.input_ids].shape or []
        if not all(isinstance(d, int) for d in ids_shape[2:]):
            logger.debug("Exit PaddingElimination, trailing dims of input_ids have no value.")
            return []

        embedding = self._node(graph, anchor.node)
        classification = SubgraphClassifier(
            graph, apply_padding_removal=self.enable
        ).classify(embedding)
        if self.enable:
            # apply() must not fail after it starts rewriting
            check_subgraph_edges(graph, classification.subgraph)
        if not self.enable and not classification.inspected_hooks:
            logger.debug("Exit PaddingElimination, disabled and no inspect hooks found.")
            return []
        return [PaddingPlan(anchor=anchor, classification=classification)]

    def apply(self, graph: Graph, candidate: PaddingPlan) -> None:
        anchor = candidate.anchor
        embedding = graph.get_node(anchor.node)
        if embedding is None:
            raise PassError(f"Anchor node '{anchor.node}' disappeared", code="EPAD_ANCHOR")
        stats = PaddingStats(mode="full" if self.enable else "lightweight")
        stats.token_dim = new_token_dim()
        ctx = insert_valid_indices(
            graph, anchor.input_ids, anchor.padding, stats.token_dim, embedding.provider
        )
        if self.enable:
            self._eliminate(graph, embedding, candidate.classification, ctx, stats)
        else:
            for name in candidate.classification.inspected_hooks:
                hook = graph.get_node(name)
                if hook is None:
                    continue
                replace_inspect_hook(graph, hook, ctx)
                stats.replaced_hooks += 1
        graph.metadata["padding_elimination"] = asdict(stats)

    def _eliminate(
        self,
        graph: Graph,
        embedding: Node,
        classification: SubgraphClassification,
        ctx: PaddingContext,
        stats: PaddingStats,
    ) -> None:
        anchor_ids = embedding.inputs[1]
        insert_first_two_dims(graph, anchor_ids, ctx, embedding.provider)
        subgraph = set(classification.subgraph)

        for name in classification.rank_adjusted_hooks:
            adjust_hook_ranks(self._node(graph, name))

        insert_flatten_for_input(graph, embedding, 1, ctx)
        stats.handled_inputs += 1

        for name in classification.boundary_inputs:
            node = self._node(graph, name)
            for i in range(2):
                if node.inputs[i] in subgraph:
                    continue
                flatten, expand = needs_flatten(graph, node, i)
                if not flatten:
                    continue
                if expand:
                    insert_expand_for_input(graph, node, i, ctx)
                    stats.expanded_inputs += 1
                insert_flatten_for_input(graph, node, i, ctx)
                stats.handled_inputs += 1

        for name in classification.boundary_outputs:
            node = self._node(graph, name)
            for i in range(len(node.inputs)):
                if node.inputs[i] in subgraph:
                    insert_unflatten_for_input(graph, node, i, ctx)
                    stats.handled_outputs += 1

        restorable = []
        if self.restore_graph_outputs:
            restorable = [o for o in graph.outputs if o in subgraph]
        for out in restorable:
            reduced = restore_graph_output(graph, out, ctx)
            subgraph.discard(out)
            subgraph.add(reduced)
            stats.restored_outputs += 1

        for edge in sorted(subgraph):
            collapse_shape(graph, edge, ctx.token_dim)
        stats.reshaped_nodes = list(classification.reshaped_nodes)

        logger.info(
            "PaddingElimination::Total handled input node count: %d output node count: %d"
            " expanded input count: %d",
            stats.handled_inputs,
            stats.handled_outputs,
            stats.expanded_inputs,
        )

    @staticmethod
    def _node(graph: Graph, name: str) -> Node:
        node = graph.get_node(name)
        if node is None:
            raise PassError(f"Classified node '{name}' disappeared", code="EPAD_ANCHOR")
        return node
