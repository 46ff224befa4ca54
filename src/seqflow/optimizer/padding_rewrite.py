"""Adapter synthesis for padding elimination.

Every helper here mutates the graph through :meth:`Graph.insert_node_on_input`
or by adding fresh nodes whose inputs are graph inputs and initializers only.
"""

from __future__ import annotations

import itertools
from collections.abc import Iterable
from dataclasses import dataclass

import numpy as np
from onnx import helper

from seqflow.ir import Dim, Graph, Node, Tensor
from seqflow.ir.infer import broadcast_shape
from seqflow.optimizer.padding_subgraph import (
    INSPECT_UNPAD_ACTIVATION_FUNC,
    MS_DOMAIN,
)
from seqflow.optimizer.passes import PassError

FLATTEN_AND_UNPAD = "FlattenAndUnpad"
PAD_AND_UNFLATTEN = "PadAndUnflatten"
INDEX_DTYPE = "int64"

_token_dims = itertools.count()


def new_token_dim() -> str:
    """Symbolic name of the valid token count, unique per pass invocation."""
    return f"valid_token_count_{next(_token_dims)}"


@dataclass
class PaddingContext:
    """Tensors shared by every adapter inserted during one pass invocation."""

    valid_indices: str
    token_dim: str
    # [batch, seq_len] as annotated on the token-id input
    leading_dims: list[Dim]
    first_two_dims: str | None = None


class _FrontInserter:
    """Adds nodes at the head of ``graph.nodes`` while keeping their relative order."""

    def __init__(self, graph: Graph, provider: str | None) -> None:
        self.graph = graph
        self.provider = provider
        self._index = 0

    def add(
        self,
        op_type: str,
        inputs: list[str],
        outputs: list[Tensor],
        attributes: dict | None = None,
        domain: str = "",
    ) -> Node:
        for t in outputs:
            self.graph.add_tensor(t)
        node = Node(
            op_type=op_type,
            inputs=inputs,
            outputs=[t.name for t in outputs],
            attributes=dict(attributes or {}),
            domain=domain,
            provider=self.provider,
        )
        self.graph.add_node(node, index=self._index)
        self._index += 1
        return node


def _flattened_dim(d0: Dim, d1: Dim) -> Dim:
    if isinstance(d0, int) and isinstance(d1, int):
        return d0 * d1
    if d0 is None or d1 is None:
        return None
    return f"{d0}*{d1}"


def insert_valid_indices(
    graph: Graph,
    input_ids: str,
    padding: str,
    token_dim: str,
    provider: str | None = None,
) -> PaddingContext:
    """
    Add Reshape -> Sub -> NonZero -> Squeeze computing the sorted flattened
    positions of non-padding tokens.
    """
    ids = graph.tensors[input_ids]
    if ids.shape is None or len(ids.shape) < 2:
        raise PassError(
            f"Token ids '{input_ids}' need a [batch, seq_len, ...] shape, got {ids.shape}",
            code="EPAD_SHAPE",
        )
    trailing = ids.shape[2:]
    if not all(isinstance(d, int) for d in trailing):
        raise PassError(
            f"Trailing dims of '{input_ids}' must be static, got {ids.shape}",
            code="EPAD_SHAPE",
        )
    front = _FrontInserter(graph, provider)

    flat_shape = graph.make_name("flattened_shape")
    graph.add_initializer(flat_shape, [-1, *trailing], INDEX_DTYPE, [1 + len(trailing)])
    flat = Tensor(
        graph.make_name("flattened_input_ids"),
        ids.dtype,
        [_flattened_dim(ids.shape[0], ids.shape[1]), *trailing],
    )
    front.add("Reshape", [input_ids, flat_shape], [flat])

    diff = Tensor(graph.make_name("padding_diff"), ids.dtype, list(flat.shape))
    front.add("Sub", [flat.name, padding], [diff])

    nonzero = Tensor(graph.make_name("nonzero_result"), INDEX_DTYPE, [len(flat.shape), token_dim])
    front.add("NonZero", [diff.name], [nonzero])

    squeeze_axes = graph.make_name("squeeze_axes")
    graph.add_initializer(squeeze_axes, [0], INDEX_DTYPE, [1])
    valid = Tensor(graph.make_name("valid_token_indices"), INDEX_DTYPE, [token_dim])
    front.add("Squeeze", [nonzero.name, squeeze_axes], [valid])

    return PaddingContext(
        valid_indices=valid.name,
        token_dim=token_dim,
        leading_dims=list(ids.shape[:2]),
    )


def insert_first_two_dims(
    graph: Graph, input_ids: str, ctx: PaddingContext, provider: str | None = None
) -> str:
    """Add Shape -> GatherElements producing the runtime ``[batch, seq_len]`` pair."""
    front = _FrontInserter(graph, provider)
    ids = graph.tensors[input_ids]
    shape = Tensor(graph.make_name("shape_result"), INDEX_DTYPE, [len(ids.shape or [])])
    front.add("Shape", [input_ids], [shape])
    indices = graph.make_name("first_two_indices")
    graph.add_initializer(indices, [0, 1], INDEX_DTYPE, [2])
    dims = Tensor(graph.make_name("first_two_dims"), INDEX_DTYPE, [2])
    front.add("GatherElements", [shape.name, indices], [dims])
    ctx.first_two_dims = dims.name
    return dims.name


def _first_two_dims(ctx: PaddingContext) -> str:
    if ctx.first_two_dims is None:
        raise PassError(
            "Runtime [batch, seq_len] is not available; insert_first_two_dims must run first",
            code="EPAD_SHAPE",
        )
    return ctx.first_two_dims


def _same_leading_dims(a: list[Dim], b: list[Dim]) -> bool:
    return all(x is not None and x == y for x, y in zip(a[:2], b[:2]))


def needs_flatten(graph: Graph, node: Node, in_index: int) -> tuple[bool, bool]:
    """
    Decide how a boundary input joins the reduced layout.

    Returns ``(flatten, expand)``. An input with at least two dims fewer than
    its sibling carries no ``[batch, seq_len]`` and broadcasts as is.
    """
    x = graph.tensors[node.inputs[in_index]].shape
    sibling = graph.tensors[node.inputs[1 - in_index]].shape
    if x is None or sibling is None:
        raise PassError(
            f"Input shapes of '{node.name}' vanished after classification",
            code="EPAD_SHAPE",
            node_name=node.name,
        )
    if len(x) <= len(sibling) - 2:
        return False, False
    expand = len(x) != len(sibling) or not _same_leading_dims(x, sibling)
    return True, expand


def insert_expand_for_input(
    graph: Graph, node: Node, in_index: int, ctx: PaddingContext
) -> str:
    """Broadcast input ``in_index`` of ``node`` up to ``[batch, seq_len, 1, ...]``."""
    first_two_dims = _first_two_dims(ctx)
    sibling = graph.tensors[node.inputs[1 - in_index]]
    rank = len(sibling.shape or [])
    if rank < 2:
        raise PassError(
            f"Input of '{node.name}' in the subgraph has rank {rank} < 2",
            code="EPAD_SHAPE",
            node_name=node.name,
        )
    if rank == 2:
        target = first_two_dims
    else:
        ones = graph.make_name("other_shape")
        graph.add_initializer(ones, [1] * (rank - 2), INDEX_DTYPE, [rank - 2])
        concat_out = Tensor(graph.make_name("concat_shape_result"), INDEX_DTYPE, [rank])
        graph.add_tensor(concat_out)
        concat = Node(
            "Concat",
            [first_two_dims, ones],
            [concat_out.name],
            attributes={"axis": 0},
            provider=node.provider,
        )
        graph.add_node(concat, index=graph.nodes.index(node))
        target = concat_out.name

    x = graph.tensors[node.inputs[in_index]]
    expanded_shape = None
    if x.shape is not None:
        expanded_shape = broadcast_shape(x.shape, [*ctx.leading_dims, *([1] * (rank - 2))])
    out = Tensor(graph.make_name("inputs_expand_result"), x.dtype, expanded_shape)
    graph.add_tensor(out)
    graph.insert_node_on_input(
        node, in_index, "Expand", [x.name, target], [out.name]
    )
    return out.name


def insert_flatten_for_input(
    graph: Graph, node: Node, in_index: int, ctx: PaddingContext
) -> str:
    """Insert FlattenAndUnpad so ``node`` reads input ``in_index`` without padding rows."""
    x = graph.tensors[node.inputs[in_index]]
    shape = None
    if x.shape is not None and len(x.shape) >= 2:
        shape = [ctx.token_dim, *x.shape[2:]]
    out = Tensor(graph.make_name("padding_filter_result"), x.dtype, shape)
    dims = Tensor(graph.make_name("d1_d2_shape"), INDEX_DTYPE, [2])
    graph.add_tensor(out)
    graph.add_tensor(dims)
    graph.insert_node_on_input(
        node,
        in_index,
        FLATTEN_AND_UNPAD,
        [x.name, ctx.valid_indices],
        [out.name, dims.name],
        domain=MS_DOMAIN,
    )
    return out.name


def insert_unflatten_for_input(
    graph: Graph, node: Node, in_index: int, ctx: PaddingContext
) -> str:
    """Insert PadAndUnflatten so ``node`` reads input ``in_index`` in ``[batch, seq_len, ...]``."""
    first_two_dims = _first_two_dims(ctx)
    x = graph.tensors[node.inputs[in_index]]
    out = Tensor(
        graph.make_name("padded_result"),
        x.dtype,
        None if x.shape is None else list(x.shape),
    )
    graph.add_tensor(out)
    graph.insert_node_on_input(
        node,
        in_index,
        PAD_AND_UNFLATTEN,
        [x.name, ctx.valid_indices, first_two_dims],
        [out.name],
        domain=MS_DOMAIN,
    )
    return out.name


def restore_graph_output(graph: Graph, name: str, ctx: PaddingContext) -> str:
    """
    Keep graph output ``name`` padded: its producer now writes ``<name>_unpadded``
    and a PadAndUnflatten restores ``name``. Returns the new reduced edge name.
    """
    first_two_dims = _first_two_dims(ctx)
    producer = graph.producer(name)
    if producer is None:
        raise PassError(
            f"Subgraph edge '{name}' has no producer", code="EPAD_SHAPE"
        )
    original = graph.tensors[name]
    reduced = graph.make_name(f"{name}_unpadded")
    graph.add_tensor(
        Tensor(
            reduced,
            original.dtype,
            None if original.shape is None else list(original.shape),
        )
    )
    producer.outputs = [reduced if o == name else o for o in producer.outputs]
    for n in graph.nodes:
        n.inputs = [reduced if i == name else i for i in n.inputs]
    pad = Node(
        PAD_AND_UNFLATTEN,
        [reduced, ctx.valid_indices, first_two_dims],
        [name],
        domain=MS_DOMAIN,
        provider=producer.provider,
    )
    graph.add_node(pad, index=graph.nodes.index(producer) + 1)
    return reduced


def _trailing_dims(edge: str, shape: list[Dim]) -> list[Dim]:
    if len(shape) < 2:
        raise PassError(
            f"Subgraph edge '{edge}' has rank {len(shape)} < 2", code="EPAD_SHAPE"
        )
    trailing = shape[2:]
    if not all(isinstance(d, int) for d in trailing):
        raise PassError(
            f"Subgraph edge '{edge}' has non-static trailing dims {shape}",
            code="EPAD_SHAPE",
        )
    return trailing


def check_subgraph_edges(graph: Graph, edges: Iterable[str]) -> None:
    """Raise if a known-shape edge cannot be collapsed to ``[token_dim, *trailing]``."""
    for edge in sorted(edges):
        t = graph.get_tensor(edge)
        if t is not None and t.shape is not None:
            _trailing_dims(edge, t.shape)


def collapse_shape(graph: Graph, edge: str, token_dim: str) -> None:
    """Annotate ``edge`` as ``[token_dim, *trailing]``."""
    t = graph.tensors[edge]
    if t.shape is None:
        return
    t.shape = [token_dim, *_trailing_dims(edge, t.shape)]


def adjust_hook_ranks(node: Node) -> None:
    """Drop one dimension from the rank attributes of a hook seeing reduced tensors."""
    for attr in ("input_tensor_ranks", "output_tensor_ranks"):
        ranks = node.attributes.get(attr)
        if not isinstance(ranks, list) or len(ranks) != 1 or ranks[0] < 2:
            raise PassError(
                f"Hook node '{node.name}' has invalid {attr}: {ranks!r}",
                code="EPAD_HOOK_ATTR",
                node_name=node.name,
            )
        node.attributes[attr] = [ranks[0] - 1]


def _require_attr(node: Node, attr: str, kind: type) -> object:
    value = node.attributes.get(attr)
    if not isinstance(value, kind):
        raise PassError(
            f"Hook node '{node.name}' is missing attribute {attr}",
            code="EPAD_HOOK_ATTR",
            node_name=node.name,
        )
    return value


def replace_inspect_hook(graph: Graph, node: Node, ctx: PaddingContext) -> Node:
    """
    Swap an inspect-activation hook for its unpad variant, which additionally
    reads the valid-index tensor. Consumers of both outputs move to the new node.
    """
    valid = graph.tensors[ctx.valid_indices]
    rank = len(valid.shape or [])
    if rank != 1:
        raise PassError(
            f"Valid-index tensor must have rank 1, got {rank}", code="EPAD_SHAPE"
        )
    attrs = dict(node.attributes)
    attrs["func_name"] = INSPECT_UNPAD_ACTIVATION_FUNC
    attrs["input_convention"] = str(_require_attr(node, "input_convention", str)) + "d"
    if "input_requires_grads" in attrs:
        attrs["input_requires_grads"] = [*attrs["input_requires_grads"], 0]
    types = _require_attr(node, "input_tensor_types", list)
    attrs["input_tensor_types"] = [
        *types,
        int(helper.np_dtype_to_tensor_dtype(np.dtype(valid.dtype))),
    ]
    ranks = _require_attr(node, "input_tensor_ranks", list)
    attrs["input_tensor_ranks"] = [*ranks, rank]

    old_ctx = graph.tensors[node.outputs[0]]
    old_out = graph.tensors[node.outputs[1]]
    activation = graph.tensors[node.inputs[0]]
    ctx_out = Tensor(graph.make_name("python_op_ctx"), old_ctx.dtype, old_ctx.shape)
    act_out = Tensor(graph.make_name("python_op_out"), activation.dtype, activation.shape)
    graph.add_tensor(ctx_out)
    graph.add_tensor(act_out)

    new_node = Node(
        node.op_type,
        [node.inputs[0], ctx.valid_indices],
        [ctx_out.name, act_out.name],
        attributes=attrs,
        metadata=dict(node.metadata),
        domain=node.domain,
        provider=node.provider,
    )
    index = graph.nodes.index(node)
    graph.remove_node(node)
    graph.add_node(new_node, index=index)
    graph.replace_all_uses(old_ctx.name, ctx_out.name)
    graph.replace_all_uses(old_out.name, act_out.name)
    return new_node
