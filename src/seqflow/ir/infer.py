from __future__ import annotations

from collections.abc import Callable
from math import prod

import numpy as np
from onnx import helper

from seqflow.ir.graph import Dim, Graph, GraphValidator, Node, Tensor


class InferenceError(Exception):
    def __init__(self, message: str, code: str = "EINFER") -> None:
        super().__init__(message)
        self.code = code


ShapeInferFn = Callable[[Graph, Node], None]

_REGISTRY: dict[str, ShapeInferFn] = {}


def register_shape_inference(*op_types: str) -> Callable[[ShapeInferFn], ShapeInferFn]:
    def wrapper(fn: ShapeInferFn) -> ShapeInferFn:
        for op_type in op_types:
            _REGISTRY[op_type] = fn
        return fn

    return wrapper


def _broadcast_dim(da: Dim, db: Dim) -> Dim:
    if da == db:
        return da
    if da == 1:
        return db
    if db == 1:
        return da
    if isinstance(da, int) and isinstance(db, int):
        raise InferenceError(f"Broadcast mismatch: {da} vs {db}", code="EBROADCAST")
    # A symbolic dim broadcast against a concrete one must equal it
    if isinstance(da, int):
        return da
    if isinstance(db, int):
        return db
    return None


def broadcast_shape(a: list[Dim], b: list[Dim]) -> list[Dim]:
    ra = list(reversed(a))
    rb = list(reversed(b))
    result: list[Dim] = []
    for i in range(max(len(ra), len(rb))):
        da = ra[i] if i < len(ra) else 1
        db = rb[i] if i < len(rb) else 1
        try:
            result.append(_broadcast_dim(da, db))
        except InferenceError:
            raise InferenceError(f"Broadcast mismatch: {a} vs {b}", code="EBROADCAST")
    return list(reversed(result))


def _promote_dtype(dtype_a: str, dtype_b: str) -> str:
    # Use numpy's type promotion to resolve a result type name
    return str(np.result_type(dtype_a, dtype_b).name)


def _io(graph: Graph, node: Node, n_in: int, n_out: int, code: str) -> None:
    if len(node.inputs) < n_in or len(node.outputs) < n_out:
        raise InferenceError(
            f"{node.op_type} expects {n_in} inputs and {n_out} outputs", code=code
        )


def _out(graph: Graph, node: Node, index: int = 0) -> Tensor:
    return graph.tensors[node.outputs[index]]


@register_shape_inference("Add", "Sub", "Mul", "BiasGelu")
def infer_elementwise(graph: Graph, node: Node) -> None:
    _io(graph, node, 2, 1, "EBINARY_ARITY")
    a = graph.tensors[node.inputs[0]]
    b = graph.tensors[node.inputs[1]]
    out = _out(graph, node)
    out.shape = (
        None if a.shape is None or b.shape is None else broadcast_shape(a.shape, b.shape)
    )
    out.dtype = _promote_dtype(a.dtype, b.dtype)


@register_shape_inference("Relu", "Gelu", "LayerNormalization", "SimplifiedLayerNormalization")
def infer_same_shape(graph: Graph, node: Node) -> None:
    _io(graph, node, 1, 1, "EUNARY_ARITY")
    x = graph.tensors[node.inputs[0]]
    out = _out(graph, node)
    out.shape = None if x.shape is None else list(x.shape)
    out.dtype = x.dtype


@register_shape_inference("Cast")
def infer_cast(graph: Graph, node: Node) -> None:
    _io(graph, node, 1, 1, "ECAST_ARITY")
    x = graph.tensors[node.inputs[0]]
    out = _out(graph, node)
    to = node.attributes.get("to")
    if isinstance(to, int):
        out.dtype = str(helper.tensor_dtype_to_np_dtype(to).name)
    elif isinstance(to, str):
        out.dtype = to
    else:
        raise InferenceError("Cast requires 'to' attribute", code="ECAST_ATTR")
    out.shape = None if x.shape is None else list(x.shape)


@register_shape_inference("Dropout")
def infer_dropout(graph: Graph, node: Node) -> None:
    _io(graph, node, 1, 1, "EDROPOUT_ARITY")
    x = graph.tensors[node.inputs[0]]
    shape = None if x.shape is None else list(x.shape)
    out = _out(graph, node)
    out.shape = shape
    out.dtype = x.dtype
    if len(node.outputs) > 1 and node.outputs[1]:
        mask = _out(graph, node, 1)
        mask.shape = None if shape is None else list(shape)
        mask.dtype = "bool"


@register_shape_inference("MatMul")
def infer_matmul(graph: Graph, node: Node) -> None:
    if len(node.inputs) != 2 or len(node.outputs) != 1:
        raise InferenceError(
            "MatMul expects 2 inputs and 1 output", code="EMATMUL_ARITY"
        )
    a = graph.tensors[node.inputs[0]]
    b = graph.tensors[node.inputs[1]]
    out = graph.tensors[node.outputs[0]]
    out.dtype = _promote_dtype(a.dtype, b.dtype)
    if a.shape is None or b.shape is None:
        out.shape = None
        return
    if len(a.shape) < 2 or len(b.shape) < 2:
        raise InferenceError(
            "MatMul requires tensors with rank >= 2", code="EMATMUL_RANK"
        )
    batch = broadcast_shape(a.shape[:-2], b.shape[:-2])
    m, k1 = a.shape[-2], a.shape[-1]
    k2, n = b.shape[-2], b.shape[-1]
    if isinstance(k1, int) and isinstance(k2, int) and k1 != k2:
        raise InferenceError(
            f"Incompatible MatMul inner dims: {k1} vs {k2}", code="EMATMUL_DIMS"
        )
    out.shape = list(batch) + [m, n]


def _reduce_axes(graph: Graph, node: Node) -> list[int] | None:
    axes = node.attributes.get("axes")
    if axes is None and len(node.inputs) > 1 and node.inputs[1]:
        axes = graph.get_constant(node.inputs[1])
    if axes is None:
        return None
    if isinstance(axes, int):
        return [axes]
    return [int(a) for a in axes]


@register_shape_inference("ReduceMean")
def infer_reduce_mean(graph: Graph, node: Node) -> None:
    _io(graph, node, 1, 1, "EREDUCE_ARITY")
    x = graph.tensors[node.inputs[0]]
    out = _out(graph, node)
    out.dtype = x.dtype
    if x.shape is None:
        out.shape = None
        return
    rank = len(x.shape)
    axes = _reduce_axes(graph, node)
    if not axes:
        reduced = set(range(rank))
    else:
        reduced = {a + rank if a < 0 else a for a in axes}
    if any(a < 0 or a >= rank for a in reduced):
        raise InferenceError("ReduceMean axis out of range", code="EREDUCE_AXIS")
    keepdims = node.attributes.get("keepdims", 1)
    shape: list[Dim] = []
    for i, d in enumerate(x.shape):
        if i not in reduced:
            shape.append(d)
        elif keepdims:
            shape.append(1)
    out.shape = shape


@register_shape_inference("Reshape")
def infer_reshape(graph: Graph, node: Node) -> None:
    if len(node.outputs) != 1 or len(node.inputs) not in (1, 2):
        raise InferenceError(
            "Reshape expects 1 or 2 inputs and 1 output", code="ERESHAPE_ARITY"
        )
    x = graph.tensors[node.inputs[0]]
    out = graph.tensors[node.outputs[0]]
    target = node.attributes.get("shape")
    if target is None and len(node.inputs) == 2:
        target = graph.get_constant(node.inputs[1])
    if not isinstance(target, list) or not all(isinstance(d, int) for d in target):
        raise InferenceError(
            "Reshape requires 'shape' attribute (list[int])", code="ERESHAPE_ATTR"
        )
    neg_one_count = sum(1 for d in target if d == -1)
    if neg_one_count > 1:
        raise InferenceError(
            "Reshape 'shape' may contain at most one -1", code="ERESHAPE_NEG1"
        )
    known = [d for d in target if d != -1]
    if any(d <= 0 for d in known):
        raise InferenceError(
            "Reshape dims must be positive (or -1 for infer)",
            code="ERESHAPE_DIMS",
        )
    out.dtype = x.dtype
    if x.shape is None or not all(isinstance(d, int) for d in x.shape):
        # The inferred dim cannot be computed from a symbolic element count
        out.shape = [None if d == -1 else d for d in target]
        return
    total_in = prod(x.shape) if x.shape else 1
    if neg_one_count == 0:
        if prod(target) != total_in:
            raise InferenceError(
                "Reshape element count mismatch", code="ERESHAPE_COUNT"
            )
        out.shape = list(target)
    else:
        known_prod = prod(known) if known else 1
        if total_in % known_prod != 0:
            raise InferenceError(
                "Reshape cannot infer -1 dimension", code="ERESHAPE_INF"
            )
        inferred = total_in // known_prod
        out.shape = [inferred if d == -1 else d for d in target]


@register_shape_inference("Transpose")
def infer_transpose(graph: Graph, node: Node) -> None:
    if len(node.inputs) != 1 or len(node.outputs) != 1:
        raise InferenceError(
            "Transpose expects 1 input and 1 output", code="ETRANSPOSE_ARITY"
        )
    x = graph.tensors[node.inputs[0]]
    out = graph.tensors[node.outputs[0]]
    out.dtype = x.dtype
    if x.shape is None:
        out.shape = None
        return
    rank = len(x.shape)
    perm = node.attributes.get("perm")
    if perm is None:
        perm = list(reversed(range(rank)))
    if (
        not isinstance(perm, list)
        or len(perm) != rank
        or any(not isinstance(p, int) or p < 0 or p >= rank for p in perm)
    ):
        raise InferenceError("Invalid Transpose perm", code="ETRANSPOSE_PERM")
    out.shape = [x.shape[i] for i in perm]


@register_shape_inference("Concat")
def infer_concat(graph: Graph, node: Node) -> None:
    if len(node.outputs) != 1 or len(node.inputs) < 1:
        raise InferenceError(
            "Concat expects N inputs and 1 output", code="ECONCAT_ARITY"
        )
    tensors = [graph.tensors[name] for name in node.inputs]
    out = graph.tensors[node.outputs[0]]
    out.dtype = tensors[0].dtype
    if any(t.shape is None for t in tensors):
        out.shape = None
        return
    rank = len(tensors[0].shape)
    if any(len(t.shape) != rank for t in tensors):
        raise InferenceError("Concat inputs must have same rank", code="ECONCAT_RANK")
    axis = node.attributes.get("axis", 0)
    if not isinstance(axis, int):
        raise InferenceError("Concat axis must be int", code="ECONCAT_AXIS")
    if axis < 0:
        axis += rank
    if axis < 0 or axis >= rank:
        raise InferenceError("Concat axis out of range", code="ECONCAT_AXIS")
    out_shape: list[Dim] = list(tensors[0].shape)
    total: Dim = 0
    for t in tensors:
        for d in range(rank):
            if d == axis:
                continue
            a, b = t.shape[d], out_shape[d]
            if isinstance(a, int) and isinstance(b, int) and a != b:
                raise InferenceError("Concat dim mismatch", code="ECONCAT_DIMS")
        dim = t.shape[axis]
        total = total + dim if isinstance(total, int) and isinstance(dim, int) else None
    out_shape[axis] = total
    out.shape = out_shape


@register_shape_inference("ATen")
def infer_aten(graph: Graph, node: Node) -> None:
    # Only the embedding lookup is understood: out = indices.shape + [embed_dim]
    if node.attributes.get("operator") != "embedding":
        return
    _io(graph, node, 2, 1, "EEMBEDDING_ARITY")
    weight = graph.tensors[node.inputs[0]]
    indices = graph.tensors[node.inputs[1]]
    out = _out(graph, node)
    out.dtype = weight.dtype
    if weight.shape is None or indices.shape is None or len(weight.shape) != 2:
        out.shape = None
        return
    out.shape = list(indices.shape) + [weight.shape[1]]


def infer_graph(graph: Graph) -> None:
    """
    Run shape/dtype inference over the graph in topological order.
    """
    order = GraphValidator(graph).toposort()
    for node in order:
        fn = _REGISTRY.get(node.op_type)
        if fn is None:
            # Unknown op: leave shapes as-is
            continue
        fn(graph, node)
