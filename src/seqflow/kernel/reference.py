"""Numpy reference kernels and a small interpreter over the IR.

The two padding adapters are defined here bit-exactly; the interpreter exists
so a rewritten graph can be checked against the original one.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping

import numpy as np
from onnx import helper

from seqflow.ir.graph import Graph, GraphValidator, Node


class ExecutionError(Exception):
    def __init__(self, message: str, code: str = "EEXEC") -> None:
        super().__init__(message)
        self.code = code


def valid_indices(input_ids: np.ndarray, padding_idx: int) -> np.ndarray:
    """Sorted positions of non-padding tokens in the flattened ``[batch * seq_len]`` space."""
    flat = input_ids.reshape(-1)
    return np.flatnonzero(flat != padding_idx).astype(np.int64)


def flatten_and_unpad(x: np.ndarray, indices: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """``[d0, d1, ...] -> [len(indices), ...]`` plus the ``[d0, d1]`` descriptor."""
    if x.ndim < 2:
        raise ExecutionError(f"FlattenAndUnpad expects rank >= 2, got {x.ndim}", code="EUNPAD_RANK")
    dims = np.array(x.shape[:2], dtype=np.int64)
    flat = x.reshape((x.shape[0] * x.shape[1],) + x.shape[2:])
    return flat[indices], dims


def pad_and_unflatten(y: np.ndarray, indices: np.ndarray, dims: np.ndarray) -> np.ndarray:
    """Inverse of :func:`flatten_and_unpad`; rows not listed in ``indices`` are zero."""
    d0, d1 = (int(d) for d in dims)
    if y.shape[0] != len(indices):
        raise ExecutionError(
            f"PadAndUnflatten got {y.shape[0]} rows for {len(indices)} indices",
            code="EPAD_ROWS",
        )
    out = np.zeros((d0 * d1,) + y.shape[1:], dtype=y.dtype)
    out[indices] = y
    return out.reshape((d0, d1) + y.shape[1:])


KernelFn = Callable[[Node, list], list]

_KERNELS: dict[str, KernelFn] = {}


def register_kernel(*op_types: str) -> Callable[[KernelFn], KernelFn]:
    def wrapper(fn: KernelFn) -> KernelFn:
        for op_type in op_types:
            _KERNELS[op_type] = fn
        return fn

    return wrapper


_erf = np.vectorize(math.erf, otypes=[np.float64])


def _gelu(x: np.ndarray) -> np.ndarray:
    return (0.5 * x * (1.0 + _erf(x / math.sqrt(2.0)))).astype(x.dtype)


@register_kernel("Add")
def _add(node: Node, xs: list) -> list:
    return [xs[0] + xs[1]]


@register_kernel("Sub")
def _sub(node: Node, xs: list) -> list:
    return [xs[0] - xs[1]]


@register_kernel("Mul")
def _mul(node: Node, xs: list) -> list:
    return [xs[0] * xs[1]]


@register_kernel("BiasGelu")
def _bias_gelu(node: Node, xs: list) -> list:
    return [_gelu(xs[0] + xs[1])]


@register_kernel("Gelu")
def _gelu_kernel(node: Node, xs: list) -> list:
    return [_gelu(xs[0])]


@register_kernel("Relu")
def _relu(node: Node, xs: list) -> list:
    return [np.maximum(xs[0], 0)]


@register_kernel("Cast")
def _cast(node: Node, xs: list) -> list:
    to = node.attributes["to"]
    dtype = helper.tensor_dtype_to_np_dtype(to) if isinstance(to, int) else np.dtype(to)
    return [xs[0].astype(dtype)]


@register_kernel("Dropout")
def _dropout(node: Node, xs: list) -> list:
    # Inference semantics: identity with an all-true mask
    return [xs[0], np.ones(xs[0].shape, dtype=bool)]


@register_kernel("LayerNormalization")
def _layer_norm(node: Node, xs: list) -> list:
    x, scale = xs[0], xs[1]
    bias = xs[2] if len(xs) > 2 and xs[2] is not None else None
    axis = node.attributes.get("axis", -1)
    axis = axis + x.ndim if axis < 0 else axis
    axes = tuple(range(axis, x.ndim))
    eps = node.attributes.get("epsilon", 1e-5)
    mean = x.mean(axis=axes, keepdims=True)
    var = ((x - mean) ** 2).mean(axis=axes, keepdims=True)
    y = (x - mean) / np.sqrt(var + eps) * scale
    if bias is not None:
        y = y + bias
    return [y.astype(x.dtype)]


@register_kernel("SimplifiedLayerNormalization")
def _rms_norm(node: Node, xs: list) -> list:
    x, scale = xs[0], xs[1]
    axis = node.attributes.get("axis", -1)
    axis = axis + x.ndim if axis < 0 else axis
    axes = tuple(range(axis, x.ndim))
    eps = node.attributes.get("epsilon", 1e-5)
    rms = np.sqrt((x ** 2).mean(axis=axes, keepdims=True) + eps)
    return [(x / rms * scale).astype(x.dtype)]


@register_kernel("MatMul")
def _matmul(node: Node, xs: list) -> list:
    return [np.matmul(xs[0], xs[1])]


def _axes(node: Node, xs: list) -> list[int] | None:
    axes = node.attributes.get("axes")
    if axes is None and len(xs) > 1 and xs[1] is not None:
        axes = xs[1].tolist()
    if axes is None:
        return None
    return [int(a) for a in np.atleast_1d(axes)]


@register_kernel("ReduceMean")
def _reduce_mean(node: Node, xs: list) -> list:
    axes = _axes(node, xs)
    keepdims = bool(node.attributes.get("keepdims", 1))
    axis = None if not axes else tuple(axes)
    return [xs[0].mean(axis=axis, keepdims=keepdims).astype(xs[0].dtype)]


@register_kernel("Reshape")
def _reshape(node: Node, xs: list) -> list:
    target = node.attributes.get("shape")
    if target is None:
        target = xs[1].tolist()
    # 0 copies the input dim, as in ONNX
    target = [xs[0].shape[i] if d == 0 else d for i, d in enumerate(target)]
    return [xs[0].reshape(target)]


@register_kernel("Shape")
def _shape(node: Node, xs: list) -> list:
    return [np.array(xs[0].shape, dtype=np.int64)]


@register_kernel("GatherElements")
def _gather_elements(node: Node, xs: list) -> list:
    axis = node.attributes.get("axis", 0)
    return [np.take_along_axis(xs[0], xs[1].astype(np.int64), axis=axis)]


@register_kernel("Concat")
def _concat(node: Node, xs: list) -> list:
    return [np.concatenate(xs, axis=node.attributes.get("axis", 0))]


@register_kernel("Expand")
def _expand(node: Node, xs: list) -> list:
    shape = np.broadcast_shapes(xs[0].shape, tuple(int(d) for d in xs[1]))
    return [np.broadcast_to(xs[0], shape).copy()]


@register_kernel("NonZero")
def _nonzero(node: Node, xs: list) -> list:
    return [np.array(np.nonzero(xs[0]), dtype=np.int64).reshape(xs[0].ndim, -1)]


@register_kernel("Squeeze")
def _squeeze(node: Node, xs: list) -> list:
    axes = _axes(node, xs)
    return [np.squeeze(xs[0], axis=None if axes is None else tuple(axes))]


@register_kernel("Transpose")
def _transpose(node: Node, xs: list) -> list:
    return [np.transpose(xs[0], axes=node.attributes.get("perm"))]


@register_kernel("ATen")
def _aten(node: Node, xs: list) -> list:
    if node.attributes.get("operator") != "embedding":
        raise ExecutionError(
            f"ATen operator {node.attributes.get('operator')!r} is not supported",
            code="EKERNEL_MISSING",
        )
    return [xs[0][xs[1]]]


@register_kernel("PythonOp")
def _python_op(node: Node, xs: list) -> list:
    # Hooks observe their input and pass it through unchanged
    return [np.zeros((), dtype=np.int64), xs[0]]


@register_kernel("FlattenAndUnpad")
def _flatten_and_unpad(node: Node, xs: list) -> list:
    return list(flatten_and_unpad(xs[0], xs[1]))


@register_kernel("PadAndUnflatten")
def _pad_and_unflatten(node: Node, xs: list) -> list:
    return [pad_and_unflatten(xs[0], xs[1], xs[2])]


def _const_value(graph: Graph, name: str) -> np.ndarray:
    t = graph.tensors[name]
    return np.array(t.metadata["const"], dtype=t.dtype)


def execute_graph(
    graph: Graph,
    feeds: Mapping[str, np.ndarray],
    *,
    outputs: list[str] | None = None,
) -> dict[str, np.ndarray]:
    """
    Run ``graph`` on ``feeds`` and return the requested tensors (graph outputs
    by default).
    """
    values: dict[str, np.ndarray] = {}
    for name, t in graph.tensors.items():
        if t.is_const:
            values[name] = _const_value(graph, name)
    for name in graph.inputs:
        if name in values:
            continue
        if name not in feeds:
            raise ExecutionError(f"Missing feed for graph input '{name}'", code="EFEED_MISSING")
        values[name] = np.asarray(feeds[name])

    for node in GraphValidator(graph).toposort():
        fn = _KERNELS.get(node.op_type)
        if fn is None:
            raise ExecutionError(
                f"No reference kernel for {node.op_type}", code="EKERNEL_MISSING"
            )
        args = [values[i] if i else None for i in node.inputs]
        results = fn(node, args)
        for name, value in zip(node.outputs, results):
            if name:
                values[name] = value

    wanted = graph.outputs if outputs is None else outputs
    return {name: values[name] for name in wanted}
