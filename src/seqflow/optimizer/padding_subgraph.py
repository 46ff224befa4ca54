"""
Classification of the nodes reachable from the embedding anchor.

Walks consumers breadth-first and decides, per operator, whether the
``[token_count, ...]`` layout produced after padding removal can flow through
it. Nothing here mutates the graph; the result is a plan consumed by
:mod:`seqflow.optimizer.padding_rewrite`.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from seqflow.ir import Graph, Node, build_consumer_map, output_nodes
from seqflow.optimizer.passes import PassError
from seqflow.utils import get_logger

logger = get_logger(__name__)

ONNX_DOMAIN = ""
MS_DOMAIN = "com.microsoft"
ATEN_DOMAIN = "org.pytorch.aten"

INSPECT_ACTIVATION_FUNC = (
    "onnxruntime.training.utils.hooks._statistics_subscriber._InspectActivation"
)
INSPECT_UNPAD_ACTIVATION_FUNC = (
    "onnxruntime.training.utils.hooks._statistics_subscriber._InspectUnpadActivation"
)
INCREMENT_STEP_FUNC = (
    "onnxruntime.training.utils.hooks._subscriber_manager._IncrementStep"
)


class OpClass(Enum):
    ELEMENTWISE = "elementwise"
    NORMALIZATION = "normalization"
    DROPOUT = "dropout"
    UNARY = "unary"
    MATMUL = "matmul"
    HOOK = "hook"
    REDUCE_MEAN = "reduce_mean"
    OTHER = "other"


_OP_CLASSES: dict[tuple[str, str], OpClass] = {
    (ONNX_DOMAIN, "Add"): OpClass.ELEMENTWISE,
    (ONNX_DOMAIN, "Sub"): OpClass.ELEMENTWISE,
    (ONNX_DOMAIN, "Mul"): OpClass.ELEMENTWISE,
    (MS_DOMAIN, "BiasGelu"): OpClass.ELEMENTWISE,
    (ONNX_DOMAIN, "LayerNormalization"): OpClass.NORMALIZATION,
    (ONNX_DOMAIN, "SimplifiedLayerNormalization"): OpClass.NORMALIZATION,
    (ONNX_DOMAIN, "Dropout"): OpClass.DROPOUT,
    (ONNX_DOMAIN, "Cast"): OpClass.UNARY,
    (MS_DOMAIN, "Gelu"): OpClass.UNARY,
    (ONNX_DOMAIN, "MatMul"): OpClass.MATMUL,
    (MS_DOMAIN, "MatMulBnb4"): OpClass.MATMUL,
    (MS_DOMAIN, "PythonOp"): OpClass.HOOK,
    (ONNX_DOMAIN, "ReduceMean"): OpClass.REDUCE_MEAN,
}


def normalize_domain(domain: str) -> str:
    return ONNX_DOMAIN if domain in ("", "ai.onnx") else domain


def op_class(node: Node) -> OpClass:
    return _OP_CLASSES.get((normalize_domain(node.domain), node.op_type), OpClass.OTHER)


def normalize_axis(axis: int, rank: int) -> int:
    return axis + rank if axis < 0 else axis


@dataclass
class SubgraphClassification:
    """Result of one traversal. Node collections hold node names in visit order."""

    subgraph: set[str] = field(default_factory=set)
    boundary_inputs: list[str] = field(default_factory=list)
    boundary_outputs: list[str] = field(default_factory=list)
    reshaped_nodes: list[str] = field(default_factory=list)
    # inspect-activation hook name -> rank of its activation output
    inspected_hooks: dict[str, int] = field(default_factory=dict)
    # hooks whose rank attributes lose one dimension in full mode
    rank_adjusted_hooks: list[str] = field(default_factory=list)


class SubgraphClassifier:
    """
    Label nodes reachable from ``start`` as included, boundary-input or
    boundary-output.

    A node is enqueued once, the first time one of its inputs is reached, so a
    node with several reduced inputs may be classified before all of them are
    known. The rewriter therefore re-checks membership against the final
    subgraph set.
    """

    def __init__(self, graph: Graph, *, apply_padding_removal: bool = True) -> None:
        self.graph = graph
        self.apply_padding_removal = apply_padding_removal
        self._handlers: dict[OpClass, Callable[[Node], None]] = {
            OpClass.ELEMENTWISE: self._visit_elementwise,
            OpClass.NORMALIZATION: self._visit_normalization,
            OpClass.DROPOUT: self._visit_dropout,
            OpClass.UNARY: self._visit_unary,
            OpClass.MATMUL: self._visit_matmul,
            OpClass.HOOK: self._visit_hook,
            OpClass.REDUCE_MEAN: self._visit_reduce_mean,
            OpClass.OTHER: self._visit_other,
        }
        self._queue: deque[Node] = deque()
        self._enqueued: set[str] = set()
        self._consumers: dict[str, list[int]] = {}
        self._result = SubgraphClassification()

    def classify(self, start: Node) -> SubgraphClassification:
        self._queue = deque()
        self._enqueued = {start.name}
        self._consumers = build_consumer_map(self.graph)
        self._result = SubgraphClassification(
            subgraph={o for o in start.outputs if o}
        )
        self._enqueue_consumers(start)
        while self._queue:
            node = self._queue.popleft()
            self._handlers[op_class(node)](node)
        return self._result

    # -- bookkeeping -------------------------------------------------------

    def _enqueue_consumers(self, node: Node, outputs: list[str] | None = None) -> None:
        for consumer in output_nodes(self.graph, node, outputs, self._consumers):
            if consumer.name not in self._enqueued:
                self._enqueued.add(consumer.name)
                self._queue.append(consumer)

    def _in_subgraph(self, name: str) -> bool:
        return name in self._result.subgraph

    def _include(self, node: Node, outputs: list[str], *, reshaped: bool) -> None:
        self._result.subgraph.update(o for o in outputs if o)
        if reshaped:
            self._result.reshaped_nodes.append(node.name)
        self._enqueue_consumers(node, outputs)

    def _reject(self, node: Node, reason: str) -> None:
        logger.debug("PaddingElimination: %s (%s) is a boundary output: %s",
                     node.name, node.op_type, reason)
        self._result.boundary_outputs.append(node.name)

    def _require_primary_input(self, node: Node) -> None:
        if not node.inputs or not self._in_subgraph(node.inputs[0]):
            raise PassError(
                f"{node.op_type} node '{node.name}' reached without its first input in the subgraph",
                code="EPAD_NO_SUBGRAPH_INPUT",
                node_name=node.name,
            )

    def _shape(self, name: str) -> list | None:
        t = self.graph.get_tensor(name)
        return None if t is None else t.shape

    # -- per operator class ------------------------------------------------

    def _visit_elementwise(self, node: Node) -> None:
        if len(node.inputs) != 2:
            raise PassError(
                f"Elementwise node '{node.name}' needs exactly two inputs",
                code="EPAD_ARITY",
                node_name=node.name,
            )
        a, b = node.inputs[0], node.inputs[1]
        a_in, b_in = self._in_subgraph(a), self._in_subgraph(b)
        if not a_in and not b_in:
            raise PassError(
                f"Elementwise node '{node.name}' has no input in the subgraph",
                code="EPAD_NO_SUBGRAPH_INPUT",
                node_name=node.name,
            )
        a_shape, b_shape = self._shape(a), self._shape(b)
        if a_shape is None or b_shape is None:
            self._reject(node, "input without shape")
            return
        if (not a_in and len(a_shape) > len(b_shape)) or (
            not b_in and len(b_shape) > len(a_shape)
        ):
            self._reject(node, "input outside the subgraph has more dimensions")
            return
        self._include(node, node.outputs[:1], reshaped=True)
        self._result.boundary_inputs.append(node.name)

    def _visit_normalization(self, node: Node) -> None:
        if not node.inputs or not self._in_subgraph(node.inputs[0]):
            self._reject(node, "first input is not in the subgraph")
            return
        shape = self._shape(node.inputs[0])
        if shape is None:
            self._reject(node, "first input has no shape")
            return
        axis = normalize_axis(int(node.attributes.get("axis", -1)), len(shape))
        if axis < 2:
            self._reject(node, f"axis {axis} blocks merging the leading two dims")
            return
        self._include(node, node.outputs[:1], reshaped=True)

    def _visit_dropout(self, node: Node) -> None:
        self._require_primary_input(node)
        self._include(node, node.outputs[:2], reshaped=False)

    def _visit_unary(self, node: Node) -> None:
        self._require_primary_input(node)
        self._include(node, node.outputs[:1], reshaped=True)

    def _visit_matmul(self, node: Node) -> None:
        if len(node.inputs) < 2:
            raise PassError(
                f"MatMul node '{node.name}' needs two inputs",
                code="EPAD_ARITY",
                node_name=node.name,
            )
        left, right = node.inputs[0], node.inputs[1]
        if self._in_subgraph(left):
            # The leading two dims survive only as batch dims of a rank > 2 operand
            shape = self._shape(left)
            if shape is None or len(shape) <= 2:
                self._reject(node, "left input has rank <= 2 or no shape")
                return
            self._include(node, node.outputs[:1], reshaped=True)
        elif self._in_subgraph(right):
            self._reject(node, "right input is never propagated")
        else:
            raise PassError(
                f"MatMul node '{node.name}' has no input in the subgraph",
                code="EPAD_NO_SUBGRAPH_INPUT",
                node_name=node.name,
            )

    def _visit_hook(self, node: Node) -> None:
        if not node.inputs or not self._in_subgraph(node.inputs[0]):
            self._reject(node, "first input is not in the subgraph")
            return
        func_name = node.attributes.get("func_name")
        if not isinstance(func_name, str):
            raise PassError(
                f"Hook node '{node.name}' has no func_name",
                code="EPAD_HOOK_ATTR",
                node_name=node.name,
            )
        if func_name not in (INSPECT_ACTIVATION_FUNC, INCREMENT_STEP_FUNC):
            self._reject(node, f"unrecognized hook {func_name}")
            return
        if len(node.outputs) < 2:
            raise PassError(
                f"Hook node '{node.name}' needs two outputs",
                code="EPAD_ARITY",
                node_name=node.name,
            )
        if func_name == INSPECT_ACTIVATION_FUNC:
            out_shape = self._shape(node.outputs[1])
            if out_shape is None:
                logger.debug(
                    "PaddingElimination: inspect hook %s skipped, activation output has no shape",
                    node.name,
                )
            else:
                if not self.apply_padding_removal:
                    self._check_unpad_attributes(node)
                self._result.inspected_hooks[node.name] = len(out_shape)
        if self.apply_padding_removal:
            for attr in ("input_tensor_ranks", "output_tensor_ranks"):
                ranks = node.attributes.get(attr)
                if not isinstance(ranks, list) or len(ranks) != 1 or ranks[0] < 2:
                    raise PassError(
                        f"Hook node '{node.name}' has invalid {attr}: {ranks!r}",
                        code="EPAD_HOOK_ATTR",
                        node_name=node.name,
                    )
            self._result.rank_adjusted_hooks.append(node.name)
        self._include(node, node.outputs[1:2], reshaped=False)

    @staticmethod
    def _check_unpad_attributes(node: Node) -> None:
        """Attributes the unpad replacement extends; checked before any rewrite."""
        for attr, kind in (
            ("input_convention", str),
            ("input_tensor_types", list),
            ("input_tensor_ranks", list),
        ):
            if not isinstance(node.attributes.get(attr), kind):
                raise PassError(
                    f"Hook node '{node.name}' is missing attribute {attr}",
                    code="EPAD_HOOK_ATTR",
                    node_name=node.name,
                )

    def _visit_reduce_mean(self, node: Node) -> None:
        if not node.inputs or not self._in_subgraph(node.inputs[0]):
            self._reject(node, "first input is not in the subgraph")
            return
        shape = self._shape(node.inputs[0])
        if shape is None:
            self._reject(node, "first input has no shape")
            return
        axes = node.attributes.get("axes")
        if axes is None and len(node.inputs) > 1 and node.inputs[1]:
            axes = self.graph.get_constant(node.inputs[1])
        if isinstance(axes, int):
            axes = [axes]
        if not axes:
            self._reject(node, "reduces over all axes")
            return
        for axis in axes:
            axis = normalize_axis(int(axis), len(shape))
            if axis < 2:
                self._reject(node, f"axis {axis} blocks merging the leading two dims")
                return
        logger.debug("PaddingElimination: ReduceMean %s added to subgraph", node.name)
        self._include(node, node.outputs[:1], reshaped=False)

    def _visit_other(self, node: Node) -> None:
        self._reject(node, "unsupported operator")
