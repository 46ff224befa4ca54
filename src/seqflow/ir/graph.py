from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

# A dimension is a concrete size, a symbolic name, or unknown (None).
Dim = Union[int, str, None]


@dataclass
class Tensor:
    name: str
    dtype: str
    shape: list[Dim] | None
    layout: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def rank(self) -> int | None:
        return None if self.shape is None else len(self.shape)

    @property
    def is_const(self) -> bool:
        return "const" in self.metadata


@dataclass
class Node:
    op_type: str
    inputs: list[str]
    outputs: list[str]
    attributes: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    name: str = ""
    domain: str = ""
    provider: str | None = None


@dataclass
class Graph:
    nodes: list[Node] = field(default_factory=list)
    tensors: dict[str, Tensor] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    _name_counter: int = field(default=0, repr=False, compare=False)

    def make_name(self, prefix: str) -> str:
        """Return a tensor/node name not used anywhere in the graph yet."""
        taken = {n.name for n in self.nodes}
        while True:
            self._name_counter += 1
            name = f"{prefix}_{self._name_counter}"
            if name not in self.tensors and name not in taken:
                return name

    def add_node(self, node: Node, *, index: int | None = None) -> Node:
        if not node.name:
            node.name = self.make_name(node.op_type.lower())
        if index is None:
            self.nodes.append(node)
        else:
            self.nodes.insert(index, node)
        return node

    def add_tensor(self, tensor: Tensor) -> None:
        self.tensors[tensor.name] = tensor

    def get_tensor(self, name: str) -> Tensor | None:
        return self.tensors.get(name)

    def get_node(self, name: str) -> Node | None:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def remove_node(self, node: Node) -> None:
        self.nodes = [n for n in self.nodes if n is not node]

    def add_initializer(
        self, name: str, value: Any, dtype: str, shape: list[Dim]
    ) -> Tensor:
        tensor = Tensor(name=name, dtype=dtype, shape=list(shape), metadata={"const": value})
        self.add_tensor(tensor)
        return tensor

    def get_constant(self, name: str) -> Any | None:
        t = self.tensors.get(name)
        if t is None:
            return None
        return t.metadata.get("const")

    def is_graph_input(self, name: str) -> bool:
        t = self.tensors.get(name)
        return name in self.inputs and t is not None and not t.is_const

    def producer(self, name: str) -> Node | None:
        for node in self.nodes:
            if name in node.outputs:
                return node
        return None

    def consumers(self, name: str) -> list[Node]:
        return [n for n in self.nodes if name in n.inputs]

    def replace_all_uses(self, old: str, new: str) -> None:
        """Redirect every node input and graph output reading ``old`` to ``new``."""
        for node in self.nodes:
            node.inputs = [new if i == old else i for i in node.inputs]
        self.outputs = [new if o == old else o for o in self.outputs]

    def insert_node_on_input(
        self,
        consumer: Node,
        input_index: int,
        op_type: str,
        inputs: list[str],
        outputs: list[str],
        attributes: dict[str, Any] | None = None,
        domain: str = "",
    ) -> Node:
        """
        Splice a new node between ``consumer.inputs[input_index]`` and ``consumer``.

        ``inputs[0]`` must be the edge currently feeding that input. Only this one
        consumer input is redirected to ``outputs[0]``; other consumers of the
        original edge keep reading it.
        """
        if input_index >= len(consumer.inputs):
            raise ValidationError(
                f"Node '{consumer.name}' has no input {input_index}",
                code="EINPUT_INDEX",
            )
        if not inputs or inputs[0] != consumer.inputs[input_index]:
            raise ValidationError(
                f"Inserted node must consume '{consumer.inputs[input_index]}' first",
                code="ESPLICE",
            )
        node = Node(
            op_type=op_type,
            inputs=list(inputs),
            outputs=list(outputs),
            attributes=dict(attributes or {}),
            domain=domain,
            provider=consumer.provider,
        )
        index = next(i for i, n in enumerate(self.nodes) if n is consumer)
        self.add_node(node, index=index)
        consumer.inputs[input_index] = outputs[0]
        return node


class ValidationError(Exception):
    """Graph validation error with optional code and context."""

    def __init__(
        self, message: str, code: str = "EVALID", node_index: int | None = None
    ) -> None:
        super().__init__(message)
        self.code = code
        self.node_index = node_index


def _valid_dim(dim: Dim) -> bool:
    if dim is None:
        return True
    if isinstance(dim, bool):
        return False
    if isinstance(dim, int):
        return dim >= 0
    return isinstance(dim, str) and bool(dim)


class GraphValidator:
    """Validates basic IR invariants and provides graph utilities like toposort."""

    def __init__(self, graph: Graph) -> None:
        self.graph = graph

    def validate(self) -> None:
        self._validate_tensors_typed()
        producer_map = self._build_producer_map()
        self._validate_unique_node_names()
        self._validate_node_io_exist()
        self._validate_inputs_outputs_exist()
        self._topological_order(producer_map)  # raises on cycles

    def _validate_tensors_typed(self) -> None:
        for name, t in self.graph.tensors.items():
            if not t.dtype or not isinstance(t.dtype, str):
                raise ValidationError(
                    f"Tensor '{name}' missing dtype", code="ETENSOR_DTYPE"
                )
            # None means the shape is unknown, which is legal
            if t.shape is None:
                continue
            if not isinstance(t.shape, list):
                raise ValidationError(
                    f"Tensor '{name}' has malformed shape", code="ETENSOR_SHAPE"
                )
            for dim in t.shape:
                if not _valid_dim(dim):
                    raise ValidationError(
                        f"Tensor '{name}' has invalid shape {t.shape}",
                        code="ETENSOR_SHAPE",
                    )

    def _build_producer_map(self) -> dict[str, int]:
        """Map tensor name -> producing node index. Graph inputs have no producer."""
        producer: dict[str, int] = {}
        for idx, node in enumerate(self.graph.nodes):
            for out in node.outputs:
                if out in producer:
                    raise ValidationError(
                        f"Multiple producers for tensor '{out}' at node {idx} and {producer[out]}",
                        code="EDUP_PRODUCER",
                        node_index=idx,
                    )
                producer[out] = idx
        return producer

    def _validate_unique_node_names(self) -> None:
        seen: set[str] = set()
        for idx, node in enumerate(self.graph.nodes):
            if not node.name:
                continue
            if node.name in seen:
                raise ValidationError(
                    f"Duplicate node name '{node.name}'",
                    code="EDUP_NODE_NAME",
                    node_index=idx,
                )
            seen.add(node.name)

    def _validate_node_io_exist(self) -> None:
        for idx, node in enumerate(self.graph.nodes):
            for name in node.inputs:
                # Empty names mark omitted optional inputs
                if name and name not in self.graph.tensors:
                    raise ValidationError(
                        f"Node {idx} input '{name}' not found in tensors",
                        code="EINPUT_MISSING",
                        node_index=idx,
                    )
            for name in node.outputs:
                if name and name not in self.graph.tensors:
                    raise ValidationError(
                        f"Node {idx} output '{name}' not found in tensors",
                        code="EOUTPUT_MISSING",
                        node_index=idx,
                    )

    def _validate_inputs_outputs_exist(self) -> None:
        for name in self.graph.inputs:
            if name not in self.graph.tensors:
                raise ValidationError(
                    f"Graph input '{name}' missing tensor", code="EGRAPH_INPUT"
                )
        for name in self.graph.outputs:
            if name not in self.graph.tensors:
                raise ValidationError(
                    f"Graph output '{name}' missing tensor", code="EGRAPH_OUTPUT"
                )

    def _topological_order(
        self, producer_map: dict[str, int] | None = None
    ) -> list[int]:
        """
        Return topological order of node indices. Raise ValidationError on cycles.
        Nodes without dependencies between them keep their list order.
        """
        if producer_map is None:
            producer_map = self._build_producer_map()

        indegree: list[int] = [0] * len(self.graph.nodes)
        adj: dict[int, set[int]] = {i: set() for i in range(len(self.graph.nodes))}

        # Build edges: u -> v if v consumes a tensor produced by u
        for v_idx, node in enumerate(self.graph.nodes):
            for inp in node.inputs:
                u_idx = producer_map.get(inp)
                if u_idx is not None:
                    if v_idx not in adj[u_idx]:
                        adj[u_idx].add(v_idx)
                        indegree[v_idx] += 1

        # Kahn's algorithm
        queue: list[int] = [i for i, d in enumerate(indegree) if d == 0]
        order: list[int] = []
        while queue:
            u = queue.pop(0)
            order.append(u)
            for v in sorted(adj[u]):
                indegree[v] -= 1
                adj[u].remove(v)
                if indegree[v] == 0:
                    queue.append(v)

        if len(order) != len(self.graph.nodes):
            raise ValidationError("Cycle detected in graph", code="ECYCLE")
        return order

    def toposort(self) -> list[Node]:
        order = self._topological_order()
        return [self.graph.nodes[i] for i in order]
