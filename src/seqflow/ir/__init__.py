"""Graph IR data structures and analysis utilities."""

from .graph import Dim, Graph, GraphValidator, Node, Tensor, ValidationError
from .infer import InferenceError, broadcast_shape, infer_graph
from .utils import build_consumer_map, output_nodes

__all__ = [
    "Dim",
    "Graph",
    "Node",
    "Tensor",
    "GraphValidator",
    "ValidationError",
    "build_consumer_map",
    "output_nodes",
    "InferenceError",
    "broadcast_shape",
    "infer_graph",
]
