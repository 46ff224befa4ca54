from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Protocol

from seqflow.ir.graph import Graph


class Candidate(Protocol):
    """A pass-specific candidate match object."""
    ...


class PassError(Exception):
    """A pass found the graph in a state its own analysis ruled out."""

    def __init__(self, message: str, code: str = "EPASS", node_name: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.node_name = node_name


class Pass(ABC):
    """Base class for graph passes."""

    @abstractmethod
    def match(self, graph: Graph) -> Iterable[Candidate]:
        raise NotImplementedError

    @abstractmethod
    def apply(self, graph: Graph, candidate: Candidate) -> None:
        raise NotImplementedError

    def run(self, graph: Graph) -> bool:
        """Apply every current candidate once. Returns True if the graph changed."""
        modified = False
        for c in list(self.match(graph)):
            self.apply(graph, c)
            modified = True
        return modified


class Pipeline:
    """An ordered sequence of passes."""

    def __init__(self, passes: list[Pass]) -> None:
        self._passes = passes

    def run(self, graph: Graph) -> Graph:
        for p in self._passes:
            # Run each pass to a fixed point
            while True:
                candidates = list(p.match(graph))
                if not candidates:
                    break
                for c in candidates:
                    p.apply(graph, c)
        return graph
