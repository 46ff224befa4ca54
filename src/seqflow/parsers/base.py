from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from seqflow.ir.graph import Graph


class Parser(ABC):
    """Parser interface for importing models into the graph IR."""

    @abstractmethod
    def parse(self, model: Any) -> Graph:
        """Convert the given model into a Graph."""
        raise NotImplementedError
