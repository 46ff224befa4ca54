"""Graph optimization passes and pipelines."""

from .passes import Pass, PassError, Pipeline
from .padding_elimination import (
    EmbeddingAnchor,
    PaddingEliminationPass,
    PaddingPlan,
    PaddingStats,
    find_embedding_anchor,
)
from .padding_subgraph import OpClass, SubgraphClassification, SubgraphClassifier, op_class


def build_default_pipeline(
    *,
    sparse_embedding_input_names: list[str] | None = None,
    enable_padding_elimination: bool = True,
    restore_graph_outputs: bool = False,
) -> Pipeline:
    passes: list[Pass] = []
    if sparse_embedding_input_names:
        passes.append(
            PaddingEliminationPass(
                sparse_embedding_input_names,
                enable=enable_padding_elimination,
                restore_graph_outputs=restore_graph_outputs,
            )
        )
    return Pipeline(passes)

__all__ = [
    "Pipeline",
    "Pass",
    "PassError",
    "PaddingEliminationPass",
    "PaddingPlan",
    "PaddingStats",
    "EmbeddingAnchor",
    "find_embedding_anchor",
    "OpClass",
    "SubgraphClassification",
    "SubgraphClassifier",
    "op_class",
    "build_default_pipeline",
]
