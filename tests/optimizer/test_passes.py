from __future__ import annotations

from collections.abc import Iterable

import pytest

from seqflow.ir import Graph, Node, Tensor
from seqflow.optimizer import (
    Pass,
    PassError,
    PaddingEliminationPass,
    Pipeline,
    build_default_pipeline,
)


def t(name: str, shape: list[int], dtype: str = "float32") -> Tensor:
    return Tensor(name=name, dtype=dtype, shape=shape)


class DropIdentityPass(Pass):
    """Removes one Identity node per match round."""

    def __init__(self) -> None:
        self.rounds = 0

    def match(self, graph: Graph) -> Iterable[Node]:
        self.rounds += 1
        return [n for n in graph.nodes if n.op_type == "Identity"][:1]

    def apply(self, graph: Graph, candidate: Node) -> None:
        graph.replace_all_uses(candidate.outputs[0], candidate.inputs[0])
        graph.remove_node(candidate)


def identity_chain(n: int) -> Graph:
    g = Graph()
    names = [f"x{i}" for i in range(n + 1)]
    for name in names:
        g.add_tensor(t(name, [1]))
    g.inputs = [names[0]]
    for a, b in zip(names, names[1:]):
        g.add_node(Node("Identity", [a], [b]))
    g.outputs = [names[-1]]
    return g


def test_pipeline_runs_pass_to_fixed_point() -> None:
    g = identity_chain(3)
    p = DropIdentityPass()
    Pipeline([p]).run(g)
    assert g.nodes == []
    assert g.outputs == ["x0"]
    assert p.rounds == 4


def test_run_applies_current_candidates_once() -> None:
    g = identity_chain(2)
    p = DropIdentityPass()
    assert p.run(g) is True
    assert len(g.nodes) == 1
    assert p.run(g) is True
    assert p.run(g) is False


def test_pass_error_carries_code_and_node() -> None:
    err = PassError("boom", code="EPAD_ARITY", node_name="add")
    assert str(err) == "boom"
    assert err.code == "EPAD_ARITY"
    assert err.node_name == "add"
    assert PassError("plain").code == "EPASS"


def test_default_pipeline_without_inputs_is_empty() -> None:
    g = identity_chain(1)
    build_default_pipeline().run(g)
    assert len(g.nodes) == 1


def test_default_pipeline_configures_padding_pass() -> None:
    pipeline = build_default_pipeline(
        sparse_embedding_input_names=["input_ids"],
        enable_padding_elimination=False,
        restore_graph_outputs=True,
    )
    (p,) = pipeline._passes
    assert isinstance(p, PaddingEliminationPass)
    assert p.enable is False
    assert p.restore_graph_outputs is True
    assert p.sparse_embedding_input_names == ["input_ids"]


def test_pass_is_abstract() -> None:
    with pytest.raises(TypeError):
        Pass()  # type: ignore[abstract]
