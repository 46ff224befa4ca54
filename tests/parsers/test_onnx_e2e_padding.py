from __future__ import annotations

import numpy as np
import onnx
from onnx import TensorProto, helper

from seqflow.ir import GraphValidator
from seqflow.kernel.reference import execute_graph
from seqflow.optimizer import build_default_pipeline
from seqflow.parsers.onnx import OnnxParser

V, D = 12, 8


def embedding_model() -> onnx.ModelProto:
    # ids -> ATen embedding -> Add(bias) -> MatMul -> Gelu -> LayerNorm -> Relu
    rng = np.random.default_rng(0)
    ids = helper.make_tensor_value_info("input_ids", TensorProto.INT64, ["batch", "seq"])
    out = helper.make_tensor_value_info("out", TensorProto.FLOAT, ["batch", "seq", D])

    weight = helper.make_tensor(
        "weight", TensorProto.FLOAT, [V, D], rng.standard_normal((V, D)).astype(np.float32).flatten().tolist()
    )
    padding_idx = helper.make_tensor("padding_idx", TensorProto.INT64, [], [0])
    bias = helper.make_tensor(
        "bias", TensorProto.FLOAT, [D], rng.standard_normal(D).astype(np.float32).tolist()
    )
    w = helper.make_tensor(
        "w", TensorProto.FLOAT, [D, D], rng.standard_normal((D, D)).astype(np.float32).flatten().tolist()
    )
    scale = helper.make_tensor("ln_scale", TensorProto.FLOAT, [D], [1.0] * D)

    nodes = [
        helper.make_node(
            "ATen",
            ["weight", "input_ids", "padding_idx"],
            ["emb"],
            name="embedding",
            domain="org.pytorch.aten",
            operator="embedding",
        ),
        helper.make_node("Add", ["emb", "bias"], ["x"], name="add"),
        helper.make_node("MatMul", ["x", "w"], ["h"], name="matmul"),
        helper.make_node("Gelu", ["h"], ["g"], name="gelu", domain="com.microsoft"),
        helper.make_node(
            "LayerNormalization", ["g", "ln_scale"], ["n"], name="ln", axis=-1, epsilon=1e-5
        ),
        helper.make_node("Relu", ["n"], ["out"], name="relu"),
    ]
    graph = helper.make_graph(
        nodes, "padded_encoder", [ids], [out], initializer=[weight, padding_idx, bias, w, scale]
    )
    return helper.make_model(
        graph,
        opset_imports=[
            helper.make_opsetid("", 17),
            helper.make_opsetid("com.microsoft", 1),
            helper.make_opsetid("org.pytorch.aten", 1),
        ],
    )


def padded_ids() -> np.ndarray:
    ids = np.array(
        [
            [3, 5, 7, 1, 0, 0],
            [2, 0, 0, 0, 0, 0],
            [4, 4, 9, 11, 6, 8],
        ],
        dtype=np.int64,
    )
    return ids


def test_e2e_parse_infer_and_eliminate() -> None:
    ir = OnnxParser().parse(embedding_model())
    assert ir.tensors["emb"].shape == ["batch", "seq", D]
    assert ir.tensors["n"].shape == ["batch", "seq", D]

    build_default_pipeline(sparse_embedding_input_names=["input_ids"]).run(ir)
    GraphValidator(ir).validate()

    stats = ir.metadata["padding_elimination"]
    token_dim = stats["token_dim"]
    assert stats["reshaped_nodes"] == ["add", "matmul", "gelu", "ln"]
    assert stats["handled_inputs"] == 1
    assert stats["handled_outputs"] == 1
    for edge in ["emb", "x", "h", "g", "n"]:
        assert ir.tensors[edge].shape == [token_dim, D]

    relu = ir.get_node("relu")
    pad = ir.producer(relu.inputs[0])
    assert pad.op_type == "PadAndUnflatten"
    assert pad.domain == "com.microsoft"
    assert ir.tensors[relu.inputs[0]].shape == ["batch", "seq", D]
    assert ir.tensors["out"].shape == ["batch", "seq", D]

    flat = next(n for n in ir.nodes if n.op_type == "Reshape")
    assert ir.tensors[flat.outputs[0]].shape == ["batch*seq"]


def test_e2e_rewritten_model_matches_at_valid_tokens() -> None:
    ids = padded_ids()
    reference = execute_graph(OnnxParser().parse(embedding_model()), {"input_ids": ids})["out"]

    ir = OnnxParser().parse(embedding_model())
    build_default_pipeline(sparse_embedding_input_names=["input_ids"]).run(ir)
    actual = execute_graph(ir, {"input_ids": ids})["out"]

    mask = ids != 0
    assert actual.shape == reference.shape
    np.testing.assert_allclose(actual[mask], reference[mask], rtol=1e-4, atol=1e-5)
    np.testing.assert_array_equal(actual[~mask], 0.0)


def test_e2e_without_sparse_inputs_keeps_graph() -> None:
    ir = OnnxParser().parse(embedding_model())
    before = [n.op_type for n in ir.nodes]
    build_default_pipeline(sparse_embedding_input_names=[]).run(ir)
    assert [n.op_type for n in ir.nodes] == before
    assert ir.tensors["emb"].shape == ["batch", "seq", D]
