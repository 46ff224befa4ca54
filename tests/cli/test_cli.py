from __future__ import annotations

import json
from pathlib import Path

import onnx
from onnx import TensorProto, helper
from typer.testing import CliRunner

from seqflow.cli.main import app
from seqflow.optimizer.padding_subgraph import INSPECT_ACTIVATION_FUNC

runner = CliRunner()


def save_model(path: Path, *, hook_attrs: dict | None = None) -> str:
    ids = helper.make_tensor_value_info("input_ids", TensorProto.INT64, [2, 5])
    out = helper.make_tensor_value_info("y", TensorProto.FLOAT, [2, 5, 4])
    weight = helper.make_tensor("weight", TensorProto.FLOAT, [6, 4], [0.5] * 24)
    padding_idx = helper.make_tensor("padding_idx", TensorProto.INT64, [], [0])
    nodes = [
        helper.make_node(
            "ATen",
            ["weight", "input_ids", "padding_idx"],
            ["emb"],
            name="embedding",
            domain="org.pytorch.aten",
            operator="embedding",
        )
    ]
    if hook_attrs is None:
        nodes.append(helper.make_node("Relu", ["emb"], ["y"], name="relu"))
    else:
        nodes.append(
            helper.make_node(
                "PythonOp", ["emb"], ["ctx", "y"], name="hook", domain="com.microsoft", **hook_attrs
            )
        )
    graph = helper.make_graph(nodes, "cli_model", [ids], [out], initializer=[weight, padding_idx])
    model_path = path / "model.onnx"
    onnx.save(helper.make_model(graph), str(model_path))
    return str(model_path)


def test_hello() -> None:
    result = runner.invoke(app, ["hello"])
    assert result.exit_code == 0
    assert "seqflow CLI is ready." in result.stdout


def test_eliminate_prints_summary(tmp_path: Path) -> None:
    model = save_model(tmp_path)
    result = runner.invoke(app, ["eliminate", model, "--sparse-input", "input_ids"])
    assert result.exit_code == 0, result.output
    summary = json.loads(result.stdout)
    assert summary["changed"] is True
    assert summary["mode"] == "full"
    assert summary["handled_outputs"] == 1


def test_eliminate_noop_for_unlisted_input(tmp_path: Path) -> None:
    model = save_model(tmp_path)
    result = runner.invoke(app, ["eliminate", model, "--sparse-input", "token_type_ids"])
    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"changed": False}


def test_eliminate_lightweight_replaces_hook(tmp_path: Path) -> None:
    model = save_model(
        tmp_path,
        hook_attrs={
            "func_name": INSPECT_ACTIVATION_FUNC,
            "input_convention": "d",
            "input_requires_grads": [1],
            "input_tensor_types": [1],
            "input_tensor_ranks": [3],
            "output_tensor_ranks": [3],
        },
    )
    result = runner.invoke(
        app, ["eliminate", model, "--sparse-input", "input_ids", "--lightweight"]
    )
    assert result.exit_code == 0, result.output
    summary = json.loads(result.stdout)
    assert summary["mode"] == "lightweight"
    assert summary["replaced_hooks"] == 1


def test_eliminate_reports_pass_error(tmp_path: Path) -> None:
    model = save_model(tmp_path, hook_attrs={"input_convention": "d"})
    result = runner.invoke(app, ["eliminate", model, "--sparse-input", "input_ids"])
    assert result.exit_code == 1
    assert "EPAD_HOOK_ATTR" in result.output
