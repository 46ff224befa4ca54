from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Any, cast

import boto3
from prefect import flow, get_run_logger, task

from seqflow.ir import Graph
from seqflow.optimizer import PaddingEliminationPass
from seqflow.parsers.onnx import OnnxParser


@task
def download_from_s3(s3_uri: str) -> Path:
    """
    Download a model from S3 to a temporary file. s3_uri like s3://bucket/key
    Requires AWS credentials in environment.
    """
    logger = get_run_logger()
    if not s3_uri.startswith("s3://"):
        raise ValueError("s3_uri must start with s3://")
    _, rest = s3_uri.split("s3://", 1)
    bucket, key = rest.split("/", 1)
    s3 = boto3.client("s3")
    tmp = Path(tempfile.mkstemp(prefix="seqflow_model_", suffix=Path(key).suffix)[1])
    s3.download_file(bucket, key, str(tmp))
    logger.info(f"Downloaded {s3_uri} to {tmp}")
    return tmp


@task
def parse_model(local_path: Path) -> Graph:
    logger = get_run_logger()
    logger.info(f"Parsing model at {local_path}")
    if local_path.suffix.lower() != ".onnx":
        raise ValueError(f"Unsupported model format: {local_path.suffix}")
    return OnnxParser().parse(str(local_path), validate_and_infer=True)


@task
def eliminate_padding(
    ir: Graph,
    sparse_input_names: list[str],
    enable: bool = True,
    restore_graph_outputs: bool = False,
) -> dict[str, Any]:
    logger = get_run_logger()
    logger.info(f"Running padding elimination for inputs {sparse_input_names}")
    changed = PaddingEliminationPass(
        sparse_input_names, enable=enable, restore_graph_outputs=restore_graph_outputs
    ).run(ir)
    stats = dict(ir.metadata.get("padding_elimination", {}))
    stats["changed"] = changed
    stats["node_count"] = len(ir.nodes)
    return stats


@task
def export_results(output_dir: str, results: dict[str, Any]) -> str:
    out_path = Path(output_dir)
    out_path.mkdir(parents=True, exist_ok=True)
    result_file = out_path / "results.json"
    result_file.write_text(json.dumps(results, indent=2))
    return str(result_file)


@flow(name="seqflow-padding-elimination")
def padding_elimination_flow(
    s3_uri: str,
    output_dir: str,
    sparse_input_names: list[str],
    enable: bool = True,
    restore_graph_outputs: bool = False,
) -> str:
    """
    S3 -> parse -> padding elimination -> export summary
    """
    path = download_from_s3(s3_uri)
    ir = parse_model(path)
    stats = eliminate_padding(ir, sparse_input_names, enable, restore_graph_outputs)
    out = export_results(output_dir, stats)
    return cast(str, out)
