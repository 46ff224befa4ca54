from __future__ import annotations

import json
from typing import Optional

import typer

from seqflow.flows.pipeline import padding_elimination_flow
from seqflow.optimizer import PaddingEliminationPass, PassError
from seqflow.parsers.onnx import OnnxParser

app = typer.Typer(help="seqflow CLI")


@app.command()
def hello() -> None:
    typer.echo("seqflow CLI is ready.")


@app.command()
def eliminate(
    model_path: str = typer.Argument(..., help="Path to an ONNX model"),
    sparse_input: list[str] = typer.Option(
        ..., "--sparse-input", help="Token-id graph input eligible for padding removal"
    ),
    lightweight: bool = typer.Option(
        False, "--lightweight", help="Only rewire activation inspection hooks"
    ),
    provider: Optional[list[str]] = typer.Option(
        None, "--provider", help="Execution provider the embedding must run on"
    ),
    restore_outputs: bool = typer.Option(
        False, "--restore-outputs", help="Scatter reduced graph outputs back to [batch, seq_len, ...]"
    ),
) -> None:
    """
    Run padding elimination on a local ONNX model and print the summary as JSON.
    """
    graph = OnnxParser().parse(model_path, validate_and_infer=True)
    p = PaddingEliminationPass(
        sparse_input,
        enable=not lightweight,
        compatible_providers=provider or (),
        restore_graph_outputs=restore_outputs,
    )
    try:
        changed = p.run(graph)
    except PassError as exc:
        typer.echo(f"padding elimination failed [{exc.code}]: {exc}", err=True)
        raise typer.Exit(code=1)
    summary = dict(graph.metadata.get("padding_elimination", {}))
    summary["changed"] = changed
    typer.echo(json.dumps(summary, indent=2))


@app.command()
def run(s3_uri: str = typer.Argument(..., help="S3 URI to model, e.g. s3://bucket/key"),
        output_dir: str = typer.Option("./outputs", help="Directory to write results"),
        sparse_input: list[str] = typer.Option(..., "--sparse-input", help="Token-id graph input"),
        lightweight: bool = typer.Option(False, "--lightweight"),
        restore_outputs: bool = typer.Option(False, "--restore-outputs")) -> None:
    """
    Run the Prefect flow to process a model from S3.
    """
    result_path = padding_elimination_flow(
        s3_uri=s3_uri,
        output_dir=output_dir,
        sparse_input_names=sparse_input,
        enable=not lightweight,
        restore_graph_outputs=restore_outputs,
    )
    typer.echo(f"Results written to: {result_path}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
