from __future__ import annotations

from typing import Any

import onnx
from onnx import numpy_helper

from seqflow.ir import Dim, Graph, GraphValidator, Node, Tensor, infer_graph
from seqflow.parsers.base import Parser

_DTYPE_MAP = {
    onnx.TensorProto.FLOAT: "float32",
    onnx.TensorProto.UINT8: "uint8",
    onnx.TensorProto.INT8: "int8",
    onnx.TensorProto.UINT16: "uint16",
    onnx.TensorProto.INT16: "int16",
    onnx.TensorProto.INT32: "int32",
    onnx.TensorProto.INT64: "int64",
    onnx.TensorProto.BOOL: "bool",
    onnx.TensorProto.FLOAT16: "float16",
    onnx.TensorProto.DOUBLE: "float64",
    onnx.TensorProto.UINT32: "uint32",
    onnx.TensorProto.UINT64: "uint64",
    onnx.TensorProto.BFLOAT16: "bfloat16",
}


def _dtype_from_value_info(vi: onnx.ValueInfoProto) -> str | None:
    t = vi.type.tensor_type
    elem = t.elem_type
    return _DTYPE_MAP.get(elem)


def _shape_from_value_info(vi: onnx.ValueInfoProto) -> list[Dim] | None:
    t = vi.type.tensor_type
    if not t.HasField("shape"):
        return None
    out: list[Dim] = []
    for d in t.shape.dim:
        if d.HasField("dim_value"):
            out.append(int(d.dim_value))
        elif d.HasField("dim_param"):
            out.append(str(d.dim_param))
        else:
            out.append(None)
    return out


def _parse_attributes(node: onnx.NodeProto) -> dict[str, Any]:
    attrs: dict[str, Any] = {}
    for a in node.attribute:
        if a.type == onnx.AttributeProto.INT:
            attrs[a.name] = int(a.i)
        elif a.type == onnx.AttributeProto.FLOAT:
            attrs[a.name] = float(a.f)
        elif a.type == onnx.AttributeProto.STRING:
            attrs[a.name] = a.s.decode("utf-8", errors="ignore")
        elif a.type == onnx.AttributeProto.INTS:
            attrs[a.name] = [int(x) for x in a.ints]
        elif a.type == onnx.AttributeProto.FLOATS:
            attrs[a.name] = [float(x) for x in a.floats]
        elif a.type == onnx.AttributeProto.STRINGS:
            attrs[a.name] = [s.decode("utf-8", errors="ignore") for s in a.strings]
        elif a.type == onnx.AttributeProto.TENSOR:
            attrs[a.name] = numpy_helper.to_array(a.t).tolist()
        else:
            # graphs and sparse tensors are not represented in the IR
            continue
    return attrs


def _update_value_info(g: Graph, vi: onnx.ValueInfoProto) -> Tensor:
    name = vi.name
    dtype = _dtype_from_value_info(vi) or "float32"
    shape = _shape_from_value_info(vi)
    if name not in g.tensors:
        g.add_tensor(Tensor(name=name, dtype=dtype, shape=shape))
    else:
        t = g.tensors[name]
        t.dtype = t.dtype or dtype
        if t.shape is None:
            t.shape = shape
    return g.tensors[name]


class OnnxParser(Parser):
    """Parse an ONNX model into the seqflow IR Graph."""

    def parse(self, model_or_path: Any, *, validate_and_infer: bool = True) -> Graph:
        model = self._load_model(model_or_path)
        g = Graph(metadata={"name": model.graph.name})

        # Initializers -> tensors with const metadata
        init_names: set[str] = set()
        for init in model.graph.initializer:
            arr = numpy_helper.to_array(init)
            init_names.add(init.name)
            g.add_initializer(init.name, arr.tolist(), str(arr.dtype.name), list(arr.shape))

        # Inputs -> tensors (skip ones that are initializers)
        for inp in model.graph.input:
            if inp.name in init_names:
                continue
            _update_value_info(g, inp)
            g.inputs.append(inp.name)

        for out in model.graph.output:
            _update_value_info(g, out)
            g.outputs.append(out.name)

        # ValueInfo (intermediate tensors with shapes/dtypes)
        for vi in model.graph.value_info:
            _update_value_info(g, vi)

        for n in model.graph.node:
            g.add_node(
                Node(
                    op_type=n.op_type,
                    inputs=list(n.input),
                    outputs=list(n.output),
                    attributes=_parse_attributes(n),
                    name=n.name,
                    domain=n.domain,
                )
            )
            for out_name in n.output:
                if out_name and out_name not in g.tensors:
                    # Placeholder; shapes may be inferred later
                    g.add_tensor(Tensor(name=out_name, dtype="float32", shape=None))

        if validate_and_infer:
            GraphValidator(g).validate()
            infer_graph(g)
        return g

    def _load_model(self, model_or_path: Any) -> onnx.ModelProto:
        if isinstance(model_or_path, onnx.ModelProto):
            return model_or_path
        if isinstance(model_or_path, (bytes, bytearray)):
            return onnx.load_model_from_string(model_or_path)
        if isinstance(model_or_path, str):
            return onnx.load(model_or_path)
        raise TypeError("Unsupported model type for ONNX parser")
