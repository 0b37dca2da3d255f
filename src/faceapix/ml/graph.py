"""Compile a network's parameter mapping into an ONNX graph.

Parameters arrive in TensorFlow layout (``[kh, kw, in, out]`` filters,
``[kh, kw, channels, 1]`` depthwise filters, ``[in, out]`` dense weights) and
are transposed to ONNX layout here. Activations are NCHW float32. ``same``
padding follows TensorFlow (extra padding at the end, ``SAME_UPPER``).
"""

from __future__ import annotations

import itertools
from typing import TYPE_CHECKING, Literal

import numpy as np
from onnx import TensorProto, helper, numpy_helper

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

OPSET = 13
# Pinned so sessions build on onnxruntime releases older than the installed onnx.
IR_VERSION = 8

Padding = Literal["same", "valid"]

_AUTO_PAD: dict[str, str] = {"same": "SAME_UPPER", "valid": "VALID"}


class GraphBuilder:
    """Incrementally builds a single-input ONNX model.

    Every op method takes value names and returns the name of its output.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._nodes: list[object] = []
        self._initializers: list[object] = []
        self._inputs: list[object] = []
        self._outputs: list[object] = []
        self._ids = itertools.count()

    # -- Graph I/O ----------------------------------------------------------

    def input(self, name: str, shape: Sequence[int | str]) -> str:
        self._inputs.append(helper.make_tensor_value_info(name, TensorProto.FLOAT, list(shape)))
        return name

    def output(self, value: str, name: str) -> None:
        self._nodes.append(helper.make_node("Identity", [value], [name]))
        self._outputs.append(helper.make_tensor_value_info(name, TensorProto.FLOAT, None))

    def constant(self, array: NDArray[np.generic], hint: str = "const") -> str:
        name = self._unique(hint)
        self._initializers.append(numpy_helper.from_array(np.ascontiguousarray(array), name))
        return name

    def build(self) -> bytes:
        """Serialize the graph to ONNX model bytes."""
        graph = helper.make_graph(self._nodes, self.name, self._inputs, self._outputs, self._initializers)
        model = helper.make_model(
            graph,
            opset_imports=[helper.make_opsetid("", OPSET)],
            producer_name="faceapix",
        )
        model.ir_version = IR_VERSION
        return model.SerializeToString()

    # -- Layers -------------------------------------------------------------

    def conv(
        self,
        x: str,
        filters: NDArray[np.float32],
        bias: NDArray[np.float32] | None = None,
        *,
        stride: int = 1,
        padding: Padding = "same",
        depthwise: bool = False,
        name: str = "conv",
    ) -> str:
        """2D convolution with TensorFlow-layout ``filters``."""
        kh, kw, channels, multiplier = filters.shape
        if depthwise:
            weight = filters.transpose(2, 3, 0, 1).reshape(channels * multiplier, 1, kh, kw)
            group = channels
        else:
            weight = filters.transpose(3, 2, 0, 1)
            group = 1
        inputs = [x, self.constant(weight.astype(np.float32), f"{name}/W")]
        if bias is not None:
            inputs.append(self.constant(np.asarray(bias, dtype=np.float32), f"{name}/B"))
        return self._op(
            "Conv",
            inputs,
            kernel_shape=[kh, kw],
            strides=[stride, stride],
            auto_pad=_AUTO_PAD[padding],
            group=group,
        )

    def dense(self, x: str, weights: NDArray[np.float32], bias: NDArray[np.float32] | None = None) -> str:
        """``x @ weights + bias`` for a 2D input."""
        out_features = weights.shape[1]
        bias = np.zeros(out_features, dtype=np.float32) if bias is None else bias
        w = self.constant(weights.astype(np.float32), "dense/W")
        b = self.constant(bias.astype(np.float32), "dense/B")
        return self._op("Gemm", [x, w, b])

    def relu(self, x: str) -> str:
        return self._op("Relu", [x])

    def relu6(self, x: str) -> str:
        low = self.constant(np.array(0.0, dtype=np.float32), "relu6/min")
        high = self.constant(np.array(6.0, dtype=np.float32), "relu6/max")
        return self._op("Clip", [x, low, high])

    def leaky_relu(self, x: str, alpha: float) -> str:
        return self._op("LeakyRelu", [x], alpha=alpha)

    def prelu(self, x: str, alpha: NDArray[np.float32], *, spatial: bool = True) -> str:
        """Parametric relu with one slope per channel."""
        slope = alpha.reshape(-1, 1, 1) if spatial else alpha.reshape(-1)
        return self._op("PRelu", [x, self.constant(slope.astype(np.float32), "prelu/slope")])

    def sigmoid(self, x: str) -> str:
        return self._op("Sigmoid", [x])

    def softmax(self, x: str, axis: int = 1) -> str:
        return self._op("Softmax", [x], axis=axis)

    def max_pool(self, x: str, size: int, stride: int, padding: Padding = "valid") -> str:
        return self._op(
            "MaxPool",
            [x],
            kernel_shape=[size, size],
            strides=[stride, stride],
            auto_pad=_AUTO_PAD[padding],
        )

    def avg_pool(self, x: str, size: int, stride: int, padding: Padding = "valid") -> str:
        return self._op(
            "AveragePool",
            [x],
            kernel_shape=[size, size],
            strides=[stride, stride],
            auto_pad=_AUTO_PAD[padding],
        )

    def global_avg_pool(self, x: str) -> str:
        """Mean over the spatial axes, flattened to ``[N, C]``."""
        return self._op("Flatten", [self._op("GlobalAveragePool", [x])], axis=1)

    def add(self, a: str, b: str) -> str:
        return self._op("Add", [a, b])

    def pad_channels(self, x: str, extra: int) -> str:
        """Append ``extra`` zero channels."""
        pads = self.constant(np.array([0, 0, 0, 0, 0, extra, 0, 0], dtype=np.int64), "pads")
        return self._op("Pad", [x, pads], mode="constant")

    def pad_spatial(self, x: str, extra: int) -> str:
        """Append ``extra`` zero rows and columns at the bottom/right."""
        pads = self.constant(np.array([0, 0, 0, 0, 0, 0, extra, extra], dtype=np.int64), "pads")
        return self._op("Pad", [x, pads], mode="constant")

    def flatten_nhwc(self, x: str) -> str:
        """Flatten ``[N, C, H, W]`` in ``(h, w, c)`` order, as dense weights expect."""
        return self._op("Flatten", [self._op("Transpose", [x], perm=[0, 2, 3, 1])], axis=1)

    def to_rows(self, x: str, width: int) -> str:
        """Reshape ``[N, A*width, H, W]`` predictions to ``[N, H*W*A, width]`` rows."""
        shape = self.constant(np.array([0, -1, width], dtype=np.int64), "rows/shape")
        return self._op("Reshape", [self._op("Transpose", [x], perm=[0, 2, 3, 1]), shape])

    def concat(self, values: Sequence[str], axis: int) -> str:
        return self._op("Concat", list(values), axis=axis)

    # -- Internal -----------------------------------------------------------

    def _unique(self, hint: str) -> str:
        return f"{hint}_{next(self._ids)}"

    def _op(self, op_type: str, inputs: list[str], **attrs: object) -> str:
        out = self._unique(op_type.lower())
        self._nodes.append(helper.make_node(op_type, inputs, [out], **attrs))
        return out


def fold_scale(
    filters: NDArray[np.float32],
    bias: NDArray[np.float32] | None,
    scale: NDArray[np.float32],
    offset: NDArray[np.float32],
    *,
    depthwise: bool = False,
) -> tuple[NDArray[np.float32], NDArray[np.float32]]:
    """Fold a per-channel ``y * scale + offset`` layer into the preceding convolution."""
    axis_scale = scale.reshape(1, 1, -1, 1) if depthwise else scale.reshape(1, 1, 1, -1)
    bias = np.zeros_like(offset) if bias is None else bias
    return (filters * axis_scale).astype(np.float32), (bias * scale + offset).astype(np.float32)
