"""Face recognition network: 128-dimensional face descriptors.

ResNet-34 style network. Descriptors of the same identity lie close in
Euclidean space; a distance below about 0.6 usually means the same person.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import cv2
import numpy as np

from faceapix.ml.graph import GraphBuilder, fold_scale
from faceapix.ml.network import Network, NetworkRuntime, NetworkState
from faceapix.ml.preprocessing import pad_to_square, to_batch, validate_image
from faceapix.ml.tensors import Tensor, TensorScope
from faceapix.ml.weights import WeightLayout, read_weights

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from faceapix.ml.model_manager import ModelManager
    from faceapix.ml.network import Runner
    from faceapix.ml.tensors import TensorRegistry
    from faceapix.ml.weights import WeightSource

logger = logging.getLogger(__name__)

INPUT_SIZE = 150
DESCRIPTOR_SIZE = 128
MEAN_RGB = (122.782, 117.001, 104.298)
PIXEL_SCALE = 1.0 / 256.0

# (name, in_channels, out_channels, downsample) of the residual blocks, in weight order
RESIDUAL_BLOCKS: tuple[tuple[str, int, int, bool], ...] = (
    ("conv32_1", 32, 32, False),
    ("conv32_2", 32, 32, False),
    ("conv32_3", 32, 32, False),
    ("conv64_down", 32, 64, True),
    ("conv64_1", 64, 64, False),
    ("conv64_2", 64, 64, False),
    ("conv64_3", 64, 64, False),
    ("conv128_down", 64, 128, True),
    ("conv128_1", 128, 128, False),
    ("conv128_2", 128, 128, False),
    ("conv256_down", 128, 256, True),
    ("conv256_1", 256, 256, False),
    ("conv256_2", 256, 256, False),
    ("conv256_down_out", 256, 256, True),
)


class FaceRecognizer(Network, Protocol):
    """Protocol for face recognition (descriptor) networks."""

    @property
    def descriptor_size(self) -> int:
        """Return the descriptor dimensionality."""
        ...

    async def compute_descriptor(self, face: NDArray[np.generic] | Tensor) -> NDArray[np.float32]:
        """Compute the descriptor of one aligned face image.

        Args:
            face: HxWx3 RGB face crop, ideally aligned with its landmarks.

        Returns:
            Descriptor of shape ``(descriptor_size,)``.
        """
        ...


def euclidean_distance(a: NDArray[np.floating], b: NDArray[np.floating]) -> float:
    """Euclidean distance between two descriptors.

    Raises:
        ValueError: If the descriptors differ in length.
    """
    a = np.asarray(a, dtype=np.float64).reshape(-1)
    b = np.asarray(b, dtype=np.float64).reshape(-1)
    if a.shape != b.shape:
        raise ValueError(f"Descriptor lengths differ: {a.size} != {b.size}")
    return float(np.linalg.norm(a - b))


# ---------------------------------------------------------------------------
# Layout and graph
# ---------------------------------------------------------------------------


def _conv_layer(layout: WeightLayout, name: str, kernel: int, cin: int, cout: int) -> None:
    # filters are stored [out, in, kh, kw]
    layout.add(f"{name}/conv/filters", cout, cin, kernel, kernel)
    layout.add(f"{name}/conv/bias", cout)
    layout.add(f"{name}/scale/weights", cout)
    layout.add(f"{name}/scale/biases", cout)


def build_layout() -> WeightLayout:
    layout = WeightLayout("face_recognition")
    _conv_layer(layout, "conv32_down", 7, 3, 32)
    for name, cin, cout, _ in RESIDUAL_BLOCKS:
        _conv_layer(layout, f"{name}/conv1", 3, cin, cout)
        _conv_layer(layout, f"{name}/conv2", 3, cout, cout)
    # stored [out, in]
    layout.add("fc", DESCRIPTOR_SIZE, 256)
    return layout


def _valid_size(size: int, kernel: int, stride: int) -> int:
    return (size - kernel) // stride + 1


def build_graph(params: dict[str, NDArray[np.float32]]) -> bytes:
    g = GraphBuilder("face_recognition")
    x = g.input("input", ["N", 3, INPUT_SIZE, INPUT_SIZE])

    def conv(value: str, name: str, *, down: bool = False) -> str:
        filters, bias = fold_scale(
            params[f"{name}/conv/filters"].transpose(2, 3, 1, 0),
            params[f"{name}/conv/bias"],
            params[f"{name}/scale/weights"],
            params[f"{name}/scale/biases"],
        )
        if down:
            return g.conv(value, filters, bias, stride=2, padding="valid", name=name)
        return g.conv(value, filters, bias, name=name)

    # 150 -> 72 -> 35
    x = g.max_pool(g.relu(conv(x, "conv32_down", down=True)), 3, 2)
    size = _valid_size(_valid_size(INPUT_SIZE, 7, 2), 3, 2)

    for name, cin, cout, downsample in RESIDUAL_BLOCKS:
        out = g.relu(conv(x, f"{name}/conv1", down=downsample))
        out = conv(out, f"{name}/conv2")
        shortcut = x
        if downsample:
            shortcut = g.avg_pool(shortcut, 2, 2)
            pooled, strided = size // 2, _valid_size(size, 3, 2)
            # zero-pad the strided path at the bottom/right up to the pooled size
            if strided < pooled:
                out = g.pad_spatial(out, pooled - strided)
            size = pooled
        if cout > cin:
            shortcut = g.pad_channels(shortcut, cout - cin)
        x = g.relu(g.add(out, shortcut))

    g.output(g.dense(g.global_avg_pool(x), params["fc"].T), "descriptor")
    return g.build()


class FaceRecognitionNet:
    """Computes 128-dimensional descriptors from aligned face crops.

    Only float32 weights are accepted: quantized recognition weights produce
    NaN descriptors.
    """

    def __init__(
        self,
        *,
        manager: ModelManager | None = None,
        runner: Runner | None = None,
        registry: TensorRegistry | None = None,
    ) -> None:
        self.layout = build_layout()
        self._runtime = NetworkRuntime("face_recognition", manager=manager, runner=runner, registry=registry)

    @property
    def name(self) -> str:
        return self._runtime.name

    @property
    def state(self) -> NetworkState:
        return self._runtime.state

    @property
    def params(self) -> dict[str, Tensor]:
        return self._runtime.params

    @property
    def is_loaded(self) -> bool:
        return self._runtime.is_loaded

    @property
    def param_count(self) -> int:
        return self.layout.size

    @property
    def descriptor_size(self) -> int:
        return DESCRIPTOR_SIZE

    def load(self, source: WeightSource) -> None:
        """Bind float32 weights.

        Raises:
            QuantizedWeightsUnsupported: If ``source`` is a quantized manifest.
        """
        self._runtime.ensure_not_disposed()
        weights = read_weights(
            source,
            layout=self.layout,
            resolver=self._runtime.resolver(quantized=False),
            allow_quantized=False,
        )
        params = self.layout.split(weights.values)
        self._runtime.bind(params, build_graph(params))

    async def forward(self, image: NDArray[np.generic] | Tensor) -> tuple[Tensor]:
        """Return the ``(128,)`` descriptor tensor for one face image."""
        self._runtime.ensure_loaded()
        pixels = validate_image(image)
        with TensorScope(self._runtime.registry) as scope:
            padded, _ = pad_to_square(pixels, center=True)
            resized = cv2.resize(padded, (INPUT_SIZE, INPUT_SIZE), interpolation=cv2.INTER_LINEAR)
            batch = scope.track(to_batch([resized], mean_rgb=MEAN_RGB, scale=PIXEL_SCALE))
            (descriptor,) = await self._runtime.run({"input": batch.data})
        (output,) = self._runtime.track_outputs([descriptor[0]])
        return (output,)

    async def compute_descriptor(self, face: NDArray[np.generic] | Tensor) -> NDArray[np.float32]:
        with TensorScope(self._runtime.registry) as scope:
            (output,) = await self.forward(face)
            scope.adopt(output)
            return np.array(output.data, dtype=np.float32).reshape(DESCRIPTOR_SIZE)

    def dispose(self) -> None:
        self._runtime.dispose()
