"""Weight sources and per-network parameter layouts.

A network's weights are one flat float32 sequence. The network's
``WeightLayout`` lists its parameters in order, in TensorFlow layout, and
splits the sequence into the named parameter mapping.

Accepted sources:

* ``bytes`` / ``bytearray`` / ``memoryview`` holding little-endian float32 values
* a float32 numpy array
* a path to a ``.bin`` file of float32 values
* a path to a quantized ``.json`` manifest (uint8 values with ``scale`` and
  ``min`` per tensor, shards stored next to the manifest); entries are
  matched to the layout by name, so their order in the manifest is free
* a registry name, resolved to one of the above by the model manager
"""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Union

import numpy as np

from faceapix.errors import QuantizedWeightsUnsupported, WeightShapeMismatch, WeightSourceUnavailable

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

WeightSource = Union[bytes, bytearray, memoryview, "NDArray[np.floating]", str, "os.PathLike[str]"]

_QUANTIZED_DTYPES: dict[str, Any] = {"uint8": np.uint8, "uint16": np.dtype("<u2")}


@dataclass(frozen=True)
class WeightData:
    """Flat float32 weight values and whether they were dequantized."""

    values: NDArray[np.float32]
    quantized: bool


# ---------------------------------------------------------------------------
# Layouts
# ---------------------------------------------------------------------------


class WeightLayout:
    """Ordered ``(name, shape)`` parameter list of one network architecture.

    Parameters may carry aliases: the names a weights manifest uses for them
    when those differ from the layout's own (the original TensorFlow variable
    names, for example).
    """

    def __init__(self, network: str) -> None:
        self.network = network
        self._entries: list[tuple[str, tuple[int, ...]]] = []
        self._names: dict[str, str] = {}

    def add(self, name: str, *shape: int, aliases: Sequence[str] = ()) -> WeightLayout:
        self._entries.append((name, tuple(shape)))
        self._names[name] = name
        for alias in aliases:
            self._names[alias] = name
        return self

    def conv(self, name: str, kernel: int, in_channels: int, out_channels: int, *, bias: bool = True) -> WeightLayout:
        """Add ``{name}/filters`` (``[k, k, in, out]``) and optionally ``{name}/bias``."""
        self.add(f"{name}/filters", kernel, kernel, in_channels, out_channels)
        if bias:
            self.add(f"{name}/bias", out_channels)
        return self

    def dense(self, name: str, in_features: int, out_features: int, *, bias: bool = True) -> WeightLayout:
        self.add(f"{name}/weights", in_features, out_features)
        if bias:
            self.add(f"{name}/bias", out_features)
        return self

    @property
    def entries(self) -> Sequence[tuple[str, tuple[int, ...]]]:
        return tuple(self._entries)

    @property
    def size(self) -> int:
        """Total number of float32 values the layout consumes."""
        return sum(math.prod(shape) for _, shape in self._entries)

    def resolve(self, name: str) -> str | None:
        """Layout name for a parameter name or alias, None if unknown."""
        return self._names.get(name)

    def split(self, values: NDArray[np.floating]) -> dict[str, NDArray[np.float32]]:
        """Cut a flat weight array into the named parameter mapping.

        Raises:
            WeightShapeMismatch: If ``values`` does not hold exactly :attr:`size` floats.
        """
        flat = np.asarray(values, dtype=np.float32).reshape(-1)
        if flat.size != self.size:
            raise WeightShapeMismatch(self.network, self.size, int(flat.size))

        params: dict[str, NDArray[np.float32]] = {}
        offset = 0
        for name, shape in self._entries:
            count = math.prod(shape)
            params[name] = flat[offset : offset + count].reshape(shape).copy()
            offset += count
        return params

    def assemble(self, tensors: Iterable[tuple[str, NDArray[np.floating]]]) -> NDArray[np.float32]:
        """Put named tensors, in any order, into one flat array in layout order.

        Raises:
            WeightShapeMismatch: If a parameter is missing, unknown, given twice
                or holds the wrong number of values.
        """
        found: dict[str, NDArray[np.float32]] = {}
        unexpected: list[str] = []
        for name, values in tensors:
            target = self.resolve(name)
            if target is None or target in found:
                unexpected.append(name)
                continue
            found[target] = np.asarray(values, dtype=np.float32).reshape(-1)

        missing = [name for name, _ in self._entries if name not in found]
        if missing or unexpected:
            actual = sum(values.size for values in found.values())
            raise WeightShapeMismatch(self.network, self.size, actual, missing=missing, unexpected=unexpected)

        for name, shape in self._entries:
            if found[name].size != math.prod(shape):
                raise WeightShapeMismatch(self.network, math.prod(shape), int(found[name].size), parameter=name)
        if not self._entries:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate([found[name] for name, _ in self._entries]).astype(np.float32)


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


def read_weights(
    source: WeightSource,
    *,
    layout: WeightLayout,
    resolver: Callable[[str], Path] | None = None,
    allow_quantized: bool = True,
) -> WeightData:
    """Turn any supported weight source into flat float32 values in layout order.

    Args:
        source: Raw bytes, a float32 array, a file path, or a registry name.
        layout: Parameter layout of the network; names manifest entries and errors.
        resolver: Maps registry names to local files (the model manager).
        allow_quantized: Whether quantized manifests are accepted.

    Raises:
        WeightSourceUnavailable: If a path or name cannot be resolved or read.
        QuantizedWeightsUnsupported: If ``source`` is a manifest and ``allow_quantized`` is False.
        WeightShapeMismatch: If a raw buffer is not a whole number of float32 values,
            or manifest entries do not match the layout's parameters.
    """
    network = layout.network
    if isinstance(source, np.ndarray):
        return WeightData(np.asarray(source, dtype=np.float32).reshape(-1), quantized=False)
    if isinstance(source, (bytes, bytearray, memoryview)):
        return WeightData(_floats_from_bytes(bytes(source), network), quantized=False)
    if isinstance(source, (str, os.PathLike)):
        path = _resolve_path(source, resolver)
        if path.suffix == ".json":
            if not allow_quantized:
                raise QuantizedWeightsUnsupported(f"{network} requires float32 weights, got a quantized manifest")
            return WeightData(layout.assemble(_read_quantized_manifest(path, network)), quantized=True)
        return WeightData(_floats_from_bytes(_read_file(path), network), quantized=False)
    raise TypeError(f"Unsupported weight source type: {type(source).__name__}")


def _resolve_path(source: str | os.PathLike[str], resolver: Callable[[str], Path] | None) -> Path:
    path = Path(source)
    if path.is_file():
        return path
    if isinstance(source, str) and resolver is not None and not path.suffix:
        return resolver(source)
    raise WeightSourceUnavailable(f"Weight file not found: {source}")


def _read_file(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise WeightSourceUnavailable(f"Cannot read weight file {path}: {exc}") from exc


def _floats_from_bytes(data: bytes, network: str) -> NDArray[np.float32]:
    if len(data) % 4:
        raise WeightShapeMismatch(network, len(data) // 4 + 1, len(data) // 4)
    return np.frombuffer(data, dtype="<f4").astype(np.float32)


def _read_quantized_manifest(path: Path, network: str) -> list[tuple[str, NDArray[np.float32]]]:
    """Dequantize a weights manifest into ``(name, values)`` pairs in manifest order.

    The manifest is a list of groups ``{"paths": [...], "weights": [...]}``;
    each weight entry has ``name``, ``shape`` and optionally ``quantization``
    (``dtype``, ``scale``, ``min``). Values are ``q * scale + min``.
    """
    try:
        manifest = json.loads(_read_file(path))
    except json.JSONDecodeError as exc:
        raise WeightSourceUnavailable(f"Invalid weights manifest {path}: {exc}") from exc
    groups = manifest if isinstance(manifest, list) else [manifest]

    tensors: list[tuple[str, NDArray[np.float32]]] = []
    for group in groups:
        data = b"".join(_read_file(path.parent / shard) for shard in group.get("paths", []))
        offset = 0
        for entry in group.get("weights", []):
            count = math.prod(entry["shape"])
            quantization = entry.get("quantization")
            if quantization is None:
                dtype = np.dtype("<f4")
            else:
                try:
                    dtype = np.dtype(_QUANTIZED_DTYPES[quantization["dtype"]])
                except KeyError as exc:
                    raise WeightSourceUnavailable(
                        f"Unsupported quantization dtype in {path}: {quantization.get('dtype')}"
                    ) from exc
            end = offset + count * dtype.itemsize
            if end > len(data):
                raise WeightShapeMismatch(network, end // dtype.itemsize, len(data) // dtype.itemsize)
            raw = np.frombuffer(data[offset:end], dtype=dtype)
            if quantization is None:
                values = raw.astype(np.float32)
            else:
                values = raw.astype(np.float32) * np.float32(quantization["scale"]) + np.float32(quantization["min"])
            tensors.append((entry["name"], values))
            offset = end

    logger.debug("Dequantized %d tensors from %s", len(tensors), path)
    return tensors
