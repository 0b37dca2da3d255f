"""Tracked numeric buffers.

Every buffer that crosses a stage boundary (network parameters, input
batches, raw forward outputs, face crops) is wrapped in a ``Tensor`` owned by
a ``TensorRegistry``. Owners release tensors explicitly; ``TensorScope``
releases everything it tracked on exit unless the tensor was kept. The live
count reported by ``memory()`` is what the leak tests compare.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from faceapix.errors import TensorReleased

if TYPE_CHECKING:
    from types import TracebackType

    from numpy.typing import NDArray


@dataclass(frozen=True)
class MemoryInfo:
    """Snapshot of the live tensors held by a registry."""

    num_tensors: int
    num_bytes: int


class Tensor:
    """A numpy array whose lifetime is tracked by a registry."""

    __slots__ = ("_data", "_id", "_registry")

    def __init__(self, data: NDArray[np.generic], registry: TensorRegistry, tensor_id: int) -> None:
        self._data: NDArray[np.generic] | None = data
        self._registry = registry
        self._id = tensor_id

    @property
    def data(self) -> NDArray[np.generic]:
        if self._data is None:
            raise TensorReleased(f"tensor {self._id} was released")
        return self._data

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.data.shape)

    @property
    def is_released(self) -> bool:
        return self._data is None

    def release(self) -> None:
        """Free the underlying buffer. Safe to call more than once."""
        if self._data is None:
            return
        self._data = None
        self._registry._forget(self._id)

    def __repr__(self) -> str:
        if self._data is None:
            return f"Tensor(id={self._id}, released)"
        return f"Tensor(id={self._id}, shape={self._data.shape}, dtype={self._data.dtype})"


class TensorRegistry:
    """Counts live tensors and the bytes they hold."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count()
        self._live: dict[int, int] = {}

    def track(self, array: NDArray[np.generic]) -> Tensor:
        """Register ``array`` as a live tensor and return its handle."""
        data = np.asarray(array)
        with self._lock:
            tensor_id = next(self._ids)
            self._live[tensor_id] = data.nbytes
        return Tensor(data, self, tensor_id)

    def memory(self) -> MemoryInfo:
        with self._lock:
            return MemoryInfo(num_tensors=len(self._live), num_bytes=sum(self._live.values()))

    def _forget(self, tensor_id: int) -> None:
        with self._lock:
            self._live.pop(tensor_id, None)


class TensorScope:
    """Releases every tensor it tracked when the ``with`` block exits.

    Tensors passed to :meth:`keep` survive the scope and become the caller's
    responsibility.
    """

    def __init__(self, registry: TensorRegistry | None = None) -> None:
        self._registry = registry if registry is not None else default_registry
        self._owned: list[Tensor] = []

    def track(self, array: NDArray[np.generic]) -> Tensor:
        tensor = self._registry.track(array)
        self._owned.append(tensor)
        return tensor

    def adopt(self, *tensors: Tensor) -> None:
        """Take ownership of tensors created elsewhere, e.g. forward outputs."""
        self._owned.extend(tensors)

    def keep(self, tensor: Tensor) -> Tensor:
        self._owned = [owned for owned in self._owned if owned is not tensor]
        return tensor

    def release_all(self) -> None:
        owned, self._owned = self._owned, []
        for tensor in owned:
            tensor.release()

    def __enter__(self) -> TensorScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release_all()


default_registry = TensorRegistry()


def memory() -> MemoryInfo:
    """Return live tensor statistics of the default registry."""
    return default_registry.memory()
