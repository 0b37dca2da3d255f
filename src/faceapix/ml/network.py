"""Common network contract and the runtime each network owns.

Every network (detectors, landmark net, recognition net) satisfies the
``Network`` protocol. Networks do not share a base class; each one holds its
own ``NetworkRuntime``, which owns the parameter tensors, the onnxruntime
session and the lock that serializes forward passes on that instance.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from onnxruntime import InferenceSession

from faceapix.errors import NetworkDisposed, NetworkNotLoaded
from faceapix.ml.tensors import Tensor, TensorRegistry, default_registry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence
    from pathlib import Path

    import numpy as np
    from numpy.typing import NDArray

    from faceapix.ml.model_manager import ModelManager
    from faceapix.ml.weights import WeightSource

    Runner = Callable[..., Awaitable[Any]]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NetworkState(StrEnum):
    UNLOADED = "unloaded"
    LOADED = "loaded"
    DISPOSED = "disposed"


class Network(Protocol):
    """Protocol for any loadable, disposable, forward-computing network."""

    @property
    def name(self) -> str:
        """Return the network identifier string."""
        ...

    @property
    def state(self) -> NetworkState:
        """Return the lifecycle state."""
        ...

    def load(self, source: WeightSource) -> None:
        """Bind weights from bytes, an array, a file path, or a registry name.

        Raises:
            WeightShapeMismatch: If the weights do not match the parameter layout.
            WeightSourceUnavailable: If the path or name cannot be resolved.
            NetworkDisposed: If the network was disposed.
        """
        ...

    async def forward(self, image: Any) -> tuple[Tensor, ...]:
        """Run one forward pass and return raw output tensors owned by the caller.

        Raises:
            NetworkNotLoaded: If ``load`` has not completed.
            NetworkDisposed: If the network was disposed.
        """
        ...

    def dispose(self) -> None:
        """Release parameters and the session. Safe to call more than once."""
        ...


async def run_inline(func: Callable[..., T], *args: object) -> T:
    """Default runner: compute on the event loop thread, then yield once."""
    result = func(*args)
    await asyncio.sleep(0)
    return result


class NetworkRuntime:
    """Parameters, sessions and forward-pass lock of one network instance.

    A network compiles to one graph, or to several named graphs that share
    the parameter mapping (the MTCNN stages).
    """

    def __init__(
        self,
        name: str,
        *,
        manager: ModelManager | None = None,
        runner: Runner | None = None,
        registry: TensorRegistry | None = None,
    ) -> None:
        self.name = name
        self.registry = registry if registry is not None else default_registry
        self._manager = manager
        self._runner: Runner = runner if runner is not None else run_inline
        self._lock = asyncio.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._params: dict[str, Tensor] = {}
        self._state = NetworkState.UNLOADED

    @property
    def state(self) -> NetworkState:
        return self._state

    @property
    def params(self) -> dict[str, Tensor]:
        return dict(self._params)

    @property
    def is_loaded(self) -> bool:
        return self._state is NetworkState.LOADED

    def param(self, name: str) -> NDArray[np.float32]:
        return self._params[name].data

    def resolver(self, *, quantized: bool) -> Callable[[str], Path] | None:
        """Return a registry-name resolver, or None without a model manager."""
        manager = self._manager
        if manager is None:
            return None

        def resolve(name: str) -> Path:
            return manager.resolve_weights(name, quantized=quantized)

        return resolve

    def ensure_not_disposed(self) -> None:
        if self._state is NetworkState.DISPOSED:
            raise NetworkDisposed(f"{self.name} has been disposed")

    def ensure_loaded(self) -> None:
        self.ensure_not_disposed()
        if self._state is NetworkState.UNLOADED:
            raise NetworkNotLoaded(f"{self.name} has no weights loaded")

    def bind(self, params: dict[str, NDArray[np.float32]], model: bytes | Mapping[str, bytes]) -> None:
        """Take ownership of a parameter mapping and its compiled graph(s).

        A network that is already loaded drops its previous parameters first.
        """
        self.ensure_not_disposed()
        models = {self.name: model} if isinstance(model, bytes) else dict(model)
        sessions = {graph: self._create_session(data) for graph, data in models.items()}

        if self._state is NetworkState.LOADED:
            logger.debug("Reloading %s, releasing previous parameters", self.name)
            self._release()
        self._sessions = sessions
        self._params = {key: self.registry.track(value) for key, value in params.items()}
        self._state = NetworkState.LOADED
        logger.info("Loaded %s (%d parameter tensors)", self.name, len(self._params))

    async def run(
        self,
        feeds: dict[str, NDArray[np.float32]],
        *,
        graph: str | None = None,
    ) -> list[NDArray[np.float32]]:
        """Run a session; concurrent calls on one network queue on its lock."""
        self.ensure_loaded()
        async with self._lock:
            self.ensure_loaded()
            session = self._sessions[graph if graph is not None else self.name]
            outputs: list[NDArray[np.float32]] = await self._runner(session.run, None, feeds)
            return outputs

    def track_outputs(self, outputs: Sequence[NDArray[np.float32]]) -> tuple[Tensor, ...]:
        return tuple(self.registry.track(output) for output in outputs)

    def dispose(self) -> None:
        if self._state is NetworkState.DISPOSED:
            return
        self._release()
        self._state = NetworkState.DISPOSED
        logger.info("Disposed %s", self.name)

    def _create_session(self, model: bytes) -> InferenceSession:
        if self._manager is not None:
            return self._manager.create_session(model, self.name)
        return InferenceSession(model, providers=["CPUExecutionProvider"])

    def _release(self) -> None:
        for tensor in self._params.values():
            tensor.release()
        self._params = {}
        if self._manager is not None:
            for session in self._sessions.values():
                self._manager.release_session(session)
        self._sessions = {}
