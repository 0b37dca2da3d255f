"""Model manager: resolve weight files and create ONNX sessions.

Handles downloading weight files (float32 or quantized manifests) from the
Hugging Face Hub, building onnxruntime providers and session options from the
settings, and keeping track of the sessions networks currently hold.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError, LocalEntryNotFoundError
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from faceapix.errors import WeightSourceUnavailable

if TYPE_CHECKING:
    from faceapix.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for weight resolution and session lifecycle."""

    def resolve_weights(self, name: str, *, quantized: bool = False) -> Path:
        """Ensure a weight file is available locally and return its path."""
        ...

    def create_session(self, model: bytes, name: str) -> InferenceSession:
        """Create an InferenceSession for a compiled network graph."""
        ...

    def release_session(self, session: InferenceSession) -> None:
        """Forget a session created by :meth:`create_session`."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of networks with live sessions."""
        ...

    def shutdown(self) -> None:
        """Forget all sessions."""
        ...


# ---------------------------------------------------------------------------
# Weight registry
# ---------------------------------------------------------------------------


class NetworkKind(StrEnum):
    SSD_MOBILENETV1 = "ssd_mobilenetv1"
    TINY_YOLOV2 = "tiny_yolov2"
    MTCNN = "mtcnn"
    FACE_LANDMARK_68 = "face_landmark_68"
    FACE_RECOGNITION = "face_recognition"


@dataclass(frozen=True)
class WeightSpec:
    """Static metadata for one prepackaged weight set."""

    name: str
    network: NetworkKind
    filename: str
    quantized_manifest: str | None


WEIGHT_REGISTRY: dict[str, WeightSpec] = {
    "ssd_mobilenetv1_model": WeightSpec(
        name="ssd_mobilenetv1_model",
        network=NetworkKind.SSD_MOBILENETV1,
        filename="ssd_mobilenetv1_model.bin",
        quantized_manifest="ssd_mobilenetv1_model-weights_manifest.json",
    ),
    "tiny_yolov2_model": WeightSpec(
        name="tiny_yolov2_model",
        network=NetworkKind.TINY_YOLOV2,
        filename="tiny_yolov2_model.bin",
        quantized_manifest="tiny_yolov2_model-weights_manifest.json",
    ),
    "tiny_yolov2_separable_conv_model": WeightSpec(
        name="tiny_yolov2_separable_conv_model",
        network=NetworkKind.TINY_YOLOV2,
        filename="tiny_yolov2_separable_conv_model.bin",
        quantized_manifest="tiny_yolov2_separable_conv_model-weights_manifest.json",
    ),
    "mtcnn_model": WeightSpec(
        name="mtcnn_model",
        network=NetworkKind.MTCNN,
        filename="mtcnn_model.bin",
        quantized_manifest="mtcnn_model-weights_manifest.json",
    ),
    "face_landmark_68_model": WeightSpec(
        name="face_landmark_68_model",
        network=NetworkKind.FACE_LANDMARK_68,
        filename="face_landmark_68_model.bin",
        quantized_manifest="face_landmark_68_model-weights_manifest.json",
    ),
    # Quantized recognition weights produce NaNs, so only float32 is published.
    "face_recognition_model": WeightSpec(
        name="face_recognition_model",
        network=NetworkKind.FACE_RECOGNITION,
        filename="face_recognition_model.bin",
        quantized_manifest=None,
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads weight files and creates onnxruntime sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._sessions: dict[int, str] = {}
        self._weight_paths: dict[tuple[str, bool], Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def resolve_weights(self, name: str, *, quantized: bool = False) -> Path:
        """Download a weight set from the Hub if not already present locally.

        Raises:
            WeightSourceUnavailable: If the name is unknown, has no quantized
                variant, or the download fails.
        """
        spec = self._get_spec(name)
        key = (name, quantized)
        cached = self._weight_paths.get(key)
        if cached is not None and cached.exists():
            return cached

        if quantized:
            if spec.quantized_manifest is None:
                raise WeightSourceUnavailable(f"No quantized weights published for '{name}'")
            path = self._download(spec.quantized_manifest)
            for shard in self._manifest_shards(path):
                self._download(shard)
        else:
            path = self._download(spec.filename)

        self._weight_paths[key] = path
        logger.info("Resolved weights %s to %s", name, path)
        return path

    def create_session(self, model: bytes, name: str) -> InferenceSession:
        """Create an InferenceSession for a compiled network graph."""
        session = InferenceSession(
            model,
            sess_options=self._session_options,
            providers=self._providers,
        )
        with self._lock:
            self._sessions[id(session)] = name
        logger.info("Created session for %s", name)
        return session

    def release_session(self, session: InferenceSession) -> None:
        with self._lock:
            name = self._sessions.pop(id(session), None)
        if name is not None:
            logger.info("Released session for %s", name)

    def get_loaded_models(self) -> list[str]:
        """Return names of networks with live sessions."""
        with self._lock:
            return sorted(set(self._sessions.values()))

    def shutdown(self) -> None:
        """Forget all sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(name: str) -> WeightSpec:
        try:
            return WEIGHT_REGISTRY[name]
        except KeyError:
            raise WeightSourceUnavailable(f"Unknown weight set: {name}") from None

    def _download(self, filename: str) -> Path:
        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            return Path(
                hf_hub_download(
                    repo_id=self._settings.weights_repo_id,
                    filename=filename,
                    local_dir=str(self._models_dir),
                )
            )
        except (HfHubHTTPError, LocalEntryNotFoundError, OSError) as exc:
            raise WeightSourceUnavailable(f"Cannot download {filename}: {exc}") from exc

    @staticmethod
    def _manifest_shards(path: Path) -> list[str]:
        try:
            manifest = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise WeightSourceUnavailable(f"Invalid weights manifest {path}: {exc}") from exc
        groups = manifest if isinstance(manifest, list) else [manifest]
        return [shard for group in groups for shard in group.get("paths", [])]

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
