"""Tests for the weight registry and the ONNX model manager."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, call, patch

import pytest

from faceapix.config import Settings
from faceapix.errors import WeightSourceUnavailable
from faceapix.ml.model_manager import WEIGHT_REGISTRY, NetworkKind, OnnxModelManager

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/faceapix_test_models",
        "weights_repo_id": "faceapix/test-weights",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Weight registry tests
# ---------------------------------------------------------------------------


class TestWeightRegistry:
    def test_known_weights_lookup(self) -> None:
        spec = WEIGHT_REGISTRY["face_landmark_68_model"]
        assert spec.network == NetworkKind.FACE_LANDMARK_68
        assert spec.filename == "face_landmark_68_model.bin"

    def test_registry_has_six_weight_sets(self) -> None:
        assert len(WEIGHT_REGISTRY) == 6

    def test_recognition_has_no_quantized_variant(self) -> None:
        assert WEIGHT_REGISTRY["face_recognition_model"].quantized_manifest is None
        assert all(
            spec.quantized_manifest is not None
            for name, spec in WEIGHT_REGISTRY.items()
            if name != "face_recognition_model"
        )


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestResolveWeights:
    @patch("faceapix.ml.model_manager.hf_hub_download")
    def test_downloads_float_weights(self, mock_download: MagicMock) -> None:
        mock_download.return_value = "/tmp/faceapix_test_models/mtcnn_model.bin"
        mgr = OnnxModelManager(_make_settings())

        path = mgr.resolve_weights("mtcnn_model")

        mock_download.assert_called_once_with(
            repo_id="faceapix/test-weights",
            filename="mtcnn_model.bin",
            local_dir="/tmp/faceapix_test_models",
        )
        assert path == Path("/tmp/faceapix_test_models/mtcnn_model.bin")

    @patch("faceapix.ml.model_manager.hf_hub_download")
    def test_skips_cached_path(self, mock_download: MagicMock, tmp_path: Path) -> None:
        weights_file = tmp_path / "mtcnn_model.bin"
        weights_file.touch()
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))
        # Simulate a previous download by setting the cached path.
        mgr._weight_paths[("mtcnn_model", False)] = weights_file

        assert mgr.resolve_weights("mtcnn_model") == weights_file
        mock_download.assert_not_called()

    @patch("faceapix.ml.model_manager.hf_hub_download")
    def test_quantized_downloads_manifest_and_shards(self, mock_download: MagicMock, tmp_path: Path) -> None:
        manifest = tmp_path / "mtcnn_model-weights_manifest.json"
        manifest.write_text(json.dumps([{"paths": ["mtcnn_model-shard1", "mtcnn_model-shard2"], "weights": []}]))
        mock_download.side_effect = lambda repo_id, filename, local_dir: str(tmp_path / filename)
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        path = mgr.resolve_weights("mtcnn_model", quantized=True)

        assert path == manifest
        downloaded = [c.kwargs["filename"] for c in mock_download.call_args_list]
        assert downloaded == [
            "mtcnn_model-weights_manifest.json",
            "mtcnn_model-shard1",
            "mtcnn_model-shard2",
        ]

    def test_quantized_recognition_unavailable(self) -> None:
        mgr = OnnxModelManager(_make_settings())
        with pytest.raises(WeightSourceUnavailable, match="No quantized weights"):
            mgr.resolve_weights("face_recognition_model", quantized=True)

    def test_unknown_name(self) -> None:
        mgr = OnnxModelManager(_make_settings())
        with pytest.raises(WeightSourceUnavailable, match="Unknown weight set"):
            mgr.resolve_weights("totally_fake_model")

    @patch("faceapix.ml.model_manager.hf_hub_download")
    def test_download_failure(self, mock_download: MagicMock) -> None:
        mock_download.side_effect = OSError("disk full")
        mgr = OnnxModelManager(_make_settings())
        with pytest.raises(WeightSourceUnavailable, match="disk full"):
            mgr.resolve_weights("tiny_yolov2_model")


class TestSessions:
    @patch("faceapix.ml.model_manager.InferenceSession")
    def test_create_session_uses_providers(self, mock_session_cls: MagicMock) -> None:
        mgr = OnnxModelManager(_make_settings())

        session = mgr.create_session(b"model-bytes", "mtcnn")

        assert session is mock_session_cls.return_value
        args, kwargs = mock_session_cls.call_args
        assert args == (b"model-bytes",)
        assert kwargs["providers"] == ["CPUExecutionProvider"]
        assert kwargs["sess_options"] is mgr._session_options

    @patch("faceapix.ml.model_manager.InferenceSession")
    def test_loaded_models_track_live_sessions(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.side_effect = lambda *args, **kwargs: MagicMock()
        mgr = OnnxModelManager(_make_settings())

        assert mgr.get_loaded_models() == []
        pnet = mgr.create_session(b"pnet", "mtcnn")
        rnet = mgr.create_session(b"rnet", "mtcnn")
        landmarks = mgr.create_session(b"lm", "face_landmark_68")
        assert mgr.get_loaded_models() == ["face_landmark_68", "mtcnn"]

        mgr.release_session(landmarks)
        assert mgr.get_loaded_models() == ["mtcnn"]
        mgr.release_session(pnet)
        assert mgr.get_loaded_models() == ["mtcnn"]

    def test_release_unknown_session_is_noop(self) -> None:
        mgr = OnnxModelManager(_make_settings())
        mgr.release_session(MagicMock())
        assert mgr.get_loaded_models() == []

    @patch("faceapix.ml.model_manager.InferenceSession")
    def test_shutdown_clears_sessions(self, mock_session_cls: MagicMock) -> None:
        mgr = OnnxModelManager(_make_settings())
        mgr.create_session(b"model", "ssd_mobilenetv1")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []


class TestProviders:
    def test_provider_building_cpu(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cuda", gpu_mem_limit=1024))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert provider_opts["gpu_mem_limit"] == 1024
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="openvino"))
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_session_options_threads(self) -> None:
        mgr = OnnxModelManager(_make_settings(intra_op_threads=3, inter_op_threads=2))
        assert mgr._session_options.intra_op_num_threads == 3
        assert mgr._session_options.inter_op_num_threads == 2

    def test_missing_cached_file_is_fetched_again(self) -> None:
        mgr = OnnxModelManager(_make_settings())
        with patch.object(mgr, "_download", return_value=Path("/tmp/x.bin")) as mock_download:
            mgr.resolve_weights("ssd_mobilenetv1_model")
            mgr.resolve_weights("ssd_mobilenetv1_model")
        # the cached path does not exist on disk, so it is fetched again
        assert mock_download.call_args_list == [call("ssd_mobilenetv1_model.bin")] * 2
