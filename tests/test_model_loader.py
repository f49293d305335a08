"""Tests for u2net_service.model_loader."""

import threading
import time
from unittest.mock import patch

import pytest

from u2net_service import model_loader
from u2net_service.config import RemovalMode
from u2net_service.errors import ModelNotInstalledError, ProcessingError
from u2net_service.model_loader import ModelRegistry

from conftest import CountingFactory, FakeSession


class TestModelRegistry:
    def test_loads_lazily(self, registry, factory):
        assert factory.calls == []
        assert not registry.is_loaded(RemovalMode.GENERAL)

    def test_session_is_reused_per_mode(self, registry, factory, settings):
        first = registry.get_or_load(RemovalMode.GENERAL)
        second = registry.get_or_load(RemovalMode.GENERAL)
        assert first is second
        assert factory.calls == [settings.model_path_for(RemovalMode.GENERAL)]
        assert registry.is_loaded(RemovalMode.GENERAL)

    def test_modes_get_separate_sessions(self, registry, factory, install_portrait):
        general = registry.get_or_load(RemovalMode.GENERAL)
        portrait = registry.get_or_load(RemovalMode.PORTRAIT)
        assert general is not portrait
        assert len(factory.calls) == 2

    def test_missing_model_raises_without_loading(self, registry, factory):
        with pytest.raises(ModelNotInstalledError) as excinfo:
            registry.get_or_load(RemovalMode.PORTRAIT)
        assert isinstance(excinfo.value, FileNotFoundError)
        assert excinfo.value.mode == "portrait"
        assert factory.calls == []
        assert not registry.is_loaded(RemovalMode.PORTRAIT)

    def test_unloadable_model_raises_processing_error(self, settings):
        def broken_session():
            raise RuntimeError("INVALID_PROTOBUF")

        registry = ModelRegistry(settings, session_factory=CountingFactory(broken_session))
        with pytest.raises(ProcessingError) as excinfo:
            registry.get_or_load(RemovalMode.GENERAL)
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert not registry.is_loaded(RemovalMode.GENERAL)

    def test_is_installed_reflects_files(self, registry, model_dir):
        assert registry.is_installed(RemovalMode.GENERAL)
        assert not registry.is_installed(RemovalMode.PORTRAIT)
        (model_dir / "u2net_human_seg.onnx").write_bytes(b"x")
        assert registry.is_installed(RemovalMode.PORTRAIT)

    def test_concurrent_first_callers_load_once(self, settings):
        def slow_session():
            time.sleep(0.05)
            return FakeSession()

        factory = CountingFactory(slow_session)
        registry = ModelRegistry(settings, session_factory=factory)
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(registry.get_or_load(RemovalMode.GENERAL))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert len(factory.calls) == 1
        assert len(results) == 8
        assert all(r is results[0] for r in results)

    def test_close_drops_sessions(self, registry, factory):
        registry.get_or_load(RemovalMode.GENERAL)
        registry.close()
        assert not registry.is_loaded(RemovalMode.GENERAL)
        registry.get_or_load(RemovalMode.GENERAL)
        assert len(factory.calls) == 2


class TestProviders:
    def test_prefers_cuda_and_always_ends_with_cpu(self):
        available = ["CUDAExecutionProvider", "CPUExecutionProvider"]
        with patch.object(model_loader.ort, "get_available_providers", return_value=available):
            assert model_loader.get_providers() == ["CUDAExecutionProvider", "CPUExecutionProvider"]

    def test_cpu_only(self):
        with patch.object(model_loader.ort, "get_available_providers", return_value=["CPUExecutionProvider"]):
            assert model_loader.get_providers() == ["CPUExecutionProvider"]

    def test_default_factory_builds_optimized_session(self, tmp_path):
        with patch.object(model_loader.ort, "InferenceSession") as session_cls:
            model_loader.create_onnx_session(tmp_path / "m.onnx")
        args, kwargs = session_cls.call_args
        assert args == (str(tmp_path / "m.onnx"),)
        assert kwargs["sess_options"].graph_optimization_level == model_loader.ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        assert kwargs["providers"][-1] == "CPUExecutionProvider"
