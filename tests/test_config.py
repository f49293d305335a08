"""Tests for u2net_service.config."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from u2net_service.config import RemovalMode, Settings, get_settings, parse_mode


class TestParseMode:
    @pytest.mark.parametrize("value", ["portrait", "Portrait", " PORTRAIT "])
    def test_portrait_is_case_insensitive(self, value):
        assert parse_mode(value) == RemovalMode.PORTRAIT

    @pytest.mark.parametrize("value", [None, "", "   ", "general", "bogus"])
    def test_everything_else_is_general(self, value):
        assert parse_mode(value) == RemovalMode.GENERAL


class TestSettings:
    def test_defaults(self):
        s = Settings()
        assert s.u2net_input_size == 320
        assert s.max_concurrent_inferences == 2
        assert s.max_pixel_count == 40_000_000
        assert s.enable_telemetry is True
        assert s.result_storage == "local"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_INFERENCES", "4")
        monkeypatch.setenv("ENABLE_TELEMETRY", "false")
        monkeypatch.setenv("RESULT_STORAGE", "R2")
        s = Settings()
        assert s.max_concurrent_inferences == 4
        assert s.enable_telemetry is False
        assert s.result_storage == "r2"

    def test_rejects_unknown_storage(self):
        with pytest.raises(ValidationError):
            Settings(result_storage="ftp")

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValidationError):
            Settings(max_concurrent_inferences=0)

    def test_rejects_gamma_range_reaching_zero_gamma(self):
        with pytest.raises(ValidationError):
            Settings(portrait_alpha_gamma_base=1.0, portrait_alpha_gamma_range=1.0)

    def test_relative_model_paths_use_content_root(self, tmp_path):
        s = Settings(content_root=tmp_path)
        assert s.model_path_for(RemovalMode.GENERAL) == tmp_path / "models" / "u2net.onnx"
        assert s.model_path_for(RemovalMode.PORTRAIT) == tmp_path / "models" / "u2net_human_seg.onnx"

    def test_absolute_model_paths_are_kept(self, tmp_path):
        target = tmp_path / "elsewhere" / "m.onnx"
        s = Settings(content_root=Path("/srv"), u2net_model_path_general=target)
        assert s.model_path_for(RemovalMode.GENERAL) == target

    def test_legacy_model_path_backs_up_general(self, tmp_path, monkeypatch):
        monkeypatch.delenv("U2NET_MODEL_PATH_GENERAL", raising=False)
        monkeypatch.setenv("U2NET_MODEL_PATH", str(tmp_path / "legacy.onnx"))
        s = Settings()
        assert s.model_path_for(RemovalMode.GENERAL) == tmp_path / "legacy.onnx"
        assert s.model_path_for(RemovalMode.PORTRAIT).name == "u2net_human_seg.onnx"

    def test_general_path_wins_over_legacy(self, tmp_path):
        s = Settings(u2net_model_path=tmp_path / "legacy.onnx", u2net_model_path_general=tmp_path / "new.onnx")
        assert s.model_path_for(RemovalMode.GENERAL) == tmp_path / "new.onnx"


def test_get_settings_is_cached():
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()
