import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from gateway.settings import load_settings


def _clear_env(monkeypatch):
    for name in ("GOOGLE_API_KEY", "GEMINI_BASE_URL", "GEMINI_TIMEOUT_SECONDS", "PREVIEW_MAX_CHARS", "DEFAULT_TEMPERATURE"):
        monkeypatch.delenv(name, raising=False)


def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    settings = load_settings(str(tmp_path / "absent.yaml"))
    assert settings.default_api_key is None
    assert settings.preview_max_chars == 500
    assert settings.gemini_base_url.endswith("/v1beta")


def test_yaml_values_and_env_overrides(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    cfg = tmp_path / "genrelay.yaml"
    cfg.write_text("gemini_timeout: 15\npreview_max_chars: 200\ndefault_concurrency: 4\n", encoding="utf-8")
    monkeypatch.setenv("GOOGLE_API_KEY", "env-key")
    monkeypatch.setenv("PREVIEW_MAX_CHARS", "300")

    settings = load_settings(str(cfg))

    assert settings.default_api_key == "env-key"
    assert settings.gemini_timeout == 15
    assert settings.preview_max_chars == 300
    assert settings.default_concurrency == 4


def test_non_mapping_yaml_is_ignored(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    cfg = tmp_path / "genrelay.yaml"
    cfg.write_text("- just\n- a list\n", encoding="utf-8")
    assert load_settings(str(cfg)).default_concurrency == 5
