from __future__ import annotations

from autosurveyagent import config


def _use_settings(monkeypatch, tmp_path, text: str | None):
    path = tmp_path / "config.yaml"
    if text is not None:
        path.write_text(text, encoding="utf-8")
    monkeypatch.setattr(config, "SETTINGS_PATH", path, raising=True)
    monkeypatch.setattr(config, "_settings_cache", None, raising=True)


def test_missing_file_uses_defaults(monkeypatch, tmp_path):
    _use_settings(monkeypatch, tmp_path, None)
    assert config.get_default_max_steps() == 40
    assert "typeform.com" in config.get_allowed_survey_hosts()
    assert config.get_browser_settings()["viewport"] == {"width": 1280, "height": 720}


def test_yaml_is_deep_merged_over_defaults(monkeypatch, tmp_path):
    _use_settings(
        monkeypatch,
        tmp_path,
        "browser:\n  headless: false\nrunner:\n  max_steps: 12\n"
        "  allowed_survey_hosts: [' Example.COM ', '']\n",
    )
    browser = config.get_browser_settings()
    assert browser["headless"] is False
    assert browser["viewport"] == {"width": 1280, "height": 720}
    assert config.get_default_max_steps() == 12
    assert config.get_allowed_survey_hosts() == ["example.com"]


def test_invalid_max_steps_falls_back(monkeypatch, tmp_path):
    _use_settings(monkeypatch, tmp_path, "runner:\n  max_steps: lots\n")
    assert config.get_default_max_steps() == 40


def test_relative_artifacts_dir_resolves_against_cwd(monkeypatch, tmp_path):
    _use_settings(monkeypatch, tmp_path, "runner:\n  artifacts_dir: out/runs\n")
    monkeypatch.chdir(tmp_path)
    root = config.get_artifacts_root()
    assert root.is_absolute()
    assert root.resolve() == (tmp_path / "out" / "runs").resolve()


def test_fallback_models_chain(monkeypatch, tmp_path):
    _use_settings(
        monkeypatch,
        tmp_path,
        "llm:\n  fallback_models:\n    openai: [gpt-4o, gpt-4o-mini]\n",
    )
    assert config.get_fallback_models("openai") == ["gpt-4o", "gpt-4o-mini"]
    assert config.get_fallback_models("openai", "o3-mini") == ["o3-mini", "gpt-4o", "gpt-4o-mini"]
    assert config.get_fallback_models("anthropic") == ["claude-3-5-haiku-latest"]
    assert config.get_fallback_models("unknown") == []


def test_resolve_provider_api_key(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "from-env")
    assert config.resolve_provider_api_key("groq", "explicit") == "explicit"
    assert config.resolve_provider_api_key("groq") == "from-env"
    monkeypatch.delenv("GROQ_API_KEY")
    assert config.resolve_provider_api_key("groq") == ""
    assert config.resolve_provider_api_key("nope") == ""


def test_speed_profiles():
    fast = config.get_speed_profile("fast")
    reliable = config.get_speed_profile("reliable")
    assert fast.progress_timeout_ms < reliable.progress_timeout_ms
    assert fast.decision_timeout_ms == 12000
    assert config.get_speed_profile("warp") == fast
