"""
Configuration module for loading runner settings.
"""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml


# Config file lives next to the package root
PACKAGE_DIR = Path(__file__).parent.parent
SETTINGS_PATH = PACKAGE_DIR / "config.yaml"

DEFAULT_SETTINGS: dict[str, Any] = {
    "browser": {
        "headless": True,
        "slow_mo": 0,
        "viewport": {"width": 1280, "height": 720},
    },
    "runner": {
        "max_steps": 40,
        "artifacts_dir": "artifacts",
        # 外部域名跳转白名单（问卷托管平台），命中则不视为“跳出问卷”
        "allowed_survey_hosts": [
            "typeform.com",
            "surveymonkey.com",
            "qualtrics.com",
            "docs.google.com",
            "forms.gle",
        ],
    },
    "llm": {
        "default_models": {
            "openai": "gpt-4o-mini",
            "anthropic": "claude-3-5-haiku-latest",
            "google": "gemini-1.5-flash",
            "deepseek": "deepseek-chat",
            "groq": "llama-3.3-70b-versatile",
            "openrouter": "openai/gpt-4o-mini",
            "xai": "grok-2-latest",
        },
        "fallback_models": {},
    },
}

PROVIDER_API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "groq": "GROQ_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "xai": "XAI_API_KEY",
}


@dataclass(frozen=True)
class SpeedProfile:
    """按 speed_mode 选择的一组超时（毫秒）。"""

    navigation_timeout_ms: int
    decision_timeout_ms: int
    progress_timeout_ms: int
    poll_interval_ms: int = 250


SPEED_PROFILES = {
    "fast": SpeedProfile(
        navigation_timeout_ms=8000,
        decision_timeout_ms=12000,
        progress_timeout_ms=2000,
    ),
    "reliable": SpeedProfile(
        navigation_timeout_ms=15000,
        decision_timeout_ms=20000,
        progress_timeout_ms=5000,
    ),
}


_settings_cache: Optional[dict] = None


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(force_reload: bool = False) -> dict:
    """
    Load runner settings from config.yaml, merged over DEFAULT_SETTINGS.
    Caches the result for performance.

    Returns:
        dict: Effective settings
    """
    global _settings_cache

    if _settings_cache is not None and not force_reload:
        return _settings_cache

    if not SETTINGS_PATH.exists():
        print(f"⚠️ Settings file not found, using defaults: {SETTINGS_PATH}")
        _settings_cache = copy.deepcopy(DEFAULT_SETTINGS)
        return _settings_cache

    try:
        raw = yaml.safe_load(SETTINGS_PATH.read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raw = {}
        _settings_cache = _deep_merge(DEFAULT_SETTINGS, raw)
    except Exception as e:
        print(f"❌ Failed to load settings: {e}")
        _settings_cache = copy.deepcopy(DEFAULT_SETTINGS)
    return _settings_cache


def get_browser_settings() -> dict:
    return load_settings().get("browser", {})


def get_allowed_survey_hosts() -> list[str]:
    """
    Get the allow-list of survey-hosting providers.

    Returns:
        list[str]: Lower-cased host suffixes
    """
    hosts = load_settings().get("runner", {}).get("allowed_survey_hosts") or []
    return [str(h).strip().lower() for h in hosts if str(h).strip()]


def get_default_max_steps() -> int:
    try:
        return max(1, int(load_settings().get("runner", {}).get("max_steps", 40)))
    except (TypeError, ValueError):
        return 40


def get_artifacts_root() -> Path:
    raw = load_settings().get("runner", {}).get("artifacts_dir") or "artifacts"
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path


def get_default_model(provider: str) -> str:
    """Default model for a provider (used when a run does not name one)."""
    models = load_settings().get("llm", {}).get("default_models", {})
    return str(models.get(provider, "") or "")


def get_fallback_models(provider: str, preferred: str | None = None) -> list[str]:
    """
    Candidate model chain for a provider: preferred model first, then the
    configured fallbacks, then the provider default. Duplicates removed.
    """
    llm_cfg = load_settings().get("llm", {})
    configured = (llm_cfg.get("fallback_models") or {}).get(provider) or []
    if not isinstance(configured, list):
        configured = []
    chain: list[str] = []
    for model in [preferred, *configured, get_default_model(provider)]:
        if model and model not in chain:
            chain.append(str(model))
    return chain


def resolve_provider_api_key(provider: str, explicit: str | None = None) -> str:
    if explicit:
        return explicit
    env_name = PROVIDER_API_KEY_ENV.get(provider)
    if not env_name:
        return ""
    return os.getenv(env_name, "")


def get_speed_profile(speed_mode: str) -> SpeedProfile:
    return SPEED_PROFILES.get(speed_mode, SPEED_PROFILES["fast"])
