"""
决策源：把 system/user prompt 发给指定 LLM provider，返回校验后的 Decision。

- openai / deepseek / groq / openrouter / xai：AsyncOpenAI + base_url，走模型回退链
- anthropic / google：httpx.AsyncClient 直连 REST
- 任何失败（缺 key、未知 provider、HTTP 错误、输出不合 schema）都抛 DecisionSourceError
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
from openai import AsyncOpenAI

from ..config import get_default_model, get_fallback_models
from .llm_runtime import run_chat_with_fallback
from .state_parser import DecisionParseError, parse_decision_text
from .survey_types import Decision

LogFn = Callable[[str, str], None]

OPENAI_COMPATIBLE_BASE_URLS: dict[str, Optional[str]] = {
    "openai": None,
    "deepseek": "https://api.deepseek.com",
    "groq": "https://api.groq.com/openai/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "xai": "https://api.x.ai/v1",
}

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
GOOGLE_URL_TEMPLATE = (
    "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
)

# 前端下拉展示用的候选模型
PROVIDER_MODELS: dict[str, list[str]] = {
    "openai": ["gpt-4o-mini", "gpt-4o", "gpt-4.1-mini", "o3-mini"],
    "anthropic": ["claude-3-5-haiku-latest", "claude-3-7-sonnet-latest"],
    "google": ["gemini-1.5-flash", "gemini-2.0-flash"],
    "deepseek": ["deepseek-chat", "deepseek-reasoner"],
    "groq": ["llama-3.3-70b-versatile", "llama-3.1-8b-instant"],
    "openrouter": ["openai/gpt-4o-mini", "anthropic/claude-3.5-haiku"],
    "xai": ["grok-2-latest", "grok-beta"],
}


class DecisionSourceError(RuntimeError):
    """决策源不可用或输出无效；调用方应改用确定性兜底。"""


@dataclass
class DecisionRequest:
    system_prompt: str
    user_prompt: str
    provider: str
    api_key: str
    model: Optional[str] = None
    timeout_ms: int = 20000

    @property
    def timeout_seconds(self) -> float:
        return max(1, self.timeout_ms) / 1000.0

    def resolved_model(self) -> str:
        return self.model or get_default_model(self.provider)


def _messages(request: DecisionRequest) -> list[dict]:
    return [
        {"role": "system", "content": request.system_prompt},
        {"role": "user", "content": request.user_prompt},
    ]


async def _request_openai_compatible(
    request: DecisionRequest, on_log: Optional[LogFn] = None
) -> str:
    client = AsyncOpenAI(
        api_key=request.api_key,
        base_url=OPENAI_COMPATIBLE_BASE_URLS.get(request.provider),
        timeout=request.timeout_seconds,
        max_retries=0,
    )
    try:
        result = await run_chat_with_fallback(
            client=client,
            fallback_models=get_fallback_models(request.provider, request.model),
            messages=_messages(request),
            temperature=0.0,
            response_format={"type": "json_object"},
            on_log=on_log,
            sleep_seconds=0.5,
        )
    finally:
        await client.close()
    if not result.ok:
        raise DecisionSourceError(
            f"{request.provider} request failed: {result.error_summary} ({result.error_code})"
        )
    if not result.raw.strip():
        raise DecisionSourceError(f"{request.provider} returned empty content.")
    return result.raw


async def _request_anthropic(
    request: DecisionRequest, on_log: Optional[LogFn] = None
) -> str:
    async with httpx.AsyncClient(timeout=request.timeout_seconds) as client:
        response = await client.post(
            ANTHROPIC_URL,
            headers={
                "x-api-key": request.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
            json={
                "model": request.resolved_model(),
                "max_tokens": 800,
                "temperature": 0,
                "system": request.system_prompt,
                "messages": [{"role": "user", "content": request.user_prompt}],
            },
        )
    if response.status_code != 200:
        raise DecisionSourceError(
            f"Anthropic request failed ({response.status_code}): {response.text[:300]}"
        )
    blocks = response.json().get("content") or []
    text = "\n".join(
        str(b.get("text") or "") for b in blocks if isinstance(b, dict) and b.get("type") == "text"
    )
    if not text.strip():
        raise DecisionSourceError("Anthropic returned empty content.")
    return text


async def _request_google(
    request: DecisionRequest, on_log: Optional[LogFn] = None
) -> str:
    url = GOOGLE_URL_TEMPLATE.format(model=request.resolved_model())
    async with httpx.AsyncClient(timeout=request.timeout_seconds) as client:
        response = await client.post(
            url,
            params={"key": request.api_key},
            json={
                "systemInstruction": {"parts": [{"text": request.system_prompt}]},
                "contents": [{"role": "user", "parts": [{"text": request.user_prompt}]}],
                "generationConfig": {
                    "temperature": 0,
                    "responseMimeType": "application/json",
                },
            },
        )
    if response.status_code != 200:
        raise DecisionSourceError(
            f"Google request failed ({response.status_code}): {response.text[:300]}"
        )
    candidates = response.json().get("candidates") or []
    parts: list = []
    if candidates and isinstance(candidates[0], dict):
        parts = (candidates[0].get("content") or {}).get("parts") or []
    text = "".join(str(p.get("text") or "") for p in parts if isinstance(p, dict))
    if not text.strip():
        raise DecisionSourceError("Google returned empty content.")
    return text


ProviderFn = Callable[[DecisionRequest, Optional[LogFn]], Awaitable[str]]

PROVIDERS: dict[str, ProviderFn] = {
    **{name: _request_openai_compatible for name in OPENAI_COMPATIBLE_BASE_URLS},
    "anthropic": _request_anthropic,
    "google": _request_google,
}


def list_providers() -> list[dict]:
    return [
        {
            "provider": name,
            "default_model": get_default_model(name),
            "models": PROVIDER_MODELS.get(name, []),
        }
        for name in PROVIDERS
    ]


async def request_decision(
    request: DecisionRequest, *, on_log: Optional[LogFn] = None
) -> Decision:
    if not request.api_key:
        raise DecisionSourceError("Missing provider API key.")
    fetch = PROVIDERS.get(request.provider)
    if fetch is None:
        raise DecisionSourceError(f"Unsupported LLM provider: {request.provider}")

    try:
        raw = await fetch(request, on_log)
    except DecisionSourceError:
        raise
    except httpx.HTTPError as e:
        raise DecisionSourceError(f"{request.provider} HTTP error: {e}") from e

    try:
        return parse_decision_text(raw)
    except DecisionParseError as e:
        raise DecisionSourceError(str(e)) from e
