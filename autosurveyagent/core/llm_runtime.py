"""
LLM 调用运行时

职责：
- OpenAI 兼容客户端（AsyncOpenAI）上的模型回退链路
- 分类常见错误（限流 / 模型不可用 / 其他）
- 返回结构化结果供决策源决定是否抛错
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Literal

ErrorKind = Literal["rate_limit", "model_unsupported", "other"]

UNSUPPORTED_MARKERS = (
    "does not support",
    "unsupported",
    "invalid model",
    "model_not_found",
    "does not exist",
    "not found",
)


@dataclass
class LLMCallResult:
    ok: bool
    raw: str = ""
    model: str = ""
    model_index: int = 0
    error_summary: str | None = None
    error_code: str | None = None


def classify_llm_error(exc: Exception) -> ErrorKind:
    text = str(exc)
    lowered = text.lower()
    status = getattr(exc, "status_code", None)
    if status == 429 or "429" in text or "rate_limit" in lowered or "rate limit" in lowered:
        return "rate_limit"
    if status == 404 or any(marker in lowered for marker in UNSUPPORTED_MARKERS):
        return "model_unsupported"
    return "other"


async def run_chat_with_fallback(
    *,
    client,
    fallback_models: list[str],
    messages: list[dict],
    temperature: float = 0.0,
    max_tokens: int = 800,
    response_format: dict | None = None,
    on_log: Callable[[str, str], None] | None = None,
    sleep_seconds: float = 1.0,
) -> LLMCallResult:
    """
    依次尝试候选模型。
    - 限流或模型不可用：切换到下一模型
    - 其他错误：立即失败返回
    """

    def _log(level: str, message: str) -> None:
        if on_log:
            on_log(level, message)

    exhausted = {
        "rate_limit": ("All candidate models are rate limited", "rate_limit_exhausted"),
        "model_unsupported": (
            "No candidate model supports this request",
            "model_unsupported_exhausted",
        ),
    }

    for index, model in enumerate(fallback_models):
        kwargs: dict = {
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "messages": messages,
        }
        if response_format:
            kwargs["response_format"] = response_format
        try:
            completion = await client.chat.completions.create(**kwargs)
        except Exception as exc:
            kind = classify_llm_error(exc)
            if kind == "other":
                return LLMCallResult(
                    ok=False,
                    model=model,
                    model_index=index,
                    error_summary=f"LLM call failed: {exc}",
                    error_code="llm_call_failed",
                )
            _log("warn", f"Model {model} unavailable ({kind}): {exc}")
            if index + 1 < len(fallback_models):
                _log("info", f"Switching to model: {fallback_models[index + 1]}")
                await asyncio.sleep(max(0.0, sleep_seconds))
                continue
            summary, code = exhausted[kind]
            return LLMCallResult(
                ok=False,
                model=model,
                model_index=index,
                error_summary=summary,
                error_code=code,
            )

        raw = ""
        if completion.choices:
            raw = completion.choices[0].message.content or ""
        return LLMCallResult(ok=True, raw=raw, model=model, model_index=index)

    return LLMCallResult(
        ok=False,
        error_summary="No candidate model configured",
        error_code="llm_no_model",
    )
