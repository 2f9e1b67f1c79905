"""
规划辅助模块

职责：
- LLM 原始输出的宽松 JSON 解析（纯 JSON / 代码块 / 最外层花括号）
"""

from __future__ import annotations

import json


def _load_object(text: str) -> dict | None:
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _fenced_body(raw: str) -> str | None:
    start = raw.find("```")
    if start == -1:
        return None
    start = raw.find("\n", start)
    if start == -1:
        return None
    end = raw.find("```", start + 1)
    if end == -1:
        return None
    return raw[start + 1 : end].strip()


def safe_parse_json(raw: str | None) -> dict | None:
    """安全解析 JSON 对象，支持 markdown 代码块包装；失败返回 None。"""
    text = (raw or "").strip()
    if not text:
        return None

    data = _load_object(text)
    if data is not None:
        return data

    body = _fenced_body(text)
    if body:
        data = _load_object(body)
        if data is not None:
            return data

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return _load_object(text[start : end + 1])
    return None
