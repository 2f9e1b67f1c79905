"""
决策解析模块

职责：
- 将模型原始文本解析为经过 schema 校验的 Decision
- 解析/校验失败统一抛出 DecisionParseError，由调用方按决策源失败处理
"""

from __future__ import annotations

from pydantic import ValidationError

from .planner import safe_parse_json
from .survey_types import Decision


class DecisionParseError(ValueError):
    """模型输出不是合法的 Decision。"""


def parse_decision_payload(data: dict) -> Decision:
    # 常见的宽松写法：selections 给字符串列表
    selections = data.get("selections")
    if isinstance(selections, list):
        data = {
            **data,
            "selections": [
                {"label": item} if isinstance(item, str) else item for item in selections
            ],
        }
    try:
        return Decision.model_validate(data)
    except ValidationError as e:
        raise DecisionParseError(f"Decision schema validation failed: {e}") from e


def parse_decision_text(raw: str) -> Decision:
    data = safe_parse_json(raw)
    if data is None:
        preview = (raw or "").strip()[:200]
        raise DecisionParseError(f"Model output is not valid JSON: {preview}")
    return parse_decision_payload(data)
