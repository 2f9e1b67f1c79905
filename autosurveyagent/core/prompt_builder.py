"""
Prompt 构建模块

职责：
- 固定 system prompt
- 把当前 QuestionState + 运行参数序列化为 user prompt（JSON 文档）
"""

from __future__ import annotations

import json
from typing import Optional

from .strategy import RulesetConfig, coerce_ruleset
from .survey_types import AnswerStrategy, QuestionState

SYSTEM_PROMPT = """You are an automated QA agent controlling a browser to validate and complete a web-based survey.

You receive structured information about the current survey step.
You must decide what action to take next.

Rules:
- Never invent options.
- Use visible labels only.
- Follow the provided answer strategy and instructions exactly.
- Prefer deterministic choices unless instructed otherwise.

Return ONLY valid JSON matching the provided schema."""

OUTPUT_SCHEMA_DOC = {
    "action": "select_single | select_multi | type_text | click_next | click_submit | cannot_proceed",
    "selections": [{"label": "string"}],
    "text": "string",
    "confidence": 0,
    "reason": "string",
    "needs_screenshot": True,
    "assertions": ["string"],
}

STEP_REQUIREMENTS = [
    "Use only options from question_state.options.",
    "If the question is already answered and Next/Submit is available, prefer click_next or click_submit.",
    "When input_type is text, type useful deterministic text based on instructions/ruleset/sheet_data.",
    "Set cannot_proceed only when no safe action exists.",
]


def build_step_prompt(
    *,
    instructions: str,
    strategy: AnswerStrategy,
    state: QuestionState,
    ruleset: RulesetConfig | dict | None = None,
    sheet_data: Optional[dict[str, str]] = None,
) -> str:
    rules = coerce_ruleset(ruleset)
    payload = {
        "test_instructions": instructions,
        "strategy": strategy,
        "ruleset": rules.model_dump() if rules is not None else None,
        "sheet_data": sheet_data or {},
        "question_state": state.to_dict(),
        "output_schema": OUTPUT_SCHEMA_DOC,
        "requirements": STEP_REQUIREMENTS,
    }
    return json.dumps(payload, ensure_ascii=False, indent=2)
