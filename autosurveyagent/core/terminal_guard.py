"""
终态判定

职责：
- 根据题干/辅助文本判断问卷是否已到达“提交成功”终态
"""

from __future__ import annotations

import re

from .survey_types import QuestionState

COMPLETION_PHRASES = re.compile(r"thank you|thanks|submitted|successfully|start again")
COMPLETION_WORDS = re.compile(r"\b(completed|finished)\b")


def looks_like_survey_completion(state: QuestionState) -> bool:
    # 不匹配单独的 "complete"，避免 "questions to complete" 之类误判
    text = f"{state.question_text} {' '.join(state.support_text)}".lower()
    if COMPLETION_PHRASES.search(text):
        return True
    return bool(COMPLETION_WORDS.search(text))
