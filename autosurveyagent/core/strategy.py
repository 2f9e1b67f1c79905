"""
确定性答题策略

职责：
- 基于种子的可复现选项选择（first / last / random / ruleset）
- ruleset 文本题关键字匹配
- 决策源不可用时的兜底 Decision
"""

from __future__ import annotations

import re
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .survey_types import AnswerStrategy, Decision, DecisionSelection, QuestionState

SingleMode = Literal["first", "last", "random"]
MultiMode = Literal["first_n", "all", "random_n"]

DEFAULT_TEXT_RESPONSE = "AUTO_TEST_RESPONSE"
SUBMIT_LIKE = re.compile(r"submit|finish|done|complete", re.IGNORECASE)


class _RuleModel(BaseModel):
    # 同时接受 snake_case 与 camelCase 键；拼错的键直接校验失败
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class MultiSelectRule(_RuleModel):
    mode: MultiMode = "first_n"
    n: int = 2

    @field_validator("n", mode="before")
    @classmethod
    def _clamp_n(cls, value):
        try:
            n = int(value)
        except (TypeError, ValueError):
            return 2
        return max(1, min(10, n))


class TextRule(_RuleModel):
    default: str = DEFAULT_TEXT_RESPONSE
    by_keyword: dict[str, str] = Field(default_factory=dict)


class RulesetConfig(_RuleModel):
    """声明式答题规则（ruleset 策略）。"""

    single_select: SingleMode = "first"
    multi_select: MultiSelectRule = Field(default_factory=MultiSelectRule)
    text: TextRule = Field(default_factory=TextRule)


def coerce_ruleset(ruleset: RulesetConfig | dict | None) -> Optional[RulesetConfig]:
    if ruleset is None:
        return None
    if isinstance(ruleset, RulesetConfig):
        return ruleset
    return RulesetConfig.model_validate(ruleset)


def seeded_index(seed: str, length: int) -> int:
    """32 位无符号多项式滚动哈希取模，跨进程稳定。"""
    h = 0
    for ch in seed:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return 0 if length <= 0 else h % length


def pick_by_mode(labels: list[str], mode: SingleMode, seed: str) -> str:
    if not labels:
        return ""
    if mode == "first":
        return labels[0]
    if mode == "last":
        return labels[-1]
    return labels[seeded_index(seed, len(labels))]


def _question_seed(run_id: str, state: QuestionState) -> str:
    return f"{run_id}:{state.question_text}"


def choose_text_by_ruleset(
    state: QuestionState,
    ruleset: RulesetConfig | dict | None,
    fallback: str = DEFAULT_TEXT_RESPONSE,
) -> str:
    rules = coerce_ruleset(ruleset)
    if rules is None:
        return fallback
    question = state.question_text.lower()
    for keyword, value in rules.text.by_keyword.items():
        if keyword and keyword.lower() in question:
            return value
    return rules.text.default


def deterministic_selection(
    state: QuestionState,
    strategy: AnswerStrategy,
    ruleset: RulesetConfig | dict | None,
    run_id: str,
) -> list[str]:
    labels = [opt.label for opt in state.options]
    if not labels:
        return []

    seed = _question_seed(run_id, state)
    if strategy != "ruleset":
        mode: SingleMode = strategy if strategy in ("first", "last") else "random"
        picked = pick_by_mode(labels, mode, seed)
        return [picked] if picked else []

    rules = coerce_ruleset(ruleset) or RulesetConfig()
    if state.input_type == "multi_select":
        rule = rules.multi_select
        if rule.mode == "all":
            return labels
        if rule.mode == "random_n":
            pool = list(labels)
            result: list[str] = []
            while pool and len(result) < rule.n:
                idx = seeded_index(f"{seed}:{len(result)}", len(pool))
                result.append(pool.pop(idx))
            return result
        return labels[: rule.n]

    picked = pick_by_mode(labels, rules.single_select, seed)
    return [picked] if picked else []


def fallback_decision(
    run_id: str,
    state: QuestionState,
    strategy: AnswerStrategy,
    ruleset: RulesetConfig | dict | None = None,
) -> Decision:
    """决策源失败时的确定性兜底，置信度不超过 0.35。"""
    if state.input_type == "text":
        return Decision(
            action="type_text",
            text=choose_text_by_ruleset(state, ruleset),
            confidence=0.35,
            reason="Fallback deterministic text response.",
        )

    selected = deterministic_selection(state, strategy, ruleset, run_id)

    # 没有可选标签时落到导航兜底
    if state.input_type in ("single_select", "yes_no") and selected:
        return Decision(
            action="select_single",
            selections=[DecisionSelection(label=label) for label in selected[:1]],
            confidence=0.35,
            reason="Fallback deterministic single selection.",
        )

    if state.input_type == "multi_select" and selected:
        return Decision(
            action="select_multi",
            selections=[DecisionSelection(label=label) for label in selected],
            confidence=0.35,
            reason="Fallback deterministic multi selection.",
        )

    if state.navigation_buttons:
        wants_submit = any(SUBMIT_LIKE.search(label) for label in state.navigation_buttons)
        return Decision(
            action="click_submit" if wants_submit else "click_next",
            confidence=0.3,
            reason="Fallback navigation action.",
        )

    return Decision(
        action="cannot_proceed",
        confidence=0.2,
        reason="No deterministic action available.",
        needs_screenshot=True,
    )
