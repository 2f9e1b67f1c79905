"""
运行状态机决策模块

职责：
- 统一 SurveyRunner.run() 主循环中的关键分支决策
- 保持决策纯函数化，便于测试与回放
"""

from __future__ import annotations

from typing import Literal, Optional

from .loop_guard import stagnation_guard_decision

OpeningPath = Literal["proceed", "retry", "blocked"]
PreDecisionPath = Literal["continue", "success_completion", "success_external"]
PostDecisionPath = Literal["execute", "stop_incomplete", "cannot_proceed"]
PostExecutionPath = Literal[
    "continue",
    "success_submit",
    "success_completion",
    "blocked_stagnant",
    "blocked_max_steps",
]

MAX_OPENING_RETRIES = 10


def decide_opening_path(
    *,
    surface_valid: bool,
    retries: int,
    max_retries: int = MAX_OPENING_RETRIES,
) -> OpeningPath:
    if surface_valid:
        return "proceed"
    if retries < max_retries:
        return "retry"
    return "blocked"


def decide_pre_decision_path(
    *,
    completion_detected: bool,
    external_host: Optional[str],
    step: int,
) -> PreDecisionPath:
    if completion_detected:
        return "success_completion"
    # 首步允许落在重定向后的域名上
    if external_host and step > 1:
        return "success_external"
    return "continue"


def decide_post_decision_path(
    *,
    action: str,
    complete_survey: bool,
    step: int,
) -> PostDecisionPath:
    if not complete_survey and step > 1:
        return "stop_incomplete"
    if action == "cannot_proceed":
        return "cannot_proceed"
    return "execute"


def resolve_step_progress(
    *,
    execution_progressed: bool,
    fingerprint_changed: bool,
    assertions_failed: int,
) -> bool:
    # 断言失败一律视为未前进，防止失败动作无限循环
    if assertions_failed > 0:
        return False
    return execution_progressed or fingerprint_changed


def decide_post_execution_path(
    *,
    action: str,
    progressed: bool,
    completion_detected: bool,
    stagnant_count: int,
    step: int,
    max_steps: int,
) -> PostExecutionPath:
    if action == "click_submit" and (completion_detected or not progressed):
        return "success_submit"
    if completion_detected:
        return "success_completion"
    if stagnation_guard_decision(stagnant_count) == "stop":
        return "blocked_stagnant"
    if step >= max_steps:
        return "blocked_max_steps"
    return "continue"
