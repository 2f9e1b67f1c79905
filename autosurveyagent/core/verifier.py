"""
动作后验验证模块

职责：
- 输入框取值工具
- 动作执行后的断言评估（纯函数，基于前后两个 QuestionState）
"""

from __future__ import annotations

from .survey_types import SELECT_ACTIONS, Decision, QuestionState

NAVIGATED_ASSERTION = "Successfully navigated to next step."
TYPED_TEXT_MISSING = "Typed text is not visible in the input."


async def get_input_value(locator) -> str:
    """尽力获取输入框当前值。"""
    try:
        return await locator.input_value(timeout=500)
    except Exception:
        try:
            return await locator.evaluate("(el) => ('value' in el ? String(el.value || '') : '')")
        except Exception:
            return ""


def texts_overlap(value: str, expected: str) -> bool:
    # 空输入框不算填写成功
    if not value:
        return False
    return expected in value or value in expected


def assertion_haystack(state: QuestionState) -> str:
    parts = [
        state.question_text,
        " ".join(state.support_text),
        " ".join(state.selected_labels()),
        state.filled_value,
    ]
    return " ".join(parts).lower()


def check_assertion(assertion: str, state: QuestionState) -> bool:
    return assertion.lower() in assertion_haystack(state)


def evaluate_assertions(
    before: QuestionState,
    after: QuestionState,
    decision: Decision,
) -> tuple[list[str], list[str]]:
    """
    返回 (passed, failed)。
    题干变化视为已翻页：跳过所有检查，只记录一条通过。
    """
    if before.question_text != after.question_text:
        return [NAVIGATED_ASSERTION], []

    passed: list[str] = []
    failed: list[str] = []
    for assertion in decision.assertions:
        if check_assertion(assertion, after):
            passed.append(assertion)
        else:
            failed.append(assertion)

    if decision.action in SELECT_ACTIONS:
        selected = {label.lower() for label in after.selected_labels()}
        for label in decision.selection_labels():
            if label.lower() not in selected:
                failed.append(f"Selection not reflected: {label}")

    if decision.action == "type_text" and decision.text and decision.text not in after.filled_value:
        failed.append(TYPED_TEXT_MISSING)

    return passed, failed
