"""
动作执行模块

职责：
- 把 Decision 落到浏览器：点选项 / 填文本 / 点导航，跨 page 与所有 iframe
- 机械重试（最多 2 次）
- 轮询等待进度，并对结果做断言评估
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from playwright.async_api import Frame, Locator, Page

from .question_state import extract_question_state
from .survey_types import Decision, QuestionState, is_valid_survey_surface, state_fingerprint
from .verifier import evaluate_assertions, get_input_value, texts_overlap

Surface = Page | Frame
Finder = Callable[[Surface], Locator]
ExtractFn = Callable[[Page], Awaitable[QuestionState]]
SleepFn = Callable[[float], Awaitable[None]]
ClockFn = Callable[[], float]

NEXT_BUTTON = re.compile(r"\b(next|continue|ok|start)\b", re.IGNORECASE)
SUBMIT_BUTTON = re.compile(r"\b(submit|send|finish|done|complete)\b", re.IGNORECASE)
DATA_QA_MARKERS = ("ok", "start", "next", "continue", "submit")

CLICK_TIMEOUT_MS = 2000
MAX_ATTEMPTS = 2


@dataclass
class ExecutionOutcome:
    action_succeeded: bool
    progressed: bool
    after_state: QuestionState
    assertions_passed: list[str] = field(default_factory=list)
    assertions_failed: list[str] = field(default_factory=list)


def all_surfaces(page: Page) -> list[Surface]:
    main = page.main_frame
    return [page, *[frame for frame in page.frames if frame != main]]


async def click_if_visible_in_surfaces(page: Page, finder: Finder) -> bool:
    """在所有表面上找第一个可见且可点击的匹配元素；点击失败换下一个候选。"""
    for surface in all_surfaces(page):
        locator = finder(surface)
        try:
            count = await locator.count()
        except Exception:
            continue
        for i in range(count):
            target = locator.nth(i)
            try:
                if not await target.is_visible():
                    continue
                await target.scroll_into_view_if_needed()
                await target.click(timeout=CLICK_TIMEOUT_MS)
                return True
            except Exception:
                continue
    return False


async def click_option_by_label(page: Page, label: str) -> bool:
    finders: list[Finder] = [
        lambda s: s.get_by_role("radio", name=label, exact=True),
        lambda s: s.get_by_role("checkbox", name=label, exact=True),
        lambda s: s.get_by_role("button", name=label, exact=True),
        lambda s: s.get_by_label(label, exact=True),
        # 纯文本匹配对短数字标签风险较大，放最后
        lambda s: s.get_by_text(label, exact=True),
    ]
    for finder in finders:
        if await click_if_visible_in_surfaces(page, finder):
            return True
    return False


def _data_qa_finder(marker: str) -> Finder:
    return lambda s: s.locator(f'[data-qa*="{marker}"]')


async def click_navigation(page: Page, pattern: re.Pattern) -> bool:
    # Typeform 等平台的导航按钮常带 data-qa
    finders: list[Finder] = [_data_qa_finder(marker) for marker in DATA_QA_MARKERS]
    finders.append(lambda s: s.get_by_role("button", name=pattern))
    finders.append(lambda s: s.get_by_text(pattern))
    for finder in finders:
        if await click_if_visible_in_surfaces(page, finder):
            return True
    return False


async def fill_first_textbox(page: Page, text: str) -> bool:
    for surface in all_surfaces(page):
        textbox = surface.get_by_role("textbox").first
        if await textbox.count() > 0 and await textbox.is_visible():
            await textbox.fill(text)
            return True
    return False


async def verify_text_filled(page: Page, expected_text: str) -> bool:
    for surface in all_surfaces(page):
        textboxes = surface.get_by_role("textbox")
        for i in range(await textboxes.count()):
            candidate = textboxes.nth(i)
            if not await candidate.is_visible():
                continue
            if texts_overlap(await get_input_value(candidate), expected_text):
                return True
    return False


async def perform_decision(page: Page, decision: Decision) -> bool:
    action = decision.action
    labels = decision.selection_labels()

    if action == "select_single":
        return await click_option_by_label(page, labels[0]) if labels else False

    if action == "select_multi":
        selected_any = False
        for label in labels:
            clicked = await click_option_by_label(page, label)
            selected_any = selected_any or clicked
        return selected_any

    if action == "type_text":
        if not await fill_first_textbox(page, decision.text):
            return False
        return await verify_text_filled(page, decision.text)

    if action == "click_next":
        return await click_navigation(page, NEXT_BUTTON)

    if action == "click_submit":
        return await click_navigation(page, SUBMIT_BUTTON)

    # cannot_proceed：无浏览器操作
    return True


async def perform_with_retry(
    page: Page,
    decision: Decision,
    *,
    perform_fn: Callable[[Page, Decision], Awaitable[bool]] = perform_decision,
    max_attempts: int = MAX_ATTEMPTS,
) -> bool:
    for _ in range(max_attempts):
        try:
            if await perform_fn(page, decision):
                return True
        except Exception:
            # 元素 detached 等瞬时错误，交给下一次尝试
            continue
    return False


async def _settle(page: Page) -> None:
    try:
        await page.wait_for_load_state("domcontentloaded")
    except Exception:
        pass


async def wait_for_progress(
    page: Page,
    before: QuestionState,
    *,
    timeout_ms: int,
    poll_interval_ms: int = 250,
    extract_fn: Optional[ExtractFn] = None,
    sleep: SleepFn = asyncio.sleep,
    clock: Optional[ClockFn] = None,
) -> tuple[bool, QuestionState]:
    """
    指纹变化且新状态有效才算前进；变成无效状态视为仍在加载，继续等。
    按墙钟截止时间计算超时（提取本身的耗时也计入），
    超时返回最后一次重新提取的状态，progressed=False。
    """
    extract = extract_fn or extract_question_state
    now = clock or asyncio.get_running_loop().time
    before_fingerprint = state_fingerprint(before)
    deadline = now() + max(0, timeout_ms) / 1000
    poll_seconds = max(1, poll_interval_ms) / 1000

    while True:
        await _settle(page)
        state = await extract(page)
        if state_fingerprint(state) != before_fingerprint and is_valid_survey_surface(state):
            return True, state
        remaining = deadline - now()
        if remaining <= 0:
            return False, state
        await sleep(min(poll_seconds, remaining))


async def execute_decision(
    page: Page,
    before_state: QuestionState,
    decision: Decision,
    *,
    progress_timeout_ms: int,
    poll_interval_ms: int = 250,
    extract_fn: Optional[ExtractFn] = None,
    perform_fn: Callable[[Page, Decision], Awaitable[bool]] = perform_decision,
    sleep: SleepFn = asyncio.sleep,
    clock: Optional[ClockFn] = None,
) -> ExecutionOutcome:
    action_succeeded = await perform_with_retry(page, decision, perform_fn=perform_fn)
    progressed, after_state = await wait_for_progress(
        page,
        before_state,
        timeout_ms=progress_timeout_ms,
        poll_interval_ms=poll_interval_ms,
        extract_fn=extract_fn,
        sleep=sleep,
        clock=clock,
    )
    passed, failed = evaluate_assertions(before_state, after_state, decision)
    return ExecutionOutcome(
        action_succeeded=action_succeeded,
        progressed=progressed,
        after_state=after_state,
        assertions_passed=passed,
        assertions_failed=failed,
    )
