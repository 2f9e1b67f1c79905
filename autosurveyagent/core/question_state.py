"""
问卷题目状态提取：把任意页面/iframe 归一化为 QuestionState。

两层结构：
- scan_surface：浏览器层，只负责读取原始事实（SurfaceScan）
- assemble_question_state：纯函数规则链，决定题干/题型/选项/进度，可脱离浏览器测试
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from playwright.async_api import Frame, Locator, Page

from .survey_types import (
    InputType,
    QuestionState,
    SurveyOption,
    is_valid_survey_surface,
)

Surface = Page | Frame
LogFn = Callable[[str, str], None]

NAVIGATION_LABEL = re.compile(
    r"\b(next|continue|ok|submit|done|finish|start|send|complete|previous|back)\b",
    re.IGNORECASE,
)
PERCENT_PROGRESS = re.compile(r"\b\d{1,3}%")
STEP_PROGRESS = re.compile(r"\b\d+\s+of\s+\d+\b", re.IGNORECASE)

PLACEHOLDER_WITH_OPTIONS = "Please answer this question"
PLACEHOLDER_EMPTY = "Survey step"


@dataclass
class SurfaceScan:
    """单个表面（page 或 frame）上读取到的原始事实。"""

    url: str = ""
    headings: list[str] = field(default_factory=list)
    legends: list[str] = field(default_factory=list)
    button_labels: list[str] = field(default_factory=list)
    radio_options: list[SurveyOption] = field(default_factory=list)
    checkbox_options: list[SurveyOption] = field(default_factory=list)
    button_choices: list[SurveyOption] = field(default_factory=list)
    visible_text_inputs: int = 0
    filled_value: str = ""
    radio_count: int = 0
    checkbox_count: int = 0
    progressbar_labels: list[str] = field(default_factory=list)
    page_text: str = ""


def clean_text(value: str | None) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def is_navigation_label(label: str) -> bool:
    return bool(NAVIGATION_LABEL.search(label or ""))


# ---------------------------------------------------------------------------
# 纯规则链
# ---------------------------------------------------------------------------


def resolve_headings(scan: SurfaceScan) -> list[str]:
    headings = [h for h in (clean_text(x) for x in scan.headings) if h]
    if headings:
        return headings
    return [x for x in (clean_text(x) for x in scan.legends) if x]


def resolve_navigation_buttons(button_labels: list[str]) -> tuple[str, ...]:
    seen: list[str] = []
    for raw in button_labels:
        label = clean_text(raw)
        if label and is_navigation_label(label) and label not in seen:
            seen.append(label)
    return tuple(seen)


def merge_options(scan: SurfaceScan) -> tuple[SurveyOption, ...]:
    """radio → checkbox → button-as-choice，按 label 去重，先到先得。"""
    merged: dict[str, SurveyOption] = {}
    for source in (scan.radio_options, scan.checkbox_options):
        for opt in source:
            label = clean_text(opt.label)
            if not label or label in merged:
                continue
            merged[label] = SurveyOption(label=label, selected=bool(opt.selected))
    for opt in scan.button_choices:
        label = clean_text(opt.label)
        if not label or is_navigation_label(label) or label in merged:
            continue
        merged[label] = SurveyOption(label=label, selected=bool(opt.selected))
    return tuple(merged.values())


def derive_input_type(
    *,
    radio_count: int,
    checkbox_count: int,
    visible_text_inputs: int,
    option_labels: list[str],
) -> InputType:
    input_type: InputType = "unknown"
    if radio_count > 0 and checkbox_count == 0:
        input_type = "single_select"
    if checkbox_count > 0:
        input_type = "multi_select"
    if visible_text_inputs > 0:
        input_type = "text"
    lowered = [label.lower() for label in option_labels]
    if len(lowered) == 2 and "yes" in lowered and "no" in lowered:
        input_type = "yes_no"
    return input_type


def detect_progress_text(progressbar_labels: list[str], page_text: str) -> Optional[str]:
    for label in progressbar_labels:
        cleaned = clean_text(label)
        if cleaned:
            return cleaned
    text = page_text or ""
    match = PERCENT_PROGRESS.search(text) or STEP_PROGRESS.search(text)
    if match:
        return clean_text(match.group(0)) or None
    return None


def assemble_question_state(scan: SurfaceScan) -> QuestionState:
    headings = resolve_headings(scan)
    options = merge_options(scan)
    if headings:
        question_text = headings[0]
    elif options:
        question_text = PLACEHOLDER_WITH_OPTIONS
    else:
        question_text = PLACEHOLDER_EMPTY

    input_type = derive_input_type(
        radio_count=scan.radio_count,
        checkbox_count=scan.checkbox_count,
        visible_text_inputs=scan.visible_text_inputs,
        option_labels=[opt.label for opt in options],
    )
    visible_input_count = (
        scan.visible_text_inputs + scan.radio_count + scan.checkbox_count + len(options)
    )
    return QuestionState(
        question_text=question_text,
        support_text=tuple(headings[1:3]),
        input_type=input_type,
        options=options,
        filled_value=clean_text(scan.filled_value),
        navigation_buttons=resolve_navigation_buttons(scan.button_labels),
        progress=detect_progress_text(scan.progressbar_labels, scan.page_text),
        visible_input_count=visible_input_count,
        url=scan.url,
    )


# ---------------------------------------------------------------------------
# 浏览器层
# ---------------------------------------------------------------------------

_LABELLED_BY_JS = """
(idList) => {
  for (const id of String(idList || "").split(/\\s+/)) {
    const node = id ? document.getElementById(id) : null;
    if (node && node.textContent && node.textContent.trim()) return node.textContent;
  }
  return "";
}
"""

_ASSOCIATED_LABEL_JS = """
(el) => (el.labels && el.labels.length ? el.labels[0].innerText || "" : "")
"""

_OPTION_SELECTED_JS = """
(el) => {
  if (typeof el.checked === "boolean" && el.checked) return true;
  if (el.getAttribute("aria-checked") === "true") return true;
  const markers = ["checked", "selected", "active", "is-selected", "is-active", "choice--selected"];
  let parent = el.parentElement;
  while (parent && parent !== document.body) {
    if (markers.some((m) => parent.classList.contains(m))) return true;
    if (parent.getAttribute("data-selected") === "true") return true;
    if (parent.getAttribute("aria-checked") === "true") return true;
    if (parent.tagName === "FORM" || parent.getAttribute("role") === "group") break;
    parent = parent.parentElement;
  }
  return false;
}
"""

_BUTTON_SELECTED_JS = """
(el) => el.getAttribute("aria-pressed") === "true"
  || el.getAttribute("aria-selected") === "true"
  || el.classList.contains("selected")
  || el.classList.contains("active")
"""

_INPUT_VALUE_JS = """
(el) => ("value" in el ? String(el.value || "") : "")
"""


async def element_label(locator: Locator) -> str:
    """可访问名：aria-label → aria-labelledby → 关联 label → 文本内容。"""
    try:
        aria = clean_text(await locator.get_attribute("aria-label"))
        if aria:
            return aria
        labelled_by = await locator.get_attribute("aria-labelledby")
        if labelled_by:
            label = clean_text(await locator.page.evaluate(_LABELLED_BY_JS, labelled_by))
            if label:
                return label
        associated = clean_text(await locator.evaluate(_ASSOCIATED_LABEL_JS))
        if associated:
            return associated
        return clean_text(await locator.evaluate("(el) => el.textContent || ''"))
    except Exception:
        return ""


async def _visible_items(surface: Surface, role: str) -> list[Locator]:
    visible: list[Locator] = []
    try:
        items = await surface.get_by_role(role).all()
    except Exception:
        return visible
    for item in items:
        try:
            if await item.is_visible():
                visible.append(item)
        except Exception:
            continue
    return visible


async def _visible_labels(surface: Surface, role: str) -> list[str]:
    labels: list[str] = []
    for item in await _visible_items(surface, role):
        label = await element_label(item)
        if label:
            labels.append(label)
    return labels


async def _visible_legends(surface: Surface) -> list[str]:
    legends: list[str] = []
    try:
        items = await surface.locator("legend").all()
    except Exception:
        return legends
    for item in items:
        try:
            if await item.is_visible():
                legends.append(clean_text(await item.inner_text()))
        except Exception:
            continue
    return legends


async def _read_role_options(surface: Surface, role: str) -> list[SurveyOption]:
    options: list[SurveyOption] = []
    for item in await _visible_items(surface, role):
        try:
            label = await element_label(item)
            if not label:
                continue
            selected = bool(await item.evaluate(_OPTION_SELECTED_JS))
            options.append(SurveyOption(label=label, selected=selected))
        except Exception:
            # 单个元素读取失败（detached 等）不影响整体提取
            continue
    return options


async def _read_button_choices(surface: Surface) -> list[SurveyOption]:
    choices: list[SurveyOption] = []
    for item in await _visible_items(surface, "button"):
        try:
            label = await element_label(item)
            if not label or is_navigation_label(label):
                continue
            selected = bool(await item.evaluate(_BUTTON_SELECTED_JS))
            choices.append(SurveyOption(label=label, selected=selected))
        except Exception:
            continue
    return choices


async def _read_text_inputs(surface: Surface) -> tuple[int, str]:
    count = 0
    filled = ""
    for item in await _visible_items(surface, "textbox"):
        count += 1
        if filled:
            continue
        try:
            filled = clean_text(await item.evaluate(_INPUT_VALUE_JS))
        except Exception:
            continue
    return count, filled


async def _role_count(surface: Surface, role: str) -> int:
    try:
        return await surface.get_by_role(role).count()
    except Exception:
        return 0


async def _page_text(surface: Surface) -> str:
    try:
        return await surface.evaluate("() => (document.body ? document.body.innerText : '')") or ""
    except Exception:
        return ""


async def scan_surface(surface: Surface) -> SurfaceScan:
    headings = await _visible_labels(surface, "heading")
    legends = [] if headings else await _visible_legends(surface)
    visible_text_inputs, filled_value = await _read_text_inputs(surface)
    return SurfaceScan(
        url=surface.url,
        headings=headings,
        legends=legends,
        button_labels=await _visible_labels(surface, "button"),
        radio_options=await _read_role_options(surface, "radio"),
        checkbox_options=await _read_role_options(surface, "checkbox"),
        button_choices=await _read_button_choices(surface),
        visible_text_inputs=visible_text_inputs,
        filled_value=filled_value,
        radio_count=await _role_count(surface, "radio"),
        checkbox_count=await _role_count(surface, "checkbox"),
        progressbar_labels=await _visible_labels(surface, "progressbar"),
        page_text=await _page_text(surface),
    )


async def extract_from_surface(surface: Surface) -> QuestionState:
    return assemble_question_state(await scan_surface(surface))


def secondary_frames(page: Page) -> list[Frame]:
    main = page.main_frame
    return [frame for frame in page.frames if frame != main]


async def extract_question_state(
    page: Page,
    *,
    log_fn: Optional[LogFn] = None,
) -> QuestionState:
    """
    先提取主页面；无效时按文档顺序遍历其余 frame，返回第一个有效快照。
    都无效则原样返回主页面快照。
    """
    state = await extract_from_surface(page)
    if is_valid_survey_surface(state):
        return state

    for frame in secondary_frames(page):
        try:
            await frame.wait_for_load_state("domcontentloaded")
            frame_state = await extract_from_surface(frame)
        except Exception as e:
            message = f"Failed to extract state from frame {frame.url}: {e}"
            if log_fn:
                log_fn(message, "warn")
            else:
                print(f"[WARN] {message}")
            continue
        if is_valid_survey_surface(frame_state):
            return frame_state
    return state
