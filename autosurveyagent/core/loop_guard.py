"""
反循环/跳出检测工具

职责：
- 域名漂移判定（问卷跳出到外部站点）
- 停滞计数与停机判定
"""

from __future__ import annotations

from typing import Iterable, Literal, Optional
from urllib.parse import urlsplit

from ..config import get_allowed_survey_hosts

STAGNATION_LIMIT = 2

StagnationGuard = Literal["continue", "stop"]


def host_of(url: str) -> Optional[str]:
    try:
        host = urlsplit(url or "").hostname
    except ValueError:
        return None
    return host.lower() if host else None


def is_known_survey_host(host: str, allowed_hosts: Optional[Iterable[str]] = None) -> bool:
    allowed = get_allowed_survey_hosts() if allowed_hosts is None else allowed_hosts
    host = (host or "").lower()
    for suffix in allowed:
        suffix = suffix.lower().lstrip(".")
        if host == suffix or host.endswith("." + suffix):
            return True
    return False


def departed_to_external_host(
    current_url: str,
    survey_url: str,
    *,
    allowed_hosts: Optional[Iterable[str]] = None,
) -> Optional[str]:
    """返回跳出后的外部 host；同域、托管平台或 URL 无法解析时返回 None。"""
    current = host_of(current_url)
    original = host_of(survey_url)
    if not current or not original or current == original:
        return None
    if is_known_survey_host(current, allowed_hosts):
        return None
    return current


def next_stagnant_count(current: int, progressed: bool) -> int:
    return 0 if progressed else current + 1


def stagnation_guard_decision(stagnant_count: int) -> StagnationGuard:
    if stagnant_count >= STAGNATION_LIMIT:
        return "stop"
    return "continue"
