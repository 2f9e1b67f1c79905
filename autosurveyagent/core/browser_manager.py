"""
浏览器管理模块：统一管理 Playwright（async）浏览器启动、录屏与事件日志。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from playwright.async_api import Browser, BrowserContext, Page, async_playwright

from ..config import get_browser_settings

LogFn = Callable[[str, str], None]


@dataclass
class BrowserSession:
    playwright: Any
    browser: Browser
    context: BrowserContext
    page: Page
    _closed: bool = field(default=False, repr=False)

    async def close(self) -> None:
        """关闭 context 与 browser，重复调用无副作用。"""
        if self._closed:
            return
        self._closed = True
        try:
            await self.context.close()
            await self.browser.close()
        finally:
            try:
                await self.playwright.stop()
            except Exception:
                pass


class BrowserManager:
    """
    管理浏览器生命周期与配置，避免业务流程中重复拼装启动参数。
    """

    def __init__(self, log_fn: Optional[LogFn] = None) -> None:
        self._log = log_fn or (lambda msg, level="info": None)
        self._settings = get_browser_settings()

    def _viewport(self) -> dict:
        viewport = self._settings.get("viewport") or {}
        return {
            "width": int(viewport.get("width", 1280)),
            "height": int(viewport.get("height", 720)),
        }

    async def launch(self, *, video_dir: Optional[Path] = None) -> BrowserSession:
        """启动 chromium 并打开一个新页面；传入 video_dir 时开启录屏。"""
        headless = bool(self._settings.get("headless", True))
        slow_mo = int(self._settings.get("slow_mo", 0) or 0)

        launch_args: dict = {"headless": headless}
        if slow_mo > 0:
            launch_args["slow_mo"] = slow_mo

        context_args: dict = {"viewport": self._viewport()}
        if video_dir is not None:
            video_dir.mkdir(parents=True, exist_ok=True)
            context_args["record_video_dir"] = str(video_dir)
            context_args["record_video_size"] = self._viewport()

        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(**launch_args)
            context = await browser.new_context(**context_args)
            page = await context.new_page()
        except Exception:
            await playwright.stop()
            raise

        self._attach_basic_listeners(page)
        self._attach_context_listeners(context)
        return BrowserSession(
            playwright=playwright,
            browser=browser,
            context=context,
            page=page,
        )

    def _attach_basic_listeners(self, page: Page) -> None:
        """采集页面基础错误信息，写入 debug 日志便于排查。"""
        try:
            page.on(
                "console",
                lambda msg: self._log(f"[console:{msg.type}] {msg.text}", "debug")
                if msg.type in ("error", "warning")
                else None,
            )
            page.on(
                "pageerror",
                lambda exc: self._log(f"[pageerror] {exc}", "debug"),
            )
        except Exception:
            pass

    def _attach_context_listeners(self, context: BrowserContext) -> None:
        try:
            context.on(
                "requestfailed",
                lambda req: self._log(f"[requestfailed] {req.method} {req.url}", "debug"),
            )
        except Exception:
            pass
