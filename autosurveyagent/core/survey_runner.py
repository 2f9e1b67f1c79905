"""
问卷执行引擎（单次 run 的控制循环）。

流程：
1. 启动浏览器并打开问卷链接，等待出现可操作的题目表面
2. 循环：提取状态 → 终态/跳出检测 → 请求决策（失败则确定性兜底）→ 执行 → 评估进度与断言
3. 停滞 / cannot_proceed / 达到 max_steps 时 blocked；完成文案或提交后 success；异常 error
4. 收尾：关闭浏览器、整理录屏、写 report.json
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from ..config import get_default_max_steps, get_speed_profile
from .browser_manager import BrowserManager
from .decision_source import DecisionRequest, request_decision
from .executor import ExecutionOutcome, execute_decision
from .fsm_orchestrator import (
    MAX_OPENING_RETRIES,
    decide_opening_path,
    decide_post_decision_path,
    decide_post_execution_path,
    decide_pre_decision_path,
    resolve_step_progress,
)
from .loop_guard import departed_to_external_host, next_stagnant_count
from .prompt_builder import SYSTEM_PROMPT, build_step_prompt
from .question_state import extract_question_state
from .strategy import RulesetConfig, fallback_decision
from .survey_types import (
    AnswerStrategy,
    Decision,
    EngineEvent,
    LogLevel,
    QuestionState,
    RunReport,
    RunStatus,
    SpeedMode,
    StepArtifact,
    StepResult,
    is_valid_survey_surface,
    state_fingerprint,
)
from .terminal_guard import looks_like_survey_completion

EventCallback = Callable[[EngineEvent], None]
DecideFn = Callable[..., Awaitable[Decision]]

VIDEO_FILENAME = "recording.webm"
OPENING_RETRY_SECONDS = 1.0


@dataclass
class LlmSettings:
    provider: str = "openai"
    api_key: str = ""
    model: Optional[str] = None


@dataclass
class RunSurveyInput:
    run_id: str
    survey_url: str
    instructions: str
    artifacts_dir: Path
    strategy: AnswerStrategy = "first"
    ruleset: Optional[RulesetConfig] = None
    sheet_data: Optional[dict[str, str]] = None
    speed_mode: SpeedMode = "fast"
    capture_screenshots: bool = False
    record_video: bool = False
    complete_survey: bool = True
    llm: LlmSettings = field(default_factory=LlmSettings)
    max_steps: Optional[int] = None
    verbose: bool = False
    on_event: Optional[EventCallback] = None


class SurveyRunner:
    """
    单个 run 的状态机：opening → iterating → {success, blocked, error}。
    所有分支判断委托给 fsm_orchestrator / loop_guard / terminal_guard 中的纯函数。
    """

    def __init__(
        self,
        run_input: RunSurveyInput,
        *,
        browser_manager_factory: Callable[..., Any] = BrowserManager,
        extract_fn: Callable[..., Awaitable[QuestionState]] = extract_question_state,
        execute_fn: Callable[..., Awaitable[ExecutionOutcome]] = execute_decision,
        decide_fn: DecideFn = request_decision,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.input = run_input
        self.profile = get_speed_profile(run_input.speed_mode)
        self.max_steps = run_input.max_steps or get_default_max_steps()
        self.artifacts_dir = Path(run_input.artifacts_dir)
        self._browser_manager_factory = browser_manager_factory
        self._extract_fn = extract_fn
        self._execute_fn = execute_fn
        self._decide_fn = decide_fn
        self._sleep = sleep

    # ------------------------------------------------------------------
    # 事件
    # ------------------------------------------------------------------

    def _emit(self, event: EngineEvent) -> None:
        if event.type == "log" and event.level == "debug" and not self.input.verbose:
            return
        if not self.input.on_event:
            return
        try:
            self.input.on_event(event)
        except Exception as e:
            # 观察者失败不影响运行结果
            print(f"[run={self.input.run_id}] [WARN] event observer failed: {e}")

    def _log(self, message: str, level: LogLevel = "info", step: Optional[int] = None) -> None:
        self._emit(EngineEvent(type="log", level=level, message=message, step=step))

    def _status(self, status: RunStatus, message: str) -> None:
        self._emit(EngineEvent(type="status", status=status, message=message))

    # ------------------------------------------------------------------
    # 主流程
    # ------------------------------------------------------------------

    async def run(self) -> RunReport:
        started_at = datetime.now(timezone.utc)
        steps: list[StepResult] = []
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)

        session = None
        video = None
        try:
            session = await self._launch()
            status, message = await self._drive(session.page, steps)
        except Exception as e:
            status = "error"
            message = str(e) or "Unexpected runner error."
            self._log(message, "error")
            if session is not None:
                await self._capture_fatal(session.page, len(steps) + 1)
        finally:
            # 取消（CancelledError）同样要关闭浏览器
            video = await self._teardown(session)

        return self._finish(
            status=status,
            message=message,
            started_at=started_at,
            steps=steps,
            video=video,
        )

    async def _launch(self):
        manager = self._browser_manager_factory(log_fn=self._log)
        video_dir = self.artifacts_dir / "video" if self.input.record_video else None
        return await manager.launch(video_dir=video_dir)

    async def _extract(self, page) -> QuestionState:
        return await self._extract_fn(page, log_fn=self._log)

    async def _drive(self, page, steps: list[StepResult]) -> tuple[RunStatus, str]:
        run = self.input
        self._log(f"Opening survey: {run.survey_url}")
        await page.goto(
            run.survey_url,
            wait_until="domcontentloaded",
            timeout=self.profile.navigation_timeout_ms,
        )

        # 等待 iframe / 动态内容加载
        state = await self._extract(page)
        retries = 0
        while True:
            path = decide_opening_path(
                surface_valid=is_valid_survey_surface(state), retries=retries
            )
            if path == "proceed":
                break
            if path == "blocked":
                if run.capture_screenshots:
                    await self._capture(page, "invalid-surface", 0)
                return "blocked", "Survey page loaded but no visible question/input was detected."
            self._log(
                f"State extraction check {retries + 1}/{MAX_OPENING_RETRIES}: "
                "no valid surface found, retrying in 1s",
                "debug",
            )
            await self._sleep(OPENING_RETRY_SECONDS)
            state = await self._extract(page)
            retries += 1

        self._log(f"Initial state after {retries} retries: {_dump(state.to_dict())}", "debug")

        stagnant_steps = 0
        for step in range(1, self.max_steps + 1):
            state = await self._extract(page)
            self._emit(EngineEvent(type="state", step=step, state=state))
            self._log(f"Step {step}: {state.question_text} ({state.input_type})", step=step)
            self._status("running", f"Step {step}: Analyzing question...")
            self._log(f"Raw state: {_dump(state.to_dict())}", "debug", step)

            external_host = departed_to_external_host(state.url, run.survey_url)
            pre_path = decide_pre_decision_path(
                completion_detected=looks_like_survey_completion(state),
                external_host=external_host,
                step=step,
            )
            if pre_path == "success_completion":
                return "success", "Survey appears complete (detected completion text)."
            if pre_path == "success_external":
                return "success", f"Survey exited to external domain: {external_host}"

            decision = await self._decide(state, step)
            self._emit(EngineEvent(type="decision", step=step, decision=decision))
            self._log(f"Decision: {_dump(decision.to_dict())}", "debug", step)

            artifacts: list[StepArtifact] = []
            if run.capture_screenshots or decision.needs_screenshot:
                artifacts.append(await self._capture(page, "pre-action", step))

            post_decision = decide_post_decision_path(
                action=decision.action,
                complete_survey=run.complete_survey,
                step=step,
            )
            if post_decision == "stop_incomplete":
                return "success", "Stopped before completion because complete_survey=false."
            if post_decision == "cannot_proceed":
                if not run.capture_screenshots:
                    artifacts.append(await self._capture(page, "cannot-proceed", step))
                steps.append(
                    StepResult(
                        step=step,
                        state=state,
                        decision=decision,
                        action_succeeded=False,
                        progressed=False,
                        assertions_failed=["Cannot proceed."],
                        artifacts=artifacts,
                    )
                )
                return "blocked", f"Decision source reported cannot_proceed at step {step}."

            execution = await self._execute_fn(
                page,
                state,
                decision,
                progress_timeout_ms=self.profile.progress_timeout_ms,
                poll_interval_ms=self.profile.poll_interval_ms,
                extract_fn=self._extract,
            )
            self._status("running", f"Step {step}: Executing {decision.action}...")

            progressed = resolve_step_progress(
                execution_progressed=execution.progressed,
                fingerprint_changed=state_fingerprint(execution.after_state)
                != state_fingerprint(state),
                assertions_failed=len(execution.assertions_failed),
            )
            if execution.assertions_failed:
                self._log(
                    "Assertions failed, marking step as stagnant: "
                    + "; ".join(execution.assertions_failed),
                    "warn",
                    step,
                )
            stagnant_steps = next_stagnant_count(stagnant_steps, progressed)

            step_result = StepResult(
                step=step,
                state=state,
                decision=decision,
                action_succeeded=execution.action_succeeded,
                progressed=progressed,
                assertions_passed=list(execution.assertions_passed),
                assertions_failed=list(execution.assertions_failed),
                artifacts=artifacts,
            )
            steps.append(step_result)

            if not execution.action_succeeded:
                self._log(f"Action did not succeed for {decision.action}.", "warn", step)

            post_execution = decide_post_execution_path(
                action=decision.action,
                progressed=progressed,
                completion_detected=looks_like_survey_completion(execution.after_state),
                stagnant_count=stagnant_steps,
                step=step,
                max_steps=self.max_steps,
            )
            if post_execution == "success_submit":
                return "success", "Survey submission step executed."
            if post_execution == "success_completion":
                return "success", "Survey appears complete."
            if post_execution == "blocked_stagnant":
                if not run.capture_screenshots:
                    step_result.artifacts.append(await self._capture(page, "stagnant", step))
                return "blocked", "Runner cannot progress after repeated attempts."
            if post_execution == "blocked_max_steps":
                break

        return "blocked", f"Stopped after reaching max_steps ({self.max_steps})."

    async def _decide(self, state: QuestionState, step: int) -> Decision:
        run = self.input
        prompt = build_step_prompt(
            instructions=run.instructions,
            strategy=run.strategy,
            state=state,
            ruleset=run.ruleset,
            sheet_data=run.sheet_data,
        )
        self._log(f"Decision prompt:\n{prompt}", "debug", step)

        request = DecisionRequest(
            system_prompt=SYSTEM_PROMPT,
            user_prompt=prompt,
            provider=run.llm.provider,
            api_key=run.llm.api_key,
            model=run.llm.model,
            timeout_ms=self.profile.decision_timeout_ms,
        )
        timeout = self.profile.decision_timeout_ms / 1000
        try:
            return await asyncio.wait_for(
                self._decide_fn(
                    request, on_log=lambda level, message: self._log(message, level, step)
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            self._log(
                f"Decision source timed out after {self.profile.decision_timeout_ms}ms, "
                "falling back to strategy engine.",
                "warn",
                step,
            )
        except Exception as e:
            self._log(
                f"Decision source failed, falling back to strategy engine: {e}",
                "warn",
                step,
            )
        return fallback_decision(run.run_id, state, run.strategy, run.ruleset)

    # ------------------------------------------------------------------
    # 产物
    # ------------------------------------------------------------------

    async def _capture(self, page, label: str, step: int) -> StepArtifact:
        screenshots_dir = self.artifacts_dir / "screenshots"
        screenshots_dir.mkdir(parents=True, exist_ok=True)
        path = screenshots_dir / f"step-{step:02d}-{label}.png"
        await page.screenshot(path=str(path), full_page=True)
        artifact = StepArtifact(path=str(path))
        self._emit(EngineEvent(type="artifact", step=step, artifact=artifact))
        return artifact

    async def _capture_fatal(self, page, step: int) -> None:
        try:
            await self._capture(page, "fatal", step)
        except Exception as e:
            self._log(f"Failed to capture fatal screenshot: {e}", "debug")

    async def _teardown(self, session) -> Optional[str]:
        if session is None:
            return None
        try:
            await session.close()
        except Exception as e:
            self._log(f"Failed to close browser session: {e}", "warn")
        if not self.input.record_video:
            return None
        try:
            return self._finalize_video()
        except OSError as e:
            self._log(f"Failed to process video recording: {e}", "warn")
            return None

    def _finalize_video(self) -> Optional[str]:
        video_dir = self.artifacts_dir / "video"
        if not video_dir.exists():
            return None
        target = video_dir / VIDEO_FILENAME
        recordings = sorted(video_dir.glob("*.webm"))
        if not recordings:
            return None
        if recordings[0] != target:
            recordings[0].rename(target)
        return f"video/{VIDEO_FILENAME}"

    def _finish(
        self,
        *,
        status: RunStatus,
        message: str,
        started_at: datetime,
        steps: list[StepResult],
        video: Optional[str],
    ) -> RunReport:
        report = RunReport(
            run_id=self.input.run_id,
            survey_url=self.input.survey_url,
            status=status,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            steps=steps,
            message=message,
            artifacts_dir=str(self.artifacts_dir),
            video=video,
        )
        report_path = self.artifacts_dir / "report.json"
        report_path.write_text(_dump(report.to_dict()), encoding="utf-8")

        step_count = len(steps)
        avg_step_ms = round(report.duration_ms / step_count) if step_count else 0
        summary = "\n".join(
            [
                "=== Run Summary ===",
                f"Status:      {status.upper()}",
                f"Total Time:  {report.duration_ms / 1000:.2f}s",
                f"Total Steps: {step_count}",
                f"Avg/Step:    {avg_step_ms}ms",
                f"Outcome:     {message}",
                f"Report:      {report_path}",
                "===================",
            ]
        )
        self._log(summary)
        self._status(status, message)
        return report


def _dump(data: dict) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2)


async def run_survey(run_input: RunSurveyInput, **kwargs) -> RunReport:
    return await SurveyRunner(run_input, **kwargs).run()
