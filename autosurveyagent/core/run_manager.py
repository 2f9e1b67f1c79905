"""
运行生命周期管理

职责：
- 为每个 run 分配 id 与产物目录，作为 asyncio task 启动 SurveyRunner
- 维护内存中的 run 表（queued → running → success/blocked/error）
- 事件多路分发：EventHub 同步广播；events.ndjson、RunLog 行由后台写入任务落盘
- SurveyRun 行与内存状态同步，供历史查询
"""

from __future__ import annotations

import asyncio
import dataclasses
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from ..config import get_artifacts_root
from ..db.database import get_session
from ..models.run_log import RunLog
from ..models.survey_run import SurveyRun
from .event_hub import EventHub
from .strategy import RulesetConfig
from .survey_runner import LlmSettings, RunSurveyInput, SurveyRunner
from .survey_types import AnswerStrategy, EngineEvent, RunStatus, SpeedMode
from .trace_log import append_trace_event, read_trace_events

TERMINAL_STATUSES = ("success", "blocked", "error")
EVENTS_FILENAME = "events.ndjson"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RunOptions:
    survey_url: str
    instructions: str
    strategy: AnswerStrategy = "first"
    ruleset: Optional[RulesetConfig] = None
    speed_mode: SpeedMode = "fast"
    capture_screenshots: bool = False
    record_video: bool = False
    complete_survey: bool = True
    provider: str = "openai"
    model: Optional[str] = None
    api_key: str = ""
    max_steps: Optional[int] = None
    verbose: bool = False
    sheet_data: Optional[dict[str, str]] = None


@dataclass
class RunRecord:
    run_id: str
    survey_url: str
    status: RunStatus
    created_at: str
    updated_at: str
    report: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


class RunManager:
    def __init__(
        self,
        hub: Optional[EventHub] = None,
        *,
        artifacts_root: Optional[Path] = None,
        runner_factory: Callable[..., Any] = SurveyRunner,
    ) -> None:
        self.hub = hub or EventHub()
        self._artifacts_root = artifacts_root
        self.runner_factory = runner_factory
        self._runs: dict[str, RunRecord] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def artifacts_root(self) -> Path:
        return self._artifacts_root or get_artifacts_root()

    def run_dir(self, run_id: str) -> Path:
        return self.artifacts_root / "runs" / run_id

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        return self._runs.get(run_id)

    def list_runs(self) -> list[RunRecord]:
        return sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)

    def replay_events(self, run_id: str) -> list[dict[str, Any]]:
        """内存历史优先；进程重启后回退到 events.ndjson。"""
        history = self.hub.history(run_id)
        if history:
            return history
        return read_trace_events(self.run_dir(run_id) / EVENTS_FILENAME)

    # ------------------------------------------------------------------
    # 启动
    # ------------------------------------------------------------------

    async def start_run(self, options: RunOptions) -> RunRecord:
        """登记 queued 记录并在后台启动引擎，立即返回 queued 快照。"""
        run_id = str(uuid.uuid4())
        artifacts_dir = self.run_dir(run_id)
        artifacts_dir.mkdir(parents=True, exist_ok=True)

        now = _now_iso()
        record = RunRecord(
            run_id=run_id,
            survey_url=options.survey_url,
            status="queued",
            created_at=now,
            updated_at=now,
        )
        self._runs[run_id] = record
        await asyncio.to_thread(self._persist_new_run, record, options, artifacts_dir)
        snapshot = dataclasses.replace(record)

        task = asyncio.create_task(self._execute(run_id, options, artifacts_dir))
        self._tasks[run_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(run_id, None))
        return snapshot

    async def wait_for(self, run_id: str) -> Optional[RunRecord]:
        task = self._tasks.get(run_id)
        if task is not None:
            await task
        return self.get_run(run_id)

    async def _execute(self, run_id: str, options: RunOptions, artifacts_dir: Path) -> None:
        self._patch(run_id, status="running")
        await asyncio.to_thread(self._sync_row, run_id, status="running")

        events: asyncio.Queue = asyncio.Queue()
        writer = asyncio.create_task(self._write_events(run_id, artifacts_dir, events))

        run_input = RunSurveyInput(
            run_id=run_id,
            survey_url=options.survey_url,
            instructions=options.instructions,
            artifacts_dir=artifacts_dir,
            strategy=options.strategy,
            ruleset=options.ruleset,
            sheet_data=options.sheet_data,
            speed_mode=options.speed_mode,
            capture_screenshots=options.capture_screenshots,
            record_video=options.record_video,
            complete_survey=options.complete_survey,
            llm=LlmSettings(
                provider=options.provider,
                api_key=options.api_key,
                model=options.model,
            ),
            max_steps=options.max_steps,
            verbose=options.verbose,
            on_event=lambda event: self._record_event(run_id, events, event),
        )

        report = None
        crash_message = ""
        try:
            report = await self.runner_factory(run_input).run()
        except Exception as e:
            crash_message = str(e) or "Unknown run error."
        finally:
            # 事件全部落盘后再公布终态
            events.put_nowait(None)
            await writer

        if report is None:
            await asyncio.to_thread(self._log, run_id, f"Run crashed: {crash_message}", "error")
            await asyncio.to_thread(
                self._sync_row, run_id, status="error", message=crash_message, finished=True
            )
            self._patch(run_id, status="error", error=crash_message)
        else:
            await asyncio.to_thread(
                self._sync_row,
                run_id,
                status=report.status,
                message=report.message,
                report_path=str(artifacts_dir / "report.json"),
                step_count=len(report.steps),
                finished=True,
            )
            self._patch(run_id, status=report.status, report=report.to_dict(), error=None)
        self.hub.release(run_id)

    # ------------------------------------------------------------------
    # 事件与持久化
    # ------------------------------------------------------------------

    def _record_event(self, run_id: str, events: asyncio.Queue, event: EngineEvent) -> None:
        """在事件循环上同步调用：立即广播，落盘交给写入任务。"""
        payload = event.to_dict()
        self.hub.publish(run_id, payload)
        events.put_nowait((payload, event))

    async def _write_events(self, run_id: str, artifacts_dir: Path, events: asyncio.Queue) -> None:
        """按到达顺序逐条落盘；阻塞的文件与 SQLite 写入放到工作线程。"""
        while True:
            item = await events.get()
            if item is None:
                return
            payload, event = item
            try:
                await asyncio.to_thread(self._persist_event, run_id, artifacts_dir, payload, event)
            except Exception as e:
                print(f"[run={run_id}] [WARN] failed to persist event: {e}")

    def _persist_event(
        self, run_id: str, artifacts_dir: Path, payload: dict[str, Any], event: EngineEvent
    ) -> None:
        append_trace_event(artifacts_dir / EVENTS_FILENAME, payload)
        if event.type == "log":
            self._log(run_id, event.message or "", event.level or "info", event.step)

    def _log(
        self,
        run_id: str,
        message: str,
        level: str = "info",
        step: Optional[int] = None,
    ) -> None:
        """写入日志"""
        with get_session() as session:
            session.add(RunLog(run_id=run_id, step=step, level=level, message=message))
        print(f"[run={run_id}] [{level.upper()}] {message}")

    def _patch(self, run_id: str, **changes: Any) -> None:
        record = self._runs.get(run_id)
        if record is None:
            return
        self._runs[run_id] = dataclasses.replace(record, updated_at=_now_iso(), **changes)

    def _persist_new_run(
        self, record: RunRecord, options: RunOptions, artifacts_dir: Path
    ) -> None:
        with get_session() as session:
            session.add(
                SurveyRun(
                    id=record.run_id,
                    survey_url=record.survey_url,
                    status=record.status,
                    provider=options.provider,
                    strategy=options.strategy,
                    artifacts_dir=str(artifacts_dir),
                )
            )

    def _sync_row(
        self,
        run_id: str,
        *,
        status: str,
        message: Optional[str] = None,
        report_path: Optional[str] = None,
        step_count: Optional[int] = None,
        finished: bool = False,
    ) -> None:
        with get_session() as session:
            row = session.get(SurveyRun, run_id)
            if row is None:
                return
            row.status = status
            if message is not None:
                row.message = message
            if report_path is not None:
                row.report_path = report_path
            if step_count is not None:
                row.step_count = step_count
            if finished:
                row.finish_time = datetime.now(timezone.utc)
            session.add(row)
        print(f"[run={run_id}] 状态更新为: {status.upper()}")


# 全局单例（进程内共享 run 表与事件总线）
event_hub = EventHub()
run_manager = RunManager(event_hub)
