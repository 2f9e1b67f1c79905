"""
问卷引擎数据模型

职责：
- QuestionState / StepResult / RunReport 等引擎内部结构
- Decision 的 schema 校验（决策源输出必须通过校验才可执行）
- EngineEvent 事件结构，供 RunManager 多路分发
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field

InputType = Literal["single_select", "multi_select", "text", "yes_no", "unknown"]
AnswerStrategy = Literal["first", "last", "random", "ruleset"]
SpeedMode = Literal["fast", "reliable"]
RunStatus = Literal["queued", "running", "success", "blocked", "error"]
LogLevel = Literal["debug", "info", "warn", "error"]
DecisionAction = Literal[
    "select_single",
    "select_multi",
    "type_text",
    "click_next",
    "click_submit",
    "cannot_proceed",
]

SELECT_ACTIONS = ("select_single", "select_multi")


@dataclass(frozen=True)
class SurveyOption:
    label: str
    selected: bool = False

    def to_dict(self) -> dict:
        return {"label": self.label, "selected": self.selected}


@dataclass(frozen=True)
class QuestionState:
    """某一时刻问卷表面的不可变快照。"""

    question_text: str
    support_text: tuple[str, ...] = ()
    input_type: InputType = "unknown"
    options: tuple[SurveyOption, ...] = ()
    filled_value: str = ""
    navigation_buttons: tuple[str, ...] = ()
    progress: Optional[str] = None
    visible_input_count: int = 0
    url: str = ""

    def selected_labels(self) -> list[str]:
        return [opt.label for opt in self.options if opt.selected]

    def to_dict(self) -> dict:
        return {
            "question_text": self.question_text,
            "support_text": list(self.support_text),
            "input_type": self.input_type,
            "options": [opt.to_dict() for opt in self.options],
            "filled_value": self.filled_value,
            "navigation_buttons": list(self.navigation_buttons),
            "progress": self.progress,
            "visible_input_count": self.visible_input_count,
            "url": self.url,
        }


def is_valid_survey_surface(state: QuestionState) -> bool:
    """至少有一个可见输入控件或导航按钮，才算可操作的问卷表面。"""
    if state.visible_input_count > 0:
        return True
    return len(state.navigation_buttons) > 0


def state_fingerprint(state: QuestionState) -> str:
    options = ",".join(
        f"{opt.label}:{'1' if opt.selected else '0'}" for opt in state.options
    )
    return f"{state.question_text}|{state.progress or ''}|{options}|{state.filled_value}"


class DecisionSelection(BaseModel):
    label: str = Field(min_length=1)


class Decision(BaseModel):
    """决策源输出（LLM 或确定性兜底），通过 pydantic 做 schema 校验。"""

    model_config = {"frozen": True}

    action: DecisionAction
    selections: list[DecisionSelection] = Field(default_factory=list)
    text: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = Field(min_length=1)
    needs_screenshot: bool = False
    assertions: list[str] = Field(default_factory=list)

    def selection_labels(self) -> list[str]:
        return [s.label for s in self.selections]

    def to_dict(self) -> dict:
        return self.model_dump()


@dataclass
class StepArtifact:
    path: str
    type: Literal["screenshot"] = "screenshot"

    def to_dict(self) -> dict:
        return {"type": self.type, "path": self.path}


@dataclass
class StepResult:
    step: int
    state: QuestionState
    decision: Decision
    action_succeeded: bool
    progressed: bool
    assertions_passed: list[str] = field(default_factory=list)
    assertions_failed: list[str] = field(default_factory=list)
    artifacts: list[StepArtifact] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "state": self.state.to_dict(),
            "decision": self.decision.to_dict(),
            "action_succeeded": self.action_succeeded,
            "progressed": self.progressed,
            "assertions_passed": list(self.assertions_passed),
            "assertions_failed": list(self.assertions_failed),
            "artifacts": [a.to_dict() for a in self.artifacts],
        }


@dataclass
class RunReport:
    run_id: str
    survey_url: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime
    steps: list[StepResult]
    message: str
    artifacts_dir: str
    video: Optional[str] = None

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict:
        data = {
            "run_id": self.run_id,
            "survey_url": self.survey_url,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_ms": self.duration_ms,
            "steps": [s.to_dict() for s in self.steps],
            "message": self.message,
            "artifacts_dir": self.artifacts_dir,
        }
        if self.video:
            data["video"] = self.video
        return data


@dataclass
class EngineEvent:
    """
    引擎事件：log / state / decision / artifact / status。
    不同 type 只填充对应字段，to_dict 时省略空字段。
    """

    type: Literal["log", "state", "decision", "artifact", "status"]
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    level: Optional[LogLevel] = None
    message: Optional[str] = None
    step: Optional[int] = None
    state: Optional[QuestionState] = None
    decision: Optional[Decision] = None
    artifact: Optional[StepArtifact] = None
    status: Optional[RunStatus] = None

    def to_dict(self) -> dict:
        data: dict = {"type": self.type, "ts": self.ts}
        if self.level is not None:
            data["level"] = self.level
        if self.message is not None:
            data["message"] = self.message
        if self.step is not None:
            data["step"] = self.step
        if self.state is not None:
            data["state"] = self.state.to_dict()
        if self.decision is not None:
            data["decision"] = self.decision.to_dict()
        if self.artifact is not None:
            data["artifact"] = self.artifact.to_dict()
        if self.status is not None:
            data["status"] = self.status
        return data
