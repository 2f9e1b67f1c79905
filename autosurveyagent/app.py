import asyncio
import json
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field, field_validator

from .config import PROVIDER_API_KEY_ENV, get_artifacts_root, resolve_provider_api_key
from .core.decision_source import PROVIDERS, list_providers
from .core.run_manager import RunOptions, event_hub, run_manager
from .core.strategy import RulesetConfig
from .db.database import get_session, init_db
from .models.run_log import RunLog
from .models.survey_run import SurveyRun


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 初始化数据库与产物目录
    init_db()
    get_artifacts_root().mkdir(parents=True, exist_ok=True)
    yield


app = FastAPI(title="Survey Autopilot - Automated Survey Runner", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(
    "/artifacts",
    StaticFiles(directory=str(get_artifacts_root()), check_dir=False),
    name="artifacts",
)


class RunRequest(BaseModel):
    """POST /api/runs 请求体。"""

    survey_url: str
    instructions: str = Field(min_length=1)
    strategy: Literal["first", "last", "random", "ruleset"] = "first"
    ruleset: Optional[RulesetConfig] = None
    speed_mode: Literal["fast", "reliable"] = "fast"
    capture_screenshots: bool = False
    record_video: bool = False
    complete_survey: bool = True
    provider: str = "openai"
    model: Optional[str] = None
    api_key: Optional[str] = None
    max_steps: Optional[int] = Field(default=None, ge=1, le=100)
    verbose: bool = False
    sheet_data: Optional[dict[str, str]] = None

    @field_validator("survey_url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        value = value.strip()
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError("survey_url must be an http(s) URL")
        return value

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        if value not in PROVIDERS:
            raise ValueError(f"unsupported provider: {value}")
        return value


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message})


@app.get("/api/health")
def health():
    return {"ok": True}


@app.get("/api/llm/providers")
def get_llm_providers():
    """列出可用 provider、默认模型，以及环境变量里是否已配置 key。"""
    providers = list_providers()
    for item in providers:
        item["api_key_env"] = PROVIDER_API_KEY_ENV.get(item["provider"])
        item["has_env_key"] = bool(resolve_provider_api_key(item["provider"]))
    return {"ok": True, "providers": providers}


@app.post("/api/runs", status_code=202)
async def create_run(payload: RunRequest):
    api_key = resolve_provider_api_key(payload.provider, payload.api_key)
    if not api_key:
        env_name = PROVIDER_API_KEY_ENV.get(payload.provider, "")
        return _error(400, f"No API key provided for {payload.provider} (set {env_name}).")

    record = await run_manager.start_run(
        RunOptions(
            survey_url=payload.survey_url,
            instructions=payload.instructions,
            strategy=payload.strategy,
            ruleset=payload.ruleset,
            speed_mode=payload.speed_mode,
            capture_screenshots=payload.capture_screenshots,
            record_video=payload.record_video,
            complete_survey=payload.complete_survey,
            provider=payload.provider,
            model=payload.model,
            api_key=api_key,
            max_steps=payload.max_steps,
            verbose=payload.verbose,
            sheet_data=payload.sheet_data,
        )
    )
    return {"ok": True, "run_id": record.run_id, "status": record.status}


@app.get("/api/runs")
def list_runs():
    return {"ok": True, "runs": [r.to_dict() for r in run_manager.list_runs()]}


@app.get("/api/runs/history")
def list_run_history(limit: int = 50):
    """持久化的 run 记录（跨进程重启）。"""
    with get_session() as session:
        rows = (
            session.query(SurveyRun)
            .order_by(SurveyRun.create_time.desc())
            .limit(max(1, min(limit, 500)))
            .all()
        )
        return {"ok": True, "runs": [row.to_dict() for row in rows]}


@app.get("/api/runs/{run_id}")
def get_run(run_id: str):
    record = run_manager.get_run(run_id)
    if record is None:
        return _error(404, "Run not found.")
    return {"ok": True, "run": record.to_dict()}


@app.get("/api/runs/{run_id}/events")
def get_run_events(run_id: str):
    if run_manager.get_run(run_id) is None and not run_manager.run_dir(run_id).exists():
        return _error(404, "Run not found.")
    return {"ok": True, "events": run_manager.replay_events(run_id)}


@app.get("/api/runs/{run_id}/logs")
def get_run_logs(run_id: str):
    """返回指定 run 的持久化日志。"""
    with get_session() as session:
        logs = (
            session.query(RunLog)
            .filter(RunLog.run_id == run_id)
            .order_by(RunLog.id.asc())
            .all()
        )
        return {"ok": True, "logs": [log.to_dict() for log in logs]}


@app.websocket("/ws")
async def run_events_socket(websocket: WebSocket):
    """
    推送 run 事件。默认接收全部 run；
    客户端发送 {"type": "subscribe", "run_id": ...} 后只接收该 run。
    """
    await websocket.accept()
    await websocket.send_json({"type": "ready"})
    subscription = event_hub.subscribe()

    async def pump() -> None:
        while True:
            envelope = await subscription.queue.get()
            await websocket.send_json({"type": "run_event", **envelope.to_dict()})

    pump_task = asyncio.create_task(pump())
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await websocket.send_json({"type": "error", "message": "Invalid WS payload."})
                continue
            if isinstance(message, dict) and message.get("type") == "subscribe" and message.get("run_id"):
                subscription.run_id = str(message["run_id"])
                await websocket.send_json({"type": "subscribed", "run_id": subscription.run_id})
    except WebSocketDisconnect:
        pass
    finally:
        pump_task.cancel()
        event_hub.unsubscribe(subscription)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("autosurveyagent.app:app", host="127.0.0.1", port=8000, reload=True)
