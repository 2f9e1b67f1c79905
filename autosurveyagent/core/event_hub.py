"""
运行事件总线

职责：
- 以 {run_id, event} 信封发布引擎事件
- 按 run 保存只追加、可回放的事件历史（每个 run 有上限，run 结束后释放）
- 同步监听器 + asyncio 队列订阅（单个 run 或全部 run）
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

Listener = Callable[["RunEventEnvelope"], None]

DEFAULT_MAX_HISTORY_PER_RUN = 2000


@dataclass
class RunEventEnvelope:
    run_id: str
    event: dict[str, Any]

    def to_dict(self) -> dict:
        return {"run_id": self.run_id, "event": self.event}


@dataclass
class Subscription:
    run_id: Optional[str]
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=1000))

    def matches(self, run_id: str) -> bool:
        return self.run_id is None or self.run_id == run_id


class EventHub:
    def __init__(self, max_history_per_run: int = DEFAULT_MAX_HISTORY_PER_RUN) -> None:
        self._max_history = max(1, max_history_per_run)
        self._history: dict[str, deque[dict[str, Any]]] = {}
        self._listeners: list[Listener] = []
        self._subscriptions: list[Subscription] = []

    def publish(self, run_id: str, event: dict[str, Any]) -> RunEventEnvelope:
        envelope = RunEventEnvelope(run_id=run_id, event=event)
        history = self._history.get(run_id)
        if history is None:
            history = self._history[run_id] = deque(maxlen=self._max_history)
        # 超出上限时丢弃最旧的事件
        history.append(event)

        for listener in list(self._listeners):
            try:
                listener(envelope)
            except Exception as e:
                print(f"[run={run_id}] [WARN] event listener failed: {e}")

        for sub in list(self._subscriptions):
            if not sub.matches(run_id):
                continue
            if sub.queue.full():
                # 慢消费者：丢弃最旧的一条
                sub.queue.get_nowait()
            sub.queue.put_nowait(envelope)
        return envelope

    def history(self, run_id: str) -> list[dict[str, Any]]:
        return list(self._history.get(run_id, []))

    def release(self, run_id: str) -> None:
        """run 结束后丢弃内存历史；之后的回放读 events.ndjson。"""
        self._history.pop(run_id, None)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe(self, run_id: Optional[str] = None) -> Subscription:
        sub = Subscription(run_id=run_id)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
