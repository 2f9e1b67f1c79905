from __future__ import annotations

import json
from pathlib import Path
from typing import Any


def append_trace_event(path: Path, payload: dict[str, Any]) -> None:
    """向 NDJSON trace 文件追加一行；写失败不影响运行。"""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
    except OSError as e:
        print(f"[WARN] Failed to append trace event to {path}: {e}")


def read_trace_events(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    events: list[dict[str, Any]] = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return events
