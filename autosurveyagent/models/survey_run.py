from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..db.database import Base


class SurveyRun(Base):
    """问卷运行记录，对应 survey_runs 表；状态与 RunManager 内存表同步。"""

    __tablename__ = "survey_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, index=True)
    survey_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default="queued", index=True, nullable=False
    )
    provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    strategy: Mapped[str | None] = mapped_column(String(16), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    artifacts_dir: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    report_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    step_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    create_time: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc), nullable=False
    )
    finish_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "survey_url": self.survey_url,
            "status": self.status,
            "provider": self.provider,
            "strategy": self.strategy,
            "message": self.message,
            "artifacts_dir": self.artifacts_dir,
            "report_path": self.report_path,
            "step_count": self.step_count,
            "create_time": self.create_time.isoformat() if self.create_time else None,
            "finish_time": self.finish_time.isoformat() if self.finish_time else None,
        }
