import secrets
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import JSON, String, Boolean, DateTime, Float, Integer, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pulsewatch.database import Base

MONITOR_TYPES = ("http", "https", "ping", "port", "keyword", "heartbeat", "ssl", "domain")
MONITOR_STATUSES = ("up", "down", "paused", "maintenance")


class Monitor(Base):
    __tablename__ = "monitors"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="http")
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip: Mapped[str | None] = mapped_column(String(255), nullable=True)
    port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    interval: Mapped[int] = mapped_column(Integer, default=300)  # seconds
    timeout: Mapped[int] = mapped_column(Integer, default=30)  # seconds
    http_method: Mapped[str] = mapped_column(String(10), default="GET")
    headers: Mapped[dict] = mapped_column(JSON, default=dict)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    expected_status: Mapped[str] = mapped_column(String(255), default="200")
    keyword: Mapped[str | None] = mapped_column(String(255), nullable=True)
    keyword_type: Mapped[str | None] = mapped_column(String(20), nullable=True)  # exists, not-exists
    follow_redirects: Mapped[bool] = mapped_column(Boolean, default=True)
    verify_ssl: Mapped[bool] = mapped_column(Boolean, default=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=2)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[str] = mapped_column(String(20), default="up")  # up, down, paused, maintenance
    uptime_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    avg_response_time: Mapped[int] = mapped_column(Integer, default=0)  # ms
    last_check_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_uptime: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_downtime: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    push_token: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, default=lambda: secrets.token_urlsafe(24)
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    workspace: Mapped["Workspace"] = relationship(back_populates="monitors")  # noqa: F821
    checks: Mapped[list["Check"]] = relationship(  # noqa: F821
        back_populates="monitor", cascade="all, delete-orphan", passive_deletes=True
    )
    incidents: Mapped[list["Incident"]] = relationship(  # noqa: F821
        back_populates="monitor", cascade="all, delete-orphan", passive_deletes=True
    )
    alert_rules: Mapped[list["AlertRule"]] = relationship(  # noqa: F821
        back_populates="monitor", cascade="all, delete-orphan", passive_deletes=True
    )
    maintenance_windows: Mapped[list["MaintenanceWindow"]] = relationship(  # noqa: F821
        back_populates="monitor", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def target(self) -> Optional[str]:
        """Human readable probe target used in logs and notifications."""
        if self.url:
            return self.url
        if self.ip and self.port:
            return f"{self.ip}:{self.port}"
        return self.ip
