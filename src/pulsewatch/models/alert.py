import uuid
from datetime import datetime, timezone
from sqlalchemy import JSON, String, Boolean, DateTime, Integer, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pulsewatch.channels import ChannelConfig, parse_channel_config
from pulsewatch.database import Base


class AlertContact(Base):
    __tablename__ = "alert_contacts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    config: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    rules: Mapped[list["AlertRule"]] = relationship(
        back_populates="alert_contact", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def channel(self) -> ChannelConfig:
        return parse_channel_config(self.config)


class AlertRule(Base):
    __tablename__ = "alert_rules"
    __table_args__ = (UniqueConstraint("monitor_id", "alert_contact_id"),)

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    monitor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    alert_contact_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("alert_contacts.id", ondelete="CASCADE"), nullable=False
    )
    alert_on_down: Mapped[bool] = mapped_column(Boolean, default=True)
    alert_on_up: Mapped[bool] = mapped_column(Boolean, default=True)
    alert_on_slow: Mapped[bool] = mapped_column(Boolean, default=False)
    slow_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)  # ms

    monitor: Mapped["Monitor"] = relationship(back_populates="alert_rules")  # noqa: F821
    alert_contact: Mapped["AlertContact"] = relationship(back_populates="rules")
