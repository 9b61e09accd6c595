import uuid
from datetime import datetime, timezone
from sqlalchemy import String, DateTime, Integer, ForeignKey, Text, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pulsewatch.database import Base

# Region tag of checks created by inbound heartbeat pushes
HEARTBEAT_REGION = "heartbeat"


class Check(Base):
    __tablename__ = "checks"
    __table_args__ = (
        Index("ix_checks_monitor_checked", "monitor_id", "checked_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    monitor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # up, down
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time: Mapped[int | None] = mapped_column(Integer, nullable=True)  # ms
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    region: Mapped[str] = mapped_column(String(50), nullable=False, default="us-east")
    ssl_expiry_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True
    )

    monitor: Mapped["Monitor"] = relationship(back_populates="checks")  # noqa: F821
