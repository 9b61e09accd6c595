import uuid
from datetime import datetime, timezone
from sqlalchemy import JSON, String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from pulsewatch.channels import ChannelConfig, parse_channel_config
from pulsewatch.database import Base


class Integration(Base):
    """Workspace-wide destination that receives every incident event."""

    __tablename__ = "integrations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    config: Mapped[dict] = mapped_column(JSON, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    @property
    def channel(self) -> ChannelConfig:
        return parse_channel_config(self.config)
