import re
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from pulsewatch.channels import ChannelConfig
from pulsewatch.checker import parse_expected_status

MonitorType = Literal["http", "https", "ping", "port", "keyword", "heartbeat", "ssl", "domain"]
HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _to_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


# --- Auth Schemas ---

class SignupRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    workspace_name: Optional[str] = None
    workspace_slug: str

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v or len(v) < 2:
            raise ValueError("Name must be at least 2 characters")
        if len(v) > 255:
            raise ValueError("Name must be at most 255 characters")
        return v

    @field_validator("password")
    @classmethod
    def password_strong_enough(cls, v: str) -> str:
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        if len(v) > 128:
            raise ValueError("Password must be at most 128 characters")
        return v

    @field_validator("workspace_slug")
    @classmethod
    def slug_valid(cls, v: str) -> str:
        v = v.strip().lower()
        if not v or len(v) < 3:
            raise ValueError("Workspace slug must be at least 3 characters")
        if len(v) > 50:
            raise ValueError("Workspace slug must be at most 50 characters")
        if not re.match(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$", v):
            raise ValueError("Workspace slug must contain only lowercase letters, numbers, and hyphens")
        return v


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    created_at: datetime

    model_config = {"from_attributes": True}


class WorkspaceResponse(BaseModel):
    id: str
    name: str
    slug: str
    plan: str

    model_config = {"from_attributes": True}


class LoginResponse(BaseModel):
    message: str
    user: UserResponse
    workspace: Optional[WorkspaceResponse] = None


# --- Monitor Schemas ---

class MonitorCreate(BaseModel):
    name: str
    type: MonitorType = "http"
    url: Optional[str] = None
    ip: Optional[str] = None
    port: Optional[int] = None
    interval: int = 300
    timeout: int = 30
    http_method: HttpMethod = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    expected_status: str = "200"
    keyword: Optional[str] = None
    keyword_type: Literal["exists", "not-exists"] = "exists"
    follow_redirects: bool = True
    verify_ssl: bool = True
    retry_count: int = 2

    @field_validator("name")
    @classmethod
    def name_valid(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Monitor name is required")
        if len(v) > 255:
            raise ValueError("Monitor name must be at most 255 characters")
        return v

    @field_validator("http_method", mode="before")
    @classmethod
    def method_upper(cls, v):
        return v.upper().strip() if isinstance(v, str) else v

    @field_validator("url")
    @classmethod
    def url_valid(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.strip() or None
            if v is not None and len(v) > 2048:
                raise ValueError("URL must be at most 2048 characters")
        return v

    @field_validator("port")
    @classmethod
    def port_valid(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("interval")
    @classmethod
    def interval_valid(cls, v: int) -> int:
        if v < 30:
            raise ValueError("Check interval must be at least 30 seconds")
        if v > 3600:
            raise ValueError("Check interval must be at most 3600 seconds")
        return v

    @field_validator("timeout")
    @classmethod
    def timeout_valid(cls, v: int) -> int:
        if v < 5:
            raise ValueError("Timeout must be at least 5 seconds")
        if v > 300:
            raise ValueError("Timeout must be at most 300 seconds")
        return v

    @field_validator("retry_count")
    @classmethod
    def retry_count_valid(cls, v: int) -> int:
        if not 1 <= v <= 5:
            raise ValueError("Retry count must be between 1 and 5")
        return v

    @field_validator("expected_status")
    @classmethod
    def expected_status_valid(cls, v: str) -> str:
        v = v.strip() or "200"
        try:
            ranges = parse_expected_status(v)
        except ValueError:
            raise ValueError('Expected status must look like "200", "200,201" or "200-299"')
        for low, high in ranges:
            if low < 100 or high > 599 or low > high:
                raise ValueError("Expected status codes must be between 100 and 599")
        return v

    @model_validator(mode="after")
    def target_matches_type(self):
        if self.type in ("http", "https", "keyword"):
            if not self.url:
                raise ValueError(f"A URL is required for {self.type} monitors")
            if not self.url.startswith(("http://", "https://")):
                raise ValueError("URL must start with http:// or https://")
            if self.type == "https" and not self.url.startswith("https://"):
                raise ValueError("HTTPS monitors need an https:// URL")
            if self.type == "keyword" and not self.keyword:
                raise ValueError("A keyword is required for keyword monitors")
        elif self.type == "port":
            if not (self.ip or self.url) or self.port is None:
                raise ValueError("Port monitors need a host (ip or url) and a port")
        elif self.type in ("ping", "ssl", "domain"):
            if not (self.ip or self.url):
                raise ValueError(f"{self.type} monitors need a host (ip or url)")
        return self


class MonitorUpdate(BaseModel):
    """Partial update; the merged monitor is re-validated against MonitorCreate."""

    name: Optional[str] = None
    type: Optional[MonitorType] = None
    url: Optional[str] = None
    ip: Optional[str] = None
    port: Optional[int] = None
    interval: Optional[int] = None
    timeout: Optional[int] = None
    http_method: Optional[HttpMethod] = None
    headers: Optional[dict[str, str]] = None
    body: Optional[str] = None
    expected_status: Optional[str] = None
    keyword: Optional[str] = None
    keyword_type: Optional[Literal["exists", "not-exists"]] = None
    follow_redirects: Optional[bool] = None
    verify_ssl: Optional[bool] = None
    retry_count: Optional[int] = None

    @field_validator("http_method", mode="before")
    @classmethod
    def method_upper(cls, v):
        return v.upper().strip() if isinstance(v, str) else v


class MonitorResponse(BaseModel):
    id: str
    workspace_id: str
    name: str
    type: str
    url: Optional[str] = None
    ip: Optional[str] = None
    port: Optional[int] = None
    interval: int
    timeout: int
    http_method: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    expected_status: str
    keyword: Optional[str] = None
    keyword_type: Optional[str] = None
    follow_redirects: bool
    verify_ssl: bool
    retry_count: int
    is_active: bool
    status: str
    uptime_percentage: float
    avg_response_time: int
    last_check_at: Optional[datetime] = None
    last_uptime: Optional[datetime] = None
    last_downtime: Optional[datetime] = None
    push_token: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class CheckResponse(BaseModel):
    id: str
    monitor_id: str
    status: str
    status_code: Optional[int] = None
    response_time: Optional[int] = None
    error_message: Optional[str] = None
    region: str
    ssl_expiry_days: Optional[int] = None
    checked_at: datetime

    model_config = {"from_attributes": True}


class MaintenanceWindowCreate(BaseModel):
    title: str = "Scheduled maintenance"
    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return _to_utc(v)

    @model_validator(mode="after")
    def ends_after_start(self):
        if self.end_time <= self.start_time:
            raise ValueError("Maintenance window must end after it starts")
        return self


class MaintenanceWindowResponse(BaseModel):
    id: str
    monitor_id: str
    title: str
    start_time: datetime
    end_time: datetime

    model_config = {"from_attributes": True}


class InboundCheckRequest(BaseModel):
    status: Literal["up", "down"]
    response_time: Optional[int] = Field(default=None, ge=0)
    status_code: Optional[int] = None
    error: Optional[str] = None
    region: Optional[str] = None


class ChannelTestResult(BaseModel):
    name: str
    type: str
    success: bool
    error: Optional[str] = None


# --- Incident Schemas ---

class IncidentUpdateResponse(BaseModel):
    id: str
    status: str
    message: str
    created_by: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class IncidentResponse(BaseModel):
    id: str
    monitor_id: str
    title: str
    severity: str
    status: str
    error_message: Optional[str] = None
    started_at: datetime
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class IncidentDetailResponse(IncidentResponse):
    updates: list[IncidentUpdateResponse] = Field(default_factory=list)


class IncidentUpdateRequest(BaseModel):
    status: Literal["investigating", "identified", "monitoring", "resolved"]
    message: str

    @field_validator("message")
    @classmethod
    def message_not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("An update message is required")
        return v


class IncidentResolveRequest(BaseModel):
    message: Optional[str] = None


class IncidentStatsResponse(BaseModel):
    period: str
    total: int
    open: int
    resolved: int
    critical: int
    major: int
    minor: int
    avg_resolution_minutes: int


# --- Alert Schemas ---

class AlertContactCreate(BaseModel):
    name: str
    config: ChannelConfig

    @field_validator("name")
    @classmethod
    def name_valid(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Contact name is required")
        if len(v) > 100:
            raise ValueError("Contact name must be at most 100 characters")
        return v


class AlertContactResponse(BaseModel):
    id: str
    workspace_id: str
    name: str
    type: str
    config: dict
    created_at: datetime

    model_config = {"from_attributes": True}


class AlertRuleCreate(BaseModel):
    monitor_id: str
    alert_contact_id: str
    alert_on_down: bool = True
    alert_on_up: bool = True
    alert_on_slow: bool = False
    slow_threshold: Optional[int] = None

    @field_validator("slow_threshold")
    @classmethod
    def threshold_valid(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 1000 <= v <= 60000:
            raise ValueError("Slow threshold must be between 1000 and 60000 ms")
        return v


class AlertRuleResponse(BaseModel):
    id: str
    monitor_id: str
    alert_contact_id: str
    alert_on_down: bool
    alert_on_up: bool
    alert_on_slow: bool
    slow_threshold: Optional[int] = None

    model_config = {"from_attributes": True}


# --- Integration Schemas ---

class IntegrationCreate(BaseModel):
    name: str
    config: ChannelConfig
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def name_valid(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Integration name is required")
        if len(v) > 100:
            raise ValueError("Integration name must be at most 100 characters")
        return v


class IntegrationUpdate(BaseModel):
    name: Optional[str] = None
    config: Optional[ChannelConfig] = None
    enabled: Optional[bool] = None


class IntegrationResponse(BaseModel):
    id: str
    workspace_id: str
    name: str
    type: str
    config: dict
    enabled: bool
    created_at: datetime

    model_config = {"from_attributes": True}
