"""Notification channel configurations.

Alert contacts and integrations store their destination as a tagged union
keyed on ``type``. Configs are validated when they are written, so the
delivery path only ever sees well-formed data.
"""
import re
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, TypeAdapter, field_validator

CHANNEL_TYPES = ("email", "sms", "slack", "discord", "webhook", "telegram", "pagerduty")


def _validate_url(v: str) -> str:
    v = v.strip()
    if not v.startswith(("http://", "https://")):
        raise ValueError("URL must start with http:// or https://")
    if len(v) > 2048:
        raise ValueError("URL must be at most 2048 characters")
    return v


class EmailChannel(BaseModel):
    type: Literal["email"] = "email"
    address: EmailStr

    @property
    def destination(self) -> str:
        return str(self.address).lower()


class SmsChannel(BaseModel):
    type: Literal["sms"] = "sms"
    phone_number: str

    @field_validator("phone_number")
    @classmethod
    def phone_number_valid(cls, v: str) -> str:
        v = re.sub(r"[\s()-]", "", v)
        if not re.match(r"^\+[1-9]\d{6,14}$", v):
            raise ValueError("Phone number must be in international format, e.g. +15551234567")
        return v

    @property
    def destination(self) -> str:
        return self.phone_number


class SlackChannel(BaseModel):
    type: Literal["slack"] = "slack"
    webhook_url: str

    @field_validator("webhook_url")
    @classmethod
    def url_valid(cls, v: str) -> str:
        return _validate_url(v)

    @property
    def destination(self) -> str:
        return self.webhook_url


class DiscordChannel(BaseModel):
    type: Literal["discord"] = "discord"
    webhook_url: str

    @field_validator("webhook_url")
    @classmethod
    def url_valid(cls, v: str) -> str:
        return _validate_url(v)

    @property
    def destination(self) -> str:
        return self.webhook_url


class WebhookChannel(BaseModel):
    type: Literal["webhook"] = "webhook"
    url: str
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    secret: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def url_valid(cls, v: str) -> str:
        return _validate_url(v)

    @property
    def destination(self) -> str:
        return self.url


class TelegramChannel(BaseModel):
    type: Literal["telegram"] = "telegram"
    chat_id: str
    bot_token: Optional[str] = None

    @field_validator("chat_id")
    @classmethod
    def chat_id_valid(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Chat ID is required")
        return v

    @property
    def destination(self) -> str:
        return self.chat_id


class PagerDutyChannel(BaseModel):
    type: Literal["pagerduty"] = "pagerduty"
    routing_key: str = Field(min_length=1)

    @property
    def destination(self) -> str:
        return self.routing_key


ChannelConfig = Annotated[
    Union[
        EmailChannel,
        SmsChannel,
        SlackChannel,
        DiscordChannel,
        WebhookChannel,
        TelegramChannel,
        PagerDutyChannel,
    ],
    Field(discriminator="type"),
]

channel_config_adapter: TypeAdapter[ChannelConfig] = TypeAdapter(ChannelConfig)


def parse_channel_config(data: dict) -> ChannelConfig:
    return channel_config_adapter.validate_python(data)


def channel_key(channel: ChannelConfig) -> tuple[str, str]:
    """Identity of a destination, used to merge duplicate recipients."""
    return channel.type, channel.destination
