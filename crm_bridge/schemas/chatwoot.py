from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

MESSAGE_TYPE_INCOMING = 0
MESSAGE_TYPE_OUTGOING = 1
MESSAGE_TYPE_ACTIVITY = 2

MESSAGE_TYPE_NAMES = {
    "incoming": MESSAGE_TYPE_INCOMING,
    "outgoing": MESSAGE_TYPE_OUTGOING,
    "activity": MESSAGE_TYPE_ACTIVITY,
    "template": 3,
}


class RawSender(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | str | None = None
    type: str | None = None
    name: str | None = None
    custom_attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("custom_attributes", mode="before")
    @classmethod
    def _coerce_attributes(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}


class RawAttachment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | str | None = None
    data_url: str | None = None
    url: str | None = None
    file_type: str | None = None
    file_name: str | None = None
    extension: str | None = None
    content_type: str | None = None

    @property
    def remote_url(self) -> str | None:
        return self.data_url or self.url


class RawMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    created_at: Any = None
    content: str | None = None
    private: bool = False
    message_type: int = MESSAGE_TYPE_INCOMING
    sender: RawSender | None = None
    attachments: list[RawAttachment] = Field(default_factory=list)

    @field_validator("message_type", mode="before")
    @classmethod
    def _coerce_message_type(cls, value: Any) -> int:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in MESSAGE_TYPE_NAMES:
                return MESSAGE_TYPE_NAMES[lowered]
            if lowered.isdigit():
                return int(lowered)
            return MESSAGE_TYPE_ACTIVITY
        if value is None:
            return MESSAGE_TYPE_INCOMING
        return value

    @field_validator("private", mode="before")
    @classmethod
    def _coerce_private(cls, value: Any) -> bool:
        return bool(value)

    @field_validator("attachments", mode="before")
    @classmethod
    def _coerce_attachments(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @property
    def is_system(self) -> bool:
        return self.private or self.message_type == MESSAGE_TYPE_ACTIVITY

    @property
    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())
