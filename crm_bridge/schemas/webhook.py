from __future__ import annotations

from pydantic import BaseModel

from crm_bridge.schemas.contact import ContactProfile


class WebhookDecision(BaseModel):
    accepted: bool
    reason: str | None = None
    conversation_id: str | None = None


class SyncJob(BaseModel):
    conversation_id: str
    account_id: str
    profile: ContactProfile


class SyncResult(BaseModel):
    status: str
    conversation_id: str
    deal_id: str | None = None
    deal_created: bool = False
    message_count: int = 0
    record_counts: dict[str, int] = {}
    delivery: str | None = None
    attachments: int = 0
    reason: str | None = None
