from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from crm_bridge.schemas.chatwoot import (
    MESSAGE_TYPE_INCOMING,
    MESSAGE_TYPE_OUTGOING,
    RawAttachment,
    RawMessage,
)
from crm_bridge.schemas.records import (
    AudioRecord,
    FileRecord,
    ImageRecord,
    SenderRole,
    TextRecord,
)
from crm_bridge.utils.media import extension_from_name
from crm_bridge.utils.time import normalize_epoch_seconds

logger = structlog.get_logger(__name__)

AGENT_SENDER_TYPES = {"user", "agent"}
DEFAULT_AGENT_NAME = "Atendente"
DEFAULT_CUSTOMER_NAME = "Cliente"


@dataclass
class ClassifiedMessages:
    text: list[TextRecord] = field(default_factory=list)
    image: list[ImageRecord] = field(default_factory=list)
    audio: list[AudioRecord] = field(default_factory=list)
    file: list[FileRecord] = field(default_factory=list)
    messages: list[RawMessage] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "text": len(self.text),
            "image": len(self.image),
            "audio": len(self.audio),
            "file": len(self.file),
        }

    @property
    def total(self) -> int:
        return len(self.text) + len(self.image) + len(self.audio) + len(self.file)


def is_transcript_message(message: RawMessage) -> bool:
    if message.private:
        return False
    if message.message_type not in (MESSAGE_TYPE_INCOMING, MESSAGE_TYPE_OUTGOING):
        return False
    return message.has_content or bool(message.attachments)


def resolve_sender(message: RawMessage) -> tuple[SenderRole, str]:
    sender = message.sender
    sender_type = (sender.type or "").strip().lower() if sender else ""
    if sender_type in AGENT_SENDER_TYPES:
        return "agent", (sender.name or "").strip() or DEFAULT_AGENT_NAME
    name = (sender.name or "").strip() if sender else ""
    return "customer", name or DEFAULT_CUSTOMER_NAME


def _attachment_record(
    message: RawMessage,
    attachment: RawAttachment,
    index: int,
    role: SenderRole,
    sender_name: str,
    created_at: int,
) -> ImageRecord | AudioRecord | FileRecord:
    record_id = f"{message.id}_{attachment.id if attachment.id is not None else index}"
    name_extension = extension_from_name(attachment.file_name)
    declared_type = (attachment.file_type or name_extension or "").lower()
    common = {
        "id": record_id,
        "source_message_id": message.id,
        "sender_name": sender_name,
        "sender_role": role,
        "created_at": created_at,
        "content": message.content or "",
        "url": attachment.remote_url,
        "mime": attachment.content_type or attachment.file_type or "",
        "file_name": attachment.file_name or f"arquivo_{record_id}",
    }
    if "image" in declared_type:
        return ImageRecord(**common)
    if "audio" in declared_type:
        return AudioRecord(**common)
    extension = (attachment.extension or "").lstrip(".").lower()
    if not extension:
        extension = name_extension or extension_from_name(attachment.remote_url)
    return FileRecord(**common, extension=extension)


def classify(raw_messages: list[RawMessage]) -> ClassifiedMessages:
    """Filter transcript-worthy messages and split them into text/image/audio/file buckets.

    Every attachment becomes its own record carrying the parent's sender and
    timestamp. A message with text also yields a text record, so a captioned
    photo appears once as an image and once as text.
    """
    result = ClassifiedMessages()
    for message in raw_messages:
        if not is_transcript_message(message):
            continue
        result.messages.append(message)
        role, sender_name = resolve_sender(message)
        created_at = normalize_epoch_seconds(message.created_at)

        for index, attachment in enumerate(message.attachments):
            record = _attachment_record(
                message, attachment, index, role, sender_name, created_at
            )
            if isinstance(record, ImageRecord):
                result.image.append(record)
            elif isinstance(record, AudioRecord):
                result.audio.append(record)
            else:
                result.file.append(record)

        if message.has_content:
            result.text.append(
                TextRecord(
                    id=str(message.id),
                    source_message_id=message.id,
                    sender_name=sender_name,
                    sender_role=role,
                    created_at=created_at,
                    content=message.content or "",
                )
            )

    logger.info(
        "messages_classified",
        kept=len(result.messages),
        dropped=len(raw_messages) - len(result.messages),
        **result.counts(),
    )
    return result
