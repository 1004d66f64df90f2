from __future__ import annotations

from typing import Literal, Union

from pydantic import BaseModel

SenderRole = Literal["customer", "agent"]
EnrichmentStatus = Literal["succeeded", "failed"]
FileCategory = Literal[
    "pdf", "image", "document", "spreadsheet", "presentation", "archive", "other"
]


class RecordEnvelope(BaseModel):
    id: str
    source_message_id: int
    sender_name: str
    sender_role: SenderRole
    created_at: int
    content: str = ""


class TextRecord(RecordEnvelope):
    kind: Literal["text"] = "text"


class ImageRecord(RecordEnvelope):
    kind: Literal["image"] = "image"
    url: str | None = None
    mime: str = ""
    file_name: str


class AudioRecord(RecordEnvelope):
    kind: Literal["audio"] = "audio"
    url: str | None = None
    mime: str = ""
    file_name: str


class FileRecord(RecordEnvelope):
    kind: Literal["file"] = "file"
    url: str | None = None
    mime: str = ""
    file_name: str
    extension: str = ""


class EnrichedBase(BaseModel):
    byte_count: int = 0
    content_type: str = ""
    data_uri: str | None = None
    status: EnrichmentStatus = "succeeded"
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @property
    def created_at(self) -> int:
        return self.record.created_at  # type: ignore[attr-defined]

    @property
    def kind(self) -> str:
        return self.record.kind  # type: ignore[attr-defined]


class EnrichedText(EnrichedBase):
    record: TextRecord


class EnrichedImage(EnrichedBase):
    record: ImageRecord
    width: int | None = None
    height: int | None = None
    image_format: str | None = None


class EnrichedAudio(EnrichedBase):
    record: AudioRecord
    transcript: str = ""
    encoding: str | None = None


class EnrichedFile(EnrichedBase):
    record: FileRecord
    category: FileCategory = "other"


EnrichedRecord = Union[EnrichedText, EnrichedImage, EnrichedAudio, EnrichedFile]
