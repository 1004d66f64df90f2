from __future__ import annotations

from pathlib import PurePosixPath
from typing import Callable, Protocol

import structlog

from crm_bridge.core.config import Settings
from crm_bridge.schemas.chatwoot import RawMessage
from crm_bridge.schemas.contact import ContactProfile
from crm_bridge.schemas.records import EnrichedFile, EnrichedRecord
from crm_bridge.schemas.webhook import SyncJob, SyncResult
from crm_bridge.services.chatwoot_client import ChatwootClientError
from crm_bridge.services.classifier import ClassifiedMessages, classify
from crm_bridge.services.contact_extractor import deal_id_from_messages
from crm_bridge.services.paginator import fetch_all_messages
from crm_bridge.services.pipedrive_client import PipedriveError
from crm_bridge.services.transcript import (
    Transcript,
    assemble,
    file_label,
    render_pdf,
    render_text,
)
from crm_bridge.utils.media import encode_data_uri
from crm_bridge.utils.time import resolve_timezone, utc_now

logger = structlog.get_logger(__name__)

SEPARATELY_ATTACHED_CATEGORIES = {"document", "spreadsheet"}

PdfRenderer = Callable[[Transcript, str], bytes]


class ChatPlatform(Protocol):
    async def fetch_messages_page(
        self,
        conversation_id: str | int,
        account_id: str | int,
        before: int | None = None,
    ) -> list[RawMessage]: ...

    async def update_contact_attribute(
        self,
        contact_id: str | int,
        account_id: str | int,
        key: str,
        value: object,
    ) -> None: ...


class Crm(Protocol):
    async def create_deal(self, profile: ContactProfile) -> str: ...

    async def find_organization(self, name: str) -> str | None: ...

    async def create_organization(self, name: str) -> str: ...

    async def create_person(self, profile: ContactProfile) -> str: ...

    async def link_deal_relations(
        self, deal_id: str, person_id: str | None, org_id: str | None
    ) -> None: ...

    async def create_note(self, deal_id: str, text: str) -> str: ...

    async def attach_file(
        self, deal_id: str, filename: str, data_uri: str, mime_hint: str | None = None
    ) -> str | None: ...


class Enricher(Protocol):
    async def enrich_all(self, classified: ClassifiedMessages) -> list[EnrichedRecord]: ...


def transcript_filename(name: str, timezone: str) -> str:
    safe_name = (name or "Cliente").replace("/", "-").replace("\\", "-")
    today = utc_now().astimezone(resolve_timezone(timezone)).strftime("%d-%m-%Y")
    return f"Conversa_Completa_{safe_name}_{today}.pdf"


def attachment_filename(record: EnrichedFile) -> str:
    label = PurePosixPath(file_label(record))
    return f"{label.stem}_{record.record.id}{label.suffix}"


class ConversationSync:
    def __init__(
        self,
        settings: Settings,
        chatwoot: ChatPlatform,
        pipedrive: Crm,
        enricher: Enricher,
        pdf_renderer: PdfRenderer = render_pdf,
    ) -> None:
        self.settings = settings
        self.chatwoot = chatwoot
        self.pipedrive = pipedrive
        self.enricher = enricher
        self.pdf_renderer = pdf_renderer
        self.timezone = settings.TRANSCRIPT_TIMEZONE

    async def run(self, job: SyncJob) -> SyncResult:
        log = logger.bind(conversation_id=job.conversation_id, account_id=job.account_id)
        try:
            messages = await fetch_all_messages(
                self.chatwoot,
                job.conversation_id,
                job.account_id,
                max_requests=self.settings.CHATWOOT_MAX_PAGE_REQUESTS,
                delay_sec=self.settings.CHATWOOT_PAGE_DELAY_SEC,
            )
        except ChatwootClientError as exc:
            log.error("errors", stage="fetch_messages", error=str(exc))
            return SyncResult(
                status="failed",
                conversation_id=job.conversation_id,
                reason="messages_unavailable",
            )

        classified = classify(messages)
        enriched = await self.enricher.enrich_all(classified)

        profile = job.profile
        deal_id = profile.deal_id or deal_id_from_messages(
            messages, self.settings.CHATWOOT_DEAL_ATTRIBUTE
        )
        deal_created = False
        if not deal_id:
            deal_id = await self._create_deal(profile)
            deal_created = bool(deal_id)
        if not deal_id:
            log.error("sync_aborted", reason="no_deal")
            return SyncResult(
                status="failed",
                conversation_id=job.conversation_id,
                message_count=len(messages),
                record_counts=classified.counts(),
                reason="deal_unavailable",
            )

        transcript = assemble(enriched, profile)
        delivery = await self._deliver_transcript(deal_id, transcript)
        attachments = await self._attach_files(deal_id, enriched)

        if deal_created:
            await self._write_back(job, profile, deal_id)

        result = SyncResult(
            status="completed",
            conversation_id=job.conversation_id,
            deal_id=deal_id,
            deal_created=deal_created,
            message_count=len(messages),
            record_counts=transcript.counts(),
            delivery=delivery,
            attachments=attachments,
        )
        log.info(
            "sync_completed",
            deal_id=deal_id,
            deal_created=deal_created,
            messages=len(messages),
            delivery=delivery,
            attachments=attachments,
        )
        return result

    async def _create_deal(self, profile: ContactProfile) -> str | None:
        try:
            deal_id = await self.pipedrive.create_deal(profile)
        except PipedriveError as exc:
            logger.error("errors", stage="create_deal", error=str(exc))
            return None

        person_id: str | None = None
        try:
            person_id = await self.pipedrive.create_person(profile)
        except PipedriveError as exc:
            logger.error("errors", stage="create_person", deal_id=deal_id, error=str(exc))

        org_id: str | None = None
        if profile.company:
            try:
                org_id = await self.pipedrive.find_organization(profile.company)
                if not org_id:
                    org_id = await self.pipedrive.create_organization(profile.company)
            except PipedriveError as exc:
                logger.error(
                    "errors", stage="create_organization", deal_id=deal_id, error=str(exc)
                )

        try:
            await self.pipedrive.link_deal_relations(deal_id, person_id, org_id)
        except PipedriveError as exc:
            logger.error("errors", stage="link_deal_relations", deal_id=deal_id, error=str(exc))
        return deal_id

    async def _deliver_transcript(self, deal_id: str, transcript: Transcript) -> str:
        """Summary note plus the PDF; falls back to a full text note."""
        finished_at = utc_now().astimezone(resolve_timezone(self.timezone))
        summary = (
            f"Conversa com {transcript.contact_name} finalizada em "
            f"{finished_at.strftime('%d/%m/%Y %H:%M:%S')}. "
            "Conteúdo completo disponível no documento PDF anexado a este Deal."
        )
        try:
            await self.pipedrive.create_note(deal_id, summary)
        except PipedriveError as exc:
            logger.error("errors", stage="summary_note", deal_id=deal_id, error=str(exc))

        try:
            pdf = self.pdf_renderer(transcript, self.timezone)
        except Exception as exc:
            logger.exception("transcript_render_failed", deal_id=deal_id, error=str(exc))
        else:
            file_id = await self.pipedrive.attach_file(
                deal_id,
                transcript_filename(transcript.profile.name, self.timezone),
                encode_data_uri(pdf, "application/pdf"),
                "application/pdf",
            )
            if file_id:
                return "pdf"
            logger.warning("transcript_attach_failed", deal_id=deal_id)

        try:
            await self.pipedrive.create_note(deal_id, render_text(transcript, self.timezone))
        except PipedriveError as exc:
            logger.error("errors", stage="fallback_note", deal_id=deal_id, error=str(exc))
            return "none"
        return "text"

    async def _attach_files(self, deal_id: str, records: list[EnrichedRecord]) -> int:
        attached = 0
        for record in records:
            if not isinstance(record, EnrichedFile):
                continue
            if not record.succeeded or not record.data_uri:
                continue
            oversized = record.byte_count > self.settings.PIPEDRIVE_LARGE_FILE_BYTES
            if record.category not in SEPARATELY_ATTACHED_CATEGORIES and not oversized:
                continue
            file_id = await self.pipedrive.attach_file(
                deal_id,
                attachment_filename(record),
                record.data_uri,
                record.content_type,
            )
            if file_id:
                attached += 1
        return attached

    async def _write_back(self, job: SyncJob, profile: ContactProfile, deal_id: str) -> None:
        if not profile.contact_id:
            return
        try:
            await self.chatwoot.update_contact_attribute(
                profile.contact_id,
                job.account_id,
                self.settings.CHATWOOT_DEAL_ATTRIBUTE,
                deal_id,
            )
        except ChatwootClientError as exc:
            logger.error("errors", stage="write_back", deal_id=deal_id, error=str(exc))
