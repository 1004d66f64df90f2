from __future__ import annotations

import asyncio
import io
from pathlib import Path
from typing import Awaitable, Callable, Protocol, Sequence, TypeVar

import structlog
from PIL import Image, UnidentifiedImageError

from crm_bridge.schemas.records import (
    AudioRecord,
    EnrichedAudio,
    EnrichedFile,
    EnrichedImage,
    EnrichedRecord,
    EnrichedText,
    FileRecord,
    ImageRecord,
    TextRecord,
)
from crm_bridge.services.classifier import ClassifiedMessages
from crm_bridge.services.downloader import DownloadedMedia, DownloadError
from crm_bridge.services.transcription import (
    CANONICAL_AUDIO_ENCODING,
    TranscodeError,
    TranscriptionError,
)
from crm_bridge.utils.media import (
    encode_data_uri,
    extension_from_name,
    file_category,
    resolve_content_type,
)
from crm_bridge.utils.tempfiles import scoped_temp_path

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class Downloader(Protocol):
    async def download(self, url: str | None) -> DownloadedMedia: ...


class Transcriber(Protocol):
    async def transcribe(self, audio_path: Path) -> str: ...


class Transcoder(Protocol):
    async def transcode(self, source: Path, target: Path) -> None: ...


def transcript_placeholder(reason: str) -> str:
    return f"[Transcrição indisponível: {reason}]"


def read_image_geometry(data: bytes) -> tuple[int, int, str | None]:
    with Image.open(io.BytesIO(data)) as image:
        width, height = image.size
        return width, height, (image.format or "").lower() or None


def _failed_image(record: ImageRecord, exc: Exception) -> EnrichedImage:
    return EnrichedImage(record=record, status="failed", error=f"erro inesperado: {exc}")


def _failed_audio(record: AudioRecord, exc: Exception) -> EnrichedAudio:
    return EnrichedAudio(
        record=record,
        status="failed",
        error=f"erro inesperado: {exc}",
        transcript=transcript_placeholder("erro inesperado no processamento"),
    )


def _failed_file(record: FileRecord, exc: Exception) -> EnrichedFile:
    return EnrichedFile(record=record, status="failed", error=f"erro inesperado: {exc}")


class MediaEnricher:
    def __init__(
        self,
        downloader: Downloader,
        transcriber: Transcriber,
        transcoder: Transcoder,
        temp_dir: str | Path,
        concurrency: int = 4,
    ) -> None:
        self.downloader = downloader
        self.transcriber = transcriber
        self.transcoder = transcoder
        self.temp_dir = Path(temp_dir)
        self.concurrency = max(concurrency, 1)

    def enrich_text(self, record: TextRecord) -> EnrichedText:
        return EnrichedText(record=record, content_type="text/plain")

    async def enrich_image(self, record: ImageRecord) -> EnrichedImage:
        try:
            media = await self.downloader.download(record.url)
        except DownloadError as exc:
            logger.warning("image_enrich_failed", record_id=record.id, error=str(exc))
            return EnrichedImage(record=record, status="failed", error=f"download: {exc}")

        content_type = resolve_content_type(media.content_type, record.mime, record.file_name)
        enriched = EnrichedImage(
            record=record,
            byte_count=media.size,
            content_type=content_type,
            data_uri=encode_data_uri(media.data, content_type),
        )
        if not content_type.startswith("image/"):
            enriched.status = "failed"
            enriched.error = f"tipo de conteúdo inesperado: {content_type}"
            logger.warning("image_enrich_failed", record_id=record.id, error=enriched.error)
            return enriched

        try:
            width, height, image_format = await asyncio.to_thread(read_image_geometry, media.data)
        except (
            Image.DecompressionBombError,
            UnidentifiedImageError,
            OSError,
            ValueError,
        ) as exc:
            enriched.status = "failed"
            enriched.error = f"imagem ilegível: {exc}"
            logger.warning("image_enrich_failed", record_id=record.id, error=enriched.error)
            return enriched

        enriched.width = width
        enriched.height = height
        enriched.image_format = image_format
        logger.info(
            "image_enriched",
            record_id=record.id,
            size=media.size,
            width=width,
            height=height,
        )
        return enriched

    async def enrich_audio(self, record: AudioRecord) -> EnrichedAudio:
        try:
            media = await self.downloader.download(record.url)
        except DownloadError as exc:
            logger.warning("audio_enrich_failed", record_id=record.id, error=str(exc))
            return EnrichedAudio(
                record=record,
                status="failed",
                error=f"download: {exc}",
                transcript=transcript_placeholder("falha no download do áudio"),
            )

        content_type = resolve_content_type(media.content_type, record.mime, record.file_name)
        enriched = EnrichedAudio(
            record=record,
            byte_count=media.size,
            content_type=content_type,
            data_uri=encode_data_uri(media.data, content_type),
        )
        source_extension = extension_from_name(record.file_name) or "ogg"

        try:
            with scoped_temp_path(self.temp_dir, "audio", source_extension) as raw_path:
                with scoped_temp_path(self.temp_dir, "converted", "mp3") as mp3_path:
                    await asyncio.to_thread(raw_path.write_bytes, media.data)
                    await self.transcoder.transcode(raw_path, mp3_path)
                    enriched.encoding = CANONICAL_AUDIO_ENCODING
                    transcript = await self.transcriber.transcribe(mp3_path)
        except TranscodeError as exc:
            enriched.status = "failed"
            enriched.error = str(exc)
            enriched.transcript = transcript_placeholder("falha na conversão do áudio")
        except TranscriptionError as exc:
            enriched.status = "failed"
            enriched.error = str(exc)
            enriched.transcript = transcript_placeholder(str(exc))
        except OSError as exc:
            enriched.status = "failed"
            enriched.error = str(exc)
            enriched.transcript = transcript_placeholder("erro ao gravar arquivo temporário")
        else:
            enriched.transcript = transcript.strip() or transcript_placeholder("resposta vazia")

        if enriched.succeeded:
            logger.info("audio_enriched", record_id=record.id, chars=len(enriched.transcript))
        else:
            logger.warning("audio_enrich_failed", record_id=record.id, error=enriched.error)
        return enriched

    async def enrich_file(self, record: FileRecord) -> EnrichedFile:
        extension = record.extension or extension_from_name(record.file_name)
        try:
            media = await self.downloader.download(record.url)
        except DownloadError as exc:
            logger.warning("file_enrich_failed", record_id=record.id, error=str(exc))
            return EnrichedFile(
                record=record,
                status="failed",
                error=f"download: {exc}",
                category=file_category(record.mime, extension),
            )

        content_type = resolve_content_type(media.content_type, record.mime, record.file_name)
        category = file_category(content_type, extension)
        logger.info("file_enriched", record_id=record.id, size=media.size, category=category)
        return EnrichedFile(
            record=record,
            byte_count=media.size,
            content_type=content_type,
            data_uri=encode_data_uri(media.data, content_type),
            category=category,
        )

    async def _enrich_bucket(
        self,
        items: Sequence[T],
        enrich: Callable[[T], Awaitable[R]],
        on_error: Callable[[T, Exception], R],
        semaphore: asyncio.Semaphore,
    ) -> list[R]:
        async def _run(item: T) -> R:
            async with semaphore:
                try:
                    return await enrich(item)
                except Exception as exc:
                    logger.error(
                        "errors",
                        stage="media_enrich",
                        record_id=getattr(item, "id", None),
                        error=str(exc),
                    )
                    return on_error(item, exc)

        return list(await asyncio.gather(*(_run(item) for item in items)))

    async def enrich_all(self, classified: ClassifiedMessages) -> list[EnrichedRecord]:
        """Enrich every bucket; media buckets run concurrently and return in no particular order."""
        semaphore = asyncio.Semaphore(self.concurrency)
        images, audios, files = await asyncio.gather(
            self._enrich_bucket(
                classified.image, self.enrich_image, _failed_image, semaphore
            ),
            self._enrich_bucket(
                classified.audio, self.enrich_audio, _failed_audio, semaphore
            ),
            self._enrich_bucket(
                classified.file, self.enrich_file, _failed_file, semaphore
            ),
        )
        texts = [self.enrich_text(record) for record in classified.text]
        records: list[EnrichedRecord] = [*texts, *images, *audios, *files]
        failed = sum(1 for record in records if not record.succeeded)
        logger.info("media_enriched", total=len(records), failed=failed)
        return records
