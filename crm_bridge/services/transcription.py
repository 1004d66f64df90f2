from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import structlog

from crm_bridge.core.config import Settings
from crm_bridge.services.downloader import retrying

logger = structlog.get_logger(__name__)

CANONICAL_AUDIO_ENCODING = "mp3/mono/16kHz"


class TranscriptionError(Exception):
    pass


class TranscriptionUnavailable(TranscriptionError):
    pass


class TranscodeError(Exception):
    pass


class FfmpegTranscoder:
    def __init__(self, binary: str = "ffmpeg") -> None:
        self.binary = binary

    async def transcode(self, source: Path, target: Path) -> None:
        args = [
            "-y",
            "-i",
            str(source),
            "-vn",
            "-ac",
            "1",
            "-ar",
            "16000",
            "-codec:a",
            "libmp3lame",
            "-b:a",
            "128k",
            "-f",
            "mp3",
            str(target),
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TranscodeError(f"ffmpeg indisponível: {exc}") from exc
        _, stderr = await process.communicate()
        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-500:]
            logger.error("errors", stage="audio_transcode", returncode=process.returncode, stderr=tail)
            raise TranscodeError(f"ffmpeg terminou com código {process.returncode}")


class OpenAITranscriber:
    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = settings.OPENAI_API_KEY
        self.base_url = settings.OPENAI_BASE_URL.rstrip("/")
        self.model = settings.TRANSCRIPTION_MODEL
        self.language = settings.TRANSCRIPTION_LANGUAGE
        self.timeout = settings.TRANSCRIPTION_TIMEOUT_SEC
        self.attempts = settings.MEDIA_RETRY_ATTEMPTS
        self.backoff_sec = settings.RETRY_BACKOFF_SEC
        self._transport = transport

    async def transcribe(self, audio_path: Path) -> str:
        if not self.api_key:
            raise TranscriptionUnavailable("chave da API não configurada")
        data = await asyncio.to_thread(audio_path.read_bytes)
        if not data:
            raise TranscriptionUnavailable("arquivo de áudio vazio")

        url = f"{self.base_url}/audio/transcriptions"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        form = {"model": self.model, "response_format": "text"}
        if self.language:
            form["language"] = self.language

        try:
            async for attempt in retrying(self.attempts, self.backoff_sec):
                with attempt:
                    async with httpx.AsyncClient(
                        timeout=self.timeout, transport=self._transport
                    ) as client:
                        response = await client.post(
                            url,
                            headers=headers,
                            data=form,
                            files={"file": (audio_path.name, data, "audio/mpeg")},
                        )
                        response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "errors",
                stage="transcription",
                status_code=exc.response.status_code,
                response=exc.response.text[:500],
            )
            raise TranscriptionError(f"HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.error("errors", stage="transcription", error=str(exc))
            raise TranscriptionError(f"falha de rede: {exc.__class__.__name__}") from exc

        text = response.text.strip()
        if not text:
            raise TranscriptionError("resposta vazia da API")
        logger.info("audio_transcribed", path=audio_path.name, chars=len(text))
        return text
