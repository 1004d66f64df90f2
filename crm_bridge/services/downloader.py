from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from crm_bridge.core.config import Settings

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = {408, 429}


class DownloadError(Exception):
    pass


@dataclass(frozen=True)
class DownloadedMedia:
    data: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.data)


def is_transient_http_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


def retrying(attempts: int, backoff_sec: float) -> AsyncRetrying:
    return AsyncRetrying(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=backoff_sec, max=10),
        retry=retry_if_exception(is_transient_http_error),
        reraise=True,
    )


class MediaDownloader:
    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = settings.MEDIA_DOWNLOAD_TIMEOUT_SEC
        self.max_bytes = settings.MEDIA_MAX_BYTES
        self.attempts = settings.MEDIA_RETRY_ATTEMPTS
        self.backoff_sec = settings.RETRY_BACKOFF_SEC
        self.chatwoot_base_url = settings.CHATWOOT_BASE_URL.rstrip("/")
        self.chatwoot_api_key = settings.CHATWOOT_API_KEY
        self._transport = transport

    def _headers_for(self, url: str) -> dict[str, str]:
        if self.chatwoot_api_key and url.startswith(self.chatwoot_base_url):
            return {"api_access_token": self.chatwoot_api_key}
        return {}

    async def download(self, url: str | None) -> DownloadedMedia:
        if not url:
            raise DownloadError("URL não fornecida")
        try:
            async for attempt in retrying(self.attempts, self.backoff_sec):
                with attempt:
                    return await self._fetch(url)
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "download_failed",
                url=url,
                status_code=exc.response.status_code,
            )
            raise DownloadError(f"HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.warning("download_failed", url=url, error=str(exc))
            raise DownloadError(f"falha de rede: {exc.__class__.__name__}") from exc
        raise DownloadError("download não concluído")

    async def _fetch(self, url: str) -> DownloadedMedia:
        buffer = bytearray()
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            async with client.stream("GET", url, headers=self._headers_for(url)) as response:
                response.raise_for_status()
                content_length = response.headers.get("content-length")
                if content_length and content_length.isdigit():
                    if int(content_length) > self.max_bytes:
                        raise DownloadError("arquivo maior que o limite permitido")
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    if len(buffer) > self.max_bytes:
                        raise DownloadError("arquivo maior que o limite permitido")
                content_type = response.headers.get("content-type", "")

        if not buffer:
            raise DownloadError("arquivo baixado está vazio")
        logger.info("media_downloaded", url=url, size=len(buffer), content_type=content_type)
        return DownloadedMedia(data=bytes(buffer), content_type=content_type)
