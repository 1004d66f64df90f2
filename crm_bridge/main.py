from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
import structlog

from crm_bridge.core.config import Settings, load_settings
from crm_bridge.core.logging import setup_logging
from crm_bridge.schemas.webhook import SyncJob
from crm_bridge.services.chatwoot_client import ChatwootClient
from crm_bridge.services.contact_extractor import extract_contact, resolve_account_id
from crm_bridge.services.downloader import MediaDownloader
from crm_bridge.services.media_enricher import MediaEnricher
from crm_bridge.services.pipedrive_client import PipedriveClient
from crm_bridge.services.sync import ConversationSync
from crm_bridge.services.transcription import FfmpegTranscoder, OpenAITranscriber
from crm_bridge.services.webhook_intake import (
    WebhookFormatError,
    evaluate_webhook,
    unwrap_webhook,
    verify_signature,
)
from crm_bridge.services.worker import SyncWorker

app = FastAPI(title="Chatwoot Pipedrive Bridge")
logger = structlog.get_logger(__name__)


def build_sync_worker(settings: Settings) -> SyncWorker:
    enricher = MediaEnricher(
        downloader=MediaDownloader(settings),
        transcriber=OpenAITranscriber(settings),
        transcoder=FfmpegTranscoder(settings.FFMPEG_BINARY),
        temp_dir=settings.TEMP_DIR,
        concurrency=settings.MEDIA_CONCURRENCY,
    )
    pipeline = ConversationSync(
        settings,
        chatwoot=ChatwootClient(settings),
        pipedrive=PipedriveClient(settings),
        enricher=enricher,
    )
    return SyncWorker(pipeline.run)


def get_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = load_settings()
        request.app.state.settings = settings
    return settings


def get_sync_worker(request: Request) -> SyncWorker:
    worker = getattr(request.app.state, "sync_worker", None)
    if worker is None:
        raise HTTPException(status_code=503, detail="Sync worker not running")
    return worker


def _error(reason: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"status": "error", "reason": reason})


@app.on_event("startup")
async def on_startup() -> None:
    settings = getattr(app.state, "settings", None) or load_settings()
    app.state.settings = settings
    setup_logging(settings)
    if not settings.CHATWOOT_API_KEY or not settings.PIPEDRIVE_API_TOKEN:
        logger.warning(
            "credentials_missing",
            chatwoot=bool(settings.CHATWOOT_API_KEY),
            pipedrive=bool(settings.PIPEDRIVE_API_TOKEN),
        )
    if not settings.OPENAI_API_KEY:
        logger.warning("transcription_disabled", reason="OPENAI_API_KEY is not set")
    worker = getattr(app.state, "sync_worker", None) or build_sync_worker(settings)
    app.state.sync_worker = worker
    worker.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    worker = getattr(app.state, "sync_worker", None)
    if worker:
        await worker.stop()


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/test-webhook")
async def test_webhook() -> dict:
    return {"status": "ok", "message": "Webhook endpoint ativo"}


@app.post("/webhook")
async def webhook(request: Request):
    settings = get_settings(request)
    body = await request.body()

    if settings.WEBHOOK_SECRET:
        signature = request.headers.get("x-webhook-signature")
        if not verify_signature(settings.WEBHOOK_SECRET, body, signature):
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = unwrap_webhook(body)
    except WebhookFormatError as exc:
        logger.warning("webhook_rejected", reason=str(exc))
        return _error(str(exc))

    decision = evaluate_webhook(payload, settings.ignored_account_ids())
    if not decision.accepted:
        logger.info(
            "webhook_ignored",
            reason=decision.reason,
            conversation_id=decision.conversation_id,
        )
        return {
            "status": "ignored",
            "reason": decision.reason,
            "conversation_id": decision.conversation_id,
        }

    conversation_id = decision.conversation_id
    if not conversation_id:
        logger.warning("webhook_rejected", reason="missing_conversation_id")
        return _error("missing_conversation_id")
    account_id = resolve_account_id(payload, settings.CHATWOOT_ACCOUNT_ID)
    if not account_id:
        logger.warning(
            "webhook_rejected", reason="missing_account_id", conversation_id=conversation_id
        )
        return _error("missing_account_id")

    job = SyncJob(
        conversation_id=conversation_id,
        account_id=account_id,
        profile=extract_contact(payload),
    )
    get_sync_worker(request).submit(job)
    return {"status": "processing-started", "conversation_id": conversation_id}
