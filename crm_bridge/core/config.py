from __future__ import annotations

import tempfile

from pydantic import AliasChoices, Field

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    CHATWOOT_BASE_URL: str = "https://app.chatwoot.com"
    CHATWOOT_API_KEY: str = Field(
        default="",
        validation_alias=AliasChoices("CHATWOOT_API_KEY", "CHATWOOT_API_TOKEN"),
    )
    CHATWOOT_ACCOUNT_ID: str | None = None
    CHATWOOT_DEAL_ATTRIBUTE: str = "id_deal_pipedrive"
    CHATWOOT_PAGE_DELAY_SEC: float = 0.2
    CHATWOOT_MAX_PAGE_REQUESTS: int = 100

    PIPEDRIVE_BASE_URL: str = "https://api.pipedrive.com/v1"
    PIPEDRIVE_API_TOKEN: str = ""
    PIPEDRIVE_DEAL_STAGE_ID: int | None = None
    PIPEDRIVE_DEAL_TITLE: str = "Novo contato"
    PIPEDRIVE_DEAL_PROCESS_FIELD: str | None = None
    PIPEDRIVE_PERSON_CPF_FIELD: str | None = None
    PIPEDRIVE_PERSON_PROFESSION_FIELD: str | None = None
    PIPEDRIVE_LARGE_FILE_BYTES: int = 5 * 1024 * 1024

    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    TRANSCRIPTION_MODEL: str = "whisper-1"
    TRANSCRIPTION_LANGUAGE: str = "pt"
    TRANSCRIPTION_TIMEOUT_SEC: float = 600.0
    FFMPEG_BINARY: str = "ffmpeg"

    TEMP_DIR: str = Field(default_factory=tempfile.gettempdir)
    REQUEST_TIMEOUT_SEC: float = 20.0
    MEDIA_DOWNLOAD_TIMEOUT_SEC: float = 30.0
    MEDIA_MAX_BYTES: int = 50 * 1024 * 1024
    MEDIA_RETRY_ATTEMPTS: int = 3
    RETRY_BACKOFF_SEC: float = 1.0
    MEDIA_CONCURRENCY: int = 4

    TRANSCRIPT_TIMEZONE: str = "America/Sao_Paulo"

    WEBHOOK_SECRET: str | None = None
    IGNORED_ACCOUNT_IDS: str = ""

    def ignored_account_ids(self) -> set[str]:
        return {
            item.strip()
            for item in self.IGNORED_ACCOUNT_IDS.split(",")
            if item.strip()
        }


def load_settings() -> Settings:
    return Settings()
