from __future__ import annotations

from typing import Any

import httpx
import structlog

from crm_bridge.core.config import Settings
from crm_bridge.schemas.contact import ContactProfile
from crm_bridge.services.downloader import retrying
from crm_bridge.utils.media import (
    AUDIO_EXTENSIONS,
    DEFAULT_MIME,
    clean_mime,
    decode_data_uri,
    extension_for_mime,
    extension_from_name,
)

logger = structlog.get_logger(__name__)

VISIBLE_TO_ENTIRE_COMPANY = 3


class PipedriveError(Exception):
    pass


class PipedriveClient:
    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = settings.PIPEDRIVE_BASE_URL.rstrip("/")
        self.api_token = settings.PIPEDRIVE_API_TOKEN
        self.timeout = settings.REQUEST_TIMEOUT_SEC
        self.upload_timeout = settings.MEDIA_DOWNLOAD_TIMEOUT_SEC
        self.attempts = settings.MEDIA_RETRY_ATTEMPTS
        self.backoff_sec = settings.RETRY_BACKOFF_SEC
        self.stage_id = settings.PIPEDRIVE_DEAL_STAGE_ID
        self.default_title = settings.PIPEDRIVE_DEAL_TITLE
        self.process_field = settings.PIPEDRIVE_DEAL_PROCESS_FIELD
        self.cpf_field = settings.PIPEDRIVE_PERSON_CPF_FIELD
        self.profession_field = settings.PIPEDRIVE_PERSON_PROFESSION_FIELD
        self._transport = transport

    async def create_deal(self, profile: ContactProfile) -> str:
        title = profile.name or self.default_title
        if profile.phone:
            title = f"{title} - {profile.phone}"
        payload: dict[str, Any] = {"title": title, "status": "open"}
        if self.stage_id is not None:
            payload["stage_id"] = self.stage_id
        if self.process_field:
            payload[self.process_field] = profile.process_reference
        data = await self._request("POST", "deals", json=payload)
        deal_id = self._entity_id(data, "deal")
        logger.info("deal_created", deal_id=deal_id, title=title)
        return deal_id

    async def find_organization(self, name: str) -> str | None:
        if not name:
            return None
        try:
            data = await self._request(
                "GET",
                "organizations/search",
                params={"term": name, "exact_match": "true"},
            )
        except PipedriveError:
            return None
        items = data.get("items") if isinstance(data, dict) else None
        if not items:
            return None
        item = items[0].get("item") if isinstance(items[0], dict) else None
        if not isinstance(item, dict) or item.get("id") is None:
            return None
        return str(item["id"])

    async def create_organization(self, name: str) -> str:
        if not name:
            raise PipedriveError("Organization name is required")
        data = await self._request(
            "POST",
            "organizations",
            json={"name": name, "visible_to": VISIBLE_TO_ENTIRE_COMPANY},
        )
        org_id = self._entity_id(data, "organization")
        logger.info("organization_created", org_id=org_id)
        return org_id

    async def create_person(self, profile: ContactProfile) -> str:
        payload: dict[str, Any] = {
            "name": profile.name or "Contato sem nome",
            "visible_to": VISIBLE_TO_ENTIRE_COMPANY,
        }
        if profile.email:
            payload["email"] = [{"value": profile.email, "primary": True}]
        if profile.phone:
            payload["phone"] = [{"value": profile.phone, "primary": True}]
        if self.cpf_field:
            payload[self.cpf_field] = profile.national_id
        if self.profession_field:
            payload[self.profession_field] = profile.profession
        data = await self._request("POST", "persons", json=payload)
        person_id = self._entity_id(data, "person")
        logger.info("person_created", person_id=person_id)
        return person_id

    async def link_deal_relations(
        self,
        deal_id: str,
        person_id: str | None,
        org_id: str | None,
    ) -> None:
        payload: dict[str, Any] = {}
        if person_id:
            payload["person_id"] = _as_id(person_id)
        if org_id:
            payload["org_id"] = _as_id(org_id)
        if not payload:
            return
        await self._request("PUT", f"deals/{deal_id}", json=payload)
        logger.info("deal_relations_linked", deal_id=deal_id, **payload)

    async def create_note(self, deal_id: str, text: str) -> str:
        data = await self._request(
            "POST", "notes", json={"content": text, "deal_id": _as_id(deal_id)}
        )
        note_id = self._entity_id(data, "note")
        logger.info("note_created", deal_id=deal_id, note_id=note_id, chars=len(text))
        return note_id

    async def attach_file(
        self,
        deal_id: str,
        filename: str,
        data_uri: str,
        mime_hint: str | None = None,
    ) -> str | None:
        """Upload a data-URI payload to the deal; returns the file id or None.

        Audio is skipped since the CRM rejects it. Failures are logged, never raised.
        """
        extension = extension_from_name(filename)
        if not extension:
            extension = extension_for_mime(mime_hint)
            if extension:
                filename = f"{filename}.{extension}"
        if extension in AUDIO_EXTENSIONS or clean_mime(mime_hint).startswith("audio/"):
            logger.info("attachment_skipped", deal_id=deal_id, filename=filename, reason="audio")
            return None
        if not self.api_token:
            logger.error("errors", stage="pipedrive_attach", error="PIPEDRIVE_API_TOKEN is not configured")
            return None

        try:
            mime, content = decode_data_uri(data_uri)
        except ValueError as exc:
            logger.error("errors", stage="pipedrive_attach", filename=filename, error=str(exc))
            return None
        mime = clean_mime(mime) or clean_mime(mime_hint) or DEFAULT_MIME

        try:
            async for attempt in retrying(self.attempts, self.backoff_sec):
                with attempt:
                    async with httpx.AsyncClient(
                        timeout=self.upload_timeout, transport=self._transport
                    ) as client:
                        response = await client.post(
                            f"{self.base_url}/files",
                            params={"api_token": self.api_token},
                            data={"deal_id": str(deal_id)},
                            files={"file": (filename, content, mime)},
                        )
                        response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "errors",
                stage="pipedrive_attach",
                filename=filename,
                status_code=exc.response.status_code,
                response=exc.response.text[:500],
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("errors", stage="pipedrive_attach", filename=filename, error=str(exc))
            return None

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or data.get("id") is None:
            logger.error("errors", stage="pipedrive_attach", filename=filename, error="missing file id")
            return None
        file_id = str(data["id"])
        logger.info(
            "file_attached",
            deal_id=deal_id,
            file_id=file_id,
            filename=filename,
            size=len(content),
        )
        return file_id

    @staticmethod
    def _entity_id(data: Any, entity: str) -> str:
        if not isinstance(data, dict) or data.get("id") is None:
            raise PipedriveError(f"Pipedrive response without {entity} id")
        return str(data["id"])

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        if not self.api_token:
            raise PipedriveError("PIPEDRIVE_API_TOKEN is not configured")
        url = f"{self.base_url}/{path.lstrip('/')}"
        query = {"api_token": self.api_token, **(params or {})}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(method, url, params=query, json=json)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "errors",
                stage="pipedrive_api",
                path=path,
                status_code=exc.response.status_code,
                response=exc.response.text[:500],
            )
            raise PipedriveError(f"Request failed: {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.error("errors", stage="pipedrive_api", path=path, error=str(exc))
            raise PipedriveError(f"Request failed: {exc}") from exc
        except ValueError as exc:
            logger.error("errors", stage="pipedrive_api", path=path, error=str(exc))
            raise PipedriveError("Invalid JSON response") from exc

        if isinstance(body, dict) and body.get("success") is False:
            error = body.get("error") or "unknown error"
            logger.error("errors", stage="pipedrive_api", path=path, error=error)
            raise PipedriveError(f"Request failed: {error}")
        return body.get("data") if isinstance(body, dict) else None


def _as_id(value: str | int) -> int | str:
    text = str(value).strip()
    return int(text) if text.isdigit() else text
