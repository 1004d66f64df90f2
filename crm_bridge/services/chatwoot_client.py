from __future__ import annotations

from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from crm_bridge.core.config import Settings
from crm_bridge.schemas.chatwoot import RawMessage

logger = structlog.get_logger(__name__)


class ChatwootClientError(Exception):
    pass


class ChatwootClient:
    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = settings.CHATWOOT_BASE_URL.rstrip("/")
        self.api_key = settings.CHATWOOT_API_KEY
        self.timeout = settings.REQUEST_TIMEOUT_SEC
        self.headers = {
            "api_access_token": self.api_key,
            "Accept": "application/json",
            "User-Agent": "chatwoot-pipedrive/1.0",
        }
        self._transport = transport

    def _account_path(self, account_id: str | int, path: str) -> str:
        return f"{self.base_url}/api/v1/accounts/{account_id}/{path.lstrip('/')}"

    async def fetch_messages_page(
        self,
        conversation_id: str | int,
        account_id: str | int,
        before: int | None = None,
    ) -> list[RawMessage]:
        params: dict[str, Any] = {}
        if before is not None:
            params["before"] = before
        url = self._account_path(
            account_id, f"conversations/{conversation_id}/messages"
        )
        data = await self._request("GET", url, params=params)
        items: Any = []
        if isinstance(data, dict):
            items = data.get("payload") or data.get("data") or []
        if not isinstance(items, list):
            raise ChatwootClientError("Invalid messages payload")

        messages: list[RawMessage] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                messages.append(RawMessage.model_validate(item))
            except ValidationError as exc:
                logger.warning(
                    "message_skipped",
                    message_id=item.get("id"),
                    error=str(exc),
                )
        return messages

    async def update_contact_attribute(
        self,
        contact_id: str | int,
        account_id: str | int,
        key: str,
        value: Any,
    ) -> None:
        url = self._account_path(account_id, f"contacts/{contact_id}")
        await self._request("PUT", url, json={"custom_attributes": {key: value}})
        logger.info(
            "contact_attribute_updated",
            contact_id=str(contact_id),
            key=key,
        )

    async def _request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        if not self.api_key:
            raise ChatwootClientError("CHATWOOT_API_KEY is not configured")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method, url, params=params, json=json, headers=self.headers
                )
                response.raise_for_status()
                if not response.content:
                    return {}
                return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "errors",
                stage="chatwoot_api",
                url=url,
                status_code=exc.response.status_code,
                response=exc.response.text[:500],
            )
            raise ChatwootClientError(
                f"Request failed: {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("errors", stage="chatwoot_api", url=url, error=str(exc))
            raise ChatwootClientError(f"Request failed: {exc}") from exc
        except ValueError as exc:
            logger.error("errors", stage="chatwoot_api", url=url, error=str(exc))
            raise ChatwootClientError("Invalid JSON response") from exc
