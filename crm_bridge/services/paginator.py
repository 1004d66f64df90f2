from __future__ import annotations

import asyncio
from typing import Protocol

import structlog

from crm_bridge.schemas.chatwoot import RawMessage
from crm_bridge.utils.time import normalize_epoch_seconds

logger = structlog.get_logger(__name__)

DEFAULT_MAX_REQUESTS = 100


class MessagePageSource(Protocol):
    async def fetch_messages_page(
        self,
        conversation_id: str | int,
        account_id: str | int,
        before: int | None = None,
    ) -> list[RawMessage]: ...


async def fetch_all_messages(
    client: MessagePageSource,
    conversation_id: str | int,
    account_id: str | int,
    *,
    max_requests: int = DEFAULT_MAX_REQUESTS,
    delay_sec: float = 0.0,
) -> list[RawMessage]:
    """Walk the conversation history backwards with the "before id" cursor.

    Stops on an empty page, on a cursor that did not move, or after
    ``max_requests`` calls. Private and activity messages are dropped and each
    message id is kept once. Transport errors propagate to the caller.
    """
    collected: list[RawMessage] = []
    seen_ids: set[int] = set()
    cursor: int | None = None
    requests = 0

    while requests < max(max_requests, 1):
        if requests and delay_sec > 0:
            await asyncio.sleep(delay_sec)
        requests += 1
        page = await client.fetch_messages_page(conversation_id, account_id, before=cursor)
        if not page:
            logger.info("pagination_exhausted", conversation_id=str(conversation_id), requests=requests)
            break

        for message in page:
            if message.is_system:
                continue
            if message.id in seen_ids:
                continue
            seen_ids.add(message.id)
            collected.append(message)

        oldest_id = min(message.id for message in page)
        if oldest_id == cursor:
            logger.warning(
                "pagination_cursor_stalled",
                conversation_id=str(conversation_id),
                cursor=cursor,
            )
            break
        cursor = oldest_id
    else:
        logger.warning(
            "pagination_request_cap_reached",
            conversation_id=str(conversation_id),
            max_requests=max_requests,
        )

    collected.sort(key=lambda message: normalize_epoch_seconds(message.created_at))
    logger.info(
        "messages_fetched",
        conversation_id=str(conversation_id),
        count=len(collected),
        requests=requests,
    )
    return collected
