from __future__ import annotations

from typing import Any, Iterable

import structlog

from crm_bridge.schemas.chatwoot import RawMessage
from crm_bridge.schemas.contact import ContactProfile

logger = structlog.get_logger(__name__)

# The platform exposes the same contact data under different keys depending on
# integration version and webhook event, so each field lists its candidates in
# priority order.
CONTACT_SOURCES = (
    "meta.sender",
    "meta.contact",
    "conversation.meta.sender",
    "sender",
)


def _each_source(*suffixes: str) -> tuple[str, ...]:
    return tuple(
        f"{source}.{suffix}" for suffix in suffixes for source in CONTACT_SOURCES
    )


CONTACT_FIELD_PATHS: dict[str, tuple[str, ...]] = {
    "contact_id": _each_source("id"),
    "name": _each_source("name", "custom_attributes.nome"),
    "email": _each_source("email"),
    "phone": _each_source("phone_number", "additional_attributes.phone_number"),
    "company": _each_source(
        "custom_attributes.org_name", "additional_attributes.company_name"
    )
    + ("additional_attributes.organizacao",),
    "process_reference": _each_source("custom_attributes.processo")
    + ("additional_attributes.processo",),
    "profession": _each_source("custom_attributes.profisso")
    + ("additional_attributes.profissao_cbo",),
    "national_id": _each_source("custom_attributes.cpf") + ("additional_attributes.cpf",),
    "deal_id": (
        "meta.sender.custom_attributes.id_deal_pipedrive",
        "meta.sender.custom_attributes.id_pipedrive",
        "meta.contact.custom_attributes.id_deal_pipedrive",
        "meta.contact.custom_attributes.id_pipedrive",
        "additional_attributes.id_deal_pipedrive",
        "additional_attributes.id_pipedrive",
        "conversation.meta.sender.custom_attributes.id_deal_pipedrive",
        "conversation.meta.sender.custom_attributes.id_pipedrive",
    ),
    "avatar_url": _each_source("thumbnail", "avatar_url"),
}

CONVERSATION_ID_PATHS = (
    "conversation.id",
    "id",
    "conversation_id",
    "meta.conversation.id",
)

ACCOUNT_ID_PATHS = (
    "messages.0.account_id",
    "account_id",
    "account.id",
    "meta.account_id",
    "conversation.account_id",
)


def get_by_path(payload: Any, path: str | None) -> Any:
    if not path:
        return None
    value: Any = payload
    for part in path.split("."):
        if isinstance(value, dict):
            value = value.get(part)
        elif isinstance(value, list):
            try:
                idx = int(part)
            except ValueError:
                return None
            if idx < 0 or idx >= len(value):
                return None
            value = value[idx]
        else:
            return None
    return value


def _coerce_str(value: Any) -> str:
    if value is None or isinstance(value, (dict, list, bool)):
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def first_non_empty(payload: Any, paths: Iterable[str]) -> str:
    for path in paths:
        value = _coerce_str(get_by_path(payload, path))
        if value:
            return value
    return ""


def extract_contact(payload: dict[str, Any]) -> ContactProfile:
    values = {
        field_name: first_non_empty(payload, paths)
        for field_name, paths in CONTACT_FIELD_PATHS.items()
    }
    profile = ContactProfile(**values)
    logger.info(
        "contact_extracted",
        contact_id=profile.contact_id or None,
        has_email=bool(profile.email),
        has_phone=bool(profile.phone),
        has_company=bool(profile.company),
        deal_id=profile.deal_id or None,
    )
    return profile


def resolve_conversation_id(payload: dict[str, Any]) -> str:
    return first_non_empty(payload, CONVERSATION_ID_PATHS)


def resolve_account_id(payload: dict[str, Any], default: str | None = None) -> str:
    return first_non_empty(payload, ACCOUNT_ID_PATHS) or (default or "").strip()


def deal_id_from_messages(messages: Iterable[RawMessage], attribute: str) -> str:
    for message in messages:
        if not message.sender:
            continue
        value = _coerce_str(message.sender.custom_attributes.get(attribute))
        if value:
            return value
    return ""
