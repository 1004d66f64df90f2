import asyncio
import json

import httpx
import pytest

from crm_bridge.core.config import Settings
from crm_bridge.schemas.contact import ContactProfile
from crm_bridge.services.pipedrive_client import PipedriveClient, PipedriveError
from crm_bridge.utils.media import encode_data_uri


def _client(handler, **overrides) -> PipedriveClient:
    values = {
        "PIPEDRIVE_BASE_URL": "https://crm.example.com/v1",
        "PIPEDRIVE_API_TOKEN": "pd-token",
        "PIPEDRIVE_DEAL_STAGE_ID": 4,
        "PIPEDRIVE_DEAL_PROCESS_FIELD": "proc_key",
        "PIPEDRIVE_PERSON_CPF_FIELD": "cpf_key",
        "RETRY_BACKOFF_SEC": 0,
    }
    values.update(overrides)
    return PipedriveClient(
        Settings(_env_file=None, **values), transport=httpx.MockTransport(handler)
    )


def test_create_deal_builds_title_and_custom_fields() -> None:
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["token"] = request.url.params["api_token"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(201, json={"success": True, "data": {"id": 123}})

    profile = ContactProfile(name="Ana", phone="+5511900001111", process_reference="P-1")
    deal_id = asyncio.run(_client(handler).create_deal(profile))

    assert deal_id == "123"
    assert captured["path"] == "/v1/deals"
    assert captured["token"] == "pd-token"
    assert captured["body"] == {
        "title": "Ana - +5511900001111",
        "status": "open",
        "stage_id": 4,
        "proc_key": "P-1",
    }


def test_create_person_sends_primary_contacts() -> None:
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return httpx.Response(201, json={"success": True, "data": {"id": 9}})

    profile = ContactProfile(name="Ana", email="ana@example.com", national_id="111")
    person_id = asyncio.run(_client(handler).create_person(profile))

    assert person_id == "9"
    body = captured["body"]
    assert body["email"] == [{"value": "ana@example.com", "primary": True}]
    assert "phone" not in body
    assert body["cpf_key"] == "111"


def test_find_organization_returns_first_exact_match_or_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["term"] == "Acme":
            return httpx.Response(
                200, json={"success": True, "data": {"items": [{"item": {"id": 31}}]}}
            )
        if request.url.params["term"] == "Broken":
            return httpx.Response(500)
        return httpx.Response(200, json={"success": True, "data": {"items": []}})

    client = _client(handler)
    assert asyncio.run(client.find_organization("Acme")) == "31"
    assert asyncio.run(client.find_organization("Nobody")) is None
    assert asyncio.run(client.find_organization("Broken")) is None
    assert asyncio.run(client.find_organization("")) is None


def test_api_errors_raise_pipedrive_error() -> None:
    client = _client(lambda request: httpx.Response(400, json={"success": False}))
    with pytest.raises(PipedriveError):
        asyncio.run(client.create_note("5", "texto"))

    unsuccessful = _client(
        lambda request: httpx.Response(200, json={"success": False, "error": "nope"})
    )
    with pytest.raises(PipedriveError, match="nope"):
        asyncio.run(unsuccessful.create_organization("Acme"))


def test_link_deal_relations_skips_empty_update() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True, "data": {"id": 5}})

    client = _client(handler)
    asyncio.run(client.link_deal_relations("5", None, None))
    asyncio.run(client.link_deal_relations("5", "7", None))
    assert calls == [{"person_id": 7}]


def test_attach_file_infers_extension_and_retries() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(502)
        return httpx.Response(201, json={"success": True, "data": {"id": 44}})

    client = _client(handler)
    file_id = asyncio.run(
        client.attach_file(
            "5",
            "relatorio",
            encode_data_uri(b"%PDF", "application/pdf"),
            "application/pdf",
        )
    )

    assert file_id == "44"
    assert len(calls) == 2
    body = calls[-1].content
    assert b'filename="relatorio.pdf"' in body
    assert b'name="deal_id"' in body


def test_attach_file_skips_audio_and_never_raises() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    client = _client(handler, MEDIA_RETRY_ATTEMPTS=2)
    audio = encode_data_uri(b"OggS", "audio/ogg")
    assert asyncio.run(client.attach_file("5", "voz.ogg", audio, "audio/ogg")) is None
    assert asyncio.run(client.attach_file("5", "voz", audio, "audio/ogg")) is None
    assert calls == []

    document = encode_data_uri(b"doc", "application/msword")
    assert asyncio.run(client.attach_file("5", "a.doc", document, None)) is None
    assert len(calls) == 2
    assert asyncio.run(client.attach_file("5", "b.doc", "not-a-data-uri", None)) is None
