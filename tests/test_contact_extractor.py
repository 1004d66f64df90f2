from crm_bridge.schemas.chatwoot import RawMessage
from crm_bridge.services.contact_extractor import (
    deal_id_from_messages,
    extract_contact,
    resolve_account_id,
    resolve_conversation_id,
)


def _payload() -> dict:
    return {
        "event": "conversation_status_changed",
        "id": 321,
        "status": "resolved",
        "account": {"id": 4},
        "meta": {
            "sender": {
                "id": 77,
                "name": "João da Silva",
                "phone_number": "+5511999990000",
                "thumbnail": "https://cdn.example.com/joao.png",
                "custom_attributes": {
                    "cpf": "123.456.789-00",
                    "profisso": "Engenheiro",
                    "processo": "0001234-55.2024",
                },
                "additional_attributes": {"company_name": "Acme Ltda"},
            }
        },
        "additional_attributes": {"id_pipedrive": "991"},
    }


def test_extracts_profile_from_first_matching_paths() -> None:
    profile = extract_contact(_payload())
    assert profile.contact_id == "77"
    assert profile.name == "João da Silva"
    assert profile.phone == "+5511999990000"
    assert profile.company == "Acme Ltda"
    assert profile.national_id == "123.456.789-00"
    assert profile.profession == "Engenheiro"
    assert profile.process_reference == "0001234-55.2024"
    assert profile.deal_id == "991"
    assert profile.avatar_url == "https://cdn.example.com/joao.png"


def test_missing_email_is_empty_string() -> None:
    profile = extract_contact(_payload())
    assert profile.email == ""


def test_extraction_is_idempotent() -> None:
    payload = _payload()
    assert extract_contact(payload) == extract_contact(payload)


def test_sender_deal_attribute_beats_conversation_attribute() -> None:
    payload = _payload()
    payload["meta"]["sender"]["custom_attributes"]["id_deal_pipedrive"] = 555
    assert extract_contact(payload).deal_id == "555"


def test_non_scalar_values_are_skipped() -> None:
    payload = {"meta": {"sender": {"name": {"first": "x"}}, "contact": {"name": " Ana "}}}
    assert extract_contact(payload).name == "Ana"


def test_top_level_sender_is_used_when_meta_is_absent() -> None:
    payload = {
        "event": "message_created",
        "id": 9001,
        "conversation": {"id": 321, "status": "resolved"},
        "sender": {
            "id": 78,
            "name": "Beatriz Lima",
            "email": "bia@example.com",
            "phone_number": "+5521988887777",
        },
    }
    profile = extract_contact(payload)
    assert profile.contact_id == "78"
    assert profile.name == "Beatriz Lima"
    assert profile.email == "bia@example.com"
    assert profile.phone == "+5521988887777"


def test_meta_sender_beats_top_level_sender() -> None:
    payload = _payload()
    payload["sender"] = {"id": 3, "name": "Carlos Atendente"}
    profile = extract_contact(payload)
    assert profile.contact_id == "77"
    assert profile.name == "João da Silva"


def test_resolves_conversation_and_account_ids() -> None:
    message_event = {
        "id": 5001,
        "conversation": {"id": 42, "status": "resolved"},
        "account": {"id": 3},
    }
    assert resolve_conversation_id(message_event) == "42"
    assert resolve_account_id(message_event) == "3"
    assert resolve_account_id({}, default="9") == "9"
    assert resolve_account_id({"messages": [{"account_id": 6}], "account_id": 2}) == "6"


def test_deal_id_from_message_sender_attributes() -> None:
    messages = [
        RawMessage.model_validate({"id": 1, "sender": {"type": "user"}}),
        RawMessage.model_validate(
            {"id": 2, "sender": {"custom_attributes": {"id_deal_pipedrive": 88}}}
        ),
    ]
    assert deal_id_from_messages(messages, "id_deal_pipedrive") == "88"
    assert deal_id_from_messages(messages[:1], "id_deal_pipedrive") == ""
