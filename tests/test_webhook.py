import json

import pytest
from fastapi.testclient import TestClient

from crm_bridge.core.config import Settings
from crm_bridge.main import app
from crm_bridge.services.webhook_intake import (
    WebhookFormatError,
    evaluate_webhook,
    signature_for,
    unwrap_webhook,
)


class RecordingWorker:
    def __init__(self) -> None:
        self.jobs = []

    def submit(self, job) -> None:
        self.jobs.append(job)


def _client(**overrides) -> tuple[TestClient, RecordingWorker]:
    worker = RecordingWorker()
    app.state.settings = Settings(_env_file=None, **overrides)
    app.state.sync_worker = worker
    return TestClient(app), worker


def _resolved_event(**extra) -> dict:
    payload = {
        "event": "conversation_status_changed",
        "id": 42,
        "status": "resolved",
        "account": {"id": 1},
        "meta": {"sender": {"id": 77, "name": "Ana", "email": "ana@example.com"}},
    }
    payload.update(extra)
    return payload


def test_unwraps_all_supported_envelopes() -> None:
    inner = {"id": 1, "status": "resolved"}
    shapes = [
        json.dumps([{"body": inner}]),
        json.dumps({"body": inner}),
        json.dumps(inner),
        json.dumps(json.dumps({"body": inner})),
        json.dumps(json.dumps([{"body": inner}])),
    ]
    for shape in shapes:
        assert unwrap_webhook(shape.encode("utf-8")) == inner


def test_unwrap_rejects_malformed_bodies() -> None:
    for body in (b"{not json", b"[]", b"42", b'"plain text"', b"[1, 2]"):
        with pytest.raises(WebhookFormatError):
            unwrap_webhook(body)


def test_evaluate_ignores_open_conversations() -> None:
    decision = evaluate_webhook(_resolved_event(status="open"))
    assert not decision.accepted
    assert decision.reason == "conversation_not_resolved"
    assert decision.conversation_id == "42"


def test_evaluate_ignores_denylisted_accounts_and_other_events() -> None:
    assert evaluate_webhook(_resolved_event(), {"1"}).reason == "account_ignored"
    assert (
        evaluate_webhook(_resolved_event(event="contact_updated")).reason
        == "event_not_supported"
    )


def test_message_event_uses_conversation_status() -> None:
    payload = {
        "event": "message_created",
        "id": 9001,
        "status": "sent",
        "conversation": {"id": 42, "status": "resolved"},
        "account": {"id": 1},
    }
    decision = evaluate_webhook(payload)
    assert decision.accepted
    assert decision.conversation_id == "42"


def test_health_and_test_endpoints() -> None:
    client, _ = _client()
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/test-webhook").json()["status"] == "ok"


def test_webhook_accepts_resolved_conversation() -> None:
    client, worker = _client()
    response = client.post("/webhook", json=[{"body": _resolved_event()}])

    assert response.status_code == 200
    assert response.json() == {"status": "processing-started", "conversation_id": "42"}
    job = worker.jobs[0]
    assert (job.conversation_id, job.account_id) == ("42", "1")
    assert job.profile.name == "Ana"
    assert job.profile.email == "ana@example.com"
    assert set(job.model_dump()) == {"conversation_id", "account_id", "profile"}


def test_webhook_ignores_open_conversation_without_queueing() -> None:
    client, worker = _client()
    response = client.post("/webhook", json=_resolved_event(status="open"))

    assert response.status_code == 200
    assert response.json() == {
        "status": "ignored",
        "reason": "conversation_not_resolved",
        "conversation_id": "42",
    }
    assert worker.jobs == []


def test_webhook_ignores_configured_account() -> None:
    client, worker = _client(IGNORED_ACCOUNT_IDS="2, 1")
    response = client.post("/webhook", json=_resolved_event())
    assert response.json()["status"] == "ignored"
    assert response.json()["reason"] == "account_ignored"
    assert worker.jobs == []


def test_webhook_rejects_malformed_json() -> None:
    client, worker = _client()
    response = client.post(
        "/webhook", content=b"{broken", headers={"content-type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json() == {"status": "error", "reason": "invalid_json"}
    assert worker.jobs == []


def test_webhook_requires_conversation_and_account_ids() -> None:
    client, _ = _client()
    no_conversation = {"status": "resolved", "account_id": 1}
    response = client.post("/webhook", json=no_conversation)
    assert response.status_code == 400
    assert response.json()["reason"] == "missing_conversation_id"

    no_account = {"status": "resolved", "id": 42}
    response = client.post("/webhook", json=no_account)
    assert response.status_code == 400
    assert response.json()["reason"] == "missing_account_id"


def test_webhook_falls_back_to_configured_account() -> None:
    client, worker = _client(CHATWOOT_ACCOUNT_ID="8")
    response = client.post("/webhook", json={"status": "resolved", "id": 42})
    assert response.status_code == 200
    assert worker.jobs[0].account_id == "8"


def test_webhook_signature_is_enforced_when_configured() -> None:
    client, worker = _client(WEBHOOK_SECRET="s3cret")
    body = json.dumps(_resolved_event()).encode("utf-8")

    rejected = client.post(
        "/webhook", content=body, headers={"x-webhook-signature": "sha256=deadbeef"}
    )
    assert rejected.status_code == 401

    accepted = client.post(
        "/webhook",
        content=body,
        headers={"x-webhook-signature": f"sha256={signature_for('s3cret', body)}"},
    )
    assert accepted.status_code == 200
    assert len(worker.jobs) == 1
