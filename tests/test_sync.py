import asyncio

from crm_bridge.core.config import Settings
from crm_bridge.schemas.chatwoot import RawMessage
from crm_bridge.schemas.contact import ContactProfile
from crm_bridge.schemas.records import EnrichedFile, EnrichedText, FileRecord, TextRecord
from crm_bridge.schemas.webhook import SyncJob
from crm_bridge.services.chatwoot_client import ChatwootClientError
from crm_bridge.services.pipedrive_client import PipedriveError
from crm_bridge.services.sync import ConversationSync, attachment_filename
from crm_bridge.utils.media import encode_data_uri


def _settings(**overrides) -> Settings:
    values = {"CHATWOOT_PAGE_DELAY_SEC": 0, "PIPEDRIVE_LARGE_FILE_BYTES": 100}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _messages() -> list[RawMessage]:
    return [
        RawMessage.model_validate(
            {
                "id": 11,
                "created_at": 1_700_000_000,
                "content": "Preciso de ajuda",
                "sender": {"id": 77, "type": "contact", "name": "Ana"},
            }
        ),
        RawMessage.model_validate(
            {
                "id": 12,
                "created_at": 1_700_000_030,
                "content": "Claro!",
                "message_type": 1,
                "sender": {"id": 3, "type": "user", "name": "Carlos"},
            }
        ),
    ]


class FakeChatwoot:
    def __init__(self, messages=None, error: Exception | None = None) -> None:
        self.pages = [list(messages or []), []]
        self.error = error
        self.updates: list[tuple] = []

    async def fetch_messages_page(self, conversation_id, account_id, before=None):
        if self.error:
            raise self.error
        return self.pages.pop(0) if self.pages else []

    async def update_contact_attribute(self, contact_id, account_id, key, value):
        self.updates.append((contact_id, account_id, key, value))


class FakePipedrive:
    def __init__(self, fail: set[str] | None = None, attach_result: str | None = "f1") -> None:
        self.fail = fail or set()
        self.attach_result = attach_result
        self.calls: list[tuple] = []
        self.notes: list[str] = []
        self.attachments: list[tuple] = []

    def _maybe_fail(self, name: str) -> None:
        self.calls.append((name,))
        if name in self.fail:
            raise PipedriveError(f"{name} failed")

    async def create_deal(self, profile):
        self._maybe_fail("create_deal")
        return "500"

    async def find_organization(self, name):
        self._maybe_fail("find_organization")
        return None

    async def create_organization(self, name):
        self._maybe_fail("create_organization")
        return "900"

    async def create_person(self, profile):
        self._maybe_fail("create_person")
        return "700"

    async def link_deal_relations(self, deal_id, person_id, org_id):
        self._maybe_fail("link_deal_relations")
        self.calls.append(("linked", deal_id, person_id, org_id))

    async def create_note(self, deal_id, text):
        self._maybe_fail("create_note")
        self.notes.append(text)
        return "n1"

    async def attach_file(self, deal_id, filename, data_uri, mime_hint=None):
        self.attachments.append((deal_id, filename, mime_hint))
        return self.attach_result


class FakeEnricher:
    def __init__(self, extra=None) -> None:
        self.extra = extra or []

    async def enrich_all(self, classified):
        records = [EnrichedText(record=record) for record in classified.text]
        return records + list(self.extra)


def _job(**profile) -> SyncJob:
    values = {"contact_id": "77", "name": "Ana", "company": "Acme"}
    values.update(profile)
    return SyncJob(
        conversation_id="42",
        account_id="1",
        profile=ContactProfile(**values),
    )


def _broken_renderer(transcript, timezone):
    raise RuntimeError("font missing")


def test_new_deal_full_flow_with_pdf_delivery() -> None:
    chatwoot = FakeChatwoot(_messages())
    pipedrive = FakePipedrive()
    sync = ConversationSync(_settings(), chatwoot, pipedrive, FakeEnricher())
    result = asyncio.run(sync.run(_job()))

    assert result.status == "completed"
    assert result.deal_id == "500"
    assert result.deal_created is True
    assert result.delivery == "pdf"
    assert result.message_count == 2
    assert ("linked", "500", "700", "900") in pipedrive.calls
    assert pipedrive.notes[0].startswith("Conversa com Ana finalizada em ")
    _, filename, mime = pipedrive.attachments[0]
    assert filename.startswith("Conversa_Completa_Ana_") and filename.endswith(".pdf")
    assert mime == "application/pdf"
    assert chatwoot.updates == [("77", "1", "id_deal_pipedrive", "500")]


def test_render_failure_falls_back_to_text_note() -> None:
    pipedrive = FakePipedrive()
    sync = ConversationSync(
        _settings(), FakeChatwoot(_messages()), pipedrive, FakeEnricher(), _broken_renderer
    )
    result = asyncio.run(sync.run(_job()))

    assert result.delivery == "text"
    assert pipedrive.attachments == []
    fallback = pipedrive.notes[-1]
    assert "Ana: Preciso de ajuda" in fallback
    assert "Carlos: Claro!" in fallback


def test_pdf_upload_failure_also_falls_back_to_text_note() -> None:
    pipedrive = FakePipedrive(attach_result=None)
    sync = ConversationSync(_settings(), FakeChatwoot(_messages()), pipedrive, FakeEnricher())
    result = asyncio.run(sync.run(_job()))
    assert result.delivery == "text"
    assert "Resumo da conversa" in pipedrive.notes[-1]


def test_existing_deal_skips_creation_and_write_back() -> None:
    chatwoot = FakeChatwoot(_messages())
    pipedrive = FakePipedrive()
    sync = ConversationSync(_settings(), chatwoot, pipedrive, FakeEnricher())
    result = asyncio.run(sync.run(_job(deal_id="321")))

    assert result.deal_id == "321"
    assert result.deal_created is False
    assert ("create_deal",) not in pipedrive.calls
    assert chatwoot.updates == []


def test_deal_id_found_on_message_sender() -> None:
    messages = _messages()
    messages[0].sender.custom_attributes["id_deal_pipedrive"] = 654
    pipedrive = FakePipedrive()
    sync = ConversationSync(_settings(), FakeChatwoot(messages), pipedrive, FakeEnricher())
    result = asyncio.run(sync.run(_job()))
    assert result.deal_id == "654"
    assert ("create_deal",) not in pipedrive.calls


def test_entity_errors_do_not_stop_delivery() -> None:
    pipedrive = FakePipedrive(fail={"create_person", "create_organization", "create_note"})
    sync = ConversationSync(_settings(), FakeChatwoot(_messages()), pipedrive, FakeEnricher())
    result = asyncio.run(sync.run(_job()))

    assert result.status == "completed"
    assert ("linked", "500", None, None) in pipedrive.calls
    assert result.delivery == "pdf"


def test_no_deal_means_failed_run() -> None:
    pipedrive = FakePipedrive(fail={"create_deal"})
    chatwoot = FakeChatwoot(_messages())
    sync = ConversationSync(_settings(), chatwoot, pipedrive, FakeEnricher())
    result = asyncio.run(sync.run(_job()))

    assert result.status == "failed"
    assert result.reason == "deal_unavailable"
    assert pipedrive.notes == []
    assert chatwoot.updates == []


def test_message_fetch_failure_ends_run() -> None:
    pipedrive = FakePipedrive()
    chatwoot = FakeChatwoot(error=ChatwootClientError("Request failed: 500"))
    sync = ConversationSync(_settings(), chatwoot, pipedrive, FakeEnricher())
    result = asyncio.run(sync.run(_job()))
    assert result.status == "failed"
    assert pipedrive.calls == []


def test_documents_and_large_files_are_attached_separately() -> None:
    def file_record(record_id, category, size, name):
        return EnrichedFile(
            record=FileRecord(
                id=record_id,
                source_message_id=13,
                sender_name="Ana",
                sender_role="customer",
                created_at=1_700_000_100,
                file_name=name,
            ),
            category=category,
            byte_count=size,
            content_type="application/octet-stream",
            data_uri=encode_data_uri(b"x" * size, "application/octet-stream"),
        )

    extra = [
        file_record("13_1", "document", 10, "proposta.docx"),
        file_record("13_2", "spreadsheet", 10, "planilha.xlsx"),
        file_record("13_3", "archive", 500, "backup.zip"),
        file_record("13_4", "pdf", 10, "boleto.pdf"),
    ]
    pipedrive = FakePipedrive()
    sync = ConversationSync(
        _settings(), FakeChatwoot(_messages()), pipedrive, FakeEnricher(extra)
    )
    result = asyncio.run(sync.run(_job()))

    names = [name for _, name, _ in pipedrive.attachments[1:]]
    assert names == ["proposta_13_1.docx", "planilha_13_2.xlsx", "backup_13_3.zip"]
    assert result.attachments == 3
    assert attachment_filename(extra[3]) == "boleto_13_4.pdf"
