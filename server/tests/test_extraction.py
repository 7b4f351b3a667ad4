import importlib
import json
import sys

import httpx
import pytest

from willtank.services.extraction import (
    GENERIC_UPLOAD_PROMPT,
    DocumentSuggestion,
    ExtractedContact,
    ExtractionUnavailable,
    MalformedResponse,
    OpenAIChatClient,
    contact_details_prompt,
    document_upload_prompt,
    extract_contacts,
    extract_document_suggestions,
)

WILL_TEXT = (
    "I leave my house at 12 Elm Street to my daughter Jane Doe, and my 2015 Volvo to my brother Tom. "
    "I appoint my sister Mary Smith as executor of this will."
)


class FakeChatClient:
    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    def complete_json(self, messages, *, temperature):
        self.calls.append((messages, temperature))
        return self.reply if isinstance(self.reply, str) else json.dumps(self.reply)


def test_extract_contacts_forwards_only_chat_turns():
    fake = FakeChatClient(
        {
            "contacts": [
                {"name": "Jane Doe", "relationship": "daughter", "role": "beneficiary", "email": "jane@example.com"},
                {"name": "Mary Smith", "relationship": "sister", "role": "executor"},
            ]
        }
    )
    conversation = [
        {"role": "system", "content": "internal"},
        {"role": "user", "content": "My daughter Jane gets the house."},
        {"role": "assistant", "content": "Noted."},
        {"role": "tool", "content": "ignored"},
    ]

    contacts = extract_contacts(fake, conversation)

    assert [c.name for c in contacts] == ["Jane Doe", "Mary Smith"]
    assert contacts[1].role == "executor"
    messages, temperature = fake.calls[0]
    assert temperature == 0.2
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[1]["content"] == "My daughter Jane gets the house."


def test_extract_contacts_empty_object_means_no_contacts():
    assert extract_contacts(FakeChatClient({}), []) == []


@pytest.mark.parametrize(
    "reply",
    [
        "not json at all",
        {"contacts": [{"name": "Jane", "role": "cousin"}]},
        {"contacts": [{"relationship": "daughter"}]},
        {"contacts": "Jane"},
    ],
)
def test_extract_contacts_rejects_malformed_replies(reply):
    with pytest.raises(MalformedResponse):
        extract_contacts(FakeChatClient(reply), [{"role": "user", "content": "hi"}])


def test_document_suggestions_skip_short_content():
    fake = FakeChatClient({"suggestions": []})
    assert extract_document_suggestions(fake, "too short") == []
    assert fake.calls == []


def test_document_suggestions_are_decoded():
    fake = FakeChatClient(
        {
            "suggestions": [
                {"documentType": "Property deed", "description": "Deed for 12 Elm Street", "importance": "high", "reason": "House bequest"},
            ]
        }
    )
    suggestions = extract_document_suggestions(fake, WILL_TEXT)

    assert suggestions[0].document_type == "Property deed"
    assert WILL_TEXT in fake.calls[0][0][1]["content"]
    assert fake.calls[0][1] == 0.3


def test_document_suggestions_reject_unknown_importance():
    fake = FakeChatClient({"suggestions": [{"documentType": "Deed", "description": "x", "importance": "urgent"}]})
    with pytest.raises(MalformedResponse):
        extract_document_suggestions(fake, WILL_TEXT)


def _suggestion(name, importance):
    return DocumentSuggestion(documentType=name, description=f"{name} copy", importance=importance)


def test_upload_prompt_orders_by_importance_and_keeps_five():
    suggestions = [
        _suggestion("Tax return", "low"),
        _suggestion("Insurance policy", "medium"),
        _suggestion("Property deed", "high"),
        _suggestion("Vehicle title", "medium"),
        _suggestion("Birth certificate", "low"),
        _suggestion("Bank statement", "high"),
    ]
    prompt = document_upload_prompt(suggestions)
    lines = prompt.splitlines()

    assert lines[2] == "1. **Property deed**: Property deed copy (Important)"
    assert lines[3] == "2. **Bank statement**: Bank statement copy (Important)"
    assert lines[4] == "3. **Insurance policy**: Insurance policy copy"
    assert "6." not in prompt
    assert prompt.endswith("Would you like to upload any of these documents now?")


def test_upload_prompt_without_suggestions():
    assert document_upload_prompt([]) == GENERIC_UPLOAD_PROMPT


def test_contact_details_prompt_lists_missing_fields():
    c = ExtractedContact(name="Tom", relationship="brother", role="beneficiary", phone="555-0100")
    prompt = contact_details_prompt(c)
    assert "Tom as a beneficiary" in prompt
    assert "email address, mailing address" in prompt

    full = ExtractedContact(name="Tom", email="t@example.com", phone="1", address="Elm St")
    assert contact_details_prompt(full) == ""


def test_openai_client_posts_json_mode_request():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"contacts": []}'}}]})

    http = httpx.Client(base_url="https://llm.test/v1", transport=httpx.MockTransport(handler))
    client = OpenAIChatClient("sk-test", model="gpt-test", http=http)

    assert client.complete_json([{"role": "user", "content": "hi"}], temperature=0.2) == '{"contacts": []}'
    assert seen["path"] == "/v1/chat/completions"
    assert seen["body"]["model"] == "gpt-test"
    assert seen["body"]["response_format"] == {"type": "json_object"}


def test_openai_client_maps_failures():
    http = httpx.Client(base_url="https://llm.test/v1", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(ExtractionUnavailable):
        OpenAIChatClient("sk-test", http=http).complete_json([], temperature=0)

    http = httpx.Client(base_url="https://llm.test/v1", transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"id": "x"})))
    with pytest.raises(MalformedResponse):
        OpenAIChatClient("sk-test", http=http).complete_json([], temperature=0)


def _reload_app_modules():
    for k in list(sys.modules.keys()):
        if k == "willtank" or k.startswith("willtank."):
            sys.modules.pop(k, None)


def _app(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("DB_AUTO_CREATE_TABLES", "true")
    monkeypatch.setenv("DB_REQUIRE_MIGRATIONS_UP_TO_DATE", "false")
    monkeypatch.setenv("OPENAI_API_KEY", "")
    _reload_app_modules()
    app = importlib.import_module("willtank.app_factory").create_app()
    return app, importlib.import_module("willtank.routers.extraction")


def _signed_in(client):
    r = client.post("/api/register", json={"username": "dave@example.com", "password": "extract-pass-1"})
    assert r.status_code == 200, r.text
    return {"X-CSRF-Token": client.cookies.get("willtank_csrf")}


def test_extraction_api_uses_injected_client(monkeypatch):
    app, router_mod = _app(monkeypatch)
    fake = FakeChatClient({"contacts": [{"name": "Jane Doe", "relationship": "daughter", "role": "beneficiary"}]})
    app.dependency_overrides[router_mod.get_chat_client] = lambda: fake

    from fastapi.testclient import TestClient

    with TestClient(app) as client:
        headers = _signed_in(client)
        r = client.post(
            "/api/extraction/contacts",
            json={"conversation": [{"role": "user", "content": "Jane gets the house"}]},
            headers=headers,
        )
        assert r.status_code == 200, r.text
        contact = r.json()["contacts"][0]
        assert contact["name"] == "Jane Doe"
        assert "email address" in contact["followUpPrompt"]

        fake.reply = {"suggestions": [{"documentType": "Deed", "description": "House deed", "importance": "high", "reason": "r"}]}
        r = client.post("/api/extraction/documents", json={"willContent": WILL_TEXT}, headers=headers)
        assert r.status_code == 200, r.text
        assert r.json()["suggestions"][0]["documentType"] == "Deed"
        assert "**Deed**" in r.json()["uploadPrompt"]

        fake.reply = "garbage"
        r = client.post("/api/extraction/documents", json={"willContent": WILL_TEXT}, headers=headers)
        assert r.status_code == 502


def test_extraction_api_requires_configured_model(monkeypatch):
    app, _ = _app(monkeypatch)

    from fastapi.testclient import TestClient

    with TestClient(app) as client:
        r = client.post("/api/extraction/contacts", json={"conversation": []})
        assert r.status_code == 401

        headers = _signed_in(client)
        r = client.post("/api/extraction/contacts", json={"conversation": []}, headers=headers)
        assert r.status_code == 503
